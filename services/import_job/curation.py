from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union
from uuid import uuid4

from loguru import logger

from services.import_job.errors import InvalidInputError, WorkflowStateError
from services.import_job.models import DEFAULT_COLUMNS, DraftPatch, Record


@dataclass(frozen=True)
class CurationView:
    records: Tuple[Record, ...]
    selection: FrozenSet[str]


Listener = Callable[[CurationView], None]
PatchLike = Union[DraftPatch, Mapping[str, Any]]


# Callers get their own fields dict; the working set is only changed via the store.
def _detached(r: Record) -> Record:
    return replace(r, fields=dict(r.fields))


class CurationStore:
    """
    Editable working set for one import session.

    Not thread-safe: every mutating call must come from the same event loop
    (or be serialized by the caller behind a single-writer lock).
    """

    def __init__(
        self,
        *,
        columns: Sequence[str] = DEFAULT_COLUMNS,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self.columns = tuple(columns)
        self._id_factory = id_factory or (lambda: uuid4().hex)
        self._rows: List[Record] = []
        self._selection: Set[str] = set()
        self._seeded = False
        self._listeners: List[Listener] = []

    # --- read side ---
    @property
    def records(self) -> Tuple[Record, ...]:
        return tuple(_detached(r) for r in self._rows)

    @property
    def selection(self) -> FrozenSet[str]:
        return frozenset(self._selection)

    @property
    def seeded(self) -> bool:
        return self._seeded

    @property
    def can_delete(self) -> bool:
        return bool(self._selection)

    def __len__(self) -> int:
        return len(self._rows)

    def view(self) -> CurationView:
        return CurationView(records=self.records, selection=frozenset(self._selection))

    def snapshot(self) -> List[Record]:
        # sorted() is stable, so equal orders keep insertion order
        return sorted((_detached(r) for r in self._rows), key=lambda r: r.order)

    def to_wire(self) -> List[Dict[str, Any]]:
        return [r.to_wire() for r in self.snapshot()]

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # --- write side ---
    def seed(self, records: Iterable[Record]) -> CurationView:
        if self._seeded:
            raise WorkflowStateError("working set was already seeded for this run")

        incoming = list(records)
        taken: Set[str] = set()
        kept_ids: List[Optional[str]] = []
        for r in incoming:
            if r.stable_id and r.stable_id not in taken:
                taken.add(r.stable_id)
                kept_ids.append(r.stable_id)
            else:
                kept_ids.append(None)

        rows: List[Record] = []
        for r, sid in zip(incoming, kept_ids):
            if sid is None:
                sid = self._fresh_id(taken)
                taken.add(sid)
            fields = {**{c: "" for c in self.columns}, **r.fields}
            rows.append(replace(r, stable_id=sid, fields=fields))

        self._rows = rows
        self._selection = set()
        self._seeded = True
        logger.debug(f"Working set seeded with {len(rows)} rows")
        return self._emit()

    def apply_patches(self, patches: Iterable[PatchLike]) -> CurationView:
        index = {r.stable_id: i for i, r in enumerate(self._rows)}
        updated = list(self._rows)

        for p in patches:
            patch = p if isinstance(p, DraftPatch) else DraftPatch.from_dict(p)
            i = index.get(patch.stable_id)
            if i is None:
                logger.debug(f"Dropping patch for unknown row {patch.stable_id}")
                continue
            try:
                updated[i] = updated[i].with_fields(patch.fields)
            except ValueError as e:
                raise InvalidInputError(f"Invalid patch for row {patch.stable_id}: {e}") from e

        self._rows = updated
        return self._emit()

    def select(self, ids: Iterable[str]) -> CurationView:
        present = {r.stable_id for r in self._rows}
        self._selection = {i for i in ids if i in present}
        return self._emit()

    def insert_row(self) -> CurationView:
        next_order = max((r.order for r in self._rows), default=0) + 1
        taken = {r.stable_id for r in self._rows if r.stable_id}
        row = Record(
            stable_id=self._fresh_id(taken),
            order=next_order,
            fields={c: "" for c in self.columns},
        )
        self._rows.append(row)
        return self._emit()

    def delete_selected(self) -> CurationView:
        if not self._selection:
            return self.view()
        doomed = self._selection
        self._rows = [r for r in self._rows if r.stable_id not in doomed]
        logger.debug(f"Deleted {len(doomed)} selected rows")
        self._selection = set()
        return self._emit()

    def clear(self) -> CurationView:
        self._rows = []
        self._selection = set()
        self._seeded = False
        return self._emit()

    # --- helpers ---
    def _fresh_id(self, taken: Set[str]) -> str:
        while True:
            sid = self._id_factory()
            if sid not in taken:
                return sid

    def _emit(self) -> CurationView:
        view = self.view()
        for listener in list(self._listeners):
            try:
                listener(view)
            except Exception:
                logger.exception("curation listener failed")
        return view
