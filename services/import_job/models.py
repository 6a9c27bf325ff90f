from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence

# Opaque id handed out by the gateway on submit.
JobHandle = str

RESERVED_KEYS = ("id", "order")
DEFAULT_COLUMNS = ("question", "answer")


class JobState(str, Enum):
    QUEUED = "Queued"
    PROCESSING = "Processing"
    COMPLETE = "Complete"
    ERROR = "Error"


class WorkflowState(str, Enum):
    IDLE = "Idle"
    UPLOADING = "Uploading"
    PROCESSING = "Processing"
    COMPLETE = "Complete"
    ERROR = "Error"


@dataclass(frozen=True)
class Document:
    name: str
    content: bytes

    @property
    def extension(self) -> str:
        return Path(self.name).suffix.lower()

    @classmethod
    def from_path(cls, path: str | Path) -> "Document":
        p = Path(path)
        return cls(name=p.name, content=p.read_bytes())


@dataclass(frozen=True)
class JobStatus:
    state: JobState
    message: Optional[str] = None
    error_detail: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in (JobState.COMPLETE, JobState.ERROR)


@dataclass(frozen=True)
class SubmitAccepted:
    job_handle: JobHandle
    status: JobStatus


@dataclass(frozen=True)
class Record:
    """
    One extracted row.

    stable_id is None only between parsing a job result and seeding the
    curation store, which assigns the missing ones.
    """
    stable_id: Optional[str]
    order: int
    fields: Dict[str, str] = field(default_factory=dict)

    def with_fields(self, updates: Mapping[str, Any]) -> "Record":
        order = self.order
        merged = dict(self.fields)
        for k, v in updates.items():
            if k == "id":
                continue
            if k == "order":
                order = coerce_order(v)
                continue
            merged[k] = "" if v is None else str(v)
        return Record(stable_id=self.stable_id, order=order, fields=merged)

    def to_wire(self) -> Dict[str, Any]:
        return {"order": self.order, **self.fields}

    @classmethod
    def from_wire(
        cls,
        raw: Mapping[str, Any],
        position: int,
        columns: Sequence[str] = DEFAULT_COLUMNS,
    ) -> "Record":
        """
        Build a Record from one item of a job result.

        position is the 1-based index of the item in the result and becomes
        the order when the backend did not send one.
        """
        raw_id = raw.get("id")
        stable_id = str(raw_id) if raw_id not in (None, "") else None

        raw_order = raw.get("order")
        order = coerce_order(raw_order) if raw_order is not None else position

        fields = {c: "" for c in columns}
        for k, v in raw.items():
            if k in RESERVED_KEYS:
                continue
            fields[k] = "" if v is None else str(v)

        return cls(stable_id=stable_id, order=order, fields=fields)


@dataclass(frozen=True)
class DraftPatch:
    stable_id: str
    fields: Dict[str, Any]

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "DraftPatch":
        # Grid draft values carry the row key under "id".
        return cls(
            stable_id=str(raw["id"]),
            fields={k: v for k, v in raw.items() if k != "id"},
        )


@dataclass(frozen=True)
class CommitSummary:
    created_count: int
    container_id: Optional[str] = None
    container_name: Optional[str] = None


@dataclass(frozen=True)
class WorkflowSnapshot:
    state: WorkflowState
    job_handle: Optional[JobHandle]
    message: Optional[str]
    error_detail: Optional[str]
    record_count: int
    committing: bool


def coerce_order(v: Any) -> int:
    if isinstance(v, bool):
        raise ValueError(f"order must be an integer, got {v!r}")
    if isinstance(v, int):
        return v
    if isinstance(v, float):
        if not v.is_integer():
            raise ValueError(f"order must be an integer, got {v!r}")
        return int(v)
    if isinstance(v, str) and v.strip():
        try:
            return int(v.strip())
        except ValueError:
            return coerce_order(float(v.strip()))
    raise ValueError(f"order must be an integer, got {v!r}")
