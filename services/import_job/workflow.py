from __future__ import annotations

import asyncio
from typing import Callable, List, Optional, Sequence

from loguru import logger

from services.import_job.clients import JobClient, PersistenceClient
from services.import_job.curation import CurationStore
from services.import_job.errors import (
    ImportWizardError,
    InvalidInputError,
    PersistenceError,
    ResultFetchError,
    SubmissionError,
    TransportError,
    WorkflowStateError,
)
from services.import_job.models import (
    CommitSummary,
    Document,
    JobHandle,
    JobState,
    JobStatus,
    WorkflowSnapshot,
    WorkflowState,
)
from services.import_job.polling import DEFAULT_POLL_INTERVAL_S, PollingScheduler

Listener = Callable[[WorkflowSnapshot], None]


class ImportWorkflow:
    """
    Upload -> job -> poll -> preview -> commit, for one document at a time.

    State lives in a single WorkflowState plus an optional error payload.
    Every transition emits a WorkflowSnapshot to subscribers.

    Stale responses are dropped: a submit response is matched against the
    run that issued it, a poll or fetch response against the job handle that
    is currently being polled. Leaving Processing always cancels the poller
    before doing anything else.
    """

    def __init__(
        self,
        *,
        job_client: JobClient,
        persistence_client: PersistenceClient,
        store: Optional[CurationStore] = None,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
        accepted_extensions: Sequence[str] = (".pdf",),
    ) -> None:
        self.job_client = job_client
        self.persistence_client = persistence_client
        self.store = store or CurationStore()
        self.accepted_extensions = tuple(e.lower() for e in accepted_extensions)
        self._scheduler = PollingScheduler(poll_interval_s)

        self._state = WorkflowState.IDLE
        self._job_handle: Optional[JobHandle] = None
        self._polling_handle: Optional[JobHandle] = None
        self._message: Optional[str] = None
        self._error: Optional[ImportWizardError] = None
        self._error_detail: Optional[str] = None
        self._committing = False
        self._run_id = 0
        self._settled: Optional[asyncio.Event] = None
        self._listeners: List[Listener] = []

    # --- read side ---
    @property
    def state(self) -> WorkflowState:
        return self._state

    @property
    def job_handle(self) -> Optional[JobHandle]:
        return self._job_handle

    @property
    def error(self) -> Optional[ImportWizardError]:
        return self._error

    @property
    def polling(self) -> bool:
        return self._scheduler.active

    @property
    def committing(self) -> bool:
        return self._committing

    @property
    def can_submit(self) -> bool:
        return self._state is not WorkflowState.UPLOADING and not self._committing

    @property
    def can_commit(self) -> bool:
        return self._state is WorkflowState.COMPLETE and len(self.store) > 0 and not self._committing

    @property
    def snapshot(self) -> WorkflowSnapshot:
        return WorkflowSnapshot(
            state=self._state,
            job_handle=self._job_handle,
            message=self._message,
            error_detail=self._error_detail,
            record_count=len(self.store),
            committing=self._committing,
        )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def wait_settled(self) -> WorkflowSnapshot:
        """Wait until the current run reaches Complete/Error or is reset."""
        if self._settled is not None:
            await self._settled.wait()
        return self.snapshot

    # --- upload ---
    def validate_document(self, document: Optional[Document]) -> Document:
        if document is None:
            raise InvalidInputError("Please choose a file to import.")
        if not document.content:
            raise InvalidInputError(f"{document.name} is empty.")
        if self.accepted_extensions and document.extension not in self.accepted_extensions:
            allowed = ", ".join(self.accepted_extensions)
            raise InvalidInputError(f"Unsupported file {document.name}; expected one of: {allowed}")
        return document

    async def submit(self, document: Optional[Document]) -> WorkflowSnapshot:
        doc = self.validate_document(document)
        if self._state is not WorkflowState.IDLE:
            self.reset()

        self._run_id += 1
        run_id = self._run_id
        self._settled = asyncio.Event()
        self._transition(WorkflowState.UPLOADING, message=f"Uploading {doc.name}…")

        try:
            accepted = await self.job_client.submit(doc)
        except Exception as e:
            if run_id != self._run_id:
                logger.debug(f"Ignoring submit failure from superseded run {run_id}")
                return self.snapshot
            self.on_submit_failed(e)
            return self.snapshot

        if run_id != self._run_id:
            logger.debug(f"Ignoring submit response for superseded job {accepted.job_handle}")
            return self.snapshot
        await self.on_submit_accepted(accepted.job_handle, accepted.status)
        return self.snapshot

    async def on_submit_accepted(self, job_handle: JobHandle, initial_status: JobStatus) -> None:
        if self._state is not WorkflowState.UPLOADING:
            logger.debug(f"Ignoring acceptance of job {job_handle} in state {self._state.value}")
            return

        self._job_handle = job_handle
        self._polling_handle = job_handle
        self._transition(WorkflowState.PROCESSING, message=initial_status.message or "Processing started…")

        if initial_status.is_terminal:
            await self.on_poll(job_handle, initial_status)
            return
        self._scheduler.start(job_handle, self.job_client.status, self.on_poll, self.on_poll_transport_failure)

    def on_submit_failed(self, error: Exception) -> None:
        if self._state is not WorkflowState.UPLOADING:
            return
        err = error if isinstance(error, SubmissionError) else SubmissionError(f"Upload failed: {error}")
        self._fail(err)

    # --- polling ---
    def _is_stale(self, job_handle: JobHandle) -> bool:
        return (
            self._state is not WorkflowState.PROCESSING
            or self._polling_handle is None
            or job_handle != self._polling_handle
        )

    def _stop_polling(self) -> None:
        self._polling_handle = None
        self._scheduler.cancel()

    async def on_poll(self, job_handle: JobHandle, status: JobStatus) -> None:
        if self._is_stale(job_handle):
            logger.debug(f"Ignoring stale status {status.state.value} for job {job_handle}")
            return

        if not status.is_terminal:
            if status.message and status.message != self._message:
                self._message = status.message
                self._emit()
            return

        self._stop_polling()

        if status.state is JobState.ERROR:
            detail = status.error_detail or "Unknown error"
            self._fail(None, detail=detail, message=status.message)
            return

        run_id = self._run_id
        self._message = status.message or "Fetching preview…"
        self._emit()
        try:
            records = await self.job_client.fetch_result(job_handle)
        except Exception as e:
            if run_id != self._run_id or job_handle != self._job_handle:
                logger.debug(f"Ignoring fetch failure for superseded job {job_handle}")
                return
            err = e if isinstance(e, ResultFetchError) else ResultFetchError(f"Preview fetch failed: {e}")
            self._fail(err)
            return

        if run_id != self._run_id or job_handle != self._job_handle:
            logger.debug(f"Ignoring result for superseded job {job_handle}")
            return

        self.store.seed(records)
        self._transition(WorkflowState.COMPLETE, message=f"{len(self.store)} records ready for review")
        self._settle()

    async def on_poll_transport_failure(self, job_handle: JobHandle, error: Exception) -> None:
        if self._is_stale(job_handle):
            logger.debug(f"Ignoring poll failure for stale job {job_handle}: {error}")
            return
        self._stop_polling()
        err = error if isinstance(error, TransportError) else TransportError(f"Status check failed: {error}")
        self._fail(err)

    # --- commit ---
    async def commit(self, container_name: Optional[str] = None) -> CommitSummary:
        if self._committing:
            raise WorkflowStateError("A commit is already in flight.")
        if self._state is not WorkflowState.COMPLETE:
            raise WorkflowStateError(f"Cannot commit in state {self._state.value}.")
        if len(self.store) == 0:
            raise WorkflowStateError("There are no records to commit.")

        run_id = self._run_id
        rows = self.store.to_wire()
        self._committing = True
        self._emit()
        try:
            summary = await self.persistence_client.commit(
                job_handle=self._job_handle,
                records=rows,
                container_name=container_name or None,
            )
        except Exception as e:
            err = e if isinstance(e, PersistenceError) else PersistenceError(f"Save failed: {e}")
            logger.warning(f"Commit of {len(rows)} records for job {self._job_handle} failed: {err}")
            if run_id == self._run_id:
                self._message = str(err)
            if err is e:
                raise
            raise err from e
        finally:
            if run_id == self._run_id:
                self._committing = False
                self._emit()

        logger.info(
            f"Committed {summary.created_count} records for job {self._job_handle}"
            + (f" under {summary.container_name}" if summary.container_name else "")
        )
        if run_id == self._run_id:
            self.reset()
        return summary

    # --- lifecycle ---
    def reset(self) -> WorkflowSnapshot:
        self._stop_polling()
        self._run_id += 1
        self._job_handle = None
        self._error = None
        self._error_detail = None
        self._committing = False
        self.store.clear()
        self._transition(WorkflowState.IDLE, message=None)
        self._settle()
        return self.snapshot

    def _fail(
        self,
        error: Optional[ImportWizardError],
        *,
        detail: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        self._error = error
        self._error_detail = detail or str(error)
        logger.warning(f"Import job {self._job_handle or '-'} failed: {self._error_detail}")
        self._transition(WorkflowState.ERROR, message=message or self._error_detail)
        self._settle()

    def _settle(self) -> None:
        if self._settled is not None:
            self._settled.set()

    def _transition(self, state: WorkflowState, *, message: Optional[str]) -> None:
        if state is not self._state:
            logger.info(f"Import workflow {self._state.value} -> {state.value}")
        self._state = state
        self._message = message
        self._emit()

    def _emit(self) -> None:
        snap = self.snapshot
        for listener in list(self._listeners):
            try:
                listener(snap)
            except Exception:
                logger.exception("workflow listener failed")
