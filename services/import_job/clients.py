from __future__ import annotations

import asyncio
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Protocol, Sequence

import requests
from loguru import logger

from services.import_job.errors import (
    PersistenceError,
    ResultFetchError,
    SubmissionError,
    TransportError,
)
from services.import_job.models import (
    DEFAULT_COLUMNS,
    CommitSummary,
    Document,
    JobHandle,
    JobState,
    JobStatus,
    Record,
    SubmitAccepted,
)
from services.validation.schema_validation import validate_job_result

# Terminal statuses remembered per client; the oldest handles are dropped first.
TERMINAL_CACHE_SIZE = 256


class JobClient(Protocol):
    async def submit(self, document: Document) -> SubmitAccepted: ...
    async def status(self, job_handle: JobHandle) -> JobStatus: ...
    async def fetch_result(self, job_handle: JobHandle) -> List[Record]: ...


class PersistenceClient(Protocol):
    async def commit(
        self,
        *,
        job_handle: Optional[JobHandle],
        records: List[Dict[str, Any]],
        container_name: Optional[str] = None,
    ) -> CommitSummary: ...


def map_remote_status(raw: Optional[str]) -> Optional[JobState]:
    s = (raw or "").strip().upper()
    if s in ("QUEUED", "PENDING", "RECEIVED", "RETRY"):
        return JobState.QUEUED
    if s in ("RUNNING", "STARTED", "PROCESSING"):
        return JobState.PROCESSING
    if s in ("SUCCEEDED", "SUCCESS", "COMPLETE", "COMPLETED"):
        return JobState.COMPLETE
    if s in ("FAILED", "FAILURE", "REVOKED", "ERROR"):
        return JobState.ERROR
    return None


def parse_status(body: Dict[str, Any]) -> JobStatus:
    raw = body.get("status")
    state = map_remote_status(raw)
    message = body.get("message")
    if state is None:
        # Unknown vocabulary: keep polling, surface the raw value.
        return JobStatus(JobState.PROCESSING, message=message or f"Job status: {raw}")
    if state is JobState.ERROR:
        detail = body.get("error_message") or body.get("errorMessage") or body.get("detail") or body.get("error")
        return JobStatus(state, message=message, error_detail=str(detail) if detail else None)
    return JobStatus(state, message=message)


def _describe(e: Exception) -> str:
    resp = getattr(e, "response", None)
    if resp is not None:
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            msg = body.get("detail") or body.get("message") or body.get("error")
            if msg:
                return str(msg)
        return f"HTTP {resp.status_code}"
    return str(e) or e.__class__.__name__


class HttpImportClient:
    """
    Gateway binding for both the job calls and the final commit.

    requests is blocking, so every call is pushed to a worker thread and
    awaited; the caller still only ever sees one coroutine per remote call.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 30.0,
        columns: Sequence[str] = DEFAULT_COLUMNS,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.columns = tuple(columns)
        self.session = session or requests.Session()
        self._terminal: "OrderedDict[JobHandle, JobStatus]" = OrderedDict()

    def close(self) -> None:
        self.session.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        r = self.session.request(method, f"{self.base_url}{path}", timeout=self.timeout_s, **kwargs)
        r.raise_for_status()
        return r.json()

    async def _call(self, method: str, path: str, **kwargs: Any) -> Any:
        return await asyncio.to_thread(self._request, method, path, **kwargs)

    # --- job calls ---
    async def submit(self, document: Document) -> SubmitAccepted:
        files = {"file": (document.name, document.content, "application/octet-stream")}
        try:
            body = await self._call("POST", "/jobs", files=files)
        except (requests.RequestException, ValueError) as e:
            raise SubmissionError(f"Upload failed: {_describe(e)}") from e

        job_id = body.get("job_id") if isinstance(body, dict) else None
        if not job_id:
            raise SubmissionError("Upload failed: gateway response has no job_id")

        if body.get("status"):
            status = parse_status(body)
        else:
            status = JobStatus(JobState.QUEUED, message=body.get("message"))
        logger.info(f"Submitted {document.name} as job {job_id} ({status.state.value})")
        return SubmitAccepted(job_handle=str(job_id), status=status)

    async def status(self, job_handle: JobHandle) -> JobStatus:
        cached = self._terminal.get(job_handle)
        if cached is not None:
            return cached

        try:
            body = await self._call("GET", f"/jobs/{job_handle}")
        except (requests.RequestException, ValueError) as e:
            raise TransportError(f"Status check failed: {_describe(e)}") from e
        if not isinstance(body, dict):
            raise TransportError("Status check failed: malformed response")

        status = parse_status(body)
        if status.is_terminal:
            self._terminal[job_handle] = status
            while len(self._terminal) > TERMINAL_CACHE_SIZE:
                self._terminal.popitem(last=False)
        return status

    async def fetch_result(self, job_handle: JobHandle) -> List[Record]:
        try:
            body = await self._call("GET", f"/jobs/{job_handle}/result")
        except (requests.RequestException, ValueError) as e:
            raise ResultFetchError(f"Preview fetch failed: {_describe(e)}") from e

        items = body.get("records") if isinstance(body, dict) else body
        if not isinstance(items, list):
            raise ResultFetchError("Preview fetch failed: response has no records list")
        ok, msg = validate_job_result(items)
        if not ok:
            raise ResultFetchError(f"Preview fetch failed: {msg}")

        try:
            return [Record.from_wire(item, i + 1, self.columns) for i, item in enumerate(items)]
        except ValueError as e:
            raise ResultFetchError(f"Preview fetch failed: {e}") from e

    # --- commit ---
    async def commit(
        self,
        *,
        job_handle: Optional[JobHandle],
        records: List[Dict[str, Any]],
        container_name: Optional[str] = None,
    ) -> CommitSummary:
        payload = {"job_id": job_handle, "container_name": container_name, "records": records}
        try:
            body = await self._call("POST", "/records", json=payload)
        except (requests.RequestException, ValueError) as e:
            raise PersistenceError(f"Save failed: {_describe(e)}") from e

        body = body if isinstance(body, dict) else {}
        created = body.get("created_count")
        if not isinstance(created, int):
            # The rows are already written; a retry here would duplicate them.
            logger.warning(f"Commit response for job {job_handle} has no created_count: {body}")
            created = len(records)
        return CommitSummary(
            created_count=created,
            container_id=body.get("container_id"),
            container_name=body.get("container_name") or container_name,
        )
