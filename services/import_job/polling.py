from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from loguru import logger

from services.import_job.models import JobHandle, JobStatus

PollFn = Callable[[JobHandle], Awaitable[JobStatus]]
OnStatus = Callable[[JobHandle, JobStatus], Awaitable[None]]
OnFailure = Callable[[JobHandle, Exception], Awaitable[None]]

DEFAULT_POLL_INTERVAL_S = 2.0


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class PollingScheduler:
    """
    Fixed-interval status poller for a single job.

    The loop awaits each status call before sleeping again, so there is never
    more than one request in flight. cancel() is synchronous: once it returns
    the loop will not deliver another status for the old job.
    """

    def __init__(self, interval_s: float = DEFAULT_POLL_INTERVAL_S) -> None:
        if interval_s < 0:
            raise ValueError("interval_s must be >= 0")
        self.interval_s = interval_s
        self._task: Optional[asyncio.Task] = None
        self._job_handle: Optional[JobHandle] = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def job_handle(self) -> Optional[JobHandle]:
        return self._job_handle

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    def start(
        self,
        job_handle: JobHandle,
        poll: PollFn,
        on_status: OnStatus,
        on_failure: OnFailure,
    ) -> asyncio.Task:
        self.cancel()
        self._job_handle = job_handle
        task = asyncio.get_running_loop().create_task(
            self._run(job_handle, poll, on_status, on_failure),
            name=f"poll-{job_handle}",
        )
        task.add_done_callback(self._report_crash)
        self._task = task
        logger.debug(f"Polling job {job_handle} every {self.interval_s}s")
        return task

    def cancel(self) -> None:
        task, self._task = self._task, None
        self._job_handle = None
        if task is None or task.done():
            return
        # A handler running inside the loop may stop it; it returns on its own.
        if task is not _current_task():
            task.cancel()

    def _owns(self, task: Optional[asyncio.Task]) -> bool:
        return task is not None and task is self._task

    async def _run(
        self,
        job_handle: JobHandle,
        poll: PollFn,
        on_status: OnStatus,
        on_failure: OnFailure,
    ) -> None:
        me = _current_task()
        while self._owns(me):
            await asyncio.sleep(self.interval_s)
            if not self._owns(me):
                return
            try:
                status = await poll(job_handle)
            except Exception as e:
                await on_failure(job_handle, e)
                return
            try:
                await on_status(job_handle, status)
            except Exception as e:
                logger.exception(f"Status handler for job {job_handle} failed")
                await on_failure(job_handle, e)
                return
            if status.is_terminal:
                return

    @staticmethod
    def _report_crash(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error(f"Polling task {task.get_name()} crashed")
