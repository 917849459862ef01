"""Run registry: exclusion, cancellation and background execution of runs.

A run is one generation, backfill, edit or add-section operation.
Generation and backfill runs are exclusive per report; edits are not
(concurrent edits on one section are resolved at commit time). Each run
has a cancel signal and a deadline that every suspension point races.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Coroutine
from dataclasses import dataclass, field
from typing import Any

from app.core.errors import ConflictError
from app.core.logging import get_logger, log_with_context

logger = get_logger(__name__)

_END = object()


class RunInterrupted(Exception):
    """The run was cancelled or hit its deadline while waiting."""

    def __init__(self, reason: str, timed_out: bool = False):
        super().__init__(reason)
        self.reason = reason
        self.timed_out = timed_out


@dataclass
class RunHandle:
    run_id: str
    report_id: str
    mode: str
    exclusive: bool
    deadline: float
    section_id: str | None = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    cancel_reason: str | None = None
    detached: bool = False
    task: asyncio.Task | None = None

    def cancel(self, reason: str = "Cancelled by user") -> None:
        if not self.cancel_event.is_set():
            self.cancel_reason = reason
            self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def remaining(self) -> float:
        return max(self.deadline - asyncio.get_running_loop().time(), 0.0)

    def check(self) -> None:
        """Raise if the run was cancelled or is past its deadline."""
        if self.cancelled:
            raise RunInterrupted(self.cancel_reason or "Cancelled")
        if self.remaining() <= 0:
            self.cancel("Run timed out")
            raise RunInterrupted("Run timed out", timed_out=True)

    async def race(self, awaitable: Awaitable[Any]) -> Any:
        """
        Await ``awaitable`` unless the run is cancelled or times out first.

        Raises:
            RunInterrupted: If cancellation or the deadline wins
        """
        self.check()
        work = asyncio.ensure_future(awaitable)
        stop = asyncio.ensure_future(self.cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, stop}, timeout=self.remaining(), return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            stop.cancel()
            if not work.done():
                work.cancel()
                await asyncio.gather(work, return_exceptions=True)

        if work in done:
            return work.result()
        if not done:
            self.cancel("Run timed out")
            raise RunInterrupted("Run timed out", timed_out=True)
        raise RunInterrupted(self.cancel_reason or "Cancelled")


async def _next_chunk(stream: AsyncIterator):
    return await anext(stream, _END)


async def guarded(handle: RunHandle, stream: AsyncIterator) -> AsyncIterator:
    """Iterate a provider stream, racing each fragment against the run's stop signals."""
    try:
        while True:
            item = await handle.race(_next_chunk(stream))
            if item is _END:
                return
            yield item
    finally:
        aclose = getattr(stream, "aclose", None)
        if aclose is not None:
            await aclose()


class RunRegistry:
    """Tracks in-flight runs for one process."""

    def __init__(self, timeout_seconds: float = 600.0):
        self.timeout_seconds = timeout_seconds
        self._runs: dict[str, RunHandle] = {}
        self._exclusive: dict[str, str] = {}  # report_id -> run_id
        self._tasks: set[asyncio.Task] = set()

    def is_busy(self, report_id: str) -> bool:
        return report_id in self._exclusive

    def get(self, run_id: str) -> RunHandle | None:
        return self._runs.get(run_id)

    def active(self, report_id: str | None = None) -> list[RunHandle]:
        return [h for h in self._runs.values() if report_id is None or h.report_id == report_id]

    def acquire(
        self,
        report_id: str,
        mode: str,
        *,
        exclusive: bool,
        section_id: str | None = None,
    ) -> RunHandle:
        """
        Register a new run.

        Raises:
            ConflictError: If an exclusive run already owns the report
        """
        if exclusive and report_id in self._exclusive:
            raise ConflictError(f"A generation is already in progress for report {report_id}")

        handle = RunHandle(
            run_id=str(uuid.uuid4()),
            report_id=report_id,
            mode=mode,
            exclusive=exclusive,
            section_id=section_id,
            deadline=asyncio.get_running_loop().time() + self.timeout_seconds,
        )
        self._runs[handle.run_id] = handle
        if exclusive:
            self._exclusive[report_id] = handle.run_id

        log_with_context(
            logger,
            logging.DEBUG,
            "Run acquired",
            run_id=handle.run_id,
            report_id=report_id,
            mode=mode,
        )
        return handle

    def release(self, handle: RunHandle) -> None:
        self._runs.pop(handle.run_id, None)
        if self._exclusive.get(handle.report_id) == handle.run_id:
            del self._exclusive[handle.report_id]

    def cancel(
        self,
        report_id: str,
        section_id: str | None = None,
        reason: str = "Cancelled by user",
    ) -> int:
        """Signal cancellation to matching runs. Returns how many were signalled."""
        count = 0
        for handle in self.active(report_id):
            if section_id is not None and handle.section_id != section_id:
                continue
            handle.cancel(reason)
            count += 1
        return count

    def spawn(self, handle: RunHandle, events: AsyncIterator) -> AsyncIterator:
        """
        Drive a run's events in a background task.

        The returned iterator follows the run. Abandoning it only detaches
        the follower; the run itself keeps going.
        """
        queue: asyncio.Queue = asyncio.Queue()

        async def _drive():
            try:
                async for event in events:
                    if not handle.detached:
                        queue.put_nowait(event)
            finally:
                queue.put_nowait(_END)

        handle.task = self._track(_drive(), handle)
        return self._follow(handle, queue)

    def spawn_task(self, handle: RunHandle, coro: Coroutine) -> asyncio.Task:
        """Run a coroutine for ``handle`` in the background and return its task."""
        handle.task = self._track(coro, handle)
        return handle.task

    def _track(self, coro: Coroutine, handle: RunHandle) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"run-{handle.run_id}")
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background run {task.get_name()} crashed: {error}", exc_info=error)

    @staticmethod
    async def _follow(handle: RunHandle, queue: asyncio.Queue) -> AsyncIterator:
        try:
            while True:
                item = await queue.get()
                if item is _END:
                    return
                yield item
        finally:
            handle.detached = True

    async def shutdown(self) -> None:
        """Cancel every run and wait for background tasks to unwind."""
        for handle in list(self._runs.values()):
            handle.cancel("Server shutting down")
        tasks = list(self._tasks)
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=5.0)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
