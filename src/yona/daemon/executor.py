"""Per-session FIFO task executor.

One executor belongs to one session. Tasks run strictly one at a time in
enqueue order; every status transition is reported to registered listeners.

Cancellation is cooperative: a running task only becomes ``cancelled`` once its
unit of work observes the token and raises ``TaskCancelledError``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Protocol
from uuid import uuid4

from yona.daemon.errors import TaskCancelledError, TaskNotFoundError
from yona.daemon.models import TaskEvent, TaskInfo, TaskStatus, now_ms

logger = logging.getLogger(__name__)

TaskListener = Callable[[TaskEvent], None]


class CancellationToken:
    """Abort signal handed to a unit of work."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


class TaskWork(Protocol):
    """Unit of work executed for one task."""

    async def __call__(self, task: TaskInfo, token: CancellationToken) -> str | None:
        """Run the task; raise ``TaskCancelledError`` when the token fires."""
        raise NotImplementedError


async def simulated_work(task: TaskInfo, token: CancellationToken) -> str:
    """Wait ``task.duration_ms`` or until cancelled."""

    try:
        await asyncio.wait_for(token.wait(), timeout=task.duration_ms / 1000)
    except TimeoutError:
        return "ok"
    raise TaskCancelledError("cancelled")


@dataclass(slots=True)
class _RunningTask:
    task_id: str
    token: CancellationToken
    handle: asyncio.Task[None] | None = None


class TaskExecutor:
    """Owns one session's task table, FIFO queue, and running slot."""

    def __init__(
        self,
        session: str,
        *,
        work: TaskWork | None = None,
        default_duration_ms: int = 1000,
    ) -> None:
        self.session = session
        self.default_duration_ms = default_duration_ms
        self._work: TaskWork = work or simulated_work
        self._tasks: dict[str, TaskInfo] = {}
        self._queue: deque[str] = deque()
        self._running: _RunningTask | None = None
        self._listeners: list[TaskListener] = []

    def add_listener(self, listener: TaskListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: TaskListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def running_task_id(self) -> str | None:
        return self._running.task_id if self._running is not None else None

    @property
    def queued_task_ids(self) -> list[str]:
        return list(self._queue)

    def enqueue(self, name: str, duration_ms: int | float | None = None) -> TaskInfo:
        """Queue a task and start it right away when the running slot is free.

        Returns the task as it was at enqueue time.
        """

        task = TaskInfo(
            id=str(uuid4()),
            name=name,
            status=TaskStatus.QUEUED,
            created_at=now_ms(),
            duration_ms=duration_ms if duration_ms is not None else self.default_duration_ms,
        )
        self._tasks[task.id] = task
        self._queue.append(task.id)
        snapshot = replace(task)
        self._emit(task)
        self._run_next()
        return snapshot

    def list(self) -> list[TaskInfo]:
        return [replace(task) for task in self._tasks.values()]

    def get(self, task_id: str) -> TaskInfo | None:
        task = self._tasks.get(task_id)
        return replace(task) if task is not None else None

    def cancel(self, task_id: str) -> TaskInfo:
        """Cancel a queued task now, or signal a running one.

        Terminal tasks are returned unchanged. Raises ``TaskNotFoundError`` for
        ids this executor never created.
        """

        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)

        if task.status is TaskStatus.QUEUED:
            self._queue.remove(task_id)
            task.status = TaskStatus.CANCELLED
            task.ended_at = now_ms()
            self._emit(task)
        elif task.status is TaskStatus.RUNNING and self._running is not None:
            if not self._running.token.cancelled:
                logger.debug("Cancellation requested for running task %s", task_id)
            self._running.token.cancel()
        return replace(task)

    def cancel_all(self) -> list[TaskInfo]:
        """Cancel every non-terminal task; queued ones first, then the running one."""

        for task_id in list(self._queue):
            self.cancel(task_id)
        if self._running is not None:
            self.cancel(self._running.task_id)
        return self.list()

    async def aclose(self) -> None:
        """Drop queued work and abort the running task (daemon shutdown)."""

        for task_id in list(self._queue):
            self.cancel(task_id)
        running = self._running
        if running is None or running.handle is None:
            return
        running.token.cancel()
        running.handle.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await running.handle
        # A handle cancelled before its first step never reaches _execute.
        task = self._tasks[running.task_id]
        if not task.status.is_terminal:
            task.status = TaskStatus.CANCELLED
            task.error = "cancelled"
            self._finish(task, start_next=False)

    def _run_next(self) -> None:
        if self._running is not None or not self._queue:
            return

        task = self._tasks[self._queue.popleft()]
        task.status = TaskStatus.RUNNING
        task.started_at = now_ms()
        running = _RunningTask(task_id=task.id, token=CancellationToken())
        self._running = running
        self._emit(task)
        running.handle = asyncio.get_running_loop().create_task(
            self._execute(task, running.token),
            name=f"yona-task-{self.session}-{task.id}",
        )

    async def _execute(self, task: TaskInfo, token: CancellationToken) -> None:
        try:
            result = await self._work(task, token)
        except TaskCancelledError:
            task.status = TaskStatus.CANCELLED
            task.error = "cancelled"
        except asyncio.CancelledError:
            task.status = TaskStatus.CANCELLED
            task.error = "cancelled"
            self._finish(task, start_next=False)
            raise
        except Exception as error:  # noqa: BLE001
            logger.warning("Task %s (%s) failed: %s", task.id, task.name, error)
            task.status = TaskStatus.FAILED
            task.error = str(error) or type(error).__name__
        else:
            task.status = TaskStatus.COMPLETED
            task.result = result
        self._finish(task, start_next=True)

    def _finish(self, task: TaskInfo, *, start_next: bool) -> None:
        task.ended_at = now_ms()
        self._running = None
        self._emit(task)
        if start_next:
            self._run_next()

    def _emit(self, task: TaskInfo) -> None:
        logger.debug("Task %s [%s] %s -> %s", task.id, self.session, task.name, task.status.value)
        event = TaskEvent(
            session=self.session,
            task_id=task.id,
            name=task.name,
            status=task.status,
            timestamp=now_ms(),
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Task event listener failed for %s", task.id)
