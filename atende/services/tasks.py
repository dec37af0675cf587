import asyncio
from typing import Coroutine, Optional, Set

from atende.logging_config import get_logger

logger = get_logger("tasks")


class TaskSupervisor:
    """Owns fire-and-forget work (webhooks, memory updates, realtime emits).

    A detached task's failure is logged and never reaches the code that
    spawned it. ``shutdown`` waits briefly for stragglers, then cancels them.
    """

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()
        self._closing = False

    def spawn(self, coro: Coroutine, *, name: str, context: Optional[dict] = None) -> Optional[asyncio.Task]:
        if self._closing:
            coro.close()
            logger.warning("Detached task rejected during shutdown", extra={"context": {"task": name}})
            return None
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(lambda finished: self._finished(finished, context or {}))
        return task

    def _finished(self, task: asyncio.Task, context: dict) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Detached task failed",
                exc_info=(type(exc), exc, exc.__traceback__),
                extra={"context": {"task": task.get_name(), **context, "error": str(exc)}},
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every task spawned so far (used by tests and the worker)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, timeout: float = 5.0) -> None:
        self._closing = True
        if not self._tasks:
            return
        tasks = list(self._tasks)
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("Cancelled detached tasks on shutdown", extra={"context": {"count": len(pending)}})
