"""
Background Task Runner

Owns the fire-and-forget side effects of a turn (turn records, validation
failure records). Every task is tracked until it finishes; failures are
logged and published as BackgroundTaskFailedEvent instead of vanishing.
"""

import asyncio
from typing import Awaitable, Dict, Optional, Set

from tutor.logger import get_logger
from .events import BackgroundTaskFailedEvent, EventBus

logger = get_logger(__name__)


class BackgroundTasks:
    """
    Tracks side-effect tasks for one owner (usually the pipeline).

    Usage:
        tasks = BackgroundTasks("pipeline", event_bus)
        tasks.spawn("record_turn", store.record_turn(record))
        await tasks.drain()
    """

    def __init__(self, owner: str, event_bus: Optional[EventBus] = None):
        self.owner = owner
        self._event_bus = event_bus
        self._tasks: Set[asyncio.Task] = set()
        self._names: Dict[asyncio.Task, str] = {}
        self.completed = 0
        self.failed = 0

    def spawn(self, name: str, coro: Awaitable[None]) -> asyncio.Task:
        """Start ``coro`` in the background under this owner."""
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        self._names[task] = name
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        name = self._names.pop(task, "task")

        if task.cancelled():
            logger.debug(f"Background task '{name}' of {self.owner} cancelled")
            return

        error = task.exception()
        if error is None:
            self.completed += 1
            return

        self.failed += 1
        logger.error(f"Background task '{name}' of {self.owner} failed: {error}")
        if self._event_bus is not None:
            asyncio.ensure_future(self._event_bus.publish(BackgroundTaskFailedEvent(
                task_name=name,
                owner=self.owner,
                error=str(error),
            )))

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait for outstanding tasks, cancelling any still running after ``timeout``."""
        if not self._tasks:
            return
        pending = set(self._tasks)
        done, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning(f"{len(still_running)} background task(s) of {self.owner} cancelled on drain")
            await asyncio.gather(*still_running, return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)
