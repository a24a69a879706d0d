"""
Background task runner.

Work that outlives the HTTP request (face extraction) runs as a tracked
asyncio.Task. A task that still raises after its retries is handed to its
on_failure hook, which records the failure on the owning record.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

TaskFactory = Callable[[], Awaitable[None]]
FailureHook = Callable[[BaseException], Awaitable[None]]


class TaskRunner:
    def __init__(self, retries: int = 0):
        self._retries = retries
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(
        self, name: str, factory: TaskFactory, on_failure: Optional[FailureHook] = None
    ) -> asyncio.Task:
        """Schedule `factory()` on the running loop. `factory` is called once per attempt."""
        task = asyncio.create_task(self._run(name, factory, on_failure), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, name: str, factory: TaskFactory, on_failure: Optional[FailureHook]):
        for attempt in range(self._retries + 1):
            try:
                await factory()
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if attempt < self._retries:
                    logger.warning(f"[{name}] attempt {attempt + 1} failed, retrying: {e}")
                    continue
                logger.error(f"[{name}] failed after {attempt + 1} attempt(s): {e}", exc_info=True)
                if on_failure is None:
                    return
                try:
                    await on_failure(e)
                except Exception as hook_error:
                    logger.error(f"[{name}] failure hook raised: {hook_error}", exc_info=True)

    async def drain(self):
        """Wait for every outstanding task, including ones spawned while draining."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
