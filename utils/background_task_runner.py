"""
BackgroundTaskRunner: environment-aware async coordination

- Production: fire-and-forget coroutines run as background tasks (asyncio.create_task)
- Tests: the same coroutines are awaited inline so nothing outlives the test's event loop

Blocking persistence work is always offloaded with asyncio.to_thread so request handlers,
webhooks and scheduler jobs never block the event loop on a database round-trip.
"""

import asyncio
import os
import sys
import logging
from typing import Coroutine, Any, Callable, Optional

logger = logging.getLogger(__name__)


def _is_test_environment() -> bool:
    return bool(
        os.environ.get("PYTEST_CURRENT_TEST")
        or any("pytest" in arg for arg in sys.argv)
    )


class BackgroundTaskRunner:
    """
    Production Behavior:
    - run(): creates a tracked background task
    - run_io(): offloads to the default thread pool

    Test Behavior:
    - run(): awaits the coroutine inline
    - run_io(): same thread offload, awaited
    """

    def __init__(self, is_test: Optional[bool] = None):
        self._is_test = is_test
        self._active_tasks = set()
        logger.debug(f"BackgroundTaskRunner initialized (test_mode={is_test})")

    @property
    def is_test(self) -> bool:
        # Resolved per call: PYTEST_CURRENT_TEST only exists while a test runs
        if self._is_test is not None:
            return self._is_test
        return _is_test_environment()

    async def run(self, coro: Coroutine[Any, Any, Any]) -> Any:
        if self.is_test:
            return await coro

        loop = asyncio.get_running_loop()
        task = loop.create_task(coro)
        self._active_tasks.add(task)
        task.add_done_callback(self._active_tasks.discard)
        return task

    async def run_io(self, fn: Callable, *args, **kwargs) -> Any:
        """Execute a blocking function in a worker thread; exceptions propagate to the caller"""
        return await asyncio.to_thread(fn, *args, **kwargs)

    async def cleanup(self) -> None:
        """Cancel pending background tasks (shutdown / test teardown)"""
        if not self._active_tasks:
            return

        logger.info(f"BackgroundTaskRunner: Cleaning up {len(self._active_tasks)} active tasks")
        for task in self._active_tasks.copy():
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._active_tasks, return_exceptions=True)
        self._active_tasks.clear()


# Global instance for consistent behavior
_global_runner = BackgroundTaskRunner()


async def run_background_task(coro: Coroutine[Any, Any, Any]) -> Any:
    """Run coroutine in the background (awaited inline under tests)"""
    return await _global_runner.run(coro)


async def run_io_task(fn: Callable, *args, **kwargs) -> Any:
    """Execute blocking I/O (database work) off the event loop"""
    return await _global_runner.run_io(fn, *args, **kwargs)


async def cleanup_background_tasks() -> None:
    await _global_runner.cleanup()


__all__ = ['BackgroundTaskRunner', 'run_background_task', 'run_io_task', 'cleanup_background_tasks']
