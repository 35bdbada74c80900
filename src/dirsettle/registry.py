"""Bookkeeping of active convergence loops."""

import asyncio
import logging
from typing import Dict, List, Optional

from .models import WatcherRunInfo

logger = logging.getLogger(__name__)


class ExecutionRegistry:
    """
    Tracks the convergence task and current run info per watcher.

    At most one task is registered per watcher id. Owned by the engine
    event loop.
    """

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}
        self._run_info: Dict[str, WatcherRunInfo] = {}

    def register(self, watcher_id: str, task: asyncio.Task) -> None:
        """
        Register the convergence task for a watcher.

        Raises:
            ValueError: If a task is already registered for the watcher
        """
        if watcher_id in self._tasks:
            raise ValueError(f"Execution already registered for watcher {watcher_id}")
        self._tasks[watcher_id] = task

    def release(self, watcher_id: str, task: asyncio.Task) -> bool:
        """
        Unregister ``task`` if it is still the registered one.

        Returns:
            True if the task was registered and its run info was cleared
        """
        if self._tasks.get(watcher_id) is not task:
            return False
        del self._tasks[watcher_id]
        self._run_info.pop(watcher_id, None)
        return True

    def has_execution(self, watcher_id: str) -> bool:
        return watcher_id in self._tasks

    def task(self, watcher_id: str) -> Optional[asyncio.Task]:
        return self._tasks.get(watcher_id)

    def set_run_info(self, watcher_id: str, info: WatcherRunInfo) -> None:
        self._run_info[watcher_id] = info

    def clear_run_info(self, watcher_id: str) -> None:
        self._run_info.pop(watcher_id, None)

    def run_info(self, watcher_id: str) -> Optional[WatcherRunInfo]:
        return self._run_info.get(watcher_id)

    def all_run_info(self) -> Dict[str, WatcherRunInfo]:
        return dict(self._run_info)

    def cancel(self, watcher_id: str) -> bool:
        """
        Request cancellation of a watcher's loop and drop its entry.

        The loop stops at its next await point and still runs its own
        cleanup; that cleanup finds the entry gone and leaves any newer
        registration alone.

        Returns:
            True if a task was registered
        """
        task = self._tasks.pop(watcher_id, None)
        self._run_info.pop(watcher_id, None)
        if task is None:
            return False
        task.cancel()
        logger.debug("Cancelled execution for watcher %s", watcher_id)
        return True

    def cancel_all(self) -> List[asyncio.Task]:
        """
        Cancel every registered loop.

        Returns:
            The cancelled tasks, so callers can await their cleanup
        """
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        self._tasks.clear()
        self._run_info.clear()
        return tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, watcher_id: str) -> bool:
        return watcher_id in self._tasks
