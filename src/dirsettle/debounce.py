"""Per-watcher debounce timers on the engine event loop."""

import asyncio
import logging
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


class DebounceScheduler:
    """
    Single-shot, restartable delayed trigger per watcher.

    Every ``signal`` cancels the pending timer for that watcher and starts a
    new one, so ``on_expired`` fires exactly once after the last signal in a
    burst. Must be used from the event loop thread.
    """

    def __init__(
        self,
        on_expired: Callable[[str], None],
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        """
        Initialize the scheduler.

        Args:
            on_expired: Called with the watcher id when its window elapses
            loop: Event loop to schedule on (defaults to the running loop)
        """
        self.on_expired = on_expired
        self._loop = loop
        self._timers: Dict[str, asyncio.TimerHandle] = {}

    def signal(self, watcher_id: str, window: float) -> None:
        """
        Start or restart the debounce window for a watcher.

        Args:
            watcher_id: Watcher to debounce
            window: Quiet period in seconds
        """
        self.cancel(watcher_id)
        loop = self._loop or asyncio.get_running_loop()
        self._timers[watcher_id] = loop.call_later(window, self._fire, watcher_id)

    def _fire(self, watcher_id: str) -> None:
        if self._timers.pop(watcher_id, None) is None:
            return
        logger.debug("Debounce window elapsed for watcher %s", watcher_id)
        self.on_expired(watcher_id)

    def cancel(self, watcher_id: str) -> bool:
        """
        Cancel the pending timer for a watcher.

        Returns:
            True if a timer was pending
        """
        timer = self._timers.pop(watcher_id, None)
        if timer is None:
            return False
        timer.cancel()
        return True

    def cancel_all(self) -> int:
        """
        Cancel every pending timer.

        Returns:
            Number of timers cancelled
        """
        count = len(self._timers)
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        return count

    def is_pending(self, watcher_id: str) -> bool:
        return watcher_id in self._timers

    def __len__(self) -> int:
        return len(self._timers)
