"""Routes OS change signals to per-watcher debouncing."""

import asyncio
import logging
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from .debounce import DebounceScheduler
from .exceptions import ResolutionError
from .models import Watcher, WatcherPhase
from .notifier import ChangeNotifier
from .resolver import WatchHandleResolver
from .state import EngineState

logger = logging.getLogger(__name__)


class NotificationCoordinator:
    """
    Owns the single change subscription covering every enabled watcher.

    Batches from the notifier arrive on arbitrary threads; they are queued
    onto the engine loop and handled there in arrival order. A watcher only
    reacts while idle or debouncing, so the writes of its own in-flight
    dispatch never re-arm it.
    """

    def __init__(
        self,
        state: EngineState,
        scheduler: DebounceScheduler,
        notifier: ChangeNotifier,
        resolver: WatchHandleResolver,
        get_watcher: Callable[[str], Optional[Watcher]],
    ):
        """
        Initialize the coordinator.

        Args:
            state: Engine phase table
            scheduler: Debounce scheduler to signal
            notifier: OS change notifier
            resolver: Resolver for watch handles
            get_watcher: Lookup of the current watcher definition by id
        """
        self.state = state
        self.scheduler = scheduler
        self.notifier = notifier
        self.resolver = resolver
        self.get_watcher = get_watcher
        self._watch_paths: Dict[str, Path] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        """Attach to the engine event loop. Must be called from that loop."""
        self._loop = loop
        self._queue = asyncio.Queue()

    def rebuild(self, watchers: Iterable[Watcher]) -> List[Path]:
        """
        Tear down and recreate the subscription for the enabled watchers.

        Returns:
            The paths now subscribed
        """
        self.notifier.stop()

        watch_paths: Dict[str, Path] = {}
        for watcher in watchers:
            if not watcher.is_enabled:
                continue
            try:
                watch_paths[watcher.id] = self.resolver.resolve(watcher)
            except ResolutionError as e:
                logger.warning("Skipping watcher '%s': %s", watcher.name, e)

        self._watch_paths = watch_paths
        if not watch_paths:
            logger.info("No enabled watchers with valid paths, change subscription stopped")
            return []

        paths = list(dict.fromkeys(watch_paths.values()))
        self.notifier.start(paths, self._on_notifier_batch)
        logger.info("Change subscription rebuilt for %d path(s)", len(paths))
        return paths

    def stop(self) -> None:
        self.notifier.stop()
        self._watch_paths = {}

    def watch_path(self, watcher_id: str) -> Optional[Path]:
        return self._watch_paths.get(watcher_id)

    def _on_notifier_batch(self, paths: List[Path]) -> None:
        """Notifier thread entry point."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._queue.put_nowait, list(paths))

    async def run(self) -> None:
        """Drain queued batches on the engine loop until cancelled."""
        if self._queue is None:
            self.bind(asyncio.get_running_loop())
        while True:
            paths = await self._queue.get()
            try:
                self.handle_changes(paths)
            except Exception as e:
                logger.error("Failed to handle change batch: %s", e, exc_info=True)

    def handle_changes(self, changed_paths: Iterable[Path]) -> List[str]:
        """
        Route one batch of changed paths.

        Returns:
            Ids of the watchers whose debounce timer was (re)started
        """
        changed = [Path(p) for p in changed_paths]
        signalled = []

        for watcher_id, watch_path in list(self._watch_paths.items()):
            if not self.state.phase(watcher_id).accepts_signals:
                continue

            watcher = self.get_watcher(watcher_id)
            if watcher is None or not watcher.is_enabled:
                continue

            if not any(_is_within(path, watch_path) for path in changed):
                continue

            self.state.set_phase(watcher_id, WatcherPhase.DEBOUNCING)
            self.scheduler.signal(watcher_id, watcher.debounce_window)
            signalled.append(watcher_id)

        return signalled


def _is_within(path: Path, root: Path) -> bool:
    return path == root or root in path.parents
