"""OS change notification using the watchdog library."""

import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Set

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .config import EngineConfig

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[List[Path]], None]


class ChangeNotifier(ABC):
    """
    A single subscription to change signals for a set of directories.

    Delivery is coalesced and best-effort: the callback receives the paths
    that changed during one latency window, possibly on another thread.
    """

    @abstractmethod
    def start(self, paths: Iterable[Path], callback: ChangeCallback) -> None:
        """Subscribe to changes under ``paths``. Replaces any previous subscription."""

    @abstractmethod
    def stop(self) -> None:
        """Tear down the subscription. Safe to call when not started."""

    @property
    @abstractmethod
    def watched_paths(self) -> List[Path]:
        """Paths covered by the current subscription."""


class ChangeHandler(FileSystemEventHandler):
    """Handler that forwards the paths of watchdog events to a collector."""

    def __init__(self, collect: Callable[[Path], None], config: EngineConfig):
        super().__init__()
        self.collect = collect
        self.config = config

    def _emit(self, *paths) -> None:
        for raw in paths:
            if not raw:
                continue
            path = Path(raw.decode() if isinstance(raw, bytes) else raw)
            if self.config.should_ignore(path):
                continue
            self.collect(path)

    def on_created(self, event):
        self._emit(event.src_path)

    def on_deleted(self, event):
        self._emit(event.src_path)

    def on_modified(self, event):
        self._emit(event.src_path)

    def on_moved(self, event):
        self._emit(event.src_path, event.dest_path)


class WatchdogNotifier(ChangeNotifier):
    """
    Watchdog-backed notifier.

    One observer covers every subscribed path. Changed paths are buffered
    and delivered as a single batch once ``latency`` seconds have passed
    since the first change of the batch.
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        """
        Initialize the notifier.

        Args:
            config: Engine configuration (latency and ignore patterns)
        """
        self.config = config or EngineConfig()
        self._observer: Optional[Observer] = None
        self._callback: Optional[ChangeCallback] = None
        self._paths: List[Path] = []
        self._pending: Set[Path] = set()
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()

    def start(self, paths: Iterable[Path], callback: ChangeCallback) -> None:
        self.stop()

        observer = Observer()
        handler = ChangeHandler(self._collect, self.config)
        scheduled = []

        for path in dict.fromkeys(Path(p) for p in paths):
            if not path.is_dir():
                logger.warning("Not watching %s: not a directory", path)
                continue
            try:
                observer.schedule(handler, str(path), recursive=True)
                scheduled.append(path)
            except OSError as e:
                logger.error("Failed to watch %s: %s", path, e)

        if not scheduled:
            logger.info("No paths to watch, change notifier idle")
            return

        try:
            observer.start()
        except OSError as e:
            logger.error("Failed to start change notifier: %s", e)
            return

        with self._lock:
            self._callback = callback
            self._paths = scheduled
            self._observer = observer
        logger.info("Change notifier started for %d path(s)", len(scheduled))

    def stop(self) -> None:
        """
        Tear down the subscription and drop undelivered batches.

        Blocks until the observer thread exits (at most five seconds). Called
        from the engine loop on every rebuild, so a slow observer shutdown
        stalls the loop for that long.
        """
        with self._lock:
            observer = self._observer
            self._observer = None
            self._callback = None
            self._paths = []
            self._pending.clear()
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

        if observer is not None:
            observer.stop()
            observer.join(timeout=5.0)

    @property
    def watched_paths(self) -> List[Path]:
        with self._lock:
            return list(self._paths)

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._observer is not None

    def _collect(self, path: Path) -> None:
        with self._lock:
            if self._callback is None:
                return
            self._pending.add(path)
            if self._timer is None:
                self._timer = threading.Timer(self.config.notifier_latency, self._flush)
                self._timer.daemon = True
                self._timer.start()

    def _flush(self) -> None:
        with self._lock:
            self._timer = None
            batch = sorted(self._pending)
            self._pending.clear()
            callback = self._callback

        if batch and callback is not None:
            logger.debug("Delivering %d changed path(s)", len(batch))
            callback(batch)
