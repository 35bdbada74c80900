"""
dirsettle

Directory watchers that dispatch agent tasks when a folder changes and keep
re-checking until the folder settles.

Features:
- Fingerprint-driven change detection (size + mtime, Merkle digest)
- Per-watcher debouncing with responsiveness presets
- Convergence loop with phantom-event suppression and an iteration cap
- Single shared change subscription across all enabled watchers
- SQLite persistence, REST API and CLI
"""

from .models import (
    DEFAULT_PERSONA_ID,
    Responsiveness,
    WatcherPhase,
    Watcher,
    WatcherRunInfo,
    DispatchRequest,
    DispatchHandle,
    DispatchStatus,
    DispatchResult,
    EventKind,
    WatcherEvent,
    WatcherStatus,
)

from .config import EngineConfig

from .exceptions import (
    WatcherError,
    ResolutionError,
    CaptureError,
    WatcherNotFoundError,
    StoreError,
    ExecutorError,
)

from .fingerprint import FileSignature, FingerprintDiff, DirectoryFingerprint, capture
from .debounce import DebounceScheduler
from .state import EngineState
from .registry import ExecutionRegistry
from .resolver import WatchHandleResolver, PathResolver
from .store import WatcherStore, SQLiteWatcherStore
from .notifier import ChangeNotifier, ChangeHandler, WatchdogNotifier
from .executor import TaskExecutor, AgentServerExecutor
from .coordinator import NotificationCoordinator
from .engine import ConvergenceEngine, build_dispatch_prompt
from .manager import WatcherManager


__all__ = [
    # Models
    "DEFAULT_PERSONA_ID",
    "Responsiveness",
    "WatcherPhase",
    "Watcher",
    "WatcherRunInfo",
    "DispatchRequest",
    "DispatchHandle",
    "DispatchStatus",
    "DispatchResult",
    "EventKind",
    "WatcherEvent",
    "WatcherStatus",
    # Config
    "EngineConfig",
    # Exceptions
    "WatcherError",
    "ResolutionError",
    "CaptureError",
    "WatcherNotFoundError",
    "StoreError",
    "ExecutorError",
    # Components
    "FileSignature",
    "FingerprintDiff",
    "DirectoryFingerprint",
    "capture",
    "DebounceScheduler",
    "EngineState",
    "ExecutionRegistry",
    "WatchHandleResolver",
    "PathResolver",
    "WatcherStore",
    "SQLiteWatcherStore",
    "ChangeNotifier",
    "ChangeHandler",
    "WatchdogNotifier",
    "TaskExecutor",
    "AgentServerExecutor",
    "NotificationCoordinator",
    "ConvergenceEngine",
    "build_dispatch_prompt",
    # Facade
    "WatcherManager",
]

__version__ = "0.1.0"
