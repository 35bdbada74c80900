"""Data models for the dirsettle package."""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Optional


DEFAULT_PERSONA_ID = "default"


class Responsiveness(Enum):
    """How quickly a watcher reacts after the last change it sees."""
    FAST = "fast"
    BALANCED = "balanced"
    PATIENT = "patient"

    @property
    def debounce_window(self) -> float:
        """Quiet period in seconds before the watcher acts."""
        return _DEBOUNCE_WINDOWS[self]

    @property
    def display_name(self) -> str:
        return self.value.capitalize()


_DEBOUNCE_WINDOWS = {
    Responsiveness.FAST: 1.0,
    Responsiveness.BALANCED: 3.0,
    Responsiveness.PATIENT: 10.0,
}


class WatcherPhase(Enum):
    """Runtime phase of a watcher. Never persisted."""
    IDLE = "idle"
    DEBOUNCING = "debouncing"
    PROCESSING = "processing"
    SETTLING = "settling"

    @property
    def accepts_signals(self) -> bool:
        """Whether change notifications are routed to the debouncer in this phase."""
        return self in (WatcherPhase.IDLE, WatcherPhase.DEBOUNCING)


@dataclass
class Watcher:
    """
    A directory watcher that dispatches agent tasks when its folder changes.

    Attributes:
        name: Display name
        instructions: Instructions sent to the agent on every dispatch
        id: Unique identifier
        persona_id: Agent to run (None = configured default agent)
        parameters: Extra key/value parameters passed through to the executor
        watch_path: Stored handle of the directory to monitor
        folder_path: Agent working directory (defaults to the watch path)
        is_enabled: Whether the watcher is active
        recursive: Whether subdirectories are fingerprinted
        responsiveness: Debounce window preset
        settle_seconds: Grace period after each dispatch before re-checking
        last_triggered_at: Unix timestamp of the last completed run
        last_session_id: Session produced by the last completed run
        created_at: Unix timestamp of creation
        updated_at: Unix timestamp of the last modification
    """
    name: str
    instructions: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    persona_id: Optional[str] = None
    parameters: Dict[str, str] = field(default_factory=dict)
    watch_path: Optional[str] = None
    folder_path: Optional[str] = None
    is_enabled: bool = True
    recursive: bool = False
    responsiveness: Responsiveness = Responsiveness.BALANCED
    settle_seconds: float = 2.0
    last_triggered_at: Optional[float] = None
    last_session_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def __post_init__(self):
        if self.settle_seconds < 0:
            raise ValueError(f"settle_seconds must not be negative: {self.settle_seconds}")

    @property
    def effective_folder_path(self) -> Optional[str]:
        """Working folder for the agent, falling back to the watched folder."""
        return self.folder_path or self.watch_path

    @property
    def debounce_window(self) -> float:
        return self.responsiveness.debounce_window

    @property
    def status_description(self) -> str:
        """Human-readable status line."""
        if not self.is_enabled:
            return "Paused"
        if self.last_triggered_at is not None:
            return f"Last triggered {_relative_time(self.last_triggered_at)}"
        return "Watching"

    @property
    def display_watch_path(self) -> str:
        """Watch path with the home directory abbreviated."""
        if not self.watch_path:
            return "No folder selected"
        home = str(Path.home())
        if self.watch_path == home or self.watch_path.startswith(home + "/"):
            return "~" + self.watch_path[len(home):]
        return self.watch_path

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "name": self.name,
            "instructions": self.instructions,
            "persona_id": self.persona_id,
            "parameters": dict(self.parameters),
            "watch_path": self.watch_path,
            "folder_path": self.folder_path,
            "is_enabled": self.is_enabled,
            "recursive": self.recursive,
            "responsiveness": self.responsiveness.value,
            "settle_seconds": self.settle_seconds,
            "last_triggered_at": self.last_triggered_at,
            "last_session_id": self.last_session_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Watcher":
        """Create from dictionary. Keys added after the first release are optional."""
        now = time.time()
        return cls(
            id=data["id"],
            name=data["name"],
            instructions=data["instructions"],
            persona_id=data.get("persona_id"),
            parameters=dict(data.get("parameters") or {}),
            watch_path=data.get("watch_path"),
            folder_path=data.get("folder_path"),
            is_enabled=bool(data.get("is_enabled", True)),
            recursive=bool(data.get("recursive", False)),
            responsiveness=Responsiveness(data.get("responsiveness", Responsiveness.BALANCED.value)),
            settle_seconds=float(data.get("settle_seconds", 2.0)),
            last_triggered_at=data.get("last_triggered_at"),
            last_session_id=data.get("last_session_id"),
            created_at=data.get("created_at", now),
            updated_at=data.get("updated_at", now),
        )


@dataclass(frozen=True)
class WatcherRunInfo:
    """
    Information about a dispatch currently in flight for a watcher.

    Attributes:
        watcher_id: Watcher that owns the run
        watcher_name: Display name at dispatch time
        persona_id: Agent the task was dispatched to
        session_id: Correlation id of the session the run produces
        change_count: Number of changed entries that triggered this dispatch
        iteration: Convergence loop iteration of this dispatch
        id: Unique run identifier
        started_at: Unix timestamp when the dispatch was accepted
    """
    watcher_id: str
    watcher_name: str
    persona_id: Optional[str]
    session_id: str
    change_count: int = 0
    iteration: int = 1
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "watcher_id": self.watcher_id,
            "watcher_name": self.watcher_name,
            "persona_id": self.persona_id,
            "session_id": self.session_id,
            "change_count": self.change_count,
            "iteration": self.iteration,
            "started_at": self.started_at,
        }


@dataclass(frozen=True)
class DispatchRequest:
    """A unit of work handed to the task executor."""
    prompt: str
    watcher_id: str
    title: Optional[str] = None
    persona_id: Optional[str] = None
    parameters: Dict[str, str] = field(default_factory=dict)
    folder_path: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass(frozen=True)
class DispatchHandle:
    """Returned by an accepted dispatch; used to await or cancel it."""
    id: str
    request: DispatchRequest
    session_id: Optional[str] = None


class DispatchStatus(Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of a dispatched task."""
    status: DispatchStatus
    session_id: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def completed(cls, session_id: Optional[str] = None) -> "DispatchResult":
        return cls(DispatchStatus.COMPLETED, session_id=session_id)

    @classmethod
    def cancelled(cls) -> "DispatchResult":
        return cls(DispatchStatus.CANCELLED)

    @classmethod
    def failed(cls, reason: str) -> "DispatchResult":
        return cls(DispatchStatus.FAILED, error=reason)


class EventKind(Enum):
    WATCHERS_CHANGED = "watchers_changed"
    EXECUTION_COMPLETED = "watcher_execution_completed"
    EXECUTION_FAILED = "watcher_execution_failed"


@dataclass(frozen=True)
class WatcherEvent:
    """Notification delivered to manager listeners."""
    kind: EventKind
    watcher_id: Optional[str] = None
    session_id: Optional[str] = None
    persona_id: Optional[str] = None
    error: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "watcher_id": self.watcher_id,
            "session_id": self.session_id,
            "persona_id": self.persona_id,
            "error": self.error,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class WatcherStatus:
    """Observable runtime status of one watcher."""
    watcher_id: str
    phase: WatcherPhase
    run_info: Optional[WatcherRunInfo] = None

    @property
    def is_running(self) -> bool:
        return self.phase in (WatcherPhase.PROCESSING, WatcherPhase.SETTLING)

    def to_dict(self) -> dict:
        return {
            "watcher_id": self.watcher_id,
            "phase": self.phase.value,
            "is_running": self.is_running,
            "run_info": self.run_info.to_dict() if self.run_info else None,
        }


def _relative_time(timestamp: float, now: Optional[float] = None) -> str:
    delta = max(0, int((now if now is not None else time.time()) - timestamp))
    if delta < 60:
        return "just now"
    if delta < 3600:
        return f"{delta // 60}m ago"
    if delta < 86400:
        return f"{delta // 3600}h ago"
    return f"{delta // 86400}d ago"
