"""Runtime per-watcher state: phases and convergence anchors."""

import logging
from typing import Dict, Optional

from .fingerprint import DirectoryFingerprint
from .models import WatcherPhase

logger = logging.getLogger(__name__)


class EngineState:
    """
    Phase table and last-known fingerprints, keyed by watcher id.

    Owned by the engine event loop; only that loop mutates it. Nothing here
    is persisted, so every watcher reads as idle after a restart.
    """

    def __init__(self):
        self._phases: Dict[str, WatcherPhase] = {}
        self._last_known: Dict[str, DirectoryFingerprint] = {}

    def phase(self, watcher_id: str) -> WatcherPhase:
        return self._phases.get(watcher_id, WatcherPhase.IDLE)

    def set_phase(self, watcher_id: str, phase: WatcherPhase) -> None:
        previous = self.phase(watcher_id)
        if phase is WatcherPhase.IDLE:
            self._phases.pop(watcher_id, None)
        else:
            self._phases[watcher_id] = phase
        if previous is not phase:
            logger.debug("Watcher %s phase %s -> %s", watcher_id, previous.value, phase.value)

    def last_known(self, watcher_id: str) -> Optional[DirectoryFingerprint]:
        return self._last_known.get(watcher_id)

    def set_last_known(self, watcher_id: str, fingerprint: DirectoryFingerprint) -> None:
        self._last_known[watcher_id] = fingerprint

    def discard_last_known(self, watcher_id: str) -> None:
        self._last_known.pop(watcher_id, None)

    def forget(self, watcher_id: str) -> None:
        """Drop all runtime state for a watcher."""
        self._phases.pop(watcher_id, None)
        self._last_known.pop(watcher_id, None)

    def active_phases(self) -> Dict[str, WatcherPhase]:
        """Watchers whose phase is not idle."""
        return dict(self._phases)

    def clear(self) -> None:
        self._phases.clear()
        self._last_known.clear()
