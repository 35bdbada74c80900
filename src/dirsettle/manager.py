"""Watcher facade: configuration CRUD wired to the runtime engine."""

import asyncio
import functools
import logging
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

from .config import EngineConfig
from .coordinator import NotificationCoordinator
from .debounce import DebounceScheduler
from .engine import ConvergenceEngine
from .exceptions import CaptureError, ResolutionError, WatcherNotFoundError
from .executor import TaskExecutor
from .fingerprint import capture
from .models import (
    DEFAULT_PERSONA_ID,
    DispatchResult,
    DispatchStatus,
    EventKind,
    Responsiveness,
    Watcher,
    WatcherEvent,
    WatcherPhase,
    WatcherRunInfo,
    WatcherStatus,
)
from .notifier import ChangeNotifier, WatchdogNotifier
from .registry import ExecutionRegistry
from .resolver import PathResolver, WatchHandleResolver
from .state import EngineState
from .store import WatcherStore

logger = logging.getLogger(__name__)

Listener = Callable[[WatcherEvent], None]


class WatcherManager:
    """
    Owns the watcher list and every runtime component.

    All methods must be called on the engine event loop once ``start()`` has
    run; configuration methods also work before start (they persist but do
    not touch the change subscription).
    """

    def __init__(
        self,
        store: WatcherStore,
        executor: TaskExecutor,
        config: Optional[EngineConfig] = None,
        notifier: Optional[ChangeNotifier] = None,
        resolver: Optional[WatchHandleResolver] = None,
    ):
        """
        Initialize the manager.

        Args:
            store: Persistence for watcher definitions
            executor: Task executor for dispatches
            config: Engine configuration
            notifier: OS change notifier (defaults to watchdog)
            resolver: Watch handle resolver (defaults to plain paths)
        """
        self.config = config or EngineConfig()
        self.store = store
        self.executor = executor
        self.resolver = resolver or PathResolver()

        self.state = EngineState()
        self.registry = ExecutionRegistry()
        self.scheduler = DebounceScheduler(self._debounce_fired)
        self.coordinator = NotificationCoordinator(
            self.state,
            self.scheduler,
            notifier or WatchdogNotifier(self.config),
            self.resolver,
            self.watcher,
        )
        self.engine = ConvergenceEngine(
            self.state,
            self.registry,
            executor,
            self.resolver,
            self.config,
            excluded_for=self.excluded_subpaths,
            on_result=self._handle_result,
        )

        self._watchers: List[Watcher] = []
        self._listeners: List[Listener] = []
        self._coordinator_task: Optional[asyncio.Task] = None
        self._started = False

        self.refresh()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Seed baseline fingerprints and start listening for changes."""
        if self._started:
            return

        self.coordinator.bind(asyncio.get_running_loop())
        self._started = True

        for watcher in self._watchers:
            if watcher.is_enabled:
                await self._seed_fingerprint(watcher)

        self.coordinator.rebuild(self._watchers)
        self._coordinator_task = asyncio.create_task(self.coordinator.run(), name="coordinator")
        logger.info("WatcherManager started with %d watcher(s)", len(self._watchers))

    async def stop(self) -> None:
        """Cancel every loop and timer and tear down the change subscription."""
        if not self._started:
            return
        self._started = False

        self.scheduler.cancel_all()
        self.coordinator.stop()

        tasks = self.registry.cancel_all()
        if self._coordinator_task is not None:
            self._coordinator_task.cancel()
            tasks.append(self._coordinator_task)
            self._coordinator_task = None

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self.state.clear()
        logger.info("WatcherManager stopped")

    @property
    def is_started(self) -> bool:
        return self._started

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def refresh(self) -> None:
        """Reload watchers from the store."""
        self._watchers = self.store.load_all()

    @property
    def watchers(self) -> List[Watcher]:
        return list(self._watchers)

    def watcher(self, watcher_id: str) -> Optional[Watcher]:
        for watcher in self._watchers:
            if watcher.id == watcher_id:
                return watcher
        return None

    def _require(self, watcher_id: str) -> Watcher:
        watcher = self.watcher(watcher_id)
        if watcher is None:
            raise WatcherNotFoundError(f"Watcher not found: {watcher_id}")
        return watcher

    def create(
        self,
        name: str,
        instructions: str,
        persona_id: Optional[str] = None,
        parameters: Optional[Dict[str, str]] = None,
        watch_path: Optional[str] = None,
        folder_path: Optional[str] = None,
        is_enabled: bool = True,
        recursive: bool = False,
        responsiveness: Responsiveness = Responsiveness.BALANCED,
        settle_seconds: Optional[float] = None,
    ) -> Watcher:
        """Create and persist a new watcher."""
        watcher = Watcher(
            name=name,
            instructions=instructions,
            persona_id=persona_id,
            parameters=dict(parameters or {}),
            watch_path=watch_path,
            folder_path=folder_path,
            is_enabled=is_enabled,
            recursive=recursive,
            responsiveness=responsiveness,
            settle_seconds=(
                self.config.default_settle_seconds if settle_seconds is None else settle_seconds
            ),
        )

        self.store.save(watcher)
        self._after_change()
        logger.info("Created watcher: %s", watcher.name)
        return watcher

    def update(self, watcher: Watcher) -> Watcher:
        """
        Persist changes to an existing watcher.

        Raises:
            WatcherNotFoundError: If the watcher does not exist
        """
        # Callers may pass back the cached instance edited in place
        previous = self.store.load(watcher.id)
        if previous is None:
            raise WatcherNotFoundError(f"Watcher not found: {watcher.id}")
        watcher.updated_at = time.time()
        self.store.save(watcher)

        if not watcher.is_enabled:
            self._teardown(watcher.id)
        elif (previous.watch_path, previous.recursive) != (watcher.watch_path, watcher.recursive):
            self.state.discard_last_known(watcher.id)

        self._after_change()
        logger.info("Updated watcher: %s", watcher.name)
        return watcher

    def delete(self, watcher_id: str) -> bool:
        """Delete a watcher and all of its runtime state."""
        self._teardown(watcher_id)

        if not self.store.delete(watcher_id):
            return False

        self._after_change()
        logger.info("Deleted watcher: %s", watcher_id)
        return True

    def set_enabled(self, watcher_id: str, enabled: bool) -> Watcher:
        """
        Enable or pause a watcher.

        Raises:
            WatcherNotFoundError: If the watcher does not exist
        """
        watcher = self._require(watcher_id)
        watcher.is_enabled = enabled
        watcher.updated_at = time.time()
        self.store.save(watcher)

        if not enabled:
            self._teardown(watcher_id)

        self._after_change()
        logger.info("%s watcher: %s", "Enabled" if enabled else "Paused", watcher.name)
        return watcher

    def _after_change(self) -> None:
        self.refresh()
        if self._started:
            self.coordinator.rebuild(self._watchers)
        self._emit(WatcherEvent(EventKind.WATCHERS_CHANGED))

    def _teardown(self, watcher_id: str) -> None:
        self.scheduler.cancel(watcher_id)
        self.registry.cancel(watcher_id)
        self.state.forget(watcher_id)

    def excluded_subpaths(self, watcher: Watcher) -> Set[Path]:
        """Folders of other enabled watchers nested inside this watcher's folder."""
        try:
            watch_path = self.resolver.resolve(watcher)
        except ResolutionError:
            return set()

        excluded = set()
        for other in self._watchers:
            if other.id == watcher.id or not other.is_enabled:
                continue
            try:
                other_path = self.resolver.resolve(other)
            except ResolutionError:
                continue
            if watch_path in other_path.parents:
                excluded.add(other_path)
        return excluded

    # ------------------------------------------------------------------
    # Runtime control and status
    # ------------------------------------------------------------------

    def run_now(self, watcher_id: str) -> Optional[asyncio.Task]:
        """
        Trigger a watcher immediately, bypassing the debounce window.

        The last known fingerprint is discarded so the agent sees the whole
        folder as new. No-op unless the watcher is idle.

        Raises:
            WatcherNotFoundError: If the watcher does not exist
        """
        watcher = self._require(watcher_id)

        phase = self.state.phase(watcher_id)
        if phase is not WatcherPhase.IDLE:
            logger.info("run_now skipped for %s: phase is %s", watcher.name, phase.value)
            return None

        self.scheduler.cancel(watcher_id)
        self.state.discard_last_known(watcher_id)
        return self.engine.process_current_state(watcher)

    def cancel_execution(self, watcher_id: str) -> bool:
        """Cancel a running loop and any pending debounce. Returns True if a loop was running."""
        self.scheduler.cancel(watcher_id)
        cancelled = self.registry.cancel(watcher_id)
        self.state.set_phase(watcher_id, WatcherPhase.IDLE)
        return cancelled

    def phase(self, watcher_id: str) -> WatcherPhase:
        return self.state.phase(watcher_id)

    def run_info(self, watcher_id: str) -> Optional[WatcherRunInfo]:
        return self.registry.run_info(watcher_id)

    def is_running(self, watcher_id: str) -> bool:
        return self.status(watcher_id).is_running

    def status(self, watcher_id: str) -> WatcherStatus:
        return WatcherStatus(
            watcher_id=watcher_id,
            phase=self.state.phase(watcher_id),
            run_info=self.registry.run_info(watcher_id),
        )

    def statuses(self) -> Dict[str, WatcherStatus]:
        return {w.id: self.status(w.id) for w in self._watchers}

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, event: WatcherEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error("Watcher event listener failed: %s", e, exc_info=True)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _seed_fingerprint(self, watcher: Watcher) -> None:
        try:
            path = self.resolver.resolve(watcher)
            excluded = self.excluded_subpaths(watcher)
            fingerprint = await asyncio.get_running_loop().run_in_executor(
                None, functools.partial(capture, path, watcher.recursive, excluded)
            )
        except (ResolutionError, CaptureError) as e:
            logger.warning("No baseline fingerprint for '%s': %s", watcher.name, e)
            return

        # A loop started while the walk ran owns the anchor now
        if not self.registry.has_execution(watcher.id):
            self.state.set_last_known(watcher.id, fingerprint)

    def _debounce_fired(self, watcher_id: str) -> None:
        watcher = self.watcher(watcher_id)
        if watcher is None or not watcher.is_enabled:
            self.state.set_phase(watcher_id, WatcherPhase.IDLE)
            return
        self.engine.process_current_state(watcher)

    def _handle_result(self, watcher: Watcher, result: DispatchResult) -> None:
        if result.status is DispatchStatus.COMPLETED:
            current = self.store.load(watcher.id)
            if current is not None:
                current.last_triggered_at = time.time()
                current.last_session_id = result.session_id
                self.store.save(current)
                self.refresh()

            self._emit(WatcherEvent(
                EventKind.EXECUTION_COMPLETED,
                watcher_id=watcher.id,
                session_id=result.session_id,
                persona_id=watcher.persona_id or DEFAULT_PERSONA_ID,
            ))
            logger.info("Watcher completed: %s", watcher.name)
        elif result.status is DispatchStatus.CANCELLED:
            logger.info("Watcher cancelled: %s", watcher.name)
        else:
            logger.warning("Watcher failed: %s - %s", watcher.name, result.error)
            self._emit(WatcherEvent(
                EventKind.EXECUTION_FAILED,
                watcher_id=watcher.id,
                persona_id=watcher.persona_id or DEFAULT_PERSONA_ID,
                error=result.error,
            ))
