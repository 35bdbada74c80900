"""
Convergence loop.

Change notifications only say that *something* changed. The work itself is
driven by fingerprint diffs: fingerprint the folder, remember that snapshot
as the last known state, dispatch the agent, let its writes settle, then
fingerprint again. The loop ends once a fresh fingerprint matches the last
known one. Because the last known state is always the snapshot taken
*before* a dispatch, anything that changed during or after the dispatch
(the agent's own writes or someone else's) shows up as a diff on the next
pass. An idempotent agent on a stable folder makes no changes, so the loop
reaches a fixed point; ``max_iterations`` bounds folders that never stop
changing (sync clients, build output).
"""

import asyncio
import functools
import logging
from pathlib import Path
from typing import Callable, Iterable, Optional, Set

from .config import EngineConfig
from .exceptions import CaptureError, ResolutionError
from .executor import TaskExecutor
from .fingerprint import DirectoryFingerprint, capture
from .models import (
    DispatchRequest,
    DispatchResult,
    DispatchStatus,
    Watcher,
    WatcherPhase,
    WatcherRunInfo,
)
from .registry import ExecutionRegistry
from .resolver import WatchHandleResolver
from .state import EngineState

logger = logging.getLogger(__name__)

CaptureFn = Callable[[Path, bool, Iterable[Path]], DirectoryFingerprint]

FIRST_PASS_FOOTER = (
    "Changes were detected in the watched folder. Inspect the current state "
    "of the directory and take action."
)

FOLLOW_UP_FOOTER = (
    "This is a follow-up check after a previous organizing pass. Quickly verify "
    "the directory state with a single listing. If everything looks organized, "
    "return immediately without further inspection. Only take action if you see "
    "clearly unorganized files."
)

IDEMPOTENCY_FOOTER = (
    "If all files are already properly organized, return without making changes. "
    "Do not re-organize files that are already in their correct location."
)


def build_dispatch_prompt(watcher: Watcher, iteration: int = 1) -> str:
    """Build the prompt for one dispatch of a watcher's convergence loop."""
    footer = FIRST_PASS_FOOTER if iteration == 1 else FOLLOW_UP_FOOTER
    return f"{watcher.instructions}\n\n{footer}\n\n{IDEMPOTENCY_FOOTER}\n"


class ConvergenceEngine:
    """Runs one convergence loop per triggered watcher."""

    def __init__(
        self,
        state: EngineState,
        registry: ExecutionRegistry,
        executor: TaskExecutor,
        resolver: WatchHandleResolver,
        config: Optional[EngineConfig] = None,
        excluded_for: Optional[Callable[[Watcher], Set[Path]]] = None,
        on_result: Optional[Callable[[Watcher, DispatchResult], None]] = None,
        capture_fn: CaptureFn = capture,
    ):
        """
        Initialize the engine.

        Args:
            state: Phase table and last-known fingerprints
            registry: Active loop bookkeeping
            executor: Where dispatches are sent
            resolver: Resolver for watch handles
            config: Engine configuration (iteration cap)
            excluded_for: Subpaths to leave out of a watcher's fingerprint
            on_result: Called with every dispatch result
            capture_fn: Fingerprint capture function
        """
        self.state = state
        self.registry = registry
        self.executor = executor
        self.resolver = resolver
        self.config = config or EngineConfig()
        self.excluded_for = excluded_for or (lambda watcher: set())
        self.on_result = on_result
        self.capture_fn = capture_fn

    def process_current_state(self, watcher: Watcher) -> Optional[asyncio.Task]:
        """
        Start a convergence loop for a watcher if there is anything to do.

        Must be called on the engine loop. The precondition checks and the
        phantom check run synchronously so no other trigger can slip in
        before the loop is registered. That first capture walks the folder
        on the loop thread, so a very large recursive tree stalls other
        watchers and the API for the length of the walk. Captures inside
        the loop run on the default executor.

        The phase is ``processing`` as soon as the loop is registered.

        Returns:
            The registered loop task, or None if nothing was started
        """
        watcher_id = watcher.id
        phase = self.state.phase(watcher_id)

        if not phase.accepts_signals:
            logger.info("[%s] dispatch skipped: phase is %s", watcher.name, phase.value)
            return None

        if self.registry.has_execution(watcher_id):
            logger.warning("[%s] dispatch skipped: execution already registered", watcher.name)
            self.state.set_phase(watcher_id, WatcherPhase.IDLE)
            return None

        try:
            watch_path = self.resolver.resolve(watcher)
        except ResolutionError as e:
            logger.warning("[%s] cannot resolve watch path: %s", watcher.name, e)
            self.state.set_phase(watcher_id, WatcherPhase.IDLE)
            return None

        excluded = self.excluded_for(watcher)

        try:
            initial = self.capture_fn(watch_path, watcher.recursive, excluded)
        except CaptureError as e:
            logger.error("[%s] fingerprint capture failed: %s", watcher.name, e)
            self.state.set_phase(watcher_id, WatcherPhase.IDLE)
            return None

        known = self.state.last_known(watcher_id)
        if known is not None and not initial.changed(known):
            logger.debug("[%s] phantom event, nothing changed", watcher.name)
            self.state.set_phase(watcher_id, WatcherPhase.IDLE)
            return None

        task = asyncio.get_running_loop().create_task(
            self._converge(watcher, watch_path, excluded, initial),
            name=f"converge-{watcher_id}",
        )
        self.registry.register(watcher_id, task)
        self.state.set_phase(watcher_id, WatcherPhase.PROCESSING)
        return task

    async def _capture(self, watch_path: Path, recursive: bool, excluded: Set[Path]) -> DirectoryFingerprint:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, functools.partial(self.capture_fn, watch_path, recursive, excluded)
        )

    async def _converge(
        self,
        watcher: Watcher,
        watch_path: Path,
        excluded: Set[Path],
        initial: DirectoryFingerprint,
    ) -> None:
        watcher_id = watcher.id
        task = asyncio.current_task()
        max_iterations = self.config.max_iterations
        fingerprint = initial
        iteration = 0

        try:
            while True:
                iteration += 1

                if iteration > max_iterations:
                    logger.warning(
                        "[%s] hit max iterations (%d), forcing idle", watcher.name, max_iterations
                    )
                    try:
                        latest = await self._capture(watch_path, watcher.recursive, excluded)
                        self.state.set_last_known(watcher_id, latest)
                    except CaptureError as e:
                        logger.error("[%s] final fingerprint capture failed: %s", watcher.name, e)
                    break

                if iteration > 1:
                    try:
                        fingerprint = await self._capture(watch_path, watcher.recursive, excluded)
                    except CaptureError as e:
                        logger.error(
                            "[%s] fingerprint capture failed (iteration %d): %s",
                            watcher.name, iteration, e,
                        )
                        break

                known = self.state.last_known(watcher_id)
                if known is not None and not fingerprint.changed(known):
                    if iteration > 1:
                        logger.info("[%s] converged after %d iteration(s)", watcher.name, iteration - 1)
                    else:
                        logger.info("[%s] phantom event, skipping", watcher.name)
                    break

                diff = fingerprint.diff(known)

                # Pre-dispatch snapshot: whatever happens from here on diffs against it
                self.state.set_last_known(watcher_id, fingerprint)
                self.state.set_phase(watcher_id, WatcherPhase.PROCESSING)
                logger.info(
                    "[%s] phase -> processing (iteration %d, %s)",
                    watcher.name, iteration, diff.summary(),
                )

                result = await self._dispatch(watcher, iteration, diff.total_count)
                if result is None:
                    # Nothing was issued, so the change is still unprocessed
                    if known is None:
                        self.state.discard_last_known(watcher_id)
                    else:
                        self.state.set_last_known(watcher_id, known)
                    break
                if result.status is not DispatchStatus.COMPLETED:
                    break

                self.state.set_phase(watcher_id, WatcherPhase.SETTLING)
                logger.info("[%s] phase -> settling (%.1fs)", watcher.name, watcher.settle_seconds)
                await asyncio.sleep(watcher.settle_seconds)
        except asyncio.CancelledError:
            logger.info("[%s] convergence loop cancelled", watcher.name)
            raise
        except Exception as e:
            logger.error("[%s] convergence loop failed: %s", watcher.name, e, exc_info=True)
        finally:
            if self.registry.release(watcher_id, task) or not self.registry.has_execution(watcher_id):
                self.state.set_phase(watcher_id, WatcherPhase.IDLE)
                logger.info("[%s] phase -> idle", watcher.name)

    async def _dispatch(
        self,
        watcher: Watcher,
        iteration: int,
        change_count: int,
    ) -> Optional[DispatchResult]:
        """Dispatch one unit of work and wait for it. Returns None if rejected."""
        folder = self.resolver.resolve_working_folder(watcher)
        request = DispatchRequest(
            prompt=build_dispatch_prompt(watcher, iteration),
            watcher_id=watcher.id,
            title=watcher.name,
            persona_id=watcher.persona_id,
            parameters=dict(watcher.parameters),
            folder_path=str(folder) if folder else watcher.effective_folder_path,
        )

        try:
            handle = await self.executor.dispatch(request)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("[%s] dispatch raised: %s", watcher.name, e, exc_info=True)
            handle = None

        if handle is None:
            logger.warning("[%s] dispatch rejected (iteration %d)", watcher.name, iteration)
            return None

        self.registry.set_run_info(
            watcher.id,
            WatcherRunInfo(
                watcher_id=watcher.id,
                watcher_name=watcher.name,
                persona_id=watcher.persona_id,
                session_id=handle.session_id or handle.id,
                change_count=change_count,
                iteration=iteration,
            ),
        )

        try:
            result = await self.executor.await_completion(handle)
        except asyncio.CancelledError:
            self.executor.cancel(handle)
            raise
        except Exception as e:
            logger.error("[%s] executor error: %s", watcher.name, e, exc_info=True)
            result = DispatchResult.failed(str(e))

        if self.on_result is not None:
            try:
                self.on_result(watcher, result)
            except Exception as e:
                logger.error("[%s] result handler failed: %s", watcher.name, e, exc_info=True)

        return result
