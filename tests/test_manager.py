"""Tests for the watcher manager facade."""

import asyncio

import pytest

from src.dirsettle import models
from src.dirsettle.exceptions import WatcherNotFoundError
from src.dirsettle.fingerprint import capture
from src.dirsettle.manager import WatcherManager
from src.dirsettle.models import DispatchResult, EventKind, Responsiveness, WatcherPhase
from src.dirsettle.store import SQLiteWatcherStore


@pytest.fixture
def store(config):
    store = SQLiteWatcherStore(config.db_path)
    yield store
    store.close()


@pytest.fixture
def executor(make_executor):
    return make_executor()


@pytest.fixture
def manager(store, executor, config, fake_notifier):
    return WatcherManager(store, executor, config, notifier=fake_notifier)


@pytest.fixture
def events(manager):
    received = []
    manager.add_listener(received.append)
    return received


@pytest.fixture
def fast_debounce(monkeypatch):
    monkeypatch.setitem(models._DEBOUNCE_WINDOWS, Responsiveness.FAST, 0.05)


def _create(manager, watch_dir, **kwargs):
    kwargs.setdefault("settle_seconds", 0.0)
    return manager.create(
        name=kwargs.pop("name", "Inbox"),
        instructions="Sort incoming files.",
        watch_path=str(watch_dir),
        **kwargs,
    )


class TestConfiguration:
    """CRUD through the facade."""

    def test_create_persists_and_emits(self, manager, store, watch_dir, events):
        watcher = _create(manager, watch_dir)

        assert store.load(watcher.id) == watcher
        assert manager.watcher(watcher.id) == watcher
        assert [e.kind for e in events] == [EventKind.WATCHERS_CHANGED]

    def test_create_uses_default_settle(self, manager, config, watch_dir):
        watcher = manager.create(name="w", instructions="x", watch_path=str(watch_dir))
        assert watcher.settle_seconds == config.default_settle_seconds

    def test_watchers_loaded_on_construction(self, store, executor, config, fake_notifier, watch_dir):
        first = WatcherManager(store, executor, config, notifier=fake_notifier)
        watcher = _create(first, watch_dir)

        second = WatcherManager(store, executor, config, notifier=fake_notifier)
        assert [w.id for w in second.watchers] == [watcher.id]

    def test_update(self, manager, store, watch_dir, events):
        watcher = _create(manager, watch_dir)
        watcher.name = "Renamed"

        manager.update(watcher)

        assert store.load(watcher.id).name == "Renamed"
        assert manager.watcher(watcher.id).name == "Renamed"
        assert len(events) == 2

    def test_update_unknown_raises(self, manager, watch_dir):
        watcher = _create(manager, watch_dir)
        manager.delete(watcher.id)

        with pytest.raises(WatcherNotFoundError):
            manager.update(watcher)

    def test_update_path_discards_last_known(self, manager, watch_dir, tmp_path):
        watcher = _create(manager, watch_dir)
        manager.state.set_last_known(watcher.id, capture(watch_dir))

        other = tmp_path / "other"
        other.mkdir()
        watcher.watch_path = str(other)
        manager.update(watcher)

        assert manager.state.last_known(watcher.id) is None

    def test_update_cached_watcher_in_place(self, manager, watch_dir, tmp_path):
        created = _create(manager, watch_dir)
        manager.state.set_last_known(created.id, capture(watch_dir))

        other = tmp_path / "other"
        other.mkdir()
        cached = manager.watcher(created.id)
        cached.watch_path = str(other)
        manager.update(cached)

        assert manager.state.last_known(created.id) is None
        assert manager.watcher(created.id).watch_path == str(other)

    def test_update_name_keeps_last_known(self, manager, watch_dir):
        watcher = _create(manager, watch_dir)
        manager.state.set_last_known(watcher.id, capture(watch_dir))

        watcher.name = "Renamed"
        manager.update(watcher)

        assert manager.state.last_known(watcher.id) is not None

    def test_delete(self, manager, store, watch_dir, events):
        watcher = _create(manager, watch_dir)

        assert manager.delete(watcher.id) is True
        assert store.load(watcher.id) is None
        assert manager.watcher(watcher.id) is None
        assert manager.delete(watcher.id) is False
        assert len(events) == 2

    def test_set_enabled_unknown_raises(self, manager):
        with pytest.raises(WatcherNotFoundError):
            manager.set_enabled("missing", False)

    def test_listener_errors_are_contained(self, manager, watch_dir):
        received = []

        def broken(event):
            raise RuntimeError("listener bug")

        manager.add_listener(broken)
        manager.add_listener(received.append)
        _create(manager, watch_dir)

        assert len(received) == 1

        manager.remove_listener(broken)
        manager.remove_listener(broken)

    def test_excluded_subpaths(self, manager, watch_dir):
        nested = watch_dir / "Receipts"
        nested.mkdir()
        outer = _create(manager, watch_dir, name="outer", recursive=True)
        inner = _create(manager, nested, name="inner")
        _create(manager, watch_dir / "Receipts", name="paused", is_enabled=False)

        assert manager.excluded_subpaths(outer) == {nested.resolve()}
        assert manager.excluded_subpaths(inner) == set()


class TestLifecycle:
    """start/stop and the change subscription."""

    @pytest.mark.asyncio
    async def test_start_subscribes_and_seeds(self, manager, fake_notifier, watch_dir):
        (watch_dir / "existing.txt").write_text("x")
        watcher = _create(manager, watch_dir)
        assert fake_notifier.starts == []

        await manager.start()
        try:
            assert manager.is_started
            assert fake_notifier.watched_paths == [watch_dir]
            assert manager.state.last_known(watcher.id) == capture(watch_dir)
        finally:
            await manager.stop()

        assert not manager.is_started
        assert not fake_notifier.is_running

    @pytest.mark.asyncio
    async def test_changes_rebuild_subscription_when_started(self, manager, fake_notifier, watch_dir, tmp_path):
        await manager.start()
        try:
            _create(manager, watch_dir)
            assert fake_notifier.watched_paths == [watch_dir]

            other = (tmp_path / "other")
            other.mkdir()
            _create(manager, other, name="other")
            assert set(fake_notifier.watched_paths) == {watch_dir, other.resolve()}
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_existing_files_do_not_trigger_on_start(
        self, manager, executor, fake_notifier, watch_dir, fast_debounce
    ):
        (watch_dir / "existing.txt").write_text("x")
        watcher = _create(manager, watch_dir, responsiveness=Responsiveness.FAST)
        await manager.start()
        try:
            fake_notifier.emit([watch_dir / "existing.txt"])
            await asyncio.sleep(0.3)

            assert executor.attempts == 0
            assert manager.phase(watcher.id) is WatcherPhase.IDLE
            assert len(manager.scheduler) == 0
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_change_to_completion(
        self, manager, store, executor, fake_notifier, watch_dir, events, fast_debounce, wait_until
    ):
        watcher = _create(manager, watch_dir, responsiveness=Responsiveness.FAST, persona_id="sorter")
        await manager.start()
        try:
            (watch_dir / "scan.pdf").write_text("pdf")
            fake_notifier.emit([watch_dir / "scan.pdf"])

            await wait_until(lambda: any(e.kind is EventKind.EXECUTION_COMPLETED for e in events))
            await wait_until(lambda: manager.phase(watcher.id) is WatcherPhase.IDLE)

            assert len(executor.requests) == 1
            completed = [e for e in events if e.kind is EventKind.EXECUTION_COMPLETED][0]
            assert completed.watcher_id == watcher.id
            assert completed.session_id == "session-1"
            assert completed.persona_id == "sorter"

            saved = store.load(watcher.id)
            assert saved.last_session_id == "session-1"
            assert saved.last_triggered_at is not None
            assert manager.watcher(watcher.id).last_session_id == "session-1"
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_running_loops(self, manager, executor, watch_dir, wait_until):
        executor.hold()
        watcher = _create(manager, watch_dir)
        await manager.start()

        task = manager.run_now(watcher.id)
        await wait_until(lambda: manager.is_running(watcher.id))

        await manager.stop()

        assert task.done()
        assert manager.phase(watcher.id) is WatcherPhase.IDLE
        assert len(manager.registry) == 0
        assert len(manager.scheduler) == 0


class TestRuntimeControl:
    """run_now, cancellation and teardown."""

    @pytest.mark.asyncio
    async def test_run_now_ignores_matching_fingerprint(self, manager, executor, watch_dir):
        (watch_dir / "a.txt").write_text("a")
        watcher = _create(manager, watch_dir)
        manager.state.set_last_known(watcher.id, capture(watch_dir))

        task = manager.run_now(watcher.id)
        assert task is not None
        await task

        assert len(executor.requests) == 1
        assert manager.phase(watcher.id) is WatcherPhase.IDLE

    @pytest.mark.asyncio
    async def test_run_now_is_exclusive(self, manager, executor, watch_dir, wait_until):
        executor.hold()
        watcher = _create(manager, watch_dir)

        task = manager.run_now(watcher.id)
        await wait_until(lambda: manager.phase(watcher.id) is WatcherPhase.PROCESSING)

        assert manager.run_now(watcher.id) is None
        assert manager.run_now(watcher.id) is None
        assert len(manager.registry) == 1

        executor.release()
        await task
        assert len(executor.requests) == 1
        assert manager.phase(watcher.id) is WatcherPhase.IDLE

    @pytest.mark.asyncio
    async def test_changes_right_after_run_now_are_dropped(self, manager, executor, watch_dir):
        executor.hold()
        watcher = _create(manager, watch_dir)
        await manager.start()
        try:
            task = manager.run_now(watcher.id)
            assert manager.phase(watcher.id) is WatcherPhase.PROCESSING

            # Same tick, before the loop has started
            assert manager.coordinator.handle_changes([watch_dir / "late.pdf"]) == []
            assert len(manager.scheduler) == 0

            executor.release()
            await task
            assert manager.phase(watcher.id) is WatcherPhase.IDLE
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_run_now_unknown_raises(self, manager):
        with pytest.raises(WatcherNotFoundError):
            manager.run_now("missing")

    @pytest.mark.asyncio
    async def test_status_while_running(self, manager, executor, watch_dir, wait_until):
        executor.hold()
        (watch_dir / "a.txt").write_text("a")
        watcher = _create(manager, watch_dir)

        task = manager.run_now(watcher.id)
        await wait_until(lambda: manager.run_info(watcher.id) is not None)

        status = manager.status(watcher.id)
        assert status.is_running
        assert status.phase is WatcherPhase.PROCESSING
        assert status.run_info.change_count == 1
        assert manager.statuses()[watcher.id].is_running

        executor.release()
        await task
        assert not manager.is_running(watcher.id)
        assert manager.run_info(watcher.id) is None

    @pytest.mark.asyncio
    async def test_disable_tears_down(self, manager, executor, watch_dir, wait_until):
        executor.hold()
        watcher = _create(manager, watch_dir)

        task = manager.run_now(watcher.id)
        await wait_until(lambda: manager.run_info(watcher.id) is not None)

        manager.set_enabled(watcher.id, False)

        # Immediate, before the loop has unwound
        assert manager.phase(watcher.id) is WatcherPhase.IDLE
        assert manager.run_info(watcher.id) is None
        assert len(manager.registry) == 0

        await asyncio.gather(task, return_exceptions=True)
        assert task.cancelled()
        assert len(executor.cancelled) == 1
        assert manager.phase(watcher.id) is WatcherPhase.IDLE
        assert manager.watcher(watcher.id).is_enabled is False

    @pytest.mark.asyncio
    async def test_update_to_disabled_tears_down(self, manager, executor, watch_dir, wait_until):
        executor.hold()
        watcher = _create(manager, watch_dir)

        task = manager.run_now(watcher.id)
        await wait_until(lambda: manager.is_running(watcher.id))

        watcher.is_enabled = False
        manager.update(watcher)

        assert manager.phase(watcher.id) is WatcherPhase.IDLE
        await asyncio.gather(task, return_exceptions=True)
        assert task.cancelled()

    @pytest.mark.asyncio
    async def test_delete_tears_down(self, manager, executor, watch_dir, wait_until):
        executor.hold()
        watcher = _create(manager, watch_dir)

        task = manager.run_now(watcher.id)
        await wait_until(lambda: manager.is_running(watcher.id))

        assert manager.delete(watcher.id) is True
        assert manager.phase(watcher.id) is WatcherPhase.IDLE
        assert manager.state.last_known(watcher.id) is None

        await asyncio.gather(task, return_exceptions=True)
        assert task.cancelled()

    @pytest.mark.asyncio
    async def test_cancel_execution(self, manager, executor, watch_dir, wait_until):
        executor.hold()
        watcher = _create(manager, watch_dir)

        task = manager.run_now(watcher.id)
        await wait_until(lambda: manager.is_running(watcher.id))

        assert manager.cancel_execution(watcher.id) is True
        assert manager.phase(watcher.id) is WatcherPhase.IDLE
        await asyncio.gather(task, return_exceptions=True)
        assert manager.cancel_execution(watcher.id) is False
        assert manager.watcher(watcher.id).is_enabled is True

    @pytest.mark.asyncio
    async def test_failure_emits_event(self, store, config, fake_notifier, make_executor, watch_dir):
        executor = make_executor(result=lambda request, number: DispatchResult.failed("agent crashed"))
        manager = WatcherManager(store, executor, config, notifier=fake_notifier)
        received = []
        manager.add_listener(received.append)
        watcher = _create(manager, watch_dir)

        await manager.run_now(watcher.id)

        failed = [e for e in received if e.kind is EventKind.EXECUTION_FAILED]
        assert len(failed) == 1
        assert failed[0].error == "agent crashed"
        assert failed[0].persona_id == models.DEFAULT_PERSONA_ID
        assert store.load(watcher.id).last_session_id is None
