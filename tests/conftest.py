"""Shared fakes and fixtures for the dirsettle tests."""

import asyncio
from pathlib import Path
from typing import Callable, List, Optional

import pytest

from src.dirsettle.config import EngineConfig
from src.dirsettle.executor import TaskExecutor
from src.dirsettle.models import DispatchHandle, DispatchRequest, DispatchResult
from src.dirsettle.notifier import ChangeNotifier


class FakeNotifier(ChangeNotifier):
    """Records subscriptions; tests push batches with ``emit``."""

    def __init__(self):
        self.starts: List[List[Path]] = []
        self.stops = 0
        self._paths: List[Path] = []
        self._callback = None

    def start(self, paths, callback):
        self._paths = list(paths)
        self._callback = callback
        self.starts.append(list(self._paths))

    def stop(self):
        self.stops += 1
        self._paths = []
        self._callback = None

    @property
    def watched_paths(self):
        return list(self._paths)

    @property
    def is_running(self) -> bool:
        return self._callback is not None

    def emit(self, paths):
        assert self._callback is not None, "notifier not started"
        self._callback([Path(p) for p in paths])


class FakeExecutor(TaskExecutor):
    """
    In-memory executor.

    ``on_run`` is called with (request, dispatch number) while the task runs,
    which is where tests simulate the agent touching the folder.
    """

    def __init__(
        self,
        on_run: Optional[Callable[[DispatchRequest, int], None]] = None,
        reject: bool = False,
        result: Optional[Callable[[DispatchRequest, int], DispatchResult]] = None,
    ):
        self.on_run = on_run
        self.reject = reject
        self.result = result
        self.attempts = 0
        self.requests: List[DispatchRequest] = []
        self.cancelled: List[DispatchHandle] = []
        self.gate: Optional[asyncio.Event] = None

    def hold(self) -> None:
        """Keep every dispatch running until ``release`` is called."""
        self.gate = asyncio.Event()

    def release(self) -> None:
        if self.gate is not None:
            self.gate.set()

    async def dispatch(self, request):
        self.attempts += 1
        if self.reject:
            return None
        self.requests.append(request)
        number = len(self.requests)
        return DispatchHandle(id=request.id, request=request, session_id=f"session-{number}")

    async def await_completion(self, handle):
        number = self.requests.index(handle.request) + 1
        if self.on_run is not None:
            self.on_run(handle.request, number)
        if self.gate is not None:
            await self.gate.wait()
        if self.result is not None:
            return self.result(handle.request, number)
        return DispatchResult.completed(handle.session_id)

    def cancel(self, handle):
        self.cancelled.append(handle)


async def _wait_until(predicate, timeout: float = 3.0, interval: float = 0.01) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def wait_until():
    """Poll a predicate on the running loop until it is true."""
    return _wait_until


@pytest.fixture
def fake_notifier():
    return FakeNotifier()


@pytest.fixture
def make_executor():
    return FakeExecutor


@pytest.fixture
def config(tmp_path):
    return EngineConfig(db_path=tmp_path / "watchers.db", max_iterations=5, notifier_latency=0.1)


@pytest.fixture
def watch_dir(tmp_path):
    path = tmp_path / "inbox"
    path.mkdir()
    return path.resolve()
