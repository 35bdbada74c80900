"""
Task executors: where the convergence loop sends its work.

`TaskExecutor` is the contract the engine relies on. `AgentServerExecutor`
bridges dispatches to an ADK-style agent server over HTTP: it creates a
session per dispatch and runs the composed prompt through the non-streaming
``/run`` endpoint in the background.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Dict, Optional

import httpx

from .config import EngineConfig
from .exceptions import ExecutorError
from .models import DispatchHandle, DispatchRequest, DispatchResult

logger = logging.getLogger(__name__)


class TaskExecutor(ABC):
    """Runs dispatched work and reports how it ended."""

    @abstractmethod
    async def dispatch(self, request: DispatchRequest) -> Optional[DispatchHandle]:
        """Start a task. Returns None if the executor declines it."""

    @abstractmethod
    async def await_completion(self, handle: DispatchHandle) -> DispatchResult:
        """Wait until the task completes, fails or is cancelled."""

    @abstractmethod
    def cancel(self, handle: DispatchHandle) -> None:
        """Stop a task that is still running. No-op if it already finished."""

    async def aclose(self) -> None:
        pass


def compose_agent_message(request: DispatchRequest) -> str:
    """Build the message text sent to the agent for a dispatch."""
    sections = []
    if request.folder_path:
        sections.append(f"Working folder: {request.folder_path}")
    if request.parameters:
        lines = "\n".join(f"- {key}: {value}" for key, value in sorted(request.parameters.items()))
        sections.append(f"Parameters:\n{lines}")
    sections.append(request.prompt)
    return "\n\n".join(sections)


class AgentServerExecutor(TaskExecutor):
    """Executor backed by an ADK API server."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Initialize the executor.

        Args:
            config: Engine configuration (server URL, agent, limits)
            transport: Custom httpx transport, mainly for tests
        """
        self.config = config or EngineConfig()
        self._base = self.config.agent_base_url.rstrip("/")
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._runs: Dict[str, asyncio.Task] = {}
        self._starting = 0

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base,
                timeout=self.config.dispatch_timeout,
                transport=self._transport,
            )
        return self._client

    @property
    def active_count(self) -> int:
        return len(self._runs) + self._starting

    async def dispatch(self, request: DispatchRequest) -> Optional[DispatchHandle]:
        if self.active_count >= self.config.max_concurrent_dispatches:
            logger.warning(
                "Rejecting dispatch for watcher %s: %d task(s) already running",
                request.watcher_id, self.active_count,
            )
            return None

        agent_name = request.persona_id or self.config.default_agent
        self._starting += 1
        try:
            session_id = await self._create_session(agent_name)
        except ExecutorError as e:
            logger.error("Dispatch for watcher %s rejected: %s", request.watcher_id, e)
            return None
        finally:
            self._starting -= 1

        handle = DispatchHandle(id=request.id, request=request, session_id=session_id)
        message = compose_agent_message(request)
        self._runs[handle.id] = asyncio.create_task(
            self._send(agent_name, session_id, message),
            name=f"dispatch-{handle.id}",
        )
        logger.info(
            "Dispatched task '%s' to agent %s (session=%s)",
            request.title or "untitled", agent_name, session_id,
        )
        return handle

    async def await_completion(self, handle: DispatchHandle) -> DispatchResult:
        task = self._runs.get(handle.id)
        if task is None:
            return DispatchResult.failed("Execution context not found")

        # asyncio.wait leaves the run alone if the caller is cancelled
        await asyncio.wait({task})
        self._runs.pop(handle.id, None)

        if task.cancelled():
            return DispatchResult.cancelled()
        error = task.exception()
        if error is not None:
            return DispatchResult.failed(str(error))
        return DispatchResult.completed(handle.session_id)

    def cancel(self, handle: DispatchHandle) -> None:
        task = self._runs.pop(handle.id, None)
        if task is not None and not task.done():
            task.cancel()
            logger.info("Cancelled dispatch %s (session=%s)", handle.id, handle.session_id)

    async def aclose(self) -> None:
        for task in self._runs.values():
            task.cancel()
        self._runs.clear()
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _create_session(self, agent_name: str) -> str:
        """Create a new agent session. Returns the session ID."""
        user_id = self.config.agent_user_id
        url = f"/apps/{agent_name}/users/{user_id}/sessions"
        try:
            resp = await self._get_client().post(url, json={}, timeout=30.0)
            resp.raise_for_status()
            data = resp.json()
        except httpx.ConnectError:
            raise ExecutorError(f"Cannot connect to agent server at {self._base}")
        except httpx.HTTPStatusError as e:
            raise ExecutorError(
                f"Agent server returned HTTP {e.response.status_code} "
                f"when creating session for agent '{agent_name}': {e.response.text[:200]}"
            )
        except httpx.HTTPError as e:
            raise ExecutorError(f"Agent server request failed: {e}")

        session_id = data.get("id") if isinstance(data, dict) else None
        session_id = session_id or str(uuid.uuid4())
        logger.info("Created agent session %s for %s/%s", session_id, agent_name, user_id)
        return session_id

    async def _send(self, agent_name: str, session_id: str, message_text: str) -> str:
        """Run a message through the agent and return its text response."""
        payload = {
            "appName": agent_name,
            "userId": self.config.agent_user_id,
            "sessionId": session_id,
            "newMessage": {
                "role": "user",
                "parts": [{"text": message_text}],
            },
            "streaming": False,
        }

        try:
            resp = await self._get_client().post("/run", json=payload)
            resp.raise_for_status()
            data = resp.json()
        except httpx.ConnectError:
            raise ExecutorError(f"Cannot connect to agent server at {self._base}")
        except httpx.HTTPStatusError as e:
            raise ExecutorError(
                f"Agent server returned HTTP {e.response.status_code} "
                f"for agent '{agent_name}': {e.response.text[:200]}"
            )
        except httpx.HTTPError as e:
            raise ExecutorError(f"Agent server request failed: {e}")

        texts = []
        events = data if isinstance(data, list) else [data]
        for event in events:
            content = event.get("content", {}) if isinstance(event, dict) else {}
            if isinstance(content, dict) and "parts" in content:
                for part in content["parts"]:
                    if isinstance(part, dict) and "text" in part:
                        text = part["text"].strip()
                        if text:
                            texts.append(text)

        response = "\n\n".join(texts)
        logger.info(
            "Agent %s responded with %d chars (%d part(s)) for session %s",
            agent_name, len(response), len(texts), session_id,
        )
        return response
