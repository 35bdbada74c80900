"""Watcher REST API on top of the WatcherManager."""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .exceptions import WatcherNotFoundError
from .manager import WatcherManager
from .models import Responsiveness, Watcher

logger = logging.getLogger(__name__)

_EDITABLE_FIELDS = {
    "name",
    "instructions",
    "persona_id",
    "parameters",
    "watch_path",
    "folder_path",
    "is_enabled",
    "recursive",
    "responsiveness",
    "settle_seconds",
}


def _serialize(manager: WatcherManager, watcher: Watcher) -> Dict[str, Any]:
    data = watcher.to_dict()
    data["status_description"] = watcher.status_description
    data["display_watch_path"] = watcher.display_watch_path
    data["status"] = manager.status(watcher.id).to_dict()
    return data


def _payload_error(payload: Any, partial: bool = False) -> Optional[str]:
    """Describe what is wrong with a create or update body, or None if it is usable."""
    if not isinstance(payload, dict):
        return "Request body must be a JSON object"

    for key in ("name", "instructions"):
        if key not in payload and partial:
            continue
        value = payload.get(key)
        if not isinstance(value, str) or not value.strip():
            return f"{key} must be a non-empty string"

    for key in ("persona_id", "watch_path", "folder_path"):
        value = payload.get(key)
        if value is not None and not isinstance(value, str):
            return f"{key} must be a string"

    parameters = payload.get("parameters")
    if parameters is not None and not isinstance(parameters, dict):
        return "parameters must be an object"

    for key in ("is_enabled", "recursive"):
        if key in payload and not isinstance(payload[key], bool):
            return f"{key} must be a boolean"

    settle = payload.get("settle_seconds")
    if settle is not None and (isinstance(settle, bool) or not isinstance(settle, (int, float))):
        return "settle_seconds must be a number"
    return None


async def _read_payload(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return None


def _normalize_folder(value: Any) -> Any:
    if not value:
        return None
    return str(Path(str(value)).expanduser().resolve())


def create_app(manager: WatcherManager) -> FastAPI:
    """Create the FastAPI application for a manager running on the same event loop."""
    app = FastAPI(title="dirsettle")
    app.state.manager = manager

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "running": manager.is_started, "watchers": len(manager.watchers)}

    @app.get("/api/watchers")
    async def list_watchers():
        return {"watchers": [_serialize(manager, w) for w in manager.watchers]}

    @app.post("/api/watchers")
    async def create_watcher(request: Request):
        payload = await _read_payload(request)
        error = _payload_error(payload)
        if error:
            return JSONResponse({"error": error}, status_code=400)

        name = payload["name"].strip()
        instructions = payload["instructions"].strip()
        watch_path = _normalize_folder(payload.get("watch_path"))
        if not watch_path:
            return JSONResponse({"error": "Missing watch_path"}, status_code=400)
        if not Path(watch_path).is_dir():
            return JSONResponse({"error": "Watch path is not a directory"}, status_code=400)

        try:
            watcher = manager.create(
                name=name,
                instructions=instructions,
                persona_id=payload.get("persona_id"),
                parameters={str(k): str(v) for k, v in (payload.get("parameters") or {}).items()},
                watch_path=watch_path,
                folder_path=_normalize_folder(payload.get("folder_path")),
                is_enabled=bool(payload.get("is_enabled", True)),
                recursive=bool(payload.get("recursive", False)),
                responsiveness=Responsiveness(payload.get("responsiveness", Responsiveness.BALANCED.value)),
                settle_seconds=payload.get("settle_seconds"),
            )
        except (ValueError, TypeError) as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        return JSONResponse(_serialize(manager, watcher), status_code=201)

    @app.get("/api/watchers/{watcher_id}")
    async def get_watcher(watcher_id: str):
        watcher = manager.watcher(watcher_id)
        if watcher is None:
            return JSONResponse({"error": "Watcher not found"}, status_code=404)
        return _serialize(manager, watcher)

    @app.patch("/api/watchers/{watcher_id}")
    async def update_watcher(watcher_id: str, request: Request):
        watcher = manager.watcher(watcher_id)
        if watcher is None:
            return JSONResponse({"error": "Watcher not found"}, status_code=404)

        payload = await _read_payload(request)
        error = _payload_error(payload, partial=True)
        if error:
            return JSONResponse({"error": error}, status_code=400)

        unknown = set(payload) - _EDITABLE_FIELDS
        if unknown:
            return JSONResponse({"error": f"Unknown fields: {', '.join(sorted(unknown))}"}, status_code=400)

        data = watcher.to_dict()
        data.update(payload)
        if "watch_path" in payload:
            data["watch_path"] = _normalize_folder(payload["watch_path"])
        if "folder_path" in payload:
            data["folder_path"] = _normalize_folder(payload["folder_path"])

        try:
            updated = manager.update(Watcher.from_dict(data))
        except (ValueError, TypeError) as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        except WatcherNotFoundError:
            return JSONResponse({"error": "Watcher not found"}, status_code=404)
        return _serialize(manager, updated)

    @app.delete("/api/watchers/{watcher_id}")
    async def delete_watcher(watcher_id: str):
        if not manager.delete(watcher_id):
            return JSONResponse({"error": "Watcher not found"}, status_code=404)
        return {"success": True}

    @app.post("/api/watchers/{watcher_id}/enable")
    async def enable_watcher(watcher_id: str):
        try:
            watcher = manager.set_enabled(watcher_id, True)
        except WatcherNotFoundError:
            return JSONResponse({"error": "Watcher not found"}, status_code=404)
        return _serialize(manager, watcher)

    @app.post("/api/watchers/{watcher_id}/disable")
    async def disable_watcher(watcher_id: str):
        try:
            watcher = manager.set_enabled(watcher_id, False)
        except WatcherNotFoundError:
            return JSONResponse({"error": "Watcher not found"}, status_code=404)
        return _serialize(manager, watcher)

    @app.post("/api/watchers/{watcher_id}/run")
    async def run_watcher(watcher_id: str):
        try:
            task = manager.run_now(watcher_id)
        except WatcherNotFoundError:
            return JSONResponse({"error": "Watcher not found"}, status_code=404)
        return {"started": task is not None, "phase": manager.phase(watcher_id).value}

    @app.post("/api/watchers/{watcher_id}/cancel")
    async def cancel_watcher(watcher_id: str):
        if manager.watcher(watcher_id) is None:
            return JSONResponse({"error": "Watcher not found"}, status_code=404)
        cancelled = manager.cancel_execution(watcher_id)
        return {"cancelled": cancelled, "phase": manager.phase(watcher_id).value}

    @app.get("/api/watchers/{watcher_id}/status")
    async def watcher_status(watcher_id: str):
        if manager.watcher(watcher_id) is None:
            return JSONResponse({"error": "Watcher not found"}, status_code=404)
        return manager.status(watcher_id).to_dict()

    return app


async def serve(manager: WatcherManager, host: str, port: int) -> None:
    """Serve the API on the current event loop until cancelled."""
    import uvicorn

    config = uvicorn.Config(
        create_app(manager),
        host=host,
        port=port,
        log_level="warning",
        access_log=False,
    )
    server = uvicorn.Server(config)
    logger.info("Watcher API listening on http://%s:%d", host, port)
    await server.serve()
