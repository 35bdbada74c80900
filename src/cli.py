#!/usr/bin/env python3
"""
CLI for the dirsettle watcher service.

Usage:
    python -m src.cli serve --db ./data/watchers.db
    python -m src.cli add "Downloads" ~/Downloads --instructions "Sort files into folders"
    python -m src.cli list
    python -m src.cli disable <watcher-id>
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
from dotenv import load_dotenv

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent))

# Load .env from project root
_env_file = Path(__file__).parent.parent / ".env"
if _env_file.exists():
    load_dotenv(_env_file)
else:
    load_dotenv()

from src.dirsettle import (
    AgentServerExecutor,
    EngineConfig,
    Responsiveness,
    SQLiteWatcherStore,
    WatcherEvent,
    WatcherManager,
)
from src.dirsettle.api_server import serve


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("cli")


class GracefulShutdown:
    """Handle graceful shutdown on SIGINT/SIGTERM."""

    def __init__(self):
        self.should_exit = False
        signal.signal(signal.SIGINT, self._handler)
        signal.signal(signal.SIGTERM, self._handler)

    def _handler(self, signum, frame):
        logger.info("Received shutdown signal, stopping...")
        self.should_exit = True


def _config_from_args(args) -> EngineConfig:
    config = EngineConfig.from_env()
    if getattr(args, "db", None):
        config.db_path = Path(args.db).expanduser().resolve()
    if getattr(args, "host", None):
        config.api_host = args.host
    if getattr(args, "port", None):
        config.api_port = args.port
    if getattr(args, "agent_url", None):
        config.agent_base_url = args.agent_url
    if getattr(args, "max_iterations", None):
        config.max_iterations = args.max_iterations
    return config


def _api_base(args) -> str:
    config = _config_from_args(args)
    return f"http://{config.api_host}:{config.api_port}"


def _api_request(args, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Any:
    """Call the running watcher API and exit with an error message on failure."""
    api_base = _api_base(args)
    try:
        with httpx.Client(base_url=api_base, timeout=10.0) as client:
            resp = client.request(method, path, json=json)
    except httpx.HTTPError as exc:
        logger.error(f"Failed to reach watcher API at {api_base}: {exc}")
        sys.exit(1)

    if resp.status_code >= 400:
        try:
            error = resp.json().get("error", resp.text)
        except ValueError:
            error = resp.text
        logger.error(f"Watcher API returned HTTP {resp.status_code}: {error}")
        sys.exit(1)
    return resp.json()


def _parse_parameters(items: Optional[List[str]]) -> Dict[str, str]:
    parameters = {}
    for item in items or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            logger.error(f"Invalid parameter (expected KEY=VALUE): {item}")
            sys.exit(1)
        parameters[key.strip()] = value.strip()
    return parameters


def _log_event(event: WatcherEvent) -> None:
    if event.watcher_id:
        logger.info(f"Event {event.kind.value}: watcher={event.watcher_id} session={event.session_id}")


async def _serve(config: EngineConfig, shutdown: GracefulShutdown) -> None:
    store = SQLiteWatcherStore(config.db_path)
    executor = AgentServerExecutor(config)
    manager = WatcherManager(store, executor, config)
    manager.add_listener(_log_event)

    await manager.start()
    api_task = asyncio.create_task(serve(manager, config.api_host, config.api_port), name="api")

    try:
        while not shutdown.should_exit and not api_task.done():
            await asyncio.sleep(1)
    finally:
        api_task.cancel()
        await asyncio.gather(api_task, return_exceptions=True)
        await manager.stop()
        await executor.aclose()
        store.close()


def cmd_serve(args):
    """Run the watcher engine and its HTTP API."""
    config = _config_from_args(args)
    logger.info("Starting watcher service...")
    logger.info(f"  Database: {config.db_path}")
    logger.info(f"  Agent server: {config.agent_base_url}")
    logger.info(f"  API: http://{config.api_host}:{config.api_port}")
    logger.info("Press Ctrl+C to stop")

    shutdown = GracefulShutdown()
    asyncio.run(_serve(config, shutdown))
    logger.info("Watcher service stopped")


def cmd_add(args):
    """Create a watcher on the running service."""
    watch_path = Path(args.path).expanduser().resolve()
    if not watch_path.is_dir():
        logger.error(f"Watch path is not a directory: {watch_path}")
        sys.exit(1)

    payload = {
        "name": args.name,
        "instructions": args.instructions,
        "watch_path": str(watch_path),
        "persona_id": args.persona,
        "folder_path": args.folder,
        "parameters": _parse_parameters(args.param),
        "recursive": args.recursive,
        "responsiveness": args.responsiveness,
        "is_enabled": not args.disabled,
    }
    if args.settle is not None:
        payload["settle_seconds"] = args.settle

    watcher = _api_request(args, "POST", "/api/watchers", json=payload)
    print(f"Created watcher {watcher['id']} ({watcher['name']}) on {watcher['display_watch_path']}")


def cmd_list(args):
    """List watchers and their runtime status."""
    watchers = _api_request(args, "GET", "/api/watchers")["watchers"]

    print(f"\nWatchers ({len(watchers)}):")
    if not watchers:
        print("  (none)")
        return

    for watcher in watchers:
        phase = watcher["status"]["phase"]
        flags = "recursive" if watcher["recursive"] else "top-level"
        print(f"  {watcher['id']}  {watcher['name']}")
        print(f"      {watcher['display_watch_path']} ({flags}, {watcher['responsiveness']})")
        print(f"      {watcher['status_description']} [phase: {phase}]")


def cmd_remove(args):
    """Delete a watcher."""
    _api_request(args, "DELETE", f"/api/watchers/{args.watcher_id}")
    print(f"Removed watcher {args.watcher_id}")


def cmd_enable(args):
    """Resume a paused watcher."""
    watcher = _api_request(args, "POST", f"/api/watchers/{args.watcher_id}/enable")
    print(f"Enabled watcher {watcher['name']}")


def cmd_disable(args):
    """Pause a watcher, cancelling any run in flight."""
    watcher = _api_request(args, "POST", f"/api/watchers/{args.watcher_id}/disable")
    print(f"Paused watcher {watcher['name']}")


def cmd_run(args):
    """Trigger a watcher immediately."""
    result = _api_request(args, "POST", f"/api/watchers/{args.watcher_id}/run")
    if result["started"]:
        print("Run started.")
    else:
        print(f"Run not started (phase: {result['phase']}).")


def _add_api_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--host", default=None, help="Watcher API host (default: DIRSETTLE_API_HOST or 127.0.0.1)")
    parser.add_argument("--port", type=int, default=None, help="Watcher API port (default: DIRSETTLE_API_PORT or 8002)")


def main():
    parser = argparse.ArgumentParser(
        description="Directory watchers that dispatch agent tasks until the folder settles",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Start the engine and API
  python -m src.cli serve --db ./data/watchers.db --agent-url http://localhost:8000

  # Watch a folder (service must be running)
  python -m src.cli add "Downloads" ~/Downloads --instructions "File PDFs under Documents/"

  # Show watchers and their phases
  python -m src.cli list

  # Pause a watcher
  python -m src.cli disable 3f0c...
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Run the watcher engine and HTTP API")
    serve_parser.add_argument("--db", default=None, help="Watcher database path")
    serve_parser.add_argument("--agent-url", default=None, help="Agent server base URL")
    serve_parser.add_argument("--max-iterations", type=int, default=None, help="Dispatch cap per convergence loop")
    _add_api_arguments(serve_parser)
    serve_parser.set_defaults(func=cmd_serve)

    # Add command
    add_parser = subparsers.add_parser("add", help="Create a watcher")
    add_parser.add_argument("name", help="Watcher name")
    add_parser.add_argument("path", help="Directory to watch")
    add_parser.add_argument("--instructions", required=True, help="Instructions for the agent")
    add_parser.add_argument("--persona", default=None, help="Agent to run (default: configured agent)")
    add_parser.add_argument("--folder", default=None, help="Agent working folder (default: watched folder)")
    add_parser.add_argument("--param", action="append", metavar="KEY=VALUE", help="Extra parameter (repeatable)")
    add_parser.add_argument("--recursive", action="store_true", help="Include subdirectories")
    add_parser.add_argument(
        "--responsiveness",
        default=Responsiveness.BALANCED.value,
        choices=[r.value for r in Responsiveness],
        help="Debounce preset: fast (1s), balanced (3s), patient (10s)",
    )
    add_parser.add_argument("--settle", type=float, default=None, help="Seconds to wait after each dispatch")
    add_parser.add_argument("--disabled", action="store_true", help="Create the watcher paused")
    _add_api_arguments(add_parser)
    add_parser.set_defaults(func=cmd_add)

    # List command
    list_parser = subparsers.add_parser("list", help="List watchers")
    _add_api_arguments(list_parser)
    list_parser.set_defaults(func=cmd_list)

    # Single-watcher commands
    for name, func, help_text in (
        ("remove", cmd_remove, "Delete a watcher"),
        ("enable", cmd_enable, "Resume a paused watcher"),
        ("disable", cmd_disable, "Pause a watcher"),
        ("run", cmd_run, "Trigger a watcher now"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("watcher_id", help="Watcher ID")
        _add_api_arguments(sub)
        sub.set_defaults(func=func)

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    args.func(args)


if __name__ == "__main__":
    main()
