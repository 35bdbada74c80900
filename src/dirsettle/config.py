"""Configuration for the dirsettle engine."""

import fnmatch
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Optional


ENV_PREFIX = "DIRSETTLE_"


@dataclass
class EngineConfig:
    """
    Configuration options for the watcher engine.

    Attributes:
        db_path: Path to the SQLite database holding watcher definitions
        max_iterations: Upper bound on dispatches per convergence loop
        default_settle_seconds: Settle duration given to newly created watchers
        notifier_latency: Seconds the OS notifier coalesces changes before delivery
        ignore_patterns: Glob patterns for paths whose changes never trigger a watcher
        agent_base_url: Base URL of the agent server that executes dispatched tasks
        default_agent: Agent used when a watcher has no persona selected
        agent_user_id: User id sessions are created under on the agent server
        max_concurrent_dispatches: Dispatches beyond this limit are rejected
        dispatch_timeout: Seconds to wait for a single agent run
        api_host: Bind address for the HTTP API
        api_port: Port for the HTTP API
    """
    db_path: Path = field(default_factory=lambda: Path("watchers.db"))
    max_iterations: int = 5
    default_settle_seconds: float = 2.0
    notifier_latency: float = 1.0
    ignore_patterns: List[str] = field(default_factory=lambda: [
        "*.tmp",
        "*.swp",
        "*.swo",
        "*~",
        ".git/*",
        ".git",
        "__pycache__/*",
        "__pycache__",
        "*.pyc",
        ".DS_Store",
        "Thumbs.db",
    ])
    agent_base_url: str = "http://localhost:8000"
    default_agent: str = "organizer_agent"
    agent_user_id: str = "dirsettle"
    max_concurrent_dispatches: int = 2
    dispatch_timeout: float = 300.0
    api_host: str = "127.0.0.1"
    api_port: int = 8002

    def __post_init__(self):
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be at least 1: {self.max_iterations}")
        if self.default_settle_seconds < 0:
            raise ValueError(f"default_settle_seconds must not be negative: {self.default_settle_seconds}")

    def should_ignore(self, path: Path) -> bool:
        """
        Check if a path should be ignored based on ignore patterns.

        Args:
            path: Path to check

        Returns:
            True if the path should be ignored
        """
        path_str = str(path)
        name = path.name

        for pattern in self.ignore_patterns:
            if fnmatch.fnmatch(name, pattern):
                return True
            if fnmatch.fnmatch(path_str, f"*/{pattern}"):
                return True
            if fnmatch.fnmatch(path_str, pattern):
                return True

        return False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        """
        Build a config from ``DIRSETTLE_*`` environment variables.

        Unset variables keep their defaults.

        Args:
            environ: Mapping to read from (defaults to os.environ)
        """
        env = os.environ if environ is None else environ
        config = cls()

        def get(name: str) -> Optional[str]:
            value = env.get(ENV_PREFIX + name)
            return value if value not in (None, "") else None

        if get("DB_PATH"):
            config.db_path = Path(get("DB_PATH")).expanduser()
        if get("MAX_ITERATIONS"):
            config.max_iterations = int(get("MAX_ITERATIONS"))
        if get("SETTLE_SECONDS"):
            config.default_settle_seconds = float(get("SETTLE_SECONDS"))
        if get("NOTIFIER_LATENCY"):
            config.notifier_latency = float(get("NOTIFIER_LATENCY"))
        if get("AGENT_BASE_URL"):
            config.agent_base_url = get("AGENT_BASE_URL")
        if get("DEFAULT_AGENT"):
            config.default_agent = get("DEFAULT_AGENT")
        if get("AGENT_USER_ID"):
            config.agent_user_id = get("AGENT_USER_ID")
        if get("MAX_CONCURRENT_DISPATCHES"):
            config.max_concurrent_dispatches = int(get("MAX_CONCURRENT_DISPATCHES"))
        if get("DISPATCH_TIMEOUT"):
            config.dispatch_timeout = float(get("DISPATCH_TIMEOUT"))
        if get("API_HOST"):
            config.api_host = get("API_HOST")
        if get("API_PORT"):
            config.api_port = int(get("API_PORT"))

        config.__post_init__()
        return config
