"""Resolution of stored watch handles to directories."""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from .exceptions import ResolutionError
from .models import Watcher


class WatchHandleResolver(ABC):
    """Turns a watcher's stored handle into a usable directory path."""

    @abstractmethod
    def resolve(self, watcher: Watcher) -> Path:
        """
        Resolve the directory a watcher monitors.

        Raises:
            ResolutionError: If the handle is missing, stale or not a directory
        """

    def resolve_working_folder(self, watcher: Watcher) -> Optional[Path]:
        """Resolve the agent working folder, or None if it cannot be resolved."""
        folder = watcher.effective_folder_path
        if not folder:
            return None
        path = Path(folder).expanduser()
        return path.resolve() if path.is_dir() else None


class PathResolver(WatchHandleResolver):
    """Resolver for handles that are plain filesystem paths."""

    def resolve(self, watcher: Watcher) -> Path:
        if not watcher.watch_path:
            raise ResolutionError(f"Watcher '{watcher.name}' has no folder selected")

        path = Path(watcher.watch_path).expanduser().absolute()

        try:
            path = path.resolve(strict=True)
        except (OSError, RuntimeError) as e:
            raise ResolutionError(f"Watch path does not exist: {watcher.watch_path}") from e

        if not path.is_dir():
            raise ResolutionError(f"Watch path is not a directory: {path}")
        return path
