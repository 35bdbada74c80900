"""Custom exceptions for the dirsettle package."""


class WatcherError(Exception):
    """Base exception for all watcher errors."""
    pass


class ResolutionError(WatcherError):
    """Watch handle is stale or its path no longer exists."""
    pass


class CaptureError(WatcherError):
    """Directory could not be fingerprinted."""
    pass


class WatcherNotFoundError(WatcherError):
    """No watcher with the given id exists."""
    pass


class StoreError(WatcherError):
    """Error reading or writing persisted watchers."""
    pass


class ExecutorError(WatcherError):
    """Task executor could not be reached or returned an error."""
    pass
