"""
Utility functions for the Obsidian Vault MCP Server.

Contains the exception hierarchy, path helpers, the bounded-concurrency
runner and the retry helper used by the cache refresh.
"""

import asyncio
import posixpath
import re
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SLASHES_PATTERN = re.compile(r"^/+|/+$")


# ============== Exceptions ==============

class VaultError(Exception):
    """Base class for all errors raised by this package."""
    pass


class NoteSourceError(VaultError):
    """Raised when the note source fails to serve a request."""

    def __init__(self, message: str, *, operation: str = "", path: str = ""):
        super().__init__(message)
        self.operation = operation
        self.path = path


class NotFoundError(NoteSourceError):
    """Raised when a file or directory does not exist at the source."""
    pass


class ServiceUnavailableError(NoteSourceError):
    """Raised on transient failures (timeouts, 5xx, connection errors)."""
    pass


class ValidationError(VaultError):
    """Raised when data or arguments have an unusable shape."""
    pass


class ConfigurationError(VaultError):
    """Raised when startup configuration is invalid."""
    pass


class CacheNotReadyError(VaultError):
    """Raised when an operation needs the cache before it has been built."""
    pass


# ============== Path Helpers ==============

def to_posix(path: str) -> str:
    """Normalize a vault path: forward slashes, no leading/trailing slash."""
    return SLASHES_PATTERN.sub("", path.replace("\\", "/"))


def basename_no_ext(path: str) -> str:
    """Return the file name of a vault path without its extension."""
    base = posixpath.basename(to_posix(path))
    idx = base.rfind(".")
    return base[:idx] if idx > 0 else base


def join_vault_path(directory: str, entry: str) -> str:
    directory = to_posix(directory)
    entry = to_posix(entry)
    return posixpath.join(directory, entry) if directory else entry


# ============== Async Helpers ==============

def is_transient(error: BaseException) -> bool:
    """Only service-unavailable failures are worth retrying."""
    return isinstance(error, ServiceUnavailableError)


async def retry_with_delay(
    fn: Callable[[], Awaitable[T]],
    *,
    operation: str,
    max_retries: int,
    delay_seconds: float,
    should_retry: Callable[[BaseException], bool] = is_transient,
) -> T:
    """Call ``fn`` until it succeeds, retrying transient failures.

    Makes at most ``1 + max_retries`` attempts with a fixed delay between
    them. Errors rejected by ``should_retry`` are raised immediately, and
    the last error is raised once retries are exhausted.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as e:
            if attempt >= max_retries or not should_retry(e):
                raise
            attempt += 1
            logger.debug(
                "operation_retry",
                operation=operation,
                attempt=attempt,
                max_retries=max_retries,
                error=str(e),
            )
            await asyncio.sleep(delay_seconds)


async def run_limited(
    limit: int,
    items: Iterable[T],
    worker: Callable[[T], Awaitable[None]],
) -> None:
    """Run ``worker`` over every item with at most ``limit`` calls in flight.

    Each lane pulls the next item from a shared queue when its current one
    finishes. Completion order is unspecified. A failing worker call is
    logged and its lane moves on, so every item is attempted.
    """
    queue = deque(items)

    async def lane() -> None:
        while queue:
            item = queue.popleft()
            try:
                await worker(item)
            except Exception as e:
                logger.error("limited_worker_failed", item=str(item), error=str(e))

    lanes = [lane() for _ in range(min(max(limit, 1), len(queue)))]
    if lanes:
        await asyncio.gather(*lanes)
