"""
Retry wrapper for status and upload writes.

A status write that is lost to brief lock contention or a dropped connection
leaves a finished asset in "processing" until the next worker restart, so
every write the pipeline and the upload handler make goes through here.

Retryable conditions:
- SQLite: "database is locked", SQLITE_BUSY / SQLITE_LOCKED
- PostgreSQL: deadlocks (40P01), serialization failures (40001), lock
  timeouts and dropped connections
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from databases import Database

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Queries slower than this are logged even when they succeed
SLOW_QUERY_THRESHOLD = 1.0

_RETRYABLE_MESSAGES = (
    # SQLite
    "database is locked",
    "database table is locked",
    "sqlite_busy",
    "sqlite_locked",
    # PostgreSQL
    "deadlock detected",
    "could not serialize access",
    "could not obtain lock",
    "canceling statement due to lock timeout",
    "lock timeout",
    "connection refused",
    "connection reset",
    "server closed the connection unexpectedly",
)

_RETRYABLE_SQLSTATES = frozenset(["40P01", "40001"])


class DatabaseRetryableError(Exception):
    """A retryable database error persisted through every attempt."""


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with +/-25% jitter, capped at max_delay."""

    max_retries: int = 5
    base_delay: float = 0.1
    max_delay: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Sleep before retry number attempt + 1 (attempt counts from 0)."""
        delay = min(self.base_delay * (2**attempt), self.max_delay)
        jitter = delay * 0.25 * (2 * random.random() - 1)
        return max(0.01, delay + jitter)


DEFAULT_POLICY = RetryPolicy()


def is_retryable_database_error(exc: BaseException) -> bool:
    """True for lock contention and connection drops on SQLite or PostgreSQL."""
    message = str(exc).lower()
    if any(pattern in message for pattern in _RETRYABLE_MESSAGES):
        return True

    # asyncpg and psycopg2 expose the SQLSTATE code
    if getattr(exc, "sqlstate", None) in _RETRYABLE_SQLSTATES:
        return True

    # The databases library wraps driver exceptions
    if exc.__cause__ is not None:
        return is_retryable_database_error(exc.__cause__)
    return False


async def execute_with_retry(
    func: Callable[..., Awaitable[T]],
    *args,
    policy: RetryPolicy = DEFAULT_POLICY,
    operation: str = "Database operation",
    **kwargs,
) -> T:
    """
    Await func(*args, **kwargs), retrying transient database errors.

    Args:
        func: Async callable to run
        policy: Attempts and backoff
        operation: Label used in log messages

    Raises:
        DatabaseRetryableError: If every attempt hit a retryable error
        Exception: Any non-retryable error, immediately
    """
    attempts = policy.max_retries + 1
    last_error: Optional[BaseException] = None

    for attempt in range(attempts):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not is_retryable_database_error(e):
                raise
            last_error = e

        if attempt + 1 < attempts:
            delay = policy.delay_for(attempt)
            logger.warning(f"{operation} failed (attempt {attempt + 1}/{attempts}), retrying in {delay:.2f}s: {last_error}")
            await asyncio.sleep(delay)

    logger.error(f"{operation} failed after {attempts} attempts, giving up: {last_error}")
    raise DatabaseRetryableError(f"{operation} failed after {attempts} attempts: {last_error}")


async def _timed(coro: Awaitable[T], query) -> T:
    start = time.monotonic()
    result = await coro
    elapsed = time.monotonic() - start
    if elapsed >= SLOW_QUERY_THRESHOLD:
        logger.warning(f"Slow query ({elapsed:.2f}s): {str(query)[:500]}")
    return result


async def db_execute_with_retry(db: Database, query, policy: RetryPolicy = DEFAULT_POLICY):
    """Run a write (insert/update) with retries. Returns what db.execute() returns."""
    return await execute_with_retry(lambda: _timed(db.execute(query), query), policy=policy, operation="Database write")


async def fetch_one_with_retry(db: Database, query, policy: RetryPolicy = DEFAULT_POLICY):
    """Run a single-row read with retries. Returns the row or None."""
    return await execute_with_retry(lambda: _timed(db.fetch_one(query), query), policy=policy, operation="Database read")
