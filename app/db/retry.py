"""
Run a unit of work in a transaction, retrying it from scratch on transient
storage conflicts.

Escrow operations read a wallet under a row lock and then write it. Two
requests touching the same rows can deadlock or fail serialization; the loser
is rolled back here and the *whole* unit of work runs again against fresh
state. Business errors propagate on the first attempt.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import EscrowError, TransientConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# MySQL: 1213 deadlock, 1205 lock wait timeout
MYSQL_RETRYABLE = {1213, 1205}
# PostgreSQL: serialization_failure, deadlock_detected
PG_RETRYABLE = {"40001", "40P01"}
RETRYABLE_MARKERS = (
    "deadlock",
    "serialization",
    "could not serialize",
    "lock wait timeout",
    "database is locked",
)


def _driver_code(orig) -> object:
    for attr in ("sqlstate", "pgcode"):
        code = getattr(orig, attr, None)
        if code:
            return code
    args = getattr(orig, "args", None)
    if args and isinstance(args[0], int):
        return args[0]
    return None


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, TransientConflictError):
        return True
    if isinstance(exc, EscrowError):
        return False
    if not isinstance(exc, DBAPIError):
        return False
    code = _driver_code(exc.orig)
    if code in MYSQL_RETRYABLE or code in PG_RETRYABLE:
        return True
    text = str(exc.orig if exc.orig is not None else exc).lower()
    return any(marker in text for marker in RETRYABLE_MARKERS)


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    return min(base_delay * (2 ** (attempt - 1)), max_delay)


async def run_in_transaction(
    sessionmaker: async_sessionmaker[AsyncSession],
    work: Callable[[AsyncSession], Awaitable[T]],
    *,
    max_attempts: int = 3,
    base_delay: float = 0.1,
    max_delay: float = 1.0,
    label: str = "transaction",
) -> T:
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    for attempt in range(1, max_attempts + 1):
        started = time.monotonic()
        try:
            async with sessionmaker() as session:
                async with session.begin():
                    result = await work(session)
            logger.debug("[%s] committed in %.1fms (attempt %s)", label,
                         (time.monotonic() - started) * 1000, attempt)
            return result
        except Exception as e:
            if not is_retryable(e):
                raise
            if attempt >= max_attempts:
                logger.error("[%s] giving up after %s attempts: %s", label, attempt, e)
                raise TransientConflictError(details={"attempts": attempt, "operation": label}) from e
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning("[%s] transient conflict, retrying (attempt %s/%s) after %.0fms: %s",
                           label, attempt, max_attempts, delay * 1000, e)
            await asyncio.sleep(delay)
