"""
Optimistic-concurrency transaction runner.

Leaderboard and tier rows carry a version column; a concurrent writer makes
the UPDATE match zero rows (StaleDataError), and two writers creating the same
row collide on its key (IntegrityError). Either way the whole unit of work is
rolled back and re-run from a fresh read.
"""

import asyncio
import logging
import os
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from lowman.utils.exceptions import TransactionConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS = int(os.getenv("TRANSACTION_MAX_ATTEMPTS", "5"))
RETRY_BASE_DELAY = float(os.getenv("TRANSACTION_RETRY_BASE_DELAY", "0.05"))

CONFLICT_ERRORS = (StaleDataError, IntegrityError)


async def run_in_transaction(
    session: AsyncSession,
    work: Callable[[AsyncSession], Awaitable[T]],
    operation: str,
    max_attempts: int = None,
) -> T:
    """
    Run ``work`` and commit, retrying the whole unit on write conflicts.

    ``work`` must re-read everything it depends on; it is called again from
    scratch after every rollback.

    Args:
        session: Database session owned by the caller
        work: Async callable performing reads and writes on the session
        operation: Name used in logs and in the conflict error
        max_attempts: Retry budget (defaults to TRANSACTION_MAX_ATTEMPTS)

    Returns:
        Whatever ``work`` returned on the attempt that committed

    Raises:
        TransactionConflictError: If every attempt conflicted
    """
    attempts = max_attempts or MAX_ATTEMPTS
    for attempt in range(1, attempts + 1):
        try:
            result = await work(session)
            await session.commit()
            return result
        except CONFLICT_ERRORS as e:
            await session.rollback()
            if attempt == attempts:
                logger.error(f"{operation}: giving up after {attempt} conflicting attempts: {e}")
                raise TransactionConflictError(operation, attempt) from e
            delay = RETRY_BASE_DELAY * (2 ** (attempt - 1))
            logger.warning(f"{operation}: write conflict on attempt {attempt}, retrying in {delay:.2f}s")
            await asyncio.sleep(delay)
        except Exception:
            await session.rollback()
            raise
    raise TransactionConflictError(operation, attempts)
