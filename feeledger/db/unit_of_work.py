"""
Serializable units of work for ledger mutations.

Two layers of exclusivity:
- an in-process asyncio.Lock per scope key (the student), so concurrent callers in one
  worker run first-come-first-served;
- SELECT ... FOR UPDATE plus a version column on fee items and payments, so writers in
  other processes either wait on the row lock or fail the version check and get retried.
"""

import asyncio
import logging
import weakref
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Awaitable, Callable, Iterable, Optional, Sequence, Type, TypeVar, Union

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from feeledger.core.config import settings
from feeledger.core.exceptions import ConflictError


logger = logging.getLogger(__name__)

T = TypeVar("T")
M = TypeVar("M")


class KeyedLocks:
    """asyncio.Lock per key. Locks nobody holds are garbage collected."""

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self.get(key)
        async with lock:
            yield

    @asynccontextmanager
    async def hold_many(self, keys: Iterable[str]):
        """Acquire several keys in sorted order, so overlapping batches cannot deadlock."""
        async with AsyncExitStack() as stack:
            for key in sorted(set(keys)):
                await stack.enter_async_context(self.hold(key))
            yield


ledger_locks = KeyedLocks()


def student_scope(student_id) -> str:
    return f"student:{student_id}"


async def lock_for_update(db: AsyncSession, model: Type[M], ident) -> Optional[M]:
    """Re-read a row from the database under a row lock, overwriting any stale identity-map copy."""
    stmt = (
        select(model)
        .where(model.id == ident)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def run_ledger_unit(
    db: AsyncSession,
    scope_key: Union[str, Sequence[str]],
    work: Callable[[AsyncSession], Awaitable[T]],
    *,
    max_retries: Optional[int] = None,
) -> T:
    """
    Run `work(db)` and commit it as one atomic unit under the scope lock(s).

    `work` must re-read everything it writes (lock_for_update) because a retry starts
    from a rolled-back session. Any other exception rolls back and propagates.
    """
    attempts = max_retries if max_retries is not None else settings.ledger_max_retries
    last_error: Optional[Exception] = None
    keys = [scope_key] if isinstance(scope_key, str) else list(scope_key)
    async with ledger_locks.hold_many(keys):
        for attempt in range(1, attempts + 1):
            try:
                result = await work(db)
                await db.commit()
                return result
            except (StaleDataError, OperationalError) as e:
                await db.rollback()
                last_error = e
                logger.warning(
                    "Ledger conflict on %s (attempt %d/%d): %s", scope_key, attempt, attempts, e
                )
            except Exception:
                await db.rollback()
                raise
    raise ConflictError(detail=f"{scope_key}: {last_error}")
