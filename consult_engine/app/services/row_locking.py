"""
Per-entity locking.

Every read-modify-write on a session or subscription runs under two locks:
an in-process asyncio.Lock keyed by (kind, id), and a SELECT ... FOR UPDATE
row lock in the database. Keys are always acquired in the order given, and
callers pass the session key before the subscription key.
"""

import asyncio
import weakref
from contextlib import asynccontextmanager, AsyncExitStack
from typing import Hashable, Optional, Tuple, Type

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from consult_engine.app.models.subscription import Subscription
from consult_engine.app.models.consultation_enums import SubscriptionStatus

LockKey = Tuple[str, Hashable]


def session_key(session_type, session_id: int) -> LockKey:
    return (getattr(session_type, "value", session_type), session_id)


def subscription_key(patient_id: int) -> LockKey:
    return ("subscription", patient_id)


def wallet_key(provider_id: int) -> LockKey:
    return ("wallet", provider_id)


def appointment_key(appointment_id: int) -> LockKey:
    return ("appointment", appointment_id)


class EntityLockRegistry:
    """
    Lazily created asyncio locks, one per entity key.

    Locks are held in a WeakValueDictionary so entries disappear once no
    coroutine is using them.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[LockKey, asyncio.Lock]" = weakref.WeakValueDictionary()

    def lock_for(self, key: LockKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, *keys: LockKey):
        """Acquire the locks for keys in order; duplicates are taken once."""
        ordered = list(dict.fromkeys(keys))
        locks = [self.lock_for(key) for key in ordered]
        async with AsyncExitStack() as stack:
            for lock in locks:
                await stack.enter_async_context(lock)
            yield


entity_locks = EntityLockRegistry()


async def select_for_update(db: AsyncSession, model: Type, row_id: int):
    """
    Re-read a row under a write lock.

    populate_existing makes the ORM overwrite any stale identity-map copy
    with the freshly locked values.
    """
    result = await db.execute(
        select(model)
        .where(model.id == row_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def select_active_subscription(
    db: AsyncSession,
    patient_id: int,
    for_update: bool = False
) -> Optional[Subscription]:
    """Most recent active subscription owned by patient_id."""
    query = select(Subscription).where(
        Subscription.user_id == patient_id,
        Subscription.is_active == True,
        Subscription.status == SubscriptionStatus.ACTIVE,
    ).order_by(Subscription.id.desc()).limit(1)

    if for_update:
        query = query.with_for_update().execution_options(populate_existing=True)

    result = await db.execute(query)
    return result.scalar_one_or_none()
