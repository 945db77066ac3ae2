"""
Parcel workflow locking.

A short Redis lease (SET NX EX) per parcel so two workflow requests for the
same parcel do not interleave. The database row lock and version column
still guard correctness; this lock keeps the second caller from burning a
transaction only to hit a conflict.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from redis.exceptions import RedisError

from courier_backend.app.core.config import settings
from courier_backend.app.core.exceptions import StateConflictError, TransientStoreError

logger = logging.getLogger("courier.locks")


def parcel_lock_key(parcel_id: int) -> str:
    return f"parcel:lock:{parcel_id}"


async def acquire_parcel_lock(redis, parcel_id: int, ttl_seconds: Optional[int] = None) -> str:
    """
    Take the workflow lock for a parcel.

    Returns:
        The token that owns the lock

    Raises:
        StateConflictError: If another workflow holds the lock
        TransientStoreError: If Redis is unreachable
    """
    token = uuid.uuid4().hex
    ttl = ttl_seconds or settings.parcel_lock_ttl_seconds
    try:
        acquired = await redis.set(parcel_lock_key(parcel_id), token, ex=ttl, nx=True)
    except (RedisError, OSError) as e:
        raise TransientStoreError(f"Lock store unavailable: {e}")

    if not acquired:
        raise StateConflictError(
            "Parcel is being updated by another request",
            details={"parcel_id": parcel_id},
        )
    return token


async def release_parcel_lock(redis, parcel_id: int, token: str) -> bool:
    """Release the lock if this token still owns it."""
    key = parcel_lock_key(parcel_id)
    try:
        current = await redis.get(key)
        if isinstance(current, bytes):
            current = current.decode()
        if current != token:
            # Lease expired and someone else took it
            return False
        await redis.delete(key)
        return True
    except (RedisError, OSError) as e:
        logger.warning("Failed to release lock for parcel %s: %s", parcel_id, e)
        return False


@asynccontextmanager
async def parcel_workflow_lock(redis, parcel_id: int) -> AsyncIterator[str]:
    token = await acquire_parcel_lock(redis, parcel_id)
    try:
        yield token
    finally:
        await release_parcel_lock(redis, parcel_id, token)
