"""
Distributed locking for cron runs.

The curator scripts used a local flock; the monitor can be scheduled on more
than one host, so the lock lives in the shared database instead. A record
whose expiry has passed is treated as absent and can be taken over, so a
crashed run never blocks the next one for longer than its TTL.
"""

import os
import time
import socket
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from tools import storage

log = logging.getLogger(__name__)

# Stable per process
INSTANCE_ID = f"{os.environ.get('HOSTNAME') or socket.gethostname() or 'local'}-{os.getpid()}"

DEFAULT_TTL_SECONDS = 300


@dataclass
class LockResult:
    acquired: bool
    lock_id: Optional[str] = None
    holder: Optional[str] = None
    error: Optional[str] = None


@dataclass
class WithLockResult:
    success: bool
    result: Any = None
    error: Optional[str] = None
    skipped: bool = False


def lock_key(name: str) -> str:
    return name if name.startswith("cron:") else f"cron:{name}"


async def acquire_lock(
    name: str,
    ttl_seconds: float = DEFAULT_TTL_SECONDS,
    wait_timeout: float = 0,
    retry_interval: float = 1.0,
    holder: str = INSTANCE_ID,
) -> LockResult:
    """Try to take the named lock.

    With wait_timeout > 0, polls every retry_interval seconds until the
    timeout elapses. A storage error counts as "not acquired".
    """
    lock_id = lock_key(name)

    async def try_acquire() -> LockResult:
        now = time.time()
        try:
            if await storage.try_acquire_lock_record(lock_id, holder, now, now + ttl_seconds):
                log.info(f"Lock acquired: {lock_id} by {holder}")
                return LockResult(acquired=True, lock_id=lock_id, holder=holder)
            existing = await storage.get_lock_record(lock_id)
        except Exception as e:
            log.error(f"Error acquiring lock {lock_id}: {e}")
            return LockResult(acquired=False, lock_id=lock_id, error=str(e))

        if existing is None:
            # Released between our insert attempt and the read; next poll may win
            return LockResult(acquired=False, lock_id=lock_id, error=f"Lock contended: {lock_id}")
        return LockResult(
            acquired=False,
            lock_id=lock_id,
            holder=existing["holder"],
            error=f"Lock held by {existing['holder']} (expires in {existing['expires_at'] - now:.0f}s)",
        )

    result = await try_acquire()
    if result.acquired or wait_timeout <= 0:
        return result

    deadline = time.monotonic() + wait_timeout
    while time.monotonic() < deadline:
        await asyncio.sleep(retry_interval)
        result = await try_acquire()
        if result.acquired:
            return result

    return LockResult(
        acquired=False,
        lock_id=lock_id,
        holder=result.holder,
        error=f"Timeout waiting for lock: {lock_id}",
    )


async def release_lock(name: str, holder: str = INSTANCE_ID) -> bool:
    """Release the lock if we still hold it.

    After an expiry-driven takeover the record belongs to someone else and
    this is a no-op.
    """
    lock_id = lock_key(name)
    try:
        if await storage.delete_lock_record(lock_id, holder):
            log.info(f"Lock released: {lock_id}")
            return True
    except Exception as e:
        log.error(f"Error releasing lock {lock_id}: {e}")
        return False
    log.warning(f"Lock not released (not held by {holder}): {lock_id}")
    return False


async def extend_lock(name: str, additional_seconds: float, holder: str = INSTANCE_ID) -> bool:
    """Push the expiry of a lock we hold to now + additional_seconds."""
    lock_id = lock_key(name)
    try:
        return await storage.extend_lock_record(lock_id, holder, time.time() + additional_seconds)
    except Exception as e:
        log.error(f"Error extending lock {lock_id}: {e}")
        return False


async def is_locked(name: str) -> dict:
    """{"locked": bool, "holder": ..., "expires_at": ...} for the named lock."""
    lock_id = lock_key(name)
    try:
        record = await storage.get_lock_record(lock_id)
    except Exception as e:
        log.error(f"Error checking lock {lock_id}: {e}")
        return {"locked": False}
    if not record or record["expires_at"] < time.time():
        return {"locked": False}
    return {"locked": True, "holder": record["holder"], "expires_at": record["expires_at"]}


async def with_lock(
    name: str,
    fn: Callable[[], Awaitable[Any]],
    ttl_seconds: float = DEFAULT_TTL_SECONDS,
    wait_timeout: float = 0,
    retry_interval: float = 1.0,
    holder: str = INSTANCE_ID,
) -> WithLockResult:
    """Run fn() while holding the lock. The lock is released even if fn raises."""
    lock = await acquire_lock(name, ttl_seconds, wait_timeout, retry_interval, holder)
    if not lock.acquired:
        return WithLockResult(success=False, skipped=True, error=lock.error or "Could not acquire lock")

    try:
        return WithLockResult(success=True, result=await fn())
    except Exception as e:
        log.error(f"Error while holding lock {lock.lock_id}: {e}")
        return WithLockResult(success=False, error=str(e))
    finally:
        await release_lock(name, holder)
