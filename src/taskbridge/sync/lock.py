"""Advisory sync lock held in the backing store.

Only one sync run may mutate the mapping store at a time.  The lock is a
``sync:lock`` record ``{"timestamp": ..., "token": ...}``.  A record older
than ``timeout`` seconds is stale and may be taken over by the next
caller.  The lock does not cancel the run that left it behind.

Acquisition and release both go through ``compare_and_swap`` so two
callers racing for a free (or stale) lock cannot both win, and a holder
whose lock was taken over after expiry cannot release the new holder's
lock.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

from ..exceptions import SyncInProgressError
from ..storage.kv import KVStore
from .models import LockToken

logger = logging.getLogger(__name__)

LOCK_KEY = "sync:lock"
DEFAULT_TIMEOUT = 30.0
MIN_RECORD_TTL = 60.0


class SyncLock:
    """Token-based mutual exclusion for sync runs.

    Args:
        kv: Backing key-value store.
        timeout: Seconds after which a held lock is considered stale.
        clock: Returns the current time in seconds; injectable for tests.
    """

    def __init__(
        self,
        kv: KVStore,
        timeout: float = DEFAULT_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._kv = kv
        self.timeout = timeout
        self._clock = clock

    def _holder(self, raw: str | None) -> dict | None:
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Unreadable lock record, treating as stale")
            return None
        return data if isinstance(data, dict) else None

    async def is_held(self) -> bool:
        """Return ``True`` if an unexpired lock record exists."""
        holder = self._holder(await self._kv.get(LOCK_KEY))
        if holder is None:
            return False
        return self._clock() - float(holder.get("timestamp", 0)) < self.timeout

    async def acquire(self) -> LockToken | None:
        """Try to take the lock.

        Returns:
            A ``LockToken`` on success, ``None`` if another unexpired
            holder exists or a concurrent caller won the race.
        """
        raw = await self._kv.get(LOCK_KEY)
        holder = self._holder(raw)
        now = self._clock()
        if holder is not None:
            age = now - float(holder.get("timestamp", 0))
            if age < self.timeout:
                logger.warning(
                    "Sync lock held for %.1fs, not acquiring", age
                )
                return None
            logger.warning(
                "Taking over stale sync lock (age %.1fs)", age
            )

        token = LockToken(token=uuid.uuid4().hex, timestamp=now)
        swapped = await self._kv.compare_and_swap(
            LOCK_KEY,
            raw,
            json.dumps({"timestamp": now, "token": token.token}),
            ttl_seconds=max(MIN_RECORD_TTL, 2 * self.timeout),
        )
        if not swapped:
            logger.warning("Lost race for sync lock")
            return None
        logger.debug("Sync lock acquired: %s", token.token)
        return token

    async def release(self, token: LockToken) -> bool:
        """Release the lock if *token* still holds it.

        Returns:
            ``False`` if the lock was taken over or already gone.
        """
        raw = await self._kv.get(LOCK_KEY)
        holder = self._holder(raw)
        if holder is None or holder.get("token") != token.token:
            logger.warning(
                "Sync lock no longer held by %s, not releasing", token.token
            )
            return False
        released = await self._kv.compare_and_swap(LOCK_KEY, raw, None)
        if released:
            logger.debug("Sync lock released: %s", token.token)
        return released

    @asynccontextmanager
    async def held(self) -> AsyncIterator[LockToken]:
        """Hold the lock for the duration of the block.

        Raises:
            SyncInProgressError: If the lock cannot be acquired.
        """
        token = await self.acquire()
        if token is None:
            raise SyncInProgressError(retry_after=self.timeout)
        try:
            yield token
        finally:
            await self.release(token)
