"""Request-level idempotency.

A retried request that carries the same client request id must not
repeat its side effects.  The first completed result is stored under
``idempotency:{request_id}`` and returned to every later call with that
id until the TTL runs out.  Failed operations are not cached, so a retry
after an error executes again.

Concurrent calls with the same id inside one process are serialised; the
second waits for the first and is then served from the cache.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from pydantic import BaseModel

from ..storage.kv import KVStore
from .models import IdempotencyRecord

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 86400


def idempotency_key(request_id: str) -> str:
    return f"idempotency:{request_id}"


def _to_jsonable(result: Any) -> Any:
    if isinstance(result, BaseModel):
        return result.model_dump(mode="json")
    return result


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


@dataclass
class IdempotentResult:
    """Result of ``with_idempotency``.

    Attributes:
        result: JSON-compatible result of the operation.
        from_cache: ``True`` if served from a stored record.
    """

    result: Any
    from_cache: bool = False


class IdempotencyLayer:
    """Cache operation results by request id.

    Args:
        kv: Backing key-value store.
        ttl_seconds: How long a stored result is honoured.
        clock: Returns the current time in seconds; injectable for tests.
    """

    def __init__(
        self,
        kv: KVStore,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._kv = kv
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._locks: dict[str, _KeyLock] = {}

    async def get_record(self, request_id: str) -> IdempotencyRecord | None:
        """Return the unexpired record for *request_id*, if any."""
        raw = await self._kv.get(idempotency_key(request_id))
        if raw is None:
            return None
        try:
            record = IdempotencyRecord.model_validate_json(raw)
        except ValueError:
            logger.warning("Ignoring unreadable idempotency record %s", request_id)
            return None
        if self._clock() - record.timestamp >= record.ttl_seconds:
            return None
        return record

    async def with_idempotency(
        self,
        request_id: str | None,
        operation: Callable[[], Awaitable[Any]],
    ) -> IdempotentResult:
        """Run *operation* at most once per *request_id* within the TTL.

        Without a request id the operation simply runs.  Pydantic results
        are stored and returned in their JSON form.

        Args:
            request_id: Client-supplied id, or ``None``.
            operation: Zero-argument coroutine function.

        Returns:
            ``IdempotentResult`` with the (possibly cached) result.
        """
        if not request_id:
            return IdempotentResult(_to_jsonable(await operation()))

        key_lock = self._locks.setdefault(request_id, _KeyLock())
        key_lock.users += 1
        try:
            async with key_lock.lock:
                record = await self.get_record(request_id)
                if record is not None:
                    logger.info("Request %s served from cache", request_id)
                    return IdempotentResult(record.result, from_cache=True)

                result = _to_jsonable(await operation())
                record = IdempotencyRecord(
                    request_id=request_id,
                    result=result,
                    timestamp=self._clock(),
                    ttl_seconds=self.ttl_seconds,
                )
                await self._kv.put(
                    idempotency_key(request_id),
                    record.model_dump_json(),
                    ttl_seconds=self.ttl_seconds,
                )
                return IdempotentResult(result)
        finally:
            key_lock.users -= 1
            if key_lock.users == 0:
                del self._locks[request_id]
