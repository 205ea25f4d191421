"""OTP store backed by Redis, using WATCH/MULTI for atomic updates."""

import math
from datetime import datetime
from typing import Optional

import structlog
from redis.asyncio import Redis
from redis.exceptions import WatchError

from app.services.stores.base import UNCHANGED, KeyedLocks, Mutator, OTPRecord, OTPStore, T

logger = structlog.get_logger(__name__)


def _otp_key(identity: str) -> str:
    """Generate the Redis key that scopes an OTP to a user's email."""
    return f"otp:{identity}"


class RedisOTPStore(OTPStore):
    """Records are JSON strings whose Redis expiry tracks the OTP TTL.

    Redis evicts keys on its own once the TTL passes, but reads still apply
    the logical expiry check so clock skew between the service and Redis
    cannot revive a stale code.
    """

    max_watch_retries = 10

    def __init__(self, redis_client: Redis, ttl_seconds: int):
        super().__init__(ttl_seconds)
        self.redis = redis_client
        self._locks = KeyedLocks()

    def _decode(self, raw: Optional[str], now: datetime) -> Optional[OTPRecord]:
        if raw is None:
            return None
        return self._live(OTPRecord.model_validate_json(raw), now)

    def _expiry_seconds(self, record: OTPRecord, now: datetime) -> int:
        remaining = (record.expires_at(self.ttl_seconds) - now).total_seconds()
        return max(1, math.ceil(remaining))

    async def get(self, identity: str, now: datetime) -> Optional[OTPRecord]:
        return self._decode(await self.redis.get(_otp_key(identity)), now)

    async def upsert(self, record: OTPRecord, now: datetime) -> None:
        await self.redis.set(
            _otp_key(record.identity),
            record.model_dump_json(),
            ex=self._expiry_seconds(record, now),
        )

    async def delete(self, identity: str) -> None:
        await self.redis.delete(_otp_key(identity))

    async def modify(self, identity: str, now: datetime, mutator: Mutator[T]) -> T:
        key = _otp_key(identity)
        # The local lock avoids WATCH conflicts between coroutines of this
        # process; WATCH covers writers in other processes.
        async with self._locks.hold(identity):
            async with self.redis.pipeline(transaction=True) as pipe:
                for attempt in range(1, self.max_watch_retries + 1):
                    try:
                        await pipe.watch(key)
                        current = self._decode(await pipe.get(key), now)
                        new_state, result = await mutator(current)
                        if new_state is UNCHANGED:
                            await pipe.unwatch()
                            return result
                        pipe.multi()
                        if new_state is None:
                            pipe.delete(key)
                        else:
                            pipe.set(key, new_state.model_dump_json(), ex=self._expiry_seconds(new_state, now))
                        await pipe.execute()
                        return result
                    except WatchError:
                        logger.debug("otp.store.watch_conflict", identity=identity, attempt=attempt)
                        continue
        raise RuntimeError(f"Concurrent updates kept conflicting for {identity!r}")

    async def close(self) -> None:
        await self.redis.aclose()
