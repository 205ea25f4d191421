"""Process-local OTP store for development, tests and single-worker deployments."""

from datetime import datetime
from typing import Dict, Optional

from app.services.stores.base import UNCHANGED, KeyedLocks, Mutator, OTPRecord, OTPStore, T


class MemoryOTPStore(OTPStore):
    """Dictionary-backed store serialized by a per-identity lock."""

    def __init__(self, ttl_seconds: int):
        super().__init__(ttl_seconds)
        self._records: Dict[str, OTPRecord] = {}
        self._locks = KeyedLocks()

    def _read(self, identity: str, now: datetime) -> Optional[OTPRecord]:
        record = self._live(self._records.get(identity), now)
        if record is None:
            self._records.pop(identity, None)
        return record

    async def get(self, identity: str, now: datetime) -> Optional[OTPRecord]:
        return self._read(identity, now)

    async def upsert(self, record: OTPRecord, now: datetime) -> None:
        async with self._locks.hold(record.identity):
            self._records[record.identity] = record

    async def delete(self, identity: str) -> None:
        async with self._locks.hold(identity):
            self._records.pop(identity, None)

    async def modify(self, identity: str, now: datetime, mutator: Mutator[T]) -> T:
        async with self._locks.hold(identity):
            new_state, result = await mutator(self._read(identity, now))
            if new_state is None:
                self._records.pop(identity, None)
            elif new_state is not UNCHANGED:
                self._records[identity] = new_state
            return result

    async def purge_expired(self, now: datetime) -> int:
        expired = [
            identity
            for identity, record in self._records.items()
            if record.is_expired(now, self.ttl_seconds)
        ]
        for identity in expired:
            del self._records[identity]
        return len(expired)

    def __len__(self) -> int:
        return len(self._records)
