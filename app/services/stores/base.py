"""Record model and storage contract shared by every OTP store backend."""

import abc
import asyncio
import weakref
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Awaitable, Callable, Optional, Tuple, TypeVar, Union

from pydantic import BaseModel, field_validator

T = TypeVar("T")


class _Unchanged:
    def __repr__(self) -> str:
        return "UNCHANGED"


UNCHANGED = _Unchanged()
"""Returned by a mutator to leave the stored record untouched."""

NewState = Union["OTPRecord", None, _Unchanged]
Mutator = Callable[[Optional["OTPRecord"]], Awaitable[Tuple[NewState, T]]]


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round-trip)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class OTPRecord(BaseModel):
    """The single live OTP state for one identity."""

    identity: str
    code_hash: str
    created_at: datetime
    attempts: int = 0
    lock_until: Optional[datetime] = None

    @field_validator("created_at", "lock_until")
    @classmethod
    def normalize_tz(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value) if value is not None else None

    def is_expired(self, now: datetime, ttl_seconds: int) -> bool:
        return now - self.created_at >= timedelta(seconds=ttl_seconds)

    def is_locked(self, now: datetime) -> bool:
        return self.lock_until is not None and self.lock_until > now

    def expires_at(self, ttl_seconds: int) -> datetime:
        return self.created_at + timedelta(seconds=ttl_seconds)


class KeyedLocks:
    """Lazily created `asyncio.Lock` per key, released once nobody holds it."""

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        async with lock:
            yield

    def __len__(self) -> int:
        return len(self._locks)


class OTPStore(abc.ABC):
    """Keyed persistence for `OTPRecord` with logical TTL expiry.

    Reads never return a record whose age has reached `ttl_seconds`, whether
    or not the backend has physically removed it yet. `modify` is the only
    read-modify-write primitive and is atomic per identity.
    """

    def __init__(self, ttl_seconds: int):
        self.ttl_seconds = ttl_seconds

    def _live(self, record: Optional[OTPRecord], now: datetime) -> Optional[OTPRecord]:
        if record is None or record.is_expired(now, self.ttl_seconds):
            return None
        return record

    @abc.abstractmethod
    async def get(self, identity: str, now: datetime) -> Optional[OTPRecord]:
        """Return the live record for `identity`, or None if absent/expired."""

    @abc.abstractmethod
    async def upsert(self, record: OTPRecord, now: datetime) -> None:
        """Replace whatever is stored for `record.identity` as of `now`."""

    @abc.abstractmethod
    async def delete(self, identity: str) -> None:
        """Remove the record for `identity` if present."""

    @abc.abstractmethod
    async def modify(self, identity: str, now: datetime, mutator: Mutator[T]) -> T:
        """Run `mutator` against the live record as one atomic update.

        The mutator receives the current live record (or None) and returns
        `(new_state, result)`. `new_state` is written as the identity's record,
        `None` deletes it and `UNCHANGED` leaves storage as is. `result` is
        handed back to the caller.
        """

    async def purge_expired(self, now: datetime) -> int:
        """Physically remove expired records; returns how many were dropped."""
        return 0

    async def close(self) -> None:
        """Release backend connections."""
