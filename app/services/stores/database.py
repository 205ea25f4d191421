"""OTP store persisted through SQLAlchemy's async engine."""

from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.db.base import Base
from app.db.models import OTPRecordRow
from app.db.session import create_session_factory
from app.services.stores.base import UNCHANGED, KeyedLocks, Mutator, OTPRecord, OTPStore, T

logger = structlog.get_logger(__name__)


def _to_record(row: Optional[OTPRecordRow]) -> Optional[OTPRecord]:
    if row is None:
        return None
    return OTPRecord(
        identity=row.identity,
        code_hash=row.code_hash,
        created_at=row.created_at,
        attempts=row.attempts,
        lock_until=row.lock_until,
    )


def _apply(row: OTPRecordRow, record: OTPRecord) -> None:
    row.code_hash = record.code_hash
    row.created_at = record.created_at
    row.attempts = record.attempts
    row.lock_until = record.lock_until


class DatabaseOTPStore(OTPStore):
    """Row-per-identity table guarded by `SELECT ... FOR UPDATE`.

    The row lock serializes writers of an existing row across processes on
    PostgreSQL. A race on the first insert ends in a unique-key conflict,
    which is retried once so the loser sees the winner's row. SQLite ignores
    `FOR UPDATE`, so writers in this process are also serialized per identity.
    """

    def __init__(self, engine: AsyncEngine, ttl_seconds: int):
        super().__init__(ttl_seconds)
        self.engine = engine
        self.session_factory: async_sessionmaker[AsyncSession] = create_session_factory(engine)
        self._locks = KeyedLocks()

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def get(self, identity: str, now: datetime) -> Optional[OTPRecord]:
        async with self.session_factory() as session:
            row = await session.get(OTPRecordRow, identity)
            return self._live(_to_record(row), now)

    async def upsert(self, record: OTPRecord, now: datetime) -> None:
        async with self._locks.hold(record.identity):
            await self._retry_on_conflict(record.identity, lambda: self._merge(record))

    async def _merge(self, record: OTPRecord) -> None:
        async with self.session_factory() as session, session.begin():
            row = OTPRecordRow(identity=record.identity)
            _apply(row, record)
            await session.merge(row)

    async def _retry_on_conflict(self, identity: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run `operation` again if another writer inserted the row first.

        `FOR UPDATE` has no row to lock while the identity is absent, so two
        workers may both try the first insert. The loser's transaction is
        rolled back and rerun against the winner's row.
        """
        try:
            return await operation()
        except IntegrityError:
            logger.info("otp.store.insert_conflict", identity=identity)
            return await operation()

    async def delete(self, identity: str) -> None:
        async with self._locks.hold(identity):
            async with self.session_factory() as session, session.begin():
                await session.execute(delete(OTPRecordRow).where(OTPRecordRow.identity == identity))

    async def modify(self, identity: str, now: datetime, mutator: Mutator[T]) -> T:
        async with self._locks.hold(identity):
            return await self._retry_on_conflict(identity, lambda: self._modify_once(identity, now, mutator))

    async def _modify_once(self, identity: str, now: datetime, mutator: Mutator[T]) -> T:
        async with self.session_factory() as session, session.begin():
            row = await session.scalar(
                select(OTPRecordRow).where(OTPRecordRow.identity == identity).with_for_update()
            )
            new_state, result = await mutator(self._live(_to_record(row), now))
            if new_state is UNCHANGED:
                return result
            if new_state is None:
                if row is not None:
                    await session.delete(row)
            elif row is None:
                row = OTPRecordRow(identity=identity)
                _apply(row, new_state)
                session.add(row)
            else:
                _apply(row, new_state)
            return result

    async def purge_expired(self, now: datetime) -> int:
        cutoff = now - timedelta(seconds=self.ttl_seconds)
        async with self.session_factory() as session, session.begin():
            result = await session.execute(
                delete(OTPRecordRow).where(OTPRecordRow.created_at <= cutoff)
            )
            return result.rowcount or 0

    async def close(self) -> None:
        await self.engine.dispose()
