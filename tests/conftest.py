"""Shared fixtures: a controllable clock, a notifier that records codes, and stores."""

from datetime import datetime, timedelta, timezone
from typing import List, Tuple

import fakeredis
import pytest

from app.core.config import Settings
from app.core.security import CodeHasher
from app.db.session import create_engine
from app.services.email import SENT, DeliveryReport, Notifier
from app.services.otp import OTPManager, OTPPolicy
from app.services.stores import DatabaseOTPStore, MemoryOTPStore, RedisOTPStore

TTL_SECONDS = 600


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingNotifier(Notifier):
    """Keeps every (identity, code) pair instead of sending mail."""

    def __init__(self, report: DeliveryReport = SENT):
        super().__init__(TTL_SECONDS)
        self.report = report
        self.sent: List[Tuple[str, str]] = []

    async def send(self, identity: str, otp_code: str) -> DeliveryReport:
        self.sent.append((identity, otp_code))
        return self.report

    def last_code(self, identity: str) -> str:
        return next(code for sent_to, code in reversed(self.sent) if sent_to == identity)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture(scope="session")
def hasher() -> CodeHasher:
    # Minimum bcrypt cost keeps the suite fast.
    return CodeHasher(rounds=4)


@pytest.fixture
def memory_store() -> MemoryOTPStore:
    return MemoryOTPStore(TTL_SECONDS)


@pytest.fixture
def manager(memory_store, notifier, hasher, clock) -> OTPManager:
    return OTPManager(store=memory_store, notifier=notifier, hasher=hasher, policy=OTPPolicy(), clock=clock)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        OTP_STORE_BACKEND="memory",
        EMAIL_BACKEND="console",
        OTP_HASH_ROUNDS=4,
    )


@pytest.fixture(params=["memory", "redis", "database"])
async def store(request, tmp_path):
    """Each store backend, exercised through the same contract tests."""
    if request.param == "memory":
        yield MemoryOTPStore(TTL_SECONDS)
        return

    if request.param == "redis":
        client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
        redis_store = RedisOTPStore(client, TTL_SECONDS)
        yield redis_store
        await redis_store.close()
        return

    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'otp.db'}")
    db_store = DatabaseOTPStore(engine, TTL_SECONDS)
    await db_store.create_schema()
    yield db_store
    await db_store.close()
