"""OTP record stores and the factory that picks one from settings."""

from redis.asyncio import Redis

from app.core.config import Settings
from app.db.session import create_engine
from app.services.stores.base import UNCHANGED, KeyedLocks, OTPRecord, OTPStore
from app.services.stores.database import DatabaseOTPStore
from app.services.stores.memory import MemoryOTPStore
from app.services.stores.redis import RedisOTPStore


def build_store(settings: Settings) -> OTPStore:
    """Construct the backend named by `OTP_STORE_BACKEND`."""
    ttl = settings.OTP_EXPIRE_SECONDS
    if settings.OTP_STORE_BACKEND == "memory":
        return MemoryOTPStore(ttl)
    if settings.OTP_STORE_BACKEND == "redis":
        return RedisOTPStore(Redis.from_url(settings.REDIS_URL, decode_responses=True), ttl)
    if not settings.DATABASE_URL:
        raise RuntimeError("DATABASE_URL must be set when OTP_STORE_BACKEND is 'database'.")
    return DatabaseOTPStore(create_engine(settings.DATABASE_URL), ttl)


__all__ = [
    "UNCHANGED",
    "DatabaseOTPStore",
    "KeyedLocks",
    "MemoryOTPStore",
    "OTPRecord",
    "OTPStore",
    "RedisOTPStore",
    "build_store",
]
