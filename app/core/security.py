"""Code generation and one-way hashing for OTP secrets."""

import secrets

import anyio
from passlib.context import CryptContext

from app.core.config import settings


def generate_code(length: int = settings.OTP_LENGTH) -> str:
    """Create a numeric OTP of exactly `length` digits with no leading zero."""
    lower_bound = 10 ** (length - 1)
    return str(lower_bound + secrets.randbelow(9 * lower_bound))


class CodeHasher:
    """Salted bcrypt digests for OTP codes.

    bcrypt is CPU-bound, so both operations run in a worker thread to keep
    the event loop responsive while a request is being hashed or verified.
    """

    def __init__(self, rounds: int = settings.OTP_HASH_ROUNDS):
        self.context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=rounds)

    def hash_sync(self, code: str) -> str:
        return self.context.hash(code)

    def verify_sync(self, code: str, digest: str) -> bool:
        return self.context.verify(code, digest)

    async def hash(self, code: str) -> str:
        """Return a new salted digest for `code`."""
        return await anyio.to_thread.run_sync(self.hash_sync, code)

    async def verify(self, code: str, digest: str) -> bool:
        """Check `code` against a digest produced by `hash`."""
        return await anyio.to_thread.run_sync(self.verify_sync, code, digest)
