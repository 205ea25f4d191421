"""OTP issuance and validation: the request/submit lifecycle.

`OTPManager` owns the rules (cooldown, TTL, attempt counting, lockout) and
delegates persistence to an `OTPStore` and delivery to a `Notifier`, both
injected at construction. Business outcomes are returned as values; only
infrastructure failures raise, as `OTPServiceError`.
"""

import enum
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, TypeVar

import anyio
import structlog

from app.core.config import Settings
from app.core.security import CodeHasher, generate_code
from app.services.email import DeliveryReport, Notifier
from app.services.stores.base import UNCHANGED, OTPRecord, OTPStore

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class OTPStatus(str, enum.Enum):
    SENT = "sent"
    RATE_LIMITED = "rate_limited"
    VERIFIED = "verified"
    NOT_FOUND = "not_found"
    INVALID = "invalid_otp"
    LOCKED = "locked"


@dataclass(frozen=True)
class RequestOutcome:
    """Result of asking for a new code."""

    status: OTPStatus
    retry_after: Optional[int] = None


@dataclass(frozen=True)
class VerifyOutcome:
    """Result of submitting a candidate code."""

    status: OTPStatus
    attempts_remaining: Optional[int] = None
    retry_after: Optional[int] = None


class OTPServiceError(Exception):
    """Storage, hashing or delivery failed; the caller sees an internal error."""


@dataclass(frozen=True)
class OTPPolicy:
    code_length: int = 6
    ttl_seconds: int = 600
    cooldown_seconds: int = 60
    max_attempts: int = 5
    lock_seconds: int = 300
    reissue_clears_lock: bool = True
    store_timeout: float = 5.0
    notify_timeout: float = 20.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "OTPPolicy":
        return cls(
            code_length=settings.OTP_LENGTH,
            ttl_seconds=settings.OTP_EXPIRE_SECONDS,
            cooldown_seconds=settings.OTP_COOLDOWN_SECONDS,
            max_attempts=settings.OTP_MAX_ATTEMPTS,
            lock_seconds=settings.OTP_LOCK_SECONDS,
            reissue_clears_lock=settings.OTP_REISSUE_CLEARS_LOCK,
            store_timeout=settings.OTP_STORE_TIMEOUT_SECONDS,
            notify_timeout=settings.OTP_NOTIFY_TIMEOUT_SECONDS,
        )


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_identity(identity: str) -> str:
    normalized = identity.strip().lower()
    if not normalized:
        raise ValueError("identity must not be empty")
    return normalized


def _seconds_until(deadline: datetime, now: datetime) -> int:
    return max(1, math.ceil((deadline - now).total_seconds()))


class OTPManager:
    """High-level API for issuing and validating OTP codes."""

    def __init__(
        self,
        store: OTPStore,
        notifier: Notifier,
        hasher: Optional[CodeHasher] = None,
        policy: Optional[OTPPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
        code_generator: Callable[[int], str] = generate_code,
    ):
        self.store = store
        self.notifier = notifier
        self.hasher = hasher or CodeHasher()
        self.policy = policy or OTPPolicy()
        self.clock = clock
        self.code_generator = code_generator

    async def _guarded(self, operation: str, awaitable: Awaitable[T], timeout: float) -> T:
        """Await an infrastructure call, turning failures and timeouts into `OTPServiceError`."""
        try:
            with anyio.fail_after(timeout):
                return await awaitable
        except Exception as exc:
            logger.error("otp.backend_failed", operation=operation, error=repr(exc))
            raise OTPServiceError(f"{operation} failed") from exc

    def _issue_refusal(self, record: Optional[OTPRecord], now: datetime) -> Optional[RequestOutcome]:
        """Return a RATE_LIMITED outcome if a new code may not be issued yet."""
        if record is None:
            return None
        if not self.policy.reissue_clears_lock and record.is_locked(now):
            return RequestOutcome(OTPStatus.RATE_LIMITED, retry_after=_seconds_until(record.lock_until, now))
        cooldown_ends = record.created_at + timedelta(seconds=self.policy.cooldown_seconds)
        if now < cooldown_ends:
            return RequestOutcome(OTPStatus.RATE_LIMITED, retry_after=_seconds_until(cooldown_ends, now))
        return None

    async def request_code(self, identity: str) -> RequestOutcome:
        """Issue a fresh code for `identity` and email it.

        A prior record is replaced outright, which resets the attempt counter
        and clears any lock. If the email cannot be sent the new record stays
        stored and `OTPServiceError` is raised.
        """

        identity = normalize_identity(identity)
        now = self.clock()

        existing = await self._guarded("otp lookup", self.store.get(identity, now), self.policy.store_timeout)
        refusal = self._issue_refusal(existing, now)
        if refusal is not None:
            logger.info("otp.request.rate_limited", identity=identity, retry_after=refusal.retry_after)
            return refusal

        code = self.code_generator(self.policy.code_length)
        code_hash = await self._guarded("otp hashing", self.hasher.hash(code), self.policy.store_timeout)
        record = OTPRecord(identity=identity, code_hash=code_hash, created_at=now)

        async def replace(current: Optional[OTPRecord]):
            # A concurrent request may have issued a code since the lookup.
            late_refusal = self._issue_refusal(current, now)
            if late_refusal is not None:
                return UNCHANGED, late_refusal
            return record, None

        refusal = await self._guarded(
            "otp store", self.store.modify(identity, now, replace), self.policy.store_timeout
        )
        if refusal is not None:
            logger.info("otp.request.rate_limited", identity=identity, retry_after=refusal.retry_after)
            return refusal

        report: DeliveryReport = await self._guarded(
            "otp delivery", self.notifier.send(identity, code), self.policy.notify_timeout
        )
        if not report.ok:
            logger.error("otp.request.delivery_failed", identity=identity, reason=report.status.value, detail=report.detail)
            raise OTPServiceError(f"OTP delivery {report.status.value}")

        logger.info("otp.request.sent", identity=identity)
        return RequestOutcome(OTPStatus.SENT)

    def _well_formed(self, candidate: str) -> bool:
        """Only exactly `code_length` ASCII digits can match; anything else is a miss."""
        return len(candidate) == self.policy.code_length and candidate.isascii() and candidate.isdigit()

    async def submit_code(self, identity: str, candidate: str) -> VerifyOutcome:
        """Check `candidate` against the stored hash for `identity`.

        The lookup, comparison and attempt bookkeeping run as one atomic store
        update so parallel submissions cannot lose a failed attempt.
        """

        identity = normalize_identity(identity)
        now = self.clock()
        policy = self.policy

        async def attempt(record: Optional[OTPRecord]):
            if record is None:
                return UNCHANGED, VerifyOutcome(OTPStatus.NOT_FOUND)

            if record.is_locked(now):
                return UNCHANGED, VerifyOutcome(
                    OTPStatus.LOCKED, attempts_remaining=0, retry_after=_seconds_until(record.lock_until, now)
                )

            if self._well_formed(candidate) and await self.hasher.verify(candidate, record.code_hash):
                return None, VerifyOutcome(OTPStatus.VERIFIED)

            attempts = record.attempts + 1
            if attempts >= policy.max_attempts:
                locked = record.model_copy(
                    update={"attempts": attempts, "lock_until": now + timedelta(seconds=policy.lock_seconds)}
                )
                return locked, VerifyOutcome(OTPStatus.LOCKED, attempts_remaining=0, retry_after=policy.lock_seconds)

            return record.model_copy(update={"attempts": attempts}), VerifyOutcome(
                OTPStatus.INVALID, attempts_remaining=policy.max_attempts - attempts
            )

        outcome = await self._guarded("otp verification", self.store.modify(identity, now, attempt), policy.store_timeout)
        logger.info(
            "otp.verify." + outcome.status.value,
            identity=identity,
            attempts_remaining=outcome.attempts_remaining,
        )
        return outcome

    async def purge_expired(self) -> int:
        """Drop expired records from the store; used by the background sweep."""
        return await self._guarded(
            "otp purge", self.store.purge_expired(self.clock()), self.policy.store_timeout
        )

    async def close(self) -> None:
        await self.notifier.close()
        await self.store.close()
