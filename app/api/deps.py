"""Dependency providers used by FastAPI endpoints.

The OTP manager and rate limiter are built once by the application lifespan
and kept on `app.state`; these helpers hand them to route handlers so the
handlers stay thin.
"""

from fastapi import HTTPException, Request, status

from app.schemas.common import ErrorDetail
from app.services.otp import OTPManager
from app.services.rate_limit import FixedWindowRateLimiter


def get_otp_manager(request: Request) -> OTPManager:
    """Return the manager assembled at startup."""
    return request.app.state.otp_manager


def get_send_limiter(request: Request) -> FixedWindowRateLimiter:
    return request.app.state.send_limiter


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def enforce_send_rate_limit(request: Request) -> None:
    """Reject callers that exceeded the per-IP budget for code requests."""

    info = get_send_limiter(request).check(client_ip(request))
    if not info.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=ErrorDetail(
                code="rate_limited",
                message="Too many OTP requests. Try again later.",
                retry_after=info.retry_after,
            ).model_dump(exclude_none=True),
            headers={"Retry-After": str(info.retry_after)},
        )
