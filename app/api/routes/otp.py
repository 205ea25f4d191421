"""HTTP route handlers for requesting and verifying OTP codes."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status

from app.api import deps
from app.schemas.common import ErrorDetail, Message
from app.schemas.otp import OTPRequest, OTPVerify
from app.services.otp import OTPManager, OTPStatus, VerifyOutcome

router = APIRouter(tags=["otp"])

_VERIFY_ERRORS = {
    OTPStatus.NOT_FOUND: (status.HTTP_400_BAD_REQUEST, "No OTP request found or OTP expired."),
    OTPStatus.INVALID: (status.HTTP_400_BAD_REQUEST, "Invalid OTP."),
    OTPStatus.LOCKED: (status.HTTP_429_TOO_MANY_REQUESTS, "Too many failed attempts. Try again later."),
}


def _error(status_code: int, code: str, message: str, retry_after: Optional[int] = None, **extra) -> HTTPException:
    detail = ErrorDetail(code=code, message=message, retry_after=retry_after, **extra)
    headers = {"Retry-After": str(retry_after)} if retry_after else None
    return HTTPException(status_code=status_code, detail=detail.model_dump(exclude_none=True), headers=headers)


@router.post(
    "/send-otp",
    response_model=Message,
    dependencies=[Depends(deps.enforce_send_rate_limit)],
)
async def send_otp(
    payload: OTPRequest,
    otp_manager: OTPManager = Depends(deps.get_otp_manager),
) -> Message:
    """Issue a code for the given email address and send it by email."""

    outcome = await otp_manager.request_code(payload.email)
    if outcome.status is OTPStatus.RATE_LIMITED:
        raise _error(
            status.HTTP_429_TOO_MANY_REQUESTS,
            outcome.status.value,
            "Please wait before requesting another OTP.",
            retry_after=outcome.retry_after,
        )
    return Message(message="OTP sent successfully!")


@router.post("/verify-otp", response_model=Message)
async def verify_otp(
    payload: OTPVerify,
    otp_manager: OTPManager = Depends(deps.get_otp_manager),
) -> Message:
    """Check a submitted code; a correct code consumes it."""

    outcome: VerifyOutcome = await otp_manager.submit_code(payload.email, payload.otp)
    if outcome.status is OTPStatus.VERIFIED:
        return Message(message="OTP verified successfully!")

    status_code, message = _VERIFY_ERRORS[outcome.status]
    if outcome.status is OTPStatus.INVALID:
        message = f"Invalid OTP. Attempts left: {outcome.attempts_remaining}"
    raise _error(
        status_code,
        outcome.status.value,
        message,
        retry_after=outcome.retry_after,
        attempts_remaining=outcome.attempts_remaining,
    )
