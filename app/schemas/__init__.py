from app.schemas.common import ErrorDetail, Message
from app.schemas.otp import OTPRequest, OTPVerify

__all__ = [
    "ErrorDetail",
    "Message",
    "OTPRequest",
    "OTPVerify",
]
