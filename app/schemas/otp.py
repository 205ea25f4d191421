"""Pydantic schemas for the OTP request and verification endpoints."""

from pydantic import BaseModel, EmailStr, Field


class OTPRequest(BaseModel):
    """Payload used to request a new OTP for a specific email."""

    email: EmailStr


class OTPVerify(BaseModel):
    """Payload used when submitting a received OTP code for validation."""

    email: EmailStr
    otp: str = Field(..., min_length=1, max_length=32)
