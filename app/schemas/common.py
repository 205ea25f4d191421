"""Shared lightweight schemas."""

from typing import Optional

from pydantic import BaseModel


class Message(BaseModel):
    """Standard response envelope used for plain text messages."""

    message: str


class ErrorDetail(BaseModel):
    """Body of the `detail` field on error responses; `code` is stable for clients."""

    code: str
    message: str
    attempts_remaining: Optional[int] = None
    retry_after: Optional[int] = None
