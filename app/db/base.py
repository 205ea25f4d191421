"""Declarative base holding the metadata for the OTP tables."""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for ORM models; `create_schema` builds its metadata."""
