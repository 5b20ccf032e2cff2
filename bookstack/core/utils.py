"""
Core Utilities

Shared helpers used across the application.
"""
from datetime import datetime, timezone
import uuid


def utcnow() -> datetime:
    """
    Return timezone-aware UTC datetime.

    Use this instead of datetime.utcnow() which returns naive datetime.
    """
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())
