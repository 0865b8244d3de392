"""
Column defaults and serialisation helpers shared by the model modules.

Both stores key rows by UUID strings and stamp timezone-aware UTC times.
"""

import uuid
from datetime import datetime, timezone


def new_uuid():
    return str(uuid.uuid4())


def utcnow():
    return datetime.now(timezone.utc)


def iso_or_none(value):
    """ISO string for a date/datetime, None for empty values."""
    return value.isoformat() if value else None
