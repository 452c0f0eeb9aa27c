"""
Column types for the SQLite schema.

SQLite has no timezone-aware timestamp type, so values are stored as naive
UTC and handed back to Python code as aware UTC datetimes.
"""
from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator

from ..timeutils import ensure_utc


class UTCDateTime(TypeDecorator):
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return ensure_utc(value).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        return ensure_utc(value)
