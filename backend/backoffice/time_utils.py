from __future__ import annotations

from datetime import datetime, timezone, timedelta
from typing import Optional


# Business documents (order and statement numbers) are dated in Korea time
BUSINESS_TZ = timezone(timedelta(hours=9), name="KST")


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def business_today_str() -> str:
    """YYYYMMDD in business time, used for document numbering."""
    return datetime.now(BUSINESS_TZ).strftime("%Y%m%d")


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Serializes datetime to ISO-8601 with trailing 'Z'.
    If dt is naive, it is treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt_utc = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt_utc.isoformat().replace("+00:00", "Z")
