from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def get_utc_timestamp(when: Optional[datetime] = None) -> str:
    """
    Get a UTC timestamp in ISO 8601 format.

    Returns:
    --------
    str : ISO 8601 formatted timestamp with UTC timezone
    """
    return (when or utc_now()).isoformat()


def parse_utc_timestamp(text: Optional[str]) -> Optional[datetime]:
    """Inverse of get_utc_timestamp; None passes through."""
    if text is None:
        return None
    return datetime.fromisoformat(text.replace("Z", "+00:00"))
