import uuid
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Return timezone-aware UTC timestamp"""
    return datetime.now(timezone.utc)


def isoformat(dt: datetime) -> str:
    """Return iso-formatted timestamp

    Like .isoformat(), but uses Z for UTC instead of +00:00
    """
    return dt.isoformat().replace("+00:00", "Z")


def new_id() -> str:
    """Generate a new random id.

    Returns
    -------

    id string (16 random bytes as hex-encoded text, chunks separated by '-')
    """
    return str(uuid.uuid4())


def new_id_bytes() -> bytes:
    """Return new_id as ascii bytes"""
    return new_id().encode("ascii")
