from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite drops tzinfo, so every stored time is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def iso_now() -> str:
    return utcnow().isoformat() + "Z"
