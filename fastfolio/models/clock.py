from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC, the form SQLite hands back on reload."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
