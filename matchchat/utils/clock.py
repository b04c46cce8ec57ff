from datetime import datetime, timezone


def utcnow() -> datetime:
    # MongoDB keeps millisecond precision; truncate so stored and returned values agree
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond - now.microsecond % 1000)
