from datetime import date, datetime, time, timezone


def utc_now_naive() -> datetime:
    """Timestamps are stored as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def window_seconds(start: time, end: time) -> float:
    anchor = date(2000, 1, 1)
    return (datetime.combine(anchor, end) - datetime.combine(anchor, start)).total_seconds()
