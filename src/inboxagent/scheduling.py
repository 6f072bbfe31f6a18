from datetime import datetime, timedelta, timezone

from croniter import croniter

# Slack added on top of one scan interval when checking the look-back window,
# covering scheduler jitter and mailbox clock skew.
LOOKBACK_SAFETY_MARGIN = timedelta(minutes=5)


def next_scan_time(schedule: str, base: datetime | None = None) -> datetime:
    """Next firing of the cron expression *schedule* after *base*."""
    if base is None:
        base = datetime.now(timezone.utc)
    return croniter(schedule, base).get_next(datetime)


def scan_interval(schedule: str, base: datetime | None = None) -> timedelta:
    """Gap between the next two firings of *schedule*."""
    if base is None:
        base = datetime.now(timezone.utc)
    itr = croniter(schedule, base)
    first = itr.get_next(datetime)
    return itr.get_next(datetime) - first


def lookback_covers_schedule(
    schedule: str, lookback: timedelta, base: datetime | None = None
) -> bool:
    """True if *lookback* spans one scan interval plus the safety margin."""
    return lookback >= scan_interval(schedule, base) + LOOKBACK_SAFETY_MARGIN
