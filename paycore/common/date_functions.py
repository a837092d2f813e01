from datetime import datetime, timezone
from typing import Optional

import structlog
from dateutil.relativedelta import relativedelta

logger = structlog.get_logger()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def renewal_step(interval: Optional[str], count: int) -> relativedelta:
    """
    Length of `count` billing periods of the given interval.

    Unknown intervals fall back to monthly: historical rows carry loosely
    typed values and must keep renewing.
    """
    key = (interval or "").strip().lower()
    if key == "daily":
        return relativedelta(days=count)
    if key == "weekly":
        return relativedelta(weeks=count)
    if key == "monthly":
        return relativedelta(months=count)
    if key == "quarterly":
        return relativedelta(months=3 * count)
    if key in ("yearly", "annually"):
        return relativedelta(years=count)

    logger.warning("Unrecognized billing interval, using monthly cadence", interval=interval)
    return relativedelta(months=count)


def calculate_next_renewal(anchor: datetime, interval: Optional[str], count: int) -> datetime:
    return as_utc(anchor) + renewal_step(interval, count)
