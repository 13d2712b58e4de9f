from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from core.models import Source
from core.utils import now_utc, parse_iso, to_iso

MAX_BACKOFF_MINUTES = 30
MAX_FAILURE_COUNT = 2 ** 32 - 1


def calculate_backoff(failure_count: int) -> timedelta:
    # 1, 2, 4, 8, 16, then 30 minutes for every further failure
    exponent = min(max(failure_count - 1, 0), 5)
    return timedelta(minutes=min(1 << exponent, MAX_BACKOFF_MINUTES))


def is_in_backoff(source: Source, now: Optional[datetime] = None) -> bool:
    retry_after = parse_iso(source.retry_after)
    if retry_after is None:
        return False
    return (now or now_utc()) < retry_after


def record_failure(source: Source, now: Optional[datetime] = None) -> timedelta:
    now = now or now_utc()
    source.failure_count = min(source.failure_count + 1, MAX_FAILURE_COUNT)
    delay = calculate_backoff(source.failure_count)
    source.retry_after = to_iso(now + delay)
    return delay


def record_success(source: Source) -> None:
    source.failure_count = 0
    source.retry_after = None
