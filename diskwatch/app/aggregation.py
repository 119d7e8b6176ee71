from __future__ import annotations

from datetime import datetime
from typing import Sequence

from diskwatch.app.schemas import Snapshot


HOURLY_AGGREGATION_MIN_DAYS = 3


def hour_bucket(value: datetime) -> datetime:
    return value.replace(minute=0, second=0, microsecond=0)


def aggregate(samples: Sequence[Snapshot], window_days: int) -> list[Snapshot]:
    """Reduce ``samples`` to at most one point per hour for chart rendering.

    Short windows (three days or less) are returned untouched. Longer windows
    keep the chronologically last sample of each hour.
    """
    if window_days <= HOURLY_AGGREGATION_MIN_DAYS:
        return list(samples)

    buckets: dict[datetime, Snapshot] = {}
    for sample in samples:
        key = hour_bucket(sample.timestamp)
        current = buckets.get(key)
        if current is None or sample.timestamp >= current.timestamp:
            buckets[key] = sample

    return [buckets[key] for key in sorted(buckets)]
