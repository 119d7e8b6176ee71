from __future__ import annotations

import logging
import math
import statistics
from datetime import datetime, timedelta, timezone
from typing import Literal, Protocol, Sequence

from diskwatch.app.schemas import Snapshot, TrendInfo


logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK_HOURS = 24
SECONDS_PER_HOUR = 3600

TrendMethod = Literal["two_point", "regression"]


class SnapshotSource(Protocol):
    async def query(self, mount_point: str, since: datetime) -> list[Snapshot]: ...


def _build_trend(bytes_per_hour: float, last: Snapshot, data_points: int, elapsed_hours: float) -> TrendInfo:
    days_until_full: float | None = None
    if bytes_per_hour > 0 and last.free_bytes > 0:
        days_until_full = (last.free_bytes / bytes_per_hour) / 24

    return TrendInfo(
        bytes_per_hour=bytes_per_hour,
        bytes_per_day=bytes_per_hour * 24,
        days_until_full=days_until_full,
        data_points=data_points,
        period_hours=math.floor(elapsed_hours),
    )


def calculate_trend(snapshots: Sequence[Snapshot]) -> TrendInfo | None:
    """Two-point extrapolation between the first and last snapshot."""
    if len(snapshots) < 2:
        return None

    first = snapshots[0]
    last = snapshots[-1]
    elapsed_hours = (last.timestamp - first.timestamp).total_seconds() / SECONDS_PER_HOUR
    if elapsed_hours <= 0:
        return None

    bytes_diff = first.free_bytes - last.free_bytes
    bytes_per_hour = bytes_diff / elapsed_hours
    return _build_trend(bytes_per_hour, last, len(snapshots), elapsed_hours)


def calculate_regression_trend(snapshots: Sequence[Snapshot]) -> TrendInfo | None:
    """Least-squares slope of free bytes over every snapshot in the window."""
    if len(snapshots) < 2:
        return None

    first = snapshots[0]
    last = snapshots[-1]
    elapsed_hours = (last.timestamp - first.timestamp).total_seconds() / SECONDS_PER_HOUR
    if elapsed_hours <= 0:
        return None

    hours = [(item.timestamp - first.timestamp).total_seconds() / SECONDS_PER_HOUR for item in snapshots]
    free = [float(item.free_bytes) for item in snapshots]
    try:
        slope, _intercept = statistics.linear_regression(hours, free)
    except statistics.StatisticsError:
        # all x values equal
        return None
    # slope is the change in free bytes; consumption is its negation
    return _build_trend(-slope, last, len(snapshots), elapsed_hours)


async def compute_trend(
    store: SnapshotSource,
    mount_point: str,
    lookback_hours: int = DEFAULT_LOOKBACK_HOURS,
    *,
    now: datetime | None = None,
    method: TrendMethod = "two_point",
) -> TrendInfo | None:
    reference = now or datetime.now(tz=timezone.utc)
    since = reference - timedelta(hours=lookback_hours)
    snapshots = await store.query(mount_point, since)
    if method == "regression":
        trend = calculate_regression_trend(snapshots)
    else:
        trend = calculate_trend(snapshots)
    if trend is None:
        logger.debug("Not enough history for %s trend (%d snapshots)", mount_point, len(snapshots))
    return trend
