from __future__ import annotations

import logging
from datetime import datetime, timezone

import psutil

from diskwatch.app.schemas import SystemLoad


logger = logging.getLogger(__name__)


def _cpu_breakdown() -> tuple[float | None, float | None, float | None, float | None]:
    try:
        times = psutil.cpu_times_percent(interval=None)
    except (AttributeError, NotImplementedError, OSError):
        return None, None, None, None
    user = float(getattr(times, "user", 0.0)) + float(getattr(times, "nice", 0.0))
    system = float(getattr(times, "system", 0.0))
    idle = float(getattr(times, "idle", 0.0))
    total = min(100.0, max(0.0, user + system))
    return round(total, 2), round(user, 2), round(system, 2), round(idle, 2)


def sample_system_load() -> SystemLoad:
    """Sample CPU and RAM usage without blocking.

    CPU percentages are measured since the previous call, so the very first
    sample of a process reads as idle.
    """
    cpu_percent, cpu_user, cpu_system, cpu_idle = _cpu_breakdown()

    ram_total = ram_used = ram_available = None
    ram_percent = None
    try:
        memory = psutil.virtual_memory()
    except (AttributeError, OSError):
        logger.debug("Virtual memory statistics unavailable", exc_info=True)
    else:
        ram_total = int(memory.total)
        ram_available = int(memory.available)
        ram_used = max(0, ram_total - ram_available)
        ram_percent = round(float(memory.percent), 2)

    return SystemLoad(
        sampled_at=datetime.now(tz=timezone.utc),
        cpu_percent=cpu_percent,
        cpu_user_percent=cpu_user,
        cpu_system_percent=cpu_system,
        cpu_idle_percent=cpu_idle,
        core_count=psutil.cpu_count(logical=True),
        ram_total_bytes=ram_total,
        ram_used_bytes=ram_used,
        ram_available_bytes=ram_available,
        ram_used_percent=ram_percent,
    )
