from __future__ import annotations

from diskwatch.app.schemas import MonitorState, TrendInfo


TREND_WARNING_DAYS = 30
TREND_URGENT_DAYS = 7


def format_bytes(value: float, decimals: int = 1) -> str:
    """Render a byte count in decimal units (GB, or TB from 1e12 upwards)."""
    places = max(0, int(decimals))
    terabytes = value / 1_000_000_000_000
    if abs(terabytes) >= 1:
        return f"{terabytes:.{places}f} TB"
    return f"{value / 1_000_000_000:.{places}f} GB"


def describe_trend(trend: TrendInfo, decimals: int = 1) -> str:
    if trend.bytes_per_day == 0:
        return "stable"
    rate = format_bytes(abs(trend.bytes_per_day), decimals)
    if trend.bytes_per_day > 0:
        return f"-{rate}/day"
    return f"+{rate}/day"


def trend_warning(trend: TrendInfo | None) -> str | None:
    if trend is None or trend.days_until_full is None:
        return None
    days = trend.days_until_full
    if not 0 < days < TREND_WARNING_DAYS:
        return None
    if days < 1:
        return "full within 24h"
    if days < TREND_URGENT_DAYS:
        return f"full in {int(days)} days"
    return f"about {int(days)} days until full"


def trend_warning_is_urgent(trend: TrendInfo | None) -> bool:
    """True when the volume is forecast to fill within a week."""
    if trend is None or trend.days_until_full is None:
        return False
    return 0 < trend.days_until_full < TREND_URGENT_DAYS


def status_summary(
    state: MonitorState,
    *,
    show_cpu: bool = True,
    show_ram: bool = True,
    show_disk: bool = True,
    decimals: int = 1,
) -> str:
    parts: list[str] = []
    load = state.load
    if show_cpu and load is not None and load.cpu_percent is not None:
        parts.append(f"CPU {int(load.cpu_percent)}%")
    if show_ram and load is not None and load.ram_used_percent is not None:
        parts.append(f"RAM {int(load.ram_used_percent)}%")
    if show_disk and state.primary is not None:
        parts.append(format_bytes(state.primary.free_bytes, decimals))
    return " | ".join(parts) if parts else "System"
