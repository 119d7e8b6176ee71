from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from contextlib import asynccontextmanager
from typing import AsyncIterator

from diskwatch.app.config import Settings, SettingsChannel, get_settings
from diskwatch.app.db import build_engine
from diskwatch.app.formatting import (
    describe_trend,
    format_bytes,
    status_summary,
    trend_warning,
    trend_warning_is_urgent,
)
from diskwatch.app.schemas import MonitorState
from diskwatch.app.scheduler import MonitoringScheduler
from diskwatch.app.storage import SnapshotRepository


logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(settings: Settings) -> None:
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)


def create_scheduler(settings: Settings, channel: SettingsChannel | None = None) -> MonitoringScheduler:
    engine = build_engine(settings)
    store = SnapshotRepository(engine, timeout_seconds=settings.store_timeout_seconds)
    return MonitoringScheduler(settings, store, channel)


@asynccontextmanager
async def lifespan(scheduler: MonitoringScheduler) -> AsyncIterator[MonitoringScheduler]:
    await scheduler.start()
    try:
        yield scheduler
    finally:
        await scheduler.close()
        await scheduler.store.close()


def render_report(scheduler: MonitoringScheduler) -> list[str]:
    settings = scheduler.settings
    decimals = settings.decimal_places
    lines: list[str] = []
    for reading in scheduler.current_readings():
        status = scheduler.volume_status(reading)
        lines.append(
            f"{reading.name} ({reading.mount_point}): "
            f"{format_bytes(reading.free_bytes, decimals)} free of {format_bytes(reading.total_bytes, decimals)} "
            f"({reading.free_percentage:.1f}% free, {status.value})"
        )
    trend = scheduler.current_trend()
    if trend is None:
        lines.append("Trend: collecting data")
    else:
        line = f"Trend: {describe_trend(trend, decimals)} over {trend.period_hours}h ({trend.data_points} snapshots)"
        warning = trend_warning(trend)
        if warning:
            line = f"{line}, {warning}"
            if trend_warning_is_urgent(trend):
                line = f"{line}!"
        lines.append(line)
    return lines


async def run_once(settings: Settings) -> list[str]:
    scheduler = create_scheduler(settings)
    async with lifespan(scheduler):
        await scheduler.wait_until_started()
        return render_report(scheduler)


async def run_forever(settings: Settings) -> None:
    channel = SettingsChannel(settings)
    scheduler = create_scheduler(settings, channel)

    def _log_state(state: MonitorState) -> None:
        logger.info("%s", status_summary(state, decimals=settings.decimal_places))

    scheduler.subscribe(_log_state)
    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_requested.set)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - platform specific
            pass

    async with lifespan(scheduler):
        await stop_requested.wait()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="diskwatch",
        description="Monitor mounted volumes and forecast when they fill up.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Take one reading, record it, print a report and exit.",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings)
    if args.once:
        for line in asyncio.run(run_once(settings)):
            print(line)
        return 0
    try:
        asyncio.run(run_forever(settings))
    except KeyboardInterrupt:  # pragma: no cover - interactive stop
        pass
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
