from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta, timezone

import pytest

from diskwatch.app.config import Settings, SettingsChannel
from diskwatch.app.scheduler import MonitoringScheduler, PeriodicAction
from diskwatch.app.schemas import MonitorState, SystemLoad, VolumeReading, VolumeStatus
from diskwatch.app.storage import StoreUnavailable


NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)
GB = 1_000_000_000


class FakeEnumerator:
    def __init__(self, *batches: list[VolumeReading]) -> None:
        self.batches = list(batches)
        self.calls = 0

    def __call__(self, settings: Settings) -> list[VolumeReading]:
        index = min(self.calls, len(self.batches) - 1)
        self.calls += 1
        return list(self.batches[index])


class BlockingEnumerator:
    """Returns ``first`` once, then blocks until released before returning ``later``."""

    def __init__(self, first: list[VolumeReading], later: list[VolumeReading]) -> None:
        self.first = first
        self.later = later
        self.release = threading.Event()
        self.calls = 0

    def __call__(self, settings: Settings) -> list[VolumeReading]:
        self.calls += 1
        if self.calls == 1:
            return list(self.first)
        self.release.wait(timeout=5)
        return list(self.later)


class FailingStore:
    """Store double whose database is never reachable."""

    def __init__(self) -> None:
        self.initialize_calls = 0

    @property
    def is_ready(self) -> bool:
        return False

    async def initialize(self) -> None:
        self.initialize_calls += 1
        raise StoreUnavailable("disk is gone")

    async def append(self, readings, at):  # pragma: no cover - never reached while not ready
        raise StoreUnavailable("disk is gone")

    async def query(self, mount_point, since):
        raise StoreUnavailable("disk is gone")

    async def prune(self, older_than):  # pragma: no cover - never reached while not ready
        raise StoreUnavailable("disk is gone")


def _reading(mount: str = "/", free: int = 450 * GB, total: int = 1000 * GB) -> VolumeReading:
    name = "System" if mount == "/" else mount.rsplit("/", 1)[-1]
    return VolumeReading(mount_point=mount, name=name, total_bytes=total, free_bytes=free)


def _load() -> SystemLoad:
    return SystemLoad(sampled_at=NOW, cpu_percent=10.0, ram_used_percent=50.0)


def _scheduler(
    store, enumerator, channel=None, settings=None, clock=lambda: NOW, enumeration_timeout=None
) -> MonitoringScheduler:
    return MonitoringScheduler(
        settings or Settings(),
        store,
        channel,
        enumerator=enumerator,
        load_sampler=_load,
        clock=clock,
        enumeration_timeout=enumeration_timeout,
    )


def test_first_reading_is_available_immediately():
    enumerator = FakeEnumerator([_reading("/data"), _reading("/")])

    scheduler = _scheduler(FailingStore(), enumerator)

    assert enumerator.calls == 1
    assert [reading.mount_point for reading in scheduler.current_readings()] == ["/data", "/"]
    assert scheduler.primary_volume().mount_point == "/"
    assert scheduler.current_trend() is None
    assert scheduler.current_load().cpu_percent == 10.0


@pytest.mark.asyncio
async def test_startup_appends_once_and_computes_trend(store):
    await store.append([_reading(free=500 * GB)], NOW - timedelta(hours=24))
    scheduler = _scheduler(store, FakeEnumerator([_reading(free=450 * GB)]))
    states: list[MonitorState] = []
    scheduler.subscribe(states.append)

    await scheduler.start()
    await scheduler.wait_until_started()
    try:
        history = await store.query("/", NOW - timedelta(days=2))
        trend = scheduler.current_trend("/")
    finally:
        await scheduler.stop()

    assert [item.free_bytes for item in history] == [500 * GB, 450 * GB]
    assert trend is not None
    assert trend.days_until_full == pytest.approx(9.0)
    assert trend.bytes_per_day == pytest.approx(50 * GB)
    assert len(states) == 1
    assert states[0].trend == trend


@pytest.mark.asyncio
async def test_refresh_updates_readings_and_publishes(store):
    enumerator = FakeEnumerator([_reading(free=450 * GB)], [_reading(free=440 * GB), _reading("/data")])
    scheduler = _scheduler(store, enumerator)
    states: list[MonitorState] = []
    unsubscribe = scheduler.subscribe(states.append)

    await scheduler.refresh()

    assert [reading.free_bytes for reading in scheduler.current_readings()] == [440 * GB, 450 * GB]
    assert len(states) == 1
    assert states[0].primary.free_bytes == 440 * GB

    unsubscribe()
    await scheduler.refresh()
    assert len(states) == 1


def test_current_readings_is_a_copy():
    scheduler = _scheduler(FailingStore(), FakeEnumerator([_reading()]))

    readings = scheduler.current_readings()
    readings.clear()

    assert len(scheduler.current_readings()) == 1


@pytest.mark.asyncio
async def test_snapshot_tick_appends_and_prunes(store):
    await store.append([_reading(free=900 * GB)], NOW - timedelta(days=45))
    await store.append([_reading(free=800 * GB)], NOW - timedelta(days=3))
    scheduler = _scheduler(
        store,
        FakeEnumerator([_reading(), _reading("/data")]),
        settings=Settings(retention_days=7),
    )

    await scheduler.take_snapshot()

    root = await store.query("/", NOW - timedelta(days=365))
    assert [item.free_bytes for item in root] == [800 * GB, 450 * GB]
    assert len(await store.query("/data", NOW)) == 1


@pytest.mark.asyncio
async def test_store_failures_never_stop_the_scheduler():
    store = FailingStore()
    scheduler = _scheduler(store, FakeEnumerator([_reading()]))

    await scheduler.start()
    await scheduler.wait_until_started()
    await scheduler.take_snapshot()
    await scheduler.refresh()
    history = await scheduler.history("/", 7)
    trend = await scheduler.trend("/")
    await scheduler.stop()

    assert store.initialize_calls == 2
    assert history == []
    assert trend is None
    assert scheduler.current_readings()[0].mount_point == "/"


@pytest.mark.asyncio
async def test_history_is_aggregated_for_long_windows(store):
    for minute in range(0, 180, 10):
        await store.append([_reading(free=(600 - minute) * GB)], NOW - timedelta(minutes=minute))
    scheduler = _scheduler(store, FakeEnumerator([_reading()]))

    short = await scheduler.history("/", 1)
    weekly = await scheduler.history("/", 7)

    assert len(short) == 18
    assert len(weekly) == 4
    assert [item.timestamp for item in weekly] == sorted(item.timestamp for item in weekly)


@pytest.mark.asyncio
async def test_trend_on_demand_for_other_volumes(store):
    await store.append([_reading("/data", free=200 * GB)], NOW - timedelta(hours=12))
    await store.append([_reading("/data", free=100 * GB)], NOW)
    scheduler = _scheduler(store, FakeEnumerator([_reading()]))

    trend = await scheduler.trend("/data")

    assert trend is not None
    assert trend.days_until_full == pytest.approx(0.5)
    assert scheduler.current_trend("/data") == trend
    assert scheduler.current_trend() is None


def test_volume_status_follows_configured_thresholds():
    scheduler = _scheduler(
        FailingStore(),
        FakeEnumerator([_reading(free=49 * GB)]),
        settings=Settings(warning_threshold_percent=10, critical_threshold_percent=5),
    )

    assert scheduler.volume_status(scheduler.primary_volume()) is VolumeStatus.CRITICAL


@pytest.mark.asyncio
async def test_refresh_interval_change_rebuilds_only_refresh_action(store):
    channel = SettingsChannel(Settings(refresh_interval_seconds=30))
    scheduler = _scheduler(store, FakeEnumerator([_reading()]), channel=channel, settings=channel.current)

    await scheduler.start()
    await scheduler.wait_until_started()
    refresh_before = scheduler._refresh_action  # noqa: SLF001 - internal check
    snapshot_before = scheduler._snapshot_action  # noqa: SLF001 - internal check

    channel.update(refresh_interval_seconds=60, warning_threshold_percent=25)
    for _ in range(5):
        await asyncio.sleep(0)
    await asyncio.gather(*scheduler._background)  # noqa: SLF001 - wait for the rebuild

    try:
        assert scheduler.settings.warning_threshold_percent == 25
        assert scheduler._refresh_action is not refresh_before  # noqa: SLF001
        assert scheduler._refresh_action.interval_seconds == 60  # noqa: SLF001
        assert scheduler._refresh_action.running  # noqa: SLF001
        assert refresh_before.running is False
        assert scheduler._snapshot_action is snapshot_before  # noqa: SLF001
        assert snapshot_before.running
    finally:
        await scheduler.close()


@pytest.mark.asyncio
async def test_threshold_only_change_keeps_refresh_action(store):
    channel = SettingsChannel(Settings())
    scheduler = _scheduler(store, FakeEnumerator([_reading()]), channel=channel, settings=channel.current)
    await scheduler.start()
    await scheduler.wait_until_started()
    refresh_before = scheduler._refresh_action  # noqa: SLF001 - internal check

    channel.update(critical_threshold_percent=2)

    assert scheduler._refresh_action is refresh_before  # noqa: SLF001
    assert scheduler.settings.critical_threshold_percent == 2
    await scheduler.close()


@pytest.mark.asyncio
async def test_stop_is_idempotent(store):
    scheduler = _scheduler(store, FakeEnumerator([_reading()]))

    await scheduler.stop()
    await scheduler.start()
    await scheduler.wait_until_started()
    await scheduler.stop()
    await scheduler.stop()

    assert scheduler.running is False
    assert scheduler._refresh_action is None  # noqa: SLF001


@pytest.mark.asyncio
async def test_request_stop_from_another_thread(store):
    scheduler = _scheduler(store, FakeEnumerator([_reading()]))
    await scheduler.start()
    await scheduler.wait_until_started()

    await asyncio.to_thread(scheduler.request_stop)
    for _ in range(50):
        if not scheduler.running and scheduler._refresh_action is None:  # noqa: SLF001
            break
        await asyncio.sleep(0.01)

    assert scheduler.running is False


@pytest.mark.asyncio
async def test_periodic_action_finishes_in_flight_tick_then_stops():
    started = asyncio.Event()
    release = asyncio.Event()
    ticks: list[str] = []

    async def _tick() -> None:
        ticks.append("start")
        started.set()
        await release.wait()
        ticks.append("end")

    action = PeriodicAction("test", 0.01, _tick)
    await action.start()
    await asyncio.wait_for(started.wait(), timeout=1)

    stopper = asyncio.create_task(action.stop())
    await asyncio.sleep(0.05)
    assert not stopper.done()
    release.set()
    await asyncio.wait_for(stopper, timeout=1)
    await asyncio.sleep(0.05)

    assert ticks == ["start", "end"]
    assert action.running is False


@pytest.mark.asyncio
async def test_periodic_action_keeps_running_after_a_failing_tick():
    calls = 0

    async def _tick() -> None:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("boom")

    action = PeriodicAction("flaky", 0.01, _tick)
    await action.start()
    for _ in range(100):
        if calls >= 3:
            break
        await asyncio.sleep(0.01)
    await action.stop()

    assert calls >= 3


@pytest.mark.asyncio
async def test_failed_append_skips_tick_without_pruning(store, monkeypatch):
    await store.append([_reading(free=900 * GB)], NOW - timedelta(days=45))
    prune_calls: list[datetime] = []

    async def _append(readings, at):
        raise StoreUnavailable("database is locked")

    async def _prune(older_than):
        prune_calls.append(older_than)
        return 0

    monkeypatch.setattr(store, "append", _append)
    monkeypatch.setattr(store, "prune", _prune)
    scheduler = _scheduler(store, FakeEnumerator([_reading()]))

    await scheduler.take_snapshot()

    assert prune_calls == []
    history = await store.query("/", NOW - timedelta(days=365))
    assert [item.free_bytes for item in history] == [900 * GB]


@pytest.mark.asyncio
async def test_failed_prune_keeps_history(store, monkeypatch):
    await store.append([_reading(free=900 * GB)], NOW - timedelta(days=45))

    async def _prune(older_than):
        raise StoreUnavailable("prune timed out")

    monkeypatch.setattr(store, "prune", _prune)
    scheduler = _scheduler(store, FakeEnumerator([_reading(free=450 * GB)]))

    await scheduler.take_snapshot()

    history = await store.query("/", NOW - timedelta(days=365))
    assert [item.free_bytes for item in history] == [900 * GB, 450 * GB]


@pytest.mark.asyncio
async def test_slow_enumeration_keeps_previous_readings(store):
    enumerator = BlockingEnumerator([_reading(free=450 * GB)], [_reading(free=300 * GB)])
    scheduler = _scheduler(store, enumerator, enumeration_timeout=0.05)
    states: list[MonitorState] = []
    scheduler.subscribe(states.append)

    try:
        await scheduler.refresh()
        assert [reading.free_bytes for reading in scheduler.current_readings()] == [450 * GB]
        assert states == []

        # still blocked: the next tick is skipped instead of queueing another scan
        await scheduler.refresh()
        assert enumerator.calls == 2

        enumerator.release.set()
        for _ in range(100):
            if scheduler._enumeration.done():  # noqa: SLF001 - wait for the worker thread
                break
            await asyncio.sleep(0.01)

        await scheduler.refresh()
        assert enumerator.calls == 3
        assert [reading.free_bytes for reading in scheduler.current_readings()] == [300 * GB]
        assert len(states) == 1
    finally:
        enumerator.release.set()
        await scheduler.close()
