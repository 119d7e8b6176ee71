from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

from diskwatch.app.aggregation import aggregate
from diskwatch.app.config import Settings, SettingsChannel
from diskwatch.app.schemas import MonitorState, Snapshot, SystemLoad, TrendInfo, VolumeReading, VolumeStatus
from diskwatch.app.storage import SnapshotRepository, StoreUnavailable
from diskwatch.app.system_load import sample_system_load
from diskwatch.app.trends import compute_trend
from diskwatch.app.volumes import ROOT_MOUNT, enumerate_volumes


logger = logging.getLogger(__name__)

Enumerator = Callable[[Settings], list[VolumeReading]]
LoadSampler = Callable[[], SystemLoad]
StateListener = Callable[[MonitorState], object]


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class PeriodicAction:
    """Runs ``callback`` every ``interval_seconds`` until stopped.

    The first run happens one interval after ``start``. ``stop`` never
    interrupts a callback that is already running; it waits for it and
    guarantees no further run is scheduled.
    """

    def __init__(self, name: str, interval_seconds: float, callback: Callable[[], Awaitable[None]]) -> None:
        self.name = name
        self.interval_seconds = max(0.01, float(interval_seconds))
        self._callback = callback
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        logger.debug("Starting %s action every %.0fs", self.name, self.interval_seconds)
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name=f"diskwatch-{self.name}")

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        task, self._task = self._task, None
        if task is not asyncio.current_task():
            await task

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            await self._sleep()
            if self._stop_event.is_set():
                break
            try:
                await self._callback()
            except Exception:
                logger.exception("Unexpected error during %s tick", self.name)

    async def _sleep(self) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
        except asyncio.TimeoutError:
            pass


class MonitoringScheduler:
    """Owns the current volume readings and trend and keeps history flowing.

    A refresh action polls volumes and recomputes the primary volume's trend;
    a separate snapshot action persists the latest readings and prunes history
    older than the retention window. The two run on independent periods.
    """

    def __init__(
        self,
        settings: Settings,
        store: SnapshotRepository,
        channel: SettingsChannel | None = None,
        *,
        enumerator: Enumerator = enumerate_volumes,
        load_sampler: LoadSampler | None = sample_system_load,
        clock: Callable[[], datetime] = _utcnow,
        enumeration_timeout: float | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._enumerator = enumerator
        self._load_sampler = load_sampler
        self._clock = clock
        self._enumeration_timeout = enumeration_timeout
        # one worker, so a mount stuck in statvfs can hold at most one thread
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="diskwatch-enumerate")
        self._enumeration: asyncio.Future[list[VolumeReading]] | None = None

        self._state_lock = asyncio.Lock()
        self._actions_lock = asyncio.Lock()
        self._trends: dict[str, TrendInfo] = {}
        self._listeners: list[StateListener] = []
        self._background: set[asyncio.Task] = set()
        self._refresh_action: PeriodicAction | None = None
        self._snapshot_action: PeriodicAction | None = None
        self._startup_task: asyncio.Task[None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._running = False

        # First poll is synchronous so readings exist before anything else runs
        self._readings: tuple[VolumeReading, ...] = ()
        self._readings = tuple(self._poll_volumes())
        self._load: SystemLoad | None = self._sample_load()
        self._last_update = self._clock()

        self._unsubscribe = channel.subscribe(self._on_settings_changed) if channel is not None else None

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def store(self) -> SnapshotRepository:
        return self._store

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        logger.info("Starting disk monitoring")
        self._running = True
        self._loop = asyncio.get_running_loop()
        self._startup_task = asyncio.create_task(self._bootstrap(), name="diskwatch-startup")

    async def wait_until_started(self) -> None:
        if self._startup_task is not None:
            await asyncio.shield(self._startup_task)

    async def stop(self) -> None:
        if not self._running:
            return
        logger.info("Stopping disk monitoring")
        self._running = False
        current = asyncio.current_task()

        startup, self._startup_task = self._startup_task, None
        if startup is not None and startup is not current:
            await startup

        async with self._actions_lock:
            actions = [action for action in (self._refresh_action, self._snapshot_action) if action]
            self._refresh_action = None
            self._snapshot_action = None
        for action in actions:
            await action.stop()

        pending = [task for task in self._background if task is not current]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def request_stop(self) -> None:
        """Ask a running scheduler to stop; callable from any thread."""
        if self._loop is None:
            return
        self._dispatch(self.stop)

    async def close(self) -> None:
        await self.stop()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._executor.shutdown(wait=False, cancel_futures=True)

    async def _bootstrap(self) -> None:
        await self._initialize_store()
        if not self._running:
            return
        if self._store.is_ready:
            await self.take_snapshot()
            await self._recompute_trend()
            self._publish()
        async with self._actions_lock:
            if not self._running:
                return
            self._refresh_action = PeriodicAction(
                "refresh", self._settings.refresh_interval_seconds, self.refresh
            )
            self._snapshot_action = PeriodicAction(
                "snapshot", self._settings.snapshot_interval_seconds, self.take_snapshot
            )
            await self._refresh_action.start()
            await self._snapshot_action.start()

    async def _initialize_store(self) -> None:
        try:
            await self._store.initialize()
        except StoreUnavailable as exc:
            logger.warning("Snapshot store unavailable, keeping in-memory state only: %s", exc)

    async def refresh(self) -> None:
        if self._enumeration is not None and not self._enumeration.done():
            logger.warning("Previous volume enumeration still running; skipping refresh")
            return
        timeout = self._enumeration_timeout or float(self._settings.refresh_interval_seconds)
        self._enumeration = asyncio.get_running_loop().run_in_executor(self._executor, self._poll_volumes)
        try:
            # shielded so a timeout leaves the future tracking the still-running thread
            readings = await asyncio.wait_for(asyncio.shield(self._enumeration), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Volume enumeration timed out after %.1fs; keeping previous readings", timeout)
            return
        load = await asyncio.to_thread(self._sample_load)

        async with self._state_lock:
            self._readings = tuple(readings)
            if load is not None:
                self._load = load
            self._last_update = self._clock()

        await self._recompute_trend()
        self._publish()

    async def take_snapshot(self) -> None:
        if not self._store.is_ready:
            await self._initialize_store()
            if not self._store.is_ready:
                return

        readings = self.current_readings()
        now = self._clock()
        try:
            await self._store.append(readings, now)
        except StoreUnavailable as exc:
            logger.warning("Skipping snapshot tick: %s", exc)
            return

        try:
            await self._store.prune(now - self._settings.retention())
        except StoreUnavailable as exc:
            logger.warning("Pruning old snapshots failed: %s", exc)

    async def _recompute_trend(self) -> None:
        primary = self.primary_volume()
        if primary is None or not self._store.is_ready:
            return
        await self.trend(primary.mount_point)

    def current_readings(self) -> list[VolumeReading]:
        return list(self._readings)

    def primary_volume(self) -> VolumeReading | None:
        return next((reading for reading in self._readings if reading.mount_point == ROOT_MOUNT), None)

    def current_load(self) -> SystemLoad | None:
        return self._load

    def current_trend(self, mount_point: str | None = None) -> TrendInfo | None:
        if mount_point is None:
            primary = self.primary_volume()
            if primary is None:
                return None
            mount_point = primary.mount_point
        return self._trends.get(mount_point)

    def current_state(self) -> MonitorState:
        primary = self.primary_volume()
        return MonitorState(
            last_update=self._last_update,
            readings=self._readings,
            primary=primary,
            trend=self._trends.get(primary.mount_point) if primary else None,
            load=self._load,
        )

    def volume_status(self, reading: VolumeReading) -> VolumeStatus:
        return reading.status(
            warning_threshold=self._settings.warning_threshold_percent,
            critical_threshold=self._settings.critical_threshold_percent,
        )

    async def trend(self, mount_point: str) -> TrendInfo | None:
        """Recompute and cache the trend for ``mount_point``."""
        try:
            trend = await compute_trend(
                self._store,
                mount_point,
                self._settings.trend_lookback_hours,
                now=self._clock(),
                method=self._settings.trend_method,
            )
        except StoreUnavailable as exc:
            logger.warning("Trend recompute for %s skipped: %s", mount_point, exc)
            return self._trends.get(mount_point)

        async with self._state_lock:
            if trend is None:
                self._trends.pop(mount_point, None)
            else:
                self._trends[mount_point] = trend
        return trend

    async def history(self, mount_point: str, window_days: int) -> list[Snapshot]:
        since = self._clock() - timedelta(days=window_days)
        try:
            samples = await self._store.query(mount_point, since)
        except StoreUnavailable as exc:
            logger.warning("History for %s unavailable: %s", mount_point, exc)
            return []
        return aggregate(samples, window_days)

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _poll_volumes(self) -> list[VolumeReading]:
        try:
            return self._enumerator(self._settings)
        except Exception:  # pragma: no cover
            logger.exception("Volume enumeration failed")
            return list(self._readings)

    def _sample_load(self) -> SystemLoad | None:
        if self._load_sampler is None:
            return None
        try:
            return self._load_sampler()
        except Exception:  # pragma: no cover
            logger.exception("System load sampling failed")
            return None

    def _publish(self) -> None:
        if not self._listeners:
            return
        state = self.current_state()
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:  # pragma: no cover
                logger.exception("State listener %r failed", listener)

    def _on_settings_changed(self, new_settings: Settings) -> None:
        previous = self._settings
        self._settings = new_settings
        if new_settings.refresh_interval_seconds == previous.refresh_interval_seconds:
            return
        logger.info(
            "Refresh interval changed from %ss to %ss",
            previous.refresh_interval_seconds,
            new_settings.refresh_interval_seconds,
        )
        if self._loop is not None and self._running:
            self._dispatch(self._rebuild_refresh_action)

    async def _rebuild_refresh_action(self) -> None:
        async with self._actions_lock:
            if not self._running or self._refresh_action is None:
                return
            await self._refresh_action.stop()
            self._refresh_action = PeriodicAction(
                "refresh", self._settings.refresh_interval_seconds, self.refresh
            )
            await self._refresh_action.start()

    def _dispatch(self, factory: Callable[[], Awaitable[None]]) -> None:
        loop = self._loop
        if loop is None:
            return
        try:
            current_loop = asyncio.get_running_loop()
        except RuntimeError:
            current_loop = None
        if current_loop is loop:
            task = loop.create_task(factory())
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        else:
            asyncio.run_coroutine_threadsafe(factory(), loop)
