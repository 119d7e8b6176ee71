from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class VolumeStatus(str, Enum):
    HEALTHY = "healthy"
    CAUTION = "caution"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def color(self) -> str:
        return _STATUS_COLORS[self]


_STATUS_COLORS = {
    VolumeStatus.HEALTHY: "green",
    VolumeStatus.CAUTION: "yellow",
    VolumeStatus.WARNING: "orange",
    VolumeStatus.CRITICAL: "red",
}


class VolumeReading(BaseModel):
    """Capacity of one mounted volume at the moment of the last poll."""

    model_config = ConfigDict(frozen=True)

    mount_point: str
    name: str
    total_bytes: int = Field(..., ge=0)
    free_bytes: int = Field(..., ge=0)
    is_removable: bool = False
    is_internal: bool = True
    device: str | None = None
    fstype: str | None = None

    @property
    def used_bytes(self) -> int:
        return self.total_bytes - self.free_bytes

    @property
    def used_percentage(self) -> float:
        if self.total_bytes <= 0:
            return 0.0
        return self.used_bytes / self.total_bytes * 100

    @property
    def free_percentage(self) -> float:
        if self.total_bytes <= 0:
            return 0.0
        return self.free_bytes / self.total_bytes * 100

    def status(self, warning_threshold: float = 10.0, critical_threshold: float = 5.0) -> VolumeStatus:
        free_percent = self.free_percentage
        if free_percent < critical_threshold:
            return VolumeStatus.CRITICAL
        if free_percent < warning_threshold:
            return VolumeStatus.WARNING
        if free_percent < warning_threshold + 10:
            return VolumeStatus.CAUTION
        return VolumeStatus.HEALTHY


class Snapshot(BaseModel):
    """One persisted capacity measurement of one volume."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    timestamp: datetime
    volume_name: str
    mount_point: str
    total_bytes: int = Field(..., ge=0)
    free_bytes: int = Field(..., ge=0)

    @field_validator("timestamp")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @classmethod
    def from_reading(cls, reading: VolumeReading, at: datetime) -> "Snapshot":
        return cls(
            timestamp=at,
            volume_name=reading.name,
            mount_point=reading.mount_point,
            total_bytes=reading.total_bytes,
            free_bytes=reading.free_bytes,
        )

    @property
    def used_bytes(self) -> int:
        return self.total_bytes - self.free_bytes

    @property
    def used_percentage(self) -> float:
        if self.total_bytes <= 0:
            return 0.0
        return self.used_bytes / self.total_bytes * 100


class TrendInfo(BaseModel):
    """Rate of change of free space over a lookback window.

    ``bytes_per_hour`` and ``bytes_per_day`` are positive while free space is
    being consumed and negative while it grows.
    """

    model_config = ConfigDict(frozen=True)

    bytes_per_hour: float
    bytes_per_day: float
    days_until_full: float | None = None
    data_points: int = Field(..., ge=0)
    period_hours: int = Field(..., ge=0)

    @property
    def is_consuming(self) -> bool:
        return self.bytes_per_day > 0

    @property
    def is_freeing(self) -> bool:
        return self.bytes_per_day < 0


class SystemLoad(BaseModel):
    model_config = ConfigDict(frozen=True)

    sampled_at: datetime
    cpu_percent: float | None = Field(None, ge=0, le=100)
    cpu_user_percent: float | None = None
    cpu_system_percent: float | None = None
    cpu_idle_percent: float | None = None
    core_count: int | None = None
    ram_total_bytes: int | None = Field(None, ge=0)
    ram_used_bytes: int | None = Field(None, ge=0)
    ram_available_bytes: int | None = Field(None, ge=0)
    ram_used_percent: float | None = Field(None, ge=0, le=100)


class MonitorState(BaseModel):
    """Point-in-time copy of everything the scheduler publishes."""

    model_config = ConfigDict(frozen=True)

    last_update: datetime
    readings: tuple[VolumeReading, ...] = ()
    primary: VolumeReading | None = None
    trend: TrendInfo | None = None
    load: SystemLoad | None = None
