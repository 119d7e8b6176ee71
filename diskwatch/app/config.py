from functools import lru_cache
import json
import logging
from datetime import timedelta
from typing import Annotated, Any, Callable, List, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


logger = logging.getLogger(__name__)

MIN_REFRESH_SECONDS = 10
MAX_REFRESH_SECONDS = 300
DEFAULT_REFRESH_SECONDS = 30
DEFAULT_SNAPSHOT_SECONDS = 300
MIN_SNAPSHOT_SECONDS = 60
DEFAULT_RETENTION_DAYS = 30


def _json_list_or_raw(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        value = value.decode()
    if isinstance(value, str) and value.strip().startswith("["):
        try:
            return json.loads(value.strip())
        except json.JSONDecodeError:
            return value
    return value


def _coerce_int(value: int | str | None, default: int) -> int:
    if value in (None, ""):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="DISKWATCH_",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "diskwatch"
    log_level: str = "INFO"

    refresh_interval_seconds: int = DEFAULT_REFRESH_SECONDS
    snapshot_interval_seconds: int = DEFAULT_SNAPSHOT_SECONDS
    warning_threshold_percent: float = 10.0
    critical_threshold_percent: float = 5.0
    retention_days: int = DEFAULT_RETENTION_DAYS
    trend_lookback_hours: int = 24
    trend_method: Literal["two_point", "regression"] = "two_point"

    database_url: str = "sqlite+aiosqlite:///diskwatch.db"
    store_timeout_seconds: float = 10.0

    # raw env strings reach _parse_mounts, which accepts both "a,b" and JSON lists
    mounted_points: Annotated[List[str], NoDecode] = Field(default_factory=lambda: ["auto"])
    host_root_target: str = "/hostfs"
    root_volume_name: str = "System"
    decimal_places: int = 1

    @field_validator("mounted_points", mode="before")
    @classmethod
    def _parse_mounts(cls, value: List[str] | str) -> List[str]:
        def _normalize_list(items: List[str]) -> List[str]:
            normalized: List[str] = []
            for item in items:
                token = str(item).strip()
                if not token:
                    continue
                if token.lower() == "auto" or token == "*":
                    normalized.append("auto")
                else:
                    normalized.append(token)
            return normalized

        value = _json_list_or_raw(value)
        if isinstance(value, list):
            normalized = _normalize_list(
                [str(mount) for mount in value if isinstance(mount, (str, int, float))]
            )
            return normalized or ["auto"]
        if isinstance(value, str):
            mounts = [
                item.strip().strip('"').strip("'")
                for item in value.split(",")
                if item and item.strip().strip('"').strip("'")
            ]
            return _normalize_list(mounts) or ["auto"]
        return ["auto"]

    @field_validator("host_root_target", mode="before")
    @classmethod
    def _normalize_host_root_target(cls, value: str | None) -> str:
        if value is None:
            return "/hostfs"
        target = str(value).strip()
        if not target:
            return "/hostfs"
        if not target.startswith("/"):
            target = f"/{target}"
        if target != "/":
            target = target.rstrip("/")
        return target or "/hostfs"

    @field_validator("refresh_interval_seconds", mode="before")
    @classmethod
    def _clamp_refresh(cls, value: int | str | None) -> int:
        numeric = _coerce_int(value, DEFAULT_REFRESH_SECONDS)
        return max(MIN_REFRESH_SECONDS, min(MAX_REFRESH_SECONDS, numeric))

    @field_validator("snapshot_interval_seconds", mode="before")
    @classmethod
    def _clamp_snapshot(cls, value: int | str | None) -> int:
        return max(MIN_SNAPSHOT_SECONDS, _coerce_int(value, DEFAULT_SNAPSHOT_SECONDS))

    @field_validator("retention_days", mode="before")
    @classmethod
    def _validate_retention(cls, value: int | str | None) -> int:
        return max(1, _coerce_int(value, DEFAULT_RETENTION_DAYS))

    @field_validator("trend_lookback_hours", mode="before")
    @classmethod
    def _validate_lookback(cls, value: int | str | None) -> int:
        return max(1, _coerce_int(value, 24))

    def retention(self) -> timedelta:
        return timedelta(days=self.retention_days)


SettingsListener = Callable[[Settings], Any]


class SettingsChannel:
    """Delivers configuration changes to subscribers.

    The new ``Settings`` value travels with the notification, so listeners never
    have to look configuration up on their own.
    """

    def __init__(self, initial: Settings) -> None:
        self._current = initial
        self._listeners: list[SettingsListener] = []

    @property
    def current(self) -> Settings:
        return self._current

    def subscribe(self, listener: SettingsListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def publish(self, new_settings: Settings) -> None:
        self._current = new_settings
        for listener in list(self._listeners):
            try:
                listener(new_settings)
            except Exception:  # pragma: no cover
                logger.exception("Settings listener %r failed", listener)

    def update(self, **changes: Any) -> Settings:
        updated = self._current.model_copy(update=changes)
        # model_copy skips validation; run the values back through the validators
        validated = Settings.model_validate(updated.model_dump())
        self.publish(validated)
        return validated


@lru_cache
def get_settings() -> Settings:
    return Settings()
