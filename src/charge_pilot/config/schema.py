"""Pydantic configuration models for all system settings."""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator


def _validate_hhmm(value: str) -> str:
    parts = value.split(":")
    if len(parts) != 2:
        raise ValueError(f"expected HH:MM, got {value!r}")
    hour, minute = int(parts[0]), int(parts[1])
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"time out of range: {value!r}")
    return f"{hour:02d}:{minute:02d}"


class BlackoutWindowConfig(BaseModel):
    """Local-time window during which no new rule may trigger."""

    enabled: bool = True
    start: str = "00:00"
    end: str = "00:00"
    label: str = ""

    @field_validator("start", "end")
    @classmethod
    def _check_time(cls, value: str) -> str:
        return _validate_hhmm(value)


class AutomationConfig(BaseModel):
    cycle_interval_seconds: int = Field(60, ge=5)
    cycle_timeout_seconds: float = Field(45.0, gt=0)
    clear_failure_alert_threshold: int = Field(3, ge=1)
    default_cooldown_minutes: int = Field(5, ge=0)
    timezone: str = "Australia/Sydney"
    blackout_windows: list[BlackoutWindowConfig] = Field(default_factory=list)
    adopt_orphan_segments: bool = True
    audit_retention_days: int = Field(30, ge=1)


class CacheConfig(BaseModel):
    telemetry_ttl_seconds: float = 300.0
    price_ttl_seconds: float = 60.0
    weather_ttl_seconds: float = 1800.0
    stale_grace_seconds: float = 3600.0  # How long past expiry a cached value may still be served
    fetch_timeout_seconds: float = 10.0  # Per attempt
    fetch_attempts: int = Field(2, ge=1)
    fetch_retry_delay_seconds: float = Field(1.0, ge=0.0)


class RetryConfig(BaseModel):
    max_attempts: int = Field(3, ge=1)
    initial_delay_seconds: float = Field(2.0, ge=0.0)
    backoff_factor: float = Field(2.0, ge=1.0)
    max_delay_seconds: float = Field(10.0, ge=0.0)


class ReconcilerConfig(BaseModel):
    verify_delay_seconds: float = Field(2.0, ge=0.0)  # FoxESS needs a moment before read-back reflects a write
    verify_timeout_seconds: float = Field(10.0, gt=0)
    scheduler_group_count: int = Field(8, ge=1, le=10)


class TariffProviderConfig(BaseModel):
    type: str = "amber"
    api_key: str = ""
    base_url: str = "https://api.amber.com.au/v1"
    forecast_intervals: int = 288  # 24h of 5-minute intervals
    request_timeout_seconds: float = 30.0


class WeatherProviderConfig(BaseModel):
    type: str = "openmeteo"
    latitude: float = -33.8688
    longitude: float = 151.2093
    forecast_hours: int = 72
    request_timeout_seconds: float = 30.0


class ProvidersConfig(BaseModel):
    tariff: TariffProviderConfig = TariffProviderConfig()
    weather: WeatherProviderConfig = WeatherProviderConfig()


class FoxESSCloudConfig(BaseModel):
    api_key: str = ""
    base_url: str = "https://www.foxesscloud.com"
    request_timeout_seconds: float = 10.0
    min_request_interval_seconds: float = 1.0  # Open API allows ~1 query/s


class HardwareConfig(BaseModel):
    adapter: str = "foxess_cloud"
    foxess: FoxESSCloudConfig = FoxESSCloudConfig()


class UserConfig(BaseModel):
    """One automated user: which device and which tariff site they own."""

    user_id: str
    device_id: str
    site_id: str = ""
    enabled: bool = True


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "json"
    file: str = ""


class DBConfig(BaseModel):
    path: str = "charge_pilot.db"


class AppConfig(BaseModel):
    """Root configuration model containing all system settings."""

    automation: AutomationConfig = AutomationConfig()
    cache: CacheConfig = CacheConfig()
    retry: RetryConfig = RetryConfig()
    reconciler: ReconcilerConfig = ReconcilerConfig()
    providers: ProvidersConfig = ProvidersConfig()
    hardware: HardwareConfig = HardwareConfig()
    users: list[UserConfig] = Field(default_factory=list)
    logging: LoggingConfig = LoggingConfig()
    db: DBConfig = DBConfig()

    def get_user(self, user_id: str) -> UserConfig | None:
        for user in self.users:
            if user.user_id == user_id:
                return user
        return None
