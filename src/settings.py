from typing import Literal

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.exceptions import ConfigurationError


class DispatchSettings(BaseSettings):
    """Matching, presence and lifecycle tuning."""

    staleness_threshold_seconds: float = Field(
        default=60.0,
        ge=1.0,
        le=3600.0,
        description="Driver positions older than this are excluded from proximity queries",
    )
    presence_eviction_seconds: float = Field(
        default=600.0,
        ge=60.0,
        description="Driver presences older than this are dropped from memory entirely",
    )
    default_search_radius_km: float = Field(default=10.0, gt=0.0, le=50.0)
    driver_search_radius_km: float = Field(
        default=5.0,
        gt=0.0,
        le=50.0,
        description="Radius used when a customer looks for drivers around a point",
    )
    max_search_radius_km: float = Field(default=50.0, gt=0.0, le=200.0)
    max_clock_skew_seconds: float = Field(
        default=30.0,
        ge=0.0,
        le=600.0,
        description="How far ahead of the server clock a location timestamp may be",
    )
    h3_resolution: int = Field(
        default=8,
        ge=5,
        le=10,
        description="H3 resolution for driver presence cells",
    )
    ride_index_resolution: int = Field(
        default=6,
        ge=4,
        le=9,
        description="H3 resolution of the persisted ride pickup cell; coarse keeps IN lists short",
    )
    history_page_size_max: int = Field(default=100, ge=1, le=1000)
    location_history_limit_max: int = Field(default=500, ge=1)
    platform_commission_rate: float = Field(default=0.15, ge=0.0, le=1.0)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["text", "json"] = "text"

    model_config = SettingsConfigDict(env_prefix="DISPATCH_")

    @model_validator(mode="after")
    def validate_radius_bounds(self) -> "DispatchSettings":
        if self.default_search_radius_km > self.max_search_radius_km:
            raise ValueError(
                f"default_search_radius_km ({self.default_search_radius_km}) exceeds "
                f"max_search_radius_km ({self.max_search_radius_km})"
            )
        if self.presence_eviction_seconds < self.staleness_threshold_seconds:
            raise ValueError("presence_eviction_seconds must be >= staleness_threshold_seconds")
        return self


class DatabaseSettings(BaseSettings):
    url: str = "sqlite:///./db/dispatch.db"
    lock_timeout_seconds: float = Field(
        default=15.0,
        gt=0.0,
        le=120.0,
        description="Upper bound on how long a write waits for a database lock",
    )
    echo: bool = False

    model_config = SettingsConfigDict(env_prefix="DB_")


class RedisSettings(BaseSettings):
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: str = ""
    ssl: bool = False
    channel: str = "ride-events"

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    @model_validator(mode="after")
    def validate_credentials_provided(self) -> "RedisSettings":
        if not self.password:
            raise ValueError("Required credential not provided: REDIS_PASSWORD")
        return self


class APISettings(BaseSettings):
    key: str = ""
    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1, le=65535)
    ride_request_rate: str = "30/minute"
    location_update_rate: str = "120/minute"

    model_config = SettingsConfigDict(env_prefix="API_")

    @model_validator(mode="after")
    def validate_credentials_provided(self) -> "APISettings":
        if not self.key:
            raise ValueError("Required credential not provided: API_KEY")
        return self


class CORSSettings(BaseSettings):
    origins: str = "http://localhost:3000"

    model_config = SettingsConfigDict(env_prefix="CORS_")

    @field_validator("origins")
    @classmethod
    def strip_origins(cls, v: str) -> str:
        return ",".join(origin.strip().rstrip("/") for origin in v.split(",") if origin.strip())

    def origin_list(self) -> list[str]:
        return [origin for origin in self.origins.split(",") if origin]


class Settings(BaseSettings):
    dispatch: DispatchSettings = Field(default_factory=DispatchSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    api: APISettings = Field(default_factory=APISettings)
    cors: CORSSettings = Field(default_factory=CORSSettings)

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        case_sensitive=False,
    )


def get_settings() -> Settings:
    """Load and validate settings from environment variables.

    Raises:
        ConfigurationError: a variable is missing or invalid
    """
    try:
        return Settings()
    except ValidationError as e:
        fields = [".".join(str(part) for part in err["loc"]) for err in e.errors()]
        raise ConfigurationError(
            f"Invalid configuration: {e.error_count()} error(s)", details={"fields": fields}
        ) from e
