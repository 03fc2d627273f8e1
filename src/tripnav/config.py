"""Application configuration and settings management."""

from typing import Any, Literal, Optional

import json
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration loaded from environment variables or defaults."""

    model_config = SettingsConfigDict(
        env_prefix="TRIPNAV_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
    )

    app_name: str = "Trip Navigation Engine API"
    api_prefix: str = "/api"
    frontend_allowed_origins: tuple[str, ...] = Field(
        default=(
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ),
        description="Permitted web origins for browser clients (CORS).",
    )

    # Route tracking
    deviation_threshold_m: float = Field(
        default=50.0,
        gt=0.0,
        description="Distance from the closest route vertex beyond which the driver is off-route.",
    )
    min_speed_mps: float = Field(
        default=1.0,
        ge=0.0,
        description="Average speed below which the vehicle is treated as stationary.",
    )
    speed_window_seconds: float = Field(default=60.0, gt=0.0)
    location_history_size: int = Field(default=5, ge=2)
    stationary_eta_factor: float = Field(default=1.1, ge=1.0)
    max_reasonable_speed_mps: float = Field(default=30.0, gt=0.0)
    turn_delay_seconds: float = Field(default=15.0, ge=0.0)
    signal_delay_seconds: float = Field(default=30.0, ge=0.0)
    signal_spacing_m: float = Field(default=500.0, gt=0.0)
    fallback_speed_kmh: float = Field(
        default=40.0,
        gt=0.0,
        description="Assumed speed when no route or speed history is available.",
    )

    # Geofencing
    geofence_radius_m: float = Field(default=50.0, gt=0.0)
    arrival_radius_m: float = Field(default=50.0, gt=0.0)

    # Recalculation
    recalculation_interval_seconds: float = Field(
        default=15.0,
        ge=0.0,
        description="Minimum interval between automatic route recalculations.",
    )
    avoid_tolls: bool = False

    # Trip workflow
    pre_trip_issue_policy: Literal["report_only", "block_departure"] = Field(
        default="report_only",
        description="Whether pre-trip inspection issues only raise a ticket or also block departure.",
    )
    maintenance_due_hours: int = Field(default=24, ge=1)

    # Routing collaborator (OSRM)
    osrm_base_url: Optional[str] = Field(
        default=None,
        description="Base URL for the OSRM routing service (e.g., http://localhost:5000).",
    )
    osrm_profile: Literal["driving", "driving-hgv"] = Field(
        default="driving",
        description="OSRM profile to use when computing routes.",
    )
    osrm_max_retries: int = Field(default=3, ge=0)
    osrm_backoff_seconds: float = Field(default=1.0, ge=0.0)
    osrm_timeout_seconds: float = Field(default=20.0, gt=0.0)

    # Supabase configuration
    supabase_url: Optional[str] = Field(
        default=None,
        description="Supabase project URL (e.g., https://xxx.supabase.co).",
    )
    supabase_key: Optional[str] = Field(
        default=None,
        description="Supabase service role key for backend operations.",
    )
    persistence_max_retries: int = Field(default=3, ge=0)
    persistence_backoff_seconds: float = Field(default=0.5, ge=0.0)

    @field_validator("frontend_allowed_origins", mode="before")
    @classmethod
    def _parse_str_tuple_from_env(cls, value: Any) -> tuple[str, ...]:
        """Parse string tuple from environment variable (comma-separated or JSON array)."""
        if isinstance(value, tuple):
            return value
        if isinstance(value, list):
            return tuple(str(item) for item in value)
        if isinstance(value, str):
            # Try JSON first
            try:
                parsed = json.loads(value)
                if isinstance(parsed, list):
                    return tuple(str(item) for item in parsed)
            except (json.JSONDecodeError, TypeError):
                pass
            if "," in value:
                return tuple(item.strip() for item in value.split(",") if item.strip())
            if value.strip():
                return (value.strip(),)
        return tuple()


settings = Settings()
