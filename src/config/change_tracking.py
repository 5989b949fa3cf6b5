"""Change tracking configuration.

Snapshot cache bounds and the default tracked-field table for the CRM's
entity types. Environment variables use the CHANGE_TRACKING_ prefix.
"""

from functools import lru_cache
from typing import Dict, Tuple

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Dotted field paths observed per entity type. Types absent here are never tracked.
DEFAULT_TRACKED_FIELDS: Dict[str, Tuple[str, ...]] = {
    "Lead": (
        "status",
        "priority",
        "assigned_to",
        "source",
        "travel_details.budget.value",
        "travel_details.destination",
        "travel_details.departure_date",
        "travel_details.return_date",
        "next_follow_up",
        "audit.updated_by",
    ),
}

DEFAULT_SOFT_DELETE_FIELD = "audit.is_deleted"


class ChangeTrackingSettings(BaseSettings):
    """
    Change tracking settings.

    Example environment variables:
        CHANGE_TRACKING_ENABLED=true
        CHANGE_TRACKING_SNAPSHOT_TTL_SECONDS=3600
        CHANGE_TRACKING_MAX_SNAPSHOT_ENTRIES=1000
    """

    model_config = SettingsConfigDict(
        env_prefix="CHANGE_TRACKING_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    enabled: bool = Field(
        default=True,
        description="Register lifecycle hooks for tracked entity types"
    )
    snapshot_ttl_seconds: float = Field(
        default=3600,
        gt=0,
        description="Idle time after which an unclaimed pre-image is swept"
    )
    sweep_interval_seconds: float = Field(
        default=3600,
        gt=0,
        description="Interval of the background snapshot sweep"
    )
    max_snapshot_entries: int = Field(
        default=1000,
        ge=1,
        description="Capacity of the snapshot cache before an eager sweep"
    )
    max_snapshot_lifetime_seconds: float = Field(
        default=7200,
        gt=0,
        description="Hard cap on snapshot age regardless of reads"
    )
    tracked_fields: Dict[str, Tuple[str, ...]] = Field(
        default_factory=lambda: dict(DEFAULT_TRACKED_FIELDS),
        description="Dotted field paths observed per entity type (JSON in env)"
    )
    soft_delete_field: str = Field(
        default=DEFAULT_SOFT_DELETE_FIELD,
        description="Path of the soft-delete flag in entity state; for Lead a key under audit"
    )
    geo_location_header: str = Field(
        default="X-Geo-Location",
        description="Request header carrying the caller's location"
    )

    @model_validator(mode="after")
    def _lifetime_covers_ttl(self) -> "ChangeTrackingSettings":
        if self.max_snapshot_lifetime_seconds < self.snapshot_ttl_seconds:
            raise ValueError(
                "max_snapshot_lifetime_seconds must be >= snapshot_ttl_seconds"
            )
        return self


@lru_cache
def get_change_tracking_settings() -> ChangeTrackingSettings:
    """Get cached change tracking settings loaded from environment."""
    return ChangeTrackingSettings()
