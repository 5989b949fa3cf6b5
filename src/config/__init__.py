"""Configuration module for the CRM change-tracking service."""

from .database import DatabaseSettings, get_database_settings
from .change_tracking import (
    ChangeTrackingSettings,
    get_change_tracking_settings,
    DEFAULT_TRACKED_FIELDS,
    DEFAULT_SOFT_DELETE_FIELD,
)
from .logging_config import configure_logging, get_logger

__all__ = [
    "DatabaseSettings",
    "get_database_settings",
    "ChangeTrackingSettings",
    "get_change_tracking_settings",
    "DEFAULT_TRACKED_FIELDS",
    "DEFAULT_SOFT_DELETE_FIELD",
    "configure_logging",
    "get_logger",
]
