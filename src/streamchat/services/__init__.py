"""Service layer helpers (settings, model catalog, notifications)."""

from .model_catalog import ModelCatalog
from .notifications import NotificationCenter, NotificationLevel
from .settings import Settings, SettingsStore

__all__ = [
    "ModelCatalog",
    "NotificationCenter",
    "NotificationLevel",
    "Settings",
    "SettingsStore",
]
