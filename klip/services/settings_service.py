#!/usr/bin/env python3
"""
Settings Service - Durable user settings stored next to the clips
"""
import logging
from typing import Dict, Optional

from klip.services.database_service import DatabaseService

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS: Dict[str, str] = {
    "retention_days": "90",
}


def _parse_retention_days(value) -> int:
    try:
        days = int(str(value).strip())
    except (TypeError, ValueError):
        raise ValueError(f"retention_days must be an integer, got {value!r}")
    if days < 1:
        raise ValueError(f"retention_days must be at least 1, got {days}")
    return days


# Validators for keys with constrained values
_VALIDATORS = {
    "retention_days": lambda v: str(_parse_retention_days(v)),
}


class SettingsService:
    """Service for managing user settings"""

    def __init__(self, database_service: DatabaseService):
        """
        Initialize settings service

        Args:
            database_service: Clip store holding the settings table
        """
        logger.info("[SettingsService.__init__] Starting initialization...")
        self.db_service = database_service
        logger.info("[SettingsService.__init__] Initialization complete")

    def get_setting(self, key: str) -> Optional[str]:
        """Get a setting, falling back to its default (None if it has none)"""
        value = self.db_service.get_setting(key)
        if value is None:
            return DEFAULT_SETTINGS.get(key)
        return value

    def set_setting(self, key: str, value) -> str:
        """
        Persist a setting

        Raises:
            ValueError: If the key is empty or the value is invalid for the key

        Returns:
            The stored string value
        """
        if not key:
            raise ValueError("Setting key must not be empty")
        validator = _VALIDATORS.get(key)
        stored = validator(value) if validator else str(value)
        self.db_service.set_setting(key, stored)
        logger.info(f"Setting {key} = {stored}")
        return stored

    @property
    def retention_days(self) -> int:
        """Get retention period in days"""
        value = self.get_setting("retention_days")
        try:
            return _parse_retention_days(value)
        except ValueError as e:
            logger.warning(f"Ignoring stored retention_days: {e}")
            return int(DEFAULT_SETTINGS["retention_days"])
