"""
Application settings persisted in the client-side key/value store.

Stored values are always merged over the defaults section by section, so a
settings document written by an older version (missing a key) still yields a
complete configuration.
"""

import json
from typing import Optional

from loguru import logger
from pydantic import ValidationError

from invoice_sync.config import Settings, settings
from invoice_sync.models import (
    AppSettings,
    GeneralSettings,
    OneDriveSettings,
    OneDriveSettingsUpdate,
    SyncConfiguration,
)
from invoice_sync.storage import KeyValueStore

SETTINGS_KEY = "app_settings"


class SettingsProvider:
    """Reads and writes the ``app_settings`` document."""

    def __init__(self, storage: KeyValueStore, config: Settings = settings):
        self._storage = storage
        self._config = config

    def defaults(self) -> AppSettings:
        return AppSettings(
            onedrive=OneDriveSettings(
                invoice_directory=self._config.default_invoice_directory,
                excel_file_name=self._config.default_workbook_file_name,
            ),
            general=GeneralSettings(),
        )

    def get_settings(self) -> AppSettings:
        defaults = self.defaults()
        raw = self._storage.get(SETTINGS_KEY)
        if not raw:
            return defaults

        try:
            stored = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Stored settings unreadable, using defaults: {e}")
            return defaults
        if not isinstance(stored, dict):
            return defaults

        merged = defaults.model_dump()
        for section in merged:
            values = stored.get(section)
            if isinstance(values, dict):
                merged[section].update({k: v for k, v in values.items() if k in merged[section]})

        try:
            return AppSettings.model_validate(merged)
        except ValidationError as e:
            logger.warning(f"Stored settings invalid, using defaults: {e}")
            return defaults

    def save_settings(self, app_settings: AppSettings) -> AppSettings:
        self._storage.set(SETTINGS_KEY, app_settings.model_dump_json())
        logger.info("Settings saved")
        return app_settings

    def update_onedrive_settings(self, update: OneDriveSettingsUpdate) -> AppSettings:
        """Apply the fields set in ``update`` and persist."""
        current = self.get_settings()
        changes = update.model_dump(exclude_none=True)
        current.onedrive = current.onedrive.model_copy(update=changes)
        return self.save_settings(current)

    def update_general_settings(
        self,
        default_category: Optional[str] = None,
        auto_extract_ocr: Optional[bool] = None,
    ) -> AppSettings:
        current = self.get_settings()
        changes = {}
        if default_category is not None:
            changes["default_category"] = default_category
        if auto_extract_ocr is not None:
            changes["auto_extract_ocr"] = auto_extract_ocr
        current.general = current.general.model_copy(update=changes)
        return self.save_settings(current)

    def reset_settings(self) -> AppSettings:
        self._storage.delete(SETTINGS_KEY)
        logger.info("Settings reset to defaults")
        return self.defaults()

    def sync_configuration(self) -> SyncConfiguration:
        """
        Fresh configuration for one sync operation.

        Never cached: the user may change settings between operations.
        """
        onedrive = self.get_settings().onedrive
        directory = onedrive.invoice_directory.strip().strip("/") or self._config.default_invoice_directory
        file_name = onedrive.excel_file_name.strip().strip("/") or self._config.default_workbook_file_name
        file_path = onedrive.excel_file_path.strip().strip("/")
        return SyncConfiguration(
            invoice_directory=directory,
            workbook_file_name=f"{file_path}/{file_name}" if file_path else file_name,
        )
