from __future__ import annotations

import json

from support import make_settings
from invoice_sync.models import OneDriveSettingsUpdate
from invoice_sync.settings_provider import SETTINGS_KEY, SettingsProvider
from invoice_sync.storage import JsonFileStore, MemoryStore


def test_defaults_when_nothing_stored():
    provider = SettingsProvider(MemoryStore(), make_settings())

    config = provider.sync_configuration()

    assert config.invoice_directory == "Invoices"
    assert config.workbook_file_name == "Invoice_Tracker.xlsx"


def test_partial_document_is_merged_over_defaults():
    storage = MemoryStore({SETTINGS_KEY: json.dumps({"onedrive": {"invoice_directory": "Receipts"}})})
    provider = SettingsProvider(storage, make_settings())

    current = provider.get_settings()

    assert current.onedrive.invoice_directory == "Receipts"
    assert current.onedrive.excel_file_name == "Invoice_Tracker.xlsx"
    assert current.general.default_category == "Massage Therapy"


def test_unreadable_document_falls_back_to_defaults():
    provider = SettingsProvider(MemoryStore({SETTINGS_KEY: "{not json"}), make_settings())

    assert provider.get_settings() == provider.defaults()


def test_update_onedrive_settings_persists_only_given_fields():
    storage = MemoryStore()
    provider = SettingsProvider(storage, make_settings())

    provider.update_onedrive_settings(OneDriveSettingsUpdate(excel_file_name="Log.xlsx", excel_file_path="/Finance/"))

    stored = json.loads(storage.get(SETTINGS_KEY))
    assert stored["onedrive"]["excel_file_name"] == "Log.xlsx"
    assert stored["onedrive"]["invoice_directory"] == "Invoices"
    assert provider.sync_configuration().workbook_file_name == "Finance/Log.xlsx"


def test_configuration_is_read_fresh_each_time():
    provider = SettingsProvider(MemoryStore(), make_settings())
    before = provider.sync_configuration()

    provider.update_onedrive_settings(OneDriveSettingsUpdate(invoice_directory="/2024/Invoices/"))

    assert before.invoice_directory == "Invoices"
    assert provider.sync_configuration().invoice_directory == "2024/Invoices"


def test_blank_values_use_defaults():
    provider = SettingsProvider(MemoryStore(), make_settings())
    provider.update_onedrive_settings(OneDriveSettingsUpdate(invoice_directory="  ", excel_file_name=""))

    config = provider.sync_configuration()

    assert config.invoice_directory == "Invoices"
    assert config.workbook_file_name == "Invoice_Tracker.xlsx"


def test_reset_and_general_settings():
    storage = MemoryStore()
    provider = SettingsProvider(storage, make_settings())

    updated = provider.update_general_settings(auto_extract_ocr=False)
    assert updated.general.auto_extract_ocr is False

    assert provider.reset_settings() == provider.defaults()
    assert storage.get(SETTINGS_KEY) is None


def test_settings_survive_in_json_file_store(tmp_path):
    path = tmp_path / "state.json"
    SettingsProvider(JsonFileStore(str(path)), make_settings()).update_onedrive_settings(
        OneDriveSettingsUpdate(invoice_directory="Receipts")
    )

    reloaded = SettingsProvider(JsonFileStore(str(path)), make_settings())

    assert reloaded.sync_configuration().invoice_directory == "Receipts"
    assert "invoice_sync:app_settings" in json.loads(path.read_text())
