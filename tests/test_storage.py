from __future__ import annotations

import asyncio
import json

import pytest

from support import make_record, make_settings
from invoice_sync.errors import NotFound
from invoice_sync.models import SyncStatus
from invoice_sync.record_store import InMemoryRecordStore, JsonFileRecordStore, load_record_store
from invoice_sync.storage import JsonFileStore


def test_json_file_store_round_trip(tmp_path):
    store = JsonFileStore(str(tmp_path / "nested" / "state.json"))

    store.set("ms_credential", "secret")
    assert JsonFileStore(str(tmp_path / "nested" / "state.json")).get("ms_credential") == "secret"

    store.delete("ms_credential")
    assert store.get("ms_credential") is None


def test_json_file_store_namespaces_keys(tmp_path):
    path = str(tmp_path / "state.json")
    JsonFileStore(path, namespace="a").set("k", "1")

    assert JsonFileStore(path, namespace="b").get("k") is None


def test_corrupt_state_file_reads_as_empty(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{broken")

    assert JsonFileStore(str(path)).get("anything") is None


def test_record_store_only_changes_sync_status():
    record = make_record(1)
    store = InMemoryRecordStore([record])

    store.update_sync_status("inv-1", SyncStatus(uploaded=True, remote_file_url="u", excel_synced=False))

    saved = store.get_invoice("inv-1")
    assert saved.sync_status.uploaded is True
    assert saved.model_dump(exclude={"sync_status"}) == record.model_dump(exclude={"sync_status"})

    with pytest.raises(NotFound):
        store.update_sync_status("missing", SyncStatus())


def test_record_store_missing_file():
    store = InMemoryRecordStore([make_record(1)])

    with pytest.raises(NotFound):
        asyncio.run(store.fetch_file(store.get_invoice("inv-1")))


def _export(tmp_path, *records):
    path = tmp_path / "invoices.json"
    path.write_text(json.dumps({"invoices": [record.model_dump(mode="json") for record in records]}))
    files = tmp_path / "files"
    files.mkdir()
    return path, files


def test_json_record_store_reads_export_and_files(tmp_path):
    path, files = _export(tmp_path, make_record(2), make_record(1))
    (files / "inv-1.pdf").write_bytes(b"%PDF one")

    store = JsonFileRecordStore(str(path), str(files))

    assert [record.sequence_id for record in store.list_invoices()] == [1, 2]
    assert asyncio.run(store.fetch_file(store.get_invoice("inv-1"))) == b"%PDF one"
    with pytest.raises(NotFound):
        asyncio.run(store.fetch_file(store.get_invoice("inv-2")))


def test_json_record_store_persists_sync_status(tmp_path):
    path, files = _export(tmp_path, make_record(1))
    store = JsonFileRecordStore(str(path), str(files))

    store.update_sync_status("inv-1", SyncStatus(uploaded=True, remote_file_url="u", excel_synced=True))

    reloaded = JsonFileRecordStore(str(path), str(files))
    assert reloaded.get_invoice("inv-1").sync_status.remote_file_url == "u"


def test_json_record_store_without_export_is_empty(tmp_path):
    store = JsonFileRecordStore(str(tmp_path / "missing.json"), str(tmp_path / "files"))

    assert store.list_invoices() == []


def test_load_record_store_uses_configured_factory(tmp_path):
    path, files = _export(tmp_path, make_record(3))
    config = make_settings(record_store_path=str(path), record_files_dir=str(files))

    store = load_record_store(config)

    assert isinstance(store, JsonFileRecordStore)
    assert store.get_invoice("inv-3") is not None


def test_load_record_store_rejects_malformed_factory():
    with pytest.raises(ValueError):
        load_record_store(make_settings(record_store_factory="no_colon_here"))


def test_load_record_store_fails_on_unknown_factory():
    with pytest.raises(ImportError):
        load_record_store(make_settings(record_store_factory="no_such_module_xyz:build"))
