"""
Record store collaborator.

The sync core reads invoice records and their file bytes, and writes back only
the ``sync_status`` of a record. The hosted database lives outside this
package; anything with the shape of :class:`RecordStore` can be plugged in
through ``RECORD_STORE_FACTORY`` (``module:callable``, called with the
settings). The default reads a JSON export of the invoices plus a directory
of their files.
"""

import importlib
import json
import os
import threading
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Protocol

from loguru import logger
from pydantic import ValidationError

from invoice_sync.config import Settings, settings
from invoice_sync.errors import NotFound
from invoice_sync.models import InvoiceRecord, SyncStatus


class RecordStore(Protocol):
    def get_invoice(self, invoice_id: str) -> Optional[InvoiceRecord]: ...

    def list_invoices(self) -> List[InvoiceRecord]: ...

    def update_sync_status(self, invoice_id: str, status: SyncStatus) -> None: ...

    async def fetch_file(self, record: InvoiceRecord) -> bytes: ...


class InMemoryRecordStore:
    """Dict-backed record store, used in development and tests."""

    def __init__(self, records: Iterable[InvoiceRecord] = (), files: Optional[Dict[str, bytes]] = None):
        self._records: Dict[str, InvoiceRecord] = {record.id: record for record in records}
        self._files: Dict[str, bytes] = dict(files or {})

    def add(self, record: InvoiceRecord, file_bytes: Optional[bytes] = None) -> None:
        self._records[record.id] = record
        if file_bytes is not None:
            self._files[record.id] = file_bytes

    def get_invoice(self, invoice_id: str) -> Optional[InvoiceRecord]:
        return self._records.get(invoice_id)

    def list_invoices(self) -> List[InvoiceRecord]:
        return sorted(self._records.values(), key=lambda record: record.sequence_id)

    def update_sync_status(self, invoice_id: str, status: SyncStatus) -> None:
        record = self._records.get(invoice_id)
        if record is None:
            raise NotFound(f"Invoice {invoice_id} not found", operation="update_sync_status")
        self._records[invoice_id] = record.model_copy(update={"sync_status": status})
        logger.debug(f"Sync status for invoice {record.sequence_id}: {status.model_dump()}")

    async def fetch_file(self, record: InvoiceRecord) -> bytes:
        data = self._files.get(record.id)
        if data is None:
            raise NotFound(
                f"No stored file for invoice {record.sequence_id}",
                operation="fetch_file",
                sequence_id=record.sequence_id,
            )
        return data


class JsonFileRecordStore(InMemoryRecordStore):
    """
    Invoices from a JSON file (a list of records, or ``{"invoices": [...]}``)
    and their files from ``files_dir/<invoice id>.<ext>``. Sync status
    changes are written back to the JSON file.
    """

    def __init__(self, records_path: str, files_dir: str):
        self.records_path = Path(records_path)
        self.files_dir = Path(files_dir)
        self._lock = threading.Lock()
        super().__init__(self._load())

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "JsonFileRecordStore":
        return cls(config.record_store_path, config.record_files_dir)

    def _load(self) -> List[InvoiceRecord]:
        if not self.records_path.exists():
            logger.warning(f"Invoice records file {self.records_path} not found, no invoices available to sync")
            return []
        with open(self.records_path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
        if isinstance(data, dict):
            data = data.get("invoices", [])

        records = []
        for entry in data:
            try:
                records.append(InvoiceRecord.model_validate(entry))
            except ValidationError as e:
                logger.warning(f"Skipping invalid invoice record {entry.get('id')!r}: {e}")
        logger.info(f"Loaded {len(records)} invoices from {self.records_path}")
        return records

    def _write(self) -> None:
        payload = [record.model_dump(mode="json") for record in self.list_invoices()]
        self.records_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.records_path.with_suffix(self.records_path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
        os.replace(tmp_path, self.records_path)

    def update_sync_status(self, invoice_id: str, status: SyncStatus) -> None:
        with self._lock:
            super().update_sync_status(invoice_id, status)
            self._write()

    async def fetch_file(self, record: InvoiceRecord) -> bytes:
        candidates = sorted(self.files_dir.glob(f"{record.id}.*")) if self.files_dir.is_dir() else []
        if not candidates:
            return await super().fetch_file(record)
        return candidates[0].read_bytes()


def load_record_store(config: Settings = settings) -> RecordStore:
    """Build the record store named by ``config.record_store_factory``."""
    module_name, _, attribute = config.record_store_factory.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"RECORD_STORE_FACTORY must look like 'module:callable', got {config.record_store_factory!r}")

    target = importlib.import_module(module_name)
    for part in attribute.split("."):
        target = getattr(target, part)
    factory: Callable[[Settings], RecordStore] = target

    store = factory(config)
    logger.info(f"Using record store {type(store).__name__} from {config.record_store_factory}")
    return store
