from __future__ import annotations

from typing import Dict, Iterable, Optional

from fakes import FakeGraph
from invoice_sync.config import Settings
from invoice_sync.microsoft_oauth import CREDENTIAL_KEY
from invoice_sync.models import Credential, InvoiceRecord, SyncStatus
from invoice_sync.record_store import InMemoryRecordStore
from invoice_sync.storage import MemoryStore
from invoice_sync.sync_service import InvoiceSyncService, create_sync_service

NOW = 1_700_000_000.0


async def no_sleep(_seconds: float) -> None:
    return None


def make_settings(**overrides) -> Settings:
    values = dict(
        microsoft_client_id="test-client",
        microsoft_tenant_id="common",
        microsoft_redirect_uri="http://localhost:8000/api/auth/microsoft/callback",
        state_store_path=".tmp/test_state.json",
        default_invoice_directory="Invoices",
        default_workbook_file_name="Invoice_Tracker.xlsx",
    )
    values.update(overrides)
    return Settings(**values)


def store_credential(storage, *, expires_in: float = 3600, refresh_token: Optional[str] = "refresh-0") -> None:
    credential = Credential(
        access_token="access-0",
        refresh_token=refresh_token,
        expires_at_epoch_ms=int((NOW + expires_in) * 1000),
        scopes=["Files.ReadWrite", "offline_access"],
    )
    storage.set(CREDENTIAL_KEY, credential.model_dump_json())


def make_record(sequence_id: int = 1, **overrides) -> InvoiceRecord:
    values = dict(
        id=f"inv-{sequence_id}",
        sequence_id=sequence_id,
        customer_name="Jane Doe",
        invoice_date="2024-03-01",
        invoice_amount=120.50,
        description_category="Dental",
        file_type="pdf",
    )
    values.update(overrides)
    return InvoiceRecord(**values)


def uploaded(record: InvoiceRecord, url: str) -> InvoiceRecord:
    return record.model_copy(update={
        "sync_status": SyncStatus(uploaded=True, remote_file_url=url, excel_synced=True),
    })


class Harness:
    """A sync service wired to a FakeGraph, an in-memory store and a frozen clock."""

    def __init__(
        self,
        graph: FakeGraph,
        records: Iterable[InvoiceRecord] = (),
        files: Optional[Dict[str, bytes]] = None,
        authenticated: bool = True,
        sleep=no_sleep,
        **setting_overrides,
    ) -> None:
        self.graph = graph
        self.storage = MemoryStore()
        self.settings = make_settings(**setting_overrides)
        self.records = InMemoryRecordStore(records, files)
        self.service: InvoiceSyncService = create_sync_service(
            self.storage,
            self.records,
            self.settings,
            http=graph.client(),
            sleep=sleep,
            clock=lambda: NOW,
        )
        if authenticated:
            store_credential(self.storage)

    @property
    def drive(self):
        return self.service.drive

    @property
    def workbook(self):
        return self.service.workbook

    @property
    def tokens(self):
        return self.service.token_manager
