"""
OneDrive/Excel sync orchestrator.

Sequences the token manager, drive adapter and workbook manager for the three
per-invoice operations the UI calls (upload, resync, remove) plus the
month-wide batch sync. Every public method returns a result object; no
exception crosses this boundary.
"""

import asyncio
import re
import time
from typing import Awaitable, Callable, List, Optional

import httpx
from loguru import logger

from invoice_sync.config import Settings, settings
from invoice_sync.errors import (
    AlreadySynced,
    AuthRequired,
    ErrorKind,
    NotUploadedYet,
    SyncError,
    classify_exception,
)
from invoice_sync.graph_client import GraphClient
from invoice_sync.microsoft_oauth import MicrosoftTokenManager
from invoice_sync.models import BatchResult, InvoiceRecord, SyncConfiguration, SyncResult, SyncStatus
from invoice_sync.onedrive import DeleteOutcome, OneDriveService
from invoice_sync.record_store import RecordStore
from invoice_sync.retry import RetryPolicy
from invoice_sync.settings_provider import SettingsProvider
from invoice_sync.storage import KeyValueStore
from invoice_sync.workbook import WorkbookTableManager, build_row

CONTENT_TYPES = {
    "pdf": "application/pdf",
    "image": "image/jpeg",
}


def remote_file_name(record: InvoiceRecord) -> str:
    """
    Deterministic OneDrive file name for an invoice.

    The customer name is reduced to alphanumerics so it can never break the
    drive path; the sequence id keeps two same-day invoices for one customer apart.
    """
    customer = re.sub(r"[^A-Za-z0-9]", "", record.customer_name) or "Invoice"
    invoice_date = re.sub(r"[^0-9-]", "", record.invoice_date)
    extension = "jpg" if record.file_type == "image" else "pdf"
    return f"{customer}-Receipt-{invoice_date}-{record.sequence_id}.{extension}"


class InvoiceSyncService:
    """Uploads invoices to OneDrive and keeps the tracking workbook in step."""

    def __init__(
        self,
        token_manager: MicrosoftTokenManager,
        drive: OneDriveService,
        workbook: WorkbookTableManager,
        record_store: RecordStore,
        settings_provider: SettingsProvider,
        *,
        batch_delay: float = 0.5,
        error_limit: int = 3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            token_manager: Source of access tokens
            drive: OneDrive adapter
            workbook: Tracking workbook manager
            record_store: Invoice records; only sync status is written back
            settings_provider: Directory and workbook name, read per operation
            batch_delay: Pause between invoices in a batch sync
            error_limit: Number of per-item errors kept in a batch result
            sleep: Awaitable sleep used for the batch pause
        """
        self.token_manager = token_manager
        self.drive = drive
        self.workbook = workbook
        self.record_store = record_store
        self.settings_provider = settings_provider
        self.batch_delay = batch_delay
        self.error_limit = error_limit
        self._sleep = sleep
        self._cancel_event = asyncio.Event()
        self.is_batch_running = False

    # ------------------------------------------------------------------
    # Helpers

    def _failure(self, exc: BaseException, operation: str, record: Optional[InvoiceRecord]) -> SyncResult:
        kind = classify_exception(exc)
        sequence_id = record.sequence_id if record else None
        if isinstance(exc, SyncError):
            logger.error(f"{operation} failed for invoice {sequence_id} [{kind.value}]: {exc.message} {exc.context()}")
            message = exc.message
        else:
            logger.exception(f"{operation} failed for invoice {sequence_id} with unexpected error: {exc}")
            message = f"Unexpected error: {exc}"
        return SyncResult.failed(kind, message)

    def _save_status(self, record: InvoiceRecord, status: SyncStatus) -> Optional[str]:
        """Write sync status back; returns a warning instead of raising."""
        try:
            self.record_store.update_sync_status(record.id, status)
        except Exception as e:
            logger.error(f"Could not save sync status for invoice {record.sequence_id}: {e}")
            return f"Sync status could not be saved: {e}"
        return None

    # ------------------------------------------------------------------
    # Per-invoice operations

    async def upload_invoice(self, record: InvoiceRecord, file_bytes: bytes) -> SyncResult:
        """
        Upload the invoice file and append its workbook row.

        The record is only marked ``excel_synced`` when the row was written.
        When the file upload succeeded but the workbook step did not, the
        record is marked uploaded-only and a PARTIAL_SUCCESS result is returned.
        """
        file_url: Optional[str] = None
        uploaded = False
        try:
            await self.token_manager.ensure_valid_token()
            config = self.settings_provider.sync_configuration()
            file_name = remote_file_name(record)
            logger.info(f"Uploading invoice {record.sequence_id} to OneDrive as {file_name}")

            await self.drive.ensure_folder(config.invoice_directory)
            item = await self.drive.upload_file(
                f"{config.invoice_directory}/{file_name}",
                file_bytes,
                CONTENT_TYPES[record.file_type],
            )
            uploaded = True
            file_url = await self.drive.create_share_link(item.id, item.web_url) or item.web_url

            file_id = await self.workbook.ensure_workbook(config.workbook_file_name)
            await self.workbook.ensure_table(file_id)
            await self.workbook.append_row(file_id, build_row(record, file_url, file_name))
        except AlreadySynced as e:
            result = self._failure(e, "upload_invoice", record)
            result.file_url = file_url
            return result
        except Exception as e:
            if not uploaded:
                return self._failure(e, "upload_invoice", record)

            logger.warning(f"Invoice {record.sequence_id} uploaded but Excel sync failed: {e}")
            result = SyncResult.failed(
                ErrorKind.PARTIAL_SUCCESS,
                f"File uploaded to OneDrive but Excel sync failed: {e}",
                file_url=file_url,
            )
            warning = self._save_status(
                record, SyncStatus(uploaded=True, remote_file_url=file_url, excel_synced=False)
            )
            if warning:
                result.warnings.append(warning)
            return result

        warnings = []
        warning = self._save_status(record, SyncStatus(uploaded=True, remote_file_url=file_url, excel_synced=True))
        if warning:
            warnings.append(warning)
        logger.success(f"Invoice {record.sequence_id} synced to OneDrive and Excel")
        return SyncResult.ok(file_url, warnings)

    async def resync_invoice(self, record: InvoiceRecord) -> SyncResult:
        """Push local edits into the existing workbook row, appending it if it went missing."""
        try:
            status = record.sync_status
            if not status.uploaded or not status.remote_file_url:
                raise NotUploadedYet(
                    "Invoice must be uploaded to OneDrive before it can be resynced",
                    operation="resync_invoice",
                    sequence_id=record.sequence_id,
                )

            await self.token_manager.ensure_valid_token()
            config = self.settings_provider.sync_configuration()
            values = build_row(record, status.remote_file_url, remote_file_name(record))

            file_id = await self.workbook.ensure_workbook(config.workbook_file_name)
            await self.workbook.ensure_table(file_id)
            if not await self.workbook.update_row(file_id, record.sequence_id, values):
                logger.info(f"Row for invoice {record.sequence_id} not found, appending instead")
                await self.workbook.append_row(file_id, values)
        except Exception as e:
            return self._failure(e, "resync_invoice", record)

        warnings = []
        warning = self._save_status(
            record, SyncStatus(uploaded=True, remote_file_url=record.sync_status.remote_file_url, excel_synced=True)
        )
        if warning:
            warnings.append(warning)
        logger.success(f"Invoice {record.sequence_id} resynced to Excel")
        return SyncResult.ok(record.sync_status.remote_file_url, warnings)

    async def remove_invoice_artifacts(self, record: InvoiceRecord) -> SyncResult:
        """
        Best-effort removal of the OneDrive file and the workbook row.

        Remote failures become warnings on a successful result so the caller
        can always go on to delete the local record. Only a missing login is
        reported as a failure.
        """
        status = record.sync_status
        if not status.uploaded and not status.excel_synced and not status.remote_file_url:
            logger.info(f"Invoice {record.sequence_id} was never synced, nothing to remove")
            return SyncResult.ok()

        warnings: List[str] = []
        try:
            await self.token_manager.ensure_valid_token()
            config = self.settings_provider.sync_configuration()
            await self._remove_file(record, config, warnings)
            await self._remove_row(record, config, warnings)
        except AuthRequired as e:
            return self._failure(e, "remove_invoice_artifacts", record)
        except Exception as e:
            logger.warning(f"Remote cleanup for invoice {record.sequence_id} incomplete: {e}")
            warnings.append(f"Remote cleanup incomplete: {e}")

        logger.info(f"Remote cleanup for invoice {record.sequence_id} finished ({len(warnings)} warnings)")
        return SyncResult.ok(warnings=warnings)

    async def _remove_file(self, record: InvoiceRecord, config: SyncConfiguration, warnings: List[str]) -> None:
        outcome = None
        if record.sync_status.remote_file_url:
            outcome = await self.drive.delete_by_url(record.sync_status.remote_file_url)
        if outcome is DeleteOutcome.DELETED:
            return

        path_outcome = await self.drive.delete_by_path(f"{config.invoice_directory}/{remote_file_name(record)}")
        if path_outcome is not DeleteOutcome.DELETED and DeleteOutcome.FAILED in (outcome, path_outcome):
            warnings.append("Could not delete file from OneDrive")

    async def _remove_row(self, record: InvoiceRecord, config: SyncConfiguration, warnings: List[str]) -> None:
        try:
            item = await self.workbook.find_workbook(config.workbook_file_name)
            if item is None:
                logger.info(f"Workbook {config.workbook_file_name} not found, no row to delete")
                return
            await self.workbook.delete_row(item.id, record.sequence_id)
        except AuthRequired:
            raise
        except SyncError as e:
            logger.warning(f"Could not delete Excel row for invoice {record.sequence_id}: {e}")
            warnings.append(f"Could not delete Excel row: {e.message}")

    # ------------------------------------------------------------------
    # Batch

    async def sync_batch(self, records: List[InvoiceRecord]) -> BatchResult:
        """
        Upload invoices one at a time with a pause between them.

        A failed item never stops the batch; :meth:`cancel_batch` stops it
        before the next item starts.
        """
        self._cancel_event.clear()
        self.is_batch_running = True
        result = BatchResult(total=len(records))
        errors: List[str] = []
        logger.info(f"Starting batch sync of {len(records)} invoices")

        try:
            for index, record in enumerate(records):
                if index > 0:
                    await self._sleep(self.batch_delay)
                if self._cancel_event.is_set():
                    result.cancelled = True
                    logger.info(f"Batch sync cancelled after {index} of {len(records)} invoices")
                    break

                try:
                    file_bytes = await self.record_store.fetch_file(record)
                except Exception as e:
                    outcome = self._failure(e, "fetch_file", record)
                else:
                    outcome = await self.upload_invoice(record, file_bytes)

                if outcome.success:
                    result.succeeded += 1
                else:
                    result.failed += 1
                    errors.append(f"Invoice #{record.sequence_id}: {outcome.error}")
        finally:
            self.is_batch_running = False

        result.errors = errors[:self.error_limit]
        result.more_errors = max(0, len(errors) - self.error_limit)
        logger.success(f"Batch sync finished: {result.succeeded} succeeded, {result.failed} failed")
        return result

    async def sync_unsynced(
        self,
        records: Optional[List[InvoiceRecord]] = None,
        month: Optional[str] = None,
    ) -> BatchResult:
        """
        Batch-sync every invoice not yet uploaded.

        Args:
            records: Candidate records; all records in the store when None
            month: Restrict to invoice dates in this "YYYY-MM" month
        """
        if records is None:
            records = self.record_store.list_invoices()

        pending = [
            record for record in records
            if not record.sync_status.uploaded
            and (month is None or record.invoice_date.startswith(f"{month}-"))
        ]
        pending.sort(key=lambda record: record.sequence_id)
        return await self.sync_batch(pending)

    def cancel_batch(self) -> bool:
        """Ask a running batch to stop before its next item. Returns False if none is running."""
        if not self.is_batch_running:
            return False
        self._cancel_event.set()
        logger.info("Batch sync cancellation requested")
        return True

    async def aclose(self) -> None:
        await self.workbook.graph.aclose()
        await self.token_manager.aclose()


def create_sync_service(
    storage: KeyValueStore,
    record_store: RecordStore,
    config: Settings = settings,
    *,
    http: Optional[httpx.AsyncClient] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.time,
) -> InvoiceSyncService:
    """
    Wire a sync service from configuration.

    Args:
        storage: Key/value store for the credential, PKCE state and settings
        record_store: Invoice record collaborator
        config: Settings instance
        http: Shared HTTP client (tests pass one backed by a mock transport)
        sleep: Awaitable sleep for retries, provisioning waits and batch pauses
        clock: Wall clock in seconds for token expiry
    """
    retry = RetryPolicy(attempts=config.sync_retry_attempts, base_delay=config.sync_retry_base_delay, sleep=sleep)
    token_manager = MicrosoftTokenManager.from_settings(storage, config, http=http, clock=clock, retry=retry)
    graph = GraphClient(token_manager, http=http, base_url=config.graph_base_url, timeout=config.graph_timeout_seconds)
    drive = OneDriveService(graph, retry)
    workbook = WorkbookTableManager(
        graph,
        drive,
        retry=retry,
        table_create_base_delay=config.table_create_base_delay,
        provision_delay=config.workbook_provision_delay,
    )
    return InvoiceSyncService(
        token_manager,
        drive,
        workbook,
        record_store,
        SettingsProvider(storage, config),
        batch_delay=config.batch_item_delay,
        error_limit=config.batch_error_display_limit,
        sleep=sleep,
    )
