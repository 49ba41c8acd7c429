"""
Pydantic models for sync state, invoice records, results and API payloads.
"""

from typing import List, Optional, Literal
from datetime import datetime
from pydantic import BaseModel, Field

from invoice_sync.errors import ErrorKind


# Token state

class Credential(BaseModel):
    """OAuth credential persisted by the token manager."""
    access_token: str
    refresh_token: Optional[str] = None
    expires_at_epoch_ms: int
    scopes: List[str] = Field(default_factory=list)


class PkceState(BaseModel):
    """Ephemeral PKCE exchange state; consumed exactly once by the callback."""
    code_verifier: str
    state: str
    created_at_epoch_ms: int


class TokenStatus(BaseModel):
    """Token validity without side effects."""
    is_valid: bool
    expires_at: Optional[datetime] = None
    time_remaining_seconds: Optional[float] = None


# Invoice records (owned by the record store)

class SyncStatus(BaseModel):
    """Remote side effects that have actually completed for an invoice."""
    uploaded: bool = False
    remote_file_url: Optional[str] = None
    excel_synced: bool = False


class InvoiceRecord(BaseModel):
    """Invoice as read from the record store. Only ``sync_status`` is written by the sync core."""
    id: str
    sequence_id: int = Field(..., ge=1)
    customer_name: str = Field(..., min_length=1)
    invoice_date: str = Field(..., description="ISO date, YYYY-MM-DD")
    invoice_amount: float
    description_category: str
    description_other: Optional[str] = None
    file_url: str = ""
    file_type: Literal["image", "pdf"] = "pdf"
    sync_status: SyncStatus = Field(default_factory=SyncStatus)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def description(self) -> str:
        if self.description_category == "Other" and self.description_other:
            return self.description_other
        return self.description_category


# Remote drive

class DriveItem(BaseModel):
    """Subset of a Graph driveItem used by the sync core."""
    id: str
    name: str
    web_url: Optional[str] = None
    mime_type: Optional[str] = None
    is_folder: bool = False

    @classmethod
    def from_graph(cls, data: dict) -> "DriveItem":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            web_url=data.get("webUrl"),
            mime_type=(data.get("file") or {}).get("mimeType"),
            is_folder="folder" in data,
        )


class FolderEntry(BaseModel):
    """Folder shown in the settings folder picker."""
    name: str
    path: str
    isFolder: bool = True


class SpreadsheetEntry(BaseModel):
    """Spreadsheet shown in the settings workbook picker."""
    id: str
    name: str
    path: str


# Settings

class OneDriveSettings(BaseModel):
    invoice_directory: str = "Invoices"
    excel_file_name: str = "Invoice_Tracker.xlsx"
    excel_file_path: str = ""


class GeneralSettings(BaseModel):
    default_category: str = "Massage Therapy"
    auto_extract_ocr: bool = True


class AppSettings(BaseModel):
    onedrive: OneDriveSettings = Field(default_factory=OneDriveSettings)
    general: GeneralSettings = Field(default_factory=GeneralSettings)


class SyncConfiguration(BaseModel):
    """Configuration surface consumed by one sync operation."""
    invoice_directory: str
    workbook_file_name: str


# Results

class SyncResult(BaseModel):
    """Outcome of one orchestrator operation."""
    success: bool
    file_url: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    warnings: List[str] = Field(default_factory=list)

    @classmethod
    def ok(cls, file_url: Optional[str] = None, warnings: Optional[List[str]] = None) -> "SyncResult":
        return cls(success=True, file_url=file_url, warnings=warnings or [])

    @classmethod
    def failed(cls, kind: ErrorKind, error: str, file_url: Optional[str] = None) -> "SyncResult":
        return cls(success=False, error=error, error_kind=kind, file_url=file_url)


class BatchResult(BaseModel):
    """Aggregate outcome of a sequential batch sync."""
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: bool = False
    errors: List[str] = Field(default_factory=list)
    more_errors: int = 0

    def summary(self) -> str:
        message = f"Successfully synced: {self.succeeded} invoices"
        if self.failed:
            message += f"\nFailed to sync: {self.failed} invoices"
            if self.errors:
                message += "\n\nErrors:\n" + "\n".join(self.errors)
                if self.more_errors:
                    message += f"\n... and {self.more_errors} more errors"
        if self.cancelled:
            message += "\nSync stopped before all invoices were processed"
        return message


# API models

class MicrosoftAuthURL(BaseModel):
    """Microsoft authorization URL response."""
    auth_url: str
    state: str


class AuthStatus(BaseModel):
    authenticated: bool
    state: str
    expires_at: Optional[datetime] = None
    time_remaining_seconds: Optional[float] = None


class BatchSyncRequest(BaseModel):
    """Request to sync every not-yet-uploaded invoice, optionally within one month."""
    invoice_ids: List[str] = Field(default_factory=list)
    month: Optional[str] = Field(None, pattern=r"^\d{4}-\d{2}$")


class OneDriveSettingsUpdate(BaseModel):
    invoice_directory: Optional[str] = None
    excel_file_name: Optional[str] = None
    excel_file_path: Optional[str] = None


class HealthCheck(BaseModel):
    """Health check response."""
    status: str
    version: str
    microsoft_configured: bool
    authenticated: bool
