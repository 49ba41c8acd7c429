"""
FastAPI application for the invoice OneDrive/Excel sync service.
Provides the endpoints the invoice UI calls for Microsoft sign-in,
per-invoice sync, bulk sync and OneDrive settings.
"""

from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import urlencode

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from loguru import logger

from invoice_sync import __version__
from invoice_sync.config import Settings, settings, validate_settings
from invoice_sync.errors import ErrorKind, SyncError
from invoice_sync.models import (
    AppSettings,
    AuthStatus,
    BatchSyncRequest,
    FolderEntry,
    HealthCheck,
    InvoiceRecord,
    MicrosoftAuthURL,
    OneDriveSettingsUpdate,
    SpreadsheetEntry,
    SyncResult,
)
from invoice_sync.record_store import RecordStore, load_record_store
from invoice_sync.storage import JsonFileStore, KeyValueStore
from invoice_sync.sync_service import InvoiceSyncService, create_sync_service

STATUS_FOR_KIND = {
    ErrorKind.AUTH_REQUIRED: 401,
    ErrorKind.STATE_MISMATCH: 400,
    ErrorKind.MISSING_VERIFIER: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.REMOTE_UNAVAILABLE: 503,
    ErrorKind.PARTIAL_SUCCESS: 207,
}


def status_for_kind(kind: Optional[ErrorKind]) -> int:
    return STATUS_FOR_KIND.get(kind, 500)


@dataclass
class Services:
    """Everything a request handler needs, built once per process."""
    storage: KeyValueStore
    record_store: RecordStore
    sync: InvoiceSyncService


def build_services(config: Settings = settings) -> Services:
    storage = JsonFileStore(config.state_store_path)
    record_store = load_record_store(config)
    return Services(
        storage=storage,
        record_store=record_store,
        sync=create_sync_service(storage, record_store, config),
    )


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        services = build_services()
        request.app.state.services = services
    return services


# Initialize FastAPI app
app = FastAPI(
    title="Invoice OneDrive Sync",
    description="Mirrors invoice files to OneDrive and tracks them in an Excel workbook",
    version=__version__,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.cors_origins.split(",") if origin.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    """Validate configuration and wire services."""
    logger.info("Starting invoice sync API server...")

    if not validate_settings():
        logger.error("Configuration validation failed!")
        logger.error("Please ensure MICROSOFT_CLIENT_ID is set in .env file")
    else:
        logger.success("Configuration validated successfully")

    # Fails here, not on the first request, when RECORD_STORE_FACTORY is wrong
    app.state.services = build_services()


@app.on_event("shutdown")
async def shutdown_event():
    """Close HTTP clients."""
    logger.info("Shutting down invoice sync API server...")
    services = getattr(app.state, "services", None)
    if services is not None:
        await services.sync.aclose()


@app.exception_handler(SyncError)
async def sync_error_handler(request: Request, exc: SyncError):
    logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=status_for_kind(exc.kind),
        content={"detail": exc.message, **exc.context()},
    )


def _result_response(result: SyncResult) -> JSONResponse:
    status_code = 200 if result.success else status_for_kind(result.error_kind)
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))


def _get_record(services: Services, invoice_id: str) -> InvoiceRecord:
    record = services.record_store.get_invoice(invoice_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Invoice not found: {invoice_id}")
    return record


# Health check endpoint
@app.get("/api/health", response_model=HealthCheck)
async def health_check(services: Services = Depends(get_services)):
    return HealthCheck(
        status="healthy",
        version=__version__,
        microsoft_configured=bool(settings.microsoft_client_id),
        authenticated=services.sync.token_manager.is_authenticated(),
    )


# ============================================================================
# Microsoft Authentication Endpoints
# ============================================================================

@app.get("/api/auth/microsoft/login", response_model=MicrosoftAuthURL)
async def microsoft_auth_login(
    redirect: bool = Query(False),
    services: Services = Depends(get_services),
):
    """
    Initiate Microsoft OAuth login flow (authorization code + PKCE).

    Args:
        redirect: Respond with a 307 to the authorize URL instead of JSON

    Returns:
        Authorization URL and state for CSRF protection
    """
    result = services.sync.token_manager.initiate_login()
    if redirect:
        return RedirectResponse(url=result["auth_url"])
    return MicrosoftAuthURL(auth_url=result["auth_url"], state=result["state"])


@app.get("/api/auth/microsoft/callback")
async def microsoft_auth_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
    services: Services = Depends(get_services),
):
    """
    Handle the redirect back from Microsoft.

    Always redirects to the frontend settings page, with ``onedrive=connected``
    on success or ``onedrive_error`` carrying the reason.
    """
    frontend = f"{settings.frontend_url.rstrip('/')}/settings"

    if error:
        logger.warning(f"Microsoft sign-in returned error: {error}")
        return RedirectResponse(url=f"{frontend}?{urlencode({'onedrive_error': error_description or error})}")

    try:
        await services.sync.token_manager.complete_login(code or "", state or "")
    except SyncError as e:
        logger.error(f"Microsoft OAuth callback failed: {e.message}")
        return RedirectResponse(url=f"{frontend}?{urlencode({'onedrive_error': e.message})}")

    return RedirectResponse(url=f"{frontend}?onedrive=connected")


@app.get("/api/auth/microsoft/status", response_model=AuthStatus)
async def microsoft_auth_status(services: Services = Depends(get_services)):
    token_manager = services.sync.token_manager
    status = token_manager.token_status()
    return AuthStatus(
        authenticated=status.is_valid,
        state=token_manager.state.value,
        expires_at=status.expires_at,
        time_remaining_seconds=status.time_remaining_seconds,
    )


@app.post("/api/auth/microsoft/logout")
async def microsoft_logout(services: Services = Depends(get_services)):
    services.sync.token_manager.logout()
    return {"message": "Logged out successfully"}


# ============================================================================
# Invoice Sync Endpoints
# ============================================================================

@app.post("/api/invoices/{invoice_id}/onedrive/upload")
async def upload_invoice(invoice_id: str, services: Services = Depends(get_services)):
    """
    Upload an invoice file to OneDrive and append its Excel row.

    Returns:
        Sync result; 207 when the file was uploaded but the Excel row was not written
    """
    record = _get_record(services, invoice_id)
    file_bytes = await services.record_store.fetch_file(record)
    result = await services.sync.upload_invoice(record, file_bytes)
    return _result_response(result)


@app.post("/api/invoices/{invoice_id}/onedrive/resync")
async def resync_invoice(invoice_id: str, services: Services = Depends(get_services)):
    record = _get_record(services, invoice_id)
    result = await services.sync.resync_invoice(record)
    return _result_response(result)


@app.delete("/api/invoices/{invoice_id}/onedrive")
async def remove_invoice_artifacts(invoice_id: str, services: Services = Depends(get_services)):
    """Best-effort removal of the OneDrive file and Excel row before the local record is deleted."""
    record = _get_record(services, invoice_id)
    result = await services.sync.remove_invoice_artifacts(record)
    return _result_response(result)


@app.post("/api/invoices/onedrive/sync-all")
async def sync_all_invoices(body: BatchSyncRequest, services: Services = Depends(get_services)):
    """
    Sync every not-yet-uploaded invoice, one at a time.

    Args:
        body: Optional explicit invoice ids and/or a "YYYY-MM" month filter
    """
    if services.sync.is_batch_running:
        raise HTTPException(status_code=409, detail="A batch sync is already running")

    records: Optional[List[InvoiceRecord]] = None
    if body.invoice_ids:
        records = [_get_record(services, invoice_id) for invoice_id in body.invoice_ids]

    result = await services.sync.sync_unsynced(records, month=body.month)
    return {**result.model_dump(), "message": result.summary()}


@app.post("/api/invoices/onedrive/sync-all/cancel")
async def cancel_sync_all(services: Services = Depends(get_services)):
    return {"cancelled": services.sync.cancel_batch()}


# ============================================================================
# OneDrive Browsing & Settings Endpoints
# ============================================================================

@app.get("/api/onedrive/folders", response_model=List[FolderEntry])
async def list_onedrive_folders(path: str = Query(""), services: Services = Depends(get_services)):
    """Folders under ``path`` for the invoice directory picker."""
    return await services.sync.drive.list_folders(path)


@app.get("/api/onedrive/spreadsheets", response_model=List[SpreadsheetEntry])
async def list_onedrive_spreadsheets(path: str = Query(""), services: Services = Depends(get_services)):
    """Excel files under ``path`` for the workbook picker."""
    return await services.sync.drive.list_spreadsheets(path)


@app.get("/api/settings", response_model=AppSettings)
async def get_app_settings(services: Services = Depends(get_services)):
    return services.sync.settings_provider.get_settings()


@app.put("/api/settings/onedrive", response_model=AppSettings)
async def update_onedrive_settings(update: OneDriveSettingsUpdate, services: Services = Depends(get_services)):
    return services.sync.settings_provider.update_onedrive_settings(update)


if __name__ == "__main__":
    import uvicorn

    logger.info("Starting FastAPI server...")
    logger.info(f"Server: http://{settings.host}:{settings.port}")

    uvicorn.run(
        "invoice_sync.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="info"
    )
