"""
Configuration settings for the invoice OneDrive/Excel sync service.
"""

import os
from pathlib import Path
from pydantic_settings import BaseSettings
from dotenv import load_dotenv
from loguru import logger

# Load environment variables
load_dotenv()


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Microsoft identity platform (Azure app registration)
    microsoft_client_id: str = os.getenv("MICROSOFT_CLIENT_ID", "")
    microsoft_tenant_id: str = os.getenv("MICROSOFT_TENANT_ID", "common")
    microsoft_redirect_uri: str = os.getenv(
        "MICROSOFT_REDIRECT_URI", "http://localhost:8000/api/auth/microsoft/callback"
    )
    microsoft_scopes: str = os.getenv("MICROSOFT_SCOPES", "Files.ReadWrite offline_access User.Read")
    microsoft_authority_host: str = os.getenv("MICROSOFT_AUTHORITY_HOST", "https://login.microsoftonline.com")

    # Microsoft Graph
    graph_base_url: str = os.getenv("GRAPH_BASE_URL", "https://graph.microsoft.com/v1.0")
    graph_timeout_seconds: float = float(os.getenv("GRAPH_TIMEOUT_SECONDS", "30"))

    # Token lifecycle
    token_expiry_buffer_seconds: int = int(os.getenv("TOKEN_EXPIRY_BUFFER_SECONDS", "300"))
    default_token_lifetime_seconds: int = int(os.getenv("DEFAULT_TOKEN_LIFETIME_SECONDS", "3600"))

    # Retry / provisioning
    sync_retry_attempts: int = int(os.getenv("SYNC_RETRY_ATTEMPTS", "3"))
    sync_retry_base_delay: float = float(os.getenv("SYNC_RETRY_BASE_DELAY", "1.0"))
    table_create_base_delay: float = float(os.getenv("TABLE_CREATE_BASE_DELAY", "2.0"))
    workbook_provision_delay: float = float(os.getenv("WORKBOOK_PROVISION_DELAY", "2.0"))

    # Batch sync
    batch_item_delay: float = float(os.getenv("BATCH_ITEM_DELAY", "0.5"))
    batch_error_display_limit: int = int(os.getenv("BATCH_ERROR_DISPLAY_LIMIT", "3"))

    # Client-side state (credential, PKCE exchange, app settings)
    state_store_path: str = os.getenv("STATE_STORE_PATH", ".tmp/invoice_sync_state.json")

    # Invoice records (module:callable taking Settings, returning a RecordStore)
    record_store_factory: str = os.getenv(
        "RECORD_STORE_FACTORY", "invoice_sync.record_store:JsonFileRecordStore.from_settings"
    )
    record_store_path: str = os.getenv("RECORD_STORE_PATH", ".tmp/invoices.json")
    record_files_dir: str = os.getenv("RECORD_FILES_DIR", ".tmp/invoice_files")

    # Defaults handed to the sync core by the settings provider
    default_invoice_directory: str = os.getenv("DEFAULT_INVOICE_DIRECTORY", "Invoices")
    default_workbook_file_name: str = os.getenv("DEFAULT_WORKBOOK_FILE_NAME", "Invoice_Tracker.xlsx")

    # Server Settings
    host: str = os.getenv("HOST", "0.0.0.0")
    port: int = int(os.getenv("PORT", "8000"))
    debug: bool = os.getenv("DEBUG", "False").lower() == "true"
    cors_origins: str = os.getenv(
        "CORS_ORIGINS",
        "http://localhost:5173,http://127.0.0.1:5173,http://localhost:3000,http://127.0.0.1:3000"
    )
    frontend_url: str = os.getenv("FRONTEND_URL", "http://localhost:5173")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"

    @property
    def scope_list(self) -> list[str]:
        """Scopes as a list, in the order configured."""
        return [scope for scope in self.microsoft_scopes.split() if scope]

    @property
    def authorize_url(self) -> str:
        return f"{self.microsoft_authority_host}/{self.microsoft_tenant_id}/oauth2/v2.0/authorize"

    @property
    def token_url(self) -> str:
        return f"{self.microsoft_authority_host}/{self.microsoft_tenant_id}/oauth2/v2.0/token"


# Global settings instance
settings = Settings()


def validate_settings(config: Settings = settings) -> bool:
    """Validate that required settings are configured."""
    errors = []

    if not config.microsoft_client_id:
        errors.append("MICROSOFT_CLIENT_ID not set")

    redirect = config.microsoft_redirect_uri
    if not redirect.startswith("https://") and "localhost" not in redirect and "127.0.0.1" not in redirect:
        errors.append(f"MICROSOFT_REDIRECT_URI must use https outside localhost: {redirect}")

    if "offline_access" not in config.scope_list:
        logger.warning("MICROSOFT_SCOPES lacks offline_access; no refresh token will be issued")

    if config.token_expiry_buffer_seconds < 300:
        errors.append("TOKEN_EXPIRY_BUFFER_SECONDS must be at least 300")

    # Make sure the state store directory is writable
    Path(config.state_store_path).parent.mkdir(parents=True, exist_ok=True)

    if errors:
        logger.error("Configuration errors:")
        for error in errors:
            logger.error(f"  - {error}")
        return False

    return True
