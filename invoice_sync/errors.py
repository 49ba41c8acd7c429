"""
Failure taxonomy for the OneDrive/Excel sync core.

Internal components raise these; the sync orchestrator turns them into
result objects at its boundary so nothing reaches the UI layer uncaught.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Categories surfaced to the UI layer."""
    AUTH_REQUIRED = "auth_required"
    STATE_MISMATCH = "state_mismatch"
    MISSING_VERIFIER = "missing_verifier"
    REMOTE_UNAVAILABLE = "remote_unavailable"   # retryable, surfaced after retries are exhausted
    NOT_FOUND = "not_found"                     # non-retryable, item genuinely absent
    CONFLICT = "conflict"
    PARTIAL_SUCCESS = "partial_success"         # file uploaded, workbook sync failed
    UNKNOWN = "unknown"


def kind_for_status(status_code: Optional[int]) -> ErrorKind:
    """Map an HTTP status (None = network failure) to an error kind."""
    if status_code is None or status_code == 429 or status_code >= 500:
        return ErrorKind.REMOTE_UNAVAILABLE
    if status_code == 401:
        return ErrorKind.AUTH_REQUIRED
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if status_code == 409:
        return ErrorKind.CONFLICT
    return ErrorKind.UNKNOWN


class SyncError(Exception):
    """Base class for every failure raised by the sync core."""

    default_kind = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        operation: Optional[str] = None,
        sequence_id: Optional[int] = None,
        status_code: Optional[int] = None,
    ):
        self.message = message
        self.operation = operation
        self.sequence_id = sequence_id
        self.status_code = status_code
        super().__init__(message)

    @property
    def kind(self) -> ErrorKind:
        return self.default_kind

    def context(self) -> dict:
        """Diagnostic context for logs and API error bodies."""
        return {
            "kind": self.kind.value,
            "operation": self.operation,
            "sequence_id": self.sequence_id,
            "status_code": self.status_code,
        }


class AuthRequired(SyncError):
    """No valid access token could be produced; the user must sign in again."""
    default_kind = ErrorKind.AUTH_REQUIRED


class ReauthRequired(AuthRequired):
    """Refresh was impossible or rejected; the credential has been purged."""


class StateMismatch(SyncError):
    """The OAuth ``state`` returned to the callback does not match the stored one."""
    default_kind = ErrorKind.STATE_MISMATCH


class MissingVerifier(SyncError):
    """No PKCE verifier is stored (callback reached out of order or replayed)."""
    default_kind = ErrorKind.MISSING_VERIFIER


class TokenExchangeFailed(AuthRequired):
    """The token endpoint rejected an authorization-code or refresh-token grant."""


class RemoteUnavailable(SyncError):
    default_kind = ErrorKind.REMOTE_UNAVAILABLE


class NotFound(SyncError):
    default_kind = ErrorKind.NOT_FOUND


class NotUploadedYet(NotFound):
    """Resync requested for an invoice that was never uploaded."""


class Conflict(SyncError):
    default_kind = ErrorKind.CONFLICT


class AlreadySynced(Conflict):
    """A workbook row with this sequence id already exists."""


class GraphError(SyncError):
    """A Microsoft Graph call failed; the kind follows the HTTP status."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        operation: Optional[str] = None,
        sequence_id: Optional[int] = None,
    ):
        super().__init__(message, operation=operation, sequence_id=sequence_id, status_code=status_code)
        self.code = code

    @property
    def kind(self) -> ErrorKind:
        return kind_for_status(self.status_code)

    def context(self) -> dict:
        ctx = super().context()
        ctx["code"] = self.code
        return ctx


class FolderCreateFailed(GraphError):
    """A folder segment could not be verified or created."""

    def __init__(self, segment: str, cause: Optional[GraphError] = None):
        self.segment = segment
        super().__init__(
            f"Could not create folder '{segment}'" + (f": {cause.message}" if cause else ""),
            status_code=cause.status_code if cause else None,
            code=cause.code if cause else None,
            operation="ensure_folder",
        )


class UploadFailed(GraphError):
    """The single-shot content upload was rejected."""

    def __init__(self, path: str, cause: GraphError):
        self.path = path
        super().__init__(
            f"Failed to upload '{path}': {cause.message}",
            status_code=cause.status_code,
            code=cause.code,
            operation="upload_file",
        )


def classify_exception(exc: BaseException) -> ErrorKind:
    """Error kind for any exception, including ones from outside the sync core."""
    if isinstance(exc, SyncError):
        return exc.kind
    return ErrorKind.UNKNOWN
