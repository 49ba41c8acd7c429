from __future__ import annotations

import pytest

from invoice_sync.errors import (
    AlreadySynced,
    ErrorKind,
    FolderCreateFailed,
    GraphError,
    NotUploadedYet,
    ReauthRequired,
    classify_exception,
)
from invoice_sync.main import status_for_kind


@pytest.mark.parametrize("status, kind", [
    (None, ErrorKind.REMOTE_UNAVAILABLE),
    (429, ErrorKind.REMOTE_UNAVAILABLE),
    (503, ErrorKind.REMOTE_UNAVAILABLE),
    (401, ErrorKind.AUTH_REQUIRED),
    (404, ErrorKind.NOT_FOUND),
    (409, ErrorKind.CONFLICT),
    (400, ErrorKind.UNKNOWN),
])
def test_graph_error_kind_follows_status(status, kind):
    assert GraphError("failed", status_code=status).kind is kind


def test_subclasses_inherit_kinds():
    assert ReauthRequired("login").kind is ErrorKind.AUTH_REQUIRED
    assert NotUploadedYet("upload first").kind is ErrorKind.NOT_FOUND
    assert AlreadySynced("dup", sequence_id=3).kind is ErrorKind.CONFLICT
    assert classify_exception(ValueError("boom")) is ErrorKind.UNKNOWN


def test_error_context_carries_diagnostics():
    error = FolderCreateFailed("A/B", GraphError("denied", status_code=403, code="accessDenied"))

    assert error.context() == {
        "kind": "unknown",
        "operation": "ensure_folder",
        "sequence_id": None,
        "status_code": 403,
        "code": "accessDenied",
    }
    assert "A/B" in error.message


@pytest.mark.parametrize("kind, status", [
    (ErrorKind.AUTH_REQUIRED, 401),
    (ErrorKind.NOT_FOUND, 404),
    (ErrorKind.CONFLICT, 409),
    (ErrorKind.REMOTE_UNAVAILABLE, 503),
    (ErrorKind.PARTIAL_SUCCESS, 207),
    (ErrorKind.STATE_MISMATCH, 400),
    (ErrorKind.MISSING_VERIFIER, 400),
    (ErrorKind.UNKNOWN, 500),
])
def test_http_status_for_kind(kind, status):
    assert status_for_kind(kind) == status
