"""
Async Microsoft Graph transport.

Adds the bearer token from the token manager to every request, decodes Graph
error bodies into :class:`GraphError`, follows ``@odata.nextLink`` paging and
turns a 401 into credential invalidation plus :class:`AuthRequired`.
Retries are not done here; see :mod:`invoice_sync.retry`.
"""

from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx
from loguru import logger

from invoice_sync.config import settings
from invoice_sync.errors import AuthRequired, GraphError
from invoice_sync.microsoft_oauth import MicrosoftTokenManager


def encode_drive_path(path: str) -> str:
    """Percent-encode a slash-separated drive path, keeping the slashes."""
    return quote(path.strip("/"), safe="/")


def odata_string(value: str) -> str:
    """Quote a string literal for an OData function argument."""
    return "'" + value.replace("'", "''") + "'"


class GraphClient:
    """Thin async wrapper around ``httpx.AsyncClient`` for Graph v1.0."""

    def __init__(
        self,
        token_manager: MicrosoftTokenManager,
        http: Optional[httpx.AsyncClient] = None,
        base_url: str = settings.graph_base_url,
        timeout: float = 30.0,
    ):
        self._tokens = token_manager
        self._http = http
        self._owns_http = http is None
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _get_http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout)
        return self._http

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}{path}"

    @staticmethod
    def _error_from(response: httpx.Response, operation: str) -> GraphError:
        code = None
        message = response.reason_phrase or f"HTTP {response.status_code}"
        try:
            error = response.json().get("error") or {}
            code = error.get("code")
            message = error.get("message") or message
        except (ValueError, AttributeError):
            pass
        return GraphError(
            f"{operation} failed ({response.status_code}{', ' + code if code else ''}): {message}",
            status_code=response.status_code,
            code=code,
            operation=operation,
        )

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        content: Optional[bytes] = None,
        content_type: Optional[str] = None,
        params: Optional[Dict[str, str]] = None,
        operation: Optional[str] = None,
    ) -> Optional[dict]:
        """
        Perform one Graph call.

        Args:
            method: HTTP method
            path: Path below the Graph base URL, or an absolute URL (paging links)
            json: JSON body
            content: Raw body (file uploads)
            content_type: Content-Type for a raw body
            params: Query parameters
            operation: Name used in logs and error context

        Returns:
            Decoded JSON body, or None for empty responses
        """
        operation = operation or f"{method} {path}"
        token = await self._tokens.ensure_valid_token()

        headers = {"Authorization": f"Bearer {token}"}
        if content_type:
            headers["Content-Type"] = content_type

        try:
            response = await self._get_http().request(
                method,
                self._url(path),
                json=json,
                content=content,
                params=params,
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise GraphError(
                f"{operation} failed: network error: {e}",
                status_code=None,
                code="NetworkError",
                operation=operation,
            ) from e

        if response.status_code == 401:
            self._tokens.invalidate(f"{operation} returned 401")
            raise AuthRequired(
                "Authentication expired. Please log in again.",
                operation=operation,
                status_code=401,
            )

        if response.status_code >= 400:
            error = self._error_from(response, operation)
            logger.debug(error.message)
            raise error

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    async def get(self, path: str, **kwargs) -> Optional[dict]:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs) -> Optional[dict]:
        return await self.request("POST", path, **kwargs)

    async def patch(self, path: str, **kwargs) -> Optional[dict]:
        return await self.request("PATCH", path, **kwargs)

    async def put(self, path: str, **kwargs) -> Optional[dict]:
        return await self.request("PUT", path, **kwargs)

    async def delete(self, path: str, **kwargs) -> Optional[dict]:
        return await self.request("DELETE", path, **kwargs)

    async def get_all(self, path: str, operation: Optional[str] = None) -> List[dict]:
        """GET a collection, following ``@odata.nextLink`` until exhausted."""
        items: List[dict] = []
        next_path: Optional[str] = path
        while next_path:
            page = await self.get(next_path, operation=operation) or {}
            items.extend(page.get("value", []))
            next_path = page.get("@odata.nextLink")
        return items

    async def aclose(self) -> None:
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None
