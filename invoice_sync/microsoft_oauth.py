"""
Microsoft identity platform OAuth 2.0 (authorization code + PKCE).
Handles the login redirect, code exchange, token storage, expiry and refresh.
"""

import asyncio
import base64
import hashlib
import secrets
import time
from datetime import datetime, timezone
from enum import Enum
from functools import partial
from typing import Callable, Dict, Optional
from urllib.parse import urlencode

import httpx
from loguru import logger
from pydantic import ValidationError

from invoice_sync.config import Settings, settings
from invoice_sync.errors import (
    MissingVerifier,
    ReauthRequired,
    RemoteUnavailable,
    StateMismatch,
    TokenExchangeFailed,
)
from invoice_sync.models import Credential, PkceState, TokenStatus
from invoice_sync.retry import RetryPolicy, is_transient
from invoice_sync.storage import KeyValueStore

# Storage keys
CREDENTIAL_KEY = "ms_credential"
PKCE_KEY = "ms_pkce_state"

MIN_EXPIRY_BUFFER_SECONDS = 300


class TokenState(Enum):
    """Token manager states."""
    UNAUTHENTICATED = "unauthenticated"
    PENDING_EXCHANGE = "pending_exchange"   # redirected to the identity provider, callback not yet handled
    AUTHENTICATED = "authenticated"
    EXPIRING = "expiring"                   # credential inside the expiry buffer or past expiry
    REFRESHING = "refreshing"


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def generate_code_verifier() -> str:
    """43-character base64url verifier from 32 random bytes, no padding."""
    return _b64url(secrets.token_bytes(32))


def generate_code_challenge(code_verifier: str) -> str:
    """S256 code challenge for a verifier."""
    return _b64url(hashlib.sha256(code_verifier.encode("ascii")).digest())


class MicrosoftTokenManager:
    """
    Owns the Microsoft credential.

    Callers never hold the credential itself; they ask for a valid access
    token through :meth:`ensure_valid_token`. Concurrent callers that find
    the token expired share a single refresh request.
    """

    def __init__(
        self,
        storage: KeyValueStore,
        *,
        client_id: str,
        authorize_url: str,
        token_url: str,
        redirect_uri: str,
        scopes: list,
        http: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
        expiry_buffer_seconds: int = MIN_EXPIRY_BUFFER_SECONDS,
        default_lifetime_seconds: int = 3600,
        timeout: float = 30.0,
        retry: Optional[RetryPolicy] = None,
    ):
        self._storage = storage
        self.client_id = client_id
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.redirect_uri = redirect_uri
        self.scopes = list(scopes)
        self._http = http
        self._owns_http = http is None
        self._clock = clock
        self.expiry_buffer_ms = max(expiry_buffer_seconds, MIN_EXPIRY_BUFFER_SECONDS) * 1000
        self.default_lifetime_seconds = default_lifetime_seconds
        self.timeout = timeout
        self.retry = retry or RetryPolicy()

        self._refresh_lock: Optional[asyncio.Lock] = None
        self._refreshing = False

        if not client_id:
            logger.warning("Microsoft OAuth client id not configured. Set MICROSOFT_CLIENT_ID in .env")

    @classmethod
    def from_settings(
        cls,
        storage: KeyValueStore,
        config: Settings = settings,
        http: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
        retry: Optional[RetryPolicy] = None,
    ) -> "MicrosoftTokenManager":
        return cls(
            storage,
            client_id=config.microsoft_client_id,
            authorize_url=config.authorize_url,
            token_url=config.token_url,
            redirect_uri=config.microsoft_redirect_uri,
            scopes=config.scope_list,
            http=http,
            clock=clock,
            expiry_buffer_seconds=config.token_expiry_buffer_seconds,
            default_lifetime_seconds=config.default_token_lifetime_seconds,
            timeout=config.graph_timeout_seconds,
            retry=retry,
        )

    # ------------------------------------------------------------------
    # Storage helpers

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _get_refresh_lock(self) -> asyncio.Lock:
        """Lazily create the refresh lock inside the running loop."""
        if self._refresh_lock is None:
            self._refresh_lock = asyncio.Lock()
        return self._refresh_lock

    def _get_http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout)
        return self._http

    def _load_credential(self) -> Optional[Credential]:
        raw = self._storage.get(CREDENTIAL_KEY)
        if not raw:
            return None
        try:
            return Credential.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Discarding unreadable stored credential: {e}")
            self._storage.delete(CREDENTIAL_KEY)
            return None

    def _save_credential(self, credential: Credential) -> None:
        self._storage.set(CREDENTIAL_KEY, credential.model_dump_json())

    def _load_pkce(self) -> Optional[PkceState]:
        raw = self._storage.get(PKCE_KEY)
        if not raw:
            return None
        try:
            return PkceState.model_validate_json(raw)
        except ValidationError:
            return None

    def _is_fresh(self, credential: Credential) -> bool:
        return self._now_ms() < credential.expires_at_epoch_ms - self.expiry_buffer_ms

    # ------------------------------------------------------------------
    # Login flow

    def initiate_login(self) -> Dict[str, str]:
        """
        Start the authorization code + PKCE flow.

        Generates a fresh verifier and state, stores them for the callback
        and builds the authorize URL the user agent must be sent to.

        Returns:
            Dict with auth_url and state
        """
        code_verifier = generate_code_verifier()
        state = secrets.token_urlsafe(32)

        pkce = PkceState(code_verifier=code_verifier, state=state, created_at_epoch_ms=self._now_ms())
        self._storage.set(PKCE_KEY, pkce.model_dump_json())

        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(self.scopes),
            "response_mode": "query",
            "state": state,
            "prompt": "select_account",
            "code_challenge": generate_code_challenge(code_verifier),
            "code_challenge_method": "S256",
        }
        auth_url = f"{self.authorize_url}?{urlencode(params)}"

        logger.info(f"Created Microsoft authorization URL with state: {state[:8]}...")
        return {"auth_url": auth_url, "state": state}

    async def complete_login(self, code: str, returned_state: str) -> Credential:
        """
        Exchange the authorization code returned to the callback.

        The stored PKCE state is deleted before anything else so it can never
        be used twice, whatever the outcome.

        Args:
            code: Authorization code from the callback query string
            returned_state: ``state`` from the callback query string

        Returns:
            The persisted credential
        """
        pkce = self._load_pkce()
        self._storage.delete(PKCE_KEY)

        if pkce is None:
            raise MissingVerifier(
                "Code verifier not found. Please restart the authentication process.",
                operation="complete_login",
            )
        if not returned_state or not secrets.compare_digest(returned_state, pkce.state):
            logger.warning("OAuth callback state does not match the stored state")
            raise StateMismatch("Invalid state parameter", operation="complete_login")
        if not code:
            raise TokenExchangeFailed("No authorization code received", operation="complete_login")

        token_data = await self._post_token({
            "client_id": self.client_id,
            "scope": " ".join(self.scopes),
            "code": code,
            "redirect_uri": self.redirect_uri,
            "grant_type": "authorization_code",
            "code_verifier": pkce.code_verifier,
        }, operation="complete_login")

        credential = self._credential_from_response(token_data)
        self._save_credential(credential)
        logger.success(
            f"Microsoft sign-in complete (refresh token: {'yes' if credential.refresh_token else 'no'})"
        )
        return credential

    def _credential_from_response(self, data: dict, previous_refresh_token: Optional[str] = None) -> Credential:
        access_token = data.get("access_token")
        if not access_token:
            raise TokenExchangeFailed("Token response did not include an access token")

        expires_in = data.get("expires_in")
        try:
            lifetime = int(expires_in) if expires_in is not None else self.default_lifetime_seconds
        except (TypeError, ValueError):
            lifetime = self.default_lifetime_seconds

        scope = data.get("scope")
        return Credential(
            access_token=access_token,
            refresh_token=data.get("refresh_token") or previous_refresh_token,
            expires_at_epoch_ms=self._now_ms() + lifetime * 1000,
            scopes=scope.split() if scope else list(self.scopes),
        )

    async def _post_token(self, form: Dict[str, str], operation: str) -> dict:
        try:
            response = await self._get_http().post(
                self.token_url,
                data=form,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as e:
            raise RemoteUnavailable(f"Token endpoint unreachable: {e}", operation=operation) from e

        if response.status_code >= 500:
            raise RemoteUnavailable(
                f"Token endpoint error {response.status_code}",
                operation=operation,
                status_code=response.status_code,
            )
        if response.status_code != 200:
            try:
                detail = response.json().get("error_description") or response.json().get("error")
            except ValueError:
                detail = response.text[:200]
            logger.error(f"{operation}: token request rejected ({response.status_code}): {detail}")
            raise TokenExchangeFailed(
                f"Token exchange failed: {detail}",
                operation=operation,
                status_code=response.status_code,
            )
        return response.json()

    # ------------------------------------------------------------------
    # Token access

    def is_authenticated(self) -> bool:
        """True iff a credential exists and is outside the expiry buffer."""
        credential = self._load_credential()
        return credential is not None and self._is_fresh(credential)

    @property
    def state(self) -> TokenState:
        if self._refreshing:
            return TokenState.REFRESHING
        credential = self._load_credential()
        if credential is not None:
            return TokenState.AUTHENTICATED if self._is_fresh(credential) else TokenState.EXPIRING
        if self._storage.get(PKCE_KEY):
            return TokenState.PENDING_EXCHANGE
        return TokenState.UNAUTHENTICATED

    def token_status(self) -> TokenStatus:
        """Check token validity without side effects."""
        credential = self._load_credential()
        if credential is None:
            return TokenStatus(is_valid=False)
        remaining_ms = credential.expires_at_epoch_ms - self._now_ms()
        return TokenStatus(
            is_valid=self._is_fresh(credential),
            expires_at=datetime.fromtimestamp(credential.expires_at_epoch_ms / 1000, tz=timezone.utc),
            time_remaining_seconds=max(0, remaining_ms) / 1000,
        )

    async def ensure_valid_token(self) -> str:
        """
        Return a usable access token, refreshing it once if needed.

        Raises:
            ReauthRequired: no credential, no refresh token, or the refresh was rejected
            RemoteUnavailable: the token endpoint stayed unreachable after retries (credential kept)
        """
        credential = self._load_credential()
        if credential is not None and self._is_fresh(credential):
            return credential.access_token

        async with self._get_refresh_lock():
            # Re-check after acquiring lock - another caller may have already refreshed
            credential = self._load_credential()
            if credential is not None and self._is_fresh(credential):
                return credential.access_token

            if credential is None or not credential.refresh_token:
                self._storage.delete(CREDENTIAL_KEY)
                logger.info("No valid token available, re-authentication required")
                raise ReauthRequired(
                    "Authentication required. Please connect to Microsoft OneDrive first.",
                    operation="ensure_valid_token",
                )

            logger.info("Access token expired, attempting refresh...")
            self._refreshing = True
            try:
                refreshed = await self.retry.run(
                    partial(self._refresh, credential),
                    operation="refresh access token",
                    is_retryable=is_transient,
                )
            except TokenExchangeFailed as e:
                self._storage.delete(CREDENTIAL_KEY)
                logger.warning("Token refresh failed, cleared stored credential")
                raise ReauthRequired(
                    "Microsoft session expired. Please sign in again.",
                    operation="ensure_valid_token",
                    status_code=e.status_code,
                ) from e
            finally:
                self._refreshing = False

            return refreshed.access_token

    async def _refresh(self, credential: Credential) -> Credential:
        token_data = await self._post_token({
            "client_id": self.client_id,
            "scope": " ".join(self.scopes),
            "refresh_token": credential.refresh_token,
            "grant_type": "refresh_token",
        }, operation="refresh_token")

        refreshed = self._credential_from_response(token_data, previous_refresh_token=credential.refresh_token)
        self._save_credential(refreshed)
        logger.info("Successfully refreshed access token")
        return refreshed

    def invalidate(self, reason: str = "") -> None:
        """Purge the credential after an irrecoverable 401 from the remote API."""
        self._storage.delete(CREDENTIAL_KEY)
        logger.warning(f"Microsoft credential invalidated{': ' + reason if reason else ''}")

    def logout(self) -> None:
        """Clear the credential and any leftover PKCE state."""
        self._storage.delete(CREDENTIAL_KEY)
        self._storage.delete(PKCE_KEY)
        logger.info("Microsoft authentication cleared")

    async def aclose(self) -> None:
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None
