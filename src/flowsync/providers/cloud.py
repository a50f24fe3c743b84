"""
Cloud OAuth adapter -- sync through Dropbox or OneDrive.

One adapter class, parameterized by a registered backend. The adapter
owns tokens, refresh and error categorization; each backend only
knows its URLs and how its API says "file not found".

Authorization uses OAuth 2.0 with PKCE. The interactive consent
screen is someone else's job: ``connect()`` hands the authorization
URL to a browser-flow callable and expects the redirect URL back.

Error mapping:
    401 after one refresh attempt    -> AuthError
    400/401 from the token endpoint  -> AuthError
    token reply without access_token -> AuthError
    token reply that is not JSON     -> NetworkError
    connection error, timeout, 429,
    5xx and other failures           -> NetworkError
"""

from __future__ import annotations

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

import requests

from ..errors import AuthError, ConfigurationError, NetworkError, SyncError
from ..models import CloudBackend, OAuthTokens, ProviderKind, now_ms
from ..store import SecretsStore
from .base import SYNC_FILE_NAME, ProviderAdapter
from .oauth import (
    TokenStore,
    extract_auth_code,
    generate_code_challenge,
    generate_code_verifier,
)

logger = logging.getLogger("flowsync.providers.cloud")

DEFAULT_REDIRECT_URI = "http://127.0.0.1:53682/flowsync/callback"
REQUEST_TIMEOUT = 30
REFRESH_WINDOW_MS = 5 * 60 * 1000

BrowserFlow = Callable[[str], Optional[str]]
Request = Callable[..., requests.Response]


# ---------------------------------------------------------------------------
# Backend registry
# ---------------------------------------------------------------------------

_CLOUD_BACKENDS: Dict[str, type] = {}


def register_cloud_backend(name: str):
    """Decorator to register a cloud backend class.

    Args:
        name: Backend name (e.g. 'dropbox', 'onedrive').
    """
    def wrapper(cls):
        _CLOUD_BACKENDS[name] = cls
        return cls
    return wrapper


def get_cloud_backend(name: str) -> "CloudBackendAPI":
    """Instantiate a registered backend by name.

    Raises:
        ConfigurationError: If no backend is registered under that name.
    """
    backend_cls = _CLOUD_BACKENDS.get(name)
    if backend_cls is None:
        raise ConfigurationError(f"Unknown cloud backend: {name}")
    return backend_cls()


class CloudBackendAPI(ABC):
    """URLs and file calls for one cloud drive."""

    backend: CloudBackend
    display_name = ""
    auth_url = ""
    token_url = ""
    scopes: Optional[str] = None
    auth_params: Dict[str, str] = {}

    @abstractmethod
    def exists(self, request: Request) -> bool:
        """Return True if the sync file is present."""

    @abstractmethod
    def download(self, request: Request) -> bytes:
        """Fetch the sync file bytes."""

    @abstractmethod
    def upload(self, request: Request, data: bytes) -> None:
        """Replace the sync file with *data*."""

    def revoke(self, request: Request) -> None:
        """Revoke the current token, where the API supports it."""


@register_cloud_backend("dropbox")
class DropboxAPI(CloudBackendAPI):
    """Dropbox HTTP API v2, app folder scoped."""

    backend = CloudBackend.DROPBOX
    display_name = "Dropbox"
    auth_url = "https://www.dropbox.com/oauth2/authorize"
    token_url = "https://api.dropboxapi.com/oauth2/token"
    api_url = "https://api.dropboxapi.com/2"
    content_url = "https://content.dropboxapi.com/2"
    auth_params = {"token_access_type": "offline"}
    path = f"/{SYNC_FILE_NAME}"

    @staticmethod
    def _is_not_found(resp: requests.Response) -> bool:
        """Dropbox reports a missing path as 409 with a path/not_found tag."""
        try:
            body = resp.json()
        except ValueError:
            return False
        error = body.get("error") if isinstance(body, dict) else None
        if not isinstance(error, dict) or error.get(".tag") != "path":
            return False
        path = error.get("path")
        return isinstance(path, dict) and path.get(".tag") == "not_found"

    def exists(self, request: Request) -> bool:
        resp = request(
            "POST", f"{self.api_url}/files/get_metadata",
            json={"path": self.path}, allow=(409,),
        )
        if resp.status_code == 409:
            if self._is_not_found(resp):
                return False
            raise NetworkError(f"Dropbox metadata lookup failed: {resp.text}")
        return True

    def download(self, request: Request) -> bytes:
        resp = request(
            "POST", f"{self.content_url}/files/download",
            headers={"Dropbox-API-Arg": json.dumps({"path": self.path})},
            allow=(409,),
        )
        if resp.status_code == 409:
            raise NetworkError(f"Dropbox download failed: {resp.text}")
        return resp.content

    def upload(self, request: Request, data: bytes) -> None:
        arg = {
            "path": self.path,
            "mode": "overwrite",
            "autorename": False,
            "mute": True,
        }
        request(
            "POST", f"{self.content_url}/files/upload",
            headers={
                "Dropbox-API-Arg": json.dumps(arg),
                "Content-Type": "application/octet-stream",
            },
            data=data,
        )

    def revoke(self, request: Request) -> None:
        request("POST", f"{self.api_url}/auth/token/revoke")


@register_cloud_backend("onedrive")
class OneDriveAPI(CloudBackendAPI):
    """Microsoft Graph, app folder (``approot``) scoped."""

    backend = CloudBackend.ONEDRIVE
    display_name = "OneDrive"
    auth_url = "https://login.microsoftonline.com/consumers/oauth2/v2.0/authorize"
    token_url = "https://login.microsoftonline.com/consumers/oauth2/v2.0/token"
    graph_url = "https://graph.microsoft.com/v1.0"
    scopes = "Files.ReadWrite.AppFolder offline_access"
    auth_params = {"response_mode": "query"}

    @property
    def item_url(self) -> str:
        return f"{self.graph_url}/me/drive/special/approot:/{SYNC_FILE_NAME}"

    def exists(self, request: Request) -> bool:
        resp = request("GET", self.item_url, allow=(404,))
        return resp.status_code != 404

    def download(self, request: Request) -> bytes:
        resp = request("GET", f"{self.item_url}:/content", allow=(404,))
        if resp.status_code == 404:
            raise NetworkError("OneDrive sync file disappeared during download")
        return resp.content

    def upload(self, request: Request, data: bytes) -> None:
        request(
            "PUT", f"{self.item_url}:/content",
            headers={"Content-Type": "application/octet-stream"},
            data=data,
        )


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

class CloudOAuthAdapter(ProviderAdapter):
    """OAuth-authenticated cloud drive adapter.

    Args:
        backend: Which registered backend to talk to.
        secrets: Store for tokens, PKCE verifier and client id.
        client_id: OAuth client id / app key. Falls back to the stored one.
        redirect_uri: Redirect URI registered with the OAuth app.
        session: HTTP session (injectable for tests).
        browser_flow: Opens the consent screen and returns the redirect URL,
            or None when the reader cancels.
    """

    kind = ProviderKind.CLOUD_OAUTH

    def __init__(
        self,
        backend: CloudBackend | str,
        secrets: SecretsStore,
        client_id: Optional[str] = None,
        redirect_uri: str = DEFAULT_REDIRECT_URI,
        session: Optional[requests.Session] = None,
        browser_flow: Optional[BrowserFlow] = None,
    ) -> None:
        self.backend = CloudBackend(backend)
        self._api = get_cloud_backend(self.backend.value)
        self._secrets = secrets
        self._client_id_key = f"{self.backend.value}_client_id"
        if client_id:
            secrets.set(self._client_id_key, client_id)
        self._client_id = client_id or secrets.get(self._client_id_key)
        self._redirect_uri = redirect_uri
        self._session = session or requests.Session()
        self._browser_flow = browser_flow
        self._tokens_store = TokenStore(secrets, self.backend.value)
        self._tokens: Optional[OAuthTokens] = None
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self._api.display_name

    def _require_client_id(self) -> str:
        if not self._client_id:
            raise ConfigurationError(
                f"{self.name} client id not configured. Set it first."
            )
        return self._client_id

    # -- authorization ------------------------------------------------------

    def start_auth(self) -> str:
        """Begin a PKCE flow and return the authorization URL."""
        client_id = self._require_client_id()
        verifier = generate_code_verifier()
        self._tokens_store.save_verifier(verifier)

        params = {
            "client_id": client_id,
            "response_type": "code",
            "redirect_uri": self._redirect_uri,
            "code_challenge": generate_code_challenge(verifier),
            "code_challenge_method": "S256",
        }
        if self._api.scopes:
            params["scope"] = self._api.scopes
        params.update(self._api.auth_params)
        return f"{self._api.auth_url}?{urlencode(params)}"

    def complete_auth(self, code: str) -> OAuthTokens:
        """Exchange an authorization code for tokens and persist them.

        Raises:
            AuthError: Missing verifier or rejected code.
            NetworkError: Token endpoint unreachable.
        """
        verifier = self._tokens_store.load_verifier()
        if not verifier:
            raise AuthError("PKCE verifier not found. Start authorization again.")

        form = {
            "client_id": self._require_client_id(),
            "code": code,
            "grant_type": "authorization_code",
            "code_verifier": verifier,
            "redirect_uri": self._redirect_uri,
        }
        if self._api.scopes:
            form["scope"] = self._api.scopes

        tokens = self._token_request(form, previous=None)
        with self._lock:
            self._tokens = tokens
        self._tokens_store.save_tokens(tokens)
        self._tokens_store.clear_verifier()
        logger.info("%s authorization completed", self.name)
        return tokens

    def connect(self) -> None:
        """Run the full interactive authorization flow."""
        if self._browser_flow is None:
            raise ConfigurationError("No browser flow available for OAuth")
        redirect = self._browser_flow(self.start_auth())
        if redirect is None:
            raise AuthError("Authorization was cancelled")
        self.complete_auth(extract_auth_code(redirect))

    def refresh_tokens(self) -> OAuthTokens:
        """Swap the refresh token for a fresh access token.

        Raises:
            AuthError: No refresh token, or the provider rejected it.
        """
        with self._lock:
            current = self._tokens or self._tokens_store.load_tokens()
        if current is None or not current.refresh_token:
            raise AuthError(f"{self.name} session expired. Please reconnect.")

        form = {
            "client_id": self._require_client_id(),
            "grant_type": "refresh_token",
            "refresh_token": current.refresh_token,
        }
        if self._api.scopes:
            form["scope"] = self._api.scopes

        tokens = self._token_request(form, previous=current)
        with self._lock:
            self._tokens = tokens
        self._tokens_store.save_tokens(tokens)
        logger.debug("%s access token refreshed", self.name)
        return tokens

    def _token_request(
        self, form: Dict[str, str], previous: Optional[OAuthTokens]
    ) -> OAuthTokens:
        try:
            resp = self._session.post(
                self._api.token_url, data=form, timeout=REQUEST_TIMEOUT
            )
        except requests.RequestException as exc:
            raise NetworkError(
                f"{self.name} token endpoint unreachable: {exc}"
            ) from exc

        if resp.status_code in (400, 401):
            raise AuthError(
                f"{self.name} rejected the authorization: {resp.text}"
            )
        if resp.status_code >= 400:
            raise NetworkError(
                f"{self.name} token endpoint error {resp.status_code}"
            )

        try:
            data = resp.json()
        except ValueError as exc:
            # Captive portals and proxies answer 200 with an HTML page.
            raise NetworkError(
                f"{self.name} token endpoint returned an unreadable response"
            ) from exc
        if not isinstance(data, dict):
            raise NetworkError(
                f"{self.name} token endpoint returned an unreadable response"
            )

        try:
            expires_in = data.get("expires_in")
            refresh_token = data.get("refresh_token") or (
                previous.refresh_token if previous else None
            )
            return OAuthTokens(
                access_token=data["access_token"],
                refresh_token=refresh_token,
                expires_at=now_ms() + int(expires_in) * 1000 if expires_in else None,
                token_type=data.get("token_type", "bearer"),
                scope=data.get("scope"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise AuthError(
                f"{self.name} token response was incomplete; reconnect to continue"
            ) from exc

    # -- connection state ---------------------------------------------------

    def _current_tokens(self) -> Optional[OAuthTokens]:
        with self._lock:
            if self._tokens is None:
                self._tokens = self._tokens_store.load_tokens()
            return self._tokens

    def is_connected(self) -> bool:
        """True with a valid or refreshable token. No network traffic."""
        tokens = self._current_tokens()
        if tokens is None:
            return False
        return bool(tokens.refresh_token) or not tokens.expires_within(0)

    def _valid_access_token(self) -> str:
        tokens = self._current_tokens()
        if tokens is None:
            raise self.reconnect_error()
        if tokens.expires_within(REFRESH_WINDOW_MS):
            if tokens.refresh_token:
                tokens = self.refresh_tokens()
            elif tokens.expires_within(0):
                raise self.reconnect_error()
        return tokens.access_token

    def reconnect_error(self) -> SyncError:
        return AuthError(f"{self.name} connection expired. Please reconnect.")

    def disconnect(self) -> None:
        """Revoke (where supported) and forget tokens."""
        if self._current_tokens() is not None:
            try:
                self._api.revoke(self._request)
            except SyncError as exc:
                logger.warning("%s token revocation failed: %s", self.name, exc)
        with self._lock:
            self._tokens = None
        self._tokens_store.clear_tokens()
        self._tokens_store.clear_verifier()

    # -- HTTP ---------------------------------------------------------------

    def _request(
        self,
        method: str,
        url: str,
        allow: tuple = (),
        headers: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ) -> requests.Response:
        """Authenticated request with one transparent refresh on 401.

        Args:
            allow: Status codes >= 400 that the caller handles itself.
        """
        resp = self._send(method, url, self._valid_access_token(), headers, kwargs)
        if resp.status_code == 401:
            logger.info("%s returned 401, refreshing token", self.name)
            resp = self._send(
                method, url, self.refresh_tokens().access_token, headers, kwargs
            )
            if resp.status_code == 401:
                raise AuthError(f"{self.name} rejected the access token. Please reconnect.")

        if resp.status_code in allow:
            return resp
        if resp.status_code == 403:
            raise AuthError(f"{self.name} denied access: {resp.text}")
        if resp.status_code >= 400:
            raise NetworkError(
                f"{self.name} {method} failed with {resp.status_code}: {resp.text}"
            )
        return resp

    def _send(
        self,
        method: str,
        url: str,
        access_token: str,
        headers: Optional[Dict[str, str]],
        kwargs: Dict[str, Any],
    ) -> requests.Response:
        merged = {"Authorization": f"Bearer {access_token}"}
        merged.update(headers or {})
        try:
            return self._session.request(
                method, url, headers=merged, timeout=REQUEST_TIMEOUT, **kwargs
            )
        except requests.RequestException as exc:
            raise NetworkError(f"{self.name} unreachable: {exc}") from exc

    # -- file operations ----------------------------------------------------

    def exists(self) -> bool:
        return self._api.exists(self._request)

    def read(self) -> bytes:
        return self._api.download(self._request)

    def write(self, data: bytes) -> None:
        self._api.upload(self._request, data)
        logger.debug("Uploaded %d bytes to %s", len(data), self.name)


def client_id_from_env(backend: CloudBackend) -> Optional[str]:
    """OAuth client id from ``FLOWSYNC_DROPBOX_APP_KEY`` / ``FLOWSYNC_ONEDRIVE_CLIENT_ID``."""
    env_var = {
        CloudBackend.DROPBOX: "FLOWSYNC_DROPBOX_APP_KEY",
        CloudBackend.ONEDRIVE: "FLOWSYNC_ONEDRIVE_CLIENT_ID",
    }[backend]
    return os.environ.get(env_var) or None
