"""Tests for the OAuth cloud adapter (Dropbox and OneDrive).

All HTTP calls go through a mocked ``requests.Session`` -- no network.
"""

from __future__ import annotations

import base64
import hashlib
import json
from typing import Any, Optional
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

import pytest
import requests

from flowsync.errors import AuthError, ConfigurationError, NetworkError
from flowsync.models import (
    CloudBackend,
    OAuthTokens,
    ProviderKind,
    SyncConfig,
    SyncEventKind,
    SyncState,
    now_ms,
)
from flowsync.providers.base import SYNC_FILE_NAME
from flowsync.providers.cloud import (
    _CLOUD_BACKENDS,
    CloudBackendAPI,
    CloudOAuthAdapter,
    DropboxAPI,
    OneDriveAPI,
    client_id_from_env,
    get_cloud_backend,
    register_cloud_backend,
)
from flowsync.providers.oauth import (
    TokenStore,
    extract_auth_code,
    generate_code_challenge,
    generate_code_verifier,
)
from flowsync.store import SecretsStore


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _response(
    status: int = 200,
    payload: Optional[Any] = None,
    content: bytes = b"",
) -> MagicMock:
    """Build a fake requests.Response."""
    resp = MagicMock()
    resp.status_code = status
    resp.content = content
    resp.text = json.dumps(payload) if payload is not None else content.decode()
    if payload is None:
        resp.json.side_effect = ValueError("no json")
    else:
        resp.json.return_value = payload
    return resp


def _store_tokens(
    secrets: SecretsStore,
    backend: str = "dropbox",
    access: str = "access-1",
    refresh: Optional[str] = "refresh-1",
    expires_in_ms: Optional[int] = 3_600_000,
) -> None:
    TokenStore(secrets, backend).save_tokens(OAuthTokens(
        access_token=access,
        refresh_token=refresh,
        expires_at=now_ms() + expires_in_ms if expires_in_ms is not None else None,
    ))


@pytest.fixture
def session() -> MagicMock:
    return MagicMock()


@pytest.fixture
def dropbox(secrets: SecretsStore, session: MagicMock) -> CloudOAuthAdapter:
    return CloudOAuthAdapter(
        CloudBackend.DROPBOX, secrets, client_id="app-key", session=session
    )


@pytest.fixture
def onedrive(secrets: SecretsStore, session: MagicMock) -> CloudOAuthAdapter:
    return CloudOAuthAdapter(
        "onedrive", secrets, client_id="client-guid", session=session
    )


def _bearer(call) -> str:
    return call.kwargs["headers"]["Authorization"]


# ---------------------------------------------------------------------------
# Registry and PKCE
# ---------------------------------------------------------------------------


class TestBackendRegistry:
    """register_cloud_backend / get_cloud_backend."""

    def test_builtin_backends(self):
        assert isinstance(get_cloud_backend("dropbox"), DropboxAPI)
        assert isinstance(get_cloud_backend("onedrive"), OneDriveAPI)

    def test_unknown_backend(self):
        with pytest.raises(ConfigurationError):
            get_cloud_backend("gdrive")

    def test_register_custom_backend(self):
        @register_cloud_backend("test-drive")
        class TestDriveAPI(CloudBackendAPI):
            display_name = "Test Drive"

            def exists(self, request):
                return False

            def download(self, request):
                return b""

            def upload(self, request, data):
                pass

        try:
            assert isinstance(get_cloud_backend("test-drive"), TestDriveAPI)
        finally:
            _CLOUD_BACKENDS.pop("test-drive", None)

    def test_backend_must_implement_file_calls(self):
        class HalfDriveAPI(CloudBackendAPI):
            def exists(self, request):
                return False

        with pytest.raises(TypeError):
            HalfDriveAPI()


class TestPKCE:
    """Verifier, challenge and redirect parsing."""

    def test_verifier_is_url_safe(self):
        verifier = generate_code_verifier()
        assert len(verifier) == 43
        assert "=" not in verifier and "+" not in verifier and "/" not in verifier

    def test_challenge_is_s256(self):
        verifier = generate_code_verifier()
        expected = base64.urlsafe_b64encode(
            hashlib.sha256(verifier.encode()).digest()
        ).decode().rstrip("=")
        assert generate_code_challenge(verifier) == expected

    def test_extract_code(self):
        assert extract_auth_code("http://127.0.0.1/cb?code=abc123&state=x") == "abc123"

    def test_extract_error(self):
        with pytest.raises(AuthError):
            extract_auth_code("http://127.0.0.1/cb?error=access_denied")

    def test_extract_missing_code(self):
        with pytest.raises(AuthError):
            extract_auth_code("http://127.0.0.1/cb")


# ---------------------------------------------------------------------------
# Authorization flow
# ---------------------------------------------------------------------------


class TestAuthorization:
    """start_auth, complete_auth, connect."""

    def test_dropbox_auth_url(self, dropbox: CloudOAuthAdapter, secrets: SecretsStore):
        url = dropbox.start_auth()
        parsed = urlparse(url)
        query = parse_qs(parsed.query)

        assert url.startswith(DropboxAPI.auth_url)
        assert query["client_id"] == ["app-key"]
        assert query["code_challenge_method"] == ["S256"]
        assert query["token_access_type"] == ["offline"]
        verifier = secrets.get("dropbox_pkce_verifier")
        assert query["code_challenge"] == [generate_code_challenge(verifier)]

    def test_onedrive_auth_url_has_scope(self, onedrive: CloudOAuthAdapter):
        query = parse_qs(urlparse(onedrive.start_auth()).query)
        assert query["scope"] == ["Files.ReadWrite.AppFolder offline_access"]

    def test_missing_client_id(self, secrets: SecretsStore, session: MagicMock):
        adapter = CloudOAuthAdapter("dropbox", secrets, session=session)
        with pytest.raises(ConfigurationError):
            adapter.start_auth()

    def test_client_id_remembered(self, dropbox, secrets: SecretsStore, session):
        again = CloudOAuthAdapter("dropbox", secrets, session=session)
        assert "client_id=app-key" in again.start_auth()

    def test_complete_auth_persists_tokens(
        self, dropbox: CloudOAuthAdapter, secrets: SecretsStore, session: MagicMock
    ):
        dropbox.start_auth()
        verifier = secrets.get("dropbox_pkce_verifier")
        session.post.return_value = _response(200, {
            "access_token": "at", "refresh_token": "rt", "expires_in": 14400,
        })

        tokens = dropbox.complete_auth("the-code")

        assert tokens.access_token == "at"
        form = session.post.call_args.kwargs["data"]
        assert form["code"] == "the-code"
        assert form["code_verifier"] == verifier
        assert form["grant_type"] == "authorization_code"
        assert TokenStore(secrets, "dropbox").load_tokens().refresh_token == "rt"
        assert secrets.get("dropbox_pkce_verifier") is None
        assert dropbox.is_connected() is True

    def test_complete_auth_without_verifier(self, dropbox: CloudOAuthAdapter):
        with pytest.raises(AuthError):
            dropbox.complete_auth("the-code")

    def test_complete_auth_rejected(self, dropbox: CloudOAuthAdapter, session):
        dropbox.start_auth()
        session.post.return_value = _response(400, {"error": "invalid_grant"})
        with pytest.raises(AuthError):
            dropbox.complete_auth("stale-code")

    def test_token_endpoint_unreachable(self, dropbox: CloudOAuthAdapter, session):
        dropbox.start_auth()
        session.post.side_effect = requests.ConnectionError("dns")
        with pytest.raises(NetworkError):
            dropbox.complete_auth("the-code")

    def test_connect_cancelled(self, secrets: SecretsStore, session: MagicMock):
        adapter = CloudOAuthAdapter(
            "dropbox", secrets, client_id="app-key", session=session,
            browser_flow=lambda url: None,
        )
        with pytest.raises(AuthError):
            adapter.connect()
        assert adapter.is_connected() is False

    def test_connect_round_trip(self, secrets: SecretsStore, session: MagicMock):
        seen: list[str] = []

        def browser(url: str) -> str:
            seen.append(url)
            return "http://127.0.0.1:53682/flowsync/callback?code=xyz"

        session.post.return_value = _response(200, {
            "access_token": "at", "refresh_token": "rt", "expires_in": 3600,
        })
        adapter = CloudOAuthAdapter(
            "onedrive", secrets, client_id="client-guid", session=session,
            browser_flow=browser,
        )

        adapter.connect()

        assert seen and seen[0].startswith(OneDriveAPI.auth_url)
        assert session.post.call_args.kwargs["data"]["code"] == "xyz"
        assert adapter.is_connected() is True

    def test_connect_without_browser_flow(self, dropbox: CloudOAuthAdapter):
        with pytest.raises(ConfigurationError):
            dropbox.connect()


# ---------------------------------------------------------------------------
# Connection state and token refresh
# ---------------------------------------------------------------------------


class TestTokens:
    """is_connected without network, transparent refresh."""

    def test_no_tokens(self, dropbox: CloudOAuthAdapter, session: MagicMock):
        assert dropbox.is_connected() is False
        session.request.assert_not_called()

    def test_expired_without_refresh_token(self, dropbox, secrets, session):
        _store_tokens(secrets, refresh=None, expires_in_ms=-1000)
        assert dropbox.is_connected() is False

    def test_expired_but_refreshable(self, dropbox, secrets, session):
        _store_tokens(secrets, expires_in_ms=-1000)
        assert dropbox.is_connected() is True
        session.post.assert_not_called()

    def test_refresh_before_expiry(self, dropbox, secrets, session):
        """A token inside the five-minute window is refreshed first."""
        _store_tokens(secrets, expires_in_ms=60_000)
        session.post.return_value = _response(200, {
            "access_token": "access-2", "expires_in": 14400,
        })
        session.request.return_value = _response(200, {"name": SYNC_FILE_NAME})

        assert dropbox.exists() is True

        assert session.post.call_args.kwargs["data"]["grant_type"] == "refresh_token"
        assert _bearer(session.request.call_args) == "Bearer access-2"
        stored = TokenStore(secrets, "dropbox").load_tokens()
        assert stored.access_token == "access-2"
        assert stored.refresh_token == "refresh-1"

    def test_401_refreshes_and_retries(self, dropbox, secrets, session):
        _store_tokens(secrets)
        session.post.return_value = _response(200, {
            "access_token": "access-2", "refresh_token": "refresh-2", "expires_in": 3600,
        })
        session.request.side_effect = [
            _response(401, {"error": "expired_access_token"}),
            _response(200, content=b"envelope"),
        ]

        assert dropbox.read() == b"envelope"

        first, second = session.request.call_args_list
        assert _bearer(first) == "Bearer access-1"
        assert _bearer(second) == "Bearer access-2"

    def test_401_after_refresh_is_auth_error(self, dropbox, secrets, session):
        _store_tokens(secrets)
        session.post.return_value = _response(200, {"access_token": "access-2"})
        session.request.return_value = _response(401, {"error": "invalid_access_token"})
        with pytest.raises(AuthError):
            dropbox.read()
        assert session.request.call_count == 2

    def test_revoked_refresh_token(self, dropbox, secrets, session):
        _store_tokens(secrets)
        session.request.return_value = _response(401, {})
        session.post.return_value = _response(400, {"error": "invalid_grant"})
        with pytest.raises(AuthError):
            dropbox.exists()

    def test_no_tokens_raises_reconnect(self, dropbox, session):
        with pytest.raises(AuthError):
            dropbox.read()
        session.request.assert_not_called()


class TestErrorCategorization:
    """Transient failures are NetworkError, never AuthError."""

    @pytest.mark.parametrize("exc", [
        requests.ConnectionError("refused"),
        requests.Timeout("slow"),
    ])
    def test_transport_errors(self, dropbox, secrets, session, exc):
        _store_tokens(secrets)
        session.request.side_effect = exc
        with pytest.raises(NetworkError):
            dropbox.read()

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_retryable_statuses(self, dropbox, secrets, session, status):
        _store_tokens(secrets)
        session.request.return_value = _response(status, {"error": "busy"})
        with pytest.raises(NetworkError) as exc_info:
            dropbox.write(b"data")
        assert exc_info.value.retryable is True

    def test_forbidden_is_auth(self, onedrive, secrets, session):
        _store_tokens(secrets, backend="onedrive")
        session.request.return_value = _response(403, {"error": "accessDenied"})
        with pytest.raises(AuthError):
            onedrive.exists()


class TestMalformedTokenResponse:
    """A 200 from the token endpoint that is not a usable token."""

    def test_missing_access_token_is_auth(self, dropbox, secrets, session):
        _store_tokens(secrets, expires_in_ms=-1000)
        session.post.return_value = _response(200, {"error": "weird"})
        with pytest.raises(AuthError):
            dropbox.exists()
        session.request.assert_not_called()
        assert TokenStore(secrets, "dropbox").load_tokens().access_token == "access-1"

    def test_html_body_is_network(self, dropbox, secrets, session):
        """Captive portal pages come back as 200 text/html."""
        _store_tokens(secrets, expires_in_ms=-1000)
        session.post.return_value = _response(200, content=b"<html>Log in</html>")
        with pytest.raises(NetworkError) as exc_info:
            dropbox.exists()
        assert exc_info.value.retryable is True

    def test_non_object_body_is_network(self, dropbox, secrets, session):
        _store_tokens(secrets, expires_in_ms=-1000)
        session.post.return_value = _response(200, ["not", "a", "token"])
        with pytest.raises(NetworkError):
            dropbox.exists()

    def test_bad_expires_in_is_auth(self, dropbox, session):
        dropbox.start_auth()
        session.post.return_value = _response(200, {
            "access_token": "access-1", "expires_in": "soon",
        })
        with pytest.raises(AuthError):
            dropbox.complete_auth("code-1")

    @pytest.mark.asyncio
    async def test_sync_reports_failure(
        self, dropbox, secrets, session, orchestrator, config_store, events
    ):
        _store_tokens(secrets, expires_in_ms=-1000)
        config_store.save(SyncConfig(
            enabled=True,
            provider_kind=ProviderKind.CLOUD_OAUTH,
            cloud_backend=CloudBackend.DROPBOX,
        ))
        orchestrator.set_provider(dropbox)
        session.post.return_value = _response(200, {"error": "weird"})

        with pytest.raises(AuthError):
            await orchestrator.sync_now()

        assert [e.kind for e in events] == [
            SyncEventKind.SYNC_STARTED, SyncEventKind.SYNC_FAILED,
        ]
        assert events[-1].error_kind == "auth"
        assert orchestrator.get_status().state == SyncState.ERROR


# ---------------------------------------------------------------------------
# Backend file calls
# ---------------------------------------------------------------------------


class TestDropboxFiles:
    """Dropbox API v2 file endpoints."""

    def test_exists_not_found(self, dropbox, secrets, session):
        _store_tokens(secrets)
        session.request.return_value = _response(409, {
            "error_summary": "path/not_found/..",
            "error": {".tag": "path", "path": {".tag": "not_found"}},
        })
        assert dropbox.exists() is False
        method, url = session.request.call_args.args
        assert (method, url) == ("POST", f"{DropboxAPI.api_url}/files/get_metadata")
        assert session.request.call_args.kwargs["json"] == {"path": f"/{SYNC_FILE_NAME}"}

    def test_exists_other_conflict(self, dropbox, secrets, session):
        _store_tokens(secrets)
        session.request.return_value = _response(409, {
            "error": {".tag": "path", "path": {".tag": "malformed_path"}},
        })
        with pytest.raises(NetworkError):
            dropbox.exists()

    @pytest.mark.parametrize("body", [["path"], {"error": "path/not_found"}])
    def test_exists_odd_conflict_body(self, dropbox, secrets, session, body):
        _store_tokens(secrets)
        session.request.return_value = _response(409, body)
        with pytest.raises(NetworkError):
            dropbox.exists()

    def test_read(self, dropbox, secrets, session):
        _store_tokens(secrets)
        session.request.return_value = _response(200, content=b"remote-bytes")
        assert dropbox.read() == b"remote-bytes"
        headers = session.request.call_args.kwargs["headers"]
        assert json.loads(headers["Dropbox-API-Arg"]) == {"path": f"/{SYNC_FILE_NAME}"}

    def test_write_overwrites(self, dropbox, secrets, session):
        _store_tokens(secrets)
        session.request.return_value = _response(200, {"name": SYNC_FILE_NAME})

        dropbox.write(b"envelope")

        call = session.request.call_args
        assert call.args == ("POST", f"{DropboxAPI.content_url}/files/upload")
        assert call.kwargs["data"] == b"envelope"
        arg = json.loads(call.kwargs["headers"]["Dropbox-API-Arg"])
        assert arg["mode"] == "overwrite"
        assert arg["path"] == f"/{SYNC_FILE_NAME}"

    def test_disconnect_revokes(self, dropbox, secrets, session):
        _store_tokens(secrets)
        session.request.return_value = _response(200, None)

        dropbox.disconnect()

        assert session.request.call_args.args == (
            "POST", f"{DropboxAPI.api_url}/auth/token/revoke"
        )
        assert TokenStore(secrets, "dropbox").load_tokens() is None
        assert dropbox.is_connected() is False

    def test_disconnect_survives_failed_revoke(self, dropbox, secrets, session):
        _store_tokens(secrets)
        session.request.side_effect = requests.ConnectionError("offline")
        dropbox.disconnect()
        assert TokenStore(secrets, "dropbox").load_tokens() is None


class TestOneDriveFiles:
    """Microsoft Graph approot endpoints."""

    def test_exists_not_found(self, onedrive, secrets, session):
        _store_tokens(secrets, backend="onedrive")
        session.request.return_value = _response(404, {"error": {"code": "itemNotFound"}})
        assert onedrive.exists() is False
        method, url = session.request.call_args.args
        assert method == "GET"
        assert url.endswith(f"/me/drive/special/approot:/{SYNC_FILE_NAME}")

    def test_read(self, onedrive, secrets, session):
        _store_tokens(secrets, backend="onedrive")
        session.request.return_value = _response(200, content=b"remote-bytes")
        assert onedrive.read() == b"remote-bytes"
        assert session.request.call_args.args[1].endswith(":/content")

    def test_write_puts_content(self, onedrive, secrets, session):
        _store_tokens(secrets, backend="onedrive")
        session.request.return_value = _response(201, {"id": "item"})

        onedrive.write(b"envelope")

        call = session.request.call_args
        assert call.args[0] == "PUT"
        assert call.args[1] == (
            f"{OneDriveAPI.graph_url}/me/drive/special/approot:/{SYNC_FILE_NAME}:/content"
        )
        assert call.kwargs["data"] == b"envelope"

    def test_refresh_sends_scope(self, onedrive, secrets, session):
        _store_tokens(secrets, backend="onedrive", expires_in_ms=1000)
        session.post.return_value = _response(200, {"access_token": "new", "expires_in": 3600})
        session.request.return_value = _response(200, {"id": "item"})

        onedrive.exists()

        form = session.post.call_args.kwargs["data"]
        assert form["scope"] == OneDriveAPI.scopes
        assert session.post.call_args.args[0] == OneDriveAPI.token_url


class TestClientIdFromEnv:
    """Client ids from the environment."""

    def test_dropbox(self, monkeypatch):
        monkeypatch.setenv("FLOWSYNC_DROPBOX_APP_KEY", "env-key")
        assert client_id_from_env(CloudBackend.DROPBOX) == "env-key"

    def test_onedrive_unset(self, monkeypatch):
        monkeypatch.delenv("FLOWSYNC_ONEDRIVE_CLIENT_ID", raising=False)
        assert client_id_from_env(CloudBackend.ONEDRIVE) is None
