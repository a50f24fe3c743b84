"""
OAuth 2.0 helpers shared by the cloud backends.

PKCE (RFC 7636, S256) plus token persistence in the secrets store.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
from typing import Optional
from urllib.parse import parse_qs, urlparse

from pydantic import ValidationError

from ..errors import AuthError
from ..models import OAuthTokens
from ..store import SecretsStore

logger = logging.getLogger("flowsync.providers.oauth")


def base64url_encode(data: bytes) -> str:
    """URL-safe base64 without padding."""
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def generate_code_verifier() -> str:
    """32 random bytes, base64url encoded."""
    return base64url_encode(secrets.token_bytes(32))


def generate_code_challenge(verifier: str) -> str:
    """S256 challenge for a verifier."""
    return base64url_encode(hashlib.sha256(verifier.encode("ascii")).digest())


def extract_auth_code(redirect_url: str) -> str:
    """Pull the authorization code out of a redirect URL.

    Raises:
        AuthError: If the provider returned an error or no code.
    """
    query = parse_qs(urlparse(redirect_url).query)
    if "error" in query:
        detail = query.get("error_description", query["error"])[0]
        raise AuthError(f"Authorization was refused: {detail}")
    codes = query.get("code")
    if not codes:
        raise AuthError("Authorization redirect did not include a code")
    return codes[0]


class TokenStore:
    """Per-backend token and PKCE verifier persistence.

    Args:
        secrets: Backing secrets store.
        prefix: Key prefix, e.g. ``"dropbox"``.
    """

    def __init__(self, secrets_store: SecretsStore, prefix: str):
        self._secrets = secrets_store
        self._tokens_key = f"{prefix}_tokens"
        self._verifier_key = f"{prefix}_pkce_verifier"

    def load_tokens(self) -> Optional[OAuthTokens]:
        data = self._secrets.get(self._tokens_key)
        if not data:
            return None
        try:
            return OAuthTokens(**data)
        except (TypeError, ValidationError) as exc:
            logger.warning("Discarding unreadable stored tokens: %s", exc)
            return None

    def save_tokens(self, tokens: OAuthTokens) -> None:
        self._secrets.set(self._tokens_key, tokens.model_dump(mode="json"))

    def clear_tokens(self) -> None:
        self._secrets.delete(self._tokens_key)

    def save_verifier(self, verifier: str) -> None:
        self._secrets.set(self._verifier_key, verifier)

    def load_verifier(self) -> Optional[str]:
        return self._secrets.get(self._verifier_key)

    def clear_verifier(self) -> None:
        self._secrets.delete(self._verifier_key)
