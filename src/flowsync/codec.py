"""
Encryption codec -- snapshot <-> envelope.

Never ship a raw snapshot to a drive you don't control. Wrap it.
Encrypt it when the reader asked for it. Authenticate it always.

Guarantees:
    - PBKDF2-HMAC-SHA256 key derivation, 100k iterations, 16-byte salt
    - AES-256-GCM with a fresh 12-byte nonce on every encode
    - Authentication tag verified before any plaintext is returned
    - Format version checked before anything else is parsed
    - Encrypted/plain status readable without a passphrase
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import ValidationError

from .errors import DecryptionError, UnsupportedFormatError
from .models import (
    ENVELOPE_FORMAT_VERSION,
    Envelope,
    RemoteState,
    Snapshot,
    now_ms,
)

logger = logging.getLogger("flowsync.codec")

PBKDF2_ITERATIONS = 100_000
SALT_LENGTH = 16
NONCE_LENGTH = 12
KEY_LENGTH = 32
ALGORITHM = "AES-256-GCM"

# Binds ciphertext to this envelope format.
_ASSOCIATED_DATA = f"flowsync:envelope:v{ENVELOPE_FORMAT_VERSION}".encode()


@dataclass(frozen=True)
class DerivedKey:
    """An AES key together with the salt it was derived from."""

    key: bytes = field(repr=False)
    salt: bytes


def _b64encode(data: Optional[bytes]) -> Optional[str]:
    if data is None:
        return None
    return base64.b64encode(data).decode("ascii")


def _b64decode(value: Any, name: str) -> bytes:
    """Decode a base64 envelope field.

    Raises:
        DecryptionError: If the field is not valid base64 text.
    """
    if not isinstance(value, str):
        raise DecryptionError(f"Envelope field '{name}' is corrupted")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecryptionError(
            f"Envelope field '{name}' is corrupted"
        ) from exc


class EncryptionCodec:
    """Turns snapshots into envelopes and back.

    Args:
        iterations: PBKDF2 iteration count. Values below the default
            are rejected.
    """

    def __init__(self, iterations: int = PBKDF2_ITERATIONS) -> None:
        if iterations < PBKDF2_ITERATIONS:
            raise ValueError(
                f"PBKDF2 iterations must be at least {PBKDF2_ITERATIONS}"
            )
        self.iterations = iterations

    # -- keys ---------------------------------------------------------------

    @staticmethod
    def generate_salt() -> bytes:
        """Random salt for a new key."""
        return os.urandom(SALT_LENGTH)

    def derive_key(self, passphrase: str, salt: bytes) -> DerivedKey:
        """Derive an AES-256 key from a passphrase.

        Args:
            passphrase: The reader's passphrase.
            salt: Salt bytes, stored in every envelope this key produces.

        Returns:
            DerivedKey carrying key and salt.
        """
        kdf = PBKDF2HMAC(
            algorithm=SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=self.iterations,
        )
        return DerivedKey(key=kdf.derive(passphrase.encode("utf-8")), salt=salt)

    # -- snapshot <-> envelope ---------------------------------------------

    def encode(self, snapshot: Snapshot, key: DerivedKey) -> Envelope:
        """Encrypt a snapshot into a fresh envelope.

        A new random nonce is drawn on every call.
        """
        nonce = os.urandom(NONCE_LENGTH)
        plaintext = snapshot.model_dump_json().encode("utf-8")
        ciphertext = AESGCM(key.key).encrypt(nonce, plaintext, _ASSOCIATED_DATA)
        return Envelope(
            encrypted=True,
            salt=key.salt,
            nonce=nonce,
            payload=ciphertext,
            algorithm=ALGORITHM,
            encrypted_at=now_ms(),
        )

    def encode_plain(self, snapshot: Snapshot) -> Envelope:
        """Wrap a snapshot without encryption."""
        return Envelope(
            encrypted=False,
            payload=snapshot.model_dump_json().encode("utf-8"),
        )

    def decode(
        self, envelope: Envelope, key: Optional[DerivedKey] = None
    ) -> Snapshot:
        """Recover the snapshot inside an envelope.

        Unencrypted envelopes are a pass-through and need no key.

        Raises:
            DecryptionError: Missing key, failed tag check, or a payload
                that is not a valid snapshot.
        """
        if envelope.encrypted:
            if key is None:
                raise DecryptionError(
                    "Remote sync data is encrypted. Enter your passphrase."
                )
            try:
                plaintext = AESGCM(key.key).decrypt(
                    envelope.nonce, envelope.payload, _ASSOCIATED_DATA
                )
            except (InvalidTag, ValueError) as exc:
                raise DecryptionError(
                    "Decryption failed. Incorrect passphrase or corrupted data."
                ) from exc
        else:
            plaintext = envelope.payload

        try:
            return Snapshot.model_validate_json(plaintext)
        except ValidationError as exc:
            raise DecryptionError(
                "Remote snapshot is corrupted and cannot be read"
            ) from exc

    def verify_passphrase(self, envelope: Envelope, passphrase: str) -> bool:
        """Check a passphrase against an encrypted envelope."""
        if not envelope.encrypted:
            return True
        try:
            self.decode(envelope, self.derive_key(passphrase, envelope.salt))
        except DecryptionError:
            return False
        return True

    # -- wire format --------------------------------------------------------

    def dump_envelope(self, envelope: Envelope) -> bytes:
        """Serialize an envelope for the remote store."""
        doc = {
            "formatVersion": envelope.format_version,
            "encrypted": envelope.encrypted,
            "algorithm": envelope.algorithm,
            "salt": _b64encode(envelope.salt),
            "nonce": _b64encode(envelope.nonce),
            "encryptedAt": envelope.encrypted_at,
            "payload": _b64encode(envelope.payload),
        }
        return json.dumps(doc, separators=(",", ":")).encode("utf-8")

    def load_envelope(self, data: bytes) -> Envelope:
        """Parse remote bytes into an envelope.

        Raises:
            UnsupportedFormatError: Unknown format version.
            DecryptionError: Anything else malformed.
        """
        doc = self._read_header(data)
        salt = nonce = None
        if doc["encrypted"]:
            salt = _b64decode(doc["salt"], "salt")
            nonce = _b64decode(doc["nonce"], "nonce")
        if "payload" not in doc:
            raise DecryptionError("Envelope has no payload")
        payload = _b64decode(doc["payload"], "payload")

        encrypted_at = doc.get("encryptedAt")
        return Envelope(
            format_version=doc["formatVersion"],
            encrypted=doc["encrypted"],
            salt=salt,
            nonce=nonce,
            payload=payload,
            algorithm=doc.get("algorithm"),
            encrypted_at=encrypted_at if isinstance(encrypted_at, int) else None,
        )

    def peek_envelope(self, data: bytes) -> RemoteState:
        """Report whether remote bytes are encrypted, without decrypting."""
        doc = self._read_header(data)
        return RemoteState(exists=True, encrypted=doc["encrypted"])

    def _read_header(self, data: bytes) -> dict:
        """Parse and validate the envelope header fields.

        ``formatVersion`` is checked before any other field.
        """
        try:
            doc = json.loads(data)
        except (ValueError, UnicodeDecodeError) as exc:
            raise DecryptionError(
                "Remote sync file is not a valid envelope"
            ) from exc
        if not isinstance(doc, dict):
            raise DecryptionError("Remote sync file is not a valid envelope")

        version = doc.get("formatVersion")
        if not isinstance(version, int) or isinstance(version, bool):
            raise DecryptionError("Envelope is missing its format version")
        if version != ENVELOPE_FORMAT_VERSION:
            raise UnsupportedFormatError(
                f"Remote sync file uses format version {version}; "
                f"this version only reads {ENVELOPE_FORMAT_VERSION}. "
                "Update FlowReader on this device."
            )

        encrypted = doc.get("encrypted")
        if not isinstance(encrypted, bool):
            raise DecryptionError("Envelope encryption flag is corrupted")
        has_salt = doc.get("salt") is not None
        has_nonce = doc.get("nonce") is not None
        if encrypted != has_salt or encrypted != has_nonce:
            raise DecryptionError(
                "Envelope encryption flag does not match its salt and nonce"
            )
        return doc
