"""
Sync error taxonomy.

Every failure that leaves the orchestrator is one of these kinds.
The UI decides between "retry" and "reconnect" from ``kind`` alone.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all categorized sync failures."""

    kind = "sync"
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthError(SyncError):
    """OAuth token invalid or expired and not refreshable. Reauthorize."""

    kind = "auth"


class SyncPermissionError(SyncError):
    """Access to the local sync directory was revoked. Reselect the folder."""

    kind = "permission"


class NetworkError(SyncError):
    """Transient I/O failure. Safe to retry."""

    kind = "network"
    retryable = True


class DecryptionError(SyncError):
    """Wrong passphrase or corrupted envelope."""

    kind = "decryption"


class ConflictError(SyncError):
    """Snapshots with incompatible schema versions cannot be merged."""

    kind = "conflict"


class UnsupportedFormatError(ConflictError):
    """Remote envelope uses a format version this build cannot read."""


class ConfigurationError(SyncError):
    """Sync invoked without a usable provider, passphrase or config."""

    kind = "configuration"
