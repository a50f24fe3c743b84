"""
Sync data models -- configuration, snapshot, envelope and events.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

CURRENT_SCHEMA_VERSION = 100
SCHEMA_MINOR_SPAN = 100
ENVELOPE_FORMAT_VERSION = 1


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


def schema_major(version: int) -> int:
    """Major component of a packed ``major * 100 + minor`` schema version."""
    return version // SCHEMA_MINOR_SPAN


class ProviderKind(str, Enum):
    """Which kind of remote store sync is configured against."""

    NONE = "none"
    LOCAL_DIRECTORY = "local_directory"
    CLOUD_OAUTH = "cloud_oauth"


class CloudBackend(str, Enum):
    """Supported OAuth cloud drives."""

    DROPBOX = "dropbox"
    ONEDRIVE = "onedrive"


class SyncConfig(BaseModel):
    """Sync configuration persisted on this device only."""

    enabled: bool = False
    provider_kind: ProviderKind = ProviderKind.NONE
    cloud_backend: Optional[CloudBackend] = None
    encryption_enabled: bool = False
    encryption_salt: Optional[str] = None
    last_sync_time: Optional[datetime] = None
    last_sync_error: Optional[str] = None


class OAuthTokens(BaseModel):
    """Tokens returned by an OAuth token endpoint."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None
    token_type: str = "bearer"
    scope: Optional[str] = None

    def expires_within(self, window_ms: int) -> bool:
        """True if the access token expires inside the given window."""
        if self.expires_at is None:
            return False
        return self.expires_at < now_ms() + window_ms


# ---------------------------------------------------------------------------
# Snapshot records
# ---------------------------------------------------------------------------

class Record(BaseModel):
    """A leaf record. Deletions stay in place as tombstones."""

    model_config = ConfigDict(extra="allow")

    updated_at: int
    tombstone: bool = False
    deleted_at: Optional[int] = None


class ArchiveItemRecord(Record):
    """One entry in the reading history."""

    id: str
    type: str = "web"
    title: str = ""
    author: Optional[str] = None
    source_label: str = ""
    url: Optional[str] = None
    file_hash: Optional[str] = None
    created_at: int = 0
    last_opened_at: int = 0
    progress: Optional[float] = None


class PositionRecord(Record):
    """Where the reader stopped in one document."""

    block_index: int = 0
    char_offset: int = 0
    chapter_index: Optional[int] = None
    percent: Optional[float] = None


class SettingsRecord(Record):
    """Reader settings, merged as a whole."""

    values: dict[str, Any] = Field(default_factory=dict)


class ThemeRecord(Record):
    """A user-defined colour theme."""

    name: str
    colors: dict[str, str] = Field(default_factory=dict)


class PresetRecord(Record):
    """A named bundle of reader settings."""

    name: str
    values: dict[str, Any] = Field(default_factory=dict)


class CollectionRecord(Record):
    """A named group of archive items."""

    id: str
    name: str = ""
    item_ids: list[str] = Field(default_factory=list)
    created_at: int = 0


class AnnotationRecord(Record):
    """A highlight or note in one document."""

    id: str
    document_key: str
    block_index: int = 0
    char_offset: int = 0
    text: str = ""
    note: Optional[str] = None
    color: Optional[str] = None
    created_at: int = 0


class Snapshot(BaseModel):
    """The unit exchanged with remote storage.

    All collections are keyed maps; identity is the key.
    """

    model_config = ConfigDict(extra="allow")

    schema_version: int = CURRENT_SCHEMA_VERSION
    device_id: str
    updated_at: int
    items: dict[str, ArchiveItemRecord] = Field(default_factory=dict)
    positions: dict[str, PositionRecord] = Field(default_factory=dict)
    settings: SettingsRecord = Field(
        default_factory=lambda: SettingsRecord(updated_at=0)
    )
    custom_themes: dict[str, ThemeRecord] = Field(default_factory=dict)
    presets: dict[str, PresetRecord] = Field(default_factory=dict)
    collections: dict[str, CollectionRecord] = Field(default_factory=dict)
    annotations: dict[str, AnnotationRecord] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Wire and status models
# ---------------------------------------------------------------------------

class Envelope(BaseModel):
    """Self-describing wrapper around a serialized snapshot.

    ``encrypted`` is true exactly when both ``salt`` and ``nonce`` are
    present; the codec refuses envelopes that break this.
    """

    format_version: int = ENVELOPE_FORMAT_VERSION
    encrypted: bool = False
    salt: Optional[bytes] = None
    nonce: Optional[bytes] = None
    payload: bytes
    algorithm: Optional[str] = None
    encrypted_at: Optional[int] = None


class RemoteState(BaseModel):
    """Answer to "is there a remote copy, and is it encrypted?"."""

    exists: bool = False
    encrypted: bool = False


class SyncAction(str, Enum):
    """What a sync call ended up doing."""

    UPLOADED = "uploaded"
    MERGED = "merged"
    NO_CHANGE = "no_change"
    SKIPPED = "skipped"


class SyncResult(BaseModel):
    """Outcome of one ``sync_now`` call."""

    success: bool = True
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    action: SyncAction
    conflicts: int = 0


class SyncState(str, Enum):
    """Coarse sync status for display."""

    DISABLED = "disabled"
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


class SyncStatus(BaseModel):
    """Current status of the orchestrator."""

    state: SyncState = SyncState.DISABLED
    last_sync_time: Optional[datetime] = None
    started_at: Optional[datetime] = None
    message: Optional[str] = None


class SyncEventKind(str, Enum):
    """Lifecycle events delivered to UI subscribers."""

    SYNC_STARTED = "sync_started"
    SYNC_COMPLETED = "sync_completed"
    SYNC_FAILED = "sync_failed"
    PROVIDER_CONNECTED = "provider_connected"
    PROVIDER_DISCONNECTED = "provider_disconnected"


class SyncEvent(BaseModel):
    """A single lifecycle event. Never persisted."""

    kind: SyncEventKind
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    message: Optional[str] = None
    error_kind: Optional[str] = None
    backend: Optional[str] = None
    result: Optional[SyncResult] = None
