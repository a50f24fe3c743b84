"""Shared test fixtures for flowsync."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import pytest

from flowsync.codec import EncryptionCodec
from flowsync.errors import AuthError, SyncError
from flowsync.models import Snapshot
from flowsync.orchestrator import SyncOrchestrator
from flowsync.providers.base import ProviderAdapter
from flowsync.store import ConfigStore, SecretsStore


class MemorySnapshotStore:
    """In-memory local persistence with call counters."""

    def __init__(self, snapshot: Snapshot):
        self.snapshot = snapshot
        self.reads = 0
        self.writes = 0

    def read_local_snapshot(self) -> Snapshot:
        self.reads += 1
        return self.snapshot

    def write_local_snapshot(self, snapshot: Snapshot) -> None:
        self.writes += 1
        self.snapshot = snapshot


class MemoryAdapter(ProviderAdapter):
    """Provider holding the remote envelope in memory."""

    def __init__(self, data: Optional[bytes] = None):
        self.data = data
        self.connected = True
        self.fail_write: Optional[Exception] = None
        self.exists_calls = 0
        self.reads = 0
        self.writes = 0
        self.disconnects = 0

    @property
    def name(self) -> str:
        return "Memory"

    def connect(self) -> None:
        self.connected = True

    def is_connected(self) -> bool:
        return self.connected

    def exists(self) -> bool:
        self.exists_calls += 1
        return self.data is not None

    def read(self) -> bytes:
        self.reads += 1
        return self.data

    def write(self, data: bytes) -> None:
        self.writes += 1
        if self.fail_write is not None:
            raise self.fail_write
        self.data = data

    def disconnect(self) -> None:
        self.disconnects += 1
        self.connected = False

    def reconnect_error(self) -> SyncError:
        return AuthError("Memory provider disconnected")


@pytest.fixture
def sync_home(tmp_path: Path) -> Path:
    """Provide a temporary sync home directory."""
    home = tmp_path / ".flowsync"
    home.mkdir()
    return home


@pytest.fixture
def config_store(sync_home: Path) -> ConfigStore:
    return ConfigStore(sync_home)


@pytest.fixture
def secrets(sync_home: Path) -> SecretsStore:
    return SecretsStore(sync_home)


@pytest.fixture
def codec() -> EncryptionCodec:
    return EncryptionCodec()


@pytest.fixture
def local_store() -> MemorySnapshotStore:
    return MemorySnapshotStore(Snapshot(device_id="device-a", updated_at=0))


@pytest.fixture
def adapter() -> MemoryAdapter:
    return MemoryAdapter()


@pytest.fixture
def orchestrator(
    local_store: MemorySnapshotStore, config_store: ConfigStore, codec: EncryptionCodec
) -> SyncOrchestrator:
    return SyncOrchestrator(local_store, config_store, codec=codec)


@pytest.fixture
def events(orchestrator: SyncOrchestrator) -> list:
    """Every event the orchestrator emits, in order."""
    received: list = []
    orchestrator.on_event(received.append)
    return received
