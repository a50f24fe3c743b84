"""
Local persistence collaborator.

The sync engine never caches local state. It asks for a fresh snapshot
on every sync and hands back the merged result. Anything that speaks
``LocalSnapshotStore`` can sit behind it; ``JsonSnapshotStore`` is the
file-backed store the CLI uses.
"""

from __future__ import annotations

import logging
import os
import uuid
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from .models import Snapshot, now_ms

logger = logging.getLogger("flowsync.local")


class LocalSnapshotStore(Protocol):
    """What the orchestrator needs from the on-device data layer."""

    def read_local_snapshot(self) -> Snapshot:
        """Build a snapshot of current local state."""

    def write_local_snapshot(self, snapshot: Snapshot) -> None:
        """Replace local state with the given snapshot."""


class JsonSnapshotStore:
    """Snapshot kept as a single JSON document on disk.

    Args:
        home: Sync home directory.
        device_id: Identity stamped on new snapshots. Generated and kept
            in ``<home>/device-id`` when omitted.
    """

    def __init__(self, home: Path, device_id: str | None = None):
        self.home = home.expanduser()
        self.home.mkdir(parents=True, exist_ok=True)
        self.snapshot_file = self.home / "snapshot.json"
        self.device_id = device_id or self._load_device_id()

    def _load_device_id(self) -> str:
        id_file = self.home / "device-id"
        if id_file.exists():
            value = id_file.read_text(encoding="utf-8").strip()
            if value:
                return value
        value = uuid.uuid4().hex
        id_file.write_text(value, encoding="utf-8")
        return value

    def read_local_snapshot(self) -> Snapshot:
        """Load the stored snapshot, or an empty one for a fresh device.

        Raises:
            ValueError: If the stored file is corrupted.
        """
        if not self.snapshot_file.exists():
            return Snapshot(device_id=self.device_id, updated_at=0)
        try:
            return Snapshot.model_validate_json(
                self.snapshot_file.read_bytes()
            )
        except ValidationError as exc:
            raise ValueError(
                f"Local snapshot {self.snapshot_file} is corrupted: {exc}"
            ) from exc

    def write_local_snapshot(self, snapshot: Snapshot) -> None:
        """Atomically replace the stored snapshot."""
        tmp = self.snapshot_file.with_suffix(".json.tmp")
        tmp.write_text(snapshot.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp, self.snapshot_file)
        logger.debug("Local snapshot written (%d items)", len(snapshot.items))

    def touch(self, snapshot: Snapshot) -> Snapshot:
        """Stamp a locally edited snapshot with this device and now."""
        return snapshot.model_copy(
            update={"device_id": self.device_id, "updated_at": now_ms()}
        )
