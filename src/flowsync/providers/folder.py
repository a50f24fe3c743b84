"""
Local directory adapter -- sync through a folder the reader picks.

Works with any directory, including ones that iCloud Drive, Google
Drive or the Dropbox desktop client replicate for us. Access can be
revoked between sessions (unmounted drive, changed permissions), so
permission is re-checked before every read and write.
"""

from __future__ import annotations

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from ..errors import ConfigurationError, NetworkError, SyncError, SyncPermissionError
from ..models import ProviderKind
from ..store import SecretsStore
from .base import SYNC_FILE_NAME, ProviderAdapter

logger = logging.getLogger("flowsync.providers.folder")

FOLDER_HANDLE_KEY = "folder_handle"

FolderPicker = Callable[[], Optional[Path]]


class PermissionState(str, Enum):
    """Result of a permission query on a directory handle."""

    GRANTED = "granted"
    DENIED = "denied"


class DirectoryHandle:
    """Opaque reference to a picked directory.

    Args:
        path: Directory the reader selected.
    """

    def __init__(self, path: Path):
        self.path = Path(path).expanduser()

    @property
    def name(self) -> str:
        return self.path.name or str(self.path)

    def query_permission(self) -> PermissionState:
        """Check that the directory is still there and read-writable."""
        if self.path.is_dir() and os.access(
            self.path, os.R_OK | os.W_OK | os.X_OK
        ):
            return PermissionState.GRANTED
        return PermissionState.DENIED


class LocalDirectoryAdapter(ProviderAdapter):
    """Adapter over a directory handle.

    Args:
        secrets: Store that remembers the picked directory across restarts.
        picker: Platform file-picker; returns a directory or None on cancel.
        handle_factory: Builds handles from paths.
    """

    kind = ProviderKind.LOCAL_DIRECTORY

    def __init__(
        self,
        secrets: SecretsStore,
        picker: Optional[FolderPicker] = None,
        handle_factory: Callable[[Path], DirectoryHandle] = DirectoryHandle,
    ):
        self._secrets = secrets
        self._picker = picker
        self._handle_factory = handle_factory
        self._handle: Optional[DirectoryHandle] = None

    @property
    def name(self) -> str:
        return "Folder Sync"

    @property
    def folder_path(self) -> Optional[Path]:
        """Picked directory, for display."""
        return self._handle.path if self._handle else None

    # -- connection ---------------------------------------------------------

    def select_folder(self) -> DirectoryHandle:
        """Ask the picker for a directory and remember it.

        Raises:
            ConfigurationError: No picker, or the reader cancelled.
            SyncPermissionError: The directory is not read-writable.
        """
        if self._picker is None:
            raise ConfigurationError("No folder picker available")
        picked = self._picker()
        if picked is None:
            raise ConfigurationError("Folder selection was cancelled")

        handle = self._handle_factory(picked)
        if handle.query_permission() != PermissionState.GRANTED:
            raise SyncPermissionError(
                f"FlowReader cannot read and write {handle.path}"
            )
        self._handle = handle
        self._secrets.set(FOLDER_HANDLE_KEY, {"path": str(handle.path)})
        logger.info("Sync folder selected: %s", handle.path)
        return handle

    def connect(self) -> None:
        self.select_folder()

    def restore_handle(self) -> bool:
        """Bring back the folder picked in an earlier session.

        Returns:
            True if the stored folder is still accessible.
        """
        stored = self._secrets.get(FOLDER_HANDLE_KEY)
        if not isinstance(stored, dict) or not stored.get("path"):
            return False
        handle = self._handle_factory(Path(stored["path"]))
        try:
            granted = handle.query_permission() == PermissionState.GRANTED
        except OSError as exc:
            logger.warning("Folder permission check failed: %s", exc)
            return False
        if granted:
            self._handle = handle
        else:
            logger.info("Stored sync folder no longer accessible: %s", handle.path)
        return granted

    def is_connected(self) -> bool:
        if self._handle is None:
            return self.restore_handle()
        try:
            return self._handle.query_permission() == PermissionState.GRANTED
        except OSError as exc:
            logger.warning("Folder permission check failed: %s", exc)
            return False

    def disconnect(self) -> None:
        self._handle = None
        self._secrets.delete(FOLDER_HANDLE_KEY)

    def reconnect_error(self) -> SyncError:
        return SyncPermissionError(
            "Folder access was lost. Please re-select the sync folder."
        )

    # -- file operations ----------------------------------------------------

    def _sync_file(self) -> Path:
        """Path of the sync file, after re-validating permission."""
        if self._handle is None:
            raise ConfigurationError("No sync folder selected")
        if self._handle.query_permission() != PermissionState.GRANTED:
            raise self.reconnect_error()
        return self._handle.path / SYNC_FILE_NAME

    def exists(self) -> bool:
        return self._sync_file().is_file()

    def read(self) -> bytes:
        path = self._sync_file()
        try:
            return path.read_bytes()
        except PermissionError as exc:
            raise SyncPermissionError(f"Cannot read {path}: {exc}") from exc
        except OSError as exc:
            raise NetworkError(f"Failed to read sync file: {exc}") from exc

    def write(self, data: bytes) -> None:
        path = self._sync_file()
        tmp = path.with_name(path.name + ".tmp")
        try:
            tmp.write_bytes(data)
            os.replace(tmp, path)
        except PermissionError as exc:
            raise SyncPermissionError(f"Cannot write {path}: {exc}") from exc
        except OSError as exc:
            raise NetworkError(f"Failed to write sync file: {exc}") from exc
        logger.debug("Sync file written to %s (%d bytes)", path, len(data))
