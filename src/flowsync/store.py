"""
Local config and secrets stores.

    <home>/sync/config.yaml    SyncConfig (human readable)
    <home>/sync/secrets.json   OAuth tokens, PKCE verifiers, folder refs

Neither file ever holds the passphrase or a derived key.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Optional

import yaml

from .models import SyncConfig

logger = logging.getLogger("flowsync.store")


def _write_private(path: Path, text: str) -> None:
    """Write a file readable only by the owner, replacing atomically."""
    tmp = path.with_name(path.name + ".tmp")
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        fh.write(text)
    os.replace(tmp, path)


class ConfigStore:
    """YAML-backed persistence for SyncConfig.

    Args:
        home: Sync home directory (``~/.flowsync``).
    """

    def __init__(self, home: Path):
        self.sync_dir = home.expanduser() / "sync"
        self.sync_dir.mkdir(parents=True, exist_ok=True)
        self.config_file = self.sync_dir / "config.yaml"

    def load(self) -> SyncConfig:
        """Load config, falling back to defaults if missing or unreadable."""
        if self.config_file.exists():
            try:
                data = yaml.safe_load(
                    self.config_file.read_text(encoding="utf-8")
                ) or {}
                return SyncConfig(**data)
            except (yaml.YAMLError, ValueError, OSError) as exc:
                logger.warning("Failed to load sync config: %s", exc)
        return SyncConfig()

    def save(self, config: SyncConfig) -> None:
        """Persist config to disk."""
        data = config.model_dump(mode="json")
        _write_private(
            self.config_file, yaml.dump(data, default_flow_style=False)
        )


class SecretsStore:
    """Small JSON key-value store for tokens and folder references.

    Thread-safe: adapters call it from worker threads.

    Args:
        home: Sync home directory.
    """

    def __init__(self, home: Path):
        self.sync_dir = home.expanduser() / "sync"
        self.sync_dir.mkdir(parents=True, exist_ok=True)
        self.secrets_file = self.sync_dir / "secrets.json"
        self._lock = threading.Lock()

    def _read(self) -> dict[str, Any]:
        if not self.secrets_file.exists():
            return {}
        try:
            data = json.loads(self.secrets_file.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Failed to read secrets store: %s", exc)
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, key: str) -> Optional[Any]:
        """Return the stored value, or None."""
        with self._lock:
            return self._read().get(key)

    def set(self, key: str, value: Any) -> None:
        """Store a JSON-serializable value."""
        with self._lock:
            data = self._read()
            data[key] = value
            _write_private(self.secrets_file, json.dumps(data, indent=2))

    def delete(self, key: str) -> None:
        """Remove a key if present."""
        with self._lock:
            data = self._read()
            if data.pop(key, None) is not None:
                _write_private(self.secrets_file, json.dumps(data, indent=2))
