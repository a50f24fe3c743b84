"""
Sync providers -- where the snapshot file lives.

A folder the reader picks, or an OAuth cloud drive. The reader picks
the pipe. The codec secures the payload.
"""

from __future__ import annotations

from typing import Optional

from ..errors import ConfigurationError
from ..models import ProviderKind, SyncConfig
from ..store import SecretsStore
from .base import SYNC_FILE_NAME, ProviderAdapter
from .cloud import CloudOAuthAdapter, client_id_from_env, register_cloud_backend
from .folder import DirectoryHandle, LocalDirectoryAdapter, PermissionState


def create_adapter(
    config: SyncConfig, secrets: SecretsStore, **kwargs
) -> Optional[ProviderAdapter]:
    """Factory that rebuilds the configured adapter after a restart.

    Args:
        config: Persisted sync config.
        secrets: Secrets store holding tokens and folder references.
        **kwargs: Passed through to the adapter constructor.

    Returns:
        The adapter, or None when no provider is configured.

    Raises:
        ConfigurationError: Cloud sync configured without a backend.
    """
    if config.provider_kind == ProviderKind.LOCAL_DIRECTORY:
        adapter = LocalDirectoryAdapter(secrets, **kwargs)
        adapter.restore_handle()
        return adapter
    if config.provider_kind == ProviderKind.CLOUD_OAUTH:
        if config.cloud_backend is None:
            raise ConfigurationError("Cloud sync configured without a backend")
        kwargs.setdefault("client_id", client_id_from_env(config.cloud_backend))
        return CloudOAuthAdapter(config.cloud_backend, secrets, **kwargs)
    return None


__all__ = [
    "SYNC_FILE_NAME",
    "CloudOAuthAdapter",
    "DirectoryHandle",
    "LocalDirectoryAdapter",
    "PermissionState",
    "ProviderAdapter",
    "create_adapter",
    "register_cloud_backend",
]
