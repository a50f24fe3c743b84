"""
Provider adapter interface -- where the snapshot file lives.

Every adapter exposes the same capability set and hides its own
authentication and permission model behind it. The orchestrator never
branches on provider type.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from ..errors import ConfigurationError, SyncError
from ..models import CloudBackend, ProviderKind

SYNC_FILE_NAME = "flowreader_state.enc"


class ProviderAdapter(ABC):
    """Abstract remote location holding one snapshot envelope.

    All methods are blocking; the orchestrator calls them off the
    event loop. Failures raise a ``SyncError`` subclass.
    """

    kind: ProviderKind = ProviderKind.NONE
    backend: Optional[CloudBackend] = None

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable provider name."""

    @abstractmethod
    def connect(self) -> None:
        """Run the provider's interactive connect flow."""

    @abstractmethod
    def is_connected(self) -> bool:
        """Cheap readiness check. Never raises."""

    @abstractmethod
    def exists(self) -> bool:
        """True if the remote snapshot file exists."""

    @abstractmethod
    def read(self) -> bytes:
        """Return the raw remote envelope bytes."""

    @abstractmethod
    def write(self, data: bytes) -> None:
        """Replace the remote envelope with ``data``."""

    def disconnect(self) -> None:
        """Forget credentials or handles. Remote data is left alone."""

    def reconnect_error(self) -> SyncError:
        """Error to surface when ``is_connected()`` is false."""
        return ConfigurationError(f"{self.name} is not connected")
