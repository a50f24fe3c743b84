"""
Sync orchestrator -- the command center.

Owns the active provider, the in-memory passphrase and the event
subscribers. Every sync is a fresh read-merge-write cycle:

    read local -> read remote -> decode -> merge
        -> write local -> encode -> write remote -> record success

Local state is committed before the remote write, so a failed upload
still leaves this device correctly merged; a retry is always safe.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from .codec import DerivedKey, EncryptionCodec
from .errors import (
    ConfigurationError,
    DecryptionError,
    NetworkError,
    SyncError,
)
from .events import EventEmitter, SyncEventListener
from .local import LocalSnapshotStore
from .merge import SnapshotMerger
from .models import (
    Envelope,
    RemoteState,
    Snapshot,
    SyncAction,
    SyncConfig,
    SyncEvent,
    SyncEventKind,
    SyncResult,
    SyncState,
    SyncStatus,
)
from .providers.base import ProviderAdapter
from .store import ConfigStore

logger = logging.getLogger("flowsync.orchestrator")

MIN_PASSPHRASE_LENGTH = 8


def _categorize(exc: Exception) -> SyncError:
    """Map a raw failure onto the sync error taxonomy."""
    if isinstance(exc, SyncError):
        return exc
    if isinstance(exc, OSError):
        return NetworkError(f"Sync I/O failed: {exc}")
    return ConfigurationError(f"Sync data could not be processed: {exc}")


def _backend_label(adapter: ProviderAdapter) -> str:
    if adapter.backend is not None:
        return adapter.backend.value
    return adapter.kind.value


def _check_passphrase(passphrase: str) -> None:
    if not passphrase or len(passphrase) < MIN_PASSPHRASE_LENGTH:
        raise ConfigurationError(
            f"Passphrase must be at least {MIN_PASSPHRASE_LENGTH} characters"
        )


class SyncOrchestrator:
    """Coordinates provider, codec, merger and local store.

    One instance per running context. Nothing here is global: tests can
    build as many orchestrators as they like.

    Args:
        local_store: Source of truth for on-device state.
        config_store: Where SyncConfig is persisted.
        codec: Envelope codec. Defaults to ``EncryptionCodec()``.
        merger: Snapshot merger. Defaults to ``SnapshotMerger()``.
    """

    def __init__(
        self,
        local_store: LocalSnapshotStore,
        config_store: ConfigStore,
        codec: Optional[EncryptionCodec] = None,
        merger: Optional[SnapshotMerger] = None,
    ) -> None:
        self._local = local_store
        self._config_store = config_store
        self._codec = codec or EncryptionCodec()
        self._merger = merger or SnapshotMerger()
        self._events = EventEmitter()
        self._adapter: Optional[ProviderAdapter] = None
        self._passphrase: Optional[str] = None
        self._keys: dict[bytes, DerivedKey] = {}
        self._status = SyncStatus()
        self._in_flight = False

    # ------------------------------------------------------------------
    # Config and wiring
    # ------------------------------------------------------------------

    def get_config(self) -> SyncConfig:
        """Persisted config. Falls back to defaults, never raises."""
        return self._config_store.load()

    def _save_config(self, config: SyncConfig) -> None:
        self._config_store.save(config)

    def set_provider(self, adapter: Optional[ProviderAdapter]) -> None:
        """Install the active adapter, replacing any previous one."""
        self._adapter = adapter

    @property
    def provider(self) -> Optional[ProviderAdapter]:
        return self._adapter

    def has_passphrase(self) -> bool:
        return self._passphrase is not None

    def on_event(self, listener: SyncEventListener) -> Callable[[], None]:
        """Subscribe to lifecycle events. Returns an idempotent disposer."""
        return self._events.subscribe(listener)

    def _emit(self, kind: SyncEventKind, **fields) -> None:
        self._events.emit(SyncEvent(kind=kind, **fields))

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def initialize(self) -> SyncStatus:
        """Derive the initial status from persisted config."""
        config = self.get_config()
        if not config.enabled:
            state = SyncState.DISABLED
        elif config.last_sync_error:
            state = SyncState.ERROR
        else:
            state = SyncState.IDLE
        self._status = SyncStatus(
            state=state,
            last_sync_time=config.last_sync_time,
            message=config.last_sync_error,
        )
        return self.get_status()

    def get_status(self) -> SyncStatus:
        return self._status.model_copy()

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    async def _key_for(self, salt: bytes) -> DerivedKey:
        """Derived key for a salt, using the held passphrase.

        Raises:
            DecryptionError: No passphrase is held.
        """
        if self._passphrase is None:
            raise DecryptionError(
                "Remote sync data is encrypted. Enter your passphrase."
            )
        key = self._keys.get(salt)
        if key is None:
            key = await asyncio.to_thread(
                self._codec.derive_key, self._passphrase, salt
            )
            self._keys[salt] = key
        return key

    async def _read_envelope(self, adapter: ProviderAdapter) -> Optional[Envelope]:
        if not await asyncio.to_thread(adapter.exists):
            return None
        raw = await asyncio.to_thread(adapter.read)
        return self._codec.load_envelope(raw)

    async def _require_connected(self, adapter: ProviderAdapter) -> None:
        if not await asyncio.to_thread(adapter.is_connected):
            raise adapter.reconnect_error()

    # ------------------------------------------------------------------
    # Configuration flows
    # ------------------------------------------------------------------

    async def configure_without_encryption(
        self, adapter: ProviderAdapter
    ) -> SyncResult:
        """Enable plain sync against ``adapter`` and run a first sync.

        Raises:
            DecryptionError: The remote copy is already encrypted.
        """
        remote = await self.check_remote_state(adapter)
        if remote.encrypted:
            raise DecryptionError(
                "Remote sync data is encrypted. Connect with your passphrase."
            )

        self.set_provider(adapter)
        self._passphrase = None
        self._keys.clear()
        config = self.get_config().model_copy(update={
            "enabled": True,
            "provider_kind": adapter.kind,
            "cloud_backend": adapter.backend,
            "encryption_enabled": False,
            "encryption_salt": None,
            "last_sync_error": None,
        })
        self._save_config(config)
        self._status = SyncStatus(
            state=SyncState.IDLE, last_sync_time=config.last_sync_time
        )
        logger.info("Sync configured with %s (unencrypted)", adapter.name)
        self._emit(SyncEventKind.PROVIDER_CONNECTED, backend=_backend_label(adapter))
        return await self.sync_now()

    async def configure(self, adapter: ProviderAdapter, passphrase: str) -> SyncResult:
        """Enable encrypted sync against ``adapter`` and run a first sync.

        An existing encrypted remote must open with ``passphrase``; its
        salt is reused so every device derives the same key. On failure
        the previous provider, passphrase and config are left in place.

        Raises:
            ConfigurationError: Passphrase too short.
            DecryptionError: Passphrase does not open the remote copy.
        """
        _check_passphrase(passphrase)
        await self._require_connected(adapter)

        try:
            envelope = await self._read_envelope(adapter)
        except (OSError, ValueError) as exc:
            raise _categorize(exc) from exc

        if envelope is not None and envelope.encrypted:
            salt = envelope.salt
            key = await asyncio.to_thread(self._codec.derive_key, passphrase, salt)
            await asyncio.to_thread(self._codec.decode, envelope, key)
        else:
            salt = self._codec.generate_salt()
            key = await asyncio.to_thread(self._codec.derive_key, passphrase, salt)

        previous = (self._adapter, self._passphrase, dict(self._keys), self.get_config())
        self.set_provider(adapter)
        self._passphrase = passphrase
        self._keys = {salt: key}
        config = previous[3].model_copy(update={
            "enabled": True,
            "provider_kind": adapter.kind,
            "cloud_backend": adapter.backend,
            "encryption_enabled": True,
            "encryption_salt": base64.b64encode(salt).decode("ascii"),
            "last_sync_error": None,
        })
        self._save_config(config)
        self._status = SyncStatus(
            state=SyncState.IDLE, last_sync_time=config.last_sync_time
        )
        logger.info("Sync configured with %s (encrypted)", adapter.name)
        self._emit(SyncEventKind.PROVIDER_CONNECTED, backend=_backend_label(adapter))

        try:
            return await self.sync_now()
        except DecryptionError:
            self._adapter, self._passphrase, self._keys, restored = previous
            self._save_config(restored)
            raise

    async def set_passphrase(self, passphrase: str) -> None:
        """Hold the passphrase for an already-encrypted configuration.

        Used after a restart: the config says encryption is on but the
        passphrase only ever lives in memory.

        Raises:
            ConfigurationError: Too short, or no provider installed.
            DecryptionError: Passphrase does not open the remote copy.
        """
        _check_passphrase(passphrase)
        adapter = self._adapter
        if adapter is None:
            raise ConfigurationError("No sync provider configured")
        await self._require_connected(adapter)

        try:
            envelope = await self._read_envelope(adapter)
        except (OSError, ValueError) as exc:
            raise _categorize(exc) from exc

        keys: dict[bytes, DerivedKey] = {}
        if envelope is not None and envelope.encrypted:
            key = await asyncio.to_thread(
                self._codec.derive_key, passphrase, envelope.salt
            )
            await asyncio.to_thread(self._codec.decode, envelope, key)
            keys[envelope.salt] = key

        self._passphrase = passphrase
        self._keys = keys
        logger.info("Passphrase accepted")

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync_now(self) -> SyncResult:
        """Run one read-merge-write cycle.

        Single-flight: a call made while another is running returns a
        ``skipped`` result without touching local or remote state.

        Raises:
            SyncError: Any failure, after ``sync_failed`` was emitted.
        """
        if self._in_flight:
            logger.debug("Sync already in progress, skipping")
            return SyncResult(success=False, action=SyncAction.SKIPPED)

        self._in_flight = True
        try:
            return await self._run_sync()
        finally:
            self._in_flight = False

    async def _run_sync(self) -> SyncResult:
        adapter = self._adapter
        config = self.get_config()
        if adapter is None or not config.enabled:
            error = ConfigurationError(
                "No sync provider configured" if adapter is None
                else "Sync is not configured"
            )
            self._record_failure(error)
            raise error

        started = datetime.now(timezone.utc)
        self._status = SyncStatus(
            state=SyncState.SYNCING,
            last_sync_time=config.last_sync_time,
            started_at=started,
        )
        self._emit(SyncEventKind.SYNC_STARTED, backend=_backend_label(adapter))
        logger.info("Sync started with %s", adapter.name)

        try:
            result = await self._sync_cycle(adapter, config)
        except Exception as exc:
            error = _categorize(exc)
            if error is not exc:
                logger.debug("Uncategorized sync failure", exc_info=True)
            self._record_failure(error)
            if error is exc:
                raise
            raise error from exc

        config = self.get_config().model_copy(update={
            "last_sync_time": result.timestamp,
            "last_sync_error": None,
        })
        self._save_config(config)
        self._status = SyncStatus(
            state=SyncState.IDLE, last_sync_time=result.timestamp
        )
        self._emit(
            SyncEventKind.SYNC_COMPLETED,
            backend=_backend_label(adapter),
            result=result,
        )
        logger.info(
            "Sync completed: %s (%d conflicts)", result.action.value, result.conflicts
        )
        return result

    async def _sync_cycle(
        self, adapter: ProviderAdapter, config: SyncConfig
    ) -> SyncResult:
        await self._require_connected(adapter)
        if config.encryption_enabled and self._passphrase is None:
            raise DecryptionError(
                "Sync is encrypted. Enter your passphrase to continue."
            )

        local = await asyncio.to_thread(self._local.read_local_snapshot)

        remote: Optional[Snapshot] = None
        envelope = await self._read_envelope(adapter)
        if envelope is not None:
            key = await self._key_for(envelope.salt) if envelope.encrypted else None
            remote = await asyncio.to_thread(self._codec.decode, envelope, key)

        conflicts = 0
        if remote is None:
            merged = local
        else:
            report = self._merger.merge_with_report(local, remote)
            merged = report.merged
            conflicts = len(report.conflicts)

        if merged != local:
            await asyncio.to_thread(self._local.write_local_snapshot, merged)

        in_sync = (
            remote is not None
            and merged == remote
            and envelope.encrypted == config.encryption_enabled
        )
        if in_sync:
            action = SyncAction.NO_CHANGE
        else:
            out = await self._encode(merged, config, envelope)
            await asyncio.to_thread(adapter.write, self._codec.dump_envelope(out))
            action = SyncAction.UPLOADED if remote is None else SyncAction.MERGED

        return SyncResult(action=action, conflicts=conflicts)

    async def _encode(
        self,
        snapshot: Snapshot,
        config: SyncConfig,
        remote_envelope: Optional[Envelope],
    ) -> Envelope:
        if not config.encryption_enabled:
            return self._codec.encode_plain(snapshot)

        if remote_envelope is not None and remote_envelope.encrypted:
            salt = remote_envelope.salt
        elif config.encryption_salt:
            salt = base64.b64decode(config.encryption_salt)
        else:
            salt = self._codec.generate_salt()

        stored_salt = base64.b64encode(salt).decode("ascii")
        if stored_salt != config.encryption_salt:
            self._save_config(
                self.get_config().model_copy(update={"encryption_salt": stored_salt})
            )
        key = await self._key_for(salt)
        return await asyncio.to_thread(self._codec.encode, snapshot, key)

    def _record_failure(self, error: SyncError) -> None:
        logger.warning("Sync failed (%s): %s", error.kind, error.message)
        try:
            self._save_config(
                self.get_config().model_copy(update={"last_sync_error": error.message})
            )
        except OSError as exc:
            logger.warning("Could not record sync error: %s", exc)
        self._status = SyncStatus(
            state=SyncState.ERROR,
            last_sync_time=self._status.last_sync_time,
            message=error.message,
        )
        self._emit(
            SyncEventKind.SYNC_FAILED,
            message=error.message,
            error_kind=error.kind,
        )

    # ------------------------------------------------------------------
    # Queries and teardown
    # ------------------------------------------------------------------

    async def check_remote_state(self, adapter: ProviderAdapter) -> RemoteState:
        """Does a remote copy exist, and is it encrypted? No passphrase needed."""
        await self._require_connected(adapter)
        try:
            if not await asyncio.to_thread(adapter.exists):
                return RemoteState()
            raw = await asyncio.to_thread(adapter.read)
        except OSError as exc:
            raise _categorize(exc) from exc
        return self._codec.peek_envelope(raw)

    async def is_ready_to_sync(self) -> bool:
        """Connected provider, plus a passphrase when encryption is on."""
        adapter = self._adapter
        if adapter is None:
            return False
        if not await asyncio.to_thread(adapter.is_connected):
            return False
        return not self.get_config().encryption_enabled or self.has_passphrase()

    async def disconnect(self) -> None:
        """Forget provider, passphrase and config. Remote data is kept."""
        adapter = self._adapter
        if adapter is not None:
            try:
                await asyncio.to_thread(adapter.disconnect)
            except (SyncError, OSError) as exc:
                logger.warning("Provider disconnect failed: %s", exc)
        self._adapter = None
        self._passphrase = None
        self._keys.clear()
        self._save_config(SyncConfig())
        self._status = SyncStatus()
        logger.info("Sync disconnected")
        self._emit(SyncEventKind.PROVIDER_DISCONNECTED)
