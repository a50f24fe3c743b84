"""Shared utilities for the CLI command modules.

Provides the Rich console, logging setup, orchestrator wiring and
status formatting.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console

from ..errors import SyncError
from ..local import JsonSnapshotStore
from ..models import RemoteState, SyncState
from ..orchestrator import SyncOrchestrator
from ..providers import ProviderAdapter, create_adapter
from ..store import ConfigStore, SecretsStore

console = Console()

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


def setup_logging(verbose: bool) -> None:
    """Send log records to stderr; DEBUG with --verbose."""
    logging.basicConfig(format=LOG_FORMAT)
    logging.getLogger("flowsync").setLevel(
        logging.DEBUG if verbose else logging.WARNING
    )


def status_icon(state: SyncState) -> str:
    """Map sync state to a Rich-formatted indicator."""
    return {
        SyncState.IDLE: "[bold green]IDLE[/]",
        SyncState.SYNCING: "[bold cyan]SYNCING[/]",
        SyncState.ERROR: "[bold red]ERROR[/]",
        SyncState.DISABLED: "[dim]DISABLED[/]",
    }.get(state, "[dim]UNKNOWN[/]")


class Context:
    """Everything a command needs, built from one home directory."""

    def __init__(self, home: str, **adapter_kwargs):
        self.home = Path(home).expanduser()
        self.config_store = ConfigStore(self.home)
        self.secrets = SecretsStore(self.home)
        self.local = JsonSnapshotStore(self.home)
        self.orchestrator = SyncOrchestrator(self.local, self.config_store)
        try:
            self.adapter: Optional[ProviderAdapter] = create_adapter(
                self.orchestrator.get_config(), self.secrets, **adapter_kwargs
            )
        except SyncError as exc:
            fail(exc)
        self.orchestrator.set_provider(self.adapter)
        self.orchestrator.initialize()


def run(coro):
    """Run a coroutine, turning sync errors into a red message and exit 1."""
    try:
        return asyncio.run(coro)
    except SyncError as exc:
        fail(exc)


def fail(exc: SyncError) -> None:
    console.print(f"\n  [bold red]Sync failed ({exc.kind}):[/] {exc.message}\n")
    sys.exit(1)


def prompt_passphrase(confirm: bool) -> str:
    """Hidden passphrase prompt."""
    return click.prompt(
        "  Passphrase", hide_input=True, confirmation_prompt=confirm
    )


async def configure_adapter(
    orchestrator: SyncOrchestrator, adapter: ProviderAdapter, encrypt: bool
):
    """Configure sync on a freshly connected adapter.

    An already-encrypted remote always asks for its passphrase.
    """
    remote: RemoteState = await orchestrator.check_remote_state(adapter)
    if remote.encrypted:
        console.print("  Remote sync data is [yellow]encrypted[/].")
        encrypt = True
    if encrypt:
        passphrase = prompt_passphrase(confirm=not remote.encrypted)
        return await orchestrator.configure(adapter, passphrase)
    return await orchestrator.configure_without_encryption(adapter)
