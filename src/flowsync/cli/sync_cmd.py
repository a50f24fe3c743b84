"""Sync commands: status, connect-folder, connect-cloud, sync, check, disconnect."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import click
from rich.panel import Panel

from .. import SYNC_HOME
from ..models import CloudBackend, SyncAction, SyncResult
from ..providers import CloudOAuthAdapter, LocalDirectoryAdapter, SYNC_FILE_NAME
from ..providers.cloud import client_id_from_env
from ._common import Context, configure_adapter, console, prompt_passphrase, run, status_icon


def _print_result(result: SyncResult) -> None:
    if result.action == SyncAction.SKIPPED:
        console.print("  [yellow]Sync already in progress.[/]\n")
        return
    console.print(
        f"  [green]Sync complete[/] ({result.action.value}"
        f", {result.conflicts} conflict(s))\n"
    )


def _terminal_browser_flow(url: str) -> Optional[str]:
    """Open the consent page and read back the redirect URL."""
    console.print(f"\n  Open this URL to authorize FlowReader:\n  [cyan]{url}[/]\n")
    click.launch(url)
    redirect = click.prompt(
        "  Paste the redirect URL (empty to cancel)",
        default="",
        show_default=False,
    )
    return redirect.strip() or None


def register_sync_commands(main: click.Group) -> None:
    """Register the sync commands."""

    @main.command("status")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    def status(home):
        """Show sync configuration and the last outcome."""
        ctx = Context(home)
        config = ctx.orchestrator.get_config()
        st = ctx.orchestrator.get_status()

        provider = ctx.adapter.name if ctx.adapter else "[yellow]none[/]"
        encryption = (
            "[green]on[/]" if config.encryption_enabled else "[yellow]off[/]"
        )
        console.print()
        console.print(
            Panel(
                f"Status: {status_icon(st.state)}\n"
                f"Provider: [cyan]{provider}[/]\n"
                f"Encryption: {encryption}\n"
                f"Last Sync: {config.last_sync_time or '[dim]never[/]'}\n"
                f"Last Error: {config.last_sync_error or '[dim]none[/]'}\n"
                f"Remote File: {SYNC_FILE_NAME}",
                title="FlowReader Sync",
                border_style="cyan",
            )
        )
        console.print()

    @main.command("connect-folder")
    @click.argument("path", type=click.Path(file_okay=False, path_type=Path))
    @click.option("--encrypt", is_flag=True, help="Encrypt with a passphrase.")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    def connect_folder(path, encrypt, home):
        """Sync through a folder (iCloud Drive, Google Drive, a USB stick...)."""
        ctx = Context(home)
        adapter = LocalDirectoryAdapter(ctx.secrets, picker=lambda: path)

        async def _connect():
            adapter.connect()
            return await configure_adapter(ctx.orchestrator, adapter, encrypt)

        console.print(f"\n  Connecting folder [cyan]{path}[/]...")
        _print_result(run(_connect()))

    @main.command("connect-cloud")
    @click.argument(
        "backend", type=click.Choice([b.value for b in CloudBackend])
    )
    @click.option("--client-id", default=None, help="OAuth client id / app key.")
    @click.option("--encrypt", is_flag=True, help="Encrypt with a passphrase.")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    def connect_cloud(backend, client_id, encrypt, home):
        """Sync through Dropbox or OneDrive."""
        ctx = Context(home)
        backend = CloudBackend(backend)
        adapter = CloudOAuthAdapter(
            backend,
            ctx.secrets,
            client_id=client_id or client_id_from_env(backend),
            browser_flow=_terminal_browser_flow,
        )

        async def _connect():
            adapter.connect()
            return await configure_adapter(ctx.orchestrator, adapter, encrypt)

        _print_result(run(_connect()))

    @main.command("sync")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    def sync(home):
        """Merge this device with the remote copy now."""
        ctx = Context(home)
        orchestrator = ctx.orchestrator

        async def _sync():
            if orchestrator.get_config().encryption_enabled:
                await orchestrator.set_passphrase(prompt_passphrase(confirm=False))
            return await orchestrator.sync_now()

        console.print("\n  Syncing...")
        _print_result(run(_sync()))

    @main.command("check")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    def check(home):
        """Report whether a remote copy exists and is encrypted."""
        ctx = Context(home)
        if ctx.adapter is None:
            console.print("\n  [yellow]No sync provider configured.[/]\n")
            raise SystemExit(1)

        remote = run(ctx.orchestrator.check_remote_state(ctx.adapter))
        if not remote.exists:
            console.print("\n  No remote copy yet.\n")
        elif remote.encrypted:
            console.print("\n  Remote copy exists and is [green]encrypted[/].\n")
        else:
            console.print("\n  Remote copy exists and is [yellow]not encrypted[/].\n")

    @main.command("disconnect")
    @click.option("--home", default=SYNC_HOME, type=click.Path())
    def disconnect(home):
        """Stop syncing on this device. Remote data is kept."""
        ctx = Context(home)
        run(ctx.orchestrator.disconnect())
        console.print("\n  [green]Disconnected.[/] Remote data was left in place.\n")
