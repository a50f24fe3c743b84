"""
FlowSync CLI -- FlowReader sync from the command line.

The main Click group is defined here; commands are registered from
their own modules.

Entry point: flowsync.cli:main
"""

from __future__ import annotations

import click

from .. import __version__
from ._common import setup_logging


@click.group()
@click.version_option(version=__version__, prog_name="flowsync")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging.")
def main(verbose):
    """FlowSync -- keep FlowReader in step across devices.

    Your reading history, positions and settings. Any folder or cloud drive.
    """
    setup_logging(verbose)


# ---------------------------------------------------------------------------
# Register commands from modular files
# ---------------------------------------------------------------------------

from .sync_cmd import register_sync_commands

register_sync_commands(main)
