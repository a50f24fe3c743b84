"""
FlowSync — cross-device sync engine for FlowReader.

Reading history, positions, settings, themes and presets travel
between devices as a single snapshot file in storage the reader
already owns: a synced folder, Dropbox, or OneDrive.

The passphrase never touches disk. The remote never sees plaintext
unless the reader chose an unencrypted folder.
"""

import os

__version__ = "0.1.0"
__author__ = "FlowReader"

SYNC_HOME = os.environ.get("FLOWSYNC_HOME", "~/.flowsync")
