"""
Central path configuration for Peerwave Chat.

All persistent files (conversation database, saved token) live under the
``Asset/`` folder next to ``main.py`` unless ``PEERWAVE_CHAT_HOME`` points
somewhere else.

Usage in other modules::

    from .paths import ASSET_DIR, asset_path
    MY_FILE = asset_path("my_file.json")
"""

import os

# Project root = the directory that contains main.py
# This file lives in peerwave_chat/, so we go one level up.
_PROJECT_ROOT: str = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

#: Absolute path to the asset folder.  Created on first import.
ASSET_DIR: str = os.environ.get("PEERWAVE_CHAT_HOME") or os.path.join(
    _PROJECT_ROOT, "Asset",
)
os.makedirs(ASSET_DIR, exist_ok=True)


def asset_path(filename: str) -> str:
    """Return the absolute path for *filename* inside the asset folder."""
    return os.path.join(ASSET_DIR, filename)
