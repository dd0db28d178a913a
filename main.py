"""
Peerwave Chat — entry point.

Run with:
    python main.py
"""

import logging
import os
import sys

# Require Python 3.10+ for the union-type hints used throughout the package.
if sys.version_info < (3, 10):
    sys.exit(
        "Python 3.10 or later is required.\n"
        f"You are running Python {sys.version_info.major}.{sys.version_info.minor}."
    )

# ---------------------------------------------------------------------------
# Logging — set PEERWAVE_LOG_LEVEL=DEBUG to see request and stream details.
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=os.environ.get("PEERWAVE_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s  %(message)s",
    datefmt="%H:%M:%S",
)

from peerwave_chat.app import PeerwaveChatApp  # noqa: E402


def main() -> None:
    app = PeerwaveChatApp()
    app.run()


if __name__ == "__main__":
    main()
