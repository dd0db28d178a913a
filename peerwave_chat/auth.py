"""
Credential handling for the Peerwave API.

Peerwave authenticates in the browser: when a request needs credits the
service answers with a ``Location`` header, the user signs in there and is
sent back with the access token in the URL fragment (``...#token=abc``).
This module only *holds* that opaque token:

  1. Pick it up from ``PEERWAVE_TOKEN`` or a pasted URL / raw token.
  2. Persist it to disk so subsequent launches start authenticated.
  3. Hand the current value to every request attempt.
"""

import json
import logging
import os
from urllib.parse import parse_qs, urlsplit

from .paths import asset_path

log = logging.getLogger("peerwave_chat")

# Where the token is cached between sessions.
TOKEN_FILE = asset_path("token.json")

TOKEN_ENV_VAR = "PEERWAVE_TOKEN"


def token_from_url(url: str) -> str | None:
    """Return the ``token`` parameter of *url*'s fragment, if any."""
    fragment = urlsplit(url.strip()).fragment
    if not fragment:
        return None
    values = parse_qs(fragment).get("token")
    return values[0] if values else None


def parse_token_input(text: str) -> str | None:
    """Accept either a redirect URL carrying ``#token=`` or a bare token."""
    text = text.strip()
    if not text:
        return None
    if "#" in text or "://" in text:
        return token_from_url(text)
    return text


class CredentialHolder:
    """Holds the current access token, optionally persisted to disk."""

    def __init__(self, token: str | None = None,
                 token_file: str | None = None) -> None:
        self._token = token or None
        self._token_file = token_file or TOKEN_FILE

    @property
    def token(self) -> str | None:
        return self._token

    def __bool__(self) -> bool:
        return self._token is not None

    def set(self, token: str, *, persist: bool = True) -> None:
        self._token = token
        log.debug("[AUTH] Credential set — len=%d  prefix=%s…",
                  len(token), token[:6])
        if persist:
            self.save()

    def clear(self) -> None:
        """Forget the token and remove it from disk."""
        self._token = None
        if os.path.exists(self._token_file):
            os.remove(self._token_file)

    # ------------------------------------------------------------------
    # Persistent token storage
    # ------------------------------------------------------------------

    def save(self) -> None:
        """Persist the token to disk."""
        with open(self._token_file, "w", encoding="utf-8") as fh:
            json.dump({"token": self._token}, fh)

    def load(self) -> str | None:
        """Load the token from the environment or disk.

        ``PEERWAVE_TOKEN`` wins over the saved file.  An unreadable token
        file is reported and ignored.
        """
        env_token = os.environ.get(TOKEN_ENV_VAR)
        if env_token:
            self._token = env_token
            return self._token
        if os.path.exists(self._token_file):
            try:
                with open(self._token_file, "r", encoding="utf-8") as fh:
                    data = json.load(fh)
            except (OSError, json.JSONDecodeError) as exc:
                log.warning("[AUTH] Ignoring unreadable token file %s: %s",
                            self._token_file, exc)
                return self._token
            if isinstance(data, dict) and data.get("token"):
                self._token = data["token"]
        return self._token
