"""
Persistent storage for the conversation using SQLite.

The whole conversation is kept as a single JSON document in a small
key/value table inside ``Asset/peerwave_chat.db``, stored under the fixed
key :data:`STORAGE_KEY`.  Serialisation is deterministic so that loading
and re-saving an unchanged conversation writes byte-identical data.
"""

import json
import logging
import sqlite3

from .paths import asset_path

log = logging.getLogger("peerwave_chat")

DB_PATH = asset_path("peerwave_chat.db")

#: Key under which the conversation document is stored.
STORAGE_KEY = "peerwave-chat-messages"


def dump_messages(messages: list[dict]) -> str:
    """Serialise *messages* to the stored JSON form."""
    return json.dumps(messages, ensure_ascii=False, separators=(",", ":"))


class ChatStorage:
    """Key/value document store backed by SQLite."""

    def __init__(self, db_path: str | None = None,
                 key: str = STORAGE_KEY) -> None:
        self._db_path = db_path or DB_PATH
        self._key = key
        self._conn: sqlite3.Connection = sqlite3.connect(
            self._db_path, check_same_thread=False,
        )
        if self._db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _create_tables(self) -> None:
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS meta (
                key   TEXT PRIMARY KEY,
                value TEXT
            );
        """)
        self._conn.commit()

    # ------------------------------------------------------------------
    # Raw access
    # ------------------------------------------------------------------

    def read_raw(self) -> str | None:
        """Return the stored document exactly as written, or ``None``."""
        row = self._conn.execute(
            "SELECT value FROM meta WHERE key=?", (self._key,),
        ).fetchone()
        return row[0] if row else None

    def write_raw(self, value: str) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)",
            (self._key, value),
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Document round-trip
    # ------------------------------------------------------------------

    def persist(self, messages: list[dict]) -> None:
        """Replace the stored conversation with *messages*."""
        self.write_raw(dump_messages(messages))
        log.debug("[STORE] Persisted %d message(s) under %r",
                  len(messages), self._key)

    def restore(self) -> list[dict]:
        """Return the stored conversation, or ``[]`` when nothing is stored.

        Raises
        ------
        ValueError
            When the stored document is not valid JSON or is not a list.
        """
        raw = self.read_raw()
        if raw is None:
            return []
        data = json.loads(raw)
        if not isinstance(data, list):
            raise ValueError(
                f"Stored conversation is a {type(data).__name__}, expected a list",
            )
        return data

    def remove(self) -> None:
        """Delete the stored conversation."""
        self._conn.execute("DELETE FROM meta WHERE key=?", (self._key,))
        self._conn.commit()

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
