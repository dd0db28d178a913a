"""
In-memory conversation history with write-through persistence.

The :class:`ConversationStore` is the single owner of the message list.
Every mutation is written to the backing :class:`~storage.ChatStorage`
immediately, but a storage failure never undoes or blocks the in-memory
change — for the running session memory is authoritative.
"""

import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterator

from .storage import ChatStorage

log = logging.getLogger("peerwave_chat")

#: Number of most-recent messages sent upstream with every request.
CONTEXT_WINDOW: int = 20

VALID_ROLES: tuple[str, ...] = ("user", "assistant", "system")

_STORAGE_ERRORS = (sqlite3.Error, OSError, ValueError)


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Message:
    """A single chat message.

    ``model`` is only set on assistant messages and only when the service
    reported which model answered.
    """

    role: str
    content: str
    model: str | None = None
    id: str = field(default_factory=_new_id)
    timestamp: str = field(default_factory=_now)

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.model is not None:
            data["model"] = self.model
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        """Build a message from its stored form.

        Raises :exc:`ValueError` for entries that are not usable messages.
        """
        if not isinstance(data, dict):
            raise ValueError(f"message entry is a {type(data).__name__}")
        role = data.get("role")
        content = data.get("content")
        if role not in VALID_ROLES:
            raise ValueError(f"unknown message role: {role!r}")
        if not isinstance(content, str):
            raise ValueError("message content must be a string")
        return cls(
            role=role,
            content=content,
            model=data.get("model"),
            id=str(data.get("id") or _new_id()),
            timestamp=str(data.get("timestamp") or _now()),
        )

    def to_api(self) -> dict:
        """Return the ``{"role", "content"}`` pair sent to the service."""
        return {"role": self.role, "content": self.content}


class ConversationStore:
    """Ordered message history for one conversation."""

    def __init__(self, storage: ChatStorage) -> None:
        self._storage = storage
        self._messages: list[Message] = []

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def last(self) -> Message | None:
        return self._messages[-1] if self._messages else None

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    def has_pending_user_turn(self) -> bool:
        """True when the conversation ends with an unanswered user message."""
        return self.last is not None and self.last.role == "user"

    def window_for_request(self, n: int = CONTEXT_WINDOW) -> list[Message]:
        """Return the *n* most recent messages, oldest first."""
        if n <= 0:
            return []
        return self._messages[-n:]

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def append(self, message: Message) -> Message:
        """Add *message* to the tail and persist."""
        self._messages.append(message)
        self._persist()
        return message

    def add_user_message(self, text: str) -> Message:
        return self.append(Message(role="user", content=text))

    def add_assistant_message(self, text: str,
                              model: str | None = None) -> Message:
        return self.append(
            Message(role="assistant", content=text, model=model or None),
        )

    def rollback_last_if_role(self, role: str) -> Message | None:
        """Remove and return the tail message iff its role is *role*."""
        if not self._messages or self._messages[-1].role != role:
            return None
        removed = self._messages.pop()
        log.info("[STORE] Rolled back trailing %s message %s",
                 role, removed.id)
        self._persist()
        return removed

    def clear(self) -> None:
        """Empty the conversation and the backing store."""
        self._messages = []
        try:
            self._storage.remove()
        except _STORAGE_ERRORS as exc:
            log.warning("[STORE] Failed to clear stored conversation: %s", exc)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> list[Message]:
        """Restore the conversation from storage.

        Absent or corrupt stored data yields an empty conversation.
        """
        try:
            entries = self._storage.restore()
            self._messages = [Message.from_dict(e) for e in entries]
        except _STORAGE_ERRORS as exc:
            log.warning(
                "[STORE] Failed to load conversation, starting empty: %s", exc,
            )
            self._messages = []
        log.debug("[STORE] Loaded %d message(s)", len(self._messages))
        return self.messages

    def save(self) -> None:
        """Write the current conversation to storage."""
        self._persist()

    def _persist(self) -> None:
        try:
            self._storage.persist([m.to_dict() for m in self._messages])
        except _STORAGE_ERRORS as exc:
            log.warning("[STORE] Failed to save conversation: %s", exc)
