"""
Bounded exponential-backoff retry around :class:`ChatStreamClient`.

The user message is appended optimistically before the first attempt.  If
every attempt fails it is rolled back, so the stored conversation never
keeps a turn that was never answered.  An authentication redirect is not a
failure: the user message stays so the exchange can be resumed once the
user has signed in.
"""

import logging
import threading
import time
from typing import Callable, Protocol

from .auth import CredentialHolder
from .conversation import CONTEXT_WINDOW, ConversationStore
from .peerwave_api import (
    DEFAULT_REDIRECT_PATH,
    AuthRedirect,
    Cancelled,
    ChatStreamClient,
    Completed,
    RequestContext,
)

log = logging.getLogger("peerwave_chat")

MAX_ATTEMPTS: int = 3

#: Delay before the second attempt, in seconds; doubles on every retry.
BASE_DELAY: float = 1.0


class ChatView(Protocol):
    """What the core needs from the user interface."""

    def render_partial(self, text: str, model: str | None) -> None:
        ...

    def report_status(self, message: str) -> None:
        ...

    def navigate_for_auth(self, target: str) -> None:
        ...


def backoff_delay(attempt: int, base_delay: float = BASE_DELAY) -> float:
    """Seconds to wait after failed attempt number *attempt* (1-based)."""
    return base_delay * 2 ** (attempt - 1)


class RetryCoordinator:
    """Sends the pending conversation turn, retrying transient failures."""

    def __init__(
        self,
        store: ConversationStore,
        client: ChatStreamClient,
        credentials: CredentialHolder,
        view: ChatView,
        *,
        max_attempts: int = MAX_ATTEMPTS,
        base_delay: float = BASE_DELAY,
        window: int = CONTEXT_WINDOW,
        redirect_path: str = DEFAULT_REDIRECT_PATH,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._store = store
        self._client = client
        self._credentials = credentials
        self._view = view
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._window = window
        self._redirect_path = redirect_path
        self._sleep = sleep

    def submit(self, text: str,
               cancel: threading.Event | None = None) -> bool:
        """Append *text* as a user message and send it."""
        text = text.strip()
        if not text:
            return False
        self._store.add_user_message(text)
        return self.send(cancel=cancel)

    def resume_pending(self, cancel: threading.Event | None = None) -> bool:
        """Re-send an unanswered user turn left over from a previous session.

        Only done once a credential is held, i.e. after the user came back
        from authenticating.
        """
        if not self._credentials.token or not self._store.has_pending_user_turn():
            return False
        log.info("[RETRY] Resuming pending user message %s",
                 self._store.last.id)
        return self.send(cancel=cancel)

    def send(
        self,
        max_attempts: int | None = None,
        base_delay: float | None = None,
        cancel: threading.Event | None = None,
    ) -> bool:
        """Run exchanges until one completes, redirects, or attempts run out."""
        max_attempts = max_attempts or self._max_attempts
        base_delay = self._base_delay if base_delay is None else base_delay

        for attempt in range(1, max_attempts + 1):
            # Rebuilt every attempt so a freshly acquired token is used.
            context = RequestContext.build(
                self._store, self._credentials,
                window=self._window, redirect_path=self._redirect_path,
            )
            log.debug("[RETRY] Attempt %d of %d", attempt, max_attempts)
            outcome = self._client.run(
                context,
                on_partial=self._view.render_partial,
                on_status=self._view.report_status,
                cancel=cancel,
            )

            if isinstance(outcome, Completed):
                self._store.add_assistant_message(outcome.text, outcome.model)
                return True

            if isinstance(outcome, AuthRedirect):
                self._view.report_status("Redirecting to authenticate...")
                self._view.navigate_for_auth(outcome.target)
                return True

            if isinstance(outcome, Cancelled):
                return self._abandon("Request cancelled")

            # Anything else is a Failed outcome.
            log.warning("[RETRY] Attempt %d of %d failed (%s): %s",
                        attempt, max_attempts, outcome.kind, outcome.reason)
            if attempt == max_attempts:
                return self._abandon(f"Error: {outcome.reason}")

            delay = backoff_delay(attempt, base_delay)
            self._view.report_status(
                f"Request failed, retrying in {delay:g}s "
                f"(attempt {attempt + 1} of {max_attempts})…"
            )
            if self._wait(delay, cancel):
                return self._abandon("Request cancelled")

        return False

    def _wait(self, delay: float, cancel: threading.Event | None) -> bool:
        """Sleep for *delay* seconds; return True if cancelled meanwhile."""
        if self._sleep is not None:
            self._sleep(delay)
        elif cancel is not None:
            cancel.wait(delay)
        else:
            time.sleep(delay)
        return cancel is not None and cancel.is_set()

    def _abandon(self, status: str) -> bool:
        self._store.rollback_last_if_role("user")
        self._view.report_status(status)
        return False
