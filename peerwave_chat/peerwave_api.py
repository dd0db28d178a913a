"""
Peerwave chat streaming client.

One :meth:`ChatStreamClient.run` call is one request/response exchange:
POST the bounded history window to ``/api/chat/stream``, read the
newline-delimited JSON body as it arrives, and report the incrementally
growing assistant text to the caller.  The result is a tagged outcome
(:class:`Completed`, :class:`AuthRedirect`, :class:`Failed` or
:class:`Cancelled`) rather than an exception, so the retry layer never has
to inspect exception types to tell "please sign in" apart from a failure.
"""

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterator, Union

import requests

from .auth import CredentialHolder
from .conversation import CONTEXT_WINDOW, ConversationStore, Message
from .stream_decoder import ContentDelta, Malformed, StreamDecoder, UsageFinal

log = logging.getLogger("peerwave_chat")


# ---------------------------------------------------------------------------
# Error-handling helpers
# ---------------------------------------------------------------------------

class PeerwaveAPIError(Exception):
    """Rich API error that preserves diagnostic context for debugging.

    Attributes
    ----------
    status_code : int | None
        HTTP status code (``None`` for non-HTTP errors).
    endpoint : str
        The URL that was called.
    model : str
        Model identifier sent in the request.
    response_body : str
        First 500 chars of the response body (often contains the real error).
    payload_summary : dict | None
        Summarised payload (keys + a few values) for reproducing the issue.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
        model: str = "",
        response_body: str = "",
        payload_summary: dict | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.endpoint = endpoint
        self.model = model
        self.response_body = response_body
        self.payload_summary = payload_summary

    def __str__(self) -> str:  # noqa: D105
        parts = [super().__str__()]
        if self.status_code is not None:
            parts.append(f"  HTTP {self.status_code}")
        if self.endpoint:
            parts.append(f"  Endpoint: {self.endpoint}")
        if self.model:
            parts.append(f"  Model: {self.model}")
        if self.response_body:
            parts.append(f"  Response: {self.response_body[:500]}")
        if self.payload_summary:
            parts.append(f"  Payload: {self.payload_summary}")
        return "\n".join(parts)


def _read_error_body(response: requests.Response) -> str | None:
    """Return the body of an error response, or ``None`` if it broke off."""
    try:
        return response.text
    except requests.RequestException as exc:
        log.warning("[API] Could not read error body (HTTP %d): %s: %s",
                    response.status_code, type(exc).__name__, exc)
        return None


def _extract_error_detail(body: str | None) -> str:
    """Extract a human-readable error description from an error body.

    Tries to parse a JSON body (``{"error": ...}`` or ``{"message": ...}``)
    and falls back to the raw text (truncated to 500 chars).
    """
    if body is None:
        return "(unreadable body)"
    try:
        data = json.loads(body)
    except ValueError:
        return body[:500] if body else "(empty body)"
    if isinstance(data, dict):
        err = data.get("error") or data.get("message")
        if isinstance(err, dict):
            return str(err.get("message", err))
        if err:
            return str(err)
    return body[:500]


def _summarise_payload(payload: dict) -> dict:
    """Return a compact summary of a request payload for diagnostics."""
    summary = {}
    for k, v in payload.items():
        if k == "messages":
            summary["messages"] = f"[{len(v)} messages]"
        else:
            summary[k] = v
    return summary


API_URL: str = os.environ.get("PEERWAVE_API_URL", "https://api.peerwave.ai")
CHAT_STREAM_PATH = "/api/chat/stream"

#: Model alias sent with every request; the service picks the cheapest model.
DEFAULT_MODEL: str = os.environ.get("PEERWAVE_MODEL", "cheapest")

#: Path the service sends the browser back to after authentication.
DEFAULT_REDIRECT_PATH: str = os.environ.get("PEERWAVE_REDIRECT_PATH", "/")

#: (connect, read) timeouts in seconds.
REQUEST_TIMEOUT: tuple[float, float] = (10, 120)


# ---------------------------------------------------------------------------
# Request context & outcomes
# ---------------------------------------------------------------------------

@dataclass
class RequestContext:
    """Everything one attempt needs; rebuilt fresh for every attempt."""

    history_window: list[Message]
    credential: str | None = None
    redirect_path: str = DEFAULT_REDIRECT_PATH

    @classmethod
    def build(
        cls,
        store: ConversationStore,
        credentials: CredentialHolder | None = None,
        *,
        window: int = CONTEXT_WINDOW,
        redirect_path: str = DEFAULT_REDIRECT_PATH,
    ) -> "RequestContext":
        return cls(
            history_window=store.window_for_request(window),
            credential=credentials.token if credentials is not None else None,
            redirect_path=redirect_path,
        )


@dataclass(frozen=True)
class Completed:
    text: str
    model: str | None = None


@dataclass(frozen=True)
class AuthRedirect:
    target: str


@dataclass(frozen=True)
class Failed:
    """``kind`` is ``"network"`` or ``"server"``.

    Server failures carry the full :class:`PeerwaveAPIError` in ``error``.
    """

    reason: str
    kind: str = "network"
    error: PeerwaveAPIError | None = field(default=None, compare=False)

    @property
    def status_code(self) -> int | None:
        return self.error.status_code if self.error is not None else None


@dataclass(frozen=True)
class Cancelled:
    pass


Outcome = Union[Completed, AuthRedirect, Failed, Cancelled]

PartialCallback = Callable[[str, "str | None"], None]
StatusCallback = Callable[[str], None]


def build_payload(history: list[Message], model: str = DEFAULT_MODEL) -> dict:
    """Build the JSON body: model alias plus role/content pairs only."""
    return {
        "model": model,
        "messages": [m.to_api() for m in history],
    }


def build_headers(context: RequestContext) -> dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "Redirect": context.redirect_path or "/",
    }
    if context.credential:
        headers["Authorization"] = context.credential
    return headers


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class ChatStreamClient:
    """Runs single streaming exchanges against the Peerwave chat endpoint."""

    def __init__(
        self,
        api_url: str = API_URL,
        *,
        model: str = DEFAULT_MODEL,
        session: requests.Session | None = None,
        timeout: tuple[float, float] = REQUEST_TIMEOUT,
    ) -> None:
        self._url = api_url.rstrip("/") + CHAT_STREAM_PATH
        self._model = model
        self._http = session or requests.Session()
        self._timeout = timeout

    @property
    def url(self) -> str:
        return self._url

    def run(
        self,
        context: RequestContext,
        on_partial: PartialCallback | None = None,
        on_status: StatusCallback | None = None,
        cancel: threading.Event | None = None,
    ) -> Outcome:
        """Perform one exchange and classify how it ended."""
        if cancel is not None and cancel.is_set():
            return Cancelled()

        payload = build_payload(context.history_window, self._model)
        headers = build_headers(context)

        log.debug("[API] ── Sending chat request ──")
        log.debug("[API]   url = %s  |  model = %s  |  authorised = %s",
                  self._url, self._model, "Authorization" in headers)
        log.debug("[API]   message count = %d", len(payload["messages"]))

        try:
            response = self._http.post(
                self._url,
                headers=headers,
                json=payload,
                stream=True,
                timeout=self._timeout,
                allow_redirects=False,
            )
        except requests.RequestException as exc:
            log.warning("[API] Request to %s failed: %s: %s",
                        self._url, type(exc).__name__, exc)
            return Failed(f"Network error: {exc}", kind="network")

        with response:
            status = response.status_code
            log.debug("[API] POST %s → %d", self._url, status)

            if not 200 <= status < 300:
                location = response.headers.get("Location")
                if location:
                    log.info("[API] HTTP %d asks for authentication at %s",
                             status, location)
                    return AuthRedirect(location)

                body = _read_error_body(response)
                reason = (
                    f"Chat request failed: {status} - "
                    f"{_extract_error_detail(body)}"
                )
                error = PeerwaveAPIError(
                    reason,
                    status_code=status,
                    endpoint=self._url,
                    model=self._model,
                    response_body=(body or "")[:500],
                    payload_summary=_summarise_payload(payload),
                )
                log.error("[API] %s", error)
                return Failed(reason, kind="server", error=error)

            return self._consume(response, on_partial, on_status, cancel)

    def _consume(
        self,
        response: requests.Response,
        on_partial: PartialCallback | None,
        on_status: StatusCallback | None,
        cancel: threading.Event | None,
    ) -> Outcome:
        """Drive the decoder over the response body until end-of-data."""
        decoder = StreamDecoder()
        text = ""
        model: str | None = None
        chunks = self._iter_chunks(response, cancel)
        finished = threading.Event()
        if cancel is not None:
            threading.Thread(
                target=self._close_on_cancel,
                args=(response, cancel, finished),
                daemon=True,
            ).start()
        try:
            for event in decoder.iter_events(chunks):
                if cancel is not None and cancel.is_set():
                    break
                if isinstance(event, ContentDelta):
                    if event.model:
                        model = event.model
                    if event.text:
                        text += event.text
                        if on_partial is not None:
                            on_partial(text, model)
                elif isinstance(event, UsageFinal):
                    log.debug("[API] Credits used: %s", event.credits)
                    if on_status is not None:
                        on_status(f"Credits used: {event.credits}")
                elif isinstance(event, Malformed):
                    continue
        except Exception as exc:  # noqa: BLE001
            # The cancel watcher closing the response breaks a blocked read
            # with whatever error the transport raises.
            if cancel is not None and cancel.is_set():
                log.info("[API] Exchange cancelled after %d chars", len(text))
                return Cancelled()
            if not isinstance(exc, requests.RequestException):
                raise
            log.warning("[API] Stream interrupted after %d chars: %s: %s",
                        len(text), type(exc).__name__, exc)
            return Failed(f"Stream interrupted: {exc}", kind="network")
        finally:
            finished.set()

        if cancel is not None and cancel.is_set():
            log.info("[API] Exchange cancelled after %d chars", len(text))
            return Cancelled()

        if not text:
            log.warning(
                "[API] Stream ended with 0 text chunks. "
                "The model may have returned an empty response.",
            )
        return Completed(text, model)

    @staticmethod
    def _iter_chunks(
        response: requests.Response,
        cancel: threading.Event | None,
    ) -> Iterator[bytes]:
        for chunk in response.iter_content(chunk_size=None):
            if cancel is not None and cancel.is_set():
                return
            yield chunk

    @staticmethod
    def _close_on_cancel(
        response: requests.Response,
        cancel: threading.Event,
        finished: threading.Event,
    ) -> None:
        """Close *response* as soon as *cancel* is set, unblocking its read."""
        while not finished.wait(0.05):
            if cancel.is_set():
                log.debug("[API] Cancel requested; closing response")
                response.close()
                return
