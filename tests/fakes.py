"""Test doubles shared by the client and retry tests.

No test talks to the network: :class:`FakeSession` replays scripted
responses (or raises scripted exceptions) for successive ``post`` calls.
"""

import json
import threading


class FakeResponse:
    """Minimal stand-in for a streamed :class:`requests.Response`.

    ``body_error`` makes reading ``text`` raise, like a connection that
    drops while an error body is being read.
    """

    def __init__(self, status_code: int = 200, chunks=(), headers=None,
                 text: str = "", raise_after=None, body_error=None) -> None:
        self.status_code = status_code
        self.headers = headers or {}
        self._text = text
        self._chunks = list(chunks)
        self._raise_after = raise_after
        self._body_error = body_error
        self.closed = False

    @property
    def text(self) -> str:
        if self._body_error is not None:
            raise self._body_error
        return self._text

    def json(self):
        return json.loads(self.text)

    def iter_content(self, chunk_size=None):
        for chunk in self._chunks:
            yield chunk
        if self._raise_after is not None:
            raise self._raise_after

    def close(self) -> None:
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class StallingResponse(FakeResponse):
    """Sends its chunks, then blocks until closed (or *stall* seconds)."""

    def __init__(self, chunks=(), stall: float = 5.0) -> None:
        super().__init__(200, chunks=chunks)
        self._stall = stall
        self._released = threading.Event()

    def iter_content(self, chunk_size=None):
        yield from self._chunks
        self._released.wait(self._stall)
        if self.closed:
            raise ValueError("I/O operation on closed file")

    def close(self) -> None:
        super().close()
        self._released.set()


class FakeSession:
    """Returns (or raises) the scripted items in order, recording calls."""

    def __init__(self, *script) -> None:
        self._script = list(script)
        self.calls: list[dict] = []

    def post(self, url, **kwargs):
        self.calls.append({"url": url, **kwargs})
        item = self._script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


class RecordingView:
    """Collects everything the core reports to the UI."""

    def __init__(self) -> None:
        self.partials: list[tuple[str, str | None]] = []
        self.statuses: list[str] = []
        self.navigations: list[str] = []

    def render_partial(self, text, model) -> None:
        self.partials.append((text, model))

    def report_status(self, message) -> None:
        self.statuses.append(message)

    def navigate_for_auth(self, target) -> None:
        self.navigations.append(target)


def ok_stream(*records, raw_lines=()) -> FakeResponse:
    """A 200 response whose body is *records* as newline-delimited JSON."""
    lines = [json.dumps(r) for r in records] + list(raw_lines)
    body = "".join(line + "\n" for line in lines).encode("utf-8")
    return FakeResponse(200, chunks=[body])
