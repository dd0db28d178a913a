"""
Incremental decoder for the Peerwave newline-delimited JSON stream.

The chat endpoint answers with one JSON record per line::

    {"message": {"content": "Hel"}, "model": "llama-3-8b"}
    {"message": {"content": "lo"}}
    {"Credits": 3}

Raw body chunks may split a line, or even a multi-byte UTF-8 character,
at any position.  :class:`StreamDecoder` keeps an incremental text decoder
and a line buffer so that only complete lines are ever parsed.
"""

import codecs
import json
import logging
from dataclasses import dataclass
from typing import Iterable, Iterator, Union

log = logging.getLogger("peerwave_chat")


@dataclass(frozen=True)
class ContentDelta:
    """A piece of assistant text (``model`` set when the record named one)."""

    text: str
    model: str | None = None


@dataclass(frozen=True)
class UsageFinal:
    """Credits charged for the exchange."""

    credits: float


@dataclass(frozen=True)
class Malformed:
    """A line that could not be understood; kept only for diagnostics."""

    raw: str


StreamEvent = Union[ContentDelta, UsageFinal, Malformed]


def parse_record(line: str) -> StreamEvent:
    """Map one complete, non-blank line to a :data:`StreamEvent`."""
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        log.warning("[STREAM] Failed to parse streaming record: %s",
                    line[:200])
        return Malformed(line)

    if not isinstance(data, dict):
        log.debug("[STREAM] Ignoring non-object record: %s", line[:200])
        return Malformed(line)

    if data.get("Credits") is not None:
        return UsageFinal(data["Credits"])

    model = data.get("model") if isinstance(data.get("model"), str) else None
    message = data.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if isinstance(content, str) or model:
        return ContentDelta(content if isinstance(content, str) else "", model)

    log.debug("[STREAM] Ignoring unrecognised record: %s", line[:200])
    return Malformed(line)


class StreamDecoder:
    """Turns raw byte chunks into :data:`StreamEvent` values."""

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""
        self._finished = False

    def feed(self, chunk: bytes) -> list[StreamEvent]:
        """Consume *chunk* and return the events of every line it completes."""
        if self._finished:
            raise RuntimeError("StreamDecoder already finished")
        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        return [parse_record(line) for line in lines if line.strip()]

    def finish(self) -> list[StreamEvent]:
        """Flush the decoder at end-of-data.

        A final line without a trailing newline is complete once the stream
        has ended, so it is parsed here.
        """
        if self._finished:
            return []
        self._finished = True
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return [parse_record(line) for line in tail.split("\n") if line.strip()]

    def iter_events(self, chunks: Iterable[bytes]) -> Iterator[StreamEvent]:
        """Lazily yield events for *chunks*, ending when the chunks do."""
        for chunk in chunks:
            if not chunk:
                continue
            yield from self.feed(chunk)
        yield from self.finish()
