"""Stream Decoder: server-push event streams (SSE ``data:`` lines or NDJSON).

Decoding is best-effort: a payload that is not valid JSON is dropped and
decoding continues. ``data: [DONE]`` ends the stream immediately, even if
more complete lines are already buffered.
"""

from __future__ import annotations

import codecs
import json
import logging
import re
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

from httpgate.client.errors import ParseError

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"

_LINE_BREAK = re.compile(r"\r?\n")


def parse_partial_json(text: str) -> Any | None:
    """Parse ``text`` as JSON, returning ``None`` when it is not (yet) valid."""
    try:
        return json.loads(text)
    except ValueError:
        return None


class StreamDecoder:
    """Incremental line decoder.

    ``feed`` takes raw chunks and returns the events completed by them;
    ``finish`` flushes the trailing fragment. Once the sentinel is seen
    ``done`` is set and all further input is ignored.

    Usage:
        decoder = StreamDecoder()
        for chunk in chunks:
            events.extend(decoder.feed(chunk))
            if decoder.done:
                break
        events.extend(decoder.finish())
    """

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""
        self.done = False

    def feed(self, chunk: bytes | str) -> list[Any]:
        if self.done:
            return []
        text = chunk if isinstance(chunk, str) else self._decoder.decode(chunk)
        self._buffer += text

        lines = _LINE_BREAK.split(self._buffer)
        # The last fragment may be an incomplete line
        self._buffer = lines.pop()

        events: list[Any] = []
        for line in lines:
            self._handle_line(line, events)
            if self.done:
                self._buffer = ""
                break
        return events

    def finish(self) -> list[Any]:
        """Flush the decoder and give the residual buffer one final parse."""
        if self.done:
            return []
        self._buffer += self._decoder.decode(b"", final=True)
        residual, self._buffer = self._buffer, ""

        events: list[Any] = []
        for line in _LINE_BREAK.split(residual):
            self._handle_line(line, events)
            if self.done:
                break
        self.done = True
        return events

    def _handle_line(self, line: str, events: list[Any]) -> None:
        payload = line.strip()
        if not payload:
            return

        if payload.startswith(DATA_PREFIX):
            payload = payload[len(DATA_PREFIX) :].lstrip()
            if payload == DONE_SENTINEL:
                self.done = True
                return

        try:
            events.append(json.loads(payload))
        except ValueError as exc:
            error = ParseError(f"Dropping unparseable stream payload: {exc}")
            logger.debug("%s (%r)", error, payload[:200])


async def decode_stream(source: AsyncIterable[bytes | str], encoding: str = "utf-8") -> AsyncIterator[Any]:
    """Lazily decode ``source`` into parsed events.

    The sequence ends when the source is exhausted or the sentinel arrives.
    The source is closed on every exit path, including when the consumer
    stops iterating early.

    Usage:
        async for event in decode_stream(response.body):
            handle(event)
    """
    decoder = StreamDecoder(encoding)
    iterator = source.__aiter__()
    try:
        async for chunk in iterator:
            for event in decoder.feed(chunk):
                yield event
            if decoder.done:
                return
        for event in decoder.finish():
            yield event
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()
