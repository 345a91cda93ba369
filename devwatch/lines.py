"""Line framing and raw passthrough for subprocess output streams."""

from __future__ import annotations

import asyncio
import codecs
import logging
from collections.abc import Callable
from typing import TextIO

logger = logging.getLogger(__name__)

LineCallback = Callable[[str, str], None]

_CHUNK_SIZE = 4096


async def read_lines(stream: asyncio.StreamReader, callback: LineCallback) -> None:
    """Call ``callback(trimmed, original)`` for every newline-delimited line until EOF.

    *original* is the line without its ``"\\n"`` terminator; *trimmed* additionally
    has surrounding whitespace stripped. A trailing fragment without a newline is
    delivered once the stream closes.
    """
    while True:
        try:
            line_bytes = await stream.readline()
        except ValueError:
            # readline() has already discarded the over-long line.
            logger.warning("Dropped output line longer than the stream limit")
            continue
        if not line_bytes:
            return
        original = line_bytes.decode(errors="replace")
        if original.endswith("\n"):
            original = original[:-1]
        callback(original.strip(), original)


async def drain(stream: asyncio.StreamReader) -> None:
    """Consume and discard a stream so the child never blocks on a full pipe."""
    while await stream.read(_CHUNK_SIZE):
        pass


async def forward_stream(stream: asyncio.StreamReader, sink: TextIO) -> None:
    """Copy *stream* to *sink* chunk by chunk, flushing after each write."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = await stream.read(_CHUNK_SIZE)
        text = decoder.decode(chunk, final=not chunk)
        if text:
            sink.write(text)
            sink.flush()
        if not chunk:
            return
