"""Turns raw output chunks into tagged log lines."""

import asyncio
import codecs
import re
from typing import AsyncIterator

from ..models import LogEvent, StreamTag

ANSI_ESCAPE_PATTERN = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")

READ_CHUNK_SIZE = 4096


def clean_line(line: str) -> str:
    return ANSI_ESCAPE_PATTERN.sub("", line).rstrip("\r")


class LineSplitter:
    """Incremental splitter for a single output stream.

    Chunks rarely end on a line boundary, so the trailing partial line is
    kept until the next chunk (or ``flush``) completes it.
    """

    def __init__(self, stream: StreamTag, encoding: str = "utf-8"):
        self.stream = stream
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes | str) -> list[LogEvent]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        data = self._pending + chunk
        *lines, self._pending = data.split("\n")
        return [self._event(line) for line in lines]

    def flush(self) -> list[LogEvent]:
        self._pending += self._decoder.decode(b"", final=True)
        if not self._pending:
            return []
        line, self._pending = self._pending, ""
        return [self._event(line)]

    def _event(self, line: str) -> LogEvent:
        return LogEvent(stream=self.stream, text=clean_line(line))


async def read_lines(
    reader: asyncio.StreamReader, stream: StreamTag
) -> AsyncIterator[LogEvent]:
    """Yield lines from a subprocess pipe until EOF."""
    splitter = LineSplitter(stream)
    while True:
        chunk = await reader.read(READ_CHUNK_SIZE)
        if not chunk:
            break
        for event in splitter.feed(chunk):
            yield event
    for event in splitter.flush():
        yield event


async def merge_streams(
    stdout: asyncio.StreamReader | None, stderr: asyncio.StreamReader | None
) -> AsyncIterator[LogEvent]:
    """Interleave stdout and stderr lines as they arrive.

    Order is kept within each stream only.
    """
    queue: asyncio.Queue[LogEvent | None] = asyncio.Queue()

    async def pump(reader: asyncio.StreamReader, stream: StreamTag) -> None:
        try:
            async for event in read_lines(reader, stream):
                await queue.put(event)
        finally:
            await queue.put(None)

    readers = [
        (reader, stream)
        for reader, stream in ((stdout, StreamTag.STDOUT), (stderr, StreamTag.STDERR))
        if reader is not None
    ]
    tasks = [asyncio.create_task(pump(reader, stream)) for reader, stream in readers]
    remaining = len(tasks)
    try:
        while remaining:
            event = await queue.get()
            if event is None:
                remaining -= 1
                continue
            yield event
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
