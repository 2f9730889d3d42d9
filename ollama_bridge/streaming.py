"""
NDJSON stream decoding for Ollama's chunked responses.

Ollama streams one JSON object per line; chunk boundaries fall anywhere,
including mid-line and mid-UTF-8 sequence. The decoder buffers the partial
tail between reads.
"""

import asyncio
import codecs
import inspect
import json
import logging
import time
from typing import Any, AsyncGenerator, Awaitable, Optional, TypeVar

from ollama_bridge.errors import ErrorKind, OllamaAdapterError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Deadline:
    """
    Cancellation token for one adapter call.

    Started at submission; every suspension point awaits under the time
    remaining. Expiry surfaces as ErrorKind.TIMEOUT, not a transport error.
    """

    def __init__(self, seconds: float, endpoint: Optional[str] = None, model: Optional[str] = None):
        self.seconds = seconds
        self.endpoint = endpoint
        self.model = model
        self._started = time.monotonic()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self._started

    def remaining(self) -> float:
        return max(0.0, self.seconds - self.elapsed)

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    def timeout_error(self) -> OllamaAdapterError:
        return OllamaAdapterError(
            f"Request aborted after exceeding {self.seconds:.0f}s timeout",
            ErrorKind.TIMEOUT,
            endpoint=self.endpoint,
            model=self.model,
            elapsed_seconds=self.elapsed,
        )

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await under the remaining time; raise TIMEOUT on expiry."""
        if self.expired:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise self.timeout_error()
        try:
            return await asyncio.wait_for(awaitable, self.remaining())
        except asyncio.TimeoutError as e:
            raise self.timeout_error() from e


class NDJSONDecoder:
    """
    Incremental newline-delimited JSON decoder.

    feed() returns every complete record in the bytes seen so far; the
    trailing partial line stays buffered. Unparsable lines are skipped
    with a warning.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.skipped_lines = 0

    def feed(self, chunk: bytes) -> list[dict[str, Any]]:
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._parse_lines(lines)

    def flush(self) -> list[dict[str, Any]]:
        """Parse whatever remains at end of stream."""
        self._buffer += self._decoder.decode(b"", final=True)
        remainder, self._buffer = self._buffer, ""
        return self._parse_lines([remainder])

    def _parse_lines(self, lines: list[str]) -> list[dict[str, Any]]:
        records = []
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError as e:
                self.skipped_lines += 1
                logger.warning(f"Skipping malformed stream line ({e}): {line[:200]}")
                continue
            if not isinstance(record, dict):
                self.skipped_lines += 1
                logger.warning(f"Skipping non-object stream line: {line[:200]}")
                continue
            records.append(record)
        return records


async def _next_chunk(chunks) -> Optional[bytes]:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None


async def iter_ndjson_records(
    response,
    deadline: Optional[Deadline] = None,
) -> AsyncGenerator[dict[str, Any], None]:
    """
    Lazily yield parsed records from a streaming httpx response.

    Ends at end-of-stream or after the first record with `done: true`.
    The response is closed exactly once on every exit path, including
    deadline expiry and the consumer abandoning the generator.
    """
    decoder = NDJSONDecoder()
    chunks = response.aiter_bytes()
    try:
        while True:
            if deadline is not None:
                chunk = await deadline.run(_next_chunk(chunks))
            else:
                chunk = await _next_chunk(chunks)
            if chunk is None:
                break
            for record in decoder.feed(chunk):
                yield record
                if record.get("done"):
                    return

        for record in decoder.flush():
            yield record
            if record.get("done"):
                return
    finally:
        await response.aclose()
