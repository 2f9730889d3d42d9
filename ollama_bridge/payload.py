"""
Payload governor: keeps outbound requests under the size local runners survive.

Ollama runners were observed to crash (not slow down) once the serialized
request passed ~18-20 KB, well below the advertised context window. Context
window and crash threshold are independent; both must hold.

Truncation is lossy: recent content and structural lines
(working directory, dates, errors, commands) win over completeness.
"""

import json
import logging
from typing import Optional

from ollama_bridge.adapters.schema import BackendMessage, BackendMode, BackendRequest
from ollama_bridge.config import DEFAULT_MAX_PAYLOAD_BYTES
from ollama_bridge.errors import ErrorKind, OllamaAdapterError

logger = logging.getLogger(__name__)


TRUNCATION_MARKER = "[content truncated]"
SHORT_LINE_CHARS = 100
BUDGET_FILL_RATIO = 0.9
KEEP_RECENT_MESSAGES = 5

# Lowercase substrings marking a line worth keeping through truncation
HIGH_VALUE_MARKERS: tuple[str, ...] = (
    "current working directory",
    "working directory",
    "today's date",
    "date:",
    "operating system",
    "platform:",
    "error",
    "exception",
    "traceback",
    "failed",
    "command",
    "exit code",
    "$ ",
)


def is_high_value_line(line: str) -> bool:
    lowered = line.lower()
    return any(marker in lowered for marker in HIGH_VALUE_MARKERS)


def is_important_line(line: str, short_line_chars: int = SHORT_LINE_CHARS) -> bool:
    """Short lines and lines carrying a high-value marker survive truncation."""
    return len(line.strip()) < short_line_chars or is_high_value_line(line)


def encoded_size(text: str) -> int:
    """Bytes the text occupies inside a JSON string on the wire."""
    return len(json.dumps(text, ensure_ascii=False).encode("utf-8")) - 2


def _tail_that_fits(text: str, budget: int) -> str:
    """Longest suffix of text whose encoded size fits the budget."""
    if budget <= 0:
        return ""
    low, high = 0, len(text)
    # Binary search the start index of the suffix
    while low < high:
        mid = (low + high) // 2
        if encoded_size(text[mid:]) <= budget:
            high = mid
        else:
            low = mid + 1
    return text[low:]


def truncate_text(text: str, budget_bytes: int) -> str:
    """
    Shrink a text blob to fit budget_bytes (JSON-encoded), marking the cut.

    Keeps every important line, then the most recent regular lines while
    under 90% of the budget. Original line order is preserved. If the
    important lines alone overflow, the most recent tail is kept instead.
    """
    if encoded_size(text) <= budget_bytes:
        return text

    suffix = "\n" + TRUNCATION_MARKER
    available = budget_bytes - encoded_size(suffix)
    if available <= 0:
        return TRUNCATION_MARKER if encoded_size(TRUNCATION_MARKER) <= budget_bytes else ""

    lines = text.split("\n")
    keep = [is_important_line(line) for line in lines]
    # Each kept line also pays for its joining newline, two bytes once escaped
    used = sum(encoded_size(line) + 2 for line, kept in zip(lines, keep) if kept)

    if used <= available:
        fill_limit = int(available * BUDGET_FILL_RATIO)
        for index in range(len(lines) - 1, -1, -1):
            if keep[index]:
                continue
            cost = encoded_size(lines[index]) + 2
            if used + cost > fill_limit:
                # Partial tail of the newest line that doesn't fit whole
                lines[index] = _tail_that_fits(lines[index], fill_limit - used - 2)
                keep[index] = bool(lines[index])
                break
            keep[index] = True
            used += cost

    kept_text = "\n".join(line for line, kept in zip(lines, keep) if kept)

    if encoded_size(kept_text) > available:
        kept_text = _tail_that_fits(kept_text, available)

    return kept_text + suffix if kept_text else TRUNCATION_MARKER


class PayloadGovernor:
    """Bounds BackendRequest size before transmission."""

    def __init__(
        self,
        max_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES,
        keep_recent_messages: int = KEEP_RECENT_MESSAGES,
    ):
        self.max_bytes = max_bytes
        self.keep_recent_messages = keep_recent_messages

    def bound(self, request: BackendRequest, max_bytes: Optional[int] = None) -> BackendRequest:
        """
        Return request unchanged if it fits, else a truncated copy that does.

        Raises OllamaAdapterError(PAYLOAD_TOO_LARGE) when the fixed parts of
        the request (model, tools, schema) alone exceed the limit.
        """
        limit = max_bytes or self.max_bytes
        size = request.serialized_size()
        if size <= limit:
            return request

        if request.mode is BackendMode.SIMPLE:
            governed = self._bound_prompt(request, limit)
        else:
            governed = self._bound_messages(request, limit)

        logger.warning(
            f"Request for {request.model} truncated from {size} to "
            f"{governed.serialized_size()} bytes (limit {limit})"
        )
        return governed

    def _overflow(self, request: BackendRequest, limit: int) -> OllamaAdapterError:
        return OllamaAdapterError(
            f"Request overhead exceeds payload limit of {limit} bytes",
            ErrorKind.PAYLOAD_TOO_LARGE,
            endpoint=request.mode.endpoint,
            model=request.model,
        )

    def _bound_prompt(self, request: BackendRequest, limit: int) -> BackendRequest:
        overhead = request.model_copy(update={"prompt": ""}).serialized_size()
        budget = limit - overhead
        if budget <= 0:
            raise self._overflow(request, limit)
        return request.model_copy(update={"prompt": truncate_text(request.prompt or "", budget)})

    def _bound_messages(self, request: BackendRequest, limit: int) -> BackendRequest:
        messages = list(request.messages)

        # Step 1: most recent K messages behind a marker
        if len(messages) > self.keep_recent_messages:
            omitted = len(messages) - self.keep_recent_messages
            marker = BackendMessage(
                role="system",
                content=f"{TRUNCATION_MARKER} {omitted} earlier messages omitted",
            )
            recent = [marker] + messages[-self.keep_recent_messages:]
            candidate = request.model_copy(update={"messages": recent})
            if candidate.serialized_size() <= limit:
                return candidate

        # Step 2: final message only, content truncated
        if not messages:
            raise self._overflow(request, limit)
        last = messages[-1]
        emptied = request.model_copy(
            update={"messages": [last.model_copy(update={"content": ""})]}
        )
        budget = limit - emptied.serialized_size()
        if budget <= 0:
            raise self._overflow(request, limit)
        content = truncate_text(last.content, budget)
        if TRUNCATION_MARKER not in content:
            # Content itself fit; the cut was the dropped history
            content = truncate_text(content + "\n" + TRUNCATION_MARKER, budget)
        return request.model_copy(
            update={"messages": [last.model_copy(update={"content": content})]}
        )
