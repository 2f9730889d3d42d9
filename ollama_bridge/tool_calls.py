"""
Tool call extraction and de-duplication for Ollama responses.

Ollama returns tool calls in `message.tool_calls` (chat) or, for some
models, at record level even on /api/generate. Arguments usually arrive as
an object but some models stream them as a JSON string.

Some models also emit the same call twice in one turn. Executing both
duplicates side effects downstream, so repeats within one response are
dropped by signature (name + canonical arguments).
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from ollama_bridge.adapters.schema import BackendToolCall

logger = logging.getLogger(__name__)


@dataclass
class ParsedToolCall:
    """Represents a parsed tool call."""
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None

    @property
    def signature(self) -> str:
        return call_signature(self.name, self.arguments)


def parse_arguments(raw: Any) -> dict[str, Any]:
    """
    Arguments as a dict.

    Accepts an object or a JSON-encoded string; anything unparsable becomes {}.
    """
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        if not raw.strip():
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Failed to parse tool arguments: {raw[:200]}")
            return {}
        if isinstance(parsed, dict):
            return parsed
    logger.warning(f"Ignoring non-object tool arguments: {str(raw)[:200]}")
    return {}


def call_signature(name: str, arguments: dict[str, Any]) -> str:
    """Order-independent identity of a call."""
    canonical = json.dumps(arguments, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return f"{name}:{canonical}"


def parse_tool_call(tool_call: BackendToolCall) -> ParsedToolCall:
    return ParsedToolCall(
        name=tool_call.function.name,
        arguments=parse_arguments(tool_call.function.arguments),
        id=tool_call.id,
    )


class ToolCallDeduplicator:
    """
    Drops tool calls whose signature was already seen.

    Scope is one response: create one per call and, when streaming, share
    it across all records of that stream.
    """

    def __init__(self):
        self._seen: set[str] = set()

    def __len__(self) -> int:
        return len(self._seen)

    def filter(self, tool_calls: list[BackendToolCall]) -> list[ParsedToolCall]:
        unique = []
        for tool_call in tool_calls:
            parsed = parse_tool_call(tool_call)
            signature = parsed.signature
            if signature in self._seen:
                logger.debug(f"Skipping duplicate tool call: {signature}")
                continue
            self._seen.add(signature)
            unique.append(parsed)
        return unique
