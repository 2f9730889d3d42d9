"""
Response normalization: BackendResponseRecord -> UnifiedResponse.
"""

import logging
import math
import uuid
from typing import Optional

from ollama_bridge.adapters.schema import (
    BackendResponseRecord,
    Candidate,
    FinishReason,
    Part,
    UnifiedResponse,
    UsageMetadata,
)
from ollama_bridge.config import CHARS_PER_TOKEN
from ollama_bridge.tool_calls import ToolCallDeduplicator

logger = logging.getLogger(__name__)


SLOW_TOTAL_NS = 10_000_000_000  # 10 s
SLOW_LOAD_NS = 3_000_000_000  # 3 s


def estimate_tokens(text: Optional[str]) -> int:
    """Rough token count: one token per four characters."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def warn_if_slow(record: BackendResponseRecord, model: str = "") -> None:
    """Log a hint when the backend reports slow generation or model loading."""
    if not record.total_duration:
        return
    total_s = record.total_duration / 1e9
    load_s = (record.load_duration or 0) / 1e9
    if record.total_duration > SLOW_TOTAL_NS:
        logger.warning(
            f"Ollama request very slow for {model} ({total_s:.1f}s total, {load_s:.1f}s loading). "
            "Consider a smaller or faster model."
        )
    elif (record.load_duration or 0) > SLOW_LOAD_NS:
        logger.warning(
            f"Ollama model loading slow for {model} ({load_s:.1f}s). "
            "Model was not kept in memory; check keep_alive."
        )


class ResponseNormalizer:
    """
    Converts backend records into unified responses.

    For streams, call once per record: each response carries only that
    record's text delta, never the accumulated text. Downstream loop
    detectors misfire on cumulative text.
    """

    def to_unified_response(
        self,
        record: BackendResponseRecord,
        prompt_text: str = "",
        deduplicator: Optional[ToolCallDeduplicator] = None,
    ) -> UnifiedResponse:
        dedup = deduplicator if deduplicator is not None else ToolCallDeduplicator()
        text = record.text

        parts: list[Part] = []
        if text:
            parts.append(Part.from_text(text))

        for call in dedup.filter(record.raw_tool_calls):
            parts.append(
                Part.from_function_call(
                    name=call.name,
                    args=call.arguments,
                    id=call.id or f"call_{uuid.uuid4().hex[:12]}",
                )
            )

        prompt_tokens = record.prompt_eval_count
        if prompt_tokens is None:
            prompt_tokens = estimate_tokens(prompt_text)
        completion_tokens = record.eval_count
        if completion_tokens is None:
            completion_tokens = estimate_tokens(text)

        return UnifiedResponse(
            candidates=[
                Candidate(
                    parts=parts,
                    finish_reason=FinishReason.STOP if record.done else FinishReason.IN_PROGRESS,
                )
            ],
            usage=UsageMetadata(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
        )

    @staticmethod
    def is_empty(response: UnifiedResponse) -> bool:
        """No text (beyond whitespace) and no tool calls."""
        return not response.text.strip() and not response.function_calls
