"""Tests for BackendResponseRecord -> UnifiedResponse normalization."""

import logging

from ollama_bridge.adapters.schema import (
    BackendResponseRecord,
    Candidate,
    FinishReason,
    Part,
    UnifiedResponse,
)
from ollama_bridge.normalizer import ResponseNormalizer, estimate_tokens, warn_if_slow
from ollama_bridge.tool_calls import ToolCallDeduplicator
from tests.conftest import chat_record, generate_record, tool_call


def record(data: dict) -> BackendResponseRecord:
    return BackendResponseRecord.model_validate(data)


class TestEstimateTokens:
    """Tests for estimate_tokens()."""

    def test_ceil_quarter_length(self):
        assert estimate_tokens("4") == 1
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_empty(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens(None) == 0


class TestToUnifiedResponse:
    """Tests for ResponseNormalizer.to_unified_response()."""

    def test_simple_answer(self):
        """2+2 answered with "4": one text part, one completion token, STOP."""
        response = ResponseNormalizer().to_unified_response(
            record(generate_record("4")),
            prompt_text="Human: What is 2+2?\n\nAssistant:",
        )

        assert response.text == "4"
        assert len(response.candidates) == 1
        assert response.finish_reason is FinishReason.STOP
        assert response.usage.completion_tokens == 1
        assert response.usage.prompt_tokens == estimate_tokens("Human: What is 2+2?\n\nAssistant:")
        assert response.usage.total_tokens == response.usage.prompt_tokens + 1

    def test_backend_counts_preferred(self):
        response = ResponseNormalizer().to_unified_response(
            record(generate_record("Paris", prompt_eval_count=0, eval_count=3)),
            prompt_text="a long prompt that would estimate to several tokens",
        )
        assert response.usage.prompt_tokens == 0
        assert response.usage.completion_tokens == 3
        assert response.usage.total_tokens == 3

    def test_not_done_is_in_progress(self):
        response = ResponseNormalizer().to_unified_response(record(generate_record("Par", done=False)))
        assert response.finish_reason is FinishReason.IN_PROGRESS

    def test_chat_message_tool_calls(self):
        data = chat_record(tool_calls=[tool_call("run_shell_command", command="ls")])
        response = ResponseNormalizer().to_unified_response(record(data))

        calls = response.function_calls
        assert len(calls) == 1
        assert calls[0].name == "run_shell_command"
        assert calls[0].args == {"command": "ls"}
        assert calls[0].id.startswith("call_")
        assert response.text == ""

    def test_string_arguments_parsed(self):
        data = chat_record(tool_calls=[
            {"id": "call_abc", "function": {"name": "read_file", "arguments": '{"path": "a.txt"}'}}
        ])
        call = ResponseNormalizer().to_unified_response(record(data)).function_calls[0]
        assert call.args == {"path": "a.txt"}
        assert call.id == "call_abc"

    def test_duplicate_calls_collapsed(self):
        data = chat_record(tool_calls=[
            tool_call("read_file", path="a.txt", mode="r"),
            {"function": {"name": "read_file", "arguments": {"mode": "r", "path": "a.txt"}}},
        ])
        response = ResponseNormalizer().to_unified_response(record(data))
        assert len(response.function_calls) == 1

    def test_record_level_tool_calls(self):
        data = generate_record("", tool_calls=[tool_call("lookup", q="x")])
        response = ResponseNormalizer().to_unified_response(record(data))
        assert [c.name for c in response.function_calls] == ["lookup"]

    def test_text_and_calls_ordered(self):
        data = chat_record("Let me check.", tool_calls=[tool_call("ls")])
        parts = ResponseNormalizer().to_unified_response(record(data)).candidates[0].parts
        assert parts[0].text == "Let me check."
        assert parts[1].function_call.name == "ls"

    def test_stream_deltas_concatenate(self):
        """Each record yields only its own delta; joined they equal the full text."""
        normalizer = ResponseNormalizer()
        dedup = ToolCallDeduplicator()
        chunks = ["The", " capital", " of France", " is Paris."]
        records = [generate_record(c, done=False) for c in chunks] + [generate_record("", done=True)]

        texts = [
            normalizer.to_unified_response(record(r), deduplicator=dedup).text
            for r in records
        ]

        assert texts[:-1] == chunks
        assert "".join(texts) == "The capital of France is Paris."

    def test_stream_dedup_across_records(self):
        normalizer = ResponseNormalizer()
        dedup = ToolCallDeduplicator()
        first = chat_record(tool_calls=[tool_call("run", cmd="ls")], done=False)
        second = chat_record(tool_calls=[tool_call("run", cmd="ls")], done=True)

        a = normalizer.to_unified_response(record(first), deduplicator=dedup)
        b = normalizer.to_unified_response(record(second), deduplicator=dedup)

        assert len(a.function_calls) == 1
        assert b.function_calls == []


class TestIsEmpty:
    """Tests for ResponseNormalizer.is_empty()."""

    def test_whitespace_only_is_empty(self):
        response = UnifiedResponse(candidates=[Candidate(parts=[Part.from_text("  \n")])])
        assert ResponseNormalizer.is_empty(response)

    def test_no_parts_is_empty(self):
        assert ResponseNormalizer.is_empty(UnifiedResponse(candidates=[Candidate()]))

    def test_tool_call_only_is_not_empty(self):
        response = UnifiedResponse(candidates=[Candidate(parts=[Part.from_function_call("ls")])])
        assert not ResponseNormalizer.is_empty(response)


class TestWarnIfSlow:
    """Tests for warn_if_slow()."""

    def test_slow_total(self, caplog):
        with caplog.at_level(logging.WARNING, logger="ollama_bridge.normalizer"):
            warn_if_slow(record(generate_record("x", total_duration=12_000_000_000)), "qwen3:8b")
        assert "very slow" in caplog.text

    def test_slow_load(self, caplog):
        data = generate_record("x", total_duration=5_000_000_000, load_duration=4_000_000_000)
        with caplog.at_level(logging.WARNING, logger="ollama_bridge.normalizer"):
            warn_if_slow(record(data), "qwen3:8b")
        assert "loading slow" in caplog.text

    def test_fast_is_quiet(self, caplog):
        with caplog.at_level(logging.WARNING, logger="ollama_bridge.normalizer"):
            warn_if_slow(record(generate_record("x", total_duration=1_000_000_000)), "qwen3:8b")
        assert caplog.text == ""
