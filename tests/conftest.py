"""Shared test fixtures for ollama-bridge tests."""

import json
import logging

import pytest

from ollama_bridge.adapters.schema import (
    GenerationOptions,
    Part,
    ResponseFormat,
    ToolDeclaration,
    Turn,
    UnifiedRequest,
)
from ollama_bridge.config import OllamaConfig
from ollama_bridge.context_limits import ContextLengthCache


# ─────────────────────────────────────────────────────────────────────
# MOCK DATA
# ─────────────────────────────────────────────────────────────────────

MOCK_BASE_URL = "http://ollama.test:11434"
MOCK_MODEL = "llama3.2:3b"

GENERATE_URL = f"{MOCK_BASE_URL}/api/generate"
CHAT_URL = f"{MOCK_BASE_URL}/api/chat"
SHOW_URL = f"{MOCK_BASE_URL}/api/show"
TAGS_URL = f"{MOCK_BASE_URL}/api/tags"

MOCK_TOOL = ToolDeclaration(
    name="run_shell_command",
    description="Run a shell command",
    parameters={
        "type": "object",
        "properties": {"command": {"type": "string"}},
        "required": ["command"],
    },
)

MOCK_TAGS_RESPONSE = {
    "models": [
        {"name": MOCK_MODEL, "size": 2019393189, "details": {"parameter_size": "3.2B"}},
        {"name": "qwen3:8b", "size": 5225376047, "details": {"parameter_size": "8.2B"}},
    ]
}


def user_turn(text: str) -> Turn:
    return Turn(role="user", parts=[Part.from_text(text)])


def model_turn(text: str) -> Turn:
    return Turn(role="model", parts=[Part.from_text(text)])


def make_request(*texts: str, tools=None, response_format=None, **options) -> UnifiedRequest:
    """Single- or multi-turn user request."""
    if response_format is not None:
        options["response_format"] = response_format
    return UnifiedRequest(
        turns=[user_turn(text) for text in texts],
        tools=tools or [],
        options=GenerationOptions(**options),
    )


def generate_record(text: str, done: bool = True, **extra) -> dict:
    """One /api/generate response object."""
    return {"model": MOCK_MODEL, "response": text, "done": done, **extra}


def chat_record(text: str = "", tool_calls=None, done: bool = True, **extra) -> dict:
    """One /api/chat response object."""
    message = {"role": "assistant", "content": text}
    if tool_calls is not None:
        message["tool_calls"] = tool_calls
    return {"model": MOCK_MODEL, "message": message, "done": done, **extra}


def tool_call(name: str, **arguments) -> dict:
    return {"function": {"name": name, "arguments": arguments}}


def ndjson(records: list[dict]) -> bytes:
    """Serialize records as an NDJSON stream body."""
    return b"".join(json.dumps(r).encode("utf-8") + b"\n" for r in records)


# ─────────────────────────────────────────────────────────────────────
# FIXTURES - Configuration
# ─────────────────────────────────────────────────────────────────────

@pytest.fixture
def config():
    """Adapter configuration pointed at the mock server."""
    return OllamaConfig(base_url=MOCK_BASE_URL, model=MOCK_MODEL)


@pytest.fixture
def warm_cache():
    """Context-length cache already holding the mock model."""
    cache = ContextLengthCache()
    cache.set(MOCK_MODEL, 8192)
    return cache


@pytest.fixture
def json_schema_format():
    return ResponseFormat(
        type="json_schema",
        json_schema={
            "type": "object",
            "properties": {"answer": {"type": "string"}},
            "required": ["answer"],
        },
    )


# ─────────────────────────────────────────────────────────────────────
# FIXTURES - Logging
# ─────────────────────────────────────────────────────────────────────

@pytest.fixture
def isolated_package_logger():
    """Restore the ollama_bridge logger's handlers and level after the test."""
    package_logger = logging.getLogger("ollama_bridge")
    handlers = list(package_logger.handlers)
    level = package_logger.level
    yield package_logger
    for handler in list(package_logger.handlers):
        if handler not in handlers:
            package_logger.removeHandler(handler)
            handler.close()
    package_logger.setLevel(level)
