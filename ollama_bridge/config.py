"""
Configuration constants and Pydantic models for ollama-bridge.
"""

import logging
import os
from typing import Optional

from pydantic import BaseModel, Field, field_validator


# ─────────────────────────────────────────────────────────────────────
# DEFAULTS - Overridable via OllamaConfig / environment
# ─────────────────────────────────────────────────────────────────────

DEFAULT_BASE_URL: str = "http://localhost:11434"
DEFAULT_TEMPERATURE: float = 0.7
DEFAULT_TIMEOUT_SECONDS: float = 300  # 5 minutes
DEFAULT_STREAMING_TIMEOUT_SECONDS: float = 600  # 10 minutes
DEFAULT_CONTEXT_LIMIT: int = 8192
DEFAULT_REQUEST_CONTEXT_SIZE: int = 8192
DEFAULT_MAX_OUTPUT_TOKENS: int = 4096
DEFAULT_KEEP_ALIVE: str = "5m"
DEFAULT_DEBUG_LOG_PATH: str = "ollama-debug.log"

# Serialized request size above which local runners were observed to crash.
# Measured at 18-20 KB on gpt-oss and qwen3; the smaller value is the default.
DEFAULT_MAX_PAYLOAD_BYTES: int = 18 * 1024


# ─────────────────────────────────────────────────────────────────────
# INTERNAL CONSTANTS - Not exposed in OllamaConfig
# ─────────────────────────────────────────────────────────────────────

MIN_REQUEST_CONTEXT_SIZE: int = 1024
MIN_NUM_PREDICT: int = 256
MIN_TIMEOUT_SECONDS: float = 30
DEFAULT_CONTEXT_LENGTH: int = 4096  # unknown models
METADATA_TIMEOUT_SECONDS: float = 10.0
CHARS_PER_TOKEN: int = 4

TOOLS_SYSTEM_PROMPT: str = "You are a helpful assistant with access to tools."
EMPTY_CHAT_PLACEHOLDER: str = "Please provide a valid command to execute."


# ─────────────────────────────────────────────────────────────────────
# ENVIRONMENT LOADING
# ─────────────────────────────────────────────────────────────────────

def _env_float(key: str, default: Optional[float]) -> Optional[float]:
    value = os.environ.get(key)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_int(key: str, default: Optional[int]) -> Optional[int]:
    value = os.environ.get(key)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_bool(key: str, default: bool) -> bool:
    value = os.environ.get(key)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def get_metadata_retry_attempts() -> int:
    """
    Get max attempts for the /api/show metadata probe.

    Set OLLAMA_METADATA_RETRY_ATTEMPTS in .env (default: 2).
    """
    return _env_int("OLLAMA_METADATA_RETRY_ATTEMPTS", 2)


def get_metadata_retry_min_wait() -> float:
    """
    Get minimum wait between metadata probe attempts in seconds.

    Set OLLAMA_METADATA_RETRY_MIN_WAIT in .env (default: 0.5).
    """
    return _env_float("OLLAMA_METADATA_RETRY_MIN_WAIT", 0.5)


def get_metadata_retry_max_wait() -> float:
    """
    Get maximum wait between metadata probe attempts in seconds.

    Set OLLAMA_METADATA_RETRY_MAX_WAIT in .env (default: 2).
    """
    return _env_float("OLLAMA_METADATA_RETRY_MAX_WAIT", 2.0)


# ─────────────────────────────────────────────────────────────────────
# DATA MODELS
# ─────────────────────────────────────────────────────────────────────

class OllamaConfig(BaseModel):
    """Static configuration for one adapter instance (model + backend pair)."""
    base_url: str = DEFAULT_BASE_URL
    model: str
    enable_chat_api: bool = True
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    streaming_timeout_seconds: float = DEFAULT_STREAMING_TIMEOUT_SECONDS
    context_limit: int = DEFAULT_CONTEXT_LIMIT
    request_context_size: int = DEFAULT_REQUEST_CONTEXT_SIZE
    temperature: float = DEFAULT_TEMPERATURE
    max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS
    repeat_penalty: Optional[float] = None
    max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES
    keep_alive: Optional[str] = DEFAULT_KEEP_ALIVE
    context_length_overrides: dict[str, int] = Field(default_factory=dict)
    unstable_models: list[str] = Field(default_factory=list)
    debug_logging: bool = False
    debug_log_path: str = DEFAULT_DEBUG_LOG_PATH

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("request_context_size")
    @classmethod
    def _floor_request_context_size(cls, value: int) -> int:
        # Only a minimum; large contexts are the user's call
        return max(value, MIN_REQUEST_CONTEXT_SIZE)

    @classmethod
    def from_env(cls, model: Optional[str] = None, load_env: bool = True) -> "OllamaConfig":
        """
        Build configuration from OLLAMA_* environment variables.

        Loads .env first (unless load_env=False). Malformed numeric values
        fall back to defaults.
        """
        if load_env:
            from dotenv import load_dotenv
            load_dotenv()

        model_id = model or os.environ.get("OLLAMA_MODEL", "").strip()
        if not model_id:
            raise ValueError(
                "Ollama model required. "
                "Provide model parameter or set OLLAMA_MODEL environment variable."
            )

        return cls(
            base_url=os.environ.get("OLLAMA_BASE_URL", "").strip() or DEFAULT_BASE_URL,
            model=model_id,
            enable_chat_api=_env_bool("OLLAMA_ENABLE_CHAT_API", True),
            timeout_seconds=_env_float("OLLAMA_CHAT_TIMEOUT", DEFAULT_TIMEOUT_SECONDS),
            streaming_timeout_seconds=_env_float(
                "OLLAMA_STREAMING_TIMEOUT", DEFAULT_STREAMING_TIMEOUT_SECONDS
            ),
            context_limit=_env_int("OLLAMA_CONTEXT_LIMIT", DEFAULT_CONTEXT_LIMIT),
            request_context_size=_env_int(
                "OLLAMA_REQUEST_CONTEXT_SIZE", DEFAULT_REQUEST_CONTEXT_SIZE
            ),
            temperature=_env_float("OLLAMA_TEMPERATURE", DEFAULT_TEMPERATURE),
            max_payload_bytes=_env_int("OLLAMA_MAX_PAYLOAD_BYTES", DEFAULT_MAX_PAYLOAD_BYTES),
            debug_logging=_env_bool("OLLAMA_DEBUG_LOGGING", False),
        )


# ─────────────────────────────────────────────────────────────────────
# LOGGING
# ─────────────────────────────────────────────────────────────────────

def configure_debug_log(path: str = DEFAULT_DEBUG_LOG_PATH) -> logging.Handler:
    """
    Attach a DEBUG file handler to the ollama_bridge logger.

    Idempotent per path: calling twice returns the existing handler.
    """
    package_logger = logging.getLogger("ollama_bridge")
    target = os.path.abspath(path)
    for handler in package_logger.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == target:
            return handler

    handler = logging.FileHandler(target, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter("%(asctime)s %(name)s %(levelname)s %(message)s"))
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.DEBUG)
    return handler
