"""
Adapter error taxonomy.

Every failure that reaches the caller is an OllamaAdapterError tagged with an
ErrorKind. Kinds are assigned at the transport boundary so the stability
policy can match on them instead of scanning message text.
"""

import json
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Closed set of failure kinds surfaced by the adapter."""
    CONNECTIVITY = "connectivity"        # backend unreachable
    BACKEND_STATUS = "backend_status"    # non-2xx from the server
    TIMEOUT = "timeout"                  # deadline expired / transport aborted
    TRANSPORT = "transport"              # any other httpx failure
    EMPTY_RESPONSE = "empty_response"    # no text and no tool calls
    PAYLOAD_TOO_LARGE = "payload_too_large"
    NOT_IMPLEMENTED = "not_implemented"


class OllamaAdapterError(Exception):
    """Human-readable adapter error with enough context to diagnose."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        endpoint: Optional[str] = None,
        model: Optional[str] = None,
        elapsed_seconds: Optional[float] = None,
        status_code: Optional[int] = None,
        body_excerpt: Optional[str] = None,
    ):
        self.message = message
        self.kind = kind
        self.endpoint = endpoint
        self.model = model
        self.elapsed_seconds = elapsed_seconds
        self.status_code = status_code
        self.body_excerpt = body_excerpt
        super().__init__(self._format())

    def _format(self) -> str:
        context = []
        if self.endpoint:
            context.append(f"endpoint={self.endpoint}")
        if self.model:
            context.append(f"model={self.model}")
        if self.status_code is not None:
            context.append(f"status={self.status_code}")
        if self.elapsed_seconds is not None:
            context.append(f"elapsed={self.elapsed_seconds:.1f}s")
        if not context:
            return f"[{self.kind.value}] {self.message}"
        return f"[{self.kind.value}] {self.message} ({', '.join(context)})"


def parse_ollama_error(status_code: int, body: bytes | str) -> str:
    """Extract a user-friendly error message from an Ollama error body."""
    text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body
    try:
        data = json.loads(text)
        # Ollama returns {"error": "..."}; OpenAI-style proxies nest it
        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, str) and error:
                return error
            if isinstance(error, dict) and error.get("message"):
                return error["message"]
    except ValueError:
        pass
    return f"HTTP {status_code}: {text[:200]}"
