"""
ollama-bridge: serve a unified content-generation contract from a local Ollama server.
"""

from ollama_bridge.adapters import ContentGenerator, OllamaAdapter
from ollama_bridge.config import OllamaConfig, configure_debug_log
from ollama_bridge.context_limits import ContextLengthCache
from ollama_bridge.errors import ErrorKind, OllamaAdapterError

__all__ = [
    "ContentGenerator",
    "ContextLengthCache",
    "ErrorKind",
    "OllamaAdapter",
    "OllamaAdapterError",
    "OllamaConfig",
    "configure_debug_log",
]
