"""
Adapters for content-generation backends.

Protocol defines WHAT, implementations define HOW.
"""

from .base import ContentGenerator
from .ollama import OllamaAdapter

__all__ = ["ContentGenerator", "OllamaAdapter"]
