"""
ContentGenerator Protocol - the contract the host application generates through.

This is the WHAT (interface), not the HOW (implementation).
See ollama.py for the concrete implementation.
"""

from typing import Any, AsyncIterator, Protocol

from ollama_bridge.adapters.schema import UnifiedRequest, UnifiedResponse


class ContentGenerator(Protocol):
    """
    Contract for content-generation backends.

    Implementations must provide:
    - Buffered generation (generate)
    - Incremental generation (generate_stream)
    - Token estimation (count_tokens)
    - Embeddings (embed), or fail loudly if unsupported
    """

    async def generate(self, request: UnifiedRequest) -> UnifiedResponse:
        """
        Generate one complete response.

        Raises:
            OllamaAdapterError on any non-recoverable failure
        """
        ...

    def generate_stream(self, request: UnifiedRequest) -> AsyncIterator[UnifiedResponse]:
        """
        Generate a response incrementally.

        Yields:
            One UnifiedResponse per backend record, each carrying only the
            new text since the previous one
        """
        ...

    async def count_tokens(self, request: UnifiedRequest) -> int:
        """Estimate prompt tokens for request."""
        ...

    async def embed(self, request: Any) -> Any:
        """Embed content. May raise a NOT_IMPLEMENTED adapter error."""
        ...
