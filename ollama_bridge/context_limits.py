"""
Context-window resolution for Ollama models.

Ollama reports context length inconsistently: some models expose
`<arch>.context_length` in model_info, some only set `num_ctx` in their
Modelfile, some report nothing. The resolver walks those sources in order
and always produces a number, caching it per model.
"""

import logging
import math
import re
import threading
from typing import Optional

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ollama_bridge.config import (
    DEFAULT_BASE_URL,
    DEFAULT_CONTEXT_LENGTH,
    METADATA_TIMEOUT_SECONDS,
    get_metadata_retry_attempts,
    get_metadata_retry_max_wait,
    get_metadata_retry_min_wait,
)

logger = logging.getLogger(__name__)


# (lower bound inclusive, upper bound exclusive, context length) in billions.
# Sizes between tiers (9-12B, 35-69B) and below 7B get the default.
PARAMETER_TIER_CONTEXT: list[tuple[float, float, int]] = [
    (70, float("inf"), 32768),
    (13, 35, 16384),
    (7, 9, 8192),
]

_NUM_CTX_PATTERN = re.compile(r"^\s*PARAMETER\s+num_ctx\s+(\d+)", re.IGNORECASE | re.MULTILINE)
_PARAMETER_SIZE_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*([bm])\b", re.IGNORECASE)


class ContextLengthCache:
    """
    Model id -> usable context window size.

    Shared and read-mostly. Writes are last-write-wins; values are advisory,
    so concurrent writers for the same model are harmless.
    """

    def __init__(self):
        self._lengths: dict[str, int] = {}
        self._lock = threading.Lock()

    def get(self, model_id: str) -> Optional[int]:
        with self._lock:
            return self._lengths.get(model_id)

    def set(self, model_id: str, context_length: int) -> None:
        with self._lock:
            self._lengths[model_id] = context_length

    def clear(self) -> None:
        with self._lock:
            self._lengths.clear()

    def __contains__(self, model_id: str) -> bool:
        with self._lock:
            return model_id in self._lengths

    def __len__(self) -> int:
        with self._lock:
            return len(self._lengths)


def token_limit(model_id: str, cache: ContextLengthCache) -> int:
    """Context length for a model, or the conservative default if unresolved."""
    return cache.get(model_id) or DEFAULT_CONTEXT_LENGTH


# ─────────────────────────────────────────────────────────────────────
# METADATA PARSING
# ─────────────────────────────────────────────────────────────────────

def context_length_from_model_info(model_info: dict) -> Optional[int]:
    """Return the first `*context_length` value in model_info, if numeric."""
    for key, value in (model_info or {}).items():
        if not key.endswith("context_length"):
            continue
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)) and math.isfinite(value) and value > 0:
            return int(value)
        if isinstance(value, str) and value.strip().isdigit():
            return int(value.strip())
    return None


def context_length_from_modelfile(modelfile: Optional[str]) -> Optional[int]:
    """Parse `PARAMETER num_ctx <n>` out of a Modelfile."""
    if not modelfile:
        return None
    match = _NUM_CTX_PATTERN.search(modelfile)
    if match:
        value = int(match.group(1))
        return value if value > 0 else None
    return None


def parameter_billions(text: Optional[str]) -> Optional[float]:
    """
    Parameter count in billions from a size tag.

    Accepts Ollama's `parameter_size` ("7.6B", "120B", "567M") and model ids
    carrying a size tag ("gpt-oss:120b", "qwen3-30b-a3b").
    """
    if not text:
        return None
    match = _PARAMETER_SIZE_PATTERN.search(text)
    if not match:
        return None
    value = float(match.group(1))
    if match.group(2).lower() == "m":
        value = value / 1000
    return value


def context_length_for_parameters(billions: Optional[float]) -> int:
    """Heuristic context length by parameter-count tier."""
    if billions is None:
        return DEFAULT_CONTEXT_LENGTH
    for lower, upper, context_length in PARAMETER_TIER_CONTEXT:
        if lower <= billions < upper:
            return context_length
    return DEFAULT_CONTEXT_LENGTH


# ─────────────────────────────────────────────────────────────────────
# RESOLVER
# ─────────────────────────────────────────────────────────────────────

class ContextLengthResolver:
    """
    Resolves and caches a model's context length. Never raises.

    Precedence: configured override, cache, /api/show model_info,
    Modelfile num_ctx, parameter-size heuristic.
    """

    def __init__(
        self,
        cache: ContextLengthCache,
        base_url: str = DEFAULT_BASE_URL,
        overrides: Optional[dict[str, int]] = None,
        retry_attempts: Optional[int] = None,
        retry_min_wait: Optional[float] = None,
        retry_max_wait: Optional[float] = None,
    ):
        self._cache = cache
        self._base_url = base_url.rstrip("/")
        self._overrides = dict(overrides or {})
        self._retry_attempts = max(1, retry_attempts or get_metadata_retry_attempts())
        self._retry_min_wait = get_metadata_retry_min_wait() if retry_min_wait is None else retry_min_wait
        self._retry_max_wait = get_metadata_retry_max_wait() if retry_max_wait is None else retry_max_wait

    @property
    def cache(self) -> ContextLengthCache:
        return self._cache

    async def fetch_model_info(self, model_id: str) -> dict:
        """POST /api/show. Raises httpx errors; retries transport failures."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_exponential(multiplier=1, min=self._retry_min_wait, max=self._retry_max_wait),
            retry=retry_if_exception_type((httpx.TransportError,)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                async with httpx.AsyncClient(timeout=METADATA_TIMEOUT_SECONDS) as client:
                    response = await client.post(
                        f"{self._base_url}/api/show",
                        json={"name": model_id},
                    )
                    response.raise_for_status()
                    info = response.json()
        return info

    async def resolve(self, model_id: str) -> int:
        override = self._overrides.get(model_id)
        if override:
            self._cache.set(model_id, override)
            return override

        cached = self._cache.get(model_id)
        if cached:
            return cached

        info: dict = {}
        context_length: Optional[int] = None
        try:
            fetched = await self.fetch_model_info(model_id)
            if isinstance(fetched, dict):
                info = fetched
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Failed to fetch context length for {model_id}: {e}")

        model_info = info.get("model_info")
        if isinstance(model_info, dict):
            context_length = context_length_from_model_info(model_info)
        modelfile = info.get("modelfile")
        if context_length is None and isinstance(modelfile, str):
            context_length = context_length_from_modelfile(modelfile)

        if context_length is None:
            details = info.get("details")
            parameter_size = details.get("parameter_size") if isinstance(details, dict) else None
            if not isinstance(parameter_size, str):
                parameter_size = None
            billions = parameter_billions(parameter_size) or parameter_billions(model_id)
            context_length = context_length_for_parameters(billions)
            logger.info(
                f"Using heuristic context length {context_length} for {model_id} "
                f"(parameters={billions}B)"
            )

        self._cache.set(model_id, context_length)
        return context_length

    async def ensure_initialized(self, model_id: str) -> None:
        """Resolve only if the model is not cached yet."""
        if model_id in self._cache:
            return
        await self.resolve(model_id)
