"""
OllamaAdapter - serves the ContentGenerator contract from a local Ollama server.

Per call:
    ensure context length cached -> stability plan -> translate -> govern size
    -> POST (buffered) or stream NDJSON -> normalize (+dedup) -> record outcome
"""

import json
import logging
import time
from contextlib import aclosing
from typing import Any, AsyncGenerator, Optional

import httpx
from pydantic import ValidationError

from ollama_bridge.adapters.schema import (
    BackendMode,
    BackendRequest,
    BackendResponseRecord,
    ModelSummary,
    UnifiedRequest,
    UnifiedResponse,
)
from ollama_bridge.config import METADATA_TIMEOUT_SECONDS, OllamaConfig, configure_debug_log
from ollama_bridge.context_limits import ContextLengthCache, ContextLengthResolver
from ollama_bridge.errors import ErrorKind, OllamaAdapterError, parse_ollama_error
from ollama_bridge.normalizer import ResponseNormalizer, estimate_tokens, warn_if_slow
from ollama_bridge.payload import PayloadGovernor
from ollama_bridge.stability import CallPlan, StabilityPolicy, StabilityState
from ollama_bridge.streaming import Deadline, iter_ndjson_records
from ollama_bridge.tool_calls import ToolCallDeduplicator
from ollama_bridge.translator import RequestTranslator, flatten_transcript

logger = logging.getLogger(__name__)

JSON_HEADERS = {"Content-Type": "application/json"}


def transport_error(
    error: httpx.HTTPError,
    endpoint: str,
    model: str,
    deadline: Optional[Deadline] = None,
) -> OllamaAdapterError:
    """Tag an httpx failure with its ErrorKind."""
    elapsed = deadline.elapsed if deadline is not None else None
    if isinstance(error, httpx.TimeoutException):
        kind = ErrorKind.TIMEOUT
        message = f"Ollama request timed out: {error}"
    elif isinstance(error, httpx.ConnectError):
        kind = ErrorKind.CONNECTIVITY
        message = f"Ollama unreachable: {error}"
    else:
        kind = ErrorKind.TRANSPORT
        message = f"Ollama transport error: {error}"
    return OllamaAdapterError(message, kind, endpoint=endpoint, model=model, elapsed_seconds=elapsed)


def status_error(
    status_code: int,
    body: bytes,
    endpoint: str,
    model: str,
    deadline: Optional[Deadline] = None,
) -> OllamaAdapterError:
    message = parse_ollama_error(status_code, body)
    return OllamaAdapterError(
        f"Ollama API error {status_code}: {message}",
        ErrorKind.BACKEND_STATUS,
        endpoint=endpoint,
        model=model,
        elapsed_seconds=deadline.elapsed if deadline is not None else None,
        status_code=status_code,
        body_excerpt=body.decode("utf-8", errors="replace")[:500],
    )


def prompt_text_of(request: BackendRequest) -> str:
    """Full prompt text, for token estimation."""
    if request.mode is BackendMode.SIMPLE:
        return request.prompt or ""
    return "\n".join(message.content for message in request.messages)


class OllamaAdapter:
    """
    Ollama implementation of ContentGenerator.

    One instance per configured model + backend pair. The only state kept
    across calls is the context-length cache (injectable, may be shared)
    and this instance's stability state.
    """

    def __init__(
        self,
        config: OllamaConfig,
        cache: Optional[ContextLengthCache] = None,
        resolver: Optional[ContextLengthResolver] = None,
    ):
        self._config = config
        self._cache = cache if cache is not None else ContextLengthCache()
        self._resolver = resolver or ContextLengthResolver(
            self._cache,
            base_url=config.base_url,
            overrides=config.context_length_overrides,
        )
        self._translator = RequestTranslator(config)
        self._governor = PayloadGovernor(config.max_payload_bytes)
        self._normalizer = ResponseNormalizer()
        self._policy = StabilityPolicy(config)

        if config.debug_logging:
            configure_debug_log(config.debug_log_path)

        logger.info(
            f"Initialized OllamaAdapter for '{config.model}' at {config.base_url} "
            f"(chat_api={config.enable_chat_api}, timeout={config.timeout_seconds}s, "
            f"num_ctx={config.request_context_size}, max_payload={config.max_payload_bytes}B)"
        )

    @property
    def config(self) -> OllamaConfig:
        return self._config

    @property
    def context_cache(self) -> ContextLengthCache:
        return self._cache

    @property
    def stability(self) -> StabilityPolicy:
        return self._policy

    @property
    def stability_state(self) -> StabilityState:
        return self._policy.state

    def _url(self, endpoint: str) -> str:
        return f"{self._config.base_url}{endpoint}"

    def _debug_log(self, event: str, data: dict) -> None:
        if self._config.debug_logging:
            logger.debug(json.dumps({"event": event, **data}, default=str, ensure_ascii=False))

    # ─────────────────────────────────────────────────────────────────
    # CONTEXT LENGTH
    # ─────────────────────────────────────────────────────────────────

    async def ensure_context_length_initialized(self) -> None:
        await self._resolver.ensure_initialized(self._config.model)

    def token_limit(self) -> int:
        """Resolved context length, or the configured limit until resolved."""
        return self._cache.get(self._config.model) or self._config.context_limit

    # ─────────────────────────────────────────────────────────────────
    # REQUEST PREPARATION
    # ─────────────────────────────────────────────────────────────────

    def _prepare(
        self,
        request: UnifiedRequest,
        plan: CallPlan,
        mode: BackendMode,
        stream: bool,
    ) -> BackendRequest:
        backend_request = self._translator.to_backend_request(request, mode, plan, stream=stream)
        governed = self._governor.bound(backend_request)
        self._debug_log("OLLAMA_REQUEST", {
            "endpoint": mode.endpoint,
            "stability_level": plan.level.name,
            "timeout_seconds": plan.timeout_seconds,
            "messages": len(governed.messages),
            "tools": len(governed.tools),
            "bytes": governed.serialized_size(),
            "truncated": governed is not backend_request,
            "request": governed.to_payload(),
        })
        return governed

    # ─────────────────────────────────────────────────────────────────
    # BUFFERED GENERATION
    # ─────────────────────────────────────────────────────────────────

    async def generate(self, request: UnifiedRequest) -> UnifiedResponse:
        """
        Generate one complete response.

        A chat call rejected by the backend (not a timeout or hardware
        failure) is re-issued once in simple mode, without tools.
        """
        await self.ensure_context_length_initialized()
        plan = self._policy.plan(
            request.has_tools,
            streaming=False,
            max_output_tokens=request.options.max_output_tokens,
        )

        try:
            response = await self._generate_once(request, plan, plan.mode)
        except OllamaAdapterError as e:
            self._policy.record_failure(e)
            if not self._policy.allows_fallback(e, plan.mode):
                raise
            logger.warning(
                f"Chat API failed for {self._config.model}: {e}. "
                "Falling back to generate API; tools will not be executed."
            )
            try:
                response = await self._generate_once(request, plan, BackendMode.SIMPLE)
            except OllamaAdapterError as fallback_error:
                self._policy.record_failure(fallback_error)
                raise

        self._policy.record_success()
        return response

    async def _generate_once(
        self,
        request: UnifiedRequest,
        plan: CallPlan,
        mode: BackendMode,
    ) -> UnifiedResponse:
        backend_request = self._prepare(request, plan, mode, stream=False)
        endpoint = mode.endpoint
        model = self._config.model
        deadline = Deadline(plan.timeout_seconds, endpoint=endpoint, model=model)

        async with httpx.AsyncClient(timeout=plan.timeout_seconds) as client:
            try:
                response = await deadline.run(client.post(
                    self._url(endpoint),
                    content=backend_request.to_json_bytes(),
                    headers=JSON_HEADERS,
                ))
            except httpx.HTTPError as e:
                raise transport_error(e, endpoint, model, deadline) from e

            if response.status_code >= 400:
                raise status_error(response.status_code, response.content, endpoint, model, deadline)

            try:
                record = BackendResponseRecord.model_validate(response.json())
            except ValueError as e:
                raise OllamaAdapterError(
                    f"Malformed response body: {e}",
                    ErrorKind.TRANSPORT,
                    endpoint=endpoint,
                    model=model,
                    elapsed_seconds=deadline.elapsed,
                    body_excerpt=response.text[:500],
                ) from e

        self._debug_log("OLLAMA_RESPONSE", {
            "endpoint": endpoint,
            "elapsed_seconds": round(deadline.elapsed, 3),
            "has_content": bool(record.text),
            "tool_calls": [
                {"name": call.function.name, "arguments": call.function.arguments, "id": call.id}
                for call in record.raw_tool_calls
            ],
            "done": record.done,
            "response": record.model_dump(exclude_none=True),
        })
        warn_if_slow(record, model)

        unified = self._normalizer.to_unified_response(record, prompt_text_of(backend_request))
        if self._normalizer.is_empty(unified):
            raise OllamaAdapterError(
                "Ollama returned an empty response. The model may be unable to satisfy "
                "the requested JSON schema, or the prompt is too complex.",
                ErrorKind.EMPTY_RESPONSE,
                endpoint=endpoint,
                model=model,
                elapsed_seconds=deadline.elapsed,
            )
        return unified

    # ─────────────────────────────────────────────────────────────────
    # STREAMING GENERATION
    # ─────────────────────────────────────────────────────────────────

    async def generate_stream(self, request: UnifiedRequest) -> AsyncGenerator[UnifiedResponse, None]:
        """
        Stream a response, one UnifiedResponse per backend record.

        Each event carries only that record's text delta. Tool calls are
        de-duplicated across the whole stream. The simple-mode fallback is
        only possible before the first event has been yielded.
        """
        await self.ensure_context_length_initialized()
        plan = self._policy.plan(
            request.has_tools,
            streaming=True,
            max_output_tokens=request.options.max_output_tokens,
        )
        deduplicator = ToolCallDeduplicator()
        mode = plan.mode
        yielded = False

        while True:
            try:
                async with aclosing(self._stream_records(request, plan, mode)) as records:
                    async for record, prompt_text in records:
                        unified = self._normalizer.to_unified_response(record, prompt_text, deduplicator)
                        if not unified.candidates[0].parts and not record.done:
                            continue
                        yielded = True
                        yield unified
                break
            except OllamaAdapterError as e:
                self._policy.record_failure(e)
                if yielded or not self._policy.allows_fallback(e, mode):
                    raise
                logger.warning(
                    f"Chat API stream failed for {self._config.model}: {e}. "
                    "Falling back to generate API stream; tools will not be executed."
                )
                mode = BackendMode.SIMPLE

        self._policy.record_success()

    async def _stream_records(
        self,
        request: UnifiedRequest,
        plan: CallPlan,
        mode: BackendMode,
    ) -> AsyncGenerator[tuple[BackendResponseRecord, str], None]:
        backend_request = self._prepare(request, plan, mode, stream=True)
        prompt_text = prompt_text_of(backend_request)
        endpoint = mode.endpoint
        model = self._config.model
        deadline = Deadline(plan.timeout_seconds, endpoint=endpoint, model=model)

        async with httpx.AsyncClient(timeout=plan.timeout_seconds) as client:
            http_request = client.build_request(
                "POST",
                self._url(endpoint),
                content=backend_request.to_json_bytes(),
                headers=JSON_HEADERS,
            )
            try:
                response = await deadline.run(client.send(http_request, stream=True))
            except httpx.HTTPError as e:
                raise transport_error(e, endpoint, model, deadline) from e

            if response.status_code >= 400:
                try:
                    error_body = await deadline.run(response.aread())
                except httpx.HTTPError:
                    error_body = b""
                finally:
                    await response.aclose()
                raise status_error(response.status_code, error_body, endpoint, model, deadline)

            records = 0
            try:
                async with aclosing(iter_ndjson_records(response, deadline)) as raw_records:
                    async for raw in raw_records:
                        try:
                            record = BackendResponseRecord.model_validate(raw)
                        except ValidationError as e:
                            logger.warning(f"Skipping unrecognized stream record: {e}")
                            continue
                        records += 1
                        if record.done:
                            warn_if_slow(record, model)
                        yield record, prompt_text
            except httpx.HTTPError as e:
                raise transport_error(e, endpoint, model, deadline) from e

        self._debug_log("OLLAMA_STREAM_END", {
            "endpoint": endpoint,
            "records": records,
            "elapsed_seconds": round(deadline.elapsed, 3),
        })

    # ─────────────────────────────────────────────────────────────────
    # OTHER CONTRACT OPERATIONS
    # ─────────────────────────────────────────────────────────────────

    async def count_tokens(self, request: UnifiedRequest) -> int:
        """Estimate from the flattened prompt; Ollama has no counting endpoint."""
        return estimate_tokens(flatten_transcript(request.turns))

    async def embed(self, request: Any) -> Any:
        raise OllamaAdapterError(
            "Embedding not implemented for Ollama",
            ErrorKind.NOT_IMPLEMENTED,
            model=self._config.model,
        )

    # ─────────────────────────────────────────────────────────────────
    # MODEL METADATA
    # ─────────────────────────────────────────────────────────────────

    async def list_models(self) -> list[ModelSummary]:
        """GET /api/tags."""
        endpoint = "/api/tags"
        started = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=METADATA_TIMEOUT_SECONDS) as client:
                response = await client.get(self._url(endpoint))
        except httpx.HTTPError as e:
            raise transport_error(e, endpoint, self._config.model) from e
        if response.status_code >= 400:
            raise status_error(response.status_code, response.content, endpoint, self._config.model)
        data = response.json()
        models = [ModelSummary.model_validate(m) for m in data.get("models", [])]
        logger.debug(f"Listed {len(models)} models in {time.monotonic() - started:.2f}s")
        return models

    async def get_available_models(self) -> list[str]:
        """Return list of model names installed on the server."""
        return [model.name for model in await self.list_models()]

    async def get_model_info(self, model: Optional[str] = None) -> dict:
        """POST /api/show for model (default: the configured one)."""
        model_id = model or self._config.model
        try:
            return await self._resolver.fetch_model_info(model_id)
        except httpx.HTTPStatusError as e:
            raise status_error(
                e.response.status_code, e.response.content, "/api/show", model_id
            ) from e
        except httpx.HTTPError as e:
            raise transport_error(e, "/api/show", model_id) from e
