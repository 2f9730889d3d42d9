"""
Stability policy for one adapter instance (model + backend pair).

Local runners fail in ways hosted APIs don't: GPU hangs that only end at the
client timeout, OOM kills of the runner process, driver errors. After each
such failure the policy steps down one level, shrinking timeouts, token
budgets and context size; at the last level chat mode (and with it tool
calling) is switched off. Any success resets to STABLE.

Advisory only: it lowers the odds of a repeat failure, it can't prevent one.
"""

import logging
import re
import threading
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Optional

from ollama_bridge.adapters.schema import BackendMode
from ollama_bridge.config import (
    MIN_NUM_PREDICT,
    MIN_REQUEST_CONTEXT_SIZE,
    MIN_TIMEOUT_SECONDS,
    OllamaConfig,
)
from ollama_bridge.context_limits import parameter_billions
from ollama_bridge.errors import ErrorKind, OllamaAdapterError

logger = logging.getLogger(__name__)


class StabilityLevel(IntEnum):
    STABLE = 0
    DEGRADED = 1
    CHAT_DISABLED = 2


class FailureClass(str, Enum):
    NONE = "none"
    TRANSIENT_TIMEOUT = "transient_timeout"
    RESOURCE_EXHAUSTION = "resource_exhaustion"


# Substrings (lowercase) of backend error text that mean the runner or the
# accelerator died, as opposed to an ordinary bad request.
RESOURCE_EXHAUSTION_SIGNATURES: list[str] = [
    "out of memory",
    "cuda error",
    "cudamalloc",
    "cublas",
    "failed to allocate",
    "insufficient memory",
    "not enough memory",
    "gpu hang",
    "device lost",
    "vk_error",
    "ggml_metal",
    "resource exhausted",
    "llama runner process has terminated",
    "llama runner process no longer running",
    "model runner has unexpectedly stopped",
    "signal: killed",
    "exit status 2",
]

TIMEOUT_FACTORS: dict[StabilityLevel, float] = {
    StabilityLevel.STABLE: 1.0,
    StabilityLevel.DEGRADED: 0.75,
    StabilityLevel.CHAT_DISABLED: 0.5,
}
LARGE_MODEL_BILLIONS: float = 70
UNSTABLE_MODEL_TIMEOUT_FACTOR: float = 0.5
DEGRADED_REPEAT_PENALTY: float = 1.15


@dataclass
class StabilityState:
    consecutive_failures: int = 0
    last_failure: FailureClass = FailureClass.NONE
    level: StabilityLevel = StabilityLevel.STABLE


@dataclass(frozen=True)
class CallPlan:
    """Per-call parameters derived from the current stability state."""
    mode: BackendMode
    timeout_seconds: float
    num_ctx: int
    num_predict: int
    repeat_penalty: Optional[float]
    level: StabilityLevel


def matches_resource_exhaustion(text: str) -> bool:
    lowered = text.lower()
    return any(signature in lowered for signature in RESOURCE_EXHAUSTION_SIGNATURES)


class StabilityPolicy:
    """
    Per-instance state machine: STABLE -> DEGRADED -> CHAT_DISABLED.

    Queried once per call via plan(); told the outcome via record_success()
    or record_failure().
    """

    def __init__(self, config: OllamaConfig):
        self._config = config
        self._state = StabilityState()
        self._lock = threading.Lock()
        self._known_unstable = self._is_known_unstable(config)

    @staticmethod
    def _is_known_unstable(config: OllamaConfig) -> bool:
        model = config.model.lower()
        for pattern in config.unstable_models:
            if re.search(pattern, model, re.IGNORECASE):
                return True
        billions = parameter_billions(config.model)
        return billions is not None and billions >= LARGE_MODEL_BILLIONS

    @property
    def state(self) -> StabilityState:
        """Snapshot of the current state."""
        with self._lock:
            return StabilityState(
                consecutive_failures=self._state.consecutive_failures,
                last_failure=self._state.last_failure,
                level=self._state.level,
            )

    @property
    def level(self) -> StabilityLevel:
        with self._lock:
            return self._state.level

    # ─────────────────────────────────────────────────────────────────
    # PLANNING
    # ─────────────────────────────────────────────────────────────────

    def plan(
        self,
        has_tools: bool,
        streaming: bool = False,
        max_output_tokens: Optional[int] = None,
    ) -> CallPlan:
        level = self.level
        config = self._config

        use_chat = has_tools and config.enable_chat_api and level < StabilityLevel.CHAT_DISABLED
        mode = BackendMode.CHAT if use_chat else BackendMode.SIMPLE

        base_timeout = config.streaming_timeout_seconds if streaming else config.timeout_seconds
        timeout = base_timeout * TIMEOUT_FACTORS[level]
        if self._known_unstable:
            timeout *= UNSTABLE_MODEL_TIMEOUT_FACTOR
        timeout = max(timeout, min(MIN_TIMEOUT_SECONDS, base_timeout))

        budget = max_output_tokens or config.max_output_tokens
        num_predict = max(budget >> int(level), min(MIN_NUM_PREDICT, budget))

        num_ctx = max(config.request_context_size >> int(level), MIN_REQUEST_CONTEXT_SIZE)

        repeat_penalty = config.repeat_penalty
        if repeat_penalty is None and level > StabilityLevel.STABLE:
            repeat_penalty = DEGRADED_REPEAT_PENALTY

        return CallPlan(
            mode=mode,
            timeout_seconds=timeout,
            num_ctx=num_ctx,
            num_predict=num_predict,
            repeat_penalty=repeat_penalty,
            level=level,
        )

    # ─────────────────────────────────────────────────────────────────
    # OUTCOMES
    # ─────────────────────────────────────────────────────────────────

    def classify(self, error: BaseException) -> FailureClass:
        """Map a failure to the class that drives degradation."""
        if isinstance(error, OllamaAdapterError):
            if error.kind is ErrorKind.TIMEOUT:
                return FailureClass.TRANSIENT_TIMEOUT
            if error.kind in (ErrorKind.NOT_IMPLEMENTED, ErrorKind.PAYLOAD_TOO_LARGE):
                return FailureClass.NONE
            text = f"{error.message} {error.body_excerpt or ''}"
        else:
            text = str(error)
        if matches_resource_exhaustion(text):
            return FailureClass.RESOURCE_EXHAUSTION
        return FailureClass.NONE

    def record_failure(self, error: BaseException) -> FailureClass:
        """Escalate one level on a qualifying failure; ignore the rest."""
        failure = self.classify(error)
        if failure is FailureClass.NONE:
            return failure

        with self._lock:
            previous = self._state.level
            self._state.consecutive_failures += 1
            self._state.last_failure = failure
            self._state.level = StabilityLevel(min(previous + 1, StabilityLevel.CHAT_DISABLED))
            current = self._state.level
            failures = self._state.consecutive_failures

        if current != previous:
            logger.warning(
                f"{self._config.model}: {failure.value} failure #{failures}, "
                f"stability {previous.name} -> {current.name}"
            )
            if current is StabilityLevel.CHAT_DISABLED:
                logger.warning(
                    f"{self._config.model}: chat mode disabled, tool calls will not be offered "
                    "until a request succeeds"
                )
        return failure

    def record_success(self) -> None:
        with self._lock:
            if self._state.level is not StabilityLevel.STABLE:
                logger.info(f"{self._config.model}: request succeeded, stability reset to STABLE")
            self._state = StabilityState()

    def allows_fallback(self, error: BaseException, mode: BackendMode) -> bool:
        """
        Whether a failed chat call may be re-issued once in simple mode.

        Only ordinary backend rejections qualify (e.g. a model without tool
        support). Timeouts and hardware failures are never re-issued.
        """
        if mode is not BackendMode.CHAT or not isinstance(error, OllamaAdapterError):
            return False
        if error.kind is not ErrorKind.BACKEND_STATUS or error.status_code == 404:
            return False
        return self.classify(error) is FailureClass.NONE

    def reset(self) -> None:
        with self._lock:
            self._state = StabilityState()
