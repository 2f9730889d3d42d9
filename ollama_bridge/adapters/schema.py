"""
Request/response models on both sides of the adapter.

Unified* types are the caller-facing content-generation shapes.
Backend* types mirror the Ollama wire protocol.
"""

import json
from enum import Enum
from typing import Any, List, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ─────────────────────────────────────────────────────────────────────
# UNIFIED (CALLER-FACING) SHAPES
# ─────────────────────────────────────────────────────────────────────

class FunctionCall(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    args: Dict[str, Any] = Field(default_factory=dict)
    id: Optional[str] = None


class FunctionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    response: Union[Dict[str, Any], str] = Field(default_factory=dict)
    id: Optional[str] = None


class Part(BaseModel):
    """One fragment of a turn: text, a tool call, or a tool result."""
    model_config = ConfigDict(frozen=True)

    text: Optional[str] = None
    function_call: Optional[FunctionCall] = None
    function_response: Optional[FunctionResponse] = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "Part":
        present = [
            f for f in (self.text, self.function_call, self.function_response)
            if f is not None
        ]
        if len(present) != 1:
            raise ValueError("Part must carry exactly one of text, function_call, function_response")
        return self

    @classmethod
    def from_text(cls, text: str) -> "Part":
        return cls(text=text)

    @classmethod
    def from_function_call(cls, name: str, args: Optional[dict] = None, id: Optional[str] = None) -> "Part":
        return cls(function_call=FunctionCall(name=name, args=args or {}, id=id))

    @classmethod
    def from_function_response(cls, name: str, response: Union[dict, str], id: Optional[str] = None) -> "Part":
        return cls(function_response=FunctionResponse(name=name, response=response, id=id))


class Turn(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["user", "model", "system"]
    parts: List[Part] = Field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if p.text is not None)

    @property
    def function_calls(self) -> List[FunctionCall]:
        return [p.function_call for p in self.parts if p.function_call is not None]

    @property
    def function_responses(self) -> List[FunctionResponse]:
        return [p.function_response for p in self.parts if p.function_response is not None]


class ToolDeclaration(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )


class ResponseFormat(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["plain", "json", "json_schema"] = "plain"
    json_schema: Optional[Dict[str, Any]] = None


class GenerationOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    temperature: Optional[float] = None
    response_format: ResponseFormat = Field(default_factory=ResponseFormat)
    max_output_tokens: Optional[int] = None


class UnifiedRequest(BaseModel):
    """
    Backend-agnostic generation request.

    Immutable input to one adapter call.
    """
    model_config = ConfigDict(frozen=True)

    turns: List[Turn]
    tools: List[ToolDeclaration] = Field(default_factory=list)
    options: GenerationOptions = Field(default_factory=GenerationOptions)

    @property
    def has_tools(self) -> bool:
        return len(self.tools) > 0


class FinishReason(str, Enum):
    IN_PROGRESS = "in_progress"
    STOP = "stop"


class UsageMetadata(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class Candidate(BaseModel):
    parts: List[Part] = Field(default_factory=list)
    finish_reason: FinishReason = FinishReason.IN_PROGRESS
    role: Literal["model"] = "model"


class UnifiedResponse(BaseModel):
    """
    Standardized response object from the adapter.

    Only one candidate is ever produced.
    """
    candidates: List[Candidate]
    usage: UsageMetadata = Field(default_factory=UsageMetadata)

    @property
    def text(self) -> str:
        if not self.candidates:
            return ""
        return "".join(p.text for p in self.candidates[0].parts if p.text is not None)

    @property
    def function_calls(self) -> List[FunctionCall]:
        if not self.candidates:
            return []
        return [p.function_call for p in self.candidates[0].parts if p.function_call is not None]

    @property
    def finish_reason(self) -> FinishReason:
        return self.candidates[0].finish_reason


# ─────────────────────────────────────────────────────────────────────
# BACKEND (OLLAMA WIRE) SHAPES
# ─────────────────────────────────────────────────────────────────────

class BackendMode(str, Enum):
    SIMPLE = "simple"
    CHAT = "chat"

    @property
    def endpoint(self) -> str:
        return "/api/generate" if self is BackendMode.SIMPLE else "/api/chat"


class BackendFunction(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    # Sent as an object; Ollama rejects stringified arguments on input.
    # Some models still stream them back as strings.
    arguments: Union[Dict[str, Any], str] = Field(default_factory=dict)

    @field_validator("arguments", mode="before")
    @classmethod
    def _null_arguments(cls, value: Any) -> Any:
        # Models with no-argument tools send "arguments": null
        return {} if value is None else value


class BackendToolCall(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    function: BackendFunction
    id: Optional[str] = None
    type: Literal["function"] = "function"


class BackendMessage(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    role: Literal["system", "user", "assistant", "tool"]
    content: str = ""
    tool_calls: Optional[List[BackendToolCall]] = None
    tool_name: Optional[str] = None


class BackendTool(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["function"] = "function"
    function: Dict[str, Any]


class BackendOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    temperature: Optional[float] = None
    num_ctx: Optional[int] = None
    num_predict: Optional[int] = None
    repeat_penalty: Optional[float] = None


class BackendRequest(BaseModel):
    """One outbound call to /api/generate (simple) or /api/chat (chat)."""
    model_config = ConfigDict(frozen=True)

    model: str
    mode: BackendMode
    prompt: Optional[str] = None
    messages: List[BackendMessage] = Field(default_factory=list)
    tools: List[BackendTool] = Field(default_factory=list)
    stream: bool = False
    format: Optional[Union[str, Dict[str, Any]]] = None
    keep_alive: Optional[str] = None
    options: BackendOptions = Field(default_factory=BackendOptions)

    def to_payload(self) -> dict:
        """Render the wire body, omitting unset fields."""
        payload: dict = {"model": self.model, "stream": self.stream}
        if self.mode is BackendMode.SIMPLE:
            payload["prompt"] = self.prompt or ""
        else:
            payload["messages"] = [m.model_dump(exclude_none=True) for m in self.messages]
            if self.tools:
                payload["tools"] = [t.model_dump() for t in self.tools]
        if self.format is not None:
            payload["format"] = self.format
        if self.keep_alive is not None:
            payload["keep_alive"] = self.keep_alive
        options = self.options.model_dump(exclude_none=True)
        if options:
            payload["options"] = options
        return payload

    def to_json_bytes(self) -> bytes:
        """Exact bytes put on the wire."""
        return json.dumps(self.to_payload(), ensure_ascii=False).encode("utf-8")

    def serialized_size(self) -> int:
        return len(self.to_json_bytes())


class BackendResponseRecord(BaseModel):
    """
    One /api/generate or /api/chat response object.

    A buffered call returns one record; a stream returns one per line.
    """
    model_config = ConfigDict(extra="ignore")

    response: Optional[str] = None
    message: Optional[BackendMessage] = None
    done: bool = False
    tool_calls: Optional[List[BackendToolCall]] = None
    prompt_eval_count: Optional[int] = None
    eval_count: Optional[int] = None
    total_duration: Optional[int] = None
    load_duration: Optional[int] = None

    @property
    def text(self) -> str:
        if self.message is not None:
            return self.message.content or ""
        return self.response or ""

    @property
    def raw_tool_calls(self) -> List[BackendToolCall]:
        if self.message is not None and self.message.tool_calls:
            return list(self.message.tool_calls)
        return list(self.tool_calls or [])


class ModelSummary(BaseModel):
    """One entry of /api/tags."""
    model_config = ConfigDict(extra="ignore")

    name: str
    size: Optional[int] = None
    details: Dict[str, Any] = Field(default_factory=dict)
