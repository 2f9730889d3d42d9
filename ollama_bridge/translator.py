"""
Request translation: UnifiedRequest -> BackendRequest.

Two target shapes:
- chat (/api/chat): structured message list, supports tool calls
- simple (/api/generate): one flattened transcript prompt, no tools
"""

import json
import logging
import uuid
from typing import Any, Optional, Union

from ollama_bridge.adapters.schema import (
    BackendFunction,
    BackendMessage,
    BackendMode,
    BackendOptions,
    BackendRequest,
    BackendTool,
    BackendToolCall,
    FunctionResponse,
    ResponseFormat,
    ToolDeclaration,
    Turn,
    UnifiedRequest,
)
from ollama_bridge.config import (
    EMPTY_CHAT_PLACEHOLDER,
    TOOLS_SYSTEM_PROMPT,
    OllamaConfig,
)
from ollama_bridge.payload import is_important_line
from ollama_bridge.stability import CallPlan

logger = logging.getLogger(__name__)


LONG_TURN_CHARS = 1000
MAX_CONTEXT_LINES = 10
CONTEXT_TRUNCATION_NOTE = "[Context truncated to prevent prompt length issues]"
JSON_ONLY_INSTRUCTION = "Respond with valid JSON only, no additional text or formatting."

ROLE_PREFIXES = {
    "user": "Human:",
    "model": "Assistant:",
    "system": "System:",
}


def new_tool_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:12]}"


def convert_tools(tools: list[Union[ToolDeclaration, dict]]) -> list[BackendTool]:
    """
    Normalize tool declarations to Ollama's function format.

    Flat format:
        {"name": "...", "description": "...", "parameters": {...}}

    Ollama nested format:
        {"type": "function", "function": {"name": "...", ...}}

    Already-wrapped dicts are passed through.
    """
    converted = []
    for tool in tools:
        if isinstance(tool, ToolDeclaration):
            function = {
                "name": tool.name or "unknown_function",
                "description": tool.description,
                "parameters": tool.parameters,
            }
        elif tool.get("type") == "function" and "function" in tool:
            function = dict(tool["function"])
        else:
            function = dict(tool)
        converted.append(BackendTool(function=function))
    return converted


def tool_result_text(result: FunctionResponse) -> str:
    """Render a tool result as message content."""
    response = result.response
    if isinstance(response, str):
        return response
    if "output" in response:
        output = response["output"]
        return output if isinstance(output, str) else json.dumps(output, ensure_ascii=False)
    if "error" in response:
        return f"Error: {response['error']}"
    return json.dumps(response, ensure_ascii=False)


def schema_instructions(schema: Optional[dict]) -> str:
    """Restate a JSON schema as prompt text; the backend alone doesn't enforce it."""
    if not schema:
        return "Please respond in valid JSON format."
    try:
        schema_text = json.dumps(schema, indent=2)
    except (TypeError, ValueError):
        return "Please respond in valid JSON format."
    return (
        "Please respond in valid JSON format according to the following schema:\n"
        f"```json\n{schema_text}\n```\n\n"
        "Ensure your response is valid JSON that conforms to this schema."
    )


def format_instructions(response_format: ResponseFormat) -> Optional[str]:
    if response_format.type == "json_schema":
        return schema_instructions(response_format.json_schema) + "\n\n" + JSON_ONLY_INSTRUCTION
    if response_format.type == "json":
        return JSON_ONLY_INSTRUCTION
    return None


def backend_format(response_format: ResponseFormat) -> Optional[Union[str, dict[str, Any]]]:
    if response_format.type == "json_schema" and response_format.json_schema:
        return response_format.json_schema
    if response_format.type in ("json", "json_schema"):
        return "json"
    return None


def filter_context_text(text: str) -> str:
    """
    Reduce a long context block to its short / high-value lines.

    Host applications stuff environment context (cwd, date, OS, file trees)
    into system or early user turns; small models drown in it.
    """
    if len(text) <= LONG_TURN_CHARS:
        return text
    lines = text.split("\n")
    important = [line for line in lines if is_important_line(line)][:MAX_CONTEXT_LINES]
    if len(important) < len(lines):
        return "\n".join(important) + "\n\n" + CONTEXT_TRUNCATION_NOTE
    return text


# ─────────────────────────────────────────────────────────────────────
# CHAT MODE
# ─────────────────────────────────────────────────────────────────────

def build_chat_messages(turns: list[Turn]) -> list[BackendMessage]:
    """
    One backend message per turn.

    Tool results go out as role "tool", never "user": a user-role tool
    result reads as a fresh instruction and the model re-issues the call.
    """
    messages: list[BackendMessage] = []

    for turn in turns:
        results = turn.function_responses
        text = turn.text.strip()

        if results:
            for index, result in enumerate(results):
                content = tool_result_text(result).strip()
                if index == 0 and text:
                    content = f"{text}\n{content}" if content else text
                messages.append(BackendMessage(role="tool", content=content, tool_name=result.name))
            continue

        calls = [
            BackendToolCall(
                id=call.id or new_tool_call_id(),
                function=BackendFunction(name=call.name, arguments=dict(call.args)),
            )
            for call in turn.function_calls
        ]

        if turn.role == "model":
            role = "assistant"
        elif turn.role == "system":
            role = "system"
        else:
            role = "user"

        if not text and not calls:
            continue
        messages.append(BackendMessage(role=role, content=text, tool_calls=calls or None))

    return messages


# ─────────────────────────────────────────────────────────────────────
# SIMPLE MODE
# ─────────────────────────────────────────────────────────────────────

def _turn_to_text(turn: Turn) -> str:
    pieces = []
    for part in turn.parts:
        if part.text is not None:
            pieces.append(part.text)
        elif part.function_call is not None:
            args = json.dumps(part.function_call.args, ensure_ascii=False, sort_keys=True)
            pieces.append(f"\n[tool call] {part.function_call.name}({args})\n")
        elif part.function_response is not None:
            result = tool_result_text(part.function_response)
            pieces.append(f"\n[tool result] {part.function_response.name}: {result}\n")
    return "".join(pieces).strip()


def flatten_transcript(turns: list[Turn]) -> str:
    """
    Flatten turns into a Human:/Assistant:/System: transcript.

    Ends with an open "Assistant:" so the model continues as the assistant.
    Long system turns and non-final user turns are filtered to their
    important lines.
    """
    blocks = []
    last_user_index = max(
        (i for i, turn in enumerate(turns) if turn.role == "user"), default=-1
    )

    for index, turn in enumerate(turns):
        text = _turn_to_text(turn)
        if not text:
            continue
        if turn.role == "system" or (turn.role == "user" and index != last_user_index):
            text = filter_context_text(text)
        prefix = ROLE_PREFIXES.get(turn.role, "Human:")
        blocks.append(f"{prefix} {text}")

    if blocks:
        blocks.append("Assistant:")
    return "\n\n".join(blocks)


# ─────────────────────────────────────────────────────────────────────
# TRANSLATOR
# ─────────────────────────────────────────────────────────────────────

class RequestTranslator:
    """Builds BackendRequests from UnifiedRequests for one configured model."""

    def __init__(self, config: OllamaConfig):
        self._config = config

    def to_backend_request(
        self,
        request: UnifiedRequest,
        mode: BackendMode,
        plan: CallPlan,
        stream: bool = False,
    ) -> BackendRequest:
        temperature = request.options.temperature
        if temperature is None:
            temperature = self._config.temperature

        options = BackendOptions(
            temperature=temperature,
            num_ctx=plan.num_ctx,
            num_predict=plan.num_predict,
            repeat_penalty=plan.repeat_penalty,
        )
        response_format = request.options.response_format
        instructions = format_instructions(response_format)

        if mode is BackendMode.CHAT:
            tools = convert_tools(request.tools)
            messages = []
            if tools:
                messages.append(BackendMessage(role="system", content=TOOLS_SYSTEM_PROMPT))
            messages.extend(build_chat_messages(request.turns))
            if len(messages) == 1 and tools:
                logger.warning("No conversation content in request, adding placeholder user message")
                messages.append(BackendMessage(role="user", content=EMPTY_CHAT_PLACEHOLDER))
            if instructions:
                messages = self._append_instructions(messages, instructions)
            return BackendRequest(
                model=self._config.model,
                mode=mode,
                messages=messages,
                tools=tools,
                stream=stream,
                format=backend_format(response_format),
                keep_alive=self._config.keep_alive,
                options=options,
            )

        prompt = flatten_transcript(request.turns)
        if instructions:
            prompt = f"{prompt}\n\n{instructions}" if prompt else instructions
        return BackendRequest(
            model=self._config.model,
            mode=mode,
            prompt=prompt,
            stream=stream,
            format=backend_format(response_format),
            keep_alive=self._config.keep_alive,
            options=options,
        )

    @staticmethod
    def _append_instructions(messages: list[BackendMessage], instructions: str) -> list[BackendMessage]:
        """Attach format instructions to the last user message (or add one)."""
        for index in range(len(messages) - 1, -1, -1):
            if messages[index].role == "user":
                message = messages[index]
                content = f"{message.content}\n\n{instructions}" if message.content else instructions
                updated = list(messages)
                updated[index] = message.model_copy(update={"content": content})
                return updated
        return messages + [BackendMessage(role="user", content=instructions)]
