"""Provider-agnostic chat model contract and structured-output helpers."""

from __future__ import annotations

import json
import logging
import math
import re
from abc import ABC, abstractmethod
from typing import Any, Generic, List, Optional, Sequence, Type, TypeVar, Union, overload

from pydantic import BaseModel, ValidationError

from .exceptions import SchemaViolationError
from .messages import BaseMessage, ContentPartImage, ContentPartText

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

CHARS_PER_TOKEN = 3
IMAGE_TOKENS = 800


class ChatInvokeUsage(BaseModel):
    prompt_tokens: int = 0
    prompt_cached_tokens: Optional[int] = None
    prompt_cache_creation_tokens: Optional[int] = None
    prompt_image_tokens: Optional[int] = None
    completion_tokens: int = 0
    total_tokens: int = 0


class ChatInvokeCompletion(BaseModel, Generic[T]):
    completion: Any
    thinking: Optional[str] = None
    usage: Optional[ChatInvokeUsage] = None


def estimate_text_tokens(text: str) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_message_tokens(message: BaseMessage, image_tokens: int = IMAGE_TOKENS) -> int:
    """Conservative character-based estimate used when a provider tokenizer is unavailable."""
    if isinstance(message.content, str):
        tokens = estimate_text_tokens(message.content)
    else:
        tokens = 0
        for part in message.content:
            if isinstance(part, ContentPartImage):
                tokens += image_tokens
            elif isinstance(part, ContentPartText):
                tokens += estimate_text_tokens(part.text)
            else:
                tokens += estimate_text_tokens(part.refusal)
    for call in getattr(message, "tool_calls", None) or []:
        tokens += estimate_text_tokens(call.name) + estimate_text_tokens(call.arguments)
    return tokens


class BaseChatModel(ABC):
    """One interface for every provider: send messages, optionally get a typed object back."""

    model: str
    provider: str = "unknown"

    @property
    def name(self) -> str:
        return self.model

    @overload
    async def ainvoke(self, messages: List[BaseMessage], output_format: None = None) -> ChatInvokeCompletion: ...

    @overload
    async def ainvoke(self, messages: List[BaseMessage], output_format: Type[T]) -> ChatInvokeCompletion[T]: ...

    @abstractmethod
    async def ainvoke(
        self, messages: List[BaseMessage], output_format: Optional[Type[T]] = None
    ) -> ChatInvokeCompletion:
        raise NotImplementedError

    def count_tokens(
        self, messages: Union[BaseMessage, Sequence[BaseMessage]], image_tokens: int = IMAGE_TOKENS
    ) -> int:
        if not isinstance(messages, (list, tuple)):
            messages = [messages]
        return sum(estimate_message_tokens(message, image_tokens) for message in messages)


def schema_instruction(output_format: Type[BaseModel], schema: dict) -> str:
    """Instruction appended to the system prompt when the provider lacks native structured output."""
    return (
        "\n\nRespond ONLY with a single JSON object (no prose, no code fences) that matches this JSON schema"
        f" for {output_format.__name__}:\n{json.dumps(schema, ensure_ascii=False)}"
    )


def parse_structured_output(raw: str, output_format: Type[T], model: Optional[str] = None) -> T:
    """Extract a JSON object from free text and validate it against ``output_format``."""
    logger.debug("Structured output raw response: %s", raw)
    payload_str, _ = _extract_json_and_reason(raw or "")
    if not payload_str:
        raise SchemaViolationError("Model produced an empty response", model=model)

    sanitized = _sanitize_json_string(payload_str)
    try:
        payload = json.loads(sanitized)
    except json.JSONDecodeError as exc:
        logger.debug("Sanitized structured payload repr: %r", sanitized)
        raise SchemaViolationError(f"Model returned invalid JSON: {exc}", model=model) from exc

    if not isinstance(payload, dict):
        raise SchemaViolationError("Model response must be a JSON object", model=model)

    try:
        return output_format.model_validate(payload)
    except ValidationError as exc:
        raise SchemaViolationError(
            f"Model response failed validation against {output_format.__name__}: {exc.error_count()} error(s)",
            model=model,
        ) from exc


def _extract_json_and_reason(content: str) -> tuple[str, Optional[str]]:
    if not content:
        return "", None
    trimmed = content.strip()
    reason = None
    # models sometimes narrate a 'Reason:' preamble outside the JSON
    if "Reason:" in trimmed:
        pre_reason, post_reason = trimmed.split("Reason:", 1)
        trimmed = pre_reason.strip()
        reason_candidate = post_reason.strip()
        if "{" in reason_candidate:
            before_json, after_json = reason_candidate.split("{", 1)
            reason = before_json.split("Result:", 1)[0].strip()
            trimmed += " {" + after_json
        else:
            reason = reason_candidate.split("Result:", 1)[0].strip()
    trimmed = _strip_json_prefix(trimmed)
    trimmed = _remove_code_fences(trimmed)
    trimmed = _strip_json_prefix(trimmed)
    if trimmed.startswith("{") and trimmed.endswith("}"):
        return trimmed, reason
    start = trimmed.find("{")
    end = trimmed.rfind("}")
    if start != -1 and end != -1 and end > start:
        return trimmed[start : end + 1], reason
    return trimmed, reason


def _remove_code_fences(text: str) -> str:
    if text.startswith("```"):
        fence = text.split("```")
        if len(fence) >= 3:
            return fence[1].strip()
        return text.lstrip("`")
    return text


def _strip_json_prefix(text: str) -> str:
    if not text:
        return ""
    if text.lower().startswith("json"):
        return text[4:].lstrip(": \n\t")
    return text


_INVALID_ESCAPE_FINDER = re.compile(r"\\([^\"\\/bfnrtu])")


def _sanitize_json_string(data: str) -> str:
    """Drop escapes JSON does not allow (e.g. CSS-style '\\ ') and escape stray inner quotes."""
    if not data or "\\" not in data:
        return _escape_unquoted_quotes(data)
    fixed = _INVALID_ESCAPE_FINDER.sub(r"\1", data)
    fixed = fixed.replace("\\ ", " ")
    return _escape_unquoted_quotes(fixed)


def _escape_unquoted_quotes(data: str) -> str:
    """Escape double quotes that appear inside string literals without backslashes."""
    result: List[str] = []
    in_string = False
    escaped = False

    for idx, char in enumerate(data):
        if not in_string:
            if char == '"' and not escaped:
                in_string = True
            result.append(char)
            escaped = char == "\\"
            continue

        if escaped:
            result.append(char)
            escaped = False
            continue

        if char == "\\":
            result.append(char)
            escaped = True
            continue

        if char == '"':
            next_idx = idx + 1
            while next_idx < len(data) and data[next_idx].isspace():
                next_idx += 1
            if next_idx >= len(data) or data[next_idx] in {",", "}", "]", ":"}:
                in_string = False
                result.append(char)
            else:
                result.append('\\"')
        else:
            result.append(char)

    return "".join(result)
