"""Anthropic chat adapter."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Literal, Optional, Tuple, Type, TypeVar

from anthropic import APIConnectionError, APIStatusError, APITimeoutError, AsyncAnthropic, RateLimitError
from pydantic import BaseModel, ValidationError

from .config import DEFAULT_ANTHROPIC_MODEL, get_anthropic_api_key
from .exceptions import ModelProviderError, ModelRateLimitError, SchemaViolationError
from .llm import BaseChatModel, ChatInvokeCompletion, ChatInvokeUsage, parse_structured_output, schema_instruction
from .messages import AssistantMessage, BaseMessage, ContentPartImage, ContentPartRefusal, ContentPartText, SystemMessage
from .schema import SchemaOptimizer

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

TOOL_NAME = "agent_output"


class AnthropicMessageSerializer:
    """Translate internal messages into the Messages API shape.

    The system message is lifted into the top-level ``system`` argument and
    consecutive turns of the same role are merged, since the API expects strictly
    alternating user/assistant turns.
    """

    @staticmethod
    def _image_block(part: ContentPartImage) -> Dict[str, Any]:
        if part.url.startswith("data:"):
            header, _, data = part.url.partition(",")
            media_type = header[5:].split(";", 1)[0] or part.media_type
            return {"type": "image", "source": {"type": "base64", "media_type": media_type, "data": data}}
        return {"type": "image", "source": {"type": "url", "url": part.url}}

    @classmethod
    def _blocks(cls, message: BaseMessage) -> List[Dict[str, Any]]:
        if isinstance(message, AssistantMessage) or isinstance(message.content, str):
            text = message.text
            return [{"type": "text", "text": text}] if text.strip() else []
        blocks: List[Dict[str, Any]] = []
        for part in message.content:
            if isinstance(part, ContentPartText) and part.text.strip():
                blocks.append({"type": "text", "text": part.text})
            elif isinstance(part, ContentPartImage):
                blocks.append(cls._image_block(part))
            elif isinstance(part, ContentPartRefusal):
                blocks.append({"type": "text", "text": f"[Refusal] {part.refusal}"})
        return blocks

    @classmethod
    def serialize_messages(cls, messages: List[BaseMessage]) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        system_chunks: List[str] = []
        turns: List[Dict[str, Any]] = []
        for message in messages:
            if isinstance(message, SystemMessage):
                system_chunks.append(message.text)
                continue
            role = "assistant" if isinstance(message, AssistantMessage) else "user"
            blocks = cls._blocks(message)
            if not blocks:
                continue
            if turns and turns[-1]["role"] == role:
                turns[-1]["content"].extend(blocks)
            else:
                turns.append({"role": role, "content": blocks})
        if turns and turns[0]["role"] != "user":
            turns.insert(0, {"role": "user", "content": [{"type": "text", "text": "Continue."}]})
        system = "\n\n".join(system_chunks) if system_chunks else None
        return turns, system


class ChatAnthropic(BaseChatModel):
    provider = "anthropic"

    def __init__(
        self,
        model: str = DEFAULT_ANTHROPIC_MODEL,
        *,
        api_key: Optional[str] = None,
        temperature: Optional[float] = 0.2,
        max_tokens: int = 4096,
        timeout: Optional[float] = 60.0,
        structured_output: Literal["native", "prompt"] = "native",
        client: Optional[AsyncAnthropic] = None,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.structured_output = structured_output
        self.client = client or AsyncAnthropic(api_key=api_key or get_anthropic_api_key(), timeout=timeout, max_retries=0)

    async def ainvoke(
        self, messages: List[BaseMessage], output_format: Optional[Type[T]] = None
    ) -> ChatInvokeCompletion:
        turns, system = AnthropicMessageSerializer.serialize_messages(messages)
        params: Dict[str, Any] = {"model": self.model, "max_tokens": self.max_tokens, "messages": turns}
        if self.temperature is not None:
            params["temperature"] = self.temperature

        if output_format is not None:
            schema = SchemaOptimizer.create_optimized_json_schema(output_format)
            if self.structured_output == "native":
                params["tools"] = [
                    {
                        "name": TOOL_NAME,
                        "description": f"Return the response as {output_format.__name__}",
                        "input_schema": schema,
                    }
                ]
                params["tool_choice"] = {"type": "tool", "name": TOOL_NAME}
            else:
                system = f"{system or ''}{schema_instruction(output_format, schema)}"
        if system:
            params["system"] = system

        try:
            response = await self.client.messages.create(**params)
        except RateLimitError as exc:
            raise ModelRateLimitError(str(exc), model=self.name) from exc
        except APITimeoutError as exc:
            raise ModelProviderError(f"Request timed out: {exc}", status_code=504, model=self.name) from exc
        except APIConnectionError as exc:
            raise ModelProviderError(f"Connection error: {exc}", model=self.name) from exc
        except APIStatusError as exc:
            raise ModelProviderError(str(exc), status_code=exc.status_code, model=self.name) from exc

        usage = self._get_usage(response)
        text = "".join(getattr(block, "text", "") for block in response.content if block.type == "text")

        if output_format is None:
            return ChatInvokeCompletion(completion=text, usage=usage)

        for block in response.content:
            if block.type == "tool_use" and block.name == TOOL_NAME:
                tool_input = block.input
                if isinstance(tool_input, str):
                    return ChatInvokeCompletion(
                        completion=parse_structured_output(tool_input, output_format, model=self.name), usage=usage
                    )
                try:
                    return ChatInvokeCompletion(completion=output_format.model_validate(tool_input), usage=usage)
                except ValidationError as exc:
                    # Models occasionally double-encode nested objects as JSON strings.
                    repaired = _decode_string_fields(tool_input)
                    try:
                        return ChatInvokeCompletion(completion=output_format.model_validate(repaired), usage=usage)
                    except ValidationError:
                        raise SchemaViolationError(
                            f"Tool input failed validation against {output_format.__name__}: {exc.error_count()} error(s)",
                            model=self.name,
                        ) from exc

        return ChatInvokeCompletion(completion=parse_structured_output(text, output_format, model=self.name), usage=usage)

    def _get_usage(self, response: Any) -> Optional[ChatInvokeUsage]:
        raw = getattr(response, "usage", None)
        if raw is None:
            return None
        cache_read = getattr(raw, "cache_read_input_tokens", None) or 0
        cache_creation = getattr(raw, "cache_creation_input_tokens", None)
        prompt_tokens = (raw.input_tokens or 0) + cache_read
        completion_tokens = raw.output_tokens or 0
        return ChatInvokeUsage(
            prompt_tokens=prompt_tokens,
            prompt_cached_tokens=cache_read or None,
            prompt_cache_creation_tokens=cache_creation,
            prompt_image_tokens=None,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )


def _decode_string_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    decoded: Dict[str, Any] = {}
    for key, value in payload.items():
        if isinstance(value, str) and value[:1] in {"{", "["}:
            try:
                decoded[key] = json.loads(value)
                continue
            except json.JSONDecodeError:
                pass
        decoded[key] = value
    return decoded
