"""OpenAI chat adapter."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar

from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI, RateLimitError
from pydantic import BaseModel, ValidationError

from .config import DEFAULT_MODEL, get_openai_api_key
from .exceptions import ModelProviderError, ModelRateLimitError
from .llm import BaseChatModel, ChatInvokeCompletion, ChatInvokeUsage, parse_structured_output, schema_instruction
from .messages import (
    AssistantMessage,
    BaseMessage,
    ContentPartImage,
    ContentPartRefusal,
    ContentPartText,
    SystemMessage,
)
from .schema import SchemaOptimizer

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

REASONING_MODELS = ("o1", "o3", "o4", "gpt-5")


class OpenAIMessageSerializer:
    """Translate internal messages into Chat Completions payloads."""

    @staticmethod
    def serialize(message: BaseMessage) -> Dict[str, Any]:
        if isinstance(message, SystemMessage):
            return {"role": "system", "content": message.text}
        if isinstance(message, AssistantMessage):
            # Tool calls are replayed as text so history needs no matching tool-result turns.
            return {"role": "assistant", "content": message.text}
        if isinstance(message.content, str):
            return {"role": "user", "content": message.content}
        parts: List[Dict[str, Any]] = []
        for part in message.content:
            if isinstance(part, ContentPartText):
                parts.append({"type": "text", "text": part.text})
            elif isinstance(part, ContentPartImage):
                parts.append({"type": "image_url", "image_url": {"url": part.url, "detail": part.detail}})
            elif isinstance(part, ContentPartRefusal):
                parts.append({"type": "text", "text": f"[Refusal] {part.refusal}"})
        return {"role": "user", "content": parts}

    @classmethod
    def serialize_messages(cls, messages: List[BaseMessage]) -> List[Dict[str, Any]]:
        return [cls.serialize(message) for message in messages]


class ChatOpenAI(BaseChatModel):
    provider = "openai"

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        temperature: Optional[float] = 0.2,
        timeout: Optional[float] = 60.0,
        max_completion_tokens: Optional[int] = 4096,
        reasoning_effort: Literal["low", "medium", "high"] = "low",
        structured_output: Literal["native", "prompt"] = "native",
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self.max_completion_tokens = max_completion_tokens
        self.reasoning_effort = reasoning_effort
        self.structured_output = structured_output
        self.client = client or AsyncOpenAI(
            api_key=api_key or get_openai_api_key(),
            base_url=base_url,
            timeout=timeout,
            max_retries=0,
        )

    @property
    def is_reasoning_model(self) -> bool:
        lowered = self.model.lower()
        return any(lowered.startswith(prefix) for prefix in REASONING_MODELS)

    async def ainvoke(
        self, messages: List[BaseMessage], output_format: Optional[Type[T]] = None
    ) -> ChatInvokeCompletion:
        payload = OpenAIMessageSerializer.serialize_messages(messages)
        params: Dict[str, Any] = {"model": self.model, "messages": payload}
        if self.is_reasoning_model:
            params["reasoning_effort"] = self.reasoning_effort
        elif self.temperature is not None:
            params["temperature"] = self.temperature
        if self.max_completion_tokens is not None:
            params["max_completion_tokens"] = self.max_completion_tokens

        if output_format is not None:
            schema = SchemaOptimizer.create_optimized_json_schema(output_format)
            if self.structured_output == "native":
                params["response_format"] = {
                    "type": "json_schema",
                    "json_schema": {"name": "agent_output", "strict": True, "schema": schema},
                }
            else:
                params["messages"] = _with_schema_instruction(payload, output_format, schema)

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("OpenAI request payload: %s", dump_payload(params["messages"]))
        try:
            response = await self.client.chat.completions.create(**params)
        except RateLimitError as exc:
            raise ModelRateLimitError(str(exc), model=self.name) from exc
        except APITimeoutError as exc:
            raise ModelProviderError(f"Request timed out: {exc}", status_code=504, model=self.name) from exc
        except APIConnectionError as exc:
            raise ModelProviderError(f"Connection error: {exc}", model=self.name) from exc
        except APIStatusError as exc:
            raise ModelProviderError(str(exc), status_code=exc.status_code, model=self.name) from exc

        usage = self._get_usage(response)
        if not response.choices:
            raise ModelProviderError("Response contained no choices", model=self.name)
        message = response.choices[0].message
        content = message.content or ""

        if output_format is None:
            return ChatInvokeCompletion(completion=content, usage=usage)

        if getattr(message, "refusal", None):
            raise ModelProviderError(f"Model refused to answer: {message.refusal}", status_code=400, model=self.name)
        try:
            parsed = output_format.model_validate_json(content)
        except ValidationError:
            parsed = parse_structured_output(content, output_format, model=self.name)
        return ChatInvokeCompletion(completion=parsed, usage=usage)

    def _get_usage(self, response: Any) -> Optional[ChatInvokeUsage]:
        raw = getattr(response, "usage", None)
        if raw is None:
            return None
        completion_tokens = raw.completion_tokens or 0
        details = getattr(raw, "completion_tokens_details", None)
        reasoning = getattr(details, "reasoning_tokens", None) if details else None
        if reasoning and self.is_reasoning_model:
            completion_tokens += reasoning
        prompt_details = getattr(raw, "prompt_tokens_details", None)
        cached = getattr(prompt_details, "cached_tokens", None) if prompt_details else None
        return ChatInvokeUsage(
            prompt_tokens=raw.prompt_tokens or 0,
            prompt_cached_tokens=cached,
            prompt_cache_creation_tokens=None,
            prompt_image_tokens=None,
            completion_tokens=completion_tokens,
            total_tokens=raw.total_tokens or 0,
        )


def _with_schema_instruction(
    payload: List[Dict[str, Any]], output_format: Type[BaseModel], schema: Dict[str, Any]
) -> List[Dict[str, Any]]:
    instruction = schema_instruction(output_format, schema)
    patched = [dict(item) for item in payload]
    for item in patched:
        if item["role"] == "system":
            item["content"] = f"{item['content']}{instruction}"
            return patched
    return [{"role": "system", "content": instruction.strip()}] + patched


def dump_payload(payload: List[Dict[str, Any]]) -> str:
    """Compact payload rendering for debug logs; image data is elided."""
    def _elide(value: Any) -> Any:
        if isinstance(value, dict):
            return {k: ("<image>" if k == "url" and str(v).startswith("data:") else _elide(v)) for k, v in value.items()}
        if isinstance(value, list):
            return [_elide(item) for item in value]
        return value

    return json.dumps(_elide(payload), ensure_ascii=False)[:4000]
