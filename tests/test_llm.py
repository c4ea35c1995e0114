from __future__ import annotations

import json
from typing import List, Optional

import httpx
import pytest
import respx
from pydantic import BaseModel

from browser_agent.exceptions import ModelProviderError, ModelRateLimitError, SchemaViolationError
from browser_agent.llm import parse_structured_output
from browser_agent.llm_anthropic import AnthropicMessageSerializer, ChatAnthropic
from browser_agent.llm_openai import ChatOpenAI, OpenAIMessageSerializer
from browser_agent.messages import (
    AssistantMessage,
    ContentPartImage,
    ContentPartText,
    SystemMessage,
    ToolCall,
    UserMessage,
)
from browser_agent.schema import SchemaOptimizer

OPENAI_BASE = "https://llm.example.test/v1"


class Answer(BaseModel):
    answer: str
    confidence: Optional[float] = None


class Address(BaseModel):
    street: str


class Person(BaseModel):
    title: str
    address: Address
    nicknames: List[str] = []


class Node(BaseModel):
    children: List["Node"] = []


def test_parse_structured_output_handles_fences_and_prefixes() -> None:
    fenced = '```json\n{"answer": "42"}\n```'
    prefixed = 'json: {"answer": "43", "confidence": 0.5}'
    narrated = 'Reason: I looked it up. Result: {"answer": "44"}'

    assert parse_structured_output(fenced, Answer).answer == "42"
    assert parse_structured_output(prefixed, Answer).confidence == 0.5
    assert parse_structured_output(narrated, Answer).answer == "44"


def test_parse_structured_output_repairs_unescaped_quotes() -> None:
    raw = '{"answer": "the "best" option"}'

    assert parse_structured_output(raw, Answer).answer == 'the "best" option'


@pytest.mark.parametrize("raw", ["", "no json here", '{"confidence": 0.1}', "[1, 2]"])
def test_parse_structured_output_rejects_bad_payloads(raw: str) -> None:
    with pytest.raises(SchemaViolationError):
        parse_structured_output(raw, Answer, model="m")


def test_optimized_schema_inlines_refs_and_is_strict() -> None:
    schema = SchemaOptimizer.create_optimized_json_schema(Person)

    assert "$defs" not in json.dumps(schema)
    assert "$ref" not in json.dumps(schema)
    assert "title" in schema["properties"]
    assert schema["properties"]["address"]["properties"]["street"]["type"] == "string"
    assert schema["additionalProperties"] is False
    assert schema["required"] == ["title", "address", "nicknames"]
    assert schema["properties"]["address"]["required"] == ["street"]


def test_optimized_schema_rejects_recursive_models() -> None:
    with pytest.raises(ValueError):
        SchemaOptimizer.create_optimized_json_schema(Node)


def test_openai_serializer_replays_tool_calls_as_text() -> None:
    messages = [
        SystemMessage(content="sys"),
        UserMessage(content=[ContentPartText(text="look"), ContentPartImage(url="data:image/png;base64,AAA")]),
        AssistantMessage(content="", tool_calls=[ToolCall(id="1", name="AgentOutput", arguments='{"a": 1}')]),
    ]

    payload = OpenAIMessageSerializer.serialize_messages(messages)

    assert payload[0] == {"role": "system", "content": "sys"}
    assert payload[1]["content"][1]["image_url"]["url"].startswith("data:image/png")
    assert payload[2] == {"role": "assistant", "content": 'AgentOutput: {"a": 1}'}


def test_anthropic_serializer_lifts_system_and_merges_turns() -> None:
    messages = [
        SystemMessage(content="sys"),
        UserMessage(content="task"),
        UserMessage(content=[ContentPartText(text="state"), ContentPartImage(url="data:image/jpeg;base64,QUJD")]),
        AssistantMessage(content="plan"),
    ]

    turns, system = AnthropicMessageSerializer.serialize_messages(messages)

    assert system == "sys"
    assert [turn["role"] for turn in turns] == ["user", "assistant"]
    assert len(turns[0]["content"]) == 3
    image = turns[0]["content"][2]
    assert image["source"] == {"type": "base64", "media_type": "image/jpeg", "data": "QUJD"}


def test_anthropic_serializer_starts_with_user_turn() -> None:
    turns, system = AnthropicMessageSerializer.serialize_messages([AssistantMessage(content="hello")])

    assert system is None
    assert turns[0]["role"] == "user"


def _openai_body(content: str) -> dict:
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 0,
        "model": "gpt-4o-mini",
        "choices": [
            {"index": 0, "message": {"role": "assistant", "content": content}, "finish_reason": "stop"}
        ],
        "usage": {
            "prompt_tokens": 50,
            "completion_tokens": 10,
            "total_tokens": 60,
            "prompt_tokens_details": {"cached_tokens": 20},
        },
    }


@pytest.mark.asyncio
@respx.mock
async def test_openai_structured_call_uses_strict_schema_and_reports_usage() -> None:
    route = respx.post(f"{OPENAI_BASE}/chat/completions").mock(
        return_value=httpx.Response(200, json=_openai_body('{"answer": "42", "confidence": null}'))
    )
    llm = ChatOpenAI("gpt-4o-mini", api_key="test-key", base_url=OPENAI_BASE)

    result = await llm.ainvoke([UserMessage(content="question")], Answer)

    sent = json.loads(route.calls.last.request.content)
    assert sent["response_format"]["json_schema"]["strict"] is True
    assert sent["response_format"]["json_schema"]["name"] == "agent_output"
    assert result.completion == Answer(answer="42")
    assert result.usage.prompt_tokens == 50
    assert result.usage.prompt_cached_tokens == 20


@pytest.mark.asyncio
@respx.mock
async def test_openai_prompt_mode_parses_fenced_output() -> None:
    route = respx.post(f"{OPENAI_BASE}/chat/completions").mock(
        return_value=httpx.Response(200, json=_openai_body('```json\n{"answer": "fenced"}\n```'))
    )
    llm = ChatOpenAI("gpt-4o-mini", api_key="test-key", base_url=OPENAI_BASE, structured_output="prompt")

    result = await llm.ainvoke([SystemMessage(content="sys"), UserMessage(content="q")], Answer)

    sent = json.loads(route.calls.last.request.content)
    assert "response_format" not in sent
    assert "JSON schema" in sent["messages"][0]["content"]
    assert result.completion.answer == "fenced"


@pytest.mark.asyncio
@respx.mock
async def test_openai_errors_are_classified() -> None:
    respx.post(f"{OPENAI_BASE}/chat/completions").mock(
        side_effect=[
            httpx.Response(429, json={"error": {"message": "slow down", "type": "rate_limit"}}),
            httpx.Response(500, json={"error": {"message": "boom", "type": "server_error"}}),
        ]
    )
    llm = ChatOpenAI("gpt-4o-mini", api_key="test-key", base_url=OPENAI_BASE)

    with pytest.raises(ModelRateLimitError):
        await llm.ainvoke([UserMessage(content="q")])
    with pytest.raises(ModelProviderError) as info:
        await llm.ainvoke([UserMessage(content="q")])

    assert not isinstance(info.value, ModelRateLimitError)
    assert info.value.status_code == 500
    assert info.value.model == "gpt-4o-mini"


@pytest.mark.asyncio
@respx.mock
async def test_anthropic_forced_tool_output_is_validated() -> None:
    route = respx.post("https://api.anthropic.com/v1/messages").mock(
        return_value=httpx.Response(
            200,
            json={
                "id": "msg_1",
                "type": "message",
                "role": "assistant",
                "model": "claude-test",
                "content": [{"type": "tool_use", "id": "tu_1", "name": "agent_output", "input": {"answer": "42"}}],
                "stop_reason": "tool_use",
                "stop_sequence": None,
                "usage": {"input_tokens": 30, "output_tokens": 5, "cache_read_input_tokens": 10},
            },
        )
    )
    llm = ChatAnthropic("claude-test", api_key="test-key")

    result = await llm.ainvoke([SystemMessage(content="sys"), UserMessage(content="q")], Answer)

    sent = json.loads(route.calls.last.request.content)
    assert sent["system"] == "sys"
    assert sent["tool_choice"] == {"type": "tool", "name": "agent_output"}
    assert result.completion.answer == "42"
    assert result.usage.prompt_tokens == 40
    assert result.usage.prompt_cached_tokens == 10
