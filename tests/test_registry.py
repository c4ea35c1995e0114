from __future__ import annotations

import pytest
from pydantic import BaseModel, Field, ValidationError

from conftest import FakeEnvironment, default_snapshot
from browser_agent.controller import Controller
from browser_agent.exceptions import ActionExecutionError, ActionValidationError
from browser_agent.models import ActionOutcome, ActionResult
from browser_agent.registry import ActionContext, Registry
from browser_agent.sensitive_data import SensitiveDataResolver


class GreetParams(BaseModel):
    name: str


@pytest.mark.asyncio
async def test_invalid_params_never_reach_the_handler() -> None:
    registry = Registry()
    calls = []

    async def greet(params: GreetParams, ctx: ActionContext) -> str:
        calls.append(params)
        return f"hi {params.name}"

    registry.register("greet", "Say hello", greet, param_model=GreetParams)

    result = await registry.execute("greet", {"nickname": "bob"}, ActionContext())

    assert calls == []
    assert result.error_kind == "validation"
    assert "greet" in result.error
    assert result.include_in_memory is True


@pytest.mark.asyncio
async def test_unknown_action_is_a_validation_error() -> None:
    result = await Registry().execute("teleport", {}, ActionContext())

    assert result.error_kind == "validation"
    assert "teleport" in result.error


@pytest.mark.asyncio
async def test_handler_exception_becomes_error_result() -> None:
    registry = Registry()

    @registry.action("Always explodes")
    def explode(amount: int) -> str:
        raise RuntimeError(f"boom {amount}")

    result = await registry.execute("explode", {"amount": 2}, ActionContext())

    assert result.error == "Error executing action explode: RuntimeError: boom 2"
    assert result.error_kind == "execution"


@pytest.mark.asyncio
async def test_action_execution_error_message_is_kept_verbatim() -> None:
    registry = Registry()

    @registry.action("Fails politely")
    async def polite() -> None:
        raise ActionExecutionError("Button is disabled")

    result = await registry.execute("polite", {}, ActionContext())

    assert result.error == "Button is disabled"


@pytest.mark.asyncio
async def test_signature_derived_params_and_context_injection() -> None:
    registry = Registry()
    seen = {}

    @registry.action("Add two numbers")
    async def add(a: int, b: int = 1, ctx: ActionContext = None) -> str:
        seen["ctx"] = ctx
        return str(a + b)

    ctx = ActionContext(context="payload")
    result = await registry.execute("add", '{"a": 2, "b": 5}', ctx)

    assert result.extracted_content == "7"
    assert result.include_in_memory is True
    assert seen["ctx"] is ctx
    assert set(registry.actions["add"].param_model.model_fields) == {"a", "b"}


def test_string_arguments_must_be_json() -> None:
    registry = Registry()
    registry.register("greet", "Say hello", lambda params, ctx: None, param_model=GreetParams)

    with pytest.raises(ActionValidationError):
        registry.validate_params("greet", "{not json")


def test_registering_same_name_overrides() -> None:
    registry = Registry()
    registry.register("greet", "first", lambda params, ctx: "one", param_model=GreetParams)
    registry.register("greet", "second", lambda params, ctx: "two", param_model=GreetParams)

    assert len(registry.actions) == 1
    assert registry.actions["greet"].description == "second"


def test_domain_and_page_filters_limit_availability() -> None:
    registry = Registry()
    registry.register("anywhere", "Always", lambda params, ctx: None, param_model=GreetParams)
    registry.register(
        "shop_only", "Shop", lambda params, ctx: None, param_model=GreetParams, domains=["*.example.com"]
    )
    registry.register(
        "broken_filter",
        "Filter raises",
        lambda params, ctx: None,
        param_model=GreetParams,
        page_filter=lambda snapshot: 1 / 0,
    )

    on_shop = {action.name for action in registry.available_actions(default_snapshot())}
    elsewhere = {action.name for action in registry.available_actions(default_snapshot("https://other.org"))}
    no_page = {action.name for action in registry.available_actions()}

    assert on_shop == {"anywhere", "shop_only"}
    assert elsewhere == {"anywhere"}
    assert no_page == {"anywhere"}
    assert "shop_only" in registry.get_prompt_description(default_snapshot())
    assert "anywhere" not in registry.get_prompt_description(default_snapshot())


def test_action_model_rejects_unknown_and_mixed_keys() -> None:
    registry = Registry()
    registry.register("greet", "Say hello", lambda params, ctx: None, param_model=GreetParams)

    action_model = registry.create_action_model()

    assert action_model.model_validate({"greet": {"name": "x"}})
    with pytest.raises(ValidationError):
        action_model.model_validate({"greet": {"name": "x"}, "other": {}})


def test_excluded_actions_are_not_registered() -> None:
    controller = Controller(exclude_actions=["search_google"])

    assert "search_google" not in controller.registry.actions
    assert "click_element_by_index" in controller.registry.actions


@pytest.mark.asyncio
async def test_click_dispatches_intent_for_existing_element(environment: FakeEnvironment) -> None:
    controller = Controller()
    ctx = ActionContext(environment=environment, snapshot=environment.snapshot)

    result = await controller.act({"click_element_by_index": {"index": 7}}, ctx)

    assert result.error is None
    assert result.extracted_content == "🖱️ Clicked element with index 7"
    assert [(intent.name, intent.params) for intent in environment.intents] == [("click", {"index": 7})]


@pytest.mark.asyncio
async def test_click_with_bad_index_type_is_rejected_before_dispatch(environment: FakeEnvironment) -> None:
    controller = Controller()
    ctx = ActionContext(environment=environment, snapshot=environment.snapshot)

    result = await controller.act({"click_element_by_index": {"index": "seven"}}, ctx)

    assert result.error_kind == "validation"
    assert environment.intents == []


@pytest.mark.asyncio
async def test_click_missing_element_reports_execution_error(environment: FakeEnvironment) -> None:
    controller = Controller()
    ctx = ActionContext(environment=environment, snapshot=environment.snapshot)

    result = await controller.act({"click_element_by_index": {"index": 42}}, ctx)

    assert result.error_kind == "execution"
    assert "index 42 does not exist" in result.error
    assert environment.intents == []


@pytest.mark.asyncio
async def test_environment_refusal_surfaces_as_error(environment: FakeEnvironment) -> None:
    environment.outcomes["navigate"] = ActionOutcome(ok=False, message="Navigation to evil.test is not allowed")
    controller = Controller()
    ctx = ActionContext(environment=environment, snapshot=environment.snapshot)

    result = await controller.act({"go_to_url": {"url": "https://evil.test"}}, ctx)

    assert result.error == "Navigation to evil.test is not allowed"


@pytest.mark.asyncio
async def test_secrets_are_resolved_for_dispatch_and_masked_in_result(environment: FakeEnvironment) -> None:
    controller = Controller()
    resolver = SensitiveDataResolver({"https://*.example.com": {"user": "alice"}})
    ctx = ActionContext(environment=environment, snapshot=environment.snapshot, sensitive_data=resolver)

    result = await controller.act({"input_text": {"index": 1, "text": "<secret>user</secret>"}}, ctx)

    assert environment.intents[0].params == {"index": 1, "text": "alice"}
    assert "alice" not in result.extracted_content
    assert "<secret>user</secret>" in result.extracted_content


@pytest.mark.asyncio
async def test_done_carries_text_and_success() -> None:
    result = await Controller().act({"done": {"text": "All finished", "success": True}}, ActionContext())

    assert isinstance(result, ActionResult)
    assert result.is_done is True
    assert result.success is True
    assert result.extracted_content == "All finished"
    assert result.long_term_memory == "Task completed: True - All finished"


@pytest.mark.asyncio
async def test_structured_done_validates_against_output_model() -> None:
    class Answer(BaseModel):
        price: float

    controller = Controller(output_model=Answer)

    ok = await controller.act({"done": {"success": True, "data": {"price": 9.5}}}, ActionContext())
    bad = await controller.act({"done": {"success": True, "data": {"cost": 9.5}}}, ActionContext())

    assert ok.is_done is True
    assert ok.extracted_content == '{"price":9.5}'
    assert bad.is_done is False
    assert bad.error_kind == "validation"


class ShortCodeParams(BaseModel):
    code: str = Field(max_length=20)


@pytest.mark.asyncio
async def test_resolved_secret_failing_validation_is_a_validation_result() -> None:
    registry = Registry()
    calls = []

    async def enter_code(params: ShortCodeParams, ctx: ActionContext) -> str:
        calls.append(params.code)
        return "entered"

    registry.register("enter_code", "Type a short code", enter_code, param_model=ShortCodeParams)
    ctx = ActionContext(sensitive_data=SensitiveDataResolver({"pin": "9" * 30}))

    result = await registry.execute("enter_code", {"code": "<secret>pin</secret>"}, ctx)

    assert calls == []
    assert result.error_kind == "validation"
    assert "enter_code" in result.error
