from __future__ import annotations

import asyncio
import json
import logging
import time

import pytest
from pydantic import ValidationError

from conftest import FakeEnvironment, ScriptedLLM, agent_output, default_snapshot
from browser_agent.agent import MAX_STEPS_ERROR, NO_ACTION_TEXT, Agent
from browser_agent.exceptions import ModelRateLimitError
from browser_agent.models import (
    AgentHistory,
    AgentHistoryList,
    AgentOutput,
    AgentSettings,
    AgentState,
    AgentStatus,
    BrowserStateHistory,
    UIElement,
)

DONE = {"done": {"text": "Checked out", "success": True}}


def _settings(**overrides) -> AgentSettings:
    values = {"retry_delay": 0.0, "use_vision": False, "rate_limit_backoff": 0.01}
    values.update(overrides)
    return AgentSettings(**values)


def _agent(llm: ScriptedLLM, environment: FakeEnvironment, **kwargs) -> Agent:
    kwargs.setdefault("settings", _settings())
    return Agent(task="Check out the cart", llm=llm, environment=environment, **kwargs)


@pytest.mark.asyncio
async def test_click_then_done_completes_successfully(environment: FakeEnvironment) -> None:
    llm = ScriptedLLM(
        [
            agent_output({"click_element_by_index": {"index": 7}}),
            agent_output(DONE, goal="finish"),
        ]
    )
    agent = _agent(llm, environment)

    history = await agent.run(max_steps=5)

    assert [(intent.name, intent.params) for intent in environment.intents] == [("click", {"index": 7})]
    assert history.is_done()
    assert history.is_successful() is True
    assert history.final_result() == "Checked out"
    assert agent.state.status == AgentStatus.DONE
    assert agent.state.consecutive_failures == 0
    assert history.action_names() == ["click_element_by_index", "done"]
    assert history.history[0].state.interacted_element[0].text == "Checkout"
    assert history.usage.total_tokens == 240


@pytest.mark.asyncio
async def test_run_fails_after_max_failures_plus_one_environment_errors() -> None:
    environment = FakeEnvironment(snapshot_failures=5)
    llm = ScriptedLLM([])
    agent = _agent(llm, environment, settings=_settings(max_failures=2))

    history = await agent.run(max_steps=10)

    assert agent.state.status == AgentStatus.FAILED
    assert agent.state.consecutive_failures == 3
    assert len(history.history) == 3
    assert all("browser crashed" in error for error in history.errors())
    assert llm.calls == []


@pytest.mark.asyncio
async def test_rate_limit_is_retried_without_counting_a_failure(environment: FakeEnvironment) -> None:
    llm = ScriptedLLM([ModelRateLimitError("slow down", model="fake-model"), agent_output(DONE)])
    agent = _agent(llm, environment, settings=_settings(rate_limit_backoff=0.05))

    started = time.monotonic()
    history = await agent.run(max_steps=3)
    elapsed = time.monotonic() - started

    assert history.is_done()
    assert len(llm.calls) == 2
    assert agent.state.consecutive_failures == 0
    assert not history.has_errors()
    assert elapsed >= 0.04


@pytest.mark.asyncio
async def test_exhausted_rate_limit_retries_count_as_one_failure(environment: FakeEnvironment) -> None:
    llm = ScriptedLLM([ModelRateLimitError("slow down")] * 2 + [agent_output(DONE)])
    agent = _agent(llm, environment, settings=_settings(rate_limit_retries=1))

    history = await agent.run(max_steps=3)

    assert history.is_done()
    assert "ModelRateLimitError" in history.history[0].result[0].error
    assert agent.state.consecutive_failures == 0


@pytest.mark.asyncio
async def test_secret_placeholders_reach_only_the_environment() -> None:
    environment = FakeEnvironment(snapshot=default_snapshot("https://login.example.com"))
    llm = ScriptedLLM(
        [
            agent_output({"input_text": {"index": 1, "text": "<secret>user</secret>"}}),
            agent_output(DONE),
        ]
    )
    agent = _agent(llm, environment, sensitive_data={"https://*.example.com": {"user": "alice"}})

    await agent.run(max_steps=3)

    assert environment.intents[0].params["text"] == "alice"
    sent = [message.text for call in llm.calls for message in call]
    assert not any("alice" in text for text in sent)
    assert any("<secret>user</secret>" in text for text in sent)


def test_unscoped_secrets_without_allowed_domains_warn(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING, logger="browser_agent.agent")

    _agent(ScriptedLLM([]), FakeEnvironment(), sensitive_data={"password": "hunter2"})

    assert any("not scoped to any domain" in record.getMessage() for record in caplog.records)


def test_scoped_secret_outside_allowed_domains_warns(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING, logger="browser_agent.agent")
    environment = FakeEnvironment(allowed_domains=["*.example.com"])

    _agent(ScriptedLLM([]), environment, sensitive_data={"https://bank.test": {"pin": "1234"}})

    assert any("bank.test" in record.getMessage() for record in caplog.records)


@pytest.mark.asyncio
async def test_action_errors_count_and_clean_step_resets(environment: FakeEnvironment) -> None:
    llm = ScriptedLLM(
        [
            agent_output({"click_element_by_index": {"index": 99}}),
            agent_output({"click_element_by_index": {"index": 7}}),
            agent_output(DONE),
        ]
    )
    seen_failures = []

    async def record(agent: Agent) -> None:
        seen_failures.append(agent.state.consecutive_failures)

    agent = _agent(llm, environment)
    await agent.run(max_steps=5, on_step_end=record)

    assert seen_failures == [1, 0, 0]
    assert "does not exist" in agent.history.history[0].result[0].error


@pytest.mark.asyncio
async def test_multi_act_stops_when_new_elements_appear(environment: FakeEnvironment) -> None:
    def add_dialog(env: FakeEnvironment, intent) -> None:
        elements = env.snapshot.elements + [UIElement(index=8, tag="div", text="Confirm dialog")]
        env.snapshot = env.snapshot.model_copy(update={"elements": elements})

    environment.after_dispatch = add_dialog
    llm = ScriptedLLM(
        [agent_output({"click_element_by_index": {"index": 7}}, {"click_element_by_index": {"index": 3}}), agent_output(DONE)]
    )
    agent = _agent(llm, environment)

    history = await agent.run(max_steps=3)

    first_step = history.history[0].result
    assert len(environment.intents) == 1
    assert first_step[-1].extracted_content == "Something new appeared after action 1 / 2"


@pytest.mark.asyncio
async def test_done_must_be_the_only_action(environment: FakeEnvironment) -> None:
    llm = ScriptedLLM([agent_output({"click_element_by_index": {"index": 7}}, DONE), agent_output(DONE)])
    agent = _agent(llm, environment)

    history = await agent.run(max_steps=3)

    assert len(history.history[0].result) == 1
    assert len(history.history) == 2


@pytest.mark.asyncio
async def test_empty_action_list_is_retried_then_finishes_as_failure(environment: FakeEnvironment) -> None:
    llm = ScriptedLLM([agent_output(), agent_output()])
    agent = _agent(llm, environment)

    history = await agent.run(max_steps=3)

    assert len(llm.calls) == 2
    assert history.is_done()
    assert history.is_successful() is False
    assert history.final_result() == NO_ACTION_TEXT


@pytest.mark.asyncio
async def test_validator_rejects_empty_done_text(environment: FakeEnvironment) -> None:
    llm = ScriptedLLM([agent_output({"done": {"text": "   ", "success": True}}), agent_output(DONE)])
    agent = _agent(llm, environment, settings=_settings(validate_output=True))

    history = await agent.run(max_steps=3)

    assert history.history[0].result[0].error.startswith("Invalid done output")
    assert history.history[0].result[0].is_done is False
    assert history.is_done()


@pytest.mark.asyncio
async def test_max_steps_exhaustion_records_failure(environment: FakeEnvironment) -> None:
    llm = ScriptedLLM([agent_output({"go_to_url": {"url": "https://shop.example.com"}})] * 3)
    agent = _agent(llm, environment)

    history = await agent.run(max_steps=2)

    assert agent.state.status == AgentStatus.FAILED
    assert history.history[-1].result[0].error == MAX_STEPS_ERROR
    last_format = llm.output_formats[-1]
    with pytest.raises(ValidationError):
        last_format.model_validate(agent_output({"go_to_url": {"url": "https://x.test"}}))
    assert last_format.model_validate(agent_output(DONE))


@pytest.mark.asyncio
async def test_stop_ends_the_run_between_steps(environment: FakeEnvironment) -> None:
    llm = ScriptedLLM([agent_output({"click_element_by_index": {"index": 7}})] * 3)

    async def stop_now(agent: Agent) -> None:
        agent.stop()

    agent = _agent(llm, environment)
    history = await agent.run(max_steps=5, on_step_end=stop_now)

    assert agent.state.status == AgentStatus.STOPPED
    assert len(history.history) == 1
    assert len(llm.calls) == 1


@pytest.mark.asyncio
async def test_output_arriving_after_stop_is_discarded(environment: FakeEnvironment) -> None:
    llm = ScriptedLLM([agent_output({"click_element_by_index": {"index": 7}})])
    agent = _agent(llm, environment)
    original = llm.ainvoke

    async def stop_during_call(messages, output_format=None):
        agent.stop()
        return await original(messages, output_format)

    llm.ainvoke = stop_during_call

    await agent.step()

    assert environment.intents == []
    assert agent.history.history == []
    assert agent.state.consecutive_failures == 0


@pytest.mark.asyncio
async def test_state_round_trips_through_json(environment: FakeEnvironment) -> None:
    llm = ScriptedLLM([agent_output({"click_element_by_index": {"index": 7}})])
    agent = _agent(llm, environment)
    await agent.step()

    payload = agent.state.to_json()
    restored = AgentState.from_json(payload)

    assert "nSteps" in json.loads(payload)
    assert restored.n_steps == agent.state.n_steps == 2
    assert restored.agent_id == agent.state.agent_id
    assert restored.message_manager_state == agent.state.message_manager_state
    assert restored.last_model_output.action == [{"click_element_by_index": {"index": 7}}]

    follow_up = ScriptedLLM([agent_output(DONE)])
    resumed = _agent(follow_up, environment, injected_state=restored)
    await resumed.step()

    assert resumed.history.is_done()
    sent = [message.text for message in follow_up.calls[0]]
    assert any("click_element_by_index" in text for text in sent)


@pytest.mark.asyncio
async def test_add_new_task_reaches_the_next_prompt(environment: FakeEnvironment) -> None:
    llm = ScriptedLLM([agent_output(DONE)])
    agent = _agent(llm, environment)

    agent.add_new_task("Also print the receipt")
    await agent.step()

    sent = [message.text for message in llm.calls[0]]
    assert any("Also print the receipt" in text for text in sent)
    assert agent.tasks == ["Check out the cart", "Also print the receipt"]


@pytest.mark.asyncio
async def test_planner_output_is_advisory(environment: FakeEnvironment) -> None:
    llm = ScriptedLLM([agent_output(DONE)])
    planner = ScriptedLLM(['{"next_steps": ["click checkout"]}'], model="planner-model")
    agent = _agent(llm, environment, planner_llm=planner)

    history = await agent.run(max_steps=2)

    assert history.is_done()
    assert "click checkout" in agent.state.last_plan
    assert history.history[0].plan == agent.state.last_plan
    assert any("Plan:" in message.text for message in llm.calls[0])
    assert history.usage.by_model["planner-model"].invocations == 1


@pytest.mark.asyncio
async def test_rerun_history_relocates_moved_elements() -> None:
    recorded = AgentHistoryList(
        history=[
            AgentHistory(
                model_output=AgentOutput(next_goal="checkout", action=[{"click_element_by_index": {"index": 7}}]),
                state=BrowserStateHistory(
                    url="https://shop.example.com/cart",
                    interacted_element=[UIElement(index=7, tag="button", text="Checkout")],
                ),
            )
        ]
    )
    moved = default_snapshot().model_copy(
        update={"elements": [UIElement(index=2, tag="a", text="Help"), UIElement(index=12, tag="button", text="Checkout")]}
    )
    environment = FakeEnvironment(snapshot=moved)
    agent = _agent(ScriptedLLM([]), environment)

    results = await agent.rerun_history(recorded, delay_between_actions=0)

    assert results[0].error is None
    assert environment.intents[0].params == {"index": 12}


@pytest.mark.asyncio
async def test_history_file_round_trip(tmp_path, environment: FakeEnvironment) -> None:
    llm = ScriptedLLM([agent_output({"click_element_by_index": {"index": 7}}), agent_output(DONE)])
    agent = _agent(llm, environment)
    await agent.run(max_steps=3)
    target = tmp_path / "history.json"

    agent.save_history(target)
    loaded = AgentHistoryList.load_from_file(target)

    assert loaded.final_result() == "Checked out"
    assert loaded.action_names() == agent.history.action_names()


@pytest.mark.asyncio
async def test_conversation_dump_written_per_step(tmp_path, environment: FakeEnvironment) -> None:
    llm = ScriptedLLM([agent_output(DONE)])
    agent = _agent(llm, environment, settings=_settings(save_conversation_path=str(tmp_path)))

    await agent.run(max_steps=2)

    dump = (tmp_path / "conversation_1.txt").read_text(encoding="utf-8")
    assert "Check out the cart" in dump
    assert "RESPONSE" in dump


@pytest.mark.asyncio
async def test_snapshot_failure_between_actions_keeps_earlier_results(environment: FakeEnvironment) -> None:
    def crash_next_snapshot(env: FakeEnvironment, intent) -> None:
        env.snapshot_failures = 1

    environment.after_dispatch = crash_next_snapshot
    llm = ScriptedLLM(
        [
            agent_output({"click_element_by_index": {"index": 7}}, {"input_text": {"index": 1, "text": "alice"}}),
            agent_output(DONE),
        ]
    )
    agent = _agent(llm, environment)
    seen_failures = []

    async def record(agent: Agent) -> None:
        seen_failures.append(agent.state.consecutive_failures)
        environment.after_dispatch = None

    history = await agent.run(max_steps=3, on_step_end=record)

    first_step = history.history[0].result
    assert [intent.name for intent in environment.intents] == ["click"]
    assert first_step[0].extracted_content == "🖱️ Clicked element with index 7"
    assert "browser crashed" in first_step[1].error
    assert seen_failures[0] == 1
    assert history.is_done()


@pytest.mark.asyncio
async def test_pause_holds_before_the_next_model_call(environment: FakeEnvironment) -> None:
    llm = ScriptedLLM([agent_output({"click_element_by_index": {"index": 7}}), agent_output(DONE)])
    agent = _agent(llm, environment)
    paused = asyncio.Event()

    async def pause_once(agent: Agent) -> None:
        if not paused.is_set():
            agent.pause()
            paused.set()

    run = asyncio.create_task(agent.run(max_steps=5, on_step_end=pause_once))
    await paused.wait()
    await asyncio.sleep(0.05)

    assert len(llm.calls) == 1
    assert agent.state.status == AgentStatus.PAUSED
    assert not run.done()

    agent.resume()
    history = await asyncio.wait_for(run, timeout=5)

    assert len(llm.calls) == 2
    assert history.is_done()
    assert agent.state.status == AgentStatus.DONE


def test_resume_after_stop_is_refused(environment: FakeEnvironment) -> None:
    agent = _agent(ScriptedLLM([]), environment)

    agent.pause()
    agent.stop()
    agent.resume()

    assert agent.state.status == AgentStatus.STOPPED
    assert agent.state.stopped is True


class UnreachableEnvironment(FakeEnvironment):
    async def get_state_snapshot(self, include_screenshot: bool = True):
        raise ConnectionError("CDP socket closed")


@pytest.mark.asyncio
async def test_unexpected_environment_error_counts_and_run_returns_history() -> None:
    llm = ScriptedLLM([])
    agent = _agent(llm, UnreachableEnvironment(), settings=_settings(max_failures=2))

    history = await agent.run(max_steps=10)

    assert agent.state.status == AgentStatus.FAILED
    assert len(history.history) == 3
    assert all("ConnectionError: CDP socket closed" in error for error in history.errors())
    assert llm.calls == []


def test_message_tokens_use_configured_image_cost(environment: FakeEnvironment) -> None:
    cheap = _agent(ScriptedLLM([]), environment, settings=_settings(image_tokens=10))
    costly = _agent(ScriptedLLM([]), environment, settings=_settings(image_tokens=5000))
    snapshot = default_snapshot().model_copy(update={"screenshot": "aGVsbG8="})

    cheap.message_manager.add_state_message(snapshot, use_vision=True)
    costly.message_manager.add_state_message(snapshot, use_vision=True)

    difference = costly.message_manager.state.history[-1].tokens - cheap.message_manager.state.history[-1].tokens
    assert difference == 4990
