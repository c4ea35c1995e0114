"""Agent orchestrator: the observe → decide → act → evaluate step loop."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, ValidationError

from .controller import Controller
from .environment import Environment
from .exceptions import (
    ActionExecutionError,
    BrowserEnvironmentError,
    ContextBudgetError,
    ModelProviderError,
    ModelRateLimitError,
    SchemaViolationError,
)
from .llm import BaseChatModel
from .message_manager import MessageManager
from .messages import BaseMessage, ContentPartText, UserMessage, messages_to_text
from .models import (
    ActionResult,
    AgentHistory,
    AgentHistoryList,
    AgentOutput,
    AgentSettings,
    AgentState,
    AgentStatus,
    AgentStepInfo,
    BrowserStateHistory,
    BrowserStateSnapshot,
    StepMetadata,
    StepPhase,
    UIElement,
)
from .prompts import PlannerPrompt, SystemPrompt
from .registry import ActionContext
from .robustness import exponential_backoffs, with_retries
from .sensitive_data import SensitiveData, SensitiveDataResolver
from .telemetry import TelemetryWriter
from .tokens import TokenCost
from .utils import match_url_with_domain_pattern
from .workspace import FileSystem

logger = logging.getLogger(__name__)

LAST_STEP_NOTE = (
    'Now comes your last step. Use only the "done" action now. No other actions - so here your action sequence '
    'must have length 1. If the task is not yet fully finished as requested by the user, set success in "done" '
    'to false! E.g. if not all steps are fully completed. If the task is fully finished, set success in "done" to '
    "true. Include everything you found out for the ultimate task in the done text."
)

EMPTY_ACTION_NOTE = (
    "You forgot to return an action. Please respond only with a valid JSON action according to the expected format."
)

NO_ACTION_TEXT = "No next action returned by LLM!"

MAX_STEPS_ERROR = "Failed to complete task in maximum steps"

AgentHook = Callable[["Agent"], Awaitable[None]]


class _AgentInterrupted(Exception):
    """Raised inside a step when stop() was requested; never escapes the agent."""


def _element_key(element: UIElement) -> str:
    return f"{element.tag}|{element.text}|{sorted(element.attributes.items())}"


def save_conversation(input_messages: List[BaseMessage], response: AgentOutput, target: Path) -> None:
    """Write one step's prompt and the model's answer to a text file for debugging."""
    target.parent.mkdir(parents=True, exist_ok=True)
    body = messages_to_text(input_messages)
    answer = json.dumps(response.model_dump(exclude_none=True), indent=2, ensure_ascii=False)
    target.write_text(f"{body}\n{' RESPONSE '.center(40, '-')}\n{answer}\n", encoding="utf-8")


class Agent:
    def __init__(
        self,
        task: str,
        llm: BaseChatModel,
        environment: Environment,
        controller: Optional[Controller] = None,
        settings: Optional[AgentSettings] = None,
        sensitive_data: Optional[SensitiveData] = None,
        injected_state: Optional[AgentState] = None,
        initial_actions: Optional[List[Dict[str, Dict[str, Any]]]] = None,
        planner_llm: Optional[BaseChatModel] = None,
        page_extraction_llm: Optional[BaseChatModel] = None,
        token_cost: Optional[TokenCost] = None,
        output_model: Optional[Type[BaseModel]] = None,
        file_system_path: Optional[str] = None,
        register_new_step_callback: Optional[Callable[..., Any]] = None,
        register_done_callback: Optional[Callable[[AgentHistoryList], Any]] = None,
        telemetry_path: Optional[str] = None,
        context: Any = None,
    ) -> None:
        self.task = task
        self.tasks: List[str] = [task]
        self.llm = llm
        self.environment = environment
        self.settings = settings or AgentSettings()
        self.output_model = output_model
        self.controller = controller or Controller(output_model=output_model)
        self.sensitive_data = SensitiveDataResolver(sensitive_data) if sensitive_data else None
        self.state = injected_state or AgentState()
        self.initial_actions = initial_actions
        self.planner_llm = planner_llm
        self.page_extraction_llm = page_extraction_llm or llm
        self.register_new_step_callback = register_new_step_callback
        self.register_done_callback = register_done_callback
        self.context = context
        self.phase: Optional[StepPhase] = None

        self.token_cost = token_cost or TokenCost()
        for model in (self.llm, self.planner_llm, self.page_extraction_llm):
            if model is not None:
                self.token_cost.register_llm(model)

        if self.state.file_system_state:
            self.file_system: Optional[FileSystem] = FileSystem.from_state(self.state.file_system_state)
        elif file_system_path:
            self.file_system = FileSystem(file_system_path)
            self.state.file_system_state = self.file_system.get_state()
        else:
            self.file_system = None

        self._output_models: Dict[Tuple[str, ...], Type[AgentOutput]] = {}
        self.AgentOutput = self._output_model_for(None)
        self._last_snapshot: Optional[BrowserStateSnapshot] = None

        system_message = SystemPrompt(
            action_description=self.controller.registry.get_prompt_description(),
            max_actions_per_step=self.settings.max_actions_per_step,
            override_system_message=self.settings.override_system_message,
            extend_system_message=self.settings.extend_system_message,
            use_thinking=self.settings.use_thinking,
        ).get_system_message()
        self._message_manager = MessageManager(
            task=task,
            system_message=system_message,
            settings=self.settings,
            state=self.state.message_manager_state,
            sensitive_data=self.sensitive_data,
            token_counter=lambda message: self.llm.count_tokens(message, image_tokens=self.settings.image_tokens),
        )

        self._external_pause_event = asyncio.Event()
        if not self.state.paused:
            self._external_pause_event.set()

        self.telemetry = TelemetryWriter(Path(telemetry_path), self.state.agent_id) if telemetry_path else None
        self._validate_sensitive_data_security()

        if injected_state is not None:
            logger.info("🔁 Resuming agent %s at step %d", self.state.agent_id, self.state.n_steps)

    # --- public surface ----------------------------------------------------

    @property
    def history(self) -> AgentHistoryList:
        return self.state.history

    @property
    def message_manager(self) -> MessageManager:
        return self._message_manager

    def add_new_task(self, new_task: str) -> None:
        """Append a follow-up goal; the next step's messages include it."""
        self.tasks.append(new_task)
        self.task = new_task
        self._message_manager.add_new_task(new_task)

    def pause(self) -> None:
        logger.info("🔄 Pausing agent before the next model call")
        self.state.paused = True
        self.state.status = AgentStatus.PAUSED
        self._external_pause_event.clear()

    def resume(self) -> None:
        if self.state.stopped:
            logger.warning("Agent %s was stopped and cannot be resumed", self.state.agent_id)
            return
        logger.info("▶️ Resuming agent")
        self.state.paused = False
        self.state.status = AgentStatus.RUNNING
        self._external_pause_event.set()

    def stop(self) -> None:
        logger.info("⏹️ Stopping agent")
        self.state.stopped = True
        self.state.status = AgentStatus.STOPPED
        # Wake a paused loop so it can observe the stop.
        self._external_pause_event.set()

    def save_history(self, path: str | Path = "AgentHistory.json") -> None:
        self.state.history.save_to_file(path)

    async def close(self) -> None:
        try:
            await self.environment.close()
        finally:
            if self.telemetry is not None:
                self.telemetry.close()

    # --- run loop ----------------------------------------------------------

    async def run(
        self,
        max_steps: int = 100,
        on_step_start: Optional[AgentHook] = None,
        on_step_end: Optional[AgentHook] = None,
    ) -> AgentHistoryList:
        """Step until done, stopped, out of steps, or too many consecutive failures.

        Always returns the history, including on failure.
        """
        logger.info("🚀 Starting task: %s", self.task)
        if not self.state.stopped:
            self.state.status = AgentStatus.PAUSED if self.state.paused else AgentStatus.RUNNING
        self._emit("run_start", task=self.task, max_steps=max_steps)

        try:
            await self.token_cost.initialize()

            if self.initial_actions and self.state.n_steps == 1 and not self.state.stopped:
                logger.info("Executing %d initial action(s)", len(self.initial_actions))
                self._last_snapshot = await self._safe_snapshot()
                self.state.last_result = await self.multi_act(self.initial_actions, check_for_new_elements=False)

            for step in range(max_steps):
                if self.state.stopped:
                    logger.info("Agent stopped")
                    break
                await self._wait_if_paused()
                if self.state.stopped:
                    logger.info("Agent stopped")
                    break

                if on_step_start is not None:
                    await on_step_start(self)
                await self.step(AgentStepInfo(step_number=step, max_steps=max_steps))
                if on_step_end is not None:
                    await on_step_end(self)

                if self.state.history.is_done():
                    self.state.status = AgentStatus.DONE
                    self._log_completion()
                    break
                if self.state.consecutive_failures > self.settings.max_failures:
                    logger.error("❌ Stopping due to %d consecutive failures", self.state.consecutive_failures)
                    self.state.status = AgentStatus.FAILED
                    break
                if self.state.stopped:
                    logger.info("Agent stopped")
                    break
                if self.state.consecutive_failures > 0 and step < max_steps - 1:
                    logger.info("Waiting %.1fs before retrying", self.settings.retry_delay)
                    await asyncio.sleep(self.settings.retry_delay)
            else:
                logger.info("❌ %s", MAX_STEPS_ERROR)
                now = time.time()
                self.state.history.append(
                    AgentHistory(
                        result=[ActionResult(error=MAX_STEPS_ERROR, include_in_memory=True)],
                        metadata=StepMetadata(step_number=self.state.n_steps, step_start_time=now, step_end_time=now),
                    )
                )
                self.state.status = AgentStatus.FAILED

            if self.state.stopped:
                self.state.status = AgentStatus.STOPPED
            return self.state.history
        finally:
            self.state.history.usage = self.token_cost.get_usage_summary()
            self.token_cost.log_usage_summary()
            self._emit(
                "run_end",
                status=self.state.status.value,
                steps=self.state.history.number_of_steps(),
                total_tokens=self.state.history.usage.total_tokens,
            )
            if self.register_done_callback is not None:
                returned = self.register_done_callback(self.state.history)
                if inspect.isawaitable(returned):
                    await returned

    async def step(self, step_info: Optional[AgentStepInfo] = None) -> None:
        """Run one observe → decide → act → evaluate cycle."""
        logger.info("📍 Step %d", self.state.n_steps)
        step_start = time.time()
        snapshot: Optional[BrowserStateSnapshot] = None
        model_output: Optional[AgentOutput] = None
        result: List[ActionResult] = []
        tokens = 0
        interrupted = False
        self._emit("step_start", step=self.state.n_steps)

        try:
            self.phase = StepPhase.OBSERVING
            snapshot = await self.environment.get_state_snapshot(include_screenshot=self.settings.use_vision)
            self._last_snapshot = snapshot
            self._check_stopped()

            self.AgentOutput = self._output_model_for(snapshot)
            page_actions = self.controller.registry.get_prompt_description(snapshot)
            self._message_manager.add_state_message(
                snapshot,
                result=self.state.last_result,
                step_info=step_info,
                use_vision=self.settings.use_vision,
                page_actions=page_actions or None,
                file_system=self.file_system,
            )

            if self.planner_llm is not None and self.state.n_steps % max(1, self.settings.planner_interval) == 0:
                plan = await self._run_planner()
                if plan:
                    self.state.last_plan = plan
                    self._message_manager.add_plan(plan, position=-1)

            if step_info is not None and step_info.is_last_step():
                self._message_manager.add_note(LAST_STEP_NOTE)
                self.AgentOutput = self._output_model_for(snapshot, include_actions=["done"])

            self.phase = StepPhase.DECIDING
            await self._wait_if_paused()
            self._check_stopped()
            input_messages = self._message_manager.get_messages()
            tokens = self._message_manager.total_tokens
            model_output = await self.get_next_action(input_messages)

            if not model_output.action:
                logger.warning("Model returned no actions, asking once more")
                self._message_manager.add_note(EMPTY_ACTION_NOTE)
                model_output = await self.get_next_action(self._message_manager.get_messages())
                if not model_output.action:
                    logger.warning("Model returned no actions again, finishing as failed")
                    model_output = model_output.model_copy(
                        update={"action": [{"done": {"success": False, "text": NO_ACTION_TEXT}}]}
                    )

            # An output that arrives after stop() is discarded.
            self._check_stopped()
            self.state.n_steps += 1

            if self.register_new_step_callback is not None:
                returned = self.register_new_step_callback(snapshot, model_output, self.state.n_steps)
                if inspect.isawaitable(returned):
                    await returned
            if self.settings.save_conversation_path:
                target = Path(self.settings.save_conversation_path) / f"conversation_{self.state.n_steps - 1}.txt"
                save_conversation(input_messages, model_output, target)

            self._message_manager.remove_last_state_message()
            self._message_manager.add_model_output(model_output)
            self.state.last_model_output = model_output

            self.phase = StepPhase.ACTING
            result = await self.multi_act(model_output.action)

            self.phase = StepPhase.EVALUATING
            result = self._validate_done_result(model_output, result)
            self.state.last_result = result
            if any(item.error for item in result):
                self.state.consecutive_failures += 1
                logger.info("Step finished with action errors (%d consecutive)", self.state.consecutive_failures)
            else:
                self.state.consecutive_failures = 0

        except _AgentInterrupted:
            interrupted = True
            self._message_manager.remove_last_state_message()
            logger.info("Step interrupted by stop()")
        except (
            BrowserEnvironmentError,
            ModelProviderError,
            ContextBudgetError,
            ValueError,
            ActionExecutionError,
        ) as exc:
            self._message_manager.remove_last_state_message()
            result = self._handle_step_error(exc)
            self.state.last_result = result
        except Exception as exc:  # noqa: BLE001
            self._message_manager.remove_last_state_message()
            result = self._handle_step_error(exc)
            self.state.last_result = result
        finally:
            self.phase = None
            if self.file_system is not None:
                self.state.file_system_state = self.file_system.get_state()
            if not interrupted:
                metadata = StepMetadata(
                    step_number=self.state.n_steps,
                    step_start_time=step_start,
                    step_end_time=time.time(),
                    input_tokens=tokens,
                )
                self._make_history_item(model_output, snapshot, result, metadata)

    async def get_next_action(self, input_messages: List[BaseMessage]) -> AgentOutput:
        """Ask the model for the next actions, backing off on rate limits."""
        attempts = max(1, self.settings.rate_limit_retries + 1)
        backoffs = exponential_backoffs(
            self.settings.rate_limit_backoff, self.settings.rate_limit_max_backoff, attempts
        )
        output_type = self.AgentOutput

        def _on_retry(attempt: int, exc: BaseException, delay: float) -> None:
            logger.warning("⏳ Rate limited (attempt %d/%d): %s; retrying in %.1fs", attempt, attempts, exc, delay)
            self._emit("rate_limited", attempt=attempt, delay=delay)

        response = await with_retries(
            lambda: self.llm.ainvoke(input_messages, output_type),
            attempts=attempts,
            backoffs=backoffs,
            retry_on=(ModelRateLimitError,),
            on_retry=_on_retry,
        )
        parsed = response.completion
        if not isinstance(parsed, BaseModel):
            raise SchemaViolationError("Model did not return a structured AgentOutput", model=self.llm.name)
        output = AgentOutput.from_structured(parsed)

        if len(output.action) > self.settings.max_actions_per_step:
            logger.info(
                "Model requested %d actions; keeping the first %d", len(output.action), self.settings.max_actions_per_step
            )
            output = output.model_copy(update={"action": output.action[: self.settings.max_actions_per_step]})
        self._log_response(output)
        return output

    async def multi_act(
        self,
        actions: List[Dict[str, Dict[str, Any]]],
        check_for_new_elements: bool = True,
    ) -> List[ActionResult]:
        """Execute actions in order, stopping at done, the first error, or a changed page."""
        results: List[ActionResult] = []
        actions = actions[: self.settings.max_actions_per_step]
        total = len(actions)
        baseline = self._last_snapshot

        for position, action in enumerate(actions):
            name, params = next(iter(action.items()), ("", {}))
            params = params or {}

            if position > 0:
                if name == "done":
                    logger.info("Done is only allowed as the single action; stopped after action %d / %d", position, total)
                    break
                if self.state.stopped:
                    logger.info("Agent stopped after action %d / %d", position, total)
                    break
                if check_for_new_elements and "index" in params and baseline is not None:
                    try:
                        fresh = await self.environment.get_state_snapshot(include_screenshot=False)
                    except BrowserEnvironmentError as exc:
                        logger.warning("Could not re-read browser state after action %d / %d: %s", position, total, exc)
                        results.append(
                            ActionResult(error=f"{type(exc).__name__}: {exc}", include_in_memory=True)
                        )
                        break
                    message = self._detect_page_change(baseline, fresh, params["index"], position, total)
                    self._last_snapshot = fresh
                    if message:
                        logger.info(message)
                        results.append(ActionResult(extracted_content=message, include_in_memory=True))
                        break

            result = await self.controller.act(action, self._action_context())
            results.append(result)
            logger.info("☑️ Executed action %d/%d: %s", position + 1, total, name)

            if result.is_done or result.error:
                break
        return results

    # --- history replay ----------------------------------------------------

    async def rerun_history(
        self,
        history: AgentHistoryList,
        max_retries: int = 3,
        skip_failures: bool = True,
        delay_between_actions: float = 2.0,
    ) -> List[ActionResult]:
        """Replay recorded actions, re-locating their elements on the live page."""
        results: List[ActionResult] = []
        for position, item in enumerate(history.history):
            goal = item.model_output.next_goal if item.model_output else ""
            logger.info("Replaying step %d/%d: goal: %s", position + 1, len(history.history), goal)
            if not item.model_output or not item.model_output.action:
                logger.warning("Step %d: no action to replay, skipping", position + 1)
                results.append(ActionResult(error="No action to replay"))
                continue

            for attempt in range(1, max_retries + 1):
                try:
                    results.extend(await self._execute_history_step(item, delay_between_actions))
                    break
                except (BrowserEnvironmentError, ActionExecutionError) as exc:
                    if attempt == max_retries:
                        error_msg = f"Step {position + 1} failed after {max_retries} attempts: {exc}"
                        logger.error(error_msg)
                        if not skip_failures:
                            results.append(ActionResult(error=error_msg))
                            raise RuntimeError(error_msg) from exc
                        results.append(ActionResult(error=error_msg))
                    else:
                        logger.warning("Step %d failed (attempt %d/%d), retrying...", position + 1, attempt, max_retries)
                        await asyncio.sleep(delay_between_actions)
        return results

    async def load_and_rerun(self, history_file: str | Path = "AgentHistory.json", **kwargs: Any) -> List[ActionResult]:
        history = AgentHistoryList.load_from_file(history_file)
        return await self.rerun_history(history, **kwargs)

    async def _execute_history_step(self, item: AgentHistory, delay: float) -> List[ActionResult]:
        snapshot = await self.environment.get_state_snapshot(include_screenshot=False)
        self._last_snapshot = snapshot
        replayed: List[Dict[str, Dict[str, Any]]] = []
        for position, action in enumerate(item.model_output.action):
            name, params = next(iter(action.items()))
            params = dict(params or {})
            recorded = item.state.interacted_element[position] if position < len(item.state.interacted_element) else None
            if recorded is not None and "index" in params:
                match = self._find_matching_element(recorded, snapshot)
                if match is None:
                    raise BrowserEnvironmentError(f"Could not find matching element {position} in current page")
                if match.index != params["index"]:
                    logger.info("Element moved in DOM, updated index from %s to %s", params["index"], match.index)
                    params["index"] = match.index
            replayed.append({name: params})
        results = await self.multi_act(replayed, check_for_new_elements=False)
        await asyncio.sleep(delay)
        return results

    @staticmethod
    def _find_matching_element(recorded: UIElement, snapshot: BrowserStateSnapshot) -> Optional[UIElement]:
        key = _element_key(recorded)
        for element in snapshot.elements:
            if _element_key(element) == key:
                return element
        for element in snapshot.elements:
            if element.tag == recorded.tag and element.text and element.text == recorded.text:
                return element
        return None

    # --- internals ---------------------------------------------------------

    def _output_model_for(
        self, snapshot: Optional[BrowserStateSnapshot], include_actions: Optional[List[str]] = None
    ) -> Type[AgentOutput]:
        registry = self.controller.registry
        names = tuple(action.name for action in registry.available_actions(snapshot, include_actions=include_actions))
        cached = self._output_models.get(names)
        if cached is None:
            action_model = registry.create_action_model(snapshot, include_actions=include_actions)
            cached = AgentOutput.type_with_custom_actions(action_model)
            self._output_models[names] = cached
        return cached

    def _action_context(self) -> ActionContext:
        return ActionContext(
            environment=self.environment,
            snapshot=self._last_snapshot,
            available_file_paths=list(self.settings.available_file_paths),
            sensitive_data=self.sensitive_data,
            file_system=self.file_system,
            page_extraction_llm=self.page_extraction_llm,
            context=self.context,
        )

    def _check_stopped(self) -> None:
        if self.state.stopped:
            raise _AgentInterrupted()

    async def _wait_if_paused(self) -> None:
        if self.state.paused:
            logger.info("⏸️ Agent paused, waiting for resume()")
            await self._external_pause_event.wait()

    async def _safe_snapshot(self) -> Optional[BrowserStateSnapshot]:
        try:
            return await self.environment.get_state_snapshot(include_screenshot=False)
        except BrowserEnvironmentError as exc:
            logger.warning("Could not read browser state before initial actions: %s", exc)
            return None

    @staticmethod
    def _detect_page_change(
        baseline: BrowserStateSnapshot, fresh: BrowserStateSnapshot, index: Any, position: int, total: int
    ) -> Optional[str]:
        before = baseline.element_by_index(index) if isinstance(index, int) else None
        after = fresh.element_by_index(index) if isinstance(index, int) else None
        if before is not None and (after is None or _element_key(before) != _element_key(after)):
            return f"Element index changed after action {position} / {total}, because page changed."
        known = {_element_key(element) for element in baseline.elements}
        if any(_element_key(element) not in known for element in fresh.elements):
            return f"Something new appeared after action {position} / {total}"
        return None

    def _validate_done_result(self, model_output: AgentOutput, result: List[ActionResult]) -> List[ActionResult]:
        if not self.settings.validate_output or not result or not result[-1].is_done:
            return result
        params = next((args for name, args in model_output.actions() if name == "done"), {})
        problem: Optional[str] = None
        if self.output_model is not None:
            try:
                self.output_model.model_validate(params.get("data"))
            except ValidationError as exc:
                problem = f"data does not match {self.output_model.__name__} ({exc.error_count()} error(s))"
        else:
            text = params.get("text")
            if not isinstance(text, str) or not text.strip():
                problem = "done text must be a non-empty string"
        if problem is None:
            return result
        logger.warning("❌ Rejected done output: %s", problem)
        rejected = ActionResult(
            is_done=False,
            error=f"Invalid done output: {problem}",
            error_kind="validation",
            include_in_memory=True,
        )
        return result[:-1] + [rejected]

    def _handle_step_error(self, exc: Exception) -> List[ActionResult]:
        self.state.consecutive_failures += 1
        error_msg = f"{type(exc).__name__}: {exc}"
        prefix = f"❌ Result failed {self.state.consecutive_failures}/{self.settings.max_failures + 1} times:\n "
        if isinstance(exc, (ValidationError, SchemaViolationError)):
            logger.error("%sInvalid model output: %s", prefix, error_msg)
        elif isinstance(exc, ModelRateLimitError):
            logger.error("%sRate limit retries exhausted: %s", prefix, error_msg)
        elif isinstance(exc, BrowserEnvironmentError):
            logger.error("%sBrowser unavailable: %s", prefix, error_msg)
        else:
            logger.error("%s%s", prefix, error_msg, exc_info=logger.isEnabledFor(logging.DEBUG))
        self._emit("step_error", step=self.state.n_steps, error=error_msg, kind=getattr(exc, "kind", None))
        return [ActionResult(error=error_msg, include_in_memory=True)]

    def _make_history_item(
        self,
        model_output: Optional[AgentOutput],
        snapshot: Optional[BrowserStateSnapshot],
        result: List[ActionResult],
        metadata: StepMetadata,
    ) -> None:
        interacted: List[Optional[UIElement]] = []
        if model_output is not None:
            for _, params in model_output.actions():
                index = params.get("index")
                element = snapshot.element_by_index(index) if snapshot is not None and isinstance(index, int) else None
                interacted.append(element)
        state = BrowserStateHistory(
            url=snapshot.url if snapshot else "",
            title=snapshot.title if snapshot else "",
            tabs=list(snapshot.tabs) if snapshot else [],
            interacted_element=interacted,
            screenshot=snapshot.screenshot if snapshot else None,
        )
        plan = self.state.last_plan if self.planner_llm is not None else None
        self.state.history.append(
            AgentHistory(model_output=model_output, result=result, state=state, metadata=metadata, plan=plan)
        )
        self._emit(
            "step_end",
            step=metadata.step_number,
            url=state.url,
            actions=[name for name, _ in model_output.actions()] if model_output else [],
            errors=[item.error for item in result if item.error],
            duration=round(metadata.duration_seconds, 3),
        )

    async def _run_planner(self) -> Optional[str]:
        messages = self._message_manager.get_messages()
        planner_messages: List[BaseMessage] = [PlannerPrompt(self.controller.registry.get_prompt_description()).get_system_message()]
        for message in messages[1:]:
            if not self.settings.use_vision_for_planner and message.images:
                text_parts = [part for part in message.content if isinstance(part, ContentPartText)]
                message = UserMessage(content="\n".join(part.text for part in text_parts))
            planner_messages.append(message)
        try:
            response = await self.planner_llm.ainvoke(planner_messages)
        except ModelProviderError as exc:
            logger.warning("Planner call failed, continuing without a plan: %s", exc)
            return None
        plan = str(response.completion)
        try:
            plan = json.dumps(json.loads(plan), indent=2)
        except json.JSONDecodeError:
            pass
        logger.info("Planning analysis:\n%s", plan)
        return plan

    def _validate_sensitive_data_security(self) -> None:
        if not self.sensitive_data:
            return
        allowed = self.environment.allowed_domains
        if self.sensitive_data.has_unscoped_values and not allowed:
            logger.warning(
                "⚠️ Sensitive data is not scoped to any domain and the browser has no allowed_domains; "
                "secrets may be typed into any site"
            )
        if not allowed:
            return
        for pattern in self.sensitive_data.domain_patterns:
            host = pattern.split("://", 1)[-1].split("/", 1)[0]
            probe = f"https://{host[2:] if host.startswith('*.') else host}"
            if not any(match_url_with_domain_pattern(probe, allowed_pattern) for allowed_pattern in allowed):
                logger.warning("⚠️ Sensitive data domain %s is not covered by the browser's allowed_domains", pattern)

    def _log_response(self, output: AgentOutput) -> None:
        evaluation = output.evaluation_previous_goal
        if "success" in evaluation.lower():
            emoji = "👍"
        elif "fail" in evaluation.lower():
            emoji = "⚠️"
        else:
            emoji = "❓"
        if output.thinking:
            logger.debug("💡 Thinking: %s", output.thinking)
        logger.info("%s Eval: %s", emoji, evaluation)
        logger.info("🧠 Memory: %s", output.memory)
        logger.info("🎯 Next goal: %s", output.next_goal)
        for position, (name, params) in enumerate(output.actions(), start=1):
            logger.info("🛠️ Action %d/%d: %s %s", position, len(output.action), name, json.dumps(params))

    def _log_completion(self) -> None:
        if self.state.history.is_successful():
            logger.info("✅ Task completed successfully")
        else:
            logger.info("❌ Task completed without success")
        final = self.state.history.final_result()
        if final:
            logger.info("📄 Result: %s", final)

    def _emit(self, event: str, **fields: Any) -> None:
        if self.telemetry is not None:
            self.telemetry.write(event, **fields)
