"""Core data models for the browser agent."""

from __future__ import annotations

import json
import os
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, create_model
from pydantic.alias_generators import to_camel

from .messages import BaseMessage
from .tokens import UsageSummary

DEFAULT_INCLUDE_ATTRIBUTES: List[str] = [
    "title",
    "type",
    "name",
    "role",
    "aria-label",
    "placeholder",
    "value",
    "alt",
    "aria-expanded",
]


class AgentStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    DONE = "done"
    FAILED = "failed"


class StepPhase(str, Enum):
    OBSERVING = "observing"
    DECIDING = "deciding"
    ACTING = "acting"
    EVALUATING = "evaluating"


# --- Browser state -----------------------------------------------------------


class UIElement(BaseModel):
    index: int
    tag: Optional[str] = None
    role: Optional[str] = None
    text: Optional[str] = None
    selector: Optional[str] = None
    attributes: Dict[str, str] = Field(default_factory=dict)
    is_new: bool = False

    def describe(self, include_attributes: Optional[List[str]] = None) -> str:
        attrs = self.attributes
        if include_attributes is not None:
            attrs = {key: value for key, value in attrs.items() if key in include_attributes}
        attr_text = " ".join(f'{key}="{value}"' for key, value in attrs.items() if value)
        tag = self.tag or "element"
        prefix = "*" if self.is_new else ""
        inner = (self.text or "").strip()
        opening = f"<{tag} {attr_text}>" if attr_text else f"<{tag}>"
        return f"{prefix}[{self.index}]{opening}{inner}</{tag}>"


class TabInfo(BaseModel):
    page_id: int
    url: str
    title: str = ""


class BrowserStateSnapshot(BaseModel):
    url: str
    title: str = ""
    tabs: List[TabInfo] = Field(default_factory=list)
    elements: List[UIElement] = Field(default_factory=list)
    screenshot: Optional[str] = None
    pixels_above: int = 0
    pixels_below: int = 0

    @property
    def selector_map(self) -> Dict[int, UIElement]:
        return {element.index: element for element in self.elements}

    def element_by_index(self, index: int) -> Optional[UIElement]:
        return self.selector_map.get(index)


class ActionIntent(BaseModel):
    """Concrete request handed to the browser collaborator."""

    name: str
    params: Dict[str, Any] = Field(default_factory=dict)


class ActionOutcome(BaseModel):
    ok: bool = True
    message: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


# --- Action results and model output ----------------------------------------


class ActionResult(BaseModel):
    is_done: bool = False
    success: Optional[bool] = None
    extracted_content: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[Literal["validation", "execution"]] = None
    include_in_memory: bool = False
    long_term_memory: Optional[str] = None
    attachments: List[str] = Field(default_factory=list)


class AgentBrain(BaseModel):
    thinking: Optional[str] = None
    evaluation_previous_goal: str = ""
    memory: str = ""
    next_goal: str = ""


class AgentOutput(BaseModel):
    """What the model returns each step.

    ``action`` is a list of single-key objects mapping an action name to its
    arguments. ``type_with_custom_actions`` narrows it to the actions available
    on the current page for structured output.
    """

    thinking: Optional[str] = None
    evaluation_previous_goal: str = ""
    memory: str = ""
    next_goal: str = ""
    action: List[Dict[str, Dict[str, Any]]] = Field(default_factory=list)

    @property
    def current_state(self) -> AgentBrain:
        return AgentBrain(
            thinking=self.thinking,
            evaluation_previous_goal=self.evaluation_previous_goal,
            memory=self.memory,
            next_goal=self.next_goal,
        )

    def actions(self) -> List[Tuple[str, Dict[str, Any]]]:
        items: List[Tuple[str, Dict[str, Any]]] = []
        for item in self.action:
            for name, params in item.items():
                items.append((name, dict(params or {})))
        return items

    @staticmethod
    def type_with_custom_actions(action_model: Any) -> Type["AgentOutput"]:
        return create_model(
            "AgentOutput",
            __base__=AgentOutput,
            __module__=AgentOutput.__module__,
            action=(
                List[action_model],  # type: ignore[valid-type]
                Field(..., description="List of actions to execute, in order"),
            ),
        )

    @classmethod
    def from_structured(cls, parsed: BaseModel) -> "AgentOutput":
        """Normalize a dynamically-typed model output into plain action dicts."""
        return cls.model_validate(parsed.model_dump(mode="json"))


# --- History -----------------------------------------------------------------


class BrowserStateHistory(BaseModel):
    url: str = ""
    title: str = ""
    tabs: List[TabInfo] = Field(default_factory=list)
    interacted_element: List[Optional[UIElement]] = Field(default_factory=list)
    screenshot: Optional[str] = None


class StepMetadata(BaseModel):
    step_number: int
    step_start_time: float
    step_end_time: float
    input_tokens: int = 0

    @property
    def duration_seconds(self) -> float:
        return self.step_end_time - self.step_start_time


class AgentHistory(BaseModel):
    model_output: Optional[AgentOutput] = None
    result: List[ActionResult] = Field(default_factory=list)
    state: BrowserStateHistory = Field(default_factory=BrowserStateHistory)
    metadata: Optional[StepMetadata] = None
    plan: Optional[str] = None


class AgentHistoryList(BaseModel):
    history: List[AgentHistory] = Field(default_factory=list)
    usage: Optional[UsageSummary] = None

    def append(self, item: AgentHistory) -> None:
        self.history.append(item)

    def __len__(self) -> int:
        return len(self.history)

    def total_duration_seconds(self) -> float:
        return sum(item.metadata.duration_seconds for item in self.history if item.metadata)

    def total_input_tokens(self) -> int:
        return sum(item.metadata.input_tokens for item in self.history if item.metadata)

    def input_token_usage(self) -> List[int]:
        return [item.metadata.input_tokens for item in self.history if item.metadata]

    def save_to_file(self, path: str | Path) -> None:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.model_dump_json(indent=2), encoding="utf-8")

    @classmethod
    def load_from_file(cls, path: str | Path) -> "AgentHistoryList":
        return cls.model_validate_json(Path(path).read_text(encoding="utf-8"))

    def last_action(self) -> Optional[Dict[str, Dict[str, Any]]]:
        if self.history and self.history[-1].model_output and self.history[-1].model_output.action:
            return self.history[-1].model_output.action[-1]
        return None

    def errors(self) -> List[Optional[str]]:
        """One entry per step: the first error of that step, or None."""
        step_errors: List[Optional[str]] = []
        for item in self.history:
            found = next((result.error for result in item.result if result.error), None)
            step_errors.append(found)
        return step_errors

    def has_errors(self) -> bool:
        return any(error is not None for error in self.errors())

    def final_result(self) -> Optional[str]:
        if self.history and self.history[-1].result:
            return self.history[-1].result[-1].extracted_content
        return None

    def is_done(self) -> bool:
        if self.history and self.history[-1].result:
            return self.history[-1].result[-1].is_done
        return False

    def is_successful(self) -> Optional[bool]:
        """None when the run has not finished with a done action."""
        if self.is_done():
            return self.history[-1].result[-1].success
        return None

    def structured_output(self, output_model: Type[BaseModel]) -> Optional[BaseModel]:
        final = self.final_result()
        if final is None:
            return None
        return output_model.model_validate_json(final)

    def urls(self) -> List[Optional[str]]:
        return [item.state.url or None for item in self.history]

    def screenshots(self) -> List[Optional[str]]:
        return [item.state.screenshot for item in self.history]

    def action_names(self) -> List[str]:
        return [name for action in self.model_actions() for name in action if name != "interacted_element"]

    def model_thoughts(self) -> List[AgentBrain]:
        return [item.model_output.current_state for item in self.history if item.model_output]

    def model_outputs(self) -> List[AgentOutput]:
        return [item.model_output for item in self.history if item.model_output]

    def model_actions(self) -> List[Dict[str, Any]]:
        """Every executed action with the element it targeted, flattened across steps."""
        outputs: List[Dict[str, Any]] = []
        for item in self.history:
            if not item.model_output:
                continue
            for position, action in enumerate(item.model_output.action):
                entry: Dict[str, Any] = dict(action)
                element = item.state.interacted_element[position] if position < len(item.state.interacted_element) else None
                entry["interacted_element"] = element
                outputs.append(entry)
        return outputs

    def model_actions_filtered(self, include: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        if not include:
            return []
        return [action for action in self.model_actions() if any(name in include for name in action)]

    def action_results(self) -> List[ActionResult]:
        return [result for item in self.history for result in item.result]

    def extracted_content(self) -> List[str]:
        return [result.extracted_content for result in self.action_results() if result.extracted_content]

    def number_of_steps(self) -> int:
        return len(self.history)


@dataclass
class AgentStepInfo:
    step_number: int
    max_steps: int

    def is_last_step(self) -> bool:
        return self.step_number >= self.max_steps - 1


# --- Settings and persisted state -------------------------------------------


class AgentSettings(BaseModel):
    use_vision: bool = True
    use_vision_for_planner: bool = False
    save_conversation_path: Optional[str] = None
    max_failures: int = 3
    retry_delay: float = 10.0
    rate_limit_retries: int = 3
    rate_limit_backoff: float = 1.0
    rate_limit_max_backoff: float = 30.0
    override_system_message: Optional[str] = None
    extend_system_message: Optional[str] = None
    max_input_tokens: int = 128_000
    image_tokens: int = 800
    validate_output: bool = False
    message_context: Optional[str] = None
    available_file_paths: List[str] = Field(default_factory=list)
    include_attributes: List[str] = Field(default_factory=lambda: list(DEFAULT_INCLUDE_ATTRIBUTES))
    max_actions_per_step: int = 10
    use_thinking: bool = True
    planner_interval: int = 1

    @classmethod
    def from_env(cls, **overrides: Any) -> "AgentSettings":
        """Build settings from ``BROWSER_AGENT_*`` variables; explicit overrides win."""
        values: Dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            raw = os.getenv(f"BROWSER_AGENT_{name.upper()}")
            if raw is None:
                continue
            if field.annotation is bool:
                values[name] = raw.strip().lower() in {"1", "true", "yes", "on"}
            elif name in {"available_file_paths", "include_attributes"}:
                values[name] = [item.strip() for item in raw.split(",") if item.strip()]
            else:
                values[name] = raw
        values.update(overrides)
        return cls.model_validate(values)


class ManagedMessage(BaseModel):
    """A message in the manager's history plus the bookkeeping trimming needs."""

    message: BaseMessage
    pinned: bool = False
    kind: Literal["init", "task", "memory", "state", "plan", "model_output", "note"] = "memory"
    tokens: int = 0


class MessageManagerState(BaseModel):
    history: List[ManagedMessage] = Field(default_factory=list)
    tool_id: int = 1


class AgentState(BaseModel):
    """Mutable per-agent record; serializes with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    agent_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    n_steps: int = 1
    consecutive_failures: int = 0
    last_result: Optional[List[ActionResult]] = None
    last_plan: Optional[str] = None
    last_model_output: Optional[AgentOutput] = None
    paused: bool = False
    stopped: bool = False
    status: AgentStatus = AgentStatus.IDLE
    message_manager_state: MessageManagerState = Field(default_factory=MessageManagerState)
    file_system_state: Optional[Dict[str, Any]] = None
    history: AgentHistoryList = Field(default_factory=AgentHistoryList)

    def to_json(self, include_history: bool = False) -> str:
        exclude = None if include_history else {"history"}
        return self.model_dump_json(by_alias=True, exclude=exclude)

    @classmethod
    def from_json(cls, data: str | Dict[str, Any]) -> "AgentState":
        if isinstance(data, str):
            data = json.loads(data)
        return cls.model_validate(data)
