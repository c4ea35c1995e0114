"""Builds the bounded message list sent to the model each step."""

from __future__ import annotations

import logging
from typing import Callable, List, Optional

from .exceptions import ContextBudgetError
from .llm import CHARS_PER_TOKEN, estimate_message_tokens
from .messages import (
    AssistantMessage,
    BaseMessage,
    ContentPartImage,
    ContentPartRefusal,
    ContentPartText,
    SystemMessage,
    ToolCall,
    UserMessage,
)
from .models import (
    ActionResult,
    AgentOutput,
    AgentSettings,
    AgentStepInfo,
    BrowserStateSnapshot,
    ManagedMessage,
    MessageManagerState,
)
from .prompts import AgentMessagePrompt
from .sensitive_data import SensitiveDataResolver
from .workspace import FileSystem

logger = logging.getLogger(__name__)

IMAGE_OMITTED = "[image omitted]"
TRUNCATED_MARKER = "\n[... truncated to fit the context window]"
HISTORY_MARKER = "[Your task history memory starts here]"


class MessageManager:
    """Owns the conversation history and keeps it under ``settings.max_input_tokens``.

    The system message and the task messages are pinned and never trimmed.
    Everything else is trimmed in this order: images (oldest first), whole
    messages (oldest first), then the text of the newest remaining message.
    """

    def __init__(
        self,
        task: str,
        system_message: SystemMessage,
        settings: Optional[AgentSettings] = None,
        state: Optional[MessageManagerState] = None,
        sensitive_data: Optional[SensitiveDataResolver] = None,
        token_counter: Optional[Callable[[BaseMessage], int]] = None,
    ) -> None:
        self.task = task
        self.settings = settings or AgentSettings()
        self.state = state if state is not None else MessageManagerState()
        self.system_prompt = system_message
        self.sensitive_data = sensitive_data
        self._count = token_counter or (lambda message: estimate_message_tokens(message, self.settings.image_tokens))
        if not self.state.history:
            self._init_messages()

    # --- construction ------------------------------------------------------

    def _init_messages(self) -> None:
        self._add(self.system_prompt, pinned=True, kind="init")

        if self.settings.message_context:
            self._add(UserMessage(content=f"Context for the task: {self.settings.message_context}"), kind="init")

        self._add(UserMessage(content=self._task_text(self.task)), pinned=True, kind="task")

        if self.sensitive_data:
            names = sorted(self.sensitive_data.placeholders_for_url(None))
            self._add(
                UserMessage(
                    content=(
                        f"Here are placeholders for sensitive data: {names}\n"
                        "To use them, write <secret>the placeholder name</secret>"
                    )
                ),
                pinned=True,
                kind="init",
            )

        example = AgentOutput(
            evaluation_previous_goal="Unknown - the task just started",
            memory="Starting the task; nothing has been done yet.",
            next_goal="Open a page relevant to the task.",
            action=[{"go_to_url": {"url": "https://www.google.com", "new_tab": False}}],
        )
        self._add(UserMessage(content="Example output:"), kind="init")
        self.add_model_output(example, kind="init")
        self._add(UserMessage(content=HISTORY_MARKER), kind="init")

        if self.settings.available_file_paths:
            paths = ", ".join(self.settings.available_file_paths)
            self._add(UserMessage(content=f"Here are file paths you can use: {paths}"), kind="init")

    @staticmethod
    def _task_text(task: str) -> str:
        return (
            f'Your ultimate task is: """{task}""". If you achieved your ultimate task, stop everything and use the '
            "done action in the next step to complete the task. If not, continue as usual."
        )

    def _add(
        self,
        message: BaseMessage,
        pinned: bool = False,
        kind: str = "memory",
        position: Optional[int] = None,
    ) -> None:
        message = self._mask(message)
        managed = ManagedMessage(message=message, pinned=pinned, kind=kind, tokens=self._count(message))
        if position is None:
            self.state.history.append(managed)
        else:
            self.state.history.insert(position, managed)

    # --- per-step updates --------------------------------------------------

    def add_new_task(self, new_task: str) -> None:
        self.task = new_task
        content = (
            f'Your new ultimate task is: """{new_task}""". Take the previous context into account and finish '
            "your new ultimate task."
        )
        self._add(UserMessage(content=content), pinned=True, kind="task")

    def add_state_message(
        self,
        snapshot: BrowserStateSnapshot,
        result: Optional[List[ActionResult]] = None,
        step_info: Optional[AgentStepInfo] = None,
        use_vision: bool = True,
        page_actions: Optional[str] = None,
        file_system: Optional[FileSystem] = None,
    ) -> None:
        """Persist retained results as history, then add the one-shot state message."""
        for item in result or []:
            if not item.include_in_memory:
                continue
            retained = item.long_term_memory or item.extracted_content
            if retained:
                self._add(UserMessage(content=f"Action result: {retained}"), kind="memory")
            if item.error:
                last_line = item.error.strip().splitlines()[-1] if item.error.strip() else item.error
                self._add(UserMessage(content=f"Action error: {last_line}"), kind="memory")

        prompt = AgentMessagePrompt(
            snapshot,
            result=result,
            include_attributes=self.settings.include_attributes,
            step_info=step_info,
            file_system=file_system,
            page_actions=page_actions,
        )
        self._add(prompt.get_user_message(use_vision), kind="state")

    def add_note(self, text: str, one_shot: bool = True) -> None:
        """Add an instruction for the model; one-shot notes vanish with the state message."""
        self._add(UserMessage(content=text), kind="state" if one_shot else "note")

    def add_model_output(self, output: AgentOutput, kind: str = "model_output") -> None:
        tool_call = ToolCall(
            id=str(self.state.tool_id),
            name="AgentOutput",
            arguments=output.model_dump_json(exclude_none=True),
        )
        self._add(AssistantMessage(content="", tool_calls=[tool_call]), kind=kind)
        self.state.tool_id += 1

    def add_plan(self, plan: Optional[str], position: Optional[int] = -1) -> None:
        """Insert the planner's advice; by default just before the current state message."""
        if not plan:
            return
        self._add(AssistantMessage(content=f"Plan: {plan}"), kind="plan", position=position)

    def remove_last_state_message(self) -> None:
        """Drop the current step's one-shot messages (state and notes)."""
        self.state.history = [managed for managed in self.state.history if managed.kind != "state"]

    # --- output ------------------------------------------------------------

    @property
    def total_tokens(self) -> int:
        return sum(managed.tokens for managed in self.state.history)

    def get_messages(self) -> List[BaseMessage]:
        """Trimmed copies of the history, ready to send. Secrets are masked on insertion."""
        self.cut_messages()
        messages = [managed.message.model_copy(deep=True) for managed in self.state.history]
        logger.debug("Sending %d messages (~%d tokens)", len(messages), self.total_tokens)
        return messages

    def _mask(self, message: BaseMessage) -> BaseMessage:
        if not self.sensitive_data:
            return message
        mask = self.sensitive_data.mask
        if isinstance(message.content, str):
            content = mask(message.content)
        else:
            content = []
            for part in message.content:
                if isinstance(part, ContentPartText):
                    content.append(ContentPartText(text=mask(part.text)))
                elif isinstance(part, ContentPartRefusal):
                    content.append(ContentPartRefusal(refusal=mask(part.refusal)))
                else:
                    content.append(part.model_copy())
        update = {"content": content}
        if isinstance(message, AssistantMessage):
            update["tool_calls"] = [
                call.model_copy(update={"arguments": mask(call.arguments)}) for call in message.tool_calls
            ]
        return message.model_copy(update=update, deep=True)

    def cut_messages(self) -> None:
        """Trim history until it fits the budget. Running it again is a no-op."""
        budget = self.settings.max_input_tokens
        history = self.state.history
        if self.total_tokens <= budget:
            return

        pinned_total = sum(managed.tokens for managed in history if managed.pinned)
        if pinned_total > budget:
            raise ContextBudgetError(
                f"System and task messages need ~{pinned_total} tokens but the budget is {budget}; "
                "increase max_input_tokens or shorten the task"
            )

        for managed in history:
            if self.total_tokens <= budget:
                return
            if managed.pinned or not managed.message.images:
                continue
            self._drop_images(managed)

        while self.total_tokens > budget:
            unpinned = [position for position, managed in enumerate(history) if not managed.pinned]
            if len(unpinned) <= 1:
                break
            removed = history.pop(unpinned[0])
            logger.debug("Trimmed %s message (~%d tokens) from context", removed.kind, removed.tokens)

        if self.total_tokens > budget:
            self._truncate_last_unpinned(budget)

    def _drop_images(self, managed: ManagedMessage) -> None:
        content = managed.message.content
        if isinstance(content, str):
            return
        remaining = [part for part in content if not isinstance(part, ContentPartImage)]
        if not remaining:
            remaining = [ContentPartText(text=IMAGE_OMITTED)]
        managed.message = managed.message.model_copy(update={"content": remaining})
        managed.tokens = self._count(managed.message)

    def _truncate_last_unpinned(self, budget: int) -> None:
        history = self.state.history
        position = max(index for index, managed in enumerate(history) if not managed.pinned)
        managed = history[position]
        allowed = budget - (self.total_tokens - managed.tokens)
        text = managed.message.text
        keep = max(0, allowed * CHARS_PER_TOKEN - len(TRUNCATED_MARKER))
        while True:
            truncated = text[:keep] + TRUNCATED_MARKER if keep < len(text) else text
            update = {"content": truncated}
            if isinstance(managed.message, AssistantMessage):
                update["tool_calls"] = []
            candidate = managed.message.model_copy(update=update)
            tokens = self._count(candidate)
            if tokens <= allowed:
                managed.message = candidate
                managed.tokens = tokens
                return
            if keep == 0:
                history.pop(position)
                return
            keep = int(keep * 0.9)
