"""Prompt builders for the agent, the per-step state message and the planner."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from .messages import ContentPartImage, ContentPartText, SystemMessage, UserMessage
from .models import ActionResult, AgentStepInfo, BrowserStateSnapshot
from .workspace import FileSystem

SYSTEM_PROMPT_TEMPLATE = """You are an AI agent that automates browser tasks. Your goal is to accomplish the ultimate task given by the user.

Input you receive each step:
- Your task history memory, including the results of earlier actions.
- The current URL, open tabs and the interactive elements of the visible page.
- Optionally a screenshot of the page.

Interactive elements are listed as [index]<tag attributes>text</tag>. Only elements with a numeric [index] can be interacted with; refer to them by that index. Elements marked with * are new since the last step.

Respond with a JSON object of this shape:
{{{thinking_field}"evaluation_previous_goal": "Success|Failed|Unknown - assess whether the last action achieved its goal",
 "memory": "what has been done and what to remember, be specific",
 "next_goal": "what the next immediate action should achieve",
 "action": [{{"action_name": {{"parameter": "value"}}}}]}}

Rules:
- Use at most {max_actions} actions per step. Actions run in order; if the page changes, the remaining actions are skipped.
- Chain actions only when the page will not change between them (e.g. filling several fields of one form).
- Use the done action as the only action of a step once the task is complete, or when it cannot be completed. Set success accordingly and include everything the user asked for in text.
- If an action fails, try an alternative instead of repeating the same action.
- Secrets are shown as <secret>name</secret>; use that exact placeholder as the value and it will be filled in for you.

Available actions:
{actions}"""

THINKING_FIELD = '"thinking": "short step-by-step reasoning about the current state",\n '


class SystemPrompt:
    def __init__(
        self,
        action_description: str,
        max_actions_per_step: int = 10,
        override_system_message: Optional[str] = None,
        extend_system_message: Optional[str] = None,
        use_thinking: bool = True,
    ) -> None:
        if override_system_message:
            prompt = override_system_message
        else:
            prompt = SYSTEM_PROMPT_TEMPLATE.format(
                thinking_field=THINKING_FIELD if use_thinking else "",
                max_actions=max_actions_per_step,
                actions=action_description,
            )
        if extend_system_message:
            prompt += f"\n{extend_system_message}"
        self.prompt = prompt

    def get_system_message(self) -> SystemMessage:
        return SystemMessage(content=self.prompt, cache=True)


class AgentMessagePrompt:
    """Renders the one-shot state message the model sees at the start of a step."""

    def __init__(
        self,
        snapshot: BrowserStateSnapshot,
        result: Optional[List[ActionResult]] = None,
        include_attributes: Optional[List[str]] = None,
        step_info: Optional[AgentStepInfo] = None,
        file_system: Optional[FileSystem] = None,
        page_actions: Optional[str] = None,
    ) -> None:
        self.snapshot = snapshot
        self.result = result or []
        self.include_attributes = include_attributes
        self.step_info = step_info
        self.file_system = file_system
        self.page_actions = page_actions

    def _elements_text(self) -> str:
        if not self.snapshot.elements:
            return "empty page"
        lines = [element.describe(self.include_attributes) for element in self.snapshot.elements]
        body = "\n".join(lines)
        if self.snapshot.pixels_above > 0:
            body = f"... {self.snapshot.pixels_above} pixels above - scroll up to see more ...\n{body}"
        else:
            body = f"[Start of page]\n{body}"
        if self.snapshot.pixels_below > 0:
            body = f"{body}\n... {self.snapshot.pixels_below} pixels below - scroll down to see more ..."
        else:
            body = f"{body}\n[End of page]"
        return body

    def state_text(self) -> str:
        tabs = "\n".join(f"- Tab {tab.page_id}: {tab.url} - {tab.title}" for tab in self.snapshot.tabs)
        sections = [
            f"Current url: {self.snapshot.url}",
            f"Page title: {self.snapshot.title}",
            f"Available tabs:\n{tabs or '- none'}",
            f"Interactive elements from top layer of the current page inside the viewport:\n{self._elements_text()}",
        ]
        if self.step_info is not None:
            time_str = datetime.now().strftime("%Y-%m-%d %H:%M")
            sections.append(
                f"Current step: {self.step_info.step_number + 1}/{self.step_info.max_steps}  Current date and time: {time_str}"
            )
        if self.file_system is not None:
            sections.append(f"Workspace files:\n{self.file_system.describe()}")
        if self.page_actions:
            sections.append(f"Actions available only on this page:\n{self.page_actions}")

        one_shot = []
        for position, result in enumerate(self.result, start=1):
            # Full content is shown once; retained results are summarized in the history.
            if result.extracted_content and (not result.include_in_memory or result.long_term_memory):
                if result.long_term_memory != result.extracted_content:
                    one_shot.append(f"Action result {position}/{len(self.result)}: {result.extracted_content}")
            if result.error and not result.include_in_memory:
                last_line = result.error.strip().splitlines()[-1]
                one_shot.append(f"Action error {position}/{len(self.result)}: ...{last_line}")
        if one_shot:
            sections.append("\n".join(one_shot))
        return "\n\n".join(sections)

    def get_user_message(self, use_vision: bool = True) -> UserMessage:
        text = self.state_text()
        if use_vision and self.snapshot.screenshot:
            url = self.snapshot.screenshot
            if not url.startswith(("data:", "http://", "https://")):
                url = f"data:image/png;base64,{url}"
            return UserMessage(content=[ContentPartText(text=text), ContentPartImage(url=url)])
        return UserMessage(content=text)


class PlannerPrompt:
    def __init__(self, action_description: str) -> None:
        self.action_description = action_description

    def get_system_message(self) -> SystemMessage:
        return SystemMessage(
            content=(
                "You are a planning agent that helps break down tasks into smaller steps and reason about the "
                "current state. Your role is to:\n"
                "1. Analyze the current state and history\n"
                "2. Evaluate progress towards the ultimate goal\n"
                "3. Identify potential challenges or roadblocks\n"
                "4. Suggest the next high-level steps to take\n\n"
                "Keep your responses concise and focused on actionable insights. Respond in JSON with the keys "
                '"state_analysis", "progress_evaluation", "challenges", "next_steps" and "reasoning".\n\n'
                f"The executing agent can use these actions:\n{self.action_description}"
            )
        )
