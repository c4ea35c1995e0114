from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from browser_agent.environment import Environment  # noqa: E402
from browser_agent.exceptions import BrowserEnvironmentError  # noqa: E402
from browser_agent.llm import BaseChatModel, ChatInvokeCompletion, ChatInvokeUsage  # noqa: E402
from browser_agent.models import (  # noqa: E402
    ActionIntent,
    ActionOutcome,
    BrowserStateSnapshot,
    TabInfo,
    UIElement,
)


def agent_output(*actions: Dict[str, Dict[str, Any]], goal: str = "keep going") -> Dict[str, Any]:
    return {
        "evaluation_previous_goal": "Success - previous step worked",
        "memory": "working on the task",
        "next_goal": goal,
        "action": list(actions),
    }


class ScriptedLLM(BaseChatModel):
    """Replays canned responses; exceptions in the script are raised instead."""

    provider = "fake"

    def __init__(self, responses: List[Any], model: str = "fake-model") -> None:
        self.model = model
        self.responses = list(responses)
        self.calls: List[list] = []
        self.output_formats: List[Any] = []

    async def ainvoke(self, messages, output_format=None):
        self.calls.append(list(messages))
        self.output_formats.append(output_format)
        if not self.responses:
            raise AssertionError("ScriptedLLM ran out of responses")
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        usage = ChatInvokeUsage(prompt_tokens=100, completion_tokens=20, total_tokens=120)
        if output_format is None:
            return ChatInvokeCompletion(completion=item, usage=usage)
        return ChatInvokeCompletion(completion=output_format.model_validate(item), usage=usage)


def default_snapshot(url: str = "https://shop.example.com/cart") -> BrowserStateSnapshot:
    return BrowserStateSnapshot(
        url=url,
        title="Cart",
        tabs=[TabInfo(page_id=0, url=url, title="Cart")],
        elements=[
            UIElement(index=1, tag="input", attributes={"name": "user", "type": "text"}),
            UIElement(index=3, tag="a", text="Help"),
            UIElement(index=7, tag="button", text="Checkout"),
        ],
    )


class FakeEnvironment(Environment):
    def __init__(
        self,
        snapshot: Optional[BrowserStateSnapshot] = None,
        snapshot_failures: int = 0,
        allowed_domains: Optional[List[str]] = None,
    ) -> None:
        self.snapshot = snapshot or default_snapshot()
        self.snapshot_failures = snapshot_failures
        self.intents: List[ActionIntent] = []
        self.outcomes: Dict[str, ActionOutcome] = {}
        self.after_dispatch = None
        self.closed = False
        self._allowed = list(allowed_domains or [])

    async def get_state_snapshot(self, include_screenshot: bool = True) -> BrowserStateSnapshot:
        if self.snapshot_failures > 0:
            self.snapshot_failures -= 1
            raise BrowserEnvironmentError("browser crashed")
        return self.snapshot

    async def dispatch(self, intent: ActionIntent) -> ActionOutcome:
        self.intents.append(intent)
        if self.after_dispatch is not None:
            self.after_dispatch(self, intent)
        return self.outcomes.get(intent.name, ActionOutcome(ok=True))

    async def close(self) -> None:
        self.closed = True

    @property
    def allowed_domains(self) -> List[str]:
        return list(self._allowed)


@pytest.fixture
def environment() -> FakeEnvironment:
    return FakeEnvironment()
