"""Contract the agent core requires from the browser collaborator."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List

from .models import ActionIntent, ActionOutcome, BrowserStateSnapshot


class Environment(ABC):
    """A controllable browser session.

    Implementations own their concurrency story: when one session is shared by
    several agents, conflicting operations must be serialized here, not by the
    agent core. Failures to observe or reach the browser raise
    ``BrowserEnvironmentError``.
    """

    @abstractmethod
    async def get_state_snapshot(self, include_screenshot: bool = True) -> BrowserStateSnapshot:
        raise NotImplementedError

    @abstractmethod
    async def dispatch(self, intent: ActionIntent) -> ActionOutcome:
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        raise NotImplementedError

    @property
    def allowed_domains(self) -> List[str]:
        """Domain globs the session may navigate to; empty means unrestricted."""
        return []
