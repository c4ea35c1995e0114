"""Error taxonomy shared by the agent, the registry and the LLM adapters."""

from __future__ import annotations

from typing import Optional


class BrowserAgentError(Exception):
    """Base class for every error raised by the agent core."""


class ActionValidationError(BrowserAgentError):
    """Raised when action arguments do not match the action's parameter model."""


class ActionExecutionError(BrowserAgentError):
    """Raised by action handlers that ran and failed."""


class BrowserEnvironmentError(BrowserAgentError):
    """Raised when the browser collaborator is unreachable or returns an invalid snapshot."""


class ContextBudgetError(BrowserAgentError):
    """Raised when the pinned messages alone exceed the configured token budget."""


class ModelError(BrowserAgentError):
    pass


class ModelProviderError(ModelError):
    """Non rate-limit failure of an LLM call (server, config, timeout or parse)."""

    kind = "provider"

    def __init__(self, message: str, status_code: int = 502, model: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.model = model

    def __str__(self) -> str:
        return self.message


class ModelRateLimitError(ModelProviderError):
    kind = "rate_limit"

    def __init__(self, message: str, status_code: int = 429, model: Optional[str] = None) -> None:
        super().__init__(message, status_code=status_code, model=model)


class SchemaViolationError(ModelProviderError):
    """Structured output could not be coerced into the requested shape."""

    kind = "schema_violation"
