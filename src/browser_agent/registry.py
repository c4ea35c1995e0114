"""Action registry: the catalogue of actions the model may request, and their dispatcher."""

from __future__ import annotations

import inspect
import json
import logging
import typing
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, create_model

from .environment import Environment
from .exceptions import ActionExecutionError, ActionValidationError
from .llm import BaseChatModel
from .models import ActionOutcome, ActionResult, BrowserStateSnapshot
from .sensitive_data import SensitiveDataResolver
from .utils import url_matches_any
from .workspace import FileSystem

logger = logging.getLogger(__name__)

PageFilter = Callable[[BrowserStateSnapshot], bool]

# Handler parameters with this name receive the ActionContext instead of model arguments.
CONTEXT_PARAM = "ctx"


@dataclass
class ActionContext:
    """Everything a handler may touch besides its own arguments."""

    environment: Optional[Environment] = None
    snapshot: Optional[BrowserStateSnapshot] = None
    available_file_paths: List[str] = field(default_factory=list)
    sensitive_data: Optional[SensitiveDataResolver] = None
    file_system: Optional[FileSystem] = None
    page_extraction_llm: Optional[BaseChatModel] = None
    context: Any = None

    @property
    def current_url(self) -> Optional[str]:
        return self.snapshot.url if self.snapshot else None

    @property
    def has_sensitive_data(self) -> bool:
        return bool(self.sensitive_data)


class RegisteredAction(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str
    handler: Callable[..., Any]
    param_model: Type[BaseModel]
    domains: Optional[List[str]] = None
    page_filter: Optional[Callable[[BrowserStateSnapshot], bool]] = None
    enabled: bool = True
    # True when the parameter model was derived from the handler's own signature.
    expand_params: bool = False

    @property
    def is_filtered(self) -> bool:
        return bool(self.domains) or self.page_filter is not None

    def matches(self, snapshot: BrowserStateSnapshot) -> bool:
        if self.domains and not url_matches_any(snapshot.url, self.domains):
            return False
        if self.page_filter is not None:
            try:
                return bool(self.page_filter(snapshot))
            except Exception as exc:  # noqa: BLE001
                logger.warning("Page filter for %s raised %s; hiding the action", self.name, exc)
                return False
        return True

    def prompt_description(self) -> str:
        skip_keys = {"title"}
        properties = self.param_model.model_json_schema().get("properties", {})
        params = {
            key: {sub_key: sub_value for sub_key, sub_value in value.items() if sub_key not in skip_keys}
            for key, value in properties.items()
        }
        return f"{self.description}: \n{{{self.name}: {json.dumps(params)}}}"


class Registry:
    def __init__(self, exclude_actions: Optional[List[str]] = None) -> None:
        self.actions: Dict[str, RegisteredAction] = {}
        self.exclude_actions = set(exclude_actions or [])
        self._item_models: Dict[str, Type[BaseModel]] = {}

    def register(
        self,
        name: str,
        description: str,
        handler: Callable[..., Any],
        param_model: Optional[Type[BaseModel]] = None,
        domains: Optional[List[str]] = None,
        page_filter: Optional[PageFilter] = None,
    ) -> Optional[RegisteredAction]:
        """Add an action; an existing action with the same name is replaced."""
        if name in self.exclude_actions:
            logger.debug("Skipping excluded action %s", name)
            return None
        expand = param_model is None
        if param_model is None:
            param_model = _param_model_from_signature(name, handler)
        if name in self.actions:
            logger.debug("Overriding registered action %s", name)
        action = RegisteredAction(
            name=name,
            description=description,
            handler=handler,
            param_model=param_model,
            domains=list(domains) if domains else None,
            page_filter=page_filter,
            expand_params=expand,
        )
        self.actions[name] = action
        self._item_models.pop(name, None)
        return action

    def action(
        self,
        description: str,
        param_model: Optional[Type[BaseModel]] = None,
        domains: Optional[List[str]] = None,
        page_filter: Optional[PageFilter] = None,
        name: Optional[str] = None,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator form of ``register``; the function name is the action name by default."""

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            self.register(
                name or func.__name__,
                description,
                func,
                param_model=param_model,
                domains=domains,
                page_filter=page_filter,
            )
            return func

        return decorator

    def enable(self, name: str) -> None:
        self.actions[name].enabled = True

    def disable(self, name: str) -> None:
        self.actions[name].enabled = False

    def available_actions(
        self,
        snapshot: Optional[BrowserStateSnapshot] = None,
        include_actions: Optional[List[str]] = None,
    ) -> List[RegisteredAction]:
        """Enabled actions usable on ``snapshot``.

        Without a snapshot only unfiltered actions are returned, which is what the
        system prompt advertises before any page is known.
        """
        available: List[RegisteredAction] = []
        for action in self.actions.values():
            if not action.enabled:
                continue
            if include_actions is not None and action.name not in include_actions:
                continue
            if snapshot is None:
                if action.is_filtered:
                    continue
            elif not action.matches(snapshot):
                continue
            available.append(action)
        return available

    def get_prompt_description(self, snapshot: Optional[BrowserStateSnapshot] = None) -> str:
        if snapshot is None:
            actions = self.available_actions()
        else:
            # Unfiltered actions are already in the system prompt.
            actions = [action for action in self.available_actions(snapshot) if action.is_filtered]
        return "\n".join(action.prompt_description() for action in actions)

    def create_action_model(
        self,
        snapshot: Optional[BrowserStateSnapshot] = None,
        include_actions: Optional[List[str]] = None,
    ) -> Any:
        """Union of one single-key model per available action, for structured output."""
        actions = self.available_actions(snapshot, include_actions=include_actions)
        if not actions:
            raise ValueError("No actions are available for the current page")
        items = [self._item_model(action) for action in actions]
        if len(items) == 1:
            return items[0]
        return Union[tuple(items)]  # type: ignore[return-value]

    def _item_model(self, action: RegisteredAction) -> Type[BaseModel]:
        cached = self._item_models.get(action.name)
        if cached is not None:
            return cached
        model_name = "".join(part.capitalize() for part in action.name.split("_")) + "Action"
        item = create_model(
            model_name,
            __config__=ConfigDict(extra="forbid"),
            **{action.name: (action.param_model, Field(..., description=action.description))},
        )
        self._item_models[action.name] = item
        return item

    def validate_params(self, name: str, raw_args: Union[str, Dict[str, Any], None]) -> BaseModel:
        action = self.actions.get(name)
        if action is None or not action.enabled:
            raise ActionValidationError(f"Action '{name}' is not available")
        if isinstance(raw_args, str):
            try:
                raw_args = json.loads(raw_args) if raw_args.strip() else {}
            except json.JSONDecodeError as exc:
                raise ActionValidationError(f"Arguments for '{name}' are not valid JSON: {exc}") from exc
        try:
            return action.param_model.model_validate(raw_args or {})
        except ValidationError as exc:
            details = "; ".join(
                f"{'.'.join(str(loc) for loc in error['loc']) or 'params'}: {error['msg']}" for error in exc.errors()
            )
            raise ActionValidationError(f"Invalid parameters for action '{name}': {details}") from exc

    async def execute(
        self,
        name: str,
        raw_args: Union[str, Dict[str, Any], None],
        ctx: Optional[ActionContext] = None,
    ) -> ActionResult:
        """Validate, resolve secrets, run the handler and normalize what it returns.

        Never raises for action-level problems: invalid input yields a
        ``validation`` result without running the handler, and handler failures
        yield an ``execution`` result.
        """
        ctx = ctx or ActionContext()
        try:
            params = self.validate_params(name, raw_args)
            action = self.actions[name]
            if ctx.snapshot is not None and not action.matches(ctx.snapshot):
                raise ActionValidationError(f"Action '{name}' is not available on {ctx.snapshot.url}")
            if ctx.sensitive_data:
                params = self.validate_params(name, ctx.sensitive_data.resolve(params.model_dump(), ctx.current_url))
        except ActionValidationError as exc:
            logger.info("❌ %s", exc)
            return ActionResult(error=str(exc), error_kind="validation", include_in_memory=True)

        try:
            if action.expand_params:
                kwargs = {key: getattr(params, key) for key in type(params).model_fields}
                if CONTEXT_PARAM in inspect.signature(action.handler).parameters:
                    kwargs[CONTEXT_PARAM] = ctx
                returned = action.handler(**kwargs)
            else:
                returned = action.handler(params, ctx)
            if inspect.isawaitable(returned):
                returned = await returned
        except ActionExecutionError as exc:
            logger.info("❌ Action %s failed: %s", name, exc)
            return ActionResult(error=str(exc), error_kind="execution", include_in_memory=True)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Action %s raised %s: %s", name, type(exc).__name__, exc, exc_info=logger.isEnabledFor(logging.DEBUG))
            return ActionResult(
                error=f"Error executing action {name}: {type(exc).__name__}: {exc}",
                error_kind="execution",
                include_in_memory=True,
            )
        return _normalize_result(name, returned)


def _normalize_result(name: str, returned: Any) -> ActionResult:
    if isinstance(returned, ActionResult):
        return returned
    if isinstance(returned, str):
        return ActionResult(extracted_content=returned, include_in_memory=True)
    if returned is None:
        return ActionResult()
    if isinstance(returned, ActionOutcome):
        if returned.ok:
            return ActionResult(extracted_content=returned.message, include_in_memory=True)
        return ActionResult(error=returned.message or f"{name} failed", error_kind="execution", include_in_memory=True)
    return ActionResult(
        error=f"Invalid action result type {type(returned).__name__} returned by {name}",
        error_kind="execution",
        include_in_memory=True,
    )


def _param_model_from_signature(name: str, handler: Callable[..., Any]) -> Type[BaseModel]:
    try:
        hints = typing.get_type_hints(handler)
    except (NameError, TypeError):
        hints = {}
    fields: Dict[str, Any] = {}
    for param_name, param in inspect.signature(handler).parameters.items():
        if param_name == CONTEXT_PARAM or param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        annotation = hints.get(param_name, Any)
        default = param.default if param.default is not inspect.Parameter.empty else ...
        fields[param_name] = (annotation, default)
    model_name = "".join(part.capitalize() for part in name.split("_")) + "Params"
    return create_model(model_name, __config__=ConfigDict(extra="forbid"), **fields)
