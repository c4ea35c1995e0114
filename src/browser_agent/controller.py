"""Built-in browser actions and the controller that dispatches model-chosen actions."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Type
from urllib.parse import quote_plus

from pydantic import BaseModel, ConfigDict, Field, create_model

from .exceptions import ActionExecutionError
from .messages import UserMessage
from .models import ActionIntent, ActionOutcome, ActionResult
from .registry import ActionContext, Registry
from .utils import truncate

logger = logging.getLogger(__name__)

MAX_WAIT_SECONDS = 30

PAGE_EXTRACTION_MAX_CHARS = 20_000


class _Params(BaseModel):
    model_config = ConfigDict(extra="forbid")


class DoneAction(_Params):
    text: str
    success: bool = True
    files_to_display: List[str] = Field(default_factory=list)


class SearchGoogleAction(_Params):
    query: str


class GoToUrlAction(_Params):
    url: str
    new_tab: bool = False


class NoParamsAction(_Params):
    pass


class WaitAction(_Params):
    seconds: int = 3


class ClickElementAction(_Params):
    index: int


class InputTextAction(_Params):
    index: int
    text: str


class TabAction(_Params):
    page_id: int


class ScrollAction(_Params):
    down: bool = True
    num_pages: float = 1.0


class SendKeysAction(_Params):
    keys: str


class TextAction(_Params):
    text: str


class DropdownAction(_Params):
    index: int


class SelectDropdownAction(_Params):
    index: int
    text: str


class ExtractAction(_Params):
    query: str


class WriteFileAction(_Params):
    file_name: str
    content: str


class ReadFileAction(_Params):
    file_name: str


async def _dispatch(ctx: ActionContext, name: str, **params: Any) -> ActionOutcome:
    if ctx.environment is None:
        raise ActionExecutionError(f"No browser environment available for '{name}'")
    outcome = await ctx.environment.dispatch(ActionIntent(name=name, params=params))
    if not outcome.ok:
        raise ActionExecutionError(outcome.message or f"Browser could not perform '{name}'")
    return outcome


def _require_index(ctx: ActionContext, index: int) -> None:
    if ctx.snapshot is not None and ctx.snapshot.element_by_index(index) is None:
        raise ActionExecutionError(
            f"Element with index {index} does not exist on the current page - retry or use alternative actions"
        )


def _require_file_system(ctx: ActionContext):
    if ctx.file_system is None:
        raise ActionExecutionError("No workspace is configured for file actions")
    return ctx.file_system


def _memory(text: str) -> ActionResult:
    return ActionResult(extracted_content=text, include_in_memory=True, long_term_memory=text)


class Controller:
    """Owns a ``Registry`` pre-populated with the default browser actions."""

    def __init__(
        self,
        exclude_actions: Optional[List[str]] = None,
        output_model: Optional[Type[BaseModel]] = None,
    ) -> None:
        self.registry = Registry(exclude_actions)
        self.output_model = output_model
        self._register_done_action(output_model)
        self._register_default_actions()

    def action(self, description: str, **kwargs: Any):
        """Decorator to register a custom action; see ``Registry.action``."""
        return self.registry.action(description, **kwargs)

    async def act(self, action: Dict[str, Dict[str, Any]], ctx: ActionContext) -> ActionResult:
        """Execute one ``{name: params}`` item produced by the model."""
        for name, params in action.items():
            return await self.registry.execute(name, params, ctx)
        return ActionResult(error="Empty action", error_kind="validation", include_in_memory=True)

    def _register_done_action(self, output_model: Optional[Type[BaseModel]]) -> None:
        if output_model is not None:
            structured = create_model(
                "StructuredOutputAction",
                __config__=ConfigDict(extra="forbid"),
                success=(bool, True),
                data=(output_model, ...),
            )

            @self.registry.action(
                "Complete task - with success=True if the task is finished, success=False otherwise. "
                "Return the result in data following the required structure.",
                param_model=structured,
                name="done",
            )
            async def done_structured(params: Any, ctx: ActionContext) -> ActionResult:
                payload = params.data.model_dump_json()
                return ActionResult(
                    is_done=True,
                    success=params.success,
                    extracted_content=payload,
                    long_term_memory=f"Task completed. Success Status: {params.success}",
                    include_in_memory=True,
                )

            return

        @self.registry.action(
            "Complete task - provide a summary of results for the user. Set success=True if the task is "
            "completed successfully, False otherwise. Use files_to_display to attach workspace files.",
            param_model=DoneAction,
            name="done",
        )
        async def done(params: DoneAction, ctx: ActionContext) -> ActionResult:
            text = params.text
            attachments: List[str] = []
            if params.files_to_display and ctx.file_system is not None:
                known = set(ctx.file_system.list_files())
                for file_name in params.files_to_display:
                    if file_name in known:
                        attachments.append(str(ctx.file_system.base_dir / file_name))
                    else:
                        logger.warning("done() referenced unknown workspace file %s", file_name)
            memory = f"Task completed: {params.success} - {truncate(text, 100)}"
            return ActionResult(
                is_done=True,
                success=params.success,
                extracted_content=text,
                long_term_memory=memory,
                attachments=attachments,
                include_in_memory=True,
            )

    def _register_default_actions(self) -> None:
        registry = self.registry

        @registry.action(
            "Search the query in Google, the query should be a search query like humans search in Google.",
            param_model=SearchGoogleAction,
        )
        async def search_google(params: SearchGoogleAction, ctx: ActionContext) -> ActionResult:
            url = f"https://www.google.com/search?q={quote_plus(params.query)}&udm=14"
            await _dispatch(ctx, "navigate", url=url, new_tab=False)
            return _memory(f"🔍 Searched for \"{params.query}\" in Google")

        @registry.action("Navigate to URL, set new_tab=True to open it in a new tab", param_model=GoToUrlAction)
        async def go_to_url(params: GoToUrlAction, ctx: ActionContext) -> ActionResult:
            await _dispatch(ctx, "navigate", url=params.url, new_tab=params.new_tab)
            where = "new tab" if params.new_tab else "current tab"
            return _memory(f"🔗 Navigated to {params.url} in {where}")

        @registry.action("Go back", param_model=NoParamsAction)
        async def go_back(params: NoParamsAction, ctx: ActionContext) -> ActionResult:
            await _dispatch(ctx, "go_back")
            return _memory("🔙 Navigated back")

        @registry.action("Wait for x seconds, default 3 (max 30)", param_model=WaitAction)
        async def wait(params: WaitAction, ctx: ActionContext) -> ActionResult:
            seconds = max(0, min(params.seconds, MAX_WAIT_SECONDS))
            await asyncio.sleep(seconds)
            return _memory(f"🕒 Waited for {seconds} seconds")

        @registry.action("Click element by index", param_model=ClickElementAction)
        async def click_element_by_index(params: ClickElementAction, ctx: ActionContext) -> ActionResult:
            _require_index(ctx, params.index)
            outcome = await _dispatch(ctx, "click", index=params.index)
            message = f"🖱️ Clicked element with index {params.index}"
            if outcome.data.get("new_tab"):
                message += " - it opened a new tab, switch to it if needed"
            return _memory(message)

        @registry.action("Input text into an input interactive element", param_model=InputTextAction)
        async def input_text(params: InputTextAction, ctx: ActionContext) -> ActionResult:
            _require_index(ctx, params.index)
            await _dispatch(ctx, "type", index=params.index, text=params.text)
            shown = ctx.sensitive_data.mask(params.text) if ctx.sensitive_data else params.text
            return _memory(f"⌨️ Input {shown} into index {params.index}")

        @registry.action("Switch tab", param_model=TabAction)
        async def switch_tab(params: TabAction, ctx: ActionContext) -> ActionResult:
            await _dispatch(ctx, "switch_tab", page_id=params.page_id)
            return _memory(f"🔄 Switched to tab {params.page_id}")

        @registry.action("Close an existing tab", param_model=TabAction)
        async def close_tab(params: TabAction, ctx: ActionContext) -> ActionResult:
            await _dispatch(ctx, "close_tab", page_id=params.page_id)
            return _memory(f"❌ Closed tab {params.page_id}")

        @registry.action(
            "Scroll the page by num_pages viewport heights; down=False scrolls up", param_model=ScrollAction
        )
        async def scroll(params: ScrollAction, ctx: ActionContext) -> ActionResult:
            await _dispatch(ctx, "scroll", down=params.down, num_pages=params.num_pages)
            direction = "down" if params.down else "up"
            return _memory(f"🔍 Scrolled {direction} {params.num_pages} page(s)")

        @registry.action(
            "Send strings of special keys like Escape, Backspace, Enter, or shortcuts such as Control+o",
            param_model=SendKeysAction,
        )
        async def send_keys(params: SendKeysAction, ctx: ActionContext) -> ActionResult:
            await _dispatch(ctx, "send_keys", keys=params.keys)
            return _memory(f"⌨️ Sent keys: {params.keys}")

        @registry.action("Scroll to a text in the current page", param_model=TextAction)
        async def scroll_to_text(params: TextAction, ctx: ActionContext) -> ActionResult:
            await _dispatch(ctx, "scroll_to_text", text=params.text)
            return _memory(f"🔍 Scrolled to text: {params.text}")

        @registry.action("Get all options from a native dropdown", param_model=DropdownAction)
        async def get_dropdown_options(params: DropdownAction, ctx: ActionContext) -> ActionResult:
            _require_index(ctx, params.index)
            outcome = await _dispatch(ctx, "dropdown_options", index=params.index)
            options = outcome.data.get("options") or []
            if not options:
                raise ActionExecutionError(f"No options found for element {params.index}")
            lines = [f"{position}: text={option!r}" for position, option in enumerate(options)]
            content = "\n".join(lines) + "\nUse the exact text string in select_dropdown_option"
            return ActionResult(
                extracted_content=content,
                include_in_memory=True,
                long_term_memory=f"Found {len(options)} dropdown options for index {params.index}",
            )

        @registry.action(
            "Select dropdown option for interactive element index by the text of the option you want to select",
            param_model=SelectDropdownAction,
        )
        async def select_dropdown_option(params: SelectDropdownAction, ctx: ActionContext) -> ActionResult:
            _require_index(ctx, params.index)
            await _dispatch(ctx, "select_option", index=params.index, text=params.text)
            return _memory(f"Selected option {params.text} in element {params.index}")

        @registry.action(
            "Extract structured, semantic data from the current page based on a query, e.g. product details "
            "or all links. Only use this when the information is not visible in the browser state.",
            param_model=ExtractAction,
        )
        async def extract_structured_data(params: ExtractAction, ctx: ActionContext) -> ActionResult:
            outcome = await _dispatch(ctx, "page_content")
            content = str(outcome.data.get("content") or "")
            content = truncate(content, PAGE_EXTRACTION_MAX_CHARS)
            url = ctx.current_url or "the current page"
            if ctx.page_extraction_llm is None:
                extracted = content
            else:
                prompt = (
                    "You convert websites into structured information. Extract information from this webpage "
                    f"based on the query. Only use information present on the page.\nQuery: {params.query}\n"
                    f"Website:\n{content}"
                )
                response = await ctx.page_extraction_llm.ainvoke([UserMessage(content=prompt)])
                extracted = str(response.completion)
            return ActionResult(
                extracted_content=f"📄 Extracted from {url}\n<query>{params.query}</query>\n<result>\n{extracted}\n</result>",
                include_in_memory=True,
                long_term_memory=f"Extracted content from {url} for query: {params.query}",
            )

        @registry.action("Write content to a file in the workspace, replacing existing content", param_model=WriteFileAction)
        async def write_file(params: WriteFileAction, ctx: ActionContext) -> ActionResult:
            return _memory(_require_file_system(ctx).write_file(params.file_name, params.content))

        @registry.action("Append content to an existing workspace file", param_model=WriteFileAction)
        async def append_file(params: WriteFileAction, ctx: ActionContext) -> ActionResult:
            return _memory(_require_file_system(ctx).append_file(params.file_name, params.content))

        @registry.action("Read a file from the workspace", param_model=ReadFileAction)
        async def read_file(params: ReadFileAction, ctx: ActionContext) -> ActionResult:
            content = _require_file_system(ctx).read_file(params.file_name)
            return ActionResult(
                extracted_content=content,
                include_in_memory=True,
                long_term_memory=f"Read file {params.file_name}",
            )
