"""Playwright-backed browser collaborator."""

from __future__ import annotations

import asyncio
import base64
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

from playwright.async_api import BrowserContext, Error as PlaywrightError, Page, Playwright, async_playwright

from .config import PLAYWRIGHT_CHANNEL, PLAYWRIGHT_EXECUTABLE, USER_DATA_DIR
from .environment import Environment
from .exceptions import ActionExecutionError, BrowserEnvironmentError
from .models import ActionIntent, ActionOutcome, BrowserStateSnapshot, TabInfo, UIElement
from .robustness import click_robust, fill_robust, wait_for_page_quiet
from .utils import url_matches_any

logger = logging.getLogger(__name__)

VIEWPORT = {"width": 1280, "height": 1100}

INDEX_ATTR = "data-agent-index"

_INDEX_SCRIPT = r"""
({ attr, limit, attributes }) => {
  document.querySelectorAll(`[${attr}]`).forEach((el) => el.removeAttribute(attr));
  const selector = [
    "a[href]", "button", "input:not([type=hidden])", "select", "textarea", "summary",
    "[role=button]", "[role=link]", "[role=menuitem]", "[role=option]", "[role=tab]",
    "[role=checkbox]", "[role=radio]", "[role=switch]", "[role=textbox]", "[role=combobox]",
    "[contenteditable=true]", "[onclick]", "[tabindex]:not([tabindex='-1'])",
  ].join(",");
  const visible = (el) => {
    const style = window.getComputedStyle(el);
    if (!style || style.visibility === "hidden" || style.display === "none" || Number(style.opacity) === 0) return false;
    const rect = el.getBoundingClientRect();
    if (!rect || rect.width < 1 || rect.height < 1) return false;
    return rect.bottom > 0 && rect.top < window.innerHeight && rect.right > 0 && rect.left < window.innerWidth;
  };
  const elements = [];
  let index = 0;
  for (const el of document.querySelectorAll(selector)) {
    if (elements.length >= limit) break;
    if (!visible(el)) continue;
    el.setAttribute(attr, String(index));
    const attrs = {};
    for (const name of attributes) {
      const value = el.getAttribute(name);
      if (value) attrs[name] = value.slice(0, 80);
    }
    const text = (el.innerText || el.value || "").replace(/\s+/g, " ").trim().slice(0, 120);
    elements.push({ index, tag: el.tagName.toLowerCase(), role: el.getAttribute("role"), text, attributes: attrs });
    index += 1;
  }
  const scrollHeight = document.documentElement ? document.documentElement.scrollHeight : 0;
  return {
    elements,
    pixelsAbove: Math.round(window.scrollY),
    pixelsBelow: Math.max(0, Math.round(scrollHeight - window.scrollY - window.innerHeight)),
  };
}
"""

_SNAPSHOT_ATTRIBUTES = [
    "title", "type", "name", "role", "aria-label", "placeholder", "value", "alt", "aria-expanded", "href",
]


class PlaywrightEnvironment(Environment):
    """Drives one Playwright browser context; safe to share between agents.

    Every snapshot and dispatch runs under one ``asyncio.Lock`` so agents sharing
    the session never interleave navigation. ``acquire``/``release`` count owners;
    the browser closes when the last owner releases it.
    """

    def __init__(
        self,
        context: BrowserContext,
        *,
        playwright: Optional[Playwright] = None,
        timeout_ms: int = 8000,
        retries: int = 3,
        element_limit: int = 200,
        allowed_domains: Optional[List[str]] = None,
    ) -> None:
        self.context = context
        self._playwright = playwright
        self.timeout_ms = timeout_ms
        self.retries = retries
        self.element_limit = element_limit
        self._allowed_domains = list(allowed_domains or [])
        self._lock = asyncio.Lock()
        self._owners = 1
        self._closed = False
        self._page: Optional[Page] = context.pages[0] if context.pages else None
        self._previous_keys: Tuple[str, Set[str]] = ("", set())

    @classmethod
    async def launch(
        cls,
        browser: str = "chromium",
        headless: bool = False,
        user_data_dir: Optional[str] = None,
        **kwargs: Any,
    ) -> "PlaywrightEnvironment":
        playwright = await async_playwright().start()
        browser_type = getattr(playwright, browser, None)
        if browser_type is None:
            await playwright.stop()
            raise ValueError(f"Unsupported browser engine: {browser}")
        resolved_dir = Path(user_data_dir or USER_DATA_DIR).expanduser()
        resolved_dir.mkdir(parents=True, exist_ok=True)
        launch_kwargs: Dict[str, Any] = {
            "user_data_dir": str(resolved_dir),
            "headless": headless,
            "viewport": VIEWPORT,
            "reduced_motion": "reduce",
        }
        if browser == "chromium":
            if PLAYWRIGHT_EXECUTABLE:
                launch_kwargs["executable_path"] = PLAYWRIGHT_EXECUTABLE
            elif PLAYWRIGHT_CHANNEL:
                launch_kwargs["channel"] = PLAYWRIGHT_CHANNEL
        try:
            context = await browser_type.launch_persistent_context(**launch_kwargs)
        except PlaywrightError as exc:
            await playwright.stop()
            raise BrowserEnvironmentError(f"Could not launch {browser}: {exc}") from exc
        logger.info("Launched %s (headless=%s) with profile %s", browser, headless, resolved_dir)
        return cls(context, playwright=playwright, **kwargs)

    @property
    def allowed_domains(self) -> List[str]:
        return list(self._allowed_domains)

    def acquire(self) -> "PlaywrightEnvironment":
        if self._closed:
            raise BrowserEnvironmentError("Browser session is already closed")
        self._owners += 1
        return self

    async def release(self) -> None:
        self._owners -= 1
        if self._owners > 0 or self._closed:
            return
        self._closed = True
        try:
            await self.context.close()
        except PlaywrightError as exc:
            logger.debug("Error closing browser context: %s", exc)
        if self._playwright is not None:
            await self._playwright.stop()

    async def close(self) -> None:
        await self.release()

    async def _current_page(self) -> Page:
        if self._closed:
            raise BrowserEnvironmentError("Browser session is closed")
        if self._page is None or self._page.is_closed():
            pages = [page for page in self.context.pages if not page.is_closed()]
            self._page = pages[-1] if pages else await self.context.new_page()
        return self._page

    # --- observation -------------------------------------------------------

    async def get_state_snapshot(self, include_screenshot: bool = True) -> BrowserStateSnapshot:
        async with self._lock:
            try:
                page = await self._current_page()
                await wait_for_page_quiet(page, self.timeout_ms)
                raw = await page.evaluate(
                    _INDEX_SCRIPT,
                    {"attr": INDEX_ATTR, "limit": self.element_limit, "attributes": _SNAPSHOT_ATTRIBUTES},
                )
                tabs = []
                for page_id, tab in enumerate(self.context.pages):
                    tabs.append(TabInfo(page_id=page_id, url=tab.url, title=await tab.title()))
                screenshot = None
                if include_screenshot:
                    screenshot = base64.b64encode(await page.screenshot(type="png")).decode("ascii")
                title = await page.title()
            except PlaywrightError as exc:
                raise BrowserEnvironmentError(f"Could not read browser state: {exc}") from exc

        if not isinstance(raw, dict):
            raise BrowserEnvironmentError("Element indexing script returned an invalid payload")
        elements = [
            UIElement(selector=f'[{INDEX_ATTR}="{item["index"]}"]', **item) for item in raw.get("elements", [])
        ]
        self._mark_new_elements(page.url, elements)
        return BrowserStateSnapshot(
            url=page.url,
            title=title,
            tabs=tabs,
            elements=elements,
            screenshot=screenshot,
            pixels_above=int(raw.get("pixelsAbove") or 0),
            pixels_below=int(raw.get("pixelsBelow") or 0),
        )

    def _mark_new_elements(self, url: str, elements: List[UIElement]) -> None:
        keys = {f"{element.tag}|{element.text}|{sorted(element.attributes.items())}" for element in elements}
        previous_url, previous_keys = self._previous_keys
        if previous_url == url and previous_keys:
            for element in elements:
                if f"{element.tag}|{element.text}|{sorted(element.attributes.items())}" not in previous_keys:
                    element.is_new = True
        self._previous_keys = (url, keys)

    # --- actions -----------------------------------------------------------

    async def dispatch(self, intent: ActionIntent) -> ActionOutcome:
        handler = getattr(self, f"_do_{intent.name}", None)
        if handler is None:
            return ActionOutcome(ok=False, message=f"Unsupported browser action '{intent.name}'")
        async with self._lock:
            try:
                outcome = await handler(**intent.params)
            except (PlaywrightError, ActionExecutionError) as exc:
                message = str(exc).strip().splitlines()[0] if str(exc).strip() else type(exc).__name__
                logger.info("Browser action %s failed: %s", intent.name, message)
                return ActionOutcome(ok=False, message=message)
        return outcome or ActionOutcome()

    def _locator(self, page: Page, index: int):
        return page.locator(f'[{INDEX_ATTR}="{int(index)}"]').first

    async def _do_navigate(self, url: str, new_tab: bool = False) -> ActionOutcome:
        if self._allowed_domains and not url_matches_any(url, self._allowed_domains):
            return ActionOutcome(ok=False, message=f"Navigation to non-allowed URL: {url}")
        if new_tab:
            self._page = await self.context.new_page()
        page = await self._current_page()
        await page.goto(url, wait_until="domcontentloaded", timeout=self.timeout_ms * 4)
        return ActionOutcome(message=f"Navigated to {url}")

    async def _do_go_back(self) -> ActionOutcome:
        page = await self._current_page()
        await page.go_back(wait_until="domcontentloaded", timeout=self.timeout_ms)
        return ActionOutcome()

    async def _do_click(self, index: int) -> ActionOutcome:
        page = await self._current_page()
        pages_before = len(self.context.pages)
        await click_robust(page, self._locator(page, index), self.timeout_ms, self.retries)
        await wait_for_page_quiet(page, self.timeout_ms)
        opened = len(self.context.pages) > pages_before
        if opened:
            self._page = self.context.pages[-1]
        return ActionOutcome(data={"new_tab": opened})

    async def _do_type(self, index: int, text: str) -> ActionOutcome:
        page = await self._current_page()
        await fill_robust(page, self._locator(page, index), text, self.timeout_ms, self.retries)
        return ActionOutcome()

    async def _do_switch_tab(self, page_id: int) -> ActionOutcome:
        pages = self.context.pages
        if not 0 <= page_id < len(pages):
            return ActionOutcome(ok=False, message=f"No tab with id {page_id}")
        self._page = pages[page_id]
        await self._page.bring_to_front()
        return ActionOutcome()

    async def _do_close_tab(self, page_id: int) -> ActionOutcome:
        pages = self.context.pages
        if not 0 <= page_id < len(pages):
            return ActionOutcome(ok=False, message=f"No tab with id {page_id}")
        closing = pages[page_id]
        await closing.close()
        if closing is self._page:
            self._page = None
        return ActionOutcome()

    async def _do_scroll(self, down: bool = True, num_pages: float = 1.0) -> ActionOutcome:
        page = await self._current_page()
        await page.evaluate(
            "([sign, pages]) => window.scrollBy(0, sign * pages * window.innerHeight)",
            [1 if down else -1, num_pages],
        )
        return ActionOutcome()

    async def _do_send_keys(self, keys: str) -> ActionOutcome:
        page = await self._current_page()
        await page.keyboard.press(keys)
        return ActionOutcome()

    async def _do_scroll_to_text(self, text: str) -> ActionOutcome:
        page = await self._current_page()
        locator = page.get_by_text(text, exact=False)
        if await locator.count() == 0:
            return ActionOutcome(ok=False, message=f"Text '{text}' not found or not visible on page")
        await locator.first.scroll_into_view_if_needed(timeout=self.timeout_ms)
        return ActionOutcome()

    async def _do_dropdown_options(self, index: int) -> ActionOutcome:
        page = await self._current_page()
        options = await self._locator(page, index).evaluate(
            "(el) => el.options ? Array.from(el.options).map((option) => option.text) : []"
        )
        return ActionOutcome(data={"options": options or []})

    async def _do_select_option(self, index: int, text: str) -> ActionOutcome:
        page = await self._current_page()
        await self._locator(page, index).select_option(label=text, timeout=self.timeout_ms)
        return ActionOutcome()

    async def _do_page_content(self) -> ActionOutcome:
        page = await self._current_page()
        content = await page.inner_text("body", timeout=self.timeout_ms)
        return ActionOutcome(data={"content": content})
