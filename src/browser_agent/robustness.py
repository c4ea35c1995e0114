"""Retry helpers and resilient Playwright interactions."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple, Type, TypeVar

from playwright.async_api import Error as PlaywrightError, Locator, Page, TimeoutError as PlaywrightTimeoutError

from .exceptions import ActionExecutionError

T = TypeVar("T")

DEFAULT_BACKOFFS: Sequence[float] = (0.3, 0.7, 1.5)

logger = logging.getLogger(__name__)


def exponential_backoffs(base: float, cap: float, attempts: int) -> List[float]:
    """Delays before each retry: base, 2*base, 4*base... never above ``cap``."""
    return [min(cap, base * (2**attempt)) for attempt in range(max(0, attempts - 1))]


async def with_retries(
    async_op: Callable[[], Awaitable[T]],
    attempts: int,
    backoffs: Optional[Sequence[float]] = None,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
) -> T:
    """Run ``async_op`` up to ``attempts`` times, sleeping between attempts.

    Only exceptions in ``retry_on`` are retried; anything else, and the last
    retryable failure, propagates to the caller.
    """
    attempts = max(1, attempts)
    delays = list(backoffs or DEFAULT_BACKOFFS)

    for attempt in range(attempts):
        try:
            return await async_op()
        except retry_on as exc:
            if attempt == attempts - 1:
                raise
            delay = delays[attempt] if attempt < len(delays) else delays[-1]
            if on_retry is not None:
                on_retry(attempt + 1, exc, delay)
            await asyncio.sleep(delay)
    raise RuntimeError("with_retries exhausted without a result")


async def wait_for_page_quiet(page: Page, timeout_ms: int) -> None:
    """Best-effort wait for load and DOM mutations to settle; never raises."""
    try:
        await page.wait_for_load_state("domcontentloaded", timeout=timeout_ms)
    except (PlaywrightTimeoutError, PlaywrightError):
        pass

    idle_script = """
        () => {
            const w = window;
            if (!w.__agentMutationIdle) {
                w.__agentMutationIdle = { last: Date.now() };
                const observer = new MutationObserver(() => { w.__agentMutationIdle.last = Date.now(); });
                observer.observe(document.documentElement, { subtree: true, childList: true, attributes: true });
            }
            return Date.now() - w.__agentMutationIdle.last > 400;
        }
    """
    try:
        await page.wait_for_function(idle_script, timeout=timeout_ms)
    except (PlaywrightTimeoutError, PlaywrightError):
        pass


async def click_robust(page: Page, locator: Locator, timeout_ms: int, retries: int) -> None:
    """Click, falling back to a mouse click at the element centre and finally a forced click."""

    async def attempt() -> None:
        await locator.wait_for(state="visible", timeout=timeout_ms)
        if not await locator.is_enabled():
            raise ActionExecutionError("Element is disabled")

        center = None
        try:
            await locator.scroll_into_view_if_needed(timeout=timeout_ms)
            box = await locator.bounding_box()
            if box:
                center = (box["x"] + box["width"] / 2.0, box["y"] + box["height"] / 2.0)
        except PlaywrightError:
            pass

        try:
            await locator.click(timeout=timeout_ms)
            return
        except PlaywrightError as exc:
            logger.debug("Locator click failed, trying mouse fallback: %s", exc)

        if center:
            try:
                await page.mouse.click(center[0], center[1], delay=20)
                return
            except PlaywrightError:
                pass

        await locator.click(timeout=timeout_ms, force=True)

    await with_retries(attempt, attempts=retries, retry_on=(PlaywrightError,))


async def fill_robust(page: Page, locator: Locator, value: str, timeout_ms: int, retries: int) -> None:
    """Clear and type into a text-compatible element, verifying the final value."""
    await locator.wait_for(state="visible", timeout=timeout_ms)
    info = await _describe_element(locator)
    if not _element_supports_text_entry(info):
        raise ActionExecutionError(
            f"Element <{info.get('tag') or '?'} type={info.get('type') or ''}> does not accept text input"
        )

    async def attempt() -> None:
        try:
            await locator.scroll_into_view_if_needed(timeout=timeout_ms)
            await locator.click(timeout=timeout_ms)
        except PlaywrightError:
            pass
        try:
            await locator.fill(value, timeout=timeout_ms)
        except PlaywrightError:
            modifier = "Meta" if await _is_mac(page) else "Control"
            await page.keyboard.press(f"{modifier}+A")
            await page.keyboard.press("Backspace")
            await locator.press_sequentially(value, timeout=timeout_ms)

        if info.get("contentEditable"):
            return
        try:
            current = await locator.input_value(timeout=timeout_ms)
        except PlaywrightError:
            return
        if current.strip() != value.strip():
            raise PlaywrightError("Input value did not match expected text")

    await with_retries(attempt, attempts=retries, retry_on=(PlaywrightError,))


async def _is_mac(page: Page) -> bool:
    try:
        platform = await page.evaluate("() => navigator.platform || ''")
    except PlaywrightError:
        return False
    return isinstance(platform, str) and platform.lower().startswith("mac")


async def _describe_element(locator: Locator) -> dict:
    try:
        return await locator.evaluate(
            """(el) => ({
                tag: el.tagName ? el.tagName.toLowerCase() : "",
                type: el.type || "",
                role: el.getAttribute("role") || "",
                contentEditable: el.isContentEditable || false
            })"""
        )
    except PlaywrightError:
        return {}


def _element_supports_text_entry(info: dict) -> bool:
    tag = (info.get("tag") or "").lower()
    input_type = (info.get("type") or "").lower()
    role = (info.get("role") or "").lower()
    if info.get("contentEditable") or role in {"textbox", "searchbox", "combobox"}:
        return True
    if tag == "textarea":
        return True
    if tag != "input":
        return False
    return input_type in {"", "text", "search", "email", "url", "tel", "password", "number"}
