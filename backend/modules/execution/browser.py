"""
modules/execution/browser.py
------------------------------
Browser capability used by the booking executor.

Every call returns a BrowserResult instead of raising, so the executor's
state machine only ever branches on `success` / `timed_out`.

  BrowserCapability — the Protocol the executor depends on
  PlaywrightBrowser — live implementation on Playwright's async API
  StubBrowser       — scripted no-op browser (USE_STUB_BROWSER, tests)
"""

from __future__ import annotations
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, Sequence, Union

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

import config

logger = logging.getLogger(__name__)

Selectors = Union[str, Sequence[str]]


@dataclass(frozen=True)
class BrowserResult:
    success: bool
    output: str = ""
    error: Optional[str] = None
    timed_out: bool = False


def _as_list(selectors: Selectors) -> list[str]:
    return [selectors] if isinstance(selectors, str) else list(selectors)


class BrowserCapability(Protocol):
    async def open(self, url: str) -> BrowserResult: ...
    async def snapshot(self) -> BrowserResult: ...
    async def click(self, selectors: Selectors) -> BrowserResult: ...
    async def click_text(self, labels: Sequence[str]) -> BrowserResult: ...
    async def fill(self, selectors: Selectors, value: str) -> BrowserResult: ...
    async def fill_by_label(self, pairs: Sequence[tuple[str, str]]) -> BrowserResult: ...
    async def select(self, selector: str, value: str) -> BrowserResult: ...
    async def press(self, key: str) -> BrowserResult: ...
    async def wait(self, selector: str, timeout_ms: int = 10_000) -> BrowserResult: ...
    async def screenshot(self, path: str, full_page: bool = False) -> BrowserResult: ...
    async def text(self) -> BrowserResult: ...
    async def eval(self, expression: str) -> BrowserResult: ...
    async def close(self) -> BrowserResult: ...


# ── Playwright ───────────────────────────────────────────────────────────────

class PlaywrightBrowser:
    """
    One Chromium page per instance. The browser is launched lazily by
    `open()` and torn down by `close()`, which is safe to call twice.

    Locator-based calls search the main frame first, then child frames,
    because hosted checkouts are commonly rendered inside an iframe.
    """

    def __init__(
        self,
        headless: bool = config.BROWSER_HEADLESS,
        nav_timeout_ms: int = config.BROWSER_NAV_TIMEOUT_MS,
        action_timeout_ms: int = 5_000,
    ):
        self.headless = headless
        self.nav_timeout_ms = nav_timeout_ms
        self.action_timeout_ms = action_timeout_ms
        self._pw = None
        self._browser = None
        self._page = None

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def open(self, url: str) -> BrowserResult:
        try:
            if self._page is None:
                self._pw = await async_playwright().start()
                self._browser = await self._pw.chromium.launch(headless=self.headless)
                self._page = await self._browser.new_page()
            await self._page.goto(url, wait_until="domcontentloaded", timeout=self.nav_timeout_ms)
            return BrowserResult(True, self._page.url)
        except PlaywrightTimeoutError as exc:
            return BrowserResult(False, error=str(exc), timed_out=True)
        except PlaywrightError as exc:
            return BrowserResult(False, error=str(exc))

    async def close(self) -> BrowserResult:
        try:
            if self._browser is not None:
                await self._browser.close()
            if self._pw is not None:
                await self._pw.stop()
            return BrowserResult(True)
        except PlaywrightError as exc:
            logger.warning("[browser] close failed: %s", exc)
            return BrowserResult(False, error=str(exc))
        finally:
            self._pw = self._browser = self._page = None

    # ── Reading ───────────────────────────────────────────────────────────────

    async def snapshot(self) -> BrowserResult:
        if self._page is None:
            return BrowserResult(False, error="no page open")
        try:
            return BrowserResult(True, await self._page.locator("body").aria_snapshot())
        except PlaywrightError as exc:
            return BrowserResult(False, error=str(exc))

    async def text(self) -> BrowserResult:
        """Visible text of the main document and every reachable frame."""
        if self._page is None:
            return BrowserResult(False, error="no page open")
        parts: list[str] = []
        for frame in self._page.frames:
            try:
                parts.append(await frame.locator("body").inner_text(timeout=self.action_timeout_ms))
            except PlaywrightError:
                continue
        return BrowserResult(True, "\n".join(p for p in parts if p))

    async def eval(self, expression: str) -> BrowserResult:
        if self._page is None:
            return BrowserResult(False, error="no page open")
        try:
            value: Any = await self._page.evaluate(expression)
        except PlaywrightError as exc:
            return BrowserResult(False, error=str(exc))
        return BrowserResult(True, value if isinstance(value, str) else json.dumps(value))

    async def screenshot(self, path: str, full_page: bool = False) -> BrowserResult:
        if self._page is None:
            return BrowserResult(False, error="no page open")
        try:
            await self._page.screenshot(path=path, full_page=full_page)
            return BrowserResult(True, path)
        except PlaywrightError as exc:
            return BrowserResult(False, error=str(exc))

    # ── Acting ────────────────────────────────────────────────────────────────

    async def click(self, selectors: Selectors) -> BrowserResult:
        for frame in self._frames():
            for sel in _as_list(selectors):
                loc = frame.locator(sel).first
                try:
                    if await loc.count() and await loc.is_visible():
                        await loc.click(timeout=self.action_timeout_ms)
                        return BrowserResult(True, sel)
                except PlaywrightError:
                    continue
        return BrowserResult(False, error="no matching element")

    async def click_text(self, labels: Sequence[str]) -> BrowserResult:
        """Click the first button or link whose name contains a label, in label priority order."""
        for label in labels:
            pattern = re.compile(re.escape(label), re.IGNORECASE)
            for frame in self._frames():
                loc = frame.get_by_role("button", name=pattern).or_(
                    frame.get_by_role("link", name=pattern)
                ).first
                try:
                    if await loc.count() and await loc.is_visible():
                        await loc.click(timeout=self.action_timeout_ms)
                        return BrowserResult(True, label)
                except PlaywrightError:
                    continue
        return BrowserResult(False, error="no control matched any label")

    async def fill(self, selectors: Selectors, value: str) -> BrowserResult:
        for frame in self._frames():
            for sel in _as_list(selectors):
                loc = frame.locator(sel).first
                try:
                    if await loc.count() and await loc.is_editable():
                        await loc.fill(value, timeout=self.action_timeout_ms)
                        return BrowserResult(True, sel)
                except PlaywrightError:
                    continue
        return BrowserResult(False, error="no matching field")

    async def fill_by_label(self, pairs: Sequence[tuple[str, str]]) -> BrowserResult:
        """Fill empty fields whose label contains the given text. Output is the fill count."""
        filled = 0
        for label, value in pairs:
            if not value:
                continue
            pattern = re.compile(re.escape(label), re.IGNORECASE)
            for frame in self._frames():
                loc = frame.get_by_label(pattern)
                try:
                    for i in range(await loc.count()):
                        field = loc.nth(i)
                        if await field.is_editable() and not await field.input_value():
                            await field.fill(value, timeout=self.action_timeout_ms)
                            filled += 1
                except PlaywrightError:
                    continue
        return BrowserResult(filled > 0, str(filled))

    async def select(self, selector: str, value: str) -> BrowserResult:
        if self._page is None:
            return BrowserResult(False, error="no page open")
        try:
            await self._page.select_option(selector, value, timeout=self.action_timeout_ms)
            return BrowserResult(True, value)
        except PlaywrightError as exc:
            return BrowserResult(False, error=str(exc))

    async def press(self, key: str) -> BrowserResult:
        if self._page is None:
            return BrowserResult(False, error="no page open")
        try:
            await self._page.keyboard.press(key)
            return BrowserResult(True, key)
        except PlaywrightError as exc:
            return BrowserResult(False, error=str(exc))

    async def wait(self, selector: str, timeout_ms: int = 10_000) -> BrowserResult:
        if self._page is None:
            return BrowserResult(False, error="no page open")
        try:
            await self._page.wait_for_selector(selector, timeout=timeout_ms)
            return BrowserResult(True, selector)
        except PlaywrightTimeoutError as exc:
            return BrowserResult(False, error=str(exc), timed_out=True)
        except PlaywrightError as exc:
            return BrowserResult(False, error=str(exc))

    def _frames(self):
        return self._page.frames if self._page is not None else []


# ── Stub ─────────────────────────────────────────────────────────────────────

class StubBrowser:
    """
    Scripted browser with no I/O. Every call is appended to `calls`.

    `page_texts` is consumed one entry per `text()` call; the last entry
    repeats. The defaults walk a free registration to a confirmation page.
    """

    def __init__(
        self,
        snapshot_text: str = "",
        page_texts: Sequence[str] = ("Thanks for your order! Order #100200300",),
        clickable_labels: Optional[Sequence[str]] = None,
        submit_clicks: int = 1,
        fillable: bool = True,
        open_error: Optional[str] = None,
        open_timed_out: bool = False,
        eval_handler: Optional[Callable[[str], str]] = None,
        raise_on: Optional[str] = None,
    ):
        self.snapshot_text = snapshot_text
        self.page_texts = list(page_texts) or [""]
        self.clickable_labels = clickable_labels
        self.submit_clicks = submit_clicks
        self.fillable = fillable
        self.open_error = open_error
        self.open_timed_out = open_timed_out
        self.eval_handler = eval_handler
        self.raise_on = raise_on
        self.calls: list[str] = []
        self.closed = False

    def _record(self, name: str) -> None:
        self.calls.append(name)
        if self.raise_on == name:
            raise RuntimeError(f"stub browser failure in {name}")

    async def open(self, url: str) -> BrowserResult:
        self._record("open")
        if self.open_error is not None or self.open_timed_out:
            return BrowserResult(False, error=self.open_error or "navigation timeout",
                                 timed_out=self.open_timed_out)
        return BrowserResult(True, url)

    async def snapshot(self) -> BrowserResult:
        self._record("snapshot")
        return BrowserResult(True, self.snapshot_text)

    async def click(self, selectors: Selectors) -> BrowserResult:
        self._record("click")
        if self.submit_clicks > 0:
            self.submit_clicks -= 1
            return BrowserResult(True, _as_list(selectors)[0])
        return BrowserResult(False, error="no matching element")

    async def click_text(self, labels: Sequence[str]) -> BrowserResult:
        self._record("click_text")
        for label in labels:
            if self.clickable_labels is None or label in self.clickable_labels:
                return BrowserResult(True, label)
        return BrowserResult(False, error="no control matched any label")

    async def fill(self, selectors: Selectors, value: str) -> BrowserResult:
        self._record("fill")
        return BrowserResult(self.fillable, _as_list(selectors)[0] if self.fillable else "")

    async def fill_by_label(self, pairs: Sequence[tuple[str, str]]) -> BrowserResult:
        self._record("fill_by_label")
        return BrowserResult(False, "0")

    async def select(self, selector: str, value: str) -> BrowserResult:
        self._record("select")
        return BrowserResult(True, value)

    async def press(self, key: str) -> BrowserResult:
        self._record("press")
        return BrowserResult(True, key)

    async def wait(self, selector: str, timeout_ms: int = 10_000) -> BrowserResult:
        self._record("wait")
        return BrowserResult(True, selector)

    async def screenshot(self, path: str, full_page: bool = False) -> BrowserResult:
        self._record("screenshot")
        return BrowserResult(True, path)

    async def text(self) -> BrowserResult:
        self._record("text")
        page = self.page_texts.pop(0) if len(self.page_texts) > 1 else self.page_texts[0]
        return BrowserResult(True, page)

    async def eval(self, expression: str) -> BrowserResult:
        self._record("eval")
        return BrowserResult(True, self.eval_handler(expression) if self.eval_handler else "")

    async def close(self) -> BrowserResult:
        self.calls.append("close")
        self.closed = True
        return BrowserResult(True)


def get_browser() -> BrowserCapability:
    if config.USE_STUB_BROWSER:
        return StubBrowser()
    return PlaywrightBrowser()
