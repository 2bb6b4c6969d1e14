"""Automated browser handle.

Launches one Chromium instance through Playwright and hands out tabs. The
orchestration core only ever talks to ``Tab``: navigate/reload, evaluate an
isolated script against the DOM, capture the visible viewport, open a
remote-debugging session, close. A single working tab is reused for every
URL and is leased to one URL at a time, so concurrent runs take turns;
short-lived extra tabs are opened for isolated work such as mobile capture.
"""

from __future__ import annotations

import asyncio
import base64
import itertools
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from playwright.async_api import (
    Browser,
    BrowserContext,
    CDPSession,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from qasweep.config import PAGE_LOAD_TIMEOUT_MS
from qasweep.core.emulation import DESKTOP
from qasweep.errors import PageLoadTimeout

log = logging.getLogger(__name__)

_tab_ids = itertools.count(1)


class Tab:
    """One browser tab (a Playwright page)."""

    def __init__(self, page: Page):
        self._page = page
        self.tab_id = next(_tab_ids)

    @property
    def url(self) -> str:
        return self._page.url

    async def navigate(self, url: str, timeout_ms: int = PAGE_LOAD_TIMEOUT_MS):
        """Open ``url``, or reload when the tab already shows it.

        Only waits for the navigation to commit; load completion is polled
        separately by ``wait_for_page_load``.
        """
        try:
            if self._page.url == url:
                await self._page.reload(wait_until="commit", timeout=timeout_ms)
            else:
                await self._page.goto(url, wait_until="commit", timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise PageLoadTimeout(url, timeout_ms) from e

    async def reload(self, timeout_ms: int = PAGE_LOAD_TIMEOUT_MS):
        try:
            await self._page.reload(wait_until="commit", timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise PageLoadTimeout(self.url, timeout_ms) from e

    async def evaluate(self, script: str, arg=None):
        if arg is None:
            return await self._page.evaluate(script)
        return await self._page.evaluate(script, arg)

    async def capture_visible(self) -> str:
        """PNG of the visible viewport as a data URL."""
        buf = await self._page.screenshot(type="png", full_page=False)
        return "data:image/png;base64," + base64.b64encode(buf).decode("ascii")

    async def attach_debugger(self) -> CDPSession:
        return await self._page.context.new_cdp_session(self._page)

    async def restore_viewport(self):
        """Re-apply the context viewport after a raw CDP metrics override was cleared."""
        size = self._page.viewport_size
        if size:
            await self._page.set_viewport_size(size)

    async def close(self):
        if not self._page.is_closed():
            await self._page.close()


class BrowserHandle:
    """Owns the Playwright browser, its context and the working tab."""

    def __init__(self, headless: bool = True):
        self._headless = headless
        self._pw: Playwright | None = None
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None
        self._working_tab: Tab | None = None
        self._working_lock = asyncio.Lock()

    async def __aenter__(self) -> BrowserHandle:
        await self.start()
        return self

    async def __aexit__(self, *exc):
        await self.close()

    async def start(self):
        if self._context is not None:
            return
        self._pw = await async_playwright().start()
        self._browser = await self._pw.chromium.launch(headless=self._headless)
        self._context = await self._browser.new_context(
            viewport={"width": DESKTOP.width, "height": DESKTOP.height},
            user_agent=DESKTOP.user_agent,
        )
        log.info("Browser started (headless=%s)", self._headless)

    async def working_tab(self) -> Tab:
        """The shared tab reused (and reloaded) for every URL."""
        if self._working_tab is None or self._working_tab._page.is_closed():
            self._working_tab = Tab(await self._require_context().new_page())
        return self._working_tab

    @asynccontextmanager
    async def lease_working_tab(self) -> AsyncIterator[Tab]:
        """Exclusive use of the working tab for the duration of the block."""
        async with self._working_lock:
            yield await self.working_tab()

    async def open_tab(self, url: str | None = None, timeout_ms: int = PAGE_LOAD_TIMEOUT_MS) -> Tab:
        """Open a short-lived tab, optionally navigating it to ``url``."""
        tab = Tab(await self._require_context().new_page())
        if url:
            try:
                await tab.navigate(url, timeout_ms=timeout_ms)
            except Exception:
                await tab.close()
                raise
        return tab

    async def close(self):
        self._working_tab = None
        try:
            if self._browser:
                await self._browser.close()
        except Exception as e:
            log.warning("Failed to close browser: %s", e)
        try:
            if self._pw:
                await self._pw.stop()
        except Exception as e:
            log.warning("Failed to stop Playwright: %s", e)
        self._pw = self._browser = self._context = None

    def _require_context(self) -> BrowserContext:
        if self._context is None:
            raise RuntimeError("Browser not started")
        return self._context
