"""Shared fakes: a tab that renders a banded page, a CDP session, a browser."""

from __future__ import annotations

import asyncio
import base64
import io
from contextlib import asynccontextmanager

import pytest
from PIL import Image

from qasweep.core import capture
from qasweep.detectors.page_analysis import ANALYSIS_JS
from qasweep.detectors.responsive import RESPONSIVE_JS
from qasweep.errors import PageLoadTimeout
from qasweep.utils import smart_wait

BAND_HEIGHT = 50
PALETTE = [
    (220, 30, 30),
    (30, 200, 30),
    (30, 30, 220),
    (230, 200, 20),
    (200, 30, 200),
    (20, 200, 200),
]


def band_color(y: int) -> tuple[int, int, int]:
    return PALETTE[(y // BAND_HEIGHT) % len(PALETTE)]


def png_data_url(image: Image.Image) -> str:
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


def empty_analysis() -> dict:
    return {
        "brokenLinks": [],
        "layoutIssues": [],
        "accessibilityIssues": [],
        "seoIssues": [],
        "seoData": {},
        "performance": {},
    }


class FakeCDP:
    """Debugger session double; emulation calls act on the attached tab."""

    def __init__(self, fail_on: set[str] | None = None, detach_error: Exception | None = None):
        self.sent: list[tuple[str, dict | None]] = []
        self.detach_calls = 0
        self.fail_on = fail_on or set()
        self.detach_error = detach_error
        self.tab: FakeTab | None = None

    async def send(self, method: str, params: dict | None = None):
        self.sent.append((method, params))
        if method in self.fail_on:
            raise RuntimeError(f"{method} failed")
        if method == "Emulation.setDeviceMetricsOverride":
            self.tab.emulation = dict(params)
        elif method == "Emulation.clearDeviceMetricsOverride":
            self.tab.emulation = None
        elif method == "Page.captureScreenshot":
            return {"data": self.tab.render_emulated()}
        return {}

    async def detach(self):
        self.detach_calls += 1
        if self.detach_error:
            raise self.detach_error

    def methods(self) -> list[str]:
        return [m for m, _ in self.sent]


class FakeTab:
    """A tab whose page is horizontal colour bands of BAND_HEIGHT pixels.

    Like a Playwright page, ``capture_visible`` is clipped to the tab's own
    viewport even while a debugger session emulates another device; only
    ``Page.captureScreenshot`` on that session follows the emulated metrics.
    """

    _ids = 0

    def __init__(
        self,
        document_height: int = 100,
        viewport_height: int = 100,
        viewport_width: int = 40,
        scroll_y: int = 0,
        analysis: dict | None = None,
        analysis_error: Exception | None = None,
        responsive_result: dict | None = None,
        failing_captures: set[int] | None = None,
        attach_error: Exception | None = None,
        cdp: FakeCDP | None = None,
        timeout_urls: set[str] | None = None,
        navigate_delay: float = 0,
    ):
        FakeTab._ids += 1
        self.tab_id = FakeTab._ids
        self.url = "about:blank"
        self.document_height = document_height
        self.viewport_height = viewport_height
        self.viewport_width = viewport_width
        self.scroll_y = scroll_y
        self.analysis = analysis if analysis is not None else empty_analysis()
        self.analysis_error = analysis_error
        self.responsive_result = responsive_result or {"issues": []}
        self.failing_captures = failing_captures or set()
        self.attach_error = attach_error
        self.cdp = cdp or FakeCDP()
        self.timeout_urls = timeout_urls or set()
        self.navigate_delay = navigate_delay
        self.emulation: dict | None = None

        self.navigations: list[str] = []
        self.reloads = 0
        self.scroll_requests: list[int] = []
        self.capture_calls = 0
        self.capture_log: list[tuple[str, int]] = []
        self.attach_calls = 0
        self.analysis_calls = 0
        self.viewport_restores = 0
        self.closed = False

    def viewport(self) -> tuple[int, int, float]:
        if self.emulation:
            return self.emulation["width"], self.emulation["height"], self.emulation["deviceScaleFactor"]
        return self.viewport_width, self.viewport_height, 1

    # ── Tab interface ─────────────────────────────────────────────────────────

    async def navigate(self, url: str, timeout_ms: int = 30000):
        self.navigations.append(url)
        if self.navigate_delay:
            await asyncio.sleep(self.navigate_delay)
        if url in self.timeout_urls:
            raise PageLoadTimeout(url, timeout_ms)
        self.url = url

    async def reload(self, timeout_ms: int = 30000):
        self.reloads += 1

    async def evaluate(self, script: str, arg=None):
        width, height, ratio = self.viewport()
        if script == smart_wait._READY_STATE_JS:
            return "complete"
        if script == capture._DIMENSIONS_JS:
            return {
                "viewport": {"width": width, "height": height},
                "document": {"width": width, "height": self.document_height},
                "scrollPosition": {"x": 0, "y": self.scroll_y},
                "devicePixelRatio": ratio,
                "url": self.url,
            }
        if script == capture._SCROLL_JS:
            self.scroll_requests.append(arg)
            self.scroll_y = max(0, min(arg, self.document_height - height))
            return {"x": 0, "y": self.scroll_y}
        if script == capture._RESTORE_SCROLL_JS:
            self.scroll_y = arg["y"]
            return None
        if script == ANALYSIS_JS:
            self.analysis_calls += 1
            if self.analysis_error:
                raise self.analysis_error
            return self.analysis
        if script == RESPONSIVE_JS:
            return self.responsive_result
        raise AssertionError(f"unexpected script: {script[:40]}")

    async def capture_visible(self) -> str:
        self._count_capture()
        return png_data_url(self._render(self.viewport_width, self.viewport_height, 1))

    def render_emulated(self) -> str:
        """Base64 PNG of the emulated viewport at its device pixel ratio."""
        self._count_capture()
        width, height, ratio = self.viewport()
        image = self._render(width, height, ratio)
        return png_data_url(image).partition(",")[2]

    async def attach_debugger(self):
        self.attach_calls += 1
        if self.attach_error:
            raise self.attach_error
        self.cdp.tab = self
        return self.cdp

    async def restore_viewport(self):
        self.viewport_restores += 1

    async def close(self):
        self.closed = True

    def _count_capture(self):
        call = self.capture_calls
        self.capture_calls += 1
        self.capture_log.append((self.url, self.scroll_y))
        if call in self.failing_captures:
            raise RuntimeError(f"capture {call} failed")

    def _render(self, width: int, height: int, ratio: float) -> Image.Image:
        pixels_w, pixels_h = int(width * ratio), int(height * ratio)
        image = Image.new("RGB", (pixels_w, pixels_h), "white")
        for row in range(pixels_h):
            page_y = self.scroll_y + int(row / ratio)
            if page_y < self.document_height:
                image.paste(band_color(page_y), (0, row, pixels_w, row + 1))
        return image


class FakeBrowser:
    def __init__(self, working: FakeTab | None = None, tab_factory=None):
        self.working = working or FakeTab()
        self.tab_factory = tab_factory or (lambda: FakeTab(document_height=self.working.document_height))
        self.opened: list[FakeTab] = []
        self.started = False
        self.closed = False
        self._lock = asyncio.Lock()

    async def start(self):
        self.started = True

    async def close(self):
        self.closed = True

    async def working_tab(self) -> FakeTab:
        return self.working

    @asynccontextmanager
    async def lease_working_tab(self):
        async with self._lock:
            yield self.working

    async def open_tab(self, url: str | None = None, timeout_ms: int = 30000) -> FakeTab:
        tab = self.tab_factory()
        self.opened.append(tab)
        if url:
            await tab.navigate(url, timeout_ms=timeout_ms)
        return tab


class FakeAIClient:
    def __init__(self, visual: dict | Exception | None = None, technical: dict | Exception | None = None):
        self.visual = visual if visual is not None else {"content": "visual", "model": "fake", "timestamp": 1}
        self.technical = technical if technical is not None else {"content": "technical", "model": "fake", "timestamp": 1}
        self.visual_calls: list[tuple[str, list]] = []
        self.technical_calls: list[str] = []

    async def visual_report(self, url, screenshots):
        self.visual_calls.append((url, list(screenshots)))
        if isinstance(self.visual, Exception):
            raise self.visual
        return dict(self.visual)

    async def technical_report(self, url, url_result):
        self.technical_calls.append(url)
        if isinstance(self.technical, Exception):
            raise self.technical
        return dict(self.technical)


@pytest.fixture
def fake_tab() -> FakeTab:
    return FakeTab()


@pytest.fixture
def fake_browser() -> FakeBrowser:
    return FakeBrowser()
