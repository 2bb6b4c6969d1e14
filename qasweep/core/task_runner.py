"""Per-URL test pipeline.

Runs one URL through four phases separated by hard barriers:

1. navigate the working tab and wait for the page to load
2. capture every enabled device profile concurrently (all-settled)
3. in-page analysis, then the responsive sweep
4. AI reports (visual and technical, concurrently)

Nothing in here raises out of ``test_url``: every failure becomes an issue,
an error field or a structured error object on the UrlResult.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from qasweep.config import EMULATION_SETTLE_MS, PAGE_LOAD_GRACE_MS, PAGE_LOAD_POLL_MS, PAGE_LOAD_TIMEOUT_MS
from qasweep.core.ai_engine import GeminiReportClient
from qasweep.core.capture import CAPTURE_SETTINGS, CaptureSettings, ScrollingCaptureEngine
from qasweep.core.emulation import PROFILES, DeviceProfile, with_emulation
from qasweep.core.stitcher import Stitcher
from qasweep.detectors.page_analysis import apply_analysis, run_page_analysis
from qasweep.detectors.responsive import ResponsiveDetector
from qasweep.errors import PageLoadTimeout
from qasweep.models.run import ProgressCallback
from qasweep.models.types import ScreenshotResult, Severity, TestConfig, UrlResult, now_ms
from qasweep.utils.smart_wait import wait_for_page_load

log = logging.getLogger(__name__)


class UrlTaskRunner:
    """Tests single URLs with one run's configuration."""

    def __init__(
        self,
        browser,
        config: TestConfig,
        ai_client: GeminiReportClient | None = None,
        on_progress: ProgressCallback | None = None,
        cancelled: Callable[[], bool] | None = None,
        capture_settings: dict[str, CaptureSettings] | None = None,
        stitcher: Stitcher | None = None,
        responsive: ResponsiveDetector | None = None,
        load_timeout_ms: int = PAGE_LOAD_TIMEOUT_MS,
        load_grace_ms: int = PAGE_LOAD_GRACE_MS,
        load_poll_ms: int = PAGE_LOAD_POLL_MS,
        emulation_settle_ms: int = EMULATION_SETTLE_MS,
        mobile_profile: DeviceProfile = PROFILES["mobile"],
    ):
        self.browser = browser
        self.config = config
        self.ai = ai_client or GeminiReportClient()
        self._on_progress = on_progress
        self._cancelled = cancelled or (lambda: False)
        self.capture_settings = capture_settings or CAPTURE_SETTINGS
        self.stitcher = stitcher or Stitcher()
        self.responsive = responsive or ResponsiveDetector()
        self.load_timeout_ms = load_timeout_ms
        self.load_grace_ms = load_grace_ms
        self.load_poll_ms = load_poll_ms
        self.emulation_settle_ms = emulation_settle_ms
        self.mobile_profile = mobile_profile

    async def test_url(self, url: str) -> UrlResult:
        try:
            async with self.browser.lease_working_tab() as tab:
                return await self._test_on(tab, url)
        except Exception as e:
            log.error("No working tab for %s: %s", url, e)
            result = UrlResult(url=url)
            result.record_error(f"Navigation failed: {e}")
            return result

    async def _test_on(self, tab, url: str) -> UrlResult:
        result = UrlResult(url=url)

        try:
            await self._open(tab, url)
        except PageLoadTimeout as e:
            log.error("%s", e)
            result.record_error(str(e))
            return result
        except Exception as e:
            log.error("Navigation to %s failed: %s", url, e)
            result.record_error(f"Navigation failed: {e}")
            return result

        try:
            if self.config.full_screenshots:
                await self._capture_phase(tab, url, result)
            await self._analysis_phase(tab, url, result)
            if self.config.ai_analysis and not self._cancelled():
                await self._ai_phase(url, result)
        except Exception as e:
            log.exception("Unexpected error while testing %s", url)
            result.record_error(str(e))

        return result

    async def _open(self, tab, url: str):
        self._emit("url_phase", {"url": url, "phase": "navigate"})
        started = asyncio.get_running_loop().time()
        await tab.navigate(url, timeout_ms=self.load_timeout_ms)
        await self._wait_loaded(tab, url, started, self.load_grace_ms)

    async def _wait_loaded(self, tab, url: str, started: float, grace_ms: int):
        """Wait for the load with what is left of the budget that began at ``started``."""
        elapsed_ms = int((asyncio.get_running_loop().time() - started) * 1000)
        remaining = self.load_timeout_ms - elapsed_ms
        if remaining <= 0:
            raise PageLoadTimeout(url, self.load_timeout_ms)
        try:
            await wait_for_page_load(tab, timeout_ms=remaining, poll_ms=self.load_poll_ms, grace_ms=grace_ms)
        except PageLoadTimeout as e:
            raise PageLoadTimeout(url, self.load_timeout_ms) from e

    # ── Phase 2: capture ──────────────────────────────────────────────────────

    async def _capture_phase(self, tab, url: str, result: UrlResult):
        profiles = self.config.capture_profiles()
        self._emit("url_phase", {"url": url, "phase": "capture", "profiles": profiles})
        self._status(f"Capturing screenshots for {url}...")

        outcomes = await asyncio.gather(
            *(self._capture_profile(profile, tab, url) for profile in profiles),
            return_exceptions=True,
        )

        for profile, outcome in zip(profiles, outcomes):
            if isinstance(outcome, BaseException):
                log.warning("[%s] screenshot capture failed for %s: %s", profile, url, outcome)
                outcome = ScreenshotResult(profile=profile, success=False, error=str(outcome))
                result.add_issue(
                    "screenshot_error",
                    Severity.MEDIUM,
                    {"profile": profile, "error": outcome.error},
                    message=f"Failed to capture {profile} screenshot: {outcome.error}",
                )
            result.screenshots.append(outcome)

        result.tests["screenshot"] = {s.profile: s.summary() for s in result.screenshots}
        if not any(s.success for s in result.screenshots):
            result.add_issue("capture_failed", Severity.CRITICAL, message="No screenshot could be captured")

    async def _capture_profile(self, profile: str, tab, url: str) -> ScreenshotResult:
        engine = ScrollingCaptureEngine(self.capture_settings[profile], self.stitcher, profile=profile)
        if profile != "mobile":
            return await engine.capture(tab)

        started = asyncio.get_running_loop().time()
        mobile_tab = await self.browser.open_tab(url, timeout_ms=self.load_timeout_ms)
        try:
            await self._wait_loaded(mobile_tab, url, started, 0)

            async def reload():
                reloaded = asyncio.get_running_loop().time()
                await mobile_tab.reload(timeout_ms=self.load_timeout_ms)
                await self._wait_loaded(mobile_tab, url, reloaded, 0)

            return await with_emulation(
                mobile_tab,
                self.mobile_profile,
                engine.capture,
                settle_ms=self.emulation_settle_ms,
                reload=reload,
            )
        finally:
            try:
                await mobile_tab.close()
            except Exception as e:
                log.warning("Failed to close mobile capture tab: %s", e)

    # ── Phase 3: analysis ─────────────────────────────────────────────────────

    async def _analysis_phase(self, tab, url: str, result: UrlResult):
        self._emit("url_phase", {"url": url, "phase": "analysis"})
        try:
            analysis = await run_page_analysis(tab, self.config)
            apply_analysis(analysis, result, self.config)
        except Exception as e:
            log.error("Page analysis failed for %s: %s", url, e)
            result.tests["analysis"] = {"error": str(e)}
            result.add_issue("analysis_error", Severity.HIGH, {"error": str(e)}, message=f"Page analysis failed: {e}")

        # Emulation would disturb the layout checks above, so this runs after them
        if self.config.mobile_tablet:
            try:
                await self.responsive.detect(tab, result)
            except Exception as e:
                log.error("Responsive check failed for %s: %s", url, e)
                result.tests["responsive"] = {"error": str(e)}

    # ── Phase 4: AI reports ───────────────────────────────────────────────────

    async def _ai_phase(self, url: str, result: UrlResult):
        self._emit("url_phase", {"url": url, "phase": "ai"})
        self._status(f"Generating visual AI analysis for {url}...")

        visual, technical = await asyncio.gather(
            self.ai.visual_report(url, result.screenshots),
            self.ai.technical_report(url, result),
            return_exceptions=True,
        )
        result.ai_report = {
            "visual": _as_report(visual, url),
            "technical": _as_report(technical, url),
        }

    def _status(self, status: str):
        self._emit("status", {"status": status})

    def _emit(self, event: str, data: dict):
        if self._on_progress:
            self._on_progress(event, data)


def _as_report(outcome, url: str) -> dict:
    if isinstance(outcome, BaseException):
        return {"error": str(outcome), "timestamp": now_ms(), "url": url}
    return outcome
