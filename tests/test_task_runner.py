"""Tests for the per-URL pipeline."""

import asyncio
import base64
import io

import pytest
from PIL import Image

from conftest import FakeAIClient, FakeBrowser, FakeTab, band_color, empty_analysis
from qasweep.core import task_runner
from qasweep.core.capture import CaptureSettings
from qasweep.core.emulation import DeviceProfile
from qasweep.core.task_runner import UrlTaskRunner
from qasweep.detectors.responsive import ResponsiveDetector
from qasweep.errors import PageLoadTimeout
from qasweep.models.types import Severity, TestConfig

URL = "https://example.com/"

FAST_CAPTURE = {
    "desktop": CaptureSettings(capture_delay_ms=0),
    "mobile": CaptureSettings(max_captures=15, step_fraction=0.8, capture_delay_ms=0, start_quality=75),
}

# Small enough to keep emulated captures cheap
SMALL_MOBILE = DeviceProfile("mobile", 30, 100, 2, True)


def make_runner(browser, config: dict, **kwargs) -> UrlTaskRunner:
    kwargs.setdefault("ai_client", FakeAIClient())
    return UrlTaskRunner(
        browser,
        TestConfig.from_dict(config),
        capture_settings=FAST_CAPTURE,
        responsive=ResponsiveDetector(settle_ms=0),
        load_grace_ms=0,
        load_poll_ms=20,
        emulation_settle_ms=0,
        mobile_profile=SMALL_MOBILE,
        **kwargs,
    )


def _types(result) -> list[str]:
    return [i.type for i in result.issues]


def _image(data_url: str) -> Image.Image:
    return Image.open(io.BytesIO(base64.b64decode(data_url.partition(",")[2]))).convert("RGB")


def _close(actual, expected, tolerance=40):
    return all(abs(a - e) <= tolerance for a, e in zip(actual, expected))


class TestNavigation:
    """Tests for phase 1."""

    @pytest.mark.asyncio
    async def test_load_timeout_fails_only_the_url(self) -> None:
        """A page-load timeout is a critical test_error and nothing else runs."""
        browser = FakeBrowser(FakeTab(timeout_urls={URL}))
        result = await make_runner(browser, {"fullScreenshots": True}).test_url(URL)

        assert result.error and "timeout" in result.error.lower()
        assert _types(result) == ["test_error"]
        assert result.issues[0].severity == Severity.CRITICAL
        assert result.screenshots == []
        assert browser.working.analysis_calls == 0

    @pytest.mark.asyncio
    async def test_working_tab_is_reused(self) -> None:
        """Consecutive URLs navigate the same tab."""
        browser = FakeBrowser()
        runner = make_runner(browser, {})
        await runner.test_url(URL)
        await runner.test_url("https://example.com/about")
        assert browser.working.navigations == [URL, "https://example.com/about"]
        assert browser.opened == []

    @pytest.mark.asyncio
    async def test_load_wait_shares_the_navigation_budget(self, monkeypatch) -> None:
        """The readiness wait only gets what navigation left of the load timeout."""
        budgets = []

        async def recording_wait(tab, timeout_ms, poll_ms, grace_ms):
            budgets.append(timeout_ms)

        monkeypatch.setattr(task_runner, "wait_for_page_load", recording_wait)
        browser = FakeBrowser(FakeTab(navigate_delay=0.2))
        result = await make_runner(browser, {}, load_timeout_ms=1000).test_url(URL)

        assert result.error is None
        assert len(budgets) == 1
        assert 0 < budgets[0] <= 800

    @pytest.mark.asyncio
    async def test_load_wait_timeout_reports_whole_budget(self, monkeypatch) -> None:
        """A readiness timeout is reported against the full load timeout."""

        async def timing_out(tab, timeout_ms, poll_ms, grace_ms):
            raise PageLoadTimeout(tab.url, timeout_ms)

        monkeypatch.setattr(task_runner, "wait_for_page_load", timing_out)
        browser = FakeBrowser(FakeTab(navigate_delay=0.1))
        result = await make_runner(browser, {}, load_timeout_ms=1000).test_url(URL)

        assert result.error == f"Page load timeout after 1000ms: {URL}"
        assert _types(result) == ["test_error"]

    @pytest.mark.asyncio
    async def test_slow_navigation_leaves_no_budget(self, monkeypatch) -> None:
        """Navigation that uses up the timeout fails without waiting any longer."""
        budgets = []

        async def recording_wait(tab, timeout_ms, poll_ms, grace_ms):
            budgets.append(timeout_ms)

        monkeypatch.setattr(task_runner, "wait_for_page_load", recording_wait)
        browser = FakeBrowser(FakeTab(navigate_delay=0.15))
        result = await make_runner(browser, {}, load_timeout_ms=100).test_url(URL)

        assert budgets == []
        assert "timeout after 100ms" in result.error

    @pytest.mark.asyncio
    async def test_concurrent_urls_take_turns_on_the_working_tab(self) -> None:
        """Two URLs tested at once never interleave on the shared tab."""
        tab = FakeTab(document_height=300, navigate_delay=0.01)
        browser = FakeBrowser(tab)
        first = make_runner(browser, {"fullScreenshots": True})
        second = make_runner(browser, {"fullScreenshots": True})

        a, b = await asyncio.gather(first.test_url("https://a.example/"), second.test_url("https://b.example/"))

        assert a.screenshots[0].stitched and b.screenshots[0].stitched
        assert [url for url, _ in tab.capture_log] == ["https://a.example/"] * 3 + ["https://b.example/"] * 3


class TestCapturePhase:
    """Tests for phase 2."""

    @pytest.mark.asyncio
    async def test_single_viewport_page(self) -> None:
        """A page as tall as the viewport gives one unstitched desktop screenshot."""
        browser = FakeBrowser(FakeTab(document_height=100, viewport_height=100))
        result = await make_runner(browser, {"fullScreenshots": True}).test_url(URL)

        assert len(result.screenshots) == 1
        shot = result.screenshots[0]
        assert shot.profile == "desktop"
        assert shot.success and shot.stitched is False
        assert "test_error" not in _types(result)

    @pytest.mark.asyncio
    async def test_desktop_and_mobile(self) -> None:
        """Mobile capture runs in its own emulated tab that is closed afterwards."""
        browser = FakeBrowser(FakeTab(document_height=300))
        result = await make_runner(browser, {"fullScreenshots": True, "mobileTablet": True}).test_url(URL)

        assert [s.profile for s in result.screenshots] == ["desktop", "mobile"]
        assert all(s.success for s in result.screenshots)
        assert len(browser.opened) == 1
        mobile_tab = browser.opened[0]
        assert mobile_tab.closed
        assert mobile_tab.reloads == 1
        assert mobile_tab.cdp.detach_calls == 1
        assert mobile_tab.scroll_requests == [0, 80, 160, 240]
        summary = result.tests["screenshot"]
        assert set(summary) == {"desktop", "mobile"}
        assert summary["mobile"]["success"] is True
        assert summary["mobile"]["segmentCount"] == 4
        assert "fullPageDataUrl" not in summary["desktop"]

    @pytest.mark.asyncio
    async def test_mobile_capture_has_profile_width(self) -> None:
        """Mobile segments and the stitched page follow the emulated device, not the tab's viewport."""
        browser = FakeBrowser(FakeTab(document_height=300, viewport_width=40))
        config = {"fullScreenshots": True, "viewMode": "mobile"}
        result = await make_runner(browser, config).test_url(URL)

        shot = result.screenshots[0]
        assert shot.success and shot.stitched
        assert shot.dimensions.viewport_width == SMALL_MOBILE.width
        assert {_image(s.data_url).size for s in shot.segments} == {(60, 200)}

        page = _image(shot.full_page_data_url)
        assert page.size == (SMALL_MOBILE.width, 300)
        for y in range(25, 300, 50):
            assert _close(page.getpixel((15, y)), band_color(y)), y

        mobile_tab = browser.opened[0]
        assert mobile_tab.viewport_restores == 1
        assert mobile_tab.emulation is None

    @pytest.mark.asyncio
    async def test_mobile_view_mode_only(self) -> None:
        """viewMode=mobile captures only the mobile profile."""
        browser = FakeBrowser()
        result = await make_runner(browser, {"fullScreenshots": True, "viewMode": "mobile"}).test_url(URL)

        assert [s.profile for s in result.screenshots] == ["mobile"]
        assert browser.working.capture_calls == 0

    @pytest.mark.asyncio
    async def test_mobile_failure_is_not_fatal(self) -> None:
        """A mobile emulation failure leaves the desktop capture and the URL intact."""
        browser = FakeBrowser(
            FakeTab(document_height=300),
            tab_factory=lambda: FakeTab(attach_error=RuntimeError("debugger busy")),
        )
        result = await make_runner(browser, {"fullScreenshots": True, "mobileTablet": True}).test_url(URL)

        desktop, mobile = result.screenshots
        assert desktop.success and desktop.stitched
        assert not mobile.success and "debugger busy" in mobile.error
        assert result.error is None
        errors = [i for i in result.issues if i.type == "screenshot_error"]
        assert len(errors) == 1
        assert errors[0].severity == Severity.MEDIUM
        assert errors[0].details["profile"] == "mobile"
        assert browser.opened[0].closed

    @pytest.mark.asyncio
    async def test_all_captures_fail(self) -> None:
        """No screenshot at all is critical but analysis still runs."""
        browser = FakeBrowser(FakeTab(document_height=300, failing_captures=set(range(10))))
        result = await make_runner(browser, {"fullScreenshots": True}).test_url(URL)

        assert "screenshot_error" in _types(result)
        assert "capture_failed" in _types(result)
        assert browser.working.analysis_calls == 1
        assert result.error is None


class TestAnalysisPhase:
    """Tests for phase 3."""

    @pytest.mark.asyncio
    async def test_analysis_failure_is_recorded(self) -> None:
        """A throwing analysis script sets tests.analysis.error."""
        browser = FakeBrowser(FakeTab(analysis_error=RuntimeError("script crashed")))
        result = await make_runner(browser, {"seoCheck": True}).test_url(URL)

        assert result.tests["analysis"] == {"error": "script crashed"}
        assert "analysis_error" in _types(result)
        assert result.error is None

    @pytest.mark.asyncio
    async def test_issue_mapping(self) -> None:
        """Analysis findings become issues with fixed severities."""
        analysis = empty_analysis()
        analysis.update({
            "brokenLinks": [{"href": "https://example.com/404", "text": "Old page"}],
            "layoutIssues": [{"type": "horizontal_scroll", "message": "Page has horizontal scrollbar"}],
            "accessibilityIssues": [{"type": "missing_alt_text", "element": "img"}],
            "seoIssues": [{"type": "missing_title", "message": "Page is missing title tag"}],
            "seoData": {"headers": [{"tag": "h1", "text": "Hi", "level": 1}], "metaTags": {}},
            "performance": {"loadComplete": 6000, "domContentLoaded": 2500, "firstByte": 100},
        })
        browser = FakeBrowser(FakeTab(analysis=analysis))
        config = {"brokenLinks": True, "spacingValidation": True, "accessibility": True,
                  "seoCheck": True, "lighthouse": True}
        result = await make_runner(browser, config).test_url(URL)

        by_type = {}
        for issue in result.issues:
            by_type.setdefault(issue.type, []).append(issue.severity)
        assert by_type["broken_link"] == [Severity.HIGH]
        assert by_type["layout"] == [Severity.LOW]
        assert by_type["accessibility"] == [Severity.HIGH]
        assert by_type["seo"] == [Severity.MEDIUM]
        assert sorted(by_type["performance"]) == sorted([Severity.HIGH, Severity.MEDIUM])
        assert result.tests["brokenLinks"]["found"][0]["href"].endswith("/404")
        assert result.seo_data["headers"][0]["tag"] == "h1"
        assert result.metrics["loadComplete"] == 6000

    @pytest.mark.asyncio
    async def test_responsive_check(self) -> None:
        """mobileTablet sweeps both devices, each in its own emulation scope."""
        tab = FakeTab(responsive_result={"issues": [{"type": "horizontal_scroll", "message": "too wide"}]})
        result = await make_runner(FakeBrowser(tab), {"mobileTablet": True}).test_url(URL)

        assert set(result.tests["responsive"]) == {"Mobile", "Tablet"}
        responsive = [i for i in result.issues if i.type == "responsive"]
        assert [i.details["device"] for i in responsive] == ["Mobile", "Tablet"]
        assert all(i.severity == Severity.MEDIUM for i in responsive)
        assert tab.cdp.detach_calls == 2
        assert tab.viewport_restores == 2


class TestAIPhase:
    """Tests for phase 4."""

    @pytest.mark.asyncio
    async def test_reports_attached(self) -> None:
        """Both reports land in ai_report."""
        ai = FakeAIClient()
        browser = FakeBrowser()
        result = await make_runner(browser, {"aiAnalysis": True, "fullScreenshots": True}, ai_client=ai).test_url(URL)

        assert result.ai_report["visual"]["content"] == "visual"
        assert result.ai_report["technical"]["content"] == "technical"
        assert len(ai.visual_calls[0][1]) == 1

    @pytest.mark.asyncio
    async def test_failed_report_is_structured(self) -> None:
        """A raising request becomes an error object; its sibling is unaffected."""
        ai = FakeAIClient(technical=RuntimeError("quota exceeded"))
        result = await make_runner(FakeBrowser(), {"aiAnalysis": True}, ai_client=ai).test_url(URL)

        assert result.ai_report["visual"]["content"] == "visual"
        assert result.ai_report["technical"]["error"] == "quota exceeded"
        assert "timestamp" in result.ai_report["technical"]

    @pytest.mark.asyncio
    async def test_skipped_when_cancelled(self) -> None:
        """A stop request skips the AI phase."""
        ai = FakeAIClient()
        result = await make_runner(FakeBrowser(), {"aiAnalysis": True}, ai_client=ai,
                                   cancelled=lambda: True).test_url(URL)
        assert result.ai_report is None
        assert ai.visual_calls == []

    @pytest.mark.asyncio
    async def test_status_events(self) -> None:
        """The AI phase announces itself through the progress callback."""
        events = []
        await make_runner(FakeBrowser(), {"aiAnalysis": True},
                          on_progress=lambda e, d: events.append((e, d))).test_url(URL)
        statuses = [d["status"] for e, d in events if e == "status"]
        assert f"Generating visual AI analysis for {URL}..." in statuses
