"""Tests for analysis post-processing and performance thresholds."""

from conftest import empty_analysis
from qasweep.detectors.page_analysis import apply_analysis
from qasweep.detectors.performance import PerformanceDetector
from qasweep.models.types import Severity, TestConfig, UrlResult


class TestPerformanceDetector:
    """Tests for PerformanceDetector."""

    def test_fast_page_is_clean(self) -> None:
        """Values under the warning thresholds raise nothing."""
        assert PerformanceDetector().detect({"loadComplete": 1200, "domContentLoaded": 900, "firstByte": 120}) == []

    def test_warning_and_critical(self) -> None:
        """Warning maps to medium and critical to high."""
        issues = PerformanceDetector().detect({"loadComplete": 5200, "firstByte": 900})
        by_metric = {i.details["metric"]: i for i in issues}

        assert by_metric["loadComplete"].severity == Severity.HIGH
        assert by_metric["loadComplete"].details["threshold"] == 5000
        assert by_metric["firstByte"].severity == Severity.MEDIUM
        assert "900ms" in by_metric["firstByte"].message

    def test_missing_or_negative_values_skipped(self) -> None:
        """Timing entries the browser could not fill are ignored."""
        assert PerformanceDetector().detect({"loadComplete": -5, "domContentLoaded": 0}) == []


class TestApplyAnalysis:
    """Tests for apply_analysis."""

    def test_empty_analysis_adds_nothing(self) -> None:
        """A clean page leaves the result untouched."""
        result = UrlResult(url="https://example.com/")
        apply_analysis(empty_analysis(), result)
        assert result.issues == []
        assert result.tests == {}
        assert result.seo_data is None

    def test_messages_carried_over(self) -> None:
        """Issue messages come from the finding itself."""
        analysis = empty_analysis()
        analysis["seoIssues"] = [{"type": "missing_meta_description", "message": "No meta description"}]
        result = UrlResult(url="https://example.com/")
        apply_analysis(analysis, result)

        [issue] = result.issues
        assert issue.type == "seo"
        assert issue.message == "No meta description"
        assert issue.details["type"] == "missing_meta_description"
        assert result.tests["seo"] == {"issues": analysis["seoIssues"]}

    def test_seo_data_needs_seo_check(self) -> None:
        """SEO data is kept only when the SEO check is enabled."""
        analysis = empty_analysis()
        analysis["seoData"] = {"canonical": "https://example.com/"}

        off = UrlResult(url="https://example.com/")
        apply_analysis(analysis, off, TestConfig.from_dict({}))
        assert off.seo_data is None

        on = UrlResult(url="https://example.com/")
        apply_analysis(analysis, on, TestConfig.from_dict({"seoCheck": True}))
        assert on.seo_data["canonical"] == "https://example.com/"

    def test_metrics_recorded(self) -> None:
        """Timing metrics land in metrics and the performance test."""
        analysis = empty_analysis()
        analysis["performance"] = {"loadComplete": 800, "domNodeCount": 420}
        result = UrlResult(url="https://example.com/")
        apply_analysis(analysis, result)

        assert result.metrics["domNodeCount"] == 420
        assert result.tests["performance"]["metrics"]["loadComplete"] == 800
        assert result.issues == []
