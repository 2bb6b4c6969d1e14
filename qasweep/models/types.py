from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


def now_ms() -> int:
    return int(time.time() * 1000)


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


class RunState(str, Enum):
    INITIALIZING = "initializing"
    RUNNING = "running"
    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (RunState.COMPLETED, RunState.STOPPED, RunState.FAILED)


class ViewMode(str, Enum):
    DESKTOP = "desktop"
    MOBILE = "mobile"


@dataclass
class Issue:
    type: str
    severity: Severity
    details: dict = field(default_factory=dict)
    message: str = ""

    def to_dict(self) -> dict:
        out = {
            "type": self.type,
            "severity": self.severity.value,
            "details": self.details,
        }
        if self.message:
            out["message"] = self.message
        return out


@dataclass
class TestConfig:
    """Per-run feature toggles. Anything absent or unrecognised is disabled."""

    __test__ = False  # keep pytest from collecting this as a test class

    full_screenshots: bool = False
    mobile_tablet: bool = False
    view_mode: ViewMode = ViewMode.DESKTOP
    ai_analysis: bool = False
    seo_check: bool = False
    accessibility: bool = False
    spacing_validation: bool = False
    broken_links: bool = False
    lighthouse: bool = False

    _KEYS = {
        "fullScreenshots": "full_screenshots",
        "mobileTablet": "mobile_tablet",
        "aiAnalysis": "ai_analysis",
        "seoCheck": "seo_check",
        "accessibility": "accessibility",
        "spacingValidation": "spacing_validation",
        "brokenLinks": "broken_links",
        "lighthouse": "lighthouse",
    }

    @classmethod
    def from_dict(cls, data: dict | None) -> TestConfig:
        data = data or {}
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            attr = cls._KEYS.get(key)
            if attr is None and key in cls._KEYS.values():
                attr = key
            if attr is not None:
                kwargs[attr] = value is True
        mode = data.get("viewMode", data.get("view_mode"))
        if mode == ViewMode.MOBILE.value:
            kwargs["view_mode"] = ViewMode.MOBILE
        return cls(**kwargs)

    def to_dict(self) -> dict:
        out = {camel: getattr(self, attr) for camel, attr in self._KEYS.items()}
        out["viewMode"] = self.view_mode.value
        return out

    def capture_profiles(self) -> list[str]:
        """Device profiles captured in phase 1, in launch order."""
        if not self.full_screenshots:
            return []
        if self.view_mode == ViewMode.MOBILE:
            return ["mobile"]
        profiles = ["desktop"]
        if self.mobile_tablet:
            profiles.append("mobile")
        return profiles


@dataclass
class PageDimensions:
    viewport_width: int
    viewport_height: int
    document_width: int
    document_height: int
    device_pixel_ratio: float = 1.0
    scroll_x: int = 0
    scroll_y: int = 0
    url: str = ""

    @classmethod
    def from_script(cls, raw: dict) -> PageDimensions:
        viewport = raw.get("viewport") or {}
        document = raw.get("document") or {}
        scroll = raw.get("scrollPosition") or {}
        return cls(
            viewport_width=int(viewport.get("width", 0)),
            viewport_height=int(viewport.get("height", 0)),
            document_width=int(document.get("width", 0)),
            document_height=int(document.get("height", 0)),
            device_pixel_ratio=float(raw.get("devicePixelRatio") or 1),
            scroll_x=int(scroll.get("x", 0)),
            scroll_y=int(scroll.get("y", 0)),
            url=raw.get("url", ""),
        )

    def to_dict(self) -> dict:
        return {
            "viewport": {"width": self.viewport_width, "height": self.viewport_height},
            "document": {"width": self.document_width, "height": self.document_height},
            "scrollPosition": {"x": self.scroll_x, "y": self.scroll_y},
            "devicePixelRatio": self.device_pixel_ratio,
            "url": self.url,
        }


@dataclass
class Segment:
    """One viewport capture taken with the page scrolled to ``offset``."""

    data_url: str
    offset: int
    height: int
    index: int
    viewport_height: int
    # Where the browser actually scrolled to; differs from offset when the
    # last window gets clamped at the bottom of the page.
    scroll_y: int | None = None

    def to_dict(self) -> dict:
        return {
            "dataUrl": self.data_url,
            "x": 0,
            "y": self.offset,
            "height": self.height,
            "viewportHeight": self.viewport_height,
            "index": self.index,
        }


@dataclass(frozen=True)
class StitchedImage:
    data_url: str
    quality: int
    size_bytes: int
    width: int
    height: int


@dataclass
class ScreenshotResult:
    """Outcome of capturing one device profile for one URL."""

    profile: str
    success: bool
    data: str | None = None
    full_page_data_url: str | None = None
    segments: list[Segment] = field(default_factory=list)
    dimensions: PageDimensions | None = None
    stitched: bool = False
    quality: int | None = None
    error: str | None = None
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> dict:
        out = {
            "success": self.success,
            "data": self.data,
            "fullPageDataUrl": self.full_page_data_url,
            "segments": [s.to_dict() for s in self.segments],
            "dimensions": self.dimensions.to_dict() if self.dimensions else None,
            "type": self.profile,
            "timestamp": self.timestamp,
            "stitched": self.stitched,
        }
        if self.quality is not None:
            out["quality"] = self.quality
        if self.error:
            out["error"] = self.error
        return out

    def summary(self) -> dict:
        """Per-profile capture outcome without image payloads, for ``UrlResult.tests``."""
        out = self.to_dict()
        for key in ("data", "fullPageDataUrl", "segments"):
            out.pop(key)
        out["segmentCount"] = len(self.segments)
        return out

    def to_record(self, url: str) -> dict:
        """Screenshot record as published in ``TestResult.screenshots``."""
        return {
            "url": url,
            "data": self.data,
            "fullPageDataUrl": self.full_page_data_url,
            "segments": [s.to_dict() for s in self.segments],
            "dimensions": self.dimensions.to_dict() if self.dimensions else None,
            "type": self.profile,
            "timestamp": self.timestamp,
            "stitched": self.stitched,
        }


@dataclass
class UrlResult:
    url: str
    timestamp: int = field(default_factory=now_ms)
    tests: dict[str, Any] = field(default_factory=dict)
    issues: list[Issue] = field(default_factory=list)
    metrics: dict[str, Any] = field(default_factory=dict)
    seo_data: dict | None = None
    screenshots: list[ScreenshotResult] = field(default_factory=list)
    ai_report: dict | None = None
    error: str | None = None

    def add_issue(self, type_: str, severity: Severity, details: dict | None = None, message: str = ""):
        self.issues.append(Issue(type=type_, severity=severity, details=details or {}, message=message))

    def record_error(self, message: str):
        """Mark the whole URL as failed."""
        self.error = message
        self.add_issue("test_error", Severity.CRITICAL, message=message)

    def to_dict(self) -> dict:
        tests = {}
        for name, value in self.tests.items():
            tests[name] = value.to_dict() if hasattr(value, "to_dict") else value
        out = {
            "url": self.url,
            "timestamp": self.timestamp,
            "tests": tests,
            "issues": [i.to_dict() for i in self.issues],
            "metrics": self.metrics,
        }
        if self.seo_data is not None:
            out["seoData"] = self.seo_data
        if self.error:
            out["error"] = self.error
        return out
