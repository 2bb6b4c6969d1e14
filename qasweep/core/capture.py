"""Scrolling full-page capture.

Scrolls a tab window by window, captures the visible viewport at each stop
and hands the segments to the stitcher. Captures are rate-limited by the
browser, so every window waits a fixed delay before its capture.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from qasweep.config import SCROLL_TOLERANCE_PX
from qasweep.core.stitcher import Stitcher
from qasweep.errors import CaptureError
from qasweep.models.types import PageDimensions, ScreenshotResult, Segment

log = logging.getLogger(__name__)


_DIMENSIONS_JS = """() => {
    const doc = document.documentElement;
    const body = document.body || doc;
    return {
        viewport: { width: window.innerWidth, height: window.innerHeight },
        document: {
            width: Math.max(doc.scrollWidth, body.scrollWidth, doc.offsetWidth),
            height: Math.max(doc.scrollHeight, body.scrollHeight, doc.offsetHeight),
        },
        scrollPosition: { x: window.scrollX, y: window.scrollY },
        devicePixelRatio: window.devicePixelRatio || 1,
        url: window.location.href,
    };
}"""

_SCROLL_JS = """(y) => {
    window.scrollTo(0, y);
    // force layout so lazy content positions itself before the capture
    (document.body || document.documentElement).offsetHeight;
    return { x: window.scrollX, y: window.scrollY };
}"""

_RESTORE_SCROLL_JS = "(pos) => window.scrollTo(pos.x, pos.y)"


@dataclass(frozen=True)
class CaptureSettings:
    max_captures: int = 10
    # Fraction of the viewport height advanced per window (1.0 = no overlap)
    step_fraction: float = 1.0
    capture_delay_ms: int = 600
    start_quality: int = 80
    quality_floor: int = 30
    quality_step: int = 10
    max_bytes: int = 2 * 1024 * 1024


DESKTOP_CAPTURE = CaptureSettings()
# Mobile pages reflow while scrolling (collapsing toolbars, sticky headers),
# so windows overlap and each one gets a longer settle.
MOBILE_CAPTURE = CaptureSettings(max_captures=15, step_fraction=0.8, capture_delay_ms=1000, start_quality=75)

CAPTURE_SETTINGS = {"desktop": DESKTOP_CAPTURE, "mobile": MOBILE_CAPTURE}


@dataclass
class CaptureSession:
    """State of a single capture call. Never outlives it."""

    tab: object
    dimensions: PageDimensions
    segments: list[Segment] = field(default_factory=list)


def plan_windows(
    viewport_height: int,
    document_height: int,
    max_captures: int,
    step_fraction: float = 1.0,
) -> list[tuple[int, int]]:
    """Scroll windows as (offset, height) pairs covering [0, document_height).

    Offsets strictly increase and stay below the document height; the last
    window is truncated to what is left of the page.
    """
    if viewport_height <= 0:
        raise ValueError("viewport_height must be positive")
    if document_height <= viewport_height:
        return [(0, max(document_height, 0))]

    step = max(1, int(viewport_height * step_fraction))
    windows = []
    offset = 0
    while offset < document_height and len(windows) < max_captures:
        windows.append((offset, min(viewport_height, document_height - offset)))
        offset += step
    return windows


class ScrollingCaptureEngine:
    def __init__(
        self,
        settings: CaptureSettings = DESKTOP_CAPTURE,
        stitcher: Stitcher | None = None,
        profile: str = "desktop",
    ):
        self.settings = settings
        self.stitcher = stitcher or Stitcher()
        self.profile = profile

    async def capture(self, tab) -> ScreenshotResult:
        """Capture the full page of ``tab``. Raises CaptureError if nothing was captured."""
        dimensions = PageDimensions.from_script(await tab.evaluate(_DIMENSIONS_JS))
        session = CaptureSession(tab=tab, dimensions=dimensions)
        viewport_height = dimensions.viewport_height
        log.debug("[%s] viewport %dx%d, document %dx%d", self.profile,
                  dimensions.viewport_width, viewport_height,
                  dimensions.document_width, dimensions.document_height)

        if dimensions.document_height <= viewport_height:
            data_url = await tab.capture_visible()
            if not data_url:
                raise CaptureError("Failed to capture screenshot")
            segment = Segment(data_url, 0, dimensions.document_height, 0, viewport_height, scroll_y=0)
            return ScreenshotResult(
                profile=self.profile,
                success=True,
                data=data_url,
                full_page_data_url=data_url,
                segments=[segment],
                dimensions=dimensions,
                stitched=False,
            )

        windows = plan_windows(
            viewport_height,
            dimensions.document_height,
            self.settings.max_captures,
            self.settings.step_fraction,
        )
        log.info("[%s] capturing %d segments", self.profile, len(windows))

        try:
            for index, (offset, height) in enumerate(windows):
                try:
                    segment = await self._capture_window(session, index, offset, height)
                except Exception as e:
                    log.warning("[%s] failed to capture segment %d/%d: %s",
                                self.profile, index + 1, len(windows), e)
                    continue
                session.segments.append(segment)

            if not session.segments:
                log.warning("[%s] no segments captured while scrolling, trying fallback capture", self.profile)
                await self._fallback_capture(session)
        finally:
            await self._restore_scroll(session)

        if not session.segments:
            raise CaptureError("Failed to capture any screenshots")

        settings = self.settings
        stitched = await self.stitcher.stitch(
            session.segments,
            dimensions,
            start_quality=settings.start_quality,
            quality_floor=settings.quality_floor,
            quality_step=settings.quality_step,
            max_bytes=settings.max_bytes,
        )
        return ScreenshotResult(
            profile=self.profile,
            success=True,
            data=stitched.data_url if stitched else session.segments[0].data_url,
            full_page_data_url=stitched.data_url if stitched else None,
            segments=session.segments,
            dimensions=dimensions,
            stitched=stitched is not None,
            quality=stitched.quality if stitched else None,
        )

    async def _capture_window(self, session: CaptureSession, index: int, offset: int, height: int) -> Segment:
        dims = session.dimensions
        position = await session.tab.evaluate(_SCROLL_JS, offset)
        actual = int((position or {}).get("y", offset))
        max_scroll = max(0, dims.document_height - dims.viewport_height)
        if abs(actual - offset) > SCROLL_TOLERANCE_PX and actual != max_scroll:
            log.warning("[%s] scrolling may have failed. Requested: %d, actual: %d",
                        self.profile, offset, actual)

        await asyncio.sleep(self.settings.capture_delay_ms / 1000)

        data_url = await session.tab.capture_visible()
        if not data_url:
            raise CaptureError(f"segment {index + 1} returned no data")
        return Segment(data_url, offset, height, index, dims.viewport_height, scroll_y=actual)

    async def _fallback_capture(self, session: CaptureSession):
        try:
            data_url = await session.tab.capture_visible()
        except Exception as e:
            log.error("[%s] fallback screenshot also failed: %s", self.profile, e)
            return
        if data_url:
            dims = session.dimensions
            session.segments.append(
                Segment(data_url, 0, dims.viewport_height, 0, dims.viewport_height, scroll_y=dims.scroll_y)
            )

    async def _restore_scroll(self, session: CaptureSession):
        dims = session.dimensions
        try:
            await session.tab.evaluate(_RESTORE_SCROLL_JS, {"x": dims.scroll_x, "y": dims.scroll_y})
        except Exception as e:
            log.warning("[%s] failed to restore scroll position: %s", self.profile, e)
