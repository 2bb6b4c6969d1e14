"""Device emulation over the Chrome DevTools Protocol.

``EmulationSession`` is the resource guard: entering it attaches a CDP
session to a tab and applies a device profile, leaving it always clears the
overrides, detaches and puts the tab back on its own viewport, whatever
happened in between. ``with_emulation`` is the scoped helper the rest of the
code uses; it hands ``fn`` an ``EmulatedTab``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from qasweep.config import EMULATION_SETTLE_MS
from qasweep.errors import EmulationError

log = logging.getLogger(__name__)

T = TypeVar("T")

_DESKTOP_UA = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
_IPHONE_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
_IPAD_UA = (
    "Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)


@dataclass(frozen=True)
class DeviceProfile:
    name: str
    width: int
    height: int
    device_scale_factor: float
    mobile: bool
    user_agent: str | None = None

    def metrics(self) -> dict:
        return {
            "width": self.width,
            "height": self.height,
            "deviceScaleFactor": self.device_scale_factor,
            "mobile": self.mobile,
            "screenWidth": self.width,
            "screenHeight": self.height,
            "positionX": 0,
            "positionY": 0,
        }


DESKTOP = DeviceProfile("desktop", 1920, 1080, 1, False, _DESKTOP_UA)
# iPhone 12 Pro at 2x instead of 3x keeps segment images manageable
MOBILE = DeviceProfile("mobile", 390, 844, 2, True, _IPHONE_UA)

PROFILES = {p.name: p for p in (DESKTOP, MOBILE)}

# Devices swept by the responsive check
RESPONSIVE_DEVICES = (
    DeviceProfile("Mobile", 375, 667, 2, True, _IPHONE_UA),
    DeviceProfile("Tablet", 768, 1024, 2, False, _IPAD_UA),
)


class EmulatedTab:
    """A tab seen through an active emulation session.

    Viewport captures go through the session's ``Page.captureScreenshot``
    so they follow the emulated metrics; the tab's own capture is clipped
    to the browser context's viewport. Everything else is the tab's.
    """

    def __init__(self, tab, cdp):
        self._tab = tab
        self._cdp = cdp

    def __getattr__(self, name):
        return getattr(self._tab, name)

    async def capture_visible(self) -> str:
        shot = await self._cdp.send("Page.captureScreenshot", {"format": "png"})
        data = (shot or {}).get("data")
        if not data:
            return ""
        return "data:image/png;base64," + data


class EmulationSession:
    """Scoped CDP attachment with a device profile applied."""

    def __init__(self, tab, profile: DeviceProfile):
        self.tab = tab
        self.profile = profile
        self._cdp = None
        self._released = False

    @property
    def attached(self) -> bool:
        return self._cdp is not None and not self._released

    @property
    def view(self) -> EmulatedTab:
        if not self.attached:
            raise EmulationError(f"No active emulation on tab {self.tab.tab_id}")
        return EmulatedTab(self.tab, self._cdp)

    async def __aenter__(self) -> EmulationSession:
        try:
            self._cdp = await self.tab.attach_debugger()
        except Exception as e:
            raise EmulationError(f"Failed to attach debugger to tab {self.tab.tab_id}: {e}") from e

        try:
            await self._cdp.send("Emulation.setDeviceMetricsOverride", self.profile.metrics())
            if self.profile.user_agent:
                await self._cdp.send("Emulation.setUserAgentOverride", {"userAgent": self.profile.user_agent})
        except Exception as e:
            # __aexit__ never runs when __aenter__ raises
            await self.release()
            raise EmulationError(f"Failed to apply {self.profile.name} emulation: {e}") from e

        log.debug("Emulating %s on tab %s", self.profile.name, self.tab.tab_id)
        return self

    async def __aexit__(self, *exc):
        await self.release()
        return False

    async def release(self):
        """Clear overrides, detach and restore the tab's viewport. Runs at most once; never raises."""
        if self._cdp is None or self._released:
            return
        self._released = True
        try:
            await self._cdp.send("Emulation.clearDeviceMetricsOverride")
        except Exception as e:
            log.debug("Could not clear device metrics on tab %s: %s", self.tab.tab_id, e)
        try:
            await self._cdp.detach()
        except Exception as e:
            log.error("Failed to detach debugger from tab %s: %s", self.tab.tab_id, e)
        # Clearing the override also drops the one Playwright set for the context viewport
        try:
            await self.tab.restore_viewport()
        except Exception as e:
            log.warning("Failed to restore viewport on tab %s: %s", self.tab.tab_id, e)


async def with_emulation(
    tab,
    profile: DeviceProfile,
    fn: Callable[[EmulatedTab], Awaitable[T]],
    settle_ms: int = EMULATION_SETTLE_MS,
    reload: Callable[[], Awaitable[None]] | None = None,
) -> T:
    """Run ``fn(view)`` while ``tab`` emulates ``profile``.

    ``view`` is the tab as seen through the session; captures taken through
    it have the profile's size. ``reload`` is awaited right after the
    profile is applied, for callers that need mobile stylesheets and
    user-agent sniffing to take effect. The settle delay covers reflow and
    late stylesheet application.
    """
    async with EmulationSession(tab, profile) as session:
        if reload is not None:
            await reload()
        if settle_ms:
            await asyncio.sleep(settle_ms / 1000)
        return await fn(session.view)
