"""Responsive layout check across emulated devices."""

from __future__ import annotations

import logging

from qasweep.config import RESPONSIVE_SETTLE_MS
from qasweep.core.emulation import RESPONSIVE_DEVICES, DeviceProfile, with_emulation
from qasweep.errors import EmulationError
from qasweep.models.types import Severity, UrlResult

log = logging.getLogger(__name__)


RESPONSIVE_JS = """() => {
    const issues = [];
    const width = window.innerWidth;
    if (document.documentElement.scrollWidth > width + 5) {
        issues.push({
            type: 'horizontal_scroll',
            message: `Content is ${document.documentElement.scrollWidth}px wide in a ${width}px viewport`,
        });
    }
    const overflowing = [];
    for (const el of document.querySelectorAll('body *')) {
        const rect = el.getBoundingClientRect();
        if (rect.width > 0 && rect.right > width + 5) {
            overflowing.push({
                tag: el.tagName.toLowerCase(),
                className: String(el.className || '').substring(0, 60),
                right: Math.round(rect.right),
            });
            if (overflowing.length >= 10) break;
        }
    }
    if (overflowing.length) {
        issues.push({
            type: 'overflowing_elements',
            message: `${overflowing.length} element(s) overflow the viewport`,
            elements: overflowing,
        });
    }
    return { viewport: { width, height: window.innerHeight }, issues };
}"""


class ResponsiveDetector:

    def __init__(self, devices: tuple[DeviceProfile, ...] = RESPONSIVE_DEVICES, settle_ms: int = RESPONSIVE_SETTLE_MS):
        self.devices = devices
        self.settle_ms = settle_ms

    async def detect(self, tab, url_result: UrlResult) -> dict:
        """Emulate each device on ``tab`` and record layout problems.

        Every device gets its own emulation scope. A device that cannot be
        emulated is reported in the results and the sweep moves on.
        """
        results = {}

        for device in self.devices:
            try:
                found = await with_emulation(
                    tab, device, lambda view: view.evaluate(RESPONSIVE_JS), settle_ms=self.settle_ms,
                )
            except EmulationError as e:
                log.warning("Responsive check skipped for %s: %s", device.name, e)
                results[device.name] = {"error": str(e)}
                continue

            issues = (found or {}).get("issues") or []
            results[device.name] = {
                "width": device.width,
                "height": device.height,
                "issues": issues,
            }
            for issue in issues:
                url_result.add_issue(
                    "responsive",
                    Severity.MEDIUM,
                    {**issue, "device": device.name},
                    message=f"{device.name}: {issue.get('message', issue.get('type', ''))}",
                )

        url_result.tests["responsive"] = results
        return results
