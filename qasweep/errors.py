"""Exceptions raised at component boundaries.

The task runner and orchestrator turn these into issues and error fields, so
none of them ever crosses a URL boundary.
"""

from __future__ import annotations


class QASweepError(Exception):
    """Base class for all QA Sweep errors."""


class PageLoadTimeout(QASweepError):
    def __init__(self, url: str, timeout_ms: int):
        super().__init__(f"Page load timeout after {timeout_ms}ms: {url}")
        self.url = url
        self.timeout_ms = timeout_ms


class StitchTimeout(QASweepError):
    def __init__(self, timeout_ms: int):
        super().__init__(f"Timeout while stitching screenshots ({timeout_ms}ms)")
        self.timeout_ms = timeout_ms


class EmulationError(QASweepError):
    """Attaching the debugger or applying a device profile failed."""


class CaptureError(QASweepError):
    """Not a single viewport capture could be taken."""


class RunNotFound(QASweepError):
    def __init__(self, run_id: str):
        super().__init__(f"Test run not found: {run_id}")
        self.run_id = run_id
