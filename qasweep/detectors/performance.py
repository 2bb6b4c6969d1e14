"""Performance thresholds over navigation timing metrics."""

from __future__ import annotations

from qasweep.models.types import Issue, Severity


class PerformanceDetector:

    THRESHOLDS = {
        "loadComplete": {"warning": 3000, "critical": 5000},
        "domContentLoaded": {"warning": 2000, "critical": 4000},
        "firstByte": {"warning": 800, "critical": 1800},
    }

    LABELS = {
        "loadComplete": "Page load time",
        "domContentLoaded": "DOMContentLoaded",
        "firstByte": "Time to first byte",
    }

    def detect(self, metrics: dict) -> list[Issue]:
        """Check timing metrics (ms) against thresholds."""
        issues = []

        for name, thresholds in self.THRESHOLDS.items():
            value = metrics.get(name)
            if not value or value < 0:
                continue
            label = self.LABELS[name]

            if value > thresholds["critical"]:
                severity, limit = Severity.HIGH, thresholds["critical"]
            elif value > thresholds["warning"]:
                severity, limit = Severity.MEDIUM, thresholds["warning"]
            else:
                continue

            issues.append(Issue(
                type="performance",
                severity=severity,
                details={"metric": name, "value": value, "threshold": limit},
                message=f"{label}: {value}ms exceeds threshold of {limit}ms",
            ))

        return issues
