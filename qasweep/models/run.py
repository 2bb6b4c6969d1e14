"""Run-level data structures.

A TestRun is the unit the orchestrator owns: the ordered URL list, the
configuration, a mutable Progress that consumers poll, and the TestResults
that grow by one UrlResult per processed URL.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Callable

from qasweep.models.types import RunState, TestConfig, UrlResult, now_ms


@dataclass
class Progress:
    total: int
    current: int = 0
    current_url: str = ""
    status: str = "Initializing"
    completed: bool = False
    state: RunState = RunState.INITIALIZING

    def to_dict(self) -> dict:
        return {
            "current": self.current,
            "total": self.total,
            "currentUrl": self.current_url,
            "status": self.status,
            "completed": self.completed,
            "state": self.state.value,
        }


@dataclass
class TestResults:
    __test__ = False

    test_id: str
    start_time: int = field(default_factory=now_ms)
    end_time: int | None = None
    duration: int | None = None
    urls: list[UrlResult] = field(default_factory=list)
    screenshots: list[dict] = field(default_factory=list)
    issues: list[dict] = field(default_factory=list)
    total_issues: int = 0
    ai_reports: dict[str, dict] = field(default_factory=dict)
    error: str | None = None

    def add_url_result(self, url_result: UrlResult):
        """Fold one URL's outcome into the run-wide aggregates."""
        self.urls.append(url_result)
        self.total_issues += len(url_result.issues)
        for issue in url_result.issues:
            self.issues.append({**issue.to_dict(), "url": url_result.url})
        for shot in url_result.screenshots:
            if shot.success and shot.data:
                self.screenshots.append(shot.to_record(url_result.url))
        if url_result.ai_report is not None:
            self.ai_reports[url_result.url] = url_result.ai_report

    def finish(self):
        self.end_time = now_ms()
        self.duration = self.end_time - self.start_time

    def to_dict(self) -> dict:
        out = {
            "testId": self.test_id,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "duration": self.duration,
            "urls": [u.to_dict() for u in self.urls],
            "screenshots": copy.deepcopy(self.screenshots),
            "issues": copy.deepcopy(self.issues),
            "totalIssues": self.total_issues,
            "aiReports": copy.deepcopy(self.ai_reports),
        }
        if self.error:
            out["error"] = self.error
        return out


@dataclass
class TestRun:
    __test__ = False

    run_id: str
    urls: list[str]
    config: TestConfig
    progress: Progress = field(init=False)
    results: TestResults = field(init=False)
    stopped: bool = False
    finished_at: float | None = None

    def __post_init__(self):
        self.progress = Progress(total=len(self.urls))
        self.results = TestResults(test_id=self.run_id)

    @property
    def state(self) -> RunState:
        return self.progress.state

    def update_status(self, status: str):
        self.progress.status = status

    def progress_snapshot(self) -> dict:
        return self.progress.to_dict()

    def results_snapshot(self) -> dict:
        # UrlResult.to_dict shares nested detail dicts, so copy the whole tree
        return copy.deepcopy(self.results.to_dict())


ProgressCallback = Callable[[str, dict], None]
