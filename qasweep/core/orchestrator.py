"""Test run orchestration.

``TestRunOrchestrator.start`` registers a run and returns its id right away;
the run itself executes as an asyncio task that walks the URLs in order and
hands each one to a UrlTaskRunner. Stopping is cooperative and only takes
effect between URLs. Finished runs stay queryable in the RunRegistry for a
retention window, then they are evicted.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from enum import Enum
from typing import Callable

from qasweep.config import RUN_RETENTION_SECONDS
from qasweep.core.ai_engine import GeminiReportClient
from qasweep.core.storage import RunStore
from qasweep.core.task_runner import UrlTaskRunner
from qasweep.errors import RunNotFound
from qasweep.models.run import ProgressCallback, TestRun
from qasweep.models.types import RunState, TestConfig, UrlResult, now_ms

log = logging.getLogger(__name__)


class RecoveryStatus(str, Enum):
    RUNNING = "running"
    ORPHANED = "orphaned"
    NONE = "none"


def new_run_id() -> str:
    return f"test_{now_ms()}_{uuid.uuid4().hex[:9]}"


class RunRegistry:
    """In-memory runs by id, each evicted a fixed time after it finishes."""

    def __init__(self, retention_seconds: float = RUN_RETENTION_SECONDS):
        self.retention_seconds = retention_seconds
        self._runs: dict[str, TestRun] = {}
        self._evictions: dict[str, asyncio.TimerHandle] = {}

    def __contains__(self, run_id: str) -> bool:
        return run_id in self._runs

    def __len__(self) -> int:
        return len(self._runs)

    def add(self, run: TestRun):
        self._runs[run.run_id] = run

    def get(self, run_id: str) -> TestRun:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFound(run_id)
        return run

    def runs(self) -> list[TestRun]:
        return list(self._runs.values())

    def remove(self, run_id: str):
        self._runs.pop(run_id, None)
        handle = self._evictions.pop(run_id, None)
        if handle:
            handle.cancel()

    def schedule_eviction(self, run_id: str):
        if run_id not in self._runs:
            return
        previous = self._evictions.pop(run_id, None)
        if previous:
            previous.cancel()
        loop = asyncio.get_running_loop()
        self._evictions[run_id] = loop.call_later(self.retention_seconds, self._evict, run_id)

    def _evict(self, run_id: str):
        self._evictions.pop(run_id, None)
        if self._runs.pop(run_id, None) is not None:
            log.debug("Evicted run %s", run_id)

    def clear(self):
        for handle in self._evictions.values():
            handle.cancel()
        self._evictions.clear()
        self._runs.clear()


RunnerFactory = Callable[[TestRun, ProgressCallback], UrlTaskRunner]


class TestRunOrchestrator:
    """Starts, stops and reports on test runs."""

    __test__ = False

    def __init__(
        self,
        browser,
        store: RunStore | None = None,
        registry: RunRegistry | None = None,
        ai_client: GeminiReportClient | None = None,
        runner_factory: RunnerFactory | None = None,
        on_progress: ProgressCallback | None = None,
    ):
        self.browser = browser
        self.store = store or RunStore()
        self.registry = registry or RunRegistry()
        self.ai = ai_client or GeminiReportClient()
        self._runner_factory = runner_factory or self._default_runner
        self._on_progress = on_progress
        self._tasks: dict[str, asyncio.Task] = {}

    async def start(self, urls: list[str], config: TestConfig | dict | None = None) -> str:
        """Register a run and schedule it on the running loop. Returns the run id without waiting for the run."""
        if not urls:
            raise ValueError("No URLs to test")
        if not isinstance(config, TestConfig):
            config = TestConfig.from_dict(config)

        run = TestRun(run_id=new_run_id(), urls=list(urls), config=config)
        self.registry.add(run)
        try:
            await asyncio.to_thread(self.store.set_active, run.run_id, run.urls, config.to_dict())
        except OSError as e:
            log.warning("Could not persist active run marker: %s", e)

        log.info("Starting run %s with %d URL(s)", run.run_id, len(run.urls))
        self._tasks[run.run_id] = asyncio.create_task(self._execute(run))
        return run.run_id

    def stop(self, run_id: str) -> dict:
        """Request cancellation; the run stops before its next URL."""
        run = self.registry.get(run_id)
        if not run.state.terminal and not run.stopped:
            log.info("Stop requested for run %s", run_id)
            run.stopped = True
        return run.progress_snapshot()

    def get_progress(self, run_id: str) -> dict:
        return self.registry.get(run_id).progress_snapshot()

    def get_results(self, run_id: str) -> dict:
        return self.registry.get(run_id).results_snapshot()

    async def wait(self, run_id: str) -> dict:
        """Wait for a run to finish and return its results."""
        task = self._tasks.get(run_id)
        if task is None:
            return self.get_results(run_id)
        await asyncio.shield(task)
        return self.get_results(run_id)

    def check_active_run(self) -> dict:
        """Tell a running run from one lost with a previous process."""
        active = self.store.get_active()
        if active is None:
            return {"status": RecoveryStatus.NONE.value}

        run_id = active["testId"]
        if run_id in self.registry:
            run = self.registry.get(run_id)
            return {
                "status": RecoveryStatus.RUNNING.value,
                "testId": run_id,
                "progress": run.progress_snapshot(),
                "results": run.results_snapshot(),
            }

        log.info("Run %s was interrupted; recovering last stored results", run_id)
        latest = self.store.load_latest()
        self.store.clear_active()
        return {
            "status": RecoveryStatus.ORPHANED.value,
            "testId": run_id,
            "completed": True,
            "results": latest,
        }

    async def shutdown(self):
        """Cancel unfinished runs and drop every registered run."""
        pending = [t for t in self._tasks.values() if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()
        self.registry.clear()

    # ── Execution ─────────────────────────────────────────────────────────────

    async def _execute(self, run: TestRun):
        progress = run.progress
        try:
            runner = self._runner_factory(run, self._runner_events(run))
            progress.state = RunState.RUNNING
            self._set_status(run, "Starting tests...")

            total = len(run.urls)
            for i, url in enumerate(run.urls):
                if run.stopped:
                    break
                progress.current = i + 1
                progress.current_url = url
                self._set_status(run, f"Testing {i + 1}/{total}: {url}")

                try:
                    url_result = await runner.test_url(url)
                except Exception as e:
                    log.exception("Testing %s failed", url)
                    run.results.error = str(e)
                    url_result = UrlResult(url=url)
                    url_result.record_error(str(e))

                run.results.add_url_result(url_result)
                self._emit(run, "url_complete", {
                    "url": url,
                    "issues": len(url_result.issues),
                    "error": url_result.error,
                })

            if run.stopped:
                progress.state = RunState.STOPPED
                self._set_status(run, "Stopped by user")
            else:
                run.results.finish()
                progress.completed = True
                progress.state = RunState.COMPLETED
                self._set_status(run, "Testing completed")
        except asyncio.CancelledError:
            progress.state = RunState.STOPPED
            run.update_status("Cancelled")
            raise
        except Exception as e:
            log.exception("Test run %s failed", run.run_id)
            run.results.error = str(e)
            progress.state = RunState.FAILED
            self._set_status(run, f"Error: {e}")
        finally:
            run.finished_at = now_ms()
            await self._persist(run)
            self.registry.schedule_eviction(run.run_id)
            self._tasks.pop(run.run_id, None)
            log.info("Run %s finished: %s (%d issues)", run.run_id, run.state.value, run.results.total_issues)
            self._emit(run, "run_complete", {"state": run.state.value, "progress": run.progress_snapshot()})

    async def _persist(self, run: TestRun):
        try:
            await asyncio.to_thread(self.store.clear_active)
        except OSError as e:
            log.error("Failed to clear active run marker: %s", e)
        await asyncio.to_thread(self.store.save_latest, run.results.to_dict())

    def _default_runner(self, run: TestRun, on_progress: ProgressCallback) -> UrlTaskRunner:
        return UrlTaskRunner(
            self.browser,
            run.config,
            ai_client=self.ai,
            on_progress=on_progress,
            cancelled=lambda: run.stopped,
        )

    def _runner_events(self, run: TestRun) -> ProgressCallback:
        def on_event(event: str, data: dict):
            if event == "status":
                self._set_status(run, data["status"])
            else:
                self._emit(run, event, data)
        return on_event

    def _set_status(self, run: TestRun, status: str):
        run.update_status(status)
        self._emit(run, "progress", run.progress_snapshot())

    def _emit(self, run: TestRun, event: str, data: dict):
        if self._on_progress:
            self._on_progress(event, {"testId": run.run_id, **data})
