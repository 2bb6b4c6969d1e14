"""QA Sweep API: test runs over HTTP, with SSE streaming of live progress."""

import asyncio
import json
import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent))

from qasweep.core.browser import BrowserHandle
from qasweep.core.orchestrator import TestRunOrchestrator
from qasweep.core.storage import RunStore
from qasweep.errors import RunNotFound

log = logging.getLogger(__name__)

VERSION = "0.1.0"


class RunRequest(BaseModel):
    urls: list[str]
    config: dict = Field(default_factory=dict)


class RunStarted(BaseModel):
    testId: str
    status: str
    urls: list[str]


class EventHub:
    """Per-run SSE listener queues."""

    def __init__(self):
        self._queues: dict[str, list[asyncio.Queue]] = {}

    def subscribe(self, run_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.setdefault(run_id, []).append(queue)
        return queue

    def unsubscribe(self, run_id: str, queue: asyncio.Queue):
        queues = self._queues.get(run_id, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._queues.pop(run_id, None)

    def broadcast(self, event_type: str, data: dict):
        """Push an SSE event to every client listening on this run."""
        event = {"type": event_type, **data}
        for q in self._queues.get(data.get("testId", ""), []):
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                pass


def create_app(browser=None, store: RunStore | None = None) -> FastAPI:
    browser = browser or BrowserHandle()
    store = store or RunStore()
    hub = EventHub()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await browser.start()
        store.cleanup_old_screenshots()
        app.state.orchestrator = TestRunOrchestrator(browser, store=store, on_progress=hub.broadcast)
        try:
            yield
        finally:
            await app.state.orchestrator.shutdown()
            await browser.close()

    app = FastAPI(title="QA Sweep API", version=VERSION, lifespan=lifespan)
    app.state.events = hub

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def orchestrator(request: Request) -> TestRunOrchestrator:
        return request.app.state.orchestrator

    def lookup(fn, run_id: str):
        try:
            return fn(run_id)
        except RunNotFound as e:
            raise HTTPException(status_code=404, detail=str(e)) from e

    @app.get("/health")
    def health():
        return {"status": "ok", "service": "qasweep-api", "version": VERSION}

    @app.post("/api/v1/tests", response_model=RunStarted)
    async def start_test(req: RunRequest, request: Request):
        urls = []
        for url in req.urls:
            url = url.strip()
            if not url:
                continue
            urls.append(url if url.startswith("http") else f"https://{url}")
        if not urls:
            raise HTTPException(status_code=400, detail="No URLs to test")

        run_id = await orchestrator(request).start(urls, req.config)
        return RunStarted(testId=run_id, status="started", urls=urls)

    @app.get("/api/v1/tests/active")
    async def active_test(request: Request):
        return orchestrator(request).check_active_run()

    @app.post("/api/v1/tests/{test_id}/stop")
    async def stop_test(test_id: str, request: Request):
        return lookup(orchestrator(request).stop, test_id)

    @app.get("/api/v1/tests/{test_id}/progress")
    async def get_progress(test_id: str, request: Request):
        return lookup(orchestrator(request).get_progress, test_id)

    @app.get("/api/v1/tests/{test_id}/results")
    async def get_results(test_id: str, request: Request):
        return lookup(orchestrator(request).get_results, test_id)

    @app.get("/api/v1/tests/{test_id}/stream")
    async def test_stream(test_id: str, request: Request):
        """SSE endpoint that streams live progress events during a run."""
        progress = lookup(orchestrator(request).get_progress, test_id)
        queue = hub.subscribe(test_id)

        async def event_generator():
            try:
                yield f"event: progress\ndata: {json.dumps({'testId': test_id, **progress})}\n\n"
                if progress.get("state") in ("completed", "stopped", "failed"):
                    return

                while True:
                    if await request.is_disconnected():
                        break

                    try:
                        event = await asyncio.wait_for(queue.get(), timeout=30.0)
                    except asyncio.TimeoutError:
                        yield ": keepalive\n\n"
                        continue

                    event_type = event.get("type", "update")
                    yield f"event: {event_type}\ndata: {json.dumps(event)}\n\n"

                    if event_type == "run_complete":
                        break
            finally:
                hub.unsubscribe(test_id, queue)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    return app


app = create_app()
