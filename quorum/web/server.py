# quorum/web/server.py
"""
FastAPI server exposing the analysis orchestrator.

Runs can be started, cancelled and inspected over JSON; run events and the
activity feed are also streamed over SSE.

Run with: python -m quorum.web.server
"""
import asyncio
import json
import queue
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.concurrency import run_in_threadpool

from quorum.config import load_config
from quorum.errors import InvalidArgument, NotFound
from quorum.orchestrator import build_orchestrator
from quorum.store.activity import fetch_activity
from quorum.web.live import ACTIVITY_CHANNEL, LiveUpdates, channel_resolver, run_events_channel

# seconds between SSE drain passes
STREAM_TICK = 0.4

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _dump(model) -> dict:
    return model.model_dump(mode="json")


def _sse(event: str, data: str, event_id: str | None = None) -> str:
    prefix = f"id: {event_id}\n" if event_id else ""
    return f"{prefix}event: {event}\ndata: {data}\n\n"


async def _stream(live, channel: str, event_name, is_done=None):
    """Subscribe to a channel and relay payloads as SSE until is_done(delivered)."""
    q = queue.Queue()
    errors = []
    unsubscribe = live.subscribe(channel, q.put, errors.append)
    delivered = 0
    try:
        while True:
            # Drain all queued payloads in a batch
            batch = []
            while True:
                try:
                    batch.append(q.get_nowait())
                except queue.Empty:
                    break

            for item in batch:
                yield _sse(event_name(item), json.dumps(_dump(item), ensure_ascii=False), item.id)
            delivered += len(batch)

            if errors:
                yield _sse("error", json.dumps({"message": str(errors[0])}))
                break
            if is_done is not None and not batch and await run_in_threadpool(is_done, delivered):
                yield _sse("stream_end", json.dumps({"delivered": delivered}))
                break

            # SSE comment as keepalive to prevent connection drop
            yield ": heartbeat\n\n"
            await asyncio.sleep(STREAM_TICK)
    finally:
        unsubscribe()


def create_app(orchestrator=None, live=None, cfg: dict | None = None) -> FastAPI:
    if orchestrator is None:
        cfg = cfg or load_config()
        orchestrator = build_orchestrator(cfg)
    cfg = cfg or {}
    if live is None:
        live_cfg = cfg.get("live", {})
        live = LiveUpdates(
            channel_resolver(orchestrator.event_log, orchestrator.activity),
            push_enabled=live_cfg.get("push_enabled", True),
            poll_interval=live_cfg.get("poll_interval", 12.0),
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        orchestrator.shutdown()

    app = FastAPI(title="MetaQuorum Analysis", lifespan=lifespan)
    app.state.orchestrator = orchestrator
    app.state.live = live

    @app.exception_handler(NotFound)
    async def not_found(request: Request, exc: NotFound):
        return JSONResponse({"error": str(exc)}, status_code=404)

    @app.exception_handler(InvalidArgument)
    async def invalid_argument(request: Request, exc: InvalidArgument):
        return JSONResponse({"error": str(exc)}, status_code=400)

    # -----------------------------------------------------------------------
    # Runs
    # -----------------------------------------------------------------------
    # Plain def handlers run in the threadpool: they take run locks and may
    # call the discussion backend.

    @app.post("/subjects/{subject_id}/analyze", status_code=201)
    def start_analysis(subject_id: str):
        run = orchestrator.start(subject_id)
        return {"run": _dump(run)}

    @app.get("/subjects/{subject_id}/runs")
    def subject_runs(subject_id: str):
        return {"runs": [_dump(r) for r in orchestrator.list_runs(subject_id)]}

    @app.get("/runs/{run_id}")
    def get_run(run_id: str):
        run = orchestrator.get(run_id)
        return {"run": _dump(run), "warnings": orchestrator.warnings(run_id)}

    @app.get("/runs/{run_id}/events")
    def run_events(run_id: str):
        return {"events": [_dump(e) for e in orchestrator.list_events(run_id)]}

    @app.post("/runs/{run_id}/cancel")
    def cancel_run(run_id: str):
        return {"run": _dump(orchestrator.cancel(run_id))}

    @app.get("/runs/{run_id}/events/stream")
    def stream_run_events(run_id: str):
        """SSE stream of a run's events; ends once the run is terminal and fully relayed."""
        orchestrator.get(run_id)

        def is_done(delivered: int) -> bool:
            return (orchestrator.get(run_id).is_terminal
                    and delivered >= len(orchestrator.list_events(run_id)))

        return StreamingResponse(
            _stream(live, run_events_channel(run_id), lambda e: e.kind, is_done),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    # -----------------------------------------------------------------------
    # Activity feed
    # -----------------------------------------------------------------------

    @app.get("/activity")
    def activity(limit: int = 100):
        items = orchestrator.activity.list(limit) if orchestrator.activity else []
        if orchestrator.backend is not None:
            items = items + fetch_activity(orchestrator.backend, limit=limit)
            items.sort(key=lambda it: it.timestamp, reverse=True)
        return {"activity": [_dump(it) for it in items[:limit]]}

    @app.get("/activity/stream")
    async def stream_activity():
        return StreamingResponse(
            _stream(live, ACTIVITY_CHANNEL, lambda _: "activity"),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    return app


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(cfg: dict | None = None):
    import uvicorn
    cfg = cfg or load_config()
    host = cfg["server"]["host"]
    port = int(cfg["server"]["port"])
    print(f"Starting MetaQuorum analysis server at http://{host}:{port}")
    uvicorn.run(create_app(cfg=cfg), host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
