from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse, StreamingResponse

from .correlator import DuplicateTaskError
from .schemas import (
    ConfigResponse,
    NotificationRequest,
    NotificationResponse,
    RunCreateRequest,
    RunResponse,
)
from .service_container import Services
from .session import RunSession, RunStateError
from .utils import dumps_json


def _run_or_404(services: Services, run_id: str) -> RunSession:
    session = services.orchestrator.get(run_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return session


def create_app(services: Services) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        services.orchestrator.start()
        try:
            yield
        finally:
            await services.orchestrator.stop()

    app = FastAPI(title="Stata Run Backend", version="0.1.0", lifespan=lifespan)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"ok": True, "pending_tasks": len(services.orchestrator.correlator)}

    @app.get("/v1/config", response_model=ConfigResponse)
    async def get_config() -> ConfigResponse:
        return ConfigResponse(**services.settings.public_view())

    @app.post("/v1/runs", response_model=RunResponse)
    async def create_run(request: RunCreateRequest) -> RunResponse:
        session = await services.orchestrator.submit(
            request.code,
            run_id=request.run_id,
            task_id=request.task_id,
            timeout_ms=request.timeout_ms,
        )
        return RunResponse(**session.view())

    @app.get("/v1/runs", response_model=list[RunResponse])
    async def list_runs() -> list[RunResponse]:
        return [RunResponse(**session.view()) for session in services.orchestrator.list_sessions()]

    @app.get("/v1/runs/{run_id}", response_model=RunResponse)
    async def get_run(run_id: str) -> RunResponse:
        return RunResponse(**_run_or_404(services, run_id).view())

    @app.post("/v1/runs/{run_id}/cancel", response_model=RunResponse)
    async def cancel_run(run_id: str) -> RunResponse:
        session = await services.orchestrator.cancel(run_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return RunResponse(**session.view())

    @app.delete("/v1/runs/{run_id}", response_model=RunResponse)
    async def release_run(run_id: str) -> RunResponse:
        session = services.orchestrator.release(run_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return RunResponse(**session.view())

    @app.post("/v1/notifications", response_model=NotificationResponse)
    async def post_notification(request: NotificationRequest) -> NotificationResponse:
        return NotificationResponse(accepted=services.orchestrator.post_notification(request.data))

    @app.get("/v1/events/stream")
    async def stream_events(
        run_id: str | None = None,
        since_id: int = Query(default=0, ge=0),
    ) -> StreamingResponse:
        events = services.events

        async def generator() -> Any:
            last_id = since_id
            while True:
                batch = events.list_events(after_id=last_id, run_id=run_id, limit=200)
                if batch:
                    for event in batch:
                        last_id = int(event["id"])
                        yield f"id: {last_id}\n"
                        yield f"event: {event['type']}\n"
                        yield f"data: {dumps_json(event)}\n\n"
                    continue
                if not await events.wait_for_events(timeout=15.0):
                    yield ": ping\n\n"

        return StreamingResponse(generator(), media_type="text/event-stream")

    @app.exception_handler(RunStateError)
    async def run_state_error_handler(_request: Any, exc: RunStateError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(DuplicateTaskError)
    async def duplicate_task_handler(_request: Any, exc: DuplicateTaskError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def value_error_handler(_request: Any, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    return app
