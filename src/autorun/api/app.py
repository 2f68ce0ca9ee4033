"""
FastAPI application factory.

``create_app(core)`` exposes the run-now, cancel and run inspection
operations of an :class:`~autorun.bootstrap.AutomationCore`.

Endpoints (under ``settings.api_prefix``):
    POST   /schedules/{schedule_id}/run   Queue a schedule run now
    POST   /workflows/{workflow_id}/run   Queue a workflow run now
    GET    /runs/{run_id}                 Agent or workflow run with transcript
    POST   /runs/{run_id}/cancel          Abort in-flight, or remove pending
    GET    /health                        Queue, scheduler and mode status

The caller's user id comes from the ``X-User-Id`` header. Authentication
is expected in front of this service.

Tags:
    autorun, api, app-factory, FastAPI

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request

from autorun import __version__
from autorun.api.errors import handle_error, unhandled_exception_handler
from autorun.bootstrap import AutomationCore
from autorun.core.logging import get_logger
from autorun.ops.result import NOT_FOUND

logger = get_logger(__name__)


def get_core(request: Request) -> AutomationCore:
    return request.app.state.core


def get_user_id(x_user_id: Annotated[str | None, Header()] = None) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    return x_user_id


Core = Annotated[AutomationCore, Depends(get_core)]
UserId = Annotated[str, Depends(get_user_id)]

router = APIRouter()


@router.post("/schedules/{schedule_id}/run", status_code=202)
async def run_schedule(schedule_id: str, core: Core, user_id: UserId) -> Any:
    """Queue a run. Returns ``{runId, status: "queued", conversationId}``."""
    result = await core.scheduling.run_schedule(user_id, schedule_id)
    if not result.success:
        return handle_error(result)
    return result.data


@router.post("/workflows/{workflow_id}/run", status_code=202)
async def run_workflow(workflow_id: str, core: Core, user_id: UserId) -> Any:
    result = await core.workflow_service.run_workflow(user_id, workflow_id)
    if not result.success:
        return handle_error(result)
    return result.data


@router.get("/runs/{run_id}")
async def get_run(run_id: str, core: Core, user_id: UserId) -> Any:
    result = core.scheduling.get_run(user_id, run_id)
    kind = "agent"
    if not result.success and result.error.code == NOT_FOUND:
        result = core.workflow_service.get_run(user_id, run_id)
        kind = "workflow"
    if not result.success:
        return handle_error(result)
    return {"type": kind, **result.data}


@router.post("/runs/{run_id}/cancel")
async def cancel_run(run_id: str, core: Core, user_id: UserId) -> Any:
    if core.workflow_runs.get(run_id) is not None:
        result = await core.workflow_service.cancel_run(user_id, run_id)
    else:
        result = await core.scheduling.cancel_run(user_id, run_id)
    if not result.success:
        return handle_error(result)
    return result.data


@router.get("/health")
async def health(core: Core) -> Any:
    return await core.health()


def create_app(core: AutomationCore, *, manage_lifecycle: bool = False) -> FastAPI:
    """Build the FastAPI app around ``core``.

    With ``manage_lifecycle`` the app starts the core's workers and
    scheduler on startup and stops them on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        if manage_lifecycle:
            await core.start()
        logger.info("api.started", prefix=core.settings.api_prefix, degraded=core.degraded)
        try:
            yield
        finally:
            if manage_lifecycle:
                await core.stop()
            logger.info("api.stopped")

    app = FastAPI(title="autorun", version=__version__, lifespan=lifespan)
    app.state.core = core
    app.add_exception_handler(Exception, unhandled_exception_handler)
    app.include_router(router, prefix=core.settings.api_prefix)
    return app
