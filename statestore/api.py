"""
HTTP interface for collaborators (orchestration scripts, prompt generators,
game-server monitors).

Routes:
- GET  /state/{path}              read a value
- PUT  /state/{path}              write a value
- GET  /state/{path}/history      change log entries for a path
- GET  /changes                   change log query
- POST /changes/revert            best-effort rollback
- POST /learning/attempts         record a concluded fix attempt
- GET  /learning/best/{issue_type}
- GET  /learning/failed/{issue_type}
- GET  /learning/advisory         misdiagnosis advisory
- POST /learning/generalize
- GET  /learning/report
- POST /persistence/flush
- POST /query                     free-text dispatcher
- GET  /health

Store errors are returned with their structured body. Invalid input maps to
400, a failed save to 503.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .errors import StateStoreError
from .service import StateService

logger = logging.getLogger("state_api")

ERROR_STATUS = {
    "INVALID_PATH": 400,
    "INVALID_VALUE": 400,
    "INVALID_RECORD": 400,
    "SAVE_FAILED": 503,
    "STATE_CORRUPT": 500,
    "INVALID_CONFIG": 500,
}


# -----------------------------------------------------------------------------
# Request Models
# -----------------------------------------------------------------------------
class SetValueRequest(BaseModel):
    value: Any = None
    metadata: Optional[Dict[str, Any]] = None


class FixAttemptRequest(BaseModel):
    issue_id: str
    issue_type: str
    component: str = ""
    fix_method: str
    result: str = Field(..., description="success, failure or partial")
    duration_ms: int
    timestamp_start: Optional[int] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None


class RevertRequest(BaseModel):
    since: int = Field(..., description="Revert changes at or after this time (ms)")
    path: Optional[str] = None


class FlushRequest(BaseModel):
    timeout: Optional[float] = None


class QueryRequest(BaseModel):
    question: str


# -----------------------------------------------------------------------------
# Router
# -----------------------------------------------------------------------------
def create_router(service: StateService) -> APIRouter:
    """Routes bound to one explicitly constructed service."""
    router = APIRouter(tags=["state-store"])

    @router.get("/state/{path}")
    async def read_state(path: str):
        exists = service.document.exists(path)
        return {"path": path, "exists": exists, "value": service.get(path)}

    @router.put("/state/{path}")
    async def write_state(path: str, request: SetValueRequest):
        event = service.set(path, request.value, metadata=request.metadata)
        return {"path": path, "created": event.created, "value": event.new_value}

    @router.get("/state/{path}/history")
    async def state_history(
        path: str,
        window_ms: Optional[int] = Query(None, ge=0),
        include_archived: bool = False,
    ):
        entries = service.history(path, window_ms=window_ms, include_archived=include_archived)
        return {"path": path, "count": len(entries), "entries": [e.to_dict() for e in entries]}

    @router.get("/changes")
    async def list_changes(
        path: Optional[str] = None,
        since: Optional[int] = None,
        until: Optional[int] = None,
        limit: Optional[int] = Query(100, ge=0),
    ):
        entries = service.change_log.query(path=path, since=since, until=until, limit=limit)
        return {"count": len(entries), "entries": [e.to_dict() for e in entries]}

    @router.post("/changes/revert")
    async def revert_changes(request: RevertRequest):
        return service.revert_since(request.since, path=request.path).to_dict()

    @router.post("/learning/attempts")
    async def record_attempt(request: FixAttemptRequest):
        aggregate = service.report_fix_attempt(
            issue_id=request.issue_id,
            issue_type=request.issue_type,
            component=request.component,
            fix_method=request.fix_method,
            result=request.result,
            duration_ms=request.duration_ms,
            timestamp_start=request.timestamp_start,
            details=request.details,
            error_message=request.error_message,
        )
        return {"aggregate": aggregate.to_dict()}

    @router.get("/learning/best/{issue_type}")
    async def best_solution(issue_type: str):
        best = service.learner.get_best_solution_for_issue_type(issue_type)
        return {"issue_type": issue_type, "best": best.to_dict() if best else None}

    @router.get("/learning/failed/{issue_type}")
    async def failed_methods(issue_type: str):
        failed = service.learner.get_failed_methods(issue_type)
        return {"issue_type": issue_type, "failed_methods": [a.to_dict() for a in failed]}

    @router.get("/learning/advisory")
    async def advisory(
        issue_type: str,
        error_message: Optional[str] = None,
        component: Optional[str] = None,
    ):
        return service.advise(issue_type, error_message=error_message, component=component).to_dict()

    @router.post("/learning/generalize")
    async def generalize():
        return service.generalize().to_dict()

    @router.get("/learning/report")
    async def learning_report(limit: int = Query(10, ge=1, le=100)):
        return service.learner.get_learning_report(limit=limit)

    @router.post("/persistence/flush")
    async def flush(request: Optional[FlushRequest] = None):
        timeout = request.timeout if request else None
        return (await service.flush(timeout=timeout)).to_dict()

    @router.post("/query")
    async def query(request: QueryRequest):
        return service.ask(request.question)

    @router.get("/health")
    async def health():
        return {"status": "ok", **service.status_report()}

    return router


# -----------------------------------------------------------------------------
# Application
# -----------------------------------------------------------------------------
def create_app(service: StateService, manage_lifecycle: bool = True) -> FastAPI:
    """
    FastAPI app around a service.

    With manage_lifecycle the app starts the service on startup and performs
    the final save on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            await service.start()
        yield
        if manage_lifecycle:
            await service.stop()

    app = FastAPI(
        title="Learning State Store",
        description="Path-addressed state, change log and fix-attempt learning",
        version=__version__,
        lifespan=lifespan,
    )
    app.include_router(create_router(service))

    @app.exception_handler(StateStoreError)
    async def state_store_error_handler(request: Request, exc: StateStoreError):
        status = ERROR_STATUS.get(exc.code, 500)
        if status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=status, content=exc.to_dict())

    return app
