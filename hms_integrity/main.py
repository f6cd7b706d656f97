"""
main.py
========
FastAPI entry point exposing the integrity engine's operation contract.
It:
 - Builds the storage adapter and enforcer from the environment on startup.
 - Exposes insert / get / update / delete for every entity kind.
 - Maps engine errors onto HTTP status codes.

Registration, scheduling and billing workflows call these endpoints; they
are not implemented here.
"""

import logging
from typing import Any, Dict

from fastapi import Body, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .catalog import EntityKind
from .config import Settings, configure_logging, load_settings
from .db import create_db_engine, init_db, make_session_factory
from .enforcer import IntegrityEnforcer
from .errors import (
    ConcurrentModification,
    EngineError,
    NotFound,
    ReferentialViolation,
    RestrictViolation,
    StorageUnavailable,
    ValidationFailed,
)
from .models import Base
from .schemas import DeleteResponse, ErrorResponse, InsertResponse, RowRef, parse_payload
from .sql_store import SqlStore
from .store import MemoryStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# APP INITIALIZATION
# ---------------------------------------------------------------------------

app = FastAPI(title="Hospital Integrity Engine", version="1.0")


def build_enforcer(settings: Settings) -> IntegrityEnforcer:
    """Wire the configured storage adapter into an enforcer."""
    if settings.store == "memory":
        store = MemoryStore(lock_timeout=settings.lock_timeout)
    else:
        engine = create_db_engine(settings.database_url, timeout=settings.lock_timeout)
        init_db(Base, engine)  # Create tables if missing
        store = SqlStore(make_session_factory(engine))
    return IntegrityEnforcer(store, conflict_retries=settings.conflict_retries)


# ---------------------------------------------------------------------------
# APP STARTUP EVENT
# ---------------------------------------------------------------------------
@app.on_event("startup")
async def startup_event():
    """
    Called when FastAPI starts.
    Reads settings, configures logging and builds the enforcer.
    """
    settings = load_settings()
    configure_logging(settings.log_level)
    app.state.enforcer = build_enforcer(settings)
    logger.info("integrity engine ready (store=%s)", settings.store)


def get_enforcer(request: Request) -> IntegrityEnforcer:
    return request.app.state.enforcer


# ---------------------------------------------------------------------------
# ERROR MAPPING
# ---------------------------------------------------------------------------

_STATUS_CODES = (
    (ValidationFailed, 422),
    (ReferentialViolation, 422),
    (NotFound, 404),
    (RestrictViolation, 409),
    (ConcurrentModification, 409),
    (StorageUnavailable, 503),
)


def _details(exc: EngineError) -> Dict[str, Any]:
    if isinstance(exc, ValidationFailed):
        return {"reasons": [
            {"field": r.field, "code": r.code, "message": r.message} for r in exc.reasons
        ]}
    if isinstance(exc, ReferentialViolation):
        return {"field": exc.field, "parent_kind": str(exc.parent_kind), "parent_id": exc.parent_id}
    if isinstance(exc, RestrictViolation):
        return {
            "blocking_kind": str(exc.blocking_kind),
            "blocking_ids": exc.blocking_ids,
            "blockers": {str(k): ids for k, ids in exc.blockers.items()},
        }
    return {}


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    status = next((code for cls, code in _STATUS_CODES if isinstance(exc, cls)), 500)
    body = ErrorResponse(
        error=type(exc).__name__,
        message=str(exc),
        transient=exc.transient,
        details=_details(exc),
    )
    return JSONResponse(status_code=status, content=body.model_dump())


def _coerce(kind: EntityKind, body: Dict[str, Any], for_update: bool) -> Dict[str, Any]:
    try:
        return parse_payload(kind, body, for_update)
    except ValidationError as exc:
        raise RequestValidationError(exc.errors()) from exc


# ---------------------------------------------------------------------------
# API ENDPOINTS
# ---------------------------------------------------------------------------

# engine errors share one body; 422 keeps FastAPI's own request-validation schema
_ERROR_RESPONSES = {code: {"model": ErrorResponse} for code in (404, 409, 503)}

@app.post("/api/{kind}", status_code=201, response_model=InsertResponse, responses=_ERROR_RESPONSES)
def api_insert(
    kind: EntityKind,
    body: Dict[str, Any] = Body(...),
    enforcer: IntegrityEnforcer = Depends(get_enforcer),
):
    """Validate and store a new row of ``kind``."""
    row_id = enforcer.insert(kind, _coerce(kind, body, for_update=False))
    return {"id": row_id}


@app.get("/api/{kind}/{row_id}", responses=_ERROR_RESPONSES)
def api_get(kind: EntityKind, row_id: int, enforcer: IntegrityEnforcer = Depends(get_enforcer)):
    return enforcer.get(kind, row_id)


@app.patch("/api/{kind}/{row_id}", responses=_ERROR_RESPONSES)
def api_update(
    kind: EntityKind,
    row_id: int,
    body: Dict[str, Any] = Body(...),
    enforcer: IntegrityEnforcer = Depends(get_enforcer),
):
    """
    Apply a partial update. Sending ``id`` re-keys the row and its children.
    """
    enforcer.update(kind, row_id, _coerce(kind, body, for_update=True))
    return {"ok": True}


@app.delete("/api/{kind}/{row_id}", response_model=DeleteResponse, responses=_ERROR_RESPONSES)
def api_delete(kind: EntityKind, row_id: int, enforcer: IntegrityEnforcer = Depends(get_enforcer)):
    """Delete a row with its cascades; restrict edges may block it."""
    result = enforcer.delete(kind, row_id)
    return DeleteResponse(
        deleted=[RowRef(kind=str(k), id=i) for k, i in result.deleted],
        nullified=[RowRef(kind=str(k), id=i) for k, i in result.nullified],
    )


# ---------------------------------------------------------------------------
# ROOT ENDPOINT
# ---------------------------------------------------------------------------

@app.get("/")
def root():
    """Basic health check endpoint."""
    return {"message": "Hospital integrity engine is running!"}
