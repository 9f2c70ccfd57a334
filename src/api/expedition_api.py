# src/api/expedition_api.py
"""
HTTP surface of the progression engine.

Two routers:
- ``router`` (``/api/expeditions``): teacher authoring and review.
- ``student_router`` (``/api/student``): the student map, attempts and submissions.

The caller is identified by the ``X-Actor-Role`` / ``X-Actor-Id`` headers set by
the upstream auth proxy. Engine errors are turned into ``{"error", "detail"}``
JSON bodies by ``expedition_error_handler``.
"""

import logging

from fastapi import APIRouter, Depends, File, Header, Request, UploadFile
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.util import get_remote_address

from src.expedition.engine import ExpeditionEngine
from src.expedition.errors import (
    EmptyGraphError,
    ExpeditionError,
    GraphFrozenError,
    GraphValidationError,
    InvalidTransitionError,
    NotFoundError,
    PinLockedError,
    UnauthorizedError,
    UploadRejectedError,
)
from src.schemas.base import ActorRole, ExpeditionStatus
from src.schemas.expedition import (
    Actor,
    BulkDecisionRequest,
    BulkDecisionResult,
    ConnectionCreate,
    ConnectionUpdate,
    ConnectionView,
    ExpeditionCreate,
    ExpeditionState,
    ExpeditionUpdate,
    ExpeditionView,
    PinCreate,
    PinProgressView,
    PinUpdate,
    PinView,
    StudentExpeditionSummary,
    SubmissionCreate,
    SubmissionView,
    TeacherDecision,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/expeditions", tags=["expeditions"])
student_router = APIRouter(prefix="/api/student", tags=["student"])

# Rate limiting on the write paths students can hammer
limiter = Limiter(key_func=get_remote_address)

# First match wins; subclasses before their parents
ERROR_STATUS_CODES: list[tuple[type[ExpeditionError], int]] = [
    (NotFoundError, 404),
    (UnauthorizedError, 403),
    (GraphFrozenError, 409),
    (InvalidTransitionError, 409),
    (EmptyGraphError, 400),
    (PinLockedError, 400),
    (GraphValidationError, 400),
    (UploadRejectedError, 400),
]


def status_code_for(error: ExpeditionError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 400


def expedition_error_handler(request: Request, exc: ExpeditionError) -> JSONResponse:
    status_code = status_code_for(exc)
    logger.info("%s %s -> %d %s", request.method, request.url.path, status_code, exc.code)
    return JSONResponse(status_code=status_code, content={"error": exc.code, "detail": exc.message})


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_engine(request: Request) -> ExpeditionEngine:
    return request.app.state.engine


def get_actor(
    x_actor_role: ActorRole | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
) -> Actor:
    if x_actor_role is None or not x_actor_id:
        raise UnauthorizedError("Missing X-Actor-Role / X-Actor-Id headers")
    return Actor(role=x_actor_role, actor_id=x_actor_id)


def get_student(actor: Actor = Depends(get_actor)) -> Actor:
    if actor.role != ActorRole.STUDENT:
        raise UnauthorizedError("Only students can use this endpoint")
    return actor


# =============================================================================
# TEACHER: EXPEDITIONS
# =============================================================================

@router.post("", response_model=ExpeditionView, status_code=201)
def create_expedition(
    payload: ExpeditionCreate,
    actor: Actor = Depends(get_actor),
    engine: ExpeditionEngine = Depends(get_engine),
):
    return engine.create_expedition(payload, actor=actor)


@router.get("", response_model=list[ExpeditionView])
def list_expeditions(
    classroom_id: str,
    status: ExpeditionStatus | None = None,
    actor: Actor = Depends(get_actor),
    engine: ExpeditionEngine = Depends(get_engine),
):
    return engine.list_expeditions(classroom_id, status=status, actor=actor)


@router.get("/{expedition_id}", response_model=ExpeditionView)
def get_expedition(
    expedition_id: str,
    actor: Actor = Depends(get_actor),
    engine: ExpeditionEngine = Depends(get_engine),
):
    return engine.get_expedition(expedition_id, actor=actor)


@router.patch("/{expedition_id}", response_model=ExpeditionView)
def update_expedition(
    expedition_id: str,
    payload: ExpeditionUpdate,
    actor: Actor = Depends(get_actor),
    engine: ExpeditionEngine = Depends(get_engine),
):
    return engine.update_expedition(expedition_id, payload, actor=actor)


@router.delete("/{expedition_id}", status_code=204)
def delete_expedition(
    expedition_id: str,
    actor: Actor = Depends(get_actor),
    engine: ExpeditionEngine = Depends(get_engine),
):
    engine.delete_expedition(expedition_id, actor=actor)


@router.post("/{expedition_id}/publish", response_model=ExpeditionView)
def publish_expedition(
    expedition_id: str,
    actor: Actor = Depends(get_actor),
    engine: ExpeditionEngine = Depends(get_engine),
):
    return engine.publish(expedition_id, actor=actor)


@router.post("/{expedition_id}/archive", response_model=ExpeditionView)
def archive_expedition(
    expedition_id: str,
    actor: Actor = Depends(get_actor),
    engine: ExpeditionEngine = Depends(get_engine),
):
    return engine.archive(expedition_id, actor=actor)


@router.get("/{expedition_id}/students/{student_profile_id}", response_model=ExpeditionState)
def get_student_state(
    expedition_id: str,
    student_profile_id: str,
    actor: Actor = Depends(get_actor),
    engine: ExpeditionEngine = Depends(get_engine),
):
    return engine.get_expedition_state(expedition_id, student_profile_id, actor=actor)


# =============================================================================
# TEACHER: PINS & CONNECTIONS
# =============================================================================

@router.post("/{expedition_id}/pins", response_model=PinView, status_code=201)
def create_pin(
    expedition_id: str,
    payload: PinCreate,
    actor: Actor = Depends(get_actor),
    engine: ExpeditionEngine = Depends(get_engine),
):
    return engine.create_pin(expedition_id, payload, actor=actor)


@router.patch("/pins/{pin_id}", response_model=PinView)
def update_pin(
    pin_id: str,
    payload: PinUpdate,
    actor: Actor = Depends(get_actor),
    engine: ExpeditionEngine = Depends(get_engine),
):
    return engine.update_pin(pin_id, payload, actor=actor)


@router.delete("/pins/{pin_id}", status_code=204)
def delete_pin(
    pin_id: str,
    actor: Actor = Depends(get_actor),
    engine: ExpeditionEngine = Depends(get_engine),
):
    engine.delete_pin(pin_id, actor=actor)


@router.post("/{expedition_id}/connections", response_model=ConnectionView, status_code=201)
def create_connection(
    expedition_id: str,
    payload: ConnectionCreate,
    actor: Actor = Depends(get_actor),
    engine: ExpeditionEngine = Depends(get_engine),
):
    return engine.create_connection(expedition_id, payload, actor=actor)


@router.patch("/connections/{connection_id}", response_model=ConnectionView)
def update_connection(
    connection_id: str,
    payload: ConnectionUpdate,
    actor: Actor = Depends(get_actor),
    engine: ExpeditionEngine = Depends(get_engine),
):
    return engine.update_connection(connection_id, payload.on_success, actor=actor)


@router.delete("/connections/{connection_id}", status_code=204)
def delete_connection(
    connection_id: str,
    actor: Actor = Depends(get_actor),
    engine: ExpeditionEngine = Depends(get_engine),
):
    engine.delete_connection(connection_id, actor=actor)


# =============================================================================
# TEACHER: REVIEW
# =============================================================================

@router.post("/pins/{pin_id}/decisions", response_model=PinProgressView)
def set_teacher_decision(
    pin_id: str,
    decision: TeacherDecision,
    actor: Actor = Depends(get_actor),
    engine: ExpeditionEngine = Depends(get_engine),
):
    return engine.set_teacher_decision(
        pin_id, decision.student_profile_id, decision.passed, actor=actor
    )


@router.post("/pins/{pin_id}/decisions/bulk", response_model=list[BulkDecisionResult])
def set_teacher_decisions_bulk(
    pin_id: str,
    payload: BulkDecisionRequest,
    actor: Actor = Depends(get_actor),
    engine: ExpeditionEngine = Depends(get_engine),
):
    return engine.set_teacher_decisions_bulk(pin_id, payload.decisions, actor=actor)


@router.get("/pins/{pin_id}/progress", response_model=list[PinProgressView])
def get_pin_student_progress(
    pin_id: str,
    actor: Actor = Depends(get_actor),
    engine: ExpeditionEngine = Depends(get_engine),
):
    return engine.get_pin_student_progress(pin_id, actor=actor)


@router.get("/pins/{pin_id}/submissions", response_model=list[SubmissionView])
def get_submissions_by_pin(
    pin_id: str,
    actor: Actor = Depends(get_actor),
    engine: ExpeditionEngine = Depends(get_engine),
):
    return engine.get_submissions_by_pin(pin_id, actor=actor)


# =============================================================================
# STUDENT
# =============================================================================

@student_router.get("/expeditions", response_model=list[StudentExpeditionSummary])
def list_my_expeditions(
    classroom_id: str,
    actor: Actor = Depends(get_student),
    engine: ExpeditionEngine = Depends(get_engine),
):
    return engine.list_student_expeditions(classroom_id, actor.actor_id, actor=actor)


@student_router.get("/expeditions/{expedition_id}", response_model=ExpeditionState)
def get_my_expedition(
    expedition_id: str,
    actor: Actor = Depends(get_student),
    engine: ExpeditionEngine = Depends(get_engine),
):
    return engine.get_expedition_state(expedition_id, actor.actor_id, actor=actor)


@student_router.post("/pins/{pin_id}/attempt", response_model=PinProgressView)
def attempt_pin(
    pin_id: str,
    actor: Actor = Depends(get_student),
    engine: ExpeditionEngine = Depends(get_engine),
):
    return engine.attempt_pin(pin_id, actor.actor_id, actor=actor)


@student_router.post("/pins/{pin_id}/submissions", response_model=SubmissionView, status_code=201)
@limiter.limit("30/minute")
def submit(
    request: Request,
    pin_id: str,
    payload: SubmissionCreate,
    actor: Actor = Depends(get_student),
    engine: ExpeditionEngine = Depends(get_engine),
):
    return engine.submit(pin_id, actor.actor_id, payload.files, comment=payload.comment, actor=actor)


@student_router.post("/uploads", status_code=201)
@limiter.limit("30/minute")
def upload_file(
    request: Request,
    file: UploadFile = File(...),
    actor: Actor = Depends(get_student),
    engine: ExpeditionEngine = Depends(get_engine),
):
    # Bounded read: anything past the limit is rejected by storage
    content = file.file.read(engine.settings.upload_max_bytes + 1)
    url = engine.upload_file(file.filename or "upload", content, file.content_type or "")
    return {"url": url}
