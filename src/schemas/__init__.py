"""
Expedition Schemas Package

Pydantic models that form the data contracts of the progression engine.
If data does not match these schemas, the call fails before touching state.
"""

from src.schemas.base import (
    ActorRole,
    ExpeditionStatus,
    Outcome,
    PinStatus,
    PinType,
    PointType,
)
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
    LedgerResult,
    PinCreate,
    PinProgressView,
    PinUpdate,
    PinView,
    RewardPayload,
    StudentExpeditionSummary,
    StudentProgressView,
    SubmissionCreate,
    SubmissionView,
    TeacherDecision,
)

__all__ = [
    # Enums
    "ActorRole",
    "ExpeditionStatus",
    "Outcome",
    "PinStatus",
    "PinType",
    "PointType",
    # Payloads
    "Actor",
    "ExpeditionCreate",
    "ExpeditionUpdate",
    "PinCreate",
    "PinUpdate",
    "ConnectionCreate",
    "ConnectionUpdate",
    "SubmissionCreate",
    "TeacherDecision",
    "BulkDecisionRequest",
    # Views
    "ExpeditionView",
    "PinView",
    "ConnectionView",
    "PinProgressView",
    "SubmissionView",
    "StudentProgressView",
    "ExpeditionState",
    "StudentExpeditionSummary",
    "BulkDecisionResult",
    # Rewards
    "RewardPayload",
    "LedgerResult",
]
