"""
Expedition Data Contracts

Pydantic models for everything that crosses the engine boundary:
authoring payloads coming from teachers, submissions coming from students,
and the read views returned to the API layer.

Read views are built straight from ORM rows (``from_attributes``).
"""

from datetime import datetime

from pydantic import BaseModel, Field, model_validator

from src.schemas.base import (
    ActorRole,
    ExpeditionStatus,
    MapCoordinate,
    NonEmptyStr,
    PinStatus,
    PinType,
    PointType,
    RewardAmount,
    ScorePercent,
)


# =============================================================================
# CALLER IDENTITY
# =============================================================================

class Actor(BaseModel):
    """Authenticated caller, resolved by the (external) auth layer."""
    role: ActorRole
    actor_id: NonEmptyStr = Field(description="Teacher id or studentProfileId")

    @classmethod
    def teacher(cls, teacher_id: str) -> "Actor":
        return cls(role=ActorRole.TEACHER, actor_id=teacher_id)

    @classmethod
    def student(cls, student_profile_id: str) -> "Actor":
        return cls(role=ActorRole.STUDENT, actor_id=student_profile_id)


# =============================================================================
# AUTHORING PAYLOADS
# =============================================================================

class ExpeditionCreate(BaseModel):
    classroom_id: NonEmptyStr
    name: NonEmptyStr
    description: str | None = None
    map_image_url: NonEmptyStr = Field(description="Opaque, cosmetic")


class ExpeditionUpdate(BaseModel):
    """Partial update; only fields explicitly set are applied."""
    name: NonEmptyStr | None = None
    description: str | None = None
    map_image_url: NonEmptyStr | None = None
    auto_progress: bool | None = None


class PinCreate(BaseModel):
    """
    A new pin on a DRAFT expedition.

    ``auto_progress`` is a tri-state override: True/False force the
    behaviour, None inherits the expedition default.
    """
    pin_type: PinType
    position_x: MapCoordinate
    position_y: MapCoordinate
    name: NonEmptyStr

    # Narrative (opaque to the engine)
    story_content: str | None = None
    story_files: list[str] | None = None
    task_name: str | None = None
    task_content: str | None = None
    task_files: list[str] | None = None

    # Evaluation policy
    requires_submission: bool = False
    due_date: datetime | None = None
    auto_progress: bool | None = None

    # Rewards
    reward_xp: RewardAmount = 0
    reward_gp: RewardAmount = 0
    early_submission_enabled: bool = False
    early_submission_date: datetime | None = None
    early_bonus_xp: RewardAmount = 0
    early_bonus_gp: RewardAmount = 0

    @model_validator(mode="after")
    def _early_window_needs_date(self) -> "PinCreate":
        if self.early_submission_enabled and self.early_submission_date is None:
            raise ValueError("early_submission_date is required when early submission is enabled")
        return self


class PinUpdate(BaseModel):
    """Partial pin update. Use ``model_dump(exclude_unset=True)``."""
    position_x: MapCoordinate | None = None
    position_y: MapCoordinate | None = None
    name: NonEmptyStr | None = None
    story_content: str | None = None
    story_files: list[str] | None = None
    task_name: str | None = None
    task_content: str | None = None
    task_files: list[str] | None = None
    requires_submission: bool | None = None
    due_date: datetime | None = None
    auto_progress: bool | None = None
    reward_xp: RewardAmount | None = None
    reward_gp: RewardAmount | None = None
    early_submission_enabled: bool | None = None
    early_submission_date: datetime | None = None
    early_bonus_xp: RewardAmount | None = None
    early_bonus_gp: RewardAmount | None = None


class ConnectionCreate(BaseModel):
    from_pin_id: NonEmptyStr
    to_pin_id: NonEmptyStr
    on_success: bool | None = Field(
        default=None,
        description="True = taken on PASS, False = taken on FAIL, None = unconditional"
    )


class ConnectionUpdate(BaseModel):
    on_success: bool | None = None


class SubmissionCreate(BaseModel):
    files: list[NonEmptyStr] = Field(min_length=1, description="URLs returned by file storage")
    comment: str | None = None


class TeacherDecision(BaseModel):
    student_profile_id: NonEmptyStr
    passed: bool


class BulkDecisionRequest(BaseModel):
    decisions: list[TeacherDecision] = Field(min_length=1)


# =============================================================================
# READ VIEWS
# =============================================================================

class PinView(BaseModel):
    id: str
    expedition_id: str
    pin_type: PinType
    position_x: int
    position_y: int
    name: str
    story_content: str | None = None
    story_files: list[str] | None = None
    task_name: str | None = None
    task_content: str | None = None
    task_files: list[str] | None = None
    requires_submission: bool
    due_date: datetime | None = None
    auto_progress: bool | None = None
    reward_xp: int
    reward_gp: int
    early_submission_enabled: bool
    early_submission_date: datetime | None = None
    early_bonus_xp: int
    early_bonus_gp: int
    order_index: int

    model_config = {"from_attributes": True}


class ConnectionView(BaseModel):
    id: str
    expedition_id: str
    from_pin_id: str
    to_pin_id: str
    on_success: bool | None = None

    model_config = {"from_attributes": True}


class ExpeditionView(BaseModel):
    id: str
    classroom_id: str
    name: str
    description: str | None = None
    map_image_url: str
    status: ExpeditionStatus
    auto_progress: bool
    published_at: datetime | None = None
    created_at: datetime
    pins: list[PinView] = Field(default_factory=list)
    connections: list[ConnectionView] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class PinProgressView(BaseModel):
    id: str
    pin_id: str
    student_profile_id: str
    status: PinStatus
    teacher_decision: bool | None = None
    teacher_decision_at: datetime | None = None
    unlocked_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    rewards_issued: bool

    model_config = {"from_attributes": True}


class SubmissionView(BaseModel):
    id: str
    pin_id: str
    student_profile_id: str
    files: list[str]
    comment: str | None = None
    is_early_submission: bool
    submitted_at: datetime

    model_config = {"from_attributes": True}


class StudentProgressView(BaseModel):
    id: str
    expedition_id: str
    student_profile_id: str
    current_pin_id: str | None = None
    is_completed: bool
    completed_at: datetime | None = None
    final_score: ScorePercent | None = None
    started_at: datetime
    pin_progress: list[PinProgressView] = Field(default_factory=list)
    submissions: list[SubmissionView] = Field(default_factory=list)


class ExpeditionState(BaseModel):
    """Graph plus one student's snapshot, as rendered by the student map."""
    expedition: ExpeditionView
    progress: StudentProgressView | None = None


class StudentExpeditionSummary(BaseModel):
    expedition: ExpeditionView
    progress: StudentProgressView | None = None


class BulkDecisionResult(BaseModel):
    student_profile_id: str
    progress: PinProgressView | None = None
    error: str | None = None
    detail: str | None = None


# =============================================================================
# REWARDS
# =============================================================================

class RewardPayload(BaseModel):
    """What a single successful pin resolution is worth."""
    xp: RewardAmount = 0
    gp: RewardAmount = 0
    bonus_xp: RewardAmount = 0
    bonus_gp: RewardAmount = 0
    reason: str = ""

    @property
    def total_xp(self) -> int:
        return self.xp + self.bonus_xp

    @property
    def total_gp(self) -> int:
        return self.gp + self.bonus_gp

    @property
    def is_empty(self) -> bool:
        return self.total_xp == 0 and self.total_gp == 0


class LedgerResult(BaseModel):
    """Acknowledgement returned by the rewards ledger."""
    ok: bool = True
    point_type: PointType
    amount: int
    reference: str | None = None
