"""
Expedition Persistence Model

SQLAlchemy tables for the two stores:

- Graph Store: ``expeditions``, ``expedition_pins``, ``expedition_connections``
  (authored by the teacher, frozen at publish).
- Progress Store: ``expedition_student_progress``, ``expedition_pin_progress``,
  ``expedition_submissions`` and ``expedition_reward_grants`` (per student).

``point_logs`` backs the local rewards ledger only.
"""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from src.schemas.base import ExpeditionStatus, PinStatus, PinType, PointType

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite drops tzinfo so all stored datetimes are naive."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _uuid() -> str:
    return str(uuid4())


# =============================================================================
# GRAPH STORE
# =============================================================================

class Expedition(Base):
    __tablename__ = "expeditions"

    id = Column(String(36), primary_key=True, default=_uuid)
    classroom_id = Column(String(36), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    map_image_url = Column(String(500), nullable=False)
    status = Column(
        Enum(ExpeditionStatus, native_enum=False, length=16),
        nullable=False,
        default=ExpeditionStatus.DRAFT,
        index=True,
    )
    auto_progress = Column(Boolean, nullable=False, default=False)
    published_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    pins = relationship(
        "Pin",
        back_populates="expedition",
        order_by="Pin.order_index",
        cascade="all, delete-orphan",
    )
    connections = relationship(
        "Connection",
        back_populates="expedition",
        cascade="all, delete-orphan",
    )

    @property
    def is_draft(self) -> bool:
        return self.status == ExpeditionStatus.DRAFT


class Pin(Base):
    __tablename__ = "expedition_pins"

    id = Column(String(36), primary_key=True, default=_uuid)
    expedition_id = Column(String(36), ForeignKey("expeditions.id"), nullable=False, index=True)
    pin_type = Column(Enum(PinType, native_enum=False, length=16), nullable=False)

    # Map position, percent of image (0-100)
    position_x = Column(Integer, nullable=False, default=0)
    position_y = Column(Integer, nullable=False, default=0)

    name = Column(String(255), nullable=False)
    story_content = Column(Text)
    story_files = Column(JSON)
    task_name = Column(String(255))
    task_content = Column(Text)
    task_files = Column(JSON)

    requires_submission = Column(Boolean, nullable=False, default=False)
    due_date = Column(DateTime)
    auto_progress = Column(Boolean)  # None = inherit expedition default

    reward_xp = Column(Integer, nullable=False, default=0)
    reward_gp = Column(Integer, nullable=False, default=0)
    early_submission_enabled = Column(Boolean, nullable=False, default=False)
    early_submission_date = Column(DateTime)
    early_bonus_xp = Column(Integer, nullable=False, default=0)
    early_bonus_gp = Column(Integer, nullable=False, default=0)

    order_index = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    expedition = relationship("Expedition", back_populates="pins")


class Connection(Base):
    __tablename__ = "expedition_connections"

    id = Column(String(36), primary_key=True, default=_uuid)
    expedition_id = Column(String(36), ForeignKey("expeditions.id"), nullable=False, index=True)
    from_pin_id = Column(String(36), ForeignKey("expedition_pins.id"), nullable=False, index=True)
    to_pin_id = Column(String(36), ForeignKey("expedition_pins.id"), nullable=False, index=True)
    # True = on PASS, False = on FAIL, None = unconditional
    on_success = Column(Boolean)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    expedition = relationship("Expedition", back_populates="connections")


# =============================================================================
# PROGRESS STORE
# =============================================================================

class StudentExpeditionProgress(Base):
    __tablename__ = "expedition_student_progress"
    __table_args__ = (
        UniqueConstraint("expedition_id", "student_profile_id", name="unique_expedition_student"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    expedition_id = Column(String(36), ForeignKey("expeditions.id"), nullable=False, index=True)
    student_profile_id = Column(String(36), nullable=False, index=True)
    current_pin_id = Column(String(36))
    is_completed = Column(Boolean, nullable=False, default=False)
    completed_at = Column(DateTime)
    final_score = Column(Float)
    started_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class PinProgress(Base):
    """
    One student's state on one pin.

    ``version`` is an optimistic lock: two requests racing on the same row
    cannot both commit a transition.
    """
    __tablename__ = "expedition_pin_progress"
    __table_args__ = (
        UniqueConstraint("pin_id", "student_profile_id", name="unique_pin_student"),
        Index("idx_pin_progress_expedition_student", "expedition_id", "student_profile_id"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    expedition_id = Column(String(36), ForeignKey("expeditions.id"), nullable=False)
    pin_id = Column(String(36), ForeignKey("expedition_pins.id"), nullable=False, index=True)
    student_profile_id = Column(String(36), nullable=False)
    status = Column(
        Enum(PinStatus, native_enum=False, length=16),
        nullable=False,
        default=PinStatus.LOCKED,
    )

    # None = pending, True = passed, False = failed. Only set by manual review.
    teacher_decision = Column(Boolean)
    teacher_decision_at = Column(DateTime)

    unlocked_at = Column(DateTime)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    # Set together with the first transition into PASSED/COMPLETED
    rewards_issued = Column(Boolean, nullable=False, default=False)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}


class Submission(Base):
    __tablename__ = "expedition_submissions"
    __table_args__ = (
        Index("idx_submissions_pin_student", "pin_id", "student_profile_id"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    expedition_id = Column(String(36), ForeignKey("expeditions.id"), nullable=False, index=True)
    pin_id = Column(String(36), ForeignKey("expedition_pins.id"), nullable=False)
    student_profile_id = Column(String(36), nullable=False, index=True)
    files = Column(JSON, nullable=False)
    comment = Column(Text)
    is_early_submission = Column(Boolean, nullable=False, default=False)
    submitted_at = Column(DateTime, nullable=False, default=utcnow)


class RewardGrant(Base):
    """
    Durable record of a reward owed for one (student, pin).

    The unique ``pin_progress_id`` is the at-most-once guard; delivery to the
    ledger is tracked per currency so a retry never re-credits what landed.
    """
    __tablename__ = "expedition_reward_grants"

    id = Column(String(36), primary_key=True, default=_uuid)
    pin_progress_id = Column(
        String(36), ForeignKey("expedition_pin_progress.id"), nullable=False, unique=True
    )
    student_profile_id = Column(String(36), nullable=False, index=True)
    pin_id = Column(String(36), nullable=False)
    xp = Column(Integer, nullable=False, default=0)
    gp = Column(Integer, nullable=False, default=0)
    bonus_xp = Column(Integer, nullable=False, default=0)
    bonus_gp = Column(Integer, nullable=False, default=0)
    reason = Column(String(500), nullable=False)

    xp_delivered = Column(Boolean, nullable=False, default=False)
    gp_delivered = Column(Boolean, nullable=False, default=False)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    claimed_at = Column(DateTime)  # Lease held by an in-flight delivery
    created_at = Column(DateTime, nullable=False, default=utcnow)
    delivered_at = Column(DateTime)

    version = Column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}

    @property
    def total_xp(self) -> int:
        return self.xp + self.bonus_xp

    @property
    def total_gp(self) -> int:
        return self.gp + self.bonus_gp

    @property
    def is_delivered(self) -> bool:
        return self.delivered_at is not None


class PointLog(Base):
    __tablename__ = "point_logs"

    id = Column(String(36), primary_key=True, default=_uuid)
    student_profile_id = Column(String(36), nullable=False, index=True)
    point_type = Column(Enum(PointType, native_enum=False, length=4), nullable=False)
    amount = Column(Integer, nullable=False)
    reason = Column(String(500), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
