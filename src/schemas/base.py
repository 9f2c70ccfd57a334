"""
Base types and constants used across all schemas.

This module defines the shared enums and annotated types that keep
the engine, the persistence layer and the API in agreement.
"""

from enum import Enum
from typing import Annotated

from pydantic import Field


# =============================================================================
# ENUMS
# =============================================================================

class ExpeditionStatus(str, Enum):
    """Lifecycle of an expedition."""
    DRAFT = "DRAFT"  # Graph is editable
    PUBLISHED = "PUBLISHED"  # Graph frozen, students progressing
    ARCHIVED = "ARCHIVED"  # No new progress, history preserved


class PinType(str, Enum):
    """Semantic role of a pin on the map."""
    INTRO = "INTRO"
    OBJECTIVE = "OBJECTIVE"
    FINAL = "FINAL"


class PinStatus(str, Enum):
    """State of one student on one pin."""
    LOCKED = "LOCKED"
    UNLOCKED = "UNLOCKED"
    IN_PROGRESS = "IN_PROGRESS"
    PASSED = "PASSED"
    FAILED = "FAILED"
    COMPLETED = "COMPLETED"

    @property
    def is_success(self) -> bool:
        return self in (PinStatus.PASSED, PinStatus.COMPLETED)

    @property
    def is_open(self) -> bool:
        """Pin can still be acted upon by the student."""
        return self in (PinStatus.UNLOCKED, PinStatus.IN_PROGRESS)


class Outcome(str, Enum):
    """Result of evaluating a pin attempt."""
    PASS = "PASS"
    FAIL = "FAIL"
    COMPLETE = "COMPLETE"  # Non-branching success (narrative checkpoints)

    @property
    def as_bool(self) -> bool:
        return self is not Outcome.FAIL


class PointType(str, Enum):
    """Currencies understood by the rewards ledger."""
    XP = "XP"
    GP = "GP"


class ActorRole(str, Enum):
    """Who is calling the engine."""
    TEACHER = "TEACHER"
    STUDENT = "STUDENT"


# =============================================================================
# ANNOTATED TYPES
# =============================================================================

# Non-empty string
NonEmptyStr = Annotated[str, Field(min_length=1)]

# Map coordinate, percent of the image (0-100)
MapCoordinate = Annotated[int, Field(ge=0, le=100)]

# XP/GP amounts are never negative
RewardAmount = Annotated[int, Field(ge=0)]

# Final score percentage
ScorePercent = Annotated[float, Field(ge=0.0, le=100.0)]
