"""
Expedition Progression Engine Package.

Branching quest graphs authored by teachers, walked by students.
"""
from src.expedition.config import EngineSettings
from src.expedition.database import Database
from src.expedition.engine import ExpeditionEngine
from src.expedition.errors import (
    AlreadyResolvedError,
    ConcurrentUpdateError,
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
from src.expedition.rewards import PointLogLedger, RewardIssuer, RewardsLedger
from src.expedition.roster import ClassroomRoster, InMemoryRoster
from src.expedition.storage import FileStorage, LocalFileStorage

__all__ = [
    "EngineSettings",
    "Database",
    "ExpeditionEngine",
    # Errors
    "ExpeditionError",
    "NotFoundError",
    "UnauthorizedError",
    "GraphFrozenError",
    "EmptyGraphError",
    "GraphValidationError",
    "PinLockedError",
    "InvalidTransitionError",
    "AlreadyResolvedError",
    "ConcurrentUpdateError",
    "UploadRejectedError",
    # Collaborators
    "RewardsLedger",
    "PointLogLedger",
    "RewardIssuer",
    "ClassroomRoster",
    "InMemoryRoster",
    "FileStorage",
    "LocalFileStorage",
]
