"""
Graph builders shared by the service and API tests.
"""

from datetime import datetime, timedelta

from src.expedition import ExpeditionEngine
from src.expedition.models import utcnow
from src.schemas import (
    ConnectionCreate,
    ExpeditionCreate,
    ExpeditionUpdate,
    PinCreate,
    PinType,
)

CLASSROOM = "classroom-1"
OTHER_CLASSROOM = "classroom-2"


def make_expedition(engine: ExpeditionEngine, name: str = "Lost Temple", auto_progress: bool = False):
    expedition = engine.create_expedition(
        ExpeditionCreate(classroom_id=CLASSROOM, name=name, map_image_url="https://maps/temple.png")
    )
    if auto_progress:
        expedition = engine.update_expedition(expedition.id, ExpeditionUpdate(auto_progress=True))
    return expedition


def make_pin(engine: ExpeditionEngine, expedition_id: str, pin_type: PinType, name: str, **fields):
    return engine.create_pin(
        expedition_id,
        PinCreate(pin_type=pin_type, position_x=10, position_y=10, name=name, **fields),
    )


def connect(engine: ExpeditionEngine, expedition_id: str, source, target, on_success=None):
    return engine.create_connection(
        expedition_id,
        ConnectionCreate(from_pin_id=source.id, to_pin_id=target.id, on_success=on_success),
    )


def statuses(engine: ExpeditionEngine, expedition_id: str, student_profile_id: str) -> dict:
    """pin_id -> PinStatus for one student."""
    state = engine.get_expedition_state(expedition_id, student_profile_id)
    return {row.pin_id: row.status for row in state.progress.pin_progress}


def future(days: int = 3) -> datetime:
    return utcnow() + timedelta(days=days)


def past(days: int = 3) -> datetime:
    return utcnow() - timedelta(days=days)
