"""
Shared fixtures for the expedition engine tests.

Every test gets its own SQLite file under ``tmp_path``, a small roster
(classroom-1 with three students and one teacher, classroom-2 with an
outsider) and a ledger that records every credit.
"""

import pytest

from src.expedition import (
    Database,
    EngineSettings,
    ExpeditionEngine,
    InMemoryRoster,
)
from src.expedition.circuit_breaker import CircuitBreaker
from src.schemas import Actor, LedgerResult, PinType, PointType
from tests.helpers import CLASSROOM, OTHER_CLASSROOM, connect, make_expedition, make_pin


class RecordingLedger:
    """Rewards ledger double. ``fail_on`` makes credits of those currencies raise."""

    def __init__(self):
        self.credits: list[tuple[str, PointType, int, str]] = []
        self.fail_on: set[PointType] = set()

    def credit(self, student_profile_id, point_type, amount, reason) -> LedgerResult:
        if point_type in self.fail_on:
            raise ConnectionError(f"ledger unavailable for {point_type.value}")
        self.credits.append((student_profile_id, point_type, amount, reason))
        return LedgerResult(
            ok=True, point_type=point_type, amount=amount, reference=f"ref-{len(self.credits)}"
        )

    def total(self, student_profile_id: str, point_type: PointType) -> int:
        return sum(
            amount for student, kind, amount, _ in self.credits
            if student == student_profile_id and kind == point_type
        )


@pytest.fixture
def settings(tmp_path) -> EngineSettings:
    return EngineSettings(
        database_url=f"sqlite:///{tmp_path / 'expeditions.db'}",
        upload_dir=str(tmp_path / "uploads"),
    )


@pytest.fixture
def database(settings) -> Database:
    db = Database(settings.database_url)
    db.init_db()
    yield db
    db.engine.dispose()


@pytest.fixture
def roster() -> InMemoryRoster:
    return InMemoryRoster(
        students={"s1": CLASSROOM, "s2": CLASSROOM, "s3": CLASSROOM, "outsider": OTHER_CLASSROOM},
        teachers={"t1": {CLASSROOM}, "t2": {OTHER_CLASSROOM}},
    )


@pytest.fixture
def ledger() -> RecordingLedger:
    return RecordingLedger()


@pytest.fixture
def breaker() -> CircuitBreaker:
    return CircuitBreaker(failure_threshold=100, recovery_timeout=60)


@pytest.fixture
def engine(database, roster, ledger, settings, breaker) -> ExpeditionEngine:
    return ExpeditionEngine(database, roster, ledger=ledger, settings=settings, breaker=breaker)


@pytest.fixture
def teacher() -> Actor:
    return Actor.teacher("t1")


@pytest.fixture
def linear_expedition(engine):
    """
    INTRO -> OBJECTIVE(requires submission, manual review, 50 XP / 10 GP) -> FINAL
    """
    expedition = make_expedition(engine)
    intro = make_pin(engine, expedition.id, PinType.INTRO, "Arrival")
    objective = make_pin(
        engine, expedition.id, PinType.OBJECTIVE, "Decode the glyphs",
        requires_submission=True, auto_progress=False, reward_xp=50, reward_gp=10,
    )
    final = make_pin(engine, expedition.id, PinType.FINAL, "The Inner Sanctum")
    connect(engine, expedition.id, intro, objective)
    connect(engine, expedition.id, objective, final)
    engine.publish(expedition.id)
    return {"expedition": expedition, "intro": intro, "objective": objective, "final": final}


@pytest.fixture
def branching_expedition(engine):
    """
    INTRO -> GATE(requires submission)
    GATE --pass--> BRIDGE(OBJECTIVE) -> FINAL
    GATE --fail--> DETOUR(OBJECTIVE) -> FINAL
    """
    expedition = make_expedition(engine, name="Forked River")
    intro = make_pin(engine, expedition.id, PinType.INTRO, "Riverbank")
    gate = make_pin(
        engine, expedition.id, PinType.OBJECTIVE, "Cross the river",
        requires_submission=True, reward_xp=20,
    )
    bridge = make_pin(engine, expedition.id, PinType.OBJECTIVE, "Bridge", reward_xp=5)
    detour = make_pin(engine, expedition.id, PinType.OBJECTIVE, "Detour", reward_xp=5)
    final = make_pin(engine, expedition.id, PinType.FINAL, "Far shore")
    connect(engine, expedition.id, intro, gate)
    connect(engine, expedition.id, gate, bridge, on_success=True)
    connect(engine, expedition.id, gate, detour, on_success=False)
    connect(engine, expedition.id, bridge, final)
    connect(engine, expedition.id, detour, final)
    engine.publish(expedition.id)
    return {
        "expedition": expedition, "intro": intro, "gate": gate,
        "bridge": bridge, "detour": detour, "final": final,
    }
