"""
Service tests for expedition authoring: lifecycle, graph edits and the
publish freeze.
"""

import warnings
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SAWarning

from src.expedition.errors import (
    EmptyGraphError,
    GraphFrozenError,
    GraphValidationError,
    InvalidTransitionError,
    NotFoundError,
    UnauthorizedError,
)
from src.expedition.models import Connection, Pin
from src.schemas import (
    Actor,
    ConnectionCreate,
    ExpeditionCreate,
    ExpeditionStatus,
    ExpeditionUpdate,
    PinType,
    PinUpdate,
)
from tests.helpers import CLASSROOM, connect, make_expedition, make_pin


class TestExpeditionLifecycle:
    """DRAFT -> PUBLISHED -> ARCHIVED."""

    def test_create_defaults(self, engine, teacher) -> None:
        expedition = engine.create_expedition(
            ExpeditionCreate(classroom_id=CLASSROOM, name="Lost Temple", map_image_url="map.png"),
            actor=teacher,
        )

        assert expedition.status == ExpeditionStatus.DRAFT
        assert expedition.auto_progress is False
        assert expedition.published_at is None
        assert expedition.pins == []

    def test_teacher_outside_classroom_cannot_create(self, engine) -> None:
        with pytest.raises(UnauthorizedError):
            engine.create_expedition(
                ExpeditionCreate(classroom_id=CLASSROOM, name="x", map_image_url="m"),
                actor=Actor.teacher("t2"),
            )

    def test_publish_stamps_published_at(self, engine) -> None:
        expedition = make_expedition(engine)
        make_pin(engine, expedition.id, PinType.INTRO, "Start")

        published = engine.publish(expedition.id)

        assert published.status == ExpeditionStatus.PUBLISHED
        assert published.published_at is not None

    def test_publish_empty_graph(self, engine) -> None:
        expedition = make_expedition(engine)

        with pytest.raises(EmptyGraphError):
            engine.publish(expedition.id)
        assert engine.get_expedition(expedition.id).status == ExpeditionStatus.DRAFT

    def test_publish_twice_rejected(self, engine, linear_expedition) -> None:
        with pytest.raises(InvalidTransitionError):
            engine.publish(linear_expedition["expedition"].id)

    def test_archive_requires_published(self, engine, linear_expedition) -> None:
        draft = make_expedition(engine, name="Draft")
        with pytest.raises(InvalidTransitionError):
            engine.archive(draft.id)

        archived = engine.archive(linear_expedition["expedition"].id)
        assert archived.status == ExpeditionStatus.ARCHIVED

    def test_delete_draft_cascades(self, engine) -> None:
        expedition = make_expedition(engine)
        a = make_pin(engine, expedition.id, PinType.INTRO, "A")
        b = make_pin(engine, expedition.id, PinType.FINAL, "B")
        connect(engine, expedition.id, a, b)

        engine.delete_expedition(expedition.id)

        with pytest.raises(NotFoundError):
            engine.get_expedition(expedition.id)
        with pytest.raises(NotFoundError):
            engine.get_pin(a.id)

    def test_delete_draft_removes_connections_cleanly(self, engine, database) -> None:
        expedition = make_expedition(engine)
        a = make_pin(engine, expedition.id, PinType.INTRO, "A")
        b = make_pin(engine, expedition.id, PinType.OBJECTIVE, "B")
        c = make_pin(engine, expedition.id, PinType.FINAL, "C")
        connect(engine, expedition.id, a, b)
        connect(engine, expedition.id, b, c)

        with warnings.catch_warnings():
            warnings.simplefilter("error", SAWarning)
            engine.delete_expedition(expedition.id)

        with database.read_scope() as session:
            assert session.scalar(select(func.count()).select_from(Connection)) == 0
            assert session.scalar(select(func.count()).select_from(Pin)) == 0

    def test_delete_published_rejected(self, engine, linear_expedition) -> None:
        with pytest.raises(GraphFrozenError):
            engine.delete_expedition(linear_expedition["expedition"].id)

    def test_list_filters_by_status(self, engine, linear_expedition) -> None:
        draft = make_expedition(engine, name="Draft")

        all_ids = {e.id for e in engine.list_expeditions(CLASSROOM)}
        published = engine.list_expeditions(CLASSROOM, status=ExpeditionStatus.PUBLISHED)

        assert all_ids == {draft.id, linear_expedition["expedition"].id}
        assert [e.id for e in published] == [linear_expedition["expedition"].id]

    def test_cosmetic_update_after_publish(self, engine, linear_expedition) -> None:
        expedition_id = linear_expedition["expedition"].id

        updated = engine.update_expedition(
            expedition_id, ExpeditionUpdate(name="Renamed", description="New blurb")
        )

        assert updated.name == "Renamed"
        assert updated.description == "New blurb"

    def test_auto_progress_frozen_after_publish(self, engine, linear_expedition) -> None:
        expedition_id = linear_expedition["expedition"].id

        with pytest.raises(GraphFrozenError):
            engine.update_expedition(expedition_id, ExpeditionUpdate(auto_progress=True))

        # Re-sending the current value is not a change
        engine.update_expedition(expedition_id, ExpeditionUpdate(auto_progress=False))


class TestPinAuthoring:
    """Pins are ordered and editable only while DRAFT."""

    def test_order_index_follows_creation(self, engine) -> None:
        expedition = make_expedition(engine)
        pins = [make_pin(engine, expedition.id, PinType.OBJECTIVE, f"P{i}") for i in range(3)]

        assert [p.order_index for p in pins] == [0, 1, 2]
        assert [p.id for p in engine.get_expedition(expedition.id).pins] == [p.id for p in pins]

    def test_update_pin(self, engine) -> None:
        expedition = make_expedition(engine)
        pin = make_pin(engine, expedition.id, PinType.OBJECTIVE, "Old")

        updated = engine.update_pin(pin.id, PinUpdate(name="New", reward_xp=30, requires_submission=True))

        assert (updated.name, updated.reward_xp, updated.requires_submission) == ("New", 30, True)

    def test_update_pin_needs_early_date(self, engine) -> None:
        expedition = make_expedition(engine)
        pin = make_pin(engine, expedition.id, PinType.OBJECTIVE, "P")

        with pytest.raises(GraphValidationError):
            engine.update_pin(pin.id, PinUpdate(early_submission_enabled=True))

    def test_aware_dates_stored_as_utc(self, engine) -> None:
        expedition = make_expedition(engine)
        plus_two = timezone(timedelta(hours=2))

        pin = make_pin(
            engine, expedition.id, PinType.OBJECTIVE, "P",
            early_submission_enabled=True,
            early_submission_date=datetime(2026, 5, 1, 12, 0, tzinfo=plus_two),
        )

        assert pin.early_submission_date == datetime(2026, 5, 1, 10, 0)

    def test_delete_pin_drops_connections_and_reorders(self, engine) -> None:
        expedition = make_expedition(engine)
        a = make_pin(engine, expedition.id, PinType.INTRO, "A")
        b = make_pin(engine, expedition.id, PinType.OBJECTIVE, "B")
        c = make_pin(engine, expedition.id, PinType.FINAL, "C")
        connect(engine, expedition.id, a, b)
        connect(engine, expedition.id, b, c)

        engine.delete_pin(b.id)

        view = engine.get_expedition(expedition.id)
        assert [(p.id, p.order_index) for p in view.pins] == [(a.id, 0), (c.id, 1)]
        assert view.connections == []

    def test_pin_edits_frozen_after_publish(self, engine, linear_expedition) -> None:
        expedition_id = linear_expedition["expedition"].id
        objective = linear_expedition["objective"]

        with pytest.raises(GraphFrozenError):
            make_pin(engine, expedition_id, PinType.OBJECTIVE, "Late addition")
        with pytest.raises(GraphFrozenError):
            engine.update_pin(objective.id, PinUpdate(reward_xp=1000))
        with pytest.raises(GraphFrozenError):
            engine.delete_pin(objective.id)

        assert engine.get_pin(objective.id).reward_xp == 50


class TestConnectionAuthoring:
    """Connection validation and freeze."""

    @pytest.fixture
    def draft(self, engine):
        expedition = make_expedition(engine)
        a = make_pin(engine, expedition.id, PinType.INTRO, "A")
        b = make_pin(engine, expedition.id, PinType.FINAL, "B")
        return expedition, a, b

    def test_create_and_update(self, engine, draft) -> None:
        expedition, a, b = draft

        connection = connect(engine, expedition.id, a, b, on_success=True)
        updated = engine.update_connection(connection.id, None)

        assert connection.on_success is True
        assert updated.on_success is None

    def test_self_loop_rejected(self, engine, draft) -> None:
        expedition, a, _ = draft

        with pytest.raises(GraphValidationError):
            connect(engine, expedition.id, a, a)

    def test_duplicate_rejected(self, engine, draft) -> None:
        expedition, a, b = draft
        connect(engine, expedition.id, a, b)

        with pytest.raises(GraphValidationError):
            connect(engine, expedition.id, a, b)

    def test_same_pair_with_other_predicate_rejected(self, engine, draft) -> None:
        expedition, a, b = draft
        connect(engine, expedition.id, a, b, on_success=True)

        with pytest.raises(GraphValidationError, match="already exists"):
            connect(engine, expedition.id, a, b)

        assert len(engine.get_expedition(expedition.id).connections) == 1

    def test_update_predicate_of_only_edge(self, engine, draft) -> None:
        expedition, a, b = draft
        connection = connect(engine, expedition.id, a, b, on_success=True)

        updated = engine.update_connection(connection.id, False)

        assert updated.on_success is False

    def test_foreign_endpoint_rejected(self, engine, draft) -> None:
        expedition, a, _ = draft
        other = make_expedition(engine, name="Other")
        stranger = make_pin(engine, other.id, PinType.FINAL, "Elsewhere")

        with pytest.raises(GraphValidationError, match="another expedition"):
            connect(engine, expedition.id, a, stranger)

    def test_unknown_endpoint(self, engine, draft) -> None:
        expedition, a, _ = draft

        with pytest.raises(NotFoundError):
            engine.create_connection(
                expedition.id, ConnectionCreate(from_pin_id=a.id, to_pin_id="missing")
            )

    def test_delete_connection(self, engine, draft) -> None:
        expedition, a, b = draft
        connection = connect(engine, expedition.id, a, b)

        engine.delete_connection(connection.id)

        assert engine.get_expedition(expedition.id).connections == []

    def test_connection_edits_frozen_after_publish(self, engine, linear_expedition) -> None:
        expedition_id = linear_expedition["expedition"].id
        intro, final = linear_expedition["intro"], linear_expedition["final"]
        existing = engine.get_expedition(expedition_id).connections[0]

        with pytest.raises(GraphFrozenError):
            connect(engine, expedition_id, intro, final)
        with pytest.raises(GraphFrozenError):
            engine.update_connection(existing.id, False)
        with pytest.raises(GraphFrozenError):
            engine.delete_connection(existing.id)

    def test_student_cannot_edit_graph(self, engine, draft) -> None:
        expedition, a, b = draft

        with pytest.raises(UnauthorizedError):
            engine.create_connection(
                expedition.id,
                ConnectionCreate(from_pin_id=a.id, to_pin_id=b.id),
                actor=Actor.student("s1"),
            )
