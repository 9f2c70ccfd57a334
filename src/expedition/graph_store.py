"""
Graph Store

Authoring operations on expeditions, pins and connections. Every structural
edit requires the expedition to be DRAFT; after publish the topology is
frozen for the lifetime of the expedition, so in-flight student progress
always matches the graph it was computed against.

Published topologies are cached as immutable ExpeditionGraph snapshots and
shared by all students without locking.
"""

import logging
import threading

from cachetools import LRUCache
from sqlalchemy import select

from src.expedition.errors import (
    EmptyGraphError,
    GraphFrozenError,
    GraphValidationError,
    InvalidTransitionError,
    NotFoundError,
)
from src.expedition.models import Connection, Expedition, Pin, to_naive_utc, utcnow
from src.expedition.resolver import ExpeditionGraph, entry_pin_ids
from src.schemas.base import ExpeditionStatus, PinType
from src.schemas.expedition import (
    ConnectionCreate,
    ConnectionUpdate,
    ExpeditionCreate,
    ExpeditionUpdate,
    PinCreate,
    PinUpdate,
)

logger = logging.getLogger(__name__)

_DATETIME_FIELDS = ("due_date", "early_submission_date")


def require_draft(expedition: Expedition) -> None:
    if expedition.status != ExpeditionStatus.DRAFT:
        raise GraphFrozenError(expedition.id, expedition.status.value)


def _reject_duplicate(expedition: Expedition, from_pin_id: str, to_pin_id: str, ignore=None) -> None:
    """At most one connection per (from, to) pair; its predicate says when it is taken."""
    for existing in expedition.connections:
        if existing is ignore:
            continue
        if existing.from_pin_id == from_pin_id and existing.to_pin_id == to_pin_id:
            raise GraphValidationError(
                f"A connection from '{from_pin_id}' to '{to_pin_id}' already exists"
            )


class GraphStore:

    def __init__(self, cache_size: int = 256):
        self._graphs: LRUCache = LRUCache(maxsize=cache_size)
        self._lock = threading.Lock()

    # =========================================================================
    # EXPEDITIONS
    # =========================================================================

    def create_expedition(self, session, payload: ExpeditionCreate) -> Expedition:
        expedition = Expedition(
            classroom_id=payload.classroom_id,
            name=payload.name,
            description=payload.description,
            map_image_url=payload.map_image_url,
            status=ExpeditionStatus.DRAFT,
            auto_progress=False,
        )
        session.add(expedition)
        session.flush()
        logger.info("Created expedition %s in classroom %s", expedition.id, expedition.classroom_id)
        return expedition

    def get_expedition(self, session, expedition_id: str) -> Expedition:
        expedition = session.get(Expedition, expedition_id)
        if expedition is None:
            raise NotFoundError("Expedition", expedition_id)
        return expedition

    def list_expeditions(
        self, session, classroom_id: str, status: ExpeditionStatus | None = None
    ) -> list[Expedition]:
        query = select(Expedition).where(Expedition.classroom_id == classroom_id)
        if status is not None:
            query = query.where(Expedition.status == status)
        return list(session.scalars(query.order_by(Expedition.created_at.desc())).all())

    def update_expedition(self, session, expedition_id: str, payload: ExpeditionUpdate) -> Expedition:
        expedition = self.get_expedition(session, expedition_id)
        changes = {
            field: value
            for field, value in payload.model_dump(exclude_unset=True).items()
            if value is not None or field == "description"
        }

        # auto_progress is the evaluation default for every pin: part of the frozen graph
        if "auto_progress" in changes and changes["auto_progress"] != expedition.auto_progress:
            require_draft(expedition)

        for field, value in changes.items():
            setattr(expedition, field, value)
        session.flush()
        return expedition

    def publish(self, session, expedition_id: str) -> Expedition:
        expedition = self.get_expedition(session, expedition_id)
        if expedition.status != ExpeditionStatus.DRAFT:
            raise InvalidTransitionError(
                f"Expedition '{expedition_id}' is {expedition.status.value}; only drafts can be published"
            )
        if not expedition.pins:
            raise EmptyGraphError(expedition_id)

        graph = ExpeditionGraph.build(expedition, expedition.pins, expedition.connections)
        if not entry_pin_ids(graph):
            logger.warning("Expedition %s has no entry pin; students will start fully locked", expedition_id)
        if not any(p.pin_type == PinType.FINAL for p in graph.pins.values()):
            logger.warning("Expedition %s has no FINAL pin; it can never be completed", expedition_id)

        now = utcnow()
        expedition.status = ExpeditionStatus.PUBLISHED
        expedition.published_at = now
        session.flush()
        logger.info(
            "Published expedition %s (%d pins, %d connections)",
            expedition_id, len(expedition.pins), len(expedition.connections),
        )
        return expedition

    def archive(self, session, expedition_id: str) -> Expedition:
        expedition = self.get_expedition(session, expedition_id)
        if expedition.status != ExpeditionStatus.PUBLISHED:
            raise InvalidTransitionError(
                f"Expedition '{expedition_id}' is {expedition.status.value}; only published expeditions can be archived"
            )
        expedition.status = ExpeditionStatus.ARCHIVED
        session.flush()
        logger.info("Archived expedition %s", expedition_id)
        return expedition

    def delete_expedition(self, session, expedition_id: str) -> None:
        expedition = self.get_expedition(session, expedition_id)
        require_draft(expedition)
        # Connections reference pins; orphan them first
        expedition.connections.clear()
        session.flush()
        session.delete(expedition)
        session.flush()
        self.invalidate(expedition_id)
        logger.info("Deleted draft expedition %s", expedition_id)

    # =========================================================================
    # PINS
    # =========================================================================

    def create_pin(self, session, expedition_id: str, payload: PinCreate) -> Pin:
        expedition = self.get_expedition(session, expedition_id)
        require_draft(expedition)

        values = payload.model_dump()
        for field in _DATETIME_FIELDS:
            values[field] = to_naive_utc(values[field])

        pin = Pin(expedition_id=expedition.id, order_index=len(expedition.pins), **values)
        expedition.pins.append(pin)
        session.flush()
        logger.info("Created %s pin %s on expedition %s", pin.pin_type.value, pin.id, expedition_id)
        return pin

    def get_pin(self, session, pin_id: str) -> Pin:
        pin = session.get(Pin, pin_id)
        if pin is None:
            raise NotFoundError("Pin", pin_id)
        return pin

    def update_pin(self, session, pin_id: str, payload: PinUpdate) -> Pin:
        pin = self.get_pin(session, pin_id)
        require_draft(pin.expedition)

        changes = payload.model_dump(exclude_unset=True)
        for field in _DATETIME_FIELDS:
            if field in changes:
                changes[field] = to_naive_utc(changes[field])
        for field, value in changes.items():
            setattr(pin, field, value)
        if pin.early_submission_enabled and pin.early_submission_date is None:
            raise GraphValidationError("early_submission_date is required when early submission is enabled")
        session.flush()
        return pin

    def delete_pin(self, session, pin_id: str) -> None:
        pin = self.get_pin(session, pin_id)
        expedition = pin.expedition
        require_draft(expedition)

        for connection in list(expedition.connections):
            if pin_id in (connection.from_pin_id, connection.to_pin_id):
                expedition.connections.remove(connection)
        session.flush()
        expedition.pins.remove(pin)
        session.flush()

        # Keep order_index dense
        for index, remaining in enumerate(expedition.pins):
            remaining.order_index = index
        session.flush()
        logger.info("Deleted pin %s from expedition %s", pin_id, expedition.id)

    # =========================================================================
    # CONNECTIONS
    # =========================================================================

    def create_connection(self, session, expedition_id: str, payload: ConnectionCreate) -> Connection:
        expedition = self.get_expedition(session, expedition_id)
        require_draft(expedition)

        if payload.from_pin_id == payload.to_pin_id:
            raise GraphValidationError("A connection cannot start and end on the same pin")
        for pin_id in (payload.from_pin_id, payload.to_pin_id):
            pin = session.get(Pin, pin_id)
            if pin is None:
                raise NotFoundError("Pin", pin_id)
            if pin.expedition_id != expedition.id:
                raise GraphValidationError(
                    f"Pin '{pin_id}' belongs to another expedition"
                )
        _reject_duplicate(expedition, payload.from_pin_id, payload.to_pin_id)

        connection = Connection(
            expedition_id=expedition.id,
            from_pin_id=payload.from_pin_id,
            to_pin_id=payload.to_pin_id,
            on_success=payload.on_success,
        )
        expedition.connections.append(connection)
        session.flush()
        return connection

    def get_connection(self, session, connection_id: str) -> Connection:
        connection = session.get(Connection, connection_id)
        if connection is None:
            raise NotFoundError("Connection", connection_id)
        return connection

    def update_connection(self, session, connection_id: str, payload: ConnectionUpdate) -> Connection:
        connection = self.get_connection(session, connection_id)
        require_draft(connection.expedition)
        _reject_duplicate(
            connection.expedition, connection.from_pin_id, connection.to_pin_id, ignore=connection
        )
        connection.on_success = payload.on_success
        session.flush()
        return connection

    def delete_connection(self, session, connection_id: str) -> None:
        connection = self.get_connection(session, connection_id)
        expedition = connection.expedition
        require_draft(expedition)
        expedition.connections.remove(connection)
        session.flush()

    # =========================================================================
    # SNAPSHOTS
    # =========================================================================

    def load_graph(self, session, expedition: Expedition) -> ExpeditionGraph:
        """Immutable topology; cached once the expedition is frozen."""
        if expedition.status == ExpeditionStatus.DRAFT:
            return ExpeditionGraph.build(expedition, expedition.pins, expedition.connections)

        with self._lock:
            graph = self._graphs.get(expedition.id)
        if graph is None:
            graph = ExpeditionGraph.build(expedition, expedition.pins, expedition.connections)
            with self._lock:
                self._graphs[expedition.id] = graph
        return graph

    def invalidate(self, expedition_id: str) -> None:
        with self._lock:
            self._graphs.pop(expedition_id, None)
