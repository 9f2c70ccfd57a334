"""
Session Guards

Flush-level enforcement of the store invariants, underneath the explicit
checks done by the stores themselves:

- ExpeditionSession: refuses to flush any pin/connection change (or an
  ``auto_progress`` change) on an expedition that is no longer DRAFT.
- ReadOnlySession: refuses every flush. Used for teacher review views and
  other pure reads.
"""

import logging

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session

from src.expedition.errors import GraphFrozenError
from src.expedition.models import Connection, Expedition, Pin
from src.schemas.base import ExpeditionStatus

logger = logging.getLogger(__name__)


# =============================================================================
# FROZEN GRAPH ENFORCEMENT
# =============================================================================

class ExpeditionSession(Session):
    """Read/write session for engine operations."""
    pass


def _committed_status(expedition: Expedition) -> ExpeditionStatus:
    """Status as loaded from the database, ignoring a pending change in this flush."""
    history = inspect(expedition).attrs.status.history
    if history.deleted:
        return history.deleted[0]
    return expedition.status


def _owning_expedition(session: Session, obj: Pin | Connection) -> Expedition | None:
    if obj.expedition is not None:
        return obj.expedition
    return session.get(Expedition, obj.expedition_id)


def reject_frozen_graph_edits(session, flush_context, instances):
    """
    Event hook: raise GraphFrozenError when a flush would mutate a frozen graph.
    """
    touched = list(session.new) + list(session.deleted) + [
        obj for obj in session.dirty if session.is_modified(obj)
    ]
    for obj in touched:
        if isinstance(obj, (Pin, Connection)):
            expedition = _owning_expedition(session, obj)
            if expedition is None:
                continue
            status = _committed_status(expedition)
            if status != ExpeditionStatus.DRAFT:
                logger.warning(
                    "Blocked flush of %s on frozen expedition %s",
                    type(obj).__name__, expedition.id,
                )
                raise GraphFrozenError(expedition.id, status.value)
        elif isinstance(obj, Expedition) and obj not in session.new:
            if inspect(obj).attrs.auto_progress.history.has_changes():
                status = _committed_status(obj)
                if status != ExpeditionStatus.DRAFT:
                    raise GraphFrozenError(obj.id, status.value)


event.listen(ExpeditionSession, "before_flush", reject_frozen_graph_edits)


# =============================================================================
# READ-ONLY SESSION ENFORCEMENT
# =============================================================================

class ReadOnlySession(Session):
    """A session that strictly forbids write operations."""
    pass


def raise_on_write(session, flush_context, instances):
    """
    Event hook to raise PermissionError on any flush attempt.
    """
    raise PermissionError(
        "Read-only session: attempted to write expedition state from a view query"
    )


event.listen(ReadOnlySession, "before_flush", raise_on_write)
