"""
Unlock Resolver

Pure functions over an immutable snapshot of a published graph. Nothing in
here touches the database: callers pass the current statuses of one student
and apply the returned plan to the Progress Store.

Semantics:
- An edge is satisfied when ``on_success`` is None (unconditional) or equals
  the boolean outcome (PASS/COMPLETE -> True, FAIL -> False).
- Unlocking is OR across incoming edges: one satisfied edge is enough.
- Only LOCKED targets transition; anything else is left alone (idempotent).
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Mapping

from src.schemas.base import Outcome, PinStatus, PinType


@dataclass(frozen=True)
class Edge:
    to_pin_id: str
    on_success: bool | None


@dataclass(frozen=True)
class PinSnapshot:
    """The subset of a pin the engine needs to evaluate attempts."""
    id: str
    pin_type: PinType
    name: str
    order_index: int = 0
    requires_submission: bool = False
    auto_progress: bool | None = None
    due_date: datetime | None = None
    reward_xp: int = 0
    reward_gp: int = 0
    early_submission_enabled: bool = False
    early_submission_date: datetime | None = None
    early_bonus_xp: int = 0
    early_bonus_gp: int = 0

    @classmethod
    def from_row(cls, pin) -> "PinSnapshot":
        return cls(
            id=pin.id,
            pin_type=pin.pin_type,
            name=pin.name,
            order_index=pin.order_index,
            requires_submission=pin.requires_submission,
            auto_progress=pin.auto_progress,
            due_date=pin.due_date,
            reward_xp=pin.reward_xp,
            reward_gp=pin.reward_gp,
            early_submission_enabled=pin.early_submission_enabled,
            early_submission_date=pin.early_submission_date,
            early_bonus_xp=pin.early_bonus_xp,
            early_bonus_gp=pin.early_bonus_gp,
        )


@dataclass(frozen=True)
class ExpeditionGraph:
    """Read-only topology of one expedition, safe to share across requests."""
    expedition_id: str
    name: str
    default_auto_progress: bool
    pins: Mapping[str, PinSnapshot]
    adjacency: Mapping[str, tuple[Edge, ...]]
    incoming: Mapping[str, int] = field(default_factory=dict)

    @classmethod
    def build(cls, expedition, pins: Iterable, connections: Iterable) -> "ExpeditionGraph":
        snapshots = {p.id: PinSnapshot.from_row(p) for p in pins}
        adjacency = build_adjacency(connections)
        return cls(
            expedition_id=expedition.id,
            name=expedition.name,
            default_auto_progress=bool(expedition.auto_progress),
            pins=snapshots,
            adjacency=adjacency,
            incoming=incoming_counts(snapshots.keys(), adjacency),
        )

    def ordered_pins(self) -> list[PinSnapshot]:
        return sorted(self.pins.values(), key=lambda p: p.order_index)


# =============================================================================
# TOPOLOGY
# =============================================================================

def build_adjacency(connections: Iterable) -> dict[str, tuple[Edge, ...]]:
    """Adjacency list keyed by source pin id, in authoring order."""
    adjacency: dict[str, list[Edge]] = {}
    for conn in connections:
        adjacency.setdefault(conn.from_pin_id, []).append(
            Edge(to_pin_id=conn.to_pin_id, on_success=conn.on_success)
        )
    return {pin_id: tuple(edges) for pin_id, edges in adjacency.items()}


def incoming_counts(
    pin_ids: Iterable[str], adjacency: Mapping[str, Iterable[Edge]]
) -> dict[str, int]:
    counts = {pin_id: 0 for pin_id in pin_ids}
    for edges in adjacency.values():
        for edge in edges:
            if edge.to_pin_id in counts:
                counts[edge.to_pin_id] += 1
    return counts


def entry_pin_ids(graph: ExpeditionGraph) -> set[str]:
    """Pins with no incoming connection; every student starts with them unlocked."""
    return {pin_id for pin_id, count in graph.incoming.items() if count == 0}


def initial_statuses(graph: ExpeditionGraph) -> dict[str, PinStatus]:
    entries = entry_pin_ids(graph)
    return {
        pin_id: PinStatus.UNLOCKED if pin_id in entries else PinStatus.LOCKED
        for pin_id in graph.pins
    }


def initial_current_pin(graph: ExpeditionGraph) -> str | None:
    """Highlight the first INTRO entry pin, else the first entry pin by order."""
    entries = entry_pin_ids(graph)
    candidates = [p for p in graph.ordered_pins() if p.id in entries]
    for pin in candidates:
        if pin.pin_type == PinType.INTRO:
            return pin.id
    return candidates[0].id if candidates else None


# =============================================================================
# UNLOCK PROPAGATION
# =============================================================================

def edge_satisfied(on_success: bool | None, outcome: Outcome) -> bool:
    if on_success is None:
        return True
    return on_success == outcome.as_bool


def satisfied_targets(graph: ExpeditionGraph, pin_id: str, outcome: Outcome) -> list[str]:
    """Targets of every satisfied outgoing edge, deduplicated, authoring order."""
    targets: list[str] = []
    for edge in graph.adjacency.get(pin_id, ()):
        if edge_satisfied(edge.on_success, outcome) and edge.to_pin_id not in targets:
            targets.append(edge.to_pin_id)
    return targets


@dataclass(frozen=True)
class UnlockPlan:
    """What the Progress Store must apply after one resolution."""
    unlock: tuple[str, ...]
    next_current_pin_id: str | None


def resolve_unlocks(
    graph: ExpeditionGraph,
    pin_id: str,
    outcome: Outcome,
    statuses: Mapping[str, PinStatus],
) -> UnlockPlan:
    """
    Compute which pins become UNLOCKED after ``pin_id`` resolved to ``outcome``.

    ``next_current_pin_id`` is the first satisfied target (newly unlocked
    preferred) so the map can move its highlight along the taken branch.
    """
    targets = satisfied_targets(graph, pin_id, outcome)
    unlock = tuple(t for t in targets if statuses.get(t) == PinStatus.LOCKED)

    if unlock:
        next_current = unlock[0]
    else:
        open_targets = [t for t in targets if statuses.get(t, PinStatus.LOCKED).is_open]
        next_current = open_targets[0] if open_targets else None
    return UnlockPlan(unlock=unlock, next_current_pin_id=next_current)


# =============================================================================
# SCORING
# =============================================================================

def final_score(graph: ExpeditionGraph, statuses: Mapping[str, PinStatus]) -> float:
    """
    Percentage of OBJECTIVE pins PASSED over OBJECTIVE pins on the student's path.

    A pin is on the path once it left LOCKED. Paths without objectives score 100.
    """
    on_path = [
        p.id for p in graph.pins.values()
        if p.pin_type == PinType.OBJECTIVE
        and statuses.get(p.id, PinStatus.LOCKED) != PinStatus.LOCKED
    ]
    if not on_path:
        return 100.0
    passed = sum(1 for pin_id in on_path if statuses[pin_id] == PinStatus.PASSED)
    return round(100.0 * passed / len(on_path), 2)
