"""
Evaluation Gateway

Decides how a pin attempt resolves. Three entry points mirror the three
student/teacher actions:

- ``evaluate_continue``: the student's "continue" on a pin.
- ``evaluate_submission``: a new Submission on a pin.
- ``evaluate_decision``: a teacher's pass/fail review.

Each returns a Verdict (target status, optional outcome) or raises a
user-facing error. The gateway never writes; the engine applies verdicts.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from src.expedition.errors import AlreadyResolvedError, InvalidTransitionError
from src.expedition.resolver import ExpeditionGraph, PinSnapshot
from src.schemas.base import Outcome, PinStatus, PinType
from src.schemas.expedition import RewardPayload

logger = logging.getLogger(__name__)

NARRATIVE_PIN_TYPES = (PinType.INTRO, PinType.FINAL)


@dataclass(frozen=True)
class Verdict:
    """
    ``outcome`` None means the pin did not resolve (opened, or waiting for review).
    """
    status: PinStatus
    outcome: Outcome | None = None
    manual: bool = False

    @property
    def resolves(self) -> bool:
        return self.outcome is not None


def effective_auto_progress(pin: PinSnapshot, graph: ExpeditionGraph) -> bool:
    """Pin override wins; None inherits the expedition default."""
    if pin.auto_progress is not None:
        return pin.auto_progress
    return graph.default_auto_progress


def success_verdict(pin: PinSnapshot, manual: bool = False) -> Verdict:
    """Narrative checkpoints COMPLETE, objectives PASS."""
    if pin.pin_type in NARRATIVE_PIN_TYPES and not manual:
        return Verdict(status=PinStatus.COMPLETED, outcome=Outcome.COMPLETE)
    return Verdict(status=PinStatus.PASSED, outcome=Outcome.PASS, manual=manual)


def _reject_resolved(pin: PinSnapshot, status: PinStatus, student_profile_id: str) -> None:
    if status.is_success:
        raise AlreadyResolvedError(pin.id, student_profile_id, status.value)


def evaluate_continue(
    pin: PinSnapshot, status: PinStatus, student_profile_id: str
) -> Verdict:
    _reject_resolved(pin, status, student_profile_id)

    if not pin.requires_submission:
        return success_verdict(pin)

    if status == PinStatus.FAILED:
        raise InvalidTransitionError(
            f"Pin '{pin.id}' was not passed; send a new submission to retry"
        )
    # Opening a submission pin only marks it as started
    return Verdict(status=PinStatus.IN_PROGRESS)


def evaluate_submission(
    pin: PinSnapshot, status: PinStatus, graph: ExpeditionGraph, student_profile_id: str
) -> Verdict:
    if not pin.requires_submission:
        raise InvalidTransitionError(f"Pin '{pin.id}' does not accept submissions")
    _reject_resolved(pin, status, student_profile_id)

    if effective_auto_progress(pin, graph):
        logger.info("Auto-progress resolves pin %s for %s", pin.id, student_profile_id)
        return success_verdict(pin)
    return Verdict(status=PinStatus.IN_PROGRESS)


def evaluate_decision(
    pin: PinSnapshot, status: PinStatus, passed: bool, student_profile_id: str
) -> Verdict:
    if not pin.requires_submission:
        raise InvalidTransitionError(
            f"Pin '{pin.id}' does not require a submission and takes no teacher decision"
        )
    if status.is_success or status == PinStatus.FAILED:
        raise AlreadyResolvedError(pin.id, student_profile_id, status.value)
    if status != PinStatus.IN_PROGRESS:
        raise InvalidTransitionError(
            f"Pin '{pin.id}' is {status.value} for student '{student_profile_id}', "
            "not awaiting review"
        )

    if passed:
        return success_verdict(pin, manual=True)
    return Verdict(status=PinStatus.FAILED, outcome=Outcome.FAIL, manual=True)


# =============================================================================
# REWARDS
# =============================================================================

def is_early_submission(pin: PinSnapshot, submitted_at: datetime | None) -> bool:
    return bool(
        pin.early_submission_enabled
        and pin.early_submission_date is not None
        and submitted_at is not None
        and submitted_at < pin.early_submission_date
    )


def compute_reward(
    pin: PinSnapshot, graph: ExpeditionGraph, submitted_at: datetime | None
) -> RewardPayload:
    """
    Reward for a successful resolution. The early bonus compares the latest
    submission against the pin's early date at resolution time.
    """
    early = is_early_submission(pin, submitted_at)
    reason = f'Expedition "{graph.name}" - Pin: {pin.name}'
    if early and (pin.early_bonus_xp or pin.early_bonus_gp):
        reason += " (early bonus)"
    return RewardPayload(
        xp=pin.reward_xp,
        gp=pin.reward_gp,
        bonus_xp=pin.early_bonus_xp if early else 0,
        bonus_gp=pin.early_bonus_gp if early else 0,
        reason=reason,
    )
