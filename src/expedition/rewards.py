"""
Reward Issuer

Rewards are owed exactly once per (student, pin) first success. The debt is
recorded inside the state-transition transaction (``grant``); delivery to the
external ledger happens afterwards (``deliver``) so a ledger outage can never
roll back or duplicate a pin transition.

Delivery runs in three short steps and never holds a transaction open across
the ledger call:
1. claim the grant (optimistic version bump + lease),
2. credit XP and GP separately through the circuit breaker,
3. record which currencies landed.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Protocol

from sqlalchemy import func, select
from sqlalchemy.orm.exc import StaleDataError

from src.expedition.circuit_breaker import CircuitBreaker, CircuitOpenError
from src.expedition.database import Database
from src.expedition.models import PinProgress, PointLog, RewardGrant, utcnow
from src.schemas.base import PointType
from src.schemas.expedition import LedgerResult, RewardPayload

logger = logging.getLogger(__name__)

CLAIM_LEASE = timedelta(seconds=30)


# =============================================================================
# LEDGER COLLABORATOR
# =============================================================================

class RewardsLedger(Protocol):
    """External point ledger (XP/GP balances, level-ups, clan share)."""

    def credit(
        self, student_profile_id: str, point_type: PointType, amount: int, reason: str
    ) -> LedgerResult:
        ...


class PointLogLedger:
    """
    Local ledger that appends to ``point_logs``. Used when no external
    ledger is wired in.
    """

    def __init__(self, database: Database):
        self.database = database

    def credit(
        self, student_profile_id: str, point_type: PointType, amount: int, reason: str
    ) -> LedgerResult:
        with self.database.session_scope() as session:
            log = PointLog(
                student_profile_id=student_profile_id,
                point_type=point_type,
                amount=amount,
                reason=reason,
            )
            session.add(log)
            session.flush()
            reference = log.id
        return LedgerResult(ok=True, point_type=point_type, amount=amount, reference=reference)

    def balance(self, student_profile_id: str, point_type: PointType) -> int:
        with self.database.read_scope() as session:
            total = session.scalar(
                select(func.coalesce(func.sum(PointLog.amount), 0)).where(
                    PointLog.student_profile_id == student_profile_id,
                    PointLog.point_type == point_type,
                )
            )
        return int(total or 0)


class LedgerRejectedError(RuntimeError):
    def __init__(self, point_type: PointType, amount: int):
        super().__init__(f"Ledger rejected credit of {amount} {point_type.value}")


# =============================================================================
# ISSUER
# =============================================================================

@dataclass
class _Claim:
    grant_id: str
    student_profile_id: str
    reason: str
    pending: list[tuple[PointType, int]]


class RewardIssuer:

    def __init__(
        self,
        database: Database,
        ledger: RewardsLedger,
        breaker: CircuitBreaker | None = None,
        max_attempts: int = 5,
    ):
        self.database = database
        self.ledger = ledger
        self.breaker = breaker or CircuitBreaker()
        self.max_attempts = max_attempts

    # -------------------------------------------------------------------------
    # Inside the transition transaction
    # -------------------------------------------------------------------------

    def grant(self, session, progress: PinProgress, payload: RewardPayload) -> RewardGrant | None:
        """
        Flip the per-progress guard and persist what is owed.

        Returns None when rewards were already issued for this progress, or
        when the pin is worth nothing.
        """
        if progress.rewards_issued:
            logger.info(
                "Rewards already issued for pin %s / student %s; skipping",
                progress.pin_id, progress.student_profile_id,
            )
            return None
        progress.rewards_issued = True
        if payload.is_empty:
            return None

        grant = RewardGrant(
            pin_progress_id=progress.id,
            student_profile_id=progress.student_profile_id,
            pin_id=progress.pin_id,
            xp=payload.xp,
            gp=payload.gp,
            bonus_xp=payload.bonus_xp,
            bonus_gp=payload.bonus_gp,
            reason=payload.reason,
            xp_delivered=payload.total_xp == 0,
            gp_delivered=payload.total_gp == 0,
        )
        session.add(grant)
        session.flush()
        return grant

    # -------------------------------------------------------------------------
    # After commit
    # -------------------------------------------------------------------------

    def issue_reward(
        self, student_profile_id: str, xp: int, gp: int, reason: str = ""
    ) -> list[LedgerResult]:
        """Credit XP and GP straight to the ledger. Raises on ledger failure."""
        results = []
        for point_type, amount in ((PointType.XP, xp), (PointType.GP, gp)):
            if amount > 0:
                results.append(self._credit(student_profile_id, point_type, amount, reason))
        return results

    def _credit(
        self, student_profile_id: str, point_type: PointType, amount: int, reason: str
    ) -> LedgerResult:
        result = self.breaker.protect(
            self.ledger.credit, student_profile_id, point_type, amount, reason
        )
        if not result.ok:
            raise LedgerRejectedError(point_type, amount)
        return result

    def deliver(self, grant_id: str) -> bool:
        """
        Push one grant to the ledger. Returns True once fully delivered.

        Failures are logged and left pending for ``retry_pending``.
        """
        claim = self._claim(grant_id)
        if claim is None:
            return self._is_delivered(grant_id)

        delivered: list[PointType] = []
        error: str | None = None
        deferred = False
        for point_type, amount in claim.pending:
            try:
                self._credit(claim.student_profile_id, point_type, amount, claim.reason)
            except CircuitOpenError as e:
                logger.warning("Reward grant %s deferred: %s", grant_id, e)
                error = str(e)
                deferred = True
                break
            except Exception as e:  # noqa: BLE001 - ledger outage must not surface
                logger.error("Reward grant %s failed for %s: %s", grant_id, point_type.value, e)
                error = str(e)
                break
            delivered.append(point_type)

        return self._record(grant_id, delivered, error, deferred=deferred)

    def retry_pending(self, limit: int = 100) -> int:
        """Re-deliver undelivered grants below the attempt cap. Returns count delivered."""
        with self.database.read_scope() as session:
            grant_ids = session.scalars(
                select(RewardGrant.id)
                .where(
                    RewardGrant.delivered_at.is_(None),
                    RewardGrant.attempts < self.max_attempts,
                )
                .order_by(RewardGrant.created_at)
                .limit(limit)
            ).all()

        delivered = 0
        for grant_id in grant_ids:
            if self.deliver(grant_id):
                delivered += 1
        if grant_ids:
            logger.info("Reward retry: %d/%d grants delivered", delivered, len(grant_ids))
        return delivered

    # -------------------------------------------------------------------------
    # Claim bookkeeping
    # -------------------------------------------------------------------------

    def _claim(self, grant_id: str) -> _Claim | None:
        now = utcnow()
        try:
            with self.database.session_scope() as session:
                grant = session.get(RewardGrant, grant_id)
                if grant is None or grant.is_delivered:
                    return None
                if grant.claimed_at is not None and now - grant.claimed_at < CLAIM_LEASE:
                    logger.info("Reward grant %s already being delivered", grant_id)
                    return None
                if grant.attempts >= self.max_attempts:
                    logger.error(
                        "Reward grant %s exhausted %d attempts: %s",
                        grant_id, grant.attempts, grant.last_error,
                    )
                    return None

                pending = []
                if not grant.xp_delivered:
                    pending.append((PointType.XP, grant.total_xp))
                if not grant.gp_delivered:
                    pending.append((PointType.GP, grant.total_gp))

                grant.claimed_at = now
                grant.attempts += 1
                return _Claim(
                    grant_id=grant.id,
                    student_profile_id=grant.student_profile_id,
                    reason=grant.reason,
                    pending=pending,
                )
        except StaleDataError:
            logger.info("Reward grant %s claimed concurrently", grant_id)
            return None

    def _record(
        self, grant_id: str, delivered: list[PointType], error: str | None, deferred: bool = False
    ) -> bool:
        """
        Store the outcome of one delivery. A deferral by the open breaker never
        reached the ledger, so it gives its attempt back.
        """
        with self.database.session_scope() as session:
            grant = session.get(RewardGrant, grant_id)
            if deferred:
                grant.attempts -= 1
            if PointType.XP in delivered:
                grant.xp_delivered = True
            if PointType.GP in delivered:
                grant.gp_delivered = True
            grant.claimed_at = None
            grant.last_error = error
            if grant.xp_delivered and grant.gp_delivered:
                grant.delivered_at = utcnow()
                logger.info(
                    "Reward grant %s delivered: +%d XP +%d GP to %s",
                    grant.id, grant.total_xp, grant.total_gp, grant.student_profile_id,
                )
            elif grant.attempts >= self.max_attempts:
                logger.error(
                    "Reward grant %s exhausted %d attempts and will not be retried: %s",
                    grant.id, grant.attempts, grant.last_error,
                )
            return grant.is_delivered

    def _is_delivered(self, grant_id: str) -> bool:
        with self.database.read_scope() as session:
            grant = session.get(RewardGrant, grant_id)
            return grant is not None and grant.is_delivered
