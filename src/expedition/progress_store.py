"""
Progress Store

Per-student state: one StudentExpeditionProgress, one PinProgress per pin,
and the Submission history. Rows of different students never overlap, so
no cross-student coordination is needed; writes to one (student, pin) row
are serialized with ``SELECT ... FOR UPDATE`` where the database supports it
and with the optimistic ``version`` column everywhere.
"""

import logging

from sqlalchemy import select

from src.expedition.models import (
    PinProgress,
    StudentExpeditionProgress,
    Submission,
    utcnow,
)
from src.expedition.resolver import ExpeditionGraph, initial_current_pin, initial_statuses
from src.schemas.base import PinStatus

logger = logging.getLogger(__name__)


class ProgressStore:

    # =========================================================================
    # INSTANTIATION
    # =========================================================================

    def get_student_progress(
        self, session, expedition_id: str, student_profile_id: str
    ) -> StudentExpeditionProgress | None:
        return session.scalars(
            select(StudentExpeditionProgress).where(
                StudentExpeditionProgress.expedition_id == expedition_id,
                StudentExpeditionProgress.student_profile_id == student_profile_id,
            )
        ).first()

    def instantiate(
        self, session, graph: ExpeditionGraph, student_profile_id: str
    ) -> StudentExpeditionProgress:
        """
        Create the student's progress rows from the graph topology.

        Entry pins (no incoming connection) start UNLOCKED, all others LOCKED.
        Idempotent: existing rows are kept, missing pin rows are filled in.
        """
        progress = self.get_student_progress(session, graph.expedition_id, student_profile_id)
        now = utcnow()
        if progress is None:
            progress = StudentExpeditionProgress(
                expedition_id=graph.expedition_id,
                student_profile_id=student_profile_id,
                current_pin_id=initial_current_pin(graph),
                is_completed=False,
                started_at=now,
            )
            session.add(progress)
            logger.info(
                "Instantiated expedition %s for student %s", graph.expedition_id, student_profile_id
            )

        existing = self.pin_progress_map(session, graph.expedition_id, student_profile_id)
        for pin_id, status in initial_statuses(graph).items():
            if pin_id in existing:
                continue
            session.add(PinProgress(
                expedition_id=graph.expedition_id,
                pin_id=pin_id,
                student_profile_id=student_profile_id,
                status=status,
                unlocked_at=now if status == PinStatus.UNLOCKED else None,
            ))
        session.flush()
        return progress

    # =========================================================================
    # PIN PROGRESS
    # =========================================================================

    def pin_progress_map(
        self, session, expedition_id: str, student_profile_id: str
    ) -> dict[str, PinProgress]:
        rows = session.scalars(
            select(PinProgress).where(
                PinProgress.expedition_id == expedition_id,
                PinProgress.student_profile_id == student_profile_id,
            )
        ).all()
        return {row.pin_id: row for row in rows}

    def lock_pin_progress(
        self, session, pin_id: str, student_profile_id: str
    ) -> PinProgress | None:
        """Row lock on one (student, pin); the unit of linearizability."""
        return session.scalars(
            select(PinProgress)
            .where(
                PinProgress.pin_id == pin_id,
                PinProgress.student_profile_id == student_profile_id,
            )
            .with_for_update()
        ).first()

    def progress_by_pin(self, session, pin_id: str) -> list[PinProgress]:
        return list(session.scalars(
            select(PinProgress)
            .where(PinProgress.pin_id == pin_id)
            .order_by(PinProgress.student_profile_id)
        ).all())

    # =========================================================================
    # SUBMISSIONS
    # =========================================================================

    def add_submission(
        self,
        session,
        expedition_id: str,
        pin_id: str,
        student_profile_id: str,
        files: list[str],
        comment: str | None,
        is_early: bool,
        submitted_at,
    ) -> Submission:
        submission = Submission(
            expedition_id=expedition_id,
            pin_id=pin_id,
            student_profile_id=student_profile_id,
            files=list(files),
            comment=comment,
            is_early_submission=is_early,
            submitted_at=submitted_at,
        )
        session.add(submission)
        session.flush()
        return submission

    def latest_submission(
        self, session, pin_id: str, student_profile_id: str
    ) -> Submission | None:
        return session.scalars(
            select(Submission)
            .where(
                Submission.pin_id == pin_id,
                Submission.student_profile_id == student_profile_id,
            )
            .order_by(Submission.submitted_at.desc())
        ).first()

    def submissions_for_student(
        self, session, expedition_id: str, student_profile_id: str
    ) -> list[Submission]:
        return list(session.scalars(
            select(Submission)
            .where(
                Submission.expedition_id == expedition_id,
                Submission.student_profile_id == student_profile_id,
            )
            .order_by(Submission.submitted_at)
        ).all())

    def submissions_by_pin(self, session, pin_id: str) -> list[Submission]:
        return list(session.scalars(
            select(Submission)
            .where(Submission.pin_id == pin_id)
            .order_by(Submission.submitted_at.desc())
        ).all())
