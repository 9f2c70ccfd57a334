"""
Expedition Progression Engine

Orchestrates the teacher- and student-facing operations:

    teacher authors (DRAFT) -> publish (frozen) -> student instantiates lazily
    -> attempt/submit -> Evaluation Gateway -> Unlock Resolver -> Reward Issuer

Every operation is one short transaction. Work on a single (student, pin)
is serialized by a row lock plus an optimistic version check; different
students never touch the same rows. Reward delivery happens after commit
and can never undo or duplicate a state transition.
"""

import logging
from collections.abc import Callable
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from src.expedition.circuit_breaker import CircuitBreaker
from src.expedition.config import EngineSettings
from src.expedition.database import Database
from src.expedition.errors import (
    ConcurrentUpdateError,
    ExpeditionError,
    InvalidTransitionError,
    NotFoundError,
    PinLockedError,
)
from src.expedition.evaluation import (
    Verdict,
    compute_reward,
    evaluate_continue,
    evaluate_decision,
    evaluate_submission,
    is_early_submission,
)
from src.expedition.graph_store import GraphStore
from src.expedition.models import Expedition, Pin, PinProgress, RewardGrant, utcnow
from src.expedition.progress_store import ProgressStore
from src.expedition.resolver import ExpeditionGraph, final_score, resolve_unlocks
from src.expedition.rewards import PointLogLedger, RewardIssuer, RewardsLedger
from src.expedition.roster import AccessPolicy, ClassroomRoster
from src.expedition.storage import FileStorage, LocalFileStorage
from src.schemas.base import ExpeditionStatus, PinStatus, PinType
from src.schemas.expedition import (
    Actor,
    BulkDecisionResult,
    ConnectionCreate,
    ConnectionUpdate,
    ConnectionView,
    ExpeditionCreate,
    ExpeditionState,
    ExpeditionUpdate,
    ExpeditionView,
    PinCreate,
    PinProgressView,
    PinUpdate,
    PinView,
    StudentExpeditionSummary,
    StudentProgressView,
    SubmissionView,
    TeacherDecision,
)

logger = logging.getLogger(__name__)


class ExpeditionEngine:

    def __init__(
        self,
        database: Database,
        roster: ClassroomRoster,
        ledger: RewardsLedger | None = None,
        storage: FileStorage | None = None,
        settings: EngineSettings | None = None,
        breaker: CircuitBreaker | None = None,
    ):
        self.settings = settings or EngineSettings()
        self.database = database
        self.policy = AccessPolicy(roster)
        self.graphs = GraphStore()
        self.progress = ProgressStore()
        self.storage = storage or LocalFileStorage(
            self.settings.upload_dir,
            url_prefix=self.settings.upload_url_prefix,
            max_bytes=self.settings.upload_max_bytes,
        )
        self.rewards = RewardIssuer(
            database,
            ledger or PointLogLedger(database),
            breaker=breaker or CircuitBreaker(
                failure_threshold=self.settings.reward_breaker_failures,
                recovery_timeout=self.settings.reward_breaker_recovery_seconds,
            ),
            max_attempts=self.settings.reward_max_delivery_attempts,
        )

    @classmethod
    def from_settings(
        cls,
        settings: EngineSettings,
        roster: ClassroomRoster,
        ledger: RewardsLedger | None = None,
    ) -> "ExpeditionEngine":
        database = Database(settings.database_url)
        database.init_db()
        return cls(database, roster, ledger=ledger, settings=settings)

    # =========================================================================
    # TEACHER: EXPEDITIONS
    # =========================================================================

    def create_expedition(self, payload: ExpeditionCreate, actor: Actor | None = None) -> ExpeditionView:
        self.policy.require_teacher(actor, payload.classroom_id)
        with self.database.session_scope() as session:
            expedition = self.graphs.create_expedition(session, payload)
            return ExpeditionView.model_validate(expedition)

    def get_expedition(self, expedition_id: str, actor: Actor | None = None) -> ExpeditionView:
        with self.database.read_scope() as session:
            expedition = self.graphs.get_expedition(session, expedition_id)
            self.policy.require_teacher(actor, expedition.classroom_id)
            return ExpeditionView.model_validate(expedition)

    def list_expeditions(
        self,
        classroom_id: str,
        status: ExpeditionStatus | None = None,
        actor: Actor | None = None,
    ) -> list[ExpeditionView]:
        self.policy.require_teacher(actor, classroom_id)
        with self.database.read_scope() as session:
            return [
                ExpeditionView.model_validate(e)
                for e in self.graphs.list_expeditions(session, classroom_id, status)
            ]

    def update_expedition(
        self, expedition_id: str, payload: ExpeditionUpdate, actor: Actor | None = None
    ) -> ExpeditionView:
        with self.database.session_scope() as session:
            self._authorize_expedition(session, expedition_id, actor)
            expedition = self.graphs.update_expedition(session, expedition_id, payload)
            return ExpeditionView.model_validate(expedition)

    def publish(self, expedition_id: str, actor: Actor | None = None) -> ExpeditionView:
        with self.database.session_scope() as session:
            self._authorize_expedition(session, expedition_id, actor)
            expedition = self.graphs.publish(session, expedition_id)
            view = ExpeditionView.model_validate(expedition)
        self.graphs.invalidate(expedition_id)
        return view

    def archive(self, expedition_id: str, actor: Actor | None = None) -> ExpeditionView:
        with self.database.session_scope() as session:
            self._authorize_expedition(session, expedition_id, actor)
            return ExpeditionView.model_validate(self.graphs.archive(session, expedition_id))

    def delete_expedition(self, expedition_id: str, actor: Actor | None = None) -> None:
        with self.database.session_scope() as session:
            self._authorize_expedition(session, expedition_id, actor)
            self.graphs.delete_expedition(session, expedition_id)

    # =========================================================================
    # TEACHER: PINS & CONNECTIONS
    # =========================================================================

    def create_pin(self, expedition_id: str, payload: PinCreate, actor: Actor | None = None) -> PinView:
        with self.database.session_scope() as session:
            self._authorize_expedition(session, expedition_id, actor)
            return PinView.model_validate(self.graphs.create_pin(session, expedition_id, payload))

    def get_pin(self, pin_id: str) -> PinView:
        with self.database.read_scope() as session:
            return PinView.model_validate(self.graphs.get_pin(session, pin_id))

    def update_pin(self, pin_id: str, payload: PinUpdate, actor: Actor | None = None) -> PinView:
        with self.database.session_scope() as session:
            pin = self.graphs.get_pin(session, pin_id)
            self.policy.require_teacher(actor, pin.expedition.classroom_id)
            return PinView.model_validate(self.graphs.update_pin(session, pin_id, payload))

    def delete_pin(self, pin_id: str, actor: Actor | None = None) -> None:
        with self.database.session_scope() as session:
            pin = self.graphs.get_pin(session, pin_id)
            self.policy.require_teacher(actor, pin.expedition.classroom_id)
            self.graphs.delete_pin(session, pin_id)

    def create_connection(
        self, expedition_id: str, payload: ConnectionCreate, actor: Actor | None = None
    ) -> ConnectionView:
        with self.database.session_scope() as session:
            self._authorize_expedition(session, expedition_id, actor)
            connection = self.graphs.create_connection(session, expedition_id, payload)
            return ConnectionView.model_validate(connection)

    def update_connection(
        self, connection_id: str, on_success: bool | None, actor: Actor | None = None
    ) -> ConnectionView:
        with self.database.session_scope() as session:
            connection = self.graphs.get_connection(session, connection_id)
            self.policy.require_teacher(actor, connection.expedition.classroom_id)
            connection = self.graphs.update_connection(
                session, connection_id, ConnectionUpdate(on_success=on_success)
            )
            return ConnectionView.model_validate(connection)

    def delete_connection(self, connection_id: str, actor: Actor | None = None) -> None:
        with self.database.session_scope() as session:
            connection = self.graphs.get_connection(session, connection_id)
            self.policy.require_teacher(actor, connection.expedition.classroom_id)
            self.graphs.delete_connection(session, connection_id)

    # =========================================================================
    # TEACHER: REVIEW
    # =========================================================================

    def set_teacher_decision(
        self,
        pin_id: str,
        student_profile_id: str,
        passed: bool,
        actor: Actor | None = None,
    ) -> PinProgressView:
        """
        Resolve an IN_PROGRESS submission pin to PASSED/FAILED.

        Rejected unless the pin is awaiting review, so a duplicate decision
        reads as "already resolved" and never re-issues rewards.
        """
        with self.database.read_scope() as session:
            pin, expedition = self._pin_context(session, pin_id)
            self.policy.require_teacher(actor, expedition.classroom_id)
            self.policy.require_student(None, student_profile_id, expedition.classroom_id)
            if expedition.status == ExpeditionStatus.DRAFT:
                raise InvalidTransitionError(f"Expedition '{expedition.id}' is not published")
            graph = self.graphs.load_graph(session, expedition)

        def decide(session, progress: PinProgress) -> tuple[Verdict, Any]:
            snapshot = graph.pins[pin_id]
            verdict = evaluate_decision(snapshot, progress.status, passed, student_profile_id)
            latest = self.progress.latest_submission(session, pin_id, student_profile_id)
            return verdict, latest.submitted_at if latest else None

        progress = self._transition(graph, pin_id, student_profile_id, decide)
        logger.info(
            "Teacher decision on pin %s for %s: %s",
            pin_id, student_profile_id, "PASS" if passed else "FAIL",
        )
        return progress

    def set_teacher_decisions_bulk(
        self, pin_id: str, decisions: list[TeacherDecision], actor: Actor | None = None
    ) -> list[BulkDecisionResult]:
        """Each decision is independent; one failure does not abort the rest."""
        results = []
        for decision in decisions:
            try:
                progress = self.set_teacher_decision(
                    pin_id, decision.student_profile_id, decision.passed, actor=actor
                )
                results.append(BulkDecisionResult(
                    student_profile_id=decision.student_profile_id, progress=progress
                ))
            except ExpeditionError as e:
                logger.info("Bulk decision for %s rejected: %s", decision.student_profile_id, e)
                results.append(BulkDecisionResult(
                    student_profile_id=decision.student_profile_id,
                    error=e.code,
                    detail=e.message,
                ))
        return results

    def get_pin_student_progress(self, pin_id: str, actor: Actor | None = None) -> list[PinProgressView]:
        with self.database.read_scope() as session:
            _, expedition = self._pin_context(session, pin_id)
            self.policy.require_teacher(actor, expedition.classroom_id)
            return [
                PinProgressView.model_validate(row)
                for row in self.progress.progress_by_pin(session, pin_id)
            ]

    def get_submissions_by_pin(self, pin_id: str, actor: Actor | None = None) -> list[SubmissionView]:
        with self.database.read_scope() as session:
            _, expedition = self._pin_context(session, pin_id)
            self.policy.require_teacher(actor, expedition.classroom_id)
            return [
                SubmissionView.model_validate(row)
                for row in self.progress.submissions_by_pin(session, pin_id)
            ]

    def retry_pending_rewards(self, limit: int = 100) -> int:
        return self.rewards.retry_pending(limit=limit)

    # =========================================================================
    # STUDENT
    # =========================================================================

    def get_expedition_state(
        self, expedition_id: str, student_profile_id: str, actor: Actor | None = None
    ) -> ExpeditionState:
        """Graph plus this student's snapshot; instantiates progress on first visit."""
        with self.database.read_scope() as session:
            expedition = self.graphs.get_expedition(session, expedition_id)
            self.policy.require_student(actor, student_profile_id, expedition.classroom_id)
            if expedition.status == ExpeditionStatus.DRAFT:
                raise NotFoundError("Expedition", expedition_id)
            status = expedition.status
            graph = self.graphs.load_graph(session, expedition)

        if status == ExpeditionStatus.PUBLISHED:
            self._ensure_instantiated(graph, student_profile_id)

        with self.database.read_scope() as session:
            expedition = self.graphs.get_expedition(session, expedition_id)
            return ExpeditionState(
                expedition=ExpeditionView.model_validate(expedition),
                progress=self._progress_view(session, graph, student_profile_id),
            )

    def list_student_expeditions(
        self, classroom_id: str, student_profile_id: str, actor: Actor | None = None
    ) -> list[StudentExpeditionSummary]:
        """Published expeditions of the classroom with the student's progress (if started)."""
        self.policy.require_student(actor, student_profile_id, classroom_id)
        with self.database.read_scope() as session:
            summaries = []
            for expedition in self.graphs.list_expeditions(
                session, classroom_id, ExpeditionStatus.PUBLISHED
            ):
                graph = self.graphs.load_graph(session, expedition)
                summaries.append(StudentExpeditionSummary(
                    expedition=ExpeditionView.model_validate(expedition),
                    progress=self._progress_view(session, graph, student_profile_id),
                ))
            return summaries

    def attempt_pin(
        self, pin_id: str, student_profile_id: str, actor: Actor | None = None
    ) -> PinProgressView:
        """
        The student's "continue" action.

        Pins without a submission resolve immediately (COMPLETED for
        INTRO/FINAL, PASSED for OBJECTIVE); submission pins are opened
        (IN_PROGRESS) and wait for a submission.
        """
        graph = self._student_context(pin_id, student_profile_id, actor)

        def attempt(session, progress: PinProgress) -> tuple[Verdict, Any]:
            verdict = evaluate_continue(graph.pins[pin_id], progress.status, student_profile_id)
            latest = self.progress.latest_submission(session, pin_id, student_profile_id)
            return verdict, latest.submitted_at if latest else None

        return self._transition(graph, pin_id, student_profile_id, attempt)

    def submit(
        self,
        pin_id: str,
        student_profile_id: str,
        files: list[str],
        comment: str | None = None,
        actor: Actor | None = None,
    ) -> SubmissionView:
        """
        Record a submission. Opens the pin (or re-opens a FAILED one) and
        resolves it right away when auto-progress applies.
        """
        if not files:
            raise InvalidTransitionError("A submission needs at least one file")
        graph = self._student_context(pin_id, student_profile_id, actor, student_only=True)
        created: dict[str, SubmissionView] = {}

        def submit_attempt(session, progress: PinProgress) -> tuple[Verdict, Any]:
            snapshot = graph.pins[pin_id]
            verdict = evaluate_submission(snapshot, progress.status, graph, student_profile_id)
            now = utcnow()
            submission = self.progress.add_submission(
                session,
                expedition_id=graph.expedition_id,
                pin_id=pin_id,
                student_profile_id=student_profile_id,
                files=files,
                comment=comment,
                is_early=is_early_submission(snapshot, now),
                submitted_at=now,
            )
            if progress.status == PinStatus.FAILED:
                logger.info("Retry on pin %s by %s", pin_id, student_profile_id)
                progress.teacher_decision = None
                progress.teacher_decision_at = None
                progress.completed_at = None
            self._mark_started(progress, now)
            created["submission"] = SubmissionView.model_validate(submission)
            return verdict, now

        self._transition(graph, pin_id, student_profile_id, submit_attempt)
        return created["submission"]

    def upload_file(self, filename: str, content: bytes, content_type: str) -> str:
        return self.storage.upload(filename, content, content_type)

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    def _transition(
        self,
        graph: ExpeditionGraph,
        pin_id: str,
        student_profile_id: str,
        evaluate: Callable[[Any, PinProgress], tuple[Verdict, Any]],
    ) -> PinProgressView:
        """
        Run one (student, pin) transition in its own transaction.

        ``evaluate`` receives the locked row and returns the verdict plus the
        submission time used for the early bonus.
        """
        grant_id = None
        try:
            with self.database.session_scope() as session:
                progress = self.progress.lock_pin_progress(session, pin_id, student_profile_id)
                if progress is None:
                    raise InvalidTransitionError(
                        f"Student '{student_profile_id}' has not started this expedition"
                    )
                if progress.status == PinStatus.LOCKED:
                    raise PinLockedError(pin_id, student_profile_id)

                verdict, submitted_at = evaluate(session, progress)
                grant = self._apply_verdict(session, graph, progress, verdict, submitted_at)
                grant_id = grant.id if grant is not None else None
                view = PinProgressView.model_validate(progress)
        except StaleDataError as e:
            logger.warning("Concurrent update on pin %s for %s", pin_id, student_profile_id)
            raise ConcurrentUpdateError(
                f"Pin '{pin_id}' was updated concurrently for student '{student_profile_id}'; reload and retry"
            ) from e

        if grant_id is not None:
            self._deliver(grant_id)
        return view

    def _apply_verdict(
        self,
        session,
        graph: ExpeditionGraph,
        progress: PinProgress,
        verdict: Verdict,
        submitted_at,
    ) -> RewardGrant | None:
        now = utcnow()
        pin = graph.pins[progress.pin_id]

        if not verdict.resolves:
            self._mark_started(progress, now)
            progress.status = verdict.status
            session.flush()
            return None

        previous = progress.status
        progress.status = verdict.status
        progress.completed_at = now
        if verdict.manual:
            progress.teacher_decision = verdict.status.is_success
            progress.teacher_decision_at = now

        grant = None
        if verdict.status.is_success:
            payload = compute_reward(pin, graph, submitted_at)
            grant = self.rewards.grant(session, progress, payload)

        rows = self.progress.pin_progress_map(session, graph.expedition_id, progress.student_profile_id)
        statuses = {pin_id: row.status for pin_id, row in rows.items()}
        plan = resolve_unlocks(graph, pin.id, verdict.outcome, statuses)
        for target in plan.unlock:
            rows[target].status = PinStatus.UNLOCKED
            rows[target].unlocked_at = now
            statuses[target] = PinStatus.UNLOCKED

        student_progress = self.progress.get_student_progress(
            session, graph.expedition_id, progress.student_profile_id
        )
        if plan.next_current_pin_id is not None:
            student_progress.current_pin_id = plan.next_current_pin_id

        if (
            pin.pin_type == PinType.FINAL
            and verdict.status.is_success
            and not student_progress.is_completed
        ):
            student_progress.is_completed = True
            student_progress.completed_at = now
            student_progress.current_pin_id = pin.id
            student_progress.final_score = final_score(graph, statuses)
            logger.info(
                "Student %s completed expedition %s (score %.2f)",
                progress.student_profile_id, graph.expedition_id, student_progress.final_score,
            )

        session.flush()
        logger.info(
            "Pin %s for %s: %s -> %s (unlocked %s)",
            pin.id, progress.student_profile_id, previous.value, verdict.status.value,
            list(plan.unlock) or "none",
        )
        return grant

    @staticmethod
    def _mark_started(progress: PinProgress, now) -> None:
        if progress.started_at is None:
            progress.started_at = now

    def _deliver(self, grant_id: str) -> None:
        """Post-commit reward delivery; a ledger problem never fails the caller."""
        try:
            self.rewards.deliver(grant_id)
        except Exception:  # noqa: BLE001 - state transition already committed
            logger.exception("Reward delivery crashed for grant %s; left pending", grant_id)

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _ensure_instantiated(self, graph: ExpeditionGraph, student_profile_id: str) -> None:
        try:
            with self.database.session_scope() as session:
                self.progress.instantiate(session, graph, student_profile_id)
        except IntegrityError:
            # Lost a race with a parallel first visit; the rows exist now
            logger.info(
                "Progress for %s on %s created concurrently", student_profile_id, graph.expedition_id
            )

    def _student_context(
        self,
        pin_id: str,
        student_profile_id: str,
        actor: Actor | None,
        student_only: bool = False,
    ) -> ExpeditionGraph:
        with self.database.read_scope() as session:
            pin, expedition = self._pin_context(session, pin_id)
            if student_only:
                self.policy.require_student_self(actor, student_profile_id, expedition.classroom_id)
            else:
                self.policy.require_student(actor, student_profile_id, expedition.classroom_id)
            if expedition.status != ExpeditionStatus.PUBLISHED:
                raise InvalidTransitionError(
                    f"Expedition '{expedition.id}' is {expedition.status.value}; it does not accept progress"
                )
            graph = self.graphs.load_graph(session, expedition)
        self._ensure_instantiated(graph, student_profile_id)
        return graph

    def _pin_context(self, session, pin_id: str) -> tuple[Pin, Expedition]:
        pin = self.graphs.get_pin(session, pin_id)
        return pin, pin.expedition

    def _authorize_expedition(self, session, expedition_id: str, actor: Actor | None) -> Expedition:
        expedition = self.graphs.get_expedition(session, expedition_id)
        self.policy.require_teacher(actor, expedition.classroom_id)
        return expedition

    def _progress_view(
        self, session, graph: ExpeditionGraph, student_profile_id: str
    ) -> StudentProgressView | None:
        progress = self.progress.get_student_progress(session, graph.expedition_id, student_profile_id)
        if progress is None:
            return None
        rows = self.progress.pin_progress_map(session, graph.expedition_id, student_profile_id)
        ordered = [rows[p.id] for p in graph.ordered_pins() if p.id in rows]
        return StudentProgressView(
            id=progress.id,
            expedition_id=progress.expedition_id,
            student_profile_id=progress.student_profile_id,
            current_pin_id=progress.current_pin_id,
            is_completed=progress.is_completed,
            completed_at=progress.completed_at,
            final_score=progress.final_score,
            started_at=progress.started_at,
            pin_progress=[PinProgressView.model_validate(row) for row in ordered],
            submissions=[
                SubmissionView.model_validate(s)
                for s in self.progress.submissions_for_student(
                    session, graph.expedition_id, student_profile_id
                )
            ],
        )
