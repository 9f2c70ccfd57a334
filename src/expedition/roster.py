"""
Classroom Roster collaborator and access checks.

The roster itself (classroom CRUD, enrolment) lives elsewhere; the engine
only needs read-only lookups to authorize callers.
"""

import json
import logging
from typing import Protocol

from src.expedition.errors import NotFoundError, UnauthorizedError
from src.schemas.base import ActorRole
from src.schemas.expedition import Actor

logger = logging.getLogger(__name__)


class ClassroomRoster(Protocol):

    def student_classroom(self, student_profile_id: str) -> str | None:
        """Classroom the student belongs to, or None if unknown."""
        ...

    def teacher_classrooms(self, teacher_id: str) -> set[str]:
        ...


class InMemoryRoster:
    """Dictionary-backed roster, loaded at startup or in tests."""

    def __init__(
        self,
        students: dict[str, str] | None = None,
        teachers: dict[str, set[str]] | None = None,
    ):
        # studentProfileId -> classroomId
        self.students = dict(students or {})
        # teacherId -> {classroomId}
        self.teachers = {k: set(v) for k, v in (teachers or {}).items()}

    @classmethod
    def from_file(cls, path: str) -> "InMemoryRoster":
        """Load ``{"students": {...}, "teachers": {...}}`` from a JSON file."""
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        logger.info(
            "Loaded roster from %s (%d students, %d teachers)",
            path, len(data.get("students", {})), len(data.get("teachers", {})),
        )
        return cls(students=data.get("students"), teachers=data.get("teachers"))

    def enroll(self, student_profile_id: str, classroom_id: str) -> None:
        self.students[student_profile_id] = classroom_id

    def assign(self, teacher_id: str, classroom_id: str) -> None:
        self.teachers.setdefault(teacher_id, set()).add(classroom_id)

    def student_classroom(self, student_profile_id: str) -> str | None:
        return self.students.get(student_profile_id)

    def teacher_classrooms(self, teacher_id: str) -> set[str]:
        return set(self.teachers.get(teacher_id, set()))


class AccessPolicy:
    """
    Authorization rules. ``actor=None`` means a trusted internal caller
    (scripts, auto-progress); roster membership is still enforced for students.
    """

    def __init__(self, roster: ClassroomRoster):
        self.roster = roster

    def require_teacher(self, actor: Actor | None, classroom_id: str) -> None:
        if actor is None:
            return
        if actor.role != ActorRole.TEACHER:
            raise UnauthorizedError("Only teachers can perform this action")
        if classroom_id not in self.roster.teacher_classrooms(actor.actor_id):
            logger.warning("Teacher %s denied on classroom %s", actor.actor_id, classroom_id)
            raise UnauthorizedError(
                f"Teacher '{actor.actor_id}' does not manage classroom '{classroom_id}'"
            )

    def require_student(self, actor: Actor | None, student_profile_id: str, classroom_id: str) -> None:
        """Student must exist in the classroom and act on their own progress."""
        student_classroom = self.roster.student_classroom(student_profile_id)
        if student_classroom is None:
            raise NotFoundError("Student", student_profile_id)
        if student_classroom != classroom_id:
            raise UnauthorizedError(
                f"Student '{student_profile_id}' is not enrolled in classroom '{classroom_id}'"
            )
        if actor is None:
            return
        if actor.role == ActorRole.TEACHER:
            self.require_teacher(actor, classroom_id)
            return
        if actor.actor_id != student_profile_id:
            logger.warning(
                "Student %s tried to act on progress of %s", actor.actor_id, student_profile_id
            )
            raise UnauthorizedError("Students may only act on their own progress")

    def require_student_self(self, actor: Actor | None, student_profile_id: str, classroom_id: str) -> None:
        """Like ``require_student`` but teachers cannot act on the student's behalf."""
        if actor is not None and actor.role == ActorRole.TEACHER:
            raise UnauthorizedError("Only the student can perform this action")
        self.require_student(actor, student_profile_id, classroom_id)
