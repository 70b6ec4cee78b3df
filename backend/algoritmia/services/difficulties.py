from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from .. import repositories
from ..db import atomic
from ..errors import NotFound, ValidationFailed
from ..models import (
    ChangeSource,
    Course,
    CourseDifficultySummary,
    CourseStudent,
    Difficulty,
    Grade,
    LinkStatus,
    ReinforcementSession,
    SessionStatus,
    StudentDifficulty,
    User,
    utcnow,
)
from ..normalize import difficulty_row, serialize
from ..queries import ListQuery, Page, apply_filters, enum_filter, paginate, search_filter
from ..schemas import DifficultySubmitIn
from . import kpis
from .progress import single_student

logger = logging.getLogger(__name__)


def should_cancel_pending(session_grade: str, new_grade: str) -> bool:
    """A pending session is obsolete once the grade improves or escalates to High."""
    old = Grade.WEIGHT[session_grade]
    new = Grade.WEIGHT[new_grade]
    return new < old or (new > old and new_grade == Grade.HIGH)


class DifficultyService:
    def __init__(self, sessions):
        self.sessions = sessions

    def catalogue(self, db: Session) -> list[dict]:
        return [serialize(d) for d in db.scalars(select(Difficulty).order_by(Difficulty.name.asc())).all()]

    def submit(self, db: Session, student: User, batch: list[DifficultySubmitIn]) -> dict:
        student_id = single_student(batch, "difficulty")
        enrollment = repositories.active_enrollment(db, student_id)
        if not enrollment:
            raise NotFound("No active enrollment found for this student")
        course_id = enrollment.course_id
        ids = {d.difficulty_id for d in batch}
        known = set(db.scalars(select(Difficulty.id).where(Difficulty.id.in_(ids))).all())
        unknown = sorted(ids - known)
        if unknown:
            raise ValidationFailed("Unknown difficulties", {"difficulty_id": [f"difficulty not found: {d}" for d in unknown]})

        now = utcnow()
        latest = None
        with atomic(db):
            for item in batch:
                at = item.recorded_at or now
                if latest is None or at > latest:
                    latest = at
                pending = db.scalar(
                    select(ReinforcementSession).where(
                        ReinforcementSession.student_id == student_id,
                        ReinforcementSession.course_id == course_id,
                        ReinforcementSession.difficulty_id == item.difficulty_id,
                        ReinforcementSession.status == SessionStatus.PENDING,
                        ReinforcementSession.deleted_at.is_(None),
                    )
                )
                if pending is not None and should_cancel_pending(pending.grade, item.grade):
                    kpis.cancel_session(db, student, pending, now)
                kpis.record_grade(db, student, student_id, course_id, item.difficulty_id, item.grade, ChangeSource.GAME, at)
            kpis.recalculate_course_difficulties(db, course_id, latest)

        created = []
        for difficulty_id in dict.fromkeys(d.difficulty_id for d in batch if d.grade == Grade.HIGH):
            session = self.sessions.create_automatic(db, course_id, student_id, difficulty_id)
            if session is not None:
                created.append(session.id)
        return {"message": "Difficulty batch recorded", "course_id": course_id, "automatic_sessions": created}

    def student_difficulties(self, db: Session, student_id: str, course_id: str) -> list[dict]:
        return [difficulty_row(serialize(d), sd.grade) for sd, d in repositories.student_difficulties(db, student_id, course_id)]

    def overview(self, db: Session, course_id: str) -> dict:
        course = db.get(Course, course_id)
        if not course:
            raise NotFound("Course not found")
        summary = db.get(CourseDifficultySummary, course.difficulty_summary_id)
        data = serialize(summary)
        mode = db.get(Difficulty, summary.mode_difficulty_id) if summary.mode_difficulty_id else None
        data["mode_difficulty"] = serialize(mode) if mode else None
        return data

    def student_list(
        self,
        db: Session,
        course_id: str,
        query: ListQuery,
        topic: Optional[str] = None,
        difficulty_id: Optional[str] = None,
        grade: Optional[str] = None,
    ) -> Page:
        stmt = (
            select(User)
            .join(CourseStudent, CourseStudent.student_id == User.id)
            .where(CourseStudent.course_id == course_id, CourseStudent.status == LinkStatus.ACTIVE)
        )
        if topic or difficulty_id or grade:
            matching = (
                select(StudentDifficulty.student_id)
                .join(Difficulty, Difficulty.id == StudentDifficulty.difficulty_id)
                .where(StudentDifficulty.course_id == course_id)
            )
            matching = apply_filters(
                matching,
                enum_filter(Difficulty.topic, [topic] if topic else None),
                enum_filter(StudentDifficulty.difficulty_id, [difficulty_id] if difficulty_id else None),
                enum_filter(StudentDifficulty.grade, [grade] if grade else None, Grade.ALL, "grade"),
            )
            stmt = stmt.where(User.id.in_(matching))
        stmt = apply_filters(stmt, search_filter(query.search, User.name, User.surname))
        page = paginate(db, stmt, query, {"name": User.name, "surname": User.surname}, "surname")

        ids = [u.id for u in page.data]
        counts: dict[str, dict[str, int]] = {i: {g: 0 for g in (Grade.HIGH, Grade.MEDIUM, Grade.LOW)} for i in ids}
        if ids:
            rows = db.execute(
                select(
                    StudentDifficulty.student_id,
                    func.sum(case((StudentDifficulty.grade == Grade.HIGH, 1), else_=0)),
                    func.sum(case((StudentDifficulty.grade == Grade.MEDIUM, 1), else_=0)),
                    func.sum(case((StudentDifficulty.grade == Grade.LOW, 1), else_=0)),
                )
                .where(StudentDifficulty.course_id == course_id, StudentDifficulty.student_id.in_(ids))
                .group_by(StudentDifficulty.student_id)
            ).all()
            for sid, high, medium, low in rows:
                counts[sid] = {Grade.HIGH: int(high or 0), Grade.MEDIUM: int(medium or 0), Grade.LOW: int(low or 0)}
        return page.map(lambda u: {"student_id": u.id, "name": u.name, "surname": u.surname, "grades": counts[u.id]})
