from __future__ import annotations

import logging
from collections import defaultdict
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from .. import repositories
from ..access import check_course_access
from ..audit import Operation, snapshot, write_audit
from ..db import atomic
from ..errors import Conflict, Forbidden, NotFound, ValidationFailed
from ..models import (
    ClassDay,
    Course,
    CourseDifficultyHistory,
    CourseDifficultySummary,
    CourseProgress,
    CourseProgressHistory,
    CourseStudent,
    CourseTeacher,
    LinkStatus,
    ReinforcementSession,
    Role,
    SessionStatus,
    User,
    utcnow,
)
from ..normalize import flatten_course, parse_time
from ..queries import ListQuery, Page, apply_filters, enum_filter, paginate, search_filter
from ..schemas import ClassDayIn, CourseCreateIn, CourseUpdateIn
from ..security import PasswordHasher, require_role
from . import kpis

logger = logging.getLogger(__name__)

TEACHER_EDITABLE = {"description", "password", "preferred_modality"}
LISTED_TEACHER_STATUSES = (LinkStatus.ACTIVE, LinkStatus.FINALIZED)


def check_schedule(days: list[ClassDayIn]) -> None:
    by_day: dict[str, list[ClassDayIn]] = defaultdict(list)
    for entry in days:
        by_day[entry.day].append(entry)
    for day, entries in by_day.items():
        entries = sorted(entries, key=lambda e: e.start_time)
        for prev, nxt in zip(entries, entries[1:]):
            if nxt.start_time < prev.end_time:
                raise Conflict(f"Class days overlap on {day}")


class CourseService:
    def __init__(self, hasher: PasswordHasher):
        self.hasher = hasher

    def _ensure_name_free(self, db: Session, name: str, exclude_id: Optional[str] = None) -> None:
        stmt = select(Course.id).where(func.lower(Course.name) == name.lower())
        if exclude_id:
            stmt = stmt.where(Course.id != exclude_id)
        if db.scalar(stmt):
            raise Conflict("A course with that name already exists")

    def _live_teachers(self, db: Session, teacher_ids: list[str]) -> list[User]:
        teachers = db.scalars(
            select(User).where(User.id.in_(teacher_ids), User.role == Role.TEACHER, User.deleted_at.is_(None))
        ).all()
        missing = set(teacher_ids) - {t.id for t in teachers}
        if missing:
            raise ValidationFailed("Invalid teachers", {"teacher_ids": [f"not an active teacher: {t}" for t in sorted(missing)]})
        return list(teachers)

    def _add_class_days(self, db: Session, course_id: str, days: list[ClassDayIn]) -> None:
        for entry in days:
            db.add(
                ClassDay(
                    course_id=course_id,
                    day=entry.day,
                    start_time=parse_time(entry.start_time),
                    end_time=parse_time(entry.end_time),
                    modality=entry.modality,
                )
            )

    def record(self, db: Session, course_id: str, teacher_statuses=(LinkStatus.ACTIVE,)) -> dict:
        records = repositories.load_course_records(db, [course_id])
        if course_id not in records:
            raise NotFound("Course not found")
        return flatten_course(records[course_id], teacher_statuses)

    def create(self, db: Session, actor: User, data: CourseCreateIn) -> dict:
        check_schedule(data.class_days)
        self._ensure_name_free(db, data.name)
        self._live_teachers(db, data.teacher_ids)
        now = utcnow()
        with atomic(db):
            progress = CourseProgress()
            summary = CourseDifficultySummary()
            db.add_all([progress, summary])
            db.flush()
            course = Course(
                name=data.name,
                description=data.description,
                password_hash=self.hasher.hash(data.password),
                preferred_modality=data.preferred_modality,
                progress_id=progress.id,
                difficulty_summary_id=summary.id,
            )
            db.add(course)
            db.flush()
            for teacher_id in data.teacher_ids:
                link = CourseTeacher(teacher_id=teacher_id, course_id=course.id, status=LinkStatus.ACTIVE, assigned_at=now)
                db.add(link)
                write_audit(db, actor, Operation.CREATE, link)
            self._add_class_days(db, course.id, data.class_days)
            db.add(CourseProgressHistory(course_progress_id=progress.id, recorded_at=now))
            db.add(CourseDifficultyHistory(summary_id=summary.id, recorded_at=now))
            write_audit(db, actor, Operation.CREATE, course)
        logger.info("course %s created with %d teachers", course.id, len(data.teacher_ids))
        return self.record(db, course.id)

    def list(self, db: Session, query: ListQuery, statuses: Optional[list[str]] = None, teacher_ids: Optional[list[str]] = None) -> Page:
        students = (
            select(func.count(CourseStudent.id))
            .where(CourseStudent.course_id == Course.id, CourseStudent.status == LinkStatus.ACTIVE)
            .correlate(Course)
            .scalar_subquery()
        )
        stmt = apply_filters(
            select(Course),
            search_filter(query.search, Course.name),
            enum_filter(Course.status, statuses, LinkStatus.ALL, "status"),
        )
        if teacher_ids:
            stmt = stmt.where(
                Course.id.in_(
                    select(CourseTeacher.course_id).where(
                        CourseTeacher.teacher_id.in_(teacher_ids), CourseTeacher.status.in_(LISTED_TEACHER_STATUSES)
                    )
                )
            )
        sorts = {"name": Course.name, "created_at": Course.created_at, "status": Course.status, "students": students}
        page = paginate(db, stmt, query, sorts, "name")
        records = repositories.load_course_records(db, [c.id for c in page.data], LISTED_TEACHER_STATUSES)
        return page.map(lambda c: flatten_course(records[c.id], LISTED_TEACHER_STATUSES))

    def get(self, db: Session, actor: User, course_id: str) -> dict:
        if not db.get(Course, course_id):
            raise NotFound("Course not found")
        check_course_access(db, actor, course_id)
        return self.record(db, course_id)

    def _sync_teachers(self, db: Session, actor: User, course: Course, teacher_ids: list[str]) -> None:
        self._live_teachers(db, teacher_ids)
        now = utcnow()
        target = set(teacher_ids)
        existing = {link.teacher_id: link for link in db.scalars(select(CourseTeacher).where(CourseTeacher.course_id == course.id)).all()}
        for teacher_id, link in existing.items():
            before = snapshot(link)
            if teacher_id in target and link.status != LinkStatus.ACTIVE:
                link.status = LinkStatus.ACTIVE
                link.removed_at = None
                write_audit(db, actor, Operation.UPDATE, link, before=before)
            elif teacher_id not in target and link.status == LinkStatus.ACTIVE:
                link.status = LinkStatus.INACTIVE
                link.removed_at = now
                write_audit(db, actor, Operation.UPDATE, link, before=before)
        for teacher_id in teacher_ids:
            if teacher_id not in existing:
                link = CourseTeacher(teacher_id=teacher_id, course_id=course.id, status=LinkStatus.ACTIVE, assigned_at=now)
                db.add(link)
                write_audit(db, actor, Operation.CREATE, link)

    def update(self, db: Session, actor: User, course_id: str, data: CourseUpdateIn) -> dict:
        require_role(actor, Role.ADMIN, Role.TEACHER)
        course = repositories.live_course(db, course_id)
        if not course:
            raise NotFound("Course not found")
        changes = data.model_dump(exclude_unset=True)
        changes = {k: v for k, v in changes.items() if v is not None}
        if actor.role == Role.TEACHER:
            link = repositories.find_assignment(db, actor.id, course_id)
            if link is None or link[0].status != LinkStatus.ACTIVE:
                raise Forbidden("You are not an active teacher of this course")
            blocked = sorted(set(changes) - TEACHER_EDITABLE)
            if blocked:
                raise Forbidden(f"Teachers cannot change: {', '.join(blocked)}")
        if "name" in changes:
            self._ensure_name_free(db, changes["name"], exclude_id=course.id)
        if data.class_days is not None:
            check_schedule(data.class_days)

        before = snapshot(course)
        with atomic(db):
            for key in ("name", "description", "preferred_modality"):
                if key in changes:
                    setattr(course, key, changes[key])
            if "password" in changes:
                course.password_hash = self.hasher.hash(changes["password"])
            if data.teacher_ids is not None:
                self._sync_teachers(db, actor, course, data.teacher_ids)
            if data.class_days is not None:
                db.execute(delete(ClassDay).where(ClassDay.course_id == course.id))
                self._add_class_days(db, course.id, data.class_days)
            write_audit(db, actor, Operation.UPDATE, course, before=before)
        return self.record(db, course.id)

    def _close_links(self, db: Session, actor: User, course: Course, status: str) -> None:
        now = utcnow()
        for model in (CourseTeacher, CourseStudent):
            for link in db.scalars(select(model).where(model.course_id == course.id, model.status == LinkStatus.ACTIVE)).all():
                before = snapshot(link)
                link.status = status
                link.removed_at = now
                write_audit(db, actor, Operation.UPDATE, link, before=before)

    def remove(self, db: Session, actor: User, course_id: str) -> None:
        """Soft-delete a course and close every active link. Repeating it changes nothing."""
        course = db.get(Course, course_id)
        if not course:
            raise NotFound("Course not found")
        if course.deleted_at is not None:
            return
        before = snapshot(course)
        now = utcnow()
        with atomic(db):
            self._close_links(db, actor, course, LinkStatus.INACTIVE)
            kpis.cancel_pending_sessions(db, actor, now, ReinforcementSession.course_id == course.id)
            db.execute(delete(ClassDay).where(ClassDay.course_id == course.id))
            course.status = LinkStatus.INACTIVE
            course.deleted_at = now
            write_audit(db, actor, Operation.DELETE, course, before=before)
        logger.info("course %s removed", course.id)

    def finalize(self, db: Session, actor: User, course_id: str) -> dict:
        course = repositories.live_course(db, course_id)
        if not course:
            raise NotFound("Course not found")
        before = snapshot(course)
        now = utcnow()
        with atomic(db):
            self._close_links(db, actor, course, LinkStatus.FINALIZED)
            for session in db.scalars(
                select(ReinforcementSession).where(
                    ReinforcementSession.course_id == course.id,
                    ReinforcementSession.status == SessionStatus.PENDING,
                    ReinforcementSession.deleted_at.is_(None),
                )
            ).all():
                session_before = snapshot(session)
                session.status = SessionStatus.NOT_DONE
                write_audit(db, actor, Operation.UPDATE, session, before=session_before)
            course.status = LinkStatus.FINALIZED
            course.deleted_at = now
            write_audit(db, actor, Operation.DELETE, course, before=before)
        logger.info("course %s finalized", course.id)
        return self.record(db, course.id, LISTED_TEACHER_STATUSES)
