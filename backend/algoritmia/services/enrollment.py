from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from .. import repositories
from ..audit import Operation, snapshot, write_audit
from ..db import atomic
from ..errors import NotFound, ValidationFailed
from ..models import CourseStudent, LinkStatus, StudentProgress, StudentProgressHistory, User, utcnow
from ..normalize import flatten_link, public_user, serialize, teacher_name
from ..schemas import JoinCourseIn
from ..security import PasswordHasher
from . import kpis

logger = logging.getLogger(__name__)


class EnrollmentService:
    """The "my courses" views of teachers and students, and course joining."""

    def __init__(self, hasher: PasswordHasher):
        self.hasher = hasher

    def _flatten(self, db: Session, links: list) -> list[dict]:
        records = repositories.load_course_records(db, [link.course_id for link in links])
        return [flatten_link(serialize(link), records[link.course_id]) for link in links if link.course_id in records]

    def teacher_courses(self, db: Session, teacher: User) -> list[dict]:
        return self._flatten(db, repositories.teacher_links(db, teacher.id))

    def student_courses(self, db: Session, student: User) -> list[dict]:
        return self._flatten(db, repositories.student_links(db, student.id))

    def course_teachers(self, db: Session, course_id: str) -> list[dict]:
        return [teacher_name(public_user(t)) for t in repositories.active_teachers_of_course(db, course_id)]

    def join_course(self, db: Session, student: User, data: JoinCourseIn) -> dict:
        course = repositories.live_course(db, data.course_id)
        if not course:
            raise NotFound("Course not found")
        if not self.hasher.verify(data.password, course.password_hash):
            raise ValidationFailed("Incorrect course password", {"password": ["incorrect course password"]})
        current = repositories.active_enrollment(db, student.id)
        if current is not None and current.course_id != course.id:
            raise ValidationFailed("You are already enrolled in another active course")
        if current is not None:
            raise ValidationFailed("You are already enrolled in this course")

        now = utcnow()
        row = repositories.find_enrollment(db, student.id, course.id)
        with atomic(db):
            if row is not None:
                link = row[0]
                before = snapshot(link)
                link.status = LinkStatus.ACTIVE
                link.removed_at = None
                link.joined_at = now
                write_audit(db, student, Operation.UPDATE, link, before=before)
            else:
                progress = StudentProgress()
                db.add(progress)
                db.flush()
                db.add(StudentProgressHistory(progress_id=progress.id, recorded_at=now))
                link = CourseStudent(
                    student_id=student.id,
                    course_id=course.id,
                    progress_id=progress.id,
                    status=LinkStatus.ACTIVE,
                    joined_at=now,
                )
                db.add(link)
                write_audit(db, student, Operation.CREATE, link)
            kpis.recalculate_course_progress(db, course.id, now)
            kpis.recalculate_course_difficulties(db, course.id, now)
        logger.info("student %s joined course %s", student.id, course.id)
        return self._flatten(db, [link])[0]
