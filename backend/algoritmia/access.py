"""
Relationship checks between a principal and a course.

A link grants access while it is Active, and unconditionally once its course
has been soft-deleted (finalized or removed courses stay readable for history).
Checks are read-only and raise `Forbidden` on failure.
"""
from __future__ import annotations

from sqlalchemy.orm import Session

from . import repositories
from .errors import Forbidden
from .models import Course, CourseStudent, CourseTeacher, LinkStatus, Role, User


def link_grants_access(status: str, course: Course) -> bool:
    return status == LinkStatus.ACTIVE or course.deleted_at is not None


def check_teacher_access(db: Session, teacher_id: str, course_id: str) -> CourseTeacher:
    row = repositories.find_assignment(db, teacher_id, course_id)
    if row is None:
        raise Forbidden("You are not assigned to this course")
    link, course = row
    if not link_grants_access(link.status, course):
        raise Forbidden("Your assignment to this course is no longer active")
    return link


def check_student_access(db: Session, student_id: str, course_id: str) -> CourseStudent:
    row = repositories.find_enrollment(db, student_id, course_id)
    if row is None:
        raise Forbidden("You are not enrolled in this course")
    link, course = row
    if not link_grants_access(link.status, course):
        raise Forbidden("Your enrollment in this course is no longer active")
    return link


def check_course_access(db: Session, user: User, course_id: str) -> None:
    if user.role == Role.ADMIN:
        return
    if user.role == Role.TEACHER:
        check_teacher_access(db, user.id, course_id)
    else:
        check_student_access(db, user.id, course_id)
