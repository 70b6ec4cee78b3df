"""
Explicit reads per entity.

Relations are never loaded implicitly: each function issues the joins it needs
and returns ORM rows or plain nested dicts ready for `normalize`.
"""
from __future__ import annotations

from collections import defaultdict
from typing import Iterable, Optional, Sequence

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from .models import (
    ClassDay,
    Course,
    CourseStudent,
    CourseTeacher,
    Difficulty,
    LinkStatus,
    Role,
    StudentDifficulty,
    User,
)
from .normalize import public_user, serialize


def link_status_rank(column):
    return case({LinkStatus.ACTIVE: 0, LinkStatus.FINALIZED: 1}, value=column, else_=2)


def live_user(db: Session, user_id: str, role: Optional[str] = None) -> Optional[User]:
    stmt = select(User).where(User.id == user_id, User.deleted_at.is_(None))
    if role:
        stmt = stmt.where(User.role == role)
    return db.scalar(stmt)


def user_by_email(db: Session, email: str) -> Optional[User]:
    return db.scalar(select(User).where(func.lower(User.email) == email.strip().lower()))


def live_course(db: Session, course_id: str) -> Optional[Course]:
    return db.scalar(select(Course).where(Course.id == course_id, Course.deleted_at.is_(None)))


def find_assignment(db: Session, teacher_id: str, course_id: str):
    return db.execute(
        select(CourseTeacher, Course)
        .join(Course, Course.id == CourseTeacher.course_id)
        .where(CourseTeacher.teacher_id == teacher_id, CourseTeacher.course_id == course_id)
    ).first()


def find_enrollment(db: Session, student_id: str, course_id: str):
    return db.execute(
        select(CourseStudent, Course)
        .join(Course, Course.id == CourseStudent.course_id)
        .where(CourseStudent.student_id == student_id, CourseStudent.course_id == course_id)
    ).first()


def active_enrollment(db: Session, student_id: str) -> Optional[CourseStudent]:
    return db.scalar(
        select(CourseStudent).where(CourseStudent.student_id == student_id, CourseStudent.status == LinkStatus.ACTIVE)
    )


def active_students_count(db: Session, course_ids: Sequence[str]) -> dict[str, int]:
    if not course_ids:
        return {}
    rows = db.execute(
        select(CourseStudent.course_id, func.count(CourseStudent.id))
        .where(CourseStudent.course_id.in_(course_ids), CourseStudent.status == LinkStatus.ACTIVE)
        .group_by(CourseStudent.course_id)
    ).all()
    return {course_id: count for course_id, count in rows}


def load_course_records(db: Session, course_ids: Iterable[str], teacher_statuses: Optional[Sequence[str]] = None) -> dict[str, dict]:
    """Fetch courses with their assignments (and teachers), class days and student counts."""
    ids = list(dict.fromkeys(course_ids))
    if not ids:
        return {}
    courses = db.scalars(select(Course).where(Course.id.in_(ids))).all()

    stmt = (
        select(CourseTeacher, User)
        .join(User, User.id == CourseTeacher.teacher_id)
        .where(CourseTeacher.course_id.in_(ids))
        .order_by(link_status_rank(CourseTeacher.status), User.surname.asc())
    )
    if teacher_statuses:
        stmt = stmt.where(CourseTeacher.status.in_(teacher_statuses))
    assignments: dict[str, list[dict]] = defaultdict(list)
    for link, teacher in db.execute(stmt).all():
        assignments[link.course_id].append({"status": link.status, "teacher": public_user(teacher)})

    days: dict[str, list[dict]] = defaultdict(list)
    for day in db.scalars(select(ClassDay).where(ClassDay.course_id.in_(ids)).order_by(ClassDay.start_time.asc())).all():
        days[day.course_id].append(serialize(day))

    counts = active_students_count(db, ids)
    records = {}
    for course in courses:
        record = serialize(course)
        record["assignments"] = assignments.get(course.id, [])
        record["class_days"] = days.get(course.id, [])
        record["students_count"] = counts.get(course.id, 0)
        records[course.id] = record
    return records


def teacher_links(db: Session, teacher_id: str) -> list[CourseTeacher]:
    return list(
        db.scalars(
            select(CourseTeacher)
            .where(CourseTeacher.teacher_id == teacher_id)
            .order_by(link_status_rank(CourseTeacher.status), CourseTeacher.assigned_at.desc())
        ).all()
    )


def student_links(db: Session, student_id: str) -> list[CourseStudent]:
    return list(
        db.scalars(
            select(CourseStudent)
            .where(CourseStudent.student_id == student_id)
            .order_by(link_status_rank(CourseStudent.status), CourseStudent.joined_at.desc())
        ).all()
    )


def active_teachers_of_course(db: Session, course_id: str) -> list[User]:
    return list(
        db.scalars(
            select(User)
            .join(CourseTeacher, CourseTeacher.teacher_id == User.id)
            .where(CourseTeacher.course_id == course_id, CourseTeacher.status == LinkStatus.ACTIVE, User.role == Role.TEACHER)
            .order_by(User.surname.asc())
        ).all()
    )


def student_difficulties(db: Session, student_id: str, course_id: str) -> list[tuple[StudentDifficulty, Difficulty]]:
    return list(
        db.execute(
            select(StudentDifficulty, Difficulty)
            .join(Difficulty, Difficulty.id == StudentDifficulty.difficulty_id)
            .where(StudentDifficulty.student_id == student_id, StudentDifficulty.course_id == course_id)
            .order_by(Difficulty.topic.asc(), Difficulty.name.asc())
        ).all()
    )
