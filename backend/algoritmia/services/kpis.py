"""
Course aggregates and per-student grade bookkeeping.

These helpers only stage changes on the given session; the calling service owns
the transaction.
"""
from __future__ import annotations

from collections import Counter
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..audit import Operation, snapshot, write_audit
from ..models import (
    Course,
    CourseDifficultyHistory,
    CourseDifficultySummary,
    CourseProgress,
    CourseProgressHistory,
    CourseStudent,
    Difficulty,
    DifficultyHistory,
    Grade,
    LinkStatus,
    ReinforcementSession,
    SessionStatus,
    StudentDifficulty,
    StudentProgress,
    User,
    utcnow,
)

TOTAL_MISSIONS = 10


def grade_from_average(value: float) -> str:
    if value > 2.5:
        return Grade.HIGH
    if value > 1.5:
        return Grade.MEDIUM
    if value > 0:
        return Grade.LOW
    return Grade.NONE


def record_grade(
    db: Session,
    actor: Optional[User],
    student_id: str,
    course_id: str,
    difficulty_id: str,
    grade: str,
    source: str,
    at: Optional[datetime] = None,
) -> bool:
    """Upsert a student's grade for a difficulty and log the transition. Returns False when unchanged."""
    existing = db.scalar(
        select(StudentDifficulty).where(
            StudentDifficulty.student_id == student_id,
            StudentDifficulty.course_id == course_id,
            StudentDifficulty.difficulty_id == difficulty_id,
        )
    )
    if existing is not None and existing.grade == grade:
        return False
    previous = existing.grade if existing is not None else Grade.NONE
    if existing is None:
        row = StudentDifficulty(student_id=student_id, course_id=course_id, difficulty_id=difficulty_id, grade=grade)
        db.add(row)
        write_audit(db, actor, Operation.CREATE, row)
    else:
        before = snapshot(existing)
        existing.grade = grade
        write_audit(db, actor, Operation.UPDATE, existing, before=before)
    db.add(
        DifficultyHistory(
            student_id=student_id,
            course_id=course_id,
            difficulty_id=difficulty_id,
            previous_grade=previous,
            new_grade=grade,
            source=source,
            changed_at=at or utcnow(),
        )
    )
    db.flush()
    return True


def recalculate_course_difficulties(db: Session, course_id: str, at: Optional[datetime] = None) -> CourseDifficultySummary:
    db.flush()
    course = db.get(Course, course_id)
    summary = db.get(CourseDifficultySummary, course.difficulty_summary_id)
    rows = db.execute(
        select(StudentDifficulty.student_id, StudentDifficulty.difficulty_id, StudentDifficulty.grade, Difficulty.topic)
        .join(Difficulty, Difficulty.id == StudentDifficulty.difficulty_id)
        .join(
            CourseStudent,
            (CourseStudent.student_id == StudentDifficulty.student_id) & (CourseStudent.course_id == StudentDifficulty.course_id),
        )
        .where(
            StudentDifficulty.course_id == course_id,
            CourseStudent.status.in_([LinkStatus.ACTIVE, LinkStatus.FINALIZED]),
        )
        .order_by(StudentDifficulty.id)
    ).all()

    if not rows:
        summary.mode_topic = "None"
        summary.mode_difficulty_id = None
        summary.avg_difficulties = 0.0
        summary.avg_grade = Grade.NONE
    else:
        students = {r.student_id for r in rows}
        summary.avg_difficulties = len(rows) / len(students)
        summary.mode_difficulty_id = Counter(r.difficulty_id for r in rows).most_common(1)[0][0]
        summary.mode_topic = Counter(r.topic for r in rows).most_common(1)[0][0]
        weighted = sum(Grade.WEIGHT[r.grade] for r in rows) / len(rows)
        summary.avg_grade = grade_from_average(weighted)

    db.add(
        CourseDifficultyHistory(
            summary_id=summary.id,
            mode_topic=summary.mode_topic,
            mode_difficulty_id=summary.mode_difficulty_id,
            avg_difficulties=summary.avg_difficulties,
            avg_grade=summary.avg_grade,
            recorded_at=at or utcnow(),
        )
    )
    db.flush()
    return summary


def recalculate_course_progress(db: Session, course_id: str, at: Optional[datetime] = None) -> Optional[CourseProgress]:
    db.flush()
    course = db.get(Course, course_id)
    if course is None:
        return None
    progress = db.get(CourseProgress, course.progress_id)
    active = (
        select(StudentProgress)
        .join(CourseStudent, CourseStudent.progress_id == StudentProgress.id)
        .where(CourseStudent.course_id == course_id, CourseStudent.status == LinkStatus.ACTIVE)
        .subquery()
    )
    totals = db.execute(
        select(
            func.coalesce(func.sum(active.c.completed_missions), 0),
            func.coalesce(func.sum(active.c.total_stars), 0),
            func.coalesce(func.sum(active.c.total_exp), 0),
            func.coalesce(func.sum(active.c.total_attempts), 0),
            func.coalesce(func.avg(active.c.pct_completed), 0.0),
        )
    ).one()
    # averages of stars and attempts only consider students who played
    players = db.execute(
        select(
            func.coalesce(func.avg(active.c.avg_stars), 0.0),
            func.coalesce(func.avg(active.c.avg_attempts), 0.0),
        ).where(active.c.last_activity.is_not(None))
    ).one()

    progress.completed_missions = int(totals[0])
    progress.total_stars = int(totals[1])
    progress.total_exp = int(totals[2])
    progress.total_attempts = int(totals[3])
    progress.pct_completed = float(totals[4])
    progress.avg_stars = float(players[0])
    progress.avg_attempts = float(players[1])

    db.add(
        CourseProgressHistory(
            course_progress_id=progress.id,
            completed_missions=progress.completed_missions,
            total_stars=progress.total_stars,
            total_exp=progress.total_exp,
            total_attempts=progress.total_attempts,
            pct_completed=progress.pct_completed,
            avg_stars=progress.avg_stars,
            avg_attempts=progress.avg_attempts,
            recorded_at=at or utcnow(),
        )
    )
    db.flush()
    return progress


def cancel_pending_sessions(db: Session, actor: Optional[User], now: datetime, *criteria) -> list[ReinforcementSession]:
    sessions = db.scalars(
        select(ReinforcementSession).where(
            ReinforcementSession.status == SessionStatus.PENDING,
            ReinforcementSession.deleted_at.is_(None),
            *criteria,
        )
    ).all()
    for session in sessions:
        cancel_session(db, actor, session, now)
    return list(sessions)


def cancel_session(db: Session, actor: Optional[User], session: ReinforcementSession, now: datetime) -> None:
    before = snapshot(session)
    session.status = SessionStatus.CANCELLED
    session.deleted_at = now
    write_audit(db, actor, Operation.DELETE, session, before=before)
