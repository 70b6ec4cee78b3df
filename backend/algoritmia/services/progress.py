from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .. import repositories
from ..audit import Operation, snapshot, write_audit
from ..db import atomic
from ..errors import NotFound, ValidationFailed
from ..models import (
    Course,
    CourseProgress,
    CourseStudent,
    LinkStatus,
    Mission,
    MissionCompletion,
    SpecialMissionCompletion,
    StudentProgress,
    StudentProgressHistory,
    User,
    utcnow,
)
from ..normalize import serialize
from ..queries import (
    ATTEMPTS_BUCKETS,
    PROGRESS_BUCKETS,
    STARS_BUCKETS,
    ListQuery,
    Page,
    activity_filter,
    apply_filters,
    bucket_filter,
    paginate,
    search_filter,
)
from ..schemas import MissionSubmitIn
from .kpis import TOTAL_MISSIONS, recalculate_course_progress

PROGRESS_SORTS = {
    "name": User.name,
    "surname": User.surname,
    "pct_completed": StudentProgress.pct_completed,
    "avg_stars": StudentProgress.avg_stars,
    "avg_attempts": StudentProgress.avg_attempts,
    "total_exp": StudentProgress.total_exp,
    "completed_missions": StudentProgress.completed_missions,
    "last_activity": StudentProgress.last_activity,
}


def single_student(batch: list, kind: str) -> str:
    if not batch:
        raise ValidationFailed(f"The {kind} batch cannot be empty")
    student_id = batch[0].student_id
    if any(item.student_id != student_id for item in batch):
        raise ValidationFailed(f"Every {kind} in the batch must belong to the same student")
    return student_id


def is_better_score(stars: int, exp: int, existing) -> bool:
    return stars > existing.stars or (stars == existing.stars and exp > existing.exp)


class ProgressService:
    def submit_missions(self, db: Session, student: User, batch: list[MissionSubmitIn]) -> dict:
        student_id = single_student(batch, "mission")
        enrollment = repositories.active_enrollment(db, student_id)
        if not enrollment:
            raise NotFound("No active enrollment found for this student")
        regular_ids = {m.mission_id for m in batch if not m.is_special}
        known = set(db.scalars(select(Mission.id).where(Mission.id.in_(regular_ids))).all()) if regular_ids else set()
        unknown = sorted(regular_ids - known)
        if unknown:
            raise ValidationFailed("Unknown missions", {"mission_id": [f"mission not found: {m}" for m in unknown]})

        progress_id = enrollment.progress_id
        with atomic(db):
            progress = db.get(StudentProgress, progress_id)
            progress_before = snapshot(progress)
            stars_delta = exp_delta = attempts_delta = completed_delta = 0
            last_activity: Optional[datetime] = None

            for item in batch:
                if last_activity is None or item.completed_at > last_activity:
                    last_activity = item.completed_at
                if item.is_special:
                    existing = db.scalar(
                        select(SpecialMissionCompletion).where(
                            SpecialMissionCompletion.mission_key == item.mission_id,
                            SpecialMissionCompletion.progress_id == progress_id,
                        )
                    )
                else:
                    existing = db.scalar(
                        select(MissionCompletion).where(
                            MissionCompletion.mission_id == item.mission_id, MissionCompletion.progress_id == progress_id
                        )
                    )

                if existing is not None:
                    if not is_better_score(item.stars, item.exp, existing):
                        continue
                    stars_delta += item.stars - existing.stars
                    exp_delta += item.exp - existing.exp
                    attempts_delta += item.attempts - existing.attempts
                    before = snapshot(existing)
                    existing.stars = item.stars
                    existing.exp = item.exp
                    existing.attempts = item.attempts
                    existing.completed_at = item.completed_at
                    if item.is_special:
                        existing.name = item.name or existing.name
                        existing.description = item.description or existing.description
                    write_audit(db, student, Operation.UPDATE, existing, before=before)
                    continue

                if item.is_special:
                    completion = SpecialMissionCompletion(
                        mission_key=item.mission_id,
                        progress_id=progress_id,
                        name=item.name or "Unnamed special mission",
                        description=item.description or "",
                        stars=item.stars,
                        exp=item.exp,
                        attempts=item.attempts,
                        completed_at=item.completed_at,
                    )
                else:
                    completion = MissionCompletion(
                        mission_id=item.mission_id,
                        progress_id=progress_id,
                        stars=item.stars,
                        exp=item.exp,
                        attempts=item.attempts,
                        completed_at=item.completed_at,
                    )
                    completed_delta += 1
                db.add(completion)
                stars_delta += item.stars
                exp_delta += item.exp
                attempts_delta += item.attempts
                # flush so a repeated mission later in the same batch sees this row
                write_audit(db, student, Operation.CREATE, completion)
                db.flush()

            progress.total_stars += stars_delta
            progress.total_exp += exp_delta
            progress.total_attempts += attempts_delta
            progress.completed_missions += completed_delta
            if last_activity is not None:
                progress.last_activity = last_activity
            if progress.completed_missions > 0:
                progress.avg_stars = progress.total_stars / progress.completed_missions
                progress.avg_attempts = progress.total_attempts / progress.completed_missions
            else:
                progress.avg_stars = 0.0
                progress.avg_attempts = 0.0
            progress.pct_completed = progress.completed_missions / TOTAL_MISSIONS * 100
            write_audit(db, student, Operation.UPDATE, progress, before=progress_before)

            recorded_at = last_activity or utcnow()
            db.add(
                StudentProgressHistory(
                    progress_id=progress.id,
                    completed_missions=progress.completed_missions,
                    total_stars=progress.total_stars,
                    total_exp=progress.total_exp,
                    total_attempts=progress.total_attempts,
                    pct_completed=progress.pct_completed,
                    avg_stars=progress.avg_stars,
                    avg_attempts=progress.avg_attempts,
                    recorded_at=recorded_at,
                )
            )
            recalculate_course_progress(db, enrollment.course_id, recorded_at)
        return {"message": "Progress batch recorded", "progress": serialize(progress)}

    def course_overview(self, db: Session, course_id: str) -> dict:
        course = db.get(Course, course_id)
        if not course:
            raise NotFound("Course progress not found")
        return serialize(db.get(CourseProgress, course.progress_id))

    def student_progress(self, db: Session, student_id: str, course_id: str) -> dict:
        row = repositories.find_enrollment(db, student_id, course_id)
        if row is None:
            raise NotFound("Progress not found for this course")
        enrollment = row[0]
        data = serialize(db.get(StudentProgress, enrollment.progress_id))
        data["special_missions"] = [
            serialize(s)
            for s in db.scalars(
                select(SpecialMissionCompletion)
                .where(SpecialMissionCompletion.progress_id == enrollment.progress_id)
                .order_by(SpecialMissionCompletion.completed_at.desc())
            ).all()
        ]
        return data

    def student_list(
        self,
        db: Session,
        course_id: str,
        query: ListQuery,
        progress_range: Optional[str] = None,
        stars_range: Optional[str] = None,
        attempts_range: Optional[str] = None,
        activity_range: Optional[str] = None,
    ) -> Page:
        stmt = (
            select(CourseStudent, User, StudentProgress)
            .join(User, User.id == CourseStudent.student_id)
            .join(StudentProgress, StudentProgress.id == CourseStudent.progress_id)
            .where(CourseStudent.course_id == course_id, CourseStudent.status == LinkStatus.ACTIVE)
        )
        stmt = apply_filters(
            stmt,
            search_filter(query.search, User.name, User.surname),
            bucket_filter(StudentProgress.pct_completed, progress_range, PROGRESS_BUCKETS, "progress_range"),
            bucket_filter(StudentProgress.avg_stars, stars_range, STARS_BUCKETS, "stars_range"),
            bucket_filter(StudentProgress.avg_attempts, attempts_range, ATTEMPTS_BUCKETS, "attempts_range"),
            activity_filter(StudentProgress.last_activity, activity_range, utcnow()),
        )
        page = paginate(db, stmt, query, PROGRESS_SORTS, "surname", scalars=False)
        return page.map(
            lambda row: {
                **serialize(row[2]),
                "student_id": row[1].id,
                "name": row[1].name,
                "surname": row[1].surname,
            }
        )

    def mission_status(self, db: Session, student_id: str, course_id: str) -> list[dict]:
        row = repositories.find_enrollment(db, student_id, course_id)
        if row is None:
            raise NotFound("Student enrollment not found for this course")
        progress_id = row[0].progress_id
        done = {
            c.mission_id: c
            for c in db.scalars(select(MissionCompletion).where(MissionCompletion.progress_id == progress_id)).all()
        }
        missions = db.scalars(select(Mission).order_by(Mission.level.asc(), Mission.name.asc())).all()
        return [
            {"mission": serialize(m), "completion": serialize(done[m.id]) if m.id in done else None}
            for m in missions
        ]
