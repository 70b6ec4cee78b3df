"""
Consultation classes: a teacher-led slot in which a batch of pending student
consultations is worked through.

Classes are created by a teacher or generated automatically once a course piles
up enough pending consultations; automatic ones wait for a teacher to accept
them. A class owns its consultations while it is open (they sit in To_review)
and hands them back when it is cancelled or finalized.
"""
from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..access import check_course_access, check_teacher_access
from ..audit import Operation, snapshot, write_audit
from ..db import atomic
from ..errors import Conflict, Forbidden, NotFound, ValidationFailed
from ..models import (
    WEEKDAYS,
    ClassConsultation,
    ClassDay,
    ClassStatus,
    Consultation,
    ConsultationClass,
    ConsultationStatus,
    Course,
    Role,
    User,
    utcnow,
)
from ..normalize import parse_time, serialize
from ..queries import ListQuery, Page, apply_filters, date_range_filter, enum_filter, paginate, search_filter
from ..schemas import AssignClassIn, CancelClassIn, ConsultationClassIn, ConsultationClassUpdateIn, FinalizeClassIn
from .sessions import minute_of_day, next_class_start

logger = logging.getLogger(__name__)

EARLIEST_START = time(8, 0)
LATEST_END = time(21, 0)
MAX_DURATION = timedelta(hours=4)
MAX_DAYS_AHEAD = 7
AUTOMATIC_BATCH = 10
AUTOMATIC_NAME = "Automatic consultation class"
AUTOMATIC_DESCRIPTION = "Class generated from the oldest pending consultations of the course"
OPEN_STATUSES = (ClassStatus.PENDING_ASSIGNMENT, ClassStatus.SCHEDULED)
CLASS_SORTS = {
    "starts_at": ConsultationClass.starts_at,
    "name": ConsultationClass.name,
    "status": ConsultationClass.status,
    "created_at": ConsultationClass.created_at,
}
LISTED_STATUSES = OPEN_STATUSES + ClassStatus.CLOSED


def class_window(day: date, start: str, end: str) -> tuple[datetime, datetime]:
    return datetime.combine(day, parse_time(start).time()), datetime.combine(day, parse_time(end).time())


def check_window(starts: datetime, ends: datetime, now: datetime) -> None:
    if starts >= ends:
        raise ValidationFailed("Invalid schedule", {"end_time": ["end time must be after start time"]})
    if starts < now:
        raise ValidationFailed("Invalid schedule", {"class_date": ["a class cannot be scheduled in the past"]})
    if starts.date() > now.date() + timedelta(days=MAX_DAYS_AHEAD):
        raise ValidationFailed("Invalid schedule", {"class_date": [f"a class cannot be scheduled more than {MAX_DAYS_AHEAD} days ahead"]})
    if starts.time() < EARLIEST_START or ends.time() > LATEST_END:
        raise ValidationFailed(
            "Invalid schedule",
            {"start_time": [f"classes run between {EARLIEST_START:%H:%M} and {LATEST_END:%H:%M}"]},
        )
    if ends - starts > MAX_DURATION:
        raise ValidationFailed("Invalid schedule", {"end_time": ["a class cannot last more than 4 hours"]})


def check_clear_of_class_days(days: list[ClassDay], starts: datetime, ends: datetime) -> None:
    if starts.weekday() >= len(WEEKDAYS):
        return
    weekday = WEEKDAYS[starts.weekday()]
    begin, finish = minute_of_day(starts), minute_of_day(ends)
    for day in days:
        if day.day == weekday and begin < minute_of_day(day.end_time) and finish > minute_of_day(day.start_time):
            raise ValidationFailed(
                "Invalid schedule",
                {"start_time": [f"the class overlaps the {weekday} course class starting at {day.start_time:%H:%M}"]},
            )


def effective_status(cls: ConsultationClass, now: datetime) -> str:
    """Open classes read as In_progress or Finished once their slot starts or ends."""
    if cls.status not in OPEN_STATUSES:
        return cls.status
    if now >= cls.ends_at:
        return ClassStatus.FINISHED
    if now >= cls.starts_at:
        return ClassStatus.IN_PROGRESS
    return cls.status


class ConsultationClassService:
    def _load(self, db: Session, class_id: str) -> ConsultationClass:
        cls = db.get(ConsultationClass, class_id)
        if cls is None or cls.deleted_at is not None:
            raise NotFound("Consultation class not found")
        return cls

    def _class_days(self, db: Session, course_id: str) -> list[ClassDay]:
        return list(db.scalars(select(ClassDay).where(ClassDay.course_id == course_id)).all())

    def _check_overlap(self, db: Session, course_id: str, starts: datetime, ends: datetime, exclude_id: Optional[str] = None) -> None:
        stmt = select(ConsultationClass.id).where(
            ConsultationClass.course_id == course_id,
            ConsultationClass.status.in_(OPEN_STATUSES),
            ConsultationClass.deleted_at.is_(None),
            ConsultationClass.starts_at < ends,
            ConsultationClass.ends_at > starts,
        )
        if exclude_id:
            stmt = stmt.where(ConsultationClass.id != exclude_id)
        if db.scalar(stmt):
            raise Conflict("Another consultation class of this course overlaps that schedule")

    def _check_unique(self, db: Session, course_id: str, name: Optional[str], description: Optional[str], exclude_id: Optional[str] = None) -> None:
        for column, value, label in (
            (ConsultationClass.name, name, "name"),
            (ConsultationClass.description, description, "description"),
        ):
            if not value:
                continue
            stmt = select(ConsultationClass.id).where(
                ConsultationClass.course_id == course_id,
                ConsultationClass.deleted_at.is_(None),
                func.lower(column) == value.lower(),
            )
            if exclude_id:
                stmt = stmt.where(ConsultationClass.id != exclude_id)
            if db.scalar(stmt):
                raise Conflict(f"A consultation class with that {label} already exists in this course")

    def _check_schedule(self, db: Session, course_id: str, starts: datetime, ends: datetime, now: datetime, exclude_id: Optional[str] = None) -> None:
        check_window(starts, ends, now)
        check_clear_of_class_days(self._class_days(db, course_id), starts, ends)
        self._check_overlap(db, course_id, starts, ends, exclude_id)

    def _pending_consultations(self, db: Session, course_id: str, ids: list[str], keep: frozenset = frozenset()) -> list[Consultation]:
        """Load consultations for a class; ids in `keep` are already linked and may be To_review."""
        rows = db.scalars(
            select(Consultation).where(
                Consultation.id.in_(ids), Consultation.course_id == course_id, Consultation.deleted_at.is_(None)
            )
        ).all()
        missing = sorted(set(ids) - {c.id for c in rows})
        if missing:
            raise ValidationFailed("Unknown consultations", {"consultation_ids": [f"not a consultation of this course: {c}" for c in missing]})
        busy = sorted(c.id for c in rows if c.id not in keep and c.status != ConsultationStatus.PENDING)
        if busy:
            raise ValidationFailed("Consultations not pending", {"consultation_ids": [f"consultation is not pending: {c}" for c in busy]})
        return list(rows)

    def _set_status(self, db: Session, actor: Optional[User], consultation: Consultation, status: str) -> None:
        if consultation.status == status:
            return
        before = snapshot(consultation)
        consultation.status = status
        write_audit(db, actor, Operation.UPDATE, consultation, before=before)

    def _link(self, db: Session, actor: Optional[User], cls: ConsultationClass, consultations: list[Consultation]) -> None:
        for consultation in consultations:
            link = ClassConsultation(class_id=cls.id, consultation_id=consultation.id)
            db.add(link)
            write_audit(db, actor, Operation.CREATE, link)
            self._set_status(db, actor, consultation, ConsultationStatus.TO_REVIEW)

    def _links(self, db: Session, class_id: str) -> list[tuple[ClassConsultation, Consultation]]:
        return list(
            db.execute(
                select(ClassConsultation, Consultation)
                .join(Consultation, Consultation.id == ClassConsultation.consultation_id)
                .where(ClassConsultation.class_id == class_id)
                .order_by(Consultation.asked_at.asc())
            ).all()
        )

    def _release(self, db: Session, actor: Optional[User], cls: ConsultationClass) -> None:
        for _, consultation in self._links(db, cls.id):
            if consultation.status == ConsultationStatus.TO_REVIEW:
                self._set_status(db, actor, consultation, ConsultationStatus.PENDING)

    def _record(self, db: Session, cls: ConsultationClass, now: Optional[datetime] = None) -> dict:
        data = serialize(cls)
        data["status"] = effective_status(cls, now or utcnow())
        data["consultations"] = [
            {"id": c.id, "title": c.title, "topic": c.topic, "status": c.status, "reviewed": link.reviewed}
            for link, c in self._links(db, cls.id)
        ]
        return data

    def create(self, db: Session, actor: User, course_id: str, data: ConsultationClassIn) -> dict:
        check_teacher_access(db, actor.id, course_id)
        check_teacher_access(db, data.teacher_id, course_id)
        now = utcnow()
        starts, ends = class_window(data.class_date, data.start_time, data.end_time)
        self._check_schedule(db, course_id, starts, ends, now)
        self._check_unique(db, course_id, data.name, data.description)
        consultations = self._pending_consultations(db, course_id, data.consultation_ids)

        with atomic(db):
            cls = ConsultationClass(
                course_id=course_id,
                teacher_id=data.teacher_id,
                name=data.name,
                description=data.description,
                starts_at=starts,
                ends_at=ends,
                modality=data.modality,
                status=ClassStatus.SCHEDULED,
            )
            db.add(cls)
            write_audit(db, actor, Operation.CREATE, cls)
            self._link(db, actor, cls, consultations)
        logger.info("consultation class %s scheduled with %d consultations", cls.id, len(consultations))
        return self._record(db, cls, now)

    def create_automatic(self, db: Session, course_id: str, now: Optional[datetime] = None) -> Optional[ConsultationClass]:
        """Group the oldest pending consultations into a class right before the next course class."""
        now = now or utcnow()
        upcoming = db.scalar(
            select(ConsultationClass.id).where(
                ConsultationClass.course_id == course_id,
                ConsultationClass.status.in_(OPEN_STATUSES),
                ConsultationClass.deleted_at.is_(None),
                ConsultationClass.starts_at > now,
            )
        )
        if upcoming:
            return None
        next_start = next_class_start(self._class_days(db, course_id), now)
        if next_start is None:
            logger.warning("course %s has no class days; automatic consultation class skipped", course_id)
            return None
        consultations = db.scalars(
            select(Consultation)
            .where(
                Consultation.course_id == course_id,
                Consultation.status == ConsultationStatus.PENDING,
                Consultation.deleted_at.is_(None),
            )
            .order_by(Consultation.asked_at.asc())
            .limit(AUTOMATIC_BATCH)
        ).all()
        if len(consultations) < AUTOMATIC_BATCH:
            return None
        course = db.get(Course, course_id)
        with atomic(db):
            cls = ConsultationClass(
                course_id=course_id,
                teacher_id=None,
                name=AUTOMATIC_NAME,
                description=AUTOMATIC_DESCRIPTION,
                starts_at=next_start - timedelta(hours=1),
                ends_at=next_start,
                modality=course.preferred_modality,
                status=ClassStatus.PENDING_ASSIGNMENT,
            )
            db.add(cls)
            write_audit(db, None, Operation.CREATE, cls)
            self._link(db, None, cls, list(consultations))
        logger.info("automatic consultation class %s created for course %s", cls.id, course_id)
        return cls

    def list(
        self,
        db: Session,
        actor: User,
        course_id: str,
        query: ListQuery,
        status: Optional[str] = None,
        date_from=None,
        date_to=None,
    ) -> Page:
        check_course_access(db, actor, course_id)
        stmt = apply_filters(
            select(ConsultationClass).where(ConsultationClass.course_id == course_id),
            search_filter(query.search, ConsultationClass.name, ConsultationClass.description),
            enum_filter(ConsultationClass.status, [status] if status else None, LISTED_STATUSES, "status"),
            date_range_filter(ConsultationClass.starts_at, date_from, date_to),
        )
        now = utcnow()
        page = paginate(db, stmt, query, CLASS_SORTS, "starts_at")
        return page.map(lambda cls: self._record(db, cls, now))

    def get(self, db: Session, actor: User, class_id: str) -> dict:
        cls = db.get(ConsultationClass, class_id)
        if cls is None:
            raise NotFound("Consultation class not found")
        check_course_access(db, actor, cls.course_id)
        return self._record(db, cls)

    def update(self, db: Session, actor: User, class_id: str, data: ConsultationClassUpdateIn) -> dict:
        cls = self._load(db, class_id)
        check_teacher_access(db, actor.id, cls.course_id)
        now = utcnow()
        if cls.status != ClassStatus.SCHEDULED:
            raise Forbidden("Only scheduled classes can be edited")
        if now >= cls.starts_at:
            raise Forbidden("A class that already started cannot be edited")
        changes = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}
        if not changes:
            raise ValidationFailed("Nothing to update")

        starts, ends = cls.starts_at, cls.ends_at
        if {"class_date", "start_time", "end_time"} & set(changes):
            starts, ends = class_window(
                changes.get("class_date", cls.starts_at.date()),
                changes.get("start_time", f"{cls.starts_at:%H:%M}"),
                changes.get("end_time", f"{cls.ends_at:%H:%M}"),
            )
            self._check_schedule(db, cls.course_id, starts, ends, now, exclude_id=cls.id)
        self._check_unique(db, cls.course_id, changes.get("name"), changes.get("description"), exclude_id=cls.id)

        links = {c.id: (link, c) for link, c in self._links(db, cls.id)}
        target = changes.get("consultation_ids")
        added: list[Consultation] = []
        if target is not None:
            added = [c for c in self._pending_consultations(db, cls.course_id, target, frozenset(links)) if c.id not in links]

        before = snapshot(cls)
        with atomic(db):
            for key in ("name", "description", "modality"):
                if key in changes:
                    setattr(cls, key, changes[key])
            cls.starts_at, cls.ends_at = starts, ends
            if target is not None:
                for consultation_id, (link, consultation) in links.items():
                    if consultation_id in target:
                        continue
                    write_audit(db, actor, Operation.DELETE, link, before=snapshot(link))
                    db.delete(link)
                    self._set_status(db, actor, consultation, ConsultationStatus.PENDING)
                self._link(db, actor, cls, added)
            write_audit(db, actor, Operation.UPDATE, cls, before=before)
        return self._record(db, cls, now)

    def assign(self, db: Session, actor: User, class_id: str, data: AssignClassIn) -> dict:
        """Accept an automatic class, optionally moving it to another slot."""
        cls = self._load(db, class_id)
        check_teacher_access(db, actor.id, cls.course_id)
        if cls.status != ClassStatus.PENDING_ASSIGNMENT:
            raise ValidationFailed("Only classes pending assignment can be accepted")
        now = utcnow()
        starts, ends = cls.starts_at, cls.ends_at
        if data.class_date or data.start_time or data.end_time:
            starts, ends = class_window(
                data.class_date or cls.starts_at.date(),
                data.start_time or f"{cls.starts_at:%H:%M}",
                data.end_time or f"{cls.ends_at:%H:%M}",
            )
            self._check_schedule(db, cls.course_id, starts, ends, now, exclude_id=cls.id)
        before = snapshot(cls)
        with atomic(db):
            cls.teacher_id = actor.id
            cls.status = ClassStatus.SCHEDULED
            cls.starts_at, cls.ends_at = starts, ends
            write_audit(db, actor, Operation.UPDATE, cls, before=before)
        logger.info("consultation class %s accepted by teacher %s", cls.id, actor.id)
        return self._record(db, cls, now)

    def cancel(self, db: Session, actor: User, class_id: str, data: CancelClassIn) -> dict:
        cls = self._load(db, class_id)
        check_teacher_access(db, actor.id, cls.course_id)
        now = utcnow()
        if cls.status != ClassStatus.SCHEDULED:
            raise Forbidden("Only scheduled classes can be cancelled")
        if now >= cls.starts_at:
            raise Forbidden("A class that already started cannot be cancelled")
        before = snapshot(cls)
        with atomic(db):
            self._release(db, actor, cls)
            cls.status = ClassStatus.CANCELLED
            cls.reason = data.reason
            cls.deleted_at = now
            write_audit(db, actor, Operation.DELETE, cls, before=before)
        return self._record(db, cls, now)

    def finalize(self, db: Session, actor: User, class_id: str, data: FinalizeClassIn) -> dict:
        cls = self._load(db, class_id)
        if actor.role != Role.ADMIN and cls.teacher_id != actor.id:
            raise Forbidden("Only the class teacher can finalize this class")
        if cls.status in ClassStatus.CLOSED:
            raise ValidationFailed("The class was already closed")
        links = self._links(db, cls.id)
        linked = {c.id for _, c in links}
        reviewed = set(data.reviewed_ids)
        if data.held:
            stray = sorted(reviewed - linked)
            if stray:
                raise ValidationFailed("Unknown consultations", {"reviewed_ids": [f"not part of this class: {c}" for c in stray]})
        elif not (data.reason or "").strip():
            raise ValidationFailed("A reason is required", {"reason": ["explain why the class was not held"]})

        before = snapshot(cls)
        with atomic(db):
            for link, consultation in links:
                if data.held and consultation.id in reviewed:
                    link_before = snapshot(link)
                    link.reviewed = True
                    write_audit(db, actor, Operation.UPDATE, link, before=link_before)
                    self._set_status(db, actor, consultation, ConsultationStatus.REVIEWED)
                elif consultation.status == ConsultationStatus.TO_REVIEW:
                    self._set_status(db, actor, consultation, ConsultationStatus.PENDING)
            cls.status = ClassStatus.HELD if data.held else ClassStatus.NOT_HELD
            if not data.held:
                cls.reason = data.reason.strip()
            write_audit(db, actor, Operation.UPDATE, cls, before=before)
        logger.info("consultation class %s finalized as %s", cls.id, cls.status)
        return self._record(db, cls)
