from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from .. import repositories
from ..access import check_student_access, check_teacher_access
from ..audit import Operation, snapshot, write_audit
from ..db import atomic
from ..errors import Conflict, Forbidden, NotFound, ValidationFailed
from ..models import TOPICS, Consultation, ConsultationAnswer, ConsultationStatus, User, utcnow
from ..normalize import serialize
from ..queries import ListQuery, Page, apply_filters, date_range_filter, enum_filter, paginate, search_filter
from ..schemas import AnswerConsultationIn, ConsultationIn, ConsultationUpdateIn, RateConsultationIn
from .consultation_classes import AUTOMATIC_BATCH, ConsultationClassService

logger = logging.getLogger(__name__)

CONSULTATION_SORTS = {
    "asked_at": Consultation.asked_at,
    "title": Consultation.title,
    "topic": Consultation.topic,
    "status": Consultation.status,
}
ANSWERABLE = (ConsultationStatus.PENDING, ConsultationStatus.TO_REVIEW)


class ConsultationService:
    def __init__(self, classes: ConsultationClassService):
        self.classes = classes

    def _load(self, db: Session, consultation_id: str) -> Consultation:
        consultation = db.get(Consultation, consultation_id)
        if consultation is None or consultation.deleted_at is not None:
            raise NotFound("Consultation not found")
        return consultation

    def _owned_pending(self, db: Session, student: User, consultation_id: str) -> Consultation:
        consultation = self._load(db, consultation_id)
        if consultation.student_id != student.id:
            raise Forbidden("This consultation belongs to another student")
        if consultation.status != ConsultationStatus.PENDING:
            raise Forbidden("Only pending consultations can be changed")
        return consultation

    def _check_text(self, db: Session, course_id: str, title: str, description: str, exclude_id: Optional[str] = None) -> None:
        if title.strip().lower() == description.strip().lower():
            raise ValidationFailed("Invalid consultation", {"description": ["title and description must differ"]})
        stmt = select(Consultation.id).where(
            Consultation.course_id == course_id,
            Consultation.deleted_at.is_(None),
            or_(func.lower(Consultation.title) == title.lower(), func.lower(Consultation.description) == description.lower()),
        )
        if exclude_id:
            stmt = stmt.where(Consultation.id != exclude_id)
        if db.scalar(stmt):
            raise Conflict("A consultation with that title or description already exists in this course")

    def _records(self, db: Session, rows: list[tuple[Consultation, User]]) -> list[dict]:
        ids = [c.id for c, _ in rows]
        answers = {
            a.consultation_id: a
            for a in db.scalars(select(ConsultationAnswer).where(ConsultationAnswer.consultation_id.in_(ids))).all()
        } if ids else {}
        out = []
        for consultation, student in rows:
            data = serialize(consultation)
            data["student"] = {"id": student.id, "name": student.name, "surname": student.surname}
            answer = answers.get(consultation.id)
            data["answer"] = serialize(answer) if answer else None
            out.append(data)
        return out

    def _list(
        self,
        db: Session,
        course_id: str,
        query: ListQuery,
        student_id: Optional[str] = None,
        topic: Optional[str] = None,
        status: Optional[str] = None,
        date_from=None,
        date_to=None,
    ) -> Page:
        stmt = (
            select(Consultation, User)
            .join(User, User.id == Consultation.student_id)
            .where(Consultation.course_id == course_id, Consultation.deleted_at.is_(None))
        )
        stmt = apply_filters(
            stmt,
            enum_filter(Consultation.student_id, [student_id] if student_id else None),
            enum_filter(Consultation.topic, [topic] if topic else None, TOPICS, "topic"),
            enum_filter(Consultation.status, [status] if status else None, ConsultationStatus.ALL, "status"),
            search_filter(query.search, Consultation.title, Consultation.description),
            date_range_filter(Consultation.asked_at, date_from, date_to),
        )
        page = paginate(db, stmt, query, CONSULTATION_SORTS, "asked_at", scalars=False)
        return Page(data=self._records(db, page.data), total=page.total, page=page.page, limit=page.limit)

    def create(self, db: Session, student: User, course_id: str, data: ConsultationIn) -> dict:
        check_student_access(db, student.id, course_id)
        if not repositories.live_course(db, course_id):
            raise NotFound("Course not found")
        self._check_text(db, course_id, data.title, data.description)
        with atomic(db):
            consultation = Consultation(
                course_id=course_id,
                student_id=student.id,
                title=data.title,
                description=data.description,
                topic=data.topic,
                status=ConsultationStatus.PENDING,
                asked_at=data.asked_at or utcnow(),
            )
            db.add(consultation)
            write_audit(db, student, Operation.CREATE, consultation)
        teachers = repositories.active_teachers_of_course(db, course_id)
        logger.info("consultation %s created in course %s; notifying %d teachers", consultation.id, course_id, len(teachers))

        pending = db.scalar(
            select(func.count(Consultation.id)).where(
                Consultation.course_id == course_id,
                Consultation.status == ConsultationStatus.PENDING,
                Consultation.deleted_at.is_(None),
            )
        )
        automatic = self.classes.create_automatic(db, course_id) if pending >= AUTOMATIC_BATCH else None
        data = serialize(consultation)
        data["automatic_class_id"] = automatic.id if automatic else None
        return data

    def list_own(self, db: Session, student: User, course_id: str, query: ListQuery, topic=None, status=None, date_from=None, date_to=None) -> Page:
        check_student_access(db, student.id, course_id)
        return self._list(db, course_id, query, student.id, topic, status, date_from, date_to)

    def list_public(self, db: Session, student: User, course_id: str, query: ListQuery, topic=None, status=None, date_from=None, date_to=None) -> Page:
        """Every live consultation of the course, so students can see what classmates already asked."""
        check_student_access(db, student.id, course_id)
        return self._list(db, course_id, query, None, topic, status, date_from, date_to)

    def list_course(self, db: Session, teacher: User, course_id: str, query: ListQuery, topic=None, status=None, date_from=None, date_to=None) -> Page:
        check_teacher_access(db, teacher.id, course_id)
        return self._list(db, course_id, query, None, topic, status, date_from, date_to)

    def pending(self, db: Session, teacher: User, course_id: str) -> list[dict]:
        check_teacher_access(db, teacher.id, course_id)
        rows = db.execute(
            select(Consultation, User)
            .join(User, User.id == Consultation.student_id)
            .where(
                Consultation.course_id == course_id,
                Consultation.status == ConsultationStatus.PENDING,
                Consultation.deleted_at.is_(None),
            )
            .order_by(Consultation.asked_at.asc())
        ).all()
        return self._records(db, list(rows))

    def update(self, db: Session, student: User, consultation_id: str, data: ConsultationUpdateIn) -> dict:
        consultation = self._owned_pending(db, student, consultation_id)
        changes = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}
        if not changes:
            raise ValidationFailed("Nothing to update")
        self._check_text(
            db,
            consultation.course_id,
            changes.get("title", consultation.title),
            changes.get("description", consultation.description),
            exclude_id=consultation.id,
        )
        before = snapshot(consultation)
        with atomic(db):
            for key, value in changes.items():
                setattr(consultation, key, value)
            write_audit(db, student, Operation.UPDATE, consultation, before=before)
        return serialize(consultation)

    def remove(self, db: Session, student: User, consultation_id: str) -> dict:
        consultation = self._owned_pending(db, student, consultation_id)
        before = snapshot(consultation)
        with atomic(db):
            consultation.deleted_at = utcnow()
            write_audit(db, student, Operation.DELETE, consultation, before=before)
        return serialize(consultation)

    def answer(self, db: Session, teacher: User, consultation_id: str, data: AnswerConsultationIn) -> dict:
        consultation = self._load(db, consultation_id)
        check_teacher_access(db, teacher.id, consultation.course_id)
        if db.scalar(select(ConsultationAnswer.id).where(ConsultationAnswer.consultation_id == consultation.id)):
            raise Conflict("This consultation was already answered")
        if consultation.status not in ANSWERABLE:
            raise Conflict("This consultation is no longer open")
        before = snapshot(consultation)
        with atomic(db):
            answer = ConsultationAnswer(consultation_id=consultation.id, teacher_id=teacher.id, text=data.text, answered_at=utcnow())
            db.add(answer)
            write_audit(db, teacher, Operation.CREATE, answer)
            consultation.status = ConsultationStatus.REVIEWED
            write_audit(db, teacher, Operation.UPDATE, consultation, before=before)
        logger.info("consultation %s answered by teacher %s", consultation.id, teacher.id)
        return {**serialize(consultation), "answer": serialize(answer)}

    def rate(self, db: Session, student: User, consultation_id: str, data: RateConsultationIn) -> dict:
        consultation = self._load(db, consultation_id)
        if consultation.student_id != student.id:
            raise Forbidden("This consultation belongs to another student")
        if consultation.status != ConsultationStatus.REVIEWED:
            raise Forbidden("Only reviewed consultations can be rated")
        before = snapshot(consultation)
        with atomic(db):
            consultation.rating = data.rating
            consultation.rating_comment = (data.comment or "").strip() or None
            consultation.status = ConsultationStatus.RESOLVED
            write_audit(db, student, Operation.UPDATE, consultation, before=before)
        return serialize(consultation)
