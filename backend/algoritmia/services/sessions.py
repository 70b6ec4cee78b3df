"""
Reinforcement sessions: teacher-assigned or automatic question sets a student
answers before a deadline, whose score re-grades the student's difficulty.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from ..access import check_course_access, check_student_access, check_teacher_access
from ..audit import Operation, snapshot, write_audit
from ..db import atomic
from ..errors import Conflict, Forbidden, NotFound, ValidationFailed
from ..models import (
    WEEKDAYS,
    ChangeSource,
    ClassDay,
    Difficulty,
    Grade,
    Question,
    QuestionOption,
    ReinforcementSession,
    Role,
    SessionQuestion,
    SessionResult,
    SessionStatus,
    StudentAnswer,
    User,
    utcnow,
)
from ..normalize import serialize
from ..queries import ListQuery, Page, apply_filters, date_range_filter, enum_filter, paginate
from ..schemas import SessionCreateIn, SessionResolveIn, SessionUpdateIn
from . import kpis

logger = logging.getLogger(__name__)

SYSTEM_QUESTIONS_PER_GRADE = 5
MAX_EXTRA_QUESTIONS = 3
MAX_DEADLINE_DAYS = 7
AUTOMATIC_TIME_LIMIT = 20
AUTOMATIC_LOOKAHEAD_DAYS = 21
CLASS_BUFFER_MINUTES = 60
REQUIRED_GRADES = {
    Grade.LOW: (Grade.LOW,),
    Grade.MEDIUM: (Grade.LOW, Grade.MEDIUM),
    Grade.HIGH: (Grade.LOW, Grade.MEDIUM, Grade.HIGH),
}
SESSION_SORTS = {
    "number": ReinforcementSession.number,
    "deadline": ReinforcementSession.deadline,
    "created_at": ReinforcementSession.created_at,
    "status": ReinforcementSession.status,
    "grade": ReinforcementSession.grade,
}


def grade_for_score(pct: float) -> str:
    if pct < 40:
        return Grade.HIGH
    if pct < 60:
        return Grade.MEDIUM
    if pct < 85:
        return Grade.LOW
    return Grade.NONE


def check_question_mix(grade: str, questions: list[Question]) -> None:
    extra = [q for q in questions if q.teacher_id is not None]
    if len(extra) > MAX_EXTRA_QUESTIONS:
        raise ValidationFailed(f"At most {MAX_EXTRA_QUESTIONS} extra questions are allowed", {"question_ids": ["too many extra questions"]})
    system = [q for q in questions if q.teacher_id is None]
    counts = {g: sum(1 for q in system if q.grade == g) for g in (Grade.LOW, Grade.MEDIUM, Grade.HIGH)}
    required = REQUIRED_GRADES[grade]
    expected = {g: SYSTEM_QUESTIONS_PER_GRADE if g in required else 0 for g in counts}
    if counts != expected:
        raise ValidationFailed(
            f"System questions do not match the requirements for grade {grade}",
            {"question_ids": [f"expected {SYSTEM_QUESTIONS_PER_GRADE} system questions for each of: {', '.join(required)}"]},
        )


def automatic_deadline(days: list[ClassDay], now: datetime) -> datetime:
    """Start of the next class held on a later day; a week from now when no class is scheduled."""
    return next_class_start(days, now) or now + timedelta(days=MAX_DEADLINE_DAYS)


def next_class_start(days: list[ClassDay], now: datetime) -> Optional[datetime]:
    for offset in range(1, AUTOMATIC_LOOKAHEAD_DAYS + 1):
        candidate = now + timedelta(days=offset)
        if candidate.weekday() >= len(WEEKDAYS):
            continue
        todays = sorted((d for d in days if d.day == WEEKDAYS[candidate.weekday()]), key=lambda d: d.start_time)
        if todays:
            start = todays[0].start_time
            return candidate.replace(hour=start.hour, minute=start.minute, second=0, microsecond=0)
    return None


def minute_of_day(value: datetime) -> int:
    return value.hour * 60 + value.minute


def check_deadline_clear_of_classes(days: list[ClassDay], deadline: datetime) -> None:
    """A deadline may not fall after a class starts and before an hour past its end."""
    if deadline.weekday() >= len(WEEKDAYS):
        return
    weekday = WEEKDAYS[deadline.weekday()]
    at = minute_of_day(deadline)
    for day in days:
        if day.day != weekday:
            continue
        if minute_of_day(day.start_time) < at < minute_of_day(day.end_time) + CLASS_BUFFER_MINUTES:
            raise ValidationFailed(
                "Invalid deadline",
                {"deadline": [f"deadline clashes with the {weekday} class starting at {day.start_time:%H:%M}"]},
            )


class SessionService:
    def _next_number(self, db: Session, course_id: str) -> int:
        last = db.scalar(select(func.max(ReinforcementSession.number)).where(ReinforcementSession.course_id == course_id))
        return (last or 0) + 1

    def _attach_questions(self, db: Session, session: ReinforcementSession, question_ids: list[str]) -> None:
        for question_id in question_ids:
            db.add(SessionQuestion(session_id=session.id, question_id=question_id))

    def _class_days(self, db: Session, course_id: str) -> list[ClassDay]:
        return list(db.scalars(select(ClassDay).where(ClassDay.course_id == course_id)).all())

    def _check_deadline(self, db: Session, course_id: str, deadline: datetime, now: datetime) -> None:
        if deadline <= now:
            raise ValidationFailed("Invalid deadline", {"deadline": ["deadline must be in the future"]})
        if deadline > now + timedelta(days=MAX_DEADLINE_DAYS):
            raise ValidationFailed("Invalid deadline", {"deadline": [f"deadline cannot be more than {MAX_DEADLINE_DAYS} days ahead"]})
        check_deadline_clear_of_classes(self._class_days(db, course_id), deadline)

    def _check_questions(self, db: Session, question_ids: list[str], difficulty_id: str, grade: str) -> None:
        questions = db.scalars(
            select(Question).where(Question.id.in_(question_ids), Question.deleted_at.is_(None))
        ).all()
        if len(questions) != len(question_ids):
            raise ValidationFailed("Unknown questions", {"question_ids": ["one or more questions were not found"]})
        if any(q.difficulty_id != difficulty_id for q in questions):
            raise ValidationFailed("Mismatched questions", {"question_ids": ["every question must belong to the session difficulty"]})
        check_question_mix(grade, list(questions))

    def create(self, db: Session, teacher: User, course_id: str, data: SessionCreateIn) -> dict:
        now = utcnow()
        check_teacher_access(db, teacher.id, course_id)
        check_student_access(db, data.student_id, course_id)
        pending = db.scalar(
            select(ReinforcementSession.id).where(
                ReinforcementSession.student_id == data.student_id,
                ReinforcementSession.course_id == course_id,
                ReinforcementSession.status == SessionStatus.PENDING,
                ReinforcementSession.deleted_at.is_(None),
                ReinforcementSession.teacher_id.is_not(None),
            )
        )
        if pending:
            raise Conflict("The student already has a pending teacher-assigned session in this course")
        self._check_deadline(db, course_id, data.deadline, now)
        if not db.get(Difficulty, data.difficulty_id):
            raise NotFound("Difficulty not found")
        self._check_questions(db, data.question_ids, data.difficulty_id, data.grade)

        with atomic(db):
            session = ReinforcementSession(
                number=self._next_number(db, course_id),
                course_id=course_id,
                student_id=data.student_id,
                teacher_id=teacher.id,
                difficulty_id=data.difficulty_id,
                grade=data.grade,
                deadline=data.deadline,
                time_limit_minutes=data.time_limit_minutes,
                status=SessionStatus.PENDING,
            )
            db.add(session)
            db.flush()
            self._attach_questions(db, session, data.question_ids)
            write_audit(db, teacher, Operation.CREATE, session)
        return serialize(session)

    def create_automatic(self, db: Session, course_id: str, student_id: str, difficulty_id: str) -> Optional[ReinforcementSession]:
        existing = db.scalar(
            select(ReinforcementSession.id).where(
                ReinforcementSession.course_id == course_id,
                ReinforcementSession.student_id == student_id,
                ReinforcementSession.difficulty_id == difficulty_id,
                ReinforcementSession.status == SessionStatus.PENDING,
                ReinforcementSession.deleted_at.is_(None),
            )
        )
        if existing:
            return None
        question_ids: list[str] = []
        for grade in REQUIRED_GRADES[Grade.HIGH]:
            picked = db.scalars(
                select(Question.id)
                .where(
                    Question.difficulty_id == difficulty_id,
                    Question.grade == grade,
                    Question.teacher_id.is_(None),
                    Question.deleted_at.is_(None),
                )
                .order_by(func.random())
                .limit(SYSTEM_QUESTIONS_PER_GRADE)
            ).all()
            if len(picked) < SYSTEM_QUESTIONS_PER_GRADE:
                logger.warning("not enough system questions for automatic session: course=%s difficulty=%s", course_id, difficulty_id)
                return None
            question_ids.extend(picked)

        now = utcnow()
        days = self._class_days(db, course_id)
        with atomic(db):
            session = ReinforcementSession(
                number=self._next_number(db, course_id),
                course_id=course_id,
                student_id=student_id,
                teacher_id=None,
                difficulty_id=difficulty_id,
                grade=Grade.HIGH,
                deadline=automatic_deadline(days, now),
                time_limit_minutes=AUTOMATIC_TIME_LIMIT,
                status=SessionStatus.PENDING,
            )
            db.add(session)
            db.flush()
            self._attach_questions(db, session, question_ids)
            write_audit(db, None, Operation.CREATE, session)
        logger.info("automatic session %s created for student %s", session.id, student_id)
        return session

    def list(
        self,
        db: Session,
        actor: User,
        course_id: str,
        query: ListQuery,
        student_id: Optional[str] = None,
        difficulty_id: Optional[str] = None,
        grade: Optional[str] = None,
        status: Optional[str] = None,
        number: Optional[int] = None,
        date_from=None,
        date_to=None,
    ) -> Page:
        check_course_access(db, actor, course_id)
        stmt = select(ReinforcementSession).where(
            ReinforcementSession.course_id == course_id, ReinforcementSession.deleted_at.is_(None)
        )
        if actor.role == Role.STUDENT:
            student_id = actor.id
        stmt = apply_filters(
            stmt,
            enum_filter(ReinforcementSession.student_id, [student_id] if student_id else None),
            enum_filter(ReinforcementSession.difficulty_id, [difficulty_id] if difficulty_id else None),
            enum_filter(ReinforcementSession.grade, [grade] if grade else None, Grade.ALL, "grade"),
            enum_filter(ReinforcementSession.status, [status] if status else None, SessionStatus.ALL, "status"),
            ReinforcementSession.number == number if number else None,
            date_range_filter(ReinforcementSession.created_at, date_from, date_to),
        )
        page = paginate(db, stmt, query, SESSION_SORTS, "number")
        return page.map(serialize)

    def _load(self, db: Session, course_id: str, session_id: str) -> ReinforcementSession:
        session = db.scalar(
            select(ReinforcementSession).where(ReinforcementSession.id == session_id, ReinforcementSession.course_id == course_id)
        )
        if not session:
            raise NotFound("Reinforcement session not found")
        return session

    def _questions(self, db: Session, session_id: str, reveal: bool) -> list[dict]:
        questions = db.scalars(
            select(Question)
            .join(SessionQuestion, SessionQuestion.question_id == Question.id)
            .where(SessionQuestion.session_id == session_id)
            .order_by(Question.grade.asc(), Question.created_at.asc())
        ).all()
        options: dict[str, list[dict]] = {}
        for option in db.scalars(select(QuestionOption).where(QuestionOption.question_id.in_([q.id for q in questions]))).all():
            item = {"id": option.id, "text": option.text}
            if reveal:
                item["is_correct"] = option.is_correct
            options.setdefault(option.question_id, []).append(item)
        return [{**serialize(q), "options": options.get(q.id, [])} for q in questions]

    def get(self, db: Session, actor: User, course_id: str, session_id: str) -> dict:
        check_course_access(db, actor, course_id)
        session = self._load(db, course_id, session_id)
        if session.deleted_at is not None:
            raise NotFound("Reinforcement session not found")
        if actor.role == Role.STUDENT and session.student_id != actor.id:
            raise Forbidden("You cannot view this session")
        data = serialize(session)
        reveal = actor.role != Role.STUDENT or session.status == SessionStatus.COMPLETED
        data["questions"] = self._questions(db, session.id, reveal)
        result = db.scalar(select(SessionResult).where(SessionResult.session_id == session.id))
        data["result"] = serialize(result) if result else None
        return data

    def cancel(self, db: Session, teacher: User, course_id: str, session_id: str) -> dict:
        check_teacher_access(db, teacher.id, course_id)
        session = self._load(db, course_id, session_id)
        if session.deleted_at is not None:
            raise NotFound("Reinforcement session not found")
        if session.status != SessionStatus.PENDING:
            raise Forbidden("Only pending sessions can be cancelled")
        if utcnow() >= session.deadline:
            raise Forbidden("A session whose deadline has passed cannot be cancelled")
        with atomic(db):
            kpis.cancel_session(db, teacher, session, utcnow())
        return serialize(session)

    def update(self, db: Session, teacher: User, course_id: str, session_id: str, data: SessionUpdateIn) -> dict:
        """Edit a pending session before its deadline. The student stays fixed."""
        check_teacher_access(db, teacher.id, course_id)
        session = self._load(db, course_id, session_id)
        if session.deleted_at is not None:
            raise NotFound("Reinforcement session not found")
        changes = data.model_dump(exclude_unset=True)
        changes = {k: v for k, v in changes.items() if v is not None}
        if changes.pop("student_id", session.student_id) != session.student_id:
            raise ValidationFailed("Invalid update", {"student_id": ["the student of a session cannot change"]})
        if session.status != SessionStatus.PENDING:
            raise Forbidden("Only pending sessions can be edited")
        now = utcnow()
        if now >= session.deadline:
            raise Forbidden("A session whose deadline has passed cannot be edited")
        if not changes:
            raise ValidationFailed("Nothing to update")

        if "deadline" in changes:
            self._check_deadline(db, course_id, changes["deadline"], now)
        difficulty_id = changes.get("difficulty_id", session.difficulty_id)
        grade = changes.get("grade", session.grade)
        if not db.get(Difficulty, difficulty_id):
            raise NotFound("Difficulty not found")
        question_ids = changes.pop("question_ids", None)
        if question_ids is not None or "difficulty_id" in changes or "grade" in changes:
            current = question_ids
            if current is None:
                current = list(db.scalars(select(SessionQuestion.question_id).where(SessionQuestion.session_id == session.id)).all())
            self._check_questions(db, current, difficulty_id, grade)

        before = snapshot(session)
        with atomic(db):
            for key, value in changes.items():
                setattr(session, key, value)
            if question_ids is not None:
                db.execute(delete(SessionQuestion).where(SessionQuestion.session_id == session.id))
                self._attach_questions(db, session, question_ids)
            write_audit(db, teacher, Operation.UPDATE, session, before=before)
        logger.info("session %s updated by teacher %s", session.id, teacher.id)
        return serialize(session)

    def start(self, db: Session, student: User, course_id: str, session_id: str) -> dict:
        session = self._load(db, course_id, session_id)
        if session.student_id != student.id:
            raise Forbidden("You cannot access this session")
        if session.started_at is not None and session.status == SessionStatus.IN_PROGRESS:
            return serialize(session)
        if session.status != SessionStatus.PENDING or session.deleted_at is not None:
            raise ValidationFailed("The session is not pending")
        before = snapshot(session)
        with atomic(db):
            session.started_at = utcnow()
            session.status = SessionStatus.IN_PROGRESS
            write_audit(db, student, Operation.UPDATE, session, before=before)
        return serialize(session)

    def resolve(self, db: Session, student: User, course_id: str, session_id: str, data: SessionResolveIn) -> dict:
        session = self._load(db, course_id, session_id)
        if session.student_id != student.id:
            raise Forbidden("You cannot resolve this session")
        if session.status not in (SessionStatus.PENDING, SessionStatus.IN_PROGRESS) or session.deleted_at is not None:
            raise ValidationFailed("The session was already completed or cancelled")

        question_ids = set(db.scalars(select(SessionQuestion.question_id).where(SessionQuestion.session_id == session.id)).all())
        correct_options = {
            o.question_id: o.id
            for o in db.scalars(
                select(QuestionOption).where(QuestionOption.question_id.in_(question_ids), QuestionOption.is_correct.is_(True))
            ).all()
        }
        # last answer per question wins; answers to foreign questions are ignored
        answers = {a.question_id: a.option_id for a in data.answers if a.question_id in question_ids}
        correct = sum(1 for q, o in answers.items() if correct_options.get(q) == o)
        total = len(question_ids)
        pct = correct / total * 100 if total else 0.0
        new_grade = grade_for_score(pct)
        now = utcnow()

        before = snapshot(session)
        with atomic(db):
            if kpis.record_grade(db, student, student.id, course_id, session.difficulty_id, new_grade, ChangeSource.REINFORCEMENT_SESSION, now):
                kpis.recalculate_course_difficulties(db, course_id, now)
            db.add(
                SessionResult(
                    session_id=session.id,
                    correct=correct,
                    incorrect=total - correct,
                    pct_correct=pct,
                    previous_grade=session.grade,
                    new_grade=new_grade,
                    completed_at=now,
                )
            )
            for question_id, option_id in answers.items():
                db.add(
                    StudentAnswer(
                        session_id=session.id,
                        question_id=question_id,
                        option_id=option_id,
                        is_correct=correct_options.get(question_id) == option_id,
                    )
                )
            session.status = SessionStatus.COMPLETED
            write_audit(db, student, Operation.UPDATE, session, before=before)
        return {"correct": correct, "incorrect": total - correct, "pct_correct": pct, "new_grade": new_grade}

    def expire_overdue(self, db: Session, actor: Optional[User] = None, now: Optional[datetime] = None) -> dict:
        """Close sessions whose deadline passed: untouched ones become Not_done, started ones Incomplete."""
        now = now or utcnow()
        transitions = (
            (SessionStatus.PENDING, ReinforcementSession.started_at.is_(None), SessionStatus.NOT_DONE),
            (SessionStatus.IN_PROGRESS, ReinforcementSession.started_at.is_not(None), SessionStatus.INCOMPLETE),
        )
        counts = {}
        with atomic(db):
            for current, started, target in transitions:
                overdue = db.scalars(
                    select(ReinforcementSession).where(
                        ReinforcementSession.status == current,
                        ReinforcementSession.deadline < now,
                        started,
                        ReinforcementSession.deleted_at.is_(None),
                    )
                ).all()
                for session in overdue:
                    before = snapshot(session)
                    session.status = target
                    write_audit(db, actor, Operation.UPDATE, session, before=before)
                counts[target] = len(overdue)
        not_done, incomplete = counts[SessionStatus.NOT_DONE], counts[SessionStatus.INCOMPLETE]
        if not_done or incomplete:
            logger.info("expired sessions: %d not done, %d incomplete", not_done, incomplete)
        return {"not_done": not_done, "incomplete": incomplete}
