from __future__ import annotations

from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from ..access import check_teacher_access
from ..audit import Operation, write_audit
from ..db import atomic
from ..errors import NotFound
from ..models import Difficulty, Grade, Question, QuestionOption, User
from ..normalize import serialize
from ..queries import ListQuery, Page, apply_filters, enum_filter, paginate, search_filter
from ..schemas import QuestionIn

QUESTION_SORTS = {"created_at": Question.created_at, "grade": Question.grade, "statement": Question.statement}


class QuestionService:
    def _options(self, db: Session, question_ids: list[str]) -> dict[str, list[dict]]:
        grouped: dict[str, list[dict]] = {}
        if not question_ids:
            return grouped
        for option in db.scalars(select(QuestionOption).where(QuestionOption.question_id.in_(question_ids))).all():
            grouped.setdefault(option.question_id, []).append(serialize(option))
        return grouped

    def list(
        self,
        db: Session,
        teacher: User,
        course_id: str,
        query: ListQuery,
        difficulty_id: Optional[str] = None,
        grade: Optional[str] = None,
        origin: Optional[str] = None,
    ) -> Page:
        """System questions plus the ones this teacher authored. `origin` narrows to `system` or `own`."""
        check_teacher_access(db, teacher.id, course_id)
        stmt = select(Question).where(
            Question.deleted_at.is_(None),
            or_(Question.teacher_id.is_(None), Question.teacher_id == teacher.id),
        )
        if origin == "system":
            stmt = stmt.where(Question.teacher_id.is_(None))
        elif origin == "own":
            stmt = stmt.where(Question.teacher_id == teacher.id)
        stmt = apply_filters(
            stmt,
            search_filter(query.search, Question.statement),
            enum_filter(Question.difficulty_id, [difficulty_id] if difficulty_id else None),
            enum_filter(Question.grade, [grade] if grade else None, Grade.ALL, "grade"),
        )
        page = paginate(db, stmt, query, QUESTION_SORTS, "created_at")
        options = self._options(db, [q.id for q in page.data])
        return page.map(lambda q: {**serialize(q), "options": options.get(q.id, [])})

    def create(self, db: Session, teacher: User, course_id: str, data: QuestionIn) -> dict:
        check_teacher_access(db, teacher.id, course_id)
        if not db.get(Difficulty, data.difficulty_id):
            raise NotFound("Difficulty not found")
        with atomic(db):
            question = Question(
                difficulty_id=data.difficulty_id,
                grade=data.grade,
                statement=data.statement,
                teacher_id=teacher.id,
            )
            db.add(question)
            db.flush()
            options = [QuestionOption(question_id=question.id, text=o.text, is_correct=o.is_correct) for o in data.options]
            db.add_all(options)
            write_audit(db, teacher, Operation.CREATE, question)
        return {**serialize(question), "options": [serialize(o) for o in options]}
