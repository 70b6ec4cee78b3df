from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .. import repositories
from ..audit import Operation, snapshot, write_audit
from ..db import atomic
from ..errors import Conflict, Forbidden, NotFound, ValidationFailed
from ..models import CourseTeacher, LinkStatus, ReinforcementSession, Role, User, utcnow
from ..queries import ListQuery, Page, apply_filters, enum_filter, paginate, search_filter
from ..schemas import UserCreateIn, UserOut, UserUpdateIn
from ..security import PasswordHasher
from . import kpis

logger = logging.getLogger(__name__)

USER_SORTS = {
    "name": User.name,
    "surname": User.surname,
    "dni": User.dni,
    "email": User.email,
    "role": User.role,
    "birth_date": User.birth_date,
    "deleted_at": User.deleted_at,
    "created_at": User.created_at,
}
STATUS_FILTERS = {"active", "inactive", "all"}
NULLABLE_FIELDS = {"dni", "birth_date"}


class UserService:
    def __init__(self, hasher: PasswordHasher):
        self.hasher = hasher

    def _ensure_unique(self, db: Session, email: Optional[str], dni: Optional[str], exclude_id: Optional[str] = None) -> None:
        if dni:
            stmt = select(User.id).where(User.dni == dni)
            if exclude_id:
                stmt = stmt.where(User.id != exclude_id)
            if db.scalar(stmt):
                raise Conflict("DNI already registered")
        if email:
            existing = repositories.user_by_email(db, email)
            if existing and existing.id != exclude_id:
                raise Conflict("Email already registered")

    def create(self, db: Session, actor: User, data: UserCreateIn) -> User:
        self._ensure_unique(db, data.email, data.dni)
        user = User(
            name=data.name,
            surname=data.surname,
            dni=data.dni,
            birth_date=data.birth_date,
            email=data.email.lower(),
            role=data.role,
            password_hash=self.hasher.hash(data.password),
        )
        with atomic(db):
            db.add(user)
            write_audit(db, actor, Operation.CREATE, user)
        logger.info("user %s created with role %s", user.id, user.role)
        return user

    def list(self, db: Session, actor: User, query: ListQuery, roles: Optional[list[str]] = None, status: Optional[str] = None) -> Page:
        status = status or "active"
        if status not in STATUS_FILTERS:
            raise ValidationFailed("Invalid filter", {"status": ["expected active, inactive or all"]})
        stmt = select(User).where(User.id != actor.id)
        stmt = apply_filters(
            stmt,
            search_filter(query.search, User.name, User.surname, User.email, User.dni),
            enum_filter(User.role, roles, Role.ALL, "roles"),
        )
        if status == "active":
            stmt = stmt.where(User.deleted_at.is_(None))
        elif status == "inactive":
            stmt = stmt.where(User.deleted_at.is_not(None))
        page = paginate(db, stmt, query, USER_SORTS, "surname")
        return page.map(lambda u: UserOut.model_validate(u).model_dump())

    def teachers(self, db: Session) -> list[dict]:
        rows = db.scalars(
            select(User).where(User.role == Role.TEACHER, User.deleted_at.is_(None)).order_by(User.surname.asc(), User.name.asc())
        ).all()
        return [{"id": u.id, "name": u.name, "surname": u.surname} for u in rows]

    def get(self, db: Session, user_id: str) -> User:
        user = repositories.live_user(db, user_id)
        if not user:
            raise NotFound("User not found")
        return user

    def release_links(self, db: Session, actor: User, user: User, role: str) -> None:
        """Close the links a user holds under `role` (used on delete and on role change)."""
        now = utcnow()
        if role == Role.STUDENT:
            enrollment = repositories.active_enrollment(db, user.id)
            if enrollment:
                before = snapshot(enrollment)
                enrollment.status = LinkStatus.INACTIVE
                enrollment.removed_at = now
                write_audit(db, actor, Operation.UPDATE, enrollment, before=before)
                kpis.recalculate_course_progress(db, enrollment.course_id, now)
                kpis.recalculate_course_difficulties(db, enrollment.course_id, now)
            kpis.cancel_pending_sessions(db, actor, now, ReinforcementSession.student_id == user.id)
        elif role == Role.TEACHER:
            for link in db.scalars(
                select(CourseTeacher).where(CourseTeacher.teacher_id == user.id, CourseTeacher.status == LinkStatus.ACTIVE)
            ).all():
                before = snapshot(link)
                link.status = LinkStatus.INACTIVE
                link.removed_at = now
                write_audit(db, actor, Operation.UPDATE, link, before=before)

    def update(self, db: Session, actor: User, user_id: str, data: UserUpdateIn) -> User:
        user = self.get(db, user_id)
        changes = data.model_dump(exclude_unset=True, exclude={"confirm_password"})
        password = changes.pop("password", None)
        # an explicit null clears a nullable column; elsewhere it means "unchanged"
        changes = {k: v for k, v in changes.items() if v is not None or k in NULLABLE_FIELDS}
        if "email" in changes:
            changes["email"] = changes["email"].lower()
        self._ensure_unique(db, changes.get("email"), changes.get("dni"), exclude_id=user.id)

        before = snapshot(user)
        with atomic(db):
            new_role = changes.get("role")
            if new_role and new_role != user.role:
                if user.id == actor.id:
                    raise Forbidden("You cannot change your own role")
                self.release_links(db, actor, user, user.role)
            for key, value in changes.items():
                setattr(user, key, value)
            if password:
                user.password_hash = self.hasher.hash(password)
            write_audit(db, actor, Operation.UPDATE, user, before=before)
        return user

    def remove(self, db: Session, actor: User, user_id: str) -> User:
        """Soft-delete a user. Deleting an already deleted user changes nothing."""
        user = db.get(User, user_id)
        if not user:
            raise NotFound("User not found")
        if user.deleted_at is not None:
            return user
        if user.id == actor.id:
            raise Forbidden("You cannot delete your own account")
        before = snapshot(user)
        with atomic(db):
            self.release_links(db, actor, user, user.role)
            user.deleted_at = utcnow()
            write_audit(db, actor, Operation.DELETE, user, before=before)
        logger.info("user %s soft-deleted", user.id)
        return user
