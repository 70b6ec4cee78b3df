from __future__ import annotations

import logging
from datetime import timedelta
from typing import Protocol

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from .. import repositories
from ..audit import Operation, snapshot, write_audit
from ..config import Settings
from ..db import atomic
from ..errors import Forbidden, Unauthorized
from ..models import (
    Difficulty,
    Mission,
    MissionCompletion,
    RefreshToken,
    Role,
    StudentDifficulty,
    User,
    utcnow,
)
from ..normalize import difficulty_row, serialize
from ..schemas import ChangePasswordIn, ResetPasswordIn, UserOut
from ..security import PasswordHasher, ResetTokens, TokenIssuer, fingerprint

logger = logging.getLogger(__name__)


class ResetNotifier(Protocol):
    def send_reset_link(self, user: User, link: str) -> None: ...


class LoggingResetNotifier:
    """Stand-in for e-mail delivery: records that a link was issued, never the link itself."""

    def send_reset_link(self, user: User, link: str) -> None:
        logger.info("password reset link issued for user %s", user.id)


class AuthService:
    def __init__(
        self,
        settings: Settings,
        hasher: PasswordHasher,
        tokens: TokenIssuer,
        reset_tokens: ResetTokens,
        notifier: ResetNotifier,
    ):
        self.settings = settings
        self.hasher = hasher
        self.tokens = tokens
        self.reset_tokens = reset_tokens
        self.notifier = notifier

    def _authenticate(self, db: Session, email: str, password: str) -> User:
        user = repositories.user_by_email(db, email)
        if not user or not self.hasher.verify(password, user.password_hash):
            raise Unauthorized("Invalid credentials")
        if user.deleted_at is not None:
            raise Unauthorized("User is inactive")
        return user

    def _issue(self, db: Session, user: User) -> dict:
        access = self.tokens.access_token(user)
        refresh = self.tokens.refresh_token(user)
        db.add(
            RefreshToken(
                user_id=user.id,
                token_hash=fingerprint(refresh),
                expires_at=utcnow() + timedelta(days=self.settings.refresh_token_days),
            )
        )
        return {"access_token": access, "refresh_token": refresh, "token_type": "bearer"}

    def login(self, db: Session, email: str, password: str) -> dict:
        user = self._authenticate(db, email, password)
        first_login = user.last_access is None
        with atomic(db):
            user.last_access = utcnow()
            payload = self._issue(db, user)
        payload["user"] = UserOut.model_validate(user).model_dump()
        payload["first_login"] = first_login
        return payload

    def refresh(self, db: Session, refresh_token: str) -> dict:
        claims = self.tokens.decode(refresh_token, "refresh")
        stored = db.scalar(select(RefreshToken).where(RefreshToken.token_hash == fingerprint(refresh_token)))
        if not stored or stored.user_id != claims["sub"] or stored.expires_at < utcnow():
            raise Unauthorized("Invalid refresh token")
        user = repositories.live_user(db, stored.user_id)
        if not user:
            raise Unauthorized("Invalid user")
        with atomic(db):
            db.delete(stored)
            payload = self._issue(db, user)
        return payload

    def logout(self, db: Session, user: User) -> None:
        with atomic(db):
            db.execute(delete(RefreshToken).where(RefreshToken.user_id == user.id))

    def change_password(self, db: Session, user: User, data: ChangePasswordIn) -> None:
        if not self.hasher.verify(data.current_password, user.password_hash):
            raise Unauthorized("Current password is incorrect")
        before = snapshot(user)
        with atomic(db):
            user.password_hash = self.hasher.hash(data.new_password)
            db.execute(delete(RefreshToken).where(RefreshToken.user_id == user.id))
            write_audit(db, user, Operation.UPDATE, user, before=before)

    def forgot_password(self, db: Session, email: str) -> None:
        user = repositories.user_by_email(db, email)
        if not user or user.deleted_at is not None:
            return
        token = self.reset_tokens.issue(user)
        self.notifier.send_reset_link(user, f"{self.settings.frontend_url}/reset-password?token={token}")

    def reset_password(self, db: Session, data: ResetPasswordIn) -> None:
        claims = self.reset_tokens.load(data.token)
        user = repositories.live_user(db, claims.get("sub", ""))
        if not user or user.password_hash[-12:] != claims.get("pw"):
            raise Unauthorized("Invalid reset token")
        before = snapshot(user)
        with atomic(db):
            user.password_hash = self.hasher.hash(data.new_password)
            db.execute(delete(RefreshToken).where(RefreshToken.user_id == user.id))
            write_audit(db, user, Operation.UPDATE, user, before=before)

    def game_login(self, db: Session, email: str, password: str) -> dict:
        user = self._authenticate(db, email, password)
        if user.role != Role.STUDENT:
            raise Forbidden("Only students can sign in to the game")
        enrollment = repositories.active_enrollment(db, user.id)
        if not enrollment:
            raise Forbidden("Student has no active course")
        missions = db.execute(
            select(MissionCompletion, Mission)
            .join(Mission, Mission.id == MissionCompletion.mission_id)
            .where(MissionCompletion.progress_id == enrollment.progress_id)
            .order_by(Mission.level.asc())
        ).all()
        difficulties = db.execute(
            select(StudentDifficulty, Difficulty)
            .join(Difficulty, Difficulty.id == StudentDifficulty.difficulty_id)
            .where(StudentDifficulty.student_id == user.id, StudentDifficulty.course_id == enrollment.course_id)
            .order_by(Difficulty.topic.asc())
        ).all()
        with atomic(db):
            user.last_access = utcnow()
            access = self.tokens.access_token(user)
        return {
            "access_token": access,
            "student": {"id": user.id, "name": user.name, "surname": user.surname, "email": user.email},
            "course_id": enrollment.course_id,
            "missions": [{**serialize(done), "mission_name": mission.name} for done, mission in missions],
            "difficulties": [difficulty_row(serialize(d), sd.grade) for sd, d in difficulties],
        }

    def me(self, user: User) -> dict:
        return UserOut.model_validate(user).model_dump()
