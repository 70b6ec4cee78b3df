from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..config import Settings
from ..security import PasswordHasher, ResetTokens, TokenIssuer
from .audit_log import AuditService
from .auth import AuthService, LoggingResetNotifier, ResetNotifier
from .consultation_classes import ConsultationClassService
from .consultations import ConsultationService
from .courses import CourseService
from .difficulties import DifficultyService
from .enrollment import EnrollmentService
from .progress import ProgressService
from .questions import QuestionService
from .sessions import SessionService
from .users import UserService


@dataclass
class Services:
    settings: Settings
    hasher: PasswordHasher
    tokens: TokenIssuer
    auth: AuthService
    users: UserService
    courses: CourseService
    enrollment: EnrollmentService
    progress: ProgressService
    difficulties: DifficultyService
    questions: QuestionService
    sessions: SessionService
    classes: ConsultationClassService
    consultations: ConsultationService
    audit: AuditService


def build_services(settings: Settings, notifier: Optional[ResetNotifier] = None) -> Services:
    hasher = PasswordHasher(settings.hash_rounds)
    tokens = TokenIssuer(settings)
    sessions = SessionService()
    classes = ConsultationClassService()
    return Services(
        settings=settings,
        hasher=hasher,
        tokens=tokens,
        auth=AuthService(settings, hasher, tokens, ResetTokens(settings), notifier or LoggingResetNotifier()),
        users=UserService(hasher),
        courses=CourseService(hasher),
        enrollment=EnrollmentService(hasher),
        progress=ProgressService(),
        difficulties=DifficultyService(sessions),
        questions=QuestionService(),
        sessions=sessions,
        classes=classes,
        consultations=ConsultationService(classes),
        audit=AuditService(),
    )
