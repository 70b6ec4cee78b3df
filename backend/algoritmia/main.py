from __future__ import annotations

import logging
from datetime import date
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import repositories
from .access import check_student_access, check_teacher_access
from .config import Settings, ensure_secure_config_on_startup
from .db import build_engine, build_session_factory, get_db
from .errors import AppError, NotFound, ValidationFailed
from .models import Base, Role, User
from .normalize import page_payload
from .queries import ListQuery, split_csv
from .schemas import (
    AnswerConsultationIn,
    AssignClassIn,
    CancelClassIn,
    ChangePasswordIn,
    ConsultationClassIn,
    ConsultationClassUpdateIn,
    ConsultationIn,
    ConsultationUpdateIn,
    CourseCreateIn,
    CourseUpdateIn,
    DifficultySubmitIn,
    FinalizeClassIn,
    ForgotPasswordIn,
    JoinCourseIn,
    LoginIn,
    MissionSubmitIn,
    QuestionIn,
    RateConsultationIn,
    RefreshIn,
    ResetPasswordIn,
    SessionCreateIn,
    SessionResolveIn,
    SessionUpdateIn,
    UserCreateIn,
    UserOut,
    UserUpdateIn,
)
from .security import current_user, require_role
from .seed import seed_defaults
from .services import Services, build_services
from .services.auth import ResetNotifier
from .validation import errors_from_request, require_valid, require_valid_list

logger = logging.getLogger(__name__)

router = APIRouter()


def services(request: Request) -> Services:
    return request.app.state.services


def paging(default_limit: int = 10, default_sort: Optional[str] = None, default_order: str = "asc"):
    def dependency(
        page: Optional[int] = None,
        limit: Optional[int] = None,
        sort: Optional[str] = None,
        order: Optional[str] = None,
        search: Optional[str] = None,
    ) -> ListQuery:
        return ListQuery.build(page, limit, sort, order, search, default_limit, default_sort, default_order)

    return dependency


def require_same_student(user: User, batch: list) -> None:
    require_role(user, Role.STUDENT)
    if any(item.student_id != user.id for item in batch):
        raise ValidationFailed("Every entry must belong to the signed-in student")


@router.get("/health")
def health():
    return {"status": "ok"}


# --- auth ---


@router.post("/auth/login")
def login(payload: Any = Body(None), db: Session = Depends(get_db), svc: Services = Depends(services)):
    data = require_valid(LoginIn, payload)
    return svc.auth.login(db, data.email, data.password)


@router.post("/auth/refresh")
def refresh(payload: Any = Body(None), db: Session = Depends(get_db), svc: Services = Depends(services)):
    data = require_valid(RefreshIn, payload)
    return svc.auth.refresh(db, data.refresh_token)


@router.post("/auth/logout")
def logout(db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    svc.auth.logout(db, user)
    return {"message": "Signed out"}


@router.get("/auth/me")
def me(user: User = Depends(current_user), svc: Services = Depends(services)):
    return svc.auth.me(user)


@router.post("/auth/change-password")
def change_password(payload: Any = Body(None), db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    data = require_valid(ChangePasswordIn, payload)
    svc.auth.change_password(db, user, data)
    return {"message": "Password updated"}


@router.post("/auth/forgot-password")
def forgot_password(payload: Any = Body(None), db: Session = Depends(get_db), svc: Services = Depends(services)):
    data = require_valid(ForgotPasswordIn, payload)
    svc.auth.forgot_password(db, data.email)
    return {"message": "If the address is registered, a reset link has been sent"}


@router.post("/auth/reset-password")
def reset_password(payload: Any = Body(None), db: Session = Depends(get_db), svc: Services = Depends(services)):
    data = require_valid(ResetPasswordIn, payload)
    svc.auth.reset_password(db, data)
    return {"message": "Password updated"}


@router.post("/auth/game-login")
def game_login(payload: Any = Body(None), db: Session = Depends(get_db), svc: Services = Depends(services)):
    data = require_valid(LoginIn, payload)
    return svc.auth.game_login(db, data.email, data.password)


# --- users ---


@router.post("/users", status_code=201)
def create_user(payload: Any = Body(None), db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    require_role(user, Role.ADMIN)
    data = require_valid(UserCreateIn, payload)
    return UserOut.model_validate(svc.users.create(db, user, data)).model_dump()


@router.get("/users")
def list_users(
    roles: Optional[str] = None,
    status: Optional[str] = None,
    query: ListQuery = Depends(paging(6, "surname")),
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
    svc: Services = Depends(services),
):
    require_role(user, Role.ADMIN)
    return page_payload(svc.users.list(db, user, query, split_csv(roles), status))


@router.get("/users/teachers")
def list_teachers(db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    require_role(user, Role.ADMIN)
    return svc.users.teachers(db)


@router.get("/users/{user_id}")
def get_user(user_id: str, db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    require_role(user, Role.ADMIN)
    return UserOut.model_validate(svc.users.get(db, user_id)).model_dump()


@router.patch("/users/{user_id}")
def update_user(user_id: str, payload: Any = Body(None), db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    require_role(user, Role.ADMIN)
    data = require_valid(UserUpdateIn, payload)
    return UserOut.model_validate(svc.users.update(db, user, user_id, data)).model_dump()


@router.delete("/users/{user_id}")
def delete_user(user_id: str, db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    require_role(user, Role.ADMIN)
    removed = svc.users.remove(db, user, user_id)
    return {"message": "User deleted", "deleted_at": removed.deleted_at}


# --- courses ---


@router.post("/courses", status_code=201)
def create_course(payload: Any = Body(None), db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    require_role(user, Role.ADMIN)
    data = require_valid(CourseCreateIn, payload)
    return svc.courses.create(db, user, data)


@router.get("/courses")
def list_courses(
    status: Optional[str] = None,
    teacher_ids: Optional[str] = None,
    query: ListQuery = Depends(paging(8, "name")),
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
    svc: Services = Depends(services),
):
    require_role(user, Role.ADMIN)
    return page_payload(svc.courses.list(db, query, split_csv(status), split_csv(teacher_ids)))


@router.get("/courses/{course_id}")
def get_course(course_id: str, db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    return svc.courses.get(db, user, course_id)


@router.patch("/courses/{course_id}")
def update_course(course_id: str, payload: Any = Body(None), db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    require_role(user, Role.ADMIN, Role.TEACHER)
    data = require_valid(CourseUpdateIn, payload)
    return svc.courses.update(db, user, course_id, data)


@router.delete("/courses/{course_id}")
def delete_course(course_id: str, db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    require_role(user, Role.ADMIN)
    svc.courses.remove(db, user, course_id)
    return {"message": "Course deleted"}


@router.post("/courses/{course_id}/finalize")
def finalize_course(course_id: str, db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    require_role(user, Role.ADMIN)
    return svc.courses.finalize(db, user, course_id)


# --- teachers ---


def teacher_in_course(db: Session, user: User, course_id: str) -> None:
    require_role(user, Role.TEACHER)
    check_teacher_access(db, user.id, course_id)


@router.get("/teachers/my/courses")
def my_teacher_courses(db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    require_role(user, Role.TEACHER)
    return svc.enrollment.teacher_courses(db, user)


@router.get("/teachers/my/courses/{course_id}/progress-overview")
def progress_overview(course_id: str, db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    teacher_in_course(db, user, course_id)
    return svc.progress.course_overview(db, course_id)


@router.get("/teachers/my/courses/{course_id}/progress-students")
def progress_students(
    course_id: str,
    progress_range: Optional[str] = None,
    stars_range: Optional[str] = None,
    attempts_range: Optional[str] = None,
    activity_range: Optional[str] = None,
    query: ListQuery = Depends(paging(10, "surname")),
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
    svc: Services = Depends(services),
):
    teacher_in_course(db, user, course_id)
    page = svc.progress.student_list(db, course_id, query, progress_range, stars_range, attempts_range, activity_range)
    return page_payload(page)


@router.get("/teachers/my/courses/{course_id}/difficulties-overview")
def difficulties_overview(course_id: str, db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    teacher_in_course(db, user, course_id)
    return svc.difficulties.overview(db, course_id)


@router.get("/teachers/my/courses/{course_id}/difficulties-students")
def difficulties_students(
    course_id: str,
    topic: Optional[str] = None,
    difficulty_id: Optional[str] = None,
    grade: Optional[str] = None,
    query: ListQuery = Depends(paging(10, "surname")),
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
    svc: Services = Depends(services),
):
    teacher_in_course(db, user, course_id)
    return page_payload(svc.difficulties.student_list(db, course_id, query, topic, difficulty_id, grade))


@router.get("/teachers/my/courses/{course_id}/students/{student_id}/difficulties")
def student_difficulties_for_teacher(
    course_id: str, student_id: str, db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)
):
    teacher_in_course(db, user, course_id)
    if repositories.find_enrollment(db, student_id, course_id) is None:
        raise NotFound("Student enrollment not found for this course")
    return svc.difficulties.student_difficulties(db, student_id, course_id)


@router.get("/teachers/my/courses/{course_id}/students/{student_id}/missions")
def student_missions_for_teacher(
    course_id: str, student_id: str, db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)
):
    teacher_in_course(db, user, course_id)
    return svc.progress.mission_status(db, student_id, course_id)


@router.get("/teachers/my/courses/{course_id}/teachers")
def course_teachers(course_id: str, db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    teacher_in_course(db, user, course_id)
    return svc.enrollment.course_teachers(db, course_id)


# --- students ---


def student_in_course(db: Session, user: User, course_id: str) -> None:
    require_role(user, Role.STUDENT)
    check_student_access(db, user.id, course_id)


@router.get("/students/my/courses")
def my_student_courses(db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    require_role(user, Role.STUDENT)
    return svc.enrollment.student_courses(db, user)


@router.post("/students/my/join-course")
def join_course(payload: Any = Body(None), db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    require_role(user, Role.STUDENT)
    data = require_valid(JoinCourseIn, payload)
    return svc.enrollment.join_course(db, user, data)


@router.get("/students/my/courses/{course_id}/progress")
def my_progress(course_id: str, db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    student_in_course(db, user, course_id)
    return svc.progress.student_progress(db, user.id, course_id)


@router.get("/students/my/courses/{course_id}/difficulties")
def my_difficulties(course_id: str, db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    student_in_course(db, user, course_id)
    return svc.difficulties.student_difficulties(db, user.id, course_id)


@router.get("/students/my/courses/{course_id}/missions")
def my_missions(course_id: str, db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    student_in_course(db, user, course_id)
    return svc.progress.mission_status(db, user.id, course_id)


# --- game feed ---


@router.post("/progress/submit-missions")
def submit_missions(payload: Any = Body(None), db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    batch = require_valid_list(MissionSubmitIn, payload)
    require_same_student(user, batch)
    return svc.progress.submit_missions(db, user, batch)


@router.post("/difficulties/submit")
def submit_difficulties(payload: Any = Body(None), db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    batch = require_valid_list(DifficultySubmitIn, payload)
    require_same_student(user, batch)
    return svc.difficulties.submit(db, user, batch)


@router.get("/difficulties")
def list_difficulties(db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    require_role(user, Role.TEACHER, Role.ADMIN)
    return svc.difficulties.catalogue(db)


# --- questions ---


@router.get("/courses/{course_id}/questions")
def list_questions(
    course_id: str,
    difficulty_id: Optional[str] = None,
    grade: Optional[str] = None,
    origin: Optional[str] = None,
    query: ListQuery = Depends(paging(10, "created_at", "desc")),
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
    svc: Services = Depends(services),
):
    require_role(user, Role.TEACHER)
    return page_payload(svc.questions.list(db, user, course_id, query, difficulty_id, grade, origin))


@router.post("/courses/{course_id}/questions", status_code=201)
def create_question(course_id: str, payload: Any = Body(None), db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    require_role(user, Role.TEACHER)
    data = require_valid(QuestionIn, payload)
    return svc.questions.create(db, user, course_id, data)


# --- reinforcement sessions ---


@router.post("/courses/{course_id}/sessions", status_code=201)
def create_session(course_id: str, payload: Any = Body(None), db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    require_role(user, Role.TEACHER)
    data = require_valid(SessionCreateIn, payload)
    return svc.sessions.create(db, user, course_id, data)


@router.get("/courses/{course_id}/sessions")
def list_sessions(
    course_id: str,
    student_id: Optional[str] = None,
    difficulty_id: Optional[str] = None,
    grade: Optional[str] = None,
    status: Optional[str] = None,
    number: Optional[int] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    query: ListQuery = Depends(paging(10, "number", "desc")),
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
    svc: Services = Depends(services),
):
    page = svc.sessions.list(db, user, course_id, query, student_id, difficulty_id, grade, status, number, date_from, date_to)
    return page_payload(page)


@router.get("/courses/{course_id}/sessions/{session_id}")
def get_session(course_id: str, session_id: str, db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    return svc.sessions.get(db, user, course_id, session_id)


@router.patch("/courses/{course_id}/sessions/{session_id}")
def update_session(
    course_id: str, session_id: str, payload: Any = Body(None), db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)
):
    require_role(user, Role.TEACHER)
    data = require_valid(SessionUpdateIn, payload)
    return svc.sessions.update(db, user, course_id, session_id, data)


@router.delete("/courses/{course_id}/sessions/{session_id}")
def cancel_session(course_id: str, session_id: str, db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    require_role(user, Role.TEACHER)
    return svc.sessions.cancel(db, user, course_id, session_id)


@router.post("/courses/{course_id}/sessions/{session_id}/start")
def start_session(course_id: str, session_id: str, db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    student_in_course(db, user, course_id)
    return svc.sessions.start(db, user, course_id, session_id)


@router.post("/courses/{course_id}/sessions/{session_id}/resolve")
def resolve_session(
    course_id: str, session_id: str, payload: Any = Body(None), db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)
):
    student_in_course(db, user, course_id)
    data = require_valid(SessionResolveIn, payload)
    return svc.sessions.resolve(db, user, course_id, session_id, data)


@router.post("/admin/sessions/expire")
def expire_sessions(db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    require_role(user, Role.ADMIN)
    return svc.sessions.expire_overdue(db, user)


# --- consultations ---


@router.post("/students/my/courses/{course_id}/consultations", status_code=201)
def create_consultation(course_id: str, payload: Any = Body(None), db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    require_role(user, Role.STUDENT)
    data = require_valid(ConsultationIn, payload)
    return svc.consultations.create(db, user, course_id, data)


@router.get("/students/my/courses/{course_id}/consultations")
def my_consultations(
    course_id: str,
    topic: Optional[str] = None,
    status: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    query: ListQuery = Depends(paging(10, "asked_at", "desc")),
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
    svc: Services = Depends(services),
):
    require_role(user, Role.STUDENT)
    return page_payload(svc.consultations.list_own(db, user, course_id, query, topic, status, date_from, date_to))


@router.get("/students/my/courses/{course_id}/consultations/public")
def public_consultations(
    course_id: str,
    topic: Optional[str] = None,
    status: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    query: ListQuery = Depends(paging(10, "asked_at", "desc")),
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
    svc: Services = Depends(services),
):
    require_role(user, Role.STUDENT)
    return page_payload(svc.consultations.list_public(db, user, course_id, query, topic, status, date_from, date_to))


@router.patch("/students/my/consultations/{consultation_id}")
def update_consultation(consultation_id: str, payload: Any = Body(None), db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    require_role(user, Role.STUDENT)
    data = require_valid(ConsultationUpdateIn, payload)
    return svc.consultations.update(db, user, consultation_id, data)


@router.delete("/students/my/consultations/{consultation_id}")
def delete_consultation(consultation_id: str, db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    require_role(user, Role.STUDENT)
    return svc.consultations.remove(db, user, consultation_id)


@router.post("/students/my/consultations/{consultation_id}/rating")
def rate_consultation(consultation_id: str, payload: Any = Body(None), db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    require_role(user, Role.STUDENT)
    data = require_valid(RateConsultationIn, payload)
    return svc.consultations.rate(db, user, consultation_id, data)


@router.get("/teachers/my/courses/{course_id}/consultations")
def course_consultations(
    course_id: str,
    topic: Optional[str] = None,
    status: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    query: ListQuery = Depends(paging(10, "asked_at", "desc")),
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
    svc: Services = Depends(services),
):
    require_role(user, Role.TEACHER)
    return page_payload(svc.consultations.list_course(db, user, course_id, query, topic, status, date_from, date_to))


@router.get("/teachers/my/courses/{course_id}/consultations/pending")
def pending_consultations(course_id: str, db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    require_role(user, Role.TEACHER)
    return svc.consultations.pending(db, user, course_id)


@router.post("/teachers/my/consultations/{consultation_id}/answer", status_code=201)
def answer_consultation(consultation_id: str, payload: Any = Body(None), db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    require_role(user, Role.TEACHER)
    data = require_valid(AnswerConsultationIn, payload)
    return svc.consultations.answer(db, user, consultation_id, data)


# --- consultation classes ---


@router.post("/courses/{course_id}/consultation-classes", status_code=201)
def create_consultation_class(course_id: str, payload: Any = Body(None), db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    require_role(user, Role.TEACHER)
    data = require_valid(ConsultationClassIn, payload)
    return svc.classes.create(db, user, course_id, data)


@router.get("/courses/{course_id}/consultation-classes")
def list_consultation_classes(
    course_id: str,
    status: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    query: ListQuery = Depends(paging(10, "starts_at", "desc")),
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
    svc: Services = Depends(services),
):
    return page_payload(svc.classes.list(db, user, course_id, query, status, date_from, date_to))


@router.get("/consultation-classes/{class_id}")
def get_consultation_class(class_id: str, db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    return svc.classes.get(db, user, class_id)


@router.patch("/consultation-classes/{class_id}")
def update_consultation_class(class_id: str, payload: Any = Body(None), db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    require_role(user, Role.TEACHER)
    data = require_valid(ConsultationClassUpdateIn, payload)
    return svc.classes.update(db, user, class_id, data)


@router.post("/consultation-classes/{class_id}/assign")
def assign_consultation_class(class_id: str, payload: Any = Body(None), db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    require_role(user, Role.TEACHER)
    data = require_valid(AssignClassIn, payload if payload is not None else {})
    return svc.classes.assign(db, user, class_id, data)


@router.post("/consultation-classes/{class_id}/cancel")
def cancel_consultation_class(class_id: str, payload: Any = Body(None), db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    require_role(user, Role.TEACHER)
    data = require_valid(CancelClassIn, payload)
    return svc.classes.cancel(db, user, class_id, data)


@router.post("/consultation-classes/{class_id}/finalize")
def finalize_consultation_class(class_id: str, payload: Any = Body(None), db: Session = Depends(get_db), user: User = Depends(current_user), svc: Services = Depends(services)):
    require_role(user, Role.ADMIN, Role.TEACHER)
    data = require_valid(FinalizeClassIn, payload)
    return svc.classes.finalize(db, user, class_id, data)


# --- audit ---


@router.get("/audit")
def list_audit(
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    table: Optional[str] = None,
    operation: Optional[str] = None,
    query: ListQuery = Depends(paging(10, "occurred_at", "desc")),
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
    svc: Services = Depends(services),
):
    require_role(user, Role.ADMIN)
    return page_payload(svc.audit.list(db, query, date_from, date_to, table, operation))


@router.get("/audit/export")
def export_audit(
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    table: Optional[str] = None,
    operation: Optional[str] = None,
    query: ListQuery = Depends(paging(10, "occurred_at", "desc")),
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
    svc: Services = Depends(services),
):
    require_role(user, Role.ADMIN)
    content = svc.audit.export_csv(db, query, date_from, date_to, table, operation)
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": 'attachment; filename="audit.csv"'},
    )


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error(request: Request, exc: AppError):
        body: dict[str, Any] = {"detail": exc.detail}
        if isinstance(exc, ValidationFailed) and exc.field_errors:
            body["errors"] = exc.field_errors
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": "Invalid input", "errors": errors_from_request(exc)})

    @app.exception_handler(IntegrityError)
    async def integrity_error(request: Request, exc: IntegrityError):
        logger.warning("integrity error on %s %s: %s", request.method, request.url.path, exc.orig)
        return JSONResponse(status_code=409, content={"detail": "The record conflicts with an existing one"})

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.exception("unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def prepare_database(app: FastAPI) -> None:
    Base.metadata.create_all(app.state.engine)
    with app.state.session_factory() as db:
        seed_defaults(db, app.state.settings, app.state.services.hasher)


def create_app(settings: Optional[Settings] = None, notifier: Optional[ResetNotifier] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    ensure_secure_config_on_startup(settings)
    engine = build_engine(settings.database_url)

    app = FastAPI(title="Algoritmia API")
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)
    app.state.services = build_services(settings, notifier)
    app.add_middleware(CORSMiddleware, allow_origins=settings.cors_origins, allow_credentials=True, allow_methods=["*"], allow_headers=["*"])
    register_error_handlers(app)
    app.include_router(router)

    @app.on_event("startup")
    def startup():
        prepare_database(app)
        logger.info("algoritmia api ready (env=%s)", settings.env)

    return app


app = create_app()


def run() -> None:
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run("algoritmia.main:app", host="0.0.0.0", port=app.state.settings.port)


if __name__ == "__main__":
    run()
