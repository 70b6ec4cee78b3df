from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, Date, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class Role:
    STUDENT = "Student"
    TEACHER = "Teacher"
    ADMIN = "Admin"
    ALL = (STUDENT, TEACHER, ADMIN)


class LinkStatus:
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    FINALIZED = "Finalized"
    ALL = (ACTIVE, INACTIVE, FINALIZED)


class Grade:
    NONE = "None"
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    ALL = (NONE, LOW, MEDIUM, HIGH)
    WEIGHT = {NONE: 0, LOW: 1, MEDIUM: 2, HIGH: 3}


class SessionStatus:
    PENDING = "Pending"
    IN_PROGRESS = "In_progress"
    COMPLETED = "Completed"
    INCOMPLETE = "Incomplete"
    NOT_DONE = "Not_done"
    CANCELLED = "Cancelled"
    ALL = (PENDING, IN_PROGRESS, COMPLETED, INCOMPLETE, NOT_DONE, CANCELLED)


class ChangeSource:
    GAME = "GAME"
    REINFORCEMENT_SESSION = "REINFORCEMENT_SESSION"


WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")
MODALITIES = ("Online", "Presencial")
TOPICS = ("Sequence", "Logic", "Structures", "Variables", "Procedures")


class ConsultationStatus:
    PENDING = "Pending"
    TO_REVIEW = "To_review"
    REVIEWED = "Reviewed"
    RESOLVED = "Resolved"
    ALL = (PENDING, TO_REVIEW, REVIEWED, RESOLVED)


class ClassStatus:
    PENDING_ASSIGNMENT = "Pending_assignment"
    SCHEDULED = "Scheduled"
    IN_PROGRESS = "In_progress"
    FINISHED = "Finished"
    HELD = "Held"
    NOT_HELD = "Not_held"
    CANCELLED = "Cancelled"
    CLOSED = (HELD, NOT_HELD, CANCELLED)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String)
    surname: Mapped[str] = mapped_column(String)
    dni: Mapped[Optional[str]] = mapped_column(String, unique=True, nullable=True)
    birth_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    email: Mapped[str] = mapped_column(String, unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String)
    role: Mapped[str] = mapped_column(String, default=Role.STUDENT, index=True)
    last_access: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class RefreshToken(Base):
    __tablename__ = "refresh_tokens"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    token_hash: Mapped[str] = mapped_column(String, unique=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class CourseProgress(Base):
    __tablename__ = "course_progress"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    completed_missions: Mapped[int] = mapped_column(Integer, default=0)
    total_stars: Mapped[int] = mapped_column(Integer, default=0)
    total_exp: Mapped[int] = mapped_column(Integer, default=0)
    total_attempts: Mapped[int] = mapped_column(Integer, default=0)
    pct_completed: Mapped[float] = mapped_column(Float, default=0.0)
    avg_stars: Mapped[float] = mapped_column(Float, default=0.0)
    avg_attempts: Mapped[float] = mapped_column(Float, default=0.0)


class CourseProgressHistory(Base):
    __tablename__ = "course_progress_history"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    course_progress_id: Mapped[str] = mapped_column(ForeignKey("course_progress.id"), index=True)
    completed_missions: Mapped[int] = mapped_column(Integer, default=0)
    total_stars: Mapped[int] = mapped_column(Integer, default=0)
    total_exp: Mapped[int] = mapped_column(Integer, default=0)
    total_attempts: Mapped[int] = mapped_column(Integer, default=0)
    pct_completed: Mapped[float] = mapped_column(Float, default=0.0)
    avg_stars: Mapped[float] = mapped_column(Float, default=0.0)
    avg_attempts: Mapped[float] = mapped_column(Float, default=0.0)
    recorded_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class CourseDifficultySummary(Base):
    __tablename__ = "course_difficulty_summaries"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    mode_topic: Mapped[str] = mapped_column(String, default="None")
    mode_difficulty_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    avg_difficulties: Mapped[float] = mapped_column(Float, default=0.0)
    avg_grade: Mapped[str] = mapped_column(String, default=Grade.NONE)


class CourseDifficultyHistory(Base):
    __tablename__ = "course_difficulty_history"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    summary_id: Mapped[str] = mapped_column(ForeignKey("course_difficulty_summaries.id"), index=True)
    mode_topic: Mapped[str] = mapped_column(String, default="None")
    mode_difficulty_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    avg_difficulties: Mapped[float] = mapped_column(Float, default=0.0)
    avg_grade: Mapped[str] = mapped_column(String, default=Grade.NONE)
    recorded_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Course(Base):
    __tablename__ = "courses"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String, unique=True)
    description: Mapped[str] = mapped_column(Text)
    password_hash: Mapped[str] = mapped_column(String)
    preferred_modality: Mapped[str] = mapped_column(String, default="Presencial")
    status: Mapped[str] = mapped_column(String, default=LinkStatus.ACTIVE, index=True)
    progress_id: Mapped[str] = mapped_column(ForeignKey("course_progress.id"))
    difficulty_summary_id: Mapped[str] = mapped_column(ForeignKey("course_difficulty_summaries.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class ClassDay(Base):
    __tablename__ = "class_days"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    course_id: Mapped[str] = mapped_column(ForeignKey("courses.id"), index=True)
    day: Mapped[str] = mapped_column(String)
    start_time: Mapped[datetime] = mapped_column(DateTime)
    end_time: Mapped[datetime] = mapped_column(DateTime)
    modality: Mapped[str] = mapped_column(String, default="Presencial")


class CourseTeacher(Base):
    __tablename__ = "course_teachers"
    __table_args__ = (UniqueConstraint("teacher_id", "course_id"),)
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    teacher_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    course_id: Mapped[str] = mapped_column(ForeignKey("courses.id"), index=True)
    status: Mapped[str] = mapped_column(String, default=LinkStatus.ACTIVE)
    assigned_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    removed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class StudentProgress(Base):
    __tablename__ = "student_progress"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    completed_missions: Mapped[int] = mapped_column(Integer, default=0)
    total_stars: Mapped[int] = mapped_column(Integer, default=0)
    total_exp: Mapped[int] = mapped_column(Integer, default=0)
    total_attempts: Mapped[int] = mapped_column(Integer, default=0)
    pct_completed: Mapped[float] = mapped_column(Float, default=0.0)
    avg_stars: Mapped[float] = mapped_column(Float, default=0.0)
    avg_attempts: Mapped[float] = mapped_column(Float, default=0.0)
    last_activity: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class StudentProgressHistory(Base):
    __tablename__ = "student_progress_history"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    progress_id: Mapped[str] = mapped_column(ForeignKey("student_progress.id"), index=True)
    completed_missions: Mapped[int] = mapped_column(Integer, default=0)
    total_stars: Mapped[int] = mapped_column(Integer, default=0)
    total_exp: Mapped[int] = mapped_column(Integer, default=0)
    total_attempts: Mapped[int] = mapped_column(Integer, default=0)
    pct_completed: Mapped[float] = mapped_column(Float, default=0.0)
    avg_stars: Mapped[float] = mapped_column(Float, default=0.0)
    avg_attempts: Mapped[float] = mapped_column(Float, default=0.0)
    recorded_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class CourseStudent(Base):
    __tablename__ = "course_students"
    __table_args__ = (UniqueConstraint("student_id", "course_id"),)
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    student_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    course_id: Mapped[str] = mapped_column(ForeignKey("courses.id"), index=True)
    progress_id: Mapped[str] = mapped_column(ForeignKey("student_progress.id"))
    status: Mapped[str] = mapped_column(String, default=LinkStatus.ACTIVE)
    joined_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    removed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class Difficulty(Base):
    __tablename__ = "difficulties"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String, unique=True)
    description: Mapped[str] = mapped_column(Text, default="")
    topic: Mapped[str] = mapped_column(String, index=True)


class StudentDifficulty(Base):
    __tablename__ = "student_difficulties"
    __table_args__ = (UniqueConstraint("student_id", "course_id", "difficulty_id"),)
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    student_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    course_id: Mapped[str] = mapped_column(ForeignKey("courses.id"), index=True)
    difficulty_id: Mapped[str] = mapped_column(ForeignKey("difficulties.id"))
    grade: Mapped[str] = mapped_column(String, default=Grade.NONE)


class DifficultyHistory(Base):
    __tablename__ = "difficulty_history"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    student_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    course_id: Mapped[str] = mapped_column(ForeignKey("courses.id"))
    difficulty_id: Mapped[str] = mapped_column(ForeignKey("difficulties.id"))
    previous_grade: Mapped[str] = mapped_column(String)
    new_grade: Mapped[str] = mapped_column(String)
    source: Mapped[str] = mapped_column(String)
    changed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Mission(Base):
    __tablename__ = "missions"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String, unique=True)
    description: Mapped[str] = mapped_column(Text, default="")
    level: Mapped[int] = mapped_column(Integer, default=1)


class MissionCompletion(Base):
    __tablename__ = "mission_completions"
    __table_args__ = (UniqueConstraint("mission_id", "progress_id"),)
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    mission_id: Mapped[str] = mapped_column(ForeignKey("missions.id"))
    progress_id: Mapped[str] = mapped_column(ForeignKey("student_progress.id"), index=True)
    stars: Mapped[int] = mapped_column(Integer)
    exp: Mapped[int] = mapped_column(Integer)
    attempts: Mapped[int] = mapped_column(Integer)
    completed_at: Mapped[datetime] = mapped_column(DateTime)


class SpecialMissionCompletion(Base):
    __tablename__ = "special_mission_completions"
    __table_args__ = (UniqueConstraint("mission_key", "progress_id"),)
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    mission_key: Mapped[str] = mapped_column(String, index=True)
    progress_id: Mapped[str] = mapped_column(ForeignKey("student_progress.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str] = mapped_column(Text, default="")
    stars: Mapped[int] = mapped_column(Integer)
    exp: Mapped[int] = mapped_column(Integer)
    attempts: Mapped[int] = mapped_column(Integer)
    completed_at: Mapped[datetime] = mapped_column(DateTime)


class Question(Base):
    __tablename__ = "questions"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    difficulty_id: Mapped[str] = mapped_column(ForeignKey("difficulties.id"), index=True)
    grade: Mapped[str] = mapped_column(String)
    statement: Mapped[str] = mapped_column(Text)
    teacher_id: Mapped[Optional[str]] = mapped_column(ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class QuestionOption(Base):
    __tablename__ = "question_options"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    question_id: Mapped[str] = mapped_column(ForeignKey("questions.id"), index=True)
    text: Mapped[str] = mapped_column(Text)
    is_correct: Mapped[bool] = mapped_column(Boolean, default=False)


class ReinforcementSession(Base):
    __tablename__ = "reinforcement_sessions"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    number: Mapped[int] = mapped_column(Integer)
    course_id: Mapped[str] = mapped_column(ForeignKey("courses.id"), index=True)
    student_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    teacher_id: Mapped[Optional[str]] = mapped_column(ForeignKey("users.id"), nullable=True)
    difficulty_id: Mapped[str] = mapped_column(ForeignKey("difficulties.id"))
    grade: Mapped[str] = mapped_column(String)
    deadline: Mapped[datetime] = mapped_column(DateTime)
    time_limit_minutes: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String, default=SessionStatus.PENDING, index=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class SessionQuestion(Base):
    __tablename__ = "session_questions"
    __table_args__ = (UniqueConstraint("session_id", "question_id"),)
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    session_id: Mapped[str] = mapped_column(ForeignKey("reinforcement_sessions.id"), index=True)
    question_id: Mapped[str] = mapped_column(ForeignKey("questions.id"))


class SessionResult(Base):
    __tablename__ = "session_results"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    session_id: Mapped[str] = mapped_column(ForeignKey("reinforcement_sessions.id"), unique=True)
    correct: Mapped[int] = mapped_column(Integer)
    incorrect: Mapped[int] = mapped_column(Integer)
    pct_correct: Mapped[float] = mapped_column(Float)
    previous_grade: Mapped[str] = mapped_column(String)
    new_grade: Mapped[str] = mapped_column(String)
    completed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class StudentAnswer(Base):
    __tablename__ = "student_answers"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    session_id: Mapped[str] = mapped_column(ForeignKey("reinforcement_sessions.id"), index=True)
    question_id: Mapped[str] = mapped_column(ForeignKey("questions.id"))
    option_id: Mapped[str] = mapped_column(String)
    is_correct: Mapped[bool] = mapped_column(Boolean, default=False)


class Consultation(Base):
    __tablename__ = "consultations"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    course_id: Mapped[str] = mapped_column(ForeignKey("courses.id"), index=True)
    student_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    title: Mapped[str] = mapped_column(String)
    description: Mapped[str] = mapped_column(Text)
    topic: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default=ConsultationStatus.PENDING, index=True)
    asked_at: Mapped[datetime] = mapped_column(DateTime)
    rating: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    rating_comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class ConsultationAnswer(Base):
    __tablename__ = "consultation_answers"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    consultation_id: Mapped[str] = mapped_column(ForeignKey("consultations.id"), unique=True)
    teacher_id: Mapped[str] = mapped_column(ForeignKey("users.id"))
    text: Mapped[str] = mapped_column(Text)
    answered_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class ConsultationClass(Base):
    __tablename__ = "consultation_classes"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    course_id: Mapped[str] = mapped_column(ForeignKey("courses.id"), index=True)
    teacher_id: Mapped[Optional[str]] = mapped_column(ForeignKey("users.id"), nullable=True)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str] = mapped_column(Text)
    starts_at: Mapped[datetime] = mapped_column(DateTime)
    ends_at: Mapped[datetime] = mapped_column(DateTime)
    modality: Mapped[str] = mapped_column(String, default="Presencial")
    status: Mapped[str] = mapped_column(String, default=ClassStatus.SCHEDULED, index=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class ClassConsultation(Base):
    __tablename__ = "class_consultations"
    __table_args__ = (UniqueConstraint("class_id", "consultation_id"),)
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    class_id: Mapped[str] = mapped_column(ForeignKey("consultation_classes.id"), index=True)
    consultation_id: Mapped[str] = mapped_column(ForeignKey("consultations.id"), index=True)
    reviewed: Mapped[bool] = mapped_column(Boolean, default=False)


class AuditLog(Base):
    __tablename__ = "audit_log"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    table_name: Mapped[str] = mapped_column(String, index=True)
    row_id: Mapped[str] = mapped_column(String)
    operation: Mapped[str] = mapped_column(String)
    user_id: Mapped[Optional[str]] = mapped_column(ForeignKey("users.id"), nullable=True)
    before_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    after_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
