from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, ValidationInfo, field_validator, model_validator

from .models import MODALITIES, TOPICS, WEEKDAYS, Grade, Role

DNI_RE = re.compile(r"^\d{7,9}$")
TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
MIN_BIRTH_DATE = date(1930, 2, 1)
MIN_AGE_YEARS = 18
PASSWORD_MIN = 6
PASSWORD_MAX = 100
MIN_CLASS_CONSULTATIONS = 5


def max_birth_date(today: Optional[date] = None) -> date:
    today = today or date.today()
    try:
        return today.replace(year=today.year - MIN_AGE_YEARS)
    except ValueError:
        # 29 February
        return today.replace(year=today.year - MIN_AGE_YEARS, day=28)


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _min_length(value: str, size: int) -> str:
    value = value.strip()
    if len(value) < size:
        raise ValueError(f"must have at least {size} characters")
    return value


def _check_password(value: str) -> str:
    if len(value) < PASSWORD_MIN:
        raise ValueError(f"password must have at least {PASSWORD_MIN} characters")
    if len(value) > PASSWORD_MAX:
        raise ValueError(f"password cannot exceed {PASSWORD_MAX} characters")
    return value


def _check_dni(value: str) -> str:
    value = value.strip()
    if not DNI_RE.match(value):
        raise ValueError("dni must have between 7 and 9 digits")
    return value


def _check_birth_date(value: date) -> date:
    if value < MIN_BIRTH_DATE:
        raise ValueError(f"birth date cannot be before {MIN_BIRTH_DATE.isoformat()}")
    if value > max_birth_date():
        raise ValueError(f"user must be at least {MIN_AGE_YEARS} years old")
    return value


def _check_role(value: str) -> str:
    if value not in Role.ALL:
        raise ValueError(f"role must be one of: {', '.join(Role.ALL)}")
    return value


class UserCreateIn(BaseModel):
    name: str
    surname: str
    dni: str
    birth_date: date
    email: EmailStr
    role: str
    password: str
    confirm_password: str

    @field_validator("name", "surname")
    @classmethod
    def _names(cls, v: str) -> str:
        return _min_length(v, 2)

    @field_validator("dni")
    @classmethod
    def _dni(cls, v: str) -> str:
        return _check_dni(v)

    @field_validator("birth_date")
    @classmethod
    def _birth_date(cls, v: date) -> date:
        return _check_birth_date(v)

    @field_validator("role")
    @classmethod
    def _role(cls, v: str) -> str:
        return _check_role(v)

    @field_validator("password")
    @classmethod
    def _password(cls, v: str) -> str:
        return _check_password(v)

    @field_validator("confirm_password")
    @classmethod
    def _confirm(cls, v: str, info: ValidationInfo) -> str:
        if not v:
            raise ValueError("password confirmation is required")
        if "password" in info.data and v != info.data["password"]:
            raise ValueError("passwords do not match")
        return v


class UserUpdateIn(BaseModel):
    name: Optional[str] = None
    surname: Optional[str] = None
    dni: Optional[str] = None
    birth_date: Optional[date] = None
    email: Optional[EmailStr] = None
    role: Optional[str] = None
    password: Optional[str] = None
    confirm_password: Optional[str] = None

    @field_validator("name", "surname")
    @classmethod
    def _names(cls, v: Optional[str]) -> Optional[str]:
        return _min_length(v, 2) if v is not None else v

    @field_validator("dni")
    @classmethod
    def _dni(cls, v: Optional[str]) -> Optional[str]:
        return _check_dni(v) if v is not None else v

    @field_validator("birth_date")
    @classmethod
    def _birth_date(cls, v: Optional[date]) -> Optional[date]:
        return _check_birth_date(v) if v is not None else v

    @field_validator("role")
    @classmethod
    def _role(cls, v: Optional[str]) -> Optional[str]:
        return _check_role(v) if v is not None else v

    @field_validator("password")
    @classmethod
    def _password(cls, v: Optional[str]) -> Optional[str]:
        # empty string keeps the current password
        if not v:
            return None
        return _check_password(v)

    @field_validator("confirm_password")
    @classmethod
    def _confirm(cls, v: Optional[str], info: ValidationInfo) -> Optional[str]:
        password = info.data.get("password")
        if password and v != password:
            raise ValueError("passwords do not match")
        return v or None


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    name: str
    surname: str
    dni: Optional[str] = None
    birth_date: Optional[date] = None
    email: str
    role: str
    last_access: Optional[datetime] = None
    created_at: datetime
    deleted_at: Optional[datetime] = None


class ClassDayIn(BaseModel):
    day: str
    start_time: str
    end_time: str
    modality: str = "Presencial"

    @field_validator("day")
    @classmethod
    def _day(cls, v: str) -> str:
        if v not in WEEKDAYS:
            raise ValueError(f"day must be one of: {', '.join(WEEKDAYS)}")
        return v

    @field_validator("start_time", "end_time")
    @classmethod
    def _time(cls, v: str) -> str:
        if not TIME_RE.match(v):
            raise ValueError("time must use the HH:mm format")
        return v

    @field_validator("modality")
    @classmethod
    def _modality(cls, v: str) -> str:
        if v not in MODALITIES:
            raise ValueError(f"modality must be one of: {', '.join(MODALITIES)}")
        return v

    @model_validator(mode="after")
    def _order(self):
        if self.start_time >= self.end_time:
            raise ValueError("start time must be before end time")
        return self


class CourseCreateIn(BaseModel):
    name: str
    description: str
    password: str
    preferred_modality: str = "Presencial"
    teacher_ids: list[str]
    class_days: list[ClassDayIn]

    @field_validator("name")
    @classmethod
    def _name(cls, v: str) -> str:
        return _min_length(v, 3)

    @field_validator("description")
    @classmethod
    def _description(cls, v: str) -> str:
        return _min_length(v, 10)

    @field_validator("password")
    @classmethod
    def _password(cls, v: str) -> str:
        return _check_password(v)

    @field_validator("preferred_modality")
    @classmethod
    def _modality(cls, v: str) -> str:
        if v not in MODALITIES:
            raise ValueError(f"modality must be one of: {', '.join(MODALITIES)}")
        return v

    @field_validator("teacher_ids")
    @classmethod
    def _teachers(cls, v: list[str]) -> list[str]:
        v = list(dict.fromkeys(t for t in v if t))
        if not v:
            raise ValueError("at least one teacher is required")
        return v

    @field_validator("class_days")
    @classmethod
    def _days(cls, v: list[ClassDayIn]) -> list[ClassDayIn]:
        if not v:
            raise ValueError("at least one class day is required")
        return v


class CourseUpdateIn(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    password: Optional[str] = None
    preferred_modality: Optional[str] = None
    teacher_ids: Optional[list[str]] = None
    class_days: Optional[list[ClassDayIn]] = None

    @field_validator("name")
    @classmethod
    def _name(cls, v: Optional[str]) -> Optional[str]:
        return _min_length(v, 3) if v is not None else v

    @field_validator("description")
    @classmethod
    def _description(cls, v: Optional[str]) -> Optional[str]:
        return _min_length(v, 10) if v is not None else v

    @field_validator("password")
    @classmethod
    def _password(cls, v: Optional[str]) -> Optional[str]:
        if not v:
            return None
        return _check_password(v)

    @field_validator("preferred_modality")
    @classmethod
    def _modality(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in MODALITIES:
            raise ValueError(f"modality must be one of: {', '.join(MODALITIES)}")
        return v

    @field_validator("teacher_ids")
    @classmethod
    def _teachers(cls, v: Optional[list[str]]) -> Optional[list[str]]:
        if v is None:
            return v
        v = list(dict.fromkeys(t for t in v if t))
        if not v:
            raise ValueError("at least one teacher is required")
        return v

    @field_validator("class_days")
    @classmethod
    def _days(cls, v: Optional[list[ClassDayIn]]) -> Optional[list[ClassDayIn]]:
        if v is not None and not v:
            raise ValueError("at least one class day is required")
        return v


class LoginIn(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)


class RefreshIn(BaseModel):
    refresh_token: str = Field(min_length=1)


class ChangePasswordIn(BaseModel):
    current_password: str = Field(min_length=1)
    new_password: str
    confirm_password: str

    @field_validator("new_password")
    @classmethod
    def _password(cls, v: str) -> str:
        return _check_password(v)

    @field_validator("confirm_password")
    @classmethod
    def _confirm(cls, v: str, info: ValidationInfo) -> str:
        if "new_password" in info.data and v != info.data["new_password"]:
            raise ValueError("passwords do not match")
        return v


class ForgotPasswordIn(BaseModel):
    email: EmailStr


class ResetPasswordIn(BaseModel):
    token: str = Field(min_length=1)
    new_password: str
    confirm_password: str

    @field_validator("new_password")
    @classmethod
    def _password(cls, v: str) -> str:
        return _check_password(v)

    @field_validator("confirm_password")
    @classmethod
    def _confirm(cls, v: str, info: ValidationInfo) -> str:
        if "new_password" in info.data and v != info.data["new_password"]:
            raise ValueError("passwords do not match")
        return v


class JoinCourseIn(BaseModel):
    course_id: str = Field(min_length=1)
    password: str = Field(min_length=1)


class MissionSubmitIn(BaseModel):
    student_id: str
    mission_id: str
    stars: int = Field(ge=0, le=3)
    exp: int = Field(ge=0)
    attempts: int = Field(ge=1)
    completed_at: datetime
    is_special: bool = False
    name: Optional[str] = None
    description: Optional[str] = None

    @field_validator("completed_at")
    @classmethod
    def _naive(cls, v: datetime) -> datetime:
        return naive_utc(v)


class DifficultySubmitIn(BaseModel):
    student_id: str
    difficulty_id: str
    grade: str
    recorded_at: Optional[datetime] = None

    @field_validator("grade")
    @classmethod
    def _grade(cls, v: str) -> str:
        if v not in Grade.ALL:
            raise ValueError(f"grade must be one of: {', '.join(Grade.ALL)}")
        return v

    @field_validator("recorded_at")
    @classmethod
    def _naive(cls, v: Optional[datetime]) -> Optional[datetime]:
        return naive_utc(v)


class OptionIn(BaseModel):
    text: str = Field(min_length=1)
    is_correct: bool = False


class QuestionIn(BaseModel):
    difficulty_id: str
    grade: str
    statement: str
    options: list[OptionIn]

    @field_validator("grade")
    @classmethod
    def _grade(cls, v: str) -> str:
        if v not in (Grade.LOW, Grade.MEDIUM, Grade.HIGH):
            raise ValueError("grade must be Low, Medium or High")
        return v

    @field_validator("statement")
    @classmethod
    def _statement(cls, v: str) -> str:
        return _min_length(v, 5)

    @field_validator("options")
    @classmethod
    def _options(cls, v: list[OptionIn]) -> list[OptionIn]:
        if len(v) < 2:
            raise ValueError("a question needs at least two options")
        if sum(1 for o in v if o.is_correct) != 1:
            raise ValueError("exactly one option must be correct")
        return v


class SessionCreateIn(BaseModel):
    student_id: str
    difficulty_id: str
    grade: str
    deadline: datetime
    time_limit_minutes: int = Field(ge=1)
    question_ids: list[str]

    @field_validator("grade")
    @classmethod
    def _grade(cls, v: str) -> str:
        if v not in (Grade.LOW, Grade.MEDIUM, Grade.HIGH):
            raise ValueError("grade must be Low, Medium or High")
        return v

    @field_validator("deadline")
    @classmethod
    def _naive(cls, v: datetime) -> datetime:
        return naive_utc(v)

    @field_validator("question_ids")
    @classmethod
    def _questions(cls, v: list[str]) -> list[str]:
        return list(dict.fromkeys(q for q in v if q))


class SessionUpdateIn(BaseModel):
    student_id: Optional[str] = None
    difficulty_id: Optional[str] = None
    grade: Optional[str] = None
    deadline: Optional[datetime] = None
    time_limit_minutes: Optional[int] = Field(default=None, ge=1)
    question_ids: Optional[list[str]] = None

    @field_validator("grade")
    @classmethod
    def _grade(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in (Grade.LOW, Grade.MEDIUM, Grade.HIGH):
            raise ValueError("grade must be Low, Medium or High")
        return v

    @field_validator("deadline")
    @classmethod
    def _naive(cls, v: Optional[datetime]) -> Optional[datetime]:
        return naive_utc(v)

    @field_validator("question_ids")
    @classmethod
    def _questions(cls, v: Optional[list[str]]) -> Optional[list[str]]:
        return list(dict.fromkeys(q for q in v if q)) if v is not None else v


class AnswerIn(BaseModel):
    question_id: str = Field(min_length=1)
    option_id: str = Field(min_length=1)


class SessionResolveIn(BaseModel):
    answers: list[AnswerIn]


def _check_time(value: str) -> str:
    if not TIME_RE.match(value):
        raise ValueError("time must use the HH:mm format")
    return value


def _check_topic(value: str) -> str:
    if value not in TOPICS:
        raise ValueError(f"topic must be one of: {', '.join(TOPICS)}")
    return value


class ConsultationIn(BaseModel):
    title: str
    description: str
    topic: str
    asked_at: Optional[datetime] = None

    @field_validator("title")
    @classmethod
    def _title(cls, v: str) -> str:
        return _min_length(v, 5)

    @field_validator("description")
    @classmethod
    def _description(cls, v: str) -> str:
        return _min_length(v, 10)

    @field_validator("topic")
    @classmethod
    def _topic(cls, v: str) -> str:
        return _check_topic(v)

    @field_validator("asked_at")
    @classmethod
    def _naive(cls, v: Optional[datetime]) -> Optional[datetime]:
        return naive_utc(v)


class ConsultationUpdateIn(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    topic: Optional[str] = None

    @field_validator("title")
    @classmethod
    def _title(cls, v: Optional[str]) -> Optional[str]:
        return _min_length(v, 5) if v is not None else v

    @field_validator("description")
    @classmethod
    def _description(cls, v: Optional[str]) -> Optional[str]:
        return _min_length(v, 10) if v is not None else v

    @field_validator("topic")
    @classmethod
    def _topic(cls, v: Optional[str]) -> Optional[str]:
        return _check_topic(v) if v is not None else v


class AnswerConsultationIn(BaseModel):
    text: str

    @field_validator("text")
    @classmethod
    def _text(cls, v: str) -> str:
        return _min_length(v, 5)


class RateConsultationIn(BaseModel):
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = None


class ConsultationClassIn(BaseModel):
    teacher_id: str = Field(min_length=1)
    name: str
    description: str
    class_date: date
    start_time: str
    end_time: str
    modality: str = "Presencial"
    consultation_ids: list[str]

    @field_validator("name")
    @classmethod
    def _name(cls, v: str) -> str:
        return _min_length(v, 3)

    @field_validator("description")
    @classmethod
    def _description(cls, v: str) -> str:
        return _min_length(v, 10)

    @field_validator("start_time", "end_time")
    @classmethod
    def _time(cls, v: str) -> str:
        return _check_time(v)

    @field_validator("modality")
    @classmethod
    def _modality(cls, v: str) -> str:
        if v not in MODALITIES:
            raise ValueError(f"modality must be one of: {', '.join(MODALITIES)}")
        return v

    @field_validator("consultation_ids")
    @classmethod
    def _consultations(cls, v: list[str]) -> list[str]:
        v = list(dict.fromkeys(c for c in v if c))
        if len(v) < MIN_CLASS_CONSULTATIONS:
            raise ValueError(f"a consultation class needs at least {MIN_CLASS_CONSULTATIONS} consultations")
        return v


class ConsultationClassUpdateIn(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    class_date: Optional[date] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    modality: Optional[str] = None
    consultation_ids: Optional[list[str]] = None

    @field_validator("name")
    @classmethod
    def _name(cls, v: Optional[str]) -> Optional[str]:
        return _min_length(v, 3) if v is not None else v

    @field_validator("description")
    @classmethod
    def _description(cls, v: Optional[str]) -> Optional[str]:
        return _min_length(v, 10) if v is not None else v

    @field_validator("start_time", "end_time")
    @classmethod
    def _time(cls, v: Optional[str]) -> Optional[str]:
        return _check_time(v) if v is not None else v

    @field_validator("modality")
    @classmethod
    def _modality(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in MODALITIES:
            raise ValueError(f"modality must be one of: {', '.join(MODALITIES)}")
        return v

    @field_validator("consultation_ids")
    @classmethod
    def _consultations(cls, v: Optional[list[str]]) -> Optional[list[str]]:
        if v is None:
            return v
        v = list(dict.fromkeys(c for c in v if c))
        if len(v) < MIN_CLASS_CONSULTATIONS:
            raise ValueError(f"a consultation class needs at least {MIN_CLASS_CONSULTATIONS} consultations")
        return v


class AssignClassIn(BaseModel):
    class_date: Optional[date] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def _time(cls, v: Optional[str]) -> Optional[str]:
        return _check_time(v) if v is not None else v


class CancelClassIn(BaseModel):
    reason: str = Field(min_length=1)


class FinalizeClassIn(BaseModel):
    held: bool
    reason: Optional[str] = None
    reviewed_ids: list[str] = []
