"""
Shape nested records into the flat payloads the client renders.

Every function here is a pure transform: inputs are read, never mutated, and
the returned structures share no mutable containers with them.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy.inspection import inspect

from .models import LinkStatus

TIME_EPOCH = (1970, 1, 1)
PRIVATE_FIELDS = {"password_hash", "token_hash"}


def serialize(instance) -> dict:
    return {c.key: getattr(instance, c.key) for c in inspect(instance).mapper.column_attrs if c.key not in PRIVATE_FIELDS}


def format_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return f"{value.hour:02d}:{value.minute:02d}"


def parse_time(value: str) -> datetime:
    hours, minutes = value.split(":")
    return datetime(*TIME_EPOCH, int(hours), int(minutes))


def public_user(user: Any) -> dict:
    data = serialize(user) if not isinstance(user, dict) else dict(user)
    for key in PRIVATE_FIELDS:
        data.pop(key, None)
    return data


def teacher_name(user: dict) -> dict:
    return {"id": user["id"], "name": user["name"], "surname": user["surname"]}


def format_class_day(day: dict) -> dict:
    return {
        "id": day.get("id"),
        "day": day["day"],
        "start_time": format_time(day["start_time"]),
        "end_time": format_time(day["end_time"]),
        "modality": day.get("modality"),
    }


def flatten_course(record: dict, teacher_statuses: Iterable[str] = (LinkStatus.ACTIVE,)) -> dict:
    """Replace assignment wrappers with their teachers and render class-day times.

    `record` is the nested shape built by `repositories.load_course_records`:
    course columns plus `assignments` ([{status, teacher}]), `class_days` and
    `students_count`.
    """
    allowed = set(teacher_statuses)
    flat = {k: v for k, v in record.items() if k not in {"assignments", "class_days"} and k not in PRIVATE_FIELDS}
    flat["teachers"] = [teacher_name(a["teacher"]) for a in record.get("assignments", []) if a["status"] in allowed]
    flat["class_days"] = [format_class_day(d) for d in record.get("class_days", [])]
    flat["students_count"] = record.get("students_count", 0)
    return flat


def flatten_link(link: dict, course_record: dict) -> dict:
    flat = {k: v for k, v in link.items() if k not in PRIVATE_FIELDS}
    flat["course"] = flatten_course(course_record)
    return flat


def difficulty_row(difficulty: dict, grade: str) -> dict:
    return {
        "id": difficulty["id"],
        "name": difficulty["name"],
        "description": difficulty.get("description", ""),
        "topic": difficulty["topic"],
        "grade": grade,
    }


def page_payload(page) -> dict:
    return {"data": page.data, "total": page.total, "page": page.page, "totalPages": page.total_pages}
