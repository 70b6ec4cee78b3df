"""
Response normalizer: pure transforms from nested records to client payloads.

Scenarios:
- HH:mm rendering and parsing of time-of-day columns.
- Assignment wrappers collapse to their teachers, filtered by link status.
- Inputs are left untouched.
- Password hashes never leave through `public_user`.
"""
from __future__ import annotations

import copy
from datetime import datetime

from algoritmia.normalize import (
    difficulty_row,
    flatten_course,
    flatten_link,
    format_time,
    page_payload,
    parse_time,
    public_user,
)
from algoritmia.queries import Page


def _record() -> dict:
    return {
        "id": "c1",
        "name": "Algorithms I",
        "password_hash": "$2b$secret",
        "assignments": [
            {"status": "Active", "teacher": {"id": "t1", "name": "Ada", "surname": "Lovelace", "email": "ada@mail.com"}},
            {"status": "Inactive", "teacher": {"id": "t2", "name": "Alan", "surname": "Turing", "email": "alan@mail.com"}},
        ],
        "class_days": [
            {"id": "d1", "day": "Monday", "start_time": datetime(1970, 1, 1, 9, 5), "end_time": datetime(1970, 1, 1, 11, 0), "modality": "Online"},
        ],
        "students_count": 3,
    }


def test_format_time_renders_hours_and_minutes():
    assert format_time(datetime(1970, 1, 1, 7, 3)) == "07:03"
    assert format_time(None) is None


def test_parse_time_anchors_on_epoch_day():
    assert parse_time("18:45") == datetime(1970, 1, 1, 18, 45)
    assert format_time(parse_time("00:00")) == "00:00"


def test_flatten_course_keeps_only_active_teachers():
    flat = flatten_course(_record())
    assert flat["teachers"] == [{"id": "t1", "name": "Ada", "surname": "Lovelace"}]
    assert flat["class_days"] == [{"id": "d1", "day": "Monday", "start_time": "09:05", "end_time": "11:00", "modality": "Online"}]
    assert flat["students_count"] == 3
    assert "assignments" not in flat
    assert "password_hash" not in flat


def test_flatten_course_can_include_other_statuses():
    flat = flatten_course(_record(), ("Active", "Inactive"))
    assert [t["id"] for t in flat["teachers"]] == ["t1", "t2"]


def test_flatten_course_does_not_mutate_input():
    record = _record()
    snapshot = copy.deepcopy(record)
    flat = flatten_course(record)
    flat["teachers"].append({"id": "x"})
    assert record == snapshot


def test_flatten_link_nests_flattened_course():
    link = {"id": "l1", "status": "Active", "course_id": "c1"}
    flat = flatten_link(link, _record())
    assert flat["status"] == "Active"
    assert flat["course"]["teachers"][0]["id"] == "t1"
    assert link == {"id": "l1", "status": "Active", "course_id": "c1"}


def test_public_user_drops_password_hash():
    data = public_user({"id": "u1", "name": "Ana", "password_hash": "$2b$x"})
    assert data == {"id": "u1", "name": "Ana"}


def test_difficulty_row_shape():
    row = difficulty_row({"id": "d", "name": "Loops", "description": "x", "topic": "Structures"}, "High")
    assert row == {"id": "d", "name": "Loops", "description": "x", "topic": "Structures", "grade": "High"}


def test_page_payload_uses_client_keys():
    payload = page_payload(Page(data=[1, 2], total=5, page=1, limit=2))
    assert payload == {"data": [1, 2], "total": 5, "page": 1, "totalPages": 3}
