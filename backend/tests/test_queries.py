"""
Resource query builder against a real (in-memory) store.

Scenarios:
- Page p with limit l returns at most l rows while `total` counts every match.
- Limits are capped, bad page/order values are rejected.
- Empty filters impose no constraint; unknown enum values are rejected.
- Date ranges include the whole end day; range buckets map to numeric bounds.
"""
from __future__ import annotations

from datetime import date, datetime

import pytest
from sqlalchemy import select

from algoritmia.errors import ValidationFailed
from algoritmia.models import AuditLog, Role, User
from algoritmia.queries import (
    ATTEMPTS_BUCKETS,
    MAX_LIMIT,
    ListQuery,
    apply_filters,
    bucket_filter,
    count_rows,
    date_range_filter,
    enum_filter,
    paginate,
    search_filter,
    split_csv,
)

SORTS = {"surname": User.surname, "email": User.email}


@pytest.fixture
def people(world):
    for i in range(7):
        world.add_user(Role.STUDENT, surname=f"Student{i}", name="Pupil")
    for i in range(3):
        world.add_user(Role.TEACHER, surname=f"Teacher{i}", name="Mentor")


def test_list_query_defaults_and_cap():
    query = ListQuery.build(limit=1000, default_limit=6, default_sort="surname")
    assert query.page == 1
    assert query.limit == MAX_LIMIT
    assert query.sort == "surname"
    assert ListQuery.build(default_limit=6).limit == 6
    assert ListQuery.build(page=3, limit=4).offset == 8


@pytest.mark.parametrize("kwargs, field", [({"page": 0}, "page"), ({"limit": 0}, "limit"), ({"order": "up"}, "order")])
def test_list_query_rejects_bad_values(kwargs, field):
    with pytest.raises(ValidationFailed) as exc:
        ListQuery.build(**kwargs)
    assert field in exc.value.field_errors


@pytest.mark.parametrize("page, expected", [(1, 4), (2, 4), (3, 2), (4, 0)])
def test_paginate_bounds_rows_and_counts_all(db, people, page, expected):
    stmt = select(User).where(User.role.in_([Role.STUDENT, Role.TEACHER]))
    result = paginate(db, stmt, ListQuery.build(page=page, limit=4), SORTS, "surname")
    assert len(result.data) == expected
    assert result.total == 10
    assert result.total_pages == 3


def test_paginate_sorts_and_falls_back_on_unknown_key(db, people):
    stmt = select(User).where(User.role == Role.STUDENT)
    desc = paginate(db, stmt, ListQuery.build(sort="surname", order="desc", limit=3), SORTS, "surname")
    assert [u.surname for u in desc.data] == ["Student6", "Student5", "Student4"]
    unknown = paginate(db, stmt, ListQuery.build(sort="password_hash", limit=2), SORTS, "surname")
    assert [u.surname for u in unknown.data] == ["Student0", "Student1"]


def test_search_is_case_insensitive_substring(db, people):
    stmt = apply_filters(select(User), search_filter("mentor", User.name, User.surname))
    assert count_rows(db, stmt) == 3
    assert search_filter("", User.name) is None
    assert search_filter(None, User.name) is None


def test_empty_filters_do_not_constrain(db, people):
    everyone = count_rows(db, select(User))
    stmt = apply_filters(select(User), enum_filter(User.role, []), enum_filter(User.role, None), search_filter(None, User.name))
    assert count_rows(db, stmt) == everyone


def test_enum_filter_rejects_unknown_values():
    with pytest.raises(ValidationFailed) as exc:
        enum_filter(User.role, ["Teacher", "Janitor"], Role.ALL, "roles")
    assert exc.value.field_errors == {"roles": ["unknown value: Janitor"]}


def test_date_range_includes_whole_end_day(db):
    db.add_all(
        [
            AuditLog(table_name="t", row_id="1", operation="CREATE", occurred_at=datetime(2025, 3, 9, 23, 59)),
            AuditLog(table_name="t", row_id="2", operation="CREATE", occurred_at=datetime(2025, 3, 10, 0, 0)),
            AuditLog(table_name="t", row_id="3", operation="CREATE", occurred_at=datetime(2025, 3, 12, 23, 59, 59)),
            AuditLog(table_name="t", row_id="4", operation="CREATE", occurred_at=datetime(2025, 3, 13, 0, 0)),
        ]
    )
    db.commit()
    clause = date_range_filter(AuditLog.occurred_at, date(2025, 3, 10), date(2025, 3, 12))
    rows = db.scalars(select(AuditLog.row_id).where(clause).order_by(AuditLog.row_id)).all()
    assert rows == ["2", "3"]
    assert date_range_filter(AuditLog.occurred_at) is None


def test_bucket_filter_unknown_key():
    with pytest.raises(ValidationFailed):
        bucket_filter(User.surname, "lots", ATTEMPTS_BUCKETS, "attempts_range")
    assert bucket_filter(User.surname, None, ATTEMPTS_BUCKETS) is None


def test_split_csv():
    assert split_csv(" Teacher, ,Student ") == ["Teacher", "Student"]
    assert split_csv(None) == []
