"""
Bounded, ordered, filtered reads for every listing endpoint.

A listing is described by a `ListQuery` (page, limit, sort, order, search) plus
zero or more filter clauses built by the helpers below. Helpers return `None`
for empty input so that an absent filter never constrains the result.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Mapping, Optional, Sequence, Union

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session
from sqlalchemy.sql import ColumnElement, Select

from .errors import ValidationFailed

MAX_LIMIT = 100


@dataclass(frozen=True)
class ListQuery:
    page: int = 1
    limit: int = 10
    sort: Optional[str] = None
    order: str = "asc"
    search: Optional[str] = None

    @classmethod
    def build(
        cls,
        page: Optional[int] = None,
        limit: Optional[int] = None,
        sort: Optional[str] = None,
        order: Optional[str] = None,
        search: Optional[str] = None,
        default_limit: int = 10,
        default_sort: Optional[str] = None,
        default_order: str = "asc",
    ) -> "ListQuery":
        errors: dict[str, list[str]] = {}
        if page is not None and page < 1:
            errors["page"] = ["page must be at least 1"]
        if limit is not None and limit < 1:
            errors["limit"] = ["limit must be at least 1"]
        if order and order not in {"asc", "desc"}:
            errors["order"] = ["order must be asc or desc"]
        if errors:
            raise ValidationFailed("Invalid pagination", errors)
        return cls(
            page=page or 1,
            limit=min(limit or default_limit, MAX_LIMIT),
            sort=sort or default_sort,
            order=order or default_order,
            search=(search or "").strip() or None,
        )

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


@dataclass
class Page:
    data: list
    total: int
    page: int
    limit: int
    total_pages: int = field(init=False)

    def __post_init__(self):
        self.total_pages = math.ceil(self.total / self.limit) if self.limit else 0

    def map(self, fn: Callable[[Any], Any]) -> "Page":
        return Page(data=[fn(row) for row in self.data], total=self.total, page=self.page, limit=self.limit)


def apply_filters(stmt: Select, *clauses: Optional[ColumnElement]) -> Select:
    for clause in clauses:
        if clause is not None:
            stmt = stmt.where(clause)
    return stmt


def count_rows(db: Session, stmt: Select) -> int:
    return db.scalar(select(func.count()).select_from(stmt.order_by(None).subquery())) or 0


def paginate(
    db: Session,
    stmt: Select,
    query: ListQuery,
    sort_columns: Mapping[str, Union[ColumnElement, Sequence[ColumnElement]]],
    default_sort: str,
    scalars: bool = True,
) -> Page:
    total = count_rows(db, stmt)
    cols = sort_columns.get(query.sort or default_sort, sort_columns[default_sort])
    if not isinstance(cols, (list, tuple)):
        cols = [cols]
    ordered = stmt.order_by(*[c.desc() if query.order == "desc" else c.asc() for c in cols])
    result = db.execute(ordered.limit(query.limit).offset(query.offset))
    rows = list(result.scalars().all()) if scalars else list(result.all())
    return Page(data=rows, total=total, page=query.page, limit=query.limit)


def search_filter(text: Optional[str], *columns: ColumnElement) -> Optional[ColumnElement]:
    if not text:
        return None
    return or_(*[c.icontains(text, autoescape=True) for c in columns])


def split_csv(raw: Optional[str]) -> list[str]:
    return [part.strip() for part in (raw or "").split(",") if part.strip()]


def enum_filter(column: ColumnElement, values: Optional[Sequence[str]], allowed: Optional[Sequence[str]] = None, name: str = "filter") -> Optional[ColumnElement]:
    picked = [v for v in (values or []) if v]
    if not picked:
        return None
    if allowed is not None:
        bad = [v for v in picked if v not in allowed]
        if bad:
            raise ValidationFailed("Invalid filter", {name: [f"unknown value: {v}" for v in bad]})
    return column.in_(picked)


def _day_start(value: Union[date, datetime]) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min)


def date_range_filter(column: ColumnElement, start: Optional[date] = None, end: Optional[date] = None) -> Optional[ColumnElement]:
    """Inclusive on both ends at day granularity: `end` covers the whole day."""
    clauses = []
    if start:
        clauses.append(column >= _day_start(start))
    if end:
        end_day = end.date() if isinstance(end, datetime) else end
        clauses.append(column < datetime.combine(end_day + timedelta(days=1), time.min))
    if not clauses:
        return None
    return and_(*clauses)


@dataclass(frozen=True)
class Bucket:
    low: Optional[float] = None
    high: Optional[float] = None
    high_inclusive: bool = True

    def clause(self, column: ColumnElement) -> ColumnElement:
        parts = []
        if self.low is not None:
            parts.append(column >= self.low)
        if self.high is not None:
            parts.append(column <= self.high if self.high_inclusive else column < self.high)
        return and_(*parts)


PROGRESS_BUCKETS = {
    "0": Bucket(0, 0),
    "1-25": Bucket(1, 25),
    "26-50": Bucket(26, 50),
    "51-75": Bucket(51, 75),
    "76-99": Bucket(76, 99),
    "100": Bucket(100, 100),
}
STARS_BUCKETS = {
    "0-1": Bucket(0, 1),
    "1.1-2": Bucket(1.1, 2),
    "2.1-3": Bucket(2.1, 3),
}
ATTEMPTS_BUCKETS = {
    "<3": Bucket(None, 3, high_inclusive=False),
    "3-6": Bucket(3, 6),
    "6-9": Bucket(6, 9),
    "+10": Bucket(10, None),
}


def bucket_filter(column: ColumnElement, key: Optional[str], buckets: Mapping[str, Bucket], name: str = "range") -> Optional[ColumnElement]:
    if not key:
        return None
    bucket = buckets.get(key)
    if bucket is None:
        raise ValidationFailed("Invalid filter", {name: [f"expected one of: {', '.join(buckets)}"]})
    return bucket.clause(column)


ACTIVITY_WINDOWS = {"24h": 1, "3d": 3, "5d": 5, "7d": 7}


def activity_filter(column: ColumnElement, key: Optional[str], now: datetime) -> Optional[ColumnElement]:
    if not key:
        return None
    if key == "inactive":
        return column < now - timedelta(days=7)
    days = ACTIVITY_WINDOWS.get(key)
    if days is None:
        raise ValidationFailed("Invalid filter", {"activity_range": [f"expected one of: {', '.join([*ACTIVITY_WINDOWS, 'inactive'])}"]})
    return column >= now - timedelta(days=days)
