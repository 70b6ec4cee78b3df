from __future__ import annotations

import csv
import io
from datetime import date
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..audit import Operation
from ..models import AuditLog, User
from ..queries import ListQuery, Page, apply_filters, date_range_filter, enum_filter, paginate, search_filter

AUDIT_SORTS = {
    "occurred_at": AuditLog.occurred_at,
    "table": AuditLog.table_name,
    "operation": AuditLog.operation,
    "row_id": AuditLog.row_id,
    "user_id": AuditLog.user_id,
}
CSV_COLUMNS = ["id", "occurred_at", "table_name", "row_id", "operation", "user_id", "user_email", "before_json", "after_json"]


def _row(entry: AuditLog, user: Optional[User]) -> dict:
    return {
        "id": entry.id,
        "occurred_at": entry.occurred_at,
        "table_name": entry.table_name,
        "row_id": entry.row_id,
        "operation": entry.operation,
        "user_id": entry.user_id,
        "user": {"id": user.id, "name": user.name, "surname": user.surname, "email": user.email} if user else None,
        "before_json": entry.before_json,
        "after_json": entry.after_json,
    }


class AuditService:
    def _statement(
        self,
        query: ListQuery,
        date_from: Optional[date],
        date_to: Optional[date],
        table: Optional[str],
        operation: Optional[str],
    ):
        stmt = select(AuditLog, User).outerjoin(User, User.id == AuditLog.user_id)
        return apply_filters(
            stmt,
            date_range_filter(AuditLog.occurred_at, date_from, date_to),
            enum_filter(AuditLog.table_name, [table] if table else None),
            enum_filter(AuditLog.operation, [operation] if operation else None, Operation.ALL, "operation"),
            search_filter(query.search, AuditLog.table_name, AuditLog.row_id, User.name, User.surname, User.email, User.dni),
        )

    def list(
        self,
        db: Session,
        query: ListQuery,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        table: Optional[str] = None,
        operation: Optional[str] = None,
    ) -> Page:
        stmt = self._statement(query, date_from, date_to, table, operation)
        page = paginate(db, stmt, query, AUDIT_SORTS, "occurred_at", scalars=False)
        return page.map(lambda row: _row(row[0], row[1]))

    def export_csv(
        self,
        db: Session,
        query: ListQuery,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        table: Optional[str] = None,
        operation: Optional[str] = None,
    ) -> str:
        """Every matching entry (no paging) as `;`-separated CSV."""
        stmt = self._statement(query, date_from, date_to, table, operation)
        sort = AUDIT_SORTS.get(query.sort or "occurred_at", AuditLog.occurred_at)
        stmt = stmt.order_by(sort.desc() if query.order == "desc" else sort.asc())
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=CSV_COLUMNS, delimiter=";", extrasaction="ignore")
        writer.writeheader()
        for entry, user in db.execute(stmt).all():
            row = _row(entry, user)
            row["occurred_at"] = entry.occurred_at.isoformat(sep=" ", timespec="seconds")
            row["user_email"] = user.email if user else ""
            writer.writerow(row)
        return buffer.getvalue()
