"""
Audit trail listing and CSV export.

Scenarios:
- Service mutations leave CREATE/UPDATE/DELETE rows with JSON snapshots and the acting user.
- Listing filters by date range, table, operation and a search over table, row and user.
- The export holds every match (no paging) as `;`-separated CSV.
"""
from __future__ import annotations

import csv
import io
import json
from datetime import datetime

import pytest
from sqlalchemy import select

from algoritmia.models import AuditLog, Role

pytestmark = pytest.mark.anyio("asyncio")


@pytest.fixture
def history(world):
    actor = world.add_user(Role.TEACHER, name="Auditor", surname="Zed")
    with world.session() as db:
        db.add_all(
            [
                AuditLog(table_name="courses", row_id="c-1", operation="CREATE", user_id=actor.id, occurred_at=datetime(2025, 1, 10, 12, 0)),
                AuditLog(table_name="courses", row_id="c-1", operation="UPDATE", user_id=actor.id, occurred_at=datetime(2025, 1, 11, 12, 0)),
                AuditLog(table_name="users", row_id="u-9", operation="DELETE", occurred_at=datetime(2025, 1, 12, 12, 0)),
                AuditLog(table_name="users", row_id="u-8", operation="CREATE", occurred_at=datetime(2025, 2, 1, 12, 0)),
            ]
        )
        db.commit()
    return actor


def _range(**extra) -> dict:
    params = {"date_from": "2025-01-01", "date_to": "2025-02-28"}
    params.update(extra)
    return params


async def test_mutations_are_audited(client, world):
    admin = world.headers(world.admin())
    created = await client.post(
        "/users",
        json={
            "name": "Carla",
            "surname": "Ruiz",
            "dni": "41222333",
            "birth_date": "1990-01-01",
            "email": "carla@mail.com",
            "role": "Teacher",
            "password": "abcdef",
            "confirm_password": "abcdef",
        },
        headers=admin,
    )
    user_id = created.json()["id"]
    await client.patch(f"/users/{user_id}", json={"name": "Carlota"}, headers=admin)

    with world.session() as db:
        rows = db.scalars(select(AuditLog).where(AuditLog.row_id == user_id).order_by(AuditLog.occurred_at)).all()
        assert [r.operation for r in rows] == ["CREATE", "UPDATE"]
        assert rows[0].before_json is None
        assert json.loads(rows[1].before_json)["name"] == "Carla"
        assert json.loads(rows[1].after_json)["name"] == "Carlota"
        assert "password_hash" not in rows[0].after_json
        assert rows[0].user_id == world.admin().id


async def test_listing_filters(client, world, history):
    admin = world.headers(world.admin())

    everything = (await client.get("/audit", params=_range(), headers=admin)).json()
    assert everything["total"] == 4
    assert [row["row_id"] for row in everything["data"]] == ["u-8", "u-9", "c-1", "c-1"]

    january = (await client.get("/audit", params={"date_from": "2025-01-11", "date_to": "2025-01-12"}, headers=admin)).json()
    assert [row["operation"] for row in january["data"]] == ["DELETE", "UPDATE"]

    courses = (await client.get("/audit", params=_range(table="courses", operation="UPDATE"), headers=admin)).json()
    assert courses["total"] == 1
    assert courses["data"][0]["user"]["surname"] == "Zed"

    by_user = (await client.get("/audit", params=_range(search="auditor"), headers=admin)).json()
    assert by_user["total"] == 2
    by_row = (await client.get("/audit", params=_range(search="u-9"), headers=admin)).json()
    assert by_row["total"] == 1
    assert by_row["data"][0]["user"] is None

    bad = await client.get("/audit", params=_range(operation="TRUNCATE"), headers=admin)
    assert bad.status_code == 400


async def test_audit_is_admin_only(client, world, history):
    assert (await client.get("/audit", headers=world.headers(history))).status_code == 403
    assert (await client.get("/audit/export", headers=world.headers(history))).status_code == 403


async def test_csv_export(client, world, history):
    r = await client.get("/audit/export", params=_range(table="courses", order="asc", limit=1), headers=world.headers(world.admin()))
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/csv")
    assert "attachment" in r.headers["content-disposition"]

    reader = csv.DictReader(io.StringIO(r.text), delimiter=";")
    rows = list(reader)
    assert reader.fieldnames[:5] == ["id", "occurred_at", "table_name", "row_id", "operation"]
    assert [row["operation"] for row in rows] == ["CREATE", "UPDATE"]
    assert rows[0]["occurred_at"] == "2025-01-10 12:00:00"
    assert rows[0]["user_email"] == history.email
