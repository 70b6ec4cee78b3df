"""
Student consultations and the classes that work through them.

Scenarios:
- A consultation starts Pending, an answer marks it Reviewed, a rating resolves it.
- Title and description must differ and be unique within the course.
- Only the owner edits or deletes, and only while the consultation is pending.
- Listings are scoped: own, public for classmates, and the teacher's view with filters.
- The tenth pending consultation of a course generates a class awaiting a teacher.
- Class schedules stay within 08:00-21:00, at most 4 hours, within a week, off class time.
- Cancelling or finalizing a class hands unreviewed consultations back as Pending.
"""
from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from algoritmia.models import AuditLog, Consultation, ConsultationStatus, Role, utcnow
from algoritmia.schemas import CourseUpdateIn

pytestmark = pytest.mark.anyio("asyncio")

TOPICS = ["Sequence", "Logic", "Structures", "Variables", "Procedures"]


@pytest.fixture
def classroom(world):
    teacher = world.add_user(Role.TEACHER)
    student = world.add_user(Role.STUDENT)
    course = world.add_course([teacher])
    world.enroll(student, course)
    return {"teacher": teacher, "student": student, "course": course}


async def _ask(client, world, student, course, index: int, **overrides) -> dict:
    payload = {
        "title": f"Question number {index}",
        "description": f"I do not understand exercise {index} of the loops unit",
        "topic": TOPICS[index % len(TOPICS)],
    }
    payload.update(overrides)
    r = await client.post(f"/students/my/courses/{course['id']}/consultations", json=payload, headers=world.headers(student))
    assert r.status_code == 201, r.text
    return r.json()


async def _ask_many(client, world, classroom, count: int) -> list[str]:
    return [(await _ask(client, world, classroom["student"], classroom["course"], i))["id"] for i in range(count)]


def _statuses(world, ids: list[str]) -> dict[str, str]:
    with world.session() as db:
        return dict(db.execute(select(Consultation.id, Consultation.status).where(Consultation.id.in_(ids))).all())


def _tomorrow() -> str:
    return (utcnow() + timedelta(days=1)).date().isoformat()


def _class_payload(classroom, consultation_ids: list[str], **overrides) -> dict:
    data = {
        "teacher_id": classroom["teacher"].id,
        "name": "Loops review",
        "description": "Going through the pending questions about loops",
        "class_date": _tomorrow(),
        "start_time": "14:00",
        "end_time": "16:00",
        "modality": "Virtual",
        "consultation_ids": consultation_ids,
    }
    data.update(overrides)
    return data


async def _schedule(client, world, classroom, consultation_ids: list[str], **overrides) -> dict:
    r = await client.post(
        f"/courses/{classroom['course']['id']}/consultation-classes",
        json=_class_payload(classroom, consultation_ids, **overrides),
        headers=world.headers(classroom["teacher"]),
    )
    assert r.status_code == 201, r.text
    return r.json()


async def test_consultation_lifecycle(client, world, classroom):
    student, teacher = classroom["student"], classroom["teacher"]
    consultation = await _ask(client, world, student, classroom["course"], 1)
    assert consultation["status"] == ConsultationStatus.PENDING
    assert consultation["automatic_class_id"] is None

    pending = await client.get(f"/teachers/my/courses/{classroom['course']['id']}/consultations/pending", headers=world.headers(teacher))
    assert [c["id"] for c in pending.json()] == [consultation["id"]]

    answer_path = f"/teachers/my/consultations/{consultation['id']}/answer"
    answered = await client.post(answer_path, json={"text": "Count the iterations first"}, headers=world.headers(teacher))
    assert answered.status_code == 201
    assert answered.json()["status"] == ConsultationStatus.REVIEWED
    assert answered.json()["answer"]["teacher_id"] == teacher.id
    assert (await client.post(answer_path, json={"text": "A second answer"}, headers=world.headers(teacher))).status_code == 409

    rate_path = f"/students/my/consultations/{consultation['id']}/rating"
    rated = await client.post(rate_path, json={"rating": 5, "comment": " Very clear "}, headers=world.headers(student))
    assert rated.status_code == 200
    assert (rated.json()["status"], rated.json()["rating"], rated.json()["rating_comment"]) == (ConsultationStatus.RESOLVED, 5, "Very clear")
    assert (await client.post(rate_path, json={"rating": 4}, headers=world.headers(student))).status_code == 403
    assert (await client.post(rate_path, json={"rating": 6}, headers=world.headers(student))).status_code == 400

    with world.session() as db:
        rows = db.execute(select(AuditLog.table_name, AuditLog.operation, AuditLog.user_id)).all()
    rows = {tuple(row) for row in rows}
    assert ("consultations", "CREATE", student.id) in rows
    assert ("consultation_answers", "CREATE", teacher.id) in rows
    assert ("consultations", "UPDATE", student.id) in rows


async def test_consultation_validation(client, world, classroom):
    student, course = classroom["student"], classroom["course"]
    path = f"/students/my/courses/{course['id']}/consultations"
    headers = world.headers(student)
    await _ask(client, world, student, course, 1)

    same_text = {"title": "How do loops end", "description": "how do loops END", "topic": "Logic"}
    r = await client.post(path, json=same_text, headers=headers)
    assert r.status_code == 400
    assert "description" in r.json()["errors"]

    duplicate = {"title": "question NUMBER 1", "description": "Something else entirely about lists", "topic": "Logic"}
    assert (await client.post(path, json=duplicate, headers=headers)).status_code == 409

    bad_topic = await client.post(path, json={**duplicate, "title": "Fresh title", "topic": "Cooking"}, headers=headers)
    assert bad_topic.status_code == 400
    assert "topic" in bad_topic.json()["errors"]

    stranger = world.add_user(Role.STUDENT)
    fresh = {"title": "Fresh title", "description": "Something else entirely about lists", "topic": "Logic"}
    assert (await client.post(path, json=fresh, headers=world.headers(stranger))).status_code == 403
    assert (await client.post(path, json=fresh, headers=world.headers(classroom["teacher"]))).status_code == 403


async def test_only_owner_changes_pending_consultations(client, world, classroom):
    student, course = classroom["student"], classroom["course"]
    classmate = world.add_user(Role.STUDENT)
    world.enroll(classmate, course)
    consultation = await _ask(client, world, student, course, 1)
    path = f"/students/my/consultations/{consultation['id']}"

    assert (await client.patch(path, json={"topic": "Logic"}, headers=world.headers(classmate))).status_code == 403
    assert (await client.delete(path, headers=world.headers(classmate))).status_code == 403
    edited = await client.patch(path, json={"topic": "Logic", "title": "Question about while"}, headers=world.headers(student))
    assert edited.status_code == 200
    assert (edited.json()["topic"], edited.json()["title"]) == ("Logic", "Question about while")
    assert (await client.patch(path, json={}, headers=world.headers(student))).status_code == 400

    await client.post(f"/teachers/my/consultations/{consultation['id']}/answer", json={"text": "Use a counter"}, headers=world.headers(classroom["teacher"]))
    assert (await client.patch(path, json={"topic": "Sequence"}, headers=world.headers(student))).status_code == 403
    assert (await client.delete(path, headers=world.headers(student))).status_code == 403

    other = await _ask(client, world, student, course, 2)
    removed = await client.delete(f"/students/my/consultations/{other['id']}", headers=world.headers(student))
    assert removed.status_code == 200
    assert removed.json()["deleted_at"] is not None
    assert (await client.delete(f"/students/my/consultations/{other['id']}", headers=world.headers(student))).status_code == 404


async def test_listing_scopes(client, world, classroom):
    student, course, teacher = classroom["student"], classroom["course"], classroom["teacher"]
    classmate = world.add_user(Role.STUDENT, name="Bruno")
    world.enroll(classmate, course)
    await _ask(client, world, student, course, 1)
    await _ask(client, world, student, course, 2)
    theirs = await _ask(client, world, classmate, course, 3)
    await client.post(f"/teachers/my/consultations/{theirs['id']}/answer", json={"text": "Check the base case"}, headers=world.headers(teacher))

    base = f"/students/my/courses/{course['id']}/consultations"
    mine = (await client.get(base, headers=world.headers(student))).json()
    assert mine["total"] == 2
    public = (await client.get(f"{base}/public", headers=world.headers(student))).json()
    assert public["total"] == 3
    answered = [c for c in public["data"] if c["id"] == theirs["id"]][0]
    assert answered["student"]["name"] == "Bruno"
    assert answered["answer"]["text"] == "Check the base case"

    teacher_path = f"/teachers/my/courses/{course['id']}/consultations"
    pending = (await client.get(teacher_path, params={"status": "Pending"}, headers=world.headers(teacher))).json()
    assert pending["total"] == 2
    by_topic = (await client.get(teacher_path, params={"topic": TOPICS[3]}, headers=world.headers(teacher))).json()
    assert [c["id"] for c in by_topic["data"]] == [theirs["id"]]
    searched = (await client.get(teacher_path, params={"search": "exercise 2"}, headers=world.headers(teacher))).json()
    assert searched["total"] == 1
    assert (await client.get(teacher_path, params={"status": "Lost"}, headers=world.headers(teacher))).status_code == 400
    outsider = world.add_user(Role.TEACHER)
    assert (await client.get(teacher_path, headers=world.headers(outsider))).status_code == 403


async def test_tenth_pending_consultation_creates_automatic_class(client, world, classroom):
    ids = await _ask_many(client, world, classroom, 9)
    tenth = await _ask(client, world, classroom["student"], classroom["course"], 9)
    assert tenth["automatic_class_id"] is not None
    # the grouped consultations no longer count as pending
    eleventh = await _ask(client, world, classroom["student"], classroom["course"], 10)
    assert eleventh["automatic_class_id"] is None

    listing = await client.get(f"/courses/{classroom['course']['id']}/consultation-classes", headers=world.headers(classroom["teacher"]))
    classes = listing.json()["data"]
    assert len(classes) == 1
    automatic = classes[0]
    assert automatic["status"] == "Pending_assignment"
    assert automatic["teacher_id"] is None
    assert sorted(c["id"] for c in automatic["consultations"]) == sorted(ids + [tenth["id"]])
    starts = datetime.fromisoformat(automatic["starts_at"])
    # the Monday course class starts at 09:00
    assert (starts.weekday(), starts.hour) == (0, 8)
    assert set(_statuses(world, ids).values()) == {ConsultationStatus.TO_REVIEW}

    accepted = await client.post(f"/consultation-classes/{automatic['id']}/assign", headers=world.headers(classroom["teacher"]))
    assert accepted.status_code == 200
    assert (accepted.json()["status"], accepted.json()["teacher_id"]) == ("Scheduled", classroom["teacher"].id)
    again = await client.post(f"/consultation-classes/{automatic['id']}/assign", headers=world.headers(classroom["teacher"]))
    assert again.status_code == 400


async def test_class_schedule_rules(client, world, classroom):
    ids = await _ask_many(client, world, classroom, 5)
    created = await _schedule(client, world, classroom, ids)
    assert created["status"] == "Scheduled"
    assert len(created["consultations"]) == 5
    assert set(_statuses(world, ids).values()) == {ConsultationStatus.TO_REVIEW}

    path = f"/courses/{classroom['course']['id']}/consultation-classes"
    headers = world.headers(classroom["teacher"])
    overlapping = _class_payload(classroom, ids, name="Another review", description="Another pass over the loops unit", start_time="15:00", end_time="17:00")
    assert (await client.post(path, json=overlapping, headers=headers)).status_code == 409
    same_name = _class_payload(classroom, ids, description="Another pass over the loops unit", start_time="18:00", end_time="19:00")
    assert (await client.post(path, json=same_name, headers=headers)).status_code == 409
    busy = _class_payload(classroom, ids, name="Another review", description="Another pass over the loops unit", start_time="18:00", end_time="19:00")
    assert (await client.post(path, json=busy, headers=headers)).status_code == 400

    today = utcnow().date()
    monday = today + timedelta(days=(7 - today.weekday()) % 7 or 7)
    yesterday = (today - timedelta(days=1)).isoformat()
    for overrides in (
        {"class_date": monday.isoformat(), "start_time": "10:00", "end_time": "12:00"},
        {"start_time": "07:00", "end_time": "09:00"},
        {"start_time": "09:00", "end_time": "14:00"},
        {"start_time": "16:00", "end_time": "15:00"},
        {"class_date": yesterday},
        {"class_date": (today + timedelta(days=9)).isoformat()},
        {"consultation_ids": ids[:4]},
    ):
        r = await client.post(path, json=_class_payload(classroom, ids, name="Third", description="A third pass over loops", **overrides), headers=headers)
        assert r.status_code == 400, overrides

    outsider = world.add_user(Role.TEACHER)
    foreign_teacher = _class_payload(classroom, ids, teacher_id=outsider.id)
    assert (await client.post(path, json=foreign_teacher, headers=headers)).status_code == 403
    assert (await client.post(path, json=_class_payload(classroom, ids), headers=world.headers(outsider))).status_code == 403


async def test_update_class_syncs_consultations(client, world, classroom):
    ids = await _ask_many(client, world, classroom, 6)
    created = await _schedule(client, world, classroom, ids[:5])
    path = f"/consultation-classes/{created['id']}"
    headers = world.headers(classroom["teacher"])

    r = await client.patch(path, json={"consultation_ids": ids[1:], "end_time": "17:00"}, headers=headers)
    assert r.status_code == 200, r.text
    assert sorted(c["id"] for c in r.json()["consultations"]) == sorted(ids[1:])
    assert datetime.fromisoformat(r.json()["ends_at"]).hour == 17
    statuses = _statuses(world, ids)
    assert statuses[ids[0]] == ConsultationStatus.PENDING
    assert statuses[ids[5]] == ConsultationStatus.TO_REVIEW

    assert (await client.patch(path, json={"end_time": "19:00"}, headers=headers)).status_code == 400
    assert (await client.patch(path, json={}, headers=headers)).status_code == 400


async def test_cancel_class_releases_consultations(client, world, classroom):
    ids = await _ask_many(client, world, classroom, 5)
    created = await _schedule(client, world, classroom, ids)
    path = f"/consultation-classes/{created['id']}/cancel"
    headers = world.headers(classroom["teacher"])

    assert (await client.post(path, json={"reason": ""}, headers=headers)).status_code == 400
    cancelled = await client.post(path, json={"reason": "Teacher is sick"}, headers=headers)
    assert cancelled.status_code == 200
    assert (cancelled.json()["status"], cancelled.json()["reason"]) == ("Cancelled", "Teacher is sick")
    assert set(_statuses(world, ids).values()) == {ConsultationStatus.PENDING}
    assert (await client.post(path, json={"reason": "Again"}, headers=headers)).status_code == 404


async def test_finalize_class(client, world, classroom):
    co_teacher = world.add_user(Role.TEACHER)
    with world.session() as db:
        world.services.courses.update(db, world.admin(), classroom["course"]["id"], CourseUpdateIn(teacher_ids=[classroom["teacher"].id, co_teacher.id]))
    ids = await _ask_many(client, world, classroom, 5)
    created = await _schedule(client, world, classroom, ids)
    path = f"/consultation-classes/{created['id']}/finalize"
    headers = world.headers(classroom["teacher"])

    assert (await client.post(path, json={"held": True}, headers=world.headers(co_teacher))).status_code == 403
    no_reason = await client.post(path, json={"held": False}, headers=headers)
    assert no_reason.status_code == 400
    assert "reason" in no_reason.json()["errors"]
    stray = await client.post(path, json={"held": True, "reviewed_ids": ["missing"]}, headers=headers)
    assert stray.status_code == 400

    held = await client.post(path, json={"held": True, "reviewed_ids": ids[:2]}, headers=headers)
    assert held.status_code == 200
    assert held.json()["status"] == "Held"
    assert sorted(c["id"] for c in held.json()["consultations"] if c["reviewed"]) == sorted(ids[:2])
    statuses = _statuses(world, ids)
    assert [statuses[i] for i in ids] == [ConsultationStatus.REVIEWED] * 2 + [ConsultationStatus.PENDING] * 3
    assert (await client.post(path, json={"held": True}, headers=headers)).status_code == 400

    with world.session() as db:
        operations = db.scalars(
            select(AuditLog.operation).where(AuditLog.table_name == "consultation_classes", AuditLog.row_id == created["id"])
        ).all()
    assert sorted(operations) == ["CREATE", "UPDATE"]


async def test_admin_can_finalize_as_not_held(client, world, classroom):
    ids = await _ask_many(client, world, classroom, 5)
    created = await _schedule(client, world, classroom, ids)
    r = await client.post(
        f"/consultation-classes/{created['id']}/finalize",
        json={"held": False, "reason": "Nobody showed up"},
        headers=world.headers(world.admin()),
    )
    assert r.status_code == 200
    assert (r.json()["status"], r.json()["reason"]) == ("Not_held", "Nobody showed up")
    assert set(_statuses(world, ids).values()) == {ConsultationStatus.PENDING}
