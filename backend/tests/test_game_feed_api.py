"""
Game feed: mission and difficulty batches posted by the signed-in student.

Scenarios:
- A mission keeps its best score; lower resubmissions are ignored, better ones replace it.
- A repeated mission inside one batch counts once.
- Special missions are stored apart per student and do not count towards completed missions.
- Completions, progress and grades written by the game are audited under the student.
- Batches must belong to the caller; empty, foreign or unknown entries are rejected.
- Submitting a difficulty then fetching shows exactly one entry per difficulty.
"""
from __future__ import annotations

from collections import Counter

import pytest
from sqlalchemy import select

from algoritmia.models import AuditLog, Difficulty, DifficultyHistory, Mission, Role, SpecialMissionCompletion

pytestmark = pytest.mark.anyio("asyncio")


@pytest.fixture
def catalogue(world):
    with world.session() as db:
        missions = db.scalars(select(Mission).order_by(Mission.level, Mission.name)).all()
        difficulties = db.scalars(select(Difficulty).order_by(Difficulty.name)).all()
        return {"missions": [m.id for m in missions], "difficulties": [d.id for d in difficulties]}


@pytest.fixture
def enrolled(world):
    teacher = world.add_user(Role.TEACHER)
    student = world.add_user(Role.STUDENT)
    course = world.add_course([teacher])
    world.enroll(student, course)
    return {"teacher": teacher, "student": student, "course": course}


def _mission(student_id: str, mission_id: str, stars: int, exp: int, attempts: int = 1, **extra) -> dict:
    item = {
        "student_id": student_id,
        "mission_id": mission_id,
        "stars": stars,
        "exp": exp,
        "attempts": attempts,
        "completed_at": "2025-04-02T10:00:00Z",
    }
    item.update(extra)
    return item


async def _progress(client, world, enrolled) -> dict:
    r = await client.get(f"/students/my/courses/{enrolled['course']['id']}/progress", headers=world.headers(enrolled["student"]))
    assert r.status_code == 200
    return r.json()


async def test_mission_keeps_best_score(client, world, catalogue, enrolled):
    student = enrolled["student"]
    headers = world.headers(student)
    mission = catalogue["missions"][0]

    first = await client.post("/progress/submit-missions", json=[_mission(student.id, mission, 2, 100, 3)], headers=headers)
    assert first.status_code == 200
    await client.post("/progress/submit-missions", json=[_mission(student.id, mission, 1, 500, 1)], headers=headers)
    progress = await _progress(client, world, enrolled)
    assert (progress["completed_missions"], progress["total_stars"], progress["total_exp"]) == (1, 2, 100)

    await client.post("/progress/submit-missions", json=[_mission(student.id, mission, 2, 150, 2)], headers=headers)
    progress = await _progress(client, world, enrolled)
    assert (progress["completed_missions"], progress["total_stars"], progress["total_exp"], progress["total_attempts"]) == (1, 2, 150, 2)
    assert progress["pct_completed"] == pytest.approx(10.0)
    assert progress["last_activity"] is not None

    statuses = (await client.get(f"/students/my/courses/{enrolled['course']['id']}/missions", headers=headers)).json()
    assert len(statuses) == len(catalogue["missions"])
    done = [row for row in statuses if row["completion"] is not None]
    assert [(row["mission"]["id"], row["completion"]["exp"]) for row in done] == [(mission, 150)]


async def test_repeated_mission_in_one_batch_counts_once(client, world, catalogue, enrolled):
    student = enrolled["student"]
    mission = catalogue["missions"][1]
    batch = [_mission(student.id, mission, 1, 10), _mission(student.id, mission, 3, 30)]
    r = await client.post("/progress/submit-missions", json=batch, headers=world.headers(student))
    assert r.status_code == 200
    progress = r.json()["progress"]
    assert progress["completed_missions"] == 1
    assert progress["total_stars"] == 3
    assert progress["avg_stars"] == pytest.approx(3.0)


async def test_course_progress_follows_submissions(client, world, catalogue, enrolled):
    student = enrolled["student"]
    batch = [_mission(student.id, m, 3, 20) for m in catalogue["missions"][:2]]
    await client.post("/progress/submit-missions", json=batch, headers=world.headers(student))
    overview = await client.get(
        f"/teachers/my/courses/{enrolled['course']['id']}/progress-overview", headers=world.headers(enrolled["teacher"])
    )
    body = overview.json()
    assert body["completed_missions"] == 2
    assert body["total_stars"] == 6
    assert body["avg_stars"] == pytest.approx(3.0)


async def test_special_missions_are_kept_apart(client, world, catalogue, enrolled):
    student = enrolled["student"]
    special = _mission(student.id, "bonus-level-1", 3, 40, is_special=True, name="Bonus", description="Hidden level")
    r = await client.post("/progress/submit-missions", json=[special], headers=world.headers(student))
    assert r.status_code == 200
    progress = await _progress(client, world, enrolled)
    assert progress["completed_missions"] == 0
    assert progress["total_exp"] == 40
    assert [(s["mission_key"], s["name"]) for s in progress["special_missions"]] == [("bonus-level-1", "Bonus")]


async def test_special_mission_is_per_student(client, world, catalogue, enrolled):
    classmate = world.add_user(Role.STUDENT)
    world.enroll(classmate, enrolled["course"])
    for student in (enrolled["student"], classmate):
        special = _mission(student.id, "special-1", 2, 25, is_special=True, name="Secret room")
        r = await client.post("/progress/submit-missions", json=[special], headers=world.headers(student))
        assert r.status_code == 200, r.text
        assert r.json()["progress"]["total_exp"] == 25

    with world.session() as db:
        rows = db.scalars(select(SpecialMissionCompletion).where(SpecialMissionCompletion.mission_key == "special-1")).all()
    assert len(rows) == 2
    assert len({row.progress_id for row in rows}) == 2


async def test_game_feed_changes_are_audited(client, world, catalogue, enrolled):
    student = enrolled["student"]
    headers = world.headers(student)
    mission = catalogue["missions"][0]
    await client.post("/progress/submit-missions", json=[_mission(student.id, mission, 1, 10)], headers=headers)
    await client.post("/progress/submit-missions", json=[_mission(student.id, mission, 3, 30)], headers=headers)
    item = {"student_id": student.id, "difficulty_id": catalogue["difficulties"][0], "grade": "Medium"}
    await client.post("/difficulties/submit", json=[item], headers=headers)
    await client.post("/difficulties/submit", json=[{**item, "grade": "Low"}], headers=headers)

    with world.session() as db:
        rows = db.execute(
            select(AuditLog.table_name, AuditLog.operation).where(AuditLog.user_id == student.id)
        ).all()
    counts = Counter(tuple(row) for row in rows)
    assert counts[("mission_completions", "CREATE")] == 1
    assert counts[("mission_completions", "UPDATE")] == 1
    assert counts[("student_progress", "UPDATE")] == 2
    assert counts[("student_difficulties", "CREATE")] == 1
    assert counts[("student_difficulties", "UPDATE")] == 1


async def test_mission_batch_rejections(client, world, catalogue, enrolled):
    student = enrolled["student"]
    headers = world.headers(student)
    mission = catalogue["missions"][0]
    other = world.add_user(Role.STUDENT)

    assert (await client.post("/progress/submit-missions", json=[_mission(student.id, mission, 1, 1)])).status_code == 401
    teacher_call = await client.post(
        "/progress/submit-missions", json=[_mission(student.id, mission, 1, 1)], headers=world.headers(enrolled["teacher"])
    )
    assert teacher_call.status_code == 403

    assert (await client.post("/progress/submit-missions", json=[_mission(other.id, mission, 1, 1)], headers=headers)).status_code == 400
    assert (await client.post("/progress/submit-missions", json=[], headers=headers)).status_code == 400
    assert (await client.post("/progress/submit-missions", json={"not": "a list"}, headers=headers)).status_code == 400

    bad_stars = await client.post("/progress/submit-missions", json=[_mission(student.id, mission, 5, 1)], headers=headers)
    assert bad_stars.status_code == 400
    assert "0.stars" in bad_stars.json()["errors"]

    unknown = await client.post("/progress/submit-missions", json=[_mission(student.id, "no-such-mission", 1, 1)], headers=headers)
    assert unknown.status_code == 400
    assert "mission_id" in unknown.json()["errors"]

    loner = world.add_user(Role.STUDENT)
    unenrolled = await client.post("/progress/submit-missions", json=[_mission(loner.id, mission, 1, 1)], headers=world.headers(loner))
    assert unenrolled.status_code == 404


async def test_difficulty_submit_then_fetch(client, world, catalogue, enrolled):
    student = enrolled["student"]
    headers = world.headers(student)
    course_id = enrolled["course"]["id"]
    difficulty = catalogue["difficulties"][0]
    item = {"student_id": student.id, "difficulty_id": difficulty, "grade": "Low"}

    r = await client.post("/difficulties/submit", json=[item], headers=headers)
    assert r.status_code == 200
    assert r.json()["course_id"] == course_id

    rows = (await client.get(f"/students/my/courses/{course_id}/difficulties", headers=headers)).json()
    assert [(row["id"], row["grade"]) for row in rows] == [(difficulty, "Low")]

    await client.post("/difficulties/submit", json=[{**item, "grade": "Medium"}], headers=headers)
    rows = (await client.get(f"/students/my/courses/{course_id}/difficulties", headers=headers)).json()
    assert [(row["id"], row["grade"]) for row in rows] == [(difficulty, "Medium")]

    with world.session() as db:
        changes = db.scalars(select(DifficultyHistory).order_by(DifficultyHistory.changed_at)).all()
        assert [(c.previous_grade, c.new_grade, c.source) for c in changes] == [("None", "Low", "GAME"), ("Low", "Medium", "GAME")]


async def test_unchanged_grade_is_not_logged(client, world, catalogue, enrolled):
    student = enrolled["student"]
    item = {"student_id": student.id, "difficulty_id": catalogue["difficulties"][0], "grade": "Low"}
    for _ in range(2):
        await client.post("/difficulties/submit", json=[item], headers=world.headers(student))
    with world.session() as db:
        assert len(db.scalars(select(DifficultyHistory)).all()) == 1


async def test_course_difficulty_summary(client, world, catalogue, enrolled):
    student = enrolled["student"]
    first, second = catalogue["difficulties"][:2]
    batch = [
        {"student_id": student.id, "difficulty_id": first, "grade": "High"},
        {"student_id": student.id, "difficulty_id": second, "grade": "Low"},
    ]
    r = await client.post("/difficulties/submit", json=batch, headers=world.headers(student))
    # no system questions are seeded, so no automatic session can be built
    assert r.json()["automatic_sessions"] == []

    teacher = world.headers(enrolled["teacher"])
    course_id = enrolled["course"]["id"]
    overview = (await client.get(f"/teachers/my/courses/{course_id}/difficulties-overview", headers=teacher)).json()
    assert overview["avg_difficulties"] == pytest.approx(2.0)
    assert overview["avg_grade"] == "Medium"
    assert overview["mode_difficulty"]["id"] in {first, second}

    listing = (await client.get(f"/teachers/my/courses/{course_id}/difficulties-students", params={"grade": "High"}, headers=teacher)).json()
    assert listing["total"] == 1
    assert listing["data"][0]["grades"] == {"High": 1, "Medium": 0, "Low": 1}


async def test_difficulty_batch_rejects_unknown_grade(client, world, catalogue, enrolled):
    student = enrolled["student"]
    item = {"student_id": student.id, "difficulty_id": catalogue["difficulties"][0], "grade": "Extreme"}
    r = await client.post("/difficulties/submit", json=[item], headers=world.headers(student))
    assert r.status_code == 400
    assert "0.grade" in r.json()["errors"]
