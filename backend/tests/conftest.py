"""
Shared fixtures: a fresh application over in-memory SQLite per test, an HTTP
client bound to it through ASGITransport, and a small `World` helper that
creates users, courses and enrollments directly through the services.
"""
from __future__ import annotations

from typing import Optional

import httpx
import pytest
from httpx import ASGITransport
from sqlalchemy import select

from algoritmia.config import Settings
from algoritmia.main import create_app, prepare_database
from algoritmia.models import Role, User
from algoritmia.schemas import CourseCreateIn, JoinCourseIn

ADMIN_EMAIL = "admin@mail.com"
ADMIN_PASSWORD = "admin123"


@pytest.fixture
def anyio_backend():
    return "asyncio"


class RecordingNotifier:
    def __init__(self):
        self.links: list[tuple[str, str]] = []

    def send_reset_link(self, user: User, link: str) -> None:
        self.links.append((user.id, link))


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        env="test",
        database_url="sqlite://",
        hash_rounds=4,
        jwt_secret="test-secret",
        admin_email=ADMIN_EMAIL,
        admin_password=ADMIN_PASSWORD,
    )


@pytest.fixture
def app(settings, notifier):
    application = create_app(settings, notifier)
    prepare_database(application)
    yield application
    application.state.engine.dispose()


@pytest.fixture
def db(app):
    session = app.state.session_factory()
    yield session
    session.close()


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


class World:
    def __init__(self, app):
        self.app = app
        self.services = app.state.services
        self._counter = 0

    def session(self):
        return self.app.state.session_factory()

    def admin(self) -> User:
        with self.session() as db:
            return db.scalars(select(User).where(User.email == ADMIN_EMAIL)).one()

    def add_user(self, role: str = Role.STUDENT, email: Optional[str] = None, password: str = "secret1", name: str = "Ana", surname: Optional[str] = None) -> User:
        self._counter += 1
        user = User(
            name=name,
            surname=surname or f"Surname{self._counter:02d}",
            dni=f"{30000000 + self._counter}",
            email=email or f"user{self._counter}@mail.com",
            role=role,
            password_hash=self.services.hasher.hash(password),
        )
        with self.session() as db:
            db.add(user)
            db.commit()
        return user

    def headers(self, user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.services.tokens.access_token(user)}"}

    def add_course(self, teachers: list[User], name: Optional[str] = None, password: str = "course-pass", class_days: Optional[list[dict]] = None) -> dict:
        self._counter += 1
        data = CourseCreateIn(
            name=name or f"Course {self._counter}",
            description="A course about algorithms",
            password=password,
            teacher_ids=[t.id for t in teachers],
            class_days=class_days or [{"day": "Monday", "start_time": "09:00", "end_time": "11:00", "modality": "Presencial"}],
        )
        with self.session() as db:
            return self.services.courses.create(db, self.admin(), data)

    def enroll(self, student: User, course: dict, password: str = "course-pass") -> dict:
        with self.session() as db:
            return self.services.enrollment.join_course(db, student, JoinCourseIn(course_id=course["id"], password=password))


@pytest.fixture
def world(app) -> World:
    return World(app)
