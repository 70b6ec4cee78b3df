from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import Settings
from .models import Difficulty, Mission, Role, User
from .security import PasswordHasher

logger = logging.getLogger(__name__)

DEFAULT_DIFFICULTIES = [
    ("Instruction order", "Executes steps in the wrong order", "Sequence"),
    ("Missing steps", "Skips required steps of an algorithm", "Sequence"),
    ("Conditions", "Misreads if/else branches", "Logic"),
    ("Boolean operators", "Confuses and/or/not", "Logic"),
    ("Loops", "Cannot tell when a repetition ends", "Structures"),
    ("Nested structures", "Loses track of nested blocks", "Structures"),
    ("Assignment", "Confuses reading and writing a variable", "Variables"),
    ("Counters", "Does not update counters or accumulators", "Variables"),
    ("Procedure calls", "Does not reuse defined procedures", "Procedures"),
    ("Parameters", "Passes the wrong arguments to a procedure", "Procedures"),
]

DEFAULT_MISSIONS = [
    ("First steps", "Move the robot to the goal", 1),
    ("Turn around", "Combine turns and moves", 1),
    ("Collector", "Pick up every item on the board", 2),
    ("Fork in the road", "Choose a path with a condition", 2),
    ("Repeat after me", "Solve the board with a loop", 3),
    ("Counting stars", "Keep a counter while moving", 3),
    ("Labyrinth", "Combine loops and conditions", 4),
    ("Toolbox", "Define and call a procedure", 4),
    ("Factory", "Use procedures with parameters", 5),
    ("Final challenge", "Everything together", 5),
]


def ensure_admin(db: Session, settings: Settings, hasher: PasswordHasher) -> User:
    admin = db.scalar(select(User).where(User.email == settings.admin_email.lower()))
    if admin:
        return admin
    admin = User(
        name="Admin",
        surname="Admin",
        email=settings.admin_email.lower(),
        password_hash=hasher.hash(settings.admin_password),
        role=Role.ADMIN,
    )
    db.add(admin)
    logger.info("bootstrap admin %s created", admin.email)
    return admin


def ensure_catalogue(db: Session) -> None:
    known = set(db.scalars(select(Difficulty.name)).all())
    for name, description, topic in DEFAULT_DIFFICULTIES:
        if name not in known:
            db.add(Difficulty(name=name, description=description, topic=topic))
    known = set(db.scalars(select(Mission.name)).all())
    for name, description, level in DEFAULT_MISSIONS:
        if name not in known:
            db.add(Mission(name=name, description=description, level=level))


def seed_defaults(db: Session, settings: Settings, hasher: PasswordHasher) -> None:
    ensure_admin(db, settings, hasher)
    ensure_catalogue(db)
    db.commit()
