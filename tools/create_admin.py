from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
BACKEND_PATH = ROOT / "backend"
if str(BACKEND_PATH) not in sys.path:
    sys.path.insert(0, str(BACKEND_PATH))

from sqlalchemy import select

from algoritmia.config import Settings
from algoritmia.db import build_engine, build_session_factory
from algoritmia.models import Base, Role, User
from algoritmia.security import PasswordHasher


def main() -> None:
    parser = argparse.ArgumentParser(description="Create an administrator, or reset the password of an existing one.")
    parser.add_argument("email")
    parser.add_argument("password")
    parser.add_argument("--name", default="Admin")
    parser.add_argument("--surname", default="Admin")
    args = parser.parse_args()
    if len(args.password) < 6:
        raise SystemExit("Password must have at least 6 characters")

    settings = Settings.from_env()
    engine = build_engine(settings.database_url)
    Base.metadata.create_all(engine)
    SessionLocal = build_session_factory(engine)
    hasher = PasswordHasher(settings.hash_rounds)
    email = args.email.strip().lower()
    with SessionLocal() as db:
        user = db.scalar(select(User).where(User.email == email))
        if user is not None and user.role != Role.ADMIN:
            raise SystemExit(f"{email} already belongs to a {user.role} account")
        created = user is None
        if created:
            user = User(name=args.name, surname=args.surname, email=email, role=Role.ADMIN, password_hash="")
            db.add(user)
        user.password_hash = hasher.hash(args.password)
        user.deleted_at = None
        db.commit()
        print({"id": user.id, "email": user.email, "created": created})
    engine.dispose()


if __name__ == "__main__":
    main()
