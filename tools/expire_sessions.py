from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
BACKEND_PATH = ROOT / "backend"
if str(BACKEND_PATH) not in sys.path:
    sys.path.insert(0, str(BACKEND_PATH))

from algoritmia.config import Settings
from algoritmia.db import build_engine, build_session_factory
from algoritmia.services.sessions import SessionService


def main() -> None:
    settings = Settings.from_env()
    engine = build_engine(settings.database_url)
    SessionLocal = build_session_factory(engine)
    with SessionLocal() as db:
        result = SessionService().expire_overdue(db)
    engine.dispose()
    print(result)


if __name__ == "__main__":
    main()
