from __future__ import annotations

import argparse
import sys
from datetime import date
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
OUT_PATH = ROOT / "docs" / "audit_export.csv"
BACKEND_PATH = ROOT / "backend"
if str(BACKEND_PATH) not in sys.path:
    sys.path.insert(0, str(BACKEND_PATH))

from algoritmia.config import Settings
from algoritmia.db import build_engine, build_session_factory
from algoritmia.queries import ListQuery
from algoritmia.services.audit_log import AuditService


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Write the audit trail as ;-separated CSV.")
    parser.add_argument("--from", dest="date_from", type=date.fromisoformat)
    parser.add_argument("--to", dest="date_to", type=date.fromisoformat)
    parser.add_argument("--table")
    parser.add_argument("--operation")
    parser.add_argument("--search")
    parser.add_argument("--out", type=Path, default=OUT_PATH)
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = Settings.from_env()
    engine = build_engine(settings.database_url)
    SessionLocal = build_session_factory(engine)
    query = ListQuery.build(search=args.search, default_sort="occurred_at", order="asc")
    with SessionLocal() as db:
        content = AuditService().export_csv(db, query, args.date_from, args.date_to, args.table, args.operation)
    engine.dispose()
    args.out.parent.mkdir(parents=True, exist_ok=True)
    args.out.write_text(content, encoding="utf-8")
    print(
        {
            "rows": max(content.count("\n") - 1, 0),
            "path": str(args.out),
        }
    )


if __name__ == "__main__":
    main()
