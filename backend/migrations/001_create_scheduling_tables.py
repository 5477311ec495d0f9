from __future__ import annotations

"""Create the scheduling tables from the ORM models.

Safe to run multiple times (create_all skips existing tables).

Run:
  python backend/migrations/001_create_scheduling_tables.py --yes
"""

import argparse
import sys
from pathlib import Path

# Allow running this script from any working directory.
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from sqlalchemy import inspect

import models  # noqa: F401  (registers every table on Base.metadata)
from core.database import ENGINE
from models.base import Base


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--yes", action="store_true", help="Actually apply changes")
    args = parser.parse_args()

    existing = set(inspect(ENGINE).get_table_names())
    tables = list(Base.metadata.sorted_tables)
    missing = [t.name for t in tables if t.name not in existing]

    if not args.yes:
        print("Dry run. Re-run with --yes to apply.")
        for t in tables:
            state = "missing" if t.name in missing else "exists"
            print(f"  {t.name}: {state}")
        return

    Base.metadata.create_all(ENGINE)
    print(f"OK: created {len(missing)} table(s); {len(tables) - len(missing)} already present.")


if __name__ == "__main__":
    main()
