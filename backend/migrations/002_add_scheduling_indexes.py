from __future__ import annotations

"""Add DB indexes for the scheduling reads (data manager load + instance dedup).

Safe to run multiple times (uses IF NOT EXISTS).

Run:
  python backend/migrations/002_add_scheduling_indexes.py --yes
"""

import argparse
import sys
from pathlib import Path

# Allow running this script from any working directory.
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from sqlalchemy import text

from core.database import ENGINE


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--yes", action="store_true", help="Actually apply changes")
    args = parser.parse_args()

    statements = [
        # Data manager load, scoped per provider + school
        "CREATE INDEX IF NOT EXISTS idx_students_provider_school ON students (provider_id, school_id, school_site);",
        "CREATE INDEX IF NOT EXISTS idx_bell_schedules_provider_day ON bell_schedules (provider_id, day_of_week);",
        "CREATE INDEX IF NOT EXISTS idx_special_activities_school_day ON special_activities (school_id, school_site, day_of_week);",
        "CREATE INDEX IF NOT EXISTS idx_school_hours_provider_day ON school_hours (provider_id, day_of_week);",
        "CREATE INDEX IF NOT EXISTS idx_user_site_schedules_provider ON user_site_schedules (provider_id, day_of_week);",

        # Templates vs instances
        "CREATE INDEX IF NOT EXISTS idx_schedule_sessions_templates ON schedule_sessions (provider_id, session_date, day_of_week);",

        # Instance dedup by identity tuple
        "CREATE INDEX IF NOT EXISTS idx_schedule_sessions_identity ON schedule_sessions "
        "(student_id, provider_id, service_type, day_of_week, start_time, end_time, session_date);",
    ]

    if not args.yes:
        print("Dry run. Re-run with --yes to apply.")
        for s in statements:
            print("---")
            print(s.strip())
        return

    with ENGINE.begin() as conn:
        for s in statements:
            conn.execute(text(s))

    print(f"OK: created/verified {len(statements)} indexes.")


if __name__ == "__main__":
    main()
