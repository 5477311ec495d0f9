from __future__ import annotations

"""Smoke-check a running scheduler API.

Run:
  BASE_URL=http://127.0.0.1:8000 PROVIDER_ID=<uuid> SCHOOL_SITE="Lincoln Elementary" \
    python backend/_diag_api_smoke.py
"""

import json
import os
from typing import Any

import httpx


def _safe_json(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


def _show(label: str, r: httpx.Response) -> bool:
    payload = _safe_json(r.text)
    body = payload if payload is not None else ((r.text[:500] + "...") if len(r.text) > 500 else r.text)
    print(label, r.status_code, body)
    return r.status_code < 400


def main() -> int:
    base = os.environ.get("BASE_URL", "http://127.0.0.1:8000")
    provider_id = os.environ.get("PROVIDER_ID")
    school = {
        k: v
        for k, v in {
            "school_site": os.environ.get("SCHOOL_SITE"),
            "school_district": os.environ.get("SCHOOL_DISTRICT"),
            "school_id": os.environ.get("SCHOOL_ID"),
        }.items()
        if v
    }

    ok = True
    with httpx.Client(base_url=base, follow_redirects=True, timeout=30) as client:
        ok &= _show("health", client.get("/health"))

        if not provider_id or not school:
            print("PROVIDER_ID and SCHOOL_SITE/SCHOOL_ID not set; skipping scheduling checks.")
            return 0 if ok else 1

        params = {"provider_id": provider_id, **school}
        ok &= _show("version", client.get("/api/scheduling/version", params=params))
        ok &= _show("conflicts", client.get("/api/scheduling/conflicts", params=params))
        ok &= _show("bell-schedules", client.get("/api/constraints/bell-schedules", params=params))

        # Dry run only: persist=false never writes.
        dry_run = client.post(
            "/api/scheduling/distribute",
            json={"provider_id": provider_id, "school": school, "persist": False},
        )
        ok &= _show("distribute (dry run)", dry_run)

    return 0 if ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
