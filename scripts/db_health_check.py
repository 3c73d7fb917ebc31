#!/usr/bin/env python
from __future__ import annotations

import json
from typing import Any

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine

from attendance_integrity.services.schema_guard import EXPECTED_ALEMBIC_HEAD, REQUIRED_TABLE_COLUMNS
from attendance_integrity.settings import get_settings
from attendance_integrity.timeutils import utcnow


def run(engine: Engine | None = None) -> dict[str, Any]:
    if engine is None:
        engine = create_engine(get_settings().database_url)

    report: dict[str, Any] = {
        "generated_at_utc": utcnow().isoformat(),
        "database_url": engine.url.render_as_string(hide_password=True),
        "checks": [],
    }

    def add(name: str, status: str, details: dict[str, Any]) -> None:
        report["checks"].append(
            {
                "name": name,
                "status": status,
                "details": details,
            }
        )

    tables = set(inspect(engine).get_table_names())
    with engine.connect() as conn:
        current_versions: list[str] = []
        if "alembic_version" in tables:
            current_versions = [
                row[0]
                for row in conn.execute(text("select version_num from alembic_version")).fetchall()
            ]
        add("alembic_version", "ok" if current_versions else "fail", {"current": current_versions})
        add(
            "migration_up_to_date",
            "ok" if EXPECTED_ALEMBIC_HEAD in current_versions else "warn",
            {"expected_head": EXPECTED_ALEMBIC_HEAD, "current": current_versions},
        )

        missing_tables = sorted(
            table for table in REQUIRED_TABLE_COLUMNS if table != "alembic_version" and table not in tables
        )
        add("missing_tables", "fail" if missing_tables else "ok", {"tables": missing_tables})

        if "device_fingerprints" in tables:
            duplicate_fingerprints = conn.execute(
                text(
                    """
                    select owner_user_id, fingerprint_hash, count(*)
                    from device_fingerprints
                    group by owner_user_id, fingerprint_hash
                    having count(*) > 1
                    """
                )
            ).fetchall()
            add(
                "duplicate_device_fingerprint",
                "fail" if duplicate_fingerprints else "ok",
                {"rows": [list(row) for row in duplicate_fingerprints]},
            )

        if "anomalies" in tables:
            pending_row = conn.execute(
                text(
                    """
                    select count(*), min(created_at)
                    from anomalies
                    where status = 'PENDING'
                    """
                )
            ).fetchone()
            pending_count = int(pending_row[0] or 0) if pending_row is not None else 0
            oldest_pending = pending_row[1] if pending_row is not None else None
            add(
                "anomalies_pending_review",
                "warn" if pending_count else "ok",
                {"count": pending_count, "oldest_created_at": str(oldest_pending) if oldest_pending else None},
            )

        if "anomalies" in tables and "attendance_events" in tables:
            orphan_anomalies = conn.execute(
                text(
                    """
                    select an.id
                    from anomalies an
                    left join attendance_events ev on ev.id = an.attendance_event_id
                    where an.attendance_event_id is not null and ev.id is null
                    limit 20
                    """
                )
            ).fetchall()
            add(
                "anomaly_orphan_event",
                "fail" if orphan_anomalies else "ok",
                {"sample_ids": [row[0] for row in orphan_anomalies]},
            )

    return report


if __name__ == "__main__":
    print(json.dumps(run(), ensure_ascii=False, indent=2, default=str))
