"""
Scheduled stats reconciliation.

Runs the same drift check as the admin endpoint, optionally rebuilding the
counters, and writes a job run plus an audit entry with actor="system_job".

Usage:
    python -m backend.features.stats.reconcile_job [--fix]
"""
from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import insert

from backend.core.clock import resolve_now
from backend.core.database import get_db_session, job_runs
from backend.features.audit.service import SYSTEM_ACTOR, create_audit_log
from backend.features.stats.service import detect_drift, recalculate_all_stats

JOB_NAME = "stats.reconcile"


def run_stats_reconcile_job(now: Optional[datetime] = None, fix: bool = False) -> Dict[str, Any]:
    current = resolve_now(now)
    mismatches = detect_drift()

    corrected = 0
    if fix and mismatches:
        recalculate_all_stats()
        corrected = len(mismatches)

    stats = {"issues_found": len(mismatches), "corrections_applied": corrected}
    with get_db_session() as session:
        if corrected:
            create_audit_log(
                session,
                SYSTEM_ACTOR,
                "reconcile_fix",
                target_resource="admin_stats",
                payload={"mismatches": mismatches},
            )
        session.execute(
            insert(job_runs).values(
                job_name=JOB_NAME,
                started_at=current,
                finished_at=datetime.now(timezone.utc),
                status="success",
                stats_json=json.dumps(stats),
            )
        )

    return {**stats, "mismatches": mismatches, "timestamp": current.isoformat()}


if __name__ == "__main__":
    from backend.core.logging import configure_logging

    configure_logging()
    print(json.dumps(run_stats_reconcile_job(fix="--fix" in sys.argv[1:])))
