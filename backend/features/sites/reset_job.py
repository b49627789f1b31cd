"""
Scheduled daily reset.

Restores the full daily budget of every tracked site whose day is stale and
records a job run. Sites are also reset lazily when they are next written, so
this job only keeps stored rows tidy for reporting.

Usage:
    python -m backend.features.sites.reset_job
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import insert, select

from backend.core.clock import resolve_now, today_key
from backend.core.database import get_db_session, job_runs, tracked_sites
from backend.features.sites.service import reset_daily_times

logger = logging.getLogger("limitter.jobs")

JOB_NAME = "sites.daily_reset"


def run_daily_reset_job(now: Optional[datetime] = None) -> Dict[str, Any]:
    current = resolve_now(now)
    today = today_key(current)

    with get_db_session() as session:
        user_ids = session.execute(
            select(tracked_sites.c.user_id)
            .where(tracked_sites.c.last_reset_date != today)
            .distinct()
        ).scalars().all()

    sites_reset = 0
    for user_id in user_ids:
        sites_reset += reset_daily_times(user_id, now=current)

    stats = {"users_processed": len(user_ids), "sites_reset": sites_reset}
    with get_db_session() as session:
        session.execute(
            insert(job_runs).values(
                job_name=JOB_NAME,
                started_at=current,
                finished_at=datetime.now(timezone.utc),
                status="success",
                stats_json=json.dumps(stats),
            )
        )

    logger.info(f"[jobs] daily reset for {today}: {stats}")
    return {**stats, "day": today, "timestamp": current.isoformat()}


if __name__ == "__main__":
    from backend.core.logging import configure_logging

    configure_logging()
    print(json.dumps(run_daily_reset_job()))
