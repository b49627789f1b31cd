"""
Global admin stats: an incrementally maintained projection.

Counters live in `admin_stats` as one row per key (e.g. `users.plan.pro`,
`revenue.total`). They are only ever changed with relative upserts inside the
same DB transaction as the event that moves them, and can be rebuilt from
users, tracked_sites and transactions at any time.
"""
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import select, update, insert, delete, func
from sqlalchemy.orm import Session

from backend.core.database import (
    get_db_session,
    dialect_name,
    admin_stats,
    users,
    tracked_sites,
    transactions,
)
from backend.core.errors import AggregateDriftError
from backend.core.logging import log_event

logger = logging.getLogger("limitter.stats")


def increment_stats(session: Session, deltas: Dict[str, int]) -> None:
    """
    Atomically add each delta to its counter (creating missing counters).

    Keys are applied in sorted order so concurrent transactions lock rows in
    the same order.
    """
    deltas = {k: int(v) for k, v in deltas.items() if v}
    if not deltas:
        return

    now = datetime.now(timezone.utc)
    dialect = dialect_name(session)
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as dialect_insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as dialect_insert
    else:
        dialect_insert = None

    for key in sorted(deltas):
        delta = deltas[key]
        if dialect_insert is not None:
            stmt = dialect_insert(admin_stats).values(stat_key=key, value=delta, updated_at=now)
            stmt = stmt.on_conflict_do_update(
                index_elements=[admin_stats.c.stat_key],
                set_={
                    "value": admin_stats.c.value + stmt.excluded.value,
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            session.execute(stmt)
            continue

        result = session.execute(
            update(admin_stats)
            .where(admin_stats.c.stat_key == key)
            .values(value=admin_stats.c.value + delta, updated_at=now)
        )
        if not result.rowcount:
            session.execute(insert(admin_stats).values(stat_key=key, value=delta, updated_at=now))


def transaction_stat_deltas(
    txn_type: str,
    status: str,
    payment_method: str,
    amount_cents: int,
    plan: Optional[str] = None,
) -> Dict[str, int]:
    """Counter deltas for one recorded transaction."""
    deltas = {
        "transactions.total": 1,
        f"transactions.type.{txn_type}": 1,
        f"transactions.status.{status}": 1,
        f"transactions.method.{payment_method}": 1,
    }
    if status == "completed":
        deltas["revenue.total"] = amount_cents
        if txn_type == "plan_purchase" and plan:
            deltas[f"revenue.plan.{plan}"] = amount_cents
        elif txn_type == "override_purchase":
            deltas["revenue.overrides"] = amount_cents
    return deltas


def read_counters(session: Session) -> Dict[str, int]:
    rows = session.execute(select(admin_stats.c.stat_key, admin_stats.c.value)).fetchall()
    return {row.stat_key: int(row.value) for row in rows}


def nest_counters(flat: Dict[str, int]) -> dict:
    """Turn dotted counter keys into a nested dict for the dashboard."""
    nested: dict = {}
    for key in sorted(flat):
        node = nested
        parts = key.split(".")
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        node[parts[-1]] = flat[key]
    return nested


def get_admin_stats() -> dict:
    with get_db_session() as session:
        return nest_counters(read_counters(session))


def compute_stats_from_source(session: Session) -> Dict[str, int]:
    """Full scan of users, active sites and transactions."""
    counters: Dict[str, int] = defaultdict(int)

    for row in session.execute(select(users.c.plan, func.count()).group_by(users.c.plan)):
        counters["users.total"] += row[1]
        counters[f"users.plan.{row[0]}"] += row[1]

    counters["sites.total"] = session.execute(
        select(func.count()).select_from(tracked_sites).where(tracked_sites.c.is_active.is_(True))
    ).scalar() or 0

    for txn in session.execute(select(transactions)):
        plan = (txn.metadata_json or {}).get("newPlan")
        for key, value in transaction_stat_deltas(
            txn.type, txn.status, txn.payment_method, txn.amount_cents, plan
        ).items():
            counters[key] += value

    return dict(counters)


def _diff(current: Dict[str, int], expected: Dict[str, int]) -> List[dict]:
    mismatches = []
    for key in sorted(set(current) | set(expected)):
        have = current.get(key, 0)
        want = expected.get(key, 0)
        if have != want:
            mismatches.append({"key": key, "current": have, "expected": want, "delta": want - have})
    return mismatches


def detect_drift() -> List[dict]:
    """Compare incremental counters with a full recomputation."""
    with get_db_session() as session:
        mismatches = _diff(read_counters(session), compute_stats_from_source(session))

    if mismatches:
        log_event(
            "warning",
            "stats.drift_detected",
            request_id=None,
            event_type="stats.drift",
            extra={"mismatch_count": len(mismatches), "keys": [m["key"] for m in mismatches]},
        )
    return mismatches


def ensure_no_drift() -> None:
    mismatches = detect_drift()
    if mismatches:
        raise AggregateDriftError(
            f"Admin stats drifted on {len(mismatches)} counter(s)",
            mismatches=mismatches,
        )


def recalculate_all_stats() -> dict:
    """Rebuild every counter from source records and return the new snapshot."""
    now = datetime.now(timezone.utc)
    with get_db_session() as session:
        expected = compute_stats_from_source(session)
        session.execute(delete(admin_stats))
        if expected:
            session.execute(
                insert(admin_stats),
                [{"stat_key": k, "value": v, "updated_at": now} for k, v in sorted(expected.items())],
            )

    logger.info("stats.recalculated", extra={"event_type": "stats.recalculated"})
    return nest_counters(expected)
