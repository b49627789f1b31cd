import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import select, insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.core.admin_auth import AdminActor
from backend.core.database import get_db_session, admin_audit_log
from backend.core.errors import AdminAuditWriteError

logger = logging.getLogger("limitter.audit")

SYSTEM_ACTOR = "system_job"


def create_audit_log(
    session: Session,
    actor: Union[AdminActor, str],
    action: str,
    target_user_id: Optional[str] = None,
    target_resource: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Record an admin action inside the caller's transaction.

    Audit writes must not fail silently: a failed insert raises
    AdminAuditWriteError, which rolls back the action being audited.
    """
    if isinstance(actor, AdminActor):
        actor_id = actor.actor_id
        mechanism = actor.auth_mechanism
    else:
        actor_id = actor
        mechanism = None

    try:
        session.execute(
            insert(admin_audit_log).values(
                actor=actor_id,
                auth_mechanism=mechanism,
                action=action,
                target_user_id=target_user_id,
                target_resource=target_resource,
                payload_json=json.dumps(payload, default=str) if payload else None,
                created_at=datetime.now(timezone.utc),
            )
        )
    except SQLAlchemyError as e:
        logger.error(f"[audit] CRITICAL: audit log creation failed: {e}", exc_info=True)
        raise AdminAuditWriteError(f"Admin audit write failed: {e}")


def list_audit_log(
    *,
    target_user_id: Optional[str] = None,
    action: Optional[str] = None,
    limit: int = 50,
) -> List[Dict[str, Any]]:
    limit = max(1, min(int(limit), 200))
    stmt = select(admin_audit_log)
    if target_user_id:
        stmt = stmt.where(admin_audit_log.c.target_user_id == target_user_id)
    if action:
        stmt = stmt.where(admin_audit_log.c.action == action)
    stmt = stmt.order_by(admin_audit_log.c.created_at.desc(), admin_audit_log.c.id.desc()).limit(limit)

    with get_db_session() as session:
        rows = session.execute(stmt).fetchall()

    return [
        {
            "id": row.id,
            "actor": row.actor,
            "authMechanism": row.auth_mechanism,
            "action": row.action,
            "targetUserId": row.target_user_id,
            "targetResource": row.target_resource,
            "payload": json.loads(row.payload_json) if row.payload_json else None,
            "createdAt": row.created_at.isoformat() if row.created_at else None,
        }
        for row in rows
    ]
