"""
Append-only transaction ledger.

A completed transaction moves three things together: the transaction row,
the user's total_spent and the global revenue/transaction counters. All three
are written on the caller's session, so they commit or roll back as one unit.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.core.database import get_db_session, transactions, users
from backend.core.errors import ConflictError, NotFoundError, ValidationError
from backend.features.stats.service import increment_stats, transaction_stat_deltas
from backend.models.payment import PaymentData

logger = logging.getLogger("limitter.transactions")

TRANSACTION_TYPES = ("plan_purchase", "override_purchase")
TRANSACTION_STATUSES = ("completed", "pending", "failed", "refunded")


def transaction_to_dict(row) -> Dict[str, Any]:
    return {
        "id": row.id,
        "userId": row.user_id,
        "type": row.type,
        "amount": row.amount_cents / 100,
        "description": row.description,
        "status": row.status,
        "paymentMethod": row.payment_method,
        "paymentReference": row.payment_reference,
        "metadata": row.metadata_json or {},
        "createdAt": row.created_at.isoformat() if row.created_at else None,
    }


def find_by_payment_reference(session: Session, reference: str):
    return session.execute(
        select(transactions).where(transactions.c.payment_reference == reference)
    ).first()


def create_transaction(
    session: Session,
    user_id: str,
    txn_type: str,
    amount_cents: int,
    *,
    payment: PaymentData,
    description: str,
    metadata: Optional[Dict[str, Any]] = None,
    status: str = "completed",
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Record a billable event.

    Raises:
        ValidationError: unknown type/status or non-positive amount
        ConflictError: the payment reference already backs a transaction
        NotFoundError: the user does not exist
    """
    if txn_type not in TRANSACTION_TYPES:
        raise ValidationError(f"Unknown transaction type: {txn_type}")
    if status not in TRANSACTION_STATUSES:
        raise ValidationError(f"Unknown transaction status: {status}")
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise ValidationError("amount must be positive")

    if find_by_payment_reference(session, payment.reference):
        raise ConflictError("This payment has already been recorded.", code="duplicate_payment")

    metadata = dict(metadata or {})
    txn_id = str(uuid4())
    created_at = now or datetime.now(timezone.utc)
    try:
        session.execute(
            insert(transactions).values(
                id=txn_id,
                user_id=user_id,
                type=txn_type,
                amount_cents=amount_cents,
                description=description[:300],
                status=status,
                payment_method=payment.payment_method,
                payment_reference=payment.reference,
                metadata_json=metadata,
                created_at=created_at,
            )
        )
    except IntegrityError:
        # Lost a race against another writer of the same reference
        raise ConflictError("This payment has already been recorded.", code="duplicate_payment")

    if status == "completed":
        result = session.execute(
            update(users)
            .where(users.c.user_id == user_id)
            .values(total_spent_cents=users.c.total_spent_cents + amount_cents)
        )
        if result.rowcount != 1:
            raise NotFoundError(f"User {user_id} not found", code="user_not_found")

    increment_stats(
        session,
        transaction_stat_deltas(txn_type, status, payment.payment_method, amount_cents, metadata.get("newPlan")),
    )

    logger.info(
        "transaction.created",
        extra={"user_id": user_id, "event_type": txn_type, "status": status},
    )
    row = session.execute(select(transactions).where(transactions.c.id == txn_id)).first()
    return transaction_to_dict(row)


def list_transactions(user_id: str, limit: int = 20) -> List[Dict[str, Any]]:
    limit = max(1, min(int(limit), 100))
    with get_db_session() as session:
        rows = session.execute(
            select(transactions)
            .where(transactions.c.user_id == user_id)
            .order_by(transactions.c.created_at.desc())
            .limit(limit)
        ).fetchall()
    return [transaction_to_dict(r) for r in rows]
