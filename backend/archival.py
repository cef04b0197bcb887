from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta

from sqlalchemy import delete, insert, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.db import transactionhistory, transactions, users
from backend.errors import PersistenceFailure
from backend.logging_config import get_logger

logger = get_logger("archival")

ARCHIVE_REASON = "archived"


@dataclass(frozen=True)
class ArchivalReport:
    archived: int
    deleted: int
    period_start: date


def month_bounds(value: date) -> tuple[date, date]:
    """First day of ``value``'s month and first day of the following month."""
    start = value.replace(day=1)
    next_start = (start + timedelta(days=32)).replace(day=1)
    return start, next_start


def move_transactions_to_history(engine: Engine, now: datetime | None = None) -> ArchivalReport:
    """Move every transaction dated outside the current month into history.

    Copy and delete run in one database transaction over the same set of ids;
    if the two counts disagree nothing is committed.
    """
    now = now or datetime.now()
    period_start, next_period_start = month_bounds(now.date())
    outside_period = or_(
        transactions.c.transaction_date < period_start,
        transactions.c.transaction_date >= next_period_start,
    )

    try:
        with engine.begin() as conn:
            rows = conn.execute(
                select(
                    transactions.c.id,
                    transactions.c.user_id,
                    users.c.name,
                    transactions.c.category_id,
                    transactions.c.amount,
                    transactions.c.currency,
                    transactions.c.type,
                    transactions.c.description,
                    transactions.c.transaction_date,
                    transactions.c.goal_id,
                )
                .select_from(transactions.outerjoin(users, users.c.id == transactions.c.user_id))
                .where(outside_period)
                .order_by(transactions.c.id.asc())
                .with_for_update(of=transactions)
            ).mappings().all()

            if not rows:
                logger.info("transactions_archived", extra={"archived": 0, "deleted": 0})
                return ArchivalReport(archived=0, deleted=0, period_start=period_start)

            conn.execute(
                insert(transactionhistory),
                [
                    {
                        "transaction_id": row["id"],
                        "user_id": row["user_id"],
                        "user_name": row["name"],
                        "category_id": row["category_id"],
                        "amount": row["amount"],
                        "currency": row["currency"],
                        "type": row["type"],
                        "description": row["description"],
                        "transaction_date": row["transaction_date"],
                        "goal_id": row["goal_id"],
                        "archived_at": now,
                        "archive_reason": ARCHIVE_REASON,
                    }
                    for row in rows
                ],
            )
            ids = [row["id"] for row in rows]
            deleted = conn.execute(delete(transactions).where(transactions.c.id.in_(ids))).rowcount
            if deleted != len(rows):
                raise PersistenceFailure(
                    f"Archived {len(rows)} transactions but deleted {deleted}; rolled back."
                )
    except SQLAlchemyError as exc:
        logger.error("transaction_archival_failed", extra={"error": str(exc)})
        raise PersistenceFailure("Failed to move transactions to history.") from exc
    except PersistenceFailure as exc:
        logger.error("transaction_archival_failed", extra={"error": str(exc)})
        raise

    logger.info("transactions_archived", extra={"archived": len(rows), "deleted": deleted})
    return ArchivalReport(archived=len(rows), deleted=deleted, period_start=period_start)
