from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import and_, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.db import goals
from backend.errors import PersistenceFailure, RecordNotFound
from backend.ledger import coerce_positive_amount
from backend.logging_config import get_logger

logger = get_logger("goals")

GOAL_ACTIVE = "active"
GOAL_ACHIEVED = "achieved"


@dataclass(frozen=True)
class GoalProgress:
    goal_id: int
    current_amount: Decimal
    target_amount: Decimal
    status: str
    newly_achieved: bool = False


def derive_status(current_amount: Decimal, target_amount: Decimal, status: str) -> str:
    """Status implied by the running total. ``achieved`` never reverts."""
    if status == GOAL_ACHIEVED or current_amount >= target_amount:
        return GOAL_ACHIEVED
    return GOAL_ACTIVE


def _goal_filter(goal_id: int, user_id: int | None):
    """Match one goal; with ``user_id`` set, only when that user owns it."""
    if user_id is None:
        return goals.c.id == goal_id
    return and_(goals.c.id == goal_id, goals.c.user_id == user_id)


def apply_progress(
    engine: Engine,
    goal_id: int,
    delta: Decimal | int | float | str,
    user_id: int | None = None,
) -> GoalProgress:
    """Add ``delta`` to a goal's running total in its own database transaction."""
    amount = coerce_positive_amount(delta)
    try:
        with engine.begin() as conn:
            return add_goal_progress(conn, goal_id, amount, user_id=user_id)
    except SQLAlchemyError as exc:
        logger.error("goal_progress_failed", extra={"goal_id": goal_id, "error": str(exc)})
        raise PersistenceFailure(f"Failed to update progress for goal {goal_id}.") from exc


def add_goal_progress(
    conn: Connection, goal_id: int, delta: Decimal, user_id: int | None = None
) -> GoalProgress:
    """Apply progress inside the caller's transaction.

    ``delta`` is in the goal's own currency. The goal row is locked with
    SELECT ... FOR UPDATE so concurrent progress updates on the same goal
    serialize instead of reading a stale total.
    """
    row = conn.execute(
        select(goals.c.current_amount, goals.c.amount, goals.c.status)
        .where(_goal_filter(goal_id, user_id))
        .with_for_update()
    ).mappings().first()
    if row is None:
        raise RecordNotFound(f"Goal {goal_id} not found.")

    new_amount = row["current_amount"] + delta
    status = derive_status(new_amount, row["amount"], row["status"])
    newly_achieved = status == GOAL_ACHIEVED and row["status"] != GOAL_ACHIEVED

    values = {"current_amount": new_amount}
    if newly_achieved:
        values["status"] = GOAL_ACHIEVED
    conn.execute(update(goals).where(goals.c.id == goal_id).values(**values))

    logger.info(
        "goal_progress_applied",
        extra={
            "goal_id": goal_id,
            "delta": delta,
            "current_amount": new_amount,
            "target_amount": row["amount"],
        },
    )
    if newly_achieved:
        logger.info("goal_achieved", extra={"goal_id": goal_id})

    return GoalProgress(
        goal_id=goal_id,
        current_amount=new_amount,
        target_amount=row["amount"],
        status=status,
        newly_achieved=newly_achieved,
    )


def goal_currency(conn: Connection, goal_id: int, user_id: int | None = None) -> str:
    currency = conn.execute(
        select(goals.c.currency).where(_goal_filter(goal_id, user_id))
    ).scalar_one_or_none()
    if currency is None:
        raise RecordNotFound(f"Goal {goal_id} not found.")
    return currency


def get_goal(engine: Engine, goal_id: int, user_id: int | None = None) -> GoalProgress:
    """Read a goal, correcting a stored ``active`` status that has already been reached."""
    try:
        with engine.begin() as conn:
            row = conn.execute(
                select(goals.c.current_amount, goals.c.amount, goals.c.status).where(
                    _goal_filter(goal_id, user_id)
                )
            ).mappings().first()
            if row is None:
                raise RecordNotFound(f"Goal {goal_id} not found.")

            status = derive_status(row["current_amount"], row["amount"], row["status"])
            if status != row["status"]:
                conn.execute(update(goals).where(goals.c.id == goal_id).values(status=status))
                logger.warning(
                    "goal_status_corrected",
                    extra={"goal_id": goal_id, "stored": row["status"], "derived": status},
                )
    except SQLAlchemyError as exc:
        raise PersistenceFailure(f"Failed to read goal {goal_id}.") from exc

    return GoalProgress(
        goal_id=goal_id,
        current_amount=row["current_amount"],
        target_amount=row["amount"],
        status=status,
    )

