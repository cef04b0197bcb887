from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.currency_conversion import normalize_currency
from backend.db import budgets
from backend.errors import (
    AmbiguousBudget,
    BudgetExceeded,
    BudgetOverlap,
    PersistenceFailure,
    RecordNotFound,
)
from backend.ledger import coerce_positive_amount
from backend.logging_config import get_logger

logger = get_logger("budgets")

PERIOD_MONTHS = {"monthly": 1, "yearly": 12}


@dataclass(frozen=True)
class BudgetDeduction:
    budget_id: int
    remaining_amount: Decimal


@dataclass(frozen=True)
class RenewalReport:
    renewed: int
    skipped: int = 0
    failed: tuple[int, ...] = ()


def create_budget(
    engine: Engine,
    *,
    user_id: int,
    category_id: int,
    amount: Decimal | int | float | str,
    currency: str,
    period: str,
    start_date: date,
    end_date: date,
) -> int:
    """Insert a budget with a full allowance.

    Budget periods for one category may not overlap, so a transaction date
    always resolves to at most one budget.
    """
    normalized_period = normalize_period(period)
    normalized_currency = normalize_currency(currency)
    coerced_amount = coerce_positive_amount(amount)
    if start_date > end_date:
        raise ValueError("start_date must be on or before end_date.")

    try:
        with engine.begin() as conn:
            overlapping = conn.execute(
                select(budgets.c.id).where(
                    budgets.c.category_id == category_id,
                    budgets.c.start_date <= end_date,
                    budgets.c.end_date >= start_date,
                )
            ).first()
            if overlapping:
                raise BudgetOverlap(
                    f"Budget {overlapping[0]} already covers part of this period."
                )
            result = conn.execute(
                insert(budgets).values(
                    user_id=user_id,
                    category_id=category_id,
                    amount=coerced_amount,
                    remaining_amount=coerced_amount,
                    currency=normalized_currency,
                    period=normalized_period,
                    start_date=start_date,
                    end_date=end_date,
                )
            )
            budget_id = result.inserted_primary_key[0]
    except SQLAlchemyError as exc:
        raise PersistenceFailure("Failed to create budget.") from exc

    logger.info("budget_created", extra={"budget_id": budget_id, "category_id": category_id})
    return budget_id


def deduct(
    engine: Engine,
    category_id: int,
    amount: Decimal | int | float | str,
    transaction_date: date,
) -> BudgetDeduction:
    coerced_amount = coerce_positive_amount(amount)
    try:
        with engine.begin() as conn:
            return deduct_from_budget(conn, category_id, coerced_amount, transaction_date)
    except SQLAlchemyError as exc:
        raise PersistenceFailure(
            f"Failed to deduct from budget for category {category_id}."
        ) from exc


def deduct_from_budget(
    conn: Connection, category_id: int, amount: Decimal, transaction_date: date
) -> BudgetDeduction:
    """Deduct inside the caller's transaction.

    ``amount`` is in the budget's own currency.
    """
    budget = find_covering_budget(conn, category_id, transaction_date)
    return withdraw(conn, budget["id"], amount)


def find_covering_budget(conn: Connection, category_id: int, transaction_date: date):
    """Return ``id`` and ``currency`` of the single budget covering the date."""
    matches = conn.execute(
        select(budgets.c.id, budgets.c.currency).where(
            budgets.c.category_id == category_id,
            budgets.c.start_date <= transaction_date,
            budgets.c.end_date >= transaction_date,
        )
    ).mappings().all()
    if not matches:
        raise RecordNotFound(
            f"No budget for category {category_id} covers {transaction_date.isoformat()}."
        )
    if len(matches) > 1:
        raise AmbiguousBudget(
            f"{len(matches)} budgets for category {category_id} cover "
            f"{transaction_date.isoformat()}."
        )
    return matches[0]


def withdraw(conn: Connection, budget_id: int, amount: Decimal) -> BudgetDeduction:
    """Subtract ``amount`` from one budget if enough remains.

    The conditional UPDATE is the only write; a concurrent deduction on the
    same row cannot slip between the check and the write.
    """
    result = conn.execute(
        update(budgets)
        .where(budgets.c.id == budget_id, budgets.c.remaining_amount >= amount)
        .values(remaining_amount=budgets.c.remaining_amount - amount)
    )
    remaining = conn.execute(
        select(budgets.c.remaining_amount).where(budgets.c.id == budget_id)
    ).scalar_one()
    if result.rowcount == 0:
        logger.warning(
            "budget_exceeded",
            extra={"budget_id": budget_id, "remaining": remaining, "requested": amount},
        )
        raise BudgetExceeded(budget_id, remaining, amount)

    logger.info("budget_deducted", extra={"budget_id": budget_id, "remaining": remaining})
    return BudgetDeduction(budget_id=budget_id, remaining_amount=remaining)


def renew_expired_budgets(engine: Engine, today: date | None = None) -> RenewalReport:
    """Roll every expired budget forward to the period that covers ``today``.

    Each budget is committed on its own; a failure is logged and the sweep
    moves on to the next budget.
    """
    today = today or date.today()
    try:
        with engine.connect() as conn:
            expired = conn.execute(
                select(
                    budgets.c.id,
                    budgets.c.amount,
                    budgets.c.period,
                    budgets.c.start_date,
                    budgets.c.end_date,
                )
                .where(budgets.c.end_date < today)
                .order_by(budgets.c.id.asc())
            ).mappings().all()
    except SQLAlchemyError as exc:
        raise PersistenceFailure("Failed to load expired budgets.") from exc

    renewed = 0
    skipped = 0
    failed: list[int] = []
    for budget in expired:
        try:
            start_date, end_date = advance_to_current_period(
                budget["start_date"], budget["end_date"], budget["period"], today
            )
        except ValueError as exc:
            logger.error("budget_renewal_failed", extra={"budget_id": budget["id"], "error": str(exc)})
            failed.append(budget["id"])
            continue

        try:
            with engine.begin() as conn:
                result = conn.execute(
                    update(budgets)
                    # Guard on the old end date so a concurrent sweep cannot advance twice.
                    .where(
                        budgets.c.id == budget["id"],
                        budgets.c.end_date == budget["end_date"],
                    )
                    .values(
                        start_date=start_date,
                        end_date=end_date,
                        remaining_amount=budget["amount"],
                    )
                )
        except SQLAlchemyError as exc:
            logger.error("budget_renewal_failed", extra={"budget_id": budget["id"], "error": str(exc)})
            failed.append(budget["id"])
            continue

        if result.rowcount == 0:
            skipped += 1
            continue
        renewed += 1

    logger.info(
        "expired_budgets_renewed",
        extra={"renewed": renewed, "skipped": skipped, "failed": len(failed)},
    )
    return RenewalReport(renewed=renewed, skipped=skipped, failed=tuple(failed))


def advance_period(start_date: date, end_date: date, period: str) -> tuple[date, date]:
    months = PERIOD_MONTHS[normalize_period(period)]
    return shift_month_keep_day(start_date, months), shift_month_keep_day(end_date, months)


def advance_to_current_period(
    start_date: date, end_date: date, period: str, today: date
) -> tuple[date, date]:
    """Advance whole periods until the window ends on or after ``today``."""
    start_date, end_date = advance_period(start_date, end_date, period)
    while end_date < today:
        start_date, end_date = advance_period(start_date, end_date, period)
    return start_date, end_date


def shift_month_keep_day(value: date, months: int) -> date:
    """Shift by whole months; a month-end date stays on the month end."""
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    if value.day == calendar.monthrange(value.year, value.month)[1]:
        return date(year, month, last_day)
    return date(year, month, min(value.day, last_day))


def normalize_period(value: str) -> str:
    normalized = (value or "").strip().lower()
    if normalized not in PERIOD_MONTHS:
        raise ValueError(f"Unsupported budget period: {value}")
    return normalized

