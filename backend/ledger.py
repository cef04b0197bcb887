from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Connection, RowMapping

from backend.db import budgets, goals, transactions, usersettings
from backend.errors import InvalidAmount, RecordNotFound

MONEY_QUANTUM = Decimal("0.01")
ZERO = Decimal("0")


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def coerce_positive_amount(value: Decimal | int | float | str) -> Decimal:
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise InvalidAmount(f"Invalid amount: {value!r}") from exc
    if not amount.is_finite():
        raise InvalidAmount(f"Invalid amount: {value!r}")
    amount = quantize_money(amount)
    if amount <= ZERO:
        raise InvalidAmount("Amount must be greater than zero.")
    return amount


def list_user_budgets(conn: Connection, user_id: int) -> list[RowMapping]:
    return list(
        conn.execute(
            select(
                budgets.c.id,
                budgets.c.amount,
                budgets.c.remaining_amount,
                budgets.c.currency,
            )
            .where(budgets.c.user_id == user_id)
            .order_by(budgets.c.id.asc())
        ).mappings()
    )


def list_user_transactions(conn: Connection, user_id: int) -> list[RowMapping]:
    return list(
        conn.execute(
            select(transactions.c.id, transactions.c.amount, transactions.c.currency)
            .where(transactions.c.user_id == user_id)
            .order_by(transactions.c.id.asc())
        ).mappings()
    )


def list_user_goals(conn: Connection, user_id: int) -> list[RowMapping]:
    return list(
        conn.execute(
            select(
                goals.c.id,
                goals.c.amount,
                goals.c.current_amount,
                goals.c.currency,
                goals.c.status,
            )
            .where(goals.c.user_id == user_id)
            .order_by(goals.c.id.asc())
        ).mappings()
    )


def update_budget_amounts(
    conn: Connection,
    budget_id: int,
    amount: Decimal,
    remaining_amount: Decimal,
    currency: str,
) -> None:
    result = conn.execute(
        update(budgets)
        .where(budgets.c.id == budget_id)
        .values(amount=amount, remaining_amount=remaining_amount, currency=currency)
    )
    if result.rowcount == 0:
        raise RecordNotFound(f"Budget {budget_id} not found.")


def update_transaction_amount(
    conn: Connection, transaction_id: int, amount: Decimal, currency: str
) -> None:
    result = conn.execute(
        update(transactions)
        .where(transactions.c.id == transaction_id)
        .values(amount=amount, currency=currency)
    )
    if result.rowcount == 0:
        raise RecordNotFound(f"Transaction {transaction_id} not found.")


def update_goal_amounts(
    conn: Connection,
    goal_id: int,
    amount: Decimal,
    current_amount: Decimal,
    currency: str,
    status: str,
) -> None:
    result = conn.execute(
        update(goals)
        .where(goals.c.id == goal_id)
        .values(
            amount=amount,
            current_amount=current_amount,
            currency=currency,
            status=status,
        )
    )
    if result.rowcount == 0:
        raise RecordNotFound(f"Goal {goal_id} not found.")


def update_user_currency(conn: Connection, user_id: int, currency: str) -> str | None:
    """Store ``currency`` as the user's active currency.

    Returns the currency it replaced, or None when the user had no settings row.
    """
    previous = conn.execute(
        select(usersettings.c.currency).where(usersettings.c.user_id == user_id)
    ).scalar_one_or_none()
    if previous is None:
        conn.execute(insert(usersettings).values(user_id=user_id, currency=currency))
        return None
    if previous != currency:
        conn.execute(
            update(usersettings)
            .where(usersettings.c.user_id == user_id)
            .values(currency=currency, old_currency=previous)
        )
    return previous
