"""Re-express every monetary record of one user in a new currency.

The budgets, transactions, goals and the settings row are converted in a
single database transaction using one pinned rate snapshot, so a failure at
any step leaves the user's data exactly as it was.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.currency_conversion import CurrencyConverter, RateSnapshot, normalize_currency
from backend.errors import PersistenceFailure, ProviderFetchFailure, RateUnavailable, RecordNotFound
from backend.goal_progress import derive_status
from backend.ledger import (
    list_user_budgets,
    list_user_goals,
    list_user_transactions,
    quantize_money,
    update_budget_amounts,
    update_goal_amounts,
    update_transaction_amount,
    update_user_currency,
)
from backend.logging_config import get_logger

logger = get_logger("currency_cascade")


@dataclass(frozen=True)
class CascadeResult:
    user_id: int
    currency: str
    previous_currency: str | None
    budgets: int = 0
    transactions: int = 0
    goals: int = 0


class _PinnedConversion:
    """Converts into one target currency against a snapshot taken on first use."""

    def __init__(self, converter: CurrencyConverter, target: str) -> None:
        self._converter = converter
        self._target = target
        self._snapshot: RateSnapshot | None = None

    def needs_conversion(self, currency: str) -> bool:
        return normalize_currency(currency) != self._target

    def convert(self, amount: Decimal, source: str) -> Decimal:
        if self._snapshot is None:
            try:
                self._snapshot = self._converter.cache.snapshot()
            except ProviderFetchFailure as exc:
                raise RateUnavailable(self._target, str(exc)) from exc
        converted = self._converter.convert(amount, source, self._target, snapshot=self._snapshot)
        return quantize_money(converted)


def convert_user_currency(
    engine: Engine,
    converter: CurrencyConverter,
    user_id: int,
    old_currency: str | None,
    new_currency: str,
) -> CascadeResult:
    target = normalize_currency(new_currency)
    expected_old = normalize_currency(old_currency) if old_currency else None
    pinned = _PinnedConversion(converter, target)

    try:
        with engine.begin() as conn:
            budget_count = _convert_budgets(conn, pinned, user_id, target)
            transaction_count = _convert_transactions(conn, pinned, user_id, target)
            goal_count = _convert_goals(conn, pinned, user_id, target)
            previous = update_user_currency(conn, user_id, target)
    except SQLAlchemyError as exc:
        logger.error(
            "currency_cascade_rolled_back",
            extra={"user_id": user_id, "currency": target, "error": str(exc)},
        )
        raise PersistenceFailure(
            f"Failed to convert data for user {user_id} to {target}."
        ) from exc
    except (RateUnavailable, RecordNotFound) as exc:
        logger.error(
            "currency_cascade_rolled_back",
            extra={"user_id": user_id, "currency": target, "error": str(exc)},
        )
        raise

    if expected_old and previous and previous != expected_old:
        logger.warning(
            "currency_cascade_unexpected_previous_currency",
            extra={"user_id": user_id, "expected": expected_old, "stored": previous},
        )

    result = CascadeResult(
        user_id=user_id,
        currency=target,
        previous_currency=previous,
        budgets=budget_count,
        transactions=transaction_count,
        goals=goal_count,
    )
    logger.info(
        "currency_cascade_completed",
        extra={
            "user_id": user_id,
            "currency": target,
            "budgets": budget_count,
            "transactions": transaction_count,
            "goals": goal_count,
        },
    )
    return result


def _convert_budgets(conn: Connection, pinned: _PinnedConversion, user_id: int, target: str) -> int:
    converted = 0
    for budget in list_user_budgets(conn, user_id):
        if not pinned.needs_conversion(budget["currency"]):
            continue
        amount = pinned.convert(budget["amount"], budget["currency"])
        remaining = pinned.convert(budget["remaining_amount"], budget["currency"])
        # Rounding both sides separately can push remaining a cent past amount.
        update_budget_amounts(conn, budget["id"], amount, min(remaining, amount), target)
        converted += 1
    return converted


def _convert_transactions(
    conn: Connection, pinned: _PinnedConversion, user_id: int, target: str
) -> int:
    converted = 0
    for transaction in list_user_transactions(conn, user_id):
        if not pinned.needs_conversion(transaction["currency"]):
            continue
        amount = pinned.convert(transaction["amount"], transaction["currency"])
        update_transaction_amount(conn, transaction["id"], amount, target)
        converted += 1
    return converted


def _convert_goals(conn: Connection, pinned: _PinnedConversion, user_id: int, target: str) -> int:
    converted = 0
    for goal in list_user_goals(conn, user_id):
        if not pinned.needs_conversion(goal["currency"]):
            continue
        amount = pinned.convert(goal["amount"], goal["currency"])
        current_amount = pinned.convert(goal["current_amount"], goal["currency"])
        status = derive_status(current_amount, amount, goal["status"])
        update_goal_amounts(conn, goal["id"], amount, current_amount, target, status)
        converted += 1
    return converted
