from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import insert, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from backend import archival, budget_ledger, currency_cascade, goal_progress
from backend.config import Settings
from backend.currency_conversion import (
    CurrencyConverter,
    ExchangeRateApiProvider,
    NbrbRateProvider,
    RateCache,
    RateProvider,
    RateSnapshot,
    StaticRateProvider,
    normalize_currency,
)
from backend.db import categories, transactions
from backend.errors import InvalidAmount, PersistenceFailure, ProviderFetchFailure, RecordNotFound
from backend.ledger import ZERO, coerce_positive_amount, quantize_money
from backend.logging_config import get_logger
from backend.scheduler import ArchivalScheduler, RecurringJob, next_daily_run, next_monthly_run

logger = get_logger("services")

TRANSACTION_TYPES = {"income", "expense", "goal"}


@dataclass(frozen=True)
class RecordedTransaction:
    id: int
    budget_remaining: Decimal | None = None
    goal: goal_progress.GoalProgress | None = None


class FinanceCore:
    """Money-consistency operations exposed to the HTTP layer and the scheduler."""

    def __init__(self, engine: Engine, rate_cache: RateCache) -> None:
        self.engine = engine
        self.rate_cache = rate_cache
        self.converter = CurrencyConverter(rate_cache)

    def get_currency_rate(self, code: str) -> Decimal:
        return self.rate_cache.get_rate(code)

    def get_currency_rates(self) -> RateSnapshot:
        return self.rate_cache.snapshot()

    def convert_currency(
        self, amount: Decimal | int | float | str, source_currency: str, target_currency: str
    ) -> Decimal:
        return self.converter.convert(amount, source_currency, target_currency)

    def update_currency_for_user(
        self, user_id: int, old_currency: str | None, new_currency: str
    ) -> currency_cascade.CascadeResult:
        return currency_cascade.convert_user_currency(
            self.engine, self.converter, user_id, old_currency, new_currency
        )

    def create_budget(self, **fields) -> int:
        return budget_ledger.create_budget(self.engine, **fields)

    def deduct_from_budget(
        self, category_id: int, amount: Decimal | int | float | str, transaction_date: date
    ) -> budget_ledger.BudgetDeduction:
        return budget_ledger.deduct(self.engine, category_id, amount, transaction_date)

    def update_goal_progress(
        self, goal_id: int, delta: Decimal | int | float | str, user_id: int | None = None
    ) -> goal_progress.GoalProgress:
        return goal_progress.apply_progress(self.engine, goal_id, delta, user_id=user_id)

    def get_goal(self, goal_id: int, user_id: int | None = None) -> goal_progress.GoalProgress:
        return goal_progress.get_goal(self.engine, goal_id, user_id=user_id)

    def record_transaction(
        self,
        *,
        user_id: int,
        category_id: int,
        amount: Decimal | int | float | str,
        currency: str,
        type: str,
        transaction_date: date,
        description: str | None = None,
        goal_id: int | None = None,
    ) -> RecordedTransaction:
        """Insert a transaction together with its budget and goal effects.

        The category and goal must belong to ``user_id``. An expense is
        deducted from the budget covering its category and date (categories
        without a budget are not limited). A goal transaction advances its
        goal. Both effects are converted into the budget's or goal's own
        currency first. Everything commits or rolls back together.
        """
        normalized_type = (type or "").strip().lower()
        if normalized_type not in TRANSACTION_TYPES:
            raise ValueError("Invalid transaction type.")
        coerced_amount = coerce_positive_amount(amount)
        normalized_currency = normalize_currency(currency)

        budget_remaining = None
        progress = None
        try:
            with self.engine.begin() as conn:
                owner_id = conn.execute(
                    select(categories.c.user_id).where(categories.c.id == category_id)
                ).scalar_one_or_none()
                if owner_id != user_id:
                    raise RecordNotFound(f"Category {category_id} not found.")
                goal_currency = None
                if goal_id:
                    goal_currency = goal_progress.goal_currency(conn, goal_id, user_id=user_id)

                if normalized_type == "expense":
                    try:
                        budget = budget_ledger.find_covering_budget(
                            conn, category_id, transaction_date
                        )
                    except RecordNotFound:
                        logger.debug(
                            "expense_without_budget",
                            extra={"category_id": category_id, "date": transaction_date},
                        )
                    else:
                        deduction = budget_ledger.withdraw(
                            conn,
                            budget["id"],
                            self._amount_in(coerced_amount, normalized_currency, budget["currency"]),
                        )
                        budget_remaining = deduction.remaining_amount
                if normalized_type == "goal" and goal_id:
                    progress = goal_progress.add_goal_progress(
                        conn,
                        goal_id,
                        self._amount_in(coerced_amount, normalized_currency, goal_currency),
                        user_id=user_id,
                    )

                result = conn.execute(
                    insert(transactions).values(
                        user_id=user_id,
                        category_id=category_id,
                        amount=coerced_amount,
                        currency=normalized_currency,
                        type=normalized_type,
                        description=description,
                        transaction_date=transaction_date,
                        goal_id=goal_id,
                    )
                )
                transaction_id = result.inserted_primary_key[0]
        except SQLAlchemyError as exc:
            raise PersistenceFailure("Failed to record transaction.") from exc

        logger.info(
            "transaction_recorded",
            extra={"transaction_id": transaction_id, "type": normalized_type, "user_id": user_id},
        )
        return RecordedTransaction(
            id=transaction_id, budget_remaining=budget_remaining, goal=progress
        )

    def _amount_in(self, amount: Decimal, currency: str, target_currency: str) -> Decimal:
        converted = quantize_money(self.converter.convert(amount, currency, target_currency))
        if converted <= ZERO:
            raise InvalidAmount(f"{amount} {currency} is less than 0.01 {target_currency}.")
        return converted

    def move_transactions_to_history(self, now: datetime | None = None) -> archival.ArchivalReport:
        return archival.move_transactions_to_history(self.engine, now=now)

    def update_expired_budgets(self, today: date | None = None) -> budget_ledger.RenewalReport:
        return budget_ledger.renew_expired_budgets(self.engine, today=today)

    def build_scheduler(self, tick_interval_seconds: float = 60, **kwargs) -> ArchivalScheduler:
        return ArchivalScheduler(
            [
                RecurringJob(
                    name="transaction_archival",
                    action=self.move_transactions_to_history,
                    next_run=next_daily_run,
                ),
                RecurringJob(
                    name="budget_renewal",
                    action=self.update_expired_budgets,
                    next_run=next_monthly_run,
                ),
            ],
            tick_interval_seconds=tick_interval_seconds,
            **kwargs,
        )


def build_rate_provider(settings: Settings) -> RateProvider:
    retry_options = {
        "timeout": settings.rate_fetch_timeout_seconds,
        "attempts": settings.rate_fetch_attempts,
        "retry_delay": settings.rate_retry_delay_seconds,
    }
    if settings.rate_provider == "static":
        return StaticRateProvider()
    if settings.rate_provider == "nbrb":
        if settings.rate_api_url:
            return NbrbRateProvider(url=settings.rate_api_url, **retry_options)
        return NbrbRateProvider(**retry_options)
    if settings.rate_api_url:
        return ExchangeRateApiProvider(
            api_key=settings.rate_api_key, base_url=settings.rate_api_url, **retry_options
        )
    return ExchangeRateApiProvider(api_key=settings.rate_api_key, **retry_options)


def build_core(settings: Settings, engine: Engine) -> FinanceCore:
    rate_cache = RateCache(
        build_rate_provider(settings),
        ttl_seconds=settings.rate_cache_ttl_seconds,
        failure_backoff_seconds=settings.rate_failure_backoff_seconds,
    )
    return FinanceCore(engine, rate_cache)


def warm_rate_cache(core: FinanceCore) -> None:
    """Prime the cache at startup; a failure is logged and retried on first use."""
    try:
        core.rate_cache.snapshot()
    except ProviderFetchFailure as exc:
        logger.warning("rate_cache_warmup_failed", extra={"error": str(exc)})
