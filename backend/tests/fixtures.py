from __future__ import annotations

import threading
from datetime import date
from decimal import Decimal
from typing import Iterable

from sqlalchemy import insert, select, text
from sqlalchemy.engine import Engine

from backend.currency_conversion import ExchangeRate
from backend.db import (
    budgets,
    categories,
    create_db_engine,
    goals,
    init_db,
    transactions,
    users,
    usersettings,
)
from backend.errors import ProviderFetchFailure


def make_engine() -> Engine:
    engine = create_db_engine("sqlite://")
    init_db(engine)
    return engine


def add_user(engine: Engine, name: str = "Alice", currency: str | None = None) -> int:
    with engine.begin() as conn:
        user_id = conn.execute(
            insert(users).values(name=name, email=f"{name.lower()}@example.com")
        ).inserted_primary_key[0]
        if currency:
            conn.execute(insert(usersettings).values(user_id=user_id, currency=currency))
    return user_id


def add_category(engine: Engine, user_id: int, name: str = "Groceries") -> int:
    with engine.begin() as conn:
        return conn.execute(
            insert(categories).values(user_id=user_id, name=name)
        ).inserted_primary_key[0]


def add_budget(
    engine: Engine,
    user_id: int,
    category_id: int,
    amount: str = "100",
    remaining_amount: str | None = None,
    currency: str = "USD",
    period: str = "monthly",
    start_date: date = date(2024, 1, 1),
    end_date: date = date(2024, 1, 31),
) -> int:
    with engine.begin() as conn:
        return conn.execute(
            insert(budgets).values(
                user_id=user_id,
                category_id=category_id,
                amount=Decimal(amount),
                remaining_amount=Decimal(remaining_amount if remaining_amount is not None else amount),
                currency=currency,
                period=period,
                start_date=start_date,
                end_date=end_date,
            )
        ).inserted_primary_key[0]


def add_goal(
    engine: Engine,
    user_id: int,
    amount: str = "100",
    current_amount: str = "0",
    currency: str = "USD",
    status: str = "active",
) -> int:
    with engine.begin() as conn:
        return conn.execute(
            insert(goals).values(
                user_id=user_id,
                name="Holiday",
                amount=Decimal(amount),
                current_amount=Decimal(current_amount),
                currency=currency,
                status=status,
            )
        ).inserted_primary_key[0]


def add_transaction(
    engine: Engine,
    user_id: int,
    category_id: int,
    amount: str,
    transaction_date: date,
    currency: str = "USD",
    type: str = "expense",
    goal_id: int | None = None,
) -> int:
    with engine.begin() as conn:
        return conn.execute(
            insert(transactions).values(
                user_id=user_id,
                category_id=category_id,
                amount=Decimal(amount),
                currency=currency,
                type=type,
                description="test",
                transaction_date=transaction_date,
                goal_id=goal_id,
            )
        ).inserted_primary_key[0]


def fetch_row(engine: Engine, table, row_id: int):
    with engine.connect() as conn:
        return conn.execute(select(table).where(table.c.id == row_id)).mappings().first()


def count_rows(engine: Engine, table) -> int:
    with engine.connect() as conn:
        return len(conn.execute(select(table.c.id)).all())


def add_abort_trigger(engine: Engine, name: str, event: str, table: str, when: str = "1") -> None:
    """Make SQLite abort the given statement, to exercise rollback paths."""
    with engine.begin() as conn:
        conn.execute(
            text(
                f"CREATE TRIGGER {name} BEFORE {event} ON {table} "
                f"WHEN {when} BEGIN SELECT RAISE(ABORT, 'forced failure'); END"
            )
        )


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProvider:
    """Rate provider double that counts calls and can fail or block on demand."""

    def __init__(self, rates: dict[str, str] | None = None, base_currency: str = "USD") -> None:
        self.base_currency = base_currency
        self.rates = dict(rates or {"USD": "1", "EUR": "2", "JPY": "4"})
        self.calls = 0
        self.fail = False
        self.gate: threading.Event | None = None
        self._lock = threading.Lock()

    def fetch_rates(self) -> Iterable[ExchangeRate]:
        with self._lock:
            self.calls += 1
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.fail:
            raise ProviderFetchFailure("provider down")
        return [ExchangeRate(code=code, rate=Decimal(rate)) for code, rate in self.rates.items()]
