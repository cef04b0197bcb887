import threading
from datetime import date
from decimal import Decimal

from fastapi import FastAPI, HTTPException, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import select

from backend.config import load_settings
from backend.db import create_db_engine, init_db, users
from backend.errors import (
    AmbiguousBudget,
    BudgetExceeded,
    BudgetOverlap,
    InvalidAmount,
    PersistenceFailure,
    ProviderFetchFailure,
    RateUnavailable,
    RecordNotFound,
)
from backend.logging_config import configure_logging, get_logger
from backend.services import build_core, warm_rate_cache

settings = load_settings()
configure_logging(settings.log_level)
logger = get_logger("api")

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

engine = create_db_engine(settings.database_url)
core = build_core(settings, engine)
scheduler = core.build_scheduler(tick_interval_seconds=settings.scheduler_tick_seconds)


@app.on_event("startup")
def on_startup() -> None:
    init_db(engine)
    threading.Thread(target=warm_rate_cache, args=(core,), name="rate-warmup", daemon=True).start()
    if settings.scheduler_enabled:
        scheduler.start()


@app.on_event("shutdown")
def on_shutdown() -> None:
    scheduler.stop()


class CurrencyChangePayload(BaseModel):
    currency: str
    old_currency: str | None = None


class CurrencyChangeResponse(BaseModel):
    user_id: int
    currency: str
    previous_currency: str | None = None
    budgets: int
    transactions: int
    goals: int


class RateResponse(BaseModel):
    currency: str
    rate: Decimal


class RatesResponse(BaseModel):
    base: str
    rates: dict[str, Decimal]


class ConversionResponse(BaseModel):
    original_amount: Decimal
    from_currency: str
    to_currency: str
    converted_amount: Decimal


class BudgetPayload(BaseModel):
    category_id: int
    amount: Decimal
    currency: str
    period: str
    start_date: date
    end_date: date


class BudgetResponse(BaseModel):
    id: int


class TransactionPayload(BaseModel):
    category_id: int
    amount: Decimal
    currency: str
    type: str
    date: date
    description: str | None = None
    goal_id: int | None = None


class TransactionResponse(BaseModel):
    id: int
    budget_remaining: Decimal | None = None
    goal_status: str | None = None


class GoalProgressPayload(BaseModel):
    amount: Decimal


class GoalResponse(BaseModel):
    id: int
    current_amount: Decimal
    target_amount: Decimal
    status: str


class ArchivalResponse(BaseModel):
    archived: int
    deleted: int


class RenewalResponse(BaseModel):
    renewed: int
    skipped: int
    failed: list[int]


def get_user_id(x_user_id: str | None) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
    with engine.begin() as conn:
        result = conn.execute(select(users.c.id).where(users.c.id == user_id))
        if not result.first():
            raise HTTPException(status_code=404, detail="User not found.")
    return user_id


def to_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, RecordNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (BudgetExceeded, AmbiguousBudget, BudgetOverlap)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, RateUnavailable):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, PersistenceFailure):
        logger.error("request_persistence_failure", extra={"error": str(exc)})
        return HTTPException(status_code=500, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/currency/rates", response_model=RatesResponse)
def list_rates() -> RatesResponse:
    try:
        snapshot = core.get_currency_rates()
    except ProviderFetchFailure as exc:
        raise HTTPException(status_code=503, detail="Exchange rates unavailable.") from exc
    return RatesResponse(base=snapshot.base, rates=snapshot.as_dict())


@app.get("/currency/rates/{code}", response_model=RateResponse)
def get_rate(code: str) -> RateResponse:
    try:
        rate = core.get_currency_rate(code)
    except (RateUnavailable, ValueError) as exc:
        raise to_http_error(exc) from exc
    return RateResponse(currency=code.strip().upper(), rate=rate)


@app.get("/currency/convert", response_model=ConversionResponse)
def convert(
    amount: Decimal = Query(...),
    from_currency: str = Query(..., alias="from"),
    to_currency: str = Query(..., alias="to"),
) -> ConversionResponse:
    try:
        converted = core.convert_currency(amount, from_currency, to_currency)
    except (RateUnavailable, ValueError) as exc:
        raise to_http_error(exc) from exc
    return ConversionResponse(
        original_amount=amount,
        from_currency=from_currency.strip().upper(),
        to_currency=to_currency.strip().upper(),
        converted_amount=converted,
    )


@app.put("/users/me/currency", response_model=CurrencyChangeResponse)
def change_currency(
    payload: CurrencyChangePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CurrencyChangeResponse:
    user_id = get_user_id(x_user_id)
    try:
        result = core.update_currency_for_user(user_id, payload.old_currency, payload.currency)
    except (RateUnavailable, RecordNotFound, PersistenceFailure, ValueError) as exc:
        raise to_http_error(exc) from exc
    return CurrencyChangeResponse(
        user_id=result.user_id,
        currency=result.currency,
        previous_currency=result.previous_currency,
        budgets=result.budgets,
        transactions=result.transactions,
        goals=result.goals,
    )


@app.post("/budgets", response_model=BudgetResponse)
def create_budget(
    payload: BudgetPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BudgetResponse:
    user_id = get_user_id(x_user_id)
    try:
        budget_id = core.create_budget(
            user_id=user_id,
            category_id=payload.category_id,
            amount=payload.amount,
            currency=payload.currency,
            period=payload.period,
            start_date=payload.start_date,
            end_date=payload.end_date,
        )
    except (BudgetOverlap, InvalidAmount, PersistenceFailure, ValueError) as exc:
        raise to_http_error(exc) from exc
    return BudgetResponse(id=budget_id)


@app.post("/transactions", response_model=TransactionResponse, status_code=201)
def create_transaction(
    payload: TransactionPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        recorded = core.record_transaction(
            user_id=user_id,
            category_id=payload.category_id,
            amount=payload.amount,
            currency=payload.currency,
            type=payload.type,
            transaction_date=payload.date,
            description=payload.description,
            goal_id=payload.goal_id,
        )
    except (
        BudgetExceeded,
        AmbiguousBudget,
        RecordNotFound,
        RateUnavailable,
        PersistenceFailure,
        ValueError,
    ) as exc:
        raise to_http_error(exc) from exc
    return TransactionResponse(
        id=recorded.id,
        budget_remaining=recorded.budget_remaining,
        goal_status=recorded.goal.status if recorded.goal else None,
    )


@app.get("/goals/{goal_id}", response_model=GoalResponse)
def get_goal(
    goal_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> GoalResponse:
    user_id = get_user_id(x_user_id)
    try:
        goal = core.get_goal(goal_id, user_id=user_id)
    except (RecordNotFound, PersistenceFailure) as exc:
        raise to_http_error(exc) from exc
    return GoalResponse(
        id=goal.goal_id,
        current_amount=goal.current_amount,
        target_amount=goal.target_amount,
        status=goal.status,
    )


@app.patch("/goals/{goal_id}/progress", response_model=GoalResponse)
def add_goal_progress(
    goal_id: int,
    payload: GoalProgressPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> GoalResponse:
    user_id = get_user_id(x_user_id)
    try:
        goal = core.update_goal_progress(goal_id, payload.amount, user_id=user_id)
    except (InvalidAmount, RecordNotFound, PersistenceFailure) as exc:
        raise to_http_error(exc) from exc
    return GoalResponse(
        id=goal.goal_id,
        current_amount=goal.current_amount,
        target_amount=goal.target_amount,
        status=goal.status,
    )


@app.post("/admin/archive-transactions", response_model=ArchivalResponse)
def archive_transactions() -> ArchivalResponse:
    try:
        report = core.move_transactions_to_history()
    except PersistenceFailure as exc:
        raise to_http_error(exc) from exc
    return ArchivalResponse(archived=report.archived, deleted=report.deleted)


@app.post("/admin/renew-budgets", response_model=RenewalResponse)
def renew_budgets() -> RenewalResponse:
    try:
        report = core.update_expired_budgets()
    except PersistenceFailure as exc:
        raise to_http_error(exc) from exc
    return RenewalResponse(renewed=report.renewed, skipped=report.skipped, failed=list(report.failed))
