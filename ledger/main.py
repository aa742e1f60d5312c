import logging
import os
from dataclasses import asdict
from datetime import date, datetime
from decimal import Decimal

from fastapi import FastAPI, HTTPException, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    create_engine,
    func,
    insert,
    select,
    update,
)

from ledger.balances import Account, Movement, MovementKind, balance_report
from ledger.budget_engine import Budget, evaluate_budgets, normalize_category
from ledger.cashflow import (
    category_report,
    cashflow_sankey,
    daily_calendar,
    filter_movements,
    monthly_cashflow,
    movement_totals,
    parse_month_key,
    spending_insight,
)
from ledger.currency_conversion import (
    Converter,
    ExchangeRateHostProvider,
    RefreshingRateProvider,
    convert_amount,
    format_amount,
    normalize_currency,
)
from ledger.rate_refresher import (
    REFRESH_INTERVAL_SECONDS,
    STALE_AFTER_SECONDS,
    RateRefresher,
)
from ledger.saving_goals import SavingGoal, contribute, goal_progress, remaining_amount
from ledger.term_deposits import (
    DepositStatus,
    TermDeposit,
    cancel_deposit,
    complete_deposit,
    create_term_deposit,
    is_matured,
    projected_amount,
)

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

app = FastAPI()

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = os.getenv("DATABASE_URL", "sqlite:///./ledger.db")
connect_args = {}
if database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(database_url, connect_args=connect_args)
metadata = MetaData()


def get_system_default_currency() -> str:
    raw = os.getenv("DEFAULT_CURRENCY", "USD")
    try:
        return normalize_currency(raw)
    except ValueError:
        return "USD"


def env_flag(name: str, default: str = "1") -> bool:
    return os.getenv(name, default).strip().lower() not in {"0", "false", "no", "off"}


def env_seconds(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r", name, raw)
        return default
    return value if value > 0 else default


SYSTEM_DEFAULT_CURRENCY = get_system_default_currency()
FX_PROVIDER = RefreshingRateProvider(
    source=ExchangeRateHostProvider(
        base_url=os.getenv("FX_API_URL", "https://api.exchangerate.host/latest"),
    ),
    stale_after_seconds=env_seconds("FX_STALE_AFTER_SECONDS", STALE_AFTER_SECONDS),
)
RATE_REFRESHER = RateRefresher(
    FX_PROVIDER,
    interval_seconds=env_seconds("FX_REFRESH_INTERVAL_SECONDS", REFRESH_INTERVAL_SECONDS),
)

accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("currency", String(3), nullable=False, server_default=SYSTEM_DEFAULT_CURRENCY),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

movements = Table(
    "movements",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("date", Date, nullable=False),
    Column("kind", String(20), nullable=False),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("currency", String(3), nullable=False, server_default=SYSTEM_DEFAULT_CURRENCY),
    Column("category", String(255)),
    Column("account_id", Integer, ForeignKey("accounts.id", ondelete="SET NULL")),
    Column("from_account_id", Integer, ForeignKey("accounts.id", ondelete="SET NULL")),
    Column("to_account_id", Integer, ForeignKey("accounts.id", ondelete="SET NULL")),
    Column("note", String(500)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("category", String(255), nullable=False),
    Column("limit_amount", Numeric(14, 2), nullable=False),
    Column("currency", String(3), nullable=False, server_default=SYSTEM_DEFAULT_CURRENCY),
    Column("month", String(7), nullable=False),
    Column("note", String(500)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

saving_goals = Table(
    "saving_goals",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("account_id", Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
    Column("label", String(255), nullable=False),
    Column("target_amount", Numeric(14, 2), nullable=False),
    Column("current_amount", Numeric(14, 2), nullable=False, server_default="0"),
    Column("deadline", Date),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

term_deposits = Table(
    "term_deposits",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("account_id", Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("principal", Numeric(14, 2), nullable=False),
    Column("rate_annual", Numeric(7, 3), nullable=False),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date, nullable=False),
    Column("status", String(20), nullable=False, server_default=DepositStatus.ACTIVE),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)


@app.on_event("startup")
def init_db() -> None:
    metadata.create_all(engine)
    if env_flag("FX_REFRESH_ENABLED"):
        RATE_REFRESHER.start()


@app.on_event("shutdown")
def stop_background_tasks() -> None:
    RATE_REFRESHER.stop()


class AccountPayload(BaseModel):
    name: str
    currency: str

    @classmethod
    def validate_payload(cls, payload: "AccountPayload") -> "AccountPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Account name required.")
        payload.currency = normalize_currency(payload.currency)
        return payload


class AccountResponse(AccountPayload):
    id: int
    created_at: datetime | None = None


class MovementPayload(BaseModel):
    date: date
    kind: str
    amount: Decimal
    currency: str | None = None
    category: str | None = None
    account_id: int | None = None
    from_account_id: int | None = None
    to_account_id: int | None = None
    note: str | None = None

    @classmethod
    def validate_payload(cls, payload: "MovementPayload") -> "MovementPayload":
        payload.kind = MovementKind.validate(payload.kind)
        if payload.amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        payload.currency = normalize_currency(payload.currency) if payload.currency else None
        payload.category = payload.category.strip() or None if payload.category else None
        payload.note = payload.note.strip() or None if payload.note else None
        if payload.kind == MovementKind.TRANSFER:
            if payload.from_account_id is None or payload.to_account_id is None:
                raise ValueError("Transfers require from_account_id and to_account_id.")
            if payload.from_account_id == payload.to_account_id:
                raise ValueError("Transfer accounts must differ.")
            payload.account_id = None
        else:
            if payload.account_id is None:
                raise ValueError("Income and expense movements require an account_id.")
            payload.from_account_id = None
            payload.to_account_id = None
        return payload


class MovementResponse(MovementPayload):
    id: int
    currency: str


class BudgetPayload(BaseModel):
    category: str
    limit: Decimal
    currency: str | None = None
    month: str
    note: str | None = None

    @classmethod
    def validate_payload(cls, payload: "BudgetPayload") -> "BudgetPayload":
        payload.category = payload.category.strip()
        if not payload.category:
            raise ValueError("Budget category required.")
        if payload.limit < 0:
            raise ValueError("Budget limit must not be negative.")
        year, month = parse_month_key(payload.month)
        payload.month = f"{year:04d}-{month:02d}"
        payload.currency = normalize_currency(payload.currency) if payload.currency else None
        payload.note = payload.note.strip() or None if payload.note else None
        return payload


class BudgetResponse(BudgetPayload):
    id: int
    currency: str


class SavingGoalPayload(BaseModel):
    account_id: int
    label: str
    target_amount: Decimal
    current_amount: Decimal = Decimal("0")
    deadline: date | None = None

    @classmethod
    def validate_payload(cls, payload: "SavingGoalPayload") -> "SavingGoalPayload":
        payload.label = payload.label.strip()
        if not payload.label:
            raise ValueError("Goal label required.")
        if payload.target_amount <= 0:
            raise ValueError("Target amount must be greater than zero.")
        if payload.current_amount < 0:
            raise ValueError("Current amount must not be negative.")
        return payload


class SavingGoalResponse(SavingGoalPayload):
    id: int
    progress: Decimal
    remaining: Decimal


class ContributionPayload(BaseModel):
    amount: Decimal


class TermDepositPayload(BaseModel):
    account_id: int
    currency: str | None = None
    principal: Decimal
    rate_annual: Decimal
    start_date: date | None = None
    months: int


class TermDepositResponse(BaseModel):
    id: int
    account_id: int
    currency: str
    principal: Decimal
    rate_annual: Decimal
    start_date: date
    end_date: date
    status: str
    projected_amount: Decimal
    matured: bool


class BalanceRowResponse(BaseModel):
    account_id: int
    name: str
    currency: str
    native_balance: Decimal
    converted_balance: Decimal
    share: Decimal


class BalanceReportResponse(BaseModel):
    display_currency: str
    rows: list[BalanceRowResponse]
    total: Decimal
    richest: BalanceRowResponse | None = None
    totals_by_currency: dict[str, Decimal]


class BudgetRowResponse(BaseModel):
    budget_id: int
    category: str
    currency: str
    limit: Decimal
    spent: Decimal
    percent_used: Decimal | None = None
    status: str


class BudgetReportResponse(BaseModel):
    month: str
    display_currency: str
    rows: list[BudgetRowResponse]
    total_limit: Decimal
    total_spent: Decimal
    percent_used: Decimal
    summary: str
    high_risk: list[BudgetRowResponse]
    near_limit: list[BudgetRowResponse]
    low_usage: list[BudgetRowResponse]
    unbudgeted: list[tuple[str, Decimal]]


class MonthlyBucketResponse(BaseModel):
    month: str
    income: Decimal
    expense: Decimal
    net: Decimal


class CalendarDayResponse(BaseModel):
    date: str
    income: Decimal
    expense: Decimal
    net: Decimal
    is_positive: bool


class CalendarResponse(BaseModel):
    year: int
    month: int
    days: list[CalendarDayResponse]


class SankeyNodeResponse(BaseModel):
    id: str
    name: str
    type: str


class SankeyLinkResponse(BaseModel):
    source: str
    target: str
    value: Decimal


class SankeyResponse(BaseModel):
    nodes: list[SankeyNodeResponse]
    links: list[SankeyLinkResponse]


class SpendingInsightResponse(BaseModel):
    current_month: str
    previous_month: str
    current_expense: Decimal
    previous_expense: Decimal
    total_delta: Decimal
    total_delta_percent: Decimal
    top_category: str | None = None
    top_category_delta: Decimal
    top_category_delta_percent: Decimal


class CategoryChangeResponse(BaseModel):
    name: str
    current_total: Decimal
    previous_total: Decimal
    abs_change: Decimal
    pct_change: Decimal | None = None


class MovementTotalsResponse(BaseModel):
    income: Decimal
    expense: Decimal
    transfer: Decimal
    display_currency: str


class ConvertPayload(BaseModel):
    amount: Decimal
    from_currency: str
    to_currency: str
    locale: str = "es-UY"


class ConvertResponse(BaseModel):
    amount: Decimal
    currency: str
    formatted: str


class RatesResponse(BaseModel):
    reference: str
    rates: dict[str, Decimal]
    fetched_at: datetime | None = None
    stale: bool


def get_user_id(x_user_id: str | None) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing user identity.")
    return x_user_id.strip()


def get_converter(currency: str | None) -> Converter:
    try:
        display_currency = normalize_currency(currency) if currency else SYSTEM_DEFAULT_CURRENCY
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return Converter(rate_provider=FX_PROVIDER, display_currency=display_currency)


def parse_month_or_400(value: str | None) -> tuple[int, int]:
    if not value:
        today = date.today()
        return today.year, today.month
    try:
        return parse_month_key(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def row_to_account(row) -> Account:
    return Account(id=row["id"], name=row["name"], currency=row["currency"])


def row_to_movement(row) -> Movement:
    return Movement(
        id=row["id"],
        date=row["date"],
        kind=row["kind"],
        amount=row["amount"],
        currency=row["currency"],
        category=row["category"],
        account_id=row["account_id"],
        from_account_id=row["from_account_id"],
        to_account_id=row["to_account_id"],
        note=row["note"],
    )


def row_to_budget(row) -> Budget:
    return Budget(
        id=row["id"],
        category=row["category"],
        limit=row["limit_amount"],
        currency=row["currency"],
        month=row["month"],
        note=row["note"],
    )


def row_to_goal(row) -> SavingGoal:
    return SavingGoal(
        id=row["id"],
        account_id=row["account_id"],
        label=row["label"],
        target_amount=row["target_amount"],
        current_amount=row["current_amount"],
        deadline=row["deadline"],
    )


def row_to_deposit(row) -> TermDeposit:
    return TermDeposit(
        id=row["id"],
        account_id=row["account_id"],
        currency=row["currency"],
        principal=row["principal"],
        rate_annual=row["rate_annual"],
        start_date=row["start_date"],
        end_date=row["end_date"],
        status=row["status"],
    )


def load_accounts(conn, user_id: str) -> list[Account]:
    rows = conn.execute(
        select(accounts).where(accounts.c.user_id == user_id).order_by(accounts.c.id.asc())
    ).mappings().all()
    return [row_to_account(row) for row in rows]


def load_movements(
    conn, user_id: str, start_date: date | None = None, end_date: date | None = None
) -> list[Movement]:
    conditions = [movements.c.user_id == user_id]
    if start_date is not None:
        conditions.append(movements.c.date >= start_date)
    if end_date is not None:
        conditions.append(movements.c.date <= end_date)
    rows = conn.execute(
        select(movements).where(*conditions).order_by(movements.c.date.asc(), movements.c.id.asc())
    ).mappings().all()
    return [row_to_movement(row) for row in rows]


def load_budgets(conn, user_id: str, month: str | None = None) -> list[Budget]:
    conditions = [budgets.c.user_id == user_id]
    if month is not None:
        conditions.append(budgets.c.month == month)
    rows = conn.execute(
        select(budgets).where(*conditions).order_by(budgets.c.id.asc())
    ).mappings().all()
    return [row_to_budget(row) for row in rows]


def account_exists(conn, user_id: str, account_id: int) -> bool:
    return bool(
        conn.execute(
            select(accounts.c.id).where(accounts.c.id == account_id, accounts.c.user_id == user_id)
        ).first()
    )


def account_currency(conn, user_id: str, account_id: int | None) -> str | None:
    if account_id is None:
        return None
    return conn.execute(
        select(accounts.c.currency).where(accounts.c.id == account_id, accounts.c.user_id == user_id)
    ).scalar_one_or_none()


def goal_response(goal: SavingGoal) -> SavingGoalResponse:
    return SavingGoalResponse(
        id=goal.id,
        account_id=goal.account_id,
        label=goal.label,
        target_amount=goal.target_amount,
        current_amount=goal.current_amount,
        deadline=goal.deadline,
        progress=goal_progress(goal),
        remaining=remaining_amount(goal),
    )


def deposit_response(deposit: TermDeposit) -> TermDepositResponse:
    return TermDepositResponse(
        id=deposit.id,
        account_id=deposit.account_id,
        currency=deposit.currency,
        principal=deposit.principal,
        rate_annual=deposit.rate_annual,
        start_date=deposit.start_date,
        end_date=deposit.end_date,
        status=deposit.status,
        projected_amount=projected_amount(deposit),
        matured=is_matured(deposit, date.today()),
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/accounts", response_model=list[AccountResponse])
def list_accounts(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[AccountResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(accounts).where(accounts.c.user_id == user_id).order_by(accounts.c.id.asc())
        ).mappings().all()
    return [
        AccountResponse(
            id=row["id"],
            name=row["name"],
            currency=row["currency"],
            created_at=row["created_at"],
        )
        for row in rows
    ]


@app.post("/accounts", response_model=AccountResponse)
def create_account(
    payload: AccountPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> AccountResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = AccountPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        insert(accounts)
        .values(user_id=user_id, name=payload.name, currency=payload.currency)
        .returning(accounts.c.id, accounts.c.name, accounts.c.currency, accounts.c.created_at)
    )
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()

    if not row:
        logger.error("Account insert returned no row for user %s", user_id)
        raise HTTPException(status_code=500, detail="Failed to create account.")
    return AccountResponse(
        id=row["id"],
        name=row["name"],
        currency=row["currency"],
        created_at=row["created_at"],
    )


@app.put("/accounts/{account_id}", response_model=AccountResponse)
def update_account(
    account_id: int, payload: AccountPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> AccountResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = AccountPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        update(accounts)
        .where(accounts.c.id == account_id, accounts.c.user_id == user_id)
        .values(name=payload.name, currency=payload.currency)
        .returning(accounts.c.id, accounts.c.name, accounts.c.currency, accounts.c.created_at)
    )
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()

    if not row:
        raise HTTPException(status_code=404, detail="Account not found.")
    return AccountResponse(
        id=row["id"],
        name=row["name"],
        currency=row["currency"],
        created_at=row["created_at"],
    )


@app.delete("/accounts/{account_id}")
def delete_account(account_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    stmt = accounts.delete().where(accounts.c.id == account_id, accounts.c.user_id == user_id)
    with engine.begin() as conn:
        result = conn.execute(stmt)
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Account not found.")
    return {"status": "deleted"}


@app.get("/movements", response_model=list[MovementResponse])
def list_movements(
    q: str | None = None,
    kind: str | None = None,
    category: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[MovementResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = load_movements(conn, user_id)
    try:
        matches = filter_movements(rows, q, kind, category, date_from, date_to)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return [MovementResponse(**asdict(movement)) for movement in matches]


@app.post("/movements", response_model=MovementResponse)
def create_movement(
    payload: MovementPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> MovementResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = MovementPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    referenced = [
        account_id
        for account_id in (payload.account_id, payload.from_account_id, payload.to_account_id)
        if account_id is not None
    ]
    with engine.begin() as conn:
        for account_id in referenced:
            if not account_exists(conn, user_id, account_id):
                raise HTTPException(status_code=404, detail="Account not found.")
        currency = payload.currency or account_currency(
            conn, user_id, payload.account_id or payload.from_account_id
        ) or SYSTEM_DEFAULT_CURRENCY

        stmt = (
            insert(movements)
            .values(
                user_id=user_id,
                date=payload.date,
                kind=payload.kind,
                amount=payload.amount,
                currency=currency,
                category=payload.category,
                account_id=payload.account_id,
                from_account_id=payload.from_account_id,
                to_account_id=payload.to_account_id,
                note=payload.note,
            )
            .returning(*[column for column in movements.c if column.name not in {"user_id", "created_at"}])
        )
        row = conn.execute(stmt).mappings().first()

    if not row:
        logger.error("Movement insert returned no row for user %s", user_id)
        raise HTTPException(status_code=500, detail="Failed to create movement.")
    return MovementResponse(**asdict(row_to_movement(row)))


@app.delete("/movements/{movement_id}")
def delete_movement(
    movement_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    stmt = movements.delete().where(movements.c.id == movement_id, movements.c.user_id == user_id)
    with engine.begin() as conn:
        result = conn.execute(stmt)
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Movement not found.")
    return {"status": "deleted"}


@app.get("/budgets", response_model=list[BudgetResponse])
def list_budgets(
    month: str | None = None, x_user_id: str | None = Header(None, alias="x-user-id")
) -> list[BudgetResponse]:
    user_id = get_user_id(x_user_id)
    month_value = None
    if month:
        year, month_number = parse_month_or_400(month)
        month_value = f"{year:04d}-{month_number:02d}"
    with engine.begin() as conn:
        rows = load_budgets(conn, user_id, month_value)
    return [
        BudgetResponse(
            id=budget.id,
            category=budget.category,
            limit=budget.limit,
            currency=budget.currency,
            month=budget.month,
            note=budget.note,
        )
        for budget in rows
    ]


@app.post("/budgets", response_model=BudgetResponse)
def create_budget(
    payload: BudgetPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> BudgetResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = BudgetPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        existing = [
            budget
            for budget in load_budgets(conn, user_id, payload.month)
            if normalize_category(budget.category) == normalize_category(payload.category)
        ]
        if existing:
            raise HTTPException(status_code=409, detail="Budget already exists for this category and month.")
        stmt = (
            insert(budgets)
            .values(
                user_id=user_id,
                category=payload.category,
                limit_amount=payload.limit,
                currency=payload.currency or SYSTEM_DEFAULT_CURRENCY,
                month=payload.month,
                note=payload.note,
            )
            .returning(*[column for column in budgets.c if column.name not in {"user_id", "created_at"}])
        )
        row = conn.execute(stmt).mappings().first()

    if not row:
        logger.error("Budget insert returned no row for user %s", user_id)
        raise HTTPException(status_code=500, detail="Failed to create budget.")
    return BudgetResponse(
        id=row["id"],
        category=row["category"],
        limit=row["limit_amount"],
        currency=row["currency"],
        month=row["month"],
        note=row["note"],
    )


@app.delete("/budgets/{budget_id}")
def delete_budget(budget_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    stmt = budgets.delete().where(budgets.c.id == budget_id, budgets.c.user_id == user_id)
    with engine.begin() as conn:
        result = conn.execute(stmt)
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Budget not found.")
    return {"status": "deleted"}


@app.get("/goals", response_model=list[SavingGoalResponse])
def list_goals(
    account_id: int | None = None, x_user_id: str | None = Header(None, alias="x-user-id")
) -> list[SavingGoalResponse]:
    user_id = get_user_id(x_user_id)
    conditions = [saving_goals.c.user_id == user_id]
    if account_id is not None:
        conditions.append(saving_goals.c.account_id == account_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(saving_goals).where(*conditions).order_by(saving_goals.c.id.asc())
        ).mappings().all()
    return [goal_response(row_to_goal(row)) for row in rows]


@app.post("/goals", response_model=SavingGoalResponse)
def create_goal(
    payload: SavingGoalPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> SavingGoalResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = SavingGoalPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        if not account_exists(conn, user_id, payload.account_id):
            raise HTTPException(status_code=404, detail="Account not found.")
        row = conn.execute(
            insert(saving_goals)
            .values(
                user_id=user_id,
                account_id=payload.account_id,
                label=payload.label,
                target_amount=payload.target_amount,
                current_amount=payload.current_amount,
                deadline=payload.deadline,
            )
            .returning(*[column for column in saving_goals.c if column.name not in {"user_id", "created_at"}])
        ).mappings().first()

    if not row:
        logger.error("Goal insert returned no row for user %s", user_id)
        raise HTTPException(status_code=500, detail="Failed to create goal.")
    return goal_response(row_to_goal(row))


@app.post("/goals/{goal_id}/contributions", response_model=SavingGoalResponse)
def add_goal_contribution(
    goal_id: int,
    payload: ContributionPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> SavingGoalResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(
            select(saving_goals).where(saving_goals.c.id == goal_id, saving_goals.c.user_id == user_id)
        ).mappings().first()
        if not row:
            raise HTTPException(status_code=404, detail="Goal not found.")
        goal = contribute(row_to_goal(row), payload.amount)
        conn.execute(
            update(saving_goals)
            .where(saving_goals.c.id == goal_id, saving_goals.c.user_id == user_id)
            .values(current_amount=goal.current_amount)
        )
    return goal_response(goal)


@app.delete("/goals/{goal_id}")
def delete_goal(goal_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    stmt = saving_goals.delete().where(saving_goals.c.id == goal_id, saving_goals.c.user_id == user_id)
    with engine.begin() as conn:
        result = conn.execute(stmt)
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Goal not found.")
    return {"status": "deleted"}


@app.get("/term-deposits", response_model=list[TermDepositResponse])
def list_term_deposits(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[TermDepositResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(term_deposits)
            .where(term_deposits.c.user_id == user_id)
            .order_by(term_deposits.c.start_date.desc(), term_deposits.c.id.desc())
        ).mappings().all()
    return [deposit_response(row_to_deposit(row)) for row in rows]


@app.post("/term-deposits", response_model=TermDepositResponse)
def create_term_deposit_route(
    payload: TermDepositPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TermDepositResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        if not account_exists(conn, user_id, payload.account_id):
            raise HTTPException(status_code=404, detail="Account not found.")
        currency = payload.currency or account_currency(conn, user_id, payload.account_id)
        try:
            deposit = create_term_deposit(
                account_id=payload.account_id,
                currency=currency,
                principal=payload.principal,
                rate_annual=payload.rate_annual,
                start_date=payload.start_date or date.today(),
                months=payload.months,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        row = conn.execute(
            insert(term_deposits)
            .values(
                user_id=user_id,
                account_id=deposit.account_id,
                currency=deposit.currency,
                principal=deposit.principal,
                rate_annual=deposit.rate_annual,
                start_date=deposit.start_date,
                end_date=deposit.end_date,
                status=deposit.status,
            )
            .returning(*[column for column in term_deposits.c if column.name not in {"user_id", "created_at"}])
        ).mappings().first()

    if not row:
        logger.error("Term deposit insert returned no row for user %s", user_id)
        raise HTTPException(status_code=500, detail="Failed to create term deposit.")
    return deposit_response(row_to_deposit(row))


def transition_deposit(deposit_id: int, user_id: str, transition) -> TermDepositResponse:
    with engine.begin() as conn:
        row = conn.execute(
            select(term_deposits).where(
                term_deposits.c.id == deposit_id, term_deposits.c.user_id == user_id
            )
        ).mappings().first()
        if not row:
            raise HTTPException(status_code=404, detail="Term deposit not found.")
        current = row_to_deposit(row)
        try:
            updated = transition(current)
        except ValueError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        if updated.status != current.status:
            conn.execute(
                update(term_deposits)
                .where(term_deposits.c.id == deposit_id, term_deposits.c.user_id == user_id)
                .values(status=updated.status)
            )
    return deposit_response(updated)


@app.post("/term-deposits/{deposit_id}/complete", response_model=TermDepositResponse)
def complete_term_deposit(
    deposit_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TermDepositResponse:
    return transition_deposit(deposit_id, get_user_id(x_user_id), complete_deposit)


@app.post("/term-deposits/{deposit_id}/cancel", response_model=TermDepositResponse)
def cancel_term_deposit(
    deposit_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TermDepositResponse:
    return transition_deposit(deposit_id, get_user_id(x_user_id), cancel_deposit)


@app.get("/reports/balances", response_model=BalanceReportResponse)
def get_balance_report(
    currency: str | None = None, x_user_id: str | None = Header(None, alias="x-user-id")
) -> BalanceReportResponse:
    user_id = get_user_id(x_user_id)
    converter = get_converter(currency)
    with engine.begin() as conn:
        account_rows = load_accounts(conn, user_id)
        movement_rows = load_movements(conn, user_id)
    report = balance_report(account_rows, movement_rows, converter)
    return BalanceReportResponse(**asdict(report))


@app.get("/reports/budgets", response_model=BudgetReportResponse)
def get_budget_report(
    month: str | None = None,
    currency: str | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BudgetReportResponse:
    user_id = get_user_id(x_user_id)
    converter = get_converter(currency)
    year, month_number = parse_month_or_400(month)
    month_value = f"{year:04d}-{month_number:02d}"
    with engine.begin() as conn:
        budget_rows = load_budgets(conn, user_id, month_value)
        movement_rows = load_movements(conn, user_id)
    report = evaluate_budgets(budget_rows, movement_rows, month_value, converter)
    return BudgetReportResponse(**asdict(report))


@app.get("/reports/cashflow", response_model=list[MonthlyBucketResponse])
def get_cashflow_report(
    end_month: str | None = None,
    months: int = Query(6, ge=1, le=60),
    currency: str | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[MonthlyBucketResponse]:
    user_id = get_user_id(x_user_id)
    converter = get_converter(currency)
    year, month_number = parse_month_or_400(end_month)
    with engine.begin() as conn:
        movement_rows = load_movements(conn, user_id)
    buckets = monthly_cashflow(movement_rows, converter, f"{year:04d}-{month_number:02d}", months)
    return [MonthlyBucketResponse(**asdict(bucket)) for bucket in buckets]


@app.get("/reports/calendar", response_model=CalendarResponse)
def get_calendar_report(
    year: int | None = None,
    month: int | None = Query(None, ge=1, le=12),
    currency: str | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CalendarResponse:
    user_id = get_user_id(x_user_id)
    converter = get_converter(currency)
    today = date.today()
    year = year or today.year
    month = month or today.month
    with engine.begin() as conn:
        movement_rows = load_movements(conn, user_id)
    calendar_view = daily_calendar(movement_rows, converter, year, month)
    return CalendarResponse(**asdict(calendar_view))


@app.get("/reports/sankey", response_model=SankeyResponse)
def get_sankey_report(
    year: int | None = None,
    month: int | None = Query(None, ge=1, le=12),
    currency: str | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> SankeyResponse:
    user_id = get_user_id(x_user_id)
    converter = get_converter(currency)
    today = date.today()
    with engine.begin() as conn:
        account_rows = load_accounts(conn, user_id)
        movement_rows = load_movements(conn, user_id)
    graph = cashflow_sankey(
        movement_rows,
        account_rows,
        year=year or today.year,
        month=month or today.month,
        converter=converter,
    )
    return SankeyResponse(**asdict(graph))


@app.get("/reports/spending-insight", response_model=SpendingInsightResponse)
def get_spending_insight(
    month: str | None = None,
    currency: str | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> SpendingInsightResponse:
    user_id = get_user_id(x_user_id)
    converter = get_converter(currency)
    year, month_number = parse_month_or_400(month)
    with engine.begin() as conn:
        movement_rows = load_movements(conn, user_id)
    insight = spending_insight(movement_rows, converter, f"{year:04d}-{month_number:02d}")
    return SpendingInsightResponse(**asdict(insight))


@app.get("/reports/categories", response_model=list[CategoryChangeResponse])
def get_category_report(
    month: str | None = None,
    kind: str = MovementKind.EXPENSE,
    currency: str | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[CategoryChangeResponse]:
    user_id = get_user_id(x_user_id)
    converter = get_converter(currency)
    year, month_number = parse_month_or_400(month)
    with engine.begin() as conn:
        movement_rows = load_movements(conn, user_id)
    try:
        rows = category_report(movement_rows, converter, year, month_number, kind)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return [CategoryChangeResponse(**asdict(row)) for row in rows]


@app.get("/reports/movement-totals", response_model=MovementTotalsResponse)
def get_movement_totals(
    q: str | None = None,
    kind: str | None = None,
    category: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    currency: str | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> MovementTotalsResponse:
    user_id = get_user_id(x_user_id)
    converter = get_converter(currency)
    with engine.begin() as conn:
        movement_rows = load_movements(conn, user_id)
    try:
        matches = filter_movements(movement_rows, q, kind, category, date_from, date_to)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    totals = movement_totals(matches, converter)
    return MovementTotalsResponse(**asdict(totals), display_currency=converter.display_currency)


@app.get("/currency/rates", response_model=RatesResponse)
def get_currency_rates() -> RatesResponse:
    fetched_at = FX_PROVIDER.last_refreshed_at
    return RatesResponse(
        reference="USD",
        rates=FX_PROVIDER.snapshot(),
        fetched_at=datetime.fromtimestamp(fetched_at) if fetched_at else None,
        stale=FX_PROVIDER.is_stale(),
    )


@app.post("/currency/refresh", response_model=RatesResponse)
def refresh_currency_rates() -> RatesResponse:
    if not RATE_REFRESHER.refresh_now():
        logger.warning("Manual exchange rate refresh failed; serving previous table")
    return get_currency_rates()


@app.post("/currency/convert", response_model=ConvertResponse)
def convert_currency(payload: ConvertPayload) -> ConvertResponse:
    try:
        target = normalize_currency(payload.to_currency)
        converted = convert_amount(
            payload.amount,
            payload.from_currency,
            target,
            rate_provider=FX_PROVIDER,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ConvertResponse(
        amount=converted,
        currency=target,
        formatted=format_amount(converted, target, payload.locale),
    )
