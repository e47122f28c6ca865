import json
import logging
import os
from datetime import date, datetime
from decimal import Decimal

import bcrypt
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
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError

from fintrack.currency_conversion import (
    CENTS,
    DEFAULT_LOCALE,
    Currency,
    CurrencyTable,
    UnknownCurrency,
    convert,
    format_amount,
    normalize_currency,
    resolve_display_currency,
)
from fintrack.ledger import (
    TRANSACTION_TYPES,
    InvalidTransaction,
    Transaction,
    build_transaction,
    is_known_category,
)
from fintrack.period_aggregator import (
    DEFAULT_TREND_MONTHS,
    InvalidPeriod,
    Period,
    Summary,
    aggregate,
    category_totals,
    monthly_trend,
)
from fintrack.rate_refresh import (
    DEFAULT_REFRESH_INTERVAL,
    FrankfurterRateSource,
    PerturbedRateSource,
    RefreshScheduler,
)
from fintrack.transaction_view import (
    DEFAULT_SORT_DIRECTION,
    DEFAULT_SORT_FIELD,
    InvalidViewOption,
    normalize_option,
    view,
)

log_level = os.getenv("LOGGING_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format="%(levelname)s - %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

SELECTED_CURRENCY_KEY = "selectedCurrency"
# Matches the Numeric(12, 2) amount column.
MAX_AMOUNT = Decimal(10) ** 10

app = FastAPI()

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = os.getenv("DATABASE_URL", "sqlite:///./fintrack.db")
connect_args = {}
if database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(database_url, connect_args=connect_args)
metadata = MetaData()


def get_refresh_interval() -> float:
    raw = os.getenv("RATE_REFRESH_SECONDS")
    if not raw:
        return DEFAULT_REFRESH_INTERVAL
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid RATE_REFRESH_SECONDS %r, using default", raw)
        return DEFAULT_REFRESH_INTERVAL
    if value <= 0:
        logger.warning("RATE_REFRESH_SECONDS must be positive, using default")
        return DEFAULT_REFRESH_INTERVAL
    return value


def build_rate_source():
    kind = os.getenv("RATE_SOURCE", "static").strip().lower()
    if kind == "frankfurter":
        return FrankfurterRateSource()
    if kind != "static":
        logger.warning("Unknown RATE_SOURCE %r, using static rates", kind)
    return PerturbedRateSource()


DISPLAY_LOCALE = os.getenv("DISPLAY_LOCALE", DEFAULT_LOCALE)
CURRENCY_TABLE = CurrencyTable()
RATE_SCHEDULER = RefreshScheduler(
    CURRENCY_TABLE,
    build_rate_source(),
    interval=get_refresh_interval(),
)

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("hashed_password", String(255), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("type", String(20), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("category", String(255), nullable=False),
    Column("date", Date, nullable=False),
    Column("note", String(500)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

preferences = Table(
    "preferences",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("key", String(100), nullable=False),
    Column("value", Text, nullable=False),
    UniqueConstraint("user_id", "key", name="uq_preferences_user_key"),
)


@app.on_event("startup")
async def startup() -> None:
    metadata.create_all(engine)
    RATE_SCHEDULER.start()


@app.on_event("shutdown")
async def shutdown() -> None:
    RATE_SCHEDULER.stop()


class CredentialsPayload(BaseModel):
    email: str
    password: str


class UserResponse(BaseModel):
    id: int
    email: str
    created_at: datetime | None = None


class TransactionPayload(BaseModel):
    type: str
    amount: Decimal
    category: str
    date: date
    note: str | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        normalized_type = payload.type.strip().lower()
        if normalized_type not in TRANSACTION_TYPES:
            raise ValueError("Invalid transaction type.")
        payload.type = normalized_type
        payload.category = payload.category.strip()
        payload.note = payload.note.strip() if payload.note else None
        if not payload.category:
            raise ValueError("Category required.")
        if not payload.amount.is_finite() or payload.amount < 0:
            raise ValueError("Amount must be zero or greater.")
        if payload.amount >= MAX_AMOUNT:
            raise ValueError("Amount is too large.")
        if payload.amount != payload.amount.quantize(CENTS):
            raise ValueError("Amount must have at most 2 decimal places.")
        return payload


class TransactionResponse(TransactionPayload):
    id: str
    user_id: int
    currency: str
    display_amount: Decimal
    formatted_amount: str
    known_category: bool


class SummaryDisplay(BaseModel):
    income: str
    expenses: str
    balance: str


class SummaryResponse(BaseModel):
    month: str
    income: Decimal
    expenses: Decimal
    balance: Decimal
    currency: str
    display: SummaryDisplay


class SummaryTotals(BaseModel):
    income: Decimal
    expenses: Decimal
    balance: Decimal


class SummaryCheckResponse(BaseModel):
    month: str
    local: SummaryTotals
    stored: SummaryTotals
    matches: bool


class TrendPointResponse(BaseModel):
    month: str
    income: Decimal
    expenses: Decimal
    savings: Decimal


class CategoryTotalResponse(BaseModel):
    category: str
    amount: Decimal
    percentage: Decimal
    known: bool
    formatted_amount: str


class CurrencyResponse(BaseModel):
    code: str
    symbol: str
    name: str
    rate: Decimal


class CurrencyRatePayload(BaseModel):
    rate: Decimal


class SelectedCurrencyPayload(BaseModel):
    code: str


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def get_user_id(x_user_id: str | None = Header(None)) -> int:
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


def parse_period(month: str | None) -> Period:
    if not month:
        return Period.current()
    try:
        return Period.parse(month)
    except InvalidPeriod as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def parse_transaction_id(value: str) -> int:
    try:
        return int(value)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail="Transaction not found.") from exc


def row_to_transaction(row) -> Transaction:
    return build_transaction(
        id=str(row["id"]),
        type=row["type"],
        amount=row["amount"],
        category=row["category"],
        date=row["date"],
        note=row["note"],
    )


def fetch_transactions(user_id: int, period: Period | None = None) -> list[Transaction]:
    conditions = [transactions.c.user_id == user_id]
    if period is not None:
        conditions.append(transactions.c.date >= period.start)
        conditions.append(transactions.c.date <= period.end)
    with engine.begin() as conn:
        rows = conn.execute(
            select(transactions).where(*conditions).order_by(transactions.c.id.asc())
        ).mappings().all()
    try:
        return [row_to_transaction(row) for row in rows]
    except InvalidTransaction as exc:
        logger.error("Stored transaction for user %s is invalid: %s", user_id, exc)
        raise HTTPException(status_code=500, detail="Stored transaction is invalid.") from exc


def fetch_stored_summary(user_id: int, period: Period) -> Summary:
    totals = {}
    for txn_type in ("income", "expense"):
        total_expr = func.coalesce(func.sum(transactions.c.amount), 0)
        stmt = select(total_expr).where(
            transactions.c.user_id == user_id,
            transactions.c.type == txn_type,
            transactions.c.date >= period.start,
            transactions.c.date <= period.end,
        )
        with engine.begin() as conn:
            total_value = conn.execute(stmt).scalar_one()
        totals[txn_type] = (
            total_value if isinstance(total_value, Decimal) else Decimal(str(total_value))
        )
    return Summary(
        income=totals["income"],
        expenses=totals["expense"],
        balance=totals["income"] - totals["expense"],
    )


def load_selected_currency(conn, user_id: int) -> dict | None:
    raw = conn.execute(
        select(preferences.c.value).where(
            preferences.c.user_id == user_id,
            preferences.c.key == SELECTED_CURRENCY_KEY,
        )
    ).scalar_one_or_none()
    if not raw:
        return None
    try:
        return Currency.from_dict(json.loads(raw)).to_dict()
    except ValueError:
        logger.warning("Discarding malformed selected currency for user %s", user_id)
        return None


def save_selected_currency(conn, user_id: int, currency: Currency) -> None:
    value = json.dumps(currency.to_dict())
    updated = conn.execute(
        update(preferences)
        .where(
            preferences.c.user_id == user_id,
            preferences.c.key == SELECTED_CURRENCY_KEY,
        )
        .values(value=value)
    )
    if updated.rowcount == 0:
        conn.execute(
            insert(preferences).values(user_id=user_id, key=SELECTED_CURRENCY_KEY, value=value)
        )


def resolve_request_currency(user_id: int, code: str | None) -> Currency:
    if not code:
        with engine.begin() as conn:
            selected = load_selected_currency(conn, user_id)
        code = selected["code"] if selected else None
    return resolve_display_currency(CURRENCY_TABLE, code)


def to_transaction_response(
    txn: Transaction, user_id: int, currency: Currency
) -> TransactionResponse:
    return TransactionResponse(
        id=txn.id,
        user_id=user_id,
        type=txn.type,
        amount=txn.amount,
        category=txn.category,
        date=txn.date,
        note=txn.note,
        currency=currency.code,
        display_amount=convert(txn.amount, currency),
        formatted_amount=format_amount(txn.amount, currency, DISPLAY_LOCALE),
        known_category=is_known_category(txn.category, txn.type),
    )


def to_currency_response(currency: Currency) -> CurrencyResponse:
    return CurrencyResponse(
        code=currency.code,
        symbol=currency.symbol,
        name=currency.name,
        rate=currency.rate,
    )


def fetch_transaction_row(conn, user_id: int, transaction_id: int):
    return conn.execute(
        select(transactions).where(
            transactions.c.id == transaction_id,
            transactions.c.user_id == user_id,
        )
    ).mappings().first()


@app.get("/health")
def health() -> dict:
    return {"status": "ok", "rate_refresh": RATE_SCHEDULER.state}


@app.post("/auth/signup", response_model=UserResponse)
def signup(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    if not email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password required.")
    hashed_password = hash_password(payload.password)

    stmt = (
        insert(users)
        .values(email=email, hashed_password=hashed_password)
        .returning(users.c.id, users.c.email, users.c.created_at)
    )
    try:
        with engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Email already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create user.")
    logger.info("Created user %s", row["id"])
    return UserResponse(id=row["id"], email=row["email"], created_at=row["created_at"])


@app.post("/auth/login", response_model=UserResponse)
def login(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.email == email)).mappings().first()

    if not row or not verify_password(payload.password, row["hashed_password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    return UserResponse(id=row["id"], email=row["email"], created_at=row["created_at"])


@app.get("/transactions", response_model=list[TransactionResponse])
def list_transactions(
    month: str | None = Query(None),
    type: str | None = Query(None),
    sort: str | None = Query(None),
    direction: str | None = Query(None),
    currency: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[TransactionResponse]:
    user_id = get_user_id(x_user_id)
    period = parse_period(month)
    records = [txn for txn in fetch_transactions(user_id, period) if period.contains(txn.date)]
    try:
        ordered = view(
            records,
            normalize_option(type, "all"),
            normalize_option(sort, DEFAULT_SORT_FIELD),
            normalize_option(direction, DEFAULT_SORT_DIRECTION),
        )
    except InvalidViewOption as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    display_currency = resolve_request_currency(user_id, currency)
    return [to_transaction_response(txn, user_id, display_currency) for txn in ordered]


@app.post("/transactions", response_model=TransactionResponse)
def create_transaction(
    payload: TransactionPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = TransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        insert(transactions)
        .values(
            user_id=user_id,
            type=payload.type,
            amount=payload.amount,
            category=payload.category,
            date=payload.date,
            note=payload.note,
        )
        .returning(*transactions.c)
    )
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create transaction.")
    return to_transaction_response(
        row_to_transaction(row), user_id, resolve_request_currency(user_id, None)
    )


@app.get("/transactions/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: str,
    currency: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    record_id = parse_transaction_id(transaction_id)
    with engine.begin() as conn:
        row = fetch_transaction_row(conn, user_id, record_id)
    if not row:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    return to_transaction_response(
        row_to_transaction(row), user_id, resolve_request_currency(user_id, currency)
    )


@app.put("/transactions/{transaction_id}", response_model=TransactionResponse)
def update_transaction(
    transaction_id: str,
    payload: TransactionPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    record_id = parse_transaction_id(transaction_id)
    try:
        payload = TransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        row = conn.execute(
            update(transactions)
            .where(transactions.c.id == record_id, transactions.c.user_id == user_id)
            .values(
                type=payload.type,
                amount=payload.amount,
                category=payload.category,
                date=payload.date,
                note=payload.note,
            )
            .returning(*transactions.c)
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    return to_transaction_response(
        row_to_transaction(row), user_id, resolve_request_currency(user_id, None)
    )


@app.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: str,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    user_id = get_user_id(x_user_id)
    record_id = parse_transaction_id(transaction_id)
    with engine.begin() as conn:
        result = conn.execute(
            delete(transactions).where(
                transactions.c.id == record_id,
                transactions.c.user_id == user_id,
            )
        )
    if result.rowcount == 0:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    return {"status": "deleted"}


@app.get("/summary", response_model=SummaryResponse)
def get_summary(
    month: str | None = Query(None),
    currency: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> SummaryResponse:
    user_id = get_user_id(x_user_id)
    period = parse_period(month)
    summary = aggregate(fetch_transactions(user_id, period), period)
    display_currency = resolve_request_currency(user_id, currency)
    return SummaryResponse(
        month=period.key,
        income=summary.income,
        expenses=summary.expenses,
        balance=summary.balance,
        currency=display_currency.code,
        display=SummaryDisplay(
            income=format_amount(summary.income, display_currency, DISPLAY_LOCALE),
            expenses=format_amount(summary.expenses, display_currency, DISPLAY_LOCALE),
            balance=format_amount(summary.balance, display_currency, DISPLAY_LOCALE),
        ),
    )


@app.get("/summary/check", response_model=SummaryCheckResponse)
def check_summary(
    month: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> SummaryCheckResponse:
    user_id = get_user_id(x_user_id)
    period = parse_period(month)
    local = aggregate(fetch_transactions(user_id, period), period)
    stored = fetch_stored_summary(user_id, period)
    matches = local == stored
    if not matches:
        logger.warning(
            "Summary mismatch for user %s in %s: local=%s stored=%s",
            user_id,
            period.key,
            local,
            stored,
        )
    return SummaryCheckResponse(
        month=period.key,
        local=SummaryTotals(income=local.income, expenses=local.expenses, balance=local.balance),
        stored=SummaryTotals(
            income=stored.income, expenses=stored.expenses, balance=stored.balance
        ),
        matches=matches,
    )


@app.get("/summary/trend", response_model=list[TrendPointResponse])
def get_monthly_trend(
    months: int = Query(DEFAULT_TREND_MONTHS, ge=1, le=60),
    month: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[TrendPointResponse]:
    user_id = get_user_id(x_user_id)
    end_period = parse_period(month)
    records = fetch_transactions(user_id)
    return [
        TrendPointResponse(
            month=point.period.key,
            income=point.income,
            expenses=point.expenses,
            savings=point.savings,
        )
        for point in monthly_trend(records, end_period, months)
    ]


@app.get("/summary/categories", response_model=list[CategoryTotalResponse])
def get_category_totals(
    month: str | None = Query(None),
    type: str = Query("expense"),
    currency: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[CategoryTotalResponse]:
    user_id = get_user_id(x_user_id)
    period = parse_period(month)
    txn_type = type.strip().lower()
    try:
        totals = category_totals(fetch_transactions(user_id, period), period, txn_type)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    display_currency = resolve_request_currency(user_id, currency)
    return [
        CategoryTotalResponse(
            category=total.category,
            amount=total.amount,
            percentage=total.percentage.quantize(Decimal("0.01")),
            known=is_known_category(total.category, txn_type),
            formatted_amount=format_amount(total.amount, display_currency, DISPLAY_LOCALE),
        )
        for total in totals
    ]


@app.get("/currencies", response_model=list[CurrencyResponse])
def list_currencies() -> list[CurrencyResponse]:
    return [to_currency_response(currency) for currency in CURRENCY_TABLE.snapshot().values()]


@app.put("/currencies/{code}/rate", response_model=CurrencyResponse)
def override_currency_rate(
    code: str,
    payload: CurrencyRatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CurrencyResponse:
    get_user_id(x_user_id)
    try:
        currency = CURRENCY_TABLE.override(code, payload.rate)
    except UnknownCurrency as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    logger.info("Rate for %s overridden to %s", currency.code, currency.rate)
    return to_currency_response(currency)


@app.get("/users/me/currency", response_model=CurrencyResponse)
def get_selected_currency(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CurrencyResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        selected = load_selected_currency(conn, user_id)
    if not selected:
        return to_currency_response(CURRENCY_TABLE.base)
    return CurrencyResponse(**selected)


@app.put("/users/me/currency", response_model=CurrencyResponse)
def set_selected_currency(
    payload: SelectedCurrencyPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CurrencyResponse:
    user_id = get_user_id(x_user_id)
    try:
        normalized = normalize_currency(payload.code)
        currency = CURRENCY_TABLE.get(normalized)
    except UnknownCurrency as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    with engine.begin() as conn:
        save_selected_currency(conn, user_id, currency)
    return to_currency_response(currency)
