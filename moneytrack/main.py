from collections import defaultdict
from datetime import date, datetime
from decimal import Decimal
from typing import Callable

import bcrypt
from fastapi import FastAPI, HTTPException, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import and_, create_engine, func, insert, select, update
from sqlalchemy.exc import IntegrityError

from moneytrack import settings
from moneytrack.budget_allocation import (
    AUTO_ITEM_NAME,
    EXTRA_INCOME,
    BudgetCategory,
    BudgetFields,
    BudgetItem,
    CategoryPool,
    ItemType,
    allocate_categories,
    apply_auto_item_plan,
    budget_totals,
    calculate_previous_extra,
    plan_auto_extra_income,
    validate_percentage,
)
from moneytrack.currency_conversion import (
    CompositeRateProvider,
    ERApiRateProvider,
    StaticRateProvider,
    normalize_currency,
    reporting_rates,
)
from moneytrack.disposable_income import (
    DisposableSummary,
    InvestmentContext,
    SavingsJar,
    SavingsJarCategory,
    month_cash_flow,
    summarize_disposable,
)
from moneytrack.errors import RecordNotFound, ValidationError
from moneytrack.investment_lots import (
    SELL,
    InvestmentTrade,
    ensure_payment_covers,
    profit_loss,
    replay_trades,
    trade_ledger_entries,
    trade_profit,
    validate_trade,
)
from moneytrack.ledger_reconciliation import (
    EXPENSE,
    INCOME,
    JAR_DEPOSIT_CATEGORY,
    REVALUATION_CATEGORY,
    BalanceChange,
    EntryKind,
    LedgerEntry,
    adjustment_entry,
    plan_create,
    plan_delete,
    plan_edit,
    plan_transfer,
    transfer_entries,
    validate_entry,
)
from moneytrack.logging_config import configure_logging, get_logger
from moneytrack.net_worth import (
    AccountBalance,
    account_rate,
    net_worth_history,
    summarize_net_worth,
)
from moneytrack.periods import normalize_month, previous_month
from moneytrack.price_service import HoldingPrice, MarketPriceOracle, refresh_current_prices
from moneytrack.schema import (
    accounts,
    budget_categories,
    budget_items,
    budgets,
    categories,
    investment_holdings,
    investment_transactions,
    ledger_entries,
    metadata,
    savings_jar_categories,
    savings_jar_deposits,
    savings_jars,
    users,
)

logger = get_logger(__name__)

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_ORIGIN],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

connect_args = {}
if settings.DATABASE_URL.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(settings.DATABASE_URL, connect_args=connect_args)

FX_PROVIDER = CompositeRateProvider(
    primary=ERApiRateProvider(),
    fallback=StaticRateProvider(),
)
PRICE_ORACLE = MarketPriceOracle()

CENT = Decimal("0.01")
ZERO = Decimal("0")

DEFAULT_CATEGORIES = [
    ("交通", "汽車"),
    ("社交", "家人"),
    ("房租", "房屋"),
    ("購物", "購物"),
    ("餐飲", "餐飲"),
    ("醫療", "愛心"),
    ("通訊", "手機"),
    ("教育", "書籍"),
    ("薪資", "錢包"),
    ("投資", "投資"),
    ("禮物", "禮物"),
    ("旅遊", "飛機"),
]


@app.on_event("startup")
def init_db() -> None:
    configure_logging()
    metadata.create_all(engine)


@app.exception_handler(ValidationError)
def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(RecordNotFound)
def record_not_found_handler(request: Request, exc: RecordNotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


class CredentialsPayload(BaseModel):
    email: str
    password: str


class UserResponse(BaseModel):
    id: int
    email: str
    created_at: datetime | None = None


class UserSettingsPayload(BaseModel):
    reporting_currency: str | None = None


class UserSettingsResponse(BaseModel):
    id: int
    email: str
    reporting_currency: str


class ExchangeRatesResponse(BaseModel):
    base: str
    rates: dict[str, Decimal]


class AccountPayload(BaseModel):
    name: str
    type: str
    note: str | None = None
    balance: Decimal = ZERO
    currency: str | None = None
    exchange_rate: Decimal | None = None
    include_in_total: bool = True

    @classmethod
    def validate_payload(cls, payload: "AccountPayload") -> "AccountPayload":
        payload.name = payload.name.strip()
        payload.type = payload.type.strip()
        payload.note = payload.note.strip() if payload.note else None
        if not payload.name:
            raise ValueError("Account name required.")
        if not payload.type:
            raise ValueError("Account type required.")
        if payload.currency is not None:
            payload.currency = normalize_currency(payload.currency)
        if payload.exchange_rate is not None and payload.exchange_rate <= 0:
            raise ValueError("Exchange rate must be greater than zero.")
        return payload


class AccountUpdatePayload(BaseModel):
    name: str | None = None
    type: str | None = None
    note: str | None = None
    currency: str | None = None
    exchange_rate: Decimal | None = None
    include_in_total: bool | None = None

    @classmethod
    def validate_payload(cls, payload: "AccountUpdatePayload") -> "AccountUpdatePayload":
        if payload.name is not None:
            payload.name = payload.name.strip()
            if not payload.name:
                raise ValueError("Account name required.")
        if payload.type is not None:
            payload.type = payload.type.strip()
            if not payload.type:
                raise ValueError("Account type required.")
        if payload.currency is not None:
            payload.currency = normalize_currency(payload.currency)
        if payload.exchange_rate is not None and payload.exchange_rate <= 0:
            raise ValueError("Exchange rate must be greater than zero.")
        return payload


class AccountResponse(BaseModel):
    id: int
    user_id: int
    name: str
    type: str
    note: str | None = None
    balance: Decimal
    currency: str
    exchange_rate: Decimal
    include_in_total: bool
    created_at: datetime | None = None


class AdjustmentPayload(BaseModel):
    direction: str
    amount: Decimal
    date: date
    note: str | None = None


class TransferPayload(BaseModel):
    from_account_id: int
    to_account_id: int
    amount: Decimal
    date: date
    note: str | None = None


class CategoryPayload(BaseModel):
    name: str
    icon: str | None = None
    color: str | None = None

    @classmethod
    def validate_payload(cls, payload: "CategoryPayload") -> "CategoryPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Category name required.")
        return payload


class CategoryResponse(BaseModel):
    id: int
    user_id: int
    name: str
    icon: str | None = None
    color: str | None = None
    created_at: datetime | None = None


class LedgerPayload(BaseModel):
    type: str
    amount: Decimal
    category: str
    account_id: int | None = None
    date: date
    note: str | None = None

    def to_entry(self) -> LedgerEntry:
        return validate_entry(
            LedgerEntry(
                amount=self.amount,
                type=self.type,
                date=self.date,
                category=self.category,
                account_id=self.account_id,
                note=self.note,
            )
        )


class LedgerEntryResponse(BaseModel):
    id: int
    user_id: int
    account_id: int | None = None
    type: str
    amount: Decimal
    category: str
    category_id: int | None = None
    kind: str
    investment_transaction_id: int | None = None
    date: date
    note: str | None = None
    currency: str | None = None


class TransferResponse(BaseModel):
    outgoing: LedgerEntryResponse
    incoming: LedgerEntryResponse


class BudgetPayload(BaseModel):
    month: str
    fixed_income: Decimal = ZERO
    fixed_expense: Decimal = ZERO
    extra_income: Decimal = ZERO

    @classmethod
    def validate_payload(cls, payload: "BudgetPayload") -> "BudgetPayload":
        payload.month = normalize_month(payload.month)
        for value in (payload.fixed_income, payload.fixed_expense, payload.extra_income):
            if value < 0:
                raise ValueError("Budget amounts cannot be negative.")
        return payload


class BudgetUpdatePayload(BaseModel):
    fixed_income: Decimal | None = None
    fixed_expense: Decimal | None = None
    extra_income: Decimal | None = None

    @classmethod
    def validate_payload(cls, payload: "BudgetUpdatePayload") -> "BudgetUpdatePayload":
        for value in (payload.fixed_income, payload.fixed_expense, payload.extra_income):
            if value is not None and value < 0:
                raise ValueError("Budget amounts cannot be negative.")
        return payload


class BudgetResponse(BaseModel):
    id: int
    user_id: int
    month: str
    fixed_income: Decimal
    fixed_expense: Decimal
    extra_income: Decimal


class BudgetCategoryPayload(BaseModel):
    name: str
    type: str = CategoryPool.FIXED
    percentage: Decimal = ZERO
    extra_percentage: Decimal = ZERO
    color: str = ""
    icon: str | None = None

    @classmethod
    def validate_payload(cls, payload: "BudgetCategoryPayload") -> "BudgetCategoryPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Category name required.")
        payload.type = CategoryPool.validate(payload.type)
        payload.percentage = validate_percentage(payload.percentage)
        payload.extra_percentage = validate_percentage(payload.extra_percentage)
        return payload


class BudgetCategoryUpdatePayload(BaseModel):
    name: str | None = None
    type: str | None = None
    percentage: Decimal | None = None
    extra_percentage: Decimal | None = None
    color: str | None = None
    icon: str | None = None

    @classmethod
    def validate_payload(
        cls, payload: "BudgetCategoryUpdatePayload"
    ) -> "BudgetCategoryUpdatePayload":
        if payload.name is not None:
            payload.name = payload.name.strip()
            if not payload.name:
                raise ValueError("Category name required.")
        if payload.type is not None:
            payload.type = CategoryPool.validate(payload.type)
        if payload.percentage is not None:
            payload.percentage = validate_percentage(payload.percentage)
        if payload.extra_percentage is not None:
            payload.extra_percentage = validate_percentage(payload.extra_percentage)
        return payload


class BudgetCategoryResponse(BaseModel):
    id: int
    budget_id: int
    name: str
    type: str
    percentage: Decimal
    extra_percentage: Decimal
    color: str
    icon: str | None = None


class BudgetItemPayload(BaseModel):
    type: str
    name: str
    amount: Decimal

    @classmethod
    def validate_payload(cls, payload: "BudgetItemPayload") -> "BudgetItemPayload":
        payload.type = ItemType.validate(payload.type)
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Item name required.")
        if payload.amount < 0:
            raise ValueError("Item amount cannot be negative.")
        return payload


class BudgetItemUpdatePayload(BaseModel):
    name: str | None = None
    amount: Decimal | None = None

    @classmethod
    def validate_payload(cls, payload: "BudgetItemUpdatePayload") -> "BudgetItemUpdatePayload":
        if payload.name is not None:
            payload.name = payload.name.strip()
            if not payload.name:
                raise ValueError("Item name required.")
        if payload.amount is not None and payload.amount < 0:
            raise ValueError("Item amount cannot be negative.")
        return payload


class BudgetItemResponse(BaseModel):
    id: int
    budget_id: int
    type: str
    name: str
    amount: Decimal
    is_auto_calculated: bool


class PreviousIncomeResponse(BaseModel):
    month: str
    previous_month: str
    previous_income: Decimal
    fixed_income: Decimal
    calculated_extra: Decimal


class ReconcileResponse(BaseModel):
    budget_id: int
    created: bool
    updated: bool
    deleted_count: int
    item: BudgetItemResponse


class DisposableRowResponse(BaseModel):
    name: str
    budget_amount: Decimal
    jar_amount: Decimal
    total: Decimal
    used: Decimal
    remaining: Decimal
    overage: Decimal
    usage_percent: Decimal
    color: str
    icon: str | None = None


class BudgetSummaryResponse(BaseModel):
    budget_id: int
    month: str
    fixed_income: Decimal
    fixed_expense: Decimal
    extra_income: Decimal
    fixed_disposable: Decimal
    jar_total: Decimal
    total_disposable: Decimal
    total_income: Decimal
    total_expense: Decimal
    remaining: Decimal
    categories: list[DisposableRowResponse]


class DisposableHistoryEntry(BaseModel):
    month: str
    total_disposable: Decimal
    total_expense: Decimal
    remaining: Decimal


class HoldingResponse(BaseModel):
    id: int
    broker_account_id: int
    ticker: str
    name: str
    market: str | None = None
    quantity: Decimal
    average_cost: Decimal
    current_price: Decimal
    cost_basis: Decimal
    market_value: Decimal
    unrealized: Decimal
    unrealized_percent: Decimal


class HoldingUpdatePayload(BaseModel):
    name: str | None = None
    market: str | None = None
    current_price: Decimal | None = None

    @classmethod
    def validate_payload(cls, payload: "HoldingUpdatePayload") -> "HoldingUpdatePayload":
        if payload.name is not None:
            payload.name = payload.name.strip()
            if not payload.name:
                raise ValueError("Holding name required.")
        if payload.current_price is not None and payload.current_price <= 0:
            raise ValueError("Price must be greater than zero.")
        return payload


class InvestmentTransactionPayload(BaseModel):
    broker_account_id: int
    payment_account_id: int
    ticker: str
    name: str | None = None
    market: str | None = None
    type: str
    quantity: Decimal
    price: Decimal
    fees: Decimal = ZERO
    date: date

    def to_trade(self) -> InvestmentTrade:
        return validate_trade(
            InvestmentTrade(
                trade_type=self.type,
                quantity=self.quantity,
                price=self.price,
                trade_date=self.date,
                fees=self.fees,
            )
        )

    @classmethod
    def validate_payload(
        cls, payload: "InvestmentTransactionPayload"
    ) -> "InvestmentTransactionPayload":
        payload.ticker = payload.ticker.strip().upper()
        if not payload.ticker:
            raise ValueError("Ticker required.")
        payload.name = payload.name.strip() if payload.name else None
        payload.name = payload.name or payload.ticker
        payload.market = payload.market.strip() if payload.market else None
        return payload


class InvestmentTransactionResponse(BaseModel):
    id: int
    holding_id: int | None = None
    broker_account_id: int
    payment_account_id: int | None = None
    ticker: str
    name: str
    market: str | None = None
    type: str
    quantity: Decimal
    price: Decimal
    fees: Decimal
    date: date


class SyncPricesResponse(BaseModel):
    updated: int
    unchanged: int
    revalued_accounts: list[int]
    holdings: list[HoldingResponse]


class SavingsJarPayload(BaseModel):
    name: str
    target_amount: Decimal = ZERO
    include_in_disposable: bool = False

    @classmethod
    def validate_payload(cls, payload: "SavingsJarPayload") -> "SavingsJarPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Jar name required.")
        if payload.target_amount < 0:
            raise ValueError("Target amount cannot be negative.")
        return payload


class SavingsJarUpdatePayload(BaseModel):
    name: str | None = None
    target_amount: Decimal | None = None
    include_in_disposable: bool | None = None

    @classmethod
    def validate_payload(cls, payload: "SavingsJarUpdatePayload") -> "SavingsJarUpdatePayload":
        if payload.name is not None:
            payload.name = payload.name.strip()
            if not payload.name:
                raise ValueError("Jar name required.")
        if payload.target_amount is not None and payload.target_amount < 0:
            raise ValueError("Target amount cannot be negative.")
        return payload


class SavingsJarResponse(BaseModel):
    id: int
    user_id: int
    name: str
    target_amount: Decimal
    current_amount: Decimal
    include_in_disposable: bool
    progress_percent: Decimal


class JarCategoryPayload(BaseModel):
    name: str
    percentage: Decimal = ZERO
    color: str = ""
    icon: str | None = None

    @classmethod
    def validate_payload(cls, payload: "JarCategoryPayload") -> "JarCategoryPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Category name required.")
        payload.percentage = validate_percentage(payload.percentage)
        return payload


class JarCategoryUpdatePayload(BaseModel):
    name: str | None = None
    percentage: Decimal | None = None
    color: str | None = None
    icon: str | None = None

    @classmethod
    def validate_payload(cls, payload: "JarCategoryUpdatePayload") -> "JarCategoryUpdatePayload":
        if payload.name is not None:
            payload.name = payload.name.strip()
            if not payload.name:
                raise ValueError("Category name required.")
        if payload.percentage is not None:
            payload.percentage = validate_percentage(payload.percentage)
        return payload


class JarCategoryResponse(BaseModel):
    id: int
    jar_id: int
    name: str
    percentage: Decimal
    color: str
    icon: str | None = None


class JarDepositPayload(BaseModel):
    amount: Decimal
    date: date
    account_id: int | None = None
    note: str | None = None

    @classmethod
    def validate_payload(cls, payload: "JarDepositPayload") -> "JarDepositPayload":
        if payload.amount <= 0:
            raise ValueError("Deposit amount must be greater than zero.")
        payload.note = payload.note.strip() if payload.note else None
        return payload


class JarDepositResponse(BaseModel):
    id: int
    jar_id: int
    account_id: int | None = None
    ledger_entry_id: int | None = None
    amount: Decimal
    date: date
    note: str | None = None


class NetWorthResponse(BaseModel):
    currency: str
    net_worth: Decimal
    total_assets: Decimal
    total_liabilities: Decimal
    breakdown: dict[str, Decimal]


class NetWorthHistoryPoint(BaseModel):
    date: date
    net_worth: Decimal


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


def ensure_default_categories(conn, user_id: int) -> None:
    existing = conn.execute(
        select(categories.c.id).where(categories.c.user_id == user_id).limit(1)
    ).first()
    if existing:
        return
    conn.execute(
        insert(categories),
        [{"user_id": user_id, "name": name, "icon": icon} for name, icon in DEFAULT_CATEGORIES],
    )


def get_reporting_currency(conn, user_id: int) -> str:
    value = conn.execute(
        select(users.c.reporting_currency).where(users.c.id == user_id)
    ).scalar_one_or_none()
    if value:
        try:
            return normalize_currency(value)
        except ValueError:
            pass
    return settings.REPORTING_CURRENCY


def current_rates(reporting_currency: str) -> dict[str, Decimal]:
    return reporting_rates(reporting_currency, FX_PROVIDER)


def default_exchange_rate(currency: str, reporting_currency: str) -> Decimal:
    if currency == reporting_currency:
        return Decimal("1")
    return current_rates(reporting_currency).get(currency, Decimal("1"))


def rebase_account_rates(conn, user_id: int, old_currency: str, new_currency: str) -> None:
    factor = current_rates(new_currency).get(old_currency)
    if factor is None:
        raise ValidationError(f"Unsupported currency: {old_currency}")
    rows = conn.execute(
        select(accounts.c.id, accounts.c.currency, accounts.c.exchange_rate).where(
            accounts.c.user_id == user_id
        )
    ).mappings().all()
    for row in rows:
        if row["currency"] == new_currency:
            rate = Decimal("1")
        elif row["currency"] == old_currency:
            rate = factor
        else:
            rate = row["exchange_rate"] * factor
        conn.execute(update(accounts).where(accounts.c.id == row["id"]).values(exchange_rate=rate))
    logger.info(
        "account_rates_rebased", user_id=user_id, accounts=len(rows), base=new_currency
    )


def account_response(row) -> AccountResponse:
    return AccountResponse(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        type=row["type"],
        note=row["note"],
        balance=row["balance"],
        currency=row["currency"],
        exchange_rate=row["exchange_rate"],
        include_in_total=row["include_in_total"],
        created_at=row["created_at"],
    )


def account_balance(row) -> AccountBalance:
    return AccountBalance(
        id=row["id"],
        name=row["name"],
        type=row["type"],
        balance=row["balance"],
        currency=row["currency"],
        exchange_rate=row["exchange_rate"],
        include_in_total=row["include_in_total"],
    )


def fetch_account(conn, user_id: int, account_id: int):
    row = conn.execute(
        select(accounts).where(accounts.c.id == account_id, accounts.c.user_id == user_id)
    ).mappings().first()
    if not row:
        raise RecordNotFound("Account")
    return row


def load_accounts(conn, user_id: int) -> list[AccountBalance]:
    rows = conn.execute(
        select(accounts).where(accounts.c.user_id == user_id).order_by(accounts.c.id.asc())
    ).mappings().all()
    return [account_balance(row) for row in rows]


def account_ids(conn, user_id: int) -> set[int]:
    return set(conn.execute(select(accounts.c.id).where(accounts.c.user_id == user_id)).scalars())


def entry_from_row(row) -> LedgerEntry:
    return LedgerEntry(
        amount=row["amount"],
        type=row["type"],
        date=row["date"],
        category=row["category"],
        account_id=row["account_id"],
        kind=row["kind"],
        note=row["note"],
        id=row["id"],
        investment_transaction_id=row["investment_transaction_id"],
        currency=row["currency"],
    )


def ledger_response(row) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        id=row["id"],
        user_id=row["user_id"],
        account_id=row["account_id"],
        type=row["type"],
        amount=row["amount"],
        category=row["category"],
        category_id=row["category_id"],
        kind=row["kind"],
        investment_transaction_id=row["investment_transaction_id"],
        date=row["date"],
        note=row["note"],
        currency=row["currency"],
    )


def load_ledger(conn, user_id: int) -> list[LedgerEntry]:
    rows = conn.execute(
        select(ledger_entries)
        .where(ledger_entries.c.user_id == user_id)
        .order_by(ledger_entries.c.date.asc(), ledger_entries.c.id.asc())
    ).mappings().all()
    return [entry_from_row(row) for row in rows]


def resolve_category_id(conn, user_id: int, name: str) -> int | None:
    return conn.execute(
        select(categories.c.id).where(categories.c.user_id == user_id, categories.c.name == name)
    ).scalar_one_or_none()


def entry_currency(conn, user_id: int, account_id: int | None) -> str:
    if account_id is not None:
        currency = conn.execute(
            select(accounts.c.currency).where(
                accounts.c.id == account_id, accounts.c.user_id == user_id
            )
        ).scalar_one_or_none()
        if currency:
            return currency
    return get_reporting_currency(conn, user_id)


def apply_balance_changes(conn, user_id: int, changes: list[BalanceChange]) -> None:
    for change in changes:
        result = conn.execute(
            update(accounts)
            .where(accounts.c.id == change.account_id, accounts.c.user_id == user_id)
            .values(balance=accounts.c.balance + change.delta)
        )
        if result.rowcount == 0:
            raise RecordNotFound("Account")
        logger.info("account_balance_changed", account_id=change.account_id, delta=str(change.delta))


def insert_ledger_row(conn, user_id: int, entry: LedgerEntry):
    return conn.execute(
        insert(ledger_entries)
        .values(
            user_id=user_id,
            account_id=entry.account_id,
            type=entry.type,
            amount=entry.amount,
            category=entry.category,
            category_id=resolve_category_id(conn, user_id, entry.category),
            kind=entry.kind,
            investment_transaction_id=entry.investment_transaction_id,
            date=entry.date,
            note=entry.note,
            currency=entry_currency(conn, user_id, entry.account_id),
        )
        .returning(*ledger_entries.c)
    ).mappings().first()


def create_ledger_entry(conn, user_id: int, entry: LedgerEntry):
    changes = plan_create(entry, account_ids(conn, user_id))
    row = insert_ledger_row(conn, user_id, entry)
    apply_balance_changes(conn, user_id, changes)
    logger.info("ledger_entry_created", entry_id=row["id"], kind=entry.kind, account_id=entry.account_id)
    return row


def remove_ledger_entry(conn, user_id: int, row) -> None:
    changes = plan_delete(entry_from_row(row), account_ids(conn, user_id))
    conn.execute(ledger_entries.delete().where(ledger_entries.c.id == row["id"]))
    apply_balance_changes(conn, user_id, changes)
    logger.info("ledger_entry_deleted", entry_id=row["id"], account_id=row["account_id"])


def fetch_ledger_row(conn, user_id: int, entry_id: int):
    row = conn.execute(
        select(ledger_entries).where(
            ledger_entries.c.id == entry_id, ledger_entries.c.user_id == user_id
        )
    ).mappings().first()
    if not row:
        raise RecordNotFound("Ledger entry")
    return row


def ensure_editable(row) -> None:
    kind = EntryKind.resolve(row["kind"], row["category"])
    if row["investment_transaction_id"] is not None or kind in (
        EntryKind.INVESTMENT_CASH,
        EntryKind.INVESTMENT_POSITION,
    ):
        raise ValidationError(
            "Investment entries change only through their investment transaction."
        )
    if kind == EntryKind.JAR_DEPOSIT:
        raise ValidationError("Savings jar deposits change only through their savings jar.")


def ledger_converter(
    account_list: list[AccountBalance], rates: dict[str, Decimal], reporting_currency: str
) -> Callable[[LedgerEntry], Decimal]:
    by_id = {account.id: account for account in account_list}

    def convert(entry: LedgerEntry) -> Decimal:
        account = by_id.get(entry.account_id)
        if account is not None:
            return entry.amount * account_rate(account, rates, reporting_currency)
        if entry.currency is None or entry.currency == reporting_currency:
            return entry.amount
        rate = rates.get(entry.currency)
        if rate is None:
            logger.warning("ledger_entry_unconverted", entry_id=entry.id, currency=entry.currency)
            return ZERO
        return entry.amount * rate

    return convert


def trade_from_row(row) -> InvestmentTrade:
    return InvestmentTrade(
        trade_type=row["type"],
        quantity=row["quantity"],
        price=row["price"],
        trade_date=row["date"],
        fees=row["fees"],
        id=row["id"],
    )


def investment_transaction_response(row) -> InvestmentTransactionResponse:
    return InvestmentTransactionResponse(
        id=row["id"],
        holding_id=row["holding_id"],
        broker_account_id=row["broker_account_id"],
        payment_account_id=row["payment_account_id"],
        ticker=row["ticker"],
        name=row["name"],
        market=row["market"],
        type=row["type"],
        quantity=row["quantity"],
        price=row["price"],
        fees=row["fees"],
        date=row["date"],
    )


def holding_response(row) -> HoldingResponse:
    figures = profit_loss(row["quantity"], row["average_cost"], row["current_price"])
    return HoldingResponse(
        id=row["id"],
        broker_account_id=row["broker_account_id"],
        ticker=row["ticker"],
        name=row["name"],
        market=row["market"],
        quantity=row["quantity"],
        average_cost=row["average_cost"],
        current_price=row["current_price"],
        cost_basis=figures.cost_basis,
        market_value=figures.market_value,
        unrealized=figures.unrealized,
        unrealized_percent=figures.percent,
    )


def fetch_holding(conn, user_id: int, broker_account_id: int, ticker: str):
    return conn.execute(
        select(investment_holdings).where(
            investment_holdings.c.user_id == user_id,
            investment_holdings.c.broker_account_id == broker_account_id,
            investment_holdings.c.ticker == ticker,
        )
    ).mappings().first()


def rebuild_holding(
    conn, user_id: int, broker_account_id: int, ticker: str, name: str, market: str | None
):
    """Replay every stored trade of one ticker in one broker account."""
    trade_rows = conn.execute(
        select(investment_transactions).where(
            investment_transactions.c.user_id == user_id,
            investment_transactions.c.broker_account_id == broker_account_id,
            investment_transactions.c.ticker == ticker,
        )
    ).mappings().all()
    result = replay_trades(trade_from_row(row) for row in trade_rows)
    holding = fetch_holding(conn, user_id, broker_account_id, ticker)

    if result.should_delete:
        if holding:
            conn.execute(
                update(investment_transactions)
                .where(investment_transactions.c.holding_id == holding["id"])
                .values(holding_id=None)
            )
            conn.execute(investment_holdings.delete().where(investment_holdings.c.id == holding["id"]))
            logger.info("holding_closed", holding_id=holding["id"], ticker=ticker)
        return None

    if holding:
        row = conn.execute(
            update(investment_holdings)
            .where(investment_holdings.c.id == holding["id"])
            .values(
                quantity=result.state.quantity,
                average_cost=result.state.average_cost,
                updated_at=func.now(),
            )
            .returning(*investment_holdings.c)
        ).mappings().first()
    else:
        latest = max(trade_rows, key=lambda item: (item["date"], item["id"]))
        row = conn.execute(
            insert(investment_holdings)
            .values(
                user_id=user_id,
                broker_account_id=broker_account_id,
                ticker=ticker,
                name=name,
                market=market,
                quantity=result.state.quantity,
                average_cost=result.state.average_cost,
                current_price=latest["price"],
            )
            .returning(*investment_holdings.c)
        ).mappings().first()

    conn.execute(
        update(investment_transactions)
        .where(
            investment_transactions.c.user_id == user_id,
            investment_transactions.c.broker_account_id == broker_account_id,
            investment_transactions.c.ticker == ticker,
        )
        .values(holding_id=row["id"])
    )
    return row


def remove_trade_entries(conn, user_id: int, trade_id: int) -> None:
    rows = conn.execute(
        select(ledger_entries).where(
            ledger_entries.c.user_id == user_id,
            ledger_entries.c.investment_transaction_id == trade_id,
        )
    ).mappings().all()
    for row in rows:
        remove_ledger_entry(conn, user_id, row)


def investment_context(conn, user_id: int) -> InvestmentContext:
    trade_rows = conn.execute(
        select(investment_transactions).where(investment_transactions.c.user_id == user_id)
    ).mappings().all()
    holding_rows = conn.execute(
        select(investment_holdings).where(investment_holdings.c.user_id == user_id)
    ).mappings().all()
    prices = {
        (row["broker_account_id"], row["ticker"]): row["current_price"]
        for row in holding_rows
        if row["current_price"]
    }

    groups = defaultdict(list)
    for row in trade_rows:
        groups[(row["broker_account_id"], row["ticker"])].append(trade_from_row(row))

    profits: dict[int, Decimal] = {}
    fees: dict[int, Decimal] = {}
    for key, trades in groups.items():
        try:
            result = replay_trades(trades)
        except ValidationError as exc:
            logger.warning("investment_replay_failed", account_id=key[0], ticker=key[1], error=str(exc))
            continue
        outcomes = {outcome.trade_id: outcome for outcome in result.outcomes}
        for trade in trades:
            profits[trade.id] = trade_profit(trade, outcomes.get(trade.id), prices.get(key))
            fees[trade.id] = trade.fees
    return InvestmentContext(profits=profits, fees=fees)


def budget_response(row) -> BudgetResponse:
    return BudgetResponse(
        id=row["id"],
        user_id=row["user_id"],
        month=row["month"],
        fixed_income=row["fixed_income"],
        fixed_expense=row["fixed_expense"],
        extra_income=row["extra_income"],
    )


def budget_item_response(row) -> BudgetItemResponse:
    return BudgetItemResponse(
        id=row["id"],
        budget_id=row["budget_id"],
        type=row["type"],
        name=row["name"],
        amount=row["amount"],
        is_auto_calculated=row["is_auto_calculated"],
    )


def budget_category_response(row) -> BudgetCategoryResponse:
    return BudgetCategoryResponse(
        id=row["id"],
        budget_id=row["budget_id"],
        name=row["name"],
        type=row["type"],
        percentage=row["percentage"],
        extra_percentage=row["extra_percentage"],
        color=row["color"],
        icon=row["icon"],
    )


def fetch_budget_for_month(conn, user_id: int, month: str):
    row = conn.execute(
        select(budgets).where(budgets.c.user_id == user_id, budgets.c.month == normalize_month(month))
    ).mappings().first()
    if not row:
        raise RecordNotFound("Budget")
    return row


def fetch_budget_by_id(conn, user_id: int, budget_id: int):
    row = conn.execute(
        select(budgets).where(budgets.c.id == budget_id, budgets.c.user_id == user_id)
    ).mappings().first()
    if not row:
        raise RecordNotFound("Budget")
    return row


def owned_budget_child(conn, user_id: int, table, child_id: int, kind: str):
    row = conn.execute(
        select(table)
        .join(budgets, budgets.c.id == table.c.budget_id)
        .where(table.c.id == child_id, budgets.c.user_id == user_id)
    ).mappings().first()
    if not row:
        raise RecordNotFound(kind)
    return row


def load_budget_items(conn, budget_id: int) -> list[BudgetItem]:
    rows = conn.execute(
        select(budget_items).where(budget_items.c.budget_id == budget_id).order_by(budget_items.c.id.asc())
    ).mappings().all()
    return [
        BudgetItem(
            type=row["type"],
            name=row["name"],
            amount=row["amount"],
            is_auto_calculated=row["is_auto_calculated"],
            id=row["id"],
        )
        for row in rows
    ]


def load_budget_categories(conn, budget_id: int) -> list[BudgetCategory]:
    rows = conn.execute(
        select(budget_categories)
        .where(budget_categories.c.budget_id == budget_id)
        .order_by(budget_categories.c.id.asc())
    ).mappings().all()
    return [
        BudgetCategory(
            name=row["name"],
            type=row["type"],
            percentage=row["percentage"],
            extra_percentage=row["extra_percentage"],
            color=row["color"],
            icon=row["icon"],
            id=row["id"],
        )
        for row in rows
    ]


def budget_fields(row) -> BudgetFields:
    return BudgetFields(
        fixed_income=row["fixed_income"],
        fixed_expense=row["fixed_expense"],
        extra_income=row["extra_income"],
    )


class LedgerView:
    """Ledger, accounts and rates loaded once per request."""

    def __init__(self, conn, user_id: int) -> None:
        self.reporting_currency = get_reporting_currency(conn, user_id)
        self.rates = current_rates(self.reporting_currency)
        self.accounts = load_accounts(conn, user_id)
        self.entries = load_ledger(conn, user_id)
        self.context = investment_context(conn, user_id)
        self.convert = ledger_converter(self.accounts, self.rates, self.reporting_currency)

    def cash_flow(self, month: str):
        return month_cash_flow(self.entries, month, self.convert, self.context)


def previous_income_figures(view: LedgerView, budget_row, items: list[BudgetItem]) -> PreviousIncomeResponse:
    month = budget_row["month"]
    prior = previous_month(month)
    previous_income = view.cash_flow(prior).income
    fixed_income = budget_totals(budget_fields(budget_row), items).fixed_income
    return PreviousIncomeResponse(
        month=month,
        previous_month=prior,
        previous_income=previous_income,
        fixed_income=fixed_income,
        calculated_extra=calculate_previous_extra(previous_income, fixed_income),
    )


def reconcile_auto_item(conn, view: LedgerView, budget_row) -> ReconcileResponse:
    items = load_budget_items(conn, budget_row["id"])
    figures = previous_income_figures(view, budget_row, items)
    plan = plan_auto_extra_income(items, figures.calculated_extra.quantize(CENT))

    if plan.delete_ids:
        logger.warning(
            "duplicate_auto_items_removed",
            budget_id=budget_row["id"],
            item_ids=list(plan.delete_ids),
        )
        conn.execute(budget_items.delete().where(budget_items.c.id.in_(plan.delete_ids)))
    if plan.update_item_id is not None:
        conn.execute(
            update(budget_items)
            .where(budget_items.c.id == plan.update_item_id)
            .values(amount=plan.update_amount)
        )
    if plan.create_amount is not None:
        conn.execute(
            insert(budget_items).values(
                budget_id=budget_row["id"],
                type=EXTRA_INCOME,
                name=AUTO_ITEM_NAME,
                amount=plan.create_amount,
                is_auto_calculated=True,
            )
        )
    if not plan.is_noop:
        logger.info("auto_item_reconciled", budget_id=budget_row["id"], writes=plan.write_count)

    item_row = conn.execute(
        select(budget_items)
        .where(
            budget_items.c.budget_id == budget_row["id"],
            budget_items.c.type == EXTRA_INCOME,
            budget_items.c.is_auto_calculated.is_(True),
        )
        .order_by(budget_items.c.id.asc())
    ).mappings().first()
    return ReconcileResponse(
        budget_id=budget_row["id"],
        created=plan.create_amount is not None,
        updated=plan.update_item_id is not None,
        deleted_count=len(plan.delete_ids),
        item=budget_item_response(item_row),
    )


def load_jars(conn, user_id: int) -> list[SavingsJar]:
    jar_rows = conn.execute(
        select(savings_jars).where(savings_jars.c.user_id == user_id).order_by(savings_jars.c.id.asc())
    ).mappings().all()
    category_rows = conn.execute(
        select(savings_jar_categories)
        .join(savings_jars, savings_jars.c.id == savings_jar_categories.c.jar_id)
        .where(savings_jars.c.user_id == user_id)
        .order_by(savings_jar_categories.c.id.asc())
    ).mappings().all()
    by_jar = defaultdict(list)
    for row in category_rows:
        by_jar[row["jar_id"]].append(
            SavingsJarCategory(
                name=row["name"],
                percentage=row["percentage"],
                color=row["color"],
                icon=row["icon"],
                id=row["id"],
            )
        )
    return [
        SavingsJar(
            name=row["name"],
            current_amount=row["current_amount"],
            target_amount=row["target_amount"],
            include_in_disposable=row["include_in_disposable"],
            categories=tuple(by_jar[row["id"]]),
            id=row["id"],
        )
        for row in jar_rows
    ]


def disposable_summary(
    view: LedgerView, budget_row, items: list[BudgetItem], categories_list, jars
) -> DisposableSummary:
    totals = budget_totals(budget_fields(budget_row), items)
    allocations = allocate_categories(totals, categories_list)
    return summarize_disposable(
        budget_row["month"], totals, allocations, jars, view.cash_flow(budget_row["month"])
    )


def summary_response(budget_row, summary: DisposableSummary, items: list[BudgetItem]) -> BudgetSummaryResponse:
    totals = budget_totals(budget_fields(budget_row), items)
    return BudgetSummaryResponse(
        budget_id=budget_row["id"],
        month=summary.month,
        fixed_income=totals.fixed_income,
        fixed_expense=totals.fixed_expense,
        extra_income=totals.extra_income,
        fixed_disposable=summary.fixed_disposable,
        jar_total=summary.jar_total,
        total_disposable=summary.total_disposable,
        total_income=summary.total_income,
        total_expense=summary.total_expense,
        remaining=summary.remaining,
        categories=[
            DisposableRowResponse(
                name=row.name,
                budget_amount=row.budget_amount,
                jar_amount=row.jar_amount,
                total=row.total,
                used=row.used,
                remaining=row.remaining,
                overage=row.overage,
                usage_percent=row.usage_percent,
                color=row.color,
                icon=row.icon,
            )
            for row in summary.rows
        ],
    )


def jar_response(row) -> SavingsJarResponse:
    target = row["target_amount"]
    progress = row["current_amount"] / target * 100 if target else ZERO
    return SavingsJarResponse(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        target_amount=target,
        current_amount=row["current_amount"],
        include_in_disposable=row["include_in_disposable"],
        progress_percent=progress,
    )


def jar_category_response(row) -> JarCategoryResponse:
    return JarCategoryResponse(
        id=row["id"],
        jar_id=row["jar_id"],
        name=row["name"],
        percentage=row["percentage"],
        color=row["color"],
        icon=row["icon"],
    )


def jar_deposit_response(row) -> JarDepositResponse:
    return JarDepositResponse(
        id=row["id"],
        jar_id=row["jar_id"],
        account_id=row["account_id"],
        ledger_entry_id=row["ledger_entry_id"],
        amount=row["amount"],
        date=row["date"],
        note=row["note"],
    )


def fetch_jar(conn, user_id: int, jar_id: int):
    row = conn.execute(
        select(savings_jars).where(savings_jars.c.id == jar_id, savings_jars.c.user_id == user_id)
    ).mappings().first()
    if not row:
        raise RecordNotFound("Savings jar")
    return row


def fetch_jar_category(conn, user_id: int, category_id: int):
    row = conn.execute(
        select(savings_jar_categories)
        .join(savings_jars, savings_jars.c.id == savings_jar_categories.c.jar_id)
        .where(savings_jar_categories.c.id == category_id, savings_jars.c.user_id == user_id)
    ).mappings().first()
    if not row:
        raise RecordNotFound("Savings jar category")
    return row


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/auth/signup", response_model=UserResponse)
def signup(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    if not email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password required.")
    hashed_password = hash_password(payload.password)

    stmt = (
        insert(users)
        .values(
            email=email,
            hashed_password=hashed_password,
            reporting_currency=settings.REPORTING_CURRENCY,
        )
        .returning(users.c.id, users.c.email, users.c.created_at)
    )
    try:
        with engine.begin() as conn:
            result = conn.execute(stmt)
            row = result.mappings().first()
            if row:
                ensure_default_categories(conn, row["id"])
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Email already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create user.")
    logger.info("user_created", user_id=row["id"])
    return UserResponse(id=row["id"], email=row["email"], created_at=row["created_at"])


@app.post("/auth/login", response_model=UserResponse)
def login(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    with engine.begin() as conn:
        result = conn.execute(select(users).where(users.c.email == email))
        row = result.mappings().first()

    if not row or not verify_password(payload.password, row["hashed_password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    return UserResponse(id=row["id"], email=row["email"], created_at=row["created_at"])


@app.get("/users/me/settings", response_model=UserSettingsResponse)
def get_user_settings(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> UserSettingsResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.id == user_id)).mappings().first()
        if not row:
            raise HTTPException(status_code=404, detail="User not found.")
        reporting_currency = get_reporting_currency(conn, user_id)
    return UserSettingsResponse(
        id=row["id"],
        email=row["email"],
        reporting_currency=reporting_currency,
    )


@app.put("/users/me/settings", response_model=UserSettingsResponse)
def update_user_settings(
    payload: UserSettingsPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> UserSettingsResponse:
    user_id = get_user_id(x_user_id)
    if payload.reporting_currency is None:
        raise HTTPException(status_code=400, detail="Reporting currency required.")
    try:
        normalized_currency = normalize_currency(payload.reporting_currency)
        current_rates(normalized_currency)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    with engine.begin() as conn:
        previous_currency = get_reporting_currency(conn, user_id)
        if previous_currency != normalized_currency:
            rebase_account_rates(conn, user_id, previous_currency, normalized_currency)
        result = conn.execute(
            update(users)
            .where(users.c.id == user_id)
            .values(reporting_currency=normalized_currency)
            .returning(users.c.id, users.c.email, users.c.reporting_currency)
        )
        row = result.mappings().first()
        if not row:
            raise HTTPException(status_code=404, detail="User not found.")
    return UserSettingsResponse(
        id=row["id"],
        email=row["email"],
        reporting_currency=row["reporting_currency"],
    )


@app.get("/exchange-rates", response_model=ExchangeRatesResponse)
def get_exchange_rates(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ExchangeRatesResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        reporting_currency = get_reporting_currency(conn, user_id)
    return ExchangeRatesResponse(base=reporting_currency, rates=current_rates(reporting_currency))


@app.get("/accounts", response_model=list[AccountResponse])
def list_accounts(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[AccountResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        result = conn.execute(
            select(accounts).where(accounts.c.user_id == user_id).order_by(accounts.c.id.asc())
        )
        rows = result.mappings().all()
    return [account_response(row) for row in rows]


@app.post("/accounts", response_model=AccountResponse)
def create_account(
    payload: AccountPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> AccountResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = AccountPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        reporting_currency = get_reporting_currency(conn, user_id)
        currency = payload.currency or reporting_currency
        exchange_rate = payload.exchange_rate or default_exchange_rate(currency, reporting_currency)
        row = conn.execute(
            insert(accounts)
            .values(
                user_id=user_id,
                name=payload.name,
                type=payload.type,
                note=payload.note,
                balance=payload.balance,
                currency=currency,
                exchange_rate=exchange_rate,
                include_in_total=payload.include_in_total,
            )
            .returning(*accounts.c)
        ).mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create account.")
    logger.info("account_created", account_id=row["id"], currency=row["currency"])
    return account_response(row)


@app.patch("/accounts/{account_id}", response_model=AccountResponse)
def update_account(
    account_id: int,
    payload: AccountUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> AccountResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = AccountUpdatePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    values = payload.model_dump(exclude_none=True)
    with engine.begin() as conn:
        row = fetch_account(conn, user_id, account_id)
        if "currency" in values and "exchange_rate" not in values:
            values["exchange_rate"] = default_exchange_rate(
                values["currency"], get_reporting_currency(conn, user_id)
            )
        if values:
            row = conn.execute(
                update(accounts)
                .where(accounts.c.id == account_id, accounts.c.user_id == user_id)
                .values(**values)
                .returning(*accounts.c)
            ).mappings().first()
    return account_response(row)


@app.delete("/accounts/{account_id}")
def delete_account(account_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        fetch_account(conn, user_id, account_id)
        broker_trade_ids = select(investment_transactions.c.id).where(
            investment_transactions.c.user_id == user_id,
            investment_transactions.c.broker_account_id == account_id,
        )
        conn.execute(
            update(ledger_entries)
            .where(
                ledger_entries.c.user_id == user_id,
                ledger_entries.c.investment_transaction_id.in_(broker_trade_ids),
            )
            .values(investment_transaction_id=None)
        )
        conn.execute(
            investment_transactions.delete().where(
                investment_transactions.c.user_id == user_id,
                investment_transactions.c.broker_account_id == account_id,
            )
        )
        conn.execute(
            investment_holdings.delete().where(
                investment_holdings.c.user_id == user_id,
                investment_holdings.c.broker_account_id == account_id,
            )
        )
        conn.execute(
            update(investment_transactions)
            .where(
                investment_transactions.c.user_id == user_id,
                investment_transactions.c.payment_account_id == account_id,
            )
            .values(payment_account_id=None)
        )
        conn.execute(
            update(ledger_entries)
            .where(ledger_entries.c.user_id == user_id, ledger_entries.c.account_id == account_id)
            .values(account_id=None)
        )
        conn.execute(
            update(savings_jar_deposits)
            .where(savings_jar_deposits.c.account_id == account_id)
            .values(account_id=None)
        )
        conn.execute(accounts.delete().where(accounts.c.id == account_id, accounts.c.user_id == user_id))
    logger.info("account_deleted", account_id=account_id)
    return {"status": "deleted"}


@app.post("/accounts/{account_id}/adjust", response_model=LedgerEntryResponse)
def adjust_account_balance(
    account_id: int,
    payload: AdjustmentPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> LedgerEntryResponse:
    user_id = get_user_id(x_user_id)
    note = payload.note.strip() if payload.note else None
    entry = adjustment_entry(account_id, payload.direction, payload.amount, payload.date, note)
    with engine.begin() as conn:
        fetch_account(conn, user_id, account_id)
        row = create_ledger_entry(conn, user_id, entry)
    return ledger_response(row)


@app.post("/transfer", response_model=TransferResponse)
def transfer_between_accounts(
    payload: TransferPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransferResponse:
    user_id = get_user_id(x_user_id)
    note = payload.note.strip() if payload.note else None
    with engine.begin() as conn:
        account_list = load_accounts(conn, user_id)
        balances = {account.id: account.balance for account in account_list}
        names = {account.id: account.name for account in account_list}
        plan = plan_transfer(payload.from_account_id, payload.to_account_id, payload.amount, balances)
        outgoing, incoming = transfer_entries(
            plan,
            payload.date,
            names[plan.from_account_id],
            names[plan.to_account_id],
            note,
        )
        outgoing_row = insert_ledger_row(conn, user_id, outgoing)
        incoming_row = insert_ledger_row(conn, user_id, incoming)
        apply_balance_changes(conn, user_id, list(plan.changes))
    logger.info(
        "transfer_completed",
        from_account_id=plan.from_account_id,
        to_account_id=plan.to_account_id,
        amount=str(plan.amount),
    )
    return TransferResponse(
        outgoing=ledger_response(outgoing_row),
        incoming=ledger_response(incoming_row),
    )


@app.get("/categories", response_model=list[CategoryResponse])
def list_categories(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[CategoryResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        ensure_default_categories(conn, user_id)
        result = conn.execute(
            select(categories)
            .where(categories.c.user_id == user_id)
            .order_by(categories.c.id.asc())
        )
        rows = result.mappings().all()
    return [
        CategoryResponse(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            icon=row["icon"],
            color=row["color"],
            created_at=row["created_at"],
        )
        for row in rows
    ]


@app.post("/categories", response_model=CategoryResponse)
def create_category(
    payload: CategoryPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> CategoryResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = CategoryPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        insert(categories)
        .values(user_id=user_id, name=payload.name, icon=payload.icon, color=payload.color)
        .returning(*categories.c)
    )
    try:
        with engine.begin() as conn:
            result = conn.execute(stmt)
            row = result.mappings().first()
            conn.execute(
                update(ledger_entries)
                .where(
                    ledger_entries.c.user_id == user_id,
                    ledger_entries.c.category == payload.name,
                    ledger_entries.c.category_id.is_(None),
                )
                .values(category_id=row["id"])
            )
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Category already exists.") from exc

    return CategoryResponse(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        icon=row["icon"],
        color=row["color"],
        created_at=row["created_at"],
    )


@app.delete("/categories/{category_id}")
def delete_category(
    category_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(
            select(categories.c.id).where(
                categories.c.id == category_id, categories.c.user_id == user_id
            )
        ).first()
        if not row:
            raise HTTPException(status_code=404, detail="Category not found.")
        in_use = conn.execute(
            select(ledger_entries.c.id).where(ledger_entries.c.category_id == category_id).limit(1)
        ).first()
        if in_use:
            raise HTTPException(status_code=409, detail="Category is in use.")
        conn.execute(
            categories.delete().where(categories.c.id == category_id, categories.c.user_id == user_id)
        )
    return {"status": "deleted"}


@app.get("/ledger", response_model=list[LedgerEntryResponse])
def list_ledger_entries(
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    account_id: int | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[LedgerEntryResponse]:
    user_id = get_user_id(x_user_id)
    if start_date and end_date and start_date > end_date:
        raise HTTPException(status_code=400, detail="Start date must be on or before end date.")
    conditions = [ledger_entries.c.user_id == user_id]
    if start_date:
        conditions.append(ledger_entries.c.date >= start_date)
    if end_date:
        conditions.append(ledger_entries.c.date <= end_date)
    if account_id is not None:
        conditions.append(ledger_entries.c.account_id == account_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(ledger_entries)
            .where(and_(*conditions))
            .order_by(ledger_entries.c.date.desc(), ledger_entries.c.id.desc())
        ).mappings().all()
    return [ledger_response(row) for row in rows]


@app.post("/ledger", response_model=LedgerEntryResponse)
def create_ledger(
    payload: LedgerPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> LedgerEntryResponse:
    user_id = get_user_id(x_user_id)
    entry = payload.to_entry()
    with engine.begin() as conn:
        if entry.account_id is not None:
            fetch_account(conn, user_id, entry.account_id)
        row = create_ledger_entry(conn, user_id, entry)
    return ledger_response(row)


@app.patch("/ledger/{entry_id}", response_model=LedgerEntryResponse)
def update_ledger(
    entry_id: int,
    payload: LedgerPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> LedgerEntryResponse:
    user_id = get_user_id(x_user_id)
    updated = payload.to_entry()
    with engine.begin() as conn:
        existing = fetch_ledger_row(conn, user_id, entry_id)
        ensure_editable(existing)
        if updated.account_id is not None:
            fetch_account(conn, user_id, updated.account_id)
        previous = entry_from_row(existing)
        changes = plan_edit(previous, updated, account_ids(conn, user_id))
        row = conn.execute(
            update(ledger_entries)
            .where(ledger_entries.c.id == entry_id)
            .values(
                account_id=updated.account_id,
                type=updated.type,
                amount=updated.amount,
                category=updated.category,
                category_id=resolve_category_id(conn, user_id, updated.category),
                date=updated.date,
                note=updated.note,
                currency=entry_currency(conn, user_id, updated.account_id),
            )
            .returning(*ledger_entries.c)
        ).mappings().first()
        apply_balance_changes(conn, user_id, changes)
    logger.info("ledger_entry_updated", entry_id=entry_id, account_id=updated.account_id)
    return ledger_response(row)


@app.delete("/ledger/{entry_id}")
def delete_ledger(entry_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = fetch_ledger_row(conn, user_id, entry_id)
        ensure_editable(row)
        remove_ledger_entry(conn, user_id, row)
    return {"status": "deleted"}


@app.get("/budgets/history/disposable-income", response_model=list[DisposableHistoryEntry])
def disposable_income_history(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[DisposableHistoryEntry]:
    user_id = get_user_id(x_user_id)
    history = []
    with engine.begin() as conn:
        view = LedgerView(conn, user_id)
        jars = load_jars(conn, user_id)
        budget_rows = conn.execute(
            select(budgets).where(budgets.c.user_id == user_id).order_by(budgets.c.month.asc())
        ).mappings().all()
        for budget_row in budget_rows:
            items = load_budget_items(conn, budget_row["id"])
            figures = previous_income_figures(view, budget_row, items)
            items = apply_auto_item_plan(
                items, plan_auto_extra_income(items, figures.calculated_extra.quantize(CENT))
            )
            summary = disposable_summary(
                view, budget_row, items, load_budget_categories(conn, budget_row["id"]), jars
            )
            history.append(
                DisposableHistoryEntry(
                    month=summary.month,
                    total_disposable=summary.total_disposable,
                    total_expense=summary.total_expense,
                    remaining=summary.remaining,
                )
            )
    return history


@app.get("/budgets/{month}", response_model=BudgetResponse)
def get_budget(month: str, x_user_id: str | None = Header(None, alias="x-user-id")) -> BudgetResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = fetch_budget_for_month(conn, user_id, month)
    return budget_response(row)


@app.post("/budgets", response_model=BudgetResponse)
def create_budget(
    payload: BudgetPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> BudgetResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = BudgetPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        insert(budgets)
        .values(
            user_id=user_id,
            month=payload.month,
            fixed_income=payload.fixed_income,
            fixed_expense=payload.fixed_expense,
            extra_income=payload.extra_income,
        )
        .returning(*budgets.c)
    )
    try:
        with engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Budget already exists for this month.") from exc
    return budget_response(row)


@app.patch("/budgets/{budget_id}", response_model=BudgetResponse)
def update_budget(
    budget_id: int,
    payload: BudgetUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BudgetResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = BudgetUpdatePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    values = payload.model_dump(exclude_none=True)
    with engine.begin() as conn:
        row = fetch_budget_by_id(conn, user_id, budget_id)
        if values:
            row = conn.execute(
                update(budgets).where(budgets.c.id == budget_id).values(**values).returning(*budgets.c)
            ).mappings().first()
    return budget_response(row)


@app.get("/budgets/{budget_id}/categories", response_model=list[BudgetCategoryResponse])
def list_budget_categories(
    budget_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> list[BudgetCategoryResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        fetch_budget_by_id(conn, user_id, budget_id)
        rows = conn.execute(
            select(budget_categories)
            .where(budget_categories.c.budget_id == budget_id)
            .order_by(budget_categories.c.id.asc())
        ).mappings().all()
    return [budget_category_response(row) for row in rows]


@app.post("/budgets/{budget_id}/categories", response_model=BudgetCategoryResponse)
def create_budget_category(
    budget_id: int,
    payload: BudgetCategoryPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BudgetCategoryResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = BudgetCategoryPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        fetch_budget_by_id(conn, user_id, budget_id)
        row = conn.execute(
            insert(budget_categories)
            .values(budget_id=budget_id, **payload.model_dump())
            .returning(*budget_categories.c)
        ).mappings().first()
    return budget_category_response(row)


@app.patch("/budgets/categories/{category_id}", response_model=BudgetCategoryResponse)
def update_budget_category(
    category_id: int,
    payload: BudgetCategoryUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BudgetCategoryResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = BudgetCategoryUpdatePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    values = payload.model_dump(exclude_none=True)
    with engine.begin() as conn:
        row = owned_budget_child(conn, user_id, budget_categories, category_id, "Budget category")
        if values:
            row = conn.execute(
                update(budget_categories)
                .where(budget_categories.c.id == category_id)
                .values(**values)
                .returning(*budget_categories.c)
            ).mappings().first()
    return budget_category_response(row)


@app.delete("/budgets/categories/{category_id}")
def delete_budget_category(
    category_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        owned_budget_child(conn, user_id, budget_categories, category_id, "Budget category")
        conn.execute(budget_categories.delete().where(budget_categories.c.id == category_id))
    return {"status": "deleted"}


@app.get("/budgets/{budget_id}/items", response_model=list[BudgetItemResponse])
def list_budget_items(
    budget_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> list[BudgetItemResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        fetch_budget_by_id(conn, user_id, budget_id)
        rows = conn.execute(
            select(budget_items)
            .where(budget_items.c.budget_id == budget_id)
            .order_by(budget_items.c.id.asc())
        ).mappings().all()
    return [budget_item_response(row) for row in rows]


@app.post("/budgets/{budget_id}/items", response_model=BudgetItemResponse)
def create_budget_item(
    budget_id: int,
    payload: BudgetItemPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BudgetItemResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = BudgetItemPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        fetch_budget_by_id(conn, user_id, budget_id)
        row = conn.execute(
            insert(budget_items)
            .values(
                budget_id=budget_id,
                type=payload.type,
                name=payload.name,
                amount=payload.amount,
                is_auto_calculated=False,
            )
            .returning(*budget_items.c)
        ).mappings().first()
    return budget_item_response(row)


@app.patch("/budgets/items/{item_id}", response_model=BudgetItemResponse)
def update_budget_item(
    item_id: int,
    payload: BudgetItemUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BudgetItemResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = BudgetItemUpdatePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    values = payload.model_dump(exclude_none=True)
    with engine.begin() as conn:
        row = owned_budget_child(conn, user_id, budget_items, item_id, "Budget item")
        if row["is_auto_calculated"]:
            raise HTTPException(status_code=400, detail="Auto-calculated items cannot be edited.")
        if values:
            row = conn.execute(
                update(budget_items)
                .where(budget_items.c.id == item_id)
                .values(**values)
                .returning(*budget_items.c)
            ).mappings().first()
    return budget_item_response(row)


@app.delete("/budgets/items/{item_id}")
def delete_budget_item(item_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        owned_budget_child(conn, user_id, budget_items, item_id, "Budget item")
        conn.execute(budget_items.delete().where(budget_items.c.id == item_id))
    return {"status": "deleted"}


@app.get("/budgets/{month}/previous-income", response_model=PreviousIncomeResponse)
def get_previous_income(
    month: str, x_user_id: str | None = Header(None, alias="x-user-id")
) -> PreviousIncomeResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        budget_row = fetch_budget_for_month(conn, user_id, month)
        view = LedgerView(conn, user_id)
        return previous_income_figures(view, budget_row, load_budget_items(conn, budget_row["id"]))


@app.post("/budgets/{month}/reconcile", response_model=ReconcileResponse)
def reconcile_budget(
    month: str, x_user_id: str | None = Header(None, alias="x-user-id")
) -> ReconcileResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        budget_row = fetch_budget_for_month(conn, user_id, month)
        return reconcile_auto_item(conn, LedgerView(conn, user_id), budget_row)


@app.get("/budgets/{month}/summary", response_model=BudgetSummaryResponse)
def get_budget_summary(
    month: str, x_user_id: str | None = Header(None, alias="x-user-id")
) -> BudgetSummaryResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        budget_row = fetch_budget_for_month(conn, user_id, month)
        view = LedgerView(conn, user_id)
        reconcile_auto_item(conn, view, budget_row)
        items = load_budget_items(conn, budget_row["id"])
        summary = disposable_summary(
            view,
            budget_row,
            items,
            load_budget_categories(conn, budget_row["id"]),
            load_jars(conn, user_id),
        )
    return summary_response(budget_row, summary, items)


@app.get("/investments/holdings", response_model=list[HoldingResponse])
def list_holdings(
    account_id: int | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[HoldingResponse]:
    user_id = get_user_id(x_user_id)
    conditions = [investment_holdings.c.user_id == user_id]
    if account_id is not None:
        conditions.append(investment_holdings.c.broker_account_id == account_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(investment_holdings)
            .where(and_(*conditions))
            .order_by(investment_holdings.c.id.asc())
        ).mappings().all()
    return [holding_response(row) for row in rows]


@app.patch("/investments/holdings/{holding_id}", response_model=HoldingResponse)
def update_holding(
    holding_id: int,
    payload: HoldingUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> HoldingResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = HoldingUpdatePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    values = payload.model_dump(exclude_none=True)
    stmt = (
        update(investment_holdings)
        .where(investment_holdings.c.id == holding_id, investment_holdings.c.user_id == user_id)
        .values(updated_at=func.now(), **values)
        .returning(*investment_holdings.c)
    )
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Holding not found.")
    return holding_response(row)


@app.delete("/investments/holdings/{holding_id}")
def delete_holding(holding_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        holding = conn.execute(
            select(investment_holdings).where(
                investment_holdings.c.id == holding_id, investment_holdings.c.user_id == user_id
            )
        ).mappings().first()
        if not holding:
            raise HTTPException(status_code=404, detail="Holding not found.")
        trade_ids = conn.execute(
            select(investment_transactions.c.id).where(
                investment_transactions.c.user_id == user_id,
                investment_transactions.c.broker_account_id == holding["broker_account_id"],
                investment_transactions.c.ticker == holding["ticker"],
            )
        ).scalars().all()
        for trade_id in trade_ids:
            remove_trade_entries(conn, user_id, trade_id)
        if trade_ids:
            conn.execute(investment_transactions.delete().where(investment_transactions.c.id.in_(trade_ids)))
        conn.execute(investment_holdings.delete().where(investment_holdings.c.id == holding_id))
    logger.info("holding_deleted", holding_id=holding_id, trades=len(trade_ids))
    return {"status": "deleted"}


@app.get("/investments/transactions", response_model=list[InvestmentTransactionResponse])
def list_investment_transactions(
    holding_id: int | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[InvestmentTransactionResponse]:
    user_id = get_user_id(x_user_id)
    conditions = [investment_transactions.c.user_id == user_id]
    if holding_id is not None:
        conditions.append(investment_transactions.c.holding_id == holding_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(investment_transactions)
            .where(and_(*conditions))
            .order_by(investment_transactions.c.date.desc(), investment_transactions.c.id.desc())
        ).mappings().all()
    return [investment_transaction_response(row) for row in rows]


@app.post("/investments/transactions", response_model=InvestmentTransactionResponse)
def create_investment_transaction(
    payload: InvestmentTransactionPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> InvestmentTransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = InvestmentTransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    trade = payload.to_trade()

    with engine.begin() as conn:
        broker = fetch_account(conn, user_id, payload.broker_account_id)
        payment = fetch_account(conn, user_id, payload.payment_account_id)
        holding = fetch_holding(conn, user_id, broker["id"], payload.ticker)
        if trade.trade_type == SELL and not holding:
            raise ValidationError("No holding to sell.")
        ensure_payment_covers(trade, payment["balance"])

        name = holding["name"] if holding else payload.name
        market = payload.market or (holding["market"] if holding else None) or broker["type"]
        row = conn.execute(
            insert(investment_transactions)
            .values(
                user_id=user_id,
                holding_id=holding["id"] if holding else None,
                broker_account_id=broker["id"],
                payment_account_id=payment["id"],
                ticker=payload.ticker,
                name=name,
                market=market,
                type=trade.trade_type,
                quantity=trade.quantity,
                price=trade.price,
                fees=trade.fees,
                date=trade.trade_date,
            )
            .returning(*investment_transactions.c)
        ).mappings().first()

        rebuilt = rebuild_holding(conn, user_id, broker["id"], payload.ticker, name, market)
        stored = trade_from_row(row)
        cash_entry, position_entry = trade_ledger_entries(
            stored, name, payload.ticker, payment["id"], broker["id"]
        )
        create_ledger_entry(conn, user_id, cash_entry)
        create_ledger_entry(conn, user_id, position_entry)
        row = conn.execute(
            select(investment_transactions).where(investment_transactions.c.id == row["id"])
        ).mappings().first()

    logger.info(
        "investment_transaction_created",
        transaction_id=row["id"],
        ticker=payload.ticker,
        trade_type=trade.trade_type,
        holding_closed=rebuilt is None,
    )
    return investment_transaction_response(row)


@app.delete("/investments/transactions/{transaction_id}")
def delete_investment_transaction(
    transaction_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(
            select(investment_transactions).where(
                investment_transactions.c.id == transaction_id,
                investment_transactions.c.user_id == user_id,
            )
        ).mappings().first()
        if not row:
            raise HTTPException(status_code=404, detail="Investment transaction not found.")
        remove_trade_entries(conn, user_id, transaction_id)
        conn.execute(investment_transactions.delete().where(investment_transactions.c.id == transaction_id))
        rebuild_holding(
            conn, user_id, row["broker_account_id"], row["ticker"], row["name"], row["market"]
        )
    logger.info("investment_transaction_deleted", transaction_id=transaction_id, ticker=row["ticker"])
    return {"status": "deleted"}


@app.post("/investments/sync-prices", response_model=SyncPricesResponse)
def sync_prices(x_user_id: str | None = Header(None, alias="x-user-id")) -> SyncPricesResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        holding_rows = conn.execute(
            select(investment_holdings).where(investment_holdings.c.user_id == user_id)
        ).mappings().all()

    refreshed = refresh_current_prices(
        (
            HoldingPrice(
                id=row["id"],
                ticker=row["ticker"],
                market=row["market"],
                current_price=row["current_price"],
            )
            for row in holding_rows
        ),
        PRICE_ORACLE,
    )

    revalued: list[int] = []
    with engine.begin() as conn:
        for item in refreshed:
            if item.updated:
                conn.execute(
                    update(investment_holdings)
                    .where(investment_holdings.c.id == item.holding_id)
                    .values(current_price=item.price, updated_at=func.now())
                )
        rows = conn.execute(
            select(investment_holdings)
            .where(investment_holdings.c.user_id == user_id)
            .order_by(investment_holdings.c.id.asc())
        ).mappings().all()

        by_account = defaultdict(list)
        for row in rows:
            by_account[row["broker_account_id"]].append(row)
        for broker_account_id, account_holdings in by_account.items():
            if any(row["current_price"] <= 0 for row in account_holdings):
                continue
            target = sum((row["quantity"] * row["current_price"] for row in account_holdings), ZERO)
            account = fetch_account(conn, user_id, broker_account_id)
            difference = (target - account["balance"]).quantize(CENT)
            if difference == 0:
                continue
            create_ledger_entry(
                conn,
                user_id,
                LedgerEntry(
                    amount=abs(difference),
                    type=INCOME if difference > 0 else EXPENSE,
                    date=date.today(),
                    category=REVALUATION_CATEGORY,
                    account_id=broker_account_id,
                    kind=EntryKind.REVALUATION,
                    note="市值更新",
                ),
            )
            revalued.append(broker_account_id)

    updated_count = sum(1 for item in refreshed if item.updated)
    logger.info("prices_synced", updated=updated_count, revalued_accounts=revalued)
    return SyncPricesResponse(
        updated=updated_count,
        unchanged=len(refreshed) - updated_count,
        revalued_accounts=revalued,
        holdings=[holding_response(row) for row in rows],
    )


@app.get("/savings-jars", response_model=list[SavingsJarResponse])
def list_savings_jars(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[SavingsJarResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(savings_jars).where(savings_jars.c.user_id == user_id).order_by(savings_jars.c.id.asc())
        ).mappings().all()
    return [jar_response(row) for row in rows]


@app.post("/savings-jars", response_model=SavingsJarResponse)
def create_savings_jar(
    payload: SavingsJarPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> SavingsJarResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = SavingsJarPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        row = conn.execute(
            insert(savings_jars)
            .values(
                user_id=user_id,
                name=payload.name,
                target_amount=payload.target_amount,
                current_amount=ZERO,
                include_in_disposable=payload.include_in_disposable,
            )
            .returning(*savings_jars.c)
        ).mappings().first()
    return jar_response(row)


@app.patch("/savings-jars/{jar_id}", response_model=SavingsJarResponse)
def update_savings_jar(
    jar_id: int,
    payload: SavingsJarUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> SavingsJarResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = SavingsJarUpdatePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    values = payload.model_dump(exclude_none=True)
    with engine.begin() as conn:
        row = fetch_jar(conn, user_id, jar_id)
        if values:
            row = conn.execute(
                update(savings_jars)
                .where(savings_jars.c.id == jar_id)
                .values(**values)
                .returning(*savings_jars.c)
            ).mappings().first()
    return jar_response(row)


@app.delete("/savings-jars/{jar_id}")
def delete_savings_jar(jar_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        fetch_jar(conn, user_id, jar_id)
        conn.execute(savings_jar_deposits.delete().where(savings_jar_deposits.c.jar_id == jar_id))
        conn.execute(savings_jar_categories.delete().where(savings_jar_categories.c.jar_id == jar_id))
        conn.execute(savings_jars.delete().where(savings_jars.c.id == jar_id))
    return {"status": "deleted"}


@app.get("/savings-jars/{jar_id}/categories", response_model=list[JarCategoryResponse])
def list_jar_categories(
    jar_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> list[JarCategoryResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        fetch_jar(conn, user_id, jar_id)
        rows = conn.execute(
            select(savings_jar_categories)
            .where(savings_jar_categories.c.jar_id == jar_id)
            .order_by(savings_jar_categories.c.id.asc())
        ).mappings().all()
    return [jar_category_response(row) for row in rows]


@app.post("/savings-jars/{jar_id}/categories", response_model=JarCategoryResponse)
def create_jar_category(
    jar_id: int,
    payload: JarCategoryPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> JarCategoryResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = JarCategoryPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        fetch_jar(conn, user_id, jar_id)
        row = conn.execute(
            insert(savings_jar_categories)
            .values(jar_id=jar_id, **payload.model_dump())
            .returning(*savings_jar_categories.c)
        ).mappings().first()
    return jar_category_response(row)


@app.patch("/savings-jars/categories/{category_id}", response_model=JarCategoryResponse)
def update_jar_category(
    category_id: int,
    payload: JarCategoryUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> JarCategoryResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = JarCategoryUpdatePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    values = payload.model_dump(exclude_none=True)
    with engine.begin() as conn:
        row = fetch_jar_category(conn, user_id, category_id)
        if values:
            row = conn.execute(
                update(savings_jar_categories)
                .where(savings_jar_categories.c.id == category_id)
                .values(**values)
                .returning(*savings_jar_categories.c)
            ).mappings().first()
    return jar_category_response(row)


@app.delete("/savings-jars/categories/{category_id}")
def delete_jar_category(
    category_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        fetch_jar_category(conn, user_id, category_id)
        conn.execute(savings_jar_categories.delete().where(savings_jar_categories.c.id == category_id))
    return {"status": "deleted"}


@app.get("/savings-jars/{jar_id}/deposits", response_model=list[JarDepositResponse])
def list_jar_deposits(
    jar_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> list[JarDepositResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        fetch_jar(conn, user_id, jar_id)
        rows = conn.execute(
            select(savings_jar_deposits)
            .where(savings_jar_deposits.c.jar_id == jar_id)
            .order_by(savings_jar_deposits.c.date.desc(), savings_jar_deposits.c.id.desc())
        ).mappings().all()
    return [jar_deposit_response(row) for row in rows]


@app.post("/savings-jars/{jar_id}/deposits", response_model=JarDepositResponse)
def create_jar_deposit(
    jar_id: int,
    payload: JarDepositPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> JarDepositResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = JarDepositPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        jar = fetch_jar(conn, user_id, jar_id)
        ledger_entry_id = None
        if payload.account_id is not None:
            account = fetch_account(conn, user_id, payload.account_id)
            if account["balance"] < payload.amount:
                raise ValidationError("Insufficient balance.")
            entry_row = create_ledger_entry(
                conn,
                user_id,
                LedgerEntry(
                    amount=payload.amount,
                    type=EXPENSE,
                    date=payload.date,
                    category=JAR_DEPOSIT_CATEGORY,
                    account_id=account["id"],
                    kind=EntryKind.JAR_DEPOSIT,
                    note=payload.note or f"存入 {jar['name']}",
                ),
            )
            ledger_entry_id = entry_row["id"]
        row = conn.execute(
            insert(savings_jar_deposits)
            .values(
                jar_id=jar_id,
                account_id=payload.account_id,
                ledger_entry_id=ledger_entry_id,
                amount=payload.amount,
                date=payload.date,
                note=payload.note,
            )
            .returning(*savings_jar_deposits.c)
        ).mappings().first()
        conn.execute(
            update(savings_jars)
            .where(savings_jars.c.id == jar_id)
            .values(current_amount=savings_jars.c.current_amount + payload.amount)
        )
    logger.info("jar_deposit_created", jar_id=jar_id, amount=str(payload.amount))
    return jar_deposit_response(row)


@app.get("/net-worth", response_model=NetWorthResponse)
def get_net_worth(x_user_id: str | None = Header(None, alias="x-user-id")) -> NetWorthResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        reporting_currency = get_reporting_currency(conn, user_id)
        account_list = load_accounts(conn, user_id)
    summary = summarize_net_worth(account_list, current_rates(reporting_currency), reporting_currency)
    return NetWorthResponse(
        currency=summary.currency,
        net_worth=summary.net_worth,
        total_assets=summary.total_assets,
        total_liabilities=summary.total_liabilities,
        breakdown=dict(summary.breakdown),
    )


@app.get("/net-worth/history", response_model=list[NetWorthHistoryPoint])
def get_net_worth_history(
    window: str = Query("6M"),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[NetWorthHistoryPoint]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        reporting_currency = get_reporting_currency(conn, user_id)
        account_list = load_accounts(conn, user_id)
        entries = load_ledger(conn, user_id)
    rates = current_rates(reporting_currency)
    summary = summarize_net_worth(account_list, rates, reporting_currency)
    points = net_worth_history(
        summary.net_worth,
        entries,
        account_list,
        window,
        date.today(),
        rates,
        reporting_currency,
    )
    return [NetWorthHistoryPoint(date=point.date, net_worth=point.net_worth) for point in points]
