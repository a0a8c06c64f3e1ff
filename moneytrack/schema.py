from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    func,
)

from moneytrack import settings

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("hashed_password", String(255), nullable=False),
    Column("reporting_currency", String(3), nullable=False, server_default=settings.REPORTING_CURRENCY),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("icon", String(50)),
    Column("color", String(50)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "name", name="uq_categories_user_name"),
)

accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("type", String(50), nullable=False),
    Column("note", String(500)),
    Column("balance", Numeric(15, 2), nullable=False, server_default="0"),
    Column("currency", String(3), nullable=False, server_default=settings.REPORTING_CURRENCY),
    Column("exchange_rate", Numeric(20, 10), nullable=False, server_default="1"),
    Column("include_in_total", Boolean, nullable=False, server_default="1"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

investment_transactions = Table(
    "investment_transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("holding_id", Integer, ForeignKey("investment_holdings.id")),
    Column("broker_account_id", Integer, ForeignKey("accounts.id"), nullable=False),
    Column("payment_account_id", Integer, ForeignKey("accounts.id")),
    Column("ticker", String(50), nullable=False),
    Column("name", String(255), nullable=False),
    Column("market", String(50)),
    Column("type", String(10), nullable=False),
    Column("quantity", Numeric(18, 8), nullable=False),
    Column("price", Numeric(15, 4), nullable=False),
    Column("fees", Numeric(15, 2), nullable=False, server_default="0"),
    Column("date", Date, nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

ledger_entries = Table(
    "ledger_entries",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("account_id", Integer, ForeignKey("accounts.id")),
    Column("type", String(20), nullable=False),
    Column("amount", Numeric(15, 2), nullable=False),
    Column("category", String(255), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("kind", String(30), nullable=False, server_default="manual"),
    Column("investment_transaction_id", Integer, ForeignKey("investment_transactions.id")),
    Column("date", Date, nullable=False),
    Column("note", String(500)),
    Column("currency", String(3)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("month", String(7), nullable=False),
    Column("fixed_income", Numeric(15, 2), nullable=False, server_default="0"),
    Column("fixed_expense", Numeric(15, 2), nullable=False, server_default="0"),
    Column("extra_income", Numeric(15, 2), nullable=False, server_default="0"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "month", name="uq_budgets_user_month"),
)

budget_categories = Table(
    "budget_categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("budget_id", Integer, ForeignKey("budgets.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("type", String(10), nullable=False, server_default="fixed"),
    Column("percentage", Numeric(5, 2), nullable=False, server_default="0"),
    Column("extra_percentage", Numeric(5, 2), nullable=False, server_default="0"),
    Column("color", String(50), nullable=False, server_default=""),
    Column("icon", String(50)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

budget_items = Table(
    "budget_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("budget_id", Integer, ForeignKey("budgets.id"), nullable=False),
    Column("type", String(20), nullable=False),
    Column("name", String(255), nullable=False),
    Column("amount", Numeric(15, 2), nullable=False),
    Column("is_auto_calculated", Boolean, nullable=False, server_default="0"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

investment_holdings = Table(
    "investment_holdings",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("broker_account_id", Integer, ForeignKey("accounts.id"), nullable=False),
    Column("ticker", String(50), nullable=False),
    Column("name", String(255), nullable=False),
    Column("market", String(50)),
    Column("quantity", Numeric(18, 8), nullable=False),
    Column("average_cost", Numeric(15, 4), nullable=False),
    Column("current_price", Numeric(15, 4), nullable=False, server_default="0"),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "broker_account_id", "ticker", name="uq_holdings_account_ticker"),
)

savings_jars = Table(
    "savings_jars",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("target_amount", Numeric(15, 2), nullable=False, server_default="0"),
    Column("current_amount", Numeric(15, 2), nullable=False, server_default="0"),
    Column("include_in_disposable", Boolean, nullable=False, server_default="0"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

savings_jar_categories = Table(
    "savings_jar_categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("jar_id", Integer, ForeignKey("savings_jars.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("percentage", Numeric(5, 2), nullable=False, server_default="0"),
    Column("color", String(50), nullable=False, server_default=""),
    Column("icon", String(50)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

savings_jar_deposits = Table(
    "savings_jar_deposits",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("jar_id", Integer, ForeignKey("savings_jars.id"), nullable=False),
    Column("account_id", Integer, ForeignKey("accounts.id")),
    Column("ledger_entry_id", Integer, ForeignKey("ledger_entries.id")),
    Column("amount", Numeric(15, 2), nullable=False),
    Column("note", String(500)),
    Column("date", Date, nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)
