from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from moneytrack.budget_allocation import BudgetTotals, CategoryAllocation
from moneytrack.ledger_reconciliation import INCOME, EntryKind, LedgerEntry
from moneytrack.periods import month_bounds

ZERO = Decimal("0")
HUNDRED = Decimal("100")

# Money moved between the user's own pockets, never income or spending.
NEUTRAL_KINDS = {EntryKind.TRANSFER, EntryKind.JAR_DEPOSIT, EntryKind.REVALUATION}


@dataclass(frozen=True)
class SavingsJarCategory:
    name: str
    percentage: Decimal
    color: str = ""
    icon: Optional[str] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class SavingsJar:
    name: str
    current_amount: Decimal
    target_amount: Decimal = ZERO
    include_in_disposable: bool = False
    categories: tuple = ()
    id: Optional[int] = None


@dataclass(frozen=True)
class InvestmentContext:
    """Structured investment facts keyed by investment transaction id.

    ``profits`` holds the gain or loss carried by each trade's position-change
    entry, ``fees`` the broker fee charged on its cash entry.
    """

    profits: Mapping[int, Decimal] = field(default_factory=dict)
    fees: Mapping[int, Decimal] = field(default_factory=dict)


@dataclass(frozen=True)
class CashFlow:
    income: Decimal
    expense: Decimal
    income_by_category: Mapping[str, Decimal]
    expense_by_category: Mapping[str, Decimal]

    @property
    def net(self) -> Decimal:
        return self.income - self.expense


@dataclass(frozen=True)
class DisposableRow:
    name: str
    budget_amount: Decimal = ZERO
    jar_amount: Decimal = ZERO
    used: Decimal = ZERO
    color: str = ""
    icon: Optional[str] = None

    @property
    def total(self) -> Decimal:
        return self.budget_amount + self.jar_amount

    @property
    def remaining(self) -> Decimal:
        return self.total - self.used

    @property
    def overage(self) -> Decimal:
        return max(ZERO, self.used - self.total)

    @property
    def usage_percent(self) -> Decimal:
        if self.total <= ZERO:
            return ZERO
        return self.used / self.total * HUNDRED


@dataclass(frozen=True)
class DisposableSummary:
    month: str
    rows: tuple
    fixed_disposable: Decimal
    extra_income: Decimal
    jar_total: Decimal
    total_disposable: Decimal
    total_income: Decimal
    total_expense: Decimal

    @property
    def remaining(self) -> Decimal:
        return self.total_disposable - self.total_expense

    @property
    def unallocated(self) -> Decimal:
        return self.fixed_disposable + self.extra_income + self.jar_total - self.total_disposable


def classify_cash_flow(
    entry: LedgerEntry,
    amount: Decimal,
    context: Optional[InvestmentContext] = None,
) -> tuple[Decimal, Decimal]:
    """Return the (income, expense) an entry contributes to monthly cash flow.

    ``amount`` is the entry amount already converted to the reporting
    currency; investment figures are scaled by the same factor.
    """
    kind = entry.resolved_kind
    if kind in NEUTRAL_KINDS:
        return ZERO, ZERO

    if kind in (EntryKind.INVESTMENT_CASH, EntryKind.INVESTMENT_POSITION):
        context = context or InvestmentContext()
        trade_id = entry.investment_transaction_id
        if trade_id is None:
            return ZERO, ZERO
        ratio = amount / entry.amount if entry.amount else Decimal("1")
        if kind == EntryKind.INVESTMENT_CASH:
            fees = context.fees.get(trade_id)
            if not fees:
                return ZERO, ZERO
            return ZERO, fees * ratio
        profit = context.profits.get(trade_id)
        if profit is None:
            return ZERO, ZERO
        profit = profit * ratio
        if profit >= ZERO:
            return profit, ZERO
        return ZERO, -profit

    if entry.type == INCOME:
        return amount, ZERO
    return ZERO, amount


def month_cash_flow(
    entries: Iterable[LedgerEntry],
    month: str,
    convert: Callable[[LedgerEntry], Decimal],
    context: Optional[InvestmentContext] = None,
) -> CashFlow:
    start, end = month_bounds(month)
    income = ZERO
    expense = ZERO
    income_by_category: Dict[str, Decimal] = {}
    expense_by_category: Dict[str, Decimal] = {}
    for entry in entries:
        if not start <= entry.date <= end:
            continue
        entry_income, entry_expense = classify_cash_flow(entry, convert(entry), context)
        if entry_income:
            income += entry_income
            income_by_category[entry.category] = (
                income_by_category.get(entry.category, ZERO) + entry_income
            )
        if entry_expense:
            expense += entry_expense
            expense_by_category[entry.category] = (
                expense_by_category.get(entry.category, ZERO) + entry_expense
            )
    return CashFlow(
        income=income,
        expense=expense,
        income_by_category=income_by_category,
        expense_by_category=expense_by_category,
    )


def jar_category_amount(jar: SavingsJar, category: SavingsJarCategory) -> Decimal:
    return _coerce_amount(jar.current_amount) * _coerce_amount(category.percentage) / HUNDRED


def merge_jar_allocations(
    allocations: Iterable[CategoryAllocation],
    jars: Iterable[SavingsJar],
) -> List[DisposableRow]:
    rows: Dict[str, DisposableRow] = {}
    for allocation in allocations:
        existing = rows.get(allocation.name)
        if existing is None:
            rows[allocation.name] = DisposableRow(
                name=allocation.name,
                budget_amount=allocation.total,
                color=allocation.color,
                icon=allocation.icon,
            )
        else:
            rows[allocation.name] = replace(
                existing, budget_amount=existing.budget_amount + allocation.total
            )

    for jar in jars:
        if not jar.include_in_disposable:
            continue
        for category in jar.categories:
            amount = jar_category_amount(jar, category)
            existing = rows.get(category.name)
            if existing is None:
                rows[category.name] = DisposableRow(
                    name=category.name,
                    jar_amount=amount,
                    color=category.color,
                    icon=category.icon,
                )
            else:
                rows[category.name] = replace(existing, jar_amount=existing.jar_amount + amount)
    return list(rows.values())


def summarize_disposable(
    month: str,
    totals: BudgetTotals,
    allocations: Iterable[CategoryAllocation],
    jars: Iterable[SavingsJar],
    cash_flow: CashFlow,
) -> DisposableSummary:
    jars = list(jars)
    merged = merge_jar_allocations(allocations, jars)
    rows = tuple(
        replace(row, used=cash_flow.expense_by_category.get(row.name, ZERO))
        for row in merged
    )
    jar_total = sum(
        (
            jar_category_amount(jar, category)
            for jar in jars
            if jar.include_in_disposable
            for category in jar.categories
        ),
        ZERO,
    )
    return DisposableSummary(
        month=month,
        rows=rows,
        fixed_disposable=totals.fixed_disposable,
        extra_income=totals.extra_income,
        jar_total=jar_total,
        total_disposable=sum((row.total for row in rows), ZERO),
        total_income=cash_flow.income,
        total_expense=cash_flow.expense,
    )


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
