from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal
from typing import Container, Iterable, List, Mapping, Optional

from moneytrack.errors import RecordNotFound, ValidationError
from moneytrack.periods import month_end, month_start, shift_month

ZERO = Decimal("0")

INCOME = "income"
EXPENSE = "expense"

TRANSFER_CATEGORY = "轉帳"
STOCK_BUY_CATEGORY = "股票買入"
STOCK_SELL_CATEGORY = "股票賣出"
POSITION_INCREASE_CATEGORY = "持倉增加"
POSITION_DECREASE_CATEGORY = "持倉減少"
ADJUSTMENT_CATEGORY = "餘額調整"
REVALUATION_CATEGORY = "市值調整"
JAR_DEPOSIT_CATEGORY = "存錢罐"


class EntryType:
    values = {INCOME, EXPENSE}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValidationError("Entry type must be 'income' or 'expense'.")
        return normalized


class EntryKind:
    MANUAL = "manual"
    TRANSFER = "transfer"
    ADJUSTMENT = "adjustment"
    INVESTMENT_CASH = "investment_cash"
    INVESTMENT_POSITION = "investment_position"
    REVALUATION = "revaluation"
    JAR_DEPOSIT = "jar_deposit"

    values = {
        MANUAL,
        TRANSFER,
        ADJUSTMENT,
        INVESTMENT_CASH,
        INVESTMENT_POSITION,
        REVALUATION,
        JAR_DEPOSIT,
    }

    # Rows written before entries carried a kind are recognised by label.
    legacy_categories = {
        TRANSFER_CATEGORY: TRANSFER,
        STOCK_BUY_CATEGORY: INVESTMENT_CASH,
        STOCK_SELL_CATEGORY: INVESTMENT_CASH,
        POSITION_INCREASE_CATEGORY: INVESTMENT_POSITION,
        POSITION_DECREASE_CATEGORY: INVESTMENT_POSITION,
    }

    @classmethod
    def resolve(cls, kind: Optional[str], category: Optional[str]) -> str:
        if kind and kind != cls.MANUAL:
            return kind
        if category:
            return cls.legacy_categories.get(category.strip(), cls.MANUAL)
        return cls.MANUAL


@dataclass(frozen=True)
class LedgerEntry:
    amount: Decimal
    type: str
    date: date
    category: str = ""
    account_id: Optional[int] = None
    kind: str = EntryKind.MANUAL
    note: Optional[str] = None
    id: Optional[int] = None
    investment_transaction_id: Optional[int] = None
    currency: Optional[str] = None

    @property
    def resolved_kind(self) -> str:
        return EntryKind.resolve(self.kind, self.category)


@dataclass(frozen=True)
class BalanceChange:
    account_id: int
    delta: Decimal


@dataclass(frozen=True)
class TransferPlan:
    from_account_id: int
    to_account_id: int
    amount: Decimal
    changes: tuple


@dataclass(frozen=True)
class DatedAmount:
    """A ledger effect already converted to the reporting currency."""

    date: date
    type: str
    amount: Decimal


def signed_amount(entry_type: str, amount: Decimal) -> Decimal:
    value = _coerce_amount(amount)
    if entry_type == INCOME:
        return value
    if entry_type == EXPENSE:
        return -value
    raise ValidationError(f"Unsupported entry type: {entry_type}")


def apply_entry(balance: Decimal, entry_type: str, amount: Decimal) -> Decimal:
    return _coerce_amount(balance) + signed_amount(entry_type, amount)


def reverse_entry(balance: Decimal, entry_type: str, amount: Decimal) -> Decimal:
    return _coerce_amount(balance) - signed_amount(entry_type, amount)


def validate_entry(entry: LedgerEntry) -> LedgerEntry:
    entry_type = EntryType.validate(entry.type)
    amount = _coerce_amount(entry.amount)
    if amount <= ZERO:
        raise ValidationError("Amount must be greater than zero.")
    category = (entry.category or "").strip()
    if not category:
        raise ValidationError("Category required.")
    if entry.kind not in EntryKind.values:
        raise ValidationError(f"Unsupported entry kind: {entry.kind}")
    note = entry.note.strip() if entry.note else None
    return replace(entry, type=entry_type, amount=amount, category=category, note=note or None)


def plan_create(entry: LedgerEntry, known_accounts: Container[int]) -> List[BalanceChange]:
    if not _is_live_account(entry.account_id, known_accounts):
        return []
    return [BalanceChange(entry.account_id, signed_amount(entry.type, entry.amount))]


def plan_delete(entry: LedgerEntry, known_accounts: Container[int]) -> List[BalanceChange]:
    if not _is_live_account(entry.account_id, known_accounts):
        return []
    return [BalanceChange(entry.account_id, -signed_amount(entry.type, entry.amount))]


def plan_edit(
    previous: LedgerEntry,
    updated: LedgerEntry,
    known_accounts: Container[int],
) -> List[BalanceChange]:
    """Reverse the stored effect, then apply the edited one.

    The two halves stay separate and ordered even when the account is
    unchanged, so callers that apply them one by one never observe the
    new amount stacked on the old one.
    """
    return plan_delete(previous, known_accounts) + plan_create(updated, known_accounts)


def apply_changes(
    balances: Mapping[int, Decimal], changes: Iterable[BalanceChange]
) -> dict[int, Decimal]:
    result = {account_id: _coerce_amount(value) for account_id, value in balances.items()}
    for change in changes:
        if change.account_id not in result:
            raise RecordNotFound("Account")
        result[change.account_id] += change.delta
    return result


def net_changes(changes: Iterable[BalanceChange]) -> dict[int, Decimal]:
    totals: dict[int, Decimal] = {}
    for change in changes:
        totals[change.account_id] = totals.get(change.account_id, ZERO) + change.delta
    return totals


def plan_transfer(
    from_account_id: int,
    to_account_id: int,
    amount: Decimal,
    balances: Mapping[int, Decimal],
) -> TransferPlan:
    value = _coerce_amount(amount)
    if value <= ZERO:
        raise ValidationError("Transfer amount must be greater than zero.")
    if from_account_id == to_account_id:
        raise ValidationError("Cannot transfer between identical accounts.")
    if from_account_id not in balances or to_account_id not in balances:
        raise RecordNotFound("Account")
    if _coerce_amount(balances[from_account_id]) < value:
        raise ValidationError("Insufficient balance.")
    return TransferPlan(
        from_account_id=from_account_id,
        to_account_id=to_account_id,
        amount=value,
        changes=(
            BalanceChange(from_account_id, -value),
            BalanceChange(to_account_id, value),
        ),
    )


def transfer_entries(
    plan: TransferPlan,
    on_date: date,
    from_name: str,
    to_name: str,
    note: Optional[str] = None,
) -> tuple[LedgerEntry, LedgerEntry]:
    outgoing = LedgerEntry(
        amount=plan.amount,
        type=EXPENSE,
        date=on_date,
        category=TRANSFER_CATEGORY,
        account_id=plan.from_account_id,
        kind=EntryKind.TRANSFER,
        note=note or f"轉帳至 {to_name}",
    )
    incoming = LedgerEntry(
        amount=plan.amount,
        type=INCOME,
        date=on_date,
        category=TRANSFER_CATEGORY,
        account_id=plan.to_account_id,
        kind=EntryKind.TRANSFER,
        note=note or f"從 {from_name} 轉入",
    )
    return outgoing, incoming


def adjustment_entry(
    account_id: int,
    direction: str,
    amount: Decimal,
    on_date: date,
    note: Optional[str] = None,
) -> LedgerEntry:
    value = _coerce_amount(amount)
    if value < ZERO:
        raise ValidationError("Adjustment amount cannot be negative.")
    if value == ZERO:
        raise ValidationError("Adjustment amount must be greater than zero.")
    normalized = direction.strip().lower()
    if normalized == "increase":
        entry_type = INCOME
    elif normalized == "decrease":
        entry_type = EXPENSE
    else:
        raise ValidationError("Adjustment direction must be 'increase' or 'decrease'.")
    return LedgerEntry(
        amount=value,
        type=entry_type,
        date=on_date,
        category=ADJUSTMENT_CATEGORY,
        account_id=account_id,
        kind=EntryKind.ADJUSTMENT,
        note=note,
    )


def reconstruct_net_worth(
    current_net_worth: Decimal,
    entries: Iterable[DatedAmount],
    at: date,
) -> Decimal:
    value = _coerce_amount(current_net_worth)
    for entry in entries:
        if entry.date > at:
            value -= signed_amount(entry.type, entry.amount)
    return max(value, ZERO)


HISTORY_WINDOWS = {"1M": 1, "3M": 3, "6M": 6, "1Y": 12, "5Y": 60, "MAX": None}


def history_sample_points(window: str, today: date, earliest: Optional[date] = None) -> List[date]:
    """Dates at which net worth is sampled for ``window``.

    ``MAX`` reaches back to the month of ``earliest``, the oldest ledger
    date, and always yields at least two monthly points.
    """
    normalized = window.strip().upper()
    if normalized not in HISTORY_WINDOWS:
        raise ValidationError("Invalid window. Use 1M, 3M, 6M, 1Y, 5Y or MAX.")
    months = HISTORY_WINDOWS[normalized]
    if months is None:
        start = min(earliest or today, today)
        months = max((today.year - start.year) * 12 + today.month - start.month + 1, 2)
    if months == 1:
        return [today.replace(day=day) for day in range(1, today.day + 1)]

    points: List[date] = []
    current_month = month_start(today)
    for offset in range(months - 1, -1, -1):
        if offset == 0:
            points.append(today)
        else:
            points.append(month_end(shift_month(current_month, -offset)))
    return points


def _is_live_account(account_id: Optional[int], known_accounts: Container[int]) -> bool:
    return account_id is not None and account_id in known_accounts


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
