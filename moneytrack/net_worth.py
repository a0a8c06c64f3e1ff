from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional

from moneytrack.currency_conversion import normalize_currency
from moneytrack.ledger_reconciliation import (
    DatedAmount,
    LedgerEntry,
    history_sample_points,
    reconstruct_net_worth,
)

ZERO = Decimal("0")
ONE = Decimal("1")


@dataclass(frozen=True)
class AccountBalance:
    id: int
    name: str
    type: str
    balance: Decimal
    currency: str
    exchange_rate: Optional[Decimal] = None
    include_in_total: bool = True


@dataclass(frozen=True)
class NetWorthSummary:
    currency: str
    net_worth: Decimal
    total_assets: Decimal
    total_liabilities: Decimal
    breakdown: Mapping[str, Decimal]


@dataclass(frozen=True)
class HistoryPoint:
    date: date
    net_worth: Decimal


def account_rate(
    account: AccountBalance,
    rates: Optional[Mapping[str, Decimal]],
    reporting_currency: str,
) -> Decimal:
    """Reporting-currency units per one unit of the account currency.

    The rate stored on the account wins. The oracle table only fills in
    for accounts that carry no rate of their own.
    """
    currency = normalize_currency(account.currency)
    if currency == normalize_currency(reporting_currency):
        return ONE
    if account.exchange_rate is not None:
        return _coerce_amount(account.exchange_rate)
    if rates and currency in rates:
        return _coerce_amount(rates[currency])
    return ONE


def convert_balance(
    account: AccountBalance,
    rates: Optional[Mapping[str, Decimal]],
    reporting_currency: str,
) -> Decimal:
    return _coerce_amount(account.balance) * account_rate(account, rates, reporting_currency)


def summarize_net_worth(
    accounts: Iterable[AccountBalance],
    rates: Optional[Mapping[str, Decimal]] = None,
    reporting_currency: str = "TWD",
) -> NetWorthSummary:
    total_assets = ZERO
    total_liabilities = ZERO
    breakdown: Dict[str, Decimal] = {}
    for account in accounts:
        if not account.include_in_total:
            continue
        converted = convert_balance(account, rates, reporting_currency)
        if converted >= ZERO:
            total_assets += converted
        else:
            total_liabilities += -converted
        breakdown[account.type] = breakdown.get(account.type, ZERO) + converted
    return NetWorthSummary(
        currency=normalize_currency(reporting_currency),
        net_worth=total_assets - total_liabilities,
        total_assets=total_assets,
        total_liabilities=total_liabilities,
        breakdown=breakdown,
    )


def history_amounts(
    entries: Iterable[LedgerEntry],
    accounts: Iterable[AccountBalance],
    rates: Optional[Mapping[str, Decimal]] = None,
    reporting_currency: str = "TWD",
) -> List[DatedAmount]:
    included = {account.id: account for account in accounts if account.include_in_total}
    amounts: List[DatedAmount] = []
    for entry in entries:
        account = included.get(entry.account_id) if entry.account_id is not None else None
        if account is None:
            continue
        rate = account_rate(account, rates, reporting_currency)
        amounts.append(
            DatedAmount(date=entry.date, type=entry.type, amount=_coerce_amount(entry.amount) * rate)
        )
    return amounts


def net_worth_history(
    current_net_worth: Decimal,
    entries: Iterable[LedgerEntry],
    accounts: Iterable[AccountBalance],
    window: str,
    today: date,
    rates: Optional[Mapping[str, Decimal]] = None,
    reporting_currency: str = "TWD",
) -> List[HistoryPoint]:
    amounts = history_amounts(entries, accounts, rates, reporting_currency)
    earliest = min((amount.date for amount in amounts), default=None)
    return [
        HistoryPoint(date=point, net_worth=reconstruct_net_worth(current_net_worth, amounts, point))
        for point in history_sample_points(window, today, earliest)
    ]


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
