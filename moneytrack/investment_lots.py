from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional

from moneytrack.errors import ValidationError
from moneytrack.ledger_reconciliation import (
    EXPENSE,
    INCOME,
    POSITION_DECREASE_CATEGORY,
    POSITION_INCREASE_CATEGORY,
    STOCK_BUY_CATEGORY,
    STOCK_SELL_CATEGORY,
    EntryKind,
    LedgerEntry,
)

ZERO = Decimal("0")
HUNDRED = Decimal("100")
QUANTITY_TOLERANCE = Decimal("0.00000001")

BUY = "buy"
SELL = "sell"


class TradeType:
    values = {BUY, SELL}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValidationError("Investment type must be 'buy' or 'sell'.")
        return normalized


@dataclass(frozen=True)
class InvestmentTrade:
    trade_type: str
    quantity: Decimal
    price: Decimal
    trade_date: date
    fees: Decimal = ZERO
    id: Optional[int] = None


@dataclass(frozen=True)
class LotState:
    quantity: Decimal = ZERO
    average_cost: Decimal = ZERO

    @property
    def closed(self) -> bool:
        return is_closed(self.quantity)


@dataclass(frozen=True)
class TradeOutcome:
    trade_id: Optional[int]
    trade_type: str
    average_cost_before: Decimal
    realized_profit: Decimal
    fees: Decimal


@dataclass(frozen=True)
class ReplayResult:
    state: LotState
    outcomes: tuple
    trade_count: int

    @property
    def should_delete(self) -> bool:
        return self.trade_count == 0 or self.state.closed


@dataclass(frozen=True)
class ProfitLoss:
    cost_basis: Decimal
    market_value: Decimal
    unrealized: Decimal
    percent: Decimal


def validate_trade(trade: InvestmentTrade) -> InvestmentTrade:
    trade_type = TradeType.validate(trade.trade_type)
    quantity = _coerce_amount(trade.quantity)
    price = _coerce_amount(trade.price)
    fees = _coerce_amount(trade.fees if trade.fees is not None else ZERO)
    if quantity <= ZERO:
        raise ValidationError("Investment quantity must be greater than zero.")
    if price <= ZERO:
        raise ValidationError("Investment price must be greater than zero.")
    if fees < ZERO:
        raise ValidationError("Fees cannot be negative.")
    if trade_type == SELL and fees >= quantity * price:
        raise ValidationError("Fees cannot exceed sale proceeds.")
    return InvestmentTrade(
        trade_type=trade_type,
        quantity=quantity,
        price=price,
        trade_date=trade.trade_date,
        fees=fees,
        id=trade.id,
    )


def is_closed(quantity: Decimal) -> bool:
    return _coerce_amount(quantity) <= QUANTITY_TOLERANCE


def apply_trade(state: LotState, trade: InvestmentTrade) -> LotState:
    if trade.trade_type == BUY:
        new_quantity = state.quantity + trade.quantity
        new_average = (
            state.quantity * state.average_cost + trade.quantity * trade.price
        ) / new_quantity
        return LotState(quantity=new_quantity, average_cost=new_average)

    if trade.trade_type == SELL:
        if trade.quantity > state.quantity + QUANTITY_TOLERANCE:
            raise ValidationError("Insufficient quantity to sell.")
        remaining = state.quantity - trade.quantity
        if is_closed(remaining):
            remaining = ZERO
        return LotState(quantity=remaining, average_cost=state.average_cost)

    raise ValidationError(f"Unsupported trade type: {trade.trade_type}")


def trade_outcome(state_before: LotState, trade: InvestmentTrade) -> TradeOutcome:
    realized = ZERO
    if trade.trade_type == SELL:
        realized = trade.quantity * (trade.price - state_before.average_cost)
    return TradeOutcome(
        trade_id=trade.id,
        trade_type=trade.trade_type,
        average_cost_before=state_before.average_cost,
        realized_profit=realized,
        fees=trade.fees,
    )


def replay_trades(trades: Iterable[InvestmentTrade]) -> ReplayResult:
    """Rebuild a lot from scratch in chronological order.

    Average cost does not decompose per trade, so removing a trade means
    replaying what is left rather than subtracting its contribution.
    """
    ordered = sorted(
        trades,
        key=lambda trade: (trade.trade_date, trade.id if trade.id is not None else 0),
    )
    state = LotState()
    outcomes: List[TradeOutcome] = []
    for trade in ordered:
        outcomes.append(trade_outcome(state, trade))
        state = apply_trade(state, trade)
    return ReplayResult(state=state, outcomes=tuple(outcomes), trade_count=len(ordered))


def cash_effect(trade: InvestmentTrade) -> Decimal:
    gross = trade.quantity * trade.price
    if trade.trade_type == BUY:
        return gross + trade.fees
    return gross - trade.fees


def position_value(trade: InvestmentTrade) -> Decimal:
    return trade.quantity * trade.price


def ensure_payment_covers(trade: InvestmentTrade, payment_balance: Decimal) -> None:
    if trade.trade_type == BUY and _coerce_amount(payment_balance) - cash_effect(trade) < ZERO:
        raise ValidationError("Insufficient balance in payment account.")


def profit_loss(quantity: Decimal, average_cost: Decimal, current_price: Decimal) -> ProfitLoss:
    quantity = _coerce_amount(quantity)
    average_cost = _coerce_amount(average_cost)
    current_price = _coerce_amount(current_price)
    cost_basis = quantity * average_cost
    market_value = quantity * current_price
    unrealized = quantity * (current_price - average_cost)
    percent = unrealized / cost_basis * HUNDRED if cost_basis != ZERO else ZERO
    return ProfitLoss(
        cost_basis=cost_basis,
        market_value=market_value,
        unrealized=unrealized,
        percent=percent,
    )


def trade_profit(
    trade: InvestmentTrade,
    outcome: Optional[TradeOutcome],
    current_price: Optional[Decimal],
) -> Decimal:
    """Profit or loss carried by the position-change entry of a trade.

    Buys are marked to the current price; sells carry the gain realized
    against the average cost held before the sale.
    """
    if trade.trade_type == BUY:
        if current_price is None:
            return ZERO
        return trade.quantity * (_coerce_amount(current_price) - trade.price)
    if outcome is None:
        return ZERO
    return outcome.realized_profit


def describe_trade(trade: InvestmentTrade, name: str, ticker: str) -> tuple[str, str]:
    action = "買入" if trade.trade_type == BUY else "賣出"
    quantity = _format_decimal(trade.quantity)
    price = _format_decimal(trade.price)
    cash_note = f"{action} {name} ({ticker}) {quantity} 股 @ ${price}"
    if trade.fees > ZERO:
        cash_note += f" (手續費 ${_format_decimal(trade.fees)})"
    position_note = f"{action} {name} ({ticker}) {quantity} 股"
    return cash_note, position_note


def trade_ledger_entries(
    trade: InvestmentTrade,
    name: str,
    ticker: str,
    payment_account_id: int,
    broker_account_id: int,
) -> tuple[LedgerEntry, LedgerEntry]:
    cash_note, position_note = describe_trade(trade, name, ticker)
    is_buy = trade.trade_type == BUY
    cash_entry = LedgerEntry(
        amount=cash_effect(trade),
        type=EXPENSE if is_buy else INCOME,
        date=trade.trade_date,
        category=STOCK_BUY_CATEGORY if is_buy else STOCK_SELL_CATEGORY,
        account_id=payment_account_id,
        kind=EntryKind.INVESTMENT_CASH,
        note=cash_note,
        investment_transaction_id=trade.id,
    )
    position_entry = LedgerEntry(
        amount=position_value(trade),
        type=INCOME if is_buy else EXPENSE,
        date=trade.trade_date,
        category=POSITION_INCREASE_CATEGORY if is_buy else POSITION_DECREASE_CATEGORY,
        account_id=broker_account_id,
        kind=EntryKind.INVESTMENT_POSITION,
        note=position_note,
        investment_transaction_id=trade.id,
    )
    return cash_entry, position_entry


def _format_decimal(value: Decimal) -> str:
    normalized = _coerce_amount(value).normalize()
    return format(normalized, "f")


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
