from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Iterable, List, Optional

from moneytrack.errors import ValidationError

ZERO = Decimal("0")
HUNDRED = Decimal("100")

FIXED_INCOME = "fixed_income"
FIXED_EXPENSE = "fixed_expense"
EXTRA_INCOME = "extra_income"

AUTO_ITEM_NAME = "上月額外收入"
AUTO_ITEM_EPSILON = Decimal("0.01")


class ItemType:
    values = {FIXED_INCOME, FIXED_EXPENSE, EXTRA_INCOME}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValidationError("Invalid budget item type.")
        return normalized


class CategoryPool:
    FIXED = "fixed"
    EXTRA = "extra"
    values = {FIXED, EXTRA}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValidationError("Category type must be 'fixed' or 'extra'.")
        return normalized


@dataclass(frozen=True)
class BudgetItem:
    type: str
    name: str
    amount: Decimal
    is_auto_calculated: bool = False
    id: Optional[int] = None


@dataclass(frozen=True)
class BudgetCategory:
    name: str
    type: str = CategoryPool.FIXED
    percentage: Decimal = ZERO
    extra_percentage: Decimal = ZERO
    color: str = ""
    icon: Optional[str] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class BudgetFields:
    fixed_income: Decimal = ZERO
    fixed_expense: Decimal = ZERO
    extra_income: Decimal = ZERO


@dataclass(frozen=True)
class BudgetTotals:
    fixed_income: Decimal
    fixed_expense: Decimal
    extra_income: Decimal

    @property
    def fixed_disposable(self) -> Decimal:
        return self.fixed_income - self.fixed_expense


@dataclass(frozen=True)
class CategoryAllocation:
    name: str
    fixed_allocation: Decimal
    extra_allocation: Decimal
    color: str = ""
    icon: Optional[str] = None
    category_id: Optional[int] = None

    @property
    def total(self) -> Decimal:
        return self.fixed_allocation + self.extra_allocation


@dataclass(frozen=True)
class AutoItemPlan:
    create_amount: Optional[Decimal] = None
    update_item_id: Optional[int] = None
    update_amount: Optional[Decimal] = None
    delete_ids: tuple = ()

    @property
    def write_count(self) -> int:
        writes = len(self.delete_ids)
        if self.create_amount is not None:
            writes += 1
        if self.update_item_id is not None:
            writes += 1
        return writes

    @property
    def is_noop(self) -> bool:
        return self.write_count == 0


def validate_percentage(value: Decimal | int | float | str) -> Decimal:
    percentage = _coerce_amount(value)
    if percentage < ZERO or percentage > HUNDRED:
        raise ValidationError("Percentage must be between 0 and 100.")
    return percentage


def validate_item(item: BudgetItem) -> BudgetItem:
    item_type = ItemType.validate(item.type)
    name = item.name.strip()
    if not name:
        raise ValidationError("Item name required.")
    amount = _coerce_amount(item.amount)
    if amount < ZERO:
        raise ValidationError("Item amount cannot be negative.")
    if item.is_auto_calculated and item_type != EXTRA_INCOME:
        raise ValidationError("Only extra income items can be auto-calculated.")
    return replace(item, type=item_type, name=name, amount=amount)


def validate_category(category: BudgetCategory) -> BudgetCategory:
    name = category.name.strip()
    if not name:
        raise ValidationError("Category name required.")
    return replace(
        category,
        name=name,
        type=CategoryPool.validate(category.type),
        percentage=validate_percentage(category.percentage),
        extra_percentage=validate_percentage(category.extra_percentage),
    )


def sum_items(items: Iterable[BudgetItem], item_type: str) -> Decimal:
    total = ZERO
    for item in items:
        if item.type != item_type:
            continue
        total += _coerce_amount(item.amount)
    return total


def budget_totals(fields: BudgetFields, items: Iterable[BudgetItem]) -> BudgetTotals:
    """Pool bases for a month.

    Itemized lines win over the Budget-level aggregates for every type that
    has at least one item; the aggregates only fill in for empty types.
    """
    items = list(items)
    present = {item.type for item in items}

    def pick(item_type: str, fallback: Decimal) -> Decimal:
        if item_type in present:
            return sum_items(items, item_type)
        return _coerce_amount(fallback)

    return BudgetTotals(
        fixed_income=pick(FIXED_INCOME, fields.fixed_income),
        fixed_expense=pick(FIXED_EXPENSE, fields.fixed_expense),
        extra_income=pick(EXTRA_INCOME, fields.extra_income),
    )


def allocate_categories(
    totals: BudgetTotals, categories: Iterable[BudgetCategory]
) -> List[CategoryAllocation]:
    allocations: List[CategoryAllocation] = []
    for category in categories:
        fixed_allocation = ZERO
        if category.type == CategoryPool.FIXED:
            fixed_allocation = totals.fixed_disposable * _coerce_amount(category.percentage) / HUNDRED
        extra_allocation = totals.extra_income * _coerce_amount(category.extra_percentage) / HUNDRED
        allocations.append(
            CategoryAllocation(
                name=category.name,
                fixed_allocation=fixed_allocation,
                extra_allocation=extra_allocation,
                color=category.color,
                icon=category.icon,
                category_id=category.id,
            )
        )
    return allocations


def calculate_previous_extra(previous_income: Decimal, fixed_income: Decimal) -> Decimal:
    return max(ZERO, _coerce_amount(previous_income) - _coerce_amount(fixed_income))


def plan_auto_extra_income(items: Iterable[BudgetItem], calculated: Decimal) -> AutoItemPlan:
    calculated = _coerce_amount(calculated)
    auto_items = sorted(
        (item for item in items if item.type == EXTRA_INCOME and item.is_auto_calculated),
        key=lambda item: item.id if item.id is not None else 0,
    )
    if not auto_items:
        return AutoItemPlan(create_amount=calculated)

    keep, duplicates = auto_items[0], auto_items[1:]
    plan = AutoItemPlan(delete_ids=tuple(item.id for item in duplicates))
    if abs(_coerce_amount(keep.amount) - calculated) > AUTO_ITEM_EPSILON:
        plan = replace(plan, update_item_id=keep.id, update_amount=calculated)
    return plan


def apply_auto_item_plan(items: Iterable[BudgetItem], plan: AutoItemPlan) -> List[BudgetItem]:
    result: List[BudgetItem] = []
    for item in items:
        if item.id is not None and item.id in plan.delete_ids:
            continue
        if plan.update_item_id is not None and item.id == plan.update_item_id:
            item = replace(item, amount=plan.update_amount)
        result.append(item)
    if plan.create_amount is not None:
        result.append(
            BudgetItem(
                type=EXTRA_INCOME,
                name=AUTO_ITEM_NAME,
                amount=plan.create_amount,
                is_auto_calculated=True,
            )
        )
    return result


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
