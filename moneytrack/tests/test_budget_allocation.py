import unittest
from decimal import Decimal

from moneytrack.budget_allocation import (
    AUTO_ITEM_NAME,
    EXTRA_INCOME,
    FIXED_EXPENSE,
    FIXED_INCOME,
    BudgetCategory,
    BudgetFields,
    BudgetItem,
    allocate_categories,
    apply_auto_item_plan,
    budget_totals,
    calculate_previous_extra,
    plan_auto_extra_income,
    validate_category,
    validate_item,
    validate_percentage,
)
from moneytrack.errors import ValidationError


class BudgetTotalsTests(unittest.TestCase):
    def test_items_override_aggregates_per_type(self) -> None:
        fields = BudgetFields(
            fixed_income=Decimal("50000"),
            fixed_expense=Decimal("20000"),
            extra_income=Decimal("3000"),
        )
        items = [
            BudgetItem(type=FIXED_INCOME, name="薪資", amount=Decimal("40000")),
            BudgetItem(type=FIXED_INCOME, name="兼職", amount=Decimal("5000")),
        ]

        totals = budget_totals(fields, items)

        self.assertEqual(totals.fixed_income, Decimal("45000"))
        self.assertEqual(totals.fixed_expense, Decimal("20000"))
        self.assertEqual(totals.extra_income, Decimal("3000"))
        self.assertEqual(totals.fixed_disposable, Decimal("25000"))

    def test_allocation_uses_both_pools(self) -> None:
        totals = budget_totals(
            BudgetFields(
                fixed_income=Decimal("30000"),
                fixed_expense=Decimal("10000"),
                extra_income=Decimal("2000"),
            ),
            [],
        )
        categories = [
            BudgetCategory(name="餐飲", type="fixed", percentage=Decimal("40"), extra_percentage=Decimal("50")),
            BudgetCategory(name="旅遊", type="extra", percentage=Decimal("40"), extra_percentage=Decimal("25")),
        ]

        food, travel = allocate_categories(totals, categories)

        self.assertEqual(food.fixed_allocation, Decimal("8000"))
        self.assertEqual(food.extra_allocation, Decimal("1000"))
        self.assertEqual(food.total, Decimal("9000"))
        self.assertEqual(travel.fixed_allocation, Decimal("0"))
        self.assertEqual(travel.extra_allocation, Decimal("500"))

    def test_full_allocation_exhausts_both_pools(self) -> None:
        totals = budget_totals(
            BudgetFields(
                fixed_income=Decimal("35000"),
                fixed_expense=Decimal("15000"),
                extra_income=Decimal("3000"),
            ),
            [],
        )
        categories = [
            BudgetCategory(name="生活", type="fixed", percentage=Decimal("33.33"), extra_percentage=Decimal("60")),
            BudgetCategory(name="儲蓄", type="fixed", percentage=Decimal("33.33"), extra_percentage=Decimal("25")),
            BudgetCategory(name="娛樂", type="fixed", percentage=Decimal("33.34"), extra_percentage=Decimal("15")),
        ]

        allocations = allocate_categories(totals, categories)

        self.assertEqual(sum(item.fixed_allocation for item in allocations), totals.fixed_disposable)
        self.assertEqual(sum(item.extra_allocation for item in allocations), totals.extra_income)

    def test_partial_allocation_stays_within_pools(self) -> None:
        totals = budget_totals(
            BudgetFields(
                fixed_income=Decimal("35000"),
                fixed_expense=Decimal("15000"),
                extra_income=Decimal("3000"),
            ),
            [],
        )
        categories = [
            BudgetCategory(name="生活", type="fixed", percentage=Decimal("45"), extra_percentage=Decimal("30")),
            BudgetCategory(name="娛樂", type="fixed", percentage=Decimal("30"), extra_percentage=Decimal("20")),
        ]

        allocations = allocate_categories(totals, categories)

        fixed_total = sum(item.fixed_allocation for item in allocations)
        extra_total = sum(item.extra_allocation for item in allocations)
        self.assertLessEqual(fixed_total, totals.fixed_disposable)
        self.assertLessEqual(extra_total, totals.extra_income)
        self.assertEqual(fixed_total, Decimal("15000"))
        self.assertEqual(extra_total, Decimal("1500"))

    def test_validation(self) -> None:
        self.assertEqual(validate_percentage("12.5"), Decimal("12.5"))
        with self.assertRaises(ValidationError):
            validate_percentage(Decimal("100.01"))
        with self.assertRaises(ValidationError):
            validate_item(BudgetItem(type="bonus", name="x", amount=Decimal("1")))
        with self.assertRaises(ValidationError):
            validate_item(
                BudgetItem(type=FIXED_EXPENSE, name="房租", amount=Decimal("1"), is_auto_calculated=True)
            )
        with self.assertRaises(ValidationError):
            validate_category(BudgetCategory(name="餐飲", type="monthly"))

    def test_previous_extra_never_negative(self) -> None:
        self.assertEqual(calculate_previous_extra(Decimal("52000"), Decimal("50000")), Decimal("2000"))
        self.assertEqual(calculate_previous_extra(Decimal("40000"), Decimal("50000")), Decimal("0"))


class AutoExtraIncomeTests(unittest.TestCase):
    def test_creates_item_when_missing(self) -> None:
        plan = plan_auto_extra_income([], Decimal("2000"))

        self.assertEqual(plan.create_amount, Decimal("2000"))
        items = apply_auto_item_plan([], plan)
        self.assertEqual(len(items), 1)
        self.assertEqual(items[0].name, AUTO_ITEM_NAME)
        self.assertTrue(items[0].is_auto_calculated)

    def test_creates_item_even_for_zero(self) -> None:
        plan = plan_auto_extra_income([], Decimal("0"))

        self.assertEqual(plan.create_amount, Decimal("0"))

    def test_second_run_is_a_noop(self) -> None:
        items = apply_auto_item_plan([], plan_auto_extra_income([], Decimal("2000")))
        items = [
            BudgetItem(
                type=item.type,
                name=item.name,
                amount=item.amount,
                is_auto_calculated=item.is_auto_calculated,
                id=index + 1,
            )
            for index, item in enumerate(items)
        ]

        plan = plan_auto_extra_income(items, Decimal("2000.004"))

        self.assertTrue(plan.is_noop)
        self.assertEqual(plan.write_count, 0)

    def test_updates_changed_amount(self) -> None:
        items = [BudgetItem(type=EXTRA_INCOME, name=AUTO_ITEM_NAME, amount=Decimal("2000"), is_auto_calculated=True, id=4)]

        plan = plan_auto_extra_income(items, Decimal("2500"))

        self.assertEqual((plan.update_item_id, plan.update_amount), (4, Decimal("2500")))
        self.assertIsNone(plan.create_amount)
        self.assertEqual(apply_auto_item_plan(items, plan)[0].amount, Decimal("2500"))

    def test_duplicates_collapse_to_oldest(self) -> None:
        items = [
            BudgetItem(type=EXTRA_INCOME, name=AUTO_ITEM_NAME, amount=Decimal("100"), is_auto_calculated=True, id=9),
            BudgetItem(type=EXTRA_INCOME, name=AUTO_ITEM_NAME, amount=Decimal("100"), is_auto_calculated=True, id=3),
            BudgetItem(type=EXTRA_INCOME, name="獎金", amount=Decimal("500"), id=5),
        ]

        plan = plan_auto_extra_income(items, Decimal("100"))

        self.assertEqual(plan.delete_ids, (9,))
        self.assertIsNone(plan.update_item_id)
        remaining = apply_auto_item_plan(items, plan)
        self.assertEqual(sorted(item.id for item in remaining), [3, 5])

    def test_manual_extra_items_are_untouched(self) -> None:
        items = [BudgetItem(type=EXTRA_INCOME, name=AUTO_ITEM_NAME, amount=Decimal("700"), id=1)]

        plan = plan_auto_extra_income(items, Decimal("100"))

        self.assertEqual(plan.create_amount, Decimal("100"))
        self.assertEqual(plan.delete_ids, ())


if __name__ == "__main__":
    unittest.main()
