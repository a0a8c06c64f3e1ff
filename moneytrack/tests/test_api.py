import unittest
from datetime import date
from decimal import Decimal
from unittest import mock

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from moneytrack import main
from moneytrack.currency_conversion import StaticRateProvider
from moneytrack.ledger_reconciliation import EXPENSE, LedgerEntry
from moneytrack.schema import metadata


class FakePriceOracle:
    def __init__(self, prices) -> None:
        self.prices = prices

    def get_price(self, ticker, market):
        return self.prices.get(ticker)


def amount(value) -> Decimal:
    return Decimal(str(value))


class ApiTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        metadata.create_all(self.engine)
        self.oracle = FakePriceOracle({})
        for target, value in (
            ("engine", self.engine),
            ("FX_PROVIDER", StaticRateProvider()),
            ("PRICE_ORACLE", self.oracle),
        ):
            patcher = mock.patch.object(main, target, value)
            patcher.start()
            self.addCleanup(patcher.stop)
        self.client = TestClient(main.app)
        response = self.client.post(
            "/auth/signup", json={"email": "Owner@Example.com", "password": "secret"}
        )
        self.assertEqual(response.status_code, 200)
        self.headers = {"x-user-id": str(response.json()["id"])}

    def create_account(self, name, balance, account_type="bank", currency=None):
        payload = {"name": name, "type": account_type, "balance": str(balance)}
        if currency:
            payload["currency"] = currency
        response = self.client.post("/accounts", json=payload, headers=self.headers)
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()["id"]

    def balance(self, account_id) -> Decimal:
        response = self.client.get("/accounts", headers=self.headers)
        for account in response.json():
            if account["id"] == account_id:
                return amount(account["balance"])
        raise AssertionError(f"account {account_id} missing")

    def post_ledger(self, entry_type, value, category, account_id, day="2024-05-05"):
        response = self.client.post(
            "/ledger",
            json={
                "type": entry_type,
                "amount": str(value),
                "category": category,
                "account_id": account_id,
                "date": day,
            },
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()


class AuthAndCategoryTests(ApiTestCase):
    def test_login_and_duplicate_signup(self) -> None:
        login = self.client.post(
            "/auth/login", json={"email": "owner@example.com", "password": "secret"}
        )
        self.assertEqual(login.status_code, 200)
        bad = self.client.post("/auth/login", json={"email": "owner@example.com", "password": "nope"})
        self.assertEqual(bad.status_code, 401)
        duplicate = self.client.post(
            "/auth/signup", json={"email": "owner@example.com", "password": "x"}
        )
        self.assertEqual(duplicate.status_code, 409)

    def test_identity_header_required(self) -> None:
        self.assertEqual(self.client.get("/accounts").status_code, 401)
        self.assertEqual(self.client.get("/accounts", headers={"x-user-id": "999"}).status_code, 404)

    def test_default_categories_seeded(self) -> None:
        response = self.client.get("/categories", headers=self.headers)

        names = [row["name"] for row in response.json()]
        self.assertEqual(len(names), 12)
        self.assertIn("薪資", names)

    def test_category_in_use_cannot_be_deleted(self) -> None:
        account_id = self.create_account("現金", "1000")
        self.post_ledger("expense", "80", "餐飲", account_id)
        categories = {row["name"]: row["id"] for row in self.client.get("/categories", headers=self.headers).json()}

        in_use = self.client.delete(f"/categories/{categories['餐飲']}", headers=self.headers)
        unused = self.client.delete(f"/categories/{categories['旅遊']}", headers=self.headers)

        self.assertEqual(in_use.status_code, 409)
        self.assertEqual(unused.status_code, 200)


class LedgerApiTests(ApiTestCase):
    def test_create_edit_delete_keeps_balance_consistent(self) -> None:
        account_id = self.create_account("現金", "1000")

        entry = self.post_ledger("income", "500", "薪資", account_id)
        self.assertEqual(self.balance(account_id), Decimal("1500"))

        response = self.client.patch(
            f"/ledger/{entry['id']}",
            json={
                "type": "expense",
                "amount": "200",
                "category": "餐飲",
                "account_id": account_id,
                "date": "2024-05-06",
            },
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(self.balance(account_id), Decimal("800"))

        response = self.client.delete(f"/ledger/{entry['id']}", headers=self.headers)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.balance(account_id), Decimal("1000"))

    def test_ledger_rejections(self) -> None:
        account_id = self.create_account("現金", "1000")

        zero = self.client.post(
            "/ledger",
            json={"type": "expense", "amount": "0", "category": "餐飲", "account_id": account_id, "date": "2024-05-01"},
            headers=self.headers,
        )
        missing = self.client.post(
            "/ledger",
            json={"type": "expense", "amount": "5", "category": "餐飲", "account_id": 999, "date": "2024-05-01"},
            headers=self.headers,
        )

        self.assertEqual(zero.status_code, 400)
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.json()["detail"], "Account not found.")
        self.assertEqual(self.balance(account_id), Decimal("1000"))

    def test_filters_by_date_and_account(self) -> None:
        cash = self.create_account("現金", "1000")
        bank = self.create_account("銀行", "1000")
        self.post_ledger("expense", "10", "餐飲", cash, day="2024-04-30")
        self.post_ledger("expense", "20", "餐飲", cash, day="2024-05-02")
        self.post_ledger("expense", "30", "交通", bank, day="2024-05-03")

        response = self.client.get(
            "/ledger",
            params={"start_date": "2024-05-01", "account_id": cash},
            headers=self.headers,
        )

        self.assertEqual([amount(row["amount"]) for row in response.json()], [Decimal("20")])

    def test_transfer_and_adjustment(self) -> None:
        cash = self.create_account("現金", "1000")
        bank = self.create_account("銀行", "0")

        response = self.client.post(
            "/transfer",
            json={"from_account_id": cash, "to_account_id": bank, "amount": "400", "date": "2024-05-01"},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["outgoing"]["kind"], "transfer")
        self.assertEqual(self.balance(cash), Decimal("600"))
        self.assertEqual(self.balance(bank), Decimal("400"))

        too_much = self.client.post(
            "/transfer",
            json={"from_account_id": cash, "to_account_id": bank, "amount": "601", "date": "2024-05-01"},
            headers=self.headers,
        )
        self.assertEqual(too_much.status_code, 400)
        self.assertEqual(too_much.json()["detail"], "Insufficient balance.")

        adjust = self.client.post(
            f"/accounts/{bank}/adjust",
            json={"direction": "decrease", "amount": "50", "date": "2024-05-02"},
            headers=self.headers,
        )
        self.assertEqual(adjust.status_code, 200, adjust.text)
        self.assertEqual(adjust.json()["category"], "餘額調整")
        self.assertEqual(self.balance(bank), Decimal("350"))

    def test_deleting_account_keeps_ledger_history(self) -> None:
        cash = self.create_account("現金", "1000")
        entry = self.post_ledger("expense", "10", "餐飲", cash)

        response = self.client.delete(f"/accounts/{cash}", headers=self.headers)

        self.assertEqual(response.status_code, 200)
        rows = self.client.get("/ledger", headers=self.headers).json()
        self.assertEqual([(row["id"], row["account_id"]) for row in rows], [(entry["id"], None)])

    def test_deleted_account_entries_keep_their_currency(self) -> None:
        broker = self.create_account("美股", "100", currency="USD")
        self.post_ledger("expense", "10", "餐飲", broker)

        self.client.delete(f"/accounts/{broker}", headers=self.headers)

        row = self.client.get("/ledger", headers=self.headers).json()[0]
        self.assertIsNone(row["account_id"])
        self.assertEqual(row["currency"], "USD")

    def test_converter_uses_recorded_currency_without_account(self) -> None:
        convert = main.ledger_converter([], {"TWD": Decimal("1"), "USD": Decimal("30")}, "TWD")

        def orphan(currency):
            return LedgerEntry(
                amount=Decimal("10"), type=EXPENSE, date=date(2024, 5, 1), category="餐飲", currency=currency
            )

        self.assertEqual(convert(orphan("USD")), Decimal("300"))
        self.assertEqual(convert(orphan("TWD")), Decimal("10"))
        self.assertEqual(convert(orphan(None)), Decimal("10"))
        self.assertEqual(convert(orphan("KRW")), Decimal("0"))


class InvestmentApiTests(ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.bank = self.create_account("銀行", "100000")
        self.broker = self.create_account("證券", "0", account_type="台股")

    def trade(self, trade_type, quantity, price, day, fees="0"):
        return self.client.post(
            "/investments/transactions",
            json={
                "broker_account_id": self.broker,
                "payment_account_id": self.bank,
                "ticker": "2330",
                "name": "台積電",
                "type": trade_type,
                "quantity": quantity,
                "price": price,
                "fees": fees,
                "date": day,
            },
            headers=self.headers,
        )

    def holdings(self):
        return self.client.get("/investments/holdings", headers=self.headers).json()

    def test_average_cost_and_balances(self) -> None:
        first = self.trade("buy", "10", "100", "2024-05-01", fees="20")
        self.assertEqual(first.status_code, 200, first.text)
        self.assertEqual(self.trade("buy", "10", "200", "2024-05-02").status_code, 200)

        holding = self.holdings()[0]
        self.assertEqual(amount(holding["quantity"]), Decimal("20"))
        self.assertEqual(amount(holding["average_cost"]), Decimal("150"))
        self.assertEqual(self.balance(self.bank), Decimal("96980"))
        self.assertEqual(self.balance(self.broker), Decimal("3000"))

        sell = self.trade("sell", "5", "300", "2024-05-03")
        self.assertEqual(sell.status_code, 200, sell.text)
        holding = self.holdings()[0]
        self.assertEqual(amount(holding["quantity"]), Decimal("15"))
        self.assertEqual(amount(holding["average_cost"]), Decimal("150"))
        self.assertEqual(self.balance(self.bank), Decimal("98480"))
        self.assertEqual(self.balance(self.broker), Decimal("1500"))

    def test_trade_rejections(self) -> None:
        no_holding = self.trade("sell", "1", "100", "2024-05-01")
        self.assertEqual(no_holding.status_code, 400)
        self.assertEqual(no_holding.json()["detail"], "No holding to sell.")

        self.assertEqual(self.trade("buy", "10", "100", "2024-05-01").status_code, 200)
        oversell = self.trade("sell", "11", "100", "2024-05-02")
        self.assertEqual(oversell.status_code, 400)
        self.assertEqual(oversell.json()["detail"], "Insufficient quantity to sell.")

        broke = self.trade("buy", "1000", "100", "2024-05-02")
        self.assertEqual(broke.status_code, 400)
        self.assertEqual(self.balance(self.bank), Decimal("99000"))

    def test_investment_entries_cannot_be_edited_directly(self) -> None:
        self.assertEqual(self.trade("buy", "1", "100", "2024-05-01").status_code, 200)
        entry = self.client.get("/ledger", headers=self.headers).json()[0]

        response = self.client.delete(f"/ledger/{entry['id']}", headers=self.headers)

        self.assertEqual(response.status_code, 400)

    def test_deleting_transaction_replays_remaining(self) -> None:
        first = self.trade("buy", "10", "100", "2024-05-01", fees="20").json()
        second = self.trade("buy", "10", "200", "2024-05-02").json()
        self.trade("sell", "5", "300", "2024-05-03")

        response = self.client.delete(f"/investments/transactions/{first['id']}", headers=self.headers)
        self.assertEqual(response.status_code, 200)
        holding = self.holdings()[0]
        self.assertEqual(amount(holding["quantity"]), Decimal("5"))
        self.assertEqual(amount(holding["average_cost"]), Decimal("200"))
        self.assertEqual(self.balance(self.bank), Decimal("99500"))
        self.assertEqual(self.balance(self.broker), Decimal("500"))

        rejected = self.client.delete(f"/investments/transactions/{second['id']}", headers=self.headers)
        self.assertEqual(rejected.status_code, 400)
        self.assertEqual(self.balance(self.bank), Decimal("99500"))
        self.assertEqual(len(self.holdings()), 1)

    def test_selling_everything_removes_holding(self) -> None:
        self.trade("buy", "3", "100", "2024-05-01")
        self.trade("sell", "3", "120", "2024-05-02")

        self.assertEqual(self.holdings(), [])
        transactions = self.client.get("/investments/transactions", headers=self.headers).json()
        self.assertEqual(len(transactions), 2)

    def test_sync_prices_revalues_broker_account(self) -> None:
        self.trade("buy", "10", "100", "2024-05-01")
        self.oracle.prices["2330"] = Decimal("125")

        response = self.client.post("/investments/sync-prices", headers=self.headers)

        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        self.assertEqual(body["updated"], 1)
        self.assertEqual(body["revalued_accounts"], [self.broker])
        self.assertEqual(amount(body["holdings"][0]["unrealized"]), Decimal("250"))
        self.assertEqual(self.balance(self.broker), Decimal("1250"))
        revaluation = [
            row for row in self.client.get("/ledger", headers=self.headers).json() if row["kind"] == "revaluation"
        ]
        self.assertEqual(len(revaluation), 1)
        self.assertEqual(amount(revaluation[0]["amount"]), Decimal("250"))

        again = self.client.post("/investments/sync-prices", headers=self.headers)
        self.assertEqual(again.json()["revalued_accounts"], [])

    def test_deleting_holding_reverses_its_entries(self) -> None:
        self.trade("buy", "10", "100", "2024-05-01", fees="20")
        holding_id = self.holdings()[0]["id"]

        response = self.client.delete(f"/investments/holdings/{holding_id}", headers=self.headers)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.balance(self.bank), Decimal("100000"))
        self.assertEqual(self.balance(self.broker), Decimal("0"))
        self.assertEqual(self.client.get("/ledger", headers=self.headers).json(), [])


class BudgetApiTests(ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.bank = self.create_account("銀行", "0")
        self.post_ledger("income", "52000", "薪資", self.bank, day="2024-05-05")
        self.post_ledger("expense", "300", "餐飲", self.bank, day="2024-06-03")
        response = self.client.post(
            "/budgets",
            json={"month": "2024-06", "fixed_income": "50000", "fixed_expense": "20000"},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200, response.text)
        self.budget_id = response.json()["id"]

    def auto_items(self):
        items = self.client.get(f"/budgets/{self.budget_id}/items", headers=self.headers).json()
        return [item for item in items if item["is_auto_calculated"]]

    def test_previous_income(self) -> None:
        response = self.client.get("/budgets/2024-06/previous-income", headers=self.headers)

        body = response.json()
        self.assertEqual(body["previous_month"], "2024-05")
        self.assertEqual(amount(body["previous_income"]), Decimal("52000"))
        self.assertEqual(amount(body["calculated_extra"]), Decimal("2000"))

    def test_reconcile_is_idempotent(self) -> None:
        first = self.client.post("/budgets/2024-06/reconcile", headers=self.headers).json()
        second = self.client.post("/budgets/2024-06/reconcile", headers=self.headers).json()

        self.assertTrue(first["created"])
        self.assertFalse(second["created"])
        self.assertFalse(second["updated"])
        self.assertEqual(amount(second["item"]["amount"]), Decimal("2000"))
        self.assertEqual(len(self.auto_items()), 1)

    def test_auto_item_follows_previous_income(self) -> None:
        self.client.post("/budgets/2024-06/reconcile", headers=self.headers)
        self.post_ledger("income", "1000", "禮物", self.bank, day="2024-05-20")

        result = self.client.post("/budgets/2024-06/reconcile", headers=self.headers).json()

        self.assertTrue(result["updated"])
        self.assertEqual(amount(result["item"]["amount"]), Decimal("3000"))

    def test_auto_item_cannot_be_edited(self) -> None:
        self.client.post("/budgets/2024-06/reconcile", headers=self.headers)
        item_id = self.auto_items()[0]["id"]

        response = self.client.patch(
            f"/budgets/items/{item_id}", json={"amount": "1"}, headers=self.headers
        )

        self.assertEqual(response.status_code, 400)

    def test_duplicate_month_and_bad_month(self) -> None:
        duplicate = self.client.post("/budgets", json={"month": "2024-06"}, headers=self.headers)
        invalid = self.client.get("/budgets/2024-13", headers=self.headers)
        missing = self.client.get("/budgets/2023-01", headers=self.headers)

        self.assertEqual(duplicate.status_code, 409)
        self.assertEqual(invalid.status_code, 400)
        self.assertEqual(missing.status_code, 404)

    def test_summary_combines_budget_and_jars(self) -> None:
        self.client.post(
            f"/budgets/{self.budget_id}/categories",
            json={"name": "餐飲", "percentage": "50", "extra_percentage": "100"},
            headers=self.headers,
        )
        jar = self.client.post(
            "/savings-jars",
            json={"name": "旅行基金", "target_amount": "10000", "include_in_disposable": True},
            headers=self.headers,
        ).json()
        self.client.post(
            f"/savings-jars/{jar['id']}/categories",
            json={"name": "旅遊", "percentage": "100"},
            headers=self.headers,
        )
        self.post_ledger("income", "5000", "禮物", self.bank, day="2024-05-10")
        deposit = self.client.post(
            f"/savings-jars/{jar['id']}/deposits",
            json={"amount": "1000", "date": "2024-06-04", "account_id": self.bank},
            headers=self.headers,
        )
        self.assertEqual(deposit.status_code, 200, deposit.text)

        response = self.client.get("/budgets/2024-06/summary", headers=self.headers)

        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        rows = {row["name"]: row for row in body["categories"]}
        self.assertEqual(amount(body["extra_income"]), Decimal("7000"))
        self.assertEqual(amount(rows["餐飲"]["budget_amount"]), Decimal("22000"))
        self.assertEqual(amount(rows["餐飲"]["used"]), Decimal("300"))
        self.assertEqual(amount(rows["旅遊"]["jar_amount"]), Decimal("1000"))
        self.assertEqual(amount(body["jar_total"]), Decimal("1000"))
        self.assertEqual(amount(body["total_expense"]), Decimal("300"))

        history = self.client.get("/budgets/history/disposable-income", headers=self.headers).json()
        self.assertEqual([entry["month"] for entry in history], ["2024-06"])
        self.assertEqual(amount(history[0]["total_disposable"]), amount(body["total_disposable"]))


class SavingsJarApiTests(ApiTestCase):
    def test_deposit_requires_balance(self) -> None:
        bank = self.create_account("銀行", "500")
        jar = self.client.post("/savings-jars", json={"name": "緊急預備金"}, headers=self.headers).json()

        rejected = self.client.post(
            f"/savings-jars/{jar['id']}/deposits",
            json={"amount": "600", "date": "2024-05-01", "account_id": bank},
            headers=self.headers,
        )
        accepted = self.client.post(
            f"/savings-jars/{jar['id']}/deposits",
            json={"amount": "200", "date": "2024-05-01", "account_id": bank},
            headers=self.headers,
        )
        cash_only = self.client.post(
            f"/savings-jars/{jar['id']}/deposits",
            json={"amount": "50", "date": "2024-05-02"},
            headers=self.headers,
        )

        self.assertEqual(rejected.status_code, 400)
        self.assertEqual(accepted.status_code, 200)
        self.assertIsNotNone(accepted.json()["ledger_entry_id"])
        self.assertIsNone(cash_only.json()["ledger_entry_id"])
        self.assertEqual(self.balance(bank), Decimal("300"))
        jars = self.client.get("/savings-jars", headers=self.headers).json()
        self.assertEqual(amount(jars[0]["current_amount"]), Decimal("250"))

    def test_deposit_entry_changes_only_through_jar(self) -> None:
        bank = self.create_account("銀行", "1000")
        jar = self.client.post("/savings-jars", json={"name": "旅遊基金"}, headers=self.headers).json()
        deposit = self.client.post(
            f"/savings-jars/{jar['id']}/deposits",
            json={"amount": "200", "date": "2024-05-01", "account_id": bank},
            headers=self.headers,
        ).json()
        entry_id = deposit["ledger_entry_id"]

        deleted = self.client.delete(f"/ledger/{entry_id}", headers=self.headers)
        edited = self.client.patch(
            f"/ledger/{entry_id}",
            json={"type": "expense", "amount": "50", "category": "存錢罐", "account_id": bank, "date": "2024-05-01"},
            headers=self.headers,
        )

        self.assertEqual(deleted.status_code, 400)
        self.assertEqual(edited.status_code, 400)
        self.assertEqual(self.balance(bank), Decimal("800"))
        jars = self.client.get("/savings-jars", headers=self.headers).json()
        self.assertEqual(amount(jars[0]["current_amount"]), Decimal("200"))


class NetWorthApiTests(ApiTestCase):
    def test_net_worth_and_history(self) -> None:
        bank = self.create_account("銀行", "10000")
        self.create_account("美股", "100", currency="USD")
        self.create_account("信用卡", "-2000", account_type="credit")
        self.post_ledger("income", "1000", "薪資", bank, day="2024-05-05")

        summary = self.client.get("/net-worth", headers=self.headers).json()

        self.assertEqual(summary["currency"], "TWD")
        self.assertEqual(amount(summary["net_worth"]), Decimal("12000"))
        self.assertEqual(amount(summary["total_liabilities"]), Decimal("2000"))

        history = self.client.get("/net-worth/history", params={"window": "1Y"}, headers=self.headers)
        self.assertEqual(history.status_code, 200)
        points = history.json()
        self.assertEqual(len(points), 12)
        self.assertEqual(amount(points[-1]["net_worth"]), Decimal("12000"))

        invalid = self.client.get("/net-worth/history", params={"window": "2W"}, headers=self.headers)
        self.assertEqual(invalid.status_code, 400)

    def test_stored_account_rate_drives_net_worth(self) -> None:
        prefilled = self.client.post(
            "/accounts",
            json={"name": "美股", "type": "investment", "balance": "100", "currency": "USD"},
            headers=self.headers,
        ).json()
        manual = self.client.post(
            "/accounts",
            json={
                "name": "美元存款",
                "type": "bank",
                "balance": "100",
                "currency": "USD",
                "exchange_rate": "31",
            },
            headers=self.headers,
        ).json()

        self.assertEqual(amount(prefilled["exchange_rate"]), Decimal("30"))
        self.assertEqual(amount(manual["exchange_rate"]), Decimal("31"))
        summary = self.client.get("/net-worth", headers=self.headers).json()
        self.assertEqual(amount(summary["net_worth"]), Decimal("6100"))

        self.client.put("/users/me/settings", json={"reporting_currency": "USD"}, headers=self.headers)

        rebased = self.client.get("/net-worth", headers=self.headers).json()
        self.assertEqual(amount(rebased["net_worth"]).quantize(Decimal("0.01")), Decimal("203.33"))

    def test_reporting_currency_setting(self) -> None:
        response = self.client.put(
            "/users/me/settings", json={"reporting_currency": "usd"}, headers=self.headers
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["reporting_currency"], "USD")

        self.create_account("銀行", "3000", currency="TWD")
        summary = self.client.get("/net-worth", headers=self.headers).json()
        rates = self.client.get("/exchange-rates", headers=self.headers).json()

        self.assertEqual(summary["currency"], "USD")
        self.assertEqual(amount(summary["net_worth"]).quantize(Decimal("0.01")), Decimal("100.00"))
        self.assertEqual(rates["base"], "USD")
        self.assertEqual(amount(rates["rates"]["USD"]), Decimal("1"))

        unknown = self.client.put(
            "/users/me/settings", json={"reporting_currency": "XYZ"}, headers=self.headers
        )
        self.assertEqual(unknown.status_code, 400)


if __name__ == "__main__":
    unittest.main()
