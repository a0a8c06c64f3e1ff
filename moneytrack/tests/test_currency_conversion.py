import unittest
from decimal import Decimal
from unittest import mock

from moneytrack.currency_conversion import (
    CompositeRateProvider,
    ERApiRateProvider,
    RateProviderUnavailable,
    StaticRateProvider,
    convert_amount,
    reporting_rates,
)


class CurrencyConversionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.provider = StaticRateProvider(
            rates={
                "TWD": Decimal("1"),
                "USD": Decimal("30"),
                "JPY": Decimal("0.2"),
            }
        )

    def test_same_currency_returns_original_amount(self) -> None:
        amount = convert_amount(
            Decimal("12.50"),
            "USD",
            "USD",
            rate_provider=self.provider,
        )

        self.assertEqual(amount, Decimal("12.50"))

    def test_conversion_goes_through_reporting_currency(self) -> None:
        amount = convert_amount(
            Decimal("10"),
            "USD",
            "JPY",
            rate_provider=self.provider,
        )

        self.assertEqual(amount, Decimal("1500"))

    def test_normalizes_currency_codes(self) -> None:
        amount = convert_amount(
            Decimal("6"),
            " usd ",
            "twd",
            rate_provider=self.provider,
        )

        self.assertEqual(amount, Decimal("180"))

    def test_missing_currency_raises(self) -> None:
        with self.assertRaises(ValueError):
            convert_amount(
                Decimal("5"),
                "USD",
                "CAD",
                rate_provider=self.provider,
            )

    def test_default_provider_uses_fallback_table(self) -> None:
        self.assertEqual(convert_amount(Decimal("2"), "EUR", "TWD"), Decimal("66"))

    def test_falls_back_when_live_provider_unavailable(self) -> None:
        class UnavailableProvider:
            def get_rates(self):
                raise RateProviderUnavailable("Down")

        provider = CompositeRateProvider(
            primary=UnavailableProvider(),
            fallback=self.provider,
        )

        amount = convert_amount(
            Decimal("10"),
            "USD",
            "JPY",
            rate_provider=provider,
        )

        self.assertEqual(amount, Decimal("1500"))

    def test_live_rates_override_fallback(self) -> None:
        live = StaticRateProvider(rates={"TWD": Decimal("1"), "USD": Decimal("32")})
        provider = CompositeRateProvider(primary=live, fallback=self.provider)

        rates = provider.get_rates()

        self.assertEqual(rates["USD"], Decimal("32"))
        self.assertEqual(rates["JPY"], Decimal("0.2"))

    def test_reporting_rates_rebase_table(self) -> None:
        rates = reporting_rates("USD", self.provider)

        self.assertEqual(rates["USD"], Decimal("1"))
        self.assertEqual(rates["TWD"], Decimal("1") / Decimal("30"))


class ERApiRateProviderTests(unittest.TestCase):
    def test_caches_until_invalidated(self) -> None:
        provider = ERApiRateProvider()
        fetched = {"TWD": Decimal("1"), "USD": Decimal("30")}

        with mock.patch.object(ERApiRateProvider, "_fetch_rates", return_value=fetched) as fetch:
            self.assertEqual(provider.get_rates(), fetched)
            self.assertEqual(provider.get_rates(), fetched)
            self.assertEqual(fetch.call_count, 1)

            provider.invalidate()
            provider.get_rates()
            self.assertEqual(fetch.call_count, 2)

    def test_serves_stale_rates_when_refresh_fails(self) -> None:
        provider = ERApiRateProvider(cache_ttl_seconds=0)
        fetched = {"TWD": Decimal("1"), "USD": Decimal("30")}

        with mock.patch.object(ERApiRateProvider, "_fetch_rates", return_value=fetched):
            provider.get_rates()
        with mock.patch.object(
            ERApiRateProvider, "_fetch_rates", side_effect=RateProviderUnavailable("Down")
        ):
            self.assertEqual(provider.get_rates(), fetched)

    def test_raises_without_any_cached_rates(self) -> None:
        provider = ERApiRateProvider()

        with mock.patch.object(
            ERApiRateProvider, "_fetch_rates", side_effect=RateProviderUnavailable("Down")
        ):
            with self.assertRaises(RateProviderUnavailable):
                provider.get_rates()

    def test_inverts_quoted_rates(self) -> None:
        provider = ERApiRateProvider(currencies=("USD", "JPY"))
        payload = mock.MagicMock()
        payload.__enter__.return_value = payload

        with mock.patch("moneytrack.currency_conversion.urlopen", return_value=payload), mock.patch(
            "moneytrack.currency_conversion.json.load",
            return_value={"rates": {"USD": 0.04, "JPY": 5}},
        ):
            rates = provider.get_rates()

        self.assertEqual(rates["TWD"], Decimal("1"))
        self.assertEqual(rates["USD"], Decimal("25"))
        self.assertEqual(rates["JPY"], Decimal("0.2"))

    def test_live_rates_share_fallback_base_for_any_reporting_currency(self) -> None:
        live = ERApiRateProvider(currencies=("USD", "JPY"))
        composite = CompositeRateProvider(primary=live, fallback=StaticRateProvider())
        payload = mock.MagicMock()
        payload.__enter__.return_value = payload

        with mock.patch(
            "moneytrack.currency_conversion.urlopen", return_value=payload
        ) as opened, mock.patch(
            "moneytrack.currency_conversion.json.load",
            return_value={"rates": {"USD": 0.03125, "JPY": 5}},
        ):
            rates = reporting_rates("USD", composite)

        self.assertTrue(opened.call_args[0][0].endswith("/TWD"))
        self.assertEqual(rates["USD"], Decimal("1"))
        self.assertEqual(rates["TWD"], Decimal("0.03125"))
        self.assertEqual(rates["EUR"], Decimal("33") / Decimal("32"))


if __name__ == "__main__":
    unittest.main()
