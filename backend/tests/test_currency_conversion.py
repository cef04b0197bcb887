import threading
import unittest
from decimal import Decimal

from backend.currency_conversion import (
    CurrencyConverter,
    ExchangeRate,
    ExchangeRateApiProvider,
    NbrbRateProvider,
    RateCache,
    StaticRateProvider,
)
from backend.errors import ProviderFetchFailure, RateUnavailable
from backend.tests.fixtures import FakeClock, FakeProvider


class CurrencyConversionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.provider = FakeProvider({"USD": "1", "EUR": "2", "JPY": "4"})
        self.clock = FakeClock()
        self.cache = RateCache(self.provider, ttl_seconds=3600, clock=self.clock)
        self.converter = CurrencyConverter(self.cache)

    def test_same_currency_returns_original_amount(self) -> None:
        amount = self.converter.convert(Decimal("12.50"), "USD", "USD")

        self.assertEqual(amount, Decimal("12.50"))
        self.assertEqual(self.provider.calls, 0)

    def test_same_currency_skips_cache_even_when_provider_is_down(self) -> None:
        self.provider.fail = True

        amount = self.converter.convert(Decimal("0.333333333"), "xyz", "XYZ")

        self.assertEqual(amount, Decimal("0.333333333"))

    def test_conversion_uses_base_rates(self) -> None:
        amount = self.converter.convert(Decimal("10"), "EUR", "JPY")

        self.assertEqual(amount, Decimal("20"))

    def test_conversion_does_not_round(self) -> None:
        self.provider.rates["GBP"] = "3"

        amount = self.converter.convert(Decimal("1"), "GBP", "USD")

        self.assertEqual(amount, Decimal("1") / Decimal("3"))

    def test_normalizes_currency_codes(self) -> None:
        amount = self.converter.convert(Decimal("6"), " eur ", "jpy")

        self.assertEqual(amount, Decimal("12"))

    def test_missing_currency_raises(self) -> None:
        with self.assertRaises(RateUnavailable):
            self.converter.convert(Decimal("5"), "USD", "CAD")

    def test_invalid_currency_code_raises_value_error(self) -> None:
        with self.assertRaises(ValueError):
            self.converter.convert(Decimal("5"), "US", "EUR")

    def test_same_code_is_identity_even_when_malformed(self) -> None:
        self.assertEqual(self.converter.convert(Decimal("7"), "US", " us "), Decimal("7"))
        self.assertEqual(self.converter.convert("1.25", "xyz", "XYZ"), Decimal("1.25"))
        self.assertEqual(self.provider.calls, 0)


class RateCacheTests(unittest.TestCase):
    def setUp(self) -> None:
        self.provider = FakeProvider({"USD": "1", "EUR": "0.9"})
        self.clock = FakeClock()
        self.cache = RateCache(
            self.provider, ttl_seconds=3600, failure_backoff_seconds=60, clock=self.clock
        )

    def test_warm_cache_does_not_refetch(self) -> None:
        self.cache.get_rate("EUR")
        self.clock.advance(3599)
        self.cache.get_rate("USD")

        self.assertEqual(self.provider.calls, 1)

    def test_expired_cache_refetches_whole_table(self) -> None:
        self.cache.get_rate("EUR")
        self.provider.rates = {"USD": "1", "EUR": "0.95", "GBP": "0.8"}
        self.clock.advance(3600)

        self.assertEqual(self.cache.get_rate("EUR"), Decimal("0.95"))
        self.assertEqual(self.cache.get_rate("GBP"), Decimal("0.8"))
        self.assertEqual(self.provider.calls, 2)

    def test_serves_stale_rates_when_refresh_fails(self) -> None:
        self.assertEqual(self.cache.get_rate("EUR"), Decimal("0.9"))
        self.provider.fail = True
        self.clock.advance(7200)

        self.assertEqual(self.cache.get_rate("EUR"), Decimal("0.9"))
        self.assertEqual(self.provider.calls, 2)

    def test_failed_refresh_backs_off_before_retrying(self) -> None:
        self.cache.get_rate("EUR")
        self.provider.fail = True
        self.clock.advance(3600)

        self.cache.get_rate("EUR")
        self.clock.advance(30)
        self.cache.get_rate("EUR")
        self.assertEqual(self.provider.calls, 2)

        self.provider.fail = False
        self.provider.rates = {"USD": "1", "EUR": "0.8"}
        self.clock.advance(31)
        self.assertEqual(self.cache.get_rate("EUR"), Decimal("0.8"))
        self.assertEqual(self.provider.calls, 3)

    def test_failure_without_any_snapshot_raises(self) -> None:
        self.provider.fail = True

        with self.assertRaises(RateUnavailable):
            self.cache.get_rate("EUR")
        with self.assertRaises(ProviderFetchFailure):
            self.cache.snapshot()

    def test_forced_refresh_ignores_ttl(self) -> None:
        self.cache.get_rate("EUR")
        self.provider.rates = {"USD": "1", "EUR": "0.7"}

        self.cache.refresh()

        self.assertEqual(self.cache.get_rate("EUR"), Decimal("0.7"))
        self.assertEqual(self.provider.calls, 2)

    def test_discards_invalid_entries_and_adds_base(self) -> None:
        provider = FakeProvider({"EUR": "0.9", "BAD": "0", "NEG": "-1"})
        provider.rates[""] = "1.5"
        cache = RateCache(provider, clock=self.clock)

        snapshot = cache.snapshot()

        self.assertEqual(set(snapshot.rates), {"EUR", "USD"})
        self.assertEqual(snapshot.rate_of("USD"), Decimal("1"))

    def test_snapshot_is_read_only(self) -> None:
        snapshot = self.cache.snapshot()

        with self.assertRaises(TypeError):
            snapshot.rates["EUR"] = ExchangeRate(code="EUR", rate=Decimal("5"))

    def test_unknown_code_in_fresh_snapshot_does_not_refetch(self) -> None:
        self.cache.get_rate("EUR")

        with self.assertRaises(RateUnavailable):
            self.cache.get_rate("CHF")
        self.assertEqual(self.provider.calls, 1)

    def test_concurrent_cold_lookups_share_one_fetch(self) -> None:
        self.provider.gate = threading.Event()
        results = []
        errors = []

        def lookup() -> None:
            try:
                results.append(self.cache.get_rate("EUR"))
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=lookup) for _ in range(16)]
        for thread in threads:
            thread.start()
        self.provider.gate.set()
        for thread in threads:
            thread.join(timeout=5)

        self.assertEqual(errors, [])
        self.assertEqual(results, [Decimal("0.9")] * 16)
        self.assertEqual(self.provider.calls, 1)

    def test_readers_never_see_a_mixed_snapshot(self) -> None:
        # Every generation quotes the same rate for every code, so a pair of
        # lookups from one snapshot always converts at exactly 1.
        codes = ["USD", "EUR", "GBP", "JPY", "CHF"]
        self.provider.rates = {code: "1" for code in codes}
        converter = CurrencyConverter(self.cache)
        converter.convert(Decimal("1"), "EUR", "GBP")
        stop = threading.Event()
        mismatches = []

        def refresher() -> None:
            for generation in range(2, 2000):
                if stop.is_set():
                    break
                self.provider.rates = {code: str(generation) for code in codes}
                self.cache.refresh()

        def reader() -> None:
            for _ in range(300):
                amount = converter.convert(Decimal("10"), "EUR", "GBP")
                if amount != Decimal("10"):
                    mismatches.append(amount)

        writer = threading.Thread(target=refresher)
        readers = [threading.Thread(target=reader) for _ in range(8)]
        writer.start()
        for thread in readers:
            thread.start()
        for thread in readers:
            thread.join(timeout=10)
        stop.set()
        writer.join(timeout=5)

        self.assertEqual(mismatches, [])


class ProviderTests(unittest.TestCase):
    def test_exchange_rate_api_parses_conversion_rates(self) -> None:
        requested = []

        def fetch(url: str, timeout: float):
            requested.append((url, timeout))
            return {"result": "success", "conversion_rates": {"USD": 1, "EUR": 0.92, "JPY": 147.5}}

        provider = ExchangeRateApiProvider(api_key="secret", fetch=fetch)

        rates = {entry.code: entry.rate for entry in provider.fetch_rates()}

        self.assertEqual(rates["EUR"], Decimal("0.92"))
        self.assertEqual(rates["JPY"], Decimal("147.5"))
        self.assertEqual(
            requested, [("https://v6.exchangerate-api.com/v6/secret/latest/USD", 10)]
        )

    def test_exchange_rate_api_retries_then_succeeds(self) -> None:
        attempts = []
        sleeps = []

        def fetch(url: str, timeout: float):
            attempts.append(url)
            if len(attempts) < 3:
                raise ProviderFetchFailure("timeout")
            return {"conversion_rates": {"EUR": 0.9}}

        provider = ExchangeRateApiProvider(fetch=fetch, sleep=sleeps.append)

        rates = provider.fetch_rates()

        self.assertEqual([entry.code for entry in rates], ["EUR"])
        self.assertEqual(len(attempts), 3)
        self.assertEqual(sleeps, [2, 2])

    def test_exchange_rate_api_gives_up_after_attempts(self) -> None:
        sleeps = []

        def fetch(url: str, timeout: float):
            return {"result": "error"}

        provider = ExchangeRateApiProvider(fetch=fetch, attempts=2, sleep=sleeps.append)

        with self.assertRaises(ProviderFetchFailure):
            provider.fetch_rates()
        self.assertEqual(sleeps, [2])

    def test_nbrb_rates_are_normalized_by_scale(self) -> None:
        payload = [
            {"Cur_Abbreviation": "USD", "Cur_Scale": 1, "Cur_OfficialRate": 3.2},
            {"Cur_Abbreviation": "JPY", "Cur_Scale": 100, "Cur_OfficialRate": 2.5},
            {"Cur_Abbreviation": "XXX", "Cur_Scale": 1, "Cur_OfficialRate": 0},
        ]
        provider = NbrbRateProvider(fetch=lambda url, timeout: payload)

        rates = {entry.code: entry for entry in provider.fetch_rates()}

        self.assertEqual(set(rates), {"USD", "JPY"})
        self.assertEqual(rates["USD"].rate, Decimal("0.3125"))
        self.assertEqual(rates["JPY"].rate, Decimal("40"))
        self.assertEqual(rates["JPY"].scale, 100)

    def test_nbrb_rates_convert_through_byn(self) -> None:
        payload = [
            {"Cur_Abbreviation": "USD", "Cur_Scale": 1, "Cur_OfficialRate": 3.2},
            {"Cur_Abbreviation": "PLN", "Cur_Scale": 10, "Cur_OfficialRate": 8},
        ]
        cache = RateCache(NbrbRateProvider(fetch=lambda url, timeout: payload), clock=FakeClock())
        converter = CurrencyConverter(cache)

        self.assertEqual(converter.convert(Decimal("1"), "USD", "BYN"), Decimal("3.2"))
        self.assertEqual(converter.convert(Decimal("7"), "PLN", "BYN"), Decimal("5.6"))

    def test_static_provider_defaults(self) -> None:
        cache = RateCache(StaticRateProvider(), clock=FakeClock())

        self.assertEqual(cache.get_rate("USD"), Decimal("1"))
        self.assertEqual(cache.get_rate("EUR"), Decimal("0.92"))


if __name__ == "__main__":
    unittest.main()
