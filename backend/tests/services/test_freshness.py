# backend/tests/services/test_freshness.py
"""
Tests for the freshness report.
"""

from datetime import date

import pytest

from marketsync.services.freshness import FreshnessService, FreshnessStatus, classify
from tests.conftest import create_asset, make_sample, store_prices

TODAY = date(2024, 10, 15)


class TestClassify:

    @pytest.mark.parametrize("last_update,days_ago,status", [
        (date(2024, 10, 15), 0, FreshnessStatus.CURRENT),
        (date(2024, 10, 14), 1, FreshnessStatus.RECENT),
        (date(2024, 10, 11), 4, FreshnessStatus.OUTDATED),
        (None, None, FreshnessStatus.NO_HISTORY),
    ])
    def test_classification(self, last_update, days_ago, status):
        assert classify(last_update, TODAY) == (days_ago, status)


class TestFreshnessReport:

    @pytest.fixture
    def report(self, db):
        petr4 = create_asset(db, ticker="PETR4")
        vale3 = create_asset(db, ticker="VALE3", name="Vale ON")
        aapl = create_asset(db, ticker="AAPL", name="Apple Inc.", currency="USD", market="NASDAQ")
        create_asset(db, ticker="ITUB4", name="Itau PN")
        create_asset(db, ticker="OLD3", name="Old", is_active=False)

        store_prices(db, petr4, [make_sample(TODAY, "38.50")])
        store_prices(db, vale3, [make_sample(date(2024, 10, 1), "62.00")])
        store_prices(db, aapl, [make_sample(date(2024, 10, 14), "230.00", currency="USD")])

        return FreshnessService().report(db, today=TODAY)

    def test_ordering(self, report):
        # No history first, then stalest first
        assert [a.ticker for a in report.assets] == ["ITUB4", "VALE3", "AAPL", "PETR4"]

    def test_entries(self, report):
        by_ticker = {a.ticker: a for a in report.assets}

        assert by_ticker["VALE3"].days_ago == 14
        assert by_ticker["VALE3"].status == FreshnessStatus.OUTDATED
        assert by_ticker["ITUB4"].last_update is None

    def test_totals(self, report):
        totals = report.totals()

        assert totals["total_assets"] == 4
        assert totals["current"] == 1
        assert totals["recent"] == 1
        assert totals["outdated"] == 1
        assert totals["no_history"] == 1
        assert totals["assets_with_history"] == 3
        assert totals["by_currency"] == {
            "BRL": {"total": 3, "with_history": 2},
            "USD": {"total": 1, "with_history": 1},
        }
