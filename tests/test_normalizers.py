"""
Normalizer and usage tracker tests
"""

import pandas as pd

from src.market_data_client.errors import ErrorClass
from src.market_data_client.normalizers import (
    normalize_historical_data,
    normalize_news_items,
    normalize_stock_details,
    unwrap_payload,
)
from src.market_data_client.usage_tracker import UsageTracker


# ============================================================================
# Normalizers
# ============================================================================

class TestNormalizers:
    def test_unwrap_payload(self):
        assert unwrap_payload({"data": [1]}) == [1]
        assert unwrap_payload({"results": []}) == {"results": []}
        assert unwrap_payload(None) is None

    def test_stock_details_aliases(self):
        stock = normalize_stock_details({
            "symbol": "INFY",
            "companyName": "Infosys",
            "lastPrice": 1500,
            "marketCap": 6e12,
            "52WeekHigh": 1900,
            "customField": "kept",
        })
        assert stock["name"] == stock["company_name"] == "Infosys"
        assert stock["price"] == stock["current_price"] == 1500
        assert stock["market_cap"] == 6e12
        assert stock["year_high"] == 1900
        assert stock["change"] == 0
        assert stock["customField"] == "kept"

    def test_stock_details_empty(self):
        assert normalize_stock_details(None) == {}
        assert normalize_stock_details([]) == {}

    def test_news_items(self):
        items = normalize_news_items([
            {"id": "n1", "title": "T", "summary": "S", "url": "https://x", "publishedAt": "2024-01-01"},
            {"headline": "H"},
            "garbage",
        ])
        assert len(items) == 2
        assert items[0]["description"] == "S"
        assert items[0]["date"] == "2024-01-01"
        assert items[1]["title"] == "H"
        assert items[1]["id"]
        assert normalize_news_items({"not": "a list"}) == []

    def test_historical_from_close_column(self):
        df = normalize_historical_data({"prices": [
            {"date": "2024-03-02", "close": 10},
            {"date": "2024-03-01", "close": 9},
        ]})
        assert df["price"].tolist() == [9.0, 10.0]
        assert df["date"].iloc[0] == pd.Timestamp("2024-03-01")
        assert df["volume"].isna().all()

    def test_historical_from_date_map(self):
        df = normalize_historical_data({"2024-01-02": 5.5, "2024-01-01": 5.0})
        assert df["price"].tolist() == [5.0, 5.5]

    def test_historical_empty(self):
        df = normalize_historical_data(None)
        assert df.empty
        assert list(df.columns) == ["date", "price", "volume"]

    def test_historical_drops_bad_dates(self):
        df = normalize_historical_data([
            {"date": "not-a-date", "price": 1},
            {"date": "2024-01-01", "price": 2},
        ])
        assert len(df) == 1


# ============================================================================
# Usage tracker
# ============================================================================

class TestUsageTracker:
    def test_metrics(self, clock):
        tracker = UsageTracker(clock=clock)
        tracker.record_call("KEY_1", "/search", 100)
        tracker.record_call("KEY_1", "/search", 300)
        tracker.record_call("KEY_1", "/search", 50, ErrorClass.RATE_LIMITED)

        m = tracker.get_metrics("KEY_1")
        assert m.calls_last_minute == 3
        assert m.avg_latency_ms == 200
        assert m.rate_limits_hit == 1
        assert m.errors_by_class == {"RATE_LIMITED": 1}
        assert m.health_score == 0.5

    def test_windows(self, clock):
        tracker = UsageTracker(clock=clock)
        tracker.record_call("KEY_1", "/a", 10)
        clock.advance(120)
        tracker.record_call("KEY_1", "/a", 10)

        m = tracker.get_metrics("KEY_1")
        assert m.calls_last_minute == 1
        assert m.calls_last_hour == 2

        clock.advance(3601)
        assert tracker.get_metrics("KEY_1").calls_last_hour == 0

    def test_reset_and_all(self, clock):
        tracker = UsageTracker(clock=clock)
        tracker.record_call("KEY_1", "/a", 10)
        tracker.record_call("KEY_2", "/a", 10)
        assert set(tracker.get_all_metrics()) == {"KEY_1", "KEY_2"}

        tracker.reset_key("KEY_1")
        assert set(tracker.get_all_metrics()) == {"KEY_2"}
