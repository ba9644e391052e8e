"""
STOCK SERVICE
=============

Typed dashboard operations on top of MarketDataClient.

Each operation picks its endpoint, cache ttl (operation name) and output
normalization. Errors propagate as MarketDataError; substituting fallback
data is up to the caller.
"""

import re
from typing import Dict, List, Optional

import pandas as pd

from config import ENDPOINTS, ENDPOINT_PATTERNS
from utils.logger import get_logger

from .client import MarketDataClient, get_client
from .normalizers import (
    normalize_historical_data,
    normalize_news_items,
    normalize_stock_details,
)

logger = get_logger("STOCK_SERVICE")

MIN_QUERY_LENGTH = 2
_SYMBOL_RE = re.compile(r"[^\w.\-&]")


def format_symbol(symbol: str) -> str:
    """Strip characters the provider rejects, upper-case"""
    return _SYMBOL_RE.sub("", symbol or "").upper()


class StockService:
    """
    Usage:
        service = StockService()
        details = service.get_stock_details("RELIANCE")
        history = service.get_historical_data("RELIANCE", period="1m")
    """

    def __init__(self, client: Optional[MarketDataClient] = None):
        self.client = client or get_client()

    def search_stocks(self, query: str) -> List[Dict]:
        """Matching stocks. Queries shorter than 2 characters return nothing"""
        query = (query or "").strip()
        if len(query) < MIN_QUERY_LENGTH:
            return []

        data = self.client.get(ENDPOINTS["search"], {"query": query}, {"operation": "search"})
        results = data.get("results", []) if isinstance(data, dict) else data
        if not isinstance(results, list):
            logger.warning(f"Unexpected search payload for '{query}': {type(results).__name__}")
            return []

        return [
            {
                "symbol": s.get("symbol"),
                "company_name": s.get("company_name") or s.get("companyName") or s.get("name") or s.get("symbol"),
                "price": s.get("current_price") or s.get("price") or s.get("last_price") or s.get("lastPrice"),
                "change": s.get("change"),
                "percent_change": s.get("percent_change") or s.get("changePercent"),
                "sector": s.get("sector"),
                "industry": s.get("industry"),
            }
            for s in results if isinstance(s, dict)
        ]

    def get_stock_details(self, symbol: str) -> Dict:
        """Stock details, discovering which path shape the provider serves"""
        symbol = format_symbol(symbol)
        if not symbol:
            raise ValueError("symbol is required")

        logger.debug(f"Fetching details for {symbol}")
        data = self.client.get_discovered(
            "stock_details",
            ENDPOINT_PATTERNS["stock_details"],
            {"symbol": symbol},
        )
        return normalize_stock_details(data)

    def get_historical_data(self, symbol: str, period: str = "1yr", filter: str = "price") -> pd.DataFrame:
        symbol = format_symbol(symbol)
        if not symbol:
            raise ValueError("symbol is required")

        data = self.client.get(
            ENDPOINTS["historical_data"],
            {"stock_name": symbol, "period": period, "filter": filter},
            {"operation": "historical_data"},
        )
        df = normalize_historical_data(data)
        if df.empty:
            logger.info(f"No historical data for {symbol} ({period})")
        return df

    def get_news(self) -> List[Dict]:
        data = self.client.get(ENDPOINTS["news"], options={"operation": "news"})
        if isinstance(data, dict):
            data = data.get("news") or data.get("articles") or []
        return normalize_news_items(data)

    def get_ipo_data(self) -> Dict:
        data = self.client.get(ENDPOINTS["ipo"], options={"operation": "ipo"})
        return data if isinstance(data, dict) else {"ipos": data or []}

    def get_market_movers(self, direction: str = "gainers") -> List[Dict]:
        if direction not in ("gainers", "losers"):
            raise ValueError("direction must be 'gainers' or 'losers'")

        data = self.client.get(ENDPOINTS[f"market_{direction}"], options={"operation": "market_movers"})
        if isinstance(data, dict):
            data = data.get(direction) or data.get("stocks") or []
        return [normalize_stock_details(s) for s in data or [] if isinstance(s, dict)]


__all__ = ["StockService", "format_symbol"]
