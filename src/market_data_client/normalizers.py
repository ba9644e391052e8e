"""
Response normalizers.

The provider is inconsistent about field names and nesting; these helpers
map its payloads to one shape for the dashboard.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List

import pandas as pd


def unwrap_payload(payload: Any) -> Any:
    """Return payload["data"] when the real payload is nested one level down"""
    if isinstance(payload, dict) and "data" in payload:
        return payload["data"]
    return payload


def _first(d: Dict, *names, default=None):
    for name in names:
        value = d.get(name)
        if value is not None:
            return value
    return default


def normalize_stock_details(stock: Any) -> Dict:
    """Stock details with every known alias filled in"""
    if not isinstance(stock, dict) or not stock:
        return {}

    name = _first(stock, "name", "companyName", "company_name")
    price = _first(stock, "current_price", "price", "lastPrice", "last_price")
    pct = _first(stock, "percent_change", "changePercent", default=0)

    normalized = {
        "symbol": stock.get("symbol"),
        "name": name,
        "company_name": name,
        "current_price": price,
        "price": price,
        "change": stock.get("change") or 0,
        "percent_change": pct,
        "market_cap": _first(stock, "market_cap", "marketCap"),
        "pe_ratio": _first(stock, "pe_ratio", "peRatio"),
        "eps": stock.get("eps"),
        "dividend_yield": _first(stock, "dividend_yield", "dividendYield"),
        "volume": stock.get("volume") or 0,
        "average_volume": _first(stock, "average_volume", "averageVolume", default=0),
        "year_high": _first(stock, "year_high", "yearHigh", "52WeekHigh"),
        "year_low": _first(stock, "year_low", "yearLow", "52WeekLow"),
        "bse_price": _first(stock, "bse_price", "bsePrice"),
        "nse_price": _first(stock, "nse_price", "nsePrice"),
        "sector": stock.get("sector"),
        "industry": stock.get("industry"),
        "ticker_id": _first(stock, "tickerId", "ticker_id"),
    }

    # Keep provider fields we don't know about
    for key, value in stock.items():
        normalized.setdefault(key, value)

    return normalized


def normalize_news_items(news: Any) -> List[Dict]:
    if not isinstance(news, list):
        return []

    items = []
    for item in news:
        if not isinstance(item, dict):
            continue
        items.append({
            "id": _first(item, "id", "news_id", "articleId") or uuid.uuid4().hex[:12],
            "title": _first(item, "title", "headline", default=""),
            "description": _first(item, "description", "summary", "content", default=""),
            "url": _first(item, "url", "link", default=""),
            "date": _first(item, "date", "published_at", "publishedAt")
                    or datetime.now(timezone.utc).isoformat(),
            "source": _first(item, "source", "publisher", default=""),
            "image_url": _first(item, "imageUrl", "image_url", "image", default=""),
        })
    return items


HISTORY_COLUMNS = ["date", "price", "volume"]


def normalize_historical_data(data: Any) -> pd.DataFrame:
    """
    Historical prices as a DataFrame (date, price, volume), sorted by date.

    Accepted shapes:
    - [{"date": ..., "price"|"close"|"value": ..., "volume": ...}, ...]
    - {"data"|"prices"|"history": [...]}
    - {"2024-01-01": 101.5, ...} or {"2024-01-01": {"close": 101.5, ...}}
    """
    if isinstance(data, dict):
        nested = _first(data, "data", "prices", "history")
        if nested is not None:
            return normalize_historical_data(nested)

        rows = []
        for date, value in data.items():
            if isinstance(value, dict):
                rows.append({"date": date, **value})
            else:
                rows.append({"date": date, "price": value})
        data = rows

    if not isinstance(data, list) or not data:
        return pd.DataFrame(columns=HISTORY_COLUMNS)

    df = pd.DataFrame([row for row in data if isinstance(row, dict)])
    if df.empty:
        return pd.DataFrame(columns=HISTORY_COLUMNS)

    if "date" not in df.columns and "timestamp" in df.columns:
        df["date"] = df["timestamp"]

    price = None
    for col in ("price", "close", "value"):
        if col in df.columns:
            price = df[col] if price is None else price.fillna(df[col])
    df["price"] = pd.to_numeric(price, errors="coerce") if price is not None else float("nan")

    if "volume" in df.columns:
        df["volume"] = pd.to_numeric(df["volume"], errors="coerce")
    else:
        df["volume"] = float("nan")

    df["date"] = pd.to_datetime(df.get("date"), errors="coerce")
    df = df[HISTORY_COLUMNS].dropna(subset=["date"]).sort_values("date")
    return df.reset_index(drop=True)


__all__ = [
    "unwrap_payload",
    "normalize_stock_details",
    "normalize_news_items",
    "normalize_historical_data",
]
