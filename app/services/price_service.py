"""
Incentive Lens — MON Price Oracle
Spot price, historical price and trailing average from CoinGecko.
"""
from typing import Optional, Tuple

from app.core.config import (
    COINGECKO_API_BASE, COINGECKO_COIN_ID, CG_HEADERS, DEFAULT_MON_PRICE,
    PRICE_TIMEOUT, PRICE_HISTORY_TIMEOUT, TWAP_WINDOW_DAYS,
)
from app.core.dates import day_start_ts, day_end_ts
from app.core.http_client import get_json
from app.core.logger import logger

SECONDS_PER_DAY = 86400


def get_price() -> float:
    """Current MON/USD, or ``DEFAULT_MON_PRICE`` when CoinGecko is unavailable."""
    url = f"{COINGECKO_API_BASE}/simple/price?ids={COINGECKO_COIN_ID}&vs_currencies=usd"
    data = get_json(url, timeout=PRICE_TIMEOUT, label="CoinGecko", headers=CG_HEADERS)
    price = None
    if isinstance(data, dict):
        price = (data.get(COINGECKO_COIN_ID) or {}).get("usd")
    if not isinstance(price, (int, float)) or price <= 0:
        logger.warning(f"[CoinGecko] Spot price unavailable, using default {DEFAULT_MON_PRICE}")
        return DEFAULT_MON_PRICE
    return float(price)


def _price_points(from_ts: int, to_ts: int) -> list[float]:
    url = (f"{COINGECKO_API_BASE}/coins/{COINGECKO_COIN_ID}/market_chart/range"
           f"?vs_currency=usd&from={from_ts}&to={to_ts}")
    data = get_json(url, timeout=PRICE_HISTORY_TIMEOUT, label="CoinGecko", headers=CG_HEADERS)
    if not isinstance(data, dict):
        return []
    points = []
    for point in data.get("prices") or []:
        try:
            value = float(point[1])
        except (TypeError, ValueError, IndexError):
            continue
        if value > 0:
            points.append(value)
    return points


def get_price_at_timestamp(ts: int) -> Optional[float]:
    """First price CoinGecko reports in the day following ``ts`` (unix seconds)."""
    points = _price_points(ts, ts + SECONDS_PER_DAY)
    return points[0] if points else None


def get_trailing_average(end_ts: int, window_days: int = TWAP_WINDOW_DAYS) -> Optional[float]:
    """Simple mean of the price points over ``window_days`` before ``end_ts``."""
    points = _price_points(end_ts - window_days * SECONDS_PER_DAY, end_ts)
    if not points:
        return None
    return sum(points) / len(points)


def compute_adjustment_factor(distribution_price: Optional[float], twap_price: Optional[float]) -> float:
    """``twap / distribution``; exactly 1.0 unless both prices are positive."""
    if not distribution_price or not twap_price or distribution_price <= 0 or twap_price <= 0:
        return 1.0
    return twap_price / distribution_price


def adjustment_factor_for_range(start_date: str, end_date: str) -> Tuple[float, Optional[float], Optional[float]]:
    """Factor for a report window: distribution price at start vs. trailing average to end.

    Returns ``(factor, distribution_price, twap_price)``.
    """
    distribution = get_price_at_timestamp(day_start_ts(start_date))
    twap = get_trailing_average(day_end_ts(end_date))
    factor = compute_adjustment_factor(distribution, twap)
    logger.info(f"[CoinGecko] Adjustment factor {factor:.4f} (distribution={distribution}, twap={twap})")
    return factor, distribution, twap
