"""
Incentive Lens — DefiLlama TVL & DEX Volume Oracle
Protocol TVL on Monad as of a date, and DEX volume summed over a date range.
"""
import time
from typing import Iterable, NamedTuple, Optional

from app.core.config import (
    DEFILLAMA_API_BASE, DEFILLAMA_CALL_DELAY, DEFILLAMA_CHAIN_KEYS, DEFILLAMA_TIMEOUT,
    PROTOCOL_SLUG_MAP,
)
from app.core.dates import day_end_ts, day_start_ts
from app.core.http_client import get_json
from app.core.logger import logger

SECONDS_PER_DAY = 86400


class TVLResult(NamedTuple):
    value: Optional[float] = None
    is_historical: bool = False


class VolumeResult(NamedTuple):
    in_range: Optional[float] = None
    last_24h: Optional[float] = None
    last_7d: Optional[float] = None
    last_30d: Optional[float] = None
    is_historical: bool = False

    def to_api(self) -> dict:
        return {
            "volumeInRange": self.in_range,
            "volume24h": self.last_24h,
            "volume7d": self.last_7d,
            "volume30d": self.last_30d,
            "isHistorical": self.is_historical,
        }


def _to_float(value) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _point(record) -> tuple[Optional[int], Optional[float]]:
    """DefiLlama charts use ``[ts, value]`` pairs or ``{date|timestamp, ...}`` dicts."""
    if isinstance(record, (list, tuple)) and len(record) >= 2:
        ts = _to_float(record[0])
        return (int(ts) if ts is not None else None), _to_float(record[1])
    if isinstance(record, dict):
        ts = _to_float(record.get("date", record.get("timestamp")))
        value = record.get("totalLiquidityUSD", record.get("volume"))
        return (int(ts) if ts is not None else None), _to_float(value)
    return None, None


def tvl_at(history: Iterable, as_of_ts: int) -> Optional[float]:
    """Value of the latest record at or before ``as_of_ts``."""
    best_ts, best_value = None, None
    for record in history or []:
        ts, value = _point(record)
        if ts is None or value is None or ts > as_of_ts:
            continue
        if best_ts is None or ts > best_ts:
            best_ts, best_value = ts, value
    return best_value


def volume_in_range(chart: Iterable, start_ts: int, end_ts: int) -> Optional[float]:
    """Sum of daily volumes with ``start_ts <= ts <= end_ts``; None if no point falls inside."""
    total, seen = 0.0, False
    for record in chart or []:
        ts, value = _point(record)
        if ts is None or value is None:
            continue
        if start_ts <= ts <= end_ts:
            total += value
            seen = True
    return total if seen else None


def _monad_entry(mapping: dict):
    for key in DEFILLAMA_CHAIN_KEYS:
        if mapping.get(key) is not None:
            return mapping[key]
    return None


def get_tvl(slug: str, as_of_ts: int) -> TVLResult:
    """Monad TVL at ``as_of_ts``; falls back to current TVL (``is_historical=False``)."""
    data = get_json(f"{DEFILLAMA_API_BASE}/protocol/{slug}", timeout=DEFILLAMA_TIMEOUT, label="DefiLlama")
    if not isinstance(data, dict):
        return TVLResult()

    chain_tvls = data.get("chainTvls")
    if isinstance(chain_tvls, dict):
        monad = _monad_entry(chain_tvls)
        if isinstance(monad, dict) and isinstance(monad.get("tvl"), list):
            value = tvl_at(monad["tvl"], as_of_ts)
            if value is not None:
                return TVLResult(value, True)

    current = data.get("currentChainTvls")
    if isinstance(current, dict):
        value = _to_float(_monad_entry(current))
        if value is not None:
            return TVLResult(value, False)
        chains = data.get("chains")
        if isinstance(chains, list) and len(chains) == 1:
            value = _to_float(data.get("tvl"))
            if value:
                return TVLResult(value, False)

    logger.debug(f"[DefiLlama] No Monad TVL for {slug}")
    return TVLResult()


def get_volume(slug: str, start_ts: int, end_ts: int) -> VolumeResult:
    """DEX volume for the exact range plus trailing 7d/30d windows ending at ``end_ts``."""
    url = (f"{DEFILLAMA_API_BASE}/summary/dexs/{slug}"
           "?excludeTotalDataChart=false&excludeTotalDataChartBreakdown=true")
    data = get_json(url, timeout=DEFILLAMA_TIMEOUT, label="DefiLlama")
    if not isinstance(data, dict):
        return VolumeResult()

    last_24h = _to_float(data.get("total24h"))
    chart = data.get("totalDataChart")
    if not isinstance(chart, list) or not chart:
        return VolumeResult(last_24h=last_24h)

    in_range = volume_in_range(chart, start_ts, end_ts)
    last_7d = volume_in_range(chart, end_ts - 7 * SECONDS_PER_DAY, end_ts)
    last_30d = volume_in_range(chart, end_ts - 30 * SECONDS_PER_DAY, end_ts)
    historical = any(v is not None for v in (in_range, last_7d, last_30d))
    return VolumeResult(in_range, last_24h, last_7d, last_30d, historical)


def fetch_protocol_metrics(
    protocols: list[str],
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    delay: float = DEFILLAMA_CALL_DELAY,
) -> dict:
    """TVL + DEX volume per protocol, one protocol at a time.

    Returns ``{"tvlData", "tvlMetadata", "dexVolumeData"}`` keyed by the
    protocol id as given. Protocols without a DefiLlama slug get nulls.
    """
    now = int(time.time())
    start_ts = day_start_ts(start_date) if start_date else now - 30 * SECONDS_PER_DAY
    end_ts = day_end_ts(end_date) if end_date else now

    tvl_data: dict = {}
    tvl_metadata: dict = {}
    dex_volume: dict = {}
    for protocol in protocols:
        slug = PROTOCOL_SLUG_MAP.get(protocol.lower())
        if not slug:
            tvl_data[protocol] = None
            tvl_metadata[protocol] = {"isHistorical": False}
            dex_volume[protocol] = VolumeResult().to_api()
            continue

        tvl = get_tvl(slug, end_ts)
        volume = get_volume(slug, start_ts, end_ts)
        tvl_data[protocol] = tvl.value
        tvl_metadata[protocol] = {"isHistorical": tvl.is_historical}
        dex_volume[protocol] = volume.to_api()
        if delay:
            time.sleep(delay)

    found = sum(1 for v in tvl_data.values() if v is not None)
    logger.info(f"[DefiLlama] TVL for {found}/{len(protocols)} protocols ({start_date} → {end_date})")
    return {"tvlData": tvl_data, "tvlMetadata": tvl_metadata, "dexVolumeData": dex_volume}
