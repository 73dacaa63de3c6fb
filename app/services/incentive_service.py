"""
Incentive Lens — Merkl Incentive Oracle
MON paid out through Merkl campaigns on Monad, grouped
platform protocol → funding protocol → market.
"""
import time
from dataclasses import dataclass, field
from typing import Iterable, Optional
from urllib.parse import quote

from app.core.config import (
    MERKL_API_BASE, MERKL_PAGE_DELAY, MERKL_PAGE_SIZE, MERKL_TIMEOUT, MONAD_CHAIN_ID,
    REWARD_TOKEN_SYMBOLS,
)
from app.core.dates import day_end_ts, day_start_ts
from app.core.http_client import get_json
from app.core.logger import logger


def _num(value) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


# ── Raw Merkl calls ──
def fetch_campaigns(protocol_id: str, delay: float = MERKL_PAGE_DELAY) -> list[dict]:
    """All Monad campaigns for ``protocol_id`` (``"all"`` for every protocol)."""
    campaigns: list[dict] = []
    page = 0
    while True:
        url = f"{MERKL_API_BASE}/v4/campaigns?chainId={MONAD_CHAIN_ID}&page={page}&items={MERKL_PAGE_SIZE}"
        if protocol_id != "all":
            url += f"&mainProtocolId={quote(protocol_id)}"
        data = get_json(url, timeout=MERKL_TIMEOUT, label="Merkl")
        if isinstance(data, dict):
            data = data.get("data") or data.get("campaigns") or []
        if not isinstance(data, list) or not data:
            break
        campaigns.extend(c for c in data if isinstance(c, dict))
        if len(data) < MERKL_PAGE_SIZE:
            break
        page += 1
        if delay:
            time.sleep(delay)
    return campaigns


def fetch_opportunities(delay: float = MERKL_PAGE_DELAY) -> list[dict]:
    """Every Monad opportunity (live, past and upcoming)."""
    opportunities: list[dict] = []
    page = 0
    while True:
        url = (f"{MERKL_API_BASE}/v4/opportunities?chainId={MONAD_CHAIN_ID}"
               f"&page={page}&items={MERKL_PAGE_SIZE}&status=LIVE,PAST,SOON")
        data = get_json(url, timeout=MERKL_TIMEOUT, label="Merkl")
        if isinstance(data, dict):
            data = data.get("data") or data.get("opportunities") or []
        if not isinstance(data, list) or not data:
            break
        opportunities.extend(o for o in data if isinstance(o, dict))
        if len(data) < MERKL_PAGE_SIZE:
            break
        page += 1
        if delay:
            time.sleep(delay)
    return opportunities


def fetch_campaign_details(campaign_id: str) -> Optional[dict]:
    return get_json(f"{MERKL_API_BASE}/v4/campaigns/{campaign_id}", timeout=MERKL_TIMEOUT, label="Merkl")


def fetch_opportunity(opportunity_id: str) -> Optional[dict]:
    return get_json(f"{MERKL_API_BASE}/v4/opportunities/{opportunity_id}", timeout=MERKL_TIMEOUT, label="Merkl")


def fetch_campaign_metrics(campaign_id: str) -> dict:
    data = get_json(f"{MERKL_API_BASE}/v4/campaigns/{campaign_id}/metrics", timeout=MERKL_TIMEOUT, label="Merkl")
    return data if isinstance(data, dict) else {}


# ── Metric helpers ──
def record_at(records: Iterable[dict], end_ts: int, key: str) -> Optional[float]:
    """``key`` from the latest record at or before ``end_ts``."""
    best_ts, best = None, None
    for record in records or []:
        ts = _num(record.get("timestamp"))
        if ts is None or ts > end_ts:
            continue
        value = _num(record.get(key))
        if value is not None and (best_ts is None or ts > best_ts):
            best_ts, best = ts, value
    return best


def mon_spent(daily_rewards: Iterable[dict], reward_token: Optional[dict], start_ts: int, end_ts: int) -> float:
    """Daily USD rewards inside the window, converted to MON at the token price."""
    price = _num((reward_token or {}).get("price"))
    if not price or price <= 0:
        return 0.0
    total = 0.0
    for record in daily_rewards or []:
        ts = _num(record.get("timestamp"))
        usd = _num(record.get("total")) or 0.0
        if ts is not None and start_ts <= ts <= end_ts and usd > 0:
            total += usd / price
    return total


def campaign_overlaps(campaign: dict, start_ts: int, end_ts: int) -> bool:
    start = _num(campaign.get("startTimestamp")) or 0
    end = _num(campaign.get("endTimestamp"))
    return start <= end_ts and (end is None or end >= start_ts)


def merkl_search_url(opportunity: dict) -> Optional[str]:
    chain = ((opportunity.get("chain") or {}).get("name") or "").lower()
    protocol = (opportunity.get("protocol") or {}).get("id")
    if not chain or not protocol:
        return None
    return f"https://app.merkl.xyz/chains/{chain}?search={quote(protocol)}&status=LIVE%2CSOON%2CPAST"


# ── Aggregation ──
@dataclass
class _Market:
    market_name: str
    total_mon: float = 0.0
    apr: Optional[float] = None
    tvl: Optional[float] = None
    merkl_url: Optional[str] = None

    def merge(self, apr, tvl, url) -> None:
        if apr is not None and (self.apr is None or apr > self.apr):
            self.apr = apr
        if tvl is not None and tvl > 0 and (self.tvl is None or tvl > self.tvl):
            self.tvl = tvl
        if url and not self.merkl_url:
            self.merkl_url = url


@dataclass
class _Funding:
    funding_protocol: str
    markets: dict = field(default_factory=dict)

    @property
    def total_mon(self) -> float:
        return sum(m.total_mon for m in self.markets.values())


def _round(value: Optional[float]) -> Optional[float]:
    return round(value, 2) if value is not None else None


def _serialize(platforms: dict) -> list[dict]:
    results = []
    for platform_id in sorted(platforms):
        fundings = sorted(platforms[platform_id].values(), key=lambda f: f.total_mon, reverse=True)
        results.append({
            "platformProtocol": platform_id,
            "totalMON": round(sum(f.total_mon for f in fundings), 2),
            "fundingProtocols": [{
                "fundingProtocol": f.funding_protocol,
                "totalMON": round(f.total_mon, 2),
                "markets": [{
                    "marketName": m.market_name,
                    "totalMON": round(m.total_mon, 2),
                    "apr": _round(m.apr),
                    "tvl": _round(m.tvl),
                    "merklUrl": m.merkl_url,
                } for m in sorted(f.markets.values(), key=lambda m: m.total_mon, reverse=True)],
            } for f in fundings],
        })
    return results


def token_symbols(token: str) -> tuple[str, ...]:
    return tuple(dict.fromkeys((token, *REWARD_TOKEN_SYMBOLS)))


def query_mon_spent(
    protocols: list[str],
    start_date: str,
    end_date: str,
    token: str = "WMON",
    delay: float = MERKL_PAGE_DELAY,
) -> list[dict]:
    """Nested MON-spent results for the inclusive date range.

    Platforms are sorted by id; funding sources and markets by MON spent,
    descending. Markets with no spend in the window are omitted.
    """
    start_ts, end_ts = day_start_ts(start_date), day_end_ts(end_date)
    query_all = len(protocols) == 1 and protocols[0] == "all"
    single = protocols[0] if len(protocols) == 1 and not query_all else None

    campaigns: list[dict] = []
    if query_all:
        campaigns = fetch_campaigns("all", delay)
    else:
        for protocol in protocols:
            campaigns.extend(fetch_campaigns(protocol, delay))
            if delay:
                time.sleep(delay)

    symbols = token_symbols(token)
    relevant = [
        c for c in campaigns
        if (c.get("rewardToken") or {}).get("symbol") in symbols and campaign_overlaps(c, start_ts, end_ts)
    ]
    logger.info(f"[Merkl] {len(relevant)}/{len(campaigns)} campaigns pay {token} in {start_date} → {end_date}")

    platforms: dict[str, dict[str, _Funding]] = {}
    for campaign in relevant:
        campaign_id = campaign.get("id") or campaign.get("campaignId")
        if not campaign_id:
            continue
        details = fetch_campaign_details(str(campaign_id)) or {}

        funding_id = (details.get("protocol") or {}).get("id") or campaign.get("mainProtocolId")
        if not funding_id:
            tags = (campaign.get("creator") or {}).get("tags") or []
            funding_id = tags[0] if tags else "unknown"

        platform_id = single or funding_id
        market_name, apr, tvl, url = "Unknown Market", None, None, None
        opportunity_id = campaign.get("opportunityId")
        if opportunity_id:
            opportunity = fetch_opportunity(str(opportunity_id)) or {}
            if not single:
                platform_id = (opportunity.get("protocol") or {}).get("id") or funding_id
            market_name = opportunity.get("name") or f"Market {opportunity_id}"
            apr = _num(opportunity.get("apr"))
            tvl = _num(opportunity.get("tvl"))
            url = merkl_search_url(opportunity)

        reward_token = details.get("rewardToken") or campaign.get("rewardToken")
        metrics = fetch_campaign_metrics(str(campaign_id))
        spent = mon_spent(metrics.get("dailyRewardsRecords"), reward_token, start_ts, end_ts)

        apr_at_end = record_at(metrics.get("aprRecords"), end_ts, "apr")
        if apr_at_end is not None:
            apr = apr_at_end
        tvl_at_end = record_at(metrics.get("tvlRecords"), end_ts, "total")
        if tvl_at_end is not None and tvl_at_end > 0:
            tvl = tvl_at_end
        if tvl is not None and tvl <= 0:
            tvl = None

        if spent <= 0:
            continue

        funding = platforms.setdefault(platform_id, {}).setdefault(funding_id, _Funding(funding_id))
        market = funding.markets.get(market_name)
        if market is None:
            market = funding.markets[market_name] = _Market(market_name, apr=apr, tvl=tvl, merkl_url=url)
        else:
            market.merge(apr, tvl, url)
        market.total_mon += spent

        if delay:
            time.sleep(delay)

    return _serialize(platforms)
