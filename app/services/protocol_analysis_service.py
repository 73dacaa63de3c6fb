"""
Incentive Lens — Protocol Comparison
Protocol-level incentive efficiency for the current and previous period plus
market-wide Merkl context, fed to the bulk AI review.
"""
from typing import Iterable, Optional

from app.core.config import MERKL_PAGE_DELAY
from app.core.dates import day_end_ts, day_start_ts, period_days, previous_period
from app.core.logger import logger
from app.services import ai_service, incentive_service
from app.services.incentive_service import campaign_overlaps
from app.services.report_service import flatten_results, tvl_cost_pct, wow_change_pct

CONTEXT_LIMIT = 20


def _number(value) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


# ── Aggregation ──
def aggregate_protocol_metrics(
    results: Iterable[dict],
    mon_price: Optional[float],
    start_date: str,
    end_date: str,
) -> Optional[dict]:
    """Totals, pool count and the spread of per-pool TVL cost; None without pools.

    Only pools with both a positive USD spend and a positive TVL contribute a
    TVL cost, so ``avgTVLCost`` is None when no price is known.
    """
    pools = flatten_results(results)
    if not pools:
        return None
    days = period_days(start_date, end_date)
    price = mon_price or 0.0

    total_mon = total_usd = total_tvl = 0.0
    costs: list[float] = []
    rows = []
    for pool in pools:
        mon = _number(pool.get("totalMON")) or 0.0
        usd = mon * price
        tvl = _number(pool.get("tvl")) or 0.0
        total_mon += mon
        total_usd += usd
        total_tvl += tvl
        if usd > 0:
            cost = tvl_cost_pct(usd, days, tvl)
            if cost is not None:
                costs.append(cost)
        rows.append({
            "protocol": pool.get("platformProtocol"),
            "fundingProtocol": pool.get("fundingProtocol"),
            "marketName": pool.get("marketName"),
            "incentivesMON": mon,
            "incentivesUSD": usd,
            "tvl": tvl,
            "apr": pool.get("apr"),
            "merklUrl": pool.get("merklUrl"),
        })

    return {
        "totalIncentivesMON": total_mon,
        "totalIncentivesUSD": total_usd,
        "totalTVL": total_tvl,
        "poolCount": len(rows),
        "avgTVLCost": sum(costs) / len(costs) if costs else None,
        "maxTVLCost": max(costs) if costs else None,
        "minTVLCost": min(costs) if costs else None,
        "pools": rows,
    }


def protocol_wow(current: Optional[dict], previous: Optional[dict]) -> dict:
    if not current or not previous:
        return {"incentives": None, "tvl": None, "avgTVLCost": None}
    return {
        "incentives": wow_change_pct(current["totalIncentivesMON"], previous["totalIncentivesMON"]),
        "tvl": wow_change_pct(current["totalTVL"], previous["totalTVL"]),
        "avgTVLCost": wow_change_pct(current["avgTVLCost"], previous["avgTVLCost"]),
    }


def _empty_period() -> dict:
    return {
        "totalIncentivesMON": 0.0, "totalIncentivesUSD": 0.0, "totalTVL": 0.0, "poolCount": 0,
        "avgTVLCost": None, "maxTVLCost": None, "minTVLCost": None, "pools": [],
    }


def summarize_protocol(protocol: str, current: Optional[dict], previous: Optional[dict], campaigns: int) -> dict:
    return {
        "protocol": protocol,
        "currentWeek": current or _empty_period(),
        "previousWeek": previous,
        "wowChanges": protocol_wow(current, previous),
        "campaigns": campaigns,
    }


def competitive_context(campaigns: list[dict], opportunities: list[dict], limit: int = CONTEXT_LIMIT) -> dict:
    """Campaign counts per protocol and the largest opportunities by TVL."""
    counts: dict[str, int] = {}
    for campaign in campaigns:
        protocol = campaign.get("mainProtocolId") or (campaign.get("protocol") or {}).get("id") or "unknown"
        counts[protocol] = counts.get(protocol, 0) + 1

    sized = [o for o in opportunities if _number(o.get("tvl")) is not None]
    sized.sort(key=lambda o: _number(o.get("tvl")), reverse=True)
    return {
        "totalCampaigns": len(campaigns),
        "totalOpportunities": len(opportunities),
        "campaignsByProtocol": [
            {"protocol": p, "campaigns": n}
            for p, n in sorted(counts.items(), key=lambda item: item[1], reverse=True)[:limit]
        ],
        "topOpportunities": [{
            "name": o.get("name"),
            "protocol": (o.get("protocol") or {}).get("id"),
            "tvl": _number(o.get("tvl")),
            "apr": _number(o.get("apr")),
            "status": o.get("status"),
        } for o in sized[:limit]],
    }


# ── Bulk analysis ──
def analyze_protocols(
    protocols: list[str],
    start_date: str,
    end_date: str,
    mon_price: Optional[float],
    delay: float = MERKL_PAGE_DELAY,
) -> dict:
    """Fetch both periods per protocol, add market context, ask the AI to compare.

    A protocol whose fetch fails is reported as ``"error"`` in ``progress`` and
    compared with empty figures; AI failures propagate to the caller.
    """
    prev_start, prev_end = previous_period(start_date, end_date)
    start_ts, end_ts = day_start_ts(start_date), day_end_ts(end_date)
    logger.info(f"[Bulk] Comparing {len(protocols)} protocols for {start_date} → {end_date}")

    progress: dict[str, str] = {}
    summaries = []
    for protocol in protocols:
        current = previous = None
        campaign_count = 0
        try:
            campaigns = incentive_service.fetch_campaigns(protocol, delay)
            campaign_count = sum(1 for c in campaigns if campaign_overlaps(c, start_ts, end_ts))
            results = incentive_service.query_mon_spent([protocol], start_date, end_date, "WMON", delay=delay)
            current = aggregate_protocol_metrics(results, mon_price, start_date, end_date)
            prev_results = incentive_service.query_mon_spent([protocol], prev_start, prev_end, "WMON", delay=delay)
            previous = aggregate_protocol_metrics(prev_results, mon_price, prev_start, prev_end)
            progress[protocol] = "done"
        except Exception as e:
            logger.error(f"[Bulk] Data fetch failed for {protocol}: {e}")
            progress[protocol] = "error"
        summaries.append(summarize_protocol(protocol, current, previous, campaign_count))

    context = competitive_context(
        incentive_service.fetch_campaigns("all", delay),
        incentive_service.fetch_opportunities(delay),
    )
    analysis = ai_service.generate_protocol_analysis(
        summaries, context, start_date, end_date, (prev_start, prev_end), mon_price,
    )
    progress["_global"] = "done"
    return {
        "analysis": analysis,
        "progress": progress,
        "dateRange": {"start": start_date, "end": end_date},
        "previousDateRange": {"start": prev_start, "end": prev_end},
    }
