"""
Incentive Lens — Prompt Utilities
Compact pool tables for the analysis prompt to keep token usage bounded.
"""
from __future__ import annotations

import re
from collections import OrderedDict

from app.core.security import sanitize_external_text

# ── Token-budget constants ──
MAX_POOLS_IN_PROMPT = 150

_PAIR_RE = re.compile(r"([A-Z0-9]+)[-/]([A-Z0-9]+)")


def extract_token_pair(market_name: str) -> str:
    """``"Provide liquidity to UniswapV4 MON-USDC 0.05%"`` → ``"MON-USDC"``."""
    match = _PAIR_RE.search(market_name or "")
    if match:
        return f"{match.group(1)}-{match.group(2)}"
    return market_name or ""


def _money(value: float | None) -> str:
    if value is None:
        return "N/A"
    if value >= 1_000_000:
        return f"${value / 1_000_000:.2f}M"
    if value >= 1_000:
        return f"${value / 1_000:.1f}K"
    return f"${value:.2f}"


def _pct(value: float | None, signed: bool = False) -> str:
    if value is None:
        return "N/A"
    return f"{value:+.2f}%" if signed else f"{value:.2f}%"


def _one_line(text) -> str:
    return " ".join(str(text or "").split())


def compress_pool(pool: dict) -> str:
    """One line per pool: id, incentives, TVL, volume, APR, TVL cost, WoW.

    The pool id goes in whole, whitespace collapsed only; the model echoes it
    back and the matcher normalizes whitespace anyway.
    """
    pool_id = _one_line(pool.get("poolId"))
    line = (
        f"- {pool_id} | pair {sanitize_external_text(pool.get('tokenPair', ''), 40)}"
        f" | {pool.get('incentivesMON', 0):.2f} MON ({_money(pool.get('incentivesUSD'))})"
        f" | TVL {_money(pool.get('tvl'))} | Vol {_money(pool.get('volume'))}"
        f" | APR {_pct(pool.get('apr'))} | TVL cost {_pct(pool.get('tvlCost'))}"
    )
    if pool.get("wowChange") is not None:
        line += f" | WoW {_pct(pool.get('wowChange'), signed=True)}"
    return line


def compress_pools_by_protocol(pools: list[dict], limit: int = MAX_POOLS_IN_PROMPT) -> str:
    if not pools:
        return "None"
    grouped: "OrderedDict[str, list[dict]]" = OrderedDict()
    for pool in pools[:limit]:
        grouped.setdefault(pool.get("protocol", "unknown"), []).append(pool)
    lines: list[str] = []
    for protocol, items in grouped.items():
        lines.append(f"### {protocol.upper()}")
        lines.extend(compress_pool(p) for p in items)
    if len(pools) > limit:
        lines.append(f"(+{len(pools) - limit} smaller pools omitted)")
    return "\n".join(lines)


def compress_similar_pools(pools: list[dict]) -> str:
    """Token pairs offered by more than one pool, with their TVL cost side by side."""
    groups: dict[str, list[dict]] = {}
    for pool in pools:
        groups.setdefault(pool.get("tokenPair", "").lower(), []).append(pool)
    lines: list[str] = []
    for pair, items in groups.items():
        if len(items) < 2 or not pair:
            continue
        parts = [f"{p.get('protocol')} ({p.get('fundingProtocol')}) {_pct(p.get('tvlCost'))}" for p in items]
        lines.append(f"- {pair.upper()}: " + "; ".join(parts))
    return "\n".join(lines) or "None"


def compress_protocol(summary: dict) -> str:
    """One line per protocol for the bulk comparison prompt."""
    current = summary.get("currentWeek") or {}
    wow = summary.get("wowChanges") or {}
    line = (
        f"- {_one_line(summary.get('protocol'))} | {current.get('poolCount', 0)} pools"
        f" | {current.get('totalIncentivesMON', 0):.2f} MON ({_money(current.get('totalIncentivesUSD'))})"
        f" | TVL {_money(current.get('totalTVL'))}"
        f" | TVL cost avg {_pct(current.get('avgTVLCost'))}"
        f" min {_pct(current.get('minTVLCost'))} max {_pct(current.get('maxTVLCost'))}"
        f" | WoW incentives {_pct(wow.get('incentives'), signed=True)}"
        f", TVL {_pct(wow.get('tvl'), signed=True)}, cost {_pct(wow.get('avgTVLCost'), signed=True)}"
        f" | {summary.get('campaigns', 0)} campaigns"
    )
    top = sorted(current.get("pools") or [], key=lambda p: p.get("incentivesMON") or 0, reverse=True)[:3]
    if top:
        names = ", ".join(f"{sanitize_external_text(p.get('marketName'), 60)} ({p.get('incentivesMON', 0):.0f} MON)" for p in top)
        line += f"\n    top pools: {names}"
    return line


def compress_market_context(context: dict) -> str:
    """Market-wide Merkl activity on Monad: campaign counts and the largest opportunities."""
    lines = [
        f"Campaigns on Monad: {context.get('totalCampaigns', 0)}"
        f" | Opportunities: {context.get('totalOpportunities', 0)}",
    ]
    by_protocol = context.get("campaignsByProtocol") or []
    if by_protocol:
        lines.append("Campaigns by protocol: " + ", ".join(
            f"{sanitize_external_text(c.get('protocol'), 40)} {c.get('campaigns')}" for c in by_protocol
        ))
    for opp in context.get("topOpportunities") or []:
        lines.append(
            f"- {sanitize_external_text(opp.get('name'), 80)} ({sanitize_external_text(opp.get('protocol'), 40)})"
            f" | TVL {_money(opp.get('tvl'))} | APR {_pct(opp.get('apr'))}"
        )
    return "\n".join(lines)
