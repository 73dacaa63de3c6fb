"""
Incentive Lens — Enhanced Incentive Report
Turns a flat pool list plus protocol-level TVL/volume into the hierarchical
CSV export (grand total → per protocol: subtotal, pools, protocol total).

Everything here is a pure function over already-fetched data. Aggregate rows
re-derive their percentages from summed USD/TVL/volume; per-pool percentages
are never averaged.
"""
import csv
import io
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Sequence

from pydantic import ValidationError

from app.core.config import DexVolume, EfficiencyIssue, PoolRow
from app.core.dates import period_days as count_period_days, short_label
from app.core.logger import logger
from app.services.issue_matcher import NO_RECOMMENDATION, match_recommendation, normalize_pool_id

DAYS_PER_YEAR = 365


class ReportValidationError(ValueError):
    """Report input rejected; ``errors`` is a list of ``{loc, msg}`` dicts."""

    def __init__(self, errors: list[dict]):
        self.errors = errors
        super().__init__("; ".join(f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in errors))


@dataclass(frozen=True)
class ReportPrices:
    mon_price: float
    adjustment_factor: float = 1.0


@dataclass
class ProtocolAggregates:
    """Protocol-wide oracle figures, keyed by lower-cased protocol id."""
    tvl: Mapping[str, Optional[float]] = field(default_factory=dict)
    dex_volume: Mapping[str, Any] = field(default_factory=dict)

    def protocol_tvl(self, protocol: str) -> Optional[float]:
        return self.tvl.get(protocol.lower())

    def protocol_volume(self, protocol: str) -> Optional[float]:
        entry = self.dex_volume.get(protocol.lower())
        if entry is None:
            return None
        if not isinstance(entry, DexVolume):
            entry = DexVolume.model_validate(entry)
        return entry.preferred()


class RowKind(str, Enum):
    GRAND_TOTAL = "grand_total"
    SUBTOTAL = "subtotal"
    POOL = "pool"
    PROTOCOL_TOTAL = "protocol_total"


@dataclass
class ReportRow:
    kind: RowKind
    period_days: int
    protocol: str = ""
    funding_protocol: str = ""
    pool: str = ""
    incentive_mon: Optional[float] = None
    adjusted_incentive_mon: Optional[float] = None
    tvl: Optional[float] = None
    volume: Optional[float] = None
    apr: Optional[float] = None
    tvl_cost_pct: Optional[float] = None
    wow_change_pct: Optional[float] = None
    volume_efficiency_pct: Optional[float] = None
    action: str = ""
    notes: str = ""

    @property
    def type_label(self) -> str:
        if self.kind is RowKind.GRAND_TOTAL:
            return "GRAND TOTAL"
        if self.kind is RowKind.SUBTOTAL:
            return f"{self.protocol} SUBTOTAL"
        if self.kind is RowKind.PROTOCOL_TOTAL:
            return f"{self.protocol} PROTOCOL TOTAL"
        return "Pool"

    def csv_fields(self) -> list[str]:
        is_pool = self.kind is RowKind.POOL
        return [
            self.type_label,
            self.protocol if is_pool else "",
            self.funding_protocol if is_pool else "",
            self.pool,
            fmt_number(self.incentive_mon),
            fmt_number(self.adjusted_incentive_mon),
            str(self.period_days),
            fmt_number(self.tvl),
            fmt_number(self.volume),
            fmt_number(self.apr),
            fmt_number(self.tvl_cost_pct),
            fmt_number(self.tvl_cost_pct),
            fmt_number(self.wow_change_pct),
            fmt_number(self.volume_efficiency_pct),
            self.action,
            self.notes,
        ]


# ── Metrics ──
def fmt_number(value: Optional[float]) -> str:
    """Two decimals; missing or non-finite values render empty, never ``0.00``."""
    if value is None or not math.isfinite(value):
        return ""
    text = f"{value:.2f}"
    return "0.00" if text == "-0.00" else text


def tvl_cost_pct(adjusted_usd: float, period_days: int, tvl: Optional[float]) -> Optional[float]:
    """Period spend annualized against standing TVL, in percent."""
    if tvl is None or tvl <= 0 or period_days <= 0:
        return None
    return adjusted_usd / period_days * DAYS_PER_YEAR / tvl * 100


def volume_efficiency_pct(adjusted_usd: float, volume: Optional[float]) -> Optional[float]:
    if volume is None or volume <= 0:
        return None
    return adjusted_usd / volume * 100


def wow_change_pct(current: Optional[float], previous: Optional[float]) -> Optional[float]:
    if current is None or previous is None or previous <= 0:
        return None
    return (current - previous) / previous * 100


class _Totals:
    """Running sums for one aggregation scope."""

    def __init__(self):
        self.incentive_mon = 0.0
        self.tvl = 0.0
        self.volume = 0.0
        self.has_tvl = False
        self.has_volume = False

    def add(self, pool: PoolRow) -> None:
        self.incentive_mon += pool.total_mon
        if pool.tvl is not None:
            self.tvl += pool.tvl
            self.has_tvl = True
        if pool.volume_value is not None:
            self.volume += pool.volume_value
            self.has_volume = True

    def tvl_or_none(self) -> Optional[float]:
        return self.tvl if self.has_tvl else None

    def volume_or_none(self) -> Optional[float]:
        return self.volume if self.has_volume else None

    def tvl_cost(self, prices: ReportPrices, days: int) -> Optional[float]:
        adjusted_usd = self.incentive_mon * prices.adjustment_factor * prices.mon_price
        return tvl_cost_pct(adjusted_usd, days, self.tvl_or_none())

    def to_row(self, kind: RowKind, prices: ReportPrices, days: int, protocol: str = "",
               previous: Optional["_Totals"] = None) -> ReportRow:
        adjusted_mon = self.incentive_mon * prices.adjustment_factor
        adjusted_usd = adjusted_mon * prices.mon_price
        cost = tvl_cost_pct(adjusted_usd, days, self.tvl_or_none())
        return ReportRow(
            kind=kind,
            period_days=days,
            protocol=protocol,
            pool="All Pools" if kind is RowKind.GRAND_TOTAL else "ALL POOLS",
            incentive_mon=self.incentive_mon,
            adjusted_incentive_mon=adjusted_mon,
            tvl=self.tvl_or_none(),
            volume=self.volume_or_none(),
            tvl_cost_pct=cost,
            wow_change_pct=wow_change_pct(cost, previous.tvl_cost(prices, days)) if previous else None,
            volume_efficiency_pct=volume_efficiency_pct(adjusted_usd, self.volume_or_none()),
        )


# ── Input handling ──
def _finite(value: Optional[float]) -> bool:
    return value is None or math.isfinite(value)


def validate_pools(pools: Sequence, loc: str = "pools") -> list[PoolRow]:
    """Coerce dicts to :class:`PoolRow`, collecting every problem before raising."""
    errors: list[dict] = []
    rows: list[PoolRow] = []
    for i, raw in enumerate(pools):
        try:
            row = raw if isinstance(raw, PoolRow) else PoolRow.model_validate(raw)
        except ValidationError as e:
            for err in e.errors():
                errors.append({"loc": [loc, i, *err["loc"]], "msg": err["msg"]})
            continue
        for name in ("total_mon", "tvl", "apr", "volume_value"):
            if not _finite(getattr(row, name)):
                errors.append({"loc": [loc, i, name], "msg": "must be a finite number"})
        rows.append(row)
    if errors:
        raise ReportValidationError(errors)
    return rows


def _validate_inputs(pools, date_range, prices) -> tuple[list[PoolRow], int]:
    errors: list[dict] = []
    if not pools:
        errors.append({"loc": ["pools"], "msg": "at least one pool is required"})
    days = 0
    try:
        days = count_period_days(*date_range)
    except (TypeError, ValueError) as e:
        errors.append({"loc": ["dateRange"], "msg": str(e)})
    if not math.isfinite(prices.mon_price) or prices.mon_price <= 0:
        errors.append({"loc": ["monPrice"], "msg": "must be a positive number"})
    if not math.isfinite(prices.adjustment_factor) or prices.adjustment_factor <= 0:
        errors.append({"loc": ["adjustmentFactor"], "msg": "must be a positive number"})
    rows: list[PoolRow] = []
    if pools:
        try:
            rows = validate_pools(pools)
        except ReportValidationError as e:
            errors.extend(e.errors)
    if errors:
        raise ReportValidationError(errors)
    return rows, days


def _index_previous(previous_pools: Iterable[PoolRow]) -> dict[str, PoolRow]:
    index: dict[str, PoolRow] = {}
    for pool in previous_pools:
        index.setdefault(normalize_pool_id(pool.pool_id), pool)
    return index


# ── Build ──
def build_rows(
    pools: Sequence,
    date_range: tuple[str, str],
    prices: ReportPrices,
    aggregates: ProtocolAggregates,
    efficiency_issues: Optional[Iterable] = None,
    previous_pools: Optional[Sequence] = None,
) -> list[ReportRow]:
    rows_in, days = _validate_inputs(pools, date_range, prices)
    previous = validate_pools(previous_pools, loc="previousPools") if previous_pools is not None else None
    issues = list(efficiency_issues or [])

    by_protocol: dict[str, list[PoolRow]] = {}
    for pool in rows_in:
        by_protocol.setdefault(pool.platform_protocol, []).append(pool)

    prev_by_protocol: dict[str, _Totals] = {}
    prev_grand: Optional[_Totals] = None
    prev_index: dict[str, PoolRow] = {}
    if previous is not None:
        prev_grand = _Totals()
        for pool in previous:
            prev_grand.add(pool)
            prev_by_protocol.setdefault(pool.platform_protocol, _Totals()).add(pool)
        prev_index = _index_previous(previous)

    grand = _Totals()
    for pool in rows_in:
        grand.add(pool)

    out = [grand.to_row(RowKind.GRAND_TOTAL, prices, days, previous=prev_grand)]
    matched = 0
    for protocol, protocol_pools in by_protocol.items():
        subtotal = _Totals()
        for pool in protocol_pools:
            subtotal.add(pool)
        prev_scope = prev_by_protocol.get(protocol, _Totals()) if previous is not None else None
        out.append(subtotal.to_row(RowKind.SUBTOTAL, prices, days, protocol=protocol, previous=prev_scope))

        for pool in protocol_pools:
            adjusted_mon = pool.total_mon * prices.adjustment_factor
            adjusted_usd = adjusted_mon * prices.mon_price
            cost = tvl_cost_pct(adjusted_usd, days, pool.tvl)

            wow = None
            prev_pool = prev_index.get(normalize_pool_id(pool.pool_id))
            if prev_pool is not None:
                prev_usd = prev_pool.total_mon * prices.adjustment_factor * prices.mon_price
                wow = wow_change_pct(cost, tvl_cost_pct(prev_usd, days, prev_pool.tvl))

            rec = match_recommendation(pool.pool_id, issues) if issues else NO_RECOMMENDATION
            if rec.matched:
                matched += 1
            out.append(ReportRow(
                kind=RowKind.POOL,
                period_days=days,
                protocol=pool.platform_protocol,
                funding_protocol=pool.funding_protocol,
                pool=pool.market_name,
                incentive_mon=pool.total_mon,
                adjusted_incentive_mon=adjusted_mon,
                tvl=pool.tvl,
                volume=pool.volume_value,
                apr=pool.apr,
                tvl_cost_pct=cost,
                wow_change_pct=wow,
                volume_efficiency_pct=volume_efficiency_pct(adjusted_usd, pool.volume_value),
                action=rec.action,
                notes=rec.notes,
            ))

        out.append(ReportRow(
            kind=RowKind.PROTOCOL_TOTAL,
            period_days=days,
            protocol=protocol,
            tvl=aggregates.protocol_tvl(protocol),
            volume=aggregates.protocol_volume(protocol),
        ))

    if issues:
        logger.info(f"[CSV] Matched recommendations for {matched}/{len(rows_in)} pools ({len(issues)} issues)")
    return out


def header_row(start_date: str, end_date: str) -> list[str]:
    start, end = short_label(start_date), short_label(end_date)
    return [
        "Type", "Protocol", "Funding Protocol", "Pool",
        "Incentive (MON)", "Adjusted Incentive (MON)", "Period (days)",
        f"TVL (as of {end})", f"Volume ({start} - {end})",
        "APR (%)", "TVL Cost (%)", "Adjusted Cost Efficiency (%)",
        "Adjusted TVL Cost WoW Change (%)", "Volume Efficiency (%)",
        "Action Needed", "Notes",
    ]


def render_csv(rows: Sequence[ReportRow], start_date: str, end_date: str) -> str:
    output = io.StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(header_row(start_date, end_date))
    for row in rows:
        writer.writerow(row.csv_fields())
    return output.getvalue()


def build_report(
    pools: Sequence,
    date_range: tuple[str, str],
    prices: ReportPrices,
    aggregates: ProtocolAggregates,
    efficiency_issues: Optional[Iterable] = None,
    previous_pools: Optional[Sequence] = None,
) -> str:
    """Full CSV document; invalid input raises :class:`ReportValidationError` before any row is written."""
    rows = build_rows(pools, date_range, prices, aggregates, efficiency_issues, previous_pools)
    return render_csv(rows, *date_range)


def report_filename(start_date: str, end_date: str) -> str:
    return f"merkl-incentives-enhanced-{start_date}-{end_date}.csv"


# ── Adapters for cached / AI data ──
def flatten_results(results: Iterable[dict]) -> list[dict]:
    """Nested protocol → funding → market results into flat pool dicts."""
    pools = []
    for platform in results or []:
        for funding in platform.get("fundingProtocols", []):
            for market in funding.get("markets", []):
                pools.append({
                    "platformProtocol": platform.get("platformProtocol"),
                    "fundingProtocol": funding.get("fundingProtocol"),
                    "marketName": market.get("marketName"),
                    "totalMON": market.get("totalMON", 0),
                    "tvl": market.get("tvl"),
                    "apr": market.get("apr"),
                    "volumeValue": market.get("volume"),
                    "merklUrl": market.get("merklUrl"),
                })
    return pools


def extract_efficiency_issues(ai_analysis: Any) -> list[EfficiencyIssue]:
    """Efficiency issues from stored analysis; free-text analysis yields none."""
    if not isinstance(ai_analysis, dict):
        return []
    issues = []
    for item in ai_analysis.get("efficiencyIssues") or []:
        try:
            issues.append(EfficiencyIssue.model_validate(item))
        except ValidationError:
            logger.debug(f"[CSV] Skipping malformed efficiency issue: {str(item)[:120]}")
    return issues
