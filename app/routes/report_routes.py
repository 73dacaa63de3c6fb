"""
Incentive Lens — Report Routes
Enhanced incentive CSV, from request data or from the cached snapshot.
"""
from typing import Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

from app.core.config import EnhancedCSVRequest
from app.core.dates import yesterday_utc
from app.core.logger import logger
from app.services import price_service
from app.services.report_service import (
    ProtocolAggregates, ReportPrices, build_report, extract_efficiency_issues,
    flatten_results, report_filename,
)

router = APIRouter()


def _csv_response(content: str, start_date: str, end_date: str) -> StreamingResponse:
    return StreamingResponse(
        iter([content]),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{report_filename(start_date, end_date)}"'},
    )


def _resolve_factor(explicit: Optional[float], start_date: str, end_date: str) -> float:
    if explicit is not None:
        return explicit
    factor, _, _ = price_service.adjustment_factor_for_range(start_date, end_date)
    return factor


def _lower_keys(mapping: dict) -> dict:
    return {key.lower(): value for key, value in (mapping or {}).items()}


@router.post("/api/enhanced-csv")
def post_enhanced_csv(body: EnhancedCSVRequest):
    """CSV for the pools in the request; missing price/factor are fetched."""
    mon_price = body.mon_price if body.mon_price else price_service.get_price()
    prices = ReportPrices(mon_price, _resolve_factor(body.adjustment_factor, body.start_date, body.end_date))
    aggregates = ProtocolAggregates(
        tvl=_lower_keys(body.protocol_tvl),
        dex_volume={k: v for k, v in _lower_keys(body.protocol_dex_volume).items() if v is not None},
    )
    logger.info(f"[CSV] Enhanced report: {len(body.pools)} pools, {len(body.efficiency_issues or [])} issues")
    content = build_report(
        body.pools,
        (body.start_date, body.end_date),
        prices,
        aggregates,
        efficiency_issues=body.efficiency_issues,
        previous_pools=body.previous_pools,
    )
    return _csv_response(content, body.start_date, body.end_date)


@router.get("/api/enhanced-csv/cached")
def get_cached_enhanced_csv(
    request: Request,
    adjustment_factor: Optional[float] = Query(default=None, alias="adjustmentFactor", gt=0),
):
    """CSV for the cached snapshot, with AI recommendations when enrichment has landed."""
    cache = request.app.state.dashboard_cache
    expected = yesterday_utc()
    snapshot = cache.get()
    if snapshot is None or not cache.is_cache_valid(expected):
        return JSONResponse(status_code=404, content={
            "success": False,
            "cached": False,
            "message": "No cached data available for the report.",
            "expectedDate": expected,
        })

    prices = ReportPrices(
        snapshot.mon_price,
        _resolve_factor(adjustment_factor, snapshot.start_date, snapshot.end_date),
    )
    aggregates = ProtocolAggregates(
        tvl=_lower_keys(snapshot.protocol_tvl),
        dex_volume=_lower_keys(snapshot.protocol_dex_volume),
    )
    content = build_report(
        flatten_results(snapshot.results),
        (snapshot.start_date, snapshot.end_date),
        prices,
        aggregates,
        efficiency_issues=extract_efficiency_issues(snapshot.ai_analysis),
        previous_pools=flatten_results(snapshot.previous_week_results),
    )
    return _csv_response(content, snapshot.start_date, snapshot.end_date)
