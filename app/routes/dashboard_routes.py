"""
Incentive Lens — Dashboard API Routes
Cached dashboard, cron refresh, live data endpoints and on-demand AI analysis.
"""
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from app.background import RefreshInProgress, refresh_dashboard
from app.core.config import AIAnalysisRequest, BulkProtocolAnalysisRequest, MonSpentRequest, ProtocolTVLRequest
from app.core.dates import period_days, yesterday_utc
from app.core.http_client import get_api_health
from app.core.logger import logger
from app.core.security import require_cron_secret
from app.services import ai_service, incentive_service, price_service, protocol_analysis_service, tvl_service
from app.services.report_service import ReportValidationError

router = APIRouter()


# ── Cached Dashboard ──
@router.get("/api/dashboard-default")
def get_dashboard_default(request: Request):
    """Serve yesterday's snapshot, or 404 telling the client which day is expected."""
    cache = request.app.state.dashboard_cache
    expected = yesterday_utc()
    snapshot = cache.get()
    if snapshot is not None and cache.is_cache_valid(expected):
        return {"success": True, "cached": True, "data": snapshot.to_api()}

    logger.info(f"[Dashboard] Cache miss for {expected}")
    return JSONResponse(status_code=404, content={
        "success": False,
        "cached": False,
        "message": "No cached data available. Please wait for the next cron run or trigger a manual refresh.",
        "expectedDate": expected,
    })


@router.get("/api/cron/refresh-dashboard", dependencies=[Depends(require_cron_secret)])
def cron_refresh_dashboard(request: Request):
    try:
        outcome = refresh_dashboard(request.app.state.dashboard_cache, request.app.state.enrichment_executor)
    except RefreshInProgress as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {
        "success": True,
        "date": outcome.snapshot.cache_date,
        "duration": outcome.duration_ms,
        "poolsCount": len(outcome.snapshot.results),
        "aiAnalysisScheduled": outcome.enrichment is not None,
    }


# ── Live Data ──
def _check_range(start_date: str, end_date: str) -> None:
    try:
        period_days(start_date, end_date)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/api/mon-price")
def get_mon_price():
    return {"price": price_service.get_price()}


@router.post("/api/protocol-tvl")
def post_protocol_tvl(body: ProtocolTVLRequest):
    if body.start_date or body.end_date:
        _check_range(body.start_date or body.end_date, body.end_date or body.start_date)
    metrics = tvl_service.fetch_protocol_metrics(body.protocols, body.start_date, body.end_date)
    return {"success": True, **metrics}


@router.post("/api/query-mon-spent")
def post_query_mon_spent(body: MonSpentRequest):
    _check_range(body.start_date, body.end_date)
    results = incentive_service.query_mon_spent(body.protocols, body.start_date, body.end_date, body.token)
    return {
        "success": True,
        "results": results,
        "dateRange": {"start": body.start_date, "end": body.end_date},
    }


@router.post("/api/ai-analysis")
def post_ai_analysis(body: AIAnalysisRequest):
    current, previous = body.current_week, body.previous_week
    if not current.pools:
        raise HTTPException(status_code=400, detail="currentWeek.pools must not be empty")
    try:
        analysis = ai_service.generate_analysis(
            current.pools,
            previous.pools if previous else None,
            current.start_date,
            current.end_date,
            current.mon_price,
            previous_range=(previous.start_date, previous.end_date) if previous else None,
        )
    except ReportValidationError:
        raise
    except ValueError as e:
        # missing GENAI_API_KEY
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        logger.error(f"[AI] On-demand analysis failed: {e}")
        raise HTTPException(status_code=502, detail="AI analysis failed")
    return {"success": True, "analysis": analysis}


@router.post("/api/bulk-protocol-analysis")
def post_bulk_protocol_analysis(body: BulkProtocolAnalysisRequest):
    """Protocol-level comparison across the requested protocols."""
    if not body.protocols:
        raise HTTPException(status_code=400, detail="No protocols selected")
    _check_range(body.start_date, body.end_date)
    try:
        report = protocol_analysis_service.analyze_protocols(
            body.protocols, body.start_date, body.end_date, body.mon_price,
        )
    except ValueError as e:
        # missing GENAI_API_KEY
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        logger.error(f"[Bulk] Protocol analysis failed: {e}")
        raise HTTPException(status_code=502, detail="Bulk protocol analysis failed")
    return {"success": True, **report}


# ── Health ──
@router.get("/health")
def health(request: Request):
    snapshot = request.app.state.dashboard_cache.get()
    return {
        "status": "ok",
        "cacheDate": snapshot.cache_date if snapshot else None,
        "aiAnalysis": snapshot.ai_analysis is not None if snapshot else False,
        "apis": get_api_health(),
    }
