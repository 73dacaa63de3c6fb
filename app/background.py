"""
Incentive Lens — Background Tasks
Daily dashboard refresh, AI enrichment executor and the APScheduler job.
"""
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, NamedTuple, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from app.core import config
from app.core.cache import CacheSnapshot, DashboardCache
from app.core.dates import previous_period, report_window, yesterday_utc
from app.core.logger import logger
from app.services import ai_service, incentive_service, price_service, tvl_service
from app.services.report_service import flatten_results

# ── Module-level state ──
_bg_started = False
_bg_lock = threading.Lock()
_refresh_lock = threading.Lock()


class RefreshInProgress(RuntimeError):
    pass


class EnrichmentExecutor:
    """Single worker for slow post-refresh work (AI analysis).

    ``submit`` returns the ``Future`` so callers and tests can wait on it;
    ``shutdown`` drops queued work and does not wait for a running call.
    """

    def __init__(self):
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="enrichment")

    def submit(self, fn: Callable, *args, **kwargs) -> Future:
        return self._pool.submit(fn, *args, **kwargs)

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)
        logger.info("[Enrichment] Executor shut down")


@dataclass
class RefreshSources:
    """The fetchers a refresh calls; tests swap in fakes."""
    get_price: Callable
    query_mon_spent: Callable
    fetch_protocol_metrics: Callable
    generate_analysis: Callable

    @classmethod
    def default(cls) -> "RefreshSources":
        return cls(
            get_price=price_service.get_price,
            query_mon_spent=incentive_service.query_mon_spent,
            fetch_protocol_metrics=tvl_service.fetch_protocol_metrics,
            generate_analysis=ai_service.generate_analysis,
        )


class RefreshOutcome(NamedTuple):
    snapshot: CacheSnapshot
    enrichment: Optional[Future]
    duration_ms: int


# ── Enrichment ──
def enrich_snapshot(cache: DashboardCache, snapshot: CacheSnapshot, generate: Callable) -> bool:
    """Run AI analysis for ``snapshot`` and attach it. Failures are logged, never raised."""
    started = time.time()
    try:
        prev_range = previous_period(snapshot.start_date, snapshot.end_date)
        analysis = generate(
            flatten_results(snapshot.results),
            flatten_results(snapshot.previous_week_results),
            snapshot.start_date,
            snapshot.end_date,
            snapshot.mon_price,
            previous_range=prev_range,
        )
    except Exception as e:
        logger.error(f"[Enrichment] AI analysis failed for {snapshot.cache_date}: {e}")
        return False
    attached = cache.update_ai_analysis(analysis, expected_timestamp=snapshot.timestamp)
    if attached:
        logger.info(f"[Enrichment] AI analysis ready in {time.time() - started:.1f}s")
    return attached


# ── Refresh ──
def refresh_dashboard(
    cache: DashboardCache,
    executor: Optional[EnrichmentExecutor] = None,
    sources: Optional[RefreshSources] = None,
    protocols: Optional[list[str]] = None,
    now: Optional[datetime] = None,
) -> RefreshOutcome:
    """Fetch current + previous week, store the snapshot, then queue AI enrichment.

    The snapshot is stored before enrichment starts, so readers get the
    critical data as soon as the fetchers finish. Raises
    :class:`RefreshInProgress` if another refresh is running.
    """
    if not _refresh_lock.acquire(blocking=False):
        raise RefreshInProgress("A dashboard refresh is already running")
    try:
        sources = sources or RefreshSources.default()
        protocols = list(protocols or config.TRACKED_PROTOCOLS)
        started = time.time()

        start_date, end_date = report_window(now)
        prev_start, prev_end = previous_period(start_date, end_date)
        logger.info(f"[Cron] Refreshing dashboard for {start_date} → {end_date} (previous {prev_start} → {prev_end})")

        mon_price = sources.get_price()
        results = sources.query_mon_spent(protocols, start_date, end_date, "WMON")
        metrics = sources.fetch_protocol_metrics(protocols, start_date, end_date)
        prev_results = sources.query_mon_spent(protocols, prev_start, prev_end, "WMON")
        prev_metrics = sources.fetch_protocol_metrics(protocols, prev_start, prev_end)
        if not results:
            logger.warning(f"[Cron] No incentive results for {start_date} → {end_date}")

        snapshot = cache.set(CacheSnapshot(
            start_date=start_date,
            end_date=end_date,
            mon_price=mon_price,
            protocols=protocols,
            results=results or [],
            previous_week_results=prev_results or [],
            protocol_tvl=metrics.get("tvlData", {}),
            protocol_tvl_metadata=metrics.get("tvlMetadata", {}),
            protocol_dex_volume=metrics.get("dexVolumeData", {}),
            previous_week_protocol_tvl=prev_metrics.get("tvlData", {}),
            previous_week_protocol_dex_volume=prev_metrics.get("dexVolumeData", {}),
            cache_date=yesterday_utc(now),
        ))
        duration_ms = int((time.time() - started) * 1000)
        logger.info(f"[Cron] Dashboard refresh stored in {duration_ms}ms ({len(snapshot.results)} protocols)")
    finally:
        _refresh_lock.release()

    enrichment = None
    if executor is not None:
        enrichment = executor.submit(enrich_snapshot, cache, snapshot, sources.generate_analysis)
    return RefreshOutcome(snapshot, enrichment, duration_ms)


def run_scheduled_refresh(app) -> None:
    """APScheduler entry point; never lets an exception escape into the scheduler."""
    try:
        refresh_dashboard(app.state.dashboard_cache, app.state.enrichment_executor)
    except RefreshInProgress:
        logger.info("[Scheduler] Refresh already running — skipped")
    except Exception as e:
        logger.error(f"[Scheduler] Daily refresh failed: {e}")


# ── Scheduler ──
def setup_daily_scheduler(app) -> BackgroundScheduler:
    """Register the daily refresh at REFRESH_CRON_HOUR:REFRESH_CRON_MINUTE UTC."""
    scheduler = BackgroundScheduler(daemon=True, timezone="UTC")
    trigger = CronTrigger(hour=config.REFRESH_CRON_HOUR, minute=config.REFRESH_CRON_MINUTE, timezone="UTC")
    scheduler.add_job(run_scheduled_refresh, trigger, args=[app], id="daily_dashboard_refresh", replace_existing=True)
    scheduler.start()
    logger.info(f"[Scheduler] Daily refresh at {config.REFRESH_CRON_HOUR:02d}:{config.REFRESH_CRON_MINUTE:02d} UTC")
    return scheduler


def startup_background_tasks(app) -> Optional[BackgroundScheduler]:
    """Start the scheduler and optional warm-up (guarded against double start)."""
    global _bg_started
    with _bg_lock:
        if _bg_started:
            return None
        _bg_started = True

    scheduler = setup_daily_scheduler(app) if config.ENABLE_SCHEDULER else None
    if config.WARM_CACHE_ON_STARTUP and not app.state.dashboard_cache.is_cache_valid(yesterday_utc()):
        threading.Thread(target=run_scheduled_refresh, args=(app,), daemon=True).start()
        logger.info("[Startup] Warm-up refresh thread started")
    return scheduler


def shutdown_background_tasks(app, scheduler: Optional[BackgroundScheduler]) -> None:
    global _bg_started
    if scheduler is not None:
        scheduler.shutdown(wait=False)
    app.state.enrichment_executor.shutdown()
    with _bg_lock:
        _bg_started = False
