import threading
from datetime import datetime, timezone

import pytest
from apscheduler.triggers.cron import CronTrigger

from app import background
from app.background import (
    EnrichmentExecutor, RefreshInProgress, RefreshSources, enrich_snapshot, refresh_dashboard,
    setup_daily_scheduler,
)

NOW = datetime(2025, 1, 8, 0, 30, tzinfo=timezone.utc)


@pytest.fixture()
def sources(sample_results):
    calls = {"mon_spent": [], "metrics": [], "analysis": []}

    def query_mon_spent(protocols, start, end, token):
        calls["mon_spent"].append((start, end, token))
        return sample_results if start == "2025-01-01" else sample_results[:1]

    def fetch_protocol_metrics(protocols, start, end):
        calls["metrics"].append((start, end))
        return {"tvlData": {"morpho": 1.0}, "tvlMetadata": {"morpho": {"isHistorical": True}},
                "dexVolumeData": {"morpho": {"volumeInRange": 2.0}}}

    def generate_analysis(current, previous, start, end, mon_price, previous_range=None):
        calls["analysis"].append((len(current), len(previous), start, end, mon_price, previous_range))
        return {"keyFindings": ["ok"], "efficiencyIssues": []}

    fakes = RefreshSources(
        get_price=lambda: 0.2,
        query_mon_spent=query_mon_spent,
        fetch_protocol_metrics=fetch_protocol_metrics,
        generate_analysis=generate_analysis,
    )
    return fakes, calls


@pytest.fixture()
def executor():
    ex = EnrichmentExecutor()
    yield ex
    ex.shutdown()


def test_refresh_stores_current_and_previous_week(cache, sources):
    fakes, calls = sources

    outcome = refresh_dashboard(cache, sources=fakes, protocols=["morpho", "kuru"], now=NOW)

    snapshot = cache.get()
    assert outcome.snapshot is snapshot
    assert outcome.enrichment is None
    assert snapshot.cache_date == "2025-01-07"
    assert (snapshot.start_date, snapshot.end_date) == ("2025-01-01", "2025-01-07")
    assert snapshot.mon_price == 0.2
    assert len(snapshot.results) == 2
    assert len(snapshot.previous_week_results) == 1
    assert snapshot.protocol_tvl == {"morpho": 1.0}
    assert snapshot.previous_week_protocol_dex_volume == {"morpho": {"volumeInRange": 2.0}}
    assert calls["mon_spent"] == [("2025-01-01", "2025-01-07", "WMON"), ("2024-12-25", "2024-12-31", "WMON")]
    assert cache.is_cache_valid("2025-01-07")


def test_enrichment_attaches_analysis_after_store(cache, sources, executor):
    fakes, calls = sources

    outcome = refresh_dashboard(cache, executor, sources=fakes, now=NOW)

    assert outcome.enrichment.result(timeout=5) is True
    assert cache.get().ai_analysis == {"keyFindings": ["ok"], "efficiencyIssues": []}
    current, previous, start, end, price, prev_range = calls["analysis"][0]
    assert (current, previous) == (3, 2)
    assert prev_range == ("2024-12-25", "2024-12-31")


def test_enrichment_failure_keeps_snapshot(cache, sources, executor):
    fakes, _ = sources

    def boom(*args, **kwargs):
        raise TimeoutError("Gemini call exceeded deadline")

    fakes.generate_analysis = boom
    outcome = refresh_dashboard(cache, executor, sources=fakes, now=NOW)

    assert outcome.enrichment.result(timeout=5) is False
    assert cache.get() is outcome.snapshot
    assert cache.get().ai_analysis is None


def test_enrichment_for_replaced_snapshot_is_dropped(cache, make_snapshot):
    old = cache.set(make_snapshot())
    cache.set(make_snapshot())

    assert enrich_snapshot(cache, old, lambda *a, **k: {"keyFindings": []}) is False
    assert cache.get().ai_analysis is None


def test_concurrent_refresh_is_rejected(cache, sources):
    fakes, _ = sources
    background._refresh_lock.acquire()
    try:
        with pytest.raises(RefreshInProgress):
            refresh_dashboard(cache, sources=fakes, now=NOW)
    finally:
        background._refresh_lock.release()


def test_executor_shutdown_cancels_pending_work():
    ex = EnrichmentExecutor()
    started, gate = threading.Event(), threading.Event()

    def block():
        started.set()
        return gate.wait(5)

    running = ex.submit(block)
    assert started.wait(5)
    pending = ex.submit(lambda: "never")

    ex.shutdown()
    gate.set()

    assert pending.cancelled()
    assert running.result(timeout=5) is True


def test_daily_scheduler_registers_cron_job(monkeypatch):
    monkeypatch.setattr(background.config, "REFRESH_CRON_HOUR", 1)
    monkeypatch.setattr(background.config, "REFRESH_CRON_MINUTE", 15)

    scheduler = setup_daily_scheduler(app=None)
    try:
        job = scheduler.get_job("daily_dashboard_refresh")
        assert job is not None
        assert isinstance(job.trigger, CronTrigger)
        assert "hour='1'" in str(job.trigger) and "minute='15'" in str(job.trigger)
    finally:
        scheduler.shutdown(wait=False)


def test_scheduled_refresh_swallows_errors(monkeypatch):
    class _State:
        dashboard_cache = None
        enrichment_executor = None

    class _App:
        state = _State()

    def boom(*args, **kwargs):
        raise RuntimeError("upstream down")

    monkeypatch.setattr(background, "refresh_dashboard", boom)

    background.run_scheduled_refresh(_App())
