import threading

import pytest
from pydantic import ValidationError

from app.core import cache as cache_module


def test_empty_cache_is_invalid(cache):
    assert cache.get() is None
    assert cache.is_cache_valid("2025-01-07") is False


def test_set_then_validity_by_cache_date(cache, make_snapshot):
    cache.set(make_snapshot(cacheDate="2025-01-07"))

    assert cache.get().cache_date == "2025-01-07"
    assert cache.is_cache_valid("2025-01-07") is True
    assert cache.is_cache_valid("2025-01-08") is False


def test_set_overwrites_regardless_of_date(cache, make_snapshot):
    cache.set(make_snapshot(cacheDate="2025-01-08"))
    cache.set(make_snapshot(cacheDate="2025-01-07", monPrice=0.5))

    assert cache.get().cache_date == "2025-01-07"
    assert cache.get().mon_price == 0.5


def test_timestamps_strictly_increase_with_frozen_clock(cache, make_snapshot, monkeypatch):
    monkeypatch.setattr(cache_module.time, "time", lambda: 1_700_000_000.0)

    stamps = [cache.set(make_snapshot()).timestamp for _ in range(5)]

    assert stamps == sorted(stamps)
    assert len(set(stamps)) == 5


def test_set_stores_a_copy(cache, make_snapshot):
    snapshot = make_snapshot()
    cache.set(snapshot)
    snapshot.results.append({"platformProtocol": "late"})

    assert all(p["platformProtocol"] != "late" for p in cache.get().results)


def test_readers_keep_the_snapshot_they_got(cache, make_snapshot):
    cache.set(make_snapshot(cacheDate="2025-01-06"))
    old = cache.get()

    cache.set(make_snapshot(cacheDate="2025-01-07"))

    assert old.cache_date == "2025-01-06"
    assert cache.get() is not old


def test_cache_date_is_frozen(cache, make_snapshot):
    stored = cache.set(make_snapshot(cacheDate="2025-01-07"))
    with pytest.raises(ValidationError):
        stored.cache_date = "2025-01-08"


def test_update_ai_analysis_without_snapshot_is_a_no_op(cache):
    assert cache.update_ai_analysis({"keyFindings": ["x"]}) is False
    assert cache.get() is None


def test_update_ai_analysis_mutates_in_place(cache, make_snapshot):
    cache.set(make_snapshot())
    reader = cache.get()
    analysis = {"keyFindings": ["Morpho USDC vault overpays"], "efficiencyIssues": []}

    assert cache.update_ai_analysis(analysis) is True
    assert reader.ai_analysis == analysis
    assert cache.get().ai_analysis == analysis


def test_update_ai_analysis_never_goes_back_to_null(cache, make_snapshot):
    cache.set(make_snapshot())
    cache.update_ai_analysis("free-text analysis")

    assert cache.update_ai_analysis(None) is False
    assert cache.get().ai_analysis == "free-text analysis"


def test_update_ai_analysis_rejects_stale_snapshot(cache, make_snapshot):
    first = cache.set(make_snapshot())
    cache.set(make_snapshot())

    assert cache.update_ai_analysis({"keyFindings": []}, expected_timestamp=first.timestamp) is False
    assert cache.get().ai_analysis is None


def test_clear(cache, make_snapshot):
    cache.set(make_snapshot())
    cache.clear()
    assert cache.get() is None


def test_to_api_uses_camel_case(cache, make_snapshot):
    data = cache.set(make_snapshot()).to_api()
    for key in ("startDate", "endDate", "monPrice", "previousWeekResults", "protocolTVL",
                "protocolDEXVolume", "aiAnalysis", "timestamp", "cacheDate"):
        assert key in data


def test_concurrent_sets_get_unique_timestamps(cache, make_snapshot):
    snapshot = make_snapshot()
    stamps = []
    lock = threading.Lock()

    def writer():
        for _ in range(50):
            stamp = cache.set(snapshot).timestamp
            with lock:
                stamps.append(stamp)

    threads = [threading.Thread(target=writer) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(stamps) == 400
    assert len(set(stamps)) == 400
    assert cache.get().timestamp == max(stamps)
