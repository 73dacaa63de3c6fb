"""
Incentive Lens — Dashboard Cache
Single-slot, in-process store for the daily dashboard snapshot.

One instance is created at application start (``app.state.dashboard_cache``)
and written once per UTC day by the refresh job. Readers never lock: ``set``
swaps the slot reference to a new snapshot, so a reader sees either the old or
the new snapshot and never a half-written one. The only in-place mutation is
``update_ai_analysis``, which moves a single optional field from empty to set.
"""
import threading
import time
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from app.core.logger import logger, RateLimitedLogger

_validity_log = RateLimitedLogger(logger, window=3600)


class CacheSnapshot(BaseModel):
    """The aggregated dashboard data for one reporting week."""
    model_config = ConfigDict(populate_by_name=True)

    start_date: str = Field(..., alias="startDate")
    end_date: str = Field(..., alias="endDate")
    mon_price: float = Field(..., alias="monPrice", ge=0)
    protocols: list[str] = []
    results: list[dict] = []
    previous_week_results: list[dict] = Field(default_factory=list, alias="previousWeekResults")
    protocol_tvl: dict[str, Optional[float]] = Field(default_factory=dict, alias="protocolTVL")
    protocol_tvl_metadata: dict[str, dict] = Field(default_factory=dict, alias="protocolTVLMetadata")
    protocol_dex_volume: dict[str, Any] = Field(default_factory=dict, alias="protocolDEXVolume")
    previous_week_protocol_tvl: dict[str, Optional[float]] = Field(default_factory=dict, alias="previousWeekProtocolTVL")
    previous_week_protocol_dex_volume: dict[str, Any] = Field(default_factory=dict, alias="previousWeekProtocolDEXVolume")
    ai_analysis: Optional[Union[dict, str]] = Field(default=None, alias="aiAnalysis")
    timestamp: int = 0
    cache_date: str = Field(..., alias="cacheDate", frozen=True)

    def to_api(self) -> dict:
        return self.model_dump(by_alias=True)


class DashboardCache:
    """Process-wide holder of the latest :class:`CacheSnapshot`."""

    def __init__(self):
        self._snapshot: Optional[CacheSnapshot] = None
        self._write_lock = threading.Lock()
        self._last_timestamp = 0

    def get(self) -> Optional[CacheSnapshot]:
        return self._snapshot

    def is_cache_valid(self, expected_date: str) -> bool:
        snapshot = self._snapshot
        if snapshot is None:
            return False
        is_valid = snapshot.cache_date == expected_date
        _validity_log.info(
            (snapshot.cache_date, expected_date),
            f"[Cache] Valid check: cacheDate={snapshot.cache_date} expected={expected_date} valid={is_valid}",
        )
        return is_valid

    def set(self, snapshot: CacheSnapshot) -> CacheSnapshot:
        """Replace the slot with ``snapshot`` (last write wins, no merge)."""
        with self._write_lock:
            stamp = max(int(time.time() * 1000), self._last_timestamp + 1)
            self._last_timestamp = stamp
            stored = snapshot.model_copy(update={"timestamp": stamp}, deep=True)
            self._snapshot = stored
        logger.info(f"[Cache] Snapshot stored for {stored.cache_date} ({stored.start_date} → {stored.end_date})")
        return stored

    def update_ai_analysis(self, analysis: Union[dict, str, None], expected_timestamp: Optional[int] = None) -> bool:
        """Attach AI analysis to the current snapshot. Returns False when skipped.

        With ``expected_timestamp`` the update only applies to the snapshot
        stamped with it, so a slow enrichment never lands on a newer snapshot.
        """
        if analysis is None:
            logger.warning("[Cache] Ignoring empty AI analysis update")
            return False
        with self._write_lock:
            snapshot = self._snapshot
            if snapshot is None:
                logger.error("[Cache] AI analysis arrived but no snapshot exists — dropped")
                return False
            if expected_timestamp is not None and snapshot.timestamp != expected_timestamp:
                logger.warning(
                    f"[Cache] AI analysis for snapshot {expected_timestamp} is stale "
                    f"(current {snapshot.timestamp}) — dropped"
                )
                return False
            if snapshot.ai_analysis is not None:
                logger.info(f"[Cache] Replacing existing AI analysis for {snapshot.cache_date}")
            snapshot.ai_analysis = analysis
        logger.info(f"[Cache] AI analysis attached to snapshot {snapshot.cache_date}")
        return True

    def clear(self) -> None:
        with self._write_lock:
            self._snapshot = None
        logger.info("[Cache] Cleared")
