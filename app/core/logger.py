"""
Incentive Lens — Logging
Single logging setup shared by every module, plus a deduplicating logger.
"""
import logging
import threading
import time

from app.core.config import LOG_LEVEL

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("incentive_lens")


class RateLimitedLogger:
    """Log a message at most once per key within ``window`` seconds.

    Used for chatty checks (cache validity probes on every request) where the
    same pair of values would otherwise be logged thousands of times a day.
    """

    def __init__(self, base: logging.Logger, window: float = 3600.0, max_keys: int = 1024):
        self._base = base
        self._window = window
        self._max_keys = max_keys
        self._seen: dict = {}
        self._lock = threading.Lock()

    def should_log(self, key) -> bool:
        now = time.monotonic()
        with self._lock:
            last = self._seen.get(key)
            if last is not None and now - last < self._window:
                return False
            if len(self._seen) >= self._max_keys:
                self._seen.clear()
            self._seen[key] = now
            return True

    def log(self, level: int, key, msg: str) -> bool:
        if not self.should_log(key):
            return False
        self._base.log(level, msg)
        return True

    def info(self, key, msg: str) -> bool:
        return self.log(logging.INFO, key, msg)

    def debug(self, key, msg: str) -> bool:
        return self.log(logging.DEBUG, key, msg)
