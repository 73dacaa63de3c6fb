"""
Incentive Lens — Resilient HTTP Client
Per-host 429/418 backoff around ``requests`` and a JSON helper that never raises.
"""
import time
from collections import defaultdict
from typing import Any, Optional
from urllib.parse import urlparse

import requests

from app.core.logger import logger

# ── Per-host state ──
_backoff_until: dict = {}                 # host -> earliest retry time
_fail_count: dict = defaultdict(int)      # host -> consecutive failures

MAX_BACKOFF_SEC = 60


def resilient_get(url: str, timeout: float = 15, **kwargs) -> requests.Response:
    """HTTP GET that refuses to hammer a host which recently rate-limited us."""
    host = urlparse(url).netloc
    now = time.time()

    if now < _backoff_until.get(host, 0):
        wait = _backoff_until[host] - now
        logger.warning(f"[HTTP] {host} in backoff for {wait:.0f}s more — skipping")
        raise requests.exceptions.ConnectionError(f"{host} rate-limited, backing off")

    try:
        resp = requests.get(url, timeout=timeout, **kwargs)
    except requests.exceptions.RequestException:
        _fail_count[host] += 1
        raise

    if resp.status_code in (418, 429):
        _fail_count[host] += 1
        fails = _fail_count[host]
        retry_after = 0
        header = resp.headers.get("Retry-After")
        if header:
            try:
                retry_after = int(header)
            except (TypeError, ValueError):
                pass
        backoff = max(retry_after, min(MAX_BACKOFF_SEC, 5 * (2 ** (fails - 1))))
        _backoff_until[host] = now + backoff
        logger.warning(f"[HTTP] {resp.status_code} from {host} — backing off {backoff}s (fail #{fails})")
        raise requests.exceptions.HTTPError(f"{resp.status_code} from {host}", response=resp)

    if _fail_count.get(host):
        logger.info(f"[HTTP] {host} recovered")
        _fail_count[host] = 0
    return resp


def get_json(url: str, timeout: float = 15, *, label: str = "HTTP", **kwargs) -> Optional[Any]:
    """GET → parsed JSON, or None on any transport/status/decode failure.

    A 404 is logged at debug level because DefiLlama and Merkl answer 404 for
    protocols they simply do not list.
    """
    try:
        resp = resilient_get(url, timeout=timeout, **kwargs)
        if resp.status_code == 404:
            logger.debug(f"[{label}] 404 for {url}")
            return None
        resp.raise_for_status()
        return resp.json()
    except (requests.exceptions.RequestException, ValueError) as e:
        logger.warning(f"[{label}] Request failed for {url}: {e}")
        return None


def get_api_health() -> dict:
    """Backoff status per host, for /health."""
    now = time.time()
    return {
        host: {
            "status": "backoff" if now < until else "ok",
            "fails": _fail_count.get(host, 0),
            "backoff_remaining": max(0, round(until - now)),
        }
        for host, until in _backoff_until.items()
    }


def reset_http_state() -> None:
    _backoff_until.clear()
    _fail_count.clear()
