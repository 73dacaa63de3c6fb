import pytest
import requests
from fastapi.testclient import TestClient

from app.core import config
from app.core.cache import CacheSnapshot, DashboardCache
from app.core.dates import yesterday_utc
from app.core.http_client import reset_http_state


@pytest.fixture(autouse=True)
def no_network(monkeypatch):
    """Any test that reaches a real HTTP call fails loudly."""
    def _blocked(*args, **kwargs):
        raise RuntimeError(f"Network access attempted in tests: {args[:1]}")
    monkeypatch.setattr(requests, "get", _blocked)
    reset_http_state()
    yield
    reset_http_state()


@pytest.fixture()
def cache():
    return DashboardCache()


@pytest.fixture()
def sample_results():
    """Nested incentive results as the Merkl oracle returns them."""
    return [
        {
            "platformProtocol": "morpho",
            "totalMON": 150.0,
            "fundingProtocols": [
                {
                    "fundingProtocol": "morpho",
                    "totalMON": 150.0,
                    "markets": [
                        {"marketName": "USDC Vault", "totalMON": 100.0, "apr": 5.0, "tvl": 100000.0,
                         "merklUrl": "https://app.merkl.xyz/chains/monad?search=morpho"},
                        {"marketName": "WMON Vault", "totalMON": 50.0, "apr": None, "tvl": None},
                    ],
                }
            ],
        },
        {
            "platformProtocol": "kuru",
            "totalMON": 20.0,
            "fundingProtocols": [
                {
                    "fundingProtocol": "merkl",
                    "totalMON": 20.0,
                    "markets": [{"marketName": "MON-USDC", "totalMON": 20.0, "apr": 12.5, "tvl": 40000.0}],
                }
            ],
        },
    ]


@pytest.fixture()
def make_snapshot(sample_results):
    def _make(**overrides):
        data = {
            "startDate": "2025-01-01",
            "endDate": "2025-01-07",
            "monPrice": 0.2,
            "protocols": ["morpho", "kuru"],
            "results": sample_results,
            "previousWeekResults": [],
            "protocolTVL": {"morpho": 5_000_000.0, "kuru": None},
            "protocolDEXVolume": {"kuru": {"volumeInRange": 250000.0, "volume7d": 260000.0}},
            "cacheDate": yesterday_utc(),
        }
        data.update(overrides)
        return CacheSnapshot.model_validate(data)
    return _make


@pytest.fixture()
def client(monkeypatch):
    monkeypatch.setattr(config, "ENABLE_SCHEDULER", False)
    monkeypatch.setattr(config, "WARM_CACHE_ON_STARTUP", False)
    monkeypatch.setattr(config, "CRON_SECRET", "")
    from app.main import create_app

    with TestClient(create_app()) as test_client:
        yield test_client
