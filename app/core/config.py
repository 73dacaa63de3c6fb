"""
Incentive Lens — Configuration & Constants
Environment variables, API endpoints, protocol catalog and Pydantic models.
"""
import os
import pathlib
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from dotenv import load_dotenv

# ── Project Root ──
PROJECT_ROOT = pathlib.Path(__file__).resolve().parent.parent.parent

# ── Environment ──
load_dotenv()

APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# ── AI Configuration (validated on first use) ──
_GENAI_API_KEY: str | None = None

def get_genai_api_key() -> str:
    """Return the Gemini API key, raising only when actually needed."""
    global _GENAI_API_KEY
    if _GENAI_API_KEY is None:
        _GENAI_API_KEY = os.getenv("GENAI_API_KEY", "")
    if not _GENAI_API_KEY:
        raise ValueError("GENAI_API_KEY is required. Please check your .env file.")
    return _GENAI_API_KEY

AI_MODEL = os.getenv("AI_MODEL", "gemini-2.0-flash")
AI_TIMEOUT_SEC = int(os.getenv("AI_TIMEOUT_SEC", "240"))  # enrichment may take minutes
AI_MAX_OUTPUT_TOKENS = int(os.getenv("AI_MAX_OUTPUT_TOKENS", "8192"))

# ── Cron ──
CRON_SECRET = os.getenv("CRON_SECRET", "")
ENABLE_SCHEDULER = os.getenv("ENABLE_SCHEDULER", "true").lower() in ("true", "1", "yes")
WARM_CACHE_ON_STARTUP = os.getenv("WARM_CACHE_ON_STARTUP", "false").lower() in ("true", "1", "yes")
REFRESH_CRON_HOUR = int(os.getenv("REFRESH_CRON_HOUR", "0"))
REFRESH_CRON_MINUTE = int(os.getenv("REFRESH_CRON_MINUTE", "30"))

# ── CORS ──
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")

# ── External APIs ──
COINGECKO_API_BASE = "https://api.coingecko.com/api/v3"
COINGECKO_COIN_ID = os.getenv("COINGECKO_COIN_ID", "monad")
CG_DEMO_API_KEY = os.getenv("CG_DEMO_API_KEY", "")
CG_HEADERS = {"Accept": "application/json"}
if CG_DEMO_API_KEY:
    CG_HEADERS["x-cg-demo-api-key"] = CG_DEMO_API_KEY

DEFILLAMA_API_BASE = "https://api.llama.fi"
MERKL_API_BASE = "https://api.merkl.xyz"
MONAD_CHAIN_ID = 143
DEFILLAMA_CHAIN_KEYS = ("Monad", "monad", "MONAD")

# ── Timeouts / pacing (seconds) ──
PRICE_TIMEOUT = 3
PRICE_HISTORY_TIMEOUT = 10
DEFILLAMA_TIMEOUT = 15
MERKL_TIMEOUT = 15
DEFILLAMA_CALL_DELAY = 0.2   # per protocol, serialized
MERKL_PAGE_DELAY = 0.1
MERKL_PAGE_SIZE = 100

# ── Pricing ──
DEFAULT_MON_PRICE = float(os.getenv("DEFAULT_MON_PRICE", "0.025"))
TWAP_WINDOW_DAYS = 7
REWARD_TOKEN_SYMBOLS = ("WMON", "MON", "cWMON")

# ── Protocol Catalog ──
TRACKED_PROTOCOLS = [
    "clober",
    "curvance",
    "gearbox",
    "kuru",
    "morpho",
    "euler",
    "pancake-swap",
    "monday-trade",
    "renzo",
    "upshift",
    "townsquare",
    "uniswap",
    "beefy",
    "accountable",
    "curve",
]

# Merkl protocol id -> DefiLlama slug
PROTOCOL_SLUG_MAP = {
    "clober": "clober",
    "curvance": "curvance",
    "gearbox": "gearbox",
    "kuru": "kuru",
    "morpho": "morpho",
    "euler": "euler",
    "pancake-swap": "pancakeswap-v3",
    "uniswap": "uniswap",
    "monday-trade": "monday-trade",
    "renzo": "renzo",
    "upshift": "upshift",
    "townsquare": "townsquare",
}


# ───────────────────────────────────────
# Pydantic Models (Domain)
# ───────────────────────────────────────
class PoolRow(BaseModel):
    """One incentivized market, flattened from protocol → funding → market."""
    model_config = ConfigDict(populate_by_name=True)
    platform_protocol: str = Field(..., alias="platformProtocol", min_length=1)
    funding_protocol: str = Field(..., alias="fundingProtocol", min_length=1)
    market_name: str = Field(..., alias="marketName", min_length=1)
    total_mon: float = Field(..., alias="totalMON", ge=0)
    tvl: Optional[float] = Field(default=None, ge=0)
    apr: Optional[float] = None
    volume_value: Optional[float] = Field(default=None, alias="volumeValue", ge=0)
    merkl_url: Optional[str] = Field(default=None, alias="merklUrl")

    @field_validator("total_mon", "tvl", "apr", "volume_value", mode="before")
    @classmethod
    def _numbers_only(cls, value):
        # "1000" and true must not turn into 1000.0 / 1.0
        if value is None or (isinstance(value, (int, float)) and not isinstance(value, bool)):
            return value
        raise ValueError(f"must be a number, got {type(value).__name__}")

    @property
    def pool_id(self) -> str:
        return f"{self.platform_protocol}-{self.funding_protocol}-{self.market_name}"


class DexVolume(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    volume_in_range: Optional[float] = Field(default=None, alias="volumeInRange")
    volume_24h: Optional[float] = Field(default=None, alias="volume24h")
    volume_7d: Optional[float] = Field(default=None, alias="volume7d")
    volume_30d: Optional[float] = Field(default=None, alias="volume30d")
    is_historical: bool = Field(default=False, alias="isHistorical")

    def preferred(self) -> Optional[float]:
        """Range volume first, then trailing 7d, then trailing 30d."""
        for value in (self.volume_in_range, self.volume_7d, self.volume_30d):
            if value is not None:
                return value
        return None


# ───────────────────────────────────────
# Pydantic Models (AI Response Validation)
# ───────────────────────────────────────
class EfficiencyIssue(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")
    pool_id: str = Field(..., alias="poolId")
    recommendation: str = ""
    issue: Optional[str] = None
    severity: Optional[str] = None


class WowExplanation(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")
    pool_id: str = Field(default="", alias="poolId")
    change: Optional[float] = None
    explanation: str = ""
    likely_cause: str = Field(default="", alias="likelyCause")


class IncentiveAnalysis(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)
    key_findings: List[str] = Field(default=[], alias="keyFindings")
    efficiency_issues: List[EfficiencyIssue] = Field(default=[], alias="efficiencyIssues")
    wow_explanations: List[WowExplanation] = Field(default=[], alias="wowExplanations")
    recommendations: List[str] = []


class ProtocolInsight(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")
    protocol: str
    efficiency: Optional[str] = None   # efficient | average | inefficient
    assessment: str = ""
    wow_explanation: str = Field(default="", alias="wowExplanation")
    recommendation: str = ""


class ProtocolAnalysis(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)
    key_findings: List[str] = Field(default=[], alias="keyFindings")
    protocol_insights: List[ProtocolInsight] = Field(default=[], alias="protocolInsights")
    competitive_landscape: List[str] = Field(default=[], alias="competitiveLandscape")
    recommendations: List[str] = []


# ───────────────────────────────────────
# Pydantic Models (Request)
# ───────────────────────────────────────
_DATE_RE = r"^\d{4}-\d{2}-\d{2}$"


class ProtocolTVLRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    protocols: List[str] = Field(..., min_length=1, max_length=50)
    start_date: Optional[str] = Field(default=None, alias="startDate", pattern=_DATE_RE)
    end_date: Optional[str] = Field(default=None, alias="endDate", pattern=_DATE_RE)


class MonSpentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    protocols: List[str] = Field(..., min_length=1, max_length=50)
    start_date: str = Field(..., alias="startDate", pattern=_DATE_RE)
    end_date: str = Field(..., alias="endDate", pattern=_DATE_RE)
    token: str = Field(default="WMON", max_length=20)


class AnalysisPeriod(BaseModel):
    """Pools stay raw dicts; ``validate_pools`` reports every bad field at once."""
    model_config = ConfigDict(populate_by_name=True)
    pools: List[dict] = []
    start_date: str = Field(..., alias="startDate", pattern=_DATE_RE)
    end_date: str = Field(..., alias="endDate", pattern=_DATE_RE)
    mon_price: Optional[float] = Field(default=None, alias="monPrice", ge=0)


class AIAnalysisRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    current_week: AnalysisPeriod = Field(..., alias="currentWeek")
    previous_week: Optional[AnalysisPeriod] = Field(default=None, alias="previousWeek")


class BulkProtocolAnalysisRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    protocols: List[str] = Field(default=[], max_length=50)
    start_date: str = Field(..., alias="startDate", pattern=_DATE_RE)
    end_date: str = Field(..., alias="endDate", pattern=_DATE_RE)
    mon_price: Optional[float] = Field(default=None, alias="monPrice", ge=0)


class EnhancedCSVRequest(BaseModel):
    """Pool and issue lists are checked by the report builder, not here, so
    every rejection comes back as ``{success: false, errors}``."""
    model_config = ConfigDict(populate_by_name=True)
    pools: List[dict] = []
    start_date: str = Field(..., alias="startDate", pattern=_DATE_RE)
    end_date: str = Field(..., alias="endDate", pattern=_DATE_RE)
    mon_price: Optional[float] = Field(default=None, alias="monPrice", ge=0)
    adjustment_factor: Optional[float] = Field(default=None, alias="adjustmentFactor", gt=0)
    protocol_tvl: dict[str, Optional[float]] = Field(default_factory=dict, alias="protocolTVL")
    protocol_dex_volume: dict[str, Optional[DexVolume]] = Field(default_factory=dict, alias="protocolDEXVolume")
    efficiency_issues: Optional[List[dict]] = Field(default=None, alias="efficiencyIssues")
    previous_pools: Optional[List[dict]] = Field(default=None, alias="previousPools")


AIAnalysisResult = Union[dict, str]
