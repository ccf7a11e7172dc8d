from functools import lru_cache
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from pydantic import AnyUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MAX_EXPIRY_HOURS_HARD_CAP = 168.0


def _ensure_sqlalchemy_postgres_scheme(value: str) -> str:
    if not value.lower().startswith("postgres"):
        return value

    parsed = urlparse(value)
    scheme = parsed.scheme.lower()

    if scheme in {"postgres", "postgresql"}:
        scheme = "postgresql+psycopg"

    if scheme not in {"postgresql+psycopg", "postgresql+asyncpg"}:
        scheme = "postgresql+psycopg"

    query_params = dict(parse_qsl(parsed.query, keep_blank_values=True))
    query_params.setdefault("sslmode", "require")
    new_query = urlencode(query_params, doseq=True)

    return urlunparse(parsed._replace(scheme=scheme, query=new_query))


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    debug: bool = Field(False, description="Enable FastAPI debug mode")
    environment: str = Field(
        default="development",
        description="Runtime environment (development|staging|production)",
    )
    database_url: AnyUrl | str = Field(
        default="sqlite:///../data/edge_trader.db",
        description="SQLAlchemy compatible database URL",
    )
    supabase_db_url: AnyUrl | str | None = Field(
        default=None,
        description="Supabase pooled Postgres connection string for production runs",
    )

    # Market data
    polymarket_base_url: AnyUrl = Field(
        default="https://gamma-api.polymarket.com",
        description="Base URL for the Polymarket Gamma API",
    )
    polymarket_markets_path: str = Field(
        default="/markets",
        description="Relative path for the markets endpoint",
    )
    market_page_size: int = Field(
        500, description="Number of markets to fetch per page", ge=1
    )
    market_max_total: int = Field(
        6000, description="Upper bound on markets pulled per cycle", ge=1
    )
    market_request_timeout_seconds: float = Field(
        15.0, description="HTTP timeout for Gamma API requests", gt=0
    )

    # Cycle control
    cycle_min_interval_minutes: float = Field(
        180.0,
        description="Minimum minutes between oracle calls; also the recently-analyzed TTL",
        gt=0,
    )
    cycle_lock_max_age_minutes: float = Field(
        15.0,
        description="Age after which a cycle lock is considered abandoned",
        gt=0,
    )
    cycle_batch_size: int = Field(5, description="Markets per oracle call", ge=1)
    cycle_max_batches: int = Field(
        4, description="Maximum oracle calls per cycle", ge=1
    )
    cycle_max_analyzed: int = Field(
        20, description="Maximum markets sent to the oracle per cycle", ge=1
    )
    cycle_min_pool_target: int = Field(
        15,
        description="Pool size below which opportunistic categories are folded back in",
        ge=0,
    )
    cycle_summary_dir: str | None = Field(
        default=None,
        description="Directory where JSON cycle summaries are written (blank disables)",
    )

    # Market filter
    filter_max_expiry_hours: float = Field(
        120.0, description="Reject contracts ending further out than this", gt=0
    )
    filter_min_minutes_to_expiry: float = Field(
        10.0, description="Reject contracts ending within this many minutes", ge=0
    )
    filter_liquidity_floor: float = Field(1500.0, description="Absolute minimum liquidity")
    filter_liquidity_ceiling: float = Field(
        10_000.0, description="Upper bound on the dynamic liquidity floor"
    )
    filter_liquidity_multiplier: float = Field(
        50.0, description="Multiplier applied to the typical bet size"
    )
    filter_typical_bet_fraction: float = Field(
        0.025, description="Fraction of capital assumed for a typical bet", gt=0, le=1
    )
    filter_min_volume: float = Field(300.0, description="Minimum traded volume")
    filter_weather_min_liquidity: float = Field(
        500.0, description="Liquidity floor for slow-moving weather contracts"
    )
    filter_weather_min_volume: float = Field(
        300.0, description="Volume floor for slow-moving weather contracts"
    )
    filter_weather_min_hours: float = Field(
        12.0, description="Hours left required for the weather carve-out"
    )
    filter_max_spread: float = Field(0.08, description="Maximum estimated spread")
    filter_price_floor: float = Field(
        0.05, description="YES prices at or below this count as resolved"
    )
    filter_price_ceiling: float = Field(
        0.95, description="YES prices at or above this count as resolved"
    )
    rules_path: str | None = Field(
        default=None,
        description="Optional YAML file replacing the bundled junk/category rule tables",
    )

    # Sizing
    kelly_fraction: float = Field(
        0.25, description="Fractional Kelly multiplier (0.5 half, 0.25 quarter)", gt=0, le=1
    )
    max_bet_fraction: float = Field(
        0.10, description="Hard cap on a single bet as a fraction of cash", gt=0, le=1
    )
    min_bet_usd: float = Field(1.0, description="Minimum order size in USD", gt=0)
    min_confidence: float = Field(60.0, description="Confidence floor (0-100)")
    min_edge_after_costs: float = Field(
        0.06, description="Minimum edge after amortized oracle cost"
    )
    min_market_price: float = Field(0.02, description="Lowest executable entry price")
    max_market_price: float = Field(0.98, description="Highest executable entry price")
    min_return_pct: float = Field(0.03, description="Minimum expected return on a win")
    lottery_price_threshold: float = Field(
        0.20, description="Entry prices below this are treated as lottery tickets"
    )
    lottery_min_confidence: float = Field(
        70.0, description="Confidence required for lottery tickets"
    )
    lottery_max_bet_fraction: float = Field(
        0.03, description="Bankroll cap for lottery tickets"
    )
    narrow_bin_min_confidence: float = Field(
        75.0, description="Confidence required for narrow weather bins"
    )
    narrow_bin_min_edge: float = Field(
        0.12, description="Gross edge required for narrow weather bins"
    )
    max_enriched_edge: float = Field(
        0.40, description="Edges above this are treated as stale prices or hallucinations"
    )
    provider_sizing_overrides: dict[str, dict[str, float]] = Field(
        default_factory=lambda: {
            "gemini": {
                "max_bet_fraction": 0.07,
                "min_edge_after_costs": 0.12,
                "min_confidence": 75.0,
            }
        },
        description="Per-provider overrides for sizing thresholds",
    )

    # Ledger
    initial_balance: float = Field(1000.0, description="Starting paper balance in USD", gt=0)
    min_order_price: float = Field(0.03, description="Ledger refuses orders below this price")
    balance_drift_tolerance: float = Field(
        0.02, description="Allowed gap between recorded and derived balance"
    )
    resolution_check_cooldown_minutes: float = Field(
        10.0, description="Minimum minutes between checks of the same position", ge=0
    )
    resolution_zombie_age_days: float = Field(
        7.0, description="Age after which positions without end dates are re-checked", gt=0
    )
    resolution_batch_size: int = Field(
        25, description="Positions fetched per resolution chunk", ge=1
    )

    # Oracle
    oracle_provider: str = Field(
        default="openai",
        description="LLM provider used as the forecasting oracle (openai|gemini)",
    )
    oracle_model: str | None = Field(
        default=None,
        description="Model override; provider default when unset",
    )
    oracle_max_output_tokens: int = Field(
        16_000, description="Upper bound on oracle response tokens", ge=256
    )
    oracle_web_search: bool = Field(
        True, description="Enable provider web search / grounding tools"
    )
    oracle_timeout_seconds: float = Field(
        600.0, description="HTTP timeout for a single oracle request", gt=0
    )
    openai_api_key: str | None = Field(
        default=None,
        description="API key used for OpenAI-powered forecasts",
    )
    openai_api_base: AnyUrl | str | None = Field(
        default=None,
        description="Optional override for the OpenAI API base URL (Azure/proxy support)",
    )
    openai_org_id: str | None = Field(
        default=None,
        description="Optional OpenAI organization identifier",
    )
    gemini_api_key: str | None = Field(
        default=None,
        description="API key used for Gemini-powered forecasts",
    )
    gemini_additional_api_keys: list[str] | str = Field(
        default_factory=list,
        description=(
            "Optional fallback Gemini API keys; the provider will cycle through them "
            "if the primary key is rate-limited or fails."
        ),
    )

    @field_validator("database_url", "supabase_db_url", mode="before")
    @classmethod
    def _normalize_postgres_urls(cls, value: Any) -> Any:
        if value is None or not isinstance(value, str):
            return value
        if value.startswith("postgres://"):
            return "postgresql://" + value[len("postgres://") :]
        return value

    @field_validator("gemini_additional_api_keys", mode="after")
    @classmethod
    def _parse_additional_gemini_keys(cls, value: Any) -> list[str]:
        if value in (None, "", []):
            return []
        if isinstance(value, str):
            return [item for item in (part.strip() for part in value.split(",")) if item]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        raise ValueError(
            "GEMINI_ADDITIONAL_API_KEYS must be provided as a list or comma-separated string"
        )

    @field_validator("filter_max_expiry_hours")
    @classmethod
    def _cap_expiry_horizon(cls, value: float) -> float:
        return min(value, MAX_EXPIRY_HOURS_HARD_CAP)

    @field_validator("oracle_provider")
    @classmethod
    def _lower_provider(cls, value: str) -> str:
        return value.strip().lower()

    @property
    def resolved_database_url(self) -> str:
        if self.environment.lower() == "production":
            if not self.supabase_db_url:
                raise ValueError(
                    "SUPABASE_DB_URL must be set when ENVIRONMENT=production"
                )
            return _ensure_sqlalchemy_postgres_scheme(str(self.supabase_db_url))
        return _ensure_sqlalchemy_postgres_scheme(str(self.database_url))

    @property
    def cycle_min_interval_seconds(self) -> float:
        return self.cycle_min_interval_minutes * 60.0

    @property
    def cycle_lock_max_age_seconds(self) -> float:
        return self.cycle_lock_max_age_minutes * 60.0


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
