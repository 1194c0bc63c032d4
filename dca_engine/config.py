import os

from decimal import Decimal
from pathlib import Path
from typing import Any, List

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parents[1]


# Known-good contracts on Base
AERODROME_ROUTER = "0xcF77a3Ba9A5CA399B7c97c74d54e5b1Beb874E43"
OPENOCEAN_EXCHANGE = "0x6352a56caadC4F1E25CD6c75970Fa768A3304e64"
ONEINCH_ROUTER_V6 = "0x111111125421cA6dc452d289314280a0f8842A65"
PARASWAP_AUGUSTUS_V6 = "0x6A000F20005980200259B80c5102003040001068"
BASE_USDC = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
BASE_WETH = "0x4200000000000000000000000000000000000006"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    def model_post_init(self, __context: Any) -> None:
        """Ensure we pick up legacy environment variable aliases."""

        super().model_post_init(__context)

        if not self.cron_secret_key:
            fallback = os.getenv("CRON_SECRET")
            if fallback:
                object.__setattr__(self, "cron_secret_key", fallback)

    # Server Settings
    host: str = Field(default="127.0.0.1", description="Server host")
    port: int = Field(default=8000, description="Server port")
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Log renderer: json or console")

    # Scheduler Trigger
    cron_secret_key: str = Field(
        default="",
        description="Bearer secret required by the cron sweep endpoint",
        validation_alias=AliasChoices("cron_secret_key", "CRON_SECRET_KEY"),
    )
    enable_manual_trigger: bool = Field(
        default=True,
        description="Expose the unauthenticated POST sweep trigger used for testing",
    )
    scheduler_enabled: bool = Field(
        default=False,
        description="Run sweeps from an in-process periodic runner alongside FastAPI",
    )
    scheduler_interval_seconds: int = Field(default=60, ge=1, description="Seconds between in-process sweeps")
    reconcile_interval_seconds: int = Field(default=300, ge=1, description="Seconds between in-process reconciles")

    # Scheduler
    scheduler_max_concurrency: int = Field(
        default=4,
        ge=1,
        description="Maximum orders processed concurrently within one sweep",
    )
    scheduler_order_timeout_seconds: int = Field(
        default=180,
        ge=1,
        description="Max seconds one order cycle may run before it is abandoned",
    )
    claim_stale_after_seconds: int = Field(
        default=600,
        ge=1,
        description="Claims older than this are rolled back to active at the next sweep",
    )
    max_consecutive_reverts: int = Field(
        default=5,
        ge=0,
        description="Consecutive on-chain reverts before an order is held for owner review (0 disables)",
    )

    # Amounts
    min_execution_amount: Decimal = Field(
        default=Decimal("0.01"),
        description="Per-cycle amounts below this are treated as dust and rolled forward",
    )
    platform_fee_percentage: Decimal = Field(
        default=Decimal("0.1"),
        ge=0,
        le=100,
        description="Platform fee taken from the order total at creation (percent)",
    )
    first_execution_delay_seconds: int = Field(
        default=60,
        ge=0,
        description="Delay between order creation and its first execution",
    )

    # Quote Aggregation
    quote_timeout_seconds: float = Field(default=8.0, gt=0, description="Per-source quote timeout")
    quote_slippage_bps: int = Field(default=150, ge=0, le=5000, description="Slippage tolerance sent to aggregators")
    quote_max_price_impact_pct: Decimal = Field(
        default=Decimal("5"),
        description="Quotes reporting a higher price impact are discarded",
    )
    quote_circuit_failure_threshold: int = Field(default=3, ge=1, description="Failures before a source is skipped")
    quote_circuit_reset_seconds: int = Field(default=180, ge=1, description="Seconds a tripped source stays skipped")
    quote_inter_batch_delay_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Delay between owner batches to respect aggregator rate limits",
    )
    enable_openocean: bool = Field(default=True, description="Enable OpenOcean quote source")
    enable_oneinch: bool = Field(default=True, description="Enable 1inch quote source")
    enable_paraswap: bool = Field(default=True, description="Enable Paraswap quote source")
    oneinch_api_key: str = Field(default="", description="1inch developer portal API key")
    openocean_base_url: str = Field(default="", description="Override the default OpenOcean API base URL")
    oneinch_base_url: str = Field(default="", description="Override the default 1inch API base URL")
    paraswap_base_url: str = Field(default="", description="Override the default Paraswap API base URL")

    # Security Gate
    allowed_contracts: List[str] = Field(
        default_factory=lambda: [
            AERODROME_ROUTER,
            OPENOCEAN_EXCHANGE,
            ONEINCH_ROUTER_V6,
            PARASWAP_AUGUSTUS_V6,
            BASE_USDC,
            BASE_WETH,
        ],
        description="Static allow-list of router, token and payout contracts",
    )

    # Chain / Submission
    chain_id: int = Field(default=8453, description="Chain the engine executes on")
    rpc_url: str = Field(default="https://mainnet.base.org", description="JSON-RPC endpoint for balance reads")
    signer_relay_url: str = Field(default="", description="Signing relay that submits delegated batches")
    signer_relay_api_key: str = Field(default="", description="API key for the signing relay")
    submission_timeout_seconds: float = Field(default=120.0, gt=0, description="Max wait for batch inclusion")
    submission_poll_interval_seconds: float = Field(default=2.0, gt=0, description="Receipt poll interval")

    # Storage
    redis_url: str = Field(
        default="",
        description="Redis connection string for the order store (empty uses the in-memory store)",
    )

    # Reconciler
    reconcile_batch_size: int = Field(default=5, ge=1, description="Owners fetched concurrently per batch")
    reconcile_batch_delay_seconds: float = Field(default=1.0, ge=0, description="Delay between owner batches")
    reconcile_cache_seconds: int = Field(default=30, ge=0, description="Skip re-syncing an owner within this window")
    openocean_orderbook_base_url: str = Field(
        default="",
        description="Override the default OpenOcean DCA order book base URL",
    )

    @property
    def has_cron_secret(self) -> bool:
        return bool(self.cron_secret_key)

    @property
    def has_redis(self) -> bool:
        return bool(self.redis_url)

    @property
    def quote_slippage_pct(self) -> Decimal:
        return Decimal(self.quote_slippage_bps) / Decimal(100)


# Global settings instance
settings = Settings()
