"""
Configuration module for the Settlement & Copy-Trading Engine
"""

from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Dict, List


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Exposure Ceilings
    max_total_exposure: float = Field(default=10000.0, description="Global open-stake ceiling")
    max_platform_exposure: float = Field(default=5000.0, description="Default open-stake ceiling per platform")
    platform_exposure_limits: Dict[str, float] = Field(
        default_factory=dict, description="Per-platform ceiling overrides"
    )
    max_trader_exposure: float = Field(default=2000.0, description="Default open-stake max per followed trader")
    max_copy_size: float = Field(default=500.0, description="Default max size of one copied position")

    # Copy Trading
    min_trust_score: float = Field(default=60.0, description="Traders below this trust score are not followed")
    enable_anti_gaming: bool = Field(default=True, description="Reject copies from low-trust traders")
    anti_gaming_threshold: float = Field(default=70.0, description="Trust score required when anti-gaming is on")
    copy_delay_seconds: float = Field(default=2.0, description="Delay before committing a copy")
    tier_multipliers: Dict[str, float] = Field(
        default_factory=lambda: {
            "DIAMOND": 1.5,
            "PLATINUM": 1.2,
            "GOLD": 1.0,
            "SILVER": 0.8,
            "BRONZE": 0.5,
        }
    )
    enabled_platforms: List[str] = Field(
        default_factory=lambda: [
            "polymarket",
            "pancakeswap",
            "azuro",
            "limitless",
            "overtime",
            "manifold",
            "speedmarkets",
            "sxbet",
        ]
    )
    starting_balance: float = Field(default=0.0, description="Balance credited to new follower portfolios")

    # Settlement
    poll_interval: float = Field(default=15.0, description="Resolution polling interval in seconds")
    bet_poll_interval: float = Field(default=10.0, description="Live bet feed polling interval in seconds")

    # Network
    request_timeout: float = Field(default=10.0, description="Per-request timeout in seconds")
    request_retries: int = Field(default=2, description="Attempts per request")
    retry_backoff: float = Field(default=1.0, description="Backoff step between attempts in seconds")
    rate_limit_calls: int = Field(default=10)
    rate_limit_period: int = Field(default=1)

    # Platform Endpoints
    polymarket_gamma_host: str = Field(default="https://gamma-api.polymarket.com")
    polymarket_data_host: str = Field(default="https://data-api.polymarket.com")
    limitless_host: str = Field(default="https://api.limitless.exchange")
    manifold_host: str = Field(default="https://api.manifold.markets")
    overtime_host: str = Field(default="https://api.overtime.io")
    overtime_network: int = Field(default=10)
    overtime_api_key: str = Field(default="")
    azuro_subgraph_url: str = Field(
        default="https://thegraph.azuro.org/subgraphs/name/azuro-protocol/azuro-api-polygon-v3"
    )
    bsc_rpc_url: str = Field(default="https://bsc-dataseed.binance.org")
    pyth_hermes_host: str = Field(default="https://hermes.pyth.network")
    sxbet_host: str = Field(default="https://api.sx.bet")

    # Scoring
    roi_variance_estimate: float = Field(default=0.25, description="Assumed per-trade ROI variance")

    # Database
    database_url: str = Field(default="sqlite+aiosqlite:///./copytrader.db")

    # Logging
    log_level: str = Field(default="INFO")
    log_file: str = Field(default="logs/copytrader.log")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False

    def platform_ceiling(self, platform: str) -> float:
        """Open-stake ceiling for one platform"""
        return self.platform_exposure_limits.get(platform, self.max_platform_exposure)

    def tier_multiplier(self, tier: str) -> float:
        return self.tier_multipliers.get(tier.upper(), 1.0)


def get_settings() -> Settings:
    """Get application settings"""
    return Settings()


# Contract Addresses
class ContractAddresses:
    """On-chain contracts read by the adapters"""

    # PancakeSwap Prediction V2 (BSC)
    PANCAKE_PREDICTION = "0x18B2A687610328590Bc8F2e5fEdDe3b582A49cdA"

    # Pyth price feeds Thales Speed Markets settle against
    PYTH_BTC_USD = "0xe62df6c8b4a85fe1a67db44dc12de5db330f7ac66b72dc658afedf0f4a415b43"
    PYTH_ETH_USD = "0xff61491a931112ddf1bd8147cd1b641375f79f5825126d665480874634fd0ace"


# API Endpoints
class PlatformEndpoints:
    """Paths appended to the configured platform hosts"""

    # Polymarket
    GAMMA_MARKETS = "/markets"
    DATA_TRADES = "/trades"

    # Limitless
    LIMITLESS_ACTIVE = "/markets/active"
    LIMITLESS_MARKET = "/markets/{slug}"

    # Manifold
    MANIFOLD_MARKETS = "/v0/markets"
    MANIFOLD_MARKET = "/v0/market/{id}"
    MANIFOLD_BETS = "/v0/bets"

    # Overtime
    OVERTIME_MARKETS = "/overtime-v2/networks/{network}/markets"
    OVERTIME_GAME = "/overtime-v2/networks/{network}/games-info/{game_id}"

    # Pyth Hermes
    PYTH_LATEST = "/api/latest_price_feeds"
    PYTH_AT = "/api/get_price_feed"

    # SX Bet
    SXBET_ACTIVE = "/markets/active"
    SXBET_FIND = "/markets/find"


# Scoring Constants
class ScoringConstants:
    """Trust score parameters"""

    MIN_BETS_BINARY = 30
    MIN_TRADES_ODDS = 20
    MIN_VOLUME_ODDS = 1000.0

    Z_SCORE = 1.96
    ROI_VARIANCE_ESTIMATE = 0.25
    ROI_Z = 1.5

    MAX_EDGE_POINTS = 500
    EDGE_MULTIPLIER = 5000
    MAX_SCORE = 1000
    CONFIDENCE_SCALE = 200

    MAX_RECENCY_BONUS = 300
    RECENCY_FULL_DAYS = 7
    RECENCY_DECAY_DAYS = 90
    MAX_TOTAL_SCORE = 1300

    # Fixed even-money payout platforms
    BINARY_PLATFORMS = ("pancakeswap", "speedmarkets", "thales")

    # Settlement
    WINNING_PRICE = 0.95
    STALE_REFUND_HOURS = 24
