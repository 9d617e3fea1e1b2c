"""
Settlement & Copy-Trading Engine

Simulates copy trading across prediction-market and sports-betting platforms:
watches selected traders, mirrors their bets into simulated portfolios under
exposure limits, and settles each position from the platform's own resolution.

Modules:
- config: Configuration management
- normalizer: Market and odds normalization
- scoring: Trust scoring of trader histories
- adapters: One source adapter per platform
- copy_strategy: Copy decision engine and exposure accounting
- portfolio: Simulated portfolio ledger
- settlement: Resolution polling and settlement
- models / repository: Persistence
- engine: Process-wide engine context
- main: CLI entry point
"""

__version__ = "0.1.0"
__author__ = "Copy Trading Engine"

from .config import get_settings, Settings
from .errors import AdapterFetchError, AdapterResolutionError, CopyTraderError, LedgerInvariantViolation
from .normalizer import Market, MarketStatus, Outcome, PriceFormat, normalize_market
from .scoring import TraderHistory, TrustScoreResult, calculate_trust_score
from .adapters import BetEvent, ResolutionStatus, SourceAdapter, build_adapters
from .copy_strategy import CopyDecision, CopyDecisionEngine, ExposureTracker, RejectionReason, Tier, TraderFollowConfig
from .portfolio import Portfolio, PortfolioLedger, Position, PositionStatus
from .settlement import SettlementEngine, SettlementReport
from .repository import InMemoryRepository, PositionRepository, SqlRepository
from .engine import EngineContext

__all__ = [
    # Config
    "get_settings",
    "Settings",
    # Errors
    "CopyTraderError",
    "AdapterFetchError",
    "AdapterResolutionError",
    "LedgerInvariantViolation",
    # Normalization
    "Market",
    "MarketStatus",
    "Outcome",
    "PriceFormat",
    "normalize_market",
    # Scoring
    "TraderHistory",
    "TrustScoreResult",
    "calculate_trust_score",
    # Adapters
    "BetEvent",
    "ResolutionStatus",
    "SourceAdapter",
    "build_adapters",
    # Copy strategy
    "CopyDecision",
    "CopyDecisionEngine",
    "ExposureTracker",
    "RejectionReason",
    "Tier",
    "TraderFollowConfig",
    # Portfolio
    "Portfolio",
    "PortfolioLedger",
    "Position",
    "PositionStatus",
    # Settlement
    "SettlementEngine",
    "SettlementReport",
    # Persistence
    "InMemoryRepository",
    "PositionRepository",
    "SqlRepository",
    # Engine
    "EngineContext",
]
