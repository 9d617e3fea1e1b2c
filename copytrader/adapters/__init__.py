"""
Platform adapters

- base: SourceAdapter contract, BetEvent, ResolutionStatus, Subscription
- polymarket, pancakeswap, azuro, limitless, overtime, manifold, speedmarkets, sxbet:
  one adapter per platform
"""

from typing import Dict, Optional, Type

from loguru import logger

from ..config import Settings, get_settings
from ..scheduling import Clock
from .base import BetEvent, ResolutionStatus, SourceAdapter, Subscription
from .azuro import AzuroAdapter
from .limitless import LimitlessAdapter
from .manifold import ManifoldAdapter
from .overtime import OvertimeAdapter
from .pancakeswap import PancakeSwapAdapter
from .polymarket import PolymarketAdapter
from .speedmarkets import SpeedMarketsAdapter
from .sxbet import SXBetAdapter


ADAPTERS: Dict[str, Type[SourceAdapter]] = {
    cls.platform: cls
    for cls in (
        PolymarketAdapter,
        PancakeSwapAdapter,
        AzuroAdapter,
        LimitlessAdapter,
        OvertimeAdapter,
        ManifoldAdapter,
        SpeedMarketsAdapter,
        SXBetAdapter,
    )
}


def build_adapters(settings: Optional[Settings] = None, clock: Optional[Clock] = None) -> Dict[str, SourceAdapter]:
    """Instantiate one adapter per enabled platform"""
    settings = settings or get_settings()
    adapters = {}
    for name in settings.enabled_platforms:
        cls = ADAPTERS.get(name.lower())
        if cls is None:
            logger.warning(f"No adapter for platform '{name}', skipping")
            continue
        adapters[cls.platform] = cls(settings=settings, clock=clock)
    return adapters


__all__ = [
    "ADAPTERS",
    "build_adapters",
    "BetEvent",
    "ResolutionStatus",
    "SourceAdapter",
    "Subscription",
    "AzuroAdapter",
    "LimitlessAdapter",
    "ManifoldAdapter",
    "OvertimeAdapter",
    "PancakeSwapAdapter",
    "PolymarketAdapter",
    "SpeedMarketsAdapter",
    "SXBetAdapter",
]
