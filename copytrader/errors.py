"""
Exception taxonomy

Adapter errors never leave the adapter/settlement boundary; ledger violations abort
the single mutation that raised them.
"""

from typing import Optional


class CopyTraderError(Exception):
    """Base class for engine errors"""


class AdapterError(CopyTraderError):
    """An external source failed to answer"""

    def __init__(self, platform: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(f"[{platform}] {message}")
        self.platform = platform
        self.cause = cause


class AdapterFetchError(AdapterError):
    """Market list could not be fetched or parsed"""


class AdapterResolutionError(AdapterError):
    """Resolution status could not be determined"""

    def __init__(self, platform: str, market_id: str, cause: Optional[BaseException] = None):
        super().__init__(platform, f"resolution check failed for {market_id}: {cause}", cause)
        self.market_id = market_id


class LedgerInvariantViolation(CopyTraderError):
    """A ledger mutation would break the balance invariant"""

    def __init__(self, owner: str, message: str):
        super().__init__(f"Ledger invariant violated for {owner}: {message}")
        self.owner = owner
