"""
PancakeSwap Prediction adapter (BNB Chain)

Each 5-minute round (epoch) is a two-outcome market, "bull" or "bear", read straight
from the prediction contract. A round counts as resolved only once the oracle has been
called and a close price is recorded.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from eth_abi import decode
from web3 import AsyncWeb3, Web3
from web3.middleware import ExtraDataToPOAMiddleware

from ..config import ContractAddresses, ScoringConstants
from ..normalizer import Market, MarketStatus, PriceFormat, normalize_market
from .base import BetEvent, ResolutionStatus, SourceAdapter


PREDICTION_ABI = [
    {
        "inputs": [],
        "name": "currentEpoch",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "name": "rounds",
        "outputs": [
            {"internalType": "uint256", "name": "epoch", "type": "uint256"},
            {"internalType": "uint256", "name": "startTimestamp", "type": "uint256"},
            {"internalType": "uint256", "name": "lockTimestamp", "type": "uint256"},
            {"internalType": "uint256", "name": "closeTimestamp", "type": "uint256"},
            {"internalType": "int256", "name": "lockPrice", "type": "int256"},
            {"internalType": "int256", "name": "closePrice", "type": "int256"},
            {"internalType": "uint256", "name": "lockOracleId", "type": "uint256"},
            {"internalType": "uint256", "name": "closeOracleId", "type": "uint256"},
            {"internalType": "uint256", "name": "totalAmount", "type": "uint256"},
            {"internalType": "uint256", "name": "bullAmount", "type": "uint256"},
            {"internalType": "uint256", "name": "bearAmount", "type": "uint256"},
            {"internalType": "uint256", "name": "rewardBaseCalAmount", "type": "uint256"},
            {"internalType": "uint256", "name": "rewardAmount", "type": "uint256"},
            {"internalType": "bool", "name": "oracleCalled", "type": "bool"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
]

BET_BULL_TOPIC = Web3.to_hex(Web3.keccak(text="BetBull(address,uint256,uint256)"))
BET_BEAR_TOPIC = Web3.to_hex(Web3.keccak(text="BetBear(address,uint256,uint256)"))

WEI = 10 ** 18
MAX_BLOCK_RANGE = 500


@dataclass
class PredictionRound:
    """Decoded `rounds(epoch)` tuple"""
    epoch: int
    lock_timestamp: int
    close_timestamp: int
    lock_price: int
    close_price: int
    total_amount: int
    bull_amount: int
    bear_amount: int
    oracle_called: bool

    @classmethod
    def from_tuple(cls, data) -> "PredictionRound":
        return cls(
            epoch=int(data[0]),
            lock_timestamp=int(data[2]),
            close_timestamp=int(data[3]),
            lock_price=int(data[4]),
            close_price=int(data[5]),
            total_amount=int(data[8]),
            bull_amount=int(data[9]),
            bear_amount=int(data[10]),
            oracle_called=bool(data[13]),
        )

    def side_share(self, side: str) -> float:
        """Pool share of one side; an empty pool is split evenly"""
        if self.total_amount <= 0:
            return 0.5
        amount = self.bull_amount if side == "bull" else self.bear_amount
        return amount / self.total_amount


class PancakeSwapAdapter(SourceAdapter):
    """PancakeSwap Prediction V2 via BSC RPC"""

    platform = "pancakeswap"
    supports_feed = True

    def __init__(self, settings=None, clock=None, w3: Optional[AsyncWeb3] = None):
        super().__init__(settings, clock)
        self.w3 = w3
        self._contract = None
        self._last_block: Optional[int] = None

    async def _get_contract(self):
        if self._contract is None:
            if self.w3 is None:
                self.w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(
                    self.settings.bsc_rpc_url,
                    request_kwargs={"timeout": self.settings.request_timeout},
                ))
                self.w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
            self._contract = self.w3.eth.contract(
                address=Web3.to_checksum_address(ContractAddresses.PANCAKE_PREDICTION),
                abi=PREDICTION_ABI,
            )
        return self._contract

    async def _current_epoch(self) -> int:
        contract = await self._get_contract()
        return int(await self._with_retry(
            "currentEpoch", lambda: contract.functions.currentEpoch().call(), retry_on=(Exception,)
        ))

    async def _read_round(self, epoch: int) -> PredictionRound:
        contract = await self._get_contract()
        data = await self._with_retry(
            f"rounds({epoch})", lambda: contract.functions.rounds(epoch).call(), retry_on=(Exception,)
        )
        return PredictionRound.from_tuple(data)

    # ==================== Market Data ====================

    async def _fetch_markets(self) -> List[Market]:
        current = await self._current_epoch()
        rounds = [await self._read_round(epoch) for epoch in (current - 1, current) if epoch > 0]
        return self._normalize_each(rounds, self._normalize)

    def _normalize(self, rnd: PredictionRound) -> Market:
        now = self.clock.now().timestamp()
        if rnd.oracle_called:
            status = MarketStatus.RESOLVED
        elif rnd.lock_timestamp and now >= rnd.lock_timestamp:
            status = MarketStatus.LOCKED
        else:
            status = MarketStatus.OPEN

        return normalize_market(
            platform=self.platform,
            market_id=rnd.epoch,
            title=f"BNB/USD round #{rnd.epoch}: up or down?",
            prices=[
                ("bull", "Bull", rnd.side_share("bull")),
                ("bear", "Bear", rnd.side_share("bear")),
            ],
            fmt=PriceFormat.PROBABILITY,
            status=status,
            resolves_at=datetime.fromtimestamp(rnd.close_timestamp, tz=timezone.utc) if rnd.close_timestamp else None,
            volume=rnd.total_amount / WEI,
            liquidity=rnd.total_amount / WEI,
            resolved_outcome=self._winner(rnd) if rnd.oracle_called and rnd.close_price != 0 else None,
        )

    # ==================== Resolution ====================

    @staticmethod
    def _winner(rnd: PredictionRound) -> str:
        return "bull" if rnd.close_price > rnd.lock_price else "bear"

    async def _check_resolution(self, market_id: str) -> ResolutionStatus:
        rnd = await self._read_round(int(market_id))
        closed_at = datetime.fromtimestamp(rnd.close_timestamp, tz=timezone.utc) if rnd.close_timestamp else None

        if rnd.oracle_called and rnd.close_price != 0:
            return ResolutionStatus.winner(self._winner(rnd), closed_at)

        # rounds the oracle never closed become refundable on-chain
        stale_after = timedelta(hours=ScoringConstants.STALE_REFUND_HOURS)
        if closed_at and self.clock.now() - closed_at > stale_after:
            return ResolutionStatus.void(self.clock.now())
        return ResolutionStatus.pending()

    # ==================== Bet Feed ====================

    async def fetch_recent_bets(self) -> List[BetEvent]:
        contract = await self._get_contract()
        latest = await self._with_retry("block_number", lambda: self.w3.eth.block_number, retry_on=(Exception,))
        start = self._last_block + 1 if self._last_block is not None else latest - 20
        start = max(start, latest - MAX_BLOCK_RANGE)
        if start > latest:
            return []

        logs = await self._with_retry(
            "get_logs",
            lambda: self.w3.eth.get_logs({
                "address": contract.address,
                "fromBlock": start,
                "toBlock": latest,
                "topics": [[BET_BULL_TOPIC, BET_BEAR_TOPIC]],
            }),
            retry_on=(Exception,),
        )
        self._last_block = latest

        rounds: Dict[int, PredictionRound] = {}
        events = []
        for log in logs:
            event = await self._bet_from_log(log, rounds)
            if event is not None:
                events.append(event)
        return events

    async def _bet_from_log(self, log, rounds: Dict[int, PredictionRound]) -> Optional[BetEvent]:
        topics = log["topics"]
        if len(topics) < 3:
            return None

        side = "bull" if Web3.to_hex(topics[0]) == BET_BULL_TOPIC else "bear"
        sender = Web3.to_checksum_address(bytes(topics[1])[-20:])
        epoch = int.from_bytes(bytes(topics[2]), "big")
        (amount,) = decode(["uint256"], bytes(log["data"]))

        if epoch not in rounds:
            rounds[epoch] = await self._read_round(epoch)
        share = rounds[epoch].side_share(side)

        return BetEvent(
            id=f"{Web3.to_hex(log['transactionHash'])}:{log['logIndex']}",
            platform=self.platform,
            trader=sender.lower(),
            market_id=str(epoch),
            outcome_id=side,
            stake=amount / WEI,
            odds=1 / share if share > 0 else 2.0,
            placed_at=self.clock.now(),
            raw={"block": log["blockNumber"], "side": side},
        )
