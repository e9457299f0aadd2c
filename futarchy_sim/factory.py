from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Literal, Optional, Tuple
import numpy as np
import random

from .config import MarketConfig, ScenarioConfig
from .core import TokenSide
from .escrow import ConditionalBalance
from .fees import FeeSchedule
from .spot import SpotPool

TraderRole = Literal["spot_trader", "conditional_trader"]


@dataclass
class Trader:
    trader_id: str
    role: TraderRole
    # conditional units held in the current proposal's market (dust from routed swaps included)
    balance: Optional[ConditionalBalance] = None
    spent: Dict[str, int] = field(default_factory=lambda: {"asset": 0, "stable": 0})
    received: Dict[str, int] = field(default_factory=lambda: {"asset": 0, "stable": 0})

    def record(self, token_in: TokenSide, amount_in: int, token_out: TokenSide, amount_out: int) -> None:
        self.spent[token_in] += amount_in
        self.received[token_out] += amount_out


class MarketFactory:
    def __init__(self, cfg: ScenarioConfig, market_cfg: MarketConfig, rng: Optional[random.Random] = None) -> None:
        self.cfg = cfg
        self.market_cfg = market_cfg
        self.rng = rng or random.Random()
        self.trader_counter = 0
        self.pool_counter = 0
        self.proposal_counter = 0

    def _new_trader_id(self) -> str:
        self.trader_counter += 1
        return f"trader_{self.trader_counter:04d}"

    def _new_pool_id(self) -> str:
        self.pool_counter += 1
        return f"spot_{self.pool_counter:04d}"

    def new_proposal_id(self) -> str:
        self.proposal_counter += 1
        return f"proposal_{self.proposal_counter:04d}"

    def create_spot_pool(self, now_ms: int) -> Tuple[SpotPool, int]:
        """Spot pool with the launch fee schedule and the scenario's initial liquidity. Returns (pool, lp)."""
        cfg = self.cfg
        schedule = None
        if cfg.launch_fee_bps is not None:
            schedule = FeeSchedule(initial_fee_bps=cfg.launch_fee_bps, duration_ms=cfg.launch_fee_duration_ms)
        pool = SpotPool(self._new_pool_id(), self.market_cfg, fee_schedule=schedule, activation_ms=now_ms)
        lp, _, _ = pool.add_liquidity(cfg.initial_asset_reserve, cfg.initial_stable_reserve, 0, now_ms)
        return pool, lp

    def sample_role(self) -> TraderRole:
        if not self.cfg.proposals_enabled:
            return "spot_trader"
        r = self.rng.random()
        if r < self.cfg.p_conditional_trader:
            return "conditional_trader"
        return "spot_trader"

    def create_traders(self, n: int) -> List[Trader]:
        return [Trader(trader_id=self._new_trader_id(), role=self.sample_role()) for _ in range(max(0, n))]

    def sample_side(self) -> TokenSide:
        """Input side of a spot trade: stable in means buying the asset."""
        return "stable" if self.rng.random() < self.cfg.p_buy_asset else "asset"

    def sample_amount(self, reserve_in: int, mean_frac: float) -> int:
        mean = reserve_in * float(mean_frac)
        if mean <= 0.0:
            return 0
        amount = int(np.random.exponential(mean))
        amount = max(amount, int(self.cfg.trade_size_min))
        # never more than a tenth of the input reserve in one trade
        return min(amount, reserve_in // 10)
