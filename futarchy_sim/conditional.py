from __future__ import annotations
from typing import List, Optional, Tuple
import logging

from .amm import ConstantProductPool
from .config import MarketConfig, TwapConfig
from .core import PoolCapability, TokenSide, require_capability
from .errors import InvariantViolation, StatePreconditionError
from .escrow import ConditionalBalance
from .fees import FeeRegistry

logger = logging.getLogger(__name__)


def _other(side: TokenSide) -> TokenSide:
    return "stable" if side == "asset" else "asset"


class ConditionalPool(ConstantProductPool):
    """AMM over one outcome's conditional asset and conditional stable. Fixed fee, no protocol share."""
    def __init__(self, market_id: str, outcome: int, cfg: MarketConfig) -> None:
        super().__init__(f"{market_id}:{outcome}", cfg, FeeRegistry(fee_bps=cfg.conditional_fee_bps))
        self.market_id = market_id
        self.outcome = outcome
        self.closed: bool = False

    def _check_liquidity_change_allowed(self) -> None:
        if self.closed:
            raise StatePreconditionError(f"pool {self.pool_id} is closed", reason="market_resolved")


class ConditionalPoolSet:
    """
    The N outcome AMMs of one proposal market, indexed 0..N-1. Every movement
    of conditional units or LP in or out of a pool is mirrored on a
    ConditionalBalance, so units are conserved against the escrow's supply and
    only the balance that received LP can spend it. At the AMM level the set
    itself is the single LP provider.
    """
    def __init__(self, market_id: str, outcome_count: int, cfg: MarketConfig, capability: PoolCapability,
                 twap: Optional[TwapConfig] = None) -> None:
        if outcome_count < 2:
            raise InvariantViolation("a market needs at least two outcomes", reason="bad_outcome_count")
        self.market_id = market_id
        self.outcome_count = outcome_count
        self.cfg = cfg
        self.capability = capability
        self.pools: List[ConditionalPool] = [ConditionalPool(market_id, i, cfg) for i in range(outcome_count)]
        self.twap = twap or TwapConfig.from_market(cfg)
        self.lp_claims: List[Tuple[int, int, int]] = [(0, 0, 0)] * outcome_count
        self.winning_outcome: Optional[int] = None

    def __len__(self) -> int:
        return self.outcome_count

    def __getitem__(self, outcome: int) -> ConditionalPool:
        return self.pools[outcome]

    def _pool(self, outcome: int) -> ConditionalPool:
        if not 0 <= outcome < self.outcome_count:
            raise InvariantViolation(f"outcome {outcome} out of range", reason="bad_outcome")
        pool = self.pools[outcome]
        if pool.closed:
            raise StatePreconditionError(f"pool {pool.pool_id} is closed", reason="market_resolved")
        return pool

    def _check_balance(self, balance: ConditionalBalance) -> None:
        if balance.market_id != self.market_id or balance.outcome_count != self.outcome_count:
            raise StatePreconditionError(
                f"balance belongs to {balance.market_id}, not {self.market_id}", reason="market_mismatch"
            )

    # -----------------------------
    # Views
    # -----------------------------
    def prices(self) -> List[int]:
        return [p.price() for p in self.pools]

    def reserves(self) -> List[Tuple[int, int]]:
        return [p.reserves() for p in self.pools]

    def twaps(self, now_ms: int) -> List[int]:
        return [p.twap(now_ms) for p in self.pools]

    def twaps_since(self, start_ms: int, now_ms: int) -> List[int]:
        return [p.twap_since(start_ms, now_ms) for p in self.pools]

    def reference_prices(self) -> List[int]:
        """Oracle-observed price per outcome, the reference the no-arb band is checked against."""
        return [p.reference_price() for p in self.pools]

    def fee_bps(self, now_ms: int) -> List[int]:
        return [p.current_fee_bps(now_ms) for p in self.pools]

    def is_live(self) -> bool:
        return self.winning_outcome is None and all(not p.is_empty() for p in self.pools)

    # -----------------------------
    # Seeding
    # -----------------------------
    def seed(self, cap: PoolCapability, source: ConditionalBalance, asset_per_pool: int, stable_per_pool: int,
             init_price: int, now_ms: int) -> List[int]:
        """
        Seed every outcome AMM from `source` with the same reserves. The LP goes
        to `source`. Oracles start at the configured initial observation, or at
        `init_price` when none is set.
        """
        require_capability(cap, self.capability)
        self._check_balance(source)
        observation = init_price if self.twap.initial_observation is None else self.twap.initial_observation
        minted = []
        for pool in self.pools:
            if not pool.is_empty():
                raise StatePreconditionError(f"pool {pool.pool_id} already seeded", reason="already_seeded")
            pool._init_oracle(observation, now_ms, step_max=self.twap.step_max)
            lp, asset_change, stable_change = pool.add_liquidity(
                asset_per_pool, stable_per_pool, 0, now_ms, provider=self.market_id
            )
            source.debit(pool.outcome, "asset", asset_per_pool - asset_change)
            source.debit(pool.outcome, "stable", stable_per_pool - stable_change)
            source.credit_lp(pool.outcome, lp)
            minted.append(lp)
        logger.info("market=%s seeded %d pools: asset=%d stable=%d per pool, init_price=%d",
                    self.market_id, self.outcome_count, asset_per_pool, stable_per_pool, init_price)
        return minted

    # -----------------------------
    # Trading
    # -----------------------------
    def quote(self, outcome: int, token_in: TokenSide, amount_in: int, now_ms: int) -> int:
        return self.pools[outcome].quote(token_in, amount_in, now_ms)

    def swap(self, balance: ConditionalBalance, outcome: int, token_in: TokenSide, amount_in: int,
             min_out: int, now_ms: int) -> int:
        self._check_balance(balance)
        pool = self._pool(outcome)
        balance.debit(outcome, token_in, amount_in)
        amount_out = pool.swap(token_in, amount_in, min_out, now_ms)
        balance.credit(outcome, _other(token_in), amount_out)
        return amount_out

    def add_liquidity(self, balance: ConditionalBalance, outcome: int, asset_in: int, stable_in: int,
                      min_lp_out: int, now_ms: int) -> int:
        self._check_balance(balance)
        pool = self._pool(outcome)
        if balance.get(outcome, "asset") < asset_in or balance.get(outcome, "stable") < stable_in:
            raise InvariantViolation(f"balance cannot fund deposit into outcome {outcome}", reason="insufficient_balance")
        lp, asset_change, stable_change = pool.add_liquidity(
            asset_in, stable_in, min_lp_out, now_ms, provider=self.market_id
        )
        balance.debit(outcome, "asset", asset_in - asset_change)
        balance.debit(outcome, "stable", stable_in - stable_change)
        balance.credit_lp(outcome, lp)
        return lp

    def remove_liquidity(self, balance: ConditionalBalance, outcome: int, lp_in: int, min_asset_out: int,
                         min_stable_out: int, now_ms: int) -> Tuple[int, int]:
        self._check_balance(balance)
        pool = self._pool(outcome)
        if balance.lp[outcome] < lp_in:
            raise InvariantViolation(
                f"balance holds {balance.lp[outcome]} LP of outcome {outcome}, not {lp_in}", reason="insufficient_lp"
            )
        asset_out, stable_out = pool.remove_liquidity(
            lp_in, min_asset_out, min_stable_out, now_ms, provider=self.market_id
        )
        balance.debit_lp(outcome, lp_in)
        balance.credit(outcome, "asset", asset_out)
        balance.credit(outcome, "stable", stable_out)
        return asset_out, stable_out

    # -----------------------------
    # Finalization
    # -----------------------------
    def close(self, cap: PoolCapability, winning_outcome: int, now_ms: int,
              dao_balance: ConditionalBalance) -> List[Tuple[int, int]]:
        """
        Freeze and empty every pool. Returns the DAO share of each outcome's
        reserves: the LP held on `dao_balance` plus the locked minimum. That LP
        is spent; third-party shares stay claimable through `claim_lp`. Only
        the winner's units keep any value.
        """
        require_capability(cap, self.capability)
        self._check_balance(dao_balance)
        if self.winning_outcome is not None:
            raise StatePreconditionError(f"market {self.market_id} already closed", reason="market_resolved")
        if not 0 <= winning_outcome < self.outcome_count:
            raise InvariantViolation(f"winning outcome {winning_outcome} out of range", reason="bad_outcome")
        seed_shares = []
        for pool in self.pools:
            pool.observe(now_ms)
            supply = pool.lp_supply
            dao_units = dao_balance.lp[pool.outcome] + pool.locked_lp
            dao_balance.lp[pool.outcome] = 0
            asset, stable = pool.drain()
            if supply == 0:
                seed_shares.append((0, 0))
                continue
            dao_asset = asset * dao_units // supply
            dao_stable = stable * dao_units // supply
            self.lp_claims[pool.outcome] = (asset - dao_asset, stable - dao_stable, supply - dao_units)
            seed_shares.append((dao_asset, dao_stable))
        for pool in self.pools:
            pool.closed = True
        self.winning_outcome = winning_outcome
        return seed_shares

    def claim_lp(self, balance: ConditionalBalance, outcome: int, lp_in: int) -> Tuple[int, int]:
        """Pay a third-party LP its pro-rata share of a closed pool, in conditional units."""
        self._check_balance(balance)
        if self.winning_outcome is None:
            raise StatePreconditionError(f"market {self.market_id} still trading", reason="market_not_resolved")
        if not 0 <= outcome < self.outcome_count:
            raise InvariantViolation(f"outcome {outcome} out of range", reason="bad_outcome")
        asset, stable, lp_left = self.lp_claims[outcome]
        if lp_in > lp_left:
            raise InvariantViolation(f"lp_in {lp_in} exceeds claimable {lp_left}", reason="insufficient_lp")
        balance.debit_lp(outcome, lp_in)
        asset_out = asset * lp_in // lp_left
        stable_out = stable * lp_in // lp_left
        self.lp_claims[outcome] = (asset - asset_out, stable - stable_out, lp_left - lp_in)
        balance.credit(outcome, "asset", asset_out)
        balance.credit(outcome, "stable", stable_out)
        return asset_out, stable_out
