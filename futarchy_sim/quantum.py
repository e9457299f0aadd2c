from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional, Tuple
import logging

from .conditional import ConditionalPoolSet
from .config import PRICE_SCALE
from .core import PoolCapability
from .errors import InvariantViolation, StatePreconditionError
from .escrow import ConditionalBalance, ConditionalTokenLedger
from .proposal import ProposalView
from .spot import SpotPool
from .txn import atomic

logger = logging.getLogger(__name__)


@dataclass
class ConditionalMarket:
    """Everything a proposal's trading phase adds next to the spot pool."""
    market_id: str
    proposal: ProposalView
    pools: ConditionalPoolSet
    escrow: ConditionalTokenLedger
    dao_balance: ConditionalBalance
    started_at_ms: int

    @property
    def outcome_count(self) -> int:
        return self.pools.outcome_count

    def decision_start_ms(self) -> int:
        return self.started_at_ms + self.pools.twap.start_delay_ms

    def decision_twaps(self, now_ms: int) -> List[int]:
        """Per-outcome TWAP counted from trading start plus the configured delay."""
        return self.pools.twaps_since(self.decision_start_ms(), now_ms)

    def leading_outcome(self, now_ms: int) -> int:
        """
        The best non-baseline outcome if its decision TWAP beats outcome 0's by
        more than the threshold, else outcome 0. Ties go to the lowest index.
        """
        twaps = self.decision_twaps(now_ms)
        best = max(range(1, len(twaps)), key=lambda i: (twaps[i], -i))
        if twaps[best] > twaps[0] + self.pools.twap.threshold:
            return best
        return 0


def _seed_amounts(asset: int, stable: int, price: int) -> Tuple[int, int]:
    """Largest (asset, stable) within the given amounts that sits at `price`."""
    if price <= 0:
        raise InvariantViolation(f"cannot seed at price {price}", reason="bad_price")
    if stable * PRICE_SCALE > asset * price:
        return asset, asset * price // PRICE_SCALE
    return stable * PRICE_SCALE // price, stable


def begin_trading(spot: SpotPool, cap: PoolCapability, proposal: ProposalView, now_ms: int,
                  init_price: Optional[int] = None) -> ConditionalMarket:
    """
    Fork the spot pool's configured ratio of reserves into one conditional AMM
    per outcome. The locked spot tokens go to escrow and are quantum-split;
    each outcome pool is seeded from `locked / N`, sized to the spot oracle's
    long TWAP. What does not fit that price stays on the DAO's conditional
    balance.
    """
    outcome_count = proposal.outcome_count()
    market_id = proposal.proposal_id
    with atomic(spot, label=f"begin_trading:{market_id}"):
        ctx = spot.mark_liquidity_to_proposal(cap, market_id, outcome_count, now_ms)
        escrow = ConditionalTokenLedger(market_id, outcome_count)
        pools = ConditionalPoolSet(market_id, outcome_count, spot.cfg, cap, twap=spot.twap_config)
        dao_balance = escrow.new_balance()

        if proposal.uses_dao_liquidity():
            locked_asset, locked_stable = spot.split_reserves_for_proposal(cap)
            escrow.deposit(dao_balance, "asset", locked_asset)
            escrow.deposit(dao_balance, "stable", locked_stable)
            price = ctx.init_price if init_price is None else init_price
            asset_per_pool, stable_per_pool = _seed_amounts(
                locked_asset // outcome_count, locked_stable // outcome_count, price
            )
            pools.seed(cap, dao_balance, asset_per_pool, stable_per_pool, price, now_ms)
        escrow.check_invariants()

    logger.info("proposal=%s trading: outcomes=%d dao_liquidity=%s",
                market_id, outcome_count, proposal.uses_dao_liquidity())
    return ConditionalMarket(
        market_id=market_id,
        proposal=proposal,
        pools=pools,
        escrow=escrow,
        dao_balance=dao_balance,
        started_at_ms=now_ms,
    )


def finalize(spot: SpotPool, cap: PoolCapability, market: ConditionalMarket, now_ms: int) -> Tuple[int, int]:
    """
    Close every outcome pool once the proposal is final, burn the losing
    liquidity, redeem the winning liquidity (and the DAO's unseeded winning
    units, including whatever the price-sized seed left over) from escrow and return that spot back to the spot pool.
    """
    proposal = market.proposal
    if not proposal.is_finalized():
        raise StatePreconditionError(f"proposal {market.market_id} is not finalized", reason="proposal_not_final")
    winner = proposal.winning_outcome()
    if winner is None:
        raise InvariantViolation(f"finalized proposal {market.market_id} has no winner", reason="bad_outcome")

    with atomic(spot, market.pools, market.escrow, market.dao_balance, label=f"finalize:{market.market_id}"):
        seed_shares = market.pools.close(cap, winner, now_ms, market.dao_balance)
        market.escrow.resolve(winner)
        asset_back, stable_back = 0, 0
        for outcome, (asset, stable) in enumerate(seed_shares):
            released_asset, released_stable = market.escrow.settle_pool_liquidity(outcome, asset, stable)
            asset_back += released_asset
            stable_back += released_stable
        dao_asset, dao_stable = market.escrow.redeem_all(market.dao_balance)
        asset_back += dao_asset
        stable_back += dao_stable
        spot.recombine_from_proposal(cap, asset_back, stable_back, now_ms)
        market.escrow.check_invariants()

    logger.info("proposal=%s finalized: winner=%d returned asset=%d stable=%d",
                market.market_id, winner, asset_back, stable_back)
    return asset_back, stable_back
