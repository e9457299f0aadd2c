from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple
import logging

from .config import FEE_SCALE, U64_MAX
from .core import quote_in, quote_out

logger = logging.getLogger(__name__)

_INFEASIBLE = None


class Direction(Enum):
    SPOT_TO_CONDITIONAL = "spot_to_conditional"   # buy asset on spot, sell it in every outcome
    CONDITIONAL_TO_SPOT = "conditional_to_spot"   # buy asset in every outcome, sell it on spot


@dataclass(frozen=True)
class PoolSnapshot:
    asset_reserve: int
    stable_reserve: int
    fee_bps: int

    @classmethod
    def of(cls, pool, now_ms: int) -> "PoolSnapshot":
        return cls(pool.asset_reserve, pool.stable_reserve, pool.current_fee_bps(now_ms))

    def usable(self) -> bool:
        return self.asset_reserve > 0 and self.stable_reserve > 0


@dataclass(frozen=True)
class ArbitrageQuote:
    amount: int = 0                         # asset units moved between spot and the complete set
    profit: int = 0                         # stable units
    direction: Optional[Direction] = None
    active_outcomes: Tuple[int, ...] = field(default_factory=tuple)

    @property
    def is_profitable(self) -> bool:
        return self.direction is not None and self.amount > 0 and self.profit > 0

    def to_dict(self) -> dict:
        return {
            "amount": int(self.amount),
            "profit": int(self.profit),
            "direction": self.direction.value if self.direction else None,
        }


NO_ARBITRAGE = ArbitrageQuote()


# -----------------------------
# Leg pricing (exact integer quotes)
# -----------------------------
def conditional_to_spot_legs(spot: PoolSnapshot, conds: Sequence[PoolSnapshot], amount: int,
                             outcomes: Sequence[int]) -> Optional[Tuple[List[int], int]]:
    """(stable cost per outcome to buy `amount` asset, stable received selling `amount` on spot)."""
    costs = []
    for i in outcomes:
        c = conds[i]
        cost = quote_in(c.stable_reserve, c.asset_reserve, amount, c.fee_bps)
        if cost is _INFEASIBLE:
            return None
        costs.append(cost)
    proceeds = quote_out(spot.asset_reserve, spot.stable_reserve, amount, spot.fee_bps)
    return costs, proceeds


def spot_to_conditional_legs(spot: PoolSnapshot, conds: Sequence[PoolSnapshot], amount: int,
                             outcomes: Sequence[int]) -> Optional[Tuple[int, List[int]]]:
    """(stable cost to buy `amount` asset on spot, stable received per outcome selling `amount`)."""
    cost = quote_in(spot.stable_reserve, spot.asset_reserve, amount, spot.fee_bps)
    if cost is _INFEASIBLE:
        return None
    proceeds = [quote_out(conds[i].asset_reserve, conds[i].stable_reserve, amount, conds[i].fee_bps)
                for i in outcomes]
    return cost, proceeds


def _profit_c2s(spot: PoolSnapshot, conds: Sequence[PoolSnapshot], outcomes: Sequence[int], amount: int) -> Optional[int]:
    if amount <= 0:
        return 0
    legs = conditional_to_spot_legs(spot, conds, amount, outcomes)
    if legs is None:
        return None
    costs, proceeds = legs
    if proceeds <= 0 or proceeds >= spot.stable_reserve:
        return None
    return proceeds - max(costs)


def _profit_s2c(spot: PoolSnapshot, conds: Sequence[PoolSnapshot], outcomes: Sequence[int], amount: int) -> Optional[int]:
    if amount <= 0:
        return 0
    legs = spot_to_conditional_legs(spot, conds, amount, outcomes)
    if legs is None:
        return None
    cost, proceeds = legs
    if min(proceeds) <= 0:
        return None
    return min(proceeds) - cost


# -----------------------------
# Screening and pruning
# -----------------------------
def _bid_beats_ask(bid_pool: PoolSnapshot, ask_pool: PoolSnapshot) -> bool:
    """Marginal price selling asset into `bid_pool` exceeds marginal price buying it from `ask_pool`."""
    lhs = bid_pool.stable_reserve * (FEE_SCALE - bid_pool.fee_bps) * ask_pool.asset_reserve * (FEE_SCALE - ask_pool.fee_bps)
    rhs = ask_pool.stable_reserve * bid_pool.asset_reserve * FEE_SCALE * FEE_SCALE
    return lhs > rhs


def _dominates_cost(k: PoolSnapshot, j: PoolSnapshot) -> bool:
    """Buying asset from `j` never costs more than from `k`, for any size."""
    return (j.stable_reserve * k.asset_reserve <= k.stable_reserve * j.asset_reserve
            and j.asset_reserve >= k.asset_reserve and j.fee_bps <= k.fee_bps)


def _dominates_proceeds(k: PoolSnapshot, j: PoolSnapshot) -> bool:
    """Selling asset into `j` never pays less than into `k`, for any size."""
    return (j.stable_reserve * k.asset_reserve >= k.stable_reserve * j.asset_reserve
            and j.asset_reserve >= k.asset_reserve and j.fee_bps <= k.fee_bps)


def prune_outcomes(conds: Sequence[PoolSnapshot], never_binds: Callable[[PoolSnapshot, PoolSnapshot], bool]) -> List[int]:
    """
    Outcomes that can bind the complete-set bottleneck. Outcome j is dropped
    when some kept outcome k is at least as binding at every trade size.
    """
    kept: List[int] = []
    for j, cj in enumerate(conds):
        if any(never_binds(conds[k], cj) for k in kept):
            continue
        kept = [k for k in kept if not never_binds(cj, conds[k])]
        kept.append(j)
    return sorted(kept)


# -----------------------------
# Search
# -----------------------------
def _maximize(profit: Callable[[int], Optional[int]], cap: int, start: int, max_iterations: int) -> Tuple[int, int]:
    """Maximize a unimodal integer profit on [0, cap]; bracket grows from `start`."""
    def f(x: int) -> int:
        p = profit(x)
        return -(2 ** 200) if p is None else p

    if cap <= 0:
        return 0, 0
    hi = max(1, min(start, cap))
    f_hi = f(hi)
    while hi < cap:
        nxt = min(hi * 2, cap)
        f_nxt = f(nxt)
        # rounding makes tiny sizes flat or noisy; only a drop after a gain closes the bracket
        if f_nxt < f_hi and f_hi > 0:
            hi = nxt
            break
        hi, f_hi = nxt, f_nxt

    lo = 0
    iterations = 0
    while hi - lo > 2 and iterations < max_iterations:
        m1 = lo + (hi - lo) // 3
        m2 = hi - (hi - lo) // 3
        if f(m1) < f(m2):
            lo = m1
        else:
            hi = m2
        iterations += 1

    best_x, best_p = 0, 0
    xs = range(lo, hi + 1) if hi - lo <= 8 else (lo, (lo + hi) // 2, hi)
    for x in xs:
        p = f(x)
        if p > best_p:
            best_x, best_p = x, p
    return best_x, best_p


class ArbitrageSolver:
    """
    Pure quoting of the complete-set arbitrage between the spot pool and all
    conditional pools. The trade is sized in asset units; profit is in stable.
    """
    def __init__(self, min_profit: int = 1, hint_multiplier: int = 2, max_iterations: int = 128) -> None:
        self.min_profit = max(1, int(min_profit))
        self.hint_multiplier = max(1, int(hint_multiplier))
        self.max_iterations = int(max_iterations)

    def solve(self, spot: PoolSnapshot, conds: Sequence[PoolSnapshot], hint: int = 0,
              min_profit: Optional[int] = None) -> ArbitrageQuote:
        threshold = max(1, self.min_profit if min_profit is None else int(min_profit))
        if not spot.usable() or not conds or not all(c.usable() for c in conds):
            return NO_ARBITRAGE
        start = max(1, hint * self.hint_multiplier)

        candidates: List[ArbitrageQuote] = []

        # spot overpriced: buy the asset conditionally, sell on spot
        if all(_bid_beats_ask(spot, c) for c in conds):
            outcomes = prune_outcomes(conds, _dominates_cost)
            cap = min(min(conds[i].asset_reserve for i in outcomes) - 1, U64_MAX)
            amount, profit = _maximize(lambda a: _profit_c2s(spot, conds, outcomes, a), cap, start, self.max_iterations)
            candidates.append(ArbitrageQuote(amount, profit, Direction.CONDITIONAL_TO_SPOT, tuple(outcomes)))

        # spot underpriced: buy the asset on spot, sell it in every outcome
        if all(_bid_beats_ask(c, spot) for c in conds):
            outcomes = prune_outcomes(conds, _dominates_proceeds)
            cap = min(spot.asset_reserve - 1, U64_MAX)
            amount, profit = _maximize(lambda a: _profit_s2c(spot, conds, outcomes, a), cap, start, self.max_iterations)
            candidates.append(ArbitrageQuote(amount, profit, Direction.SPOT_TO_CONDITIONAL, tuple(outcomes)))

        best = max(candidates, key=lambda q: q.profit, default=NO_ARBITRAGE)
        if best.amount <= 0 or best.profit < threshold:
            return NO_ARBITRAGE
        logger.debug("arbitrage %s amount=%d profit=%d active=%s",
                     best.direction.value, best.amount, best.profit, best.active_outcomes)
        return best
