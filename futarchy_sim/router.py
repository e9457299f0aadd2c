from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional, Tuple
import logging

from .arbitrage import ArbitrageQuote, ArbitrageSolver, Direction, NO_ARBITRAGE, PoolSnapshot
from .config import FEE_SCALE, MarketConfig
from .core import (
    Event, EventLog, ReceiptStore, SwapReceipt, TokenSide, amount_out_after_fee, require_min_out,
    require_positive,
)
from .errors import InvariantViolation, MarketError, NoArbitrageBandError, StatePreconditionError
from .escrow import ConditionalBalance
from .fees import FeeBreakdown
from .quantum import ConditionalMarket
from .spot import SpotPool
from .txn import atomic

logger = logging.getLogger(__name__)


def _other(side: TokenSide) -> TokenSide:
    return "stable" if side == "asset" else "asset"


@dataclass
class SwapQuote:
    token_in: TokenSide
    amount_in: int
    direct_output: int
    optimal_arb_amount: int
    expected_arb_profit: int
    arb_available: bool
    direction: Optional[Direction] = None

    def to_dict(self) -> dict:
        return {
            "token_in": self.token_in,
            "amount_in": int(self.amount_in),
            "direct_output": int(self.direct_output),
            "optimal_arb_amount": int(self.optimal_arb_amount),
            "expected_arb_profit": int(self.expected_arb_profit),
            "arb_available": bool(self.arb_available),
            "direction": self.direction.value if self.direction else None,
        }


@dataclass
class SwapResult:
    amount_out: int
    direct_output: int
    arbitrage: ArbitrageQuote
    profit: int                             # arbitrage profit paid out, in the requested token
    residual_stable: int                    # profit too small to convert into asset
    dust: Optional[ConditionalBalance]
    receipt: SwapReceipt


class SwapRouter:
    """
    Entry point for spot trades. While a proposal trades, every swap is
    followed by the complete-set arbitrage the solver finds, its profit is
    paid to the trader, and the spot price must end inside the no-arbitrage
    band around the conditional prices. All of it is one atomic unit.
    """
    def __init__(self, spot: SpotPool, cfg: Optional[MarketConfig] = None,
                 solver: Optional[ArbitrageSolver] = None,
                 log: Optional[EventLog] = None, receipts: Optional[ReceiptStore] = None) -> None:
        self.spot = spot
        self.cfg = cfg or spot.cfg
        self.solver = solver or ArbitrageSolver(
            min_profit=self.cfg.arbitrage_min_profit,
            hint_multiplier=self.cfg.arbitrage_hint_multiplier,
            max_iterations=self.cfg.arbitrage_max_iterations,
        )
        self.log = log if log is not None else EventLog()
        self.receipts = receipts if receipts is not None else ReceiptStore()
        self.market: Optional[ConditionalMarket] = None

    # -----------------------------
    # Market attachment
    # -----------------------------
    def attach_market(self, market: ConditionalMarket) -> None:
        if self.market is not None and self.market is not market:
            raise StatePreconditionError(f"router already serves market {self.market.market_id}",
                                         reason="proposal_active")
        self.market = market

    def detach_market(self) -> Optional[ConditionalMarket]:
        market, self.market = self.market, None
        return market

    def trading_market(self) -> Optional[ConditionalMarket]:
        market = self.market
        if market is None or not self.spot.is_proposal_active():
            return None
        if not market.pools.is_live():
            return None
        return market

    # -----------------------------
    # Quotes
    # -----------------------------
    def _snapshots(self, market: ConditionalMarket, now_ms: int) -> Tuple[PoolSnapshot, List[PoolSnapshot]]:
        spot = PoolSnapshot.of(self.spot, now_ms)
        conds = [PoolSnapshot.of(p, now_ms) for p in market.pools.pools]
        return spot, conds

    def _asset_hint(self, token_out: TokenSide, direct_output: int, asset_reserve: int, stable_reserve: int) -> int:
        if token_out == "asset":
            return direct_output
        if stable_reserve <= 0:
            return 0
        return direct_output * asset_reserve // stable_reserve

    def quote(self, token_in: TokenSide, amount_in: int, now_ms: int) -> SwapQuote:
        """Read-only preview of `swap`: direct output plus the arbitrage it would trigger."""
        require_positive(amount_in, "amount_in")
        spot = self.spot
        reserve_in, reserve_out = spot._sides(token_in)
        fees = spot.fees.compute(amount_in, now_ms, route_protocol=spot._routes_protocol_fees())
        direct = amount_out_after_fee(reserve_in, reserve_out, amount_in - fees.total_fee)
        market = self.trading_market()
        if market is None or direct <= 0 or direct >= reserve_out:
            return SwapQuote(token_in, amount_in, direct, 0, 0, False)

        credited = amount_in - fees.total_fee + fees.lp_fee
        if token_in == "asset":
            after = PoolSnapshot(spot.asset_reserve + credited, spot.stable_reserve - direct, spot.current_fee_bps(now_ms))
        else:
            after = PoolSnapshot(spot.asset_reserve - direct, spot.stable_reserve + credited, spot.current_fee_bps(now_ms))
        _, conds = self._snapshots(market, now_ms)
        hint = self._asset_hint(_other(token_in), direct, after.asset_reserve, after.stable_reserve)
        arb = self.solver.solve(after, conds, hint)
        return SwapQuote(
            token_in=token_in,
            amount_in=amount_in,
            direct_output=direct,
            optimal_arb_amount=arb.amount,
            expected_arb_profit=arb.profit,
            arb_available=arb.is_profitable,
            direction=arb.direction,
        )

    # -----------------------------
    # Execution
    # -----------------------------
    def _execute_arbitrage(self, market: ConditionalMarket, work: ConditionalBalance, arb: ArbitrageQuote,
                           now_ms: int) -> int:
        """
        Run `arb` against the live pools and return the stable profit.

        The stable spent up front is a float inside the unit of work: the
        escrow deposit or spot purchase is funded before the closing leg pays
        it back, and the unit fails unless the float ends positive.
        """
        spot, pools, escrow = self.spot, market.pools, market.escrow
        amount = arb.amount
        float_stable = 0

        if arb.direction is Direction.CONDITIONAL_TO_SPOT:
            costs = []
            for pool in pools.pools:
                cost = pool.quote_exact_out("stable", amount, now_ms)
                if cost is None:
                    raise InvariantViolation(f"outcome {pool.outcome} cannot supply {amount}",
                                             reason="insufficient_liquidity")
                costs.append(cost)
            stake = max(costs)
            float_stable -= stake
            escrow.deposit(work, "stable", stake)
            for outcome, cost in enumerate(costs):
                pools.swap(work, outcome, "stable", cost, amount, now_ms)
            complete = work.complete_set_size("asset")
            escrow.burn_complete_set(work, "asset", complete)
            float_stable += spot.swap("asset", complete, 0, now_ms)

        elif arb.direction is Direction.SPOT_TO_CONDITIONAL:
            cost = spot.quote_exact_out("stable", amount, now_ms)
            if cost is None:
                raise InvariantViolation(f"spot cannot supply {amount}", reason="insufficient_liquidity")
            float_stable -= cost
            bought = spot.swap("stable", cost, amount, now_ms)
            escrow.deposit(work, "asset", bought)
            for outcome in range(pools.outcome_count):
                pools.swap(work, outcome, "asset", bought, 0, now_ms)
            complete = work.complete_set_size("stable")
            escrow.burn_complete_set(work, "stable", complete)
            float_stable += complete

        else:
            return 0

        if float_stable <= 0:
            raise InvariantViolation(f"arbitrage settled at {float_stable}", reason="arbitrage_unprofitable")
        self.log.add(Event(now_ms, "ARBITRAGE_EXECUTED", pool_id=self.spot.pool_id, amount=amount,
                           meta={"direction": arb.direction.value, "expected": arb.profit, "realized": float_stable}))
        return float_stable

    def check_no_arb_band(self, market: ConditionalMarket) -> None:
        prices = market.pools.reference_prices()
        spot_price = self.spot.price()
        band = self.cfg.no_arb_band_bps
        lower = min(prices) * (FEE_SCALE - band)
        upper = max(prices) * (FEE_SCALE + band)
        if not lower <= spot_price * FEE_SCALE <= upper:
            raise NoArbitrageBandError(
                f"spot price {spot_price} outside [{min(prices)}, {max(prices)}] +/- {band}bps"
            )

    def _run_arbitrage(self, market: ConditionalMarket, hint: int, now_ms: int) -> Tuple[ArbitrageQuote, int, Optional[ConditionalBalance]]:
        spot_snap, conds = self._snapshots(market, now_ms)
        arb = self.solver.solve(spot_snap, conds, hint)
        if not arb.is_profitable:
            return NO_ARBITRAGE, 0, None
        work = market.escrow.new_balance()
        realized = self._execute_arbitrage(market, work, arb, now_ms)
        return arb, realized, work

    def _pay_profit(self, token_out: TokenSide, realized: int, now_ms: int) -> Tuple[int, int]:
        """(profit in `token_out`, stable left unconverted)"""
        if realized <= 0:
            return 0, 0
        if token_out == "stable":
            return realized, 0
        if self.spot.quote("stable", realized, now_ms) <= 0:
            return 0, realized
        return self.spot.swap("stable", realized, 0, now_ms), 0

    @staticmethod
    def _merge_dust(dust: Optional[ConditionalBalance],
                    prior_dust: Optional[ConditionalBalance]) -> Optional[ConditionalBalance]:
        if dust is not None and dust.is_empty():
            dust = None
        if prior_dust is None:
            return dust
        if dust is None:
            return prior_dust
        return prior_dust.merge(dust)

    def swap(self, actor: str, token_in: TokenSide, amount_in: int, min_out: int, now_ms: int,
             prior_dust: Optional[ConditionalBalance] = None) -> SwapResult:
        token_out = _other(token_in)
        market = self.trading_market()
        fees = self.spot.fees.compute(amount_in, now_ms, route_protocol=self.spot._routes_protocol_fees())
        participants = [self.spot, prior_dust]
        trace = {"spot_price_before": self.spot.price()}
        if market is not None:
            participants += [market.pools, market.escrow]
        try:
            with atomic(*participants, label=f"swap:{actor}"):
                direct = self.spot.swap(token_in, amount_in, 0, now_ms)
                arb, realized, dust = NO_ARBITRAGE, 0, None
                if market is not None:
                    hint = self._asset_hint(token_out, direct, self.spot.asset_reserve, self.spot.stable_reserve)
                    arb, realized, dust = self._run_arbitrage(market, hint, now_ms)
                trace["spot_price_after_arbitrage"] = self.spot.price()
                profit, residual = self._pay_profit(token_out, realized, now_ms)
                trace["spot_price_after_conversion"] = self.spot.price()
                if market is not None:
                    self.check_no_arb_band(market)
                amount_out = direct + profit
                require_min_out(amount_out, min_out)
                dust = self._merge_dust(dust, prior_dust)
        except MarketError as exc:
            self._record_failure(actor, token_in, amount_in, token_out, fees, now_ms, exc, trace)
            raise

        receipt = SwapReceipt(
            timestamp_ms=now_ms, pool_id=self.spot.pool_id, actor=actor,
            token_in=token_in, amount_in=amount_in, token_out=token_out, amount_out=amount_out,
            fees=fees, status="executed", fail_reason=None, arbitrage_profit=profit,
            meta={"arbitrage": arb.to_dict(), "residual_stable": residual, **trace},
        )
        self.receipts.add(receipt)
        self.log.add(Event(now_ms, "SWAP_EXECUTED", actor_id=actor, pool_id=self.spot.pool_id,
                           amount=amount_in, meta={"receipt": receipt.to_dict()}))
        return SwapResult(
            amount_out=amount_out,
            direct_output=direct,
            arbitrage=arb,
            profit=profit,
            residual_stable=residual,
            dust=dust,
            receipt=receipt,
        )

    def rebalance(self, actor: str, now_ms: int) -> int:
        """Arbitrage the spot pool against the live market with no user trade; returns stable profit."""
        market = self.trading_market()
        if market is None:
            return 0
        with atomic(self.spot, market.pools, market.escrow, label=f"rebalance:{actor}"):
            arb, realized, _dust = self._run_arbitrage(market, 0, now_ms)
            if arb.is_profitable:
                self.check_no_arb_band(market)
        return realized

    def _record_failure(self, actor: str, token_in: TokenSide, amount_in: int, token_out: TokenSide,
                        fees: FeeBreakdown, now_ms: int, exc: MarketError, trace: Optional[dict] = None) -> None:
        # trace holds whichever spot prices were reached before the unit of work failed
        r = SwapReceipt(
            timestamp_ms=now_ms, pool_id=self.spot.pool_id, actor=actor,
            token_in=token_in, amount_in=amount_in, token_out=token_out, amount_out=0,
            fees=fees, status="failed", fail_reason=exc.reason, meta=dict(trace or {}),
        )
        self.receipts.add(r)
        self.log.add(Event(now_ms, "SWAP_FAILED", actor_id=actor, pool_id=self.spot.pool_id, amount=amount_in,
                           meta={"reason": exc.reason}))
        logger.debug("swap failed: actor=%s %s->%s amount=%d reason=%s", actor, token_in, token_out, amount_in, exc.reason)
