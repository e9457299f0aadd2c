from __future__ import annotations
from typing import Dict, List, Optional
import logging
import numpy as np
import random

from .config import MarketConfig, ScenarioConfig
from .core import Event, EventLog, ReceiptStore, TokenSide
from .errors import MarketError
from .escrow import ConditionalBalance
from .factory import MarketFactory, Trader
from .metrics import MetricsStore
from .proposal import StaticProposal
from .quantum import ConditionalMarket, begin_trading, finalize
from .router import SwapRouter
from .txn import atomic

logger = logging.getLogger(__name__)


class SimulationEngine:
    """
    Tick-driven market: random traders swap through the router, proposals
    open on the spot pool once fees have settled and the cool-down allows,
    conditional traders push outcome prices, and each proposal is finalized
    with the outcome whose decision TWAP clears the threshold as winner. A
    finalize that fails is logged and retried on the next tick.
    """
    def __init__(self, cfg: ScenarioConfig, market_cfg: Optional[MarketConfig] = None, seed: int = 1) -> None:
        self.cfg = cfg
        self.market_cfg = market_cfg or MarketConfig()
        self.rng = random.Random(seed)
        np.random.seed(seed)

        self.tick: int = 0
        self.now_ms: int = 0
        self.log = EventLog(maxlen=cfg.event_log_maxlen)
        self.receipts = ReceiptStore(maxlen=cfg.event_log_maxlen)
        self.metrics = MetricsStore()

        self.factory = MarketFactory(cfg, self.market_cfg, rng=self.rng)
        self.spot, self.treasury_lp = self.factory.create_spot_pool(self.now_ms)
        self.capability = self.spot.capability
        self.router = SwapRouter(self.spot, log=self.log, receipts=self.receipts)
        self.traders: List[Trader] = self.factory.create_traders(cfg.traders)

        self.proposal: Optional[StaticProposal] = None
        self.proposal_created_tick: Optional[int] = None
        self.market: Optional[ConditionalMarket] = None
        self.market_started_tick: Optional[int] = None

        self._swaps_tick: int = 0
        self._failures_tick: int = 0
        self._arbitrage_tick: int = 0
        self._arbitrage_profit_total: int = 0
        self._conditional_trades_tick: int = 0
        self._finalize_failures: int = 0
        self.snapshot_metrics()

    # -----------------------------
    # Helpers
    # -----------------------------
    def _traders(self, role: str) -> List[Trader]:
        return [t for t in self.traders if t.role == role]

    def _market_balance(self, trader: Trader) -> Optional[ConditionalBalance]:
        """The trader's balance in the live market, if any."""
        if self.market is None or trader.balance is None:
            return None
        if trader.balance.market_id != self.market.market_id:
            return None
        return trader.balance

    def _min_out(self, token_in: TokenSide, amount_in: int) -> int:
        bps = int(self.cfg.trader_min_out_bps)
        if bps <= 0:
            return 0
        quote = self.router.quote(token_in, amount_in, self.now_ms)
        return quote.direct_output * (10_000 - bps) // 10_000

    # -----------------------------
    # Spot trading
    # -----------------------------
    def _spot_trade(self, trader: Trader) -> None:
        token_in = self.factory.sample_side()
        reserve_in = self.spot.stable_reserve if token_in == "stable" else self.spot.asset_reserve
        amount_in = self.factory.sample_amount(reserve_in, self.cfg.trade_size_mean_frac)
        if amount_in <= 0:
            return
        try:
            min_out = self._min_out(token_in, amount_in)
            result = self.router.swap(trader.trader_id, token_in, amount_in, min_out, self.now_ms,
                                      prior_dust=self._market_balance(trader))
        except MarketError as exc:
            self._failures_tick += 1
            logger.debug("tick=%d spot swap failed: trader=%s reason=%s", self.tick, trader.trader_id, exc.reason)
            return
        self._swaps_tick += 1
        trader.record(token_in, amount_in, result.receipt.token_out, result.amount_out)
        if result.residual_stable:
            trader.received["stable"] += result.residual_stable
        if result.arbitrage.is_profitable:
            self._arbitrage_tick += 1
            self._arbitrage_profit_total += result.arbitrage.profit
        if result.dust is not None:
            trader.balance = result.dust

    # -----------------------------
    # Conditional trading
    # -----------------------------
    def _conditional_trade(self, trader: Trader) -> None:
        market = self.market
        if market is None or not market.pools.is_live():
            return
        bias = self.cfg.conditional_bias_outcome
        if bias is not None and self.rng.random() < 0.7:
            outcome = bias
        else:
            outcome = self.rng.randrange(market.outcome_count)
        # favoured outcome gets bought, the others sold
        token_in: TokenSide = "stable" if outcome == bias else "asset"
        pool = market.pools[outcome]
        reserve_in = pool.stable_reserve if token_in == "stable" else pool.asset_reserve
        amount_in = self.factory.sample_amount(reserve_in, self.cfg.conditional_trade_size_mean_frac)
        if amount_in <= 0:
            return

        balance = self._market_balance(trader)
        if balance is None:
            balance = market.escrow.new_balance()
        try:
            with atomic(market.pools, market.escrow, balance, label=f"conditional_swap:{trader.trader_id}"):
                topup = max(0, amount_in - balance.get(outcome, token_in))
                if topup:
                    market.escrow.deposit(balance, token_in, topup)
                market.pools.swap(balance, outcome, token_in, amount_in, 0, self.now_ms)
        except MarketError as exc:
            self._failures_tick += 1
            logger.debug("tick=%d conditional swap failed: trader=%s outcome=%d reason=%s",
                         self.tick, trader.trader_id, outcome, exc.reason)
            return
        trader.balance = balance
        trader.spent[token_in] += topup
        self._conditional_trades_tick += 1
        self.log.add(Event(self.now_ms, "CONDITIONAL_SWAP", actor_id=trader.trader_id,
                           pool_id=market.pools[outcome].pool_id, outcome=outcome, amount=amount_in))

    # -----------------------------
    # Proposal lifecycle
    # -----------------------------
    def _fees_settled(self) -> bool:
        return self.spot.current_fee_bps(self.now_ms) <= self.market_cfg.fee_bps

    def _maybe_create_proposal(self) -> None:
        if not self.cfg.proposals_enabled or self.proposal is not None or self.spot.aggregator is None:
            return
        if not self._fees_settled():
            return
        if self.spot.oracle is None or not self.spot.oracle.is_ready(self.now_ms):
            return
        try:
            self.spot.check_proposal_gap(self.now_ms)
        except MarketError:
            return
        self.proposal = StaticProposal(self.factory.new_proposal_id(), outcomes=self.cfg.outcome_count)
        self.proposal_created_tick = self.tick
        self.log.add(Event(self.now_ms, "PROPOSAL_CREATED", pool_id=self.spot.pool_id,
                           meta={"proposal_id": self.proposal.proposal_id}))

    def _maybe_begin_trading(self) -> None:
        if self.proposal is None or self.market is not None:
            return
        if self.tick - self.proposal_created_tick < self.cfg.proposal_review_ticks:
            return
        try:
            market = begin_trading(self.spot, self.capability, self.proposal, self.now_ms)
        except MarketError as exc:
            logger.warning("proposal=%s could not start trading: %s", self.proposal.proposal_id, exc.reason)
            self.proposal = None
            return
        self.market = market
        self.market_started_tick = self.tick
        self.router.attach_market(market)
        self.log.add(Event(self.now_ms, "PROPOSAL_TRADING", pool_id=self.spot.pool_id,
                           meta={"proposal_id": market.market_id, "outcomes": market.outcome_count}))

    def _maybe_finalize(self) -> None:
        market = self.market
        if market is None or self.tick - self.market_started_tick < self.cfg.proposal_trading_ticks:
            return
        twaps = market.decision_twaps(self.now_ms)
        if not self.proposal.is_finalized():
            self.proposal.finalize(market.leading_outcome(self.now_ms))
        winner = self.proposal.winning_outcome()
        spot_twap = self.spot.proposal_twap(self.now_ms)
        spot_before = self.spot.reserves()
        try:
            asset_back, stable_back = finalize(self.spot, self.capability, market, self.now_ms)
        except MarketError as exc:
            self._finalize_failures += 1
            logger.warning("tick=%d proposal=%s finalize failed, retrying next tick: %s",
                           self.tick, market.market_id, exc.reason)
            return
        self.router.detach_market()

        redeemed: Dict[str, int] = {"asset": 0, "stable": 0}
        for trader in self.traders:
            balance = trader.balance
            if balance is None or balance.market_id != market.market_id:
                continue
            asset, stable = market.escrow.redeem_all(balance)
            trader.received["asset"] += asset
            trader.received["stable"] += stable
            redeemed["asset"] += asset
            redeemed["stable"] += stable
            trader.balance = None

        self.metrics.add_proposal({
            "proposal_id": market.market_id,
            "started_tick": self.market_started_tick,
            "finalized_tick": self.tick,
            "winner": winner,
            "twaps": list(twaps),
            "spot_twap_during_proposal": spot_twap,
            "spot_asset_before": spot_before[0],
            "spot_stable_before": spot_before[1],
            "recombined_asset": asset_back,
            "recombined_stable": stable_back,
            "trader_redeemed_asset": redeemed["asset"],
            "trader_redeemed_stable": redeemed["stable"],
        })
        self.log.add(Event(self.now_ms, "PROPOSAL_FINALIZED", pool_id=self.spot.pool_id,
                           meta={"proposal_id": market.market_id, "winner": winner}))
        self.market = None
        self.market_started_tick = None
        self.proposal = None
        self.proposal_created_tick = None

    # -----------------------------
    # Tick loop
    # -----------------------------
    def step(self, n_ticks: int = 1) -> None:
        for _ in range(n_ticks):
            self.tick += 1
            self.now_ms += self.cfg.tick_ms
            self._swaps_tick = 0
            self._failures_tick = 0
            self._arbitrage_tick = 0
            self._conditional_trades_tick = 0

            self._maybe_create_proposal()
            self._maybe_begin_trading()

            spot_traders = self._traders("spot_trader") or self.traders
            for _ in range(max(0, int(self.cfg.trades_per_tick))):
                self._spot_trade(self.rng.choice(spot_traders))

            conditional_traders = self._traders("conditional_trader")
            if self.market is not None and conditional_traders:
                for _ in range(max(0, int(self.cfg.conditional_trades_per_tick))):
                    self._conditional_trade(self.rng.choice(conditional_traders))

            self._maybe_finalize()
            self.snapshot_metrics()

    def run(self, n_ticks: int) -> MetricsStore:
        self.step(n_ticks)
        return self.metrics

    def snapshot_metrics(self) -> None:
        cfg = self.cfg
        metrics_stride = int(cfg.metrics_stride or 0)
        pool_stride = int(cfg.pool_metrics_stride or 0)
        do_network = metrics_stride > 0 and self.tick % metrics_stride == 0
        do_pool = pool_stride > 0 and self.tick % pool_stride == 0
        if not do_network and not do_pool:
            return

        spot = self.spot
        market = self.market
        if do_pool:
            rows = [{
                "tick": self.tick,
                "pool_id": spot.pool_id,
                "kind": "spot",
                "outcome": None,
                "asset_reserve": spot.asset_reserve,
                "stable_reserve": spot.stable_reserve,
                "price": spot.price(),
                "twap": spot.twap(self.now_ms),
                "fee_bps": spot.current_fee_bps(self.now_ms),
                "lp_supply": spot.lp_supply,
            }]
            if market is not None:
                for pool in market.pools.pools:
                    rows.append({
                        "tick": self.tick,
                        "pool_id": pool.pool_id,
                        "kind": "conditional",
                        "outcome": pool.outcome,
                        "asset_reserve": pool.asset_reserve,
                        "stable_reserve": pool.stable_reserve,
                        "price": pool.price(),
                        "twap": pool.twap(self.now_ms),
                        "fee_bps": pool.current_fee_bps(self.now_ms),
                        "lp_supply": pool.lp_supply,
                    })
            self.metrics.add_pool_rows(rows)

        if do_network:
            failures = self.receipts.failures()
            self.metrics.add_network({
                "tick": self.tick,
                "time_ms": self.now_ms,
                "spot_price": spot.price(),
                "spot_twap": spot.twap(self.now_ms),
                "spot_fee_bps": spot.current_fee_bps(self.now_ms),
                "spot_k": spot.k(),
                "protocol_fees_asset": spot.protocol_fees["asset"],
                "protocol_fees_stable": spot.protocol_fees["stable"],
                "proposal_active": spot.is_proposal_active(),
                "proposal_id": market.market_id if market is not None else None,
                "escrow_asset": market.escrow.spot_held["asset"] if market is not None else 0,
                "escrow_stable": market.escrow.spot_held["stable"] if market is not None else 0,
                "swaps_tick": self._swaps_tick,
                "swap_failures_tick": self._failures_tick,
                "conditional_trades_tick": self._conditional_trades_tick,
                "arbitrage_tick": self._arbitrage_tick,
                "arbitrage_profit_total": self._arbitrage_profit_total,
                "finalize_failures": self._finalize_failures,
                "failure_reasons": dict(failures),
            })
