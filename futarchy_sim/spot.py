from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Tuple, Union
import logging

from .amm import ConstantProductPool
from .config import (
    MarketConfig, TwapConfig, FEE_SCALE, MAX_FEE_BPS, MIN_OUTCOMES, MAX_OUTCOMES,
    MIN_CONDITIONAL_RATIO_PERCENT, MAX_CONDITIONAL_RATIO_PERCENT,
)
from .core import PoolCapability, require_capability
from .errors import (
    CooldownError, InvariantViolation, MinimumLiquidityError, NoActiveProposalError, ProposalActiveError,
    StatePreconditionError,
)
from .fees import FeeRegistry, FeeSchedule
from .oracle import Checkpoint

logger = logging.getLogger(__name__)


# -----------------------------
# Proposal state
# -----------------------------
@dataclass
class ProposalContext:
    proposal_id: str
    outcome_count: int
    ratio_percent: int
    started_at_ms: int
    oracle_snapshot: Checkpoint
    init_price: int
    locked_asset: int = 0
    locked_stable: int = 0

@dataclass(frozen=True)
class Idle:
    pass

@dataclass(frozen=True)
class ProposalActive:
    context: ProposalContext

ProposalState = Union[Idle, ProposalActive]


@dataclass
class AggregatorConfig:
    conditional_liquidity_ratio_percent: int
    protocol_fee_share_bps: int
    last_proposal_end_ms: Optional[int] = None


class SpotPool(ConstantProductPool):
    """
    The DAO's long-lived asset/stable AMM. With an aggregator configuration it
    keeps a TWAP oracle, routes a share of fees to the protocol and can lend a
    percentage of its reserves to one proposal's conditional markets at a time.
    """
    def __init__(self, pool_id: str, cfg: MarketConfig, fee_schedule: Optional[FeeSchedule] = None,
                 activation_ms: int = 0) -> None:
        self.aggregator: Optional[AggregatorConfig] = None
        if cfg.aggregator_enabled:
            self.aggregator = AggregatorConfig(
                conditional_liquidity_ratio_percent=cfg.conditional_liquidity_ratio_percent,
                protocol_fee_share_bps=cfg.protocol_fee_share_bps,
            )
        fees = FeeRegistry(
            fee_bps=cfg.fee_bps,
            protocol_share_bps=cfg.protocol_fee_share_bps if self.aggregator else 0,
            schedule=fee_schedule,
            activation_ms=activation_ms,
        )
        super().__init__(pool_id, cfg, fees)
        self.proposal_gap_ms = cfg.proposal_gap_ms
        self.state: ProposalState = Idle()
        self.capability = PoolCapability(pool_id)
        self.twap_config = TwapConfig.from_market(cfg)

    # -----------------------------
    # Hooks
    # -----------------------------
    def _check_liquidity_change_allowed(self) -> None:
        if isinstance(self.state, ProposalActive):
            raise ProposalActiveError(
                f"liquidity is locked while proposal {self.state.context.proposal_id} trades"
            )

    def _routes_protocol_fees(self) -> bool:
        return self.aggregator is not None

    def _tracks_oracle(self) -> bool:
        return self.aggregator is not None

    def _check_projected_floor(self, asset_after: int, stable_after: int) -> None:
        if self.aggregator is None:
            return
        keep = 100 - self.aggregator.conditional_liquidity_ratio_percent
        projected = (asset_after * keep // 100) * (stable_after * keep // 100)
        if projected < self.minimum_liquidity:
            raise MinimumLiquidityError(
                f"reserves kept during a proposal ({keep}%) would fall to product {projected}",
                reason="below_projected_minimum_liquidity",
            )

    # -----------------------------
    # Views
    # -----------------------------
    @property
    def active_proposal(self) -> Optional[ProposalContext]:
        if isinstance(self.state, ProposalActive):
            return self.state.context
        return None

    def is_proposal_active(self) -> bool:
        return isinstance(self.state, ProposalActive)

    def proposal_twap(self, now_ms: int) -> int:
        """Spot TWAP since the active proposal was marked, read from the snapshot taken then."""
        ctx = self.active_proposal
        if ctx is None:
            raise NoActiveProposalError("no proposal marked on this pool")
        snap = ctx.oracle_snapshot
        span = now_ms - snap.timestamp_ms
        live = self.reference_price()
        if self.oracle is None or span <= 0:
            return live
        return (self.oracle.cumulative_at(now_ms, live) - snap.cumulative) // span

    def quote_asset_for_stable(self, amount_in: int, now_ms: int) -> int:
        return self.quote("asset", amount_in, now_ms)

    def quote_stable_for_asset(self, amount_in: int, now_ms: int) -> int:
        return self.quote("stable", amount_in, now_ms)

    # -----------------------------
    # Swaps
    # -----------------------------
    def swap_asset_for_stable(self, amount_in: int, min_out: int, now_ms: int) -> int:
        return self.swap("asset", amount_in, min_out, now_ms)

    def swap_stable_for_asset(self, amount_in: int, min_out: int, now_ms: int) -> int:
        return self.swap("stable", amount_in, min_out, now_ms)

    # -----------------------------
    # Proposal lifecycle
    # -----------------------------
    def _require_aggregator(self) -> AggregatorConfig:
        if self.aggregator is None:
            raise StatePreconditionError(f"pool {self.pool_id} has no aggregator configuration",
                                         reason="aggregator_disabled")
        return self.aggregator

    def check_proposal_gap(self, now_ms: int) -> None:
        agg = self._require_aggregator()
        if agg.last_proposal_end_ms is None:
            return
        elapsed = now_ms - agg.last_proposal_end_ms
        if elapsed < self.proposal_gap_ms:
            raise CooldownError(
                f"{self.proposal_gap_ms - elapsed}ms of proposal cool-down remaining"
            )

    def mark_liquidity_to_proposal(self, cap: PoolCapability, proposal_id: str, outcome_count: int,
                                   now_ms: int) -> ProposalContext:
        require_capability(cap, self.capability)
        agg = self._require_aggregator()
        if isinstance(self.state, ProposalActive):
            raise ProposalActiveError(f"proposal {self.state.context.proposal_id} is already active")
        if not MIN_OUTCOMES <= outcome_count <= MAX_OUTCOMES:
            raise InvariantViolation(f"outcome_count {outcome_count} out of range", reason="bad_outcome_count")
        self.check_proposal_gap(now_ms)
        if self.oracle is None or self.lp_supply == 0:
            raise InvariantViolation(f"pool {self.pool_id} has no liquidity", reason="empty_pool")
        if not self.oracle.is_ready(now_ms):
            raise StatePreconditionError(
                f"pool {self.pool_id} oracle needs {self.oracle.window_ms}ms of history", reason="oracle_not_ready"
            )

        self.observe(now_ms)
        ctx = ProposalContext(
            proposal_id=proposal_id,
            outcome_count=outcome_count,
            ratio_percent=agg.conditional_liquidity_ratio_percent,
            started_at_ms=now_ms,
            oracle_snapshot=self.oracle.snapshot(),
            init_price=self.long_twap(now_ms),
        )
        self.state = ProposalActive(ctx)
        logger.info("pool=%s proposal=%s marked: ratio=%d%% outcomes=%d price=%d",
                    self.pool_id, proposal_id, ctx.ratio_percent, outcome_count, ctx.init_price)
        return ctx

    def split_reserves_for_proposal(self, cap: PoolCapability) -> Tuple[int, int]:
        """Move the active proposal's ratio of reserves out of the pool."""
        require_capability(cap, self.capability)
        ctx = self.active_proposal
        if ctx is None:
            raise NoActiveProposalError("no proposal marked on this pool")
        if ctx.locked_asset or ctx.locked_stable:
            raise StatePreconditionError("reserves already split for this proposal", reason="already_split")
        asset_out = self.asset_reserve * ctx.ratio_percent // 100
        stable_out = self.stable_reserve * ctx.ratio_percent // 100
        if (self.asset_reserve - asset_out) * (self.stable_reserve - stable_out) < self.minimum_liquidity:
            raise MinimumLiquidityError("spot reserves kept during the proposal fall below the floor")
        before = self.reserves()
        self.asset_reserve -= asset_out
        self.stable_reserve -= stable_out
        ctx.locked_asset = asset_out
        ctx.locked_stable = stable_out
        self._debug_reserves_change("split_for_proposal", before, asset_out)
        return asset_out, stable_out

    def recombine_from_proposal(self, cap: PoolCapability, asset_in: int, stable_in: int, now_ms: int) -> ProposalContext:
        """Take back the winning outcome's liquidity and end the proposal."""
        require_capability(cap, self.capability)
        agg = self._require_aggregator()
        ctx = self.active_proposal
        if ctx is None:
            raise NoActiveProposalError("no proposal to recombine")
        before = self.reserves()
        self.observe(now_ms)
        self.asset_reserve += asset_in
        self.stable_reserve += stable_in
        if self.k() < self.minimum_liquidity:
            raise MinimumLiquidityError("recombined reserves below floor")
        proposal_twap = self.proposal_twap(now_ms)
        agg.last_proposal_end_ms = now_ms
        self.state = Idle()
        self._debug_reserves_change("recombine_from_proposal", before, asset_in)
        logger.info("pool=%s proposal=%s recombined: asset=%d stable=%d (locked asset=%d stable=%d) spot_twap=%d",
                    self.pool_id, ctx.proposal_id, asset_in, stable_in, ctx.locked_asset, ctx.locked_stable,
                    proposal_twap)
        return ctx

    # -----------------------------
    # Governance parameters
    # -----------------------------
    def set_fee_schedule(self, cap: PoolCapability, schedule: Optional[FeeSchedule], now_ms: int) -> None:
        require_capability(cap, self.capability)
        self.fees.schedule = schedule
        self.fees.activation_ms = now_ms

    def update_params(self, cap: PoolCapability, fee_bps: Optional[int] = None,
                      protocol_fee_share_bps: Optional[int] = None,
                      conditional_liquidity_ratio_percent: Optional[int] = None) -> None:
        require_capability(cap, self.capability)
        if fee_bps is not None:
            if not 0 <= fee_bps <= MAX_FEE_BPS:
                raise InvariantViolation(f"fee_bps out of range: {fee_bps}", reason="bad_fee")
            self.fees.fee_bps = fee_bps
        if protocol_fee_share_bps is not None or conditional_liquidity_ratio_percent is not None:
            agg = self._require_aggregator()
            if protocol_fee_share_bps is not None:
                if not 0 <= protocol_fee_share_bps <= FEE_SCALE:
                    raise InvariantViolation("protocol_fee_share_bps out of range", reason="bad_fee")
                agg.protocol_fee_share_bps = protocol_fee_share_bps
                self.fees.protocol_share_bps = protocol_fee_share_bps
            if conditional_liquidity_ratio_percent is not None:
                if isinstance(self.state, ProposalActive):
                    raise ProposalActiveError("ratio cannot change while a proposal trades")
                if not MIN_CONDITIONAL_RATIO_PERCENT <= conditional_liquidity_ratio_percent <= MAX_CONDITIONAL_RATIO_PERCENT:
                    raise InvariantViolation("conditional liquidity ratio out of range", reason="bad_ratio")
                agg.conditional_liquidity_ratio_percent = conditional_liquidity_ratio_percent

    def update_twap_config(self, cap: PoolCapability, start_delay_ms: Optional[int] = None,
                           step_max: Optional[int] = None, initial_observation: Optional[int] = None,
                           threshold: Optional[int] = None) -> TwapConfig:
        """Settings for the conditional TWAPs of proposals marked from now on."""
        require_capability(cap, self.capability)
        self._require_aggregator()
        try:
            self.twap_config = self.twap_config.updated(
                start_delay_ms=start_delay_ms, step_max=step_max,
                initial_observation=initial_observation, threshold=threshold,
            )
        except ValueError as exc:
            raise InvariantViolation(str(exc), reason="bad_twap_config") from exc
        logger.info("pool=%s twap config: %s", self.pool_id, self.twap_config)
        return self.twap_config

    def collect_protocol_fees(self, cap: PoolCapability) -> Tuple[int, int]:
        require_capability(cap, self.capability)
        asset_fees = self.protocol_fees["asset"]
        stable_fees = self.protocol_fees["stable"]
        self.protocol_fees = {"asset": 0, "stable": 0}
        return asset_fees, stable_fees

