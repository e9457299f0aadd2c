from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple, Union
import logging

from .amm import TREASURY
from .config import MarketConfig
from .core import Event, EventLog, PoolCapability
from .errors import ActionVersionError, StatePreconditionError
from .fees import FeeSchedule
from .spot import SpotPool
from .txn import atomic

logger = logging.getLogger(__name__)

ACTION_VERSION = 1


# -----------------------------
# Actions
# -----------------------------
@dataclass(frozen=True)
class CreatePool:
    pool_id: str
    asset_amount: int
    stable_amount: int
    launch_fee_bps: Optional[int] = None
    launch_fee_duration_ms: int = 0
    version: int = ACTION_VERSION

@dataclass(frozen=True)
class AddLiquidity:
    pool_id: str
    asset_amount: int
    stable_amount: int
    min_lp_out: int = 0
    version: int = ACTION_VERSION

@dataclass(frozen=True)
class RemoveLiquidity:
    pool_id: str
    lp_amount: int
    min_asset_out: int = 0
    min_stable_out: int = 0
    version: int = ACTION_VERSION

@dataclass(frozen=True)
class UpdatePoolParams:
    pool_id: str
    fee_bps: Optional[int] = None
    protocol_fee_share_bps: Optional[int] = None
    conditional_liquidity_ratio_percent: Optional[int] = None
    version: int = ACTION_VERSION

@dataclass(frozen=True)
class SetFeeSchedule:
    pool_id: str
    initial_fee_bps: Optional[int] = None      # None clears the schedule
    duration_ms: int = 0
    version: int = ACTION_VERSION

@dataclass(frozen=True)
class UpdateTwapConfig:
    pool_id: str
    start_delay_ms: Optional[int] = None
    step_max: Optional[int] = None
    initial_observation: Optional[int] = None
    threshold: Optional[int] = None
    version: int = ACTION_VERSION

@dataclass(frozen=True)
class CollectProtocolFees:
    pool_id: str
    version: int = ACTION_VERSION

Action = Union[
    CreatePool, AddLiquidity, RemoveLiquidity, UpdatePoolParams, SetFeeSchedule, UpdateTwapConfig, CollectProtocolFees,
]


# -----------------------------
# Treasury-side registry
# -----------------------------
@dataclass
class PoolRegistry:
    """Spot pools governed by one DAO, with the capabilities and LP the DAO holds."""
    cfg: MarketConfig = field(default_factory=MarketConfig)
    pools: Dict[str, SpotPool] = field(default_factory=dict)
    capabilities: Dict[str, PoolCapability] = field(default_factory=dict)
    treasury_lp: Dict[str, int] = field(default_factory=dict)
    collected_fees: Dict[str, Tuple[int, int]] = field(default_factory=dict)
    log: EventLog = field(default_factory=EventLog)

    def pool(self, pool_id: str) -> SpotPool:
        try:
            return self.pools[pool_id]
        except KeyError:
            raise StatePreconditionError(f"unknown pool {pool_id}", reason="unknown_pool") from None

    def capability(self, pool_id: str) -> PoolCapability:
        self.pool(pool_id)
        return self.capabilities[pool_id]


def _check_version(action: Action) -> None:
    if action.version != ACTION_VERSION:
        raise ActionVersionError(
            f"{type(action).__name__} version {action.version} not supported (expected {ACTION_VERSION})"
        )


def _create_pool(registry: PoolRegistry, action: CreatePool, now_ms: int) -> SpotPool:
    if action.pool_id in registry.pools:
        raise StatePreconditionError(f"pool {action.pool_id} already exists", reason="pool_exists")
    schedule = None
    if action.launch_fee_bps is not None:
        schedule = FeeSchedule(initial_fee_bps=action.launch_fee_bps, duration_ms=action.launch_fee_duration_ms)
    pool = SpotPool(action.pool_id, registry.cfg, fee_schedule=schedule, activation_ms=now_ms)
    lp, _, _ = pool.add_liquidity(action.asset_amount, action.stable_amount, 0, now_ms)
    registry.pools[action.pool_id] = pool
    registry.capabilities[action.pool_id] = pool.capability
    registry.treasury_lp[action.pool_id] = lp
    return pool


def execute_action(registry: PoolRegistry, action: Action, now_ms: int):
    """
    Apply one governance action to the registry. Each action runs as a unit
    of work against its pool; the registry is only updated once the pool
    operation has succeeded.
    """
    _check_version(action)

    if isinstance(action, CreatePool):
        result = _create_pool(registry, action, now_ms)
    else:
        pool = registry.pool(action.pool_id)
        cap = registry.capability(action.pool_id)
        with atomic(pool, label=type(action).__name__):
            if isinstance(action, AddLiquidity):
                lp, asset_change, stable_change = pool.add_liquidity(
                    action.asset_amount, action.stable_amount, action.min_lp_out, now_ms
                )
                registry.treasury_lp[action.pool_id] += lp
                result = (lp, asset_change, stable_change)
            elif isinstance(action, RemoveLiquidity):
                result = pool.remove_liquidity(action.lp_amount, action.min_asset_out, action.min_stable_out, now_ms)
                registry.treasury_lp[action.pool_id] = pool.lp_holders[TREASURY]
            elif isinstance(action, UpdatePoolParams):
                pool.update_params(
                    cap,
                    fee_bps=action.fee_bps,
                    protocol_fee_share_bps=action.protocol_fee_share_bps,
                    conditional_liquidity_ratio_percent=action.conditional_liquidity_ratio_percent,
                )
                result = None
            elif isinstance(action, SetFeeSchedule):
                schedule = None
                if action.initial_fee_bps is not None:
                    schedule = FeeSchedule(initial_fee_bps=action.initial_fee_bps, duration_ms=action.duration_ms)
                pool.set_fee_schedule(cap, schedule, now_ms)
                result = None
            elif isinstance(action, UpdateTwapConfig):
                result = pool.update_twap_config(
                    cap,
                    start_delay_ms=action.start_delay_ms,
                    step_max=action.step_max,
                    initial_observation=action.initial_observation,
                    threshold=action.threshold,
                )
            elif isinstance(action, CollectProtocolFees):
                result = pool.collect_protocol_fees(cap)
                prev_asset, prev_stable = registry.collected_fees.get(action.pool_id, (0, 0))
                registry.collected_fees[action.pool_id] = (prev_asset + result[0], prev_stable + result[1])
            else:
                raise TypeError(f"unknown action type: {type(action).__name__}")

    registry.log.add(Event(now_ms, "ACTION_EXECUTED", pool_id=action.pool_id,
                           meta={"action": type(action).__name__, "version": action.version}))
    logger.debug("action %s applied to pool=%s", type(action).__name__, action.pool_id)
    return result
