from __future__ import annotations
from dataclasses import dataclass
from typing import Optional

from .config import FEE_SCALE, MAX_SCHEDULE_DURATION_MS, MAX_SCHEDULE_FEE_BPS, MAX_FEE_BPS
from .errors import ArithmeticSafetyError


def get_current_fee(initial_fee_bps: int, final_fee_bps: int, duration_ms: int,
                    start_time_ms: int, now_ms: int) -> int:
    """
    Linearly decaying fee, from `initial_fee_bps` at `start_time_ms` down to
    `final_fee_bps` once `duration_ms` has elapsed.
    """
    if duration_ms == 0:
        return final_fee_bps
    if final_fee_bps >= initial_fee_bps:
        return final_fee_bps
    if now_ms <= start_time_ms:
        return initial_fee_bps
    elapsed = now_ms - start_time_ms
    if elapsed >= duration_ms:
        return final_fee_bps

    decay = (initial_fee_bps - final_fee_bps) * elapsed // duration_ms
    fee = initial_fee_bps - decay
    if fee > initial_fee_bps:
        raise ArithmeticSafetyError(f"decayed fee {fee} above launch fee {initial_fee_bps}")
    return max(fee, final_fee_bps)


@dataclass(frozen=True)
class FeeSchedule:
    initial_fee_bps: int
    duration_ms: int

    def __post_init__(self) -> None:
        if not 0 <= self.initial_fee_bps <= MAX_SCHEDULE_FEE_BPS:
            raise ValueError(f"initial_fee_bps must be <= {MAX_SCHEDULE_FEE_BPS}")
        if not 0 <= self.duration_ms <= MAX_SCHEDULE_DURATION_MS:
            raise ValueError(f"duration_ms must be <= {MAX_SCHEDULE_DURATION_MS}")

    def fee_at(self, final_fee_bps: int, start_time_ms: int, now_ms: int) -> int:
        return get_current_fee(self.initial_fee_bps, final_fee_bps, self.duration_ms, start_time_ms, now_ms)


@dataclass
class FeeBreakdown:
    lp_fee: int
    protocol_fee: int
    total_fee: int

    def to_dict(self) -> dict:
        return {
            "lp_fee": int(self.lp_fee),
            "protocol_fee": int(self.protocol_fee),
            "total_fee": int(self.total_fee),
        }


def split_fee(amount_in: int, fee_bps: int, protocol_share_bps: int = 0) -> FeeBreakdown:
    total_fee = amount_in * fee_bps // FEE_SCALE
    protocol_fee = total_fee * protocol_share_bps // FEE_SCALE
    return FeeBreakdown(lp_fee=total_fee - protocol_fee, protocol_fee=protocol_fee, total_fee=total_fee)


class FeeRegistry:
    """Steady-state fee plus an optional launch schedule decaying toward it."""
    def __init__(self, fee_bps: int, protocol_share_bps: int = 0,
                 schedule: Optional[FeeSchedule] = None, activation_ms: int = 0) -> None:
        if not 0 <= fee_bps <= MAX_FEE_BPS:
            raise ValueError(f"fee_bps out of range: {fee_bps}")
        self.fee_bps = int(fee_bps)
        self.protocol_share_bps = int(protocol_share_bps)
        self.schedule = schedule
        self.activation_ms = int(activation_ms)

    def current_fee_bps(self, now_ms: int) -> int:
        if self.schedule is None:
            return self.fee_bps
        return self.schedule.fee_at(self.fee_bps, self.activation_ms, now_ms)

    def compute(self, amount_in: int, now_ms: int, route_protocol: bool = True) -> FeeBreakdown:
        share = self.protocol_share_bps if route_protocol else 0
        return split_fee(amount_in, self.current_fee_bps(now_ms), share)
