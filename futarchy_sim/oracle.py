from __future__ import annotations
from dataclasses import dataclass
from typing import Optional
from collections import deque
import logging

from .config import PRICE_SCALE, U256_MAX
from .errors import InvariantViolation, ArithmeticSafetyError

logger = logging.getLogger(__name__)


def price_of(asset_reserve: int, stable_reserve: int) -> int:
    """Stable per asset, scaled by PRICE_SCALE."""
    if asset_reserve <= 0:
        return 0
    return stable_reserve * PRICE_SCALE // asset_reserve


@dataclass(frozen=True)
class Checkpoint:
    timestamp_ms: int
    cumulative: int


class TwapOracle:
    """
    Cumulative price-time integral. `update` must be called with the price that
    held since the previous update, i.e. before a trade moves the reserves.

    Between two checkpoints the integral is linear, so the cumulative value at
    any past instant is recovered by interpolation; after the last checkpoint
    it is extended with the live price passed by the caller.
    """
    def __init__(self, init_price: int, now_ms: int, window_ms: int, period_ms: int,
                 long_periods: int = 90, history_len: Optional[int] = 4096, step_max: int = 0) -> None:
        self.window_ms = int(window_ms)
        self.period_ms = int(period_ms)
        self.long_periods = int(long_periods)
        self.initialized_at_ms = int(now_ms)
        self.last_timestamp_ms = int(now_ms)
        self.last_price = int(init_price)
        # price actually integrated; trails last_price by at most step_max per update
        self.last_observation = int(init_price)
        self.step_max = int(step_max)
        self.cumulative = 0
        self.history: deque[Checkpoint] = deque(maxlen=history_len)
        self.history.append(Checkpoint(self.last_timestamp_ms, 0))

    # -----------------------------
    # Writes
    # -----------------------------
    def update(self, price: int, now_ms: int) -> None:
        if now_ms < self.last_timestamp_ms:
            raise InvariantViolation(
                f"oracle clock went backwards: {now_ms} < {self.last_timestamp_ms}", reason="clock_regression"
            )
        elapsed = now_ms - self.last_timestamp_ms
        if elapsed > 0:
            observed = self.observation(price)
            self.cumulative += observed * elapsed
            if self.cumulative > U256_MAX:
                raise ArithmeticSafetyError("oracle accumulator overflow")
            self.last_timestamp_ms = now_ms
            self.history.append(Checkpoint(now_ms, self.cumulative))
            self.last_observation = observed
        self.last_price = int(price)

    def observation(self, price: int) -> int:
        """`price` clamped to within step_max of the last observation."""
        price = int(price)
        if self.step_max <= 0:
            return price
        lo = self.last_observation - self.step_max
        hi = self.last_observation + self.step_max
        return min(max(price, lo), hi)

    def snapshot(self) -> Checkpoint:
        return Checkpoint(self.last_timestamp_ms, self.cumulative)

    # -----------------------------
    # Reads
    # -----------------------------
    def cumulative_at(self, t_ms: int, live_price: int) -> int:
        if t_ms >= self.last_timestamp_ms:
            return self.cumulative + live_price * (t_ms - self.last_timestamp_ms)
        oldest = self.history[0]
        if t_ms <= oldest.timestamp_ms:
            return oldest.cumulative
        prev = oldest
        for cp in self.history:
            if cp.timestamp_ms >= t_ms:
                span = cp.timestamp_ms - prev.timestamp_ms
                if span == 0:
                    return cp.cumulative
                return prev.cumulative + (cp.cumulative - prev.cumulative) * (t_ms - prev.timestamp_ms) // span
            prev = cp
        return self.cumulative

    def _average(self, window_ms: int, now_ms: int, live_price: int) -> int:
        start = max(self.history[0].timestamp_ms, now_ms - window_ms)
        span = now_ms - start
        if span <= 0:
            return live_price
        return (self.cumulative_at(now_ms, live_price) - self.cumulative_at(start, live_price)) // span

    def _live(self, live_price: Optional[int]) -> int:
        return self.observation(self.last_price if live_price is None else live_price)

    def twap(self, now_ms: int, live_price: Optional[int] = None) -> int:
        price = self._live(live_price)
        return self._average(self.window_ms, now_ms, price)

    def long_twap(self, now_ms: int, live_price: Optional[int] = None) -> int:
        price = self._live(live_price)
        long_window = self.period_ms * self.long_periods
        if now_ms - self.history[0].timestamp_ms < long_window:
            logger.debug("long twap falls back to short window: history=%dms needed=%dms",
                         now_ms - self.history[0].timestamp_ms, long_window)
            return self._average(self.window_ms, now_ms, price)
        return self._average(long_window, now_ms, price)

    def average_since(self, start_ms: int, now_ms: int, live_price: Optional[int] = None) -> int:
        """Average observation over [start_ms, now_ms]; the live observation if that span is empty."""
        price = self._live(live_price)
        start = max(start_ms, self.history[0].timestamp_ms)
        span = now_ms - start
        if span <= 0:
            return price
        return (self.cumulative_at(now_ms, price) - self.cumulative_at(start, price)) // span

    def is_ready(self, now_ms: int) -> bool:
        return now_ms - self.initialized_at_ms >= self.window_ms
