from __future__ import annotations
from typing import Dict, Optional, Tuple
import logging

from .config import MarketConfig, U64_MAX
from .core import (
    TokenSide, format_reserves, require_positive, require_u64, require_min_out,
    amount_out_after_fee, quote_in, initial_lp, proportional_deposit, check_swap_output,
)
from .errors import InvariantViolation, MinimumLiquidityError, ZeroAmountError
from .fees import FeeRegistry
from .oracle import TwapOracle, price_of

logger = logging.getLogger(__name__)

TREASURY = "treasury"


class ConstantProductPool:
    """
    x*y=k pool over an (asset, stable) pair with LP accounting, a fee registry
    and an optional TWAP oracle. Subclasses decide when liquidity may move,
    whether fees are shared with the protocol, and whether an oracle is kept.
    """
    def __init__(self, pool_id: str, cfg: MarketConfig, fees: FeeRegistry) -> None:
        self.pool_id = pool_id
        self.cfg = cfg
        self.fees = fees
        self.minimum_liquidity = cfg.minimum_liquidity
        self.debug_reserves: bool = cfg.debug_reserves

        self.asset_reserve: int = 0
        self.stable_reserve: int = 0
        self.lp_supply: int = 0
        self.locked_lp: int = 0
        self.oracle: Optional[TwapOracle] = None
        # withdrawable LP by provider; the locked minimum belongs to nobody
        self.lp_holders: Dict[str, int] = {}
        self.protocol_fees: Dict[str, int] = {"asset": 0, "stable": 0}

    # -----------------------------
    # Hooks
    # -----------------------------
    def _check_liquidity_change_allowed(self) -> None:
        return None

    def _routes_protocol_fees(self) -> bool:
        return False

    def _tracks_oracle(self) -> bool:
        return True

    def _check_projected_floor(self, asset_after: int, stable_after: int) -> None:
        return None

    # -----------------------------
    # Views
    # -----------------------------
    def price(self) -> int:
        return price_of(self.asset_reserve, self.stable_reserve)

    def k(self) -> int:
        return self.asset_reserve * self.stable_reserve

    def reserves(self) -> Tuple[int, int]:
        return self.asset_reserve, self.stable_reserve

    def is_empty(self) -> bool:
        return self.asset_reserve == 0 and self.stable_reserve == 0

    def current_fee_bps(self, now_ms: int) -> int:
        return self.fees.current_fee_bps(now_ms)

    def twap(self, now_ms: int) -> int:
        if self.oracle is None:
            return self.price()
        return self.oracle.twap(now_ms, self.price())

    def long_twap(self, now_ms: int) -> int:
        if self.oracle is None:
            return self.price()
        return self.oracle.long_twap(now_ms, self.price())

    def twap_since(self, start_ms: int, now_ms: int) -> int:
        if self.oracle is None:
            return self.price()
        return self.oracle.average_since(start_ms, now_ms, self.price())

    def reference_price(self) -> int:
        """Live price as the oracle observes it (step-capped when the oracle caps moves)."""
        if self.oracle is None:
            return self.price()
        return self.oracle.observation(self.price())

    def _sides(self, token_in: TokenSide) -> Tuple[int, int]:
        if token_in == "asset":
            return self.asset_reserve, self.stable_reserve
        if token_in == "stable":
            return self.stable_reserve, self.asset_reserve
        raise ValueError(f"unknown token side: {token_in}")

    def quote(self, token_in: TokenSide, amount_in: int, now_ms: int) -> int:
        reserve_in, reserve_out = self._sides(token_in)
        fees = self.fees.compute(amount_in, now_ms, route_protocol=False)
        return amount_out_after_fee(reserve_in, reserve_out, amount_in - fees.total_fee)

    def quote_exact_out(self, token_in: TokenSide, amount_out: int, now_ms: int) -> Optional[int]:
        reserve_in, reserve_out = self._sides(token_in)
        return quote_in(reserve_in, reserve_out, amount_out, self.current_fee_bps(now_ms))

    # -----------------------------
    # Oracle
    # -----------------------------
    def _init_oracle(self, init_price: int, now_ms: int, step_max: int = 0) -> None:
        self.oracle = TwapOracle(
            init_price=init_price,
            now_ms=now_ms,
            window_ms=self.cfg.twap_window_ms,
            period_ms=self.cfg.twap_period_ms,
            long_periods=self.cfg.twap_long_periods,
            history_len=self.cfg.twap_history_len,
            step_max=step_max,
        )

    def observe(self, now_ms: int) -> None:
        """Accumulate the current (pre-mutation) price up to `now_ms`."""
        if self.oracle is not None:
            self.oracle.update(self.price(), now_ms)

    def _debug_reserves_change(self, action: str, before: Tuple[int, int], amount: int) -> None:
        if not self.debug_reserves or not logger.isEnabledFor(logging.DEBUG):
            return
        logger.debug(
            "[RES] pool=%s action=%s amount=%d before={ %s } after={ %s } lp_supply=%d",
            self.pool_id,
            action,
            amount,
            format_reserves(*before),
            format_reserves(self.asset_reserve, self.stable_reserve),
            self.lp_supply,
        )

    # -----------------------------
    # Liquidity
    # -----------------------------
    def add_liquidity(self, asset_in: int, stable_in: int, min_lp_out: int, now_ms: int,
                      provider: str = TREASURY) -> Tuple[int, int, int]:
        """Returns (lp_minted, asset_change, stable_change); the LP is credited to `provider`."""
        self._check_liquidity_change_allowed()
        require_positive(asset_in, "asset_in")
        require_positive(stable_in, "stable_in")
        require_u64(asset_in, "asset_in")
        require_u64(stable_in, "stable_in")

        if self.lp_supply == 0:
            lp, total = initial_lp(asset_in, stable_in, self.minimum_liquidity)
            asset_used, stable_used = asset_in, stable_in
        else:
            lp, asset_used, stable_used = proportional_deposit(
                asset_in, stable_in, self.asset_reserve, self.stable_reserve, self.lp_supply
            )
            total = lp
        if lp <= 0:
            raise ZeroAmountError("deposit too small to mint LP", reason="zero_lp")
        require_min_out(lp, min_lp_out)
        if self.asset_reserve + asset_used > U64_MAX or self.stable_reserve + stable_used > U64_MAX:
            raise InvariantViolation("reserve would overflow u64", reason="u64_overflow")

        before = self.reserves()
        if self.lp_supply == 0:
            self.locked_lp = self.minimum_liquidity
            if self._tracks_oracle() and self.oracle is None:
                self._init_oracle(price_of(asset_used, stable_used), now_ms)
        else:
            self.observe(now_ms)
        self.asset_reserve += asset_used
        self.stable_reserve += stable_used
        self.lp_supply += total
        self.lp_holders[provider] = self.lp_holders.get(provider, 0) + lp
        self._debug_reserves_change("add_liquidity", before, lp)
        return lp, asset_in - asset_used, stable_in - stable_used

    def remove_liquidity(self, lp_in: int, min_asset_out: int, min_stable_out: int, now_ms: int,
                         provider: str = TREASURY) -> Tuple[int, int]:
        self._check_liquidity_change_allowed()
        require_positive(lp_in, "lp_in")
        held = self.lp_holders.get(provider, 0)
        if lp_in > held:
            raise InvariantViolation(f"{provider} holds {held} LP, not {lp_in}", reason="insufficient_lp")
        asset_out = self.asset_reserve * lp_in // self.lp_supply
        stable_out = self.stable_reserve * lp_in // self.lp_supply
        if asset_out <= 0 or stable_out <= 0:
            raise ZeroAmountError("withdrawal rounds to zero", reason="zero_output")
        require_min_out(asset_out, min_asset_out)
        require_min_out(stable_out, min_stable_out)

        asset_after = self.asset_reserve - asset_out
        stable_after = self.stable_reserve - stable_out
        if asset_after * stable_after < self.minimum_liquidity:
            raise MinimumLiquidityError(
                f"remaining reserve product {asset_after * stable_after} below floor {self.minimum_liquidity}"
            )
        self._check_projected_floor(asset_after, stable_after)

        before = self.reserves()
        self.observe(now_ms)
        self.asset_reserve = asset_after
        self.stable_reserve = stable_after
        self.lp_supply -= lp_in
        self.lp_holders[provider] = held - lp_in
        self._debug_reserves_change("remove_liquidity", before, lp_in)
        return asset_out, stable_out

    # -----------------------------
    # Swaps
    # -----------------------------
    def swap(self, token_in: TokenSide, amount_in: int, min_out: int, now_ms: int) -> int:
        require_positive(amount_in, "amount_in")
        require_u64(amount_in, "amount_in")
        reserve_in, reserve_out = self._sides(token_in)
        if reserve_in == 0 or reserve_out == 0:
            raise InvariantViolation(f"pool {self.pool_id} has no liquidity", reason="empty_pool")

        fees = self.fees.compute(amount_in, now_ms, route_protocol=self._routes_protocol_fees())
        in_after_fee = amount_in - fees.total_fee
        amount_out = amount_out_after_fee(reserve_in, reserve_out, in_after_fee)
        check_swap_output(amount_out, reserve_out, min_out)
        if reserve_in + in_after_fee + fees.lp_fee > U64_MAX:
            raise InvariantViolation("reserve would overflow u64", reason="u64_overflow")

        asset_after, stable_after = self._reserves_after_swap(token_in, in_after_fee + fees.lp_fee, amount_out)
        if asset_after * stable_after < self.k():
            raise InvariantViolation("constant product would decrease", reason="k_decreased")

        before = self.reserves()
        self.observe(now_ms)
        self.asset_reserve = asset_after
        self.stable_reserve = stable_after
        self.protocol_fees[token_in] += fees.protocol_fee
        self._debug_reserves_change(f"swap_{token_in}_in", before, amount_in)
        return amount_out

    def _reserves_after_swap(self, token_in: TokenSide, credited_in: int, amount_out: int) -> Tuple[int, int]:
        if token_in == "asset":
            return self.asset_reserve + credited_in, self.stable_reserve - amount_out
        return self.asset_reserve - amount_out, self.stable_reserve + credited_in

    def drain(self) -> Tuple[int, int]:
        """Empty the pool entirely, locked LP included. Terminal for the pool."""
        asset_out, stable_out = self.asset_reserve, self.stable_reserve
        self.asset_reserve = 0
        self.stable_reserve = 0
        self.lp_supply = 0
        self.locked_lp = 0
        self.lp_holders = {}
        return asset_out, stable_out
