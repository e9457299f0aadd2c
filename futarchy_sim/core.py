from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Tuple, Optional, Literal, List
from collections import deque
import logging
import math

from .config import FEE_SCALE, U64_MAX
from .errors import (
    InvariantViolation, ZeroAmountError, InsufficientLiquidity, MinimumLiquidityError,
    PermissionDenied, SlippageError,
)
from .fees import FeeBreakdown

logger = logging.getLogger(__name__)

TokenSide = Literal["asset", "stable"]


def format_reserves(asset_reserve: int, stable_reserve: int) -> str:
    return f"asset:{asset_reserve} stable:{stable_reserve}"


# -----------------------------
# Events
# -----------------------------
@dataclass
class Event:
    timestamp_ms: int
    event_type: str
    actor_id: Optional[str] = None
    pool_id: Optional[str] = None
    outcome: Optional[int] = None
    amount: Optional[int] = None
    meta: dict = field(default_factory=dict)

class EventLog:
    def __init__(self, maxlen: Optional[int] = None) -> None:
        self.events = deque(maxlen=maxlen)

    def add(self, e: Event) -> None:
        self.events.append(e)

    def tail(self, n: int = 200) -> List[Event]:
        if n <= 0:
            return []
        if n >= len(self.events):
            return list(self.events)
        return list(self.events)[-n:]

    def count(self, event_type: str) -> int:
        return sum(1 for e in self.events if e.event_type == event_type)


# -----------------------------
# Capability
# -----------------------------
class PoolCapability:
    """Privilege token minted with a pool; privileged calls must present it."""
    def __init__(self, pool_id: str) -> None:
        self.pool_id = pool_id

    def __deepcopy__(self, memo: dict) -> "PoolCapability":
        # identity is the permission; snapshots must keep pointing at the same token
        return self


def require_capability(cap: Optional[PoolCapability], expected: PoolCapability) -> None:
    if cap is None or cap is not expected:
        raise PermissionDenied(f"capability does not grant access to {expected.pool_id}")


# -----------------------------
# Amount checks
# -----------------------------
def require_positive(amount: int, what: str = "amount") -> None:
    if amount <= 0:
        raise ZeroAmountError(f"{what} must be positive, got {amount}")


def require_u64(amount: int, what: str = "amount") -> None:
    if amount < 0 or amount > U64_MAX:
        raise InvariantViolation(f"{what} out of u64 range: {amount}", reason="u64_overflow")


def require_min_out(amount_out: int, min_out: int) -> None:
    if amount_out < min_out:
        raise SlippageError(expected_min=min_out, actual=amount_out)


# -----------------------------
# Constant-product math
# -----------------------------
def amount_out_after_fee(reserve_in: int, reserve_out: int, in_after_fee: int) -> int:
    """out = reserve_out * in / (reserve_in + in)"""
    if in_after_fee <= 0 or reserve_in <= 0 or reserve_out <= 0:
        return 0
    return reserve_out * in_after_fee // (reserve_in + in_after_fee)


def quote_out(reserve_in: int, reserve_out: int, amount_in: int, fee_bps: int) -> int:
    in_after_fee = amount_in - amount_in * fee_bps // FEE_SCALE
    return amount_out_after_fee(reserve_in, reserve_out, in_after_fee)


def quote_in(reserve_in: int, reserve_out: int, amount_out: int, fee_bps: int) -> Optional[int]:
    """
    Smallest gross input that buys at least `amount_out`, fee included.
    None when the pool cannot pay `amount_out`.
    """
    if amount_out <= 0:
        return 0
    if amount_out >= reserve_out or reserve_in <= 0:
        return None
    net = reserve_in * amount_out // (reserve_out - amount_out) + 1
    gross = (net * FEE_SCALE + (FEE_SCALE - fee_bps) - 1) // (FEE_SCALE - fee_bps)
    # floor fee rounding can leave a unit more than needed; walk back while still sufficient
    while gross > 1 and quote_out(reserve_in, reserve_out, gross - 1, fee_bps) >= amount_out:
        gross -= 1
    return gross


def initial_lp(asset_in: int, stable_in: int, minimum_liquidity: int) -> Tuple[int, int]:
    """(lp to provider, total supply minted) for a deposit into an empty pool."""
    total = math.isqrt(asset_in * stable_in)
    if total <= minimum_liquidity:
        raise MinimumLiquidityError(f"initial liquidity {total} must exceed locked minimum {minimum_liquidity}")
    return total - minimum_liquidity, total


def proportional_deposit(asset_in: int, stable_in: int, asset_reserve: int, stable_reserve: int,
                         lp_supply: int) -> Tuple[int, int, int]:
    """
    (lp, asset_used, stable_used) for a deposit into a live pool. The limiting
    side is consumed fully; the other side is taken at the pool ratio, rounded
    in the pool's favour, and the remainder stays with the caller.
    """
    if asset_in * stable_reserve <= stable_in * asset_reserve:
        lp = asset_in * lp_supply // asset_reserve
        stable_used = min(stable_in, -(-asset_in * stable_reserve // asset_reserve))
        return lp, asset_in, stable_used
    lp = stable_in * lp_supply // stable_reserve
    asset_used = min(asset_in, -(-stable_in * asset_reserve // stable_reserve))
    return lp, asset_used, stable_in


def check_swap_output(amount_out: int, reserve_out: int, min_out: int) -> None:
    if amount_out >= reserve_out:
        raise InsufficientLiquidity(f"output {amount_out} would drain reserve {reserve_out}")
    if amount_out <= 0:
        raise ZeroAmountError("swap output rounds to zero", reason="zero_output")
    require_min_out(amount_out, min_out)


# -----------------------------
# Receipts
# -----------------------------
@dataclass
class SwapReceipt:
    timestamp_ms: int
    pool_id: str
    actor: str
    token_in: TokenSide
    amount_in: int
    token_out: TokenSide
    amount_out: int
    fees: FeeBreakdown
    status: Literal["executed", "failed"]
    fail_reason: Optional[str] = None
    arbitrage_profit: int = 0
    meta: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "timestamp_ms": self.timestamp_ms,
            "pool_id": self.pool_id,
            "actor": self.actor,
            "token_in": self.token_in,
            "amount_in": int(self.amount_in),
            "token_out": self.token_out,
            "amount_out": int(self.amount_out),
            "fees": self.fees.to_dict(),
            "status": self.status,
            "fail_reason": self.fail_reason,
            "arbitrage_profit": int(self.arbitrage_profit),
        }

class ReceiptStore:
    def __init__(self, maxlen: Optional[int] = None) -> None:
        self.receipts: deque[SwapReceipt] = deque(maxlen=maxlen)

    def add(self, r: SwapReceipt) -> None:
        self.receipts.append(r)

    def tail(self, n: int = 200) -> List[SwapReceipt]:
        return list(self.receipts)[-n:]

    def failures(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for r in self.receipts:
            if r.status == "failed":
                key = r.fail_reason or "unknown"
                counts[key] = counts.get(key, 0) + 1
        return counts
