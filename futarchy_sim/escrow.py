from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Optional, Tuple
import logging

from .core import TokenSide, require_positive, require_u64
from .errors import InvariantViolation, StatePreconditionError

logger = logging.getLogger(__name__)


# -----------------------------
# Conditional balances
# -----------------------------
@dataclass
class ConditionalBalance:
    """Per-outcome conditional units and outcome-pool LP held by one party (a trader, the DAO, an arbitrage leg)."""
    market_id: str
    outcome_count: int
    asset: List[int] = field(default_factory=list)
    stable: List[int] = field(default_factory=list)
    lp: List[int] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.asset:
            self.asset = [0] * self.outcome_count
        if not self.stable:
            self.stable = [0] * self.outcome_count
        if not self.lp:
            self.lp = [0] * self.outcome_count
        if any(len(v) != self.outcome_count for v in (self.asset, self.stable, self.lp)):
            raise InvariantViolation("balance vectors must have one entry per outcome", reason="bad_outcome_count")

    def _vec(self, side: TokenSide) -> List[int]:
        if side == "asset":
            return self.asset
        if side == "stable":
            return self.stable
        raise ValueError(f"unknown token side: {side}")

    def get(self, outcome: int, side: TokenSide) -> int:
        return self._vec(side)[outcome]

    def credit(self, outcome: int, side: TokenSide, amount: int) -> None:
        if amount < 0:
            raise InvariantViolation("negative credit", reason="negative_amount")
        self._vec(side)[outcome] += amount

    def debit(self, outcome: int, side: TokenSide, amount: int) -> None:
        vec = self._vec(side)
        if amount < 0:
            raise InvariantViolation("negative debit", reason="negative_amount")
        if vec[outcome] < amount:
            raise InvariantViolation(
                f"outcome {outcome} {side} balance {vec[outcome]} below {amount}", reason="insufficient_balance"
            )
        vec[outcome] -= amount

    def credit_lp(self, outcome: int, amount: int) -> None:
        if amount < 0:
            raise InvariantViolation("negative lp credit", reason="negative_amount")
        self.lp[outcome] += amount

    def debit_lp(self, outcome: int, amount: int) -> None:
        if amount <= 0 or self.lp[outcome] < amount:
            raise InvariantViolation(
                f"outcome {outcome} lp balance {self.lp[outcome]} below {amount}", reason="insufficient_lp"
            )
        self.lp[outcome] -= amount

    def complete_set_size(self, side: TokenSide) -> int:
        vec = self._vec(side)
        return min(vec) if vec else 0

    def is_empty(self) -> bool:
        return not any(self.asset) and not any(self.stable) and not any(self.lp)

    def merge(self, other: "ConditionalBalance") -> "ConditionalBalance":
        """Fold `other` into this balance and empty it."""
        if other.market_id != self.market_id or other.outcome_count != self.outcome_count:
            raise StatePreconditionError(
                f"cannot merge balances of {other.market_id} into {self.market_id}", reason="market_mismatch"
            )
        for i in range(self.outcome_count):
            self.asset[i] += other.asset[i]
            self.stable[i] += other.stable[i]
            self.lp[i] += other.lp[i]
            other.asset[i] = 0
            other.stable[i] = 0
            other.lp[i] = 0
        return self

    def to_dict(self) -> dict:
        return {
            "market_id": self.market_id,
            "asset": list(self.asset),
            "stable": list(self.stable),
            "lp": list(self.lp),
        }


# -----------------------------
# Escrow
# -----------------------------
class ConditionalTokenLedger:
    """
    Escrow of spot tokens backing one market's conditional tokens.

    Deposits are quantum splits: `x` spot units mint `x` units of every
    outcome at once, so each outcome's supply can never exceed the spot held.
    Complete sets burn back to spot 1:1 while trading; once resolved only the
    winning outcome is redeemable and losing units are worthless.
    """
    def __init__(self, market_id: str, outcome_count: int) -> None:
        if outcome_count < 2:
            raise InvariantViolation("a market needs at least two outcomes", reason="bad_outcome_count")
        self.market_id = market_id
        self.outcome_count = outcome_count
        self.spot_held = {"asset": 0, "stable": 0}
        self.supply = {"asset": [0] * outcome_count, "stable": [0] * outcome_count}
        self.winning_outcome: Optional[int] = None

    @property
    def is_resolved(self) -> bool:
        return self.winning_outcome is not None

    def new_balance(self) -> ConditionalBalance:
        return ConditionalBalance(market_id=self.market_id, outcome_count=self.outcome_count)

    def _check_balance(self, balance: ConditionalBalance) -> None:
        if balance.market_id != self.market_id or balance.outcome_count != self.outcome_count:
            raise StatePreconditionError(
                f"balance belongs to {balance.market_id}, not {self.market_id}", reason="market_mismatch"
            )

    def _require_trading(self) -> None:
        if self.is_resolved:
            raise StatePreconditionError(f"market {self.market_id} is resolved", reason="market_resolved")

    def _require_resolved(self) -> int:
        if self.winning_outcome is None:
            raise StatePreconditionError(f"market {self.market_id} is not resolved", reason="market_not_resolved")
        return self.winning_outcome

    def check_invariants(self) -> None:
        for side in ("asset", "stable"):
            outcomes = range(self.outcome_count) if not self.is_resolved else [self.winning_outcome]
            for i in outcomes:
                if self.supply[side][i] > self.spot_held[side]:
                    raise InvariantViolation(
                        f"outcome {i} {side} supply {self.supply[side][i]} exceeds escrow {self.spot_held[side]}",
                        reason="unbacked_supply",
                    )

    # -----------------------------
    # Quantum split / complete sets
    # -----------------------------
    def deposit(self, balance: ConditionalBalance, side: TokenSide, amount: int) -> None:
        """Escrow `amount` spot units and mint a complete set of that size into `balance`."""
        self._check_balance(balance)
        self._require_trading()
        require_positive(amount, "deposit")
        require_u64(self.spot_held[side] + amount, "escrow balance")
        self.spot_held[side] += amount
        for i in range(self.outcome_count):
            self.supply[side][i] += amount
            balance.credit(i, side, amount)

    def burn_complete_set(self, balance: ConditionalBalance, side: TokenSide, amount: int) -> int:
        """Burn `amount` of every outcome from `balance`; returns the spot units released."""
        self._check_balance(balance)
        self._require_trading()
        require_positive(amount, "burn")
        if balance.complete_set_size(side) < amount:
            raise InvariantViolation(
                f"complete set of {amount} {side} not held (have {balance.complete_set_size(side)})",
                reason="incomplete_set",
            )
        for i in range(self.outcome_count):
            if self.supply[side][i] < amount:
                raise InvariantViolation(f"burn exceeds outcome {i} supply", reason="burn_exceeds_supply")
        for i in range(self.outcome_count):
            balance.debit(i, side, amount)
            self.supply[side][i] -= amount
        self.spot_held[side] -= amount
        return amount

    # -----------------------------
    # Resolution
    # -----------------------------
    def resolve(self, winning_outcome: int) -> None:
        self._require_trading()
        if not 0 <= winning_outcome < self.outcome_count:
            raise InvariantViolation(f"winning outcome {winning_outcome} out of range", reason="bad_outcome")
        self.winning_outcome = winning_outcome
        logger.info("market=%s resolved: winner=%d escrow asset=%d stable=%d",
                    self.market_id, winning_outcome, self.spot_held["asset"], self.spot_held["stable"])

    def redeem(self, balance: ConditionalBalance, side: TokenSide, amount: int) -> int:
        """Burn winning-outcome units from `balance` and release the same spot amount."""
        self._check_balance(balance)
        winner = self._require_resolved()
        require_positive(amount, "redeem")
        balance.debit(winner, side, amount)
        return self._burn_winning(side, amount)

    def redeem_all(self, balance: ConditionalBalance) -> Tuple[int, int]:
        winner = self._require_resolved()
        asset = balance.get(winner, "asset")
        stable = balance.get(winner, "stable")
        asset_out = self.redeem(balance, "asset", asset) if asset else 0
        stable_out = self.redeem(balance, "stable", stable) if stable else 0
        return asset_out, stable_out

    def settle_pool_liquidity(self, outcome: int, asset: int, stable: int) -> Tuple[int, int]:
        """
        Burn conditional units drained from an outcome's AMM. Winning units
        release their spot backing; losing units are burned for nothing.
        """
        winner = self._require_resolved()
        if outcome != winner:
            self.supply["asset"][outcome] -= asset
            self.supply["stable"][outcome] -= stable
            if self.supply["asset"][outcome] < 0 or self.supply["stable"][outcome] < 0:
                raise InvariantViolation(f"burn exceeds outcome {outcome} supply", reason="burn_exceeds_supply")
            return 0, 0
        asset_out = self._burn_winning("asset", asset) if asset else 0
        stable_out = self._burn_winning("stable", stable) if stable else 0
        return asset_out, stable_out

    def _burn_winning(self, side: TokenSide, amount: int) -> int:
        winner = self._require_resolved()
        if self.supply[side][winner] < amount:
            raise InvariantViolation("burn exceeds winning supply", reason="burn_exceeds_supply")
        if self.spot_held[side] < amount:
            raise InvariantViolation("escrow cannot cover redemption", reason="unbacked_supply")
        self.supply[side][winner] -= amount
        self.spot_held[side] -= amount
        return amount

    def is_drained(self) -> bool:
        if not self.is_resolved:
            return False
        return self.supply["asset"][self.winning_outcome] == 0 and self.supply["stable"][self.winning_outcome] == 0
