from __future__ import annotations
from typing import Optional


class MarketError(Exception):
    """Base failure of a market operation. `reason` is the short code stored on receipts."""
    reason: str = "market_error"

    def __init__(self, message: str = "", reason: Optional[str] = None) -> None:
        if reason is not None:
            self.reason = reason
        super().__init__(message or self.reason)


# -----------------------------
# (a) invariant violations
# -----------------------------
class InvariantViolation(MarketError):
    reason = "invariant_violation"


class ZeroAmountError(InvariantViolation):
    reason = "zero_amount"


class InsufficientLiquidity(InvariantViolation):
    reason = "insufficient_liquidity"


class MinimumLiquidityError(InvariantViolation):
    reason = "below_minimum_liquidity"


class NoArbitrageBandError(InvariantViolation):
    reason = "no_arb_band_violation"


# -----------------------------
# (b) slippage
# -----------------------------
class SlippageError(MarketError):
    reason = "slippage"

    def __init__(self, message: str = "", *, expected_min: int = 0, actual: int = 0) -> None:
        self.expected_min = expected_min
        self.actual = actual
        super().__init__(message or f"output {actual} below minimum {expected_min}")


# -----------------------------
# (c) state preconditions
# -----------------------------
class StatePreconditionError(MarketError):
    reason = "state_precondition"


class ProposalActiveError(StatePreconditionError):
    reason = "proposal_active"


class NoActiveProposalError(StatePreconditionError):
    reason = "no_active_proposal"


class CooldownError(StatePreconditionError):
    reason = "proposal_cooldown"


class ActionVersionError(StatePreconditionError):
    reason = "action_version_mismatch"


class PermissionDenied(StatePreconditionError):
    reason = "permission_denied"


# -----------------------------
# (d) arithmetic safety
# -----------------------------
class ArithmeticSafetyError(MarketError):
    reason = "arithmetic_safety"
