from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable


@runtime_checkable
class ProposalView(Protocol):
    """Read-only view of a proposal owned by the governance lifecycle."""
    proposal_id: str

    def is_finalized(self) -> bool: ...

    def winning_outcome(self) -> Optional[int]: ...

    def outcome_count(self) -> int: ...

    def uses_dao_liquidity(self) -> bool: ...


@dataclass
class StaticProposal:
    proposal_id: str
    outcomes: int = 2
    dao_liquidity: bool = True
    finalized: bool = False
    winner: Optional[int] = None

    def is_finalized(self) -> bool:
        return self.finalized

    def winning_outcome(self) -> Optional[int]:
        return self.winner if self.finalized else None

    def outcome_count(self) -> int:
        return self.outcomes

    def uses_dao_liquidity(self) -> bool:
        return self.dao_liquidity

    def finalize(self, winner: int) -> None:
        if not 0 <= winner < self.outcomes:
            raise ValueError(f"winner {winner} out of range for {self.outcomes} outcomes")
        self.finalized = True
        self.winner = winner
