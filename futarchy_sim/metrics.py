from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Any, List
import pandas as pd

@dataclass
class MetricsStore:
    network_rows: List[Dict[str, Any]] = field(default_factory=list)
    pool_rows: List[Dict[str, Any]] = field(default_factory=list)
    proposal_rows: List[Dict[str, Any]] = field(default_factory=list)

    def add_network(self, row: Dict[str, Any]) -> None:
        self.network_rows.append(row)

    def add_pool_rows(self, rows: List[Dict[str, Any]]) -> None:
        self.pool_rows.extend(rows)

    def add_proposal(self, row: Dict[str, Any]) -> None:
        self.proposal_rows.append(row)

    def network_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.network_rows)

    def pool_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.pool_rows)

    def proposal_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.proposal_rows)

    def price_spread_df(self) -> pd.DataFrame:
        """Per tick, the spot price against the lowest and highest outcome price while a proposal trades."""
        pools = self.pool_df()
        if pools.empty or "kind" not in pools:
            return pd.DataFrame(columns=["tick", "spot_price", "min_conditional_price", "max_conditional_price"])
        spot = pools[pools["kind"] == "spot"].set_index("tick")["price"].rename("spot_price")
        cond = pools[pools["kind"] == "conditional"].groupby("tick")["price"]
        out = pd.concat(
            [spot, cond.min().rename("min_conditional_price"), cond.max().rename("max_conditional_price")],
            axis=1,
            join="inner",
        )
        out["spread_bps"] = (
            (out["spot_price"] - out["min_conditional_price"]).abs() * 10_000 / out["min_conditional_price"]
        )
        return out.reset_index()
