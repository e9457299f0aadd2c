from futarchy_sim.arbitrage import (
    ArbitrageSolver, Direction, NO_ARBITRAGE, PoolSnapshot, _dominates_cost, conditional_to_spot_legs,
    prune_outcomes, spot_to_conditional_legs,
)

FLAT = PoolSnapshot(10_000, 10_000, 30)


def test_overpriced_spot_sells_on_spot():
    spot = PoolSnapshot(10_000, 15_000, 30)
    quote = ArbitrageSolver().solve(spot, [FLAT, FLAT], hint=100)
    assert quote.direction is Direction.CONDITIONAL_TO_SPOT
    assert quote.amount > 0
    costs, proceeds = conditional_to_spot_legs(spot, [FLAT, FLAT], quote.amount, [0, 1])
    assert quote.profit == proceeds - max(costs) > 0


def test_underpriced_spot_buys_on_spot():
    spot = PoolSnapshot(15_000, 10_000, 30)
    quote = ArbitrageSolver().solve(spot, [FLAT, FLAT])
    assert quote.direction is Direction.SPOT_TO_CONDITIONAL
    cost, proceeds = spot_to_conditional_legs(spot, [FLAT, FLAT], quote.amount, [0, 1])
    assert quote.profit == min(proceeds) - cost > 0


def test_aligned_prices_have_no_arbitrage():
    assert ArbitrageSolver().solve(FLAT, [FLAT, FLAT, FLAT]) == NO_ARBITRAGE


def test_profit_threshold_suppresses_small_trades():
    spot = PoolSnapshot(10_000, 15_000, 30)
    best = ArbitrageSolver().solve(spot, [FLAT, FLAT])
    assert ArbitrageSolver(min_profit=best.profit + 1).solve(spot, [FLAT, FLAT]) == NO_ARBITRAGE
    assert ArbitrageSolver().solve(spot, [FLAT, FLAT], min_profit=best.profit + 1) == NO_ARBITRAGE


def test_one_cheap_outcome_is_not_enough():
    # spot is only above one of the outcome prices, so the complete set costs more than spot pays
    spot = PoolSnapshot(10_000, 12_000, 30)
    assert ArbitrageSolver().solve(spot, [FLAT, PoolSnapshot(10_000, 15_000, 30)]) == NO_ARBITRAGE


def test_empty_pools_are_never_quoted():
    assert ArbitrageSolver().solve(PoolSnapshot(0, 0, 30), [FLAT, FLAT]) == NO_ARBITRAGE
    assert ArbitrageSolver().solve(FLAT, [FLAT, PoolSnapshot(0, 0, 30)]) == NO_ARBITRAGE


def test_pruning_keeps_the_binding_outcome():
    cheap = PoolSnapshot(10_000, 10_000, 30)
    dear = PoolSnapshot(10_000, 12_000, 30)
    assert prune_outcomes([cheap, dear, cheap], _dominates_cost) == [1]


def test_hint_does_not_change_the_answer_much():
    spot = PoolSnapshot(10_000, 15_000, 30)
    solver = ArbitrageSolver()
    cold = solver.solve(spot, [FLAT, FLAT])
    warm = solver.solve(spot, [FLAT, FLAT], hint=1_000)
    assert cold.is_profitable and warm.is_profitable
    assert abs(cold.profit - warm.profit) <= max(3, cold.profit // 100)
