import pytest

from futarchy_sim.errors import CooldownError, MinimumLiquidityError, ProposalActiveError, StatePreconditionError
from futarchy_sim.proposal import StaticProposal
from futarchy_sim.quantum import begin_trading, finalize
from futarchy_sim.spot import Idle, SpotPool


def test_begin_trading_forks_the_configured_ratio(spot, make_market):
    _, market = make_market(spot)
    assert spot.is_proposal_active()
    assert spot.reserves() == (500_000, 750_000)
    assert market.escrow.spot_held == {"asset": 500_000, "stable": 750_000}
    # unseeded remainder of each outcome stays with the DAO
    assert market.dao_balance.asset == [250_000, 250_000]
    assert market.dao_balance.stable == [375_000, 375_000]
    market.escrow.check_invariants()


def test_only_one_proposal_at_a_time(spot, make_market):
    make_market(spot)
    with pytest.raises(ProposalActiveError):
        begin_trading(spot, spot.capability, StaticProposal("p2"), 2_000)


def test_failed_fork_leaves_spot_untouched(market_cfg):
    pool = SpotPool("small", market_cfg)
    pool.add_liquidity(2_000, 2_000, 0, 0)
    with pytest.raises(MinimumLiquidityError):
        begin_trading(pool, pool.capability, StaticProposal("p1"), 1_000)
    assert isinstance(pool.state, Idle)
    assert pool.reserves() == (2_000, 2_000)


def test_finalize_without_trading_restores_spot(spot, make_market):
    proposal, market = make_market(spot)
    with pytest.raises(StatePreconditionError):
        finalize(spot, spot.capability, market, 2_000)

    proposal.finalize(0)
    returned = finalize(spot, spot.capability, market, 2_000)
    assert returned == (500_000, 750_000)
    assert spot.reserves() == (1_000_000, 1_500_000)
    assert isinstance(spot.state, Idle)
    assert market.escrow.is_drained()
    assert all(pool.closed for pool in market.pools.pools)


def test_losing_trades_stay_in_the_losing_outcome(spot, make_market):
    proposal, market = make_market(spot)
    trader = market.escrow.new_balance()
    market.escrow.deposit(trader, "stable", 50_000)
    market.pools.swap(trader, 1, "stable", 50_000, 0, 2_000)

    proposal.finalize(0)
    asset_back, stable_back = finalize(spot, spot.capability, market, 3_000)
    assert (asset_back, stable_back) == (500_000, 750_000)
    # the trader still holds outcome-0 stable, redeemable 1:1
    assert market.escrow.redeem_all(trader) == (0, 50_000)
    assert market.escrow.spot_held == {"asset": 0, "stable": 0}


def test_next_proposal_waits_for_cooldown(spot, make_market, market_cfg):
    proposal, market = make_market(spot)
    proposal.finalize(1)
    finalize(spot, spot.capability, market, 2_000)
    with pytest.raises(CooldownError):
        begin_trading(spot, spot.capability, StaticProposal("p2"), 3_000)
    nxt = begin_trading(spot, spot.capability, StaticProposal("p2"), 2_000 + market_cfg.proposal_gap_ms)
    assert nxt.market_id == "p2"


def test_fork_is_priced_at_the_spot_twap(spot):
    spot.swap("stable", 500_000, 0, 1_000)
    pumped = spot.price()
    market = begin_trading(spot, spot.capability, StaticProposal("p1"), 1_000)
    for pool in market.pools.pools:
        assert pool.price() == pytest.approx(1_500_000_000_000, rel=1e-5)
    assert spot.price() == pytest.approx(pumped, rel=1e-5)
    # stable the twap price cannot absorb stays with the DAO
    assert market.dao_balance.stable[0] > 0
    market.escrow.check_invariants()


@pytest.mark.parametrize("outcomes", [2, 3, 5])
def test_complete_set_round_trip_over_outcome_counts(spot, outcomes):
    market = begin_trading(spot, spot.capability, StaticProposal("p1", outcomes=outcomes), 1_000)
    trader = market.escrow.new_balance()
    market.escrow.deposit(trader, "stable", 30_000)
    assert trader.stable == [30_000] * outcomes
    assert market.escrow.burn_complete_set(trader, "stable", 30_000) == 30_000
    assert trader.is_empty()
    assert market.escrow.spot_held["stable"] == 750_000
    market.escrow.check_invariants()


def _pushed_market(spot, outcome=1, now_ms=1_500):
    proposal = StaticProposal("p1", outcomes=3)
    market = begin_trading(spot, spot.capability, proposal, 1_000)
    trader = market.escrow.new_balance()
    market.escrow.deposit(trader, "stable", 50_000)
    market.pools.swap(trader, outcome, "stable", 50_000, 0, now_ms)
    return proposal, market


def test_leading_outcome_must_clear_the_threshold(spot):
    spot.update_twap_config(spot.capability, threshold=10 ** 15)
    _, market = _pushed_market(spot)
    twaps = market.decision_twaps(3_000)
    assert twaps[1] > twaps[0]
    assert market.leading_outcome(3_000) == 0

    market.pools.twap = market.pools.twap.updated(threshold=0)
    assert market.leading_outcome(3_000) == 1


def test_decision_twap_starts_after_the_delay(spot):
    spot.update_twap_config(spot.capability, start_delay_ms=1_000)
    _, market = _pushed_market(spot)
    pool = market.pools[1]
    assert market.decision_start_ms() == 2_000
    assert market.decision_twaps(3_000)[1] == pool.price()
    assert pool.twap_since(1_000, 3_000) < pool.price()


def test_conditional_oracles_start_at_the_configured_observation(spot):
    spot.update_twap_config(spot.capability, initial_observation=10 ** 12, step_max=10 ** 9)
    market = begin_trading(spot, spot.capability, StaticProposal("p1"), 1_000)
    for pool in market.pools.pools:
        assert pool.oracle.last_observation == 10 ** 12
        assert pool.oracle.step_max == 10 ** 9
    # one second at a live price far above the start only moves the average one step
    assert market.decision_twaps(2_000) == [10 ** 12 + 10 ** 9] * 2
