import pytest

from futarchy_sim.config import MarketConfig
from futarchy_sim.proposal import StaticProposal
from futarchy_sim.quantum import begin_trading, finalize
from futarchy_sim.spot import SpotPool
from futarchy_sim.errors import InvariantViolation, PermissionDenied, StatePreconditionError
from futarchy_sim.core import PoolCapability
from futarchy_sim.escrow import ConditionalBalance


def test_seeded_pools_mirror_spot_price(spot, make_market):
    _, market = make_market(spot)
    assert len(market.pools) == 2
    for pool in market.pools.pools:
        assert pool.reserves() == (250_000, 375_000)
        assert pool.price() == 1_500_000_000_000
        assert pool.fees.fee_bps == spot.cfg.conditional_fee_bps
    assert market.pools.twaps(1_000) == [1_500_000_000_000, 1_500_000_000_000]


def test_swap_is_mirrored_on_the_balance(spot, make_market):
    _, market = make_market(spot)
    b = market.escrow.new_balance()
    market.escrow.deposit(b, "stable", 10_000)
    out = market.pools.swap(b, 0, "stable", 10_000, 0, 2_000)
    assert out > 0
    assert b.stable == [0, 10_000]
    assert b.asset == [out, 0]
    assert market.pools[0].price() > market.pools[1].price()
    market.escrow.check_invariants()


def test_swap_needs_a_balance_of_this_market(spot, make_market):
    _, market = make_market(spot)
    foreign = ConditionalBalance(market_id="other", outcome_count=2)
    with pytest.raises(StatePreconditionError) as exc:
        market.pools.swap(foreign, 0, "stable", 10, 0, 2_000)
    assert exc.value.reason == "market_mismatch"


def test_third_party_liquidity_is_claimable_after_close(spot, make_market):
    _, market = make_market(spot)
    b = market.escrow.new_balance()
    market.escrow.deposit(b, "asset", 25_000)
    market.escrow.deposit(b, "stable", 37_500)
    lp = market.pools.add_liquidity(b, 0, 25_000, 37_500, 0, 2_000)
    assert lp > 0

    with pytest.raises(StatePreconditionError):
        market.pools.claim_lp(b, 0, lp)
    with pytest.raises(PermissionDenied):
        market.pools.close(PoolCapability("spot"), 0, 3_000, market.dao_balance)

    market.pools.close(spot.capability, 0, 3_000, market.dao_balance)
    asset, stable = market.pools.claim_lp(b, 0, lp)
    assert asset > 0 and stable > 0
    with pytest.raises(StatePreconditionError):
        market.pools.swap(b, 0, "asset", 10, 0, 3_000)


def test_pools_cannot_be_seeded_twice(spot, make_market):
    _, market = make_market(spot)
    with pytest.raises(StatePreconditionError) as exc:
        market.pools.seed(spot.capability, market.dao_balance, 1_000, 1_000, 1, 2_000)
    assert exc.value.reason == "already_seeded"


def test_seed_lp_belongs_to_the_dao_balance(spot, make_market):
    _, market = make_market(spot)
    for pool in market.pools.pools:
        assert market.dao_balance.lp[pool.outcome] == pool.lp_supply - pool.locked_lp


def test_liquidity_can_only_be_removed_by_its_owner(spot, make_market):
    proposal, market = make_market(spot)
    stranger = market.escrow.new_balance()
    seeded = market.dao_balance.lp[0]
    with pytest.raises(InvariantViolation) as exc:
        market.pools.remove_liquidity(stranger, 0, seeded, 0, 0, 2_000)
    assert exc.value.reason == "insufficient_lp"
    assert market.pools[0].reserves() == (250_000, 375_000)
    assert market.dao_balance.lp[0] == seeded

    proposal.finalize(0)
    assert finalize(spot, spot.capability, market, 3_000) == (500_000, 750_000)
    assert market.dao_balance.lp == [0, 0]


@pytest.mark.parametrize("fraction", [1, 2, 5])
def test_owner_withdraws_own_liquidity(spot, make_market, fraction):
    _, market = make_market(spot)
    b = market.escrow.new_balance()
    market.escrow.deposit(b, "asset", 25_000)
    market.escrow.deposit(b, "stable", 37_500)
    lp = market.pools.add_liquidity(b, 0, 25_000, 37_500, 0, 2_000)
    assert b.lp == [lp, 0]
    asset_before, stable_before = b.asset[0], b.stable[0]

    part = lp // fraction
    asset_out, stable_out = market.pools.remove_liquidity(b, 0, part, 0, 0, 2_000)
    assert 0 < asset_out <= 25_000 and 0 < stable_out <= 37_500
    assert b.lp == [lp - part, 0]
    assert (b.asset[0], b.stable[0]) == (asset_before + asset_out, stable_before + stable_out)
    with pytest.raises(InvariantViolation) as exc:
        market.pools.remove_liquidity(b, 0, lp - part + 1, 0, 0, 2_000)
    assert exc.value.reason == "insufficient_lp"
    market.escrow.check_invariants()


def test_deposit_needs_funded_balance(spot, make_market):
    _, market = make_market(spot)
    b = market.escrow.new_balance()
    market.escrow.deposit(b, "asset", 100)
    with pytest.raises(InvariantViolation) as exc:
        market.pools.add_liquidity(b, 0, 100, 150, 0, 2_000)
    assert exc.value.reason == "insufficient_balance"
    assert b.lp == [0, 0]


def test_claims_are_limited_to_held_lp(spot, make_market):
    _, market = make_market(spot)
    b = market.escrow.new_balance()
    market.escrow.deposit(b, "asset", 25_000)
    market.escrow.deposit(b, "stable", 37_500)
    lp = market.pools.add_liquidity(b, 0, 25_000, 37_500, 0, 2_000)
    market.pools.close(spot.capability, 1, 3_000, market.dao_balance)

    stranger = market.escrow.new_balance()
    with pytest.raises(InvariantViolation) as exc:
        market.pools.claim_lp(stranger, 0, lp)
    assert exc.value.reason == "insufficient_lp"
    market.pools.claim_lp(b, 0, lp)
    assert b.lp == [0, 0]
    assert market.pools.lp_claims[0] == (0, 0, 0)


def test_reference_prices_follow_the_step_capped_oracle():
    spot = SpotPool("spot", MarketConfig(twap_window_ms=1_000, twap_step_max=10 ** 9))
    spot.add_liquidity(1_000_000, 1_500_000, 0, 0)
    market = begin_trading(spot, spot.capability, StaticProposal("p1"), 1_000)
    b = market.escrow.new_balance()
    market.escrow.deposit(b, "stable", 100_000)
    market.pools.swap(b, 0, "stable", 100_000, 0, 2_000)

    live = market.pools.prices()
    ref = market.pools.reference_prices()
    assert live[0] > 1_500_000_000_000 + 10 ** 9
    assert ref[0] == 1_500_000_000_000 + 10 ** 9
    assert ref[1] == live[1] == 1_500_000_000_000
