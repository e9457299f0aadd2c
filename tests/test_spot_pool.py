import pytest

from futarchy_sim.amm import TREASURY
from futarchy_sim.config import MarketConfig, TwapConfig
from futarchy_sim.core import PoolCapability, check_swap_output
from futarchy_sim.errors import (
    CooldownError, InsufficientLiquidity, InvariantViolation, MinimumLiquidityError, PermissionDenied,
    ProposalActiveError, SlippageError, StatePreconditionError, ZeroAmountError,
)
from futarchy_sim.fees import FeeSchedule
from futarchy_sim.spot import Idle, ProposalActive, SpotPool


def test_initial_liquidity_locks_minimum(spot):
    assert spot.lp_supply == 1_224_744
    assert spot.locked_lp == 1_000
    assert spot.price() == 1_500_000_000_000
    assert spot.oracle is not None


def test_initial_liquidity_must_exceed_minimum(market_cfg):
    pool = SpotPool("tiny", market_cfg)
    with pytest.raises(MinimumLiquidityError):
        pool.add_liquidity(10, 10, 0, 0)
    assert pool.is_empty()


def test_swap_charges_fee_and_keeps_k(spot):
    k_before = spot.k()
    quoted = spot.quote("asset", 10_000, 1_000)
    out = spot.swap_asset_for_stable(10_000, 0, 1_000)
    assert out == quoted == 14_807
    assert spot.asset_reserve == 1_009_994
    assert spot.stable_reserve == 1_500_000 - 14_807
    assert spot.protocol_fees["asset"] == 6
    assert spot.k() >= k_before


def test_failed_swap_leaves_pool_untouched(spot):
    before = (spot.reserves(), spot.lp_supply, spot.oracle.cumulative)
    with pytest.raises(SlippageError) as exc:
        spot.swap("stable", 10_000, 10 ** 9, 1_000)
    assert exc.value.reason == "slippage"
    assert (spot.reserves(), spot.lp_supply, spot.oracle.cumulative) == before
    with pytest.raises(ZeroAmountError):
        spot.swap("stable", 0, 0, 1_000)


def test_remove_liquidity_respects_locked_lp(spot):
    with pytest.raises(InvariantViolation) as exc:
        spot.remove_liquidity(spot.lp_supply, 0, 0, 1_000)
    assert exc.value.reason == "insufficient_lp"

    asset_out, stable_out = spot.remove_liquidity(100_000, 0, 0, 1_000)
    assert asset_out > 0 and stable_out > 0
    assert spot.reserves() == (1_000_000 - asset_out, 1_500_000 - stable_out)
    assert spot.lp_supply == 1_124_744


def test_liquidity_is_locked_during_a_proposal_but_swaps_are_not(spot):
    spot.mark_liquidity_to_proposal(spot.capability, "p1", 2, 1_000)
    assert isinstance(spot.state, ProposalActive)
    with pytest.raises(ProposalActiveError):
        spot.add_liquidity(1_000, 1_500, 0, 2_000)
    with pytest.raises(ProposalActiveError):
        spot.remove_liquidity(1_000, 0, 0, 2_000)
    assert spot.swap("asset", 1_000, 0, 2_000) > 0


def test_privileged_calls_need_the_pool_capability(spot):
    with pytest.raises(PermissionDenied):
        spot.mark_liquidity_to_proposal(PoolCapability("spot"), "p1", 2, 1_000)
    with pytest.raises(PermissionDenied):
        spot.collect_protocol_fees(None)


def test_proposal_cooldown(spot, market_cfg):
    cap = spot.capability
    spot.mark_liquidity_to_proposal(cap, "p1", 2, 1_000)
    asset, stable = spot.split_reserves_for_proposal(cap)
    assert (asset, stable) == (500_000, 750_000)
    spot.recombine_from_proposal(cap, asset, stable, 2_000)
    assert isinstance(spot.state, Idle)
    assert spot.reserves() == (1_000_000, 1_500_000)

    with pytest.raises(CooldownError):
        spot.mark_liquidity_to_proposal(cap, "p2", 2, 2_001)
    spot.mark_liquidity_to_proposal(cap, "p2", 2, 2_000 + market_cfg.proposal_gap_ms)
    assert spot.active_proposal.proposal_id == "p2"


def test_outcome_count_is_bounded(spot):
    with pytest.raises(InvariantViolation):
        spot.mark_liquidity_to_proposal(spot.capability, "p1", 1, 1_000)
    with pytest.raises(InvariantViolation):
        spot.mark_liquidity_to_proposal(spot.capability, "p1", 51, 1_000)


def test_aggregator_disabled_pool_cannot_host_proposals():
    pool = SpotPool("plain", MarketConfig(aggregator_enabled=False))
    pool.add_liquidity(1_000_000, 1_000_000, 0, 0)
    assert pool.oracle is None
    with pytest.raises(StatePreconditionError) as exc:
        pool.mark_liquidity_to_proposal(pool.capability, "p1", 2, 1_000)
    assert exc.value.reason == "aggregator_disabled"
    pool.swap("asset", 10_000, 0, 1_000)
    assert pool.protocol_fees["asset"] == 0


def test_launch_fee_schedule(market_cfg):
    pool = SpotPool("launch", market_cfg, fee_schedule=FeeSchedule(9_000, 86_400_000), activation_ms=0)
    assert pool.current_fee_bps(0) == 9_000
    assert pool.current_fee_bps(86_400_000) == market_cfg.fee_bps


def test_governance_parameters(spot):
    cap = spot.capability
    spot.update_params(cap, fee_bps=50, protocol_fee_share_bps=1_000, conditional_liquidity_ratio_percent=20)
    assert spot.fees.fee_bps == 50
    assert spot.fees.protocol_share_bps == 1_000
    assert spot.aggregator.conditional_liquidity_ratio_percent == 20
    with pytest.raises(InvariantViolation):
        spot.update_params(cap, conditional_liquidity_ratio_percent=100)

    spot.mark_liquidity_to_proposal(cap, "p1", 2, 1_000)
    with pytest.raises(ProposalActiveError):
        spot.update_params(cap, conditional_liquidity_ratio_percent=30)


def test_collect_protocol_fees_resets_accumulator(spot):
    spot.swap("asset", 10_000, 0, 1_000)
    assert spot.collect_protocol_fees(spot.capability) == (6, 0)
    assert spot.protocol_fees == {"asset": 0, "stable": 0}


def test_proportional_deposit_returns_excess(spot):
    lp, asset_change, stable_change = spot.add_liquidity(100_000, 200_000, 0, 1_000)
    assert lp == 122_474
    assert (asset_change, stable_change) == (0, 50_000)
    assert spot.reserves() == (1_100_000, 1_650_000)
    with pytest.raises(SlippageError):
        spot.add_liquidity(100_000, 150_000, 10 ** 9, 1_000)


def test_removal_below_projected_floor_fails_without_mutation():
    pool = SpotPool("thin", MarketConfig(conditional_liquidity_ratio_percent=99))
    pool.add_liquidity(1_100, 1_100, 0, 0)
    before = (pool.reserves(), pool.lp_supply)
    with pytest.raises(MinimumLiquidityError) as exc:
        pool.remove_liquidity(100, 0, 0, 1_000)
    assert exc.value.reason == "below_projected_minimum_liquidity"
    assert (pool.reserves(), pool.lp_supply) == before


def test_output_that_would_drain_the_reserve_is_rejected():
    with pytest.raises(InsufficientLiquidity):
        check_swap_output(1_000, 1_000, 0)
    with pytest.raises(ZeroAmountError):
        check_swap_output(0, 1_000, 0)


@pytest.mark.parametrize("token_in", ["asset", "stable"])
@pytest.mark.parametrize("amount_in", [10, 1_000, 100_000, 900_000])
def test_k_never_decreases_across_trade_sizes(spot, token_in, amount_in):
    k_before = spot.k()
    spot.swap(token_in, amount_in, 0, 1_000)
    assert spot.k() >= k_before


@pytest.mark.parametrize("asset_in", [1_000, 50_000, 333_333, 2_000_000])
def test_deposit_mints_lp_in_proportion_to_reserves(spot, asset_in):
    supply, asset_reserve = spot.lp_supply, spot.asset_reserve
    held = spot.lp_holders[TREASURY]
    lp, asset_change, stable_change = spot.add_liquidity(asset_in, asset_in * 2, 0, 1_000)
    assert asset_change == 0
    assert lp == asset_in * supply // asset_reserve
    assert stable_change == asset_in * 2 - (spot.stable_reserve - 1_500_000)
    assert spot.lp_holders[TREASURY] == held + lp


def test_only_lp_holders_can_withdraw(spot):
    lp, _, _ = spot.add_liquidity(10_000, 15_000, 0, 1_000, provider="bob")
    with pytest.raises(InvariantViolation) as exc:
        spot.remove_liquidity(lp + 1, 0, 0, 1_000, provider="bob")
    assert exc.value.reason == "insufficient_lp"
    with pytest.raises(InvariantViolation):
        spot.remove_liquidity(1, 0, 0, 1_000, provider="mallory")
    spot.remove_liquidity(lp, 0, 0, 1_000, provider="bob")
    assert spot.lp_holders["bob"] == 0


def test_proposals_wait_for_a_full_oracle_window(spot):
    with pytest.raises(StatePreconditionError) as exc:
        spot.mark_liquidity_to_proposal(spot.capability, "p1", 2, 999)
    assert exc.value.reason == "oracle_not_ready"
    assert isinstance(spot.state, Idle)


def test_proposal_is_marked_at_the_long_twap(spot):
    spot.swap("stable", 500_000, 0, 1_000)
    assert spot.price() > 2 * 10 ** 12
    ctx = spot.mark_liquidity_to_proposal(spot.capability, "p1", 2, 1_000)
    assert ctx.init_price == 1_500_000_000_000


def test_proposal_twap_reads_from_the_mark_snapshot(spot):
    spot.mark_liquidity_to_proposal(spot.capability, "p1", 2, 1_000)
    assert spot.proposal_twap(1_000) == 1_500_000_000_000
    spot.swap("stable", 100_000, 0, 1_500)
    moved = spot.price()
    assert spot.proposal_twap(2_000) == (1_500_000_000_000 * 500 + moved * 500) // 1_000


def test_twap_config_updates(spot):
    cap = spot.capability
    cfg = spot.update_twap_config(cap, start_delay_ms=500, threshold=7)
    assert cfg == TwapConfig(start_delay_ms=500, threshold=7)
    assert spot.update_twap_config(cap, step_max=10).start_delay_ms == 500
    with pytest.raises(InvariantViolation) as exc:
        spot.update_twap_config(cap, initial_observation=0)
    assert exc.value.reason == "bad_twap_config"
    assert spot.twap_config.initial_observation is None
    with pytest.raises(PermissionDenied):
        spot.update_twap_config(PoolCapability("spot"), threshold=1)
