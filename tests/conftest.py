import pytest

from futarchy_sim.config import MarketConfig, PRICE_SCALE
from futarchy_sim.proposal import StaticProposal
from futarchy_sim.quantum import begin_trading
from futarchy_sim.router import SwapRouter
from futarchy_sim.spot import SpotPool


@pytest.fixture
def market_cfg():
    return MarketConfig(twap_window_ms=1_000)


@pytest.fixture
def spot(market_cfg):
    pool = SpotPool("spot", market_cfg)
    pool.add_liquidity(1_000_000, 1_500_000, 0, 0)
    return pool


def open_market(spot, proposal_id="p1", outcomes=2, now_ms=1_000):
    proposal = StaticProposal(proposal_id, outcomes=outcomes)
    market = begin_trading(spot, spot.capability, proposal, now_ms)
    return proposal, market


def open_mispriced_market(cfg, now_ms=1_000):
    """Spot at 1.5 stable per asset; two third-party-seeded outcome pools at 1.0."""
    spot = SpotPool("spot", cfg)
    spot.add_liquidity(10_000, 15_000, 0, 0)
    proposal = StaticProposal("p1", outcomes=2, dao_liquidity=False)
    market = begin_trading(spot, spot.capability, proposal, now_ms)
    lp = market.escrow.new_balance()
    market.escrow.deposit(lp, "asset", 10_000)
    market.escrow.deposit(lp, "stable", 10_000)
    market.pools.seed(spot.capability, lp, 10_000, 10_000, PRICE_SCALE, now_ms)
    router = SwapRouter(spot)
    router.attach_market(market)
    return spot, market, router


@pytest.fixture
def mispriced(market_cfg):
    return open_mispriced_market(market_cfg)


@pytest.fixture
def make_market():
    return open_market


@pytest.fixture
def make_mispriced():
    return open_mispriced_market
