from dataclasses import dataclass, replace

FEE_SCALE = 10_000
PRICE_SCALE = 10 ** 12
U64_MAX = 2 ** 64 - 1
U256_MAX = 2 ** 256 - 1

MAX_SCHEDULE_FEE_BPS = 9_900
MAX_SCHEDULE_DURATION_MS = 86_400_000
MAX_FEE_BPS = 5_000

MIN_CONDITIONAL_RATIO_PERCENT = 1
MAX_CONDITIONAL_RATIO_PERCENT = 99

MIN_OUTCOMES = 2
MAX_OUTCOMES = 50


@dataclass
class MarketConfig:
    # Spot AMM
    fee_bps: int = 30                       # 0.30% steady-state fee
    minimum_liquidity: int = 1_000          # LP permanently locked and reserve-product floor
    protocol_fee_share_bps: int = 2_000     # 20% of fees routed to the protocol accumulator
    aggregator_enabled: bool = True

    # Proposal liquidity fork
    conditional_liquidity_ratio_percent: int = 50
    conditional_fee_bps: int = 30
    proposal_gap_ms: int = 43_200_000       # 12h cool-down between proposals

    # TWAP oracle
    twap_window_ms: int = 3_600_000
    twap_period_ms: int = 3_600_000
    twap_long_periods: int = 90
    twap_history_len: int = 4_096
    twap_start_delay_ms: int = 0            # conditional TWAPs only count from trading start + delay
    twap_step_max: int = 0                  # cap on one observation's move, PRICE_SCALE units; 0 disables
    twap_initial_observation: int | None = None  # first conditional observation; None uses the fork price
    twap_threshold: int = 0                 # signed margin an outcome must clear over outcome 0

    # Auto-arbitrage
    arbitrage_min_profit: int = 1
    arbitrage_hint_multiplier: int = 2
    arbitrage_max_iterations: int = 128
    no_arb_band_bps: int = 1_000            # 10% tolerance between spot and conditional prices

    # Debug
    debug_reserves: bool = False

    def __post_init__(self) -> None:
        if not 0 <= self.fee_bps <= MAX_FEE_BPS:
            raise ValueError(f"fee_bps out of range: {self.fee_bps}")
        if not 0 <= self.conditional_fee_bps <= MAX_FEE_BPS:
            raise ValueError(f"conditional_fee_bps out of range: {self.conditional_fee_bps}")
        if not 0 <= self.protocol_fee_share_bps <= FEE_SCALE:
            raise ValueError(f"protocol_fee_share_bps out of range: {self.protocol_fee_share_bps}")
        if not MIN_CONDITIONAL_RATIO_PERCENT <= self.conditional_liquidity_ratio_percent <= MAX_CONDITIONAL_RATIO_PERCENT:
            raise ValueError(
                f"conditional_liquidity_ratio_percent must be in "
                f"[{MIN_CONDITIONAL_RATIO_PERCENT}, {MAX_CONDITIONAL_RATIO_PERCENT}]"
            )
        if self.minimum_liquidity <= 0:
            raise ValueError("minimum_liquidity must be positive")
        if self.twap_window_ms <= 0 or self.twap_period_ms <= 0:
            raise ValueError("twap windows must be positive")
        if self.arbitrage_hint_multiplier < 1:
            self.arbitrage_hint_multiplier = 1
        if not 0 <= self.no_arb_band_bps <= FEE_SCALE:
            raise ValueError(f"no_arb_band_bps out of range: {self.no_arb_band_bps}")
        TwapConfig.from_market(self)


@dataclass(frozen=True)
class TwapConfig:
    """Governed settings of the conditional TWAPs that decide a proposal."""
    start_delay_ms: int = 0
    step_max: int = 0
    initial_observation: int | None = None
    threshold: int = 0

    def __post_init__(self) -> None:
        if self.start_delay_ms < 0:
            raise ValueError("twap start delay must be non-negative")
        if self.step_max < 0:
            raise ValueError("twap step max must be non-negative")
        if self.initial_observation is not None and self.initial_observation <= 0:
            raise ValueError("twap initial observation must be positive")

    @classmethod
    def from_market(cls, cfg: MarketConfig) -> "TwapConfig":
        return cls(
            start_delay_ms=cfg.twap_start_delay_ms,
            step_max=cfg.twap_step_max,
            initial_observation=cfg.twap_initial_observation,
            threshold=cfg.twap_threshold,
        )

    def updated(self, **changes) -> "TwapConfig":
        """Copy with every non-None change applied."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


@dataclass
class ScenarioConfig:
    # Market bootstrap
    initial_asset_reserve: int = 1_000_000_000
    initial_stable_reserve: int = 1_500_000_000
    launch_fee_bps: int | None = 9_000       # decaying launch fee; None disables the schedule
    launch_fee_duration_ms: int = 86_400_000

    # Time model
    tick_ms: int = 600_000                  # 1 tick = 10 minutes

    # Traders
    traders: int = 20
    p_conditional_trader: float = 0.3      # share of traders that trade outcome pools
    trades_per_tick: int = 4
    trade_size_mean_frac: float = 0.002     # share of the input reserve, exponential
    trade_size_min: int = 1_000
    p_buy_asset: float = 0.5
    trader_min_out_bps: int = 0             # slippage tolerance applied to quotes (0 disables)

    # Proposals
    proposals_enabled: bool = True
    outcome_count: int = 2
    proposal_trading_ticks: int = 36
    proposal_review_ticks: int = 6
    conditional_trades_per_tick: int = 2
    conditional_bias_outcome: int | None = 0  # outcome favoured by conditional traders
    conditional_trade_size_mean_frac: float = 0.004

    # Metrics
    metrics_stride: int = 1
    pool_metrics_stride: int = 1
    event_log_maxlen: int | None = 10_000

    def __post_init__(self) -> None:
        if self.outcome_count < 2:
            raise ValueError("outcome_count must be at least 2")
        if self.tick_ms <= 0:
            raise ValueError("tick_ms must be positive")
        if not 0.0 <= self.p_buy_asset <= 1.0 or not 0.0 <= self.p_conditional_trader <= 1.0:
            raise ValueError("probabilities must be in [0, 1]")
        if self.conditional_bias_outcome is not None and not 0 <= self.conditional_bias_outcome < self.outcome_count:
            self.conditional_bias_outcome = None
