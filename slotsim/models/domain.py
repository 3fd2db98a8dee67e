from __future__ import annotations

"""Pydantic models for the slot session simulator.

Defines the simulation inputs, per-session metrics, aggregate statistics,
trajectory bundle and the top-level result shared between the HTTP surface,
the export/import path and the simulation engine. Everything here is a plain
serializable structure: a result dumped with `model_dump()` and validated back
with `model_validate()` compares equal to the original.
"""

import math
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


SCHEMA_VERSION = "1.0"
MODEL_VERSION = "slot-volatility-v2"

DEFAULT_TARGET_POINTS = 2500.0
DEFAULT_POINTS_PER_DOLLAR = 1 / 5


class Volatility(str, Enum):
    """Payout-shape preset: hit rate, cap and tail heaviness grow with the tier."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class SimulationInputs(BaseModel):
    """Everything a simulation run needs, as entered on the input form.

    `rtp_percent` accepts either a percentage (88) or a fraction (0.88); the
    engine normalizes it. The wagering target is derived from the loyalty
    points goal and the points-per-currency-unit rate when the caller does not
    provide it directly. Validators reject non-finite and non-positive values
    so the engine can trust its inputs.
    """

    rtp_percent: float = 88.0
    volatility: Volatility = Volatility.HIGH
    bet_size: float = 1.5
    deposit_amount: float = 100.0
    target_points: float = DEFAULT_TARGET_POINTS
    points_per_dollar: float = DEFAULT_POINTS_PER_DOLLAR
    coin_in_target: Optional[float] = None
    runs: int = 1000
    seed: Optional[str] = None
    spins_per_sec: float = 0.1
    traj_points: int = 300

    @field_validator(
        "rtp_percent",
        "bet_size",
        "deposit_amount",
        "target_points",
        "points_per_dollar",
        "spins_per_sec",
    )
    @classmethod
    def check_positive(cls, v: float) -> float:
        """Reject NaN, infinities and non-positive amounts up front.

        A zero or negative bet would make the wagering loop meaningless, and a
        non-finite RTP would poison every multiplier in the calibrated table.
        """
        if not math.isfinite(v) or v <= 0:
            raise ValueError("must be a finite positive number")
        return v

    @field_validator("rtp_percent")
    @classmethod
    def check_rtp(cls, v: float) -> float:
        """Cap the target return at 100%.

        Values above 1 are read as percentages, so anything above 100 would
        normalize to a return above 1 and make the game pay out more than it
        takes in. Both 100 and 1.0 are accepted and mean the same thing.
        """
        if v > 100:
            raise ValueError("rtp_percent must not exceed 100")
        return v

    @field_validator("runs", "traj_points")
    @classmethod
    def check_count(cls, v: int) -> int:
        """Session and trajectory-point counts must be at least one.

        A run with no sessions has no distribution to summarize, and a grid
        needs at least one point before it degenerates to its endpoints.
        """
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("coin_in_target")
    @classmethod
    def check_target(cls, v: Optional[float]) -> Optional[float]:
        """Accept an explicit wagering target of zero or more, or nothing.

        Zero is allowed and produces zero-spin sessions; `None` defers to the
        points-based derivation below.
        """
        if v is not None and (not math.isfinite(v) or v < 0):
            raise ValueError("coin_in_target must be a finite non-negative number")
        return v

    @model_validator(mode="after")
    def derive_coin_in_target(self) -> "SimulationInputs":
        """Fill the wagering target from the points goal when it was omitted.

        The form expresses the goal in loyalty points; the engine works in
        currency, so the target is points divided by points-per-unit, rounded
        to cents the same way the form displays it.
        """
        if self.coin_in_target is None:
            self.coin_in_target = round(self.target_points / self.points_per_dollar, 2)
        return self


class RunMetrics(BaseModel):
    """Outcome of one simulated session (1-based `run_index`)."""

    run_index: int
    spins: int
    total_coin_in: float
    total_payout: float
    final_net: float
    max_drawdown: float
    time_estimate_minutes: float
    total_cash_in: float
    ending_balance: float


class FinalNetStats(BaseModel):
    """Distribution of final net results across sessions.

    Percentiles use linear interpolation over the sorted sample, `p_loss_gt`
    maps each loss threshold (as a string key, for JSON friendliness) to the
    share of sessions that lost more than it, and the CVaR fields average the
    worst 5% and 1% of sessions.
    """

    mean: float
    median: float
    stddev: float
    min: float
    max: float
    p01: float
    p05: float
    p10: float
    p25: float
    p50: float
    p75: float
    p90: float
    p95: float
    p99: float
    p_profit: float
    p_loss_gt: Dict[str, float]
    cvar_5: float
    cvar_1: float


class DrawdownStats(BaseModel):
    """Spread of the deepest peak-to-trough net decline per session.

    Drawdowns are non-negative; `p95` shows how bad the bad sessions get
    without being dominated by the single worst one.
    """

    mean: float
    median: float
    p95: float


class CenterStats(BaseModel):
    """Mean and median of a per-session amount such as cash in or ending balance.

    Both are reported because top-ups make these series strongly skewed.
    """

    mean: float
    median: float


class SelectedRuns(BaseModel):
    """Run indices singled out for charting: extremes plus a fixed-step sample."""

    best_run_index: int
    worst_run_index: int
    sample_run_indices: List[int] = Field(default_factory=list)


class AggregateMetrics(BaseModel):
    """Distributional summary of all sessions in a run."""

    final_net: FinalNetStats
    max_drawdown: DrawdownStats
    cash_in: CenterStats
    ending_balance: CenterStats
    selected_runs: SelectedRuns


class Trajectories(BaseModel):
    """Net-versus-coin-in paths resampled on the shared `x_coin_in` grid.

    `samples[i]` belongs to `sample_run_indices[i]`. Every trace has exactly
    `len(x_coin_in)` points so the frontend can overlay them without further
    alignment.
    """

    x_coin_in: List[float]
    samples: List[List[float]]
    sample_run_indices: List[int]
    best: List[float]
    worst: List[float]
    typical_median: List[float]


class ResultMeta(BaseModel):
    """Bookkeeping stamped on a result when it is stored or exported."""

    id: str
    name: str = ""
    created_at: str
    app_version: str


class SimulationResult(BaseModel):
    """Aggregate statistics, per-session metrics and trajectories for one run.

    The engine leaves `meta` empty so that two runs with the same seed produce
    equal results; the service layer stamps it when the result is stored.
    """

    schema_version: Literal["1.0"] = SCHEMA_VERSION
    model_version: str = MODEL_VERSION
    meta: Optional[ResultMeta] = None
    inputs: SimulationInputs
    aggregate: AggregateMetrics
    runs: List[RunMetrics]
    trajectories: Trajectories


class TailRates(BaseModel):
    """Share of spins whose multiplier reaches 2x, 5x, 10x, 20x and 100x.

    Rates are cumulative, so each is at most the one before it.
    """

    gte_2x: float
    gte_5x: float
    gte_10x: float
    gte_20x: float
    gte_100x: float


class VolatilityTuningStats(BaseModel):
    """Spin-level statistics of a calibrated tier, used to tune tier presets.

    Produced by sampling the calibrated distribution directly, without running
    sessions, so observed RTP, hit rate and tail frequencies can be compared
    against the calibration target.
    """

    volatility: Volatility
    spins: int
    bet: float
    rtp_target: float
    rtp_observed: float
    mean_multiplier: float
    stddev_multiplier: float
    hit_rate: float
    tail_rates: TailRates
    max_multiplier: float
    mean_payout: float
    base_mean: float
    scale_factor: float
