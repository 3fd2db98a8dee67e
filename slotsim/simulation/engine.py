from __future__ import annotations

"""
Core Monte Carlo simulation engine for slot sessions.

The engine derives a payout source from the inputs' tier and target return,
plays `runs` independent sessions toward the coin-in target, aligns every
session's net path onto a shared grid, and reduces the per-session metrics
into aggregate risk/return statistics. Runs are reproducible when a seed
string is given. Sessions run one after another; progress is reported and a
cancellation token polled roughly every 1% of sessions, which is the only
point where a run can stop early.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Literal, Optional

import numpy as np

from slotsim.models.domain import (
    RunMetrics,
    SelectedRuns,
    SimulationInputs,
    SimulationResult,
    Trajectories,
)
from slotsim.simulation.distribution import build_calibrated_distribution, normalize_rtp
from slotsim.simulation.mixture import DEFAULT_CAP_SAMPLES, MixturePayoutModel
from slotsim.simulation.rng import create_streams
from slotsim.simulation.session import MultiplierSource, distribution_source, run_session
from slotsim.simulation.stats import (
    DEFAULT_SAMPLE_STEP,
    best_and_worst,
    compute_aggregate,
    sample_run_indices,
)
from slotsim.simulation.trajectory import (
    build_coin_in_grid,
    downsample_trajectory,
    median_trajectory,
)

logger = logging.getLogger(__name__)

PayoutModel = Literal["bucketed", "mixture"]
ProgressCallback = Callable[[int, int], None]


class SimulationError(RuntimeError):
    """A session failed; the whole run is aborted without a partial result."""


class CancelToken:
    """Cooperative cancellation flag shared between a host and one run.

    The engine only looks at it at progress points, so a session in flight is
    always finished before the run stops.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class SimulationRun:
    """Terminal state of one engine invocation.

    `status` is "done" with a full `result`, or "cancelled" with whatever
    sessions finished before the token was observed. The aligned trajectory
    matrix is kept (one row per session) so the trajectory sample can be
    re-drawn at another step without resimulating.
    """

    status: Literal["done", "cancelled"]
    runs: List[RunMetrics]
    result: Optional[SimulationResult] = None
    trajectory_matrix: np.ndarray = field(default_factory=lambda: np.zeros((0, 0)))

    def resample(self, step: int) -> SimulationResult:
        """Return a copy of the result whose trajectory sample uses `step`."""
        if self.result is None:
            raise ValueError("cannot resample a run without a result")
        if step < 1:
            raise ValueError("step must be at least 1")
        indices = sample_run_indices(len(self.runs), step)
        samples = [[float(v) for v in self.trajectory_matrix[idx - 1]] for idx in indices]
        result = self.result.model_copy(deep=True)
        result.aggregate.selected_runs.sample_run_indices = indices
        result.trajectories.sample_run_indices = list(indices)
        result.trajectories.samples = samples
        return result


def build_payout_source(
    inputs: SimulationInputs,
    payout_model: PayoutModel,
    cap_stream,
    cap_samples: int = DEFAULT_CAP_SAMPLES,
) -> MultiplierSource:
    """Pick the per-spin multiplier source for a run.

    "mixture" (the default) uses the parametric model with per-spin capping,
    which first runs the cap pre-pass on the dedicated stream. "bucketed"
    samples the calibrated tier table instead, whose multipliers already
    respect the cap analytically.
    """
    rtp = normalize_rtp(inputs.rtp_percent)
    if payout_model == "mixture":
        model = MixturePayoutModel.calibrated(inputs.volatility, rtp, cap_stream, samples=cap_samples)
        logger.debug(
            "mixture model for %s: mu_nonzero=%.4f cap_adjustment=%.6f",
            inputs.volatility.value,
            model.mu_nonzero,
            model.cap_adjustment,
        )
        return model
    if payout_model != "bucketed":
        raise ValueError(f"unknown payout model: {payout_model}")
    distribution = build_calibrated_distribution(inputs.volatility, rtp)
    logger.debug(
        "calibrated %s distribution: target=%.4f mean=%.6f",
        inputs.volatility.value,
        rtp,
        distribution.mean,
    )
    return distribution_source(distribution)


def simulate(
    inputs: SimulationInputs,
    progress_callback: ProgressCallback | None = None,
    cancel_token: CancelToken | None = None,
    payout_model: PayoutModel = "mixture",
    cap_samples: int = DEFAULT_CAP_SAMPLES,
    sample_step: int = DEFAULT_SAMPLE_STEP,
) -> SimulationRun:
    """Run all sessions for `inputs` and assemble the simulation result.

    With the default mixture model, `cap_samples` draws from the secondary
    stream measure the mean lost to per-spin capping before any session runs.

    Progress `(completed, total)` is reported every `max(1, runs // 100)`
    sessions and after the last one; the cancel token is checked before the
    first session and at each of those points. A failure inside a session is
    raised as `SimulationError` and nothing is returned for the run.
    """
    total = inputs.runs
    rng, cap_rng = create_streams(inputs.seed)
    draw = build_payout_source(inputs, payout_model, cap_rng, cap_samples=cap_samples)
    grid = build_coin_in_grid(inputs.traj_points, inputs.coin_in_target or 0.0)
    progress_interval = max(1, total // 100)

    logger.info(
        "simulating %d sessions (%s, rtp=%s, model=%s, seeded=%s)",
        total,
        inputs.volatility.value,
        inputs.rtp_percent,
        payout_model,
        bool(inputs.seed),
    )

    runs: List[RunMetrics] = []
    aligned = np.zeros((total, len(grid)))

    if cancel_token is not None and cancel_token.cancelled:
        logger.info("simulation cancelled before the first session")
        return SimulationRun(status="cancelled", runs=runs)

    for run_index in range(1, total + 1):
        try:
            trace = run_session(run_index, inputs, draw, rng)
        except Exception as exc:
            logger.exception("session %d failed", run_index)
            raise SimulationError(f"session {run_index} failed: {exc}") from exc

        aligned[run_index - 1] = downsample_trajectory(trace.coin_in_history, trace.net_history, grid)
        runs.append(trace.metrics)

        if run_index % progress_interval == 0 or run_index == total:
            if progress_callback is not None:
                progress_callback(run_index, total)
            if cancel_token is not None and cancel_token.cancelled:
                logger.info("simulation cancelled after %d of %d sessions", run_index, total)
                return SimulationRun(status="cancelled", runs=runs)

    result = _assemble_result(inputs, runs, aligned, grid, sample_step)
    logger.info(
        "simulation finished: mean final net %.2f, p_profit %.4f",
        result.aggregate.final_net.mean,
        result.aggregate.final_net.p_profit,
    )
    return SimulationRun(status="done", runs=runs, result=result, trajectory_matrix=aligned)


def _assemble_result(
    inputs: SimulationInputs,
    runs: List[RunMetrics],
    aligned: np.ndarray,
    grid: List[float],
    sample_step: int,
) -> SimulationResult:
    """Fold finished sessions into aggregates and the trajectory bundle."""
    final_nets = [r.final_net for r in runs]
    best_index, worst_index = best_and_worst(final_nets)
    sample_indices = sample_run_indices(len(runs), sample_step)

    aggregate = compute_aggregate(
        final_nets,
        [r.max_drawdown for r in runs],
        [r.total_cash_in for r in runs],
        [r.ending_balance for r in runs],
        SelectedRuns(
            best_run_index=best_index,
            worst_run_index=worst_index,
            sample_run_indices=sample_indices,
        ),
    )

    def row(idx: int) -> List[float]:
        return [float(v) for v in aligned[idx - 1]]

    trajectories = Trajectories(
        x_coin_in=grid,
        samples=[row(idx) for idx in sample_indices],
        sample_run_indices=list(sample_indices),
        best=row(best_index),
        worst=row(worst_index),
        typical_median=median_trajectory(aligned),
    )
    return SimulationResult(
        inputs=inputs,
        aggregate=aggregate,
        runs=runs,
        trajectories=trajectories,
    )
