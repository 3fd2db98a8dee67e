from __future__ import annotations

"""
Aggregate statistics over all sessions of a run.

Percentiles interpolate linearly between order statistics, CVaR averages the
worst tail of final net results, and loss probabilities are reported for a
fixed set of thresholds. Sorting the full sample for every query is fine at
the session counts the engine targets.
"""

import math
from typing import List, Sequence

import numpy as np

from slotsim.models.domain import (
    AggregateMetrics,
    CenterStats,
    DrawdownStats,
    FinalNetStats,
    SelectedRuns,
)

LOSS_THRESHOLDS = (500, 1000, 2000, 3000, 5000)
DEFAULT_SAMPLE_STEP = 100
TRAJECTORY_SAMPLE_STEPS = (100, 50, 25, 10, 5)


def percentile_sorted(sorted_values: Sequence[float], percentile: float) -> float:
    """Linear interpolation at rank `percentile/100 * (n - 1)`; 0 for no data."""
    n = len(sorted_values)
    if n == 0:
        return 0.0
    index = (percentile / 100) * (n - 1)
    lower = math.floor(index)
    upper = math.ceil(index)
    if lower == upper:
        return float(sorted_values[lower])
    weight = index - lower
    return float(sorted_values[lower] * (1 - weight) + sorted_values[upper] * weight)


def cvar(sorted_values: Sequence[float], alpha: float) -> float:
    """Mean of the worst `max(1, ceil(n * alpha))` values of an ascending sample.

    `n * alpha` is rounded before the ceiling so products like 100 * 0.07 that
    land a hair above an integer do not pull in an extra value.
    """
    n = len(sorted_values)
    if n == 0:
        return 0.0
    count = max(1, math.ceil(round(n * alpha, 9)))
    return float(np.mean(sorted_values[:count]))


def loss_probabilities(final_nets: np.ndarray, thresholds: Sequence[int] = LOSS_THRESHOLDS) -> dict:
    """Share of sessions losing more than each threshold, keyed by threshold."""
    if final_nets.size == 0:
        return {str(t): 0.0 for t in thresholds}
    return {str(t): float(np.mean(final_nets < -t)) for t in thresholds}


def sample_run_indices(total_runs: int, step: int = DEFAULT_SAMPLE_STEP) -> List[int]:
    """Deterministic trajectory sample: run 1, every `step`-th run, and the last."""
    indices = {min(1, total_runs), total_runs}
    indices.update(range(step, total_runs + 1, step))
    return sorted(indices)


def estimate_sample_count(total_runs: int, step: int) -> int:
    """Size of `sample_run_indices(total_runs, step)` without building it."""
    if total_runs <= 1:
        return total_runs
    first = 0 if step == 1 else 1
    last = 0 if total_runs % step == 0 else 1
    return first + total_runs // step + last


def best_and_worst(final_nets: Sequence[float]) -> tuple:
    """1-based indices of the best and worst session; first occurrence wins ties."""
    arr = np.asarray(final_nets, dtype=float)
    if arr.size == 0:
        return 1, 1
    return int(np.argmax(arr)) + 1, int(np.argmin(arr)) + 1


def _mean(values: np.ndarray) -> float:
    return float(np.mean(values)) if values.size else 0.0


def compute_aggregate(
    final_nets: Sequence[float],
    max_drawdowns: Sequence[float],
    cash_ins: Sequence[float],
    ending_balances: Sequence[float],
    selected_runs: SelectedRuns,
) -> AggregateMetrics:
    """Reduce per-session series into the AggregateMetrics summary.

    All four series are indexed by session. Standard deviation is the
    population figure; `p_profit` counts strictly positive final nets.
    """
    finals = np.asarray(final_nets, dtype=float)
    sorted_finals = np.sort(finals)
    sorted_drawdowns = np.sort(np.asarray(max_drawdowns, dtype=float))
    cash = np.asarray(cash_ins, dtype=float)
    balances = np.asarray(ending_balances, dtype=float)

    final_stats = FinalNetStats(
        mean=_mean(finals),
        median=percentile_sorted(sorted_finals, 50),
        stddev=float(np.std(finals)) if finals.size else 0.0,
        min=float(sorted_finals[0]) if finals.size else 0.0,
        max=float(sorted_finals[-1]) if finals.size else 0.0,
        p01=percentile_sorted(sorted_finals, 1),
        p05=percentile_sorted(sorted_finals, 5),
        p10=percentile_sorted(sorted_finals, 10),
        p25=percentile_sorted(sorted_finals, 25),
        p50=percentile_sorted(sorted_finals, 50),
        p75=percentile_sorted(sorted_finals, 75),
        p90=percentile_sorted(sorted_finals, 90),
        p95=percentile_sorted(sorted_finals, 95),
        p99=percentile_sorted(sorted_finals, 99),
        p_profit=_mean(finals > 0),
        p_loss_gt=loss_probabilities(finals),
        cvar_5=cvar(sorted_finals, 0.05),
        cvar_1=cvar(sorted_finals, 0.01),
    )
    return AggregateMetrics(
        final_net=final_stats,
        max_drawdown=DrawdownStats(
            mean=_mean(sorted_drawdowns),
            median=percentile_sorted(sorted_drawdowns, 50),
            p95=percentile_sorted(sorted_drawdowns, 95),
        ),
        cash_in=CenterStats(mean=_mean(cash), median=percentile_sorted(np.sort(cash), 50)),
        ending_balance=CenterStats(
            mean=_mean(balances),
            median=percentile_sorted(np.sort(balances), 50),
        ),
        selected_runs=selected_runs,
    )
