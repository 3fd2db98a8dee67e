from __future__ import annotations

"""Spin-level statistics of calibrated tiers, for tuning the tier presets."""

from typing import List, Optional

import numpy as np

from slotsim.models.domain import TailRates, Volatility, VolatilityTuningStats
from slotsim.simulation.distribution import (
    base_mean,
    build_calibrated_distribution,
    normalize_rtp,
    sample_multipliers,
)
from slotsim.simulation.rng import create_rng

DEFAULT_TUNING_SPINS = 1_000_000
_CHUNK = 1_000_000


def run_volatility_tuning(
    volatility: Volatility,
    rtp: float,
    spins: int = DEFAULT_TUNING_SPINS,
    seed: Optional[str] = None,
    bet: float = 1.0,
) -> VolatilityTuningStats:
    """Sample a calibrated tier directly and report what it actually pays.

    No sessions are played: this draws `spins` multipliers from the calibrated
    distribution and measures observed return, spread, hit rate and how often
    the multiplier reaches 2x, 5x, 10x, 20x and 100x. `base_mean` and
    `scale_factor` describe the template before calibration so tier presets
    can be compared against each other.
    """
    volatility = Volatility(volatility)
    spins = max(1, int(spins))
    bet = max(0.01, bet)
    rtp_target = normalize_rtp(rtp)
    distribution = build_calibrated_distribution(volatility, rtp_target)
    stream = create_rng(seed)

    total = 0.0
    total_sq = 0.0
    hits = 0
    max_multiplier = 0.0
    tails = {2: 0, 5: 0, 10: 0, 20: 0, 100: 0}
    remaining = spins
    while remaining > 0:
        n = min(_CHUNK, remaining)
        multipliers = sample_multipliers(distribution, stream.random_array(n))
        total += float(multipliers.sum())
        total_sq += float(np.square(multipliers).sum())
        hits += int(np.count_nonzero(multipliers > 0))
        max_multiplier = max(max_multiplier, float(multipliers.max()))
        for level in tails:
            tails[level] += int(np.count_nonzero(multipliers >= level))
        remaining -= n

    mean = total / spins
    variance = max(0.0, total_sq / spins - mean * mean)
    tier_base_mean = base_mean(volatility)
    scale_factor = rtp_target / tier_base_mean if tier_base_mean > 0 else 0.0

    return VolatilityTuningStats(
        volatility=volatility,
        spins=spins,
        bet=bet,
        rtp_target=rtp_target,
        rtp_observed=mean,
        mean_multiplier=mean,
        stddev_multiplier=float(np.sqrt(variance)),
        hit_rate=hits / spins,
        tail_rates=TailRates(
            gte_2x=tails[2] / spins,
            gte_5x=tails[5] / spins,
            gte_10x=tails[10] / spins,
            gte_20x=tails[20] / spins,
            gte_100x=tails[100] / spins,
        ),
        max_multiplier=max_multiplier,
        mean_payout=mean * bet,
        base_mean=tier_base_mean,
        scale_factor=scale_factor,
    )


def run_volatility_sweep(
    rtp: float,
    spins: int = DEFAULT_TUNING_SPINS,
    seed: Optional[str] = None,
    bet: float = 1.0,
) -> List[VolatilityTuningStats]:
    return [run_volatility_tuning(tier, rtp, spins, seed, bet) for tier in Volatility]


def format_volatility_report(stats: VolatilityTuningStats) -> str:
    """Plain-text report of one tier's tuning statistics."""

    def pct(value: float) -> str:
        return f"{value * 100:.3f}%"

    return "\n".join(
        [
            f"Volatility: {stats.volatility.value}",
            f"Spins: {stats.spins:,}",
            f"RTP target: {stats.rtp_target * 100:.2f}%",
            f"RTP observed: {stats.rtp_observed * 100:.3f}%",
            f"Mean multiplier: {stats.mean_multiplier:.4f}",
            f"Stddev multiplier: {stats.stddev_multiplier:.4f}",
            f"Hit rate: {pct(stats.hit_rate)}",
            f"Tail >=2x: {pct(stats.tail_rates.gte_2x)}",
            f"Tail >=5x: {pct(stats.tail_rates.gte_5x)}",
            f"Tail >=10x: {pct(stats.tail_rates.gte_10x)}",
            f"Tail >=20x: {pct(stats.tail_rates.gte_20x)}",
            f"Tail >=100x: {pct(stats.tail_rates.gte_100x)}",
            f"Max multiplier: {stats.max_multiplier:.2f}",
            f"Base mean: {stats.base_mean:.4f}",
            f"Scale factor: {stats.scale_factor:.4f}",
        ]
    )
