from __future__ import annotations

"""
Volatility tier templates, RTP calibration and the spin sampler.

Each tier is a bucketed payout table: a zero-payout outcome plus a ladder of
log-spaced multipliers whose weights blend a log-normal body with a power-law
tail. Calibration rescales the ladder so the expected multiplier equals the
target return, rebalancing toward the tier cap when a straight rescale would
push the top buckets past it.
"""

import bisect
import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

import numpy as np

from slotsim.models.domain import Volatility

logger = logging.getLogger(__name__)

BUCKET_COUNT = 80
CAP_EPSILON = 1e-10
MAX_REBALANCE_ITERATIONS = 20


@dataclass(frozen=True)
class Outcome:
    """Bucketed payout point before calibration."""

    m_base: float
    p: float


@dataclass(frozen=True)
class TierTemplate:
    """Un-calibrated payout table for one tier plus the cap it must respect.

    Probabilities sum to one and the zero outcome comes first. Calibration
    never changes probabilities, only multipliers, so the CDF of a calibrated
    distribution is fixed by its template.
    """

    outcomes: Tuple[Outcome, ...]
    max_multiplier_allowed: float


@dataclass(frozen=True)
class CalibratedDistribution:
    """Index-aligned multipliers and cumulative probabilities plus their mean."""

    multipliers: Tuple[float, ...]
    cdf: Tuple[float, ...]
    mean: float

    def __post_init__(self) -> None:
        if len(self.multipliers) != len(self.cdf):
            raise ValueError("multipliers and cdf must have the same length")


@dataclass(frozen=True)
class BucketConfig:
    """Shape parameters for one tier's bucketed payout ladder."""

    bucket_count: int
    zero_probability: float
    min_multiplier: float
    max_multiplier: float
    log_mu: float
    log_sigma: float
    tail_weight: float
    tail_alpha: float


def build_bucketed_outcomes(config: BucketConfig) -> List[Outcome]:
    """Build the un-calibrated outcome ladder for a tier.

    The range `[ln(min), ln(max)]` is cut into `bucket_count` equal-width bins.
    Each bin's midpoint multiplier gets a log-normal density term plus a
    power-law tail term; the non-zero weights are then scaled to share
    `1 - zero_probability` and an explicit zero outcome is put in front. If
    every weight is zero the ladder collapses to the zero outcome alone.
    """
    log_min = math.log(config.min_multiplier)
    log_max = math.log(config.max_multiplier)
    step = (log_max - log_min) / config.bucket_count
    weights: List[float] = []
    multipliers: List[float] = []
    for i in range(config.bucket_count):
        log_mid = log_min + step * (i + 0.5)
        multiplier = math.exp(log_mid)
        log_normal = math.exp(-((log_mid - config.log_mu) ** 2) / (2 * config.log_sigma**2))
        tail = config.tail_weight * multiplier ** (-config.tail_alpha)
        weights.append(log_normal + tail)
        multipliers.append(multiplier)

    total_weight = sum(weights)
    outcomes = [Outcome(m_base=0.0, p=config.zero_probability)]
    if total_weight <= 0:
        return outcomes

    scale = (1 - config.zero_probability) / total_weight
    for multiplier, weight in zip(multipliers, weights):
        outcomes.append(Outcome(m_base=multiplier, p=weight * scale))
    return outcomes


def build_tier_template(config: BucketConfig) -> TierTemplate:
    return TierTemplate(
        outcomes=tuple(build_bucketed_outcomes(config)),
        max_multiplier_allowed=config.max_multiplier,
    )


TIER_CONFIGS: Dict[Volatility, BucketConfig] = {
    Volatility.LOW: BucketConfig(
        bucket_count=BUCKET_COUNT,
        zero_probability=0.55,
        min_multiplier=0.1,
        max_multiplier=1000,
        log_mu=math.log(0.6),
        log_sigma=0.55,
        tail_weight=0.02,
        tail_alpha=3.3,
    ),
    Volatility.MEDIUM: BucketConfig(
        bucket_count=BUCKET_COUNT,
        zero_probability=0.7,
        min_multiplier=0.1,
        max_multiplier=5000,
        log_mu=math.log(0.8),
        log_sigma=0.75,
        tail_weight=0.06,
        tail_alpha=2.7,
    ),
    Volatility.HIGH: BucketConfig(
        bucket_count=BUCKET_COUNT,
        zero_probability=0.88,
        min_multiplier=0.1,
        max_multiplier=20000,
        log_mu=math.log(1.0),
        log_sigma=0.95,
        tail_weight=0.12,
        tail_alpha=2.2,
    ),
}

VOLATILITY_TEMPLATES: Dict[Volatility, TierTemplate] = {
    tier: build_tier_template(cfg) for tier, cfg in TIER_CONFIGS.items()
}


def normalize_rtp(rtp: float) -> float:
    """Treat values above 1 as percentages (88 -> 0.88)."""
    return rtp / 100 if rtp > 1 else rtp


def mean_multiplier(probabilities: Sequence[float], multipliers: Sequence[float]) -> float:
    return sum(p * m for p, m in zip(probabilities, multipliers))


def _normalize_probabilities(outcomes: Sequence[Outcome]) -> List[float]:
    total = sum(o.p for o in outcomes)
    if total == 0:
        return [o.p for o in outcomes]
    return [o.p / total for o in outcomes]


def build_cdf(probabilities: Sequence[float]) -> Tuple[float, ...]:
    """Running sum of probabilities with the last entry pinned to exactly 1."""
    cdf: List[float] = []
    total = 0.0
    for p in probabilities:
        total += p
        cdf.append(total)
    if cdf:
        cdf[-1] = 1.0
    return tuple(cdf)


def cap_aware_calibration(
    probabilities: Sequence[float],
    multipliers: Sequence[float],
    rtp_mean: float,
    max_allowed: float,
) -> List[float]:
    """Clamp multipliers at the cap and push the lost mean into uncapped buckets.

    After clamping, the remaining gap to `rtp_mean` is closed by scaling every
    non-zero, below-cap multiplier by `1 + delta / sum_adjustable`. A bucket
    that reaches the cap is frozen there. Iteration stops once the gap is
    within tolerance, after 20 rounds, when nothing is left to scale, or when
    a round caps no new bucket. When the cap binds hard the result may fall
    short of the target mean; the caller gets the best approximation found.
    """
    calibrated = [min(m, max_allowed) for m in multipliers]
    current_mean = mean_multiplier(probabilities, calibrated)
    delta = rtp_mean - current_mean
    if delta <= 0:
        return calibrated

    adjustable = [0 < m < max_allowed - CAP_EPSILON for m in calibrated]
    guard = 0
    while delta > CAP_EPSILON and guard < MAX_REBALANCE_ITERATIONS:
        sum_mid = sum(p * m for p, m, adj in zip(probabilities, calibrated, adjustable) if adj)
        if sum_mid <= 0:
            break

        factor = 1 + delta / sum_mid
        any_capped = False
        for i, adj in enumerate(adjustable):
            if not adj:
                continue
            scaled = calibrated[i] * factor
            if scaled >= max_allowed:
                calibrated[i] = max_allowed
                adjustable[i] = False
                any_capped = True
            else:
                calibrated[i] = scaled

        current_mean = mean_multiplier(probabilities, calibrated)
        delta = rtp_mean - current_mean
        guard += 1
        if not any_capped:
            break

    if delta > CAP_EPSILON:
        logger.debug(
            "cap-aware calibration stopped %.3g short of target mean %.6f after %d rounds",
            delta,
            rtp_mean,
            guard,
        )
    return calibrated


def build_calibrated_distribution(volatility: Volatility | TierTemplate, rtp_mean: float) -> CalibratedDistribution:
    """Rescale a tier template so its expected multiplier equals `rtp_mean`.

    Accepts either a tier name or a template (useful for custom shapes). A
    template with no positive expected value yields an all-zero distribution
    with mean 0 instead of dividing by zero. When the straight rescale pushes
    any bucket past the tier cap, `cap_aware_calibration` takes over.
    """
    template = volatility if isinstance(volatility, TierTemplate) else VOLATILITY_TEMPLATES[Volatility(volatility)]
    rtp_mean = normalize_rtp(rtp_mean)
    probabilities = _normalize_probabilities(template.outcomes)
    mu_base = mean_multiplier(probabilities, [o.m_base for o in template.outcomes])
    if mu_base <= 0:
        logger.debug("template has no positive mean; using all-zero distribution")
        return CalibratedDistribution(
            multipliers=tuple(0.0 for _ in probabilities),
            cdf=build_cdf(probabilities),
            mean=0.0,
        )

    k = rtp_mean / mu_base
    scaled = [o.m_base * k for o in template.outcomes]
    if max(scaled) > template.max_multiplier_allowed:
        scaled = cap_aware_calibration(probabilities, scaled, rtp_mean, template.max_multiplier_allowed)

    return CalibratedDistribution(
        multipliers=tuple(scaled),
        cdf=build_cdf(probabilities),
        mean=mean_multiplier(probabilities, scaled),
    )


def base_mean(volatility: Volatility) -> float:
    """Expected base multiplier of a tier template before any scaling."""
    template = VOLATILITY_TEMPLATES[Volatility(volatility)]
    probabilities = _normalize_probabilities(template.outcomes)
    if sum(probabilities) == 0:
        return 0.0
    return mean_multiplier(probabilities, [o.m_base for o in template.outcomes])


def sample_multiplier(distribution: CalibratedDistribution, u: float) -> float:
    """Map one uniform draw to a multiplier by scanning the CDF.

    Returns the multiplier at the first index with `u <= cdf[i]`; a draw of 0
    skips leading zero-probability outcomes. If rounding leaves `u` above every
    entry, the last multiplier is returned.
    """
    cdf = distribution.cdf
    if not cdf:
        return 0.0
    index = bisect.bisect_left(cdf, u) if u > 0 else bisect.bisect_right(cdf, 0.0)
    if index >= len(cdf):
        return distribution.multipliers[-1]
    return distribution.multipliers[index]


def sample_multipliers(distribution: CalibratedDistribution, draws: np.ndarray) -> np.ndarray:
    """Vectorized `sample_multiplier` over an array of uniform draws."""
    if not distribution.cdf:
        return np.zeros(len(draws))
    cdf = np.asarray(distribution.cdf)
    multipliers = np.asarray(distribution.multipliers)
    idx = np.where(
        draws > 0,
        np.searchsorted(cdf, draws, side="left"),
        np.searchsorted(cdf, 0.0, side="right"),
    )
    idx = np.minimum(idx, len(cdf) - 1)
    return multipliers[idx]
