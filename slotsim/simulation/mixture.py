from __future__ import annotations

"""
Parametric mixture payout model with per-spin capping.

A spin either pays nothing (probability `p0`) or pays a unit-mean random shape
scaled so the overall mean matches the target return. Shapes are gamma (low and
medium tiers) or log-normal (high tier). Each payout is clamped at the tier
cap, which drags the mean below target; a Monte Carlo pre-pass over the
uncapped shape measures that loss and yields a compensating factor.

This is a separate model from the analytic cap-aware calibration in
`distribution.py`; the two are not expected to agree exactly.
"""

import math
from dataclasses import dataclass
from typing import Dict, Literal, Optional

import numpy as np

from slotsim.models.domain import Volatility
from slotsim.simulation.distribution import normalize_rtp
from slotsim.simulation.rng import UniformStream

DEFAULT_CAP_SAMPLES = 2_000_000
_BATCH = 262_144


@dataclass(frozen=True)
class MixtureSettings:
    p0: float
    shape: Literal["gamma", "lognormal"]
    cap: float
    k: Optional[float] = None
    sigma: Optional[float] = None


MIXTURE_SETTINGS: Dict[Volatility, MixtureSettings] = {
    Volatility.LOW: MixtureSettings(p0=0.55, shape="gamma", k=6, cap=50),
    Volatility.MEDIUM: MixtureSettings(p0=0.7, shape="gamma", k=2, cap=200),
    Volatility.HIGH: MixtureSettings(p0=0.82, shape="lognormal", sigma=1.3, cap=2000),
}


def random_normal(stream: UniformStream) -> float:
    """Box-Muller standard normal from two non-zero uniforms."""
    u = 0.0
    v = 0.0
    while u == 0:
        u = stream.random()
    while v == 0:
        v = stream.random()
    return math.sqrt(-2 * math.log(u)) * math.cos(2 * math.pi * v)


def gamma_sample(k: float, stream: UniformStream) -> float:
    """Marsaglia-Tsang gamma(k, 1) draw; shapes below 1 use the boost trick."""
    if k < 1:
        u = stream.random()
        return gamma_sample(1 + k, stream) * u ** (1 / k)

    d = k - 1 / 3
    c = 1 / math.sqrt(9 * d)
    while True:
        x = random_normal(stream)
        v = 1 + c * x
        if v <= 0:
            continue
        v = v * v * v
        u = stream.random()
        if u < 1 - 0.0331 * x**4:
            return d * v
        if math.log(u) < 0.5 * x * x + d * (1 - v + math.log(v)):
            return d * v


def sample_shape(settings: MixtureSettings, stream: UniformStream) -> float:
    """Unit-mean shape draw for a winning spin."""
    if settings.shape == "gamma" and settings.k:
        return gamma_sample(settings.k, stream) / settings.k
    if settings.shape == "lognormal" and settings.sigma:
        mu_l = -(settings.sigma**2) / 2
        return math.exp(mu_l + settings.sigma * random_normal(stream))
    return 1.0


def _normal_block(stream: UniformStream, n: int) -> np.ndarray:
    u = stream.random_array(n)
    v = stream.random_array(n)
    # a zero draw would blow up the log; nudge it to the smallest representable step
    u = np.where(u == 0, 1 / 4294967296.0, u)
    return np.sqrt(-2 * np.log(u)) * np.cos(2 * np.pi * v)


def _gamma_block(k: float, stream: UniformStream, n: int) -> np.ndarray:
    """Vectorized Marsaglia-Tsang: draw candidate blocks until `n` are accepted."""
    d = k - 1 / 3
    c = 1 / math.sqrt(9 * d)
    accepted = []
    remaining = n
    while remaining > 0:
        size = max(1024, int(remaining * 1.1))
        x = _normal_block(stream, size)
        u = stream.random_array(size)
        v = 1 + c * x
        ok = v > 0
        v3 = np.where(ok, v, 1.0) ** 3
        with np.errstate(divide="ignore", invalid="ignore"):
            keep = ok & (
                (u < 1 - 0.0331 * x**4)
                | (np.log(u) < 0.5 * x * x + d * (1 - v3 + np.log(v3)))
            )
        block = (d * v3)[keep][:remaining]
        accepted.append(block)
        remaining -= len(block)
    return np.concatenate(accepted)


def sample_shape_block(settings: MixtureSettings, stream: UniformStream, n: int) -> np.ndarray:
    if settings.shape == "gamma" and settings.k:
        if settings.k < 1:
            boost = stream.random_array(n) ** (1 / settings.k)
            return _gamma_block(1 + settings.k, stream, n) * boost / settings.k
        return _gamma_block(settings.k, stream, n) / settings.k
    if settings.shape == "lognormal" and settings.sigma:
        mu_l = -(settings.sigma**2) / 2
        return np.exp(mu_l + settings.sigma * _normal_block(stream, n))
    return np.ones(n)


def compute_cap_adjustment(
    settings: MixtureSettings,
    mu_nonzero: float,
    stream: UniformStream,
    samples: int = DEFAULT_CAP_SAMPLES,
) -> float:
    """Estimate the factor that restores the mean lost to per-spin capping.

    Draws `samples` values of the uncapped winning payout, clamps them at the
    cap, and returns `mu_nonzero / mean(capped)`. Draws come from a dedicated
    stream in fixed-size blocks so memory stays bounded for large pre-passes.
    """
    if samples <= 0 or mu_nonzero <= 0:
        return 1.0
    total = 0.0
    remaining = samples
    while remaining > 0:
        n = min(_BATCH, remaining)
        values = np.minimum(mu_nonzero * sample_shape_block(settings, stream, n), settings.cap)
        total += float(values.sum())
        remaining -= n
    mean_capped = total / samples
    if mean_capped <= 0:
        return 1.0
    return mu_nonzero / mean_capped


class MixturePayoutModel:
    """Per-spin multiplier source for the mixture model.

    Built once per run: `mu_nonzero` comes from the target return and the
    tier's zero probability, and the cap factor from the pre-pass. Calling the
    model with the primary stream returns one spin's multiplier.
    """

    def __init__(self, volatility: Volatility, rtp: float, cap_adjustment: float = 1.0) -> None:
        self.settings = MIXTURE_SETTINGS[Volatility(volatility)]
        self.mu_nonzero = normalize_rtp(rtp) / (1 - self.settings.p0)
        self.cap_adjustment = cap_adjustment

    @classmethod
    def calibrated(
        cls,
        volatility: Volatility,
        rtp: float,
        cap_stream: UniformStream,
        samples: int = DEFAULT_CAP_SAMPLES,
    ) -> "MixturePayoutModel":
        model = cls(volatility, rtp)
        model.cap_adjustment = compute_cap_adjustment(model.settings, model.mu_nonzero, cap_stream, samples)
        return model

    def __call__(self, stream: UniformStream) -> float:
        if stream.random() < self.settings.p0:
            return 0.0
        multiplier = min(self.mu_nonzero * sample_shape(self.settings, stream), self.settings.cap)
        return multiplier * self.cap_adjustment
