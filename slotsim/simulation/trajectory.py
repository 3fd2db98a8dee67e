from __future__ import annotations

"""Resample session paths onto a shared coin-in grid for overlay charts."""

from typing import List, Sequence

import numpy as np


def build_coin_in_grid(points: int, max_coin_in: float) -> List[float]:
    """Evenly spaced coin-in values from 0 to the target, inclusive.

    One point or fewer degenerates to the two endpoints. Grid values are
    rounded to 6 decimals so exported grids stay readable.
    """
    if points <= 1:
        return [0.0, max_coin_in]
    step = max_coin_in / (points - 1)
    return [round(i * step, 6) for i in range(points)]


def downsample_trajectory(
    coin_in: Sequence[float],
    net: Sequence[float],
    grid: Sequence[float],
) -> List[float]:
    """Linearly interpolate a session's net path at each grid point.

    The cursor only moves forward as the grid increases, so the whole pass is
    linear in the trace length. Grid points at or before the first sample take
    the first net value, points past the last sample take the last value, and
    a zero-width coin-in interval resolves to its later net value.
    """
    result = [0.0] * len(grid)
    if not coin_in:
        return result
    last = len(coin_in) - 1
    index = 0
    for i, x in enumerate(grid):
        while index < last and coin_in[index + 1] < x:
            index += 1

        if x <= coin_in[0]:
            result[i] = net[0]
            continue
        if index >= last:
            result[i] = net[last]
            continue

        x0 = coin_in[index]
        x1 = coin_in[index + 1]
        y0 = net[index]
        y1 = net[index + 1]
        if x1 == x0:
            result[i] = y1
            continue
        t = (x - x0) / (x1 - x0)
        result[i] = y0 + t * (y1 - y0)
    return result


def median_trajectory(runs: np.ndarray) -> List[float]:
    """Per-grid-point median across sessions (rows are sessions)."""
    if runs.size == 0:
        return []
    return [float(v) for v in np.median(runs, axis=0)]
