from __future__ import annotations

"""
Uniform random streams for the simulation engine.

Seeded runs must reproduce bit-identical draws on every platform, so a seed
string is hashed with xmur3 into a 32-bit state and expanded with mulberry32,
both defined purely in terms of 32-bit integer arithmetic. Unseeded runs fall
back to numpy's default generator and carry no reproducibility guarantee.
"""

from typing import Iterator, List, Optional, Tuple, Union

import numpy as np

_MASK32 = 0xFFFFFFFF
_GOLDEN = 0x6D2B79F5
_TWO_32 = 4294967296.0


def _imul(a: int, b: int) -> int:
    return (a * b) & _MASK32


def _utf16_units(text: str) -> Iterator[int]:
    """Yield UTF-16 code units so astral characters hash as surrogate pairs."""
    for ch in text:
        cp = ord(ch)
        if cp > 0xFFFF:
            cp -= 0x10000
            yield 0xD800 + (cp >> 10)
            yield 0xDC00 + (cp & 0x3FF)
        else:
            yield cp


def xmur3(seed: str) -> int:
    """Hash a seed string into a 32-bit unsigned integer.

    The hash is order-sensitive (every code unit is folded in with a multiply
    and a 13-bit rotation) and then finalized with two avalanche rounds. Only
    the first finalizer output is used as the generator state.
    """
    h = (1779033703 ^ len(list(_utf16_units(seed)))) & _MASK32
    for unit in _utf16_units(seed):
        h = _imul(h ^ unit, 3432918353)
        h = ((h << 13) | (h >> 19)) & _MASK32
    h = _imul(h ^ (h >> 16), 2246822507)
    h = _imul(h ^ (h >> 13), 3266489909)
    h ^= h >> 16
    return h & _MASK32


class Mulberry32Stream:
    """Seeded mulberry32 stream of floats in [0, 1).

    mulberry32 advances its state by a fixed odd constant, so the k-th output
    depends only on the seed and k. That lets `random_array` produce a block
    of draws with numpy that matches the same number of scalar `random()`
    calls exactly; both share one counter.
    """

    def __init__(self, seed: int) -> None:
        self.seed = seed & _MASK32
        self.counter = 0

    def random(self) -> float:
        """Advance the counter by one and return the next draw in [0, 1).

        The 32-bit mixing is done on Python ints and masked after every
        multiply and add, which reproduces unsigned 32-bit overflow exactly.
        """
        self.counter += 1
        t = (self.seed + self.counter * _GOLDEN) & _MASK32
        x = _imul(t ^ (t >> 15), t | 1)
        x ^= (x + _imul(x ^ (x >> 7), x | 61)) & _MASK32
        return ((x ^ (x >> 14)) & _MASK32) / _TWO_32

    def random_array(self, n: int) -> np.ndarray:
        """Return the next `n` draws as a float64 array."""
        mask = np.uint64(_MASK32)
        steps = np.arange(self.counter + 1, self.counter + n + 1, dtype=np.uint64)
        self.counter += n
        t = (np.uint64(self.seed) + steps * np.uint64(_GOLDEN)) & mask
        x = ((t ^ (t >> np.uint64(15))) * (t | np.uint64(1))) & mask
        x ^= (x + (((x ^ (x >> np.uint64(7))) * (x | np.uint64(61))) & mask)) & mask
        out = (x ^ (x >> np.uint64(14))) & mask
        return out.astype(np.float64) / _TWO_32


class SystemStream:
    """Non-reproducible stream backed by `numpy.random.default_rng()`."""

    def __init__(self, generator: np.random.Generator | None = None) -> None:
        self.generator = generator or np.random.default_rng()

    def random(self) -> float:
        return float(self.generator.random())

    def random_array(self, n: int) -> np.ndarray:
        return self.generator.random(n)


UniformStream = Union[Mulberry32Stream, SystemStream]


def create_rng(seed: Optional[str] = None) -> UniformStream:
    """Build a stream for a seed string; `None` or `""` means unseeded."""
    if seed is None or seed == "":
        return SystemStream()
    return Mulberry32Stream(xmur3(str(seed)))


def create_streams(seed: Optional[str] = None) -> Tuple[UniformStream, UniformStream]:
    """Return the (primary, cap) stream pair for one simulation run.

    The cap stream only feeds the cap-adjustment pre-pass. Deriving it from
    `seed + "-cap"` keeps the primary spin sequence unchanged no matter how
    many pre-pass draws are taken.
    """
    if seed is None or seed == "":
        return SystemStream(), SystemStream()
    return create_rng(seed), create_rng(f"{seed}-cap")


def take(stream: UniformStream, n: int) -> List[float]:
    """Draw `n` scalar values; handy for inspecting a stream prefix."""
    return [stream.random() for _ in range(n)]
