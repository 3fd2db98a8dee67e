from __future__ import annotations

"""
Single-session state machine.

A session keeps spinning until cumulative wagering reaches the coin-in target.
Wagering is tracked in integer cents so the target is hit exactly; the last
spin is usually a partial bet sized to close the gap. Whenever the balance
cannot cover the next wager, just enough top-up deposits are added to cover
it, so the balance never goes negative.
"""

import math
from dataclasses import dataclass
from typing import Callable, List

from slotsim.models.domain import RunMetrics, SimulationInputs
from slotsim.simulation.distribution import CalibratedDistribution, sample_multiplier
from slotsim.simulation.rng import UniformStream

MultiplierSource = Callable[[UniformStream], float]

MIN_DEPOSIT = 0.01
MIN_SPIN_RATE = 0.01


def to_cents(amount: float) -> int:
    return int(round(amount * 100))


@dataclass
class SessionTrace:
    """Metrics for one session plus its raw (coin-in, net) path.

    Both history lists start at the origin and gain one point per spin, with
    coin-in non-decreasing, which is what the trajectory aligner expects.
    """

    metrics: RunMetrics
    coin_in_history: List[float]
    net_history: List[float]


def distribution_source(distribution: CalibratedDistribution) -> MultiplierSource:
    """Adapt a calibrated distribution to the session's multiplier source."""

    def draw(stream: UniformStream) -> float:
        return sample_multiplier(distribution, stream.random())

    return draw


def expected_spin_count(bet_size: float, coin_in_target: float) -> int:
    """Spins needed to reach the target; independent of outcomes."""
    return math.ceil(to_cents(coin_in_target) / max(1, to_cents(bet_size)))


def estimate_minutes(spins: int, spins_per_sec: float) -> float:
    return spins / max(MIN_SPIN_RATE, spins_per_sec) / 60


def run_session(
    run_index: int,
    inputs: SimulationInputs,
    draw_multiplier: MultiplierSource,
    stream: UniformStream,
) -> SessionTrace:
    """Play one session to the coin-in target and return its metrics and path.

    The session opens funded with one top-up deposit (counted as cash in).
    Each spin wagers `min(bet, remaining)` cents, adds in one step as many
    top-ups as the balance needs to cover the wager, then credits
    `wager * multiplier`. Net, its running peak and the deepest
    peak-to-current drawdown are updated after every spin. A zero target or
    a bet that rounds to zero cents produces a zero-spin session rather than
    looping forever.
    """
    deposit = max(MIN_DEPOSIT, inputs.deposit_amount)
    bet_cents = to_cents(inputs.bet_size)
    target_cents = to_cents(inputs.coin_in_target or 0.0)

    coin_in_history: List[float] = [0.0]
    net_history: List[float] = [0.0]
    coin_in_cents = 0
    total_payout = 0.0
    net = 0.0
    peak_net = 0.0
    max_drawdown = 0.0
    spins = 0
    balance = deposit
    total_cash_in = deposit

    while coin_in_cents < target_cents:
        spin_bet_cents = min(bet_cents, target_cents - coin_in_cents)
        if spin_bet_cents <= 0:
            break
        bet = spin_bet_cents / 100

        if balance < bet:
            top_ups = math.ceil((bet - balance) / deposit)
            if balance + top_ups * deposit < bet:
                top_ups += 1
            balance += top_ups * deposit
            total_cash_in += top_ups * deposit

        balance -= bet
        payout = bet * draw_multiplier(stream)

        coin_in_cents += spin_bet_cents
        total_payout += payout
        net += payout - bet
        balance += payout

        if net > peak_net:
            peak_net = net
        drawdown = peak_net - net
        if drawdown > max_drawdown:
            max_drawdown = drawdown

        spins += 1
        coin_in_history.append(coin_in_cents / 100)
        net_history.append(net)

    metrics = RunMetrics(
        run_index=run_index,
        spins=spins,
        total_coin_in=coin_in_cents / 100,
        total_payout=total_payout,
        final_net=net,
        max_drawdown=max_drawdown,
        time_estimate_minutes=estimate_minutes(spins, inputs.spins_per_sec),
        total_cash_in=total_cash_in,
        ending_balance=balance,
    )
    return SessionTrace(metrics=metrics, coin_in_history=coin_in_history, net_history=net_history)
