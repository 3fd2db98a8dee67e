import math

import numpy as np
import pytest

from slotsim.models.domain import SelectedRuns, SimulationInputs, SimulationResult, Volatility
from slotsim.simulation import engine as engine_module
from slotsim.simulation import mixture as mixture_module
from slotsim.simulation.distribution import build_calibrated_distribution
from slotsim.simulation.engine import CancelToken, SimulationError, simulate
from slotsim.simulation.mixture import (
    MIXTURE_SETTINGS,
    MixturePayoutModel,
    MixtureSettings,
    compute_cap_adjustment,
    sample_shape_block,
)
from slotsim.simulation.rng import create_rng, create_streams, take, xmur3
from slotsim.simulation.session import (
    distribution_source,
    estimate_minutes,
    expected_spin_count,
    run_session,
)
from slotsim.simulation.stats import (
    LOSS_THRESHOLDS,
    best_and_worst,
    compute_aggregate,
    cvar,
    estimate_sample_count,
    loss_probabilities,
    percentile_sorted,
    sample_run_indices,
)
from slotsim.simulation.trajectory import (
    build_coin_in_grid,
    downsample_trajectory,
    median_trajectory,
)


class ScriptedSource:
    """Multiplier source that replays a fixed script, ignoring the stream."""

    def __init__(self, multipliers):
        self.multipliers = list(multipliers)
        self.calls = 0

    def __call__(self, stream):
        value = self.multipliers[self.calls % len(self.multipliers)]
        self.calls += 1
        return value


def _small_inputs(**overrides):
    base = dict(
        rtp_percent=88,
        volatility=Volatility.HIGH,
        bet_size=1.5,
        deposit_amount=100,
        coin_in_target=300,
        runs=20,
        seed="unit-test",
        spins_per_sec=0.5,
        traj_points=50,
    )
    base.update(overrides)
    return SimulationInputs(**base)


# --- random streams -------------------------------------------------------


def test_seeded_streams_are_reproducible():
    assert take(create_rng("abc"), 50) == take(create_rng("abc"), 50)
    assert take(create_rng("abc"), 5) != take(create_rng("abd"), 5)
    assert take(create_rng("ab"), 5) != take(create_rng("ba"), 5)


def test_stream_values_in_unit_interval():
    values = create_rng("range").random_array(10_000)
    assert values.min() >= 0.0
    assert values.max() < 1.0
    assert abs(values.mean() - 0.5) < 0.02


def test_vectorized_draws_match_scalar_and_share_counter():
    scalar = create_rng("block")
    vector = create_rng("block")
    expected = take(scalar, 300)
    got = list(vector.random_array(100)) + take(vector, 100) + list(vector.random_array(100))
    assert got == expected


def test_xmur3_is_32_bit_and_order_sensitive():
    for seed in ["", "a", "seed-1", "emoji-\U0001f3b0"]:
        assert 0 <= xmur3(seed) < 2**32
    assert xmur3("ab") != xmur3("ba")


def test_unseeded_stream_is_not_mulberry():
    assert type(create_rng(None)).__name__ == "SystemStream"
    assert type(create_rng("")).__name__ == "SystemStream"


def test_cap_stream_is_independent_of_primary():
    primary, cap = create_streams("run-7")
    cap.random_array(10_000)
    assert take(primary, 20) == take(create_rng("run-7"), 20)
    assert take(create_streams("run-7")[1], 20) == take(create_rng("run-7-cap"), 20)


# --- session runner -------------------------------------------------------


def test_expected_spin_count_from_inputs():
    assert expected_spin_count(1.5, 12_500) == 8334
    assert expected_spin_count(1.0, 100) == 100
    assert expected_spin_count(0.7, 10) == 15


def test_session_reaches_target_with_partial_last_spin():
    inputs = _small_inputs(bet_size=0.7, coin_in_target=10)
    trace = run_session(1, inputs, ScriptedSource([0.0]), create_rng("x"))
    m = trace.metrics
    assert m.spins == 15
    assert m.total_coin_in == 10
    increments = np.diff(trace.coin_in_history)
    assert math.isclose(increments.sum(), m.total_coin_in)
    assert math.isclose(increments[-1], 0.2)
    assert trace.coin_in_history[0] == 0.0 and trace.net_history[0] == 0.0


def test_losing_session_tops_up_and_never_goes_negative():
    inputs = _small_inputs(bet_size=1.5, coin_in_target=12_500, deposit_amount=100)
    trace = run_session(3, inputs, ScriptedSource([0.0]), create_rng("x"))
    m = trace.metrics
    assert m.run_index == 3
    assert m.spins == 8334
    assert m.final_net == -12_500
    assert m.max_drawdown == 12_500
    assert m.ending_balance >= 0
    assert m.total_cash_in % 100 == 0
    assert math.isclose(m.total_cash_in - m.ending_balance, 12_500)


def test_drawdown_tracks_peak_to_trough():
    inputs = _small_inputs(bet_size=1, coin_in_target=3)
    trace = run_session(1, inputs, ScriptedSource([2.0, 0.0, 0.0]), create_rng("x"))
    assert trace.net_history == [0.0, 1.0, 0.0, -1.0]
    assert trace.coin_in_history == [0.0, 1.0, 2.0, 3.0]
    assert trace.metrics.max_drawdown == 2.0
    assert trace.metrics.total_payout == 2.0
    assert trace.metrics.final_net == -1.0


def test_big_win_funds_later_spins_without_top_up():
    inputs = _small_inputs(bet_size=10, coin_in_target=200, deposit_amount=10)
    trace = run_session(1, inputs, ScriptedSource([20.0] + [0.0] * 19), create_rng("x"))
    assert trace.metrics.total_cash_in == 10
    assert trace.metrics.ending_balance == 10


def test_large_bet_tops_up_in_one_step():
    inputs = _small_inputs(bet_size=250, coin_in_target=500, deposit_amount=0.01)
    trace = run_session(1, inputs, ScriptedSource([0.0]), create_rng("x"))
    m = trace.metrics
    assert m.spins == 2
    assert 0 <= m.ending_balance < 0.01 + 1e-9
    assert math.isclose(m.total_cash_in - m.ending_balance, 500)


@pytest.mark.parametrize("overrides", [{"coin_in_target": 0}, {"bet_size": 0.001}])
def test_zero_target_or_zero_bet_gives_empty_session(overrides):
    inputs = _small_inputs(**overrides)
    trace = run_session(1, inputs, ScriptedSource([1.0]), create_rng("x"))
    assert trace.metrics.spins == 0
    assert trace.metrics.total_coin_in == 0
    assert trace.metrics.ending_balance == 100


def test_time_estimate_uses_spin_rate():
    assert math.isclose(estimate_minutes(600, 1.0), 10.0)
    assert math.isclose(estimate_minutes(6, 0.0), 6 / 0.01 / 60)


def test_seeded_bucketed_session_invariants():
    inputs = _small_inputs(coin_in_target=3_000)
    dist = build_calibrated_distribution(Volatility.HIGH, 0.88)
    trace = run_session(1, inputs, distribution_source(dist), create_rng("session"))
    m = trace.metrics
    assert m.spins == expected_spin_count(1.5, 3_000)
    assert m.max_drawdown >= 0
    assert m.ending_balance >= 0
    assert math.isclose(m.final_net, m.total_payout - m.total_coin_in, abs_tol=1e-6)
    assert math.isclose(np.diff(trace.coin_in_history).sum(), m.total_coin_in)


# --- trajectory aligner ---------------------------------------------------


def test_coin_in_grid():
    assert build_coin_in_grid(1, 100) == [0.0, 100]
    assert build_coin_in_grid(0, 100) == [0.0, 100]
    assert build_coin_in_grid(5, 100) == [0.0, 25.0, 50.0, 75.0, 100.0]
    assert build_coin_in_grid(4, 1) == [0.0, 0.333333, 0.666667, 1.0]


def test_downsample_interpolates_and_clamps():
    coin_in = [0.0, 10.0, 20.0]
    net = [0.0, 10.0, -10.0]
    grid = [0.0, 5.0, 10.0, 15.0, 20.0, 25.0]
    assert downsample_trajectory(coin_in, net, grid) == [0.0, 5.0, 10.0, 0.0, -10.0, -10.0]


def test_downsample_before_first_sample_uses_first_value():
    assert downsample_trajectory([5.0, 10.0], [3.0, 4.0], [0.0, 5.0, 7.5]) == [3.0, 3.0, 3.5]


def test_median_trajectory():
    runs = np.array([[0.0, 1.0], [2.0, 3.0], [4.0, 10.0]])
    assert median_trajectory(runs) == [2.0, 3.0]
    assert median_trajectory(np.zeros((0, 0))) == []


# --- aggregate statistics -------------------------------------------------


def test_percentile_interpolates():
    assert percentile_sorted([1, 2, 3, 4], 50) == 2.5
    assert percentile_sorted([1, 2, 3, 4], 0) == 1
    assert percentile_sorted([1, 2, 3, 4], 100) == 4
    assert percentile_sorted([], 50) == 0.0


def test_cvar_averages_worst_tail():
    values = sorted(float(v) for v in range(-50, 50))
    assert cvar(values, 0.05) == np.mean(values[:5])
    assert cvar(values, 0.01) == -50.0
    assert cvar([7.0, 9.0], 0.05) == 7.0


def test_loss_probabilities_strictly_below_threshold():
    probs = loss_probabilities(np.array([-600.0, -1200.0, 100.0, -6000.0, -500.0]))
    assert list(probs) == [str(t) for t in LOSS_THRESHOLDS]
    assert probs == {"500": 0.6, "1000": 0.4, "2000": 0.2, "3000": 0.2, "5000": 0.2}


@pytest.mark.parametrize(
    "total,step,expected",
    [
        (1, 100, [1]),
        (100, 100, [1, 100]),
        (250, 100, [1, 100, 200, 250]),
        (12, 5, [1, 5, 10, 12]),
        (4, 1, [1, 2, 3, 4]),
    ],
)
def test_sample_run_indices(total, step, expected):
    assert sample_run_indices(total, step) == expected
    assert estimate_sample_count(total, step) == len(expected)


def test_best_and_worst_prefer_first_occurrence():
    assert best_and_worst([1.0, 5.0, 5.0, -2.0, -2.0]) == (2, 4)


def test_compute_aggregate_summary():
    finals = [float(v) for v in range(-50, 50)]
    agg = compute_aggregate(
        finals,
        [1.0] * 99 + [101.0],
        [100.0] * 100,
        [0.0] * 50 + [10.0] * 50,
        SelectedRuns(best_run_index=100, worst_run_index=1, sample_run_indices=[1, 100]),
    )
    assert agg.final_net.mean == -0.5
    assert agg.final_net.median == -0.5
    assert agg.final_net.min == -50 and agg.final_net.max == 49
    assert math.isclose(agg.final_net.stddev, float(np.std(finals)))
    assert agg.final_net.p_profit == 0.49
    assert agg.final_net.cvar_5 == -48.0
    assert agg.final_net.p01 < agg.final_net.p50 < agg.final_net.p99
    assert agg.max_drawdown.mean == 2.0
    assert agg.max_drawdown.median == 1.0
    assert agg.cash_in.median == 100.0
    assert agg.ending_balance.mean == 5.0
    assert agg.selected_runs.best_run_index == 100


# --- mixture model --------------------------------------------------------


def test_gamma_shape_block_has_unit_mean():
    values = sample_shape_block(MIXTURE_SETTINGS[Volatility.MEDIUM], create_rng("gamma"), 200_000)
    assert len(values) == 200_000
    assert abs(values.mean() - 1.0) < 0.02


def test_cap_adjustment_near_one_when_cap_does_not_bind():
    settings = MixtureSettings(p0=0.82, shape="lognormal", sigma=1.3, cap=1e12)
    factor = compute_cap_adjustment(settings, 4.9, create_rng("cap"), samples=200_000)
    assert abs(factor - 1.0) < 0.05


def test_cap_adjustment_compensates_binding_cap():
    settings = MixtureSettings(p0=0.82, shape="lognormal", sigma=1.3, cap=5.0)
    factor = compute_cap_adjustment(settings, 4.9, create_rng("cap"), samples=100_000)
    assert factor > 1.1
    assert compute_cap_adjustment(settings, 4.9, create_rng("cap"), samples=0) == 1.0


def test_mixture_model_zero_share_and_cap():
    model = MixturePayoutModel(Volatility.LOW, 88, cap_adjustment=1.05)
    stream = create_rng("mixture")
    draws = [model(stream) for _ in range(20_000)]
    zeros = sum(1 for d in draws if d == 0.0) / len(draws)
    assert abs(zeros - 0.55) < 0.02
    assert max(draws) <= 50 * 1.05
    assert math.isclose(model.mu_nonzero, 0.88 / 0.45)


@pytest.mark.parametrize("tier", list(Volatility))
def test_mixture_model_mean_matches_target(tier):
    _, cap_stream = create_streams(f"mean-{tier.value}")
    model = MixturePayoutModel.calibrated(tier, 0.88, cap_stream, samples=200_000)
    stream = create_rng(f"spins-{tier.value}")
    draws = np.array([model(stream) for _ in range(200_000)])
    assert abs(draws.mean() - 0.88) < 0.05


def test_mixture_model_mean_restored_when_cap_binds(monkeypatch):
    monkeypatch.setitem(
        MIXTURE_SETTINGS,
        Volatility.HIGH,
        MixtureSettings(p0=0.82, shape="lognormal", sigma=1.3, cap=8.0),
    )
    model = MixturePayoutModel.calibrated(Volatility.HIGH, 0.88, create_rng("bind-cap"), samples=400_000)
    assert model.cap_adjustment > 1.2

    stream = create_rng("bind-spins")
    draws = np.array([model(stream) for _ in range(300_000)])
    assert draws.max() <= 8.0 * model.cap_adjustment + 1e-9
    assert abs(draws.mean() - 0.88) < 0.02


# --- orchestrator ---------------------------------------------------------

CAP_SAMPLES = 20_000


def _simulate(inputs, **kwargs):
    kwargs.setdefault("cap_samples", CAP_SAMPLES)
    return simulate(inputs, **kwargs)


def test_default_payout_model_runs_cap_prepass(monkeypatch):
    calls = []
    real = mixture_module.compute_cap_adjustment

    def counting(settings, mu_nonzero, stream, samples):
        calls.append(samples)
        return real(settings, mu_nonzero, stream, samples)

    monkeypatch.setattr(mixture_module, "compute_cap_adjustment", counting)
    simulate(_small_inputs(coin_in_target=30, runs=2), cap_samples=1_000)
    assert calls == [1_000]

    simulate(_small_inputs(coin_in_target=30, runs=2), payout_model="bucketed")
    assert calls == [1_000]


def test_simulation_deterministic_with_seed():
    inputs = _small_inputs()
    first = _simulate(inputs)
    second = _simulate(inputs)
    assert first.status == second.status == "done"
    assert first.runs == second.runs
    assert first.result == second.result
    assert first.result.meta is None


def test_simulation_result_shapes():
    inputs = _small_inputs(runs=250, traj_points=40)
    run = _simulate(inputs)
    result = run.result
    assert len(result.runs) == 250
    assert [r.run_index for r in result.runs] == list(range(1, 251))
    assert result.trajectories.x_coin_in[-1] == 300
    assert len(result.trajectories.x_coin_in) == 40
    assert result.trajectories.sample_run_indices == [1, 100, 200, 250]
    assert all(len(s) == 40 for s in result.trajectories.samples)
    assert len(result.trajectories.typical_median) == 40
    best = result.aggregate.selected_runs.best_run_index
    worst = result.aggregate.selected_runs.worst_run_index
    assert result.runs[best - 1].final_net == result.aggregate.final_net.max
    assert result.runs[worst - 1].final_net == result.aggregate.final_net.min
    assert math.isclose(result.trajectories.best[-1], result.aggregate.final_net.max)
    assert math.isclose(result.trajectories.worst[-1], result.aggregate.final_net.min)
    assert all(r.spins == 200 for r in result.runs)
    assert all(r.ending_balance >= 0 for r in result.runs)


def test_progress_reported_every_percent():
    calls = []
    _simulate(_small_inputs(runs=250), progress_callback=lambda done, total: calls.append((done, total)))
    assert calls[0] == (2, 250)
    assert calls[-1] == (250, 250)
    assert len(calls) == 125


def test_cancel_observed_at_progress_point():
    token = CancelToken()

    def on_progress(done, total):
        token.cancel()

    run = _simulate(_small_inputs(runs=250), progress_callback=on_progress, cancel_token=token)
    assert run.status == "cancelled"
    assert run.result is None
    assert len(run.runs) == 2


def test_cancel_before_start_returns_no_sessions():
    token = CancelToken()
    token.cancel()
    run = _simulate(_small_inputs(), cancel_token=token)
    assert run.status == "cancelled"
    assert run.runs == []


def test_session_failure_aborts_run(monkeypatch):
    def boom(*args, **kwargs):
        raise ZeroDivisionError("bad spin")

    monkeypatch.setattr(engine_module, "run_session", boom)
    with pytest.raises(SimulationError, match="session 1 failed"):
        _simulate(_small_inputs())


def test_unknown_payout_model_rejected():
    with pytest.raises(ValueError):
        _simulate(_small_inputs(), payout_model="wheel")


def test_bucketed_model_simulation_is_reproducible():
    inputs = _small_inputs(volatility=Volatility.MEDIUM, runs=10)
    first = simulate(inputs, payout_model="bucketed")
    second = simulate(inputs, payout_model="bucketed")
    assert first.runs == second.runs
    assert first.runs != _simulate(inputs).runs
    assert all(r.ending_balance >= 0 for r in first.runs)


def test_resample_uses_new_step_without_resimulating():
    run = _simulate(_small_inputs(runs=250))
    resampled = run.resample(50)
    assert resampled.trajectories.sample_run_indices == [1, 50, 100, 150, 200, 250]
    assert resampled.aggregate.selected_runs.sample_run_indices == [1, 50, 100, 150, 200, 250]
    assert resampled.trajectories.samples[0] == run.result.trajectories.samples[0]
    assert resampled.runs == run.result.runs
    assert run.result.trajectories.sample_run_indices == [1, 100, 200, 250]


def test_result_round_trips_through_json():
    result = _simulate(_small_inputs()).result
    assert SimulationResult.model_validate(result.model_dump()) == result
    assert SimulationResult.model_validate_json(result.model_dump_json()) == result


def test_inputs_validation_and_derived_target():
    inputs = SimulationInputs()
    assert inputs.coin_in_target == 12_500
    assert inputs.volatility == Volatility.HIGH
    assert SimulationInputs(rtp_percent=100).rtp_percent == 100
    assert SimulationInputs(rtp_percent=0.95).rtp_percent == 0.95
    bad_inputs = [
        {"bet_size": 0},
        {"rtp_percent": float("nan")},
        {"rtp_percent": 150},
        {"runs": 0},
        {"deposit_amount": -5},
    ]
    for bad in bad_inputs:
        with pytest.raises(ValueError):
            SimulationInputs(**bad)
