import numpy as np
import pytest

from sir_calibration.inference.diagnostics import (
    InsufficientDataError,
    autocovariance,
    effective_sample_size,
    rhat,
    summarise,
)
from sir_calibration.inference.ensemble import SampleSet


def ar1_chains(phi, m, n, rng):
    x = np.zeros((m, n))
    noise = rng.normal(size=(m, n))
    for t in range(1, n):
        x[:, t] = phi * x[:, t - 1] + noise[:, t]
    return x


def test_identical_constant_chains_give_exactly_one():
    chains = np.full((3, 100), 0.25)
    assert rhat(chains) == 1.0


def test_different_constant_chains_flag_degenerate_variance():
    chains = np.array([np.full(50, 0.2), np.full(50, 0.3)])
    assert rhat(chains) == np.inf


def test_disjoint_chains_exceed_threshold():
    rng = np.random.default_rng(123)
    chains = np.array([rng.uniform(0.0, 1.0, 1000), rng.uniform(2.0, 3.0, 1000), rng.uniform(4.0, 5.0, 1000)])
    assert rhat(chains) > 1.1


def test_chains_from_same_distribution_are_close_to_one():
    rng = np.random.default_rng(123)
    chains = rng.normal(0.4, 0.01, size=(4, 2000))
    assert rhat(chains) == pytest.approx(1.0, abs=0.01)


def test_rhat_matches_hand_computation():
    x = np.array([[1.0, 2.0, 3.0, 4.0], [2.0, 4.0, 6.0, 8.0]])
    n = 4
    W = np.mean([np.var(x[0], ddof=1), np.var(x[1], ddof=1)])
    B = n * np.var([2.5, 5.0], ddof=1)
    expected = np.sqrt(((n - 1) / n * W + B / n) / W)
    assert rhat(x) == pytest.approx(expected)
    # a list of sequences is accepted too
    assert rhat([list(x[0]), list(x[1])]) == pytest.approx(expected)


def test_rhat_needs_two_chains():
    rng = np.random.default_rng(1)
    with pytest.raises(InsufficientDataError):
        rhat(rng.normal(size=(1, 100)))
    with pytest.raises(InsufficientDataError):
        rhat(rng.normal(size=100))
    with pytest.raises(InsufficientDataError):
        rhat(np.zeros((3, 1)))
    with pytest.raises(InsufficientDataError):
        rhat(np.zeros((3, 0)))
    # InsufficientDataError is a ValueError
    with pytest.raises(ValueError):
        rhat(rng.normal(size=(1, 100)))


def test_ragged_chains_raise():
    with pytest.raises(ValueError):
        rhat([[1.0, 2.0, 3.0], [1.0, 2.0]])


def test_autocovariance_lag_zero_is_variance():
    rng = np.random.default_rng(3)
    x = rng.normal(size=500)
    acov = autocovariance(x)
    assert acov.shape == (500,)
    assert acov[0] == pytest.approx(np.var(x))


def test_ess_of_independent_draws_is_close_to_sample_count():
    rng = np.random.default_rng(42)
    chains = rng.normal(size=(4, 1000))
    ess = effective_sample_size(chains)
    assert 0.7 * 4000 < ess < 1.3 * 4000


def test_ess_shrinks_with_autocorrelation():
    """
    AR(1) with phi = 0.9 has an integrated autocorrelation time of 19.
    """
    rng = np.random.default_rng(42)
    chains = ar1_chains(0.9, 4, 2000, rng)
    ess = effective_sample_size(chains)
    expected = 8000 * (1 - 0.9) / (1 + 0.9)
    assert 0.5 * expected < ess < 2.0 * expected


def test_ess_single_chain_and_constant_chains():
    rng = np.random.default_rng(8)
    assert effective_sample_size(rng.normal(size=500)) > 300
    assert effective_sample_size(np.full((3, 10), 0.4)) == 30.0
    with pytest.raises(InsufficientDataError):
        effective_sample_size(np.zeros((2, 1)))


def test_summarise_table():
    rng = np.random.default_rng(5)
    good = rng.normal(0.4, 0.01, size=(3, 500))
    bad = np.stack([rng.normal(mu, 0.01, size=500) for mu in (0.1, 0.2, 0.3)])
    samples = SampleSet(
        parameter_names=("beta1", "beta2"),
        chain_ids=(0, 1, 2),
        per_chain=np.stack([good, bad], axis=-1),
        burnin=0,
    )

    summary = summarise(samples)

    assert list(summary.index) == ["beta1", "beta2"]
    for col in ("mean", "sd", "q2.5", "q50", "q97.5", "rhat", "ess", "converged"):
        assert col in summary.columns
    assert summary.loc["beta1", "mean"] == pytest.approx(0.4, abs=0.005)
    assert bool(summary.loc["beta1", "converged"])
    assert not bool(summary.loc["beta2", "converged"])
    assert summary.loc["beta1", "q2.5"] < summary.loc["beta1", "q50"] < summary.loc["beta1", "q97.5"]


def test_summarise_single_chain_is_an_error():
    samples = SampleSet(
        parameter_names=("beta",),
        chain_ids=(0,),
        per_chain=np.random.default_rng(1).normal(size=(1, 100, 1)),
        burnin=0,
    )
    with pytest.raises(InsufficientDataError):
        summarise(samples)
