import threading

import numpy as np
import pytest
from scipy.stats import gamma as scipy_gamma

from sir_calibration.inference.diagnostics import InsufficientDataError
from sir_calibration.inference.ensemble import ChainEnsemble, pool
from sir_calibration.inference.sampler import ChainCancelled


def gamma_log_density(theta):
    return float(np.sum(scipy_gamma.logpdf(theta, a=20.0, scale=1.0 / 50.0)))


def flat_log_density(theta):
    return 0.0


def test_run_ensemble_returns_independent_chains_in_order():
    ensemble = ChainEnsemble(gamma_log_density, ["beta"])
    chains = ensemble.run_ensemble(
        n_chains=3,
        seed_parameters=[0.1, 0.15, 0.2],
        iterations=400,
        initial_proposal_sd=0.01,
        random_seed=11,
    )

    assert [c.chain_id for c in chains] == [0, 1, 2]
    assert [c.samples[0, 0] for c in chains] == [0.1, 0.15, 0.2]
    assert all(c.iterations == 400 for c in chains)
    # separate generators: the chains do not move in lockstep
    assert not np.array_equal(chains[0].samples[1:], chains[1].samples[1:])


def test_per_chain_proposal_sd():
    ensemble = ChainEnsemble(flat_log_density, ["beta"])
    chains = ensemble.run_ensemble(
        n_chains=2,
        seed_parameters=[10.0, 10.0],
        iterations=5,
        initial_proposal_sd=[0.01, 0.02],
        random_seed=3,
    )
    assert chains[0].proposal_sd[0] == 0.01
    assert chains[1].proposal_sd[0] == 0.02


def test_random_seed_reproducible_and_threads_match_sequential():
    """
    Chains own their generators, so running them on threads gives exactly
    the same samples as running them one after another.
    """
    ensemble = ChainEnsemble(gamma_log_density, ["beta"])
    kwargs = dict(n_chains=3, seed_parameters=[0.1, 0.15, 0.2], iterations=300, initial_proposal_sd=0.01, random_seed=5)

    sequential = ensemble.run_ensemble(**kwargs)
    again = ensemble.run_ensemble(**kwargs)
    threaded = ensemble.run_ensemble(max_workers=3, **kwargs)

    for a, b, c in zip(sequential, again, threaded):
        assert np.array_equal(a.samples, b.samples)
        assert np.array_equal(a.samples, c.samples)
        assert a.chain_id == c.chain_id


def test_seed_count_must_match_chains():
    ensemble = ChainEnsemble(flat_log_density, ["beta"])
    with pytest.raises(ValueError):
        ensemble.run_ensemble(n_chains=3, seed_parameters=[0.1, 0.2], iterations=10)


def test_cancel_event_stops_every_chain():
    event = threading.Event()
    event.set()
    ensemble = ChainEnsemble(flat_log_density, ["beta"])
    with pytest.raises(ChainCancelled):
        ensemble.run_ensemble(n_chains=2, seed_parameters=[1.0, 1.0], iterations=50, cancel_event=event)
    with pytest.raises(ChainCancelled):
        ensemble.run_ensemble(n_chains=2, seed_parameters=[1.0, 1.0], iterations=50, cancel_event=event, max_workers=2)


def test_failing_chain_leaves_caller_event_unset():
    """
    A chain that raises stops the run, but the caller's cancel event stays
    clear and can be passed to the next run.
    """
    def failing_above_five(theta):
        if theta[0] > 5.0:
            raise RuntimeError("integration failed")
        return 0.0

    event = threading.Event()
    ensemble = ChainEnsemble(failing_above_five, ["beta"])
    with pytest.raises(RuntimeError, match="integration failed"):
        ensemble.run_ensemble(
            n_chains=2, seed_parameters=[1.0, 10.0], iterations=200, max_workers=2, cancel_event=event
        )
    assert not event.is_set()

    chains = ensemble.run_ensemble(
        n_chains=2, seed_parameters=[1.0, 2.0], iterations=50, max_workers=2, cancel_event=event
    )
    assert [c.iterations for c in chains] == [50, 50]


def test_pool_trims_burnin():
    """
    5000-long chains with a burn-in of 1000 keep 4000 samples each.
    """
    ensemble = ChainEnsemble(flat_log_density, ["beta1", "beta2"])
    chains = ensemble.run_ensemble(
        n_chains=3, seed_parameters=[1.0, 1.5, 2.0], iterations=5000, initial_proposal_sd=0.01, random_seed=1
    )

    samples = ensemble.pool(chains, burnin=1000)

    assert samples.per_chain.shape == (3, 4000, 2)
    assert samples.pooled.shape == (12000, 2)
    assert samples.n_chains == 3
    assert samples.n_samples == 4000
    assert np.array_equal(samples.per_chain[1], chains[1].samples[1000:])
    # pooled view is the per-chain data concatenated
    assert np.array_equal(samples.pooled[4000:8000], chains[1].samples[1000:])
    assert np.array_equal(samples.parameter("beta2"), samples.per_chain[:, :, 1])
    # chains are untouched
    assert all(c.iterations == 5000 for c in chains)


def test_pool_rejects_burnin_covering_chain():
    ensemble = ChainEnsemble(flat_log_density, ["beta"])
    chains = ensemble.run_ensemble(n_chains=2, seed_parameters=[1.0, 1.0], iterations=100, random_seed=1)

    with pytest.raises(InsufficientDataError):
        pool(chains, burnin=100)
    with pytest.raises(InsufficientDataError):
        pool(chains, burnin=150)
    with pytest.raises(ValueError):
        pool(chains, burnin=-1)
    with pytest.raises(InsufficientDataError):
        pool([], burnin=0)

    assert pool(chains, burnin=99).per_chain.shape == (2, 1, 1)


def test_pool_requires_equal_lengths():
    ensemble = ChainEnsemble(flat_log_density, ["beta"])
    short = ensemble.run_ensemble(n_chains=1, seed_parameters=[1.0], iterations=50, random_seed=1)
    long = ensemble.run_ensemble(n_chains=1, seed_parameters=[1.0], iterations=60, random_seed=2)
    with pytest.raises(ValueError):
        pool(short + long, burnin=10)


def test_sample_set_frame():
    ensemble = ChainEnsemble(flat_log_density, ["beta"])
    chains = ensemble.run_ensemble(n_chains=2, seed_parameters=[1.0, 2.0], iterations=30, random_seed=4)
    df = pool(chains, burnin=10).to_frame()

    assert list(df.columns) == ["chain", "iteration", "beta"]
    assert len(df) == 40
    assert df["iteration"].min() == 10
    assert df["iteration"].max() == 29
    assert sorted(df["chain"].unique()) == [0, 1]
    with pytest.raises(KeyError):
        pool(chains, burnin=10).parameter("gamma")
