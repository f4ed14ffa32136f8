import numpy as np
import pytest

from sir_calibration.inference.ensemble import ChainEnsemble
from sir_calibration.inference.posterior import chain_summary, posterior_density, trace_series


def flat_log_density(theta):
    return 0.0


def make_chains():
    ensemble = ChainEnsemble(flat_log_density, ["beta1", "beta2"])
    return ensemble.run_ensemble(n_chains=2, seed_parameters=[1.0, 2.0], iterations=50, random_seed=9)


def test_trace_series_one_column_per_chain():
    chains = make_chains()
    trace = trace_series(chains, "beta2")

    assert list(trace.columns) == ["chain_0", "chain_1"]
    assert trace.index.name == "iteration"
    assert len(trace) == 50
    assert np.array_equal(trace["chain_1"].to_numpy(), chains[1].samples[:, 1])


def test_posterior_density_integrates_to_about_one():
    rng = np.random.default_rng(4)
    samples = rng.normal(0.3, 0.02, size=5000)

    density = posterior_density(samples, grid_size=400)

    assert list(density.columns) == ["value", "density"]
    dx = density["value"].iloc[1] - density["value"].iloc[0]
    assert float(density["density"].sum() * dx) == pytest.approx(1.0, abs=0.05)
    peak = density["value"].iloc[int(density["density"].argmax())]
    assert peak == pytest.approx(0.3, abs=0.01)


def test_posterior_density_of_constant_samples_raises():
    with pytest.raises(ValueError):
        posterior_density(np.full(100, 0.4))


def test_chain_summary_rows():
    chains = make_chains()
    table = chain_summary(chains)

    assert list(table.index) == [0, 1]
    assert table.loc[1, "seed_beta1"] == 2.0
    assert table.loc[0, "iterations"] == 50
    assert np.all((table["acceptance_rate"] >= 0) & (table["acceptance_rate"] <= 1))
