# src/sir_calibration/inference/posterior.py
from typing import Optional, Sequence

import numpy as np
import pandas as pd
from scipy.stats import gaussian_kde

from .sampler import Chain

# ---------- numeric series for external plotting ----------


def trace_series(chains: Sequence[Chain], name: str) -> pd.DataFrame:
    """Full trace of one parameter: index = iteration, one column per chain."""
    data = {f"chain_{c.chain_id}": c.parameter(name) for c in chains}
    df = pd.DataFrame(data)
    df.index.name = "iteration"
    return df


def posterior_density(samples: np.ndarray, grid_size: int = 200, grid: Optional[np.ndarray] = None) -> pd.DataFrame:
    """Kernel density estimate of pooled samples on an evenly spaced grid."""
    x = np.asarray(samples, dtype=float).ravel()
    if x.size < 2 or np.ptp(x) == 0:
        raise ValueError("Cannot estimate a density from fewer than two distinct samples")
    kde = gaussian_kde(x)
    if grid is None:
        pad = 0.1 * np.ptp(x)
        grid = np.linspace(x.min() - pad, x.max() + pad, grid_size)
    return pd.DataFrame({"value": grid, "density": kde(grid)})


def chain_summary(chains: Sequence[Chain]) -> pd.DataFrame:
    """Acceptance and proposal-scale bookkeeping, one row per chain."""
    rows = []
    for c in chains:
        row = {
            "chain": c.chain_id,
            "iterations": c.iterations,
            "acceptance_rate": c.acceptance_rate,
            "final_proposal_sd": c.final_proposal_sd,
        }
        for k, name in enumerate(c.parameter_names):
            row[f"seed_{name}"] = float(c.seed_parameter[k])
        rows.append(row)
    return pd.DataFrame(rows).set_index("chain")
