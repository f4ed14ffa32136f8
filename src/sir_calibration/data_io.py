# src/sir_calibration/data_io.py
# CSV input and output around the estimation core: observed tables and
# long-format chain samples.

from pathlib import Path
from typing import Sequence

import numpy as np
import pandas as pd

from .inference.ensemble import SampleSet
from .inference.diagnostics import InsufficientDataError
from .inference.sampler import Chain

SAMPLE_META_COLUMNS = ["chain", "iteration", "log_density", "proposal_sd"]


def _ensure_parent(path) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    return p


def write_observations(observed: pd.DataFrame, path) -> Path:
    """Write an observed table with a leading ``time`` column."""
    p = _ensure_parent(path)
    observed.to_csv(p, index_label="time")
    return p


def read_observations(path) -> pd.DataFrame:
    """Read an observed table written by write_observations (index = time)."""
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Observed CSV not found: {path}")
    df = pd.read_csv(p)
    if "time" not in df.columns:
        raise ValueError(f"No 'time' column in {path}")
    df = df.set_index("time")
    df.index = df.index.astype(float)
    return df.astype(float)


def chains_to_frame(chains: Sequence[Chain]) -> pd.DataFrame:
    """Long table of full chains: chain, iteration, log_density, proposal_sd, parameters."""
    frames = []
    for c in chains:
        df = pd.DataFrame(c.samples, columns=list(c.parameter_names))
        df.insert(0, "proposal_sd", c.proposal_sd)
        df.insert(0, "log_density", c.log_densities)
        df.insert(0, "iteration", np.arange(c.iterations))
        df.insert(0, "chain", c.chain_id)
        frames.append(df)
    return pd.concat(frames, ignore_index=True)


def write_samples(chains: Sequence[Chain], path) -> Path:
    p = _ensure_parent(path)
    chains_to_frame(chains).to_csv(p, index=False)
    return p


def read_sample_set(path, burnin: int) -> SampleSet:
    """Load a samples CSV written by write_samples and drop ``burnin`` iterations per chain."""
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Samples CSV not found: {path}")
    df = pd.read_csv(p)
    missing = [c for c in ("chain", "iteration") if c not in df.columns]
    if missing:
        raise ValueError(f"Samples CSV missing columns: {missing}")
    names = tuple(c for c in df.columns if c not in SAMPLE_META_COLUMNS)
    if not names:
        raise ValueError("Samples CSV has no parameter columns")
    if burnin < 0:
        raise ValueError("burnin must be >= 0")

    kept = df[df["iteration"] >= burnin].sort_values(["chain", "iteration"])
    if kept.empty:
        raise InsufficientDataError(f"No samples left after a burn-in of {burnin}")

    groups = [g for _, g in kept.groupby("chain", sort=True)]
    lengths = {len(g) for g in groups}
    if len(lengths) != 1:
        raise ValueError(f"Chains have different lengths after burn-in: {sorted(lengths)}")

    per_chain = np.stack([g[list(names)].to_numpy(dtype=float) for g in groups])
    return SampleSet(
        parameter_names=names,
        chain_ids=tuple(int(g["chain"].iloc[0]) for g in groups),
        per_chain=per_chain,
        burnin=int(burnin),
    )
