# src/sir_calibration/calibrate.py
"""
Configuration and a single entry point that runs the whole calibration:
build the posterior, run the chain ensemble, pool and summarise.
"""

from dataclasses import dataclass, field, fields
import logging
import threading
from typing import Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .inference.diagnostics import DEFAULT_RHAT_THRESHOLD, summarise
from .inference.ensemble import ChainEnsemble, SampleSet, pool
from .inference.likelihood import DEFAULT_GAMMA, PARAMETERISATIONS, LikelihoodEvaluator
from .inference.sampler import Chain
from .model.forward_model import MultiGroupSIR

# Start logger
logger = logging.getLogger(__name__)


@dataclass
class CalibrationConfig:
    n_iterations: int = 5000
    n_chains: int = 3
    burnin: int = 1000
    initial_proposal_sd: Union[float, Tuple[float, ...]] = 0.001
    target_accept_rate: float = 0.234
    adapt_rate: float = 0.01
    seed_parameters: Tuple[float, ...] = (0.1, 0.15, 0.2)
    warmup: int = 100
    gamma: float = DEFAULT_GAMMA
    parameterisation: str = "per_group"
    random_seed: Optional[int] = None
    max_workers: int = 1
    rhat_threshold: float = DEFAULT_RHAT_THRESHOLD
    groups: Tuple[str, ...] = field(default=("1", "2", "3"))

    @classmethod
    def from_dict(cls, values: Mapping) -> "CalibrationConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ValueError(f"Unknown configuration options: {unknown}")
        return cls(**dict(values))

    def validate(self) -> "CalibrationConfig":
        """Raise ValueError for settings that cannot produce a usable ensemble."""
        if self.n_iterations < 1:
            raise ValueError("n_iterations must be >= 1")
        # R-hat compares chains: one chain cannot be summarised
        if self.n_chains < 2:
            raise ValueError("n_chains must be >= 2")
        if self.burnin < 0:
            raise ValueError("burnin must be >= 0")
        if self.burnin >= self.n_iterations:
            raise ValueError(f"burnin ({self.burnin}) must be smaller than n_iterations ({self.n_iterations})")
        if len(self.seed_parameters) != self.n_chains:
            raise ValueError(
                f"seed_parameters has {len(self.seed_parameters)} values for {self.n_chains} chains"
            )
        seeds = [np.asarray(s, dtype=float) for s in self.seed_parameters]
        if any(np.any(s <= 0) for s in seeds):
            raise ValueError("seed_parameters must be strictly positive")
        sds = np.atleast_1d(np.asarray(self.initial_proposal_sd, dtype=float))
        if sds.size not in (1, self.n_chains):
            raise ValueError("initial_proposal_sd must be a scalar or one value per chain")
        if np.any(sds <= 0):
            raise ValueError("initial_proposal_sd must be > 0")
        if not 0.0 < self.target_accept_rate < 1.0:
            raise ValueError("target_accept_rate must lie in (0, 1)")
        if self.adapt_rate < 0:
            raise ValueError("adapt_rate must be >= 0")
        if self.warmup < 1:
            raise ValueError("warmup must be >= 1")
        if self.gamma <= 0:
            raise ValueError("gamma must be > 0")
        if self.parameterisation not in PARAMETERISATIONS:
            raise ValueError(f"parameterisation must be one of {PARAMETERISATIONS}")
        return self


@dataclass
class CalibrationResult:
    chains: Tuple[Chain, ...]
    samples: SampleSet
    summary: pd.DataFrame


def build_evaluator(
    cfg: CalibrationConfig,
    observed: pd.DataFrame,
    initial_state: Optional[Mapping[str, float]] = None,
    time_grid: Optional[Sequence[float]] = None,
    model: Optional[MultiGroupSIR] = None,
) -> LikelihoodEvaluator:
    """Posterior over the configured parameterisation.

    The initial state defaults to the first observed row and the time grid
    to the observed index.
    """
    if model is None:
        model = MultiGroupSIR(groups=cfg.groups)
    if initial_state is None:
        initial_state = observed.iloc[0].to_dict()
    if time_grid is None:
        time_grid = observed.index.to_numpy(dtype=float)
    return LikelihoodEvaluator(
        model,
        observed,
        initial_state,
        time_grid,
        gamma=cfg.gamma,
        parameterisation=cfg.parameterisation,
    )


def run_calibration(
    cfg: CalibrationConfig,
    observed: pd.DataFrame,
    initial_state: Optional[Mapping[str, float]] = None,
    time_grid: Optional[Sequence[float]] = None,
    model: Optional[MultiGroupSIR] = None,
    cancel_event: Optional[threading.Event] = None,
) -> CalibrationResult:
    """Run the chains, drop burn-in and summarise the posterior."""
    cfg.validate()
    evaluator = build_evaluator(cfg, observed, initial_state, time_grid, model)

    ensemble = ChainEnsemble(evaluator.evaluate, evaluator.parameter_names, warmup=cfg.warmup)
    chains = ensemble.run_ensemble(
        n_chains=cfg.n_chains,
        seed_parameters=list(cfg.seed_parameters),
        iterations=cfg.n_iterations,
        initial_proposal_sd=cfg.initial_proposal_sd,
        target_accept_rate=cfg.target_accept_rate,
        adapt_rate=cfg.adapt_rate,
        random_seed=cfg.random_seed,
        max_workers=cfg.max_workers,
        cancel_event=cancel_event,
    )

    samples = pool(chains, cfg.burnin)
    summary = summarise(samples, threshold=cfg.rhat_threshold)
    logger.info("Calibration summary:\n%s", summary.to_string())
    return CalibrationResult(chains=chains, samples=samples, summary=summary)
