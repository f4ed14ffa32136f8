#!/usr/bin/env python3
# src/sir_calibration/inference/likelihood.py
"""
Posterior log-density for the SIR transmission rates: Poisson count
likelihood of the observed table against the forward model, plus a Beta(2, 2)
prior on every rate.
"""

from __future__ import annotations

import logging
from typing import Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.special import gammaln
from scipy.stats import beta as scipy_beta

from ..model.forward_model import DEFAULT_GROUPS, MultiGroupSIR

logger = logging.getLogger(__name__)

# Log-density assigned to proposals that must never be accepted
# (non-positive components, zero prior mass, failed integration).
# It is below every finite log-density, so a finite current state
# always wins the acceptance test against it.
REJECTED_LOG_DENSITY = -np.inf

# Contribution of a single observation whose simulated rate is <= 0
DEGENERATE_RATE_LOG_DENSITY = -1e6

PRIOR_A = 2.0
PRIOR_B = 2.0
DEFAULT_GAMMA = 0.1

PARAMETERISATIONS = ("per_group", "shared")


def parameter_names(groups: Sequence[str] = DEFAULT_GROUPS, parameterisation: str = "per_group") -> Tuple[str, ...]:
    """Names of the free parameters for a parameterisation.

    ``per_group`` estimates one transmission rate per group, ``shared``
    estimates a single rate applied to every group.
    """
    if parameterisation == "per_group":
        return tuple(f"beta{g}" for g in groups)
    if parameterisation == "shared":
        return ("beta",)
    raise ValueError(f"Unknown parameterisation {parameterisation!r}, expected one of {PARAMETERISATIONS}")


def to_model_parameters(
    theta: Sequence[float],
    groups: Sequence[str] = DEFAULT_GROUPS,
    gamma: float = DEFAULT_GAMMA,
    parameterisation: str = "per_group",
) -> dict:
    """Expand a free-parameter vector into the forward model's parameter map."""
    theta = np.atleast_1d(np.asarray(theta, dtype=float))
    if parameterisation == "shared":
        params = {f"beta{g}": float(theta[0]) for g in groups}
    elif parameterisation == "per_group":
        params = {f"beta{g}": float(v) for g, v in zip(groups, theta)}
    else:
        raise ValueError(f"Unknown parameterisation {parameterisation!r}")
    params["gamma"] = float(gamma)
    return params


def poisson_log_likelihood(observed_counts: np.ndarray, rates: np.ndarray) -> float:
    """Poisson log-likelihood summed over every entry; uses gammaln for factorials.

    ``observed_counts`` are used as given (callers round them up first).
    Entries whose rate is not strictly positive and finite contribute
    DEGENERATE_RATE_LOG_DENSITY instead of raising a domain error.
    """
    k = np.asarray(observed_counts, dtype=float)
    lam = np.asarray(rates, dtype=float)
    if k.shape != lam.shape:
        raise ValueError(f"Observed shape {k.shape} does not match simulated shape {lam.shape}")

    valid = np.isfinite(lam) & (lam > 0.0)
    safe = np.where(valid, lam, 1.0)
    terms = k * np.log(safe) - safe - gammaln(k + 1.0)
    terms = np.where(valid, terms, DEGENERATE_RATE_LOG_DENSITY)
    return float(terms.sum())


def log_prior(theta: Sequence[float]) -> float:
    """Independent Beta(2, 2) log-density per component; -inf outside (0, 1)."""
    theta = np.atleast_1d(np.asarray(theta, dtype=float))
    return float(np.sum(scipy_beta.logpdf(theta, PRIOR_A, PRIOR_B)))


class LikelihoodEvaluator:
    """Unnormalised log posterior of the transmission rates.

    The observed table must be indexed like ``time_grid`` and carry one column
    per compartment, in the same order as ``initial_state``. Observed values
    are rounded up to whole counts once, at construction.

    ``evaluate`` never raises for a candidate with non-positive components;
    it returns REJECTED_LOG_DENSITY instead.
    """

    def __init__(
        self,
        model: MultiGroupSIR,
        observed: pd.DataFrame,
        initial_state: Mapping[str, float],
        time_grid: Sequence[float],
        gamma: float = DEFAULT_GAMMA,
        parameterisation: str = "per_group",
    ):
        self.model = model
        self.initial_state = dict(initial_state)
        self.time_grid = np.asarray(time_grid, dtype=float)
        self.gamma = float(gamma)
        self.parameterisation = parameterisation
        self.parameter_names = parameter_names(model.groups, parameterisation)

        columns = list(self.initial_state)
        if list(observed.columns) != columns:
            raise ValueError(
                f"Observed columns {list(observed.columns)} do not match compartment order {columns}"
            )
        if len(observed) != self.time_grid.size:
            raise ValueError(
                f"Observed data has {len(observed)} rows but the time grid has {self.time_grid.size} points"
            )
        if not np.allclose(observed.index.to_numpy(dtype=float), self.time_grid):
            raise ValueError("Observed time index does not match the time grid")
        values = observed.to_numpy(dtype=float)
        if not np.all(np.isfinite(values)) or np.any(values < 0):
            raise ValueError("Observed counts must be finite and non-negative")

        # count-data assumption: round observations up to whole cases
        self.observed_counts = np.ceil(values)

    @property
    def n_parameters(self) -> int:
        return len(self.parameter_names)

    def simulate(self, theta: Sequence[float]) -> pd.DataFrame:
        params = to_model_parameters(theta, self.model.groups, self.gamma, self.parameterisation)
        return self.model.integrate(params, self.initial_state, self.time_grid)

    def log_likelihood(self, theta: Sequence[float]) -> float:
        try:
            simulated = self.simulate(theta)
        except RuntimeError as exc:
            logger.debug("Forward model failed at %s: %s", theta, exc)
            return REJECTED_LOG_DENSITY
        return poisson_log_likelihood(self.observed_counts, simulated.to_numpy(dtype=float))

    def max_log_likelihood(self) -> float:
        """Saturated log-likelihood: every simulated rate equal to its observed count."""
        k = self.observed_counts
        positive = k > 0
        terms = np.zeros_like(k)
        terms[positive] = k[positive] * np.log(k[positive]) - k[positive] - gammaln(k[positive] + 1.0)
        return float(terms.sum())

    def evaluate(self, theta: Sequence[float]) -> float:
        theta = np.atleast_1d(np.asarray(theta, dtype=float))
        if theta.shape != (self.n_parameters,):
            raise ValueError(f"Expected {self.n_parameters} parameters, got shape {theta.shape}")
        if not np.all(np.isfinite(theta)) or np.any(theta <= 0.0):
            return REJECTED_LOG_DENSITY

        lp = log_prior(theta)
        # zero prior mass: skip the integration
        if not np.isfinite(lp):
            return REJECTED_LOG_DENSITY

        total = lp + self.log_likelihood(theta)
        if np.isnan(total):
            return REJECTED_LOG_DENSITY
        return total

    __call__ = evaluate


def evaluate(
    parameter: Sequence[float],
    observed_data: pd.DataFrame,
    initial_state: Mapping[str, float],
    time_grid: Sequence[float],
    model: Optional[MultiGroupSIR] = None,
    gamma: float = DEFAULT_GAMMA,
    parameterisation: str = "per_group",
) -> float:
    """One-shot log posterior; builds a LikelihoodEvaluator and evaluates ``parameter``."""
    if model is None:
        model = MultiGroupSIR()
    evaluator = LikelihoodEvaluator(
        model,
        observed_data,
        initial_state,
        time_grid,
        gamma=gamma,
        parameterisation=parameterisation,
    )
    return evaluator.evaluate(parameter)
