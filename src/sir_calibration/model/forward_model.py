# src/sir_calibration/model/forward_model.py
# Deterministic multi-group SIR simulator used as the forward model
# for calibration, plus a helper that generates synthetic observations.

import logging
from typing import Dict, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from numpy.random import Generator
from scipy.integrate import solve_ivp

logger = logging.getLogger(__name__)

# Age groups used throughout the package
DEFAULT_GROUPS: Tuple[str, ...] = ("1", "2", "3")

# Ground truth used to generate the synthetic observed data
DEFAULT_TRUE_PARAMETERS: Dict[str, float] = {
    "beta1": 0.4,
    "beta2": 0.3,
    "beta3": 0.25,
    "gamma": 0.1,
}

COMPARTMENTS: Tuple[str, ...] = ("S", "I", "R")


def compartment_names(groups: Sequence[str] = DEFAULT_GROUPS) -> Tuple[str, ...]:
    """Return compartment column names ordered group by group: S1, I1, R1, S2, ..."""
    return tuple(f"{c}{g}" for g in groups for c in COMPARTMENTS)


def default_initial_state(groups: Sequence[str] = DEFAULT_GROUPS) -> Dict[str, float]:
    """Initial compartment counts: 1000 people per group, a few infections in each.

    Recovered compartments start at one case so every simulated rate is
    strictly positive from the first time point.
    """
    seeds = [10.0, 4.0, 2.0]
    state = {}
    for k, g in enumerate(groups):
        infected = seeds[k] if k < len(seeds) else 1.0
        state[f"S{g}"] = 1000.0 - infected - 1.0
        state[f"I{g}"] = infected
        state[f"R{g}"] = 1.0
    return state


def default_time_grid(max_days: int = 100, step: float = 1.0) -> np.ndarray:
    """Daily time points 0..max_days inclusive."""
    if max_days < 1:
        raise ValueError("max_days must be >= 1")
    return np.arange(0.0, max_days + step / 2, step)


class MultiGroupSIR:
    """SIR model with one transmission rate per group and a shared recovery rate.

    Groups mix homogeneously: the force of infection on group g is
    ``beta_g * I_total / N_total`` where the totals are taken over all groups.

    Parameters are passed as a mapping with keys ``beta<g>`` for every group
    and ``gamma``. The initial state is a mapping with keys ``S<g>``, ``I<g>``
    and ``R<g>``; its key order fixes the column order of the output.
    """

    def __init__(self, groups: Sequence[str] = DEFAULT_GROUPS, rtol: float = 1e-6, atol: float = 1e-6):
        if len(groups) == 0:
            raise ValueError("At least one group is required")
        self.groups = tuple(str(g) for g in groups)
        self.rtol = rtol
        self.atol = atol

    @property
    def compartments(self) -> Tuple[str, ...]:
        return compartment_names(self.groups)

    def _state_index(self, names: Sequence[str]) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        # Positions of S, I, R for every group inside the caller's ordering
        position = {name: k for k, name in enumerate(names)}
        missing = [c for c in self.compartments if c not in position]
        if missing:
            raise ValueError(f"initial_state is missing compartments: {missing}")
        extra = [c for c in names if c not in self.compartments]
        if extra:
            raise ValueError(f"initial_state has unknown compartments: {extra}")
        s_idx = np.array([position[f"S{g}"] for g in self.groups])
        i_idx = np.array([position[f"I{g}"] for g in self.groups])
        r_idx = np.array([position[f"R{g}"] for g in self.groups])
        return s_idx, i_idx, r_idx

    def _rates(self, parameters: Mapping[str, float]) -> Tuple[np.ndarray, float]:
        missing = [f"beta{g}" for g in self.groups if f"beta{g}" not in parameters]
        if "gamma" not in parameters:
            missing.append("gamma")
        if missing:
            raise ValueError(f"parameters missing: {missing}")
        betas = np.array([float(parameters[f"beta{g}"]) for g in self.groups])
        return betas, float(parameters["gamma"])

    def integrate(
        self,
        parameters: Mapping[str, float],
        initial_state: Mapping[str, float],
        time_grid: Sequence[float],
    ) -> pd.DataFrame:
        """Integrate the model over ``time_grid``.

        Args:
            parameters: ``beta<g>`` for every group and ``gamma``.
            initial_state: compartment counts at ``time_grid[0]``.
            time_grid: strictly increasing time points (at least two).
        Returns:
            DataFrame indexed by time with one column per compartment,
            in the order of ``initial_state``.
        Raises:
            ValueError: bad parameters, state or time grid.
            RuntimeError: the integrator did not succeed.
        """
        t = np.asarray(time_grid, dtype=float)
        if t.ndim != 1 or t.size < 2:
            raise ValueError("time_grid must be a 1D sequence with at least two points")
        if np.any(np.diff(t) <= 0):
            raise ValueError("time_grid must be strictly increasing")

        names = list(initial_state)
        s_idx, i_idx, r_idx = self._state_index(names)
        betas, gamma = self._rates(parameters)

        y0 = np.array([float(initial_state[n]) for n in names])
        n_total = float(y0.sum())
        if n_total <= 0:
            raise ValueError("Total population must be > 0")

        def rhs(_t, y):
            S = y[s_idx]
            I = y[i_idx]
            force = I.sum() / n_total
            infections = betas * S * force
            recoveries = gamma * I
            dy = np.empty_like(y)
            dy[s_idx] = -infections
            dy[i_idx] = infections - recoveries
            dy[r_idx] = recoveries
            return dy

        sol = solve_ivp(
            rhs,
            (t[0], t[-1]),
            y0,
            method="LSODA",
            t_eval=t,
            rtol=self.rtol,
            atol=self.atol,
        )
        if not sol.success:
            raise RuntimeError(f"SIR integration failed: {sol.message}")

        return pd.DataFrame(sol.y.T, index=pd.Index(t, name="time"), columns=names)


def simulate_observations(
    model: MultiGroupSIR,
    true_parameters: Optional[Mapping[str, float]] = None,
    initial_state: Optional[Mapping[str, float]] = None,
    time_grid: Optional[Sequence[float]] = None,
    rng: Optional[Generator] = None,
) -> pd.DataFrame:
    """Generate an observed data table from known parameters.

    Without ``rng`` the table is the noise-free model output, which makes the
    calibration a self-consistency check against the ground truth. With an
    ``rng`` every entry is replaced by a Poisson draw around it.
    """
    if true_parameters is None:
        true_parameters = DEFAULT_TRUE_PARAMETERS
    if initial_state is None:
        initial_state = default_initial_state(model.groups)
    if time_grid is None:
        time_grid = default_time_grid()

    observed = model.integrate(true_parameters, initial_state, time_grid)
    if rng is not None:
        rates = np.clip(observed.to_numpy(), 0.0, None)
        observed = pd.DataFrame(rng.poisson(rates).astype(float), index=observed.index, columns=observed.columns)

    logger.debug("Simulated observations shape: %s", observed.shape)
    return observed
