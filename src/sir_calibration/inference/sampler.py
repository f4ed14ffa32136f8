# src/sir_calibration/inference/sampler.py
# Random-walk Metropolis-Hastings with Robbins-Monro scaling of the
# proposal standard deviation. One sampler instance drives one chain.

import enum
import logging
import math
import threading
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Tuple

import numpy as np
from numpy.random import Generator, default_rng

from .likelihood import REJECTED_LOG_DENSITY

logger = logging.getLogger(__name__)

DEFAULT_WARMUP = 100


class SamplerState(enum.Enum):
    INITIALIZED = "initialized"
    RUNNING = "running"
    COMPLETED = "completed"


class ChainCancelled(RuntimeError):
    """Raised when a run is stopped through its cancel event."""


@dataclass(frozen=True)
class Chain:
    """Frozen output of one sampler run.

    samples        : (iterations, K) array, one row per iteration (accepted or repeated)
    log_densities  : (iterations,) log posterior of each row
    proposal_sd    : (iterations,) proposal scale in force after each iteration
    n_accepted     : accepted proposals over iterations 1..iterations-1
    """

    chain_id: int
    parameter_names: Tuple[str, ...]
    samples: np.ndarray
    log_densities: np.ndarray
    proposal_sd: np.ndarray
    n_accepted: int

    @property
    def iterations(self) -> int:
        return int(self.samples.shape[0])

    @property
    def seed_parameter(self) -> np.ndarray:
        return self.samples[0]

    @property
    def acceptance_rate(self) -> float:
        if self.iterations < 2:
            return 0.0
        return self.n_accepted / (self.iterations - 1)

    @property
    def final_proposal_sd(self) -> float:
        return float(self.proposal_sd[-1])

    def parameter(self, name: str) -> np.ndarray:
        return self.samples[:, self.parameter_names.index(name)]


def adapt_proposal_sd(proposal_sd: float, acceptance_rate: float, target_accept_rate: float, adapt_rate: float) -> float:
    """One Robbins-Monro step: grow the scale when accepting too often, shrink it otherwise."""
    return proposal_sd * math.exp(adapt_rate * (acceptance_rate - target_accept_rate))


def log_acceptance_ratio(candidate_log_density: float, current_log_density: float) -> float:
    """Difference of log-densities, defined for rejected (-inf) states.

    A rejected candidate never wins; a finite candidate always beats a
    rejected current state.
    """
    if candidate_log_density == REJECTED_LOG_DENSITY:
        return -math.inf
    if current_log_density == REJECTED_LOG_DENSITY:
        return math.inf
    return candidate_log_density - current_log_density


def metropolis_accept(candidate_log_density: float, current_log_density: float, rng: Generator) -> bool:
    # 1 - U lies in (0, 1], so the log is finite
    log_u = math.log1p(-rng.random())
    return log_u < log_acceptance_ratio(candidate_log_density, current_log_density)


class AdaptiveMetropolisSampler:
    """Adaptive random-walk Metropolis sampler for a strictly positive parameter vector.

    Args:
        log_density: callable mapping a (K,) array to a log posterior
            (for example LikelihoodEvaluator.evaluate).
        parameter_names: names of the K components.
        rng: this chain's generator; never shared with another chain.
        warmup: first iteration at which the proposal scale is adapted.
        chain_id: label carried into the resulting Chain.
        cancel_event: checked at the top of every iteration.
        log_every: iterations between debug progress messages.
    """

    def __init__(
        self,
        log_density: Callable[[np.ndarray], float],
        parameter_names: Sequence[str],
        rng: Optional[Generator] = None,
        warmup: int = DEFAULT_WARMUP,
        chain_id: int = 0,
        cancel_event: Optional[threading.Event] = None,
        log_every: int = 1000,
    ):
        if len(parameter_names) == 0:
            raise ValueError("At least one parameter is required")
        if warmup < 1:
            raise ValueError("warmup must be >= 1")
        self.log_density = log_density
        self.parameter_names = tuple(parameter_names)
        self.rng = rng if rng is not None else default_rng()
        self.warmup = int(warmup)
        self.chain_id = int(chain_id)
        self.cancel_event = cancel_event
        self.log_every = max(1, int(log_every))
        self.state = SamplerState.INITIALIZED

    def _check_run_arguments(self, iterations, initial_proposal_sd, target_accept_rate, adapt_rate):
        if iterations < 1:
            raise ValueError("iterations must be >= 1")
        if not initial_proposal_sd > 0:
            raise ValueError("initial_proposal_sd must be > 0")
        if not 0.0 < target_accept_rate < 1.0:
            raise ValueError("target_accept_rate must lie in (0, 1)")
        if adapt_rate < 0:
            raise ValueError("adapt_rate must be >= 0")

    def run(
        self,
        seed_parameter,
        iterations: int,
        initial_proposal_sd: float = 0.001,
        target_accept_rate: float = 0.234,
        adapt_rate: float = 0.01,
    ) -> Chain:
        """Run the chain to ``iterations`` samples (the seed counts as the first)."""
        if self.state is not SamplerState.INITIALIZED:
            raise RuntimeError(f"Sampler for chain {self.chain_id} has already been run")
        self._check_run_arguments(iterations, initial_proposal_sd, target_accept_rate, adapt_rate)

        K = len(self.parameter_names)
        current = np.broadcast_to(np.asarray(seed_parameter, dtype=float), (K,)).copy()
        if not np.all(np.isfinite(current)) or np.any(current <= 0):
            raise ValueError(f"seed_parameter must be strictly positive, got {current}")

        self.state = SamplerState.RUNNING

        samples = np.empty((iterations, K), dtype=float)
        log_densities = np.empty(iterations, dtype=float)
        sd_history = np.empty(iterations, dtype=float)

        proposal_sd = float(initial_proposal_sd)
        current_log_density = float(self.log_density(current))
        accepted = 0

        samples[0] = current
        log_densities[0] = current_log_density
        sd_history[0] = proposal_sd

        for i in range(1, iterations):
            if self.cancel_event is not None and self.cancel_event.is_set():
                raise ChainCancelled(f"Chain {self.chain_id} cancelled at iteration {i}")

            candidate = current + self.rng.normal(0.0, proposal_sd, size=K)

            # Validity gate: non-positive rates never reach the forward model
            if np.any(candidate <= 0.0):
                candidate_log_density = REJECTED_LOG_DENSITY
            else:
                candidate_log_density = float(self.log_density(candidate))

            if metropolis_accept(candidate_log_density, current_log_density, self.rng):
                current = candidate
                current_log_density = candidate_log_density
                accepted += 1

            samples[i] = current
            log_densities[i] = current_log_density

            if i >= self.warmup:
                proposal_sd = adapt_proposal_sd(proposal_sd, accepted / i, target_accept_rate, adapt_rate)
            sd_history[i] = proposal_sd

            if i % self.log_every == 0:
                logger.debug(
                    "chain %d: iteration %d/%d, acceptance %.3f, proposal sd %.4g",
                    self.chain_id, i, iterations, accepted / i, proposal_sd,
                )

        for arr in (samples, log_densities, sd_history):
            arr.setflags(write=False)

        self.state = SamplerState.COMPLETED
        chain = Chain(
            chain_id=self.chain_id,
            parameter_names=self.parameter_names,
            samples=samples,
            log_densities=log_densities,
            proposal_sd=sd_history,
            n_accepted=accepted,
        )
        logger.info(
            "chain %d finished: %d iterations, acceptance %.3f, final proposal sd %.4g",
            self.chain_id, iterations, chain.acceptance_rate, chain.final_proposal_sd,
        )
        return chain
