# src/sir_calibration/inference/ensemble.py
# Runs several independent adaptive Metropolis chains and pools their
# post burn-in samples for diagnostics.

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .diagnostics import InsufficientDataError
from .sampler import DEFAULT_WARMUP, AdaptiveMetropolisSampler, Chain

logger = logging.getLogger(__name__)


class _StopSignal:
    """Stops the chains of one run: set by a failing chain, or by the caller's event.

    Failures are recorded here only, so the caller's event is never set and
    can be reused for later runs.
    """

    def __init__(self, external: Optional[threading.Event] = None):
        self.external = external
        self._failed = threading.Event()

    def is_set(self) -> bool:
        return self._failed.is_set() or (self.external is not None and self.external.is_set())

    def set(self) -> None:
        self._failed.set()


@dataclass(frozen=True)
class SampleSet:
    """Post burn-in samples of an ensemble.

    ``per_chain`` has shape (m chains, n samples, K parameters); ``pooled``
    concatenates the chains into (m * n, K). Both views share the same data.
    """

    parameter_names: Tuple[str, ...]
    chain_ids: Tuple[int, ...]
    per_chain: np.ndarray
    burnin: int

    @property
    def n_chains(self) -> int:
        return int(self.per_chain.shape[0])

    @property
    def n_samples(self) -> int:
        return int(self.per_chain.shape[1])

    @property
    def pooled(self) -> np.ndarray:
        return self.per_chain.reshape(-1, len(self.parameter_names))

    def parameter(self, name: str) -> np.ndarray:
        """(m, n) samples of one parameter, chain by chain."""
        if name not in self.parameter_names:
            raise KeyError(f"Unknown parameter {name!r}; have {list(self.parameter_names)}")
        return self.per_chain[:, :, self.parameter_names.index(name)]

    def to_frame(self) -> pd.DataFrame:
        """Long table: one row per (chain, iteration) with one column per parameter."""
        m, n, _ = self.per_chain.shape
        df = pd.DataFrame(self.pooled, columns=list(self.parameter_names))
        df.insert(0, "iteration", np.tile(np.arange(self.burnin, self.burnin + n), m))
        df.insert(0, "chain", np.repeat(np.asarray(self.chain_ids, dtype=int), n))
        return df


def pool(chains: Sequence[Chain], burnin: int) -> SampleSet:
    """Drop the first ``burnin`` samples of every chain and stack the rest.

    Raises:
        InsufficientDataError: no chains, or nothing left after burn-in.
        ValueError: negative burn-in, or chains that are not comparable.
    """
    if len(chains) == 0:
        raise InsufficientDataError("No chains to pool")
    if burnin < 0:
        raise ValueError("burnin must be >= 0")

    lengths = {c.iterations for c in chains}
    if len(lengths) != 1:
        raise ValueError(f"Chains must share the same iteration count, got {sorted(lengths)}")
    names = {c.parameter_names for c in chains}
    if len(names) != 1:
        raise ValueError("Chains must share the same parameter names")

    iterations = lengths.pop()
    if burnin >= iterations:
        raise InsufficientDataError(
            f"burnin ({burnin}) must be smaller than the chain length ({iterations}); no samples left"
        )

    per_chain = np.stack([c.samples[burnin:] for c in chains])
    return SampleSet(
        parameter_names=names.pop(),
        chain_ids=tuple(c.chain_id for c in chains),
        per_chain=per_chain,
        burnin=int(burnin),
    )


class ChainEnsemble:
    """Drives independent samplers over one log posterior.

    Every chain gets its own sampler, proposal scale and generator spawned
    from a single SeedSequence, so runs are reproducible from ``random_seed``
    and chains never share mutable state.
    """

    def __init__(
        self,
        log_density: Callable[[np.ndarray], float],
        parameter_names: Sequence[str],
        warmup: int = DEFAULT_WARMUP,
        log_every: int = 1000,
    ):
        self.log_density = log_density
        self.parameter_names = tuple(parameter_names)
        self.warmup = warmup
        self.log_every = log_every

    def run_ensemble(
        self,
        n_chains: int,
        seed_parameters: Sequence,
        iterations: int,
        initial_proposal_sd: Union[float, Sequence[float]] = 0.001,
        target_accept_rate: float = 0.234,
        adapt_rate: float = 0.01,
        random_seed: Optional[int] = None,
        max_workers: int = 1,
        cancel_event: Optional[threading.Event] = None,
    ) -> Tuple[Chain, ...]:
        """Run ``n_chains`` chains and return them ordered by chain id."""
        if n_chains < 1:
            raise ValueError("n_chains must be >= 1")
        if len(seed_parameters) != n_chains:
            raise ValueError(f"Need one seed parameter per chain: {n_chains} chains, {len(seed_parameters)} seeds")
        sds = np.broadcast_to(np.asarray(initial_proposal_sd, dtype=float), (n_chains,))

        # Trips on the caller's cancel event or on a sibling failure
        stop = _StopSignal(cancel_event)

        streams = np.random.SeedSequence(random_seed).spawn(n_chains)
        samplers = [
            AdaptiveMetropolisSampler(
                self.log_density,
                self.parameter_names,
                rng=np.random.default_rng(stream),
                warmup=self.warmup,
                chain_id=k,
                cancel_event=stop,
                log_every=self.log_every,
            )
            for k, stream in enumerate(streams)
        ]

        def run_one(k: int) -> Chain:
            return samplers[k].run(
                seed_parameters[k],
                iterations,
                initial_proposal_sd=float(sds[k]),
                target_accept_rate=target_accept_rate,
                adapt_rate=adapt_rate,
            )

        logger.info("Running %d chains of %d iterations (workers=%d)", n_chains, iterations, max_workers)

        if max_workers <= 1:
            return tuple(run_one(k) for k in range(n_chains))

        chains: List[Optional[Chain]] = [None] * n_chains
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = {executor.submit(run_one, k): k for k in range(n_chains)}
            try:
                for future in as_completed(futures):
                    chains[futures[future]] = future.result()
            except BaseException:
                stop.set()
                raise
        return tuple(chains)

    pool = staticmethod(pool)
