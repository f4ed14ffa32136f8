# src/sir_calibration/inference/diagnostics.py
# Multi-chain convergence diagnostics: potential scale reduction (R-hat)
# and effective sample size.

import logging
from typing import Sequence, Union

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

DEFAULT_RHAT_THRESHOLD = 1.1


class InsufficientDataError(ValueError):
    """Too few chains or samples for a diagnostic to be meaningful."""


ChainsLike = Union[np.ndarray, Sequence[Sequence[float]]]


def _as_chain_array(chains: ChainsLike) -> np.ndarray:
    """Coerce chains of one scalar parameter to an (m, n) float array."""
    try:
        x = np.asarray(chains, dtype=float)
    except ValueError as exc:
        raise ValueError("All chains must have the same number of samples") from exc
    if x.ndim == 1:
        x = x[np.newaxis, :]
    if x.ndim != 2:
        raise ValueError(f"Expected an (m chains, n samples) array, got shape {x.shape}")
    if x.shape[1] == 0:
        raise InsufficientDataError("Chains contain no post burn-in samples")
    return x


def rhat(chains: ChainsLike) -> float:
    """Potential scale reduction factor of m chains of length n.

    W is the mean within-chain variance and B is n times the variance of
    the chain means. The pooled variance estimate ((n-1)/n) W + B/n is
    compared with W; values near 1 mean the chains sample the same
    distribution, values above ~1.1 call for more iterations.

    Chains with zero within-chain variance give 1.0 when they all hold the
    same constant and inf otherwise.

    Raises:
        InsufficientDataError: fewer than two chains or two samples per chain.
    """
    x = _as_chain_array(chains)
    m, n = x.shape
    if m < 2:
        raise InsufficientDataError(f"R-hat needs at least two chains, got {m}")
    if n < 2:
        raise InsufficientDataError(f"R-hat needs at least two samples per chain, got {n}")

    if np.all(np.ptp(x, axis=1) == 0):
        return 1.0 if np.ptp(x) == 0 else float("inf")

    chain_means = x.mean(axis=1)
    W = float(np.mean(x.var(axis=1, ddof=1)))
    B = n * float(chain_means.var(ddof=1))
    var_hat = (n - 1) / n * W + B / n
    if W <= 0:
        return float("inf")
    return float(np.sqrt(var_hat / W))


def autocovariance(x: np.ndarray) -> np.ndarray:
    """Biased autocovariance of one chain at lags 0..n-1, via FFT."""
    x = np.asarray(x, dtype=float)
    n = x.size
    xc = x - x.mean()
    nfft = 1 << int(np.ceil(np.log2(2 * n - 1))) if n > 1 else 1
    fx = np.fft.rfft(xc, n=nfft)
    acov = np.fft.irfft(fx * np.conj(fx), n=nfft)[:n]
    return acov / n


def effective_sample_size(chains: ChainsLike) -> float:
    """Autocorrelation-adjusted number of independent draws across all chains.

    Combines the per-chain autocovariances with the between-chain variance and
    sums the autocorrelations with Geyer's initial monotone positive sequence.
    Reported for information; it does not gate sampling.
    """
    x = _as_chain_array(chains)
    m, n = x.shape
    if n < 2:
        raise InsufficientDataError(f"ESS needs at least two samples per chain, got {n}")

    if np.all(np.ptp(x, axis=1) == 0):
        return float(m * n)

    acov = np.array([autocovariance(c) for c in x])
    W = float(np.mean(acov[:, 0] * n / (n - 1)))
    var_hat = (n - 1) / n * W
    if m > 1:
        var_hat += float(x.mean(axis=1).var(ddof=1))

    rho = 1.0 - (W - acov.mean(axis=0)) / var_hat
    rho[0] = 1.0

    total = 0.0
    previous = np.inf
    for t in range(0, n - 1, 2):
        pair = rho[t] + rho[t + 1]
        if pair <= 0:
            break
        pair = min(pair, previous)
        total += pair
        previous = pair

    tau = max(-1.0 + 2.0 * total, 1.0 / np.log10(m * n))
    return float(m * n / tau)


def summarise(sample_set, threshold: float = DEFAULT_RHAT_THRESHOLD) -> pd.DataFrame:
    """Per-parameter posterior summary with R-hat and ESS.

    ``sample_set`` is a SampleSet (per-chain post burn-in samples). The
    result is recomputed from the samples on every call.
    """
    rows = []
    for name in sample_set.parameter_names:
        per_chain = sample_set.parameter(name)
        pooled = per_chain.ravel()
        r = rhat(per_chain)
        rows.append({
            "parameter": name,
            "mean": float(pooled.mean()),
            "sd": float(pooled.std(ddof=1)) if pooled.size > 1 else 0.0,
            "q2.5": float(np.quantile(pooled, 0.025)),
            "q50": float(np.quantile(pooled, 0.5)),
            "q97.5": float(np.quantile(pooled, 0.975)),
            "rhat": r,
            "ess": effective_sample_size(per_chain),
            "converged": bool(r <= threshold),
        })
    summary = pd.DataFrame(rows).set_index("parameter")

    not_converged = summary.index[~summary["converged"]].tolist()
    if not_converged:
        logger.warning("R-hat above %.3g for %s: run more iterations", threshold, not_converged)
    return summary
