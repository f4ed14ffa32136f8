"""Bayesian calibration of a multi-group SIR model by adaptive Metropolis-Hastings."""

from .version_info import VERSION as __version__
