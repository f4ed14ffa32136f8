#!/usr/bin/env python3
# src/sir_calibration/runner.py: command line runner

import argparse
import logging
import re
import time
from typing import List, Optional

import numpy as np

from .calibrate import CalibrationConfig, run_calibration
from .data_io import read_observations, read_sample_set, write_observations, write_samples
from .inference.diagnostics import summarise
from .inference.posterior import chain_summary
from .model.forward_model import (
    DEFAULT_TRUE_PARAMETERS,
    MultiGroupSIR,
    default_initial_state,
    default_time_grid,
    simulate_observations,
)


# Parser for lists like 0.1,0.15,0.2
def parse_float_list(s: Optional[str]) -> List[float]:
    if not s:
        return []
    return [float(x) for x in re.split(r"[,\s;]+", s.strip()) if x]


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Calibrate a multi-group SIR model by adaptive MCMC")
    p.add_argument("-v", "--verbose", action="store_true", help="Log per-iteration progress")
    sub = p.add_subparsers(dest="cmd", required=True)

    # ---------- simulate ----------
    sim_p = sub.add_parser("simulate", help="Generate observed data from known parameters")
    sim_p.add_argument("--out", default="data/observed.csv", metavar="PATH",
                       help="Output CSV path (default: data/observed.csv)")
    sim_p.add_argument("--betas", type=str, default="0.4,0.3,0.25", metavar="LIST",
                       help="True transmission rates, one per group (default: '0.4,0.3,0.25')")
    sim_p.add_argument("--gamma", type=float, default=DEFAULT_TRUE_PARAMETERS["gamma"],
                       help="Recovery rate (default: 0.1)")
    sim_p.add_argument("--max-days", type=int, default=100, metavar="DAYS",
                       help="Simulation length in days (default: 100)")
    sim_p.add_argument("--poisson-noise", action="store_true",
                       help="Replace the model output by Poisson draws")
    sim_p.add_argument("--seed", type=int, default=42, metavar="SEED",
                       help="RNG seed for --poisson-noise (default: 42)")

    # ---------- calibrate ----------
    cal_p = sub.add_parser("calibrate", help="Run the MCMC ensemble on an observed CSV")
    cal_p.add_argument("--observed", default="data/observed.csv", metavar="PATH")
    cal_p.add_argument("--out", default="data/samples.csv", metavar="PATH",
                       help="Samples CSV path (default: data/samples.csv)")
    cal_p.add_argument("--iterations", type=int, default=5000)
    cal_p.add_argument("--chains", type=int, default=3)
    cal_p.add_argument("--burnin", type=int, default=1000)
    cal_p.add_argument("--seeds", type=str, default="0.1,0.15,0.2", metavar="LIST",
                       help="Initial value per chain (default: '0.1,0.15,0.2')")
    cal_p.add_argument("--proposal-sd", type=float, default=0.001)
    cal_p.add_argument("--target-accept", type=float, default=0.234)
    cal_p.add_argument("--adapt-rate", type=float, default=0.01)
    cal_p.add_argument("--gamma", type=float, default=DEFAULT_TRUE_PARAMETERS["gamma"])
    cal_p.add_argument("--parameterisation", choices=["per_group", "shared"], default="per_group")
    cal_p.add_argument("--random-seed", type=int, default=None)
    cal_p.add_argument("--workers", type=int, default=1)

    # ---------- diagnose ----------
    diag_p = sub.add_parser("diagnose", help="R-hat and ESS for a samples CSV")
    diag_p.add_argument("--samples", default="data/samples.csv", metavar="PATH")
    diag_p.add_argument("--burnin", type=int, default=1000)
    diag_p.add_argument("--threshold", type=float, default=1.1)

    return p


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)
    t0 = time.perf_counter()

    if args.cmd == "simulate":
        betas = parse_float_list(args.betas)
        groups = tuple(str(k) for k in range(1, len(betas) + 1))
        params = {f"beta{g}": b for g, b in zip(groups, betas)}
        params["gamma"] = args.gamma
        model = MultiGroupSIR(groups=groups)
        rng = np.random.default_rng(args.seed) if args.poisson_noise else None
        observed = simulate_observations(
            model,
            true_parameters=params,
            initial_state=default_initial_state(groups),
            time_grid=default_time_grid(args.max_days),
            rng=rng,
        )
        write_observations(observed, args.out)
        print("Observed data ->", args.out)

    elif args.cmd == "calibrate":
        observed = read_observations(args.observed)
        groups = tuple(c[1:] for c in observed.columns if c.startswith("S"))
        cfg = CalibrationConfig(
            n_iterations=args.iterations,
            n_chains=args.chains,
            burnin=args.burnin,
            initial_proposal_sd=args.proposal_sd,
            target_accept_rate=args.target_accept,
            adapt_rate=args.adapt_rate,
            seed_parameters=tuple(parse_float_list(args.seeds)),
            gamma=args.gamma,
            parameterisation=args.parameterisation,
            random_seed=args.random_seed,
            max_workers=args.workers,
            groups=groups,
        )
        result = run_calibration(cfg, observed)
        write_samples(result.chains, args.out)
        print(chain_summary(result.chains).to_string())
        print(result.summary.to_string())
        print("Samples ->", args.out)

    elif args.cmd == "diagnose":
        samples = read_sample_set(args.samples, burnin=args.burnin)
        print(summarise(samples, threshold=args.threshold).to_string())

    print(f"Done in {time.perf_counter() - t0:.2f}s")


if __name__ == "__main__":
    main()
