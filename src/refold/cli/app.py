"""Command-line interface for refold using argparse."""

from __future__ import annotations

import argparse
import dataclasses
import logging
from pathlib import Path
from typing import List, Optional

import numpy as np

from refold.core.config import UnfoldConfig
from refold.io.artifacts import (
    read_config,
    read_measured_file,
    read_response_file,
    write_artifact,
    write_unfold_result,
)
from refold.uncertainty.bias import calculate_bias
from refold.unfold._types import BiasMethod, ErrorTreatment
from refold.unfold.engine import Unfolder


def _config_from_args(args: argparse.Namespace) -> UnfoldConfig:
    config = read_config(args.config) if args.config else UnfoldConfig()
    overrides = {}
    for key in ("algorithm", "regparm", "ntoys", "seed", "verbose"):
        value = getattr(args, key, None)
        if value is not None:
            overrides[key] = value
    if getattr(args, "treatment", None) is not None:
        overrides["error_treatment"] = args.treatment
    return dataclasses.replace(config, **overrides) if overrides else config


def cmd_unfold(args: argparse.Namespace) -> None:
    config = _config_from_args(args)
    response = read_response_file(args.response_file)
    measured, covariance = read_measured_file(args.measured_file)

    engine = Unfolder.from_config(config, response, measured)
    if covariance is not None:
        engine.set_measured_cov(covariance)

    payload = write_unfold_result(args.output, engine, config.error_treatment)
    if args.table:
        engine.print_table(treatment=config.error_treatment)
    if payload["status"] != "unfolded":
        print(f"Unfolding failed ({config.algorithm.name.lower()}); wrote zero result to {args.output}")
    else:
        print(f"Saved unfolded distribution to {args.output} (chi2={payload['chi2']:.3f})")


def cmd_bias(args: argparse.Namespace) -> None:
    config = _config_from_args(args)
    response = read_response_file(args.response_file)
    if args.measured_file:
        measured, _ = read_measured_file(args.measured_file)
    else:
        measured = response.hmeasured

    engine = Unfolder.from_config(config, response, measured)
    ntoys = args.bias_toys if args.bias_toys is not None else config.ntoys
    result = calculate_bias(engine, args.method, ntoys)
    payload = {
        "schema": "refold.bias.v1",
        "algorithm": config.algorithm.name.lower(),
        "method": result.method.name.lower(),
        "ntoys": result.ntoys,
        "bias": np.asarray(result.bias).tolist(),
        "sigma": np.asarray(result.sigma).tolist(),
    }
    write_artifact(args.output, payload)
    print(f"Saved {payload['method']} bias to {args.output}")


def _add_common(sub: argparse.ArgumentParser) -> None:
    sub.add_argument("--response-file", type=Path, required=True)
    sub.add_argument("--config", type=Path, help="JSON/YAML file with UnfoldConfig fields")
    sub.add_argument("--algorithm", help="none, bayes, svd, bin_by_bin, invert, tunfold")
    sub.add_argument("--regparm", type=float)
    sub.add_argument("--ntoys", type=int)
    sub.add_argument("--seed", type=int)
    sub.add_argument("--verbose", type=int)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Unfold binned measured distributions through a response model")
    parser.add_argument("--log-level", default="WARNING", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    subparsers = parser.add_subparsers(dest="command", required=True)

    unfold = subparsers.add_parser("unfold", help="Unfold a measured distribution")
    _add_common(unfold)
    unfold.add_argument("--measured-file", type=Path, required=True)
    unfold.add_argument(
        "--treatment",
        choices=[t.name.lower() for t in ErrorTreatment],
        help="error treatment for reported uncertainties",
    )
    unfold.add_argument("--table", action="store_true", help="print a bin-by-bin table")
    unfold.add_argument("--output", type=Path, default=Path("unfolded.json"))
    unfold.set_defaults(func=cmd_unfold)

    bias = subparsers.add_parser("bias", help="Estimate the bias of an unfolding setup")
    _add_common(bias)
    bias.add_argument("--measured-file", type=Path, help="defaults to the response's training measured")
    bias.add_argument("--method", default="estimator", choices=[m.name.lower() for m in BiasMethod])
    bias.add_argument("--bias-toys", type=int, help="toys for closure/asimov (default: config ntoys)")
    bias.add_argument("--output", type=Path, default=Path("bias.json"))
    bias.set_defaults(func=cmd_bias)
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(name)s - %(levelname)s - %(message)s")
    args.func(args)


if __name__ == "__main__":
    main()
