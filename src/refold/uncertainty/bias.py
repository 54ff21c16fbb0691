"""Bias of an unfolding setup.

Three protocols are available:

* ``ESTIMATOR``: unfold the Asimov measured distribution once and compare
  with the truth.
* ``CLOSURE``: Poisson toys around the Asimov measured distribution, each
  unfolded and compared with the truth.
* ``ASIMOV``: nested truth-level toys, folded and unfolded, compared with
  the outer toy (see :func:`refold.uncertainty.toys.run_bias_asimov_toys`).

Every protocol runs on a separate engine so the caller's cache only gains the
bias and its error.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from refold.core.config import UnfoldConfig
from refold.core.errors import InvalidArgumentError
from refold.core.histogram import Histogram, asimov_clone, from_vector, to_error_vector, to_vector
from refold.core.linalg import Vector, as_vector
from refold.solvers import REGPARM_UNSET
from refold.uncertainty.toys import run_bias_asimov_toys, run_toys
from refold.unfold._types import BiasMethod, to_bias_method
from refold.unfold.engine import Unfolder

logger = logging.getLogger(__name__)


@dataclass
class BiasResult:
    """Per-bin bias and its standard error.

    Attributes:
        method: Protocol that produced the numbers.
        bias: Relative bias per truth bin (absolute where the truth is zero
            for the estimator).
        sigma: Standard error of ``bias``.
        ntoys: Toys requested (0 for the estimator).
    """

    method: BiasMethod
    bias: Vector
    sigma: Vector
    ntoys: int = 0


def _truth_vectors(engine: Unfolder, truth) -> Tuple[Vector, Vector]:
    res = engine.response
    if truth is None:
        truth = res.htruth
    if isinstance(truth, Histogram):
        t = to_vector(truth, engine.overflow, res.use_density)
        et = to_error_vector(truth, engine.overflow, res.use_density)
    else:
        t = as_vector(truth)
        et = np.sqrt(np.abs(t))
    if t.size != engine.nt:
        raise InvalidArgumentError(f"truth has {t.size} bins, expected {engine.nt}")
    return t, et


def _asimov_engine(engine: Unfolder, truth: Vector, rng: np.random.Generator) -> Unfolder:
    """Engine with the same algorithm and regularization, bound to the folded truth."""
    res = engine.response
    counts = truth
    if res.use_density:
        counts = truth * res.htruth.bin_volumes(engine.overflow).ravel()
    folded = res.matrix() @ counts
    edges = res.hmeasured.edges
    measured = asimov_clone(from_vector(folded, None, "asimov", "Asimov measured", edges, engine.overflow))

    config = UnfoldConfig(
        algorithm=engine.algorithm,
        error_treatment=engine.error_treatment,
        ntoys=engine.ntoys,
        verbose=0,
        systematics=engine.systematics,
    )
    regparm = engine.reg_parm
    return Unfolder(
        res,
        measured,
        engine.algorithm,
        regparm=None if regparm == REGPARM_UNSET else regparm,
        config=config,
        rng=rng,
    )


def _estimator(toy: Unfolder, truth: Vector, truth_errors: Vector) -> Tuple[Vector, Vector]:
    unfolded = toy.vunfold()
    unfolded_errors = toy.eunfold_v()
    bias = unfolded - truth
    sigma = np.sqrt(truth_errors ** 2 + unfolded_errors ** 2)
    nz = truth != 0.0
    bias[nz] /= truth[nz]
    sigma[nz] /= truth[nz]
    return bias, sigma


def _closure(toy: Unfolder, truth: Vector, ntoys: int, rng: np.random.Generator) -> Tuple[Vector, Vector]:
    batch = run_toys(toy, ntoys, rng, record_errors=False)
    pulls = np.zeros((len(batch), truth.size))
    for i, values in enumerate(batch.results):
        nz = values != 0.0
        pulls[i, nz] = (values[nz] - truth[nz]) / values[nz]
    n = len(batch)
    bias = pulls.sum(axis=0) / n
    sum2 = np.sum((pulls - bias) ** 2, axis=0)
    if n > 1:
        sigma = np.sqrt(sum2 / (n - 1) / n)
    else:
        sigma = np.sqrt(sum2)
    return bias, sigma


def _asimov(toy: Unfolder, ntoys: int, rng: np.random.Generator) -> Tuple[Vector, Vector]:
    entries = np.vstack(run_bias_asimov_toys(toy, ntoys, rng))
    n = entries.shape[0]
    total = entries.sum(axis=0)
    mean = total / n
    if n > 1:
        var = np.abs(np.sum(entries ** 2, axis=0) - total * mean) / (n - 1)
    else:
        var = np.zeros_like(mean)
    return mean, np.sqrt(var / n)


def calculate_bias(
    engine: Unfolder,
    method=BiasMethod.ESTIMATOR,
    ntoys: int = 50,
    truth=None,
    rng: Optional[np.random.Generator] = None,
) -> BiasResult:
    """Estimate the bias of ``engine`` and store it in its cache.

    ``truth`` defaults to the response truth and is ignored by ``ASIMOV``;
    ``ntoys`` is ignored by ``ESTIMATOR``.
    """
    method = to_bias_method(method)
    if engine.response is None:
        raise InvalidArgumentError("no response bound; call setup() first")
    if method is not BiasMethod.ESTIMATOR and ntoys < 1:
        raise InvalidArgumentError(f"{method.name} bias needs at least one toy, got {ntoys}")
    rng = engine.rng if rng is None else rng

    t, et = _truth_vectors(engine, truth)
    toy = _asimov_engine(engine, t, rng)

    if method is BiasMethod.ESTIMATOR:
        bias, sigma = _estimator(toy, t, et)
        ntoys = 0
    elif method is BiasMethod.CLOSURE:
        bias, sigma = _closure(toy, t, ntoys, rng)
    else:
        bias, sigma = _asimov(toy, ntoys, rng)

    if engine.verbose >= 1:
        logger.info(f"{method.name.lower()} bias computed for {engine.algorithm.name} with {ntoys} toys")
    engine.store_bias(bias, sigma)
    return BiasResult(method=method, bias=bias, sigma=sigma, ntoys=ntoys)


def calculate_bias_legacy(engine: Unfolder, ntoys: int, truth=None) -> BiasResult:
    """``ntoys == 0`` selects the estimator protocol, anything else closure."""
    method = BiasMethod.ESTIMATOR if ntoys == 0 else BiasMethod.CLOSURE
    return calculate_bias(engine, method, ntoys, truth)
