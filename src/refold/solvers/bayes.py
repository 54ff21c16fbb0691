"""Iterative Bayesian unfolding (D'Agostini) with full error propagation."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional, Tuple

import numpy as np

from refold.core.cache import RegularizationSettings
from refold.solvers.base import UnfoldStrategy
from refold.unfold._types import Algorithm

if TYPE_CHECKING:  # pragma: no cover
    from refold.unfold.engine import Unfolder

logger = logging.getLogger(__name__)


def bayes_iterate(
    response: np.ndarray,
    measured: np.ndarray,
    prior: np.ndarray,
    iterations: int,
    with_jacobian: bool = False,
    verbose: int = 0,
) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """Run ``iterations`` Bayesian updates.

    Args:
        response: Normalized response P(measured i | truth j), shape (nm, nt).
        measured: Measured counts, shape (nm,).
        prior: Starting truth estimate, shape (nt,). Only its shape matters.
        iterations: Number of updates.
        with_jacobian: Also return d(result)/d(measured), shape (nt, nm).
        verbose: 2 and above logs the change of each iteration.

    Each step uses the unfolding matrix
    ``M_ij = R_ji n0_i / (eff_i sum_k R_jk n0_k)`` built from the previous
    estimate ``n0``. The derivative of the estimate is carried through the
    iterations, so the previous estimate's dependence on the data is kept.
    """
    nm, nt = response.shape
    eff = response.sum(axis=0)
    eff_safe = np.where(eff > 0.0, eff, 1.0)
    n0 = np.asarray(prior, dtype=float).copy()
    if not np.any(n0 > 0.0):
        n0 = np.ones(nt)
    dn0 = np.zeros((nt, nm))
    n = n0

    for it in range(1, iterations + 1):
        folded = response @ n0
        ok = folded > 0.0
        folded_safe = np.where(ok, folded, 1.0)
        unfolding = (response.T * n0[:, np.newaxis]) / folded_safe[np.newaxis, :] / eff_safe[:, np.newaxis]
        unfolding[:, ~ok] = 0.0
        unfolding[eff <= 0.0, :] = 0.0
        n = unfolding @ measured

        if with_jacobian:
            ratio = np.divide(n, n0, out=np.zeros(nt), where=n0 != 0.0)
            scaled = np.where(ok, measured / folded_safe, 0.0)
            dn0 = unfolding + (np.diag(ratio) - (unfolding * scaled[np.newaxis, :]) @ response) @ dn0

        if verbose >= 2:
            change = np.sum((n - n0) ** 2 / np.where(n0 > 0.0, n0, 1.0))
            logger.info(f"Bayes iteration {it}: chi2 change {change:g}")
        n0 = n

    return n, (dn0 if with_jacobian else None)


class BayesStrategy(UnfoldStrategy):
    """Iterative Bayes; the regularization parameter is the iteration count."""

    algorithm = Algorithm.BAYES

    def __init__(self, iterations: int = 4) -> None:
        self._iterations = int(iterations)

    @property
    def reg_parm(self) -> float:
        return float(self._iterations)

    @reg_parm.setter
    def reg_parm(self, value: float) -> None:
        self._iterations = max(int(round(value)), 1)

    def _prior(self, engine: "Unfolder") -> np.ndarray:
        return engine.response.vtruth()

    def unfold(self, engine: "Unfolder") -> Optional[np.ndarray]:
        rec, _ = bayes_iterate(
            engine.response.matrix(),
            engine.vmeasured(),
            self._prior(engine),
            self._iterations,
            verbose=engine.verbose,
        )
        return rec

    def covariance(self, engine: "Unfolder") -> Optional[np.ndarray]:
        _, jac = bayes_iterate(
            engine.response.matrix(),
            engine.vmeasured(),
            self._prior(engine),
            self._iterations,
            with_jacobian=True,
        )
        return jac @ engine.measured_cov() @ jac.T

    def settings(self, engine: "Unfolder") -> RegularizationSettings:
        return RegularizationSettings(minimum=1, maximum=15, step_size=1, default=4)
