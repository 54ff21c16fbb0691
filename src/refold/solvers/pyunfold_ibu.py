"""
External-library unfolding via PyUnfold (iterative Bayesian unfolding).

Library dependency
------------------
Requires the optional ``pyunfold`` package (pip install pyunfold).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Dict, Optional

import numpy as np

from refold.core.cache import RegularizationSettings
from refold.solvers.base import UnfoldStrategy
from refold.unfold._types import Algorithm

if TYPE_CHECKING:  # pragma: no cover
    from refold.unfold.engine import Unfolder

# ---------------------------------------------------------------------------
# Optional dependency guard
# ---------------------------------------------------------------------------
try:
    from pyunfold import iterative_unfold as _pyunfold_unfold

    _HAS_PYUNFOLD = True
except ImportError:  # pragma: no cover
    _HAS_PYUNFOLD = False
    _pyunfold_unfold = None  # type: ignore


def _require_pyunfold() -> None:
    if not _HAS_PYUNFOLD:
        raise ImportError(
            "PyUnfoldStrategy requires PyUnfold. Install with: pip install pyunfold"
        )


class PyUnfoldStrategy(UnfoldStrategy):
    """
    Unfolding delegated to PyUnfold.

    The regularization parameter is the test-statistic stopping threshold.

    Parameters
    ----------
    ts : str
        Test statistic for stopping: 'ks' (default), 'chi2', 'bf', 'rmd'.
    ts_stopping : float
        Stopping threshold (default 0.01).
    max_iter : int
        Maximum iterations (default 100).
    cov_type : str
        Covariance form: 'multinomial' or 'poisson'.
    """

    algorithm = Algorithm.TUNFOLD

    def __init__(
        self,
        ts: str = "ks",
        ts_stopping: float = 0.01,
        max_iter: int = 100,
        cov_type: str = "multinomial",
    ) -> None:
        _require_pyunfold()

        self._ts = ts
        self._ts_stopping = ts_stopping
        self._max_iter = max_iter
        self._cov_type = cov_type

    @property
    def reg_parm(self) -> float:
        return float(self._ts_stopping)

    @reg_parm.setter
    def reg_parm(self, value: float) -> None:
        self._ts_stopping = float(value)

    def _run(self, engine: "Unfolder") -> Dict:
        response = engine.response.matrix()
        response_err = engine.response.ematrix()
        eff = response.sum(axis=0)
        prior = engine.response.vtruth()
        prior = prior / np.sum(prior) if np.sum(prior) > 0 else None

        return _pyunfold_unfold(
            data=engine.vmeasured(),
            data_err=engine.emeasured(),
            response=response,
            response_err=response_err,
            efficiencies=eff,
            efficiencies_err=eff * 0.01,
            prior=prior,
            ts=self._ts,
            ts_stopping=self._ts_stopping,
            max_iter=self._max_iter,
            cov_type=self._cov_type,
            return_iterations=False,
        )

    def unfold(self, engine: "Unfolder") -> Optional[np.ndarray]:
        return np.asarray(self._run(engine)["unfolded"], dtype=float)

    def covariance(self, engine: "Unfolder") -> Optional[np.ndarray]:
        result = self._run(engine)
        stat_err = np.asarray(result["stat_err"], dtype=float)
        sys_err = np.asarray(result["sys_err"], dtype=float)
        # PyUnfold doesn't directly return full covariance; approximate from uncertainties
        return np.diag(stat_err ** 2 + sys_err ** 2)

    def settings(self, engine: "Unfolder") -> RegularizationSettings:
        return RegularizationSettings(minimum=0.0, maximum=0.1, step_size=0.001, default=0.01)
