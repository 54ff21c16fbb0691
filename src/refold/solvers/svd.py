"""SVD unfolding with damped singular values."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

import numpy as np
from scipy import linalg

from refold.core.cache import RegularizationSettings
from refold.solvers.base import UnfoldStrategy
from refold.unfold._types import Algorithm

if TYPE_CHECKING:  # pragma: no cover
    from refold.unfold.engine import Unfolder

logger = logging.getLogger(__name__)


def svd_unfolding_matrix(
    response: np.ndarray,
    measured_errors: np.ndarray,
    kreg: int,
) -> Optional[np.ndarray]:
    """Linear unfolding matrix of the error-weighted, filtered SVD solution.

    Rows of the response are scaled by ``1/sigma`` of the measured bins, then
    each singular value ``s_i`` enters as ``s_i / (s_i^2 + tau^2)`` with
    ``tau = s_kreg``. Larger ``kreg`` means weaker regularization.
    """
    positive = measured_errors > 0.0
    weights = np.divide(1.0, measured_errors, out=np.ones_like(measured_errors), where=positive)
    weighted = response * weights[:, np.newaxis]
    try:
        u, s, vh = linalg.svd(weighted, full_matrices=False)
    except (linalg.LinAlgError, ValueError) as exc:
        logger.error(f"SVD of response matrix failed: {exc}")
        return None
    if s.size == 0 or s[0] <= 0.0:
        logger.error("SVD unfolding: response matrix is empty")
        return None
    k = min(max(int(kreg), 1), s.size)
    tau = s[k - 1]
    filt = np.divide(s, s ** 2 + tau ** 2, out=np.zeros_like(s), where=s > 0.0)
    return (vh.T * filt) @ u.T * weights[np.newaxis, :]


class SvdStrategy(UnfoldStrategy):
    """SVD unfolding; the regularization parameter is the singular value index."""

    algorithm = Algorithm.SVD

    def __init__(self, kreg: int = 0) -> None:
        self._kreg = int(kreg)

    @property
    def reg_parm(self) -> float:
        return float(self._kreg)

    @reg_parm.setter
    def reg_parm(self, value: float) -> None:
        self._kreg = int(round(value))

    def _kreg_for(self, engine: "Unfolder") -> int:
        return self._kreg if self._kreg > 0 else max(engine.nt // 2, 1)

    def _matrix(self, engine: "Unfolder") -> Optional[np.ndarray]:
        return svd_unfolding_matrix(engine.response.matrix(), engine.emeasured(), self._kreg_for(engine))

    def unfold(self, engine: "Unfolder") -> Optional[np.ndarray]:
        unf = self._matrix(engine)
        if unf is None:
            return None
        return unf @ engine.vmeasured()

    def covariance(self, engine: "Unfolder") -> Optional[np.ndarray]:
        unf = self._matrix(engine)
        if unf is None:
            return None
        return unf @ engine.measured_cov() @ unf.T

    def settings(self, engine: "Unfolder") -> RegularizationSettings:
        return RegularizationSettings(minimum=0, maximum=engine.nt, step_size=1, default=max(engine.nt // 2, 1))
