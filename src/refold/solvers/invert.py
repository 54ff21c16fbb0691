"""Unfolding by plain inversion of the response matrix."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

import numpy as np

from refold.core.linalg import invert_matrix
from refold.solvers.base import UnfoldStrategy
from refold.unfold._types import Algorithm

if TYPE_CHECKING:  # pragma: no cover
    from refold.unfold.engine import Unfolder


class InvertStrategy(UnfoldStrategy):
    """Apply the (pseudo-)inverse of the response matrix to the measured data.

    Unregularized: useful to show why regularization is needed, and exact for
    noiseless, well-conditioned problems.
    """

    algorithm = Algorithm.INVERT

    def _inverse(self, engine: "Unfolder") -> Optional[np.ndarray]:
        result = invert_matrix(engine.response.matrix(), "response matrix", engine.verbose)
        return result.inverse if result.ok else None

    def unfold(self, engine: "Unfolder") -> Optional[np.ndarray]:
        inv = self._inverse(engine)
        if inv is None:
            return None
        return inv @ engine.vmeasured()

    def covariance(self, engine: "Unfolder") -> Optional[np.ndarray]:
        inv = self._inverse(engine)
        if inv is None:
            return None
        return inv @ engine.measured_cov() @ inv.T
