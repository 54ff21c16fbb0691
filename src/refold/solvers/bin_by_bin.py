"""Bin-by-bin correction factors."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

import numpy as np

from refold.solvers.base import UnfoldStrategy
from refold.unfold._types import Algorithm

if TYPE_CHECKING:  # pragma: no cover
    from refold.unfold.engine import Unfolder

logger = logging.getLogger(__name__)


class BinByBinStrategy(UnfoldStrategy):
    """Scale each measured bin by training truth / training measured.

    Cannot describe migrations between bins and needs identical truth and
    measured binning.
    """

    algorithm = Algorithm.BIN_BY_BIN

    def factors(self, engine: "Unfolder") -> np.ndarray:
        truth = engine.response.vtruth()
        reco = engine.response.vmeasured()
        return np.divide(truth, reco, out=np.zeros_like(truth), where=reco != 0.0)

    def unfold(self, engine: "Unfolder") -> Optional[np.ndarray]:
        if engine.nm != engine.nt:
            logger.error(
                f"bin-by-bin unfolding needs equal binning, got {engine.nm} measured and {engine.nt} truth bins"
            )
            return None
        return self.factors(engine) * engine.vmeasured()

    def covariance(self, engine: "Unfolder") -> Optional[np.ndarray]:
        if engine.nm != engine.nt:
            return None
        c = self.factors(engine)
        return c[:, np.newaxis] * engine.measured_cov() * c[np.newaxis, :]

    def errors(self, engine: "Unfolder") -> Optional[np.ndarray]:
        if engine.nm != engine.nt:
            return None
        return self.factors(engine) ** 2 * np.diag(engine.measured_cov())
