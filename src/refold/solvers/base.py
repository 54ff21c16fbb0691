"""Contract every unfolding strategy satisfies, and the dummy strategy.

A strategy is selected by an :class:`~refold.unfold._types.Algorithm` tag and
is driven by an :class:`~refold.unfold.engine.Unfolder`. The engine owns all
cached state; strategies only compute values from what the engine exposes
(``nm``, ``nt``, ``response``, ``vmeasured()``, ``emeasured()``,
``measured_cov()``, ``verbose``) and hand them back.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

import numpy as np

from refold.core.cache import RegularizationSettings
from refold.unfold._types import Algorithm

if TYPE_CHECKING:  # pragma: no cover
    from refold.unfold.engine import Unfolder

logger = logging.getLogger(__name__)

# Reported by strategies without a regularization parameter.
REGPARM_UNSET = -1e30


class UnfoldStrategy:
    """Dummy unfolding that copies the measured input into the truth bins.

    Subclasses override :meth:`unfold` and usually :meth:`covariance` and
    :meth:`settings`. Returning None from :meth:`unfold` or
    :meth:`covariance` signals failure.
    """

    algorithm = Algorithm.NONE

    def unfold(self, engine: "Unfolder") -> Optional[np.ndarray]:
        if engine.verbose >= 1:
            logger.info(f"{type(self).__name__}: dummy unfolding - just copy input")
        rec = np.zeros(engine.nt)
        nb = min(engine.nm, engine.nt)
        rec[:nb] = engine.vmeasured()[:nb]
        return rec

    def covariance(self, engine: "Unfolder") -> Optional[np.ndarray]:
        """Measured covariance mapped onto the truth bins through the identity."""
        covmeas = engine.measured_cov()
        nb = min(engine.nm, engine.nt)
        cov = np.zeros((engine.nt, engine.nt))
        cov[:nb, :nb] = covmeas[:nb, :nb]
        return cov

    def errors(self, engine: "Unfolder") -> Optional[np.ndarray]:
        """Per-bin variances; the covariance diagonal unless a strategy knows better."""
        cov = engine.covariance_matrix()
        if cov is None:
            return None
        return np.diag(cov).copy()

    def settings(self, engine: "Unfolder") -> RegularizationSettings:
        return RegularizationSettings()

    @property
    def reg_parm(self) -> float:
        return REGPARM_UNSET

    @reg_parm.setter
    def reg_parm(self, value: float) -> None:
        pass

    def __repr__(self) -> str:
        return f"{type(self).__name__}(reg_parm={self.reg_parm:g})"
