"""Toy Monte Carlo for unfolding uncertainties.

Every toy resets the engine, fluctuates its inputs and unfolds again. The
spread of the toy results gives the COV_TOY covariance; nested toys on truth
level give the Asimov bias.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, List, Optional, Tuple

import numpy as np

from refold.core.linalg import Matrix, Vector, randomize, sample_covariance, stack_vectors
from refold.unfold._types import ErrorTreatment, SystematicsTreatment

if TYPE_CHECKING:  # pragma: no cover
    from refold.unfold.engine import Unfolder

logger = logging.getLogger(__name__)

# Treatments whose errors can be recorded per toy without running nested toys.
_TOY_ERROR_TREATMENTS = (ErrorTreatment.ERRORS, ErrorTreatment.COVARIANCE, ErrorTreatment.ROOFIT)


@dataclass
class ToyBatch:
    """Results of a series of toys.

    ``errors`` and ``chi2`` hold one entry per toy whose error computation
    succeeded, so they can be shorter than ``results``.
    """

    results: List[Vector] = field(default_factory=list)
    errors: List[Vector] = field(default_factory=list)
    chi2: List[float] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.results)

    def as_array(self, nbins: int = 0) -> Matrix:
        return stack_vectors(self.results, nbins)

    def mean(self) -> Vector:
        return self.as_array().mean(axis=0)

    def covariance(self) -> Optional[Matrix]:
        return sample_covariance(self.results)


def randomize_inputs(engine: "Unfolder", rng: np.random.Generator) -> None:
    """Reset ``engine`` and fluctuate the inputs its systematics setting selects."""
    engine.force_recalculation()
    if engine.systematics is not SystematicsTreatment.NO_MEASURED:
        cov = engine.measured_cov() if engine.has_measured_cov else None
        engine.set_toy_measured(randomize(engine.vmeasured(), rng, cov))
    if engine.systematics is SystematicsTreatment.ALL:
        engine.response.run_toy(rng)


def run_toys(
    engine: "Unfolder",
    ntoys: int,
    rng: Optional[np.random.Generator] = None,
    record_errors: Optional[bool] = None,
) -> ToyBatch:
    """Unfold ``ntoys`` fluctuated copies of the inputs.

    Errors and chi-squared against the response truth are recorded unless the
    engine's error treatment is NO_ERROR (or ``record_errors`` is False). The
    engine is left freshly reset with its error treatment restored.
    """
    rng = engine.rng if rng is None else rng
    saved = engine.active_treatment
    if record_errors is None:
        record_errors = saved is not ErrorTreatment.NO_ERROR
    treatment = saved if saved in _TOY_ERROR_TREATMENTS else ErrorTreatment.COVARIANCE

    batch = ToyBatch()
    try:
        for i in range(ntoys):
            randomize_inputs(engine, rng)
            if not engine.unfold():
                logger.warning(f"toy {i} failed to unfold")
            batch.results.append(engine.vunfold())
            if record_errors:
                errors = engine.eunfold_v(treatment)
                chi2 = engine.chi2(None, treatment)
                if chi2 >= 0.0:
                    batch.errors.append(errors)
                    batch.chi2.append(chi2)
            if engine.verbose >= 2:
                logger.info(f"toy {i}: {engine.vunfold()}")
    finally:
        engine.force_recalculation()
        engine.active_treatment = saved

    if engine.verbose >= 1:
        logger.info(f"ran {len(batch)} toys, {len(batch.chi2)} with errors")
    return batch


def run_toy(engine: "Unfolder", rng: Optional[np.random.Generator] = None) -> Tuple[Vector, Vector, float]:
    """Run a single toy and return its result, errors and chi-squared (-1 if unavailable)."""
    batch = run_toys(engine, 1, rng, record_errors=True)
    if batch.chi2:
        return batch.results[0], batch.errors[0], batch.chi2[0]
    return batch.results[0], np.zeros(engine.nt), -1.0


def toy_covariance(engine: "Unfolder", ntoys: int, rng: Optional[np.random.Generator] = None) -> Optional[Matrix]:
    """Sample covariance of ``ntoys`` toy results; None (and no toys run) with fewer than two."""
    if ntoys <= 1:
        logger.error(f"need at least two toys for a toy covariance, got {ntoys}")
        return None
    return run_toys(engine, ntoys, rng, record_errors=False).covariance()


def run_bias_asimov_toys(
    engine: "Unfolder",
    ntoys: int,
    rng: Optional[np.random.Generator] = None,
) -> List[Vector]:
    """Relative bias of ``ntoys`` x ``ntoys`` nested truth-level toys.

    Each outer toy fluctuates the response truth, and with ALL systematics
    the response itself. Each inner toy folds the outer toy through the
    response, fluctuates the folded counts and unfolds them. The entry
    recorded is ``(t_outer - unfolded) / t_outer``, zero where the outer toy
    is not positive. Poisson fluctuations act on counts, also in density mode.
    """
    rng = engine.rng if rng is None else rng
    res = engine.response
    if res.use_density:
        truth_volumes = res.htruth.bin_volumes(engine.overflow).ravel()
        measured_volumes = res.hmeasured.bin_volumes(engine.overflow).ravel()
    else:
        truth_volumes = measured_volumes = 1.0
    bias: List[Vector] = []
    try:
        for _ in range(ntoys):
            engine.force_recalculation()
            if engine.systematics is SystematicsTreatment.ALL:
                res.run_toy(rng)
            truth_counts = randomize(res.vtruth() * truth_volumes, rng)
            vtruth = truth_counts / truth_volumes
            folded = res.vfolded(truth_counts)
            positive = vtruth > 0.0
            for _ in range(ntoys):
                # clear_cache keeps the response toy of this outer iteration
                engine.clear_cache()
                engine.set_toy_measured(randomize(folded, rng) / measured_volumes)
                unfolded = engine.vunfold()
                entry = np.zeros_like(vtruth)
                entry[positive] = (vtruth[positive] - unfolded[positive]) / vtruth[positive]
                bias.append(entry)
    finally:
        engine.force_recalculation()
    return bias
