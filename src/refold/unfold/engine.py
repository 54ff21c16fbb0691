"""
Algorithm-agnostic unfolding engine.

An :class:`Unfolder` binds a :class:`~refold.core.response.Response` and a
measured distribution, runs the selected strategy lazily and caches every
derived quantity (result, covariance, weights, variances, toy covariance,
bias) until its inputs change.

Usage example
-------------
>>> from refold.unfold.engine import Unfolder
>>> unfolder = Unfolder(response, measured, Algorithm.BAYES, regparm=4)
>>> unfolder.vunfold()
>>> unfolder.eunfold_v(ErrorTreatment.COVARIANCE)
"""

from __future__ import annotations

import copy
import logging
import sys
from typing import Any, Dict, List, Optional, TextIO, Tuple

import numpy as np

from refold.core.cache import UnfoldCache
from refold.core.config import UnfoldConfig
from refold.core.errors import BiasNotComputedError, InvalidArgumentError
from refold.core.histogram import Histogram, as_histogram, from_vector, to_error_vector, to_vector
from refold.core.linalg import as_vector, invert_matrix, quadratic_form
from refold.core.response import Response
from refold.solvers import REGPARM_UNSET, UnfoldStrategy, create_strategy
from refold.unfold._types import (
    Algorithm,
    BiasMethod,
    ErrorTreatment,
    ResponseOwnership,
    SystematicsTreatment,
    to_algorithm,
    to_error_treatment,
    to_ownership,
    to_systematics,
)

logger = logging.getLogger(__name__)

# Treatments that report a full covariance rather than per-bin errors.
_MATRIX_TREATMENTS = (ErrorTreatment.COVARIANCE, ErrorTreatment.COV_TOY)


class Unfolder:
    """
    Unfolding engine with a lazily filled cache.

    Parameters
    ----------
    response : Response, optional
        Response model. Cloned unless ``ownership`` is ``OWNED``.
    measured : Histogram or array-like, optional
        Measured distribution; the engine keeps a private copy.
    algorithm : Algorithm
        Strategy tag, see :func:`refold.solvers.create_strategy`.
    regparm : float, optional
        Regularization parameter; None keeps the strategy default.
    ownership : ResponseOwnership
        ``CLONE`` (default) copies the response, ``OWNED`` adopts it.
    config : UnfoldConfig, optional
        Verbosity, toy count, systematics, error treatment and seed.
    rng : numpy.random.Generator, optional
        Default random source for toys; built from ``config.seed`` if omitted.
    """

    def __init__(
        self,
        response: Optional[Response] = None,
        measured=None,
        algorithm: Algorithm = Algorithm.NONE,
        *,
        regparm: Optional[float] = None,
        ownership: ResponseOwnership = ResponseOwnership.CLONE,
        name: str = "",
        title: str = "",
        config: Optional[UnfoldConfig] = None,
        rng: Optional[np.random.Generator] = None,
    ) -> None:
        self.name = name
        self.title = title
        self._algorithm = to_algorithm(algorithm)
        self._strategy: UnfoldStrategy = create_strategy(self._algorithm)

        self._res: Optional[Response] = None
        self._meas: Optional[Histogram] = None
        self._cov_mes: Optional[np.ndarray] = None
        self._nm = 0
        self._nt = 0
        self._overflow = False

        cfg = config or UnfoldConfig(algorithm=self._algorithm)
        self.verbose = cfg.verbose
        self.ntoys = cfg.ntoys
        self._systematics = cfg.systematics
        self.error_treatment = cfg.error_treatment
        self._with_error = cfg.error_treatment
        self.rng = rng if rng is not None else np.random.default_rng(cfg.seed)

        # number of times the strategy's unfold() ran
        self.unfold_count = 0

        self._cache = UnfoldCache()
        if response is not None or measured is not None:
            self.setup(response, measured, ownership)

        if regparm is None:
            regparm = cfg.regparm
        if regparm is not None and regparm != REGPARM_UNSET:
            self.reg_parm = regparm
        self.clear_cache()

    @classmethod
    def new(
        cls,
        algorithm,
        response: Response,
        measured,
        regparm: Optional[float] = None,
        name: str = "",
        title: str = "",
        **kwargs,
    ) -> "Unfolder":
        """Build an engine for ``algorithm``; the tag-dispatched constructor."""
        return cls(response, measured, algorithm, regparm=regparm, name=name, title=title, **kwargs)

    @classmethod
    def from_config(cls, config: UnfoldConfig, response: Response, measured, **kwargs) -> "Unfolder":
        return cls(response, measured, config.algorithm, config=config, **kwargs)

    # ------------------------------------------------------------------
    # Binding inputs
    # ------------------------------------------------------------------
    def setup(self, response: Response, measured, ownership: ResponseOwnership = ResponseOwnership.CLONE) -> "Unfolder":
        """Bind a response and a measured distribution; always resets the cache."""
        self.reset()
        self.set_response(response, ownership)
        self.set_measured(measured)
        return self

    def set_response(self, response: Response, ownership: ResponseOwnership = ResponseOwnership.CLONE) -> None:
        if response is None:
            raise InvalidArgumentError("cannot set response to invalid value!")
        if not isinstance(response, Response):
            raise InvalidArgumentError(f"expected a Response, got {type(response).__name__}")
        if to_ownership(ownership) is ResponseOwnership.OWNED:
            self._res = response
        else:
            self._res = response.copy()
        self._overflow = self._res.use_overflow
        self._nm = self._res.nbins_measured
        self._nt = self._res.nbins_truth
        self._set_name_title_default()
        self.clear_cache()

    def set_measured(self, measured) -> None:
        """Set the measured distribution; the engine keeps its own copy."""
        hist = as_histogram(measured, name="measured").copy()
        if self._res is not None and hist.nbins(self._overflow) != self._nm:
            raise InvalidArgumentError(
                f"measured distribution has {hist.nbins(self._overflow)} bins, response expects {self._nm}"
            )
        self._meas = hist
        self.clear_cache()

    def set_measured_vector(self, values, errors=None) -> None:
        """Set the measured distribution from a flat vector in the response's measured binning."""
        if self._res is None:
            raise InvalidArgumentError("set the response before a measured vector")
        template = self._res.hmeasured
        hist = from_vector(values, errors, "measured", self.title, template.edges, self._overflow)
        self.set_measured(hist)

    def set_measured_cov(self, cov) -> None:
        """Set a full covariance matrix for the measured distribution."""
        mat = np.array(cov, dtype=float)
        if mat.shape != (self._nm, self._nm):
            raise InvalidArgumentError(f"measured covariance must be {self._nm}x{self._nm}, got {mat.shape}")
        self._cov_mes = mat
        self.clear_cache()

    def _set_name_title_default(self) -> None:
        if self._res is None:
            return
        if not self.name:
            self.name = self._res.name
        if not self.title:
            self.title = f"Unfold {self._res.title}".rstrip()

    # ------------------------------------------------------------------
    # Cache management
    # ------------------------------------------------------------------
    def _fresh_cache(self) -> UnfoldCache:
        cache = UnfoldCache()
        cache.settings = self._strategy.settings(self)
        return cache

    def clear_cache(self) -> None:
        """Drop every derived quantity, including the unfolded result and failure state."""
        self._cache = self._fresh_cache()

    def force_recalculation(self) -> None:
        """Clear the cache and return the response to its nominal state."""
        self.clear_cache()
        if self._res is not None:
            self._res.clear_cache()

    def reset(self) -> None:
        """Unbind response and measured input and clear the cache."""
        self._res = None
        self._meas = None
        self._cov_mes = None
        self._nm = self._nt = 0
        self._overflow = False
        self.clear_cache()

    @property
    def cache(self) -> UnfoldCache:
        return self._cache

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    @property
    def algorithm(self) -> Algorithm:
        return self._algorithm

    def set_algorithm(self, algorithm) -> None:
        """Select a different strategy; the cache is reset."""
        alg = to_algorithm(algorithm)
        self._strategy = create_strategy(alg)
        self._algorithm = alg
        self.clear_cache()

    @property
    def strategy(self) -> UnfoldStrategy:
        return self._strategy

    @property
    def reg_parm(self) -> float:
        return self._strategy.reg_parm

    @reg_parm.setter
    def reg_parm(self, value: float) -> None:
        self._strategy.reg_parm = value
        self.clear_cache()

    @property
    def min_parm(self) -> float:
        return self._cache.settings.minimum

    @property
    def max_parm(self) -> float:
        return self._cache.settings.maximum

    @property
    def step_size_parm(self) -> float:
        return self._cache.settings.step_size

    @property
    def default_parm(self) -> float:
        return self._cache.settings.default

    @property
    def systematics(self) -> SystematicsTreatment:
        return self._systematics

    def include_systematics(self, systematics) -> None:
        """Choose which inputs toys fluctuate; clears the cache on change."""
        dosys = to_systematics(systematics)
        if dosys is not self._systematics:
            self.clear_cache()
            self._systematics = dosys

    @property
    def response(self) -> Optional[Response]:
        return self._res

    @property
    def hmeasured(self) -> Optional[Histogram]:
        return self._meas

    @property
    def nm(self) -> int:
        return self._nm

    @property
    def nt(self) -> int:
        return self._nt

    @property
    def overflow(self) -> bool:
        return self._overflow

    @property
    def active_treatment(self) -> ErrorTreatment:
        """Treatment of the most recent error request; cached variances belong to it."""
        return self._with_error

    @active_treatment.setter
    def active_treatment(self, treatment) -> None:
        self._with_error = to_error_treatment(treatment)

    def resolve_treatment(self, treatment) -> ErrorTreatment:
        t = to_error_treatment(treatment)
        if t is ErrorTreatment.DEFAULT:
            t = self.error_treatment
        if t is ErrorTreatment.DEFAULT:
            t = ErrorTreatment.COVARIANCE
        return t

    def _require_response(self) -> Response:
        if self._res is None or self._meas is None:
            raise InvalidArgumentError("no response/measured distribution bound; call setup() first")
        return self._res

    # ------------------------------------------------------------------
    # Measured inputs
    # ------------------------------------------------------------------
    def vmeasured(self) -> np.ndarray:
        """Measured distribution as a flat vector."""
        if self._cache.v_meas is None:
            res = self._require_response()
            self._cache.v_meas = to_vector(self._meas, self._overflow, res.use_density)
        return self._cache.v_meas

    def emeasured(self) -> np.ndarray:
        """Measured errors as a flat vector."""
        if self._cache.e_meas is None:
            res = self._require_response()
            if self._cov_mes is not None:
                self._cache.e_meas = np.sqrt(np.clip(np.diag(self._cov_mes), 0.0, None))
            else:
                self._cache.e_meas = to_error_vector(self._meas, self._overflow, res.use_density)
        return self._cache.e_meas

    def measured_cov(self) -> np.ndarray:
        """Measured covariance; diagonal from the measured errors unless one was set."""
        if self._cov_mes is not None:
            return self._cov_mes
        if self._cache.cov_meas is None:
            self._cache.cov_meas = np.diag(self.emeasured() ** 2)
        return self._cache.cov_meas

    @property
    def has_measured_cov(self) -> bool:
        return self._cov_mes is not None

    def set_toy_measured(self, values) -> None:
        """Replace the cached measured vector for the current cache generation only."""
        v = as_vector(values)
        if v.size != self._nm:
            raise InvalidArgumentError(f"toy measured vector has {v.size} bins, expected {self._nm}")
        self._cache.v_meas = v

    # ------------------------------------------------------------------
    # Unfolding
    # ------------------------------------------------------------------
    def unfold(self) -> bool:
        """Run the strategy once per cache generation. Returns False once it has failed."""
        cache = self._cache
        if cache.unfolded:
            return True
        if cache.failed:
            return False
        self._require_response()

        self.unfold_count += 1
        try:
            rec = self._strategy.unfold(self)
        except np.linalg.LinAlgError as exc:
            logger.error(f"{self._algorithm.name} unfolding failed: {exc}")
            rec = None

        if rec is not None:
            rec = as_vector(rec)
            if rec.size != self._nt:
                logger.error(f"{self._algorithm.name} unfolding returned {rec.size} bins, expected {self._nt}")
                rec = None

        if rec is None:
            cache.mark_failed()
            return False
        cache.set_result(rec)
        return True

    def vunfold(self) -> np.ndarray:
        """Unfolded distribution as a vector; zeros if unfolding failed."""
        if not self.unfold() and self._cache.rec.size == 0:
            self._cache.rec = np.zeros(self._nt)
        return self._cache.rec.copy()

    def unfold_with_errors(self, treatment=ErrorTreatment.DEFAULT, want_weights: bool = False) -> bool:
        """Make sure the result and the quantities ``treatment`` needs are available."""
        treatment = to_error_treatment(treatment)
        if not self.unfold():
            return False

        if self._with_error is not treatment:
            self._cache.clear_treatment_errors()
        self._with_error = treatment

        if want_weights and treatment in (ErrorTreatment.ERRORS, ErrorTreatment.COVARIANCE):
            if not self._cache.have_wgt:
                self._get_wgt()
            ok = self._cache.have_wgt
        elif treatment in (ErrorTreatment.ERRORS, ErrorTreatment.ROOFIT):
            if not self._cache.have_errors:
                self._get_errors()
            ok = self._cache.have_errors
        elif treatment is ErrorTreatment.COVARIANCE:
            if not self._cache.have_cov:
                self._get_cov()
            ok = self._cache.have_cov
        elif treatment is ErrorTreatment.COV_TOY:
            if not self._cache.have_err_mat:
                self._get_err_mat()
            ok = self._cache.have_err_mat
        else:
            ok = True

        if not ok:
            self._cache.errors_failed = True
        return ok

    # ------------------------------------------------------------------
    # Error computations
    # ------------------------------------------------------------------
    def _get_cov(self) -> None:
        try:
            cov = self._strategy.covariance(self)
        except np.linalg.LinAlgError as exc:
            logger.error(f"{self._algorithm.name} covariance failed: {exc}")
            return
        if cov is None:
            return
        cov = np.asarray(cov, dtype=float)
        if cov.shape != (self._nt, self._nt):
            logger.error(f"{self._algorithm.name} covariance has shape {cov.shape}, expected {self._nt}x{self._nt}")
            return
        self._cache.set_covariance(cov)

    def covariance_matrix(self) -> Optional[np.ndarray]:
        """Strategy covariance of the result, computed on first use; None if unavailable."""
        if not self._cache.have_cov:
            self._get_cov()
        return self._cache.cov if self._cache.have_cov else None

    def _get_errors(self) -> None:
        variances = self._strategy.errors(self)
        if variances is None:
            return
        self._cache.set_variances(as_vector(variances))

    def _invert_covariance(self, mat: np.ndarray, name: str) -> Optional[np.ndarray]:
        # bins whose row is entirely zero carry no information and get zero weight
        keep = np.any(mat != 0.0, axis=1)
        wgt = np.zeros_like(mat)
        if not np.any(keep):
            return wgt
        result = invert_matrix(mat[np.ix_(keep, keep)], name, self.verbose)
        if not result.ok:
            return None
        wgt[np.ix_(keep, keep)] = result.inverse
        return wgt

    def _get_wgt(self) -> None:
        cov = self.covariance_matrix()
        if cov is None:
            return
        wgt = self._invert_covariance(cov, "covariance matrix")
        if wgt is not None:
            self._cache.set_weights(wgt)

    def _get_err_mat(self) -> None:
        from refold.uncertainty.toys import toy_covariance

        err_mat = toy_covariance(self, self.ntoys, self.rng)
        if err_mat is None:
            return
        # the toys leave a fresh cache behind; restore the nominal result
        self.unfold()
        self._cache.set_err_mat(err_mat)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    def eunfold_v(self, treatment=ErrorTreatment.DEFAULT) -> np.ndarray:
        """Per-bin errors of the result for ``treatment`` (never negative)."""
        t = self.resolve_treatment(treatment)
        out = np.zeros(self._nt)
        if not self.unfold_with_errors(t):
            return out
        cache = self._cache
        if t is ErrorTreatment.NO_ERROR:
            out = np.sqrt(np.abs(cache.rec))
        elif t in (ErrorTreatment.ERRORS, ErrorTreatment.ROOFIT):
            out = np.sqrt(np.abs(cache.variances))
        elif t is ErrorTreatment.COVARIANCE:
            out = np.sqrt(np.abs(np.diag(cache.cov)))
        elif t is ErrorTreatment.COV_TOY:
            out = np.sqrt(np.abs(np.diag(cache.err_mat)))
        return out

    def eunfold(self, treatment=ErrorTreatment.DEFAULT) -> np.ndarray:
        """Covariance matrix of the result for ``treatment``."""
        t = self.resolve_treatment(treatment)
        if not self.unfold_with_errors(t):
            return np.zeros((self._nt, self._nt))
        cache = self._cache
        if t is ErrorTreatment.NO_ERROR:
            return np.diag(cache.rec)
        if t in (ErrorTreatment.ERRORS, ErrorTreatment.ROOFIT):
            return np.diag(cache.variances)
        if t is ErrorTreatment.COVARIANCE:
            return cache.cov.copy()
        return cache.err_mat.copy()

    def wunfold(self, treatment=ErrorTreatment.DEFAULT) -> np.ndarray:
        """Weight (inverse covariance) matrix of the result for ``treatment``."""
        t = self.resolve_treatment(treatment)
        wgt = np.zeros((self._nt, self._nt))
        if not self.unfold_with_errors(t, want_weights=True):
            return wgt
        cache = self._cache
        if t is ErrorTreatment.NO_ERROR:
            nz = cache.rec != 0.0
            wgt[nz, nz] = 1.0 / cache.rec[nz]
        elif t is ErrorTreatment.ERRORS:
            np.fill_diagonal(wgt, np.diag(cache.wgt))
        elif t is ErrorTreatment.ROOFIT:
            nz = cache.variances > 0.0
            wgt[nz, nz] = 1.0 / cache.variances[nz]
        elif t is ErrorTreatment.COVARIANCE:
            wgt = cache.wgt.copy()
        elif t is ErrorTreatment.COV_TOY:
            inv = self._invert_covariance(cache.err_mat, "covariance matrix from toys")
            if inv is None:
                cache.errors_failed = True
            else:
                wgt = inv
        return wgt

    def _reference_vector(self, reference) -> np.ndarray:
        if isinstance(reference, Histogram):
            density = self._res.use_density if self._res is not None else False
            ref = to_vector(reference, self._overflow, density)
        else:
            ref = as_vector(reference)
        if ref.size != self._nt:
            raise InvalidArgumentError(f"reference has {ref.size} bins, expected {self._nt}")
        return ref

    def chi2(self, reference=None, treatment=ErrorTreatment.COVARIANCE) -> float:
        """
        Chi-squared of the result against ``reference`` (response truth by default).

        COVARIANCE and COV_TOY use the full weight matrix; the other treatments
        sum squared pulls over bins with a positive error. Returns -1 when the
        errors cannot be computed.
        """
        t = self.resolve_treatment(treatment)
        if reference is None:
            reference = self._require_response().htruth
        if not self.unfold_with_errors(t):
            return -1.0
        residual = self._cache.rec - self._reference_vector(reference)
        if t in _MATRIX_TREATMENTS:
            wgt = self.wunfold(t)
            if self._cache.errors_failed:
                return -1.0
            return quadratic_form(residual, wgt)
        errors = self.eunfold_v(t)
        if self._cache.errors_failed:
            return -1.0
        mask = errors > 0.0
        return float(np.sum((residual[mask] / errors[mask]) ** 2))

    def hunfold(self, treatment=ErrorTreatment.DEFAULT) -> Histogram:
        """Unfolded distribution in the truth binning; zero-filled if unfolding failed."""
        t = self.resolve_treatment(treatment)
        if not self.unfold_with_errors(t):
            t = ErrorTreatment.NO_ERROR
        truth = self._require_response().htruth
        if not self._cache.unfolded:
            return Histogram.empty(truth.edges, name=truth.name, title=truth.title)
        return from_vector(self.vunfold(), self.eunfold_v(t), truth.name, truth.title, truth.edges, self._overflow)

    # ------------------------------------------------------------------
    # Toys and bias
    # ------------------------------------------------------------------
    def run_toys(self, ntoys: int, rng: Optional[np.random.Generator] = None, record_errors: Optional[bool] = None):
        """Unfold ``ntoys`` randomized inputs; see :func:`refold.uncertainty.toys.run_toys`."""
        from refold.uncertainty.toys import run_toys

        return run_toys(self, ntoys, rng, record_errors)

    def run_toy(self, rng: Optional[np.random.Generator] = None) -> Tuple[np.ndarray, np.ndarray, float]:
        from refold.uncertainty.toys import run_toy

        return run_toy(self, rng)

    def run_bias_asimov_toys(self, ntoys: int, rng: Optional[np.random.Generator] = None) -> List[np.ndarray]:
        from refold.uncertainty.toys import run_bias_asimov_toys

        return run_bias_asimov_toys(self, ntoys, rng)

    def calculate_bias(
        self,
        method=BiasMethod.ESTIMATOR,
        ntoys: int = 50,
        truth=None,
        rng: Optional[np.random.Generator] = None,
    ):
        """Quantify the bias of this setup; see :func:`refold.uncertainty.bias.calculate_bias`."""
        from refold.uncertainty.bias import calculate_bias

        return calculate_bias(self, method, ntoys, truth, rng)

    def calculate_bias_legacy(self, ntoys: int, truth=None):
        """``ntoys == 0`` runs the estimator protocol, anything else the closure protocol."""
        from refold.uncertainty.bias import calculate_bias_legacy

        return calculate_bias_legacy(self, ntoys, truth)

    def store_bias(self, bias: np.ndarray, sigbias: np.ndarray) -> None:
        self._cache.set_bias(bias, sigbias)

    def vbias(self) -> np.ndarray:
        if not self._cache.have_bias:
            raise BiasNotComputedError("calculate bias before attempting to retrieve it!")
        return self._cache.bias.copy()

    def ebias(self) -> np.ndarray:
        if not self._cache.have_bias:
            raise BiasNotComputedError("calculate bias before attempting to retrieve it!")
        return self._cache.sigbias.copy()

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    def table(self, truth=None, treatment=ErrorTreatment.DEFAULT):
        from refold.reporting import build_unfold_table

        return build_unfold_table(self, truth, treatment)

    def print_table(self, truth=None, treatment=ErrorTreatment.DEFAULT, file: Optional[TextIO] = None) -> None:
        """Print truth, measured and unfolded values bin by bin."""
        from refold.reporting import format_unfold_table

        table = self.table(truth, treatment)
        if table is not None:
            print(format_unfold_table(table), file=file or sys.stdout)

    def summary(self) -> str:
        """One-line description of the configuration."""
        parts = [f"{type(self).__name__}::{self.name} \"{self.title}\", regularisation parameter={self.reg_parm:g}"]
        if self._cov_mes is not None:
            parts.append("with measurement covariance")
        if self._systematics is not SystematicsTreatment.NO_SYSTEMATICS:
            parts.append("calculate systematic errors")
        parts.append(f"{self._nm} bins measured")
        truth = f"{self._nt} bins truth"
        if self._overflow:
            truth += " including overflows"
        parts.append(truth)
        return ", ".join(parts)

    def describe(self) -> Dict[str, Any]:
        """Member values useful when debugging."""
        return {
            "algorithm": self._algorithm.name,
            "reg_parm": self.reg_parm,
            "has_measured_cov": self._cov_mes is not None,
            "verbose": self.verbose,
            "nm": self._nm,
            "nt": self._nt,
            "overflow": self._overflow,
            "ntoys": self.ntoys,
            "systematics": self._systematics.name,
            "status": self._cache.status.value,
            "response": repr(self._res),
        }

    def copy(self) -> "Unfolder":
        """Independent copy, including the response and the cache."""
        return copy.deepcopy(self)

    def __repr__(self) -> str:
        return f"Unfolder(algorithm={self._algorithm.name}, nm={self._nm}, nt={self._nt}, status={self._cache.status.value})"
