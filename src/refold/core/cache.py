"""Lazily computed quantities of one unfolding engine."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import numpy as np


class UnfoldStatus(Enum):
    """Lifecycle of the result held by a cache generation."""

    UNINITIALIZED = "uninitialized"
    UNFOLDED = "unfolded"
    FAILED = "failed"


@dataclass
class RegularizationSettings:
    """Regularization parameter range suggested by an unfolding strategy."""

    minimum: float = 0.0
    maximum: float = 0.0
    step_size: float = 0.0
    default: float = 0.0


def _empty_vector() -> np.ndarray:
    return np.zeros(0)


def _empty_matrix() -> np.ndarray:
    return np.zeros((0, 0))


@dataclass
class UnfoldCache:
    """Derived quantities plus a validity flag for each of them.

    Every ``have_*`` flag is True exactly when the matching field was filled
    since the last reset. A fresh cache holds zero-sized arrays only.
    """

    status: UnfoldStatus = UnfoldStatus.UNINITIALIZED
    rec: np.ndarray = field(default_factory=_empty_vector)

    cov: np.ndarray = field(default_factory=_empty_matrix)
    have_cov: bool = False
    wgt: np.ndarray = field(default_factory=_empty_matrix)
    have_wgt: bool = False
    variances: np.ndarray = field(default_factory=_empty_vector)
    have_errors: bool = False
    err_mat: np.ndarray = field(default_factory=_empty_matrix)
    have_err_mat: bool = False
    bias: np.ndarray = field(default_factory=_empty_vector)
    sigbias: np.ndarray = field(default_factory=_empty_vector)
    have_bias: bool = False
    # sticky: set when a requested error treatment could not be computed
    errors_failed: bool = False

    # measured-side inputs derived on first use
    v_meas: Optional[np.ndarray] = None
    e_meas: Optional[np.ndarray] = None
    cov_meas: Optional[np.ndarray] = None

    settings: RegularizationSettings = field(default_factory=RegularizationSettings)

    @property
    def unfolded(self) -> bool:
        return self.status is UnfoldStatus.UNFOLDED

    @property
    def failed(self) -> bool:
        return self.status is UnfoldStatus.FAILED

    def set_result(self, rec: np.ndarray) -> None:
        self.rec = np.asarray(rec, dtype=float).copy()
        self.status = UnfoldStatus.UNFOLDED

    def mark_failed(self) -> None:
        self.status = UnfoldStatus.FAILED

    def set_covariance(self, cov: np.ndarray) -> None:
        self.cov = np.asarray(cov, dtype=float)
        self.have_cov = True

    def set_weights(self, wgt: np.ndarray) -> None:
        self.wgt = np.asarray(wgt, dtype=float)
        self.have_wgt = True

    def set_variances(self, variances: np.ndarray) -> None:
        self.variances = np.asarray(variances, dtype=float)
        self.have_errors = True

    def set_err_mat(self, err_mat: np.ndarray) -> None:
        self.err_mat = np.asarray(err_mat, dtype=float)
        self.have_err_mat = True

    def set_bias(self, bias: np.ndarray, sigbias: np.ndarray) -> None:
        self.bias = np.asarray(bias, dtype=float)
        self.sigbias = np.asarray(sigbias, dtype=float)
        self.have_bias = True

    def clear_treatment_errors(self) -> None:
        """Invalidate the per-bin variances, which depend on the error treatment."""
        self.variances = _empty_vector()
        self.have_errors = False

    def copy(self) -> "UnfoldCache":
        return copy.deepcopy(self)
