"""Linear algebra helpers for unfolding: SVD inversion and toy statistics."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Sequence

import numpy as np
from scipy import linalg

from refold.core.errors import InvalidArgumentError, InversionFailedError

logger = logging.getLogger(__name__)

Vector = np.ndarray
Matrix = np.ndarray

# Condition numbers above this are reported as poorly conditioned.
COND_MAX = 1e17


def as_vector(values: Iterable[float]) -> Vector:
    return np.asarray(values, dtype=float).ravel()


def as_matrix(values) -> Matrix:
    mat = np.asarray(values, dtype=float)
    if mat.ndim != 2:
        raise InvalidArgumentError(f"expected a 2-D matrix, got shape {mat.shape}")
    return mat


def quadratic_form(vec: Vector, mat: Matrix) -> float:
    """Return ``vec^T mat vec``."""
    v = as_vector(vec)
    return float(v @ np.asarray(mat, dtype=float) @ v)


class InversionStatus(Enum):
    """Outcome of :func:`invert_matrix`."""

    FAILED = 0
    OK = 1
    BAD_CONDITION = 2  # negative (undefined) condition number
    POOR_CONDITION = 3  # condition above COND_MAX


@dataclass
class InversionResult:
    """Pseudo-inverse together with its conditioning diagnostics.

    Attributes:
        inverse: Pseudo-inverse with shape (cols, rows), or None on failure.
        status: Classification of the inversion.
        condition: Ratio of largest to smallest singular value, -1 if singular.
        max_error: Largest deviation of ``matrix @ inverse`` from identity
            (only computed in verbose mode).
    """

    inverse: Optional[Matrix]
    status: InversionStatus
    condition: float
    max_error: Optional[float] = None

    @property
    def ok(self) -> bool:
        return self.status is not InversionStatus.FAILED and self.inverse is not None

    def raise_for_status(self) -> Matrix:
        if not self.ok:
            raise InversionFailedError(f"matrix inversion failed (condition={self.condition:g})")
        return self.inverse


def _identity_deviation(mat: Matrix, inv: Matrix) -> float:
    product = mat @ inv
    return float(np.max(np.abs(product - np.eye(product.shape[0])))) if product.size else 0.0


def invert_matrix(
    mat,
    name: str = "matrix",
    verbose: int = 0,
    out: Optional[Matrix] = None,
    tolerance: float = float(np.finfo(float).eps),
) -> InversionResult:
    """Invert a matrix using singular value decomposition.

    The pseudo-inverse of an (r, c) matrix has shape (c, r). A decomposition
    whose smallest singular value falls below ``tolerance`` times the largest
    is singular: the condition is reported as -1 and no inverse is returned.

    Args:
        mat: Matrix to invert.
        name: Label used in log records.
        verbose: 1 logs condition, determinant and the identity check,
            3 and above also logs ``mat @ inverse``.
        out: Optional array receiving the inverse. May be ``mat`` itself for
            in-place inversion of a square array.
        tolerance: Relative singular value threshold for singularity.
    """
    a = as_matrix(mat)
    if a.size == 0:
        inv = np.zeros((a.shape[1], a.shape[0]))
        return InversionResult(inverse=inv, status=InversionStatus.OK, condition=0.0)

    try:
        u, s, vh = linalg.svd(a, full_matrices=False)
    except (linalg.LinAlgError, ValueError) as exc:
        logger.error(f"{name} inversion failed: {exc}")
        return InversionResult(inverse=None, status=InversionStatus.FAILED, condition=float("nan"))

    threshold = tolerance * s[0]
    singular = s[0] <= 0.0 or s[-1] <= threshold
    condition = -1.0 if singular else float(s[0] / s[-1])

    if verbose >= 1:
        message = f"{name} condition={condition:g}"
        if a.shape[0] == a.shape[1]:
            message += f", determinant={float(np.prod(s)):g}"
        logger.info(f"{message}, tolerance={threshold:g}")

    status = InversionStatus.OK
    if condition < 0.0:
        logger.warning(f"bad {name} condition ({condition:g})")
        status = InversionStatus.BAD_CONDITION
    elif condition > COND_MAX:
        logger.warning(f"poorly conditioned {name} - inverse may be inaccurate (condition={condition:g})")
        status = InversionStatus.POOR_CONDITION

    if singular:
        logger.error(f"{name} inversion failed")
        return InversionResult(inverse=None, status=InversionStatus.FAILED, condition=condition)

    inv = (vh.T / s) @ u.T

    max_error = None
    if verbose >= 1:
        max_error = _identity_deviation(a, inv)
        if verbose >= 3:
            logger.info(f"{name} V*V^-1 =\n{a @ inv}")
        logger.info(f"Inverse {name} {100.0 * max_error:g}% maximum error")

    if out is not None:
        if out.shape != inv.shape:
            raise InvalidArgumentError(f"output shape {out.shape} does not match inverse shape {inv.shape}")
        out[...] = inv
        inv = out
    return InversionResult(inverse=inv, status=status, condition=condition, max_error=max_error)


def cut_zeros(mat) -> Matrix:
    """Remove every row whose elements sum to zero, together with the matching column."""
    a = as_matrix(mat)
    keep = a.sum(axis=1) != 0
    return a[np.ix_(keep, keep)] if a.shape[0] == a.shape[1] else a[keep]


def sample_covariance(samples: Sequence[Vector]) -> Optional[Matrix]:
    """Unbiased sample covariance of a list of equally long vectors.

    Uses ``(sum x_i x_j - sum x_i sum x_j / N) / (N - 1)``; returns None when
    fewer than two samples are given.
    """
    n = len(samples)
    if n <= 1:
        return None
    x = np.vstack([as_vector(v) for v in samples])
    xisum = x.sum(axis=0)
    xijsum = x.T @ x
    return (xijsum - np.outer(xisum, xisum) / n) / (n - 1)


def randomize(values, rng: np.random.Generator, covariance: Optional[Matrix] = None) -> Vector:
    """Draw one toy around ``values``.

    Poisson fluctuations by default; a multivariate normal when a covariance
    matrix is supplied.
    """
    v = as_vector(values)
    if covariance is not None:
        return rng.multivariate_normal(v, np.asarray(covariance, dtype=float), method="svd")
    return rng.poisson(np.clip(v, 0.0, None)).astype(float)


def stack_vectors(vectors: List[Vector], length: int) -> Matrix:
    if not vectors:
        return np.zeros((0, length))
    return np.vstack([as_vector(v) for v in vectors])
