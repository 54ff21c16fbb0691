"""Response model construction utilities.

A :class:`Response` records how events generated in truth bins migrate into
measured bins. It is built either from a known migration matrix
(:meth:`Response.from_matrix`) or by filling training events
(:meth:`Response.setup` followed by :meth:`fill`, :meth:`miss` and
:meth:`fake`).
"""

from __future__ import annotations

import copy
from typing import Optional, Sequence, Union

import numpy as np

from refold.core.errors import InvalidArgumentError
from refold.core.histogram import Histogram, as_histogram, to_error_vector, to_vector


ArrayLike = Union[Sequence[float], np.ndarray]


def _flat_index(hist: Histogram, x: np.ndarray, include_overflow: bool) -> np.ndarray:
    """Flat vector index of each coordinate, -1 for flow bins when they are excluded."""
    if hist.dim != 1:
        raise InvalidArgumentError("event filling is only supported for 1-D binnings")
    edges = hist.edges[0]
    raw = np.digitize(x, edges)  # 0 = underflow, len(edges) = overflow
    if include_overflow:
        return raw
    idx = raw - 1
    idx[(raw == 0) | (raw == len(edges))] = -1
    return idx


class Response:
    """Migration counts between truth and measured bins.

    Args:
        measured: Training measured distribution (reconstructed events, fakes included).
        truth: Training truth distribution (all generated events, misses included).
        counts: Migration counts with shape ``(nm, nt)`` in flat vector indexing.
        fakes: Optional measured distribution of events without a truth match.
        overflow: Whether under/overflow bins are part of the flat vectors.
        density: Whether flat vectors are divided by bin volumes.
        sumw2: Sum of squared weights per migration cell; defaults to ``counts``.
    """

    def __init__(
        self,
        measured,
        truth,
        counts: ArrayLike,
        fakes=None,
        *,
        overflow: bool = False,
        density: bool = False,
        sumw2: Optional[ArrayLike] = None,
        name: str = "",
        title: str = "",
    ) -> None:
        self._measured = as_histogram(measured, name="measured").copy()
        self._truth = as_histogram(truth, name="truth").copy()
        self._fakes = None if fakes is None else as_histogram(fakes, name="fakes").copy()
        self._overflow = bool(overflow)
        self._density = bool(density)
        self.name = name
        self.title = title

        nm = self._measured.nbins(self._overflow)
        nt = self._truth.nbins(self._overflow)
        self._counts = np.array(counts, dtype=float)
        if self._counts.shape != (nm, nt):
            raise InvalidArgumentError(
                f"response counts have shape {self._counts.shape}, expected ({nm}, {nt})"
            )
        self._sumw2 = self._counts.copy() if sumw2 is None else np.array(sumw2, dtype=float)
        if self._sumw2.shape != self._counts.shape:
            raise InvalidArgumentError("sumw2 must have the same shape as counts")
        self._toy_counts: Optional[np.ndarray] = None

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------
    @classmethod
    def setup(
        cls,
        measured_edges: ArrayLike,
        truth_edges: ArrayLike,
        *,
        overflow: bool = False,
        density: bool = False,
        name: str = "",
        title: str = "",
    ) -> "Response":
        """Create an empty 1-D response ready for :meth:`fill`."""
        measured = Histogram.empty([measured_edges], name="measured")
        truth = Histogram.empty([truth_edges], name="truth")
        fakes = Histogram.empty([measured_edges], name="fakes")
        nm = measured.nbins(overflow)
        nt = truth.nbins(overflow)
        return cls(
            measured, truth, np.zeros((nm, nt)), fakes,
            overflow=overflow, density=density, name=name, title=title,
        )

    @classmethod
    def from_matrix(
        cls,
        matrix: ArrayLike,
        truth,
        measured=None,
        *,
        overflow: bool = False,
        density: bool = False,
        name: str = "",
        title: str = "",
    ) -> "Response":
        """Build a response from a migration probability matrix.

        ``matrix[i, j]`` is the probability that an event in truth bin ``j``
        is measured in bin ``i``; column sums below one describe inefficiency.
        When ``measured`` is omitted the folded truth is used.
        """
        mat = np.asarray(matrix, dtype=float)
        if mat.ndim != 2:
            raise InvalidArgumentError("response matrix must be 2-D")
        truth_hist = as_histogram(truth, name="truth")
        vtruth = to_vector(truth_hist, overflow)
        if mat.shape[1] != vtruth.size:
            raise InvalidArgumentError(
                f"response matrix has {mat.shape[1]} truth columns but truth has {vtruth.size} bins"
            )
        counts = mat * vtruth[np.newaxis, :]
        if measured is None:
            measured = Histogram.from_values(counts.sum(axis=1), name="measured")
        return cls(measured, truth_hist, counts, overflow=overflow, density=density, name=name, title=title)

    @classmethod
    def from_histograms(
        cls,
        measured,
        truth,
        response: Histogram,
        fakes=None,
        *,
        overflow: bool = False,
        density: bool = False,
        name: str = "",
        title: str = "",
    ) -> "Response":
        """Build a response from a 2-D histogram of (measured, truth) migrations.

        The first axis of ``response`` follows the measured binning, the
        second the truth binning; its bin errors become the per-cell
        ``sqrt(sumw2)``.
        """
        if response.dim != 2:
            raise InvalidArgumentError("the migration histogram must be 2-D (measured x truth)")
        sel = (slice(None), slice(None)) if overflow else (slice(1, -1), slice(1, -1))
        counts = response.contents[sel]
        sumw2 = response.bin_errors[sel] ** 2
        return cls(
            measured, truth, counts, fakes,
            overflow=overflow, density=density, sumw2=sumw2, name=name, title=title,
        )

    def fill(self, x_measured: ArrayLike, x_true: ArrayLike, weight: Union[float, ArrayLike] = 1.0) -> None:
        """Add matched training events."""
        xm = np.atleast_1d(np.asarray(x_measured, dtype=float))
        xt = np.atleast_1d(np.asarray(x_true, dtype=float))
        if xm.shape != xt.shape:
            raise InvalidArgumentError("measured and true coordinates must have the same length")
        w = np.broadcast_to(np.asarray(weight, dtype=float), xm.shape)
        self._fill_hist(self._measured, xm, w)
        self._fill_hist(self._truth, xt, w)
        im = _flat_index(self._measured, xm, self._overflow)
        it = _flat_index(self._truth, xt, self._overflow)
        ok = (im >= 0) & (it >= 0)
        np.add.at(self._counts, (im[ok], it[ok]), w[ok])
        np.add.at(self._sumw2, (im[ok], it[ok]), w[ok] ** 2)
        self.clear_cache()

    def miss(self, x_true: ArrayLike, weight: Union[float, ArrayLike] = 1.0) -> None:
        """Add truth events that were not measured."""
        xt = np.atleast_1d(np.asarray(x_true, dtype=float))
        self._fill_hist(self._truth, xt, np.broadcast_to(np.asarray(weight, dtype=float), xt.shape))
        self.clear_cache()

    def fake(self, x_measured: ArrayLike, weight: Union[float, ArrayLike] = 1.0) -> None:
        """Add measured events without a truth match."""
        xm = np.atleast_1d(np.asarray(x_measured, dtype=float))
        w = np.broadcast_to(np.asarray(weight, dtype=float), xm.shape)
        self._fill_hist(self._measured, xm, w)
        if self._fakes is None:
            self._fakes = Histogram.empty(self._measured.edges, name="fakes")
        self._fill_hist(self._fakes, xm, w)
        self.clear_cache()

    @staticmethod
    def _fill_hist(hist: Histogram, x: np.ndarray, w: np.ndarray) -> None:
        idx = _flat_index(hist, x, include_overflow=True)
        np.add.at(hist.contents, idx, w)
        if hist.errors is not None:
            err2 = hist.errors ** 2
            np.add.at(err2, idx, w ** 2)
            hist.errors = np.sqrt(err2)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    @property
    def nbins_measured(self) -> int:
        return self._counts.shape[0]

    @property
    def nbins_truth(self) -> int:
        return self._counts.shape[1]

    @property
    def use_overflow(self) -> bool:
        return self._overflow

    @property
    def use_density(self) -> bool:
        return self._density

    @property
    def htruth(self) -> Histogram:
        return self._truth

    @property
    def hmeasured(self) -> Histogram:
        return self._measured

    @property
    def hfakes(self) -> Optional[Histogram]:
        return self._fakes

    def counts(self) -> np.ndarray:
        return self._counts if self._toy_counts is None else self._toy_counts

    def sumw2(self) -> np.ndarray:
        return self._sumw2

    def vtruth(self) -> np.ndarray:
        return to_vector(self._truth, self._overflow, self._density)

    def etruth(self) -> np.ndarray:
        return to_error_vector(self._truth, self._overflow, self._density)

    def vmeasured(self) -> np.ndarray:
        return to_vector(self._measured, self._overflow, self._density)

    def emeasured(self) -> np.ndarray:
        return to_error_vector(self._measured, self._overflow, self._density)

    def vfakes(self) -> np.ndarray:
        if self._fakes is None:
            return np.zeros(self.nbins_measured)
        return to_vector(self._fakes, self._overflow, self._density)

    def matrix(self, normalized: bool = True) -> np.ndarray:
        """Response matrix, by default normalized to the truth count of each column."""
        counts = self.counts()
        if not normalized:
            return counts.copy()
        truth = to_vector(self._truth, self._overflow)
        norm = np.where(truth != 0.0, truth, 1.0)
        return np.where(truth[np.newaxis, :] != 0.0, counts / norm[np.newaxis, :], 0.0)

    def ematrix(self, normalized: bool = True) -> np.ndarray:
        err = np.sqrt(self._sumw2)
        if not normalized:
            return err
        truth = to_vector(self._truth, self._overflow)
        norm = np.where(truth != 0.0, truth, 1.0)
        return np.where(truth[np.newaxis, :] != 0.0, err / norm[np.newaxis, :], 0.0)

    def efficiency(self) -> np.ndarray:
        """Fraction of each truth bin that is measured anywhere."""
        return self.matrix().sum(axis=0)

    def vfolded(self, truth: ArrayLike) -> np.ndarray:
        """Apply the response to a truth-level vector."""
        v = np.asarray(truth, dtype=float).ravel()
        if v.size != self.nbins_truth:
            raise InvalidArgumentError(f"cannot fold a vector of length {v.size} with {self.nbins_truth} truth bins")
        return self.matrix() @ v

    # ------------------------------------------------------------------
    # Toys
    # ------------------------------------------------------------------
    def run_toy(self, rng: np.random.Generator) -> None:
        """Replace the migration counts by one Gaussian fluctuation of themselves."""
        toy = rng.normal(self._counts, np.sqrt(self._sumw2))
        self._toy_counts = np.clip(toy, 0.0, None)

    def clear_cache(self) -> None:
        """Drop any toy variation and go back to the nominal counts."""
        self._toy_counts = None

    @property
    def is_toy(self) -> bool:
        return self._toy_counts is not None

    def copy(self) -> "Response":
        return copy.deepcopy(self)

    def __repr__(self) -> str:
        return (
            f"Response(name={self.name!r}, nm={self.nbins_measured}, nt={self.nbins_truth}, "
            f"overflow={self._overflow}, density={self._density})"
        )
