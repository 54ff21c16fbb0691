"""Binned distributions and their conversion to flat vectors.

A :class:`Histogram` stores contents for every bin of a 1-D or 2-D binning,
including one underflow and one overflow bin per axis. The unfolding engine
never looks at the binning itself: it only sees the flat vectors produced by
:func:`to_vector` / :func:`to_error_vector` and hands flat vectors back to
:func:`from_vector`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union

import numpy as np

from refold.core.errors import InvalidArgumentError

ArrayLike = Union[Sequence[float], np.ndarray]


def _unit_edges(n: int) -> np.ndarray:
    return np.arange(n + 1, dtype=float)


def _check_edges(edges: Sequence[ArrayLike]) -> Tuple[np.ndarray, ...]:
    checked = []
    for axis_edges in edges:
        e = np.asarray(axis_edges, dtype=float).ravel()
        if e.size < 2 or np.any(np.diff(e) <= 0):
            raise InvalidArgumentError("Bin edges must be strictly increasing with at least two entries.")
        checked.append(e)
    if not 1 <= len(checked) <= 2:
        raise InvalidArgumentError(f"Only 1-D and 2-D binnings are supported, got {len(checked)} axes.")
    return tuple(checked)


def _in_range(arr: np.ndarray) -> np.ndarray:
    return arr[tuple(slice(1, -1) for _ in range(arr.ndim))]


@dataclass
class Histogram:
    """Binned distribution with under/overflow bins.

    Attributes:
        contents: Bin contents with shape ``(n_x + 2[, n_y + 2])``; index 0 and
            -1 along each axis are the underflow and overflow bins.
        edges: Bin edges per axis.
        errors: Per-bin errors, same shape as ``contents``. When None the
            errors are ``sqrt(|contents|)``.
        name: Short identifier.
        title: Human readable label.
    """

    contents: np.ndarray
    edges: Tuple[np.ndarray, ...]
    errors: Optional[np.ndarray] = None
    name: str = ""
    title: str = ""

    def __post_init__(self):
        self.edges = _check_edges(self.edges)
        self.contents = np.asarray(self.contents, dtype=float)
        expected = tuple(len(e) + 1 for e in self.edges)
        if self.contents.shape != expected:
            raise InvalidArgumentError(
                f"contents shape {self.contents.shape} does not match binning {expected} (flow bins included)"
            )
        if self.errors is not None:
            self.errors = np.asarray(self.errors, dtype=float)
            if self.errors.shape != expected:
                raise InvalidArgumentError(f"errors shape {self.errors.shape} does not match contents {expected}")

    @classmethod
    def from_values(
        cls,
        values: ArrayLike,
        edges: Optional[Sequence[ArrayLike]] = None,
        errors: Optional[ArrayLike] = None,
        name: str = "",
        title: str = "",
    ) -> "Histogram":
        """Build a histogram from in-range bin values; flow bins are empty."""
        vals = np.asarray(values, dtype=float)
        if vals.ndim == 0:
            raise InvalidArgumentError("Histogram values must be at least 1-D.")
        if edges is None:
            edges = tuple(_unit_edges(n) for n in vals.shape)
        edges = _check_edges(edges)
        shape = tuple(len(e) - 1 for e in edges)
        if vals.size != int(np.prod(shape)):
            raise InvalidArgumentError(f"{vals.size} values cannot fill a binning of shape {shape}")
        contents = np.zeros(tuple(n + 2 for n in shape))
        _in_range(contents)[...] = vals.reshape(shape)
        errs = None
        if errors is not None:
            e = np.asarray(errors, dtype=float)
            if e.size != vals.size:
                raise InvalidArgumentError("errors must have the same length as values")
            errs = np.zeros_like(contents)
            _in_range(errs)[...] = e.reshape(shape)
        return cls(contents=contents, edges=edges, errors=errs, name=name, title=title)

    @classmethod
    def empty(cls, edges: Sequence[ArrayLike], name: str = "", title: str = "") -> "Histogram":
        edges = _check_edges(edges)
        shape = tuple(len(e) + 1 for e in edges)
        return cls(contents=np.zeros(shape), edges=edges, errors=np.zeros(shape), name=name, title=title)

    @property
    def dim(self) -> int:
        return len(self.edges)

    @property
    def shape(self) -> Tuple[int, ...]:
        """Number of in-range bins per axis."""
        return tuple(len(e) - 1 for e in self.edges)

    def nbins(self, include_overflow: bool = False) -> int:
        extra = 2 if include_overflow else 0
        return int(np.prod([n + extra for n in self.shape]))

    @property
    def bin_errors(self) -> np.ndarray:
        if self.errors is None:
            return np.sqrt(np.abs(self.contents))
        return self.errors

    def bin_volumes(self, include_overflow: bool = False) -> np.ndarray:
        """Bin widths (1-D) or areas (2-D); flow bins count as unit volume."""
        widths = []
        for e in self.edges:
            w = np.diff(e)
            if include_overflow:
                w = np.concatenate(([1.0], w, [1.0]))
            widths.append(w)
        if len(widths) == 1:
            return widths[0]
        return np.multiply.outer(widths[0], widths[1])

    def integral(self, include_overflow: bool = False) -> float:
        return float(np.sum(self.contents if include_overflow else _in_range(self.contents)))

    def copy(self) -> "Histogram":
        return Histogram(
            contents=self.contents.copy(),
            edges=tuple(e.copy() for e in self.edges),
            errors=None if self.errors is None else self.errors.copy(),
            name=self.name,
            title=self.title,
        )


def _select(arr: np.ndarray, include_overflow: bool) -> np.ndarray:
    return arr if include_overflow else _in_range(arr)


def to_vector(hist: Histogram, include_overflow: bool = False, use_density: bool = False) -> np.ndarray:
    """Flatten bin contents into a vector (first axis slowest)."""
    values = _select(hist.contents, include_overflow)
    if use_density:
        values = values / hist.bin_volumes(include_overflow)
    return np.array(values, dtype=float).ravel()


def to_error_vector(hist: Histogram, include_overflow: bool = False, use_density: bool = False) -> np.ndarray:
    """Flatten bin errors into a vector, matching :func:`to_vector`."""
    errors = _select(hist.bin_errors, include_overflow)
    if use_density:
        errors = errors / hist.bin_volumes(include_overflow)
    return np.array(errors, dtype=float).ravel()


def from_vector(
    values: ArrayLike,
    errors: Optional[ArrayLike],
    name: str,
    title: str,
    edges: Sequence[ArrayLike],
    include_overflow: bool = False,
) -> Histogram:
    """Rebuild a histogram with the given binning from a flat vector."""
    if not include_overflow:
        return Histogram.from_values(values, edges=edges, errors=errors, name=name, title=title)
    edges = _check_edges(edges)
    shape = tuple(len(e) + 1 for e in edges)
    vals = np.asarray(values, dtype=float)
    if vals.size != int(np.prod(shape)):
        raise InvalidArgumentError(f"{vals.size} values cannot fill a binning of shape {shape} with flow bins")
    errs = None if errors is None else np.asarray(errors, dtype=float).reshape(shape)
    return Histogram(contents=vals.reshape(shape), edges=edges, errors=errs, name=name, title=title)


def asimov_clone(hist: Histogram, use_density: bool = False) -> Histogram:
    """Copy of ``hist`` with Poisson (``sqrt(N)``) errors on the expected contents."""
    clone = hist.copy()
    contents = clone.contents
    if use_density:
        volumes = clone.bin_volumes(include_overflow=True)
        clone.errors = np.sqrt(np.abs(contents * volumes)) / volumes
    else:
        clone.errors = np.sqrt(np.abs(contents))
    return clone


def as_histogram(obj, name: str = "", title: str = "") -> Histogram:
    """Accept a :class:`Histogram` or a flat array of in-range bin values."""
    if obj is None:
        raise InvalidArgumentError("a distribution is required")
    if isinstance(obj, Histogram):
        return obj
    return Histogram.from_values(obj, name=name, title=title)
