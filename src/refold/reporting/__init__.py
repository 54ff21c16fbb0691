"""
Bin-by-bin unfolding report.

Builds a table of training truth, training measured, test truth, test
measured and unfolded values per bin, with the unfolded error, the
difference to the test truth and the pull, and formats it as fixed-width
text, CSV or Markdown.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional

import numpy as np

from refold.core.histogram import Histogram, to_error_vector, to_vector
from refold.unfold._types import ErrorTreatment, to_error_treatment

if TYPE_CHECKING:  # pragma: no cover
    from refold.unfold.engine import Unfolder

# Chi-squared placeholder when the treatment gives no full covariance.
NO_CHI2 = -999.0


@dataclass
class UnfoldTable:
    """
    Values shown by :func:`format_unfold_table`.

    Attributes:
        dim: Dimensionality of the truth binning.
        ntxb: Truth bins along x (flow bins included when in use).
        ntyb: Truth bins along y, 1 for 1-D.
        train_truth: Training truth vector.
        train_measured: Training measured vector.
        truth: Test truth vector.
        measured: Test measured vector.
        unfolded: Unfolded vector.
        treatment: Error treatment of ``unfolded_errors``.
        truth_errors: Errors of the test truth.
        unfolded_errors: Errors of the unfolded vector.
        chi2: Chi-squared against the test truth, ``NO_CHI2`` if not computed.
    """

    dim: int
    ntxb: int
    ntyb: int
    train_truth: np.ndarray
    train_measured: np.ndarray
    truth: np.ndarray
    measured: np.ndarray
    unfolded: np.ndarray
    treatment: ErrorTreatment
    truth_errors: np.ndarray
    unfolded_errors: np.ndarray
    chi2: float = NO_CHI2

    @property
    def nbins(self) -> int:
        return max(len(self.truth), len(self.measured), len(self.unfolded))

    def rows(self) -> List[dict]:
        rows = []
        for i in range(self.nbins):
            row = {
                "bin": self._bin_label(i),
                "train_truth": _at(self.train_truth, i),
                "train_measured": _at(self.train_measured, i),
                "truth": _at(self.truth, i),
                "measured": _at(self.measured, i),
                "unfolded": _at(self.unfolded, i),
                "error": _at(self.unfolded_errors, i),
            }
            row["diff"] = row["unfolded"] - row["truth"] if i < len(self.truth) else None
            if row["diff"] is not None and row["error"] and row["error"] > 0.0:
                row["pull"] = row["diff"] / row["error"]
            else:
                row["pull"] = None
            rows.append(row)
        return rows

    def _bin_label(self, i: int) -> str:
        if self.dim == 2 and i < self.ntxb * self.ntyb:
            return f"{i // self.ntyb},{i % self.ntyb}"
        return str(i)

    def to_text(self, fmt: str = "text") -> str:
        """
        Format the table.

        Args:
            fmt: "text" (fixed width), "csv" or "markdown".
        """
        if fmt == "csv":
            return self._to_csv()
        elif fmt == "markdown":
            return self._to_markdown()
        return self._to_fixed()

    def _to_fixed(self) -> str:
        header = (
            f"{'Bin':>7} {'Train Truth':>12} {'Train Meas':>12} {'Test Truth':>12} {'Test Meas':>12} "
            f"{'Unfolded':>12} {'Error':>10} {'Diff':>10} {'Pull':>8}"
        )
        lines = [header, "=" * len(header)]
        for row in self.rows():
            lines.append(
                f"{row['bin']:>7} {_fmt(row['train_truth'], 12)} {_fmt(row['train_measured'], 12)} "
                f"{_fmt(row['truth'], 12)} {_fmt(row['measured'], 12)} {_fmt(row['unfolded'], 12)} "
                f"{_fmt(row['error'], 10)} {_fmt(row['diff'], 10)} {_fmt(row['pull'], 8, '.2f')}"
            )
        lines.append("-" * len(header))
        lines.append(
            f"{'Total':>7} {np.sum(self.train_truth):>12.1f} {np.sum(self.train_measured):>12.1f} "
            f"{np.sum(self.truth):>12.1f} {np.sum(self.measured):>12.1f} {np.sum(self.unfolded):>12.1f} "
            f"{np.sqrt(np.sum(self.unfolded_errors ** 2)):>10.1f}"
        )
        lines.append("=" * len(header))
        if self.chi2 != NO_CHI2:
            ndf = len(self.unfolded)
            lines.append(f"Chi^2/NDF={self.chi2:g}/{ndf} ({self.treatment.name.lower()} errors)")
        return "\n".join(lines)

    def _to_csv(self) -> str:
        keys = ["bin", "train_truth", "train_measured", "truth", "measured", "unfolded", "error", "diff", "pull"]
        lines = [",".join(keys)]
        for row in self.rows():
            lines.append(",".join("" if row[k] is None else str(row[k]) for k in keys))
        return "\n".join(lines)

    def _to_markdown(self) -> str:
        lines = ["| Bin | Train Truth | Train Meas | Test Truth | Test Meas | Unfolded | Error | Pull |"]
        lines.append("|-----|-------------|------------|------------|-----------|----------|-------|------|")
        for row in self.rows():
            lines.append(
                f"| {row['bin']} | {_fmt(row['train_truth'])} | {_fmt(row['train_measured'])} | "
                f"{_fmt(row['truth'])} | {_fmt(row['measured'])} | {_fmt(row['unfolded'])} | "
                f"{_fmt(row['error'])} | {_fmt(row['pull'], 0, '.2f')} |"
            )
        return "\n".join(lines)


def _at(vec: np.ndarray, i: int) -> Optional[float]:
    return float(vec[i]) if i < len(vec) else None


def _fmt(value: Optional[float], width: int = 0, spec: str = ".1f") -> str:
    text = "" if value is None else format(value, spec)
    return f"{text:>{width}}" if width else text


def build_unfold_table(engine: "Unfolder", truth=None, treatment=ErrorTreatment.DEFAULT) -> Optional[UnfoldTable]:
    """
    Collect the table values from ``engine``.

    DEFAULT resolves to the engine's last error treatment, then to ERRORS.
    The chi-squared is only computed for COVARIANCE and COV_TOY. Returns None
    when the unfolding failed.
    """
    t = to_error_treatment(treatment)
    if t is ErrorTreatment.DEFAULT:
        t = engine.active_treatment
    if t is ErrorTreatment.DEFAULT:
        t = ErrorTreatment.ERRORS
    if not engine.unfold_with_errors(t):
        t = ErrorTreatment.NO_ERROR

    res = engine.response
    if truth is None:
        truth = res.htruth
    if not engine.cache.unfolded:
        return None

    overflow, density = engine.overflow, res.use_density
    extra = 2 if overflow else 0
    shape = res.htruth.shape
    ntxb = shape[0] + extra
    ntyb = shape[1] + extra if len(shape) > 1 else 1

    if isinstance(truth, Histogram):
        vtruth = to_vector(truth, overflow, density)
        etruth = to_error_vector(truth, overflow, density)
    else:
        vtruth = np.asarray(truth, dtype=float).ravel()
        etruth = np.sqrt(np.abs(vtruth))

    chi2 = NO_CHI2
    if t in (ErrorTreatment.COVARIANCE, ErrorTreatment.COV_TOY):
        chi2 = engine.chi2(truth, t)

    return UnfoldTable(
        dim=res.htruth.dim,
        ntxb=ntxb,
        ntyb=ntyb,
        train_truth=res.vtruth(),
        train_measured=res.vmeasured(),
        truth=vtruth,
        measured=engine.vmeasured(),
        unfolded=engine.vunfold(),
        treatment=t,
        truth_errors=etruth,
        unfolded_errors=engine.eunfold_v(t),
        chi2=chi2,
    )


def format_unfold_table(table: UnfoldTable, fmt: str = "text") -> str:
    return table.to_text(fmt)


__all__ = ["NO_CHI2", "UnfoldTable", "build_unfold_table", "format_unfold_table"]
