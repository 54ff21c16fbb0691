"""
refold unfolding engine.

:class:`Unfolder` drives the strategy selected by an :class:`Algorithm` tag
and caches its result and uncertainties. The enumerations used to configure
it live in :mod:`refold.unfold._types`.
"""

from __future__ import annotations

__all__ = [
    "Algorithm",
    "BiasMethod",
    "ErrorTreatment",
    "ResponseOwnership",
    "SystematicsTreatment",
    "Unfolder",
]


# Lazy imports: the solvers import the enumerations from this package
def __getattr__(name: str):
    if name == "Unfolder":
        from .engine import Unfolder
        return Unfolder
    if name in ("Algorithm", "BiasMethod", "ErrorTreatment", "ResponseOwnership", "SystematicsTreatment"):
        from . import _types
        return getattr(_types, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
