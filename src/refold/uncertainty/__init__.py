"""Toy Monte Carlo uncertainties and bias estimation."""

from __future__ import annotations

__all__ = [
    "BiasResult",
    "ToyBatch",
    "calculate_bias",
    "calculate_bias_legacy",
    "run_bias_asimov_toys",
    "run_toy",
    "run_toys",
    "toy_covariance",
]


# bias imports the engine, which itself imports this package lazily
def __getattr__(name: str):
    if name in ("BiasResult", "calculate_bias", "calculate_bias_legacy"):
        from . import bias
        return getattr(bias, name)
    if name in ("ToyBatch", "run_bias_asimov_toys", "run_toy", "run_toys", "toy_covariance"):
        from . import toys
        return getattr(toys, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
