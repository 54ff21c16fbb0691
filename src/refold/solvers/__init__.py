"""Unfolding strategies and the registry that maps algorithm tags to them."""

from __future__ import annotations

from typing import Callable, Dict

from refold.core.errors import AlgorithmUnavailableError
from refold.solvers.base import REGPARM_UNSET, UnfoldStrategy
from refold.solvers.bayes import BayesStrategy, bayes_iterate
from refold.solvers.bin_by_bin import BinByBinStrategy
from refold.solvers.invert import InvertStrategy
from refold.solvers.svd import SvdStrategy, svd_unfolding_matrix
from refold.unfold._types import Algorithm, to_algorithm

StrategyFactory = Callable[[], UnfoldStrategy]


def _pyunfold_factory() -> UnfoldStrategy:
    from refold.solvers.pyunfold_ibu import PyUnfoldStrategy

    return PyUnfoldStrategy()


_REGISTRY: Dict[Algorithm, StrategyFactory] = {
    Algorithm.NONE: UnfoldStrategy,
    Algorithm.BAYES: BayesStrategy,
    Algorithm.SVD: SvdStrategy,
    Algorithm.BIN_BY_BIN: BinByBinStrategy,
    Algorithm.INVERT: InvertStrategy,
    Algorithm.TUNFOLD: _pyunfold_factory,
}


def register_strategy(algorithm, factory: StrategyFactory) -> None:
    """Make ``factory`` the strategy for ``algorithm`` (e.g. IDS or GP)."""
    alg = to_algorithm(algorithm)
    if alg is Algorithm.DAGOSTINI:
        raise AlgorithmUnavailableError("closed-form D'Agostini unfolding is not available")
    _REGISTRY[alg] = factory


def create_strategy(algorithm) -> UnfoldStrategy:
    """Instantiate the strategy registered for ``algorithm``."""
    alg = to_algorithm(algorithm)
    if alg is Algorithm.DAGOSTINI:
        raise AlgorithmUnavailableError("closed-form D'Agostini unfolding is not available")
    factory = _REGISTRY.get(alg)
    if factory is None:
        raise AlgorithmUnavailableError(f"no unfolding strategy registered for {alg.name}")
    try:
        return factory()
    except ImportError as exc:
        raise AlgorithmUnavailableError(f"{alg.name} unfolding is not available: {exc}") from exc


__all__ = [
    "REGPARM_UNSET",
    "BayesStrategy",
    "BinByBinStrategy",
    "InvertStrategy",
    "StrategyFactory",
    "SvdStrategy",
    "UnfoldStrategy",
    "bayes_iterate",
    "create_strategy",
    "register_strategy",
    "svd_unfolding_matrix",
]
