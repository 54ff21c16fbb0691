"""
Enumerations shared by the unfolding engine, its strategies and the toy engine.
"""

from __future__ import annotations

from enum import Enum

from refold.core.errors import ConfigurationError


class Algorithm(Enum):
    """Unfolding algorithm tag; selects the strategy an engine runs."""

    NONE = 0  # dummy unfolding, copies the measured input
    BAYES = 1  # iterative Bayes (D'Agostini)
    SVD = 2  # singular value decomposition with regularization
    BIN_BY_BIN = 3  # correction factors
    TUNFOLD = 4  # external library method
    INVERT = 5  # plain response matrix inversion
    DAGOSTINI = 6  # closed-form D'Agostini, never available
    IDS = 7  # iterative dynamically stabilized
    GP = 8  # Gaussian process


class ErrorTreatment(Enum):
    """How uncertainties on the unfolded result are computed."""

    NO_ERROR = 0  # sqrt of the bin content
    ERRORS = 1  # diagonal of the propagated covariance
    COVARIANCE = 2  # full propagated covariance
    COV_TOY = 3  # covariance from toy Monte Carlo
    ROOFIT = 4  # errors from an external fit
    DEFAULT = -1


class BiasMethod(Enum):
    """Bias quantification protocol."""

    ESTIMATOR = 0
    CLOSURE = 1
    ASIMOV = 2


class SystematicsTreatment(Enum):
    """Which inputs are fluctuated in toys."""

    NO_SYSTEMATICS = 0  # measured input only
    ALL = 1  # measured input and response
    NO_MEASURED = 2  # response only


class ResponseOwnership(Enum):
    """Whether an engine copies the response it is given or adopts it."""

    CLONE = "clone"
    OWNED = "owned"


def _coerce(enum_cls, value, what: str):
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        key = value.strip().upper().replace("-", "_")
        if key in enum_cls.__members__:
            return enum_cls[key]
    try:
        return enum_cls(value)
    except ValueError:
        raise ConfigurationError(f"unrecognised {what} {value!r}") from None


def to_algorithm(value) -> Algorithm:
    return _coerce(Algorithm, value, "unfolding algorithm")


def to_error_treatment(value) -> ErrorTreatment:
    return _coerce(ErrorTreatment, value, "error treatment")


def to_bias_method(value) -> BiasMethod:
    return _coerce(BiasMethod, value, "bias method")


def to_systematics(value) -> SystematicsTreatment:
    return _coerce(SystematicsTreatment, value, "systematics treatment")


def to_ownership(value) -> ResponseOwnership:
    return _coerce(ResponseOwnership, value, "response ownership")
