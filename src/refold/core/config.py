"""Run configuration for an unfolding engine."""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Optional

from refold.core.errors import ConfigurationError
from refold.unfold._types import (
    Algorithm,
    ErrorTreatment,
    SystematicsTreatment,
    to_algorithm,
    to_error_treatment,
    to_systematics,
)


@dataclass
class UnfoldConfig:
    """
    Settings applied to an :class:`~refold.unfold.engine.Unfolder`.

    Attributes:
        algorithm: Unfolding algorithm tag.
        regparm: Regularization parameter, None keeps the strategy default.
        error_treatment: Error treatment used for reported uncertainties.
        ntoys: Number of toys for toy covariance.
        verbose: Diagnostic level (0 silent, 1 normal, 3 matrix dumps).
        systematics: Which inputs toys fluctuate.
        overflow: Include under/overflow bins when building a response.
        density: Divide flat vectors by bin volumes when building a response.
        seed: Seed of the engine's default random generator.
    """

    algorithm: Algorithm = Algorithm.NONE
    regparm: Optional[float] = None
    error_treatment: ErrorTreatment = ErrorTreatment.COVARIANCE
    ntoys: int = 50
    verbose: int = 1
    systematics: SystematicsTreatment = SystematicsTreatment.NO_SYSTEMATICS
    overflow: bool = False
    density: bool = False
    seed: Optional[int] = None

    def __post_init__(self):
        self.algorithm = to_algorithm(self.algorithm)
        self.error_treatment = to_error_treatment(self.error_treatment)
        self.systematics = to_systematics(self.systematics)
        if self.ntoys < 0:
            raise ConfigurationError(f"ntoys must be non-negative, got {self.ntoys}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UnfoldConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"unknown configuration keys: {sorted(unknown)}")
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["algorithm"] = self.algorithm.name.lower()
        data["error_treatment"] = self.error_treatment.name.lower()
        data["systematics"] = self.systematics.name.lower()
        return data
