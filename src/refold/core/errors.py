"""Exception hierarchy for refold."""

from __future__ import annotations


class RefoldError(Exception):
    """Base class for all refold errors."""
    pass


class InvalidArgumentError(RefoldError, ValueError):
    """Raised when a response or distribution is missing or inconsistent."""
    pass


class ConfigurationError(RefoldError, ValueError):
    """Raised for unrecognised error treatments, bias methods or algorithms."""
    pass


class AlgorithmUnavailableError(ConfigurationError):
    """Raised when no unfolding strategy is registered for an algorithm tag."""
    pass


class InversionFailedError(RefoldError):
    """Raised when a matrix inversion does not produce a usable inverse."""
    pass


class BiasNotComputedError(RefoldError, RuntimeError):
    """Raised when the bias is read before ``calculate_bias`` has run."""
    pass
