"""
Exception hierarchy.

Configuration and symbolic errors are ``ValueError`` subclasses (bad inputs);
solve errors are ``RuntimeError`` subclasses (a well-formed problem whose
linear system cannot be solved). Non-convergence is not an error: the Newton
driver reports it through ``NewtonResult.status``.
"""


class SpectralBVPError(Exception):
    """Base class for all errors raised by spectralbvp."""


class ConfigurationError(SpectralBVPError, ValueError):
    """Inconsistent grid, solver layout, or value shape."""


class SymbolicError(SpectralBVPError, ValueError):
    """Unregistered variables, duplicate registrations, or an unbound map."""


class SolveError(SpectralBVPError, RuntimeError):
    """The assembled linear system is empty, non-square, or non-finite."""


class SingularSystemError(SolveError):
    """The assembled linear system is singular (rank deficient)."""
