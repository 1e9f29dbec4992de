"""
Newton-Raphson Driver
=====================

Iterates x ← x + α δx until the correction of the primary unknown falls
below a tolerance. Each step the caller's ``equations`` callback fills a
reset `BlockSolver` with the Jacobian blocks, boundary rows and RHS −F(x)
for the current values, and the solve returns the corrections δx.

    error = max |δx_primary|
    α     = 1            if error ≤ relax_threshold
            relax_factor otherwise

Reaching ``max_iter`` is a normal outcome reported through
`NewtonResult.status`; configuration, symbolic and solve errors propagate.
"""

import enum
from collections.abc import Callable

import equinox as eqx
import jax.numpy as jnp
from jaxtyping import Array
from loguru import logger

from .errors import ConfigurationError
from .field import as_field, max_abs


class NewtonStatus(enum.Enum):
    CONVERGED = "converged"
    NOT_CONVERGED = "not_converged"


class NewtonResult(eqx.Module):
    """
    Outcome of `NewtonRaphson.run`.

    Attributes:
    -----------
        values : dict[str, Array]
            Final value of every unknown.
        status : NewtonStatus
        iterations : int
            Number of Newton steps taken.
        error : float
            Last max |δx_primary| (inf if no step was taken).
        history : tuple[float, ...]
            Error after each step.
    """

    values: dict
    status: NewtonStatus
    iterations: int
    error: float
    history: tuple[float, ...] = ()

    @property
    def converged(self) -> bool:
        return self.status is NewtonStatus.CONVERGED


class NewtonRaphson(eqx.Module):
    """
    Damped Newton-Raphson iteration policy.

    Attributes:
    -----------
        primary : str
            Unknown whose correction measures convergence.
        tol : float
            Stop when max |δx_primary| ≤ tol.
        max_iter : int
            Iteration cap.
        relax_threshold : float
            Take full steps once the error is at or below this value.
        relax_factor : float
            Step fraction used above the threshold.
    """

    primary: str
    tol: float = 1e-12
    max_iter: int = 10000
    relax_threshold: float = 1e-2
    relax_factor: float = 0.2

    def __check_init__(self):
        if self.max_iter < 0:
            raise ConfigurationError(f"max_iter must be ≥ 0, got {self.max_iter}")
        if not 0.0 < self.relax_factor <= 1.0:
            raise ConfigurationError(f"relax_factor must be in (0, 1], got {self.relax_factor}")

    def relaxation(self, error: float) -> float:
        """Step fraction α for a correction of size ``error``."""
        return 1.0 if error <= self.relax_threshold else self.relax_factor

    def run(
        self,
        symbolic,
        solver,
        equations: Callable[..., None],
        values: dict[str, Array],
    ) -> NewtonResult:
        """
        Iterate until convergence or until ``max_iter`` steps.

        Parameters:
        -----------
        symbolic : Symbolic
            Engine the equations are built from; receives the current values
            at every step and the final values on return.
        solver : BlockSolver
            Initialised solver (unknowns registered, ``set_nr`` done).
        equations : callable
            ``equations(symbolic, solver, values)`` adds Jacobian blocks,
            boundary rows and RHS for the current ``values``.
        values : dict[str, Array]
            Initial guess for every unknown.

        Returns:
        --------
        NewtonResult
        """
        if jnp.asarray(1.0).dtype != jnp.float64:
            logger.warning("jax_enable_x64 is off: tolerances below ~1e-6 are unreachable")
        if self.primary not in values:
            raise ConfigurationError(f"Primary unknown {self.primary!r} has no initial value")

        values = {name: as_field(v) for name, v in values.items()}
        error = float("inf")
        history = []
        it = 0

        while not error <= self.tol and it < self.max_iter:
            it += 1
            for name, v in values.items():
                symbolic.set_value(name, v)
            solver.reset()
            equations(symbolic, solver, values)
            solution = solver.solve()

            error = max_abs(solution[self.primary])
            history.append(error)
            alpha = self.relaxation(error)
            values = {name: self._update(name, v, solution[name], alpha) for name, v in values.items()}
            logger.debug(f"Newton iteration {it}: error = {error:.3e}, relaxation = {alpha:g}")

        for name, v in values.items():
            symbolic.set_value(name, v)

        status = NewtonStatus.CONVERGED if error <= self.tol else NewtonStatus.NOT_CONVERGED
        if status is NewtonStatus.CONVERGED:
            logger.success(f"Newton converged in {it} iteration(s), error = {error:.3e}")
        else:
            logger.warning(f"No convergence after {it} iteration(s), error = {error:.3e}")
        return NewtonResult(
            values=values, status=status, iterations=it, error=error, history=tuple(history)
        )

    @staticmethod
    def _update(name: str, value: Array, correction: Array, alpha: float) -> Array:
        if value.shape == (1, 1):
            return value + alpha * correction[0, 0]
        if correction.shape != value.shape:
            raise ConfigurationError(
                f"Correction for {name!r} has shape {correction.shape}, value has {value.shape}"
            )
        return value + alpha * correction
