"""
Tests for the Newton-Raphson driver on the polytrope problem.

    ∇²Φ = |h|ⁿ,  h = 1 − Λ (Φ − Φ₀) + ½ Ω² r² sin²θ
    Φ'(0) = 0,  Φ'(1) + Φ(1) = 0,  Φ(0) = Φ₀,  Λ (Φ(1) − Φ₀) = 1

For Ω = 0 the enthalpy h(r) = θ(ξ₁ r) is the Lane-Emden function and
Λ = ξ₁², ξ₁ its first zero.
"""

import math

import jax.numpy as jnp
import pytest

from spectralbvp._src.errors import ConfigurationError, SingularSystemError
from spectralbvp._src.field import row, setrow
from spectralbvp._src.mapping import MappingConfig
from spectralbvp._src.newton import NewtonRaphson, NewtonResult, NewtonStatus
from spectralbvp._src.solver import BlockSolver
from spectralbvp._src.symbolic import Symbolic, lap, pow, sin, sqrt

# First zero of the n = 1.5 Lane-Emden function
XI1_N15 = 3.65375374


def _polytrope(n: float, nr: int = 50, nt: int = 1, omega: float = 0.0):
    grid = MappingConfig().set_ndomains(1).set_npts(nr).set_xif(0.0, 1.0).set_nt(nt).init()
    S = Symbolic(grid)
    phi = S.register_variable("Phi")
    lam = S.register_variable("Lambda", scalar=True)
    phi0 = S.register_variable("Phi0", scalar=True)
    h = 1 - lam * (phi - phi0) + 0.5 * omega**2 * S.r * S.r * sin(S.theta) * sin(S.theta)
    eq = lap(phi) - pow(sqrt(h * h), n)

    op = BlockSolver(1, 3, "full")
    for name in ("Phi", "Lambda", "Phi0"):
        op.regvar(name)
    op.set_nr(grid.npts)

    D0 = grid.D_block(0)
    ones = jnp.ones((1, nt))

    def equations(S, op, values):
        Phi, Lambda, Phi0 = values["Phi"], values["Lambda"], values["Phi0"]
        for var in ("Phi", "Lambda", "Phi0"):
            S.add(eq, op, "Phi", var)
        op.bc_bot2_add_l(0, "Phi", "Phi", ones, D0[:1])
        op.bc_top1_add_l(0, "Phi", "Phi", ones, D0[-1:])
        op.bc_top1_add_d(0, "Phi", "Phi", ones)
        dPhi = grid.D @ Phi
        rhs = -S.evaluate(eq)
        rhs = setrow(rhs, 0, -row(dPhi, 0))
        rhs = setrow(rhs, -1, -row(dPhi, -1) - row(Phi, -1))
        op.set_rhs("Phi", rhs)

        op.bc_bot2_add_d(0, "Phi0", "Phi", ones)
        op.bc_bot2_add_d(0, "Phi0", "Phi0", -ones)
        op.set_rhs("Phi0", -(Phi[0, 0] - Phi0) * ones)

        op.bc_top1_add_d(0, "Lambda", "Phi", Lambda * ones)
        op.bc_top1_add_d(0, "Lambda", "Phi0", -Lambda * ones)
        op.bc_top1_add_d(0, "Lambda", "Lambda", (Phi[-1, -1] - Phi0) * ones)
        op.set_rhs("Lambda", -(Lambda * (Phi[-1, -1] - Phi0) - 1) * ones)

    values = {"Phi": grid.r**2, "Lambda": 1.0, "Phi0": 0.0}
    return grid, S, op, equations, values


def _check_boundary_conditions(grid, Phi, tol=1e-10):
    dPhi = grid.D @ Phi
    assert jnp.abs(dPhi[0]).max() <= tol, f"dPhi/dr(0) = {dPhi[0]}"
    assert jnp.abs(dPhi[-1] + Phi[-1]).max() <= tol, f"dPhi/dr(1) + Phi(1) = {dPhi[-1] + Phi[-1]}"


# ============================================================================
# Convergence
# ============================================================================


def test_newton_polytrope_n1_analytic():
    """n = 1: Λ = π², h = sin(πr)/(πr)."""
    grid, S, op, equations, values = _polytrope(n=1.0, nr=40)
    result = NewtonRaphson(primary="Phi").run(S, op, equations, values)

    assert isinstance(result, NewtonResult)
    assert result.converged
    assert result.status is NewtonStatus.CONVERGED
    assert result.error <= 1e-12
    Lambda = float(result.values["Lambda"][0, 0])
    assert math.isclose(Lambda, math.pi**2, rel_tol=1e-8), f"Lambda = {Lambda}"

    Phi, Phi0 = result.values["Phi"], result.values["Phi0"]
    h = 1 - Lambda * (Phi - Phi0)
    r = grid.zeta[1:]
    assert jnp.allclose(h[1:], jnp.sin(jnp.pi * r) / (jnp.pi * r), atol=1e-9)
    _check_boundary_conditions(grid, Phi)


def test_newton_polytrope_n15_lane_emden():
    """n = 1.5, 50 points: converges to 1e-12 and Λ = ξ₁²."""
    grid, S, op, equations, values = _polytrope(n=1.5, nr=50)
    result = NewtonRaphson(primary="Phi", tol=1e-12).run(S, op, equations, values)

    assert result.converged
    assert len(result.history) == result.iterations
    assert result.history[-1] == result.error
    Lambda = float(result.values["Lambda"][0, 0])
    assert math.isclose(Lambda, XI1_N15**2, rel_tol=1e-4), f"Lambda = {Lambda}"
    _check_boundary_conditions(grid, result.values["Phi"], tol=1e-12)

    # Phi0 equation: Φ(0) = Φ₀
    assert jnp.isclose(result.values["Phi"][0, 0], result.values["Phi0"][0, 0], atol=1e-12)
    # Final values are pushed back into the engine
    assert jnp.array_equal(S.get_value("Phi"), result.values["Phi"])


def test_newton_polytrope_2d_without_rotation_is_spherical():
    grid, S, op, equations, values = _polytrope(n=1.5, nr=30, nt=4)
    result = NewtonRaphson(primary="Phi").run(S, op, equations, values)
    assert result.converged
    Phi = result.values["Phi"]
    assert jnp.allclose(Phi, Phi[:, :1], atol=1e-10)


def test_newton_polytrope_rotating():
    """Ω = 0.3: converges and the boundary rows hold in every column."""
    grid, S, op, equations, values = _polytrope(n=1.5, nr=30, nt=6, omega=0.3)
    result = NewtonRaphson(primary="Phi").run(S, op, equations, values)
    assert result.converged
    Phi = result.values["Phi"]
    _check_boundary_conditions(grid, Phi)
    # rotation breaks the spherical symmetry
    assert jnp.abs(Phi[-1] - Phi[-1, 0]).max() > 1e-6


# ============================================================================
# Iteration policy and failures
# ============================================================================


def test_newton_iteration_cap_is_not_an_error():
    grid, S, op, equations, values = _polytrope(n=1.5, nr=30)
    result = NewtonRaphson(primary="Phi", max_iter=1).run(S, op, equations, values)
    assert result.status is NewtonStatus.NOT_CONVERGED
    assert not result.converged
    assert result.iterations == 1
    assert result.error > 1e-12
    # first step is damped: Λ moved by 0.2 × its correction
    assert float(result.values["Lambda"][0, 0]) != 1.0


def test_newton_zero_iterations():
    grid, S, op, equations, values = _polytrope(n=1.5, nr=20)
    result = NewtonRaphson(primary="Phi", max_iter=0).run(S, op, equations, values)
    assert result.status is NewtonStatus.NOT_CONVERGED
    assert result.iterations == 0
    assert math.isinf(result.error)
    assert result.history == ()


def test_newton_relaxation_policy():
    newton = NewtonRaphson(primary="Phi", relax_threshold=1e-2, relax_factor=0.2)
    assert newton.relaxation(0.5) == 0.2
    assert newton.relaxation(1e-2) == 1.0
    assert newton.relaxation(1e-8) == 1.0


def test_newton_invalid_policy():
    with pytest.raises(ConfigurationError):
        NewtonRaphson(primary="Phi", relax_factor=0.0)
    with pytest.raises(ConfigurationError):
        NewtonRaphson(primary="Phi", max_iter=-1)


def test_newton_primary_without_value():
    grid, S, op, equations, values = _polytrope(n=1.5, nr=20)
    with pytest.raises(ConfigurationError):
        NewtonRaphson(primary="T").run(S, op, equations, values)


def test_newton_propagates_singular_system():
    """A missing Jacobian (all-zero equation rows) is a solve error, not a cap."""
    grid, S, op, equations, values = _polytrope(n=1.5, nr=20)

    def incomplete(S, op, values):
        equations(S, op, values)
        op.reset()
        for var in ("Phi", "Lambda", "Phi0"):
            op.set_rhs(var, jnp.ones((grid.nr if var == "Phi" else 1, 1)))
        op.add_d("Phi", "Phi", 1.0)
        op.add_d("Phi0", "Phi0", 1.0)

    with pytest.raises(SingularSystemError):
        NewtonRaphson(primary="Phi").run(S, op, incomplete, values)
