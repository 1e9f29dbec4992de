"""
Rotating Polytrope
==================

This script computes the structure of a self-gravitating, uniformly rotating
polytrope with the `spectralbvp` Newton-Raphson machinery. The unknowns are
the dimensionless gravitational potential Φ(r, θ), the eigenvalue Λ and the
central potential Φ₀.

Equations:
----------
    ∇²Φ = |h|ⁿ,     h = 1 − Λ (Φ − Φ₀) + ½ Ω² r² sin²θ

with
    ∂Φ/∂r = 0            at r = 0    (regularity)
    ∂Φ/∂r + Φ = 0        at r = 1    (matching to the exterior potential)
    Φ(0) = Φ₀                        (defines Φ₀)
    Λ (Φ(1) − Φ₀) = 1                (fixes the surface at h = 0)

For Ω = 0 and n = 1 the solution is h = sin(πr)/(πr) with Λ = π².

Numerical Method:
-----------------
- **Grid**: one Chebyshev Gauss-Lobatto domain on [0, 1] in radius and a
  Gauss-Legendre grid on one hemisphere in colatitude.
- **Jacobian**: the exact derivative of the symbolic equation with respect to
  Φ, Λ and Φ₀, assembled with the boundary rows into one block system.
- **Iteration**: damped Newton (step 0.2 while the correction exceeds 1e-2).

Usage:
------
    python scripts/polytrope2d.py --n 1.5 --nr 50 --nt 8 --omega 0.3
    python scripts/polytrope2d.py --omega 0 --nt 1 --plot
"""

import pathlib
from typing import Annotated

import cyclopts
import jax
import jax.numpy as jnp
from loguru import logger
import matplotlib.pyplot as plt
import numpy as np
import xarray as xr

from spectralbvp._src.field import broadcast_field, row, setrow
from spectralbvp._src.mapping import Mapping, MappingConfig
from spectralbvp._src.newton import NewtonRaphson
from spectralbvp._src.solver import BlockSolver
from spectralbvp._src.symbolic import Sym, Symbolic, lap, pow, sin, sqrt

# JAX configuration
jax.config.update("jax_enable_x64", True)

# Initialize the cyclopts app
app = cyclopts.App()


# ============================================================================
# 1. Problem Definition
# ============================================================================


def build_equation(S: Symbolic, n: float, omega: float) -> Sym:
    """Register Φ, Λ, Φ₀ and return ∇²Φ − |h|ⁿ."""
    phi = S.register_variable("Phi")
    lam = S.register_variable("Lambda", scalar=True)
    phi0 = S.register_variable("Phi0", scalar=True)
    h = 1 - lam * (phi - phi0) + 0.5 * (omega * omega * S.r * S.r * sin(S.theta) * sin(S.theta))
    return lap(phi) - pow(sqrt(h * h), n)


def make_equations(eq: Sym, grid: Mapping):
    """Callback filling the block solver for the current values."""
    D0 = grid.D_block(0)
    ones = jnp.ones((1, grid.nt))

    def equations(S: Symbolic, op: BlockSolver, values: dict) -> None:
        Phi, Lambda, Phi0 = values["Phi"], values["Lambda"], values["Phi0"]

        # --- Φ: bulk Jacobian ---
        for var in ("Phi", "Lambda", "Phi0"):
            S.add(eq, op, "Phi", var)

        # --- Φ: regularity at the centre, potential matching at the surface ---
        op.bc_bot2_add_l(0, "Phi", "Phi", ones, D0[:1])
        op.bc_top1_add_l(0, "Phi", "Phi", ones, D0[-1:])
        op.bc_top1_add_d(0, "Phi", "Phi", ones)

        dPhi = grid.D @ Phi
        rhs = -S.evaluate(eq)
        rhs = setrow(rhs, 0, -row(dPhi, 0))
        rhs = setrow(rhs, -1, -row(dPhi, -1) - row(Phi, -1))
        op.set_rhs("Phi", rhs)

        # --- Φ₀: δΦ(0) − δΦ₀ = −(Φ(0) − Φ₀) ---
        op.bc_bot2_add_d(0, "Phi0", "Phi", ones)
        op.bc_bot2_add_d(0, "Phi0", "Phi0", -ones)
        op.set_rhs("Phi0", -(Phi[0, 0] - Phi0) * ones)

        # --- Λ: Λ (δΦ(1) − δΦ₀) + δΛ (Φ(1) − Φ₀) = −(Λ (Φ(1) − Φ₀) − 1) ---
        # Φ(1) is read on the equator (last column)
        op.bc_top1_add_d(0, "Lambda", "Phi", Lambda * ones)
        op.bc_top1_add_d(0, "Lambda", "Phi0", -Lambda * ones)
        op.bc_top1_add_d(0, "Lambda", "Lambda", (Phi[-1, -1] - Phi0) * ones)
        op.set_rhs("Lambda", -(Lambda * (Phi[-1, -1] - Phi0) - 1) * ones)

    return equations


def solve_polytrope(
    n: float = 1.5,
    omega: float = 0.3,
    nr: int = 50,
    nt: int = 8,
    tol: float = 1e-12,
    max_iter: int = 10000,
):
    """Build the grid and the equations, and run the Newton iteration."""
    grid = MappingConfig().set_ndomains(1).set_npts(nr).set_xif(0.0, 1.0).set_nt(nt).init()

    S = Symbolic(grid)
    eq = build_equation(S, n, omega)

    op = BlockSolver()
    op.init(1, 3, "full")
    for name in ("Phi", "Lambda", "Phi0"):
        op.regvar(name)
    op.set_nr(grid.npts)

    values = {"Phi": grid.r**2, "Lambda": 1.0, "Phi0": 0.0}
    newton = NewtonRaphson(primary="Phi", tol=tol, max_iter=max_iter)
    result = newton.run(S, op, make_equations(eq, grid), values)
    return grid, S, eq, result


# ============================================================================
# 2. Main
# ============================================================================


@app.default
def run_polytrope(
    n: Annotated[float, cyclopts.Option("--n", help="Polytropic index.")] = 1.5,
    tol: Annotated[float, cyclopts.Option("--tol", help="Newton tolerance on max|δΦ|.")] = 1e-12,
    nr: Annotated[int, cyclopts.Option("--nr", help="Radial points.")] = 50,
    nt: Annotated[int, cyclopts.Option("--nt", help="Colatitude points.")] = 8,
    omega: Annotated[float, cyclopts.Option("--omega", help="Rotation rate Ω.")] = 0.3,
    max_iter: Annotated[int, cyclopts.Option("--max-iter", help="Iteration cap.")] = 10000,
    plot: Annotated[bool, cyclopts.Option("--plot", help="Show Φ and the residual.")] = False,
    output_dir: Annotated[
        pathlib.Path | None,
        cyclopts.Option("--output-dir", help="Directory to save the solution as NetCDF."),
    ] = None,
):
    """
    Solve the rotating polytrope and report the eigenvalue and boundary checks.
    """
    logger.info("=" * 60)
    logger.info("Rotating Polytrope")
    logger.info("=" * 60)
    logger.info(f"n={n}, Ω={omega}, nr={nr}, nt={nt}, tol={tol:g}")

    grid, S, eq, result = solve_polytrope(n, omega, nr, nt, tol, max_iter)
    if not result.converged:
        logger.warning("No convergence")
        return

    Phi = result.values["Phi"]
    Lambda = float(result.values["Lambda"][0, 0])
    dPhi = grid.D @ Phi
    logger.success(f"Lambda = {Lambda:f}")
    logger.success(f"Phi(0) = {float(Phi[0, 0]):f}")
    logger.success(f"Phi(1) = {float(Phi[-1, 0]):f}")
    logger.info("Boundary conditions:")
    logger.info(f"dPhi/dr(0) = {float(dPhi[0, 0]):e}")
    logger.info(f"dPhi/dr(1) + Phi(1) = {float(dPhi[-1, 0] + Phi[-1, 0]):e}")

    residual = S.evaluate(eq)

    if output_dir is not None:
        ds = xr.Dataset(
            data_vars={
                "Phi": (("r", "theta"), np.asarray(Phi)),
                "residual": (("r", "theta"), np.asarray(broadcast_field(residual, grid.shape))),
            },
            coords={"r": np.asarray(grid.zeta[:, 0]), "theta": np.asarray(grid.theta[0])},
            attrs={
                "description": "Rotating polytrope",
                "n": n,
                "omega": omega,
                "Lambda": Lambda,
                "iterations": result.iterations,
            },
        )
        output_dir.mkdir(parents=True, exist_ok=True)
        output_path = output_dir / "polytrope2d.nc"
        ds.to_netcdf(output_path)
        logger.success(f"Output saved to: {output_path}")

    if plot:
        plot_results(grid, Phi, residual)
        plt.show()


def plot_results(grid: Mapping, Phi, residual):
    """Φ in the meridional plane and the residual along the first column."""
    fig, (ax1, ax2) = plt.subplots(2, 1, figsize=(6, 9))

    r = np.asarray(grid.zeta[:, 0])
    theta = np.asarray(grid.theta[0])
    # mirror the hemisphere for display
    theta_full = np.concatenate([theta, np.pi - theta[::-1]])
    Phi_full = np.concatenate([np.asarray(Phi), np.asarray(Phi)[:, ::-1]], axis=1)
    x = r[:, None] * np.sin(theta_full)[None, :]
    z = r[:, None] * np.cos(theta_full)[None, :]
    pcm = ax1.pcolormesh(x, z, Phi_full, shading="gouraud", cmap="viridis")
    fig.colorbar(pcm, ax=ax1, label="Φ")
    ax1.set_aspect("equal")
    ax1.set_title("Potential Φ")

    res = np.abs(np.asarray(broadcast_field(residual, grid.shape))[1:-1, 0])
    ax2.semilogy(r[1:-1], res)
    ax2.set_xlabel("r")
    ax2.set_ylabel("Residual")
    ax2.grid(True, linestyle="--", alpha=0.6)

    plt.tight_layout()


if __name__ == "__main__":
    app()
