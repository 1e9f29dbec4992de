"""
Equatorially Symmetric Colatitude Grid
======================================

Collocation in the colatitude direction for axisymmetric fields that are
symmetric about the equator, u(θ) = u(π - θ). Such fields expand in
even-degree Legendre polynomials only:

    u(θ) = Σₗ aₗ P₂ₗ(cos θ),   l = 0, ..., nt - 1

Key Concepts:
-------------
    • θ ∈ (0, π/2]: only the northern hemisphere is stored.
    • Nodes are the nt positive Gauss-Legendre roots of P₂ₙₜ, so the poles are
      never collocation points and sin(θ) > 0 everywhere.
    • Fields have shape (nr, nt) with θ along axis 1, so angular operators act
      from the right: du/dθ ≈ u @ Dt.
    • nt = 1 gives a purely radial problem (Dt = Lt = 0).

References:
-----------
[1] Boyd, J. P. (2001). Chebyshev and Fourier Spectral Methods.
[2] Rieutord, M. & Espinosa Lara, F. (2013). Lect. Notes Phys. 865, 49.
"""

import equinox as eqx
import jax.numpy as jnp
import numpy as np
from jaxtyping import Array, Float
from numpy.polynomial import legendre as npleg

from ..errors import ConfigurationError


def _half_gauss_legendre_nodes(nt: int) -> np.ndarray:
    """
    Positive Gauss-Legendre roots of P₂ₙₜ via scipy.

    Returns:
    --------
    mu : ndarray [nt]
        cos(θ) values ordered pole to equator (decreasing).
    """
    from scipy.special import roots_legendre

    nodes, _ = roots_legendre(2 * nt)
    # roots_legendre returns ascending order; keep the northern half.
    return nodes[nt:][::-1].copy()


def _even_legendre_matrices(mu: np.ndarray):
    """
    Even Legendre synthesis matrix and its colatitude derivative.

    P[j, l]  = P₂ₗ(μⱼ)
    dP[j, l] = d/dθ P₂ₗ(cos θ) at θⱼ = -sin(θⱼ) P'₂ₗ(μⱼ)

    Parameters:
    -----------
    mu : ndarray [nt]
        cos(θ) nodes.

    Returns:
    --------
    (P, dP, degrees) : tuple of ndarrays ([nt, nt], [nt, nt], [nt])
    """
    nt = len(mu)
    degrees = 2 * np.arange(nt)
    sin_theta = np.sqrt(1.0 - mu**2)
    P = np.zeros((nt, nt))
    dP = np.zeros((nt, nt))
    for l, deg in enumerate(degrees):
        coeffs = np.zeros(deg + 1)
        coeffs[deg] = 1.0
        P[:, l] = npleg.legval(mu, coeffs)
        dP[:, l] = -sin_theta * npleg.legval(mu, npleg.legder(coeffs))
    return P, dP, degrees


class LegendreGrid(eqx.Module):
    """
    Colatitude grid for equatorially symmetric axisymmetric fields.

    Mathematical Framework:
    -----------------------
    With P the even-Legendre synthesis matrix (column convention
    u = P a), the coefficients are a = P⁻¹ u and

        du/dθ            = dP P⁻¹ u
        (1/sin θ) ∂θ(sin θ ∂θ u) = P diag(-2l(2l+1)) P⁻¹ u

    Fields carry θ along their last axis, so the stored operators are the
    transposes: ``u @ Dt`` and ``u @ Lt``.

    Attributes:
    -----------
        nt : int
            Number of colatitude points (≥ 1).
    """

    nt: int
    _mu: Array
    _Dt: Array
    _Lt: Array

    def __init__(self, nt: int = 1):
        if nt < 1:
            raise ConfigurationError(f"nt must be ≥ 1, got nt={nt}")
        self.nt = int(nt)

        mu = _half_gauss_legendre_nodes(self.nt)
        P, dP, degrees = _even_legendre_matrices(mu)
        P_inv = np.linalg.inv(P)
        eig = -degrees * (degrees + 1.0)

        self._mu = jnp.asarray(mu)
        self._Dt = jnp.asarray((dP @ P_inv).T)
        self._Lt = jnp.asarray((P @ np.diag(eig) @ P_inv).T)

    @property
    def cos_theta(self) -> Float[Array, "nt"]:
        """Nodes μ = cos(θ), ordered pole to equator."""
        return self._mu

    @property
    def theta(self) -> Float[Array, "nt"]:
        """Colatitude nodes θ ∈ (0, π/2), increasing."""
        return jnp.arccos(self._mu)

    @property
    def Dt(self) -> Float[Array, "nt nt"]:
        """Right-acting colatitude derivative: (u @ Dt) ≈ ∂u/∂θ."""
        return self._Dt

    @property
    def Lt(self) -> Float[Array, "nt nt"]:
        """Right-acting angular Laplacian: (u @ Lt) ≈ (1/sin θ) ∂θ(sin θ ∂θ u)."""
        return self._Lt
