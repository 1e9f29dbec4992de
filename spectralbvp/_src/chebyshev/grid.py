"""
Chebyshev Radial Grid Module
============================

Chebyshev collocation on one radial domain [a, b].

Key Concepts:
-------------
    • Gauss-Lobatto nodes include both endpoints, so boundary conditions can
      be imposed by replacing the first and last rows of a collocation system.
    • Differentiation matrix D: (Du)ᵢ = du/dx evaluated at node xᵢ.
    • Nodes are ordered increasing (x₀ = a, x_N = b): row 0 is the bottom of
      the domain and row -1 its top.

References:
-----------
[1] Trefethen, L. N. (2000). Spectral Methods in MATLAB. SIAM.
[2] Boyd, J. P. (2001). Chebyshev and Fourier Spectral Methods. Dover.
"""

import equinox as eqx
import jax.numpy as jnp
import numpy as np
from jaxtyping import Array, Float

from ..errors import ConfigurationError

# ============================================================================
# Internal numpy helpers (called once at __init__ time, not inside JIT)
# ============================================================================


def _cheb_diff_matrix_gl(N: int) -> np.ndarray:
    """
    Chebyshev differentiation matrix for Gauss-Lobatto nodes on [-1, 1].

    Uses the standard formula from Trefethen (2000), Ch. 6:

        D_{ij} = (cᵢ/cⱼ) * (-1)^{i+j} / (xᵢ - xⱼ)   i ≠ j
        D_{jj} = -Σ_{k≠j} D_{jk}                         (row-sum = 0)

    where cᵢ = 2 for i = 0 or N, else cᵢ = 1.

    Parameters:
    -----------
    N : int
        Polynomial degree. Matrix size is (N+1) × (N+1).

    Returns:
    --------
    D : ndarray [N+1, N+1]
        Differentiation matrix for the nodes xⱼ = cos(πj/N) (decreasing).
    """
    if N == 0:
        return np.zeros((1, 1))

    x = np.cos(np.pi * np.arange(N + 1) / N)  # GL nodes: x[0]=1, x[N]=-1

    c = np.ones(N + 1)
    c[0] = 2.0
    c[N] = 2.0

    ii = np.arange(N + 1)
    X = np.tile(x, (N + 1, 1))  # X[i,j] = x[j]
    dX = X.T - X  # dX[i,j] = x[i] - x[j]

    sign = (-1.0) ** (ii[:, None] + ii[None, :])

    with np.errstate(divide="ignore", invalid="ignore"):
        D = (c[:, None] / c[None, :]) * sign / dX

    np.fill_diagonal(D, 0.0)
    # Diagonal: negative row sum (ensures D * constant = 0)
    D -= np.diag(D.sum(axis=1))
    return D


def _cheb_nodes_increasing(N: int) -> np.ndarray:
    """Gauss-Lobatto nodes ηⱼ = -cos(πj/N) on [-1, 1], increasing."""
    if N == 0:
        return np.zeros(1)
    return -np.cos(np.pi * np.arange(N + 1) / N)


# ============================================================================
# ChebyshevGrid1D
# ============================================================================


class ChebyshevGrid1D(eqx.Module):
    """
    1D Chebyshev Gauss-Lobatto grid on the interval [a, b].

    Mathematical Framework:
    -----------------------
    Reference nodes ηⱼ = -cos(πj/N), j = 0, ..., N are increasing on [-1, 1].
    Reversing the sign of the classic nodes reverses the sign of the
    derivative, so the reference matrix is D_η = -D_ξ on the same indices.

    The affine map x = a + (b - a)(η + 1)/2 gives

        xⱼ = a + (b - a)(1 - cos(πj/N))/2
        D_phys = D_η · 2/(b - a)

    Attributes:
    -----------
        npts : int
            Number of collocation points (polynomial degree npts - 1).
        a, b : float
            Interval bounds, a < b.
    """

    npts: int
    a: float
    b: float
    _x: Array  # nodes, shape (npts,)
    _D: Array  # differentiation matrix on [a, b], shape (npts, npts)

    def __init__(self, npts: int, a: float = 0.0, b: float = 1.0):
        """
        Parameters:
        -----------
        npts : int
            Number of points (≥ 2).
        a, b : float
            Interval bounds with a < b. Default [0, 1].

        Raises:
        -------
        ConfigurationError
            If npts < 2 or the interval is empty.
        """
        if npts < 2:
            raise ConfigurationError(f"npts must be ≥ 2, got npts={npts}")
        if not b > a:
            raise ConfigurationError(f"Empty interval [{a}, {b}]")
        self.npts = int(npts)
        self.a = float(a)
        self.b = float(b)

        N = self.npts - 1
        eta = _cheb_nodes_increasing(N)
        x_np = self.a + (self.b - self.a) * (eta + 1.0) / 2.0
        # Pin the endpoints exactly so boundary rows sit on a and b
        x_np[0], x_np[-1] = self.a, self.b
        D_np = -_cheb_diff_matrix_gl(N) * 2.0 / (self.b - self.a)
        self._x = jnp.array(x_np)
        self._D = jnp.array(D_np)

    @classmethod
    def from_npts_interval(
        cls, npts: int, a: float, b: float
    ) -> "ChebyshevGrid1D":
        """
        Initialize from the number of points and the interval bounds.

        Example:
        --------
        >>> grid = ChebyshevGrid1D.from_npts_interval(npts=17, a=0.0, b=1.0)
        """
        return cls(npts=npts, a=a, b=b)

    @property
    def x(self) -> Float[Array, "N1"]:
        """Physical nodes on [a, b], increasing, endpoints included."""
        return self._x

    @property
    def D(self) -> Float[Array, "N1 N1"]:
        """
        Chebyshev differentiation matrix on [a, b].

        Satisfies: (D @ u)ᵢ ≈ du/dx at xᵢ (exact for polynomials of degree
        ≤ npts - 1). Rows sum to zero.
        """
        return self._D

    @property
    def D2(self) -> Float[Array, "N1 N1"]:
        """Second-derivative matrix D @ D."""
        return self._D @ self._D
