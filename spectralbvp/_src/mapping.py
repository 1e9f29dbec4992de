"""
Multi-Domain Spectral Mapping
=============================

Tensor-product grid in (r, θ) for axisymmetric, equatorially symmetric
problems: a stack of Chebyshev radial domains times a Legendre colatitude
grid.

Layout:
-------
    • Radial domains [ξ₀, ξ₁], [ξ₁, ξ₂], ... each own npts[n] Gauss-Lobatto
      points, both endpoints included; interface points are duplicated.
    • Fields have shape (nr, nt) with nr = Σ npts: rows are radial points
      stacked domain after domain, columns are colatitude points.
    • The radial derivative D is block diagonal, one block per domain.

Spherical Laplacian (axisymmetric):
-----------------------------------
    ∇²u = ∂²u/∂r² + (2/r) ∂u/∂r + (1/r²) Lθ u

The radial part is stored as ``lap_r`` and the angular weight 1/r² as
``inv_r2``. At r = 0 a regular field has ∂u/∂r = 0 and no θ dependence, so
the row becomes 3 ∂²u/∂r² and the angular weight is zero.
"""

from collections.abc import Sequence

import equinox as eqx
import jax.numpy as jnp
import numpy as np
from jaxtyping import Array, Float
from loguru import logger

from .chebyshev.grid import ChebyshevGrid1D
from .errors import ConfigurationError
from .spherical.grid import LegendreGrid


def _check_layout(npts: Sequence[int], xif: Sequence[float], nt: int) -> None:
    """Validate a domain layout, collecting every problem before raising."""
    errors = []
    ndomains = len(npts)
    if ndomains < 1:
        errors.append("At least one domain is required")
    for n, npt in enumerate(npts):
        if npt < 2:
            errors.append(f"Domain {n} needs at least 2 points, got {npt}")
    if nt < 1:
        errors.append(f"nt must be ≥ 1, got nt={nt}")
    if len(xif) != ndomains + 1:
        errors.append(
            f"Expected {ndomains + 1} domain boundaries, got {len(xif)}"
        )
    elif ndomains >= 1:
        if xif[0] < 0:
            errors.append(f"Inner boundary must be ≥ 0, got {xif[0]}")
        for n in range(ndomains):
            if not xif[n + 1] > xif[n]:
                errors.append(
                    f"Domain {n} interval [{xif[n]}, {xif[n + 1]}] is empty or reversed"
                )
    if errors:
        raise ConfigurationError("\n".join(errors))


class Mapping(eqx.Module):
    """
    Immutable (r, θ) collocation grid with its differentiation operators.

    Attributes:
    -----------
        npts : tuple[int, ...]
            Radial points per domain.
        nt : int
            Colatitude points.
        xif : tuple[float, ...]
            Domain boundaries, ndomains + 1 increasing values.
        gl : tuple[ChebyshevGrid1D, ...]
            Radial grid of each domain.
        leg : LegendreGrid
            Colatitude grid.
    """

    npts: tuple[int, ...]
    nt: int
    xif: tuple[float, ...]
    gl: tuple[ChebyshevGrid1D, ...]
    leg: LegendreGrid
    _zeta: Array  # radial nodes, shape (nr,)
    _D: Array  # block-diagonal radial derivative, shape (nr, nr)
    _lap_r: Array  # radial part of the Laplacian, shape (nr, nr)
    _inv_r2: Array  # 1/r² with zero at the centre, shape (nr, 1)

    def __init__(self, npts: Sequence[int], xif: Sequence[float], nt: int = 1):
        """
        Parameters:
        -----------
        npts : sequence of int
            Radial points per domain.
        xif : sequence of float
            Domain boundaries, len(npts) + 1 increasing values ≥ 0.
        nt : int
            Colatitude points. Default 1 (purely radial).

        Raises:
        -------
        ConfigurationError
            If the layout is inconsistent.
        """
        npts = tuple(int(n) for n in npts)
        xif = tuple(float(x) for x in xif)
        _check_layout(npts, xif, nt)
        self.npts = npts
        self.nt = int(nt)
        self.xif = xif
        self.gl = tuple(
            ChebyshevGrid1D(npts=npt, a=xif[n], b=xif[n + 1])
            for n, npt in enumerate(npts)
        )
        self.leg = LegendreGrid(nt=self.nt)

        nr = sum(npts)
        zeta = np.concatenate([np.asarray(g.x) for g in self.gl])
        D = np.zeros((nr, nr))
        start = 0
        for g in self.gl:
            stop = start + g.npts
            D[start:stop, start:stop] = np.asarray(g.D)
            start = stop

        D2 = D @ D
        centre = zeta == 0.0
        with np.errstate(divide="ignore"):
            two_over_r = np.where(centre, 0.0, 2.0 / zeta)
            inv_r2 = np.where(centre, 0.0, 1.0 / zeta**2)
        lap_r = D2 + two_over_r[:, None] * D
        lap_r[centre] = 3.0 * D2[centre]

        self._zeta = jnp.asarray(zeta)
        self._D = jnp.asarray(D)
        self._lap_r = jnp.asarray(lap_r)
        self._inv_r2 = jnp.asarray(inv_r2[:, None])
        logger.debug(
            f"Mapping built: {len(npts)} domain(s), npts={npts}, nt={nt}, xif={xif}"
        )

    # ------------------------------------------------------------------
    # Sizes
    # ------------------------------------------------------------------

    @property
    def ndomains(self) -> int:
        return len(self.npts)

    @property
    def nr(self) -> int:
        """Total number of radial rows (interfaces counted twice)."""
        return sum(self.npts)

    @property
    def N(self) -> int:
        """Composite point count nr * nt."""
        return self.nr * self.nt

    @property
    def shape(self) -> tuple[int, int]:
        """Shape of a grid field."""
        return (self.nr, self.nt)

    def domain_slice(self, n: int) -> slice:
        """Rows of domain n in a (nr, nt) field."""
        if not 0 <= n < self.ndomains:
            raise IndexError(f"Domain {n} out of range [0, {self.ndomains})")
        start = sum(self.npts[:n])
        return slice(start, start + self.npts[n])

    # ------------------------------------------------------------------
    # Coordinates
    # ------------------------------------------------------------------

    @property
    def zeta(self) -> Float[Array, "nr 1"]:
        """Radial nodes as a column."""
        return self._zeta[:, None]

    @property
    def r(self) -> Float[Array, "nr nt"]:
        """Radial coordinate on the full grid."""
        return jnp.broadcast_to(self.zeta, self.shape)

    @property
    def theta(self) -> Float[Array, "1 nt"]:
        """Colatitude as a row."""
        return self.leg.theta[None, :]

    @property
    def R(self) -> Float[Array, "nb nt"]:
        """Domain boundaries, one row per boundary, one column per θ."""
        return jnp.broadcast_to(jnp.asarray(self.xif)[:, None], (len(self.xif), self.nt))

    # ------------------------------------------------------------------
    # Operators
    # ------------------------------------------------------------------

    @property
    def D(self) -> Float[Array, "nr nr"]:
        """Block-diagonal radial derivative: (D @ u) ≈ ∂u/∂r."""
        return self._D

    def D_block(self, n: int) -> Float[Array, "npts npts"]:
        """Radial derivative of domain n."""
        return self.gl[n].D

    @property
    def Dt(self) -> Float[Array, "nt nt"]:
        """Right-acting colatitude derivative: (u @ Dt) ≈ ∂u/∂θ."""
        return self.leg.Dt

    @property
    def Lt(self) -> Float[Array, "nt nt"]:
        """Right-acting angular Laplacian."""
        return self.leg.Lt

    @property
    def lap_r(self) -> Float[Array, "nr nr"]:
        """Radial part of the Laplacian: ∂²/∂r² + (2/r) ∂/∂r (3 ∂²/∂r² at r = 0)."""
        return self._lap_r

    @property
    def inv_r2(self) -> Float[Array, "nr 1"]:
        """Weight of the angular Laplacian, 1/r² (0 at r = 0)."""
        return self._inv_r2

    def laplacian(self, u: Array) -> Float[Array, "nr nt"]:
        """Spherical Laplacian of a grid field (scalars broadcast first)."""
        u = jnp.broadcast_to(u, self.shape)
        return self._lap_r @ u + self._inv_r2 * (u @ self.Lt)

    # ------------------------------------------------------------------
    # Rebuild
    # ------------------------------------------------------------------

    def remap(self, R) -> "Mapping":
        """
        Rebuild the mapping for new domain boundaries.

        Parameters:
        -----------
        R : array [ndomains + 1] or [ndomains + 1, nt]
            New boundary radii. Every column must be identical: only spherical
            boundaries are supported.

        Returns:
        --------
        Mapping
            A new mapping; ``self`` is unchanged.

        Raises:
        -------
        ConfigurationError
            If R has the wrong size, depends on θ, or is not increasing.
        """
        R = np.asarray(R, dtype=float)
        if R.ndim == 1:
            R = R[:, None]
        if R.shape[0] != self.ndomains + 1 or R.shape[1] not in (1, self.nt):
            raise ConfigurationError(
                f"Expected boundaries of shape ({self.ndomains + 1}, {self.nt}), got {R.shape}"
            )
        if not np.allclose(R, R[:, :1], rtol=0.0, atol=1e-14):
            raise ConfigurationError("Only θ-independent (spherical) boundaries are supported")
        return Mapping(npts=self.npts, xif=R[:, 0], nt=self.nt)


class MappingConfig:
    """
    Mutable description of a mapping, turned into a `Mapping` by `init`.

    Example:
    --------
    >>> cfg = MappingConfig()
    >>> cfg.set_ndomains(1)
    >>> cfg.set_npts(50)
    >>> cfg.set_xif(0.0, 1.0)
    >>> cfg.set_nt(8)
    >>> grid = cfg.init()
    """

    def __init__(self):
        self.ndomains = 1
        self.npts: int | tuple[int, ...] = 0
        self.nt = 1
        self.xif: tuple[float, ...] | None = None

    def set_ndomains(self, ndomains: int) -> "MappingConfig":
        self.ndomains = int(ndomains)
        return self

    def set_npts(self, npts: int | Sequence[int]) -> "MappingConfig":
        """Points per domain: one int for every domain, or one per domain."""
        if np.ndim(npts) > 0:
            self.npts = tuple(int(n) for n in npts)
        else:
            self.npts = int(npts)
        return self

    def set_nt(self, nt: int) -> "MappingConfig":
        self.nt = int(nt)
        return self

    def set_xif(self, *xif: float) -> "MappingConfig":
        """Domain boundaries ξ₀ < ξ₁ < ... < ξₖ (default: [0, 1] split evenly)."""
        if len(xif) == 1 and np.ndim(xif[0]) > 0:
            xif = tuple(xif[0])
        self.xif = tuple(float(x) for x in xif)
        return self

    def init(self) -> Mapping:
        """
        Validate the configuration and build the mapping.

        Raises:
        -------
        ConfigurationError
            No domains, non-positive point counts, or bad boundaries.
        """
        if self.ndomains < 1:
            raise ConfigurationError(f"ndomains must be ≥ 1, got {self.ndomains}")
        if isinstance(self.npts, tuple):
            npts = self.npts
            if len(npts) != self.ndomains:
                raise ConfigurationError(
                    f"Got {len(npts)} point counts for {self.ndomains} domain(s)"
                )
        else:
            npts = (self.npts,) * self.ndomains
        xif = self.xif
        if xif is None:
            xif = tuple(np.linspace(0.0, 1.0, self.ndomains + 1))
        return Mapping(npts=npts, xif=xif, nt=self.nt)
