"""
Tests for ChebyshevGrid1D.
"""

import jax.numpy as jnp
import numpy as np
import pytest

from spectralbvp._src.chebyshev.grid import ChebyshevGrid1D
from spectralbvp._src.errors import ConfigurationError

# ============================================================================
# Nodes
# ============================================================================


def test_chebyshev_grid_1d_endpoints():
    """GL grid: npts nodes, x[0] = a and x[-1] = b exactly."""
    grid = ChebyshevGrid1D(npts=9, a=0.5, b=2.0)
    x = grid.x
    assert x.shape == (9,)
    assert float(x[0]) == 0.5
    assert float(x[-1]) == 2.0


def test_chebyshev_grid_1d_node_ordering():
    """Nodes are strictly increasing (bottom of the domain first)."""
    grid = ChebyshevGrid1D(npts=17)
    assert jnp.all(jnp.diff(grid.x) > 0), "Nodes should be monotonically increasing"


def test_chebyshev_grid_1d_node_symmetry():
    """GL nodes are symmetric about the mid-point of [a, b]."""
    a, b = -1.0, 3.0
    grid = ChebyshevGrid1D(npts=11, a=a, b=b)
    x = grid.x
    mid = 0.5 * (a + b)
    assert jnp.allclose(x - mid, -(x[::-1] - mid), atol=1e-12)


def test_chebyshev_grid_1d_factory():
    """from_npts_interval is equivalent to the constructor."""
    g1 = ChebyshevGrid1D.from_npts_interval(npts=8, a=0.0, b=2.0)
    g2 = ChebyshevGrid1D(8, 0.0, 2.0)
    assert jnp.allclose(g1.x, g2.x)
    assert jnp.allclose(g1.D, g2.D)


# ============================================================================
# Differentiation matrix
# ============================================================================


def test_chebyshev_grid_1d_diff_matrix_shape():
    grid = ChebyshevGrid1D(npts=9)
    assert grid.D.shape == (9, 9)
    assert grid.D2.shape == (9, 9)


def test_chebyshev_grid_1d_diff_matrix_row_sum():
    """Rows of D sum to zero (derivative of constant = 0)."""
    grid = ChebyshevGrid1D(npts=17, a=0.0, b=1.0)
    row_sums = grid.D.sum(axis=1)
    assert jnp.allclose(row_sums, 0.0, atol=1e-10), (
        f"Row sums not zero: max abs = {jnp.abs(row_sums).max()}"
    )


def test_chebyshev_grid_1d_polynomial_exact():
    """D is exact for polynomials of degree ≤ npts - 1."""
    grid = ChebyshevGrid1D(npts=6, a=0.0, b=2.0)
    x = grid.x
    u = 3 * x**5 - x**2 + 1
    du = 15 * x**4 - 2 * x
    assert jnp.allclose(grid.D @ u, du, atol=1e-9)


def test_chebyshev_grid_1d_second_derivative():
    """D2 = D @ D differentiates twice."""
    grid = ChebyshevGrid1D(npts=12, a=-1.0, b=1.0)
    x = grid.x
    assert jnp.allclose(grid.D2 @ x**4, 12 * x**2, atol=1e-9)


def test_chebyshev_grid_1d_spectral_convergence():
    """Error on sin(x) decays faster than any power of 1/npts."""
    errors = []
    for npts in (4, 6, 8, 10):
        grid = ChebyshevGrid1D(npts=npts, a=0.0, b=np.pi)
        err = jnp.abs(grid.D @ jnp.sin(grid.x) - jnp.cos(grid.x)).max()
        errors.append(float(err))
    for coarse, fine in zip(errors[:-1], errors[1:]):
        assert fine < 0.1 * coarse, f"Not spectral: {errors}"

    grid = ChebyshevGrid1D(npts=20, a=0.0, b=np.pi)
    err = jnp.abs(grid.D @ jnp.sin(grid.x) - jnp.cos(grid.x)).max()
    assert err < 1e-11, f"Error at npts=20 too large: {err}"


# ============================================================================
# Validation
# ============================================================================


@pytest.mark.parametrize("npts", [0, 1])
def test_chebyshev_grid_1d_too_few_points(npts):
    with pytest.raises(ConfigurationError):
        ChebyshevGrid1D(npts=npts)


def test_chebyshev_grid_1d_empty_interval():
    with pytest.raises(ConfigurationError):
        ChebyshevGrid1D(npts=5, a=1.0, b=1.0)
    with pytest.raises(ValueError):
        ChebyshevGrid1D(npts=5, a=2.0, b=1.0)
