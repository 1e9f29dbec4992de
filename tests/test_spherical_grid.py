"""
Tests for LegendreGrid (equatorially symmetric colatitude grid).
"""

import jax.numpy as jnp
import numpy as np
import pytest
from scipy.special import eval_legendre

from spectralbvp._src.errors import ConfigurationError
from spectralbvp._src.spherical.grid import LegendreGrid

# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------


def test_legendre_grid_node_count():
    g = LegendreGrid(nt=8)
    assert g.cos_theta.shape == (8,)
    assert g.theta.shape == (8,)
    assert g.Dt.shape == (8, 8)
    assert g.Lt.shape == (8, 8)


def test_legendre_grid_nodes_in_hemisphere():
    """Nodes are positive roots of P_2nt, ordered pole to equator."""
    nt = 6
    g = LegendreGrid(nt=nt)
    mu = np.asarray(g.cos_theta)
    assert np.all(mu > 0.0) and np.all(mu < 1.0)
    assert np.all(np.diff(mu) < 0)
    assert np.allclose(eval_legendre(2 * nt, mu), 0.0, atol=1e-12)
    theta = np.asarray(g.theta)
    assert np.all(np.diff(theta) > 0)
    assert theta[-1] < np.pi / 2


def test_legendre_grid_radial_case():
    """nt = 1: single node, zero angular operators."""
    g = LegendreGrid(nt=1)
    assert g.cos_theta.shape == (1,)
    assert jnp.allclose(g.Dt, 0.0)
    assert jnp.allclose(g.Lt, 0.0)


def test_legendre_grid_invalid():
    with pytest.raises(ConfigurationError):
        LegendreGrid(nt=0)


# ---------------------------------------------------------------------------
# Operators
# ---------------------------------------------------------------------------


def test_legendre_grid_derivative_of_sin2():
    """d/dθ sin²θ = 2 sinθ cosθ (sin²θ is an even Legendre series)."""
    g = LegendreGrid(nt=6)
    theta = g.theta[None, :]
    u = jnp.sin(theta) ** 2
    expected = 2 * jnp.sin(theta) * jnp.cos(theta)
    assert jnp.allclose(u @ g.Dt, expected, atol=1e-12)


def test_legendre_grid_derivative_of_constant():
    g = LegendreGrid(nt=5)
    assert jnp.allclose(jnp.ones((3, 5)) @ g.Dt, 0.0, atol=1e-12)


@pytest.mark.parametrize("l", [0, 1, 2, 3])
def test_legendre_grid_laplacian_eigenfunctions(l):
    """u @ Lt = -2l(2l+1) u for u = P_2l(cos θ)."""
    g = LegendreGrid(nt=5)
    mu = np.asarray(g.cos_theta)
    u = jnp.asarray(eval_legendre(2 * l, mu))[None, :]
    eig = -2 * l * (2 * l + 1)
    assert jnp.allclose(u @ g.Lt, eig * u, atol=1e-10), (
        f"P_{2 * l} is not an eigenfunction: max diff {jnp.abs(u @ g.Lt - eig * u).max()}"
    )


def test_legendre_grid_laplacian_matches_derivatives():
    """Lt u = u'' + cotθ u' for u = cos²θ."""
    g = LegendreGrid(nt=6)
    theta = g.theta[None, :]
    u = jnp.cos(theta) ** 2
    # u' = -sin2θ, u'' = -2cos2θ
    expected = -2 * jnp.cos(2 * theta) + jnp.cos(theta) / jnp.sin(theta) * -jnp.sin(2 * theta)
    assert jnp.allclose(u @ g.Lt, expected, atol=1e-10)
