"""
Field Container Helpers
=======================

Every field is a 2-D array: ``(nr, nt)`` for values sampled on the grid
(radial rows, colatitude columns) and ``(1, 1)`` for pure scalar unknowns.
Elementwise arithmetic and matrix composition (``D @ u`` for radial
operators, ``u @ Lt`` for angular ones) are plain jax operations; the helpers
below cover the row access and shape coercion the solver and the drivers need.
"""

import jax.numpy as jnp
from jaxtyping import Array, Float

from .errors import ConfigurationError


def as_field(u) -> Float[Array, "n m"]:
    """
    Coerce a python scalar, 1-D or 2-D array to a 2-D field.

    Scalars become ``(1, 1)`` and 1-D arrays become column vectors ``(n, 1)``.

    Raises:
    -------
    ConfigurationError
        If ``u`` has more than two dimensions.
    """
    u = jnp.asarray(u, dtype=jnp.result_type(float))
    if u.ndim == 0:
        return u.reshape(1, 1)
    if u.ndim == 1:
        return u[:, None]
    if u.ndim != 2:
        raise ConfigurationError(f"Fields are 2-D arrays, got shape {u.shape}")
    return u


def row(u: Array, i: int) -> Float[Array, "1 m"]:
    """Row ``i`` of a field as a ``(1, m)`` array (negative indices allowed)."""
    u = as_field(u)
    return u[i][None, :]


def setrow(u: Array, i: int, values) -> Float[Array, "n m"]:
    """Return a copy of ``u`` with row ``i`` replaced by ``values`` (broadcast)."""
    u = as_field(u)
    values = jnp.broadcast_to(jnp.asarray(values).reshape(-1), (u.shape[1],))
    return u.at[i].set(values)


def broadcast_field(u, shape: tuple[int, int]) -> Float[Array, "n m"]:
    """
    Broadcast ``u`` to ``shape`` with numpy rules.

    Raises:
    -------
    ConfigurationError
        If the shapes are not broadcast-compatible.
    """
    u = as_field(u)
    try:
        return jnp.broadcast_to(u, shape)
    except ValueError as err:
        raise ConfigurationError(
            f"Cannot broadcast field of shape {u.shape} to {shape}"
        ) from err


def max_abs(u) -> float:
    """Largest absolute entry of a field, as a python float."""
    return float(jnp.max(jnp.abs(jnp.asarray(u))))
