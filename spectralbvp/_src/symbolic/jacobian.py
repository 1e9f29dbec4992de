"""
Jacobian Operators
==================

The derivative of an expression with respect to one variable is a linear
operator acting on a perturbation δv of that variable. It is stored as a sum
of terms of two kinds:

    LinearTerm   δe = C ⊙ (L @ (I ⊙ δv) @ R)
    DenseTerm    vec(δe) = A @ vec(δv)

where ⊙ is the pointwise product, L a radial (left-acting) matrix, R an
angular (right-acting) matrix, and vec the row-major flattening of an
(nr, nt) field. Any of C, L, I, R may be absent (ones / identity).

The structured form covers every composition the chain rule produces when
radial and angular operators are applied directly to a variable, which is
what the block solver consumes without materialising an (N, N) matrix. A
radial or angular operator applied over a non-trivial pointwise coefficient
falls back to a dense term.
"""

import equinox as eqx
import jax.numpy as jnp
from jaxtyping import Array, Float


def term_matrix(
    coef: Array | None,
    L: Array | None,
    I: Array | None,
    R: Array | None,
    n_out: int,
    n_in: int,
    nt: int,
    P: Array | None = None,
) -> Float[Array, "n_out*nt n_in*nt"]:
    """
    Dense matrix of C ⊙ (L @ (I ⊙ (P @ δv)) @ R) for row-major flattening.

        M[(i, j), (q, l)] = C[i, j] Σₖ L[i, k] I[k, l] P[k, q] R[l, j]

    Parameters:
    -----------
    coef : Array broadcastable to (n_out, nt), or None
    L : Array [n_out, n_k], or None (identity, n_k = n_out)
    I : Array broadcastable to (n_k, nt), or None
    R : Array [nt, nt], or None (identity)
    n_out, n_in : int
        Rows of the result and of the variable.
    nt : int
        Columns of every field.
    P : Array [n_k, n_in], or None (identity)
        Row prolongation, e.g. broadcasting one value per domain to the
        rows of that domain.

    Returns:
    --------
    M : Array [n_out * nt, n_in * nt]
    """
    n_k = n_out if L is None else L.shape[1]
    C = jnp.broadcast_to(1.0 if coef is None else coef, (n_out, nt))
    Lm = jnp.eye(n_out) if L is None else L
    Im = jnp.broadcast_to(1.0 if I is None else I, (n_k, nt))
    Rm = jnp.eye(nt) if R is None else R
    Pm = jnp.eye(n_k) if P is None else P
    # Q[i, l, q] = Σₖ L[i, k] I[k, l] P[k, q]
    Q = jnp.einsum("ik,kl,kq->ilq", Lm, Im, Pm)
    M = jnp.einsum("ij,ilq,lj->ijql", C, Q, Rm)
    return M.reshape(n_out * nt, n_in * nt)


class LinearTerm(eqx.Module):
    """
    Structured term C ⊙ (L @ (I ⊙ δv) @ R).

    Attributes:
    -----------
        coef : Array or None
            Outer pointwise coefficient C.
        L : Array [nr, nr] or None
            Radial operator, applied from the left.
        I : Array or None
            Inner pointwise coefficient.
        R : Array [nt, nt] or None
            Angular operator, applied from the right.
    """

    coef: Array | None = None
    L: Array | None = None
    I: Array | None = None
    R: Array | None = None

    @property
    def is_pointwise(self) -> bool:
        return self.L is None and self.R is None

    def apply(self, dv: Array) -> Array:
        w = dv if self.I is None else self.I * dv
        if self.L is not None:
            w = self.L @ w
        if self.R is not None:
            w = w @ self.R
        return w if self.coef is None else self.coef * w

    def to_dense(self, shape: tuple[int, int]) -> Float[Array, "N N"]:
        nr, nt = shape
        return term_matrix(self.coef, self.L, self.I, self.R, nr, nr, nt)

    def scale(self, c: Array) -> "LinearTerm":
        coef = c if self.coef is None else self.coef * c
        return LinearTerm(coef, self.L, self.I, self.R)

    def left(self, M: Array) -> "LinearTerm | None":
        """M @ term, or None when the product has no structured form."""
        if self.coef is None:
            L = M if self.L is None else M @ self.L
            return LinearTerm(None, L, self.I, self.R)
        if self.is_pointwise:
            inner = self.coef if self.I is None else self.coef * self.I
            return LinearTerm(None, M, inner, None)
        return None

    def right(self, M: Array) -> "LinearTerm | None":
        """term @ M, or None when the product has no structured form."""
        if self.coef is None:
            R = M if self.R is None else self.R @ M
            return LinearTerm(None, self.L, self.I, R)
        if self.is_pointwise:
            inner = self.coef if self.I is None else self.coef * self.I
            return LinearTerm(None, None, inner, M)
        return None


class DenseTerm(eqx.Module):
    """Dense term vec(δe) = A @ vec(δv) over row-major flattened fields."""

    A: Array
    shape: tuple[int, int]

    def apply(self, dv: Array) -> Array:
        dv = jnp.broadcast_to(dv, self.shape)
        return (self.A @ dv.reshape(-1)).reshape(self.shape)

    def to_dense(self, shape: tuple[int, int]) -> Float[Array, "N N"]:
        return self.A

    def scale(self, c: Array) -> "DenseTerm":
        c = jnp.broadcast_to(c, self.shape).reshape(-1)
        return DenseTerm(c[:, None] * self.A, self.shape)

    def left(self, M: Array) -> "DenseTerm":
        return DenseTerm(jnp.kron(M, jnp.eye(self.shape[1])) @ self.A, self.shape)

    def right(self, M: Array) -> "DenseTerm":
        return DenseTerm(jnp.kron(jnp.eye(self.shape[0]), M.T) @ self.A, self.shape)


class Jacobian(eqx.Module):
    """
    Derivative of an expression with respect to the variable ``var``.

    An operator with no terms is the zero operator: the expression does not
    depend on ``var``. For scalar variables the operator is always a single
    pointwise term whose coefficient is ∂e/∂v on the grid.

    Attributes:
    -----------
        var : str
            Name of the variable.
        terms : tuple[LinearTerm | DenseTerm, ...]
        scalar : bool
            Whether ``var`` is a scalar (1 × 1) variable.
    """

    var: str
    terms: tuple = ()
    scalar: bool = False

    @property
    def is_zero(self) -> bool:
        return len(self.terms) == 0

    def apply(self, dv: Array) -> Array:
        """Directional derivative for the perturbation ``dv``."""
        dv = jnp.asarray(dv)
        out = jnp.zeros_like(dv)
        for term in self.terms:
            out = out + term.apply(dv)
        return out

    def to_dense(self, shape: tuple[int, int]) -> Float[Array, "N M"]:
        """
        Materialise the operator for fields of ``shape``.

        Returns an (N, N) matrix for field variables and an (N, 1) column for
        scalar variables, N = nr * nt.
        """
        nr, nt = shape
        if self.scalar:
            col = jnp.zeros((nr, nt))
            for term in self.terms:
                col = col + jnp.broadcast_to(term.apply(jnp.ones(shape)), shape)
            return col.reshape(-1, 1)
        out = jnp.zeros((nr * nt, nr * nt))
        for term in self.terms:
            out = out + term.to_dense(shape)
        return out
