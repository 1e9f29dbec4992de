"""
Symbolic Engine
===============

Binds expressions to a mapping and to the current values of the registered
variables, and evaluates or differentiates them.

Evaluation and differentiation are pure functions of an explicit
`SymContext` (mapping + current values). `Symbolic` is the stateful front
end: it owns the variable registry and the values set between Newton
iterations, and hands a snapshot of them to the pure functions.

Numeric policy:
---------------
    • Non-integer powers, ``sqrt`` and ``log`` act on |a|, so results stay
      real for any sign of the base. ``abs`` makes this explicit;
      ``sqrt(h * h)`` is built as ``abs(h)``.
    • Integer powers are ordinary powers.
    • A node that turns finite inputs into inf or NaN (log 0, 1/0, an
      overflowing exp) raises `SymbolicError` naming the node, in values and
      in Jacobian terms alike.
"""

import equinox as eqx
import jax
import jax.numpy as jnp
from jaxtyping import Array, Float

from ..errors import ConfigurationError, SymbolicError
from ..field import as_field
from ..mapping import Mapping
from .expr import COORDINATES, Sym, _is_integer
from .jacobian import DenseTerm, Jacobian, LinearTerm


def _power(a: Array, p: float) -> Array:
    if _is_integer(p):
        return jnp.power(a, int(p))
    return jnp.power(jnp.abs(a), p)


def _power_derivative(a: Array, p: float) -> Array:
    """d/da of `_power(a, p)`."""
    if _is_integer(p):
        return p * jnp.power(a, int(p) - 1)
    return p * jnp.power(jnp.abs(a), p - 1.0) * jnp.sign(a)


_UNARY = {
    "abs": jnp.abs,
    "sin": jnp.sin,
    "cos": jnp.cos,
    "tan": jnp.tan,
    "exp": jnp.exp,
    "log": lambda a: jnp.log(jnp.abs(a)),
}

_UNARY_DERIVATIVE = {
    "abs": jnp.sign,
    "sin": jnp.cos,
    "cos": lambda a: -jnp.sin(a),
    "tan": lambda a: 1.0 / jnp.cos(a) ** 2,
    "exp": jnp.exp,
    "log": lambda a: 1.0 / a,
}


# ============================================================================
# Context
# ============================================================================


class SymContext(eqx.Module):
    """
    Immutable snapshot of everything an evaluation depends on.

    Attributes:
    -----------
        mapping : Mapping or None
        values : dict[str, Array]
            Current value of each variable, (nr, nt) or (1, 1).
        scalars : frozenset[str]
            Names of the variables registered as scalars.
    """

    mapping: Mapping | None
    values: dict
    scalars: frozenset = frozenset()

    def value(self, name: str) -> Array:
        try:
            return self.values[name]
        except KeyError:
            raise SymbolicError(f"No value set for variable {name!r}") from None

    def coordinate(self, name: str) -> Array:
        if name == "r":
            return self.mapping.r
        if name == "theta":
            return self.mapping.theta
        raise SymbolicError(f"Unknown coordinate {name!r}")


def _require_map(ctx: SymContext) -> Mapping:
    if ctx.mapping is None:
        raise SymbolicError("No mapping bound: call set_map() before evaluating")
    return ctx.mapping


# ============================================================================
# Evaluation
# ============================================================================


def _all_finite(x: Array) -> bool:
    try:
        return bool(jnp.all(jnp.isfinite(x)))
    except jax.errors.ConcretizationTypeError:
        # abstract values under jit; checked again once concrete
        return True


def _evaluate(expr: Sym, ctx: SymContext, memo: dict) -> Array:
    key = id(expr)
    if key in memo:
        return memo[key]

    kind = expr.kind
    if kind == "const":
        out = jnp.full((1, 1), expr.value)
    elif kind == "var":
        out = ctx.value(expr.name)
    elif kind == "coord":
        out = ctx.coordinate(expr.name)
    else:
        args = [_evaluate(a, ctx, memo) for a in expr.args]
        if kind == "add":
            out = args[0] + args[1]
        elif kind == "mul":
            out = args[0] * args[1]
        elif kind == "pow":
            out = _power(args[0], expr.value)
        elif kind == "lap":
            out = ctx.mapping.laplacian(args[0])
        elif kind == "dr":
            out = ctx.mapping.D @ jnp.broadcast_to(args[0], ctx.mapping.shape)
        elif kind == "dt":
            out = jnp.broadcast_to(args[0], ctx.mapping.shape) @ ctx.mapping.Dt
        else:
            out = _UNARY[kind](args[0])
        if not _all_finite(out) and all(_all_finite(a) for a in args):
            raise SymbolicError(f"{kind} node produced non-finite values: {expr}")

    memo[key] = out
    return out


def evaluate(expr: Sym, ctx: SymContext) -> Float[Array, "n m"]:
    """
    Value of ``expr`` for the values in ``ctx``.

    Returns an (nr, nt) field, or a (1, 1) array when the expression only
    involves scalars and constants.

    Raises:
    -------
    SymbolicError
        No mapping bound, a variable without a value, or a non-finite
        result.
    """
    _require_map(ctx)
    out = _evaluate(expr, ctx, {})
    if not _all_finite(out):
        bad = sorted(n for n in expr.variables() if not _all_finite(ctx.value(n)))
        raise SymbolicError(f"Non-finite inputs {bad} in {expr}")
    return out


# ============================================================================
# Differentiation
# ============================================================================


def _term_finite(term) -> bool:
    if isinstance(term, DenseTerm):
        return _all_finite(term.A)
    return all(c is None or _all_finite(c) for c in (term.coef, term.I))


class _Differentiator:
    """Structural chain rule over one expression tree, for one variable."""

    def __init__(self, var: str, ctx: SymContext):
        self.var = var
        self.ctx = ctx
        self.mapping = ctx.mapping
        self.memo = {}
        self.terms_memo = {}

    def value(self, expr: Sym) -> Array:
        return _evaluate(expr, self.ctx, self.memo)

    # -- term list algebra ------------------------------------------------

    def _densify(self, term):
        if isinstance(term, DenseTerm):
            return term
        shape = self.mapping.shape
        return DenseTerm(term.to_dense(shape), shape)

    def scale(self, terms: list, c: Array) -> list:
        return [t.scale(c) for t in terms]

    def left(self, terms: list, M: Array) -> list:
        out = []
        for t in terms:
            new = t.left(M)
            out.append(new if new is not None else self._densify(t).left(M))
        return out

    def right(self, terms: list, M: Array) -> list:
        out = []
        for t in terms:
            new = t.right(M)
            out.append(new if new is not None else self._densify(t).right(M))
        return out

    # -- recursion ----------------------------------------------------------

    def terms(self, expr: Sym) -> list:
        key = id(expr)
        if key not in self.terms_memo:
            terms = self._terms(expr)
            if not all(_term_finite(t) for t in terms):
                raise SymbolicError(
                    f"Derivative of {expr.kind} node with respect to {self.var!r} "
                    f"is not finite: {expr}"
                )
            self.terms_memo[key] = terms
        return self.terms_memo[key]

    def _terms(self, expr: Sym) -> list:
        kind = expr.kind
        if kind in ("const", "coord"):
            return []
        if kind == "var":
            return [LinearTerm()] if expr.name == self.var else []

        da = self.terms(expr.args[0])
        if kind == "add":
            return da + self.terms(expr.args[1])
        if kind == "mul":
            a, b = expr.args
            db = self.terms(b)
            out = self.scale(da, self.value(b)) if da else []
            if db:
                out = out + self.scale(db, self.value(a))
            return out
        if not da:
            return []
        if kind == "pow":
            return self.scale(da, _power_derivative(self.value(expr.args[0]), expr.value))
        if kind == "lap":
            radial = self.left(da, self.mapping.lap_r)
            angular = self.scale(self.right(da, self.mapping.Lt), self.mapping.inv_r2)
            return radial + angular
        if kind == "dr":
            return self.left(da, self.mapping.D)
        if kind == "dt":
            return self.right(da, self.mapping.Dt)
        return self.scale(da, _UNARY_DERIVATIVE[kind](self.value(expr.args[0])))


def differentiate(expr: Sym, var: str, ctx: SymContext) -> Jacobian:
    """
    Exact derivative of ``expr`` with respect to the variable ``var``.

    The result is a linear operator (`Jacobian`). If ``expr`` does not depend
    on ``var`` the operator has no terms (the zero operator). Derivatives with
    respect to scalar variables are collapsed to a single pointwise term
    holding ∂expr/∂var on the grid.

    Raises:
    -------
    SymbolicError
        No mapping bound, a variable without a value, or a node whose
        value or derivative is not finite at the current values.
    """
    mapping = _require_map(ctx)
    if not expr.depends_on(var):
        return Jacobian(var=var, terms=(), scalar=var in ctx.scalars)

    terms = _Differentiator(var, ctx).terms(expr)
    if var in ctx.scalars:
        ones = jnp.ones(mapping.shape)
        coef = sum((t.apply(ones) for t in terms), jnp.zeros(mapping.shape))
        return Jacobian(var=var, terms=(LinearTerm(coef=coef),), scalar=True)
    return Jacobian(var=var, terms=tuple(terms), scalar=False)


# ============================================================================
# Symbolic (stateful front end)
# ============================================================================


class Symbolic:
    """
    Variable registry and value store for symbolic equations.

    Example:
    --------
    >>> S = Symbolic()
    >>> S.set_map(grid)
    >>> phi = S.register_variable("Phi")
    >>> lam = S.register_variable("Lambda", scalar=True)
    >>> eq = lap(phi) - lam * phi
    >>> S.set_value("Phi", grid.r**2)
    >>> S.set_value("Lambda", 1.0)
    >>> residual = S.evaluate(eq)
    >>> J = S.differentiate(eq, "Phi")
    """

    def __init__(self, mapping: Mapping | None = None):
        self._map: Mapping | None = None
        self._scalar: dict[str, bool] = {}
        self._values: dict[str, Array] = {}
        if mapping is not None:
            self.set_map(mapping)

    @property
    def mapping(self) -> Mapping | None:
        return self._map

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(self._scalar)

    def set_map(self, mapping: Mapping) -> None:
        """
        Bind the engine to a mapping.

        Rebinding (e.g. after `Mapping.remap`) is allowed as long as the grid
        shape is unchanged.
        """
        if self._map is not None and self._scalar and mapping.shape != self._map.shape:
            raise ConfigurationError(
                f"Cannot rebind variables from grid shape {self._map.shape} to {mapping.shape}"
            )
        self._map = mapping

    def register_variable(self, name: str, scalar: bool = False) -> Sym:
        """
        Register a new unknown and return its expression handle.

        Parameters:
        -----------
        name : str
            Unique variable name.
        scalar : bool
            True for a single number (value shape (1, 1)), False for a grid
            field (value shape (nr, nt)).

        Raises:
        -------
        SymbolicError
            No mapping bound yet, empty name, or name already registered.
        """
        if self._map is None:
            raise SymbolicError("set_map() must be called before registering variables")
        if not isinstance(name, str) or not name:
            raise SymbolicError(f"Variable names must be non-empty strings, got {name!r}")
        if name in self._scalar:
            raise SymbolicError(f"Variable {name!r} is already registered")
        self._scalar[name] = bool(scalar)
        return Sym("var", name=name)

    def var(self, name: str) -> Sym:
        """Handle of an already registered variable."""
        if name not in self._scalar:
            raise SymbolicError(f"Variable {name!r} is not registered")
        return Sym("var", name=name)

    @property
    def r(self) -> Sym:
        """Radial coordinate."""
        return Sym("coord", name=COORDINATES[0])

    @property
    def theta(self) -> Sym:
        """Colatitude."""
        return Sym("coord", name=COORDINATES[1])

    def expected_shape(self, name: str) -> tuple[int, int]:
        if name not in self._scalar:
            raise SymbolicError(f"Variable {name!r} is not registered")
        return (1, 1) if self._scalar[name] else self._map.shape

    def set_value(self, name: str, value) -> None:
        """
        Store the current value of a registered variable.

        Raises:
        -------
        SymbolicError
            If ``name`` is not registered.
        ConfigurationError
            If the value shape is not (nr, nt) for a field or (1, 1) for a
            scalar.
        """
        expected = self.expected_shape(name)
        value = as_field(value)
        if value.shape != expected:
            raise ConfigurationError(
                f"Value for {name!r} has shape {value.shape}, expected {expected}"
            )
        self._values[name] = value

    def get_value(self, name: str) -> Array:
        self.expected_shape(name)
        return self.context().value(name)

    def context(self) -> SymContext:
        """Snapshot of the mapping and the current values."""
        scalars = frozenset(n for n, s in self._scalar.items() if s)
        return SymContext(mapping=self._map, values=dict(self._values), scalars=scalars)

    def _check_expr(self, expr: Sym) -> None:
        unknown = expr.variables() - set(self._scalar)
        if unknown:
            raise SymbolicError(f"Expression uses unregistered variable(s) {sorted(unknown)}")

    def evaluate(self, expr: Sym) -> Float[Array, "n m"]:
        """Value of ``expr`` at the current values."""
        self._check_expr(expr)
        return evaluate(expr, self.context())

    def differentiate(self, expr: Sym, var: str | Sym) -> Jacobian:
        """Exact derivative of ``expr`` with respect to a registered variable."""
        name = var.name if isinstance(var, Sym) else var
        self.expected_shape(name)
        self._check_expr(expr)
        return differentiate(expr, name, self.context())

    def add(self, expr: Sym, solver, eq: str, var: str | Sym) -> Jacobian:
        """
        Push the Jacobian of ``expr`` with respect to ``var`` into the
        equation ``eq`` of a `BlockSolver`.
        """
        jac = self.differentiate(expr, var)
        solver.add(eq, jac.var, jac)
        return jac
