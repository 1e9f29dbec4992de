"""
Symbolic Expression Nodes
=========================

An expression is an immutable tree of `Sym` nodes. Each node carries a tag
(``kind``) from a closed set, its children, and the constant payload the tag
needs (a number for ``const`` and ``pow``, a name for ``var`` and ``coord``).

    kind     children   payload
    -------  ---------  --------------------------
    const    -          value
    var      -          name of a registered variable
    coord    -          "r" or "theta"
    add      a, b       -
    mul      a, b       -
    pow      a          value (exponent)
    abs, sin, cos, tan, exp, log
             a          -
    lap      a          -   (spherical Laplacian)
    dr       a          -   (∂/∂r)
    dt       a          -   (∂/∂θ)

Nested powers are merged as they are built: ``pow(pow(a, p), q)`` becomes
``pow(a, p*q)``, keeping |a| where the inner power dropped the sign, and
``a * a`` on one node becomes ``pow(a, 2)``. So ``pow(sqrt(h * h), n)`` is
stored as |h|ⁿ. Building an expression never evaluates it: the same tree is
re-evaluated at every Newton iteration with the values current at that time.

Example:
--------
>>> S = Symbolic(mapping)
>>> phi = S.register_variable("Phi")
>>> eq = lap(phi) - pow(sqrt(phi * phi), 1.5)
"""

import numbers

import equinox as eqx

from ..errors import SymbolicError

KINDS = (
    "const",
    "var",
    "coord",
    "add",
    "mul",
    "pow",
    "abs",
    "sin",
    "cos",
    "tan",
    "exp",
    "log",
    "lap",
    "dr",
    "dt",
)
COORDINATES = ("r", "theta")


def _as_sym(other):
    if isinstance(other, Sym):
        return other
    if isinstance(other, numbers.Real):
        return Sym("const", value=float(other))
    return None


class Sym(eqx.Module):
    """
    One node of a symbolic expression.

    Attributes:
    -----------
        kind : str
            Node tag, one of `KINDS`.
        args : tuple[Sym, ...]
            Child expressions.
        value : float
            Constant value (``const``) or exponent (``pow``).
        name : str
            Variable name (``var``) or coordinate name (``coord``).
    """

    kind: str
    args: tuple = ()
    value: float = 0.0
    name: str = ""

    def __check_init__(self):
        if self.kind not in KINDS:
            raise SymbolicError(f"Unknown expression kind {self.kind!r}")

    # ------------------------------------------------------------------
    # Arithmetic
    # ------------------------------------------------------------------

    def __add__(self, other):
        other = _as_sym(other)
        if other is None:
            return NotImplemented
        if self.kind == "const" and other.kind == "const":
            return Sym("const", value=self.value + other.value)
        return Sym("add", (self, other))

    def __radd__(self, other):
        other = _as_sym(other)
        if other is None:
            return NotImplemented
        return other + self

    def __neg__(self):
        if self.kind == "const":
            return Sym("const", value=-self.value)
        return Sym("mul", (Sym("const", value=-1.0), self))

    def __pos__(self):
        return self

    def __sub__(self, other):
        other = _as_sym(other)
        if other is None:
            return NotImplemented
        return self + (-other)

    def __rsub__(self, other):
        other = _as_sym(other)
        if other is None:
            return NotImplemented
        return other + (-self)

    def __mul__(self, other):
        other = _as_sym(other)
        if other is None:
            return NotImplemented
        if self.kind == "const" and other.kind == "const":
            return Sym("const", value=self.value * other.value)
        if other is self:
            return pow(self, 2)
        return Sym("mul", (self, other))

    def __rmul__(self, other):
        other = _as_sym(other)
        if other is None:
            return NotImplemented
        return other * self

    def __truediv__(self, other):
        other = _as_sym(other)
        if other is None:
            return NotImplemented
        return self * pow(other, -1.0)

    def __rtruediv__(self, other):
        other = _as_sym(other)
        if other is None:
            return NotImplemented
        return other * pow(self, -1.0)

    def __pow__(self, exponent):
        return pow(self, exponent)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def variables(self) -> frozenset[str]:
        """Names of the variables referenced by this expression."""
        if self.kind == "var":
            return frozenset((self.name,))
        names = frozenset()
        for arg in self.args:
            names = names | arg.variables()
        return names

    def depends_on(self, name: str) -> bool:
        return name in self.variables()

    def __str__(self):
        if self.kind == "const":
            return f"{self.value:g}"
        if self.kind in ("var", "coord"):
            return self.name
        if self.kind == "add":
            return f"({self.args[0]} + {self.args[1]})"
        if self.kind == "mul":
            return f"{self.args[0]}*{self.args[1]}"
        if self.kind == "pow":
            return f"{self.args[0]}^{self.value:g}"
        return f"{self.kind}({self.args[0]})"


# ============================================================================
# Functions
# ============================================================================


def _unary(kind: str, a) -> Sym:
    a = _as_sym(a)
    if a is None:
        raise TypeError(f"{kind}() expects an expression or a number")
    return Sym(kind, (a,))


def _is_integer(p: float) -> bool:
    return float(p).is_integer()


def pow(a, exponent) -> Sym:
    """
    a ** exponent for a numeric exponent.

    Non-integer exponents act on |a| so the result stays real. A power of a
    power is merged into one node:

        (aᵖ)^q = a^(pq)       p, q integers
        (aᵖ)^q = |a|^(pq)     otherwise
    """
    if not isinstance(exponent, numbers.Real):
        raise TypeError(f"Exponent must be a number, got {type(exponent).__name__}")
    a = _as_sym(a)
    if a is None:
        raise TypeError("pow() expects an expression or a number")
    exponent = float(exponent)
    if a.kind == "pow":
        p = a.value * exponent
        base = a.args[0]
        if not (_is_integer(a.value) and _is_integer(exponent)) and _is_integer(p) and p % 2:
            base = abs(base)
        return pow(base, p)
    if a.kind == "abs" and not (_is_integer(exponent) and exponent % 2):
        # |a|^p == a^p under the |·| policy, and for even p
        a = a.args[0]
    if exponent == 1.0:
        return a
    if exponent == 0.0:
        return Sym("const", value=1.0)
    return Sym("pow", (a,), value=exponent)


def sqrt(a) -> Sym:
    """√|a|."""
    return pow(a, 0.5)


def abs(a) -> Sym:
    """|a|."""
    a = _unary("abs", a)
    if a.args[0].kind == "abs":
        return a.args[0]
    return a


def sin(a) -> Sym:
    return _unary("sin", a)


def cos(a) -> Sym:
    return _unary("cos", a)


def tan(a) -> Sym:
    return _unary("tan", a)


def exp(a) -> Sym:
    return _unary("exp", a)


def log(a) -> Sym:
    """log|a|."""
    return _unary("log", a)


def lap(a) -> Sym:
    """Spherical Laplacian ∂²a/∂r² + (2/r)∂a/∂r + (1/r²)Lθ a."""
    return _unary("lap", a)


def dr(a) -> Sym:
    """Radial derivative ∂a/∂r."""
    return _unary("dr", a)


def dt(a) -> Sym:
    """Colatitude derivative ∂a/∂θ (equatorially symmetric fields)."""
    return _unary("dt", a)
