"""
Symbolic equations with exact structural Jacobians.

Classes exported:
    Sym, Symbolic, SymContext
    Jacobian, LinearTerm, DenseTerm
"""

from .engine import Symbolic, SymContext, differentiate, evaluate
from .expr import Sym, abs, cos, dr, dt, exp, lap, log, pow, sin, sqrt, tan
from .jacobian import DenseTerm, Jacobian, LinearTerm, term_matrix

__all__ = [
    "Sym",
    "Symbolic",
    "SymContext",
    "evaluate",
    "differentiate",
    "Jacobian",
    "LinearTerm",
    "DenseTerm",
    "term_matrix",
    "pow",
    "sqrt",
    "abs",
    "sin",
    "cos",
    "tan",
    "exp",
    "log",
    "lap",
    "dr",
    "dt",
]
