from spectralbvp._src.chebyshev import ChebyshevGrid1D
from spectralbvp._src.errors import (
    ConfigurationError,
    SingularSystemError,
    SolveError,
    SpectralBVPError,
    SymbolicError,
)
from spectralbvp._src.field import as_field, broadcast_field, max_abs, row, setrow
from spectralbvp._src.mapping import Mapping, MappingConfig
from spectralbvp._src.newton import NewtonRaphson, NewtonResult, NewtonStatus
from spectralbvp._src.solver import BlockSolver, LinearSystem, Solution
from spectralbvp._src.spherical import LegendreGrid
from spectralbvp._src.symbolic import (
    DenseTerm,
    Jacobian,
    LinearTerm,
    Sym,
    SymContext,
    Symbolic,
    abs,
    cos,
    differentiate,
    dr,
    dt,
    evaluate,
    exp,
    lap,
    log,
    pow,
    sin,
    sqrt,
    tan,
)

__all__ = [
    # Grids (radial Chebyshev, colatitude Legendre)
    "ChebyshevGrid1D",
    "LegendreGrid",
    "Mapping",
    "MappingConfig",
    # Fields
    "as_field",
    "row",
    "setrow",
    "broadcast_field",
    "max_abs",
    # Symbolic engine
    "Sym",
    "Symbolic",
    "SymContext",
    "evaluate",
    "differentiate",
    "Jacobian",
    "LinearTerm",
    "DenseTerm",
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
    # Block solver
    "BlockSolver",
    "LinearSystem",
    "Solution",
    # Newton driver
    "NewtonRaphson",
    "NewtonResult",
    "NewtonStatus",
    # Errors
    "SpectralBVPError",
    "ConfigurationError",
    "SymbolicError",
    "SolveError",
    "SingularSystemError",
]
