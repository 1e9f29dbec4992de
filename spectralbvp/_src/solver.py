"""
Block Equation Solver
=====================

Assembles one linear system from per-variable equations and solves it for
the Newton corrections.

Protocol (one Newton iteration):
--------------------------------
    op = BlockSolver(ndomains=1, nvar=2)       # once
    op.regvar("u"); op.regvar("k")              # once
    op.set_nr(grid.npts)                        # once

    op.reset()                                  # every iteration
    op.add_l("u", "u", 1.0, grid.D @ grid.D)    # bulk Jacobian blocks
    op.bc_bot2_add_d(0, "u", "u", 1.0)          # boundary rows
    op.set_rhs("u", rhs_u)                      # one RHS per equation
    ...
    sol = op.solve()
    du = op.get_var("u")

Layout:
-------
    • Every unknown has nt columns.
    • Its rows come from the RHS of its equation: either one row per radial
      point (nr rows, domain n owning npts[n] of them) or one row per domain.
    • Unknown ``x`` and equation ``x`` share the same layout, so the system
      is square by construction.

Boundary rows:
--------------
    The first row of a domain block is its bottom, the last row its top.
    A boundary entry replaces the whole bulk row it targets; several entries
    for the same row add up. The variable side is read from

        bot2, top1 : the same domain n
        bot1       : the top of domain n - 1
        top2       : the bottom of domain n + 1

    Value entries (``_d``) weight the variable at that boundary, derivative
    entries (``_l``) weight an operator row applied to the variable's domain
    block, ``_r`` entries mix colatitude columns.
"""

import equinox as eqx
import jax.numpy as jnp
import jax.scipy.linalg as jsl
import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla
from jaxtyping import Array, Float
from loguru import logger

from .errors import ConfigurationError, SingularSystemError, SolveError
from .field import as_field
from .symbolic.jacobian import DenseTerm, Jacobian, LinearTerm, term_matrix

MODES = ("full", "sparse")
_POSITIONS = {
    # name: (target row, source domain offset, source row)
    "bot1": ("bot", -1, "top"),
    "bot2": ("bot", 0, "bot"),
    "top1": ("top", 0, "top"),
    "top2": ("top", 1, "bot"),
}


class _BoundaryEntry(eqx.Module):
    where: str
    n: int
    eq: str
    var: str
    d: Array
    L: Array | None
    R: Array | None


class _Layout(eqx.Module):
    """Row layout of one unknown: rows per domain and their starts."""

    rows: tuple[int, ...]
    starts: tuple[int, ...]
    per_domain: bool

    @property
    def nrows(self) -> int:
        return sum(self.rows)

    def local_row(self, n: int, position: str) -> int:
        return self.starts[n] + (0 if position == "bot" else self.rows[n] - 1)


class LinearSystem(eqx.Module):
    """
    Assembled system A x = b with its variable layout.

    Unknown ``names[v]`` occupies ``x[offsets[v] : offsets[v] + size]`` with
    row-major (row, column) ordering of its (rows, nt) array.
    """

    A: np.ndarray
    b: np.ndarray
    names: tuple[str, ...]
    offsets: tuple[int, ...]
    shapes: tuple[tuple[int, int], ...]

    @property
    def size(self) -> int:
        return self.A.shape[0]

    def index(self, name: str, i: int, j: int = 0) -> int:
        """Global index of entry (i, j) of unknown (or equation) ``name``."""
        v = self.names.index(name)
        rows, nt = self.shapes[v]
        return self.offsets[v] + (i % rows) * nt + j

    def block(self, eq: str, var: str) -> np.ndarray:
        """Sub-matrix coupling equation ``eq`` to unknown ``var``."""
        e, v = self.names.index(eq), self.names.index(var)
        ne = self.shapes[e][0] * self.shapes[e][1]
        nv = self.shapes[v][0] * self.shapes[v][1]
        return self.A[self.offsets[e] : self.offsets[e] + ne, self.offsets[v] : self.offsets[v] + nv]


class Solution(eqx.Module):
    """Corrections returned by `BlockSolver.solve`, one array per unknown."""

    values: dict

    def __getitem__(self, name: str) -> Array:
        try:
            return self.values[name]
        except KeyError:
            raise ConfigurationError(f"No unknown named {name!r}") from None

    def __contains__(self, name: str) -> bool:
        return name in self.values


class BlockSolver:
    """
    Block linear solver for coupled spectral equations.

    Parameters:
    -----------
    ndomains, nvar : int, optional
        Passed to `init` when given.
    mode : str
        'full' (dense LU) or 'sparse' (SuperLU).
    """

    def __init__(self, ndomains: int | None = None, nvar: int | None = None, mode: str = "full"):
        self.ndomains = 0
        self.nvar = 0
        self.mode = mode
        self._names: list[str] = []
        self._npts: tuple[int, ...] | None = None
        self.reset()
        if ndomains is not None and nvar is not None:
            self.init(ndomains, nvar, mode)

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------

    def init(self, ndomains: int, nvar: int, mode: str = "full") -> None:
        """Fix the number of domains, of unknowns, and the solve mode."""
        if ndomains < 1:
            raise ConfigurationError(f"ndomains must be ≥ 1, got {ndomains}")
        if nvar < 1:
            raise ConfigurationError(f"nvar must be ≥ 1, got {nvar}")
        if mode not in MODES:
            raise ConfigurationError(f"mode must be one of {MODES}, got {mode!r}")
        self.ndomains = int(ndomains)
        self.nvar = int(nvar)
        self.mode = mode
        self._names = []
        self._npts = None
        self.reset()

    def regvar(self, name: str) -> None:
        """Declare an unknown (and the equation of the same name)."""
        if self.nvar == 0:
            raise ConfigurationError("init() must be called before regvar()")
        if name in self._names:
            raise ConfigurationError(f"Unknown {name!r} is already registered")
        if len(self._names) >= self.nvar:
            raise ConfigurationError(f"All {self.nvar} unknowns are already registered")
        self._names.append(name)

    def set_nr(self, npts) -> None:
        """Radial rows of each domain (typically ``mapping.npts``)."""
        npts = tuple(int(n) for n in np.atleast_1d(npts))
        if len(npts) != self.ndomains:
            raise ConfigurationError(f"Expected {self.ndomains} row counts, got {len(npts)}")
        if any(n < 1 for n in npts):
            raise ConfigurationError(f"Row counts must be ≥ 1, got {npts}")
        self._npts = npts

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(self._names)

    @property
    def nr(self) -> int:
        return sum(self._npts)

    def reset(self) -> None:
        """Drop every contribution, RHS, and the previous solution."""
        self._bulk: list[tuple[str, str, LinearTerm | DenseTerm]] = []
        self._bc: list[_BoundaryEntry] = []
        self._rhs: dict[str, Array] = {}
        self._solution: Solution | None = None

    def _check_names(self, *names: str) -> None:
        for name in names:
            if name not in self._names:
                raise ConfigurationError(f"Unknown {name!r} is not registered")

    # ------------------------------------------------------------------
    # Bulk contributions
    # ------------------------------------------------------------------

    def add_term(self, eq: str, var: str, term: LinearTerm | DenseTerm) -> None:
        self._check_names(eq, var)
        self._bulk.append((eq, var, term))

    def add_d(self, eq: str, var: str, d) -> None:
        """δeq += d ⊙ δvar."""
        self.add_term(eq, var, LinearTerm(coef=as_field(d)))

    def add_l(self, eq: str, var: str, d, L: Array) -> None:
        """δeq += d ⊙ (L @ δvar)."""
        self.add_term(eq, var, LinearTerm(coef=as_field(d), L=jnp.asarray(L)))

    def add_r(self, eq: str, var: str, d, R: Array) -> None:
        """δeq += d ⊙ (δvar @ R)."""
        self.add_term(eq, var, LinearTerm(coef=as_field(d), R=jnp.asarray(R)))

    def add_lr(self, eq: str, var: str, d, L: Array, R: Array) -> None:
        """δeq += d ⊙ (L @ δvar @ R)."""
        self.add_term(eq, var, LinearTerm(coef=as_field(d), L=jnp.asarray(L), R=jnp.asarray(R)))

    def add_li(self, eq: str, var: str, d, L: Array, I) -> None:
        """δeq += d ⊙ (L @ (I ⊙ δvar))."""
        self.add_term(eq, var, LinearTerm(coef=as_field(d), L=jnp.asarray(L), I=as_field(I)))

    def add_lri(self, eq: str, var: str, d, L: Array, R: Array, I) -> None:
        """δeq += d ⊙ (L @ (I ⊙ δvar) @ R)."""
        self.add_term(
            eq, var, LinearTerm(coef=as_field(d), L=jnp.asarray(L), I=as_field(I), R=jnp.asarray(R))
        )

    def add_block(self, eq: str, var: str, A: Array) -> None:
        """vec(δeq) += A @ vec(δvar), A dense over row-major flattened arrays."""
        A = jnp.asarray(A)
        self.add_term(eq, var, DenseTerm(A, (A.shape[0], 1)))

    def add(self, eq: str, var: str, jacobian: Jacobian) -> None:
        """Add every term of a symbolic Jacobian (no-op for the zero operator)."""
        self._check_names(eq, var)
        for term in jacobian.terms:
            self.add_term(eq, var, term)

    # ------------------------------------------------------------------
    # Boundary rows
    # ------------------------------------------------------------------

    def bc_add(self, where: str, n: int, eq: str, var: str, d, L=None, R=None) -> None:
        """
        Add a boundary entry.

        Parameters:
        -----------
        where : str
            'bot1', 'bot2', 'top1' or 'top2'.
        n : int
            Domain whose bottom/top row of equation ``eq`` is replaced.
        d : array [1, nt] (broadcast)
            Weight per colatitude column.
        L : array [1, npts_m], optional
            Operator row applied to the variable's block in the source domain.
        R : array [nt, nt], optional
            Right-acting colatitude operator.
        """
        if where not in _POSITIONS:
            raise ConfigurationError(f"Unknown boundary position {where!r}")
        self._check_names(eq, var)
        source = n + _POSITIONS[where][1]
        if not 0 <= n < self.ndomains or not 0 <= source < self.ndomains:
            raise ConfigurationError(
                f"{where} on domain {n} needs domain {source}, have {self.ndomains} domain(s)"
            )
        d = as_field(d)
        if d.shape[0] != 1:
            raise ConfigurationError(f"Boundary weights are single rows, got shape {d.shape}")
        L = None if L is None else as_field(jnp.atleast_2d(L))
        R = None if R is None else jnp.asarray(R)
        self._bc.append(_BoundaryEntry(where, int(n), eq, var, d, L, R))

    def bc_bot1_add_d(self, n, eq, var, d):
        self.bc_add("bot1", n, eq, var, d)

    def bc_bot1_add_l(self, n, eq, var, d, L):
        self.bc_add("bot1", n, eq, var, d, L=L)

    def bc_bot1_add_r(self, n, eq, var, d, R):
        self.bc_add("bot1", n, eq, var, d, R=R)

    def bc_bot2_add_d(self, n, eq, var, d):
        self.bc_add("bot2", n, eq, var, d)

    def bc_bot2_add_l(self, n, eq, var, d, L):
        self.bc_add("bot2", n, eq, var, d, L=L)

    def bc_bot2_add_r(self, n, eq, var, d, R):
        self.bc_add("bot2", n, eq, var, d, R=R)

    def bc_top1_add_d(self, n, eq, var, d):
        self.bc_add("top1", n, eq, var, d)

    def bc_top1_add_l(self, n, eq, var, d, L):
        self.bc_add("top1", n, eq, var, d, L=L)

    def bc_top1_add_r(self, n, eq, var, d, R):
        self.bc_add("top1", n, eq, var, d, R=R)

    def bc_top2_add_d(self, n, eq, var, d):
        self.bc_add("top2", n, eq, var, d)

    def bc_top2_add_l(self, n, eq, var, d, L):
        self.bc_add("top2", n, eq, var, d, L=L)

    def bc_top2_add_r(self, n, eq, var, d, R):
        self.bc_add("top2", n, eq, var, d, R=R)

    # ------------------------------------------------------------------
    # RHS
    # ------------------------------------------------------------------

    def set_rhs(self, eq: str, rhs) -> None:
        """Right-hand side of equation ``eq``: (nr, nt) or (ndomains, nt)."""
        self._check_names(eq)
        self._rhs[eq] = as_field(rhs)

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------

    def _layouts(self) -> tuple[dict[str, _Layout], int]:
        if self._npts is None:
            raise ConfigurationError("set_nr() must be called before solving")
        missing = [name for name in self._names if name not in self._rhs]
        if len(missing) == len(self._names) and not self._bulk and not self._bc:
            raise SolveError("Empty system: nothing was registered since reset()")
        if missing:
            raise ConfigurationError(f"No right-hand side for {missing}")

        ncols = {rhs.shape[1] for rhs in self._rhs.values()}
        if len(ncols) != 1:
            raise ConfigurationError(f"Right-hand sides have different column counts {sorted(ncols)}")
        nt = ncols.pop()

        layouts = {}
        for name in self._names:
            nrows = self._rhs[name].shape[0]
            if nrows == self.nr:
                rows, per_domain = self._npts, False
            elif nrows == self.ndomains:
                rows, per_domain = (1,) * self.ndomains, True
            else:
                raise ConfigurationError(
                    f"RHS of {name!r} has {nrows} rows; expected {self.nr} or {self.ndomains}"
                )
            starts = tuple(int(s) for s in np.cumsum((0,) + rows[:-1]))
            layouts[name] = _Layout(rows, starts, per_domain)
        return layouts, nt

    def _prolongation(self) -> np.ndarray:
        """(nr, ndomains) matrix copying each domain value to its rows."""
        P = np.zeros((self.nr, self.ndomains))
        for n, (start, npt) in enumerate(zip(np.cumsum((0,) + self._npts[:-1]), self._npts)):
            P[start : start + npt, n] = 1.0
        return P

    def _bulk_block(self, eq: str, var: str, term, layouts, nt) -> np.ndarray:
        le, lv = layouts[eq], layouts[var]
        n_out, n_in = le.nrows, lv.nrows
        if isinstance(term, DenseTerm):
            A = np.asarray(term.A)
            if A.shape != (n_out * nt, n_in * nt):
                raise ConfigurationError(
                    f"Dense block for ({eq!r}, {var!r}) has shape {A.shape}, "
                    f"expected {(n_out * nt, n_in * nt)}"
                )
            return A
        n_k = n_out if term.L is None else term.L.shape[-1]
        if term.L is not None and term.L.shape[0] != n_out:
            raise ConfigurationError(
                f"Operator for ({eq!r}, {var!r}) has {term.L.shape[0]} rows, equation has {n_out}"
            )
        P = None
        if n_k != n_in:
            if lv.per_domain and n_k == self.nr:
                P = self._prolongation()
            else:
                raise ConfigurationError(
                    f"Cannot couple equation {eq!r} ({n_out} rows) to {var!r} ({n_in} rows)"
                )
        try:
            block = term_matrix(term.coef, term.L, term.I, term.R, n_out, n_in, nt, P)
        except ValueError as err:
            raise ConfigurationError(f"Bad coefficient shapes for ({eq!r}, {var!r}): {err}") from err
        return np.asarray(block)

    def _bc_block(self, entry: _BoundaryEntry, layouts, nt):
        """Rows, columns and values of one boundary entry."""
        target, offset, source_pos = _POSITIONS[entry.where]
        le, lv = layouts[entry.eq], layouts[entry.var]
        m = entry.n + offset
        row = le.local_row(entry.n, target)

        d = np.atleast_2d(np.asarray(entry.d))
        if d.shape[0] != 1 or d.shape[1] not in (1, nt):
            raise ConfigurationError(
                f"{entry.where} weight for {entry.eq!r} has shape {d.shape}, expected (1, {nt})"
            )
        d = np.broadcast_to(d, (1, nt))[0]
        if entry.L is None:
            k_rows = np.array([lv.local_row(m, source_pos)])
            Lrow = np.ones(1)
        else:
            Lrow = np.asarray(entry.L)[0]
            if Lrow.shape[0] != lv.rows[m]:
                raise ConfigurationError(
                    f"{entry.where} operator row for {entry.var!r} has {Lrow.shape[0]} entries, "
                    f"domain {m} has {lv.rows[m]} rows"
                )
            k_rows = lv.starts[m] + np.arange(lv.rows[m])
        R = np.eye(nt) if entry.R is None else np.asarray(entry.R)
        if R.shape != (nt, nt):
            raise ConfigurationError(
                f"{entry.where} angular operator for {entry.var!r} has shape {R.shape}, "
                f"expected ({nt}, {nt})"
            )

        # W[j, k, l] = d[j] L[k] R[l, j]
        W = np.einsum("j,k,lj->jkl", d, Lrow, R).reshape(nt, -1)
        rows = row * nt + np.arange(nt)
        cols = (k_rows[:, None] * nt + np.arange(nt)[None, :]).reshape(-1)
        return rows, cols, W

    def assemble(self) -> LinearSystem:
        """
        Build A x = b from the contributions registered since `reset`.

        Raises:
        -------
        ConfigurationError
            Missing RHS, inconsistent shapes.
        SolveError
            Empty or non-finite system.
        """
        layouts, nt = self._layouts()
        names = tuple(self._names)
        sizes = [layouts[name].nrows * nt for name in names]
        offsets = tuple(int(s) for s in np.cumsum([0] + sizes[:-1]))
        off = dict(zip(names, offsets))
        size = int(sum(sizes))

        A = np.zeros((size, size))
        b = np.concatenate([np.asarray(self._rhs[name]).reshape(-1) for name in names])

        for eq, var, term in self._bulk:
            block = self._bulk_block(eq, var, term, layouts, nt)
            A[off[eq] : off[eq] + block.shape[0], off[var] : off[var] + block.shape[1]] += block

        replaced = set()
        for entry in self._bc:
            row = layouts[entry.eq].local_row(entry.n, _POSITIONS[entry.where][0])
            replaced.add((entry.eq, row))
        for eq, row in replaced:
            start = off[eq] + row * nt
            A[start : start + nt, :] = 0.0

        for entry in self._bc:
            rows, cols, W = self._bc_block(entry, layouts, nt)
            A[np.ix_(off[entry.eq] + rows, off[entry.var] + cols)] += W

        if not (np.all(np.isfinite(A)) and np.all(np.isfinite(b))):
            bad = np.flatnonzero(~(np.isfinite(A).all(axis=1) & np.isfinite(b)))
            eqs = sorted({names[np.searchsorted(offsets, i, side="right") - 1] for i in bad})
            raise SolveError(f"Non-finite entries in the assembled system, equation(s) {eqs}")

        shapes = tuple((layouts[name].nrows, nt) for name in names)
        logger.debug(
            f"Assembled {size}x{size} system: {len(self._bulk)} bulk term(s), "
            f"{len(self._bc)} boundary entries, {len(replaced)} replaced row(s)"
        )
        return LinearSystem(A=A, b=b, names=names, offsets=offsets, shapes=shapes)

    # ------------------------------------------------------------------
    # Solve
    # ------------------------------------------------------------------

    def _solve_full(self, A: np.ndarray, b: np.ndarray) -> np.ndarray:
        lu, piv = jsl.lu_factor(jnp.asarray(A))
        pivots = jnp.abs(jnp.diag(lu))
        eps = jnp.finfo(lu.dtype).eps
        if float(pivots.min()) <= float(eps * A.shape[0] * pivots.max()):
            raise SingularSystemError(
                f"Singular system: smallest LU pivot {float(pivots.min()):.3e}, "
                f"largest {float(pivots.max()):.3e}"
            )
        return np.asarray(jsl.lu_solve((lu, piv), jnp.asarray(b)))

    def _solve_sparse(self, A: np.ndarray, b: np.ndarray) -> np.ndarray:
        try:
            lu = spla.splu(sp.csc_matrix(A))
        except RuntimeError as err:
            raise SingularSystemError(f"Singular system: {err}") from err
        return lu.solve(b)

    def solve(self) -> Solution:
        """
        Assemble and solve the system.

        Returns:
        --------
        Solution
            One correction array per unknown, shaped (rows, nt).

        Raises:
        -------
        SingularSystemError
            If the system is rank deficient.
        SolveError
            If the system is empty or not finite.
        """
        system = self.assemble()
        if system.A.shape[0] != system.A.shape[1]:
            raise SolveError(f"System is not square: {system.A.shape}")
        if self.mode == "sparse":
            x = self._solve_sparse(system.A, system.b)
        else:
            x = self._solve_full(system.A, system.b)
        if not np.all(np.isfinite(x)):
            raise SingularSystemError("Solve produced non-finite corrections")

        values = {}
        for name, start, shape in zip(system.names, system.offsets, system.shapes):
            n = shape[0] * shape[1]
            values[name] = jnp.asarray(x[start : start + n].reshape(shape))
        self._solution = Solution(values=values)
        return self._solution

    def get_var(self, name: str) -> Float[Array, "rows nt"]:
        """Correction for unknown ``name`` from the last `solve`."""
        self._check_names(name)
        if self._solution is None:
            raise SolveError("No solution available: call solve() after reset()")
        return self._solution[name]
