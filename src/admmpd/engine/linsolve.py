"""Inner linear solvers for the ADMM global step.

Every strategy solves ``operators[axis] x[:, axis] = b[:, axis]`` for the
three spatial axes of a :class:`~admmpd.engine.system.LinearSystem` and owns
its own scratch memory, so the persistent :class:`SolverData` never carries
solver temporaries.

- :class:`DirectSolver` caches a sparse factorization per system key.
- :class:`ConjugateGradientSolver` runs Jacobi-preconditioned CG and returns
  the best iterate when the iteration cap is hit.
- :class:`GaussSeidelSolver` sweeps a graph coloring of the operator so that
  every row of a color can be updated at once.
- :class:`AutoSolver` picks direct for unconstrained systems and CG otherwise.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Hashable, List, Optional, Tuple

import numpy as np
from scipy import sparse
from scipy.sparse.linalg import splu

from .coloring import ColoringCache
from .errors import ConfigurationError
from .params import Options
from .system import LinearSystem

logger = logging.getLogger(__name__)

SYMMETRY_TOL = 1e-10


@dataclass
class SolveStats:
    iterations: int = 0
    residual: float = 0.0
    converged: bool = True

    def merge(self, other: "SolveStats") -> "SolveStats":
        return SolveStats(
            iterations=max(self.iterations, other.iterations),
            residual=max(self.residual, other.residual),
            converged=self.converged and other.converged,
        )


def relative_residual(A: sparse.spmatrix, x: np.ndarray, b: np.ndarray) -> float:
    bnorm = float(np.linalg.norm(b))
    r = float(np.linalg.norm(b - A @ x))
    return r / bnorm if bnorm > 0.0 else r


class LinearSolver(ABC):
    name = "base"

    def prepare(self, system: LinearSystem, options: Options) -> None:
        """Precompute per-system data; may raise :class:`ConfigurationError`."""

    @abstractmethod
    def solve(self, system: LinearSystem, b: np.ndarray, x0: np.ndarray, options: Options) -> Tuple[np.ndarray, SolveStats]:
        ...

    def reset(self) -> None:
        """Drop cached factorizations, colorings and scratch."""


# ----- Direct ---------------------------------------------------------------

def factorize_spd(A: sparse.spmatrix):
    """Symmetric-mode sparse LU of ``A``; raises if ``A`` is not SPD.

    With a symmetric fill-reducing ordering and no row pivoting the LU
    factors are ``L`` and ``D L^T``, so a positive pivot diagonal is the
    Cholesky condition.
    """
    A = sparse.csc_matrix(A)
    if A.shape[0] != A.shape[1]:
        raise ConfigurationError(f"system matrix must be square; got {A.shape}")
    scale = float(abs(A).max()) if A.nnz else 0.0
    asym = abs(A - A.T)
    if asym.nnz and float(asym.max()) > SYMMETRY_TOL * max(scale, 1.0):
        raise ConfigurationError("system matrix is not symmetric")
    if np.any(A.diagonal() <= 0.0):
        raise ConfigurationError("system matrix is not positive definite (non-positive diagonal)")
    try:
        lu = splu(
            A,
            permc_spec="MMD_AT_PLUS_A",
            diag_pivot_thresh=0.0,
            options=dict(SymmetricMode=True),
        )
    except RuntimeError as exc:  # exactly singular
        raise ConfigurationError(f"system matrix is not positive definite: {exc}") from exc
    pivots = lu.U.diagonal()
    if not np.all(np.isfinite(pivots)) or np.any(pivots <= 0.0):
        raise ConfigurationError(
            f"system matrix is not positive definite (min pivot {float(np.min(pivots)):.3e})"
        )
    return lu


class DirectSolver(LinearSolver):
    name = "direct"

    def __init__(self):
        self._key: Optional[Hashable] = None
        self._factors: List = []

    def prepare(self, system: LinearSystem, options: Options) -> None:
        if self._key == system.key and self._factors:
            return
        if system.constrained:
            self._factors = [factorize_spd(op) for op in system.operators]
        else:
            lu = factorize_spd(system.operators[0])
            self._factors = [lu, lu, lu]
        self._key = system.key
        logger.debug("factorized %s system (key=%s)", "constrained" if system.constrained else "unconstrained", system.key)

    def solve(self, system, b, x0, options):
        self.prepare(system, options)
        if not system.constrained:
            x = np.asarray(self._factors[0].solve(np.ascontiguousarray(b)))
        else:
            x = np.stack([self._factors[a].solve(np.ascontiguousarray(b[:, a])) for a in range(3)], axis=1)
        res = max(relative_residual(system.operators[a], x[:, a], b[:, a]) for a in range(3))
        return x, SolveStats(iterations=1, residual=res, converged=True)

    def reset(self) -> None:
        self._key = None
        self._factors = []


# ----- Conjugate gradients ----------------------------------------------------

@dataclass
class CGScratch:
    r: np.ndarray = field(default_factory=lambda: np.zeros(0))
    z: np.ndarray = field(default_factory=lambda: np.zeros(0))
    p: np.ndarray = field(default_factory=lambda: np.zeros(0))
    Ap: np.ndarray = field(default_factory=lambda: np.zeros(0))

    def ensure(self, n: int) -> None:
        if self.r.shape != (n,):
            self.r = np.zeros(n)
            self.z = np.zeros(n)
            self.p = np.zeros(n)
            self.Ap = np.zeros(n)


class ConjugateGradientSolver(LinearSolver):
    name = "cg"

    def __init__(self, preconditioner: str = "jacobi"):
        if preconditioner not in ("jacobi", "identity"):
            raise ConfigurationError(f"unknown preconditioner {preconditioner!r}")
        self.preconditioner = preconditioner
        self.scratch = CGScratch()
        self._minv: Dict[Hashable, List[np.ndarray]] = {}

    def prepare(self, system, options):
        if system.key in self._minv:
            return
        minv = []
        for op in system.operators:
            d = op.diagonal()
            if self.preconditioner == "jacobi":
                minv.append(np.where(d > 0.0, 1.0 / np.where(d > 0.0, d, 1.0), 1.0))
            else:
                minv.append(np.ones_like(d))
        self._minv = {system.key: minv}

    def _solve_axis(self, A, minv, b, x, max_iters, tol) -> Tuple[np.ndarray, SolveStats]:
        s = self.scratch
        r, z, p, Ap = s.r, s.z, s.p, s.Ap
        bnorm = float(np.linalg.norm(b))
        denom = bnorm if bnorm > 0.0 else 1.0

        np.subtract(b, A @ x, out=r)
        res = float(np.linalg.norm(r)) / denom
        best_x, best_res = x.copy(), res
        if res < tol:
            return best_x, SolveStats(0, res, True)

        np.multiply(minv, r, out=z)
        p[:] = z
        rz = float(r @ z)
        it = 0
        converged = False
        for it in range(1, max_iters + 1):
            Ap[:] = A @ p
            pAp = float(p @ Ap)
            if pAp <= 0.0 or not np.isfinite(pAp):
                break
            alpha = rz / pAp
            x += alpha * p
            r -= alpha * Ap
            res = float(np.linalg.norm(r)) / denom
            if res < best_res:
                best_res = res
                best_x[:] = x
            if res < tol:
                converged = True
                break
            np.multiply(minv, r, out=z)
            rz_new = float(r @ z)
            if rz == 0.0:
                break
            p *= rz_new / rz
            p += z
            rz = rz_new
        return best_x, SolveStats(it, best_res, converged)

    def solve(self, system, b, x0, options):
        self.prepare(system, options)
        self.scratch.ensure(system.n)
        minv = self._minv[system.key]
        x = np.empty_like(b)
        stats = SolveStats()
        for a in range(3):
            xa, st = self._solve_axis(
                system.operators[a], minv[a], b[:, a], x0[:, a].astype(np.float64, copy=True),
                options.max_cg_iters, options.min_res,
            )
            x[:, a] = xa
            stats = stats.merge(st)
        return x, stats

    def reset(self) -> None:
        self.scratch = CGScratch()
        self._minv = {}


# ----- Colored Gauss-Seidel ---------------------------------------------------

@dataclass
class GSScratch:
    last_dx: np.ndarray = field(default_factory=lambda: np.zeros((0, 3)))
    A_colors: ColoringCache = field(default_factory=ColoringCache)
    A_KtK_colors: ColoringCache = field(default_factory=ColoringCache)
    # per system key: for each axis (diag, [off-diagonal rows per color])
    splits: Dict[Hashable, list] = field(default_factory=dict)


class GaussSeidelSolver(LinearSolver):
    name = "gs"

    def __init__(self):
        self.scratch = GSScratch()

    def colors(self, system: LinearSystem) -> List[np.ndarray]:
        if system.constrained:
            return self.scratch.A_KtK_colors.get(system.pattern_key, *system.operators)
        return self.scratch.A_colors.get(system.pattern_key[0], system.operators[0])

    def prepare(self, system, options):
        if system.key in self.scratch.splits:
            return
        groups = self.colors(system)
        axes = 1 if not system.constrained else 3
        split = []
        for a in range(axes):
            op = system.operators[a]
            diag = op.diagonal()
            if np.any(diag <= 0.0):
                raise ConfigurationError("Gauss-Seidel needs a positive diagonal")
            off = (op - sparse.diags(diag, 0, shape=op.shape)).tocsr()
            split.append((diag, [off[g] for g in groups]))
        self.scratch.splits = {system.key: split}

    @staticmethod
    def _sweep(groups, diag, off_rows, b, x) -> float:
        dx = 0.0
        for g, off in zip(groups, off_rows):
            if len(g) == 0:
                continue
            d = diag[g] if x.ndim == 1 else diag[g, None]
            new = (b[g] - off @ x) / d
            dx = max(dx, float(np.max(np.abs(new - x[g]))))
            x[g] = new
        return dx

    def solve(self, system, b, x0, options):
        self.prepare(system, options)
        groups = self.colors(system)
        split = self.scratch.splits[system.key]
        x = x0.astype(np.float64, copy=True)
        if self.scratch.last_dx.shape != x.shape:
            self.scratch.last_dx = np.zeros_like(x)

        # Unconstrained axes share one operator and are swept together.
        lanes = [(slice(None), split[0])] if not system.constrained else [(a, split[a]) for a in range(3)]
        sweeps = 0
        converged = False
        for sweeps in range(1, options.max_gs_iters + 1):
            x_prev = x.copy()
            last = 0.0
            for cols, (diag, off_rows) in lanes:
                xa = x[:, cols]
                last = max(last, self._sweep(groups, diag, off_rows, b[:, cols], xa))
                x[:, cols] = xa
            self.scratch.last_dx = x - x_prev
            if last < options.gs_tol:
                converged = True
                break
        res = max(relative_residual(system.operators[a], x[:, a], b[:, a]) for a in range(3))
        return x, SolveStats(sweeps, res, converged)

    def reset(self) -> None:
        self.scratch = GSScratch()


# ----- Selection ----------------------------------------------------------------

class AutoSolver(LinearSolver):
    """Direct factorization without pins, conjugate gradients with them."""

    name = "auto"

    def __init__(self):
        self.direct = DirectSolver()
        self.cg = ConjugateGradientSolver()

    def _pick(self, system: LinearSystem) -> LinearSolver:
        return self.cg if system.constrained else self.direct

    def prepare(self, system, options):
        self._pick(system).prepare(system, options)

    def solve(self, system, b, x0, options):
        return self._pick(system).solve(system, b, x0, options)

    def reset(self) -> None:
        self.direct.reset()
        self.cg.reset()


def make_linear_solver(name: str) -> LinearSolver:
    solvers = {
        "auto": AutoSolver,
        "direct": DirectSolver,
        "cg": ConjugateGradientSolver,
        "gs": GaussSeidelSolver,
    }
    try:
        return solvers[name]()
    except KeyError:
        raise ConfigurationError(f"unknown linear solver {name!r}") from None
