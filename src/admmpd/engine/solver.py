"""ADMM projective-dynamics driver.

One :class:`AdmmPdSolver` and one :class:`SolverData` exist per simulated
soft body. ``init`` builds the per-topology operators once; ``step`` then
alternates

    local:  z <- project(D x + u)             (independent per element)
    global: (M + D'W^2 D [+ k K'K]) x = M xbar + D'W^2 (z - u) [+ k K'l]
    dual:   u <- u + D x - z

for ``max_admm_iters`` iterations and derives the new velocity from the
displacement over the step.
"""
from __future__ import annotations

import logging
import weakref
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional, Sequence, Union

import numpy as np

from .constraints import ConstraintSet, Pin, build_constraints
from .energy import EnergyTerms, append_energies, elastic_energy, solve_local_step, update_duals
from .errors import ConfigurationError
from .linsolve import LinearSolver, SolveStats, make_linear_solver
from .mesh import EmbeddedMeshData, TetMeshData
from .params import Options
from .system import (
    LinearSystem,
    SystemMatrices,
    build_linear_system,
    build_system,
    constraint_stiffness,
    lumped_masses,
)

logger = logging.getLogger(__name__)

Mesh = Union[TetMeshData, EmbeddedMeshData]


def _zeros(rows: int) -> np.ndarray:
    return np.zeros((rows, 3), dtype=np.float64)


@dataclass
class SolverData:
    """Persistent simulation state of one soft body."""

    tets: np.ndarray  # (t, 4), copied from the mesh
    x: np.ndarray  # (n, 3)
    v: np.ndarray  # (n, 3)
    x_start: np.ndarray  # x at the beginning of the step
    m: np.ndarray  # (n,)
    z: np.ndarray  # (r, 3) ADMM local variable
    u: np.ndarray  # (r, 3) scaled dual
    M_xbar: np.ndarray  # M (x + dt v) + dt^2 M g
    Dx: np.ndarray  # D x
    b: np.ndarray  # M xbar + D'W^2 (z - u)
    topology_version: int = 0

    @property
    def n_verts(self) -> int:
        return len(self.x)


@dataclass
class StepStats:
    admm_iters: int = 0
    inner_iters: int = 0
    stagnated: int = 0  # inner solves that hit their cap
    clamped: int = 0  # element projections reset to identity
    last_dx: float = 0.0
    primal_residual: float = 0.0  # max|Dx - z| after the last iteration
    residual: float = 0.0
    inner: list = field(default_factory=list, repr=False)


class AdmmPdSolver:
    def __init__(self, options: Optional[Options] = None, linsolver: Optional[LinearSolver] = None):
        self.options = options or Options()
        self.linsolver = linsolver or make_linear_solver(self.options.linsolver)
        self.x_rest: Optional[np.ndarray] = None
        self.energies: Optional[EnergyTerms] = None
        self.system: Optional[SystemMatrices] = None
        self.constraints: Optional[ConstraintSet] = None
        self.linear_system: Optional[LinearSystem] = None
        self._pins: tuple = ()
        self._Ktl: Optional[np.ndarray] = None
        self._system_version = 0
        self._constraint_version = 0
        self._topology_version = 0
        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_finalizer: Optional[weakref.finalize] = None

    # -- lifecycle ------------------------------------------------------------
    def init(self, mesh: Mesh, pins: Sequence[Pin] = ()) -> SolverData:
        """Create the state for ``mesh`` at rest and build every operator."""
        x_rest = np.asarray(mesh.rest_vertices(), dtype=np.float64)
        n = len(x_rest)
        if n == 0:
            raise ConfigurationError("mesh has no vertices to simulate")
        data = SolverData(
            tets=np.array(mesh.tets, dtype=np.int64, copy=True),
            x=x_rest.copy(),
            v=_zeros(n),
            x_start=x_rest.copy(),
            m=np.zeros(n),
            z=_zeros(0),
            u=_zeros(0),
            M_xbar=_zeros(n),
            Dx=_zeros(0),
            b=_zeros(n),
            topology_version=self._next_topology(),
        )
        # Cached factors and colorings belong to the previous body.
        self.linsolver.reset()
        self.x_rest = x_rest.copy()
        self._pins = tuple(pins)
        self._build(data)
        return data

    def rebuild(self, data: SolverData, mesh: Mesh) -> None:
        """Topology changed: rebuild energies, operators, colorings, factors.

        Positions and velocities survive when the vertex count is unchanged;
        otherwise the body restarts at the new rest shape.
        """
        x_rest = np.asarray(mesh.rest_vertices(), dtype=np.float64)
        n = len(x_rest)
        if n == 0:
            raise ConfigurationError("mesh has no vertices to simulate")
        data.topology_version = self._next_topology()
        data.tets = np.array(mesh.tets, dtype=np.int64, copy=True)
        if n != data.n_verts:
            data.x = x_rest.copy()
            data.v = _zeros(n)
            data.x_start = x_rest.copy()
            data.M_xbar = _zeros(n)
            data.b = _zeros(n)
            self._pins = tuple(p for p in self._pins if max(p.verts) < n)
        self.x_rest = x_rest.copy()
        self._build(data)

    def set_options(self, data: SolverData, options: Options) -> None:
        """Material, density or solver changes; operators are rebuilt."""
        if options.linsolver != self.options.linsolver:
            self.linsolver.reset()
            self.linsolver = make_linear_solver(options.linsolver)
        if options.num_threads != self.options.num_threads:
            self.close()
        self.options = options
        self._build(data)

    def set_pins(self, data: SolverData, pins: Sequence[Pin]) -> None:
        """Replace the hard-constraint set before the next step."""
        self._pins = tuple(pins)
        self._build_constraints(data)

    @property
    def pins(self) -> tuple:
        return self._pins

    def close(self) -> None:
        if self._executor is not None:
            self._executor_finalizer.detach()
            self._executor.shutdown(wait=True)
            self._executor = None
            self._executor_finalizer = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # -- assembly ---------------------------------------------------------------
    def _next_topology(self) -> int:
        # Solver-wide, so pattern keys never repeat across init() calls.
        self._topology_version += 1
        return self._topology_version

    def _build(self, data: SolverData) -> None:
        self._system_version += 1
        energies = append_energies(self.x_rest, data.tets, self.options)
        data.m = lumped_masses(data.n_verts, data.tets, energies, self.options.density)
        self.energies = energies
        self.system = build_system(data.m, energies, version=self._system_version)
        rows = energies.num_rows
        data.z = _zeros(rows)
        data.u = _zeros(rows)
        data.Dx = _zeros(rows)
        logger.debug(
            "built soft body: %d verts, %d energies, %d excluded tets (topology %d)",
            data.n_verts, len(energies), len(energies.excluded), data.topology_version,
        )
        self._build_constraints(data)

    def _build_constraints(self, data: SolverData) -> None:
        self._constraint_version += 1
        spring_k = constraint_stiffness(self.system.A, self.options)
        self.constraints = build_constraints(self._pins, data.n_verts, spring_k, version=self._constraint_version)
        self._Ktl = self.constraints.Ktl() if self.constraints.active else None
        self.linear_system = build_linear_system(self.system, self.constraints, data.topology_version)
        # Factorization failures surface here, before any step is taken.
        self.linsolver.prepare(self.linear_system, self.options)

    # -- stepping -----------------------------------------------------------------
    def init_solve(self, data: SolverData) -> None:
        dt = self.options.timestep_s
        grav = np.asarray(self.options.grav, dtype=np.float64)
        m = data.m[:, None]
        data.x_start = data.x.copy()
        data.M_xbar = m * (data.x + dt * data.v) + dt * dt * m * grav[None, :]
        data.Dx = np.asarray(self.system.D @ data.x)
        data.z = data.Dx.copy()
        data.u = np.zeros_like(data.Dx)

    def solve_local_step(self, data: SolverData) -> int:
        chunks = self.options.num_threads
        if chunks > 1 and self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=chunks, thread_name_prefix="admmpd-local")
            # Solvers dropped without close() still release their workers.
            self._executor_finalizer = weakref.finalize(self, self._executor.shutdown, wait=False)
        return solve_local_step(data.Dx, data.z, data.u, self.energies, self._executor, chunks)

    def solve_global_step(self, data: SolverData) -> SolveStats:
        data.b = data.M_xbar + np.asarray(self.system.DtW2 @ (data.z - data.u))
        rhs = data.b if self._Ktl is None else data.b + self._Ktl
        x, stats = self.linsolver.solve(self.linear_system, rhs, data.x, self.options)
        data.x = x
        data.Dx = np.asarray(self.system.D @ data.x)
        return stats

    def update_duals(self, data: SolverData) -> float:
        """Dual ascent on the consensus ``D x = z``; returns ``max|Dx - z|``."""
        return update_duals(data.Dx, data.z, data.u)

    def step(self, data: SolverData) -> StepStats:
        """Advance ``data`` by one timestep in place."""
        if self.system is None or self.system.n != data.n_verts:
            raise ConfigurationError("solver was not initialised for this state; call init() first")
        opts = self.options
        stats = StepStats()
        self.init_solve(data)
        for it in range(opts.max_admm_iters):
            stats.clamped += self.solve_local_step(data)
            x_prev = data.x
            inner = self.solve_global_step(data)
            stats.primal_residual = self.update_duals(data)
            stats.admm_iters = it + 1
            stats.inner_iters += inner.iterations
            stats.stagnated += 0 if inner.converged else 1
            stats.residual = inner.residual
            stats.inner.append(inner)
            stats.last_dx = float(np.max(np.abs(data.x - x_prev))) if data.n_verts else 0.0
            if opts.admm_tol > 0.0 and stats.last_dx < opts.admm_tol:
                break
        data.v = (data.x - data.x_start) / opts.timestep_s

        if stats.stagnated:
            logger.warning(
                "%d of %d inner %s solves stopped at their iteration cap (last residual %.3e)",
                stats.stagnated, stats.admm_iters, self.linsolver.name, stats.residual,
            )
        if stats.clamped:
            logger.warning("clamped %d non-finite element projections", stats.clamped)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "step: %d admm iters, %d inner iters, last dx %.3e, elastic energy %.6e",
                stats.admm_iters, stats.inner_iters, stats.last_dx, elastic_energy(data.Dx, self.energies),
            )
        return stats
