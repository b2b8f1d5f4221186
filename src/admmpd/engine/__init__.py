"""ADMM projective-dynamics engine and lattice utilities for soft bodies."""

from .errors import AdmmPdError, ConfigurationError, SampleError
from .params import Options, load_options, save_options
from .mesh import (
    TetMeshData,
    EmbeddedMeshData,
    tet_volumes,
    surface_faces,
    make_tet_grid,
    grid_vertex_ids,
)
from .energy import Lame, EnergyTerms, append_energies, solve_local_step, update_duals, elastic_energy
from .constraints import Pin, ConstraintSet, build_constraints, pin_vertices
from .system import SystemMatrices, LinearSystem, build_system, build_linear_system, lumped_masses
from .linsolve import (
    LinearSolver,
    DirectSolver,
    ConjugateGradientSolver,
    GaussSeidelSolver,
    AutoSolver,
    SolveStats,
    make_linear_solver,
)
from .solver import AdmmPdSolver, SolverData, StepStats

__all__ = [
    "AdmmPdError",
    "ConfigurationError",
    "SampleError",
    "Options",
    "load_options",
    "save_options",
    "TetMeshData",
    "EmbeddedMeshData",
    "tet_volumes",
    "surface_faces",
    "make_tet_grid",
    "grid_vertex_ids",
    "Lame",
    "EnergyTerms",
    "append_energies",
    "solve_local_step",
    "update_duals",
    "elastic_energy",
    "Pin",
    "ConstraintSet",
    "build_constraints",
    "pin_vertices",
    "SystemMatrices",
    "LinearSystem",
    "build_system",
    "build_linear_system",
    "lumped_masses",
    "LinearSolver",
    "DirectSolver",
    "ConjugateGradientSolver",
    "GaussSeidelSolver",
    "AutoSolver",
    "SolveStats",
    "make_linear_solver",
    "AdmmPdSolver",
    "SolverData",
    "StepStats",
]
