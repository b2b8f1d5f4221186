"""Soft-body simulation with ADMM projective dynamics."""

from .engine import (
    AdmmPdSolver,
    SolverData,
    StepStats,
    Options,
    TetMeshData,
    EmbeddedMeshData,
    Pin,
    AdmmPdError,
    ConfigurationError,
    SampleError,
)

__version__ = "0.1.0"

__all__ = [
    "AdmmPdSolver",
    "SolverData",
    "StepStats",
    "Options",
    "TetMeshData",
    "EmbeddedMeshData",
    "Pin",
    "AdmmPdError",
    "ConfigurationError",
    "SampleError",
]
