from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Tuple

import numpy as np
from scipy import sparse

from .constraints import ConstraintSet
from .energy import EnergyTerms
from .params import Options

logger = logging.getLogger(__name__)


def lumped_masses(n_verts: int, tets: np.ndarray, energies: EnergyTerms, density: float) -> np.ndarray:
    """Quarter of each kept tet's mass on each of its vertices.

    Vertices without a kept tet get the mean positive mass so that isolated
    points still behave as free particles (unit mass when nothing is meshed).
    """
    m = np.zeros(n_verts, dtype=np.float64)
    kept = np.asarray(tets, dtype=np.int64).reshape(-1, 4)[energies.tet_ids]
    share = density * energies.rest_volumes / 4.0
    for k in range(4):
        np.add.at(m, kept[:, k], share)
    orphan = m <= 0.0
    if np.any(orphan):
        fill = float(m[~orphan].mean()) if np.any(~orphan) else 1.0
        logger.debug("%d vertices without elements get mass %g", int(orphan.sum()), fill)
        m[orphan] = fill
    return m


@dataclass
class SystemMatrices:
    M: sparse.csr_matrix  # (n, n) lumped mass
    D: sparse.csr_matrix  # (r, n)
    DtW2: sparse.csr_matrix  # (n, r)
    A: sparse.csr_matrix  # (n, n)  M + D'W^2 D
    version: int = 0

    @property
    def n(self) -> int:
        return int(self.A.shape[0])


def build_system(m: np.ndarray, energies: EnergyTerms, version: int = 0) -> SystemMatrices:
    n = len(m)
    M = sparse.diags(m, 0, shape=(n, n), format="csr")
    D = energies.D
    r = D.shape[0]
    DtW2 = (D.T @ sparse.diags(energies.row_weights_sq(), 0, shape=(r, r))).tocsr()
    A = (M + DtW2 @ D).tocsr()
    A.sum_duplicates()
    A.eliminate_zeros()
    logger.debug("built A: n=%d nnz=%d (version %d)", n, A.nnz, version)
    return SystemMatrices(M=M, D=D, DtW2=DtW2, A=A, version=version)


def constraint_stiffness(A: sparse.spmatrix, options: Options) -> float:
    diag = A.diagonal()
    return float(options.mult_k * (diag.max() if diag.size else 0.0))


@dataclass
class LinearSystem:
    """Per-axis operators handed to the inner linear solver.

    ``operators[axis]`` is ``A`` when no pins are active and
    ``A + k K[axis]^T K[axis]`` otherwise. ``key`` changes whenever operator
    values change (factorizations, preconditioners); ``pattern_key`` only when
    the sparsity pattern does (colorings).
    """

    operators: List[sparse.csr_matrix]
    constrained: bool
    key: Tuple[int, int]
    pattern_key: Tuple[int, int]

    @property
    def n(self) -> int:
        return int(self.operators[0].shape[0])


def build_linear_system(system: SystemMatrices, constraints: ConstraintSet, topology_version: int = 0) -> LinearSystem:
    key = (system.version, constraints.version)
    pattern_key = (topology_version, constraints.version)
    if not constraints.active:
        return LinearSystem(operators=[system.A] * 3, constrained=False, key=key, pattern_key=pattern_key)
    ops = []
    for axis in range(3):
        op = (system.A + constraints.KtK(axis)).tocsr()
        op.sum_duplicates()
        ops.append(op)
    return LinearSystem(operators=ops, constrained=True, key=key, pattern_key=pattern_key)
