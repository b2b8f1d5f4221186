from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Sequence, Tuple

import numpy as np
from scipy import sparse

from .errors import ConfigurationError
from .mesh import EmbeddedMeshData


# --------- Pins (hard linear constraints, enforced as stiff springs) ---------
@dataclass(frozen=True)
class Pin:
    """Pull a weighted combination of lattice vertices toward ``target``.

    A lattice-vertex pin has one vertex with weight 1; an embedded-point pin
    carries the four barycentric weights of the enclosing tet. ``axes``
    selects which components are constrained.
    """

    verts: Tuple[int, ...]
    weights: Tuple[float, ...]
    target: Tuple[float, float, float]
    axes: Tuple[bool, bool, bool] = (True, True, True)

    def __post_init__(self) -> None:
        if len(self.verts) != len(self.weights) or not self.verts:
            raise ConfigurationError("a pin needs matching, non-empty verts and weights")
        if len(self.target) != 3 or len(self.axes) != 3:
            raise ConfigurationError("pin target and axes must have 3 components")

    @classmethod
    def vertex(cls, index: int, target: Sequence[float], axes=(True, True, True)) -> "Pin":
        return cls((int(index),), (1.0,), tuple(float(t) for t in target), tuple(bool(a) for a in axes))

    @classmethod
    def embedded(cls, mesh: EmbeddedMeshData, point: int, target: Sequence[float], axes=(True, True, True)) -> "Pin":
        tet = mesh.tets[mesh.vtx_to_tet[point]]
        return cls(
            tuple(int(v) for v in tet),
            tuple(float(w) for w in mesh.barys[point]),
            tuple(float(t) for t in target),
            tuple(bool(a) for a in axes),
        )


def pin_vertices(x: np.ndarray, indices: Sequence[int], axes=(True, True, True)) -> List[Pin]:
    """Pin each listed vertex at its current position."""
    return [Pin.vertex(i, x[i], axes) for i in indices]


@dataclass
class ConstraintSet:
    """Per-axis constraint Jacobians ``K[axis]`` with targets ``l``.

    Pin ``p`` owns row ``3p + axis`` of ``K[axis]``; rows of unconstrained
    axes stay empty so that ``K[axis] x[:, axis] = l`` restricted to the
    active rows.
    """

    pins: Tuple[Pin, ...] = ()
    K: List[sparse.csr_matrix] = field(default_factory=list)
    l: np.ndarray = field(default_factory=lambda: np.zeros(0))
    spring_k: float = 0.0
    version: int = 0

    @property
    def active(self) -> bool:
        return len(self.pins) > 0 and self.spring_k > 0.0

    def KtK(self, axis: int) -> sparse.csr_matrix:
        K = self.K[axis]
        return (self.spring_k * (K.T @ K)).tocsr()

    def Ktl(self) -> np.ndarray:
        """``spring_k K[axis]^T l`` stacked as an (n, 3) right-hand side."""
        return np.stack([self.spring_k * (self.K[a].T @ self.l) for a in range(3)], axis=1)

    def residual(self, x: np.ndarray) -> np.ndarray:
        """Per-row violation ``K[axis] x[:, axis] - l`` on active rows."""
        out = np.zeros(len(self.l))
        for a in range(3):
            rows = slice(a, None, 3)
            out[rows] = (self.K[a] @ x[:, a] - self.l)[rows]
        mask = np.zeros(len(self.l), dtype=bool)
        for p, pin in enumerate(self.pins):
            mask[3 * p: 3 * p + 3] = pin.axes
        return out[mask]


def build_constraints(pins: Sequence[Pin], n_verts: int, spring_k: float, version: int = 0) -> ConstraintSet:
    pins = tuple(pins)
    n_rows = 3 * len(pins)
    l = np.zeros(n_rows)
    rows = [[] for _ in range(3)]
    cols = [[] for _ in range(3)]
    vals = [[] for _ in range(3)]
    for p, pin in enumerate(pins):
        for v in pin.verts:
            if not 0 <= v < n_verts:
                raise ConfigurationError(f"pin {p} references vertex {v} outside [0, {n_verts})")
        for a in range(3):
            if not pin.axes[a]:
                continue
            r = 3 * p + a
            l[r] = pin.target[a]
            rows[a].extend([r] * len(pin.verts))
            cols[a].extend(pin.verts)
            vals[a].extend(pin.weights)
    K = [
        sparse.csr_matrix((vals[a], (rows[a], cols[a])), shape=(n_rows, n_verts))
        for a in range(3)
    ]
    return ConstraintSet(pins=pins, K=K, l=l, spring_k=float(spring_k), version=version)
