from __future__ import annotations

from dataclasses import dataclass
from itertools import permutations
from typing import Sequence, Tuple

import numpy as np

from .errors import ConfigurationError

# Outward winding of the four faces of a positively oriented tet (a, b, c, d).
TET_FACES = np.array([[0, 2, 1], [0, 1, 3], [0, 3, 2], [1, 2, 3]], dtype=np.int64)

BARY_TOL = 1e-6


def _as_array(a, dtype, cols, name) -> np.ndarray:
    arr = np.asarray(a, dtype=dtype)
    if arr.size == 0:
        arr = arr.reshape(0, cols)
    if arr.ndim != 2 or arr.shape[1] != cols:
        raise ConfigurationError(f"{name} must have shape (N, {cols}); got {arr.shape}")
    return arr


def _check_tets(tets: np.ndarray, n_verts: int) -> None:
    if tets.size and (tets.min() < 0 or tets.max() >= n_verts):
        raise ConfigurationError(
            f"tets reference vertices outside [0, {n_verts}); "
            f"got range [{tets.min()}, {tets.max()}]"
        )


@dataclass
class TetMeshData:
    """Tetrahedral mesh simulated directly (no embedding)."""

    x_rest: np.ndarray  # (n, 3)
    faces: np.ndarray  # (f, 3) surface triangles
    tets: np.ndarray  # (t, 4)

    def __post_init__(self) -> None:
        self.x_rest = _as_array(self.x_rest, np.float64, 3, "x_rest")
        self.faces = _as_array(self.faces, np.int64, 3, "faces")
        self.tets = _as_array(self.tets, np.int64, 4, "tets")
        self.validate()

    def validate(self) -> None:
        n = len(self.x_rest)
        _check_tets(self.tets, n)
        if self.faces.size and (self.faces.min() < 0 or self.faces.max() >= n):
            raise ConfigurationError("faces reference vertices outside x_rest")

    def rest_vertices(self) -> np.ndarray:
        return self.x_rest


@dataclass
class EmbeddedMeshData:
    """Render mesh embedded in a coarser tetrahedral lattice.

    ``x_rest``/``faces`` describe the embedded (visible) mesh while
    ``lat_x_rest``/``tets`` are the simulated lattice. Each embedded vertex
    ``p`` lives in tet ``vtx_to_tet[p]`` with barycentric weights
    ``barys[p]``.
    """

    x_rest: np.ndarray  # (p, 3)
    faces: np.ndarray  # (f, 3)
    lat_x_rest: np.ndarray  # (n, 3)
    tets: np.ndarray  # (t, 4)
    vtx_to_tet: np.ndarray  # (p,)
    barys: np.ndarray  # (p, 4)

    def __post_init__(self) -> None:
        self.x_rest = _as_array(self.x_rest, np.float64, 3, "x_rest")
        self.faces = _as_array(self.faces, np.int64, 3, "faces")
        self.lat_x_rest = _as_array(self.lat_x_rest, np.float64, 3, "lat_x_rest")
        self.tets = _as_array(self.tets, np.int64, 4, "tets")
        self.vtx_to_tet = np.asarray(self.vtx_to_tet, dtype=np.int64).reshape(-1)
        self.barys = _as_array(self.barys, np.float64, 4, "barys")
        self.validate()

    def validate(self) -> None:
        p = len(self.x_rest)
        t = len(self.tets)
        _check_tets(self.tets, len(self.lat_x_rest))
        if self.faces.size and (self.faces.min() < 0 or self.faces.max() >= p):
            raise ConfigurationError("faces reference vertices outside x_rest")
        if len(self.vtx_to_tet) != p or len(self.barys) != p:
            raise ConfigurationError(
                f"vtx_to_tet and barys need one entry per embedded vertex ({p}); "
                f"got {len(self.vtx_to_tet)} and {len(self.barys)}"
            )
        if p == 0:
            return
        if self.vtx_to_tet.min() < 0 or self.vtx_to_tet.max() >= t:
            raise ConfigurationError(f"vtx_to_tet must lie in [0, {t})")
        if np.any(self.barys < -BARY_TOL):
            bad = int(np.argmin(self.barys.min(axis=1)))
            raise ConfigurationError(f"negative barycentric weight at embedded vertex {bad}")
        sums = self.barys.sum(axis=1)
        if np.any(np.abs(sums - 1.0) > BARY_TOL):
            bad = int(np.argmax(np.abs(sums - 1.0)))
            raise ConfigurationError(
                f"barycentric weights of embedded vertex {bad} sum to {sums[bad]:.8f}, not 1"
            )

    def rest_vertices(self) -> np.ndarray:
        return self.lat_x_rest

    def interpolate(self, lattice_x: np.ndarray) -> np.ndarray:
        """Map lattice positions onto the embedded vertices."""
        corners = np.asarray(lattice_x)[self.tets[self.vtx_to_tet]]  # (p, 4, 3)
        return np.einsum("pk,pkd->pd", self.barys, corners)


# ----- Geometry helpers ------------------------------------------------------

def tet_volumes(x: np.ndarray, tets: np.ndarray) -> np.ndarray:
    """Signed volume of every tet, positive for the (a, b, c, d) right-hand order."""
    if len(tets) == 0:
        return np.zeros(0, dtype=np.float64)
    a = x[tets[:, 0]]
    e1 = x[tets[:, 1]] - a
    e2 = x[tets[:, 2]] - a
    e3 = x[tets[:, 3]] - a
    return np.einsum("ij,ij->i", e1, np.cross(e2, e3)) / 6.0


def surface_faces(tets: np.ndarray) -> np.ndarray:
    """Boundary triangles of a positively oriented tet mesh, wound outward.

    A face is on the boundary when exactly one tet owns it. Instead of walking
    a face->tet dictionary we sort each face's indices and let ``np.unique``
    count duplicates for all faces at once.
    """
    tets = np.asarray(tets, dtype=np.int64)
    if len(tets) == 0:
        return np.zeros((0, 3), dtype=np.int64)
    all_faces = tets[:, TET_FACES].reshape(-1, 3)
    keys = np.sort(all_faces, axis=1)
    _, inverse, counts = np.unique(keys, axis=0, return_inverse=True, return_counts=True)
    inverse = np.asarray(inverse).reshape(-1)
    return all_faces[counts[inverse] == 1]


def make_tet_grid(
    res: Sequence[int] = (2, 2, 2),
    size: Sequence[float] = (1.0, 1.0, 1.0),
    origin: Sequence[float] = (0.0, 0.0, 0.0),
) -> TetMeshData:
    """Regular box lattice, each cell split into six tets.

    Uses the Freudenthal (Kuhn) split: every tet walks from the cell's minimum
    corner to its maximum corner one axis at a time, so neighbouring cells
    share matching diagonals without any per-cell bookkeeping.
    """
    nx, ny, nz = (int(r) for r in res)
    if min(nx, ny, nz) < 1:
        raise ConfigurationError(f"grid resolution must be >= 1 per axis; got {res}")
    gx = np.linspace(0.0, size[0], nx + 1) + origin[0]
    gy = np.linspace(0.0, size[1], ny + 1) + origin[1]
    gz = np.linspace(0.0, size[2], nz + 1) + origin[2]
    X, Y, Z = np.meshgrid(gx, gy, gz, indexing="ij")
    verts = np.stack([X.ravel(order="F"), Y.ravel(order="F"), Z.ravel(order="F")], axis=1)

    def vid(i, j, k):
        return i + (nx + 1) * (j + (ny + 1) * k)

    ci, cj, ck = np.meshgrid(np.arange(nx), np.arange(ny), np.arange(nz), indexing="ij")
    ci, cj, ck = ci.ravel(), cj.ravel(), ck.ravel()

    unit = np.eye(3, dtype=np.int64)
    tets = []
    for perm in permutations(range(3)):
        path = [np.zeros(3, dtype=np.int64)]
        for axis in perm:
            path.append(path[-1] + unit[axis])
        tets.append(np.stack([vid(ci + o[0], cj + o[1], ck + o[2]) for o in path], axis=1))
    tets = np.concatenate(tets, axis=0)

    vol = tet_volumes(verts, tets)
    flip = vol < 0.0
    tets[flip, 1], tets[flip, 2] = tets[flip, 2].copy(), tets[flip, 1].copy()

    return TetMeshData(x_rest=verts, faces=surface_faces(tets), tets=tets)


def grid_vertex_ids(mesh: TetMeshData, axis: int, side: str = "max", tol: float = 1e-9) -> np.ndarray:
    """Indices of lattice vertices lying on the min/max plane along ``axis``."""
    coords = mesh.x_rest[:, axis]
    ref = coords.max() if side == "max" else coords.min()
    return np.nonzero(np.abs(coords - ref) <= tol)[0]


def bounding_box(x: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    x = np.asarray(x)
    return x.min(axis=0), x.max(axis=0)
