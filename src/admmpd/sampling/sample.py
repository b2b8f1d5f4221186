"""Surface samples: points bound to a mesh face by barycentric weights.

Faces are ``(f, 3)`` triangles or ``(f, 4)`` quads; in a quad array a
negative fourth index marks a triangle. Quads are split along their
``v1-v3`` diagonal.

A sample remembers three original vertex indices and their weights, so it
can be re-evaluated after the mesh deforms (for example on the embedded
render mesh after every solver step).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np
import trimesh
from trimesh.ray.ray_triangle import RayMeshIntersector
from trimesh.triangles import points_to_barycentric

from ..engine.errors import ConfigurationError, SampleError

logger = logging.getLogger(__name__)

RayCallback = Callable[[], Optional[Tuple[Sequence[float], Sequence[float]]]]


@dataclass
class SurfaceSample:
    orig_verts: Tuple[int, int, int] = (0, 0, 0)
    orig_weights: Tuple[float, float, float] = (0.0, 0.0, 0.0)


@dataclass
class SampleStorage:
    """Fixed-capacity destination for generated samples."""

    capacity: int
    samples: List[Optional[SurfaceSample]] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.capacity = int(self.capacity)
        if self.capacity < 0:
            raise ConfigurationError(f"storage capacity must be >= 0; got {self.capacity}")
        if not self.samples:
            self.samples = [None] * self.capacity

    def store_sample(self, index: int, sample: SurfaceSample) -> bool:
        if index < 0 or index >= self.capacity:
            return False
        self.samples[index] = sample
        return True

    def stored(self) -> List[SurfaceSample]:
        return [s for s in self.samples if s is not None]


def storage_single() -> SampleStorage:
    return SampleStorage(capacity=1)


def storage_array(capacity: int) -> SampleStorage:
    return SampleStorage(capacity=capacity)


def as_faces(faces) -> np.ndarray:
    """``faces`` as an ``(f, 3)`` or ``(f, 4)`` int array."""
    faces = np.asarray(faces, dtype=np.int64)
    if faces.size == 0:
        return np.zeros((0, 3), dtype=np.int64)
    if faces.ndim != 2 or faces.shape[1] not in (3, 4):
        raise ConfigurationError(f"faces must be (f, 3) triangles or (f, 4) quads; got shape {faces.shape}")
    return faces


def triangulate(faces) -> Tuple[np.ndarray, np.ndarray]:
    """Split quads into ``(v1, v2, v3)`` and ``(v1, v3, v4)``.

    Returns the triangles and, per triangle, the index of its source face.
    """
    faces = as_faces(faces)
    source = np.arange(len(faces))
    if faces.shape[1] == 3:
        return faces, source
    quad = faces[:, 3] >= 0
    first = faces[:, :3]
    second = faces[quad][:, [0, 2, 3]]
    return np.vstack([first, second]), np.concatenate([source, source[quad]])


def _trimesh(vertices, tris: np.ndarray) -> trimesh.Trimesh:
    # No processing: vertex and face indices must stay the caller's.
    return trimesh.Trimesh(vertices=np.asarray(vertices, dtype=np.float64), faces=tris, process=False)


def vertex_normals(vertices: np.ndarray, faces: np.ndarray) -> np.ndarray:
    """Unit vertex normals; zero for vertices without faces."""
    vertices = np.asarray(vertices, dtype=np.float64)
    tris, _ = triangulate(faces)
    nor = np.zeros_like(vertices)
    if len(tris) == 0:
        return nor
    used = np.unique(tris)
    nor[used] = np.asarray(_trimesh(vertices, tris).vertex_normals)[used]
    return np.nan_to_num(nor)


def evaluate(
    sample: SurfaceSample,
    vertices: np.ndarray,
    normals: Optional[np.ndarray] = None,
    faces: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """Location and unit normal of ``sample`` on the current mesh."""
    vertices = np.asarray(vertices, dtype=np.float64)
    idx = np.asarray(sample.orig_verts, dtype=np.int64)
    if np.any(idx < 0) or np.any(idx >= len(vertices)):
        raise SampleError(
            f"sample vertices {tuple(int(i) for i in idx)} out of range for {len(vertices)} vertices"
        )
    if normals is None:
        if faces is None:
            raise ConfigurationError("evaluate needs either normals or faces")
        normals = vertex_normals(vertices, faces)
    w = np.asarray(sample.orig_weights, dtype=np.float64)
    loc = w @ vertices[idx]
    nor = w @ np.asarray(normals, dtype=np.float64)[idx]
    length = float(np.linalg.norm(nor))
    if length > 0.0:
        nor = nor / length
    return loc, nor


def generate_random(storage: SampleStorage, vertices, faces, seed: int, totsample: int) -> int:
    """Uniform face choice, uniform point inside the face; returns samples stored.

    A quad picks one of its two triangles with equal odds.
    """
    faces = as_faces(faces)
    if totsample <= 0:
        return 0
    if len(faces) == 0:
        raise ConfigurationError("cannot sample a mesh without faces")
    rng = np.random.default_rng(seed)
    stored = 0
    for i in range(totsample):
        face = faces[rng.integers(len(faces))]
        if len(face) == 4 and face[3] >= 0 and rng.integers(2) == 0:
            verts = (face[2], face[3], face[0])
        else:
            verts = (face[0], face[1], face[2])
        a, b = rng.random(2)
        if a + b > 1.0:
            a, b = 1.0 - a, 1.0 - b
        sample = SurfaceSample(
            orig_verts=tuple(int(v) for v in verts),
            orig_weights=(1.0 - (a + b), float(a), float(b)),
        )
        if not storage.store_sample(i, sample):
            break
        stored += 1
    logger.debug("generated %d of %d random samples (seed %d)", stored, totsample, seed)
    return stored


def _nearest_hit(intersector: RayMeshIntersector, triangles: np.ndarray, start, end) -> Optional[Tuple[int, np.ndarray]]:
    """Triangle index and barycentric weights of the first hit on ``start -> end``."""
    start = np.asarray(start, dtype=np.float64)
    ray = np.asarray(end, dtype=np.float64) - start
    length = float(np.linalg.norm(ray))
    if length == 0.0:
        return None
    direction = ray / length
    locations, _, index_tri = intersector.intersects_location(
        start[None, :], direction[None, :], multiple_hits=True
    )
    if len(index_tri) == 0:
        return None
    t = (locations - start) @ direction
    ok = (t >= 0.0) & (t <= length)
    if not np.any(ok):
        return None
    k = int(np.flatnonzero(ok)[np.argmin(t[ok])])
    tri = int(index_tri[k])
    bary = points_to_barycentric(triangles[[tri]], locations[[k]])[0]
    return tri, bary


def generate_raycast(storage: SampleStorage, vertices, faces, ray_callback: RayCallback, totsample: int) -> int:
    """Samples at the nearest surface hit of caller-supplied ray segments.

    ``ray_callback()`` returns ``(start, end)`` or ``None`` to skip a slot.
    Sample ``i`` is stored at index ``i`` so skipped rays leave gaps.
    """
    if totsample <= 0:
        return 0
    tris, _ = triangulate(faces)
    if len(tris) == 0:
        return 0
    mesh = _trimesh(vertices, tris)
    intersector = RayMeshIntersector(mesh)
    triangles = np.asarray(mesh.triangles)
    stored = 0
    for i in range(totsample):
        ray = ray_callback()
        if ray is None:
            continue
        hit = _nearest_hit(intersector, triangles, *ray)
        if hit is None:
            continue
        tri, bary = hit
        sample = SurfaceSample(
            orig_verts=tuple(int(v) for v in tris[tri]),
            orig_weights=tuple(float(w) for w in bary),
        )
        if not storage.store_sample(i, sample):
            break
        stored += 1
    logger.debug("raycast stored %d of %d samples", stored, totsample)
    return stored
