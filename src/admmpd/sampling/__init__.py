"""Surface sampling of triangle and quad meshes."""

from .sample import (
    SurfaceSample,
    SampleStorage,
    storage_single,
    storage_array,
    as_faces,
    triangulate,
    vertex_normals,
    evaluate,
    generate_random,
    generate_raycast,
)

__all__ = [
    "SurfaceSample",
    "SampleStorage",
    "storage_single",
    "storage_array",
    "as_faces",
    "triangulate",
    "vertex_normals",
    "evaluate",
    "generate_random",
    "generate_raycast",
]
