from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np
from scipy import sparse

from .errors import ConfigurationError
from .mesh import tet_volumes
from .params import Options

logger = logging.getLogger(__name__)

# Relative to the cube of the mean edge length
DEGENERATE_VOLUME_EPS = 1e-12


@dataclass(frozen=True)
class Lame:
    mu: float
    lam: float
    bulk_mod: float

    @classmethod
    def from_options(cls, options: Options) -> "Lame":
        E, nu = options.youngs, options.poisson
        return cls(
            mu=E / (2.0 * (1.0 + nu)),
            lam=E * nu / ((1.0 + nu) * (1.0 - 2.0 * nu)),
            bulk_mod=E / (3.0 * (1.0 - 2.0 * nu)),
        )


@dataclass
class EnergyTerms:
    """Per-energy bookkeeping produced by :func:`append_energies`.

    Energy ``e`` owns rows ``indices[e, 0] : indices[e, 0] + indices[e, 1]``
    of ``D`` and was built from tet ``tet_ids[e]``.
    """

    indices: np.ndarray  # (e, 2) row, num rows
    rest_volumes: np.ndarray  # (e,)
    weights: np.ndarray  # (e,)
    tet_ids: np.ndarray  # (e,)
    Dm_inv: np.ndarray  # (e, 3, 3)
    D: sparse.csr_matrix  # (3e, n)
    lame: Lame
    excluded: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))

    def __len__(self) -> int:
        return len(self.weights)

    @property
    def num_rows(self) -> int:
        return int(self.D.shape[0])

    def row_weights_sq(self) -> np.ndarray:
        """``diag(W²)``: each energy weight squared, repeated over its rows."""
        return np.repeat(self.weights ** 2, self.indices[:, 1])


def append_energies(x_rest: np.ndarray, tets: np.ndarray, options: Options) -> EnergyTerms:
    """Build one elastic energy per tet and the reduction matrix ``D``.

    ``D`` maps the (n, 3) vertex matrix to stacked 3x3 blocks, block ``e``
    holding the transposed deformation gradient ``F^T`` of tet ``e``.
    Degenerate tets (zero or negative rest volume) are left out.
    """
    x_rest = np.asarray(x_rest, dtype=np.float64)
    tets = np.asarray(tets, dtype=np.int64).reshape(-1, 4)
    n = len(x_rest)
    lame = Lame.from_options(options)

    vol = tet_volumes(x_rest, tets)
    if len(tets):
        edges = x_rest[tets[:, 1:]] - x_rest[tets[:, :1]]
        scale = float(np.mean(np.linalg.norm(edges, axis=2))) ** 3
    else:
        scale = 1.0
    keep = vol > DEGENERATE_VOLUME_EPS * max(scale, np.finfo(float).tiny)
    excluded = np.nonzero(~keep)[0]
    if len(excluded):
        logger.warning(
            "excluding %d degenerate tet(s) (zero or negative rest volume): %s",
            len(excluded), excluded[:10].tolist(),
        )
        if not np.any(keep):
            raise ConfigurationError("every tetrahedron has a degenerate rest volume")

    kept = tets[keep]
    vol = vol[keep]
    n_e = len(kept)

    a = x_rest[kept[:, 0]]
    Dm = np.stack(
        [x_rest[kept[:, 1]] - a, x_rest[kept[:, 2]] - a, x_rest[kept[:, 3]] - a], axis=2
    )  # columns are edge vectors
    Dm_inv = np.linalg.inv(Dm) if n_e else np.zeros((0, 3, 3))

    # Block rows r of F^T = Dm^{-T} S x, S picking (b-a, c-a, d-a).
    coeff = np.empty((n_e, 3, 4))
    coeff[:, :, 1:] = np.transpose(Dm_inv, (0, 2, 1))
    coeff[:, :, 0] = -coeff[:, :, 1:].sum(axis=2)
    rows = np.repeat(3 * np.arange(n_e)[:, None] + np.arange(3)[None, :], 4, axis=1).reshape(n_e, 3, 4)
    cols = np.broadcast_to(kept[:, None, :], (n_e, 3, 4))
    D = sparse.csr_matrix(
        (coeff.ravel(), (rows.ravel(), cols.ravel())), shape=(3 * n_e, n)
    )

    weights = np.sqrt(lame.bulk_mod * vol)
    indices = np.stack([3 * np.arange(n_e), np.full(n_e, 3)], axis=1).astype(np.int64)
    logger.debug("assembled %d tet energies over %d vertices", n_e, n)
    return EnergyTerms(
        indices=indices,
        rest_volumes=vol,
        weights=weights,
        tet_ids=np.nonzero(keep)[0],
        Dm_inv=Dm_inv,
        D=D,
        lame=lame,
        excluded=excluded,
    )


# ----- Local projection -----------------------------------------------------

def _project_blocks(Dx: np.ndarray, u: np.ndarray, kv: np.ndarray, w2: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """As-rigid-as-possible projection of ``Dx + u`` blended with the penalty.

    Returns the new z blocks and a mask of blocks that were not finite; those
    are projected from the identity instead.
    """
    zi = Dx + u
    bad = ~np.isfinite(zi).all(axis=(1, 2))
    if np.any(bad):
        zi[bad] = np.eye(3)

    U, _, Vt = np.linalg.svd(zi)
    # Signed SVD: keep R a proper rotation for inverted elements.
    neg = np.linalg.det(U) * np.linalg.det(Vt) < 0.0
    U[neg, :, 2] *= -1.0
    R = U @ Vt

    kv = kv[:, None, None]
    w2 = w2[:, None, None]
    return (kv * R + w2 * zi) / (w2 + kv), bad


def solve_local_step(
    Dx: np.ndarray,
    z: np.ndarray,
    u: np.ndarray,
    energies: EnergyTerms,
    executor: Optional[ThreadPoolExecutor] = None,
    chunks: int = 1,
) -> int:
    """Project every energy's ``Dx + u`` block into ``z`` in place.

    Non-finite blocks are clamped: their z becomes the identity and their u
    is zeroed. Returns the number of clamped blocks. Energies are independent,
    so the batch can be split into chunks and handed to ``executor``.
    """
    n_e = len(energies)
    if n_e == 0:
        return 0
    Dx_b = Dx.reshape(n_e, 3, 3)
    z_b = z.reshape(n_e, 3, 3)
    u_b = u.reshape(n_e, 3, 3)
    kv = energies.lame.bulk_mod * energies.rest_volumes
    w2 = energies.weights ** 2

    def run(lo: int, hi: int) -> int:
        zz, bad = _project_blocks(Dx_b[lo:hi], u_b[lo:hi], kv[lo:hi], w2[lo:hi])
        z_b[lo:hi] = zz
        if np.any(bad):
            u_b[lo:hi][bad] = 0.0
        return int(bad.sum())

    if executor is None or chunks <= 1 or n_e < 2 * chunks:
        return run(0, n_e)
    bounds = np.linspace(0, n_e, chunks + 1).astype(int)
    futures = [executor.submit(run, lo, hi) for lo, hi in zip(bounds[:-1], bounds[1:]) if hi > lo]
    return sum(f.result() for f in futures)


def update_duals(Dx: np.ndarray, z: np.ndarray, u: np.ndarray) -> float:
    """Scaled dual ascent ``u += Dx - z`` in place; returns ``max|Dx - z|``."""
    r = Dx - z
    u += r
    return float(np.max(np.abs(r))) if r.size else 0.0


def elastic_energy(Dx: np.ndarray, energies: EnergyTerms) -> float:
    """ARAP energy ``sum kV/2 |F - R|^2`` of the current configuration."""
    n_e = len(energies)
    if n_e == 0:
        return 0.0
    F = Dx.reshape(n_e, 3, 3)
    U, _, Vt = np.linalg.svd(F)
    neg = np.linalg.det(U) * np.linalg.det(Vt) < 0.0
    U[neg, :, 2] *= -1.0
    R = U @ Vt
    kv = energies.lame.bulk_mod * energies.rest_volumes
    return float(0.5 * np.sum(kv * np.sum((F - R) ** 2, axis=(1, 2))))
