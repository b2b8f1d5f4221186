from __future__ import annotations

import logging
from typing import Dict, Hashable, List, Sequence

import networkx as nx
import numpy as np
from scipy import sparse

logger = logging.getLogger(__name__)


def coupling_graph(*matrices: sparse.spmatrix) -> nx.Graph:
    """Graph whose edges are the off-diagonal nonzeros of the given matrices."""
    n = int(matrices[0].shape[0])
    G = nx.Graph()
    G.add_nodes_from(range(n))
    for mat in matrices:
        coo = sparse.triu(mat, k=1, format="coo")
        nz = coo.data != 0.0
        G.add_edges_from(zip(coo.row[nz].tolist(), coo.col[nz].tolist()))
    return G


def color_rows(*matrices: sparse.spmatrix, strategy: str = "largest_first") -> List[np.ndarray]:
    """Partition rows so that no two rows of a group are coupled.

    Groups are ordered by color id, which fixes the sweep order.
    """
    G = coupling_graph(*matrices)
    colors = nx.greedy_color(G, strategy=strategy)
    n_colors = max(colors.values()) + 1 if colors else 0
    groups: List[List[int]] = [[] for _ in range(n_colors)]
    for node, c in colors.items():
        groups[c].append(node)
    return [np.array(sorted(g), dtype=np.int64) for g in groups]


def is_valid_coloring(groups: Sequence[np.ndarray], *matrices: sparse.spmatrix) -> bool:
    n = int(matrices[0].shape[0])
    color_of = np.full(n, -1, dtype=np.int64)
    for c, g in enumerate(groups):
        color_of[g] = c
    if np.any(color_of < 0):
        return False
    for mat in matrices:
        coo = sparse.coo_matrix(mat)
        off = (coo.row != coo.col) & (coo.data != 0.0)
        if np.any(color_of[coo.row[off]] == color_of[coo.col[off]]):
            return False
    return True


class ColoringCache:
    """Colorings keyed by sparsity-pattern identity.

    A key is typically ``(topology_version, constraint_version)``; when the
    pattern changes the caller passes a new key and stale entries are
    dropped.
    """

    def __init__(self):
        self._groups: Dict[Hashable, List[np.ndarray]] = {}

    def get(self, key: Hashable, *matrices: sparse.spmatrix) -> List[np.ndarray]:
        groups = self._groups.get(key)
        if groups is None:
            groups = color_rows(*matrices)
            logger.debug("colored %d rows with %d colors (key=%s)", matrices[0].shape[0], len(groups), key)
            self._groups = {key: groups}
        return groups

    def invalidate(self) -> None:
        self._groups.clear()

    def __contains__(self, key: Hashable) -> bool:
        return key in self._groups
