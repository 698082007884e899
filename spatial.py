"""Nearest-neighbour index used for homophilous mate search."""

from __future__ import annotations

from typing import List, Sequence, Tuple

import numpy as np
from scipy.spatial import cKDTree


class MateIndex:
    """
    k-d tree over 2D trait points with a weighted Manhattan metric.

    The weights stretch each axis before the tree is built, so a plain L1
    query on the stretched points returns
    ``w0 * |dx0| + w1 * |dx1|`` as the distance.
    """

    def __init__(self, points: Sequence[Sequence[float]], weights: Sequence[float] = (1.0, 1.0)):
        coords = np.asarray(points, dtype=float).reshape(-1, 2)
        self.weights = np.asarray(weights, dtype=float)
        self.size = coords.shape[0]
        self._tree = cKDTree(coords * self.weights)

    def __len__(self) -> int:
        return self.size

    def k_nearest(self, point: Sequence[float], k: int) -> List[Tuple[int, float]]:
        """Return up to ``k`` ``(index, distance)`` tuples, closest first."""
        k = min(int(k), self.size)
        if k <= 0:
            return []
        query = np.asarray(point, dtype=float) * self.weights
        dists, idxs = self._tree.query(query, k=k, p=1)
        dists = np.atleast_1d(dists)
        idxs = np.atleast_1d(idxs)
        # cKDTree pads missing neighbours with index == size and inf distance
        return [(int(i), float(d)) for i, d in zip(idxs, dists) if i < self.size]
