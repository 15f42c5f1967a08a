from __future__ import annotations

from typing import Protocol

import numpy as np
from scipy.spatial import cKDTree


class SpatialIndex(Protocol):
    def query_within_radius(self, points: np.ndarray, radius: float) -> np.ndarray:
        """Return a bool mask: True where an indexed point lies within radius."""
        ...


class KDTreeIndex:
    def __init__(self, points: np.ndarray, workers: int = -1) -> None:
        pts = np.asarray(points, dtype=np.float64)
        if pts.ndim != 2 or pts.shape[1] != 3:
            raise ValueError("points must be (N,3)")
        self._tree = cKDTree(pts)
        self._workers = int(workers)

    def __len__(self) -> int:
        return int(self._tree.n)

    def query_within_radius(self, points: np.ndarray, radius: float) -> np.ndarray:
        q = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        if q.shape[0] == 0 or self._tree.n == 0:
            return np.zeros((q.shape[0],), dtype=bool)
        counts = self._tree.query_ball_point(q, r=float(radius), return_length=True, workers=self._workers)
        return np.asarray(counts) > 0
