from __future__ import annotations

import math
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple, TypeVar

import numpy as np


# Most negative float32; marks cells without data.
SENTINEL = np.float32(np.finfo(np.float32).min)

T = TypeVar("T")


@dataclass(frozen=True)
class AABB:
    min: np.ndarray  # (3,) float32
    max: np.ndarray  # (3,) float32

    @classmethod
    def from_points(cls, points: np.ndarray) -> "AABB":
        pts = np.asarray(points, dtype=np.float32)
        if pts.ndim != 2 or pts.shape[1] != 3:
            raise ValueError("points must be (N,3)")
        if pts.shape[0] == 0:
            raise ValueError("Cannot compute bounding box of an empty cloud")
        return cls(min=pts.min(axis=0), max=pts.max(axis=0))

    def volume(self) -> float:
        """Box volume; 0.0 if any extent is not positive."""
        diff = (self.max - self.min).astype(np.float64)
        if np.any(diff <= 0.0):
            return 0.0
        return float(diff[0] * diff[1] * diff[2])


@dataclass
class Grid:
    """Dense height raster indexed as values[y, x]."""

    values: np.ndarray  # (height, width) float32

    @classmethod
    def full(cls, width: int, height: int, fill: float = SENTINEL) -> "Grid":
        return cls(values=np.full((int(height), int(width)), fill, dtype=np.float32))

    @property
    def width(self) -> int:
        return int(self.values.shape[1])

    @property
    def height(self) -> int:
        return int(self.values.shape[0])

    def valid_mask(self) -> np.ndarray:
        return self.values != SENTINEL

    def count_valid(self) -> int:
        return int(np.count_nonzero(self.valid_mask()))

    def interior_holes(self) -> int:
        if self.height < 3 or self.width < 3:
            return 0
        return int(np.count_nonzero(self.values[1:-1, 1:-1] == SENTINEL))

    def copy(self) -> "Grid":
        return Grid(values=self.values.copy())


def reset_border(values: np.ndarray) -> None:
    values[0, :] = SENTINEL
    values[-1, :] = SENTINEL
    values[:, 0] = SENTINEL
    values[:, -1] = SENTINEL


def default_workers() -> int:
    return max(1, int(os.cpu_count() or 1))


def row_bands(n_rows: int, workers: int, min_rows: int = 16) -> List[Tuple[int, int]]:
    """Split [0, n_rows) into contiguous (start, stop) bands, at most one per worker."""
    n_rows = int(n_rows)
    if n_rows <= 0:
        return []
    n = max(1, min(int(workers), int(math.ceil(n_rows / float(max(min_rows, 1))))))
    edges = np.linspace(0, n_rows, num=n + 1).astype(np.int64)
    return [(int(a), int(b)) for a, b in zip(edges[:-1], edges[1:]) if b > a]


def map_row_bands(fn: Callable[[int, int], T], n_rows: int, workers: int) -> List[T]:
    """Run fn(start, stop) over row bands; results come back in band order."""
    bands = row_bands(n_rows, workers)
    if int(workers) <= 1 or len(bands) <= 1:
        return [fn(a, b) for a, b in bands]
    with ThreadPoolExecutor(max_workers=int(workers)) as ex:
        return list(ex.map(lambda band: fn(band[0], band[1]), bands))


def grid_shape(aabb: AABB, resolution: float) -> Tuple[int, int]:
    r = float(resolution)
    width = int(math.ceil(float(aabb.max[0] - aabb.min[0]) / r)) + 1
    height = int(math.ceil(float(aabb.max[1] - aabb.min[1]) / r)) + 1
    return width, height


def cell_indices(points: np.ndarray, aabb: AABB, resolution: float) -> Tuple[np.ndarray, np.ndarray]:
    """Bin planar positions to (xs, ys) cell indices.

    The centering term is r/2 (in cell units) plus 0.5 for rounding; sample
    placement in discontinuity_samples uses the same r/2 so both stay aligned.
    """
    r = np.float32(resolution)
    offset = r / np.float32(2.0) + np.float32(0.5)
    pts = np.asarray(points, dtype=np.float32)
    xs = np.floor((pts[:, 0] - aabb.min[0]) / r + offset).astype(np.int64)
    ys = np.floor((pts[:, 1] - aabb.min[1]) / r + offset).astype(np.int64)
    return xs, ys


def rasterize_max_height(
    points: np.ndarray,
    aabb: AABB,
    resolution: float,
    shape: Optional[Tuple[int, int]] = None,
) -> Grid:
    """Bin a cloud into a height grid keeping the highest z per cell.

    Bins past the far edge (possible for large resolutions because of the
    centering term) are clamped into the last row/column, which is a border
    cell and gets cleared by the first filtering pass.
    """
    if float(resolution) <= 0.0:
        raise ValueError("resolution must be > 0")
    pts = np.asarray(points, dtype=np.float32)
    if pts.ndim != 2 or pts.shape[1] != 3:
        raise ValueError("points must be (N,3)")

    width, height = shape if shape is not None else grid_shape(aabb, resolution)
    grid = Grid.full(width, height)
    if pts.shape[0] == 0:
        return grid

    xs, ys = cell_indices(pts, aabb, resolution)
    np.clip(xs, 0, width - 1, out=xs)
    np.clip(ys, 0, height - 1, out=ys)
    np.maximum.at(grid.values, (ys, xs), pts[:, 2])
    return grid
