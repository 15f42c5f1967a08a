from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Tuple

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view
from scipy import ndimage

from height_grid import SENTINEL, Grid, map_row_bands, reset_border


@dataclass(frozen=True)
class HoleFillResult:
    grid: Grid
    iterations: int
    remaining_holes: int
    converged: bool


def median_denoise(grid: Grid, workers: int = 1) -> Grid:
    """Single 3x3 median pass to knock out spikes.

    Sentinel cells take part in the median like any other value, so sparse
    neighborhoods can collapse back to sentinel. Border cells are cleared.
    """
    src = grid.values
    h, w = src.shape
    out = np.empty_like(src)

    def band(y0: int, y1: int) -> None:
        lo = max(y0 - 1, 0)
        hi = min(y1 + 1, h)
        filt = ndimage.median_filter(src[lo:hi], size=3, mode="nearest")
        out[y0:y1] = filt[y0 - lo : y1 - lo]

    map_row_bands(band, h, workers)
    reset_border(out)
    return Grid(values=out)


def fill_holes(
    grid: Grid,
    workers: int = 1,
    max_iterations: int = 0,
    min_neighbors: int = 3,
) -> HoleFillResult:
    """Iteratively inpaint sentinel cells with the median of their valid neighbors.

    A hole needs at least `min_neighbors` valid cells in its 3x3 neighborhood;
    the upper median of those is used. Passes repeat until no unfillable hole
    is left. A pass that fills nothing would repeat identically, so the loop
    also stops there; `max_iterations` (0 = no cap) bounds it further.
    """
    values = grid.values.copy()
    reset_border(values)
    h, w = values.shape

    iterations = 0
    converged = h < 3 or w < 3
    while not converged:
        if max_iterations and iterations >= int(max_iterations):
            break

        src = values
        out = np.empty_like(src)
        win = sliding_window_view(src, (3, 3))

        def band(y0: int, y1: int) -> Tuple[int, bool]:
            out[y0:y1] = src[y0:y1]
            ys0 = max(y0, 1)
            ys1 = min(y1, h - 1)
            if ys1 <= ys0:
                return 0, False
            holes = src[ys0:ys1, 1:-1] == SENTINEL
            if not np.any(holes):
                return 0, False

            hy, hx = np.nonzero(holes)
            # win[i, j] is the neighborhood centred on (i + 1, j + 1)
            neigh = win[hy + ys0 - 1, hx].reshape(-1, 9)
            valid = neigh != SENTINEL
            n = valid.sum(axis=1)
            ok = n >= int(min_neighbors)

            ranked = np.sort(np.where(valid, neigh, np.float32(np.inf)), axis=1)
            med = ranked[np.arange(n.shape[0]), n // 2]
            out[hy[ok] + ys0, hx[ok] + 1] = med[ok]
            return int(np.count_nonzero(ok)), bool(np.any(~ok))

        results = map_row_bands(band, h, workers)
        reset_border(out)
        values = out
        iterations += 1

        filled = sum(r[0] for r in results)
        holes_left = any(r[1] for r in results)
        if not holes_left:
            converged = True
        elif filled == 0:
            break

    result = Grid(values=values)
    return HoleFillResult(
        grid=result,
        iterations=iterations,
        remaining_holes=result.interior_holes(),
        converged=converged,
    )


def normalize_ground(grid: Grid, workers: int = 1) -> Tuple[Grid, float]:
    """Shift heights so the lowest valid cell sits at 0.

    Returns (normalized grid, ground level). Cells still holding the sentinel
    are set to 0.0.
    """
    src = grid.values
    h = src.shape[0]

    def band_min(y0: int, y1: int) -> float:
        v = src[y0:y1]
        v = v[v != SENTINEL]
        return float(v.min()) if v.size else math.inf

    ground = min(map_row_bands(band_min, h, workers), default=math.inf)
    if not math.isfinite(ground):
        raise ValueError("Height map has no valid cells")

    ground_f32 = np.float32(ground)
    out = np.empty_like(src)

    def band(y0: int, y1: int) -> None:
        v = src[y0:y1]
        out[y0:y1] = np.where(v != SENTINEL, v - ground_f32, np.float32(0.0))

    map_row_bands(band, h, workers)
    return Grid(values=out), float(ground_f32)
