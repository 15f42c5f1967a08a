from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence, Tuple

import numpy as np

from height_grid import AABB, Grid, map_row_bands
from spatial_index import SpatialIndex


SYNTHETIC_CONFIDENCE = 0.5
SYNTHETIC_COLOR = (0.0, 0.0, 1.0)
UP = np.array([0.0, 0.0, 1.0], dtype=np.float32)


@dataclass(frozen=True)
class Sample:
    position: np.ndarray  # (3,)
    normal: np.ndarray  # (3,) unit
    scale: float
    confidence: float
    color: np.ndarray  # (3,)


def _column(values, n: int, width: int, dtype=np.float32) -> np.ndarray:
    """Broadcast a scalar/row/array attribute to n rows."""
    arr = np.asarray(values, dtype=dtype)
    if width == 1:
        return np.broadcast_to(arr.reshape(-1), (n,)).astype(dtype)
    return np.broadcast_to(arr.reshape(-1, width) if arr.ndim > 1 else arr, (n, width)).astype(dtype)


class SampleSet:
    """Columnar collection of oriented samples.

    Blocks may be appended from several threads; each block carries an order
    key and the arrays are assembled in key order, so the result does not
    depend on which thread finished first.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._blocks: List[Tuple[int, int, Tuple[np.ndarray, ...]]] = []
        self._arrays: Optional[Tuple[np.ndarray, ...]] = None

    @classmethod
    def from_arrays(
        cls,
        positions: np.ndarray,
        normals: np.ndarray,
        scales=1.0,
        confidences=1.0,
        colors=(0.7, 0.7, 0.7),
    ) -> "SampleSet":
        s = cls()
        s.extend(positions, normals, scales, confidences, colors)
        return s

    @classmethod
    def concatenate(cls, sets: Sequence["SampleSet"]) -> "SampleSet":
        out = cls()
        for i, s in enumerate(sets):
            if len(s):
                out.extend(s.positions, s.normals, s.scales, s.confidences, s.colors, order_key=i)
        return out

    def extend(
        self,
        positions: np.ndarray,
        normals: np.ndarray,
        scales=1.0,
        confidences=1.0,
        colors=(0.7, 0.7, 0.7),
        order_key: int = 0,
    ) -> None:
        pos = np.asarray(positions, dtype=np.float32).reshape(-1, 3)
        nrm = np.asarray(normals, dtype=np.float32).reshape(-1, 3)
        if pos.shape != nrm.shape:
            raise ValueError("positions and normals must both be (N,3)")
        n = pos.shape[0]
        block = (
            pos,
            nrm,
            _column(scales, n, 1),
            _column(confidences, n, 1),
            _column(colors, n, 3),
        )
        with self._lock:
            self._blocks.append((int(order_key), len(self._blocks), block))
            self._arrays = None

    def add(self, sample: Sample, order_key: int = 0) -> None:
        self.extend(
            sample.position,
            sample.normal,
            sample.scale,
            sample.confidence,
            sample.color,
            order_key=order_key,
        )

    def _assembled(self) -> Tuple[np.ndarray, ...]:
        with self._lock:
            if self._arrays is None:
                blocks = [b for _, _, b in sorted(self._blocks, key=lambda t: (t[0], t[1]))]
                if blocks:
                    self._arrays = tuple(np.concatenate(cols, axis=0) for cols in zip(*blocks))
                else:
                    self._arrays = (
                        np.zeros((0, 3), dtype=np.float32),
                        np.zeros((0, 3), dtype=np.float32),
                        np.zeros((0,), dtype=np.float32),
                        np.zeros((0,), dtype=np.float32),
                        np.zeros((0, 3), dtype=np.float32),
                    )
            return self._arrays

    @property
    def positions(self) -> np.ndarray:
        return self._assembled()[0]

    @property
    def normals(self) -> np.ndarray:
        return self._assembled()[1]

    @property
    def scales(self) -> np.ndarray:
        return self._assembled()[2]

    @property
    def confidences(self) -> np.ndarray:
        return self._assembled()[3]

    @property
    def colors(self) -> np.ndarray:
        return self._assembled()[4]

    def with_attributes(self, scale: float, confidence: float, color: Sequence[float]) -> "SampleSet":
        return SampleSet.from_arrays(self.positions, self.normals, scale, confidence, color)

    def __len__(self) -> int:
        return int(self.positions.shape[0])

    def __getitem__(self, i: int) -> Sample:
        pos, nrm, scl, conf, col = self._assembled()
        return Sample(position=pos[i], normal=nrm[i], scale=float(scl[i]), confidence=float(conf[i]), color=col[i])

    def __iter__(self) -> Iterator[Sample]:
        for i in range(len(self)):
            yield self[i]


@dataclass(frozen=True)
class ResampleStats:
    surface: int
    walls: int
    suppressed_fused: int
    suppressed_concave: int


def _normalize_rows(v: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    norm = np.linalg.norm(v, axis=1)
    ok = norm > 0.0
    out = np.zeros_like(v)
    out[ok] = v[ok] / norm[ok, None]
    return out, ok


def _descent_fallback(rdx: np.ndarray, fdx: np.ndarray, rdy: np.ndarray, fdy: np.ndarray) -> np.ndarray:
    """Unit normal toward the lower neighbor that produced the magnitude.

    Used where the Sobel gradient cancels out (e.g. an isolated column).
    """
    cand = np.stack([rdx, -fdx, rdy, -fdy], axis=1)
    dirs = np.array(
        [[-1.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, -1.0, 0.0], [0.0, 1.0, 0.0]],
        dtype=np.float32,
    )
    return dirs[np.argmax(cand, axis=1)]


def resample_discontinuities(
    grid: Grid,
    ground_level: float,
    resolution: float,
    aabb: AABB,
    fuse: bool = False,
    index: Optional[SpatialIndex] = None,
    workers: int = 1,
) -> Tuple[SampleSet, ResampleStats]:
    """Turn a normalized height grid into oriented samples.

    Cells at least two cells away from every border are visited. A cell whose
    steepest one-sided difference m stays within one resolution step is flat
    and yields one upward sample (none when fusing, the cloud covers it).
    Otherwise it yields a surface sample with a tilted normal plus floor(m / r)
    wall samples stepping down by r along the Sobel gradient normal. Wall
    samples are dropped when fusing and the cloud already has a point within
    r, and in cells that are a pit on both axes.
    """
    r = float(resolution)
    if r <= 0.0:
        raise ValueError("resolution must be > 0")
    if fuse and index is None:
        raise ValueError("fuse mode needs a spatial index over the original cloud")

    hmap = grid.values
    h, w = hmap.shape
    ground = np.float32(ground_level)
    rf = np.float32(r)
    samples = SampleSet()

    def band(y0: int, y1: int) -> Tuple[int, int, int, int]:
        ys0 = max(y0, 2)
        ys1 = min(y1, h - 2)
        if ys1 <= ys0 or w < 5:
            return 0, 0, 0, 0

        c = hmap[ys0:ys1, 2 : w - 2]
        xm = hmap[ys0:ys1, 1 : w - 3]
        xp = hmap[ys0:ys1, 3 : w - 1]
        ym = hmap[ys0 - 1 : ys1 - 1, 2 : w - 2]
        yp = hmap[ys0 + 1 : ys1 + 1, 2 : w - 2]
        xm_ym = hmap[ys0 - 1 : ys1 - 1, 1 : w - 3]
        xp_ym = hmap[ys0 - 1 : ys1 - 1, 3 : w - 1]
        xm_yp = hmap[ys0 + 1 : ys1 + 1, 1 : w - 3]
        xp_yp = hmap[ys0 + 1 : ys1 + 1, 3 : w - 1]

        rdx = (c - xm).ravel()
        rdy = (c - ym).ravel()
        fdx = (xp - c).ravel()
        fdy = (yp - c).ravel()
        m = np.maximum(np.maximum(rdx, -fdx), np.maximum(rdy, -fdy))

        gx = ((xp_ym - xm_ym) + 2.0 * (xp - xm) + (xp_yp - xm_yp)).ravel()
        gy = ((xm_yp - xm_ym) + 2.0 * (yp - ym) + (xp_yp - xp_ym)).ravel()

        gy_idx, gx_idx = np.mgrid[ys0:ys1, 2 : w - 2]
        cell_x = gx_idx.ravel().astype(np.float32)
        cell_y = gy_idx.ravel().astype(np.float32)
        px = (cell_x - rf / np.float32(2.0)) * rf + aabb.min[0]
        py = (cell_y - rf / np.float32(2.0)) * rf + aabb.min[1]
        pz = c.ravel() + ground
        cell_id = np.arange(m.shape[0], dtype=np.int64)

        steep = m > rf
        flat = ~steep

        pos_blocks: List[np.ndarray] = []
        nrm_blocks: List[np.ndarray] = []
        key_blocks: List[Tuple[np.ndarray, np.ndarray]] = []

        n_surface = 0
        if not fuse and np.any(flat):
            sel = np.nonzero(flat)[0]
            pos_blocks.append(np.stack([px[sel], py[sel], pz[sel]], axis=1))
            nrm_blocks.append(np.broadcast_to(UP, (sel.size, 3)))
            key_blocks.append((cell_id[sel], np.zeros(sel.size, dtype=np.int64)))
            n_surface += int(sel.size)

        n_walls = n_fused = n_concave = 0
        if np.any(steep):
            sel = np.nonzero(steep)[0]
            grad = np.stack([-gx[sel], -gy[sel], np.zeros(sel.size, dtype=np.float32)], axis=1)
            wall_n, ok = _normalize_rows(grad)
            if not np.all(ok):
                bad = ~ok
                wall_n[bad] = _descent_fallback(rdx[sel][bad], fdx[sel][bad], rdy[sel][bad], fdy[sel][bad])
            top_n, _ = _normalize_rows(wall_n + UP)

            pos_blocks.append(np.stack([px[sel], py[sel], pz[sel]], axis=1))
            nrm_blocks.append(top_n)
            key_blocks.append((cell_id[sel], np.zeros(sel.size, dtype=np.int64)))
            n_surface += int(sel.size)

            counts = np.floor(m[sel] / rf).astype(np.int64)
            total = int(counts.sum())
            if total > 0:
                owner = np.repeat(np.arange(sel.size), counts)
                starts = np.cumsum(counts) - counts
                step = np.arange(total, dtype=np.int64) - np.repeat(starts, counts) + 1
                wall_pos = np.stack(
                    [
                        px[sel][owner],
                        py[sel][owner],
                        pz[sel][owner] - step.astype(np.float32) * rf,
                    ],
                    axis=1,
                )
                keep = np.ones(total, dtype=bool)
                if fuse:
                    covered = np.asarray(index.query_within_radius(wall_pos, r), dtype=bool)
                    n_fused = int(np.count_nonzero(covered))
                    keep &= ~covered
                s = sel[owner]
                pit = (fdx[s] > 0.0) & (rdx[s] < 0.0) & (fdy[s] > 0.0) & (rdy[s] < 0.0)
                n_concave = int(np.count_nonzero(pit & keep))
                keep &= ~pit

                pos_blocks.append(wall_pos[keep])
                nrm_blocks.append(wall_n[owner][keep])
                key_blocks.append((cell_id[s][keep], step[keep]))
                n_walls = int(np.count_nonzero(keep))

        if pos_blocks:
            pos = np.concatenate(pos_blocks, axis=0)
            nrm = np.concatenate(nrm_blocks, axis=0)
            cells = np.concatenate([k[0] for k in key_blocks])
            steps = np.concatenate([k[1] for k in key_blocks])
            order = np.lexsort((steps, cells))
            samples.extend(
                pos[order],
                nrm[order],
                scales=r,
                confidences=SYNTHETIC_CONFIDENCE,
                colors=SYNTHETIC_COLOR,
                order_key=ys0,
            )
        return n_surface, n_walls, n_fused, n_concave

    stats = map_row_bands(band, h, workers)

    totals = np.sum(np.asarray(stats, dtype=np.int64).reshape(-1, 4), axis=0)
    return samples, ResampleStats(
        surface=int(totals[0]),
        walls=int(totals[1]),
        suppressed_fused=int(totals[2]),
        suppressed_concave=int(totals[3]),
    )
