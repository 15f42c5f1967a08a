from __future__ import annotations

import argparse
from pathlib import Path
from typing import Optional, Tuple

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np

from height_grid import SENTINEL, Grid
from height_raster_io import load_height_raster


def _display_range(values: np.ndarray, mask: np.ndarray) -> Tuple[float, float]:
    valid = values[mask]
    if valid.size == 0:
        return 0.0, 1.0
    lo, hi = float(np.percentile(valid, 1)), float(np.percentile(valid, 99))
    if hi <= lo:
        lo, hi = float(valid.min()), float(valid.max())
    if hi <= lo:
        hi = lo + 1.0
    return lo, hi


def render_height_map(grid: Grid, out_path: Path, title: Optional[str] = None) -> Tuple[float, float]:
    """Plot the grid with y up and a colorbar; sentinel cells are left blank.

    Returns the (low, high) height range mapped onto the colormap.
    """
    mask = grid.values != SENTINEL
    lo, hi = _display_range(grid.values, mask)
    shown = np.ma.masked_array(np.where(mask, grid.values, np.float32(lo)), mask=~mask)

    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    aspect = grid.height / float(max(grid.width, 1))
    plt.figure(figsize=(7, max(2.5, min(12.0, 6.0 * aspect))))
    plt.imshow(shown, cmap="viridis", vmin=lo, vmax=hi, origin="lower", interpolation="nearest")
    plt.colorbar(label="height")
    plt.title(title or f"Height map {grid.width}x{grid.height}")
    plt.xlabel("x cell")
    plt.ylabel("y cell")
    plt.tight_layout()
    plt.savefig(out_path, dpi=180)
    plt.close()
    return lo, hi


def main() -> None:
    ap = argparse.ArgumentParser(description="Render a height raster (.pfm/.npy/.tif) to a PNG preview.")
    ap.add_argument("raster", type=Path, help="Height raster written by generate_proxy_mesh --height-map")
    ap.add_argument("--output", type=Path, default=None, help="PNG path (default: next to the raster)")
    ap.add_argument("--title", default=None)
    args = ap.parse_args()

    grid = load_height_raster(args.raster)
    out = args.output if args.output is not None else args.raster.with_suffix(".png")
    lo, hi = render_height_map(grid, out, title=args.title)
    print(f"[preview] {grid.width}x{grid.height}, heights {lo:.4g} .. {hi:.4g}")
    print("Wrote:")
    print(f"- {out}")


if __name__ == "__main__":
    main()
