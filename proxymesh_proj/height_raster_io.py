from __future__ import annotations

from pathlib import Path

import numpy as np
from PIL import Image

from height_grid import Grid


RASTER_SUFFIXES = (".pfm", ".npy", ".tif", ".tiff")


def _save_pfm(path: Path, values: np.ndarray) -> None:
    """Single-channel PFM: rows stored bottom-to-top, negative scale = little endian."""
    h, w = values.shape
    with path.open("wb") as f:
        f.write(b"Pf\n")
        f.write(f"{w} {h}\n".encode("ascii"))
        f.write(b"-1.0\n")
        f.write(np.flipud(values).astype("<f4").tobytes())


def _read_token_line(f) -> str:
    line = f.readline()
    if not line:
        raise ValueError("Unexpected EOF in PFM header")
    return line.decode("ascii", "replace").strip()


def _load_pfm(path: Path) -> np.ndarray:
    with path.open("rb") as f:
        magic = _read_token_line(f)
        if magic == "PF":
            raise ValueError("Color PFM is not a height raster")
        if magic != "Pf":
            raise ValueError(f"Not a PFM file: {path}")
        dims = _read_token_line(f).split()
        if len(dims) != 2:
            raise ValueError(f"Malformed PFM dimensions: {dims}")
        w, h = int(dims[0]), int(dims[1])
        scale = float(_read_token_line(f))
        dtype = "<f4" if scale < 0 else ">f4"
        raw = f.read(w * h * 4)
    if len(raw) != w * h * 4:
        raise ValueError(f"Truncated PFM data: {path}")
    data = np.frombuffer(raw, dtype=dtype).reshape(h, w)
    return np.flipud(data).astype(np.float32)


def save_height_raster(grid: Grid, path: Path) -> Path:
    """Persist a height grid; the format follows the file suffix."""
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix not in RASTER_SUFFIXES:
        raise ValueError(f"Unsupported height raster suffix '{path.suffix}' (use one of {', '.join(RASTER_SUFFIXES)})")
    path.parent.mkdir(parents=True, exist_ok=True)

    values = np.ascontiguousarray(grid.values, dtype=np.float32)
    if suffix == ".pfm":
        _save_pfm(path, values)
    elif suffix == ".npy":
        np.save(path, values)
    else:
        # 32-bit float TIFF (mode "F")
        Image.fromarray(values).save(path)
    return path


def load_height_raster(path: Path) -> Grid:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(path)
    suffix = path.suffix.lower()
    if suffix == ".pfm":
        values = _load_pfm(path)
    elif suffix == ".npy":
        values = np.load(path)
        if values.ndim != 2:
            raise ValueError("Expected a single-channel height raster")
        values = values.astype(np.float32)
    elif suffix in (".tif", ".tiff"):
        with Image.open(path) as im:
            if im.mode != "F":
                raise ValueError(f"Expected a 32-bit float raster, got mode {im.mode}")
            values = np.array(im, dtype=np.float32)
    else:
        raise ValueError(f"Unsupported height raster suffix '{path.suffix}'")
    return Grid(values=np.ascontiguousarray(values))

