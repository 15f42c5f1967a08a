from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence

import numpy as np


@dataclass(frozen=True)
class CameraInfo:
    trans: np.ndarray  # (3,) world-to-camera translation
    rot: np.ndarray  # (3,3) world-to-camera rotation
    flen: float

    def position(self) -> np.ndarray:
        """Camera center in world space."""
        return (-self.rot.T @ self.trans).astype(np.float32)


def _fmt(v: float) -> str:
    # 9 significant digits round-trip float32 exactly
    return format(float(v), ".9g")


def save_trajectory(cameras: Sequence[CameraInfo], path: Path) -> None:
    """Write count, then per camera: position, 3 rows of rotation, focal length."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        f.write(f"{len(cameras)}\n")
        for cam in cameras:
            rot = np.asarray(cam.rot, dtype=np.float32).reshape(3, 3)
            pos = -rot.T @ np.asarray(cam.trans, dtype=np.float32).reshape(3)
            f.write(" ".join(_fmt(v) for v in pos) + "\n")
            for row in rot:
                f.write(" ".join(_fmt(v) for v in row) + "\n")
            f.write(_fmt(cam.flen) + "\n")


def load_trajectory(path: Path) -> List[CameraInfo]:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(path)
    tokens = path.read_text(encoding="utf-8").split()
    if not tokens:
        raise ValueError(f"Invalid trajectory file: {path}")

    try:
        length = int(tokens[0])
        if length < 0:
            raise ValueError("negative camera count")
        values = np.array([float(t) for t in tokens[1 : 1 + 13 * length]], dtype=np.float32)
    except ValueError as e:
        raise ValueError(f"Invalid trajectory file: {path}") from e
    if values.size != 13 * length:
        raise ValueError(f"Invalid trajectory file: {path} (expected {length} cameras)")

    cameras: List[CameraInfo] = []
    for rec in values.reshape(length, 13):
        pos = rec[0:3]
        rot = rec[3:12].reshape(3, 3)
        cameras.append(CameraInfo(trans=(-rot @ pos).astype(np.float32), rot=rot.copy(), flen=float(rec[12])))
    return cameras
