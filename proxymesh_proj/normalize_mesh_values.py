from __future__ import annotations

import argparse
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from ply_io import PlyMesh, read_ply, write_ply


@dataclass(frozen=True)
class NormalizationRange:
    real_min: float
    real_max: float
    min: float
    max: float
    num_values: int


def _load_with_values(path: Path) -> PlyMesh:
    mesh = read_ply(path)
    if mesh.values is None:
        raise ValueError(f"Mesh has no vertex values: {path}")
    return mesh


def normalization_range(values: Sequence[np.ndarray], epsilon: float = 0.0, ignore: float = -1.0) -> NormalizationRange:
    """Range of all values except `ignore`, trimming floor(n * epsilon / 2) from each end."""
    if not 0.0 <= float(epsilon) <= 1.0:
        raise ValueError("epsilon must be in [0.0, 1.0]")
    ign = np.float32(ignore)
    parts = [np.asarray(v, dtype=np.float32).reshape(-1) for v in values]
    flat = np.concatenate(parts) if parts else np.zeros((0,), dtype=np.float32)
    flat = np.sort(flat[flat != ign])
    n = int(flat.size)
    if n == 0:
        raise ValueError("No vertex values to normalize against")

    c = int(n * float(epsilon)) // 2
    c = min(c, (n - 1) // 2)
    return NormalizationRange(
        real_min=float(flat[0]),
        real_max=float(flat[-1]),
        min=float(flat[c]),
        max=float(flat[n - 1 - c]),
        num_values=n,
    )


def normalize_values(
    values: np.ndarray,
    rng: NormalizationRange,
    clamp: bool = False,
    ignore: float = -1.0,
) -> Tuple[np.ndarray, int]:
    """Map values into [0,1]; returns (normalized, number of outliers).

    Outliers become 0/1 with `clamp`, otherwise the ignore value. Values equal
    to the ignore value pass through. A degenerate range maps to 0.
    """
    v = np.asarray(values, dtype=np.float32)
    ign = np.float32(ignore)
    lo = np.float32(rng.min)
    hi = np.float32(rng.max)
    delta = hi - lo

    out = v.copy()
    active = v != ign
    below = active & (v < lo)
    above = active & (v > hi)
    inside = active & ~below & ~above

    if delta > 0:
        out[inside] = (v[inside] - lo) / delta
    else:
        out[inside] = 0.0
    out[below] = np.float32(0.0) if clamp else ign
    out[above] = np.float32(1.0) if clamp else ign
    return out, int(np.count_nonzero(below | above))


def run(
    in_mesh: Path,
    out_mesh: Path,
    clamp: bool = False,
    epsilon: float = 0.0,
    ignore: float = -1.0,
    meshes: Optional[List[Path]] = None,
) -> Path:
    in_mesh = Path(in_mesh)
    refs = [Path(p) for p in meshes] if meshes else [in_mesh]

    loaded: Dict[Path, PlyMesh] = {}
    for p in [in_mesh] + refs:
        if p not in loaded:
            loaded[p] = _load_with_values(p)

    rng = normalization_range([loaded[p].values for p in refs], epsilon=epsilon, ignore=ignore)
    print(f"{rng.num_values} values considered")
    print(f"Minimal value: {rng.real_min:.6g}")
    print(f"Maximal value: {rng.real_max:.6g}")
    print(f"Normalizing range {rng.min:.6g} - {rng.max:.6g}")

    target = loaded[in_mesh]
    values, outliers = normalize_values(target.values, rng, clamp=clamp, ignore=ignore)
    print(f"{'Clamped' if clamp else 'Removed'} {outliers} outliers")

    out_mesh = Path(out_mesh)
    write_ply(out_mesh, replace(target, values=values, colors=None), binary=True)
    return out_mesh


def main() -> None:
    ap = argparse.ArgumentParser(description="Normalize the per-vertex values of a PLY mesh to [0,1].")
    ap.add_argument("in_mesh", type=Path, help="Mesh whose values are normalized")
    ap.add_argument("out_mesh", type=Path, help="Output PLY")
    ap.add_argument("-c", "--clamp", action="store_true", help="Clamp outliers to 0/1 instead of removing them")
    ap.add_argument("-e", "--epsilon", type=float, default=0.0, help="Fraction of values treated as outliers [0.0]")
    ap.add_argument("-i", "--ignore", type=float, default=-1.0, help="Value marking vertices without data [-1.0]")
    ap.add_argument(
        "-m",
        "--meshes",
        default=None,
        help="Comma separated meshes the range is computed from (default: IN_MESH)",
    )
    args = ap.parse_args()

    meshes = [Path(s.strip()) for s in str(args.meshes).split(",") if s.strip()] if args.meshes else None
    out = run(
        in_mesh=args.in_mesh,
        out_mesh=args.out_mesh,
        clamp=bool(args.clamp),
        epsilon=float(args.epsilon),
        ignore=float(args.ignore),
        meshes=meshes,
    )
    print("Wrote:")
    print(f"- {out}")


if __name__ == "__main__":
    main()
