from __future__ import annotations

import argparse
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import numpy as np

from discontinuity_samples import ResampleStats, SampleSet, resample_discontinuities
from grid_filters import HoleFillResult, fill_holes, median_denoise, normalize_ground
from height_grid import AABB, Grid, default_workers, grid_shape, rasterize_max_height
from height_raster_io import save_height_raster
from ply_io import PlyMesh, read_ply, write_ply
from spatial_index import KDTreeIndex
from surface_recon import (
    PoissonReconstructor,
    Reconstructor,
    missing_fusion_attributes,
    reconstruct_proxy_mesh,
    save_mesh,
)


@dataclass(frozen=True)
class HeightField:
    grid: Grid  # normalized, no sentinel left
    ground_level: float
    fill: HoleFillResult


@dataclass(frozen=True)
class ProxyMeshOutputs:
    mesh_path: Path
    height_map_path: Optional[Path]
    samples_path: Optional[Path]
    meta_path: Optional[Path]
    num_vertices: int
    num_faces: int


def load_cloud(path: Path, fuse: bool = False) -> PlyMesh:
    """Read a point cloud and check it can be turned into a height field."""
    cloud = read_ply(Path(path))
    if cloud.num_vertices == 0:
        raise ValueError(f"Point cloud is empty: {path}")
    if cloud.num_faces:
        raise ValueError(f"Expected a point cloud without faces, got {cloud.num_faces} faces: {path}")
    if fuse:
        missing = missing_fusion_attributes(cloud)
        if missing:
            raise ValueError(f"Fusing needs per-vertex {', '.join(missing)}; not found in {path}")
    return cloud


def build_height_field(
    points: np.ndarray,
    aabb: AABB,
    resolution: float,
    workers: int = 1,
    max_fill_iterations: int = 0,
) -> HeightField:
    width, height = grid_shape(aabb, resolution)
    print(f"Creating height map ({width}x{height})")
    grid = rasterize_max_height(points, aabb, resolution, shape=(width, height))
    print(f"[grid] {grid.count_valid()} occupied cells")

    grid = median_denoise(grid, workers=workers)
    print(f"[denoise] {grid.count_valid()} valid cells after 3x3 median")

    fill = fill_holes(grid, workers=workers, max_iterations=max_fill_iterations)
    print(f"[fill] {fill.iterations} iterations")
    if fill.remaining_holes:
        print(f"[WARN] {fill.remaining_holes} holes left unfilled; they are flattened to ground level")

    normalized, ground = normalize_ground(fill.grid, workers=workers)
    print(f"[grid] ground level {ground:.6g}")
    return HeightField(grid=normalized, ground_level=ground, fill=fill)


def _samples_to_ply(samples: SampleSet) -> PlyMesh:
    return PlyMesh(
        vertices=samples.positions,
        normals=samples.normals,
        colors=samples.colors,
        values=samples.scales,
        confidences=samples.confidences,
    )


def run(
    cloud_path: Path,
    mesh_path: Path,
    resolution: float = 1.0,
    height_map_path: Optional[Path] = None,
    fuse: bool = False,
    samples_path: Optional[Path] = None,
    meta_path: Optional[Path] = None,
    workers: Optional[int] = None,
    max_fill_iterations: int = 0,
    poisson_depth: int = 0,
    reconstructor: Optional[Reconstructor] = None,
) -> ProxyMeshOutputs:
    if not float(resolution) > 0.0:
        raise ValueError("resolution must be > 0")
    if workers is not None and int(workers) < 1:
        raise ValueError("workers must be >= 1")
    if int(max_fill_iterations) < 0:
        raise ValueError("max_fill_iterations must be >= 0")
    n_workers = int(workers) if workers is not None else default_workers()

    cloud = load_cloud(Path(cloud_path), fuse=fuse)
    aabb = AABB.from_points(cloud.vertices)
    if aabb.volume() <= 0.0:
        raise ValueError(f"Point cloud bounding box has no volume: min={aabb.min.tolist()} max={aabb.max.tolist()}")

    field = build_height_field(
        cloud.vertices,
        aabb,
        resolution,
        workers=n_workers,
        max_fill_iterations=max_fill_iterations,
    )
    if height_map_path is not None:
        height_map_path = save_height_raster(field.grid, Path(height_map_path))

    index = KDTreeIndex(cloud.vertices) if fuse else None
    samples, stats = resample_discontinuities(
        field.grid,
        field.ground_level,
        resolution,
        aabb,
        fuse=fuse,
        index=index,
        workers=n_workers,
    )
    print(f"[resample] {stats.surface} surface + {stats.walls} wall samples")
    if stats.suppressed_fused or stats.suppressed_concave:
        print(f"[resample] suppressed {stats.suppressed_fused} covered by the cloud, {stats.suppressed_concave} in pits")
    if samples_path is not None:
        samples_path = Path(samples_path)
        write_ply(samples_path, _samples_to_ply(samples))

    if reconstructor is None:
        reconstructor = PoissonReconstructor(depth=int(poisson_depth))
    mesh, removed = reconstruct_proxy_mesh(
        samples,
        resolution,
        reconstructor,
        cloud=cloud if fuse else None,
    )
    mesh_path = save_mesh(mesh, Path(mesh_path))

    if meta_path is not None:
        meta_path = Path(meta_path)
        meta_path.parent.mkdir(parents=True, exist_ok=True)
        meta_path.write_text(
            json.dumps(
                _meta(cloud_path, resolution, fuse, n_workers, field, stats, removed, mesh.num_vertices, mesh.num_faces),
                indent=2,
            ),
            encoding="utf-8",
        )

    return ProxyMeshOutputs(
        mesh_path=mesh_path,
        height_map_path=height_map_path,
        samples_path=samples_path,
        meta_path=meta_path,
        num_vertices=mesh.num_vertices,
        num_faces=mesh.num_faces,
    )


def _meta(
    cloud_path: Path,
    resolution: float,
    fuse: bool,
    workers: int,
    field: HeightField,
    stats: ResampleStats,
    removed: int,
    num_vertices: int,
    num_faces: int,
) -> dict:
    return {
        "cloud": str(cloud_path),
        "resolution": float(resolution),
        "fuse": bool(fuse),
        "workers": int(workers),
        "grid": {"width": field.grid.width, "height": field.grid.height, "ground_level": float(field.ground_level)},
        "hole_fill": {
            "iterations": int(field.fill.iterations),
            "remaining_holes": int(field.fill.remaining_holes),
            "converged": bool(field.fill.converged),
        },
        "samples": {
            "surface": stats.surface,
            "walls": stats.walls,
            "suppressed_fused": stats.suppressed_fused,
            "suppressed_concave": stats.suppressed_concave,
        },
        "mesh": {"vertices": int(num_vertices), "faces": int(num_faces), "removed_zero_confidence": int(removed)},
    }


def main() -> None:
    ap = argparse.ArgumentParser(description="Build a proxy mesh from a point cloud via a height field.")
    ap.add_argument("cloud", type=Path, help="Input point cloud (.ply, no faces)")
    ap.add_argument("mesh", type=Path, help="Output mesh path (.ply keeps confidences; other formats via open3d)")
    ap.add_argument("-r", "--resolution", type=float, default=1.0, help="Height map cell size in cloud units")
    ap.add_argument("-H", "--height-map", type=Path, default=None, help="Write the normalized height map (.pfm/.npy/.tif)")
    ap.add_argument(
        "-f",
        "--fuse-samples",
        action="store_true",
        help="Fuse with the original cloud (needs normals, value and confidence per vertex)",
    )
    ap.add_argument("--samples", type=Path, default=None, help="Write the synthesized samples as a PLY point set")
    ap.add_argument("--workers", type=int, default=None, help="Worker threads (default: CPU count)")
    ap.add_argument("--max-fill-iterations", type=int, default=0, help="Cap hole filling passes (0 = until stalled)")
    ap.add_argument("--poisson-depth", type=int, default=0, help="Poisson octree depth (0 = derive from extent)")
    ap.add_argument("--meta", type=Path, default=None, help="Write run parameters and statistics as JSON")
    args = ap.parse_args()

    out = run(
        cloud_path=args.cloud,
        mesh_path=args.mesh,
        resolution=float(args.resolution),
        height_map_path=args.height_map,
        fuse=bool(args.fuse_samples),
        samples_path=args.samples,
        meta_path=args.meta,
        workers=args.workers,
        max_fill_iterations=int(args.max_fill_iterations),
        poisson_depth=int(args.poisson_depth),
    )

    print("Wrote:")
    print(f"- {out.mesh_path}")
    for p in (out.height_map_path, out.samples_path, out.meta_path):
        if p is not None:
            print(f"- {p}")


if __name__ == "__main__":
    main()
