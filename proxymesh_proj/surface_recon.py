from __future__ import annotations

import math
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol, Tuple

import numpy as np
from scipy.spatial import cKDTree

from discontinuity_samples import SYNTHETIC_COLOR, SYNTHETIC_CONFIDENCE, Sample, SampleSet
from ply_io import PlyMesh, write_ply


ORIGINAL_COLOR = (0.7, 0.7, 0.7)


@dataclass
class ReconstructedMesh:
    vertices: np.ndarray  # (N,3) float32
    faces: np.ndarray  # (M,3) int32
    normals: Optional[np.ndarray] = None  # (N,3)
    colors: Optional[np.ndarray] = None  # (N,3) in [0,1]
    confidences: Optional[np.ndarray] = None  # (N,)

    @property
    def num_vertices(self) -> int:
        return int(self.vertices.shape[0])

    @property
    def num_faces(self) -> int:
        return int(self.faces.shape[0])

    def delete_vertices_fix_faces(self, delete: np.ndarray) -> int:
        """Drop flagged vertices and every face that uses one; remap the remaining faces.

        Returns the number of deleted vertices.
        """
        delete = np.asarray(delete, dtype=bool).reshape(-1)
        n = self.num_vertices
        if delete.shape[0] != n:
            raise ValueError(f"delete mask has {delete.shape[0]} entries, expected {n}")
        keep = ~delete

        remap = np.full((n,), -1, dtype=np.int64)
        remap[keep] = np.arange(int(np.count_nonzero(keep)), dtype=np.int64)
        if self.faces.size:
            f = remap[self.faces]
            self.faces = f[(f >= 0).all(axis=1)].astype(np.int32)

        self.vertices = self.vertices[keep]
        if self.normals is not None:
            self.normals = self.normals[keep]
        if self.colors is not None:
            self.colors = self.colors[keep]
        if self.confidences is not None:
            self.confidences = self.confidences[keep]
        return int(np.count_nonzero(delete))

    def to_ply(self) -> PlyMesh:
        return PlyMesh(
            vertices=self.vertices.astype(np.float32),
            faces=self.faces.astype(np.int32),
            normals=None if self.normals is None else self.normals.astype(np.float32),
            colors=None if self.colors is None else self.colors.astype(np.float32),
            confidences=None if self.confidences is None else self.confidences.astype(np.float32),
        )

    def to_open3d(self):
        try:
            import open3d as o3d  # type: ignore
        except Exception as e:  # pragma: no cover
            raise RuntimeError("open3d is required to export non-PLY meshes. Install: pip install open3d") from e

        mesh = o3d.geometry.TriangleMesh()
        mesh.vertices = o3d.utility.Vector3dVector(self.vertices.astype(np.float64))
        mesh.triangles = o3d.utility.Vector3iVector(self.faces.astype(np.int32))
        if self.normals is not None:
            mesh.vertex_normals = o3d.utility.Vector3dVector(self.normals.astype(np.float64))
        if self.colors is not None:
            mesh.vertex_colors = o3d.utility.Vector3dVector(np.clip(self.colors, 0.0, 1.0).astype(np.float64))
        return mesh


class Reconstructor(Protocol):
    def submit_sample(self, sample: Sample) -> None:
        ...

    def submit_samples(self, samples: SampleSet) -> None:
        ...

    def extract_mesh(self) -> ReconstructedMesh:
        ...


def vertex_confidence(
    vertices: np.ndarray,
    samples: SampleSet,
    support_factor: float = 3.0,
    chunk_size: int = 4096,
) -> Tuple[np.ndarray, np.ndarray]:
    """Per-vertex (confidence, color) from the samples around each vertex.

    A sample supports a vertex within support_factor * its scale, with a
    Gaussian falloff of width scale. Every sample inside the largest reach is
    checked, so coarse samples still count next to dense fine-scale ones.
    Confidence is the weighted mean of the supporting sample confidences and
    exactly 0 where no sample reaches. Color is taken from the nearest sample.
    """
    n = int(vertices.shape[0])
    conf = np.zeros((n,), dtype=np.float64)
    colors = np.zeros((n, 3), dtype=np.float32)
    if n == 0 or len(samples) == 0:
        return conf.astype(np.float32), colors

    pos = samples.positions.astype(np.float64)
    scales = samples.scales.astype(np.float64)
    sconf = samples.confidences.astype(np.float64)
    reach = float(support_factor) * float(max(scales.max(), 0.0))
    verts = vertices.astype(np.float64)
    tree = cKDTree(pos)

    for start in range(0, n, int(chunk_size)):
        chunk = verts[start : start + int(chunk_size)]
        hits = tree.query_ball_point(chunk, r=reach, workers=-1)
        counts = np.fromiter((len(h) for h in hits), dtype=np.int64, count=len(hits))
        if counts.sum() == 0:
            continue
        owner = np.repeat(np.arange(len(hits)), counts)
        idx = np.concatenate([np.asarray(h, dtype=np.int64) for h in hits if len(h)])

        dist = np.linalg.norm(pos[idx] - chunk[owner], axis=1)
        s = scales[idx]
        inside = dist <= float(support_factor) * s
        weight = np.where(inside, np.exp(-0.5 * (dist / np.maximum(s, 1e-12)) ** 2), 0.0)

        wsum = np.bincount(owner, weights=weight, minlength=len(hits))
        wconf = np.bincount(owner, weights=weight * sconf[idx], minlength=len(hits))
        supported = wsum > 0.0
        out = conf[start : start + len(hits)]
        out[supported] = wconf[supported] / wsum[supported]

    _, nearest = tree.query(verts, k=1, distance_upper_bound=reach, workers=-1)
    found = nearest < len(samples)
    colors[found] = samples.colors[nearest[found]]
    return conf.astype(np.float32), colors


class PoissonReconstructor:
    """Screened Poisson (open3d) over the submitted oriented samples."""

    def __init__(
        self,
        depth: int = 0,
        min_depth: int = 6,
        max_depth: int = 12,
        scale: float = 1.1,
        linear_fit: bool = False,
        support_factor: float = 3.0,
    ) -> None:
        self.depth = int(depth)
        self.min_depth = int(min_depth)
        self.max_depth = int(max_depth)
        self.scale = float(scale)
        self.linear_fit = bool(linear_fit)
        self.support_factor = float(support_factor)
        self._pending: List[SampleSet] = []

    def submit_sample(self, sample: Sample) -> None:
        s = SampleSet()
        s.add(sample)
        self._pending.append(s)

    def submit_samples(self, samples: SampleSet) -> None:
        self._pending.append(samples)

    @property
    def num_samples(self) -> int:
        return sum(len(s) for s in self._pending)

    def octree_depth(self, samples: SampleSet) -> int:
        """Depth whose finest cell roughly matches the finest sample scale."""
        if self.depth > 0:
            return self.depth
        pos = samples.positions
        extent = float(np.max(pos.max(axis=0) - pos.min(axis=0))) if len(samples) else 0.0
        scales = samples.scales[samples.scales > 0]
        if extent <= 0.0 or scales.size == 0:
            return self.min_depth
        d = int(math.ceil(math.log2(extent * self.scale / float(scales.min()))))
        return int(np.clip(d, self.min_depth, self.max_depth))

    def extract_mesh(self) -> ReconstructedMesh:
        samples = SampleSet.concatenate(self._pending)
        if len(samples) == 0:
            raise ValueError("No samples submitted; nothing to reconstruct")

        try:
            import open3d as o3d  # type: ignore
        except Exception as e:  # pragma: no cover
            raise RuntimeError("open3d is required for Poisson reconstruction. Install: pip install open3d") from e

        pcd = o3d.geometry.PointCloud()
        pcd.points = o3d.utility.Vector3dVector(samples.positions.astype(np.float64))
        pcd.normals = o3d.utility.Vector3dVector(samples.normals.astype(np.float64))
        pcd.colors = o3d.utility.Vector3dVector(np.clip(samples.colors, 0.0, 1.0).astype(np.float64))

        depth = self.octree_depth(samples)
        print(f"[recon] Poisson depth={depth} samples={len(samples)}")
        with o3d.utility.VerbosityContextManager(o3d.utility.VerbosityLevel.Error):
            mesh, _ = o3d.geometry.TriangleMesh.create_from_point_cloud_poisson(
                pcd,
                depth=int(depth),
                scale=float(self.scale),
                linear_fit=bool(self.linear_fit),
            )
        mesh.compute_vertex_normals()

        vertices = np.asarray(mesh.vertices, dtype=np.float32)
        confidences, colors = vertex_confidence(
            vertices,
            samples,
            support_factor=self.support_factor,
        )
        self._pending.clear()
        return ReconstructedMesh(
            vertices=vertices,
            faces=np.asarray(mesh.triangles, dtype=np.int32).reshape(-1, 3),
            normals=np.asarray(mesh.vertex_normals, dtype=np.float32),
            colors=colors,
            confidences=confidences,
        )


def missing_fusion_attributes(cloud: PlyMesh) -> List[str]:
    return [
        name
        for name, arr in (("normals", cloud.normals), ("value", cloud.values), ("confidence", cloud.confidences))
        if arr is None
    ]


def cloud_samples(cloud: PlyMesh) -> SampleSet:
    """Original cloud points as samples: own scale (vertex value) and confidence."""
    missing = missing_fusion_attributes(cloud)
    if missing:
        raise ValueError(f"Cloud lacks per-vertex {', '.join(missing)} needed for fusion")
    return SampleSet.from_arrays(cloud.vertices, cloud.normals, cloud.values, cloud.confidences, ORIGINAL_COLOR)


def remove_zero_confidence(mesh: ReconstructedMesh) -> int:
    if mesh.confidences is None:
        raise ValueError("Reconstructed mesh has no vertex confidences")
    return mesh.delete_vertices_fix_faces(mesh.confidences == 0.0)


def reconstruct_proxy_mesh(
    samples: SampleSet,
    resolution: float,
    reconstructor: Reconstructor,
    cloud: Optional[PlyMesh] = None,
) -> Tuple[ReconstructedMesh, int]:
    """Submit synthetic (and, when fusing, original) samples and clean the result.

    Returns (mesh, number of zero-confidence vertices removed).
    """
    synthetic = samples.with_attributes(scale=float(resolution), confidence=SYNTHETIC_CONFIDENCE, color=SYNTHETIC_COLOR)
    original = cloud_samples(cloud) if cloud is not None else None

    total = len(synthetic) + (len(original) if original is not None else 0)
    if total == 0:
        raise ValueError("Empty sample set; nothing to reconstruct")

    if len(synthetic):
        reconstructor.submit_samples(synthetic)
    if original is not None and len(original):
        reconstructor.submit_samples(original)

    mesh = reconstructor.extract_mesh()
    removed = remove_zero_confidence(mesh)
    print(f"[recon] removed {removed} zero-confidence vertices ({mesh.num_vertices} verts, {mesh.num_faces} faces left)")
    return mesh, removed


def save_mesh(mesh: ReconstructedMesh, path: Path) -> Path:
    """PLY is written natively (keeps confidences); other formats go through open3d."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.suffix.lower() == ".ply":
        write_ply(path, mesh.to_ply())
        return path

    import open3d as o3d  # type: ignore

    if not o3d.io.write_triangle_mesh(str(path), mesh.to_open3d(), write_vertex_normals=True):
        raise RuntimeError(f"Could not write mesh: {path}")
    return path
