import json

import numpy as np
import pytest

from discontinuity_samples import SampleSet
from generate_proxy_mesh import build_height_field, load_cloud, run
from height_grid import AABB
from height_raster_io import load_height_raster
from ply_io import PlyMesh, read_ply, write_ply
from surface_recon import ReconstructedMesh


class SampleEchoReconstructor:
    """Returns the submitted samples as mesh vertices; the last one gets zero confidence."""

    def __init__(self):
        self.pending = []

    def submit_sample(self, sample):
        s = SampleSet()
        s.add(sample)
        self.pending.append(s)

    def submit_samples(self, samples):
        self.pending.append(samples)

    def extract_mesh(self):
        s = SampleSet.concatenate(self.pending)
        conf = s.confidences.copy()
        conf[-1] = 0.0
        return ReconstructedMesh(
            vertices=s.positions,
            faces=np.array([[0, 1, 2]], dtype=np.int32),
            normals=s.normals,
            colors=s.colors,
            confidences=conf,
        )


def _block_cloud(with_attributes=False):
    xs = np.arange(0.0, 20.01, 0.5, dtype=np.float32)
    gx, gy = np.meshgrid(xs, xs)
    ground = np.stack([gx.ravel(), gy.ravel(), np.zeros(gx.size, dtype=np.float32)], axis=1)
    top = ground[(ground[:, 0] >= 8) & (ground[:, 0] <= 12) & (ground[:, 1] >= 8) & (ground[:, 1] <= 12)].copy()
    top[:, 2] = 4.0
    pts = np.concatenate([ground, top]).astype(np.float32)
    n = pts.shape[0]
    if not with_attributes:
        return PlyMesh(vertices=pts)
    return PlyMesh(
        vertices=pts,
        normals=np.tile(np.array([0, 0, 1], dtype=np.float32), (n, 1)),
        values=np.full((n,), 0.5, dtype=np.float32),
        confidences=np.ones((n,), dtype=np.float32),
    )


def test_run_writes_mesh_and_debug_outputs(tmp_path):
    cloud = tmp_path / "cloud.ply"
    write_ply(cloud, _block_cloud())

    out = run(
        cloud_path=cloud,
        mesh_path=tmp_path / "out" / "proxy.ply",
        resolution=1.0,
        height_map_path=tmp_path / "out" / "height.npy",
        samples_path=tmp_path / "out" / "samples.ply",
        meta_path=tmp_path / "out" / "meta.json",
        workers=2,
        reconstructor=SampleEchoReconstructor(),
    )

    meta = json.loads(out.meta_path.read_text(encoding="utf-8"))
    assert meta["grid"]["width"] == 21 and meta["grid"]["height"] == 21
    assert meta["grid"]["ground_level"] == 0.0
    assert meta["hole_fill"]["converged"]
    assert meta["samples"]["walls"] > 0
    assert meta["mesh"]["removed_zero_confidence"] == 1

    samples = read_ply(out.samples_path)
    assert samples.num_vertices == meta["samples"]["surface"] + meta["samples"]["walls"]
    np.testing.assert_allclose(samples.values, 1.0)
    np.testing.assert_allclose(samples.confidences, 0.5)
    assert samples.vertices[:, 2].max() == pytest.approx(4.0)

    mesh = read_ply(out.mesh_path)
    assert mesh.num_vertices == samples.num_vertices - 1
    assert out.num_vertices == mesh.num_vertices
    assert mesh.confidences is not None

    height = load_height_raster(out.height_map_path)
    assert (height.width, height.height) == (21, 21)
    assert height.values.max() == pytest.approx(4.0)


def test_fuse_submits_cloud_and_skips_flat_samples(tmp_path):
    cloud = tmp_path / "cloud.ply"
    write_ply(cloud, _block_cloud(with_attributes=True))
    recon = SampleEchoReconstructor()

    out = run(cloud, tmp_path / "proxy.ply", fuse=True, meta_path=tmp_path / "meta.json", workers=1, reconstructor=recon)

    meta = json.loads(out.meta_path.read_text(encoding="utf-8"))
    assert meta["fuse"] is True
    assert len(recon.pending) == 2
    synthetic, original = recon.pending
    # only samples on the block edges survive when fusing
    assert len(synthetic) == meta["samples"]["surface"] + meta["samples"]["walls"]
    assert np.all(synthetic.normals[:, 2] < 1.0)
    np.testing.assert_allclose(original.scales, 0.5)


def test_build_height_field_fills_and_normalizes():
    cloud = _block_cloud()
    aabb = AABB.from_points(cloud.vertices)

    field = build_height_field(cloud.vertices, aabb, 1.0, workers=1)

    assert field.ground_level == 0.0
    assert field.fill.remaining_holes == 0
    assert field.grid.values.max() == pytest.approx(4.0)
    assert field.grid.values.min() == 0.0


def test_preconditions(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_cloud(tmp_path / "missing.ply")

    faces = tmp_path / "faces.ply"
    write_ply(
        faces,
        PlyMesh(vertices=np.eye(3, dtype=np.float32), faces=np.array([[0, 1, 2]], dtype=np.int32)),
    )
    with pytest.raises(ValueError, match="faces"):
        load_cloud(faces)

    flat = tmp_path / "flat.ply"
    write_ply(flat, PlyMesh(vertices=np.array([[0, 0, 0], [1, 1, 0]], dtype=np.float32)))
    with pytest.raises(ValueError, match="volume"):
        run(flat, tmp_path / "o.ply", reconstructor=SampleEchoReconstructor())

    plain = tmp_path / "plain.ply"
    write_ply(plain, _block_cloud())
    with pytest.raises(ValueError, match="normals"):
        load_cloud(plain, fuse=True)

    with pytest.raises(ValueError):
        run(plain, tmp_path / "o.ply", resolution=0.0)
    with pytest.raises(ValueError):
        run(plain, tmp_path / "o.ply", workers=0)
