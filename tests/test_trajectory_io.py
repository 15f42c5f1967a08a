import numpy as np
import pytest

from trajectory_io import CameraInfo, load_trajectory, save_trajectory


def _rot_z(deg):
    a = np.deg2rad(deg)
    return np.array(
        [[np.cos(a), -np.sin(a), 0.0], [np.sin(a), np.cos(a), 0.0], [0.0, 0.0, 1.0]],
        dtype=np.float32,
    )


def test_save_then_load_restores_cameras(tmp_path):
    cams = [
        CameraInfo(trans=np.array([1.0, 2.0, 3.0], dtype=np.float32), rot=_rot_z(30), flen=0.8),
        CameraInfo(trans=np.array([-4.0, 0.5, 0.0], dtype=np.float32), rot=np.eye(3, dtype=np.float32), flen=1.2),
    ]
    path = tmp_path / "traj.txt"
    save_trajectory(cams, path)

    back = load_trajectory(path)

    assert len(back) == 2
    for a, b in zip(cams, back):
        np.testing.assert_allclose(b.rot, a.rot, atol=1e-6)
        np.testing.assert_allclose(b.trans, a.trans, atol=1e-5)
        assert b.flen == pytest.approx(a.flen)


def test_file_stores_camera_position(tmp_path):
    cam = CameraInfo(trans=np.array([1.0, 2.0, 3.0], dtype=np.float32), rot=np.eye(3, dtype=np.float32), flen=1.0)
    path = tmp_path / "traj.txt"
    save_trajectory([cam], path)

    lines = path.read_text(encoding="utf-8").splitlines()
    assert lines[0] == "1"
    assert [float(t) for t in lines[1].split()] == [-1.0, -2.0, -3.0]
    np.testing.assert_allclose(cam.position(), [-1.0, -2.0, -3.0])


def test_short_or_malformed_file_is_rejected(tmp_path):
    short = tmp_path / "short.txt"
    short.write_text("2\n0 0 0\n1 0 0\n0 1 0\n0 0 1\n1.0\n", encoding="utf-8")
    with pytest.raises(ValueError, match="Invalid trajectory"):
        load_trajectory(short)

    junk = tmp_path / "junk.txt"
    junk.write_text("1\n0 0 zero\n1 0 0\n0 1 0\n0 0 1\n1.0\n", encoding="utf-8")
    with pytest.raises(ValueError, match="Invalid trajectory"):
        load_trajectory(junk)

    with pytest.raises(FileNotFoundError):
        load_trajectory(tmp_path / "missing.txt")
