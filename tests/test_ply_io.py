import numpy as np
import pytest

from ply_io import PlyMesh, read_ply, write_ply


def _mesh():
    return PlyMesh(
        vertices=np.array([[0, 0, 0], [1, 0, 0], [0, 1, 0], [1, 1, 0.5]], dtype=np.float32),
        faces=np.array([[0, 1, 2], [1, 3, 2]], dtype=np.int32),
        normals=np.tile(np.array([0, 0, 1], dtype=np.float32), (4, 1)),
        colors=np.array([[1, 0, 0], [0, 1, 0], [0, 0, 1], [0.5, 0.5, 0.5]], dtype=np.float32),
        values=np.array([0.1, 0.2, 0.3, -1.0], dtype=np.float32),
        confidences=np.array([1.0, 0.5, 0.0, 0.25], dtype=np.float32),
    )


@pytest.mark.parametrize("binary", [True, False])
def test_write_then_read(tmp_path, binary):
    src = _mesh()
    path = tmp_path / "m.ply"
    write_ply(path, src, binary=binary)

    back = read_ply(path)

    np.testing.assert_array_equal(back.vertices, src.vertices)
    np.testing.assert_array_equal(back.faces, src.faces)
    np.testing.assert_array_equal(back.normals, src.normals)
    np.testing.assert_array_equal(back.values, src.values)
    np.testing.assert_array_equal(back.confidences, src.confidences)
    # colors go through uchar
    np.testing.assert_allclose(back.colors, src.colors, atol=1.0 / 255.0)


def test_point_set_without_optional_attributes(tmp_path):
    path = tmp_path / "pts.ply"
    write_ply(path, PlyMesh(vertices=np.zeros((3, 3), dtype=np.float32)))

    back = read_ply(path)

    assert back.num_vertices == 3
    assert back.num_faces == 0
    assert back.normals is None and back.colors is None
    assert back.values is None and back.confidences is None
    assert b"element face" not in path.read_bytes()


def test_reads_hand_written_ascii(tmp_path):
    path = tmp_path / "a.ply"
    path.write_text(
        "ply\n"
        "format ascii 1.0\n"
        "comment made by hand\n"
        "element vertex 3\n"
        "property float x\n"
        "property float y\n"
        "property float z\n"
        "property float value\n"
        "element face 1\n"
        "property list uchar int vertex_indices\n"
        "end_header\n"
        "0 0 0 1.5\n"
        "1 0 0 2.5\n"
        "0 1 0 3.5\n"
        "3 0 1 2\n",
        encoding="ascii",
    )

    back = read_ply(path)

    assert back.num_vertices == 3
    assert back.faces.tolist() == [[0, 1, 2]]
    np.testing.assert_array_equal(back.values, [1.5, 2.5, 3.5])


def test_big_endian_binary(tmp_path):
    path = tmp_path / "be.ply"
    header = (
        "ply\nformat binary_big_endian 1.0\nelement vertex 2\n"
        "property double x\nproperty double y\nproperty double z\nend_header\n"
    ).encode("ascii")
    body = np.array([[1, 2, 3], [4, 5, 6]], dtype=">f8").tobytes()
    path.write_bytes(header + body)

    back = read_ply(path)

    np.testing.assert_array_equal(back.vertices, [[1, 2, 3], [4, 5, 6]])
    assert back.vertices.dtype == np.float32


def test_rejects_quads(tmp_path):
    path = tmp_path / "q.ply"
    path.write_text(
        "ply\nformat ascii 1.0\nelement vertex 4\nproperty float x\nproperty float y\nproperty float z\n"
        "element face 1\nproperty list uchar int vertex_indices\nend_header\n"
        "0 0 0\n1 0 0\n1 1 0\n0 1 0\n4 0 1 2 3\n",
        encoding="ascii",
    )
    with pytest.raises(ValueError, match="triangle"):
        read_ply(path)


def test_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_ply(tmp_path / "missing.ply")

    bad = tmp_path / "bad.ply"
    bad.write_bytes(b"not a ply\n")
    with pytest.raises(ValueError):
        read_ply(bad)

    truncated = tmp_path / "short.ply"
    truncated.write_bytes(
        b"ply\nformat binary_little_endian 1.0\nelement vertex 2\n"
        b"property float x\nproperty float y\nproperty float z\nend_header\n" + b"\x00" * 12
    )
    with pytest.raises(ValueError, match="Truncated"):
        read_ply(truncated)
