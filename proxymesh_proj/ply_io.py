from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Dict, Iterator, List, Optional, Tuple

import numpy as np


PLY_TO_DTYPE: Dict[str, str] = {
    "char": "i1",
    "int8": "i1",
    "uchar": "u1",
    "uint8": "u1",
    "short": "i2",
    "int16": "i2",
    "ushort": "u2",
    "uint16": "u2",
    "int": "i4",
    "int32": "i4",
    "uint": "u4",
    "uint32": "u4",
    "float": "f4",
    "float32": "f4",
    "double": "f8",
    "float64": "f8",
}

_FORMATS = {"ascii": "", "binary_little_endian": "<", "binary_big_endian": ">"}

# (name, count, props); a prop is ("scalar", type, name) or ("list", count_type, item_type, name)
_Element = Tuple[str, int, List[Tuple[str, ...]]]


def _empty_faces() -> np.ndarray:
    return np.zeros((0, 3), dtype=np.int32)


@dataclass
class PlyMesh:
    """Vertices plus optional per-vertex attributes and triangle faces."""

    vertices: np.ndarray  # (N,3) float32
    faces: np.ndarray = field(default_factory=_empty_faces)  # (M,3) int32
    normals: Optional[np.ndarray] = None  # (N,3) float32
    colors: Optional[np.ndarray] = None  # (N,3) float32 in [0,1]
    values: Optional[np.ndarray] = None  # (N,) float32
    confidences: Optional[np.ndarray] = None  # (N,) float32

    @property
    def num_vertices(self) -> int:
        return int(self.vertices.shape[0])

    @property
    def num_faces(self) -> int:
        return int(self.faces.shape[0])


def _read_ply_header(fp: BinaryIO) -> Tuple[List[_Element], str]:
    first = fp.readline()
    if first.strip() != b"ply":
        raise ValueError("Not a PLY file")

    fmt_line = fp.readline().decode("ascii", "replace").split()
    if len(fmt_line) < 2 or fmt_line[0] != "format" or fmt_line[1] not in _FORMATS:
        raise ValueError(f"Unsupported PLY format line: {' '.join(fmt_line)!r}")
    fmt = fmt_line[1]

    elements: List[_Element] = []
    current: Optional[_Element] = None
    while True:
        line = fp.readline()
        if not line:
            raise ValueError("Unexpected EOF in header")
        s = line.decode("ascii", "replace").strip()
        if not s or s.startswith("comment") or s.startswith("obj_info"):
            continue
        if s == "end_header":
            break
        parts = s.split()
        if parts[0] == "element":
            if current is not None:
                elements.append(current)
            current = (parts[1], int(parts[2]), [])
        elif parts[0] == "property":
            if current is None:
                raise ValueError("property before element")
            if len(parts) == 5 and parts[1] == "list":
                if parts[2] not in PLY_TO_DTYPE or parts[3] not in PLY_TO_DTYPE:
                    raise ValueError(f"Unsupported property line: {s}")
                current[2].append(("list", parts[2], parts[3], parts[4]))
            elif len(parts) == 3 and parts[1] in PLY_TO_DTYPE:
                current[2].append(("scalar", parts[1], parts[2]))
            else:
                raise ValueError(f"Unsupported property line: {s}")

    if current is not None:
        elements.append(current)
    return elements, fmt


def _scalar_dtype(props: List[Tuple[str, ...]], endian: str) -> np.dtype:
    return np.dtype([(p[2], endian + PLY_TO_DTYPE[p[1]]) for p in props])


def _read_records(fp: BinaryIO, dtype: np.dtype, count: int, name: str) -> np.ndarray:
    raw = fp.read(dtype.itemsize * count)
    if len(raw) != dtype.itemsize * count:
        raise ValueError(f"Truncated PLY element '{name}'")
    return np.frombuffer(raw, dtype=dtype, count=count)


def _read_binary_element(fp: BinaryIO, element: _Element, endian: str) -> Dict[str, np.ndarray]:
    name, count, props = element
    lists = [p for p in props if p[0] == "list"]
    if not lists:
        data = _read_records(fp, _scalar_dtype(props, endian), count, name)
        return {p[2]: data[p[2]] for p in props}

    if len(props) != 1:
        raise ValueError(f"Unsupported PLY element layout for '{name}'")
    _, count_type, item_type, pname = lists[0]
    dtype = np.dtype(
        [("n", endian + PLY_TO_DTYPE[count_type]), ("idx", endian + PLY_TO_DTYPE[item_type], (3,))]
    )
    data = _read_records(fp, dtype, count, name)
    if count and np.any(data["n"] != 3):
        raise ValueError("Only triangle faces are supported")
    return {pname: data["idx"].astype(np.int32)}


def _read_ascii_element(lines: Iterator[str], element: _Element) -> Dict[str, np.ndarray]:
    name, count, props = element
    rows: List[List[float]] = []
    for _ in range(count):
        try:
            line = next(lines)
        except StopIteration:
            raise ValueError(f"Truncated PLY element '{name}'") from None
        try:
            rows.append([float(t) for t in line.split()])
        except ValueError as e:
            raise ValueError(f"Malformed PLY row in element '{name}': {line.strip()!r}") from e

    lists = [p for p in props if p[0] == "list"]
    if not lists:
        arr = np.asarray(rows, dtype=np.float64).reshape(count, len(props))
        return {
            p[2]: arr[:, i].astype(np.dtype(PLY_TO_DTYPE[p[1]]))
            for i, p in enumerate(props)
        }

    if len(props) != 1:
        raise ValueError(f"Unsupported PLY element layout for '{name}'")
    faces = np.zeros((count, 3), dtype=np.int32)
    for i, row in enumerate(rows):
        if len(row) != 4 or int(row[0]) != 3:
            raise ValueError("Only triangle faces are supported")
        faces[i] = [int(v) for v in row[1:]]
    return {lists[0][3]: faces}


def _nonempty_lines(fp: BinaryIO) -> Iterator[str]:
    for raw in fp:
        s = raw.decode("ascii", "replace")
        if s.strip():
            yield s


def read_ply(path: Path) -> PlyMesh:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(path)

    columns: Dict[str, Dict[str, np.ndarray]] = {}
    with path.open("rb") as f:
        elements, fmt = _read_ply_header(f)
        if fmt == "ascii":
            lines = _nonempty_lines(f)
            for el in elements:
                columns[el[0]] = _read_ascii_element(lines, el)
        else:
            for el in elements:
                columns[el[0]] = _read_binary_element(f, el, _FORMATS[fmt])

    vertex = columns.get("vertex")
    if vertex is None or not all(k in vertex for k in ("x", "y", "z")):
        raise ValueError(f"PLY has no vertex positions: {path}")

    def stack(*keys: str) -> Optional[np.ndarray]:
        if not all(k in vertex for k in keys):
            return None
        return np.stack([vertex[k] for k in keys], axis=1)

    vertices = stack("x", "y", "z").astype(np.float32)
    normals = stack("nx", "ny", "nz")
    colors = stack("red", "green", "blue")
    if colors is not None:
        colors = colors.astype(np.float32) / 255.0 if colors.dtype == np.uint8 else colors.astype(np.float32)

    faces = _empty_faces()
    face = columns.get("face")
    if face:
        faces = next(iter(face.values())).reshape(-1, 3).astype(np.int32)

    return PlyMesh(
        vertices=vertices,
        faces=faces,
        normals=normals.astype(np.float32) if normals is not None else None,
        colors=colors,
        values=vertex["value"].astype(np.float32) if "value" in vertex else None,
        confidences=vertex["confidence"].astype(np.float32) if "confidence" in vertex else None,
    )


def _vertex_columns(mesh: PlyMesh) -> List[Tuple[str, str, np.ndarray]]:
    n = mesh.num_vertices
    cols: List[Tuple[str, str, np.ndarray]] = [
        ("float", "x", mesh.vertices[:, 0]),
        ("float", "y", mesh.vertices[:, 1]),
        ("float", "z", mesh.vertices[:, 2]),
    ]
    if mesh.normals is not None:
        cols += [("float", k, mesh.normals[:, i]) for i, k in enumerate(("nx", "ny", "nz"))]
    if mesh.colors is not None:
        rgb = np.clip(np.round(np.asarray(mesh.colors, dtype=np.float32) * 255.0), 0, 255).astype(np.uint8)
        cols += [("uchar", k, rgb[:, i]) for i, k in enumerate(("red", "green", "blue"))]
    if mesh.values is not None:
        cols.append(("float", "value", mesh.values))
    if mesh.confidences is not None:
        cols.append(("float", "confidence", mesh.confidences))
    for _, name, col in cols:
        if col.shape[0] != n:
            raise ValueError(f"Attribute '{name}' has {col.shape[0]} entries, expected {n}")
    return cols


def write_ply(path: Path, mesh: PlyMesh, binary: bool = True) -> None:
    """Write vertices (with whatever attributes are set) and triangle faces."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    cols = _vertex_columns(mesh)

    header = ["ply", "format binary_little_endian 1.0" if binary else "format ascii 1.0"]
    header.append("comment proxymesh")
    header.append(f"element vertex {mesh.num_vertices}")
    header += [f"property {t} {name}" for t, name, _ in cols]
    if mesh.num_faces:
        header.append(f"element face {mesh.num_faces}")
        header.append("property list uchar int vertex_indices")
    header.append("end_header")
    header_bytes = ("\n".join(header) + "\n").encode("ascii")

    with path.open("wb") as f:
        f.write(header_bytes)
        if binary:
            vdata = np.empty(mesh.num_vertices, dtype=np.dtype([(name, "<" + PLY_TO_DTYPE[t]) for t, name, _ in cols]))
            for _, name, col in cols:
                vdata[name] = col
            f.write(vdata.tobytes())
            if mesh.num_faces:
                fdata = np.empty(mesh.num_faces, dtype=np.dtype([("n", "u1"), ("idx", "<i4", (3,))]))
                fdata["n"] = 3
                fdata["idx"] = mesh.faces
                f.write(fdata.tobytes())
        else:
            for i in range(mesh.num_vertices):
                row = [str(int(col[i])) if t == "uchar" else repr(float(col[i])) for t, _, col in cols]
                f.write((" ".join(row) + "\n").encode("ascii"))
            for tri in mesh.faces:
                f.write(f"3 {int(tri[0])} {int(tri[1])} {int(tri[2])}\n".encode("ascii"))
