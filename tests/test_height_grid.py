import numpy as np
import pytest

from height_grid import (
    AABB,
    SENTINEL,
    Grid,
    grid_shape,
    map_row_bands,
    rasterize_max_height,
    row_bands,
)


def _box(lo, hi):
    return AABB(min=np.array(lo, dtype=np.float32), max=np.array(hi, dtype=np.float32))


def test_single_point_lands_in_one_cell():
    aabb = _box([0, 0, 0], [4, 4, 1])
    grid = rasterize_max_height(np.array([[2.0, 1.0, 3.5]], dtype=np.float32), aabb, 1.0)

    assert (grid.width, grid.height) == (5, 5)
    assert grid.count_valid() == 1
    # floor(2 / 1 + 1/2 + 0.5) = 3, floor(1 / 1 + 1/2 + 0.5) = 2
    assert grid.values[2, 3] == np.float32(3.5)


def test_same_cell_keeps_max_height_in_any_order():
    aabb = _box([0, 0, 0], [4, 4, 5])
    pts = np.array([[2.0, 1.0, 1.0], [2.0, 1.0, 5.0]], dtype=np.float32)

    a = rasterize_max_height(pts, aabb, 1.0)
    b = rasterize_max_height(pts[::-1].copy(), aabb, 1.0)

    assert a.values[2, 3] == np.float32(5.0)
    np.testing.assert_array_equal(a.values, b.values)


def test_far_edge_bins_are_clamped_into_grid():
    aabb = _box([0, 0, 0], [4, 4, 1])
    # r = 2 shifts the far edge one bin past the last column
    grid = rasterize_max_height(np.array([[4.0, 4.0, 1.0]], dtype=np.float32), aabb, 2.0)

    assert (grid.width, grid.height) == (3, 3)
    assert grid.values[2, 2] == np.float32(1.0)
    assert grid.count_valid() == 1


def test_grid_shape_and_empty_raster():
    aabb = _box([0, 0, 0], [10.5, 3, 1])
    assert grid_shape(aabb, 1.0) == (12, 4)

    grid = rasterize_max_height(np.zeros((0, 3), dtype=np.float32), aabb, 1.0)
    assert grid.count_valid() == 0
    assert np.all(grid.values == SENTINEL)


def test_rasterize_rejects_bad_resolution():
    aabb = _box([0, 0, 0], [1, 1, 1])
    with pytest.raises(ValueError):
        rasterize_max_height(np.zeros((1, 3), dtype=np.float32), aabb, 0.0)


def test_aabb_volume():
    pts = np.array([[0, 0, 0], [2, 3, 4]], dtype=np.float32)
    assert AABB.from_points(pts).volume() == pytest.approx(24.0)

    flat = np.array([[0, 0, 0], [2, 3, 0]], dtype=np.float32)
    assert AABB.from_points(flat).volume() == 0.0

    with pytest.raises(ValueError):
        AABB.from_points(np.zeros((0, 3), dtype=np.float32))


def test_row_bands_cover_rows_contiguously():
    bands = row_bands(100, 4)
    assert bands == [(0, 25), (25, 50), (50, 75), (75, 100)]

    # small grids are not split below the minimum band height
    assert row_bands(10, 8) == [(0, 10)]
    assert row_bands(0, 4) == []


def test_map_row_bands_returns_results_in_band_order():
    seen = map_row_bands(lambda a, b: (a, b), 64, workers=4)
    assert seen == row_bands(64, 4)


def test_grid_helpers():
    grid = Grid.full(4, 3)
    assert (grid.width, grid.height) == (4, 3)
    assert grid.interior_holes() == 2

    grid.values[1, 1] = 1.0
    assert grid.count_valid() == 1
    assert grid.interior_holes() == 1

    cp = grid.copy()
    cp.values[1, 2] = 2.0
    assert grid.values[1, 2] == SENTINEL
