import geopandas as gpd
import numpy as np
import pytest
from shapely.geometry import Point, box

from dpm_krige.errors import GridMismatchError
from dpm_krige.surfaces import (
    PredictionGrid,
    SurfaceRaster,
    build_grid,
    lookup_points,
    mask_to_boundary,
    ratio_surface,
    read_geotiff,
    sample_surface,
    surface_stats,
    write_geotiff,
)

# left half of the 4x4 km small_grid
LEFT_HALF = box(0, 0, 2000, 4000)


def test_build_grid_expands_to_whole_cells():
    grid = build_grid((0.0, 0.0, 2100.0, 900.0), cell=500.0)
    assert (grid.ncols, grid.nrows) == (5, 2)
    assert grid.bounds == (0.0, 0.0, 2500.0, 1000.0)
    assert grid.xs()[0] == 250.0
    assert grid.ys()[0] == 750.0


def test_build_grid_rejects_bad_cell():
    with pytest.raises(ValueError):
        build_grid((0, 0, 10, 10), cell=0)


def test_ratio_of_constant_surfaces(make_surface):
    current = mask_to_boundary(make_surface(np.full((4, 4), 2.0), "current"), LEFT_HALF)
    tier4 = make_surface(np.full((4, 4), 1.0), "tier4")

    ratio = ratio_surface(current, tier4)

    assert np.all(ratio.values[:, :2] == 2.0)
    assert np.isnan(ratio.values[:, 2:]).all()


def test_ratio_is_undefined_for_zero_denominator(make_surface):
    num = make_surface(np.full((4, 4), 3.0))
    den_values = np.full((4, 4), 1.5)
    den_values[0, 0] = 0.0
    den_values[1, 1] = np.nan
    ratio = ratio_surface(num, make_surface(den_values))

    assert np.isnan(ratio.values[0, 0])
    assert np.isnan(ratio.values[1, 1])
    assert ratio.values[2, 2] == 2.0


def test_ratio_inverts_under_swap(make_surface, rng):
    a_vals = rng.uniform(0.5, 3.0, (4, 4))
    b_vals = rng.uniform(0.5, 3.0, (4, 4))
    b_vals[3, 3] = np.nan
    a, b = make_surface(a_vals, "a"), make_surface(b_vals, "b")

    ab = ratio_surface(a, b).values
    ba = ratio_surface(b, a).values

    both = np.isfinite(ab) & np.isfinite(ba)
    assert both.sum() == 15
    np.testing.assert_allclose(ab[both], 1.0 / ba[both])


def test_ratio_requires_same_grid(make_surface):
    other = SurfaceRaster("o", PredictionGrid(0.0, 4000.0, 500.0, 8, 8), np.ones((8, 8)))
    with pytest.raises(GridMismatchError):
        ratio_surface(make_surface(np.ones((4, 4))), other)


def test_mask_is_idempotent(make_surface, rng):
    surface = make_surface(rng.uniform(0, 1, (4, 4)), variance=rng.uniform(0, 1, (4, 4)))

    once = mask_to_boundary(surface, LEFT_HALF)
    twice = mask_to_boundary(once, LEFT_HALF)

    np.testing.assert_array_equal(once.values, twice.values)
    np.testing.assert_array_equal(once.variance, twice.variance)
    assert np.isnan(once.values[:, 2:]).all()
    assert np.isfinite(once.values[:, :2]).all()
    # the input surface is untouched
    assert np.isfinite(surface.values).all()


def test_lookup_points_inside_outside_and_masked(make_surface):
    values = np.arange(16, dtype=float).reshape(4, 4)
    surface = mask_to_boundary(make_surface(values), LEFT_HALF)

    out = lookup_points(surface, [500.0, 1500.0, 3500.0, -10.0], [3500.0, 500.0, 3500.0, 100.0])

    assert out[0] == 0.0     # top-left cell
    assert out[1] == 13.0    # bottom row, second column
    assert np.isnan(out[2])  # masked
    assert np.isnan(out[3])  # off the grid


def test_lookup_points_on_the_outer_edges(make_surface):
    values = np.arange(16, dtype=float).reshape(4, 4)
    surface = make_surface(values)

    # bottom edge, right edge, bottom-right corner, top-left corner
    out = lookup_points(surface, [500.0, 4000.0, 4000.0, 0.0], [0.0, 3500.0, 0.0, 4000.0])

    assert out.tolist() == [12.0, 3.0, 15.0, 0.0]


def test_sample_surface_uses_representative_point_for_polygons(make_surface):
    values = np.arange(16, dtype=float).reshape(4, 4)
    layer = gpd.GeoDataFrame(
        {"name": ["school", "campus", "far"]},
        geometry=[Point(2500, 2500), box(100, 100, 900, 900), Point(9000, 9000)],
        crs="EPSG:32610",
    )

    out = sample_surface(make_surface(values), layer, "dpm_current")

    assert out["dpm_current"].iloc[0] == 6.0
    assert out["dpm_current"].iloc[1] == 12.0
    assert np.isnan(out["dpm_current"].iloc[2])
    assert "dpm_current" not in layer.columns


def test_surface_stats(make_surface):
    values = np.full((4, 4), np.nan)
    values[0, :2] = [1.0, 3.0]
    stats = surface_stats(make_surface(values))
    assert stats["valid_cells"] == 2
    assert stats["mean"] == 2.0

    empty = surface_stats(make_surface(np.full((4, 4), np.nan)))
    assert empty["valid_cells"] == 0 and empty["mean"] is None


def test_geotiff_keeps_missing_cells_and_variance(make_surface, tmp_path, rng):
    values = rng.uniform(0, 5, (4, 4))
    values[0, 0] = np.nan
    variance = rng.uniform(0, 1, (4, 4))
    surface = make_surface(values, "current", variance=variance)

    back = read_geotiff(write_geotiff(surface, tmp_path / "s.tif"))

    assert back.name == "current"
    assert back.grid == surface.grid
    assert np.isnan(back.values[0, 0])
    np.testing.assert_allclose(back.values[1:], values[1:], rtol=1e-6)
    np.testing.assert_allclose(back.variance, variance, rtol=1e-6)


def test_surface_shape_must_match_grid(small_grid):
    with pytest.raises(ValueError):
        SurfaceRaster("bad", small_grid, np.ones((3, 3)))
