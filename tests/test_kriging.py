import logging

import numpy as np
import pytest
from scipy.spatial import cKDTree

from dpm_krige import kriging
from dpm_krige.errors import SingularSystemError
from dpm_krige.kriging import (
    _predict_global,
    _predict_local,
    factor_matrix,
    fit,
    grid_from_samples,
    kriging_matrix,
    predict,
    predict_points,
    solve_weights,
)
from dpm_krige.surfaces import PredictionGrid
from dpm_krige.variogram import VariogramModel, sample_arrays

from conftest import make_samples

SPHERICAL = VariogramModel("spherical", sill=4.0, range=2000.0, nugget=0.0)


@pytest.fixture
def three_samples():
    return make_samples([(0, 0), (1000, 0), (0, 1000)], [10.0, 12.0, 14.0])


def test_prediction_at_sample_is_exact(three_samples):
    pred, var, wsum = predict_points(three_samples, SPHERICAL, [(0.0, 0.0)])
    assert pred[0] == 10.0
    assert var[0] == 0.0
    assert wsum[0] == pytest.approx(1.0)


def test_exact_interpolation_at_every_sample(field_samples):
    model = VariogramModel("exponential", sill=5.0, range=15000.0, nugget=0.5)
    xy, values = sample_arrays(field_samples)

    pred, var, _ = predict_points(field_samples, model, xy)

    np.testing.assert_array_equal(pred, values)
    np.testing.assert_array_equal(var, np.zeros(len(xy)))


def test_weights_sum_to_one_global(field_samples, rng):
    model = VariogramModel("spherical", sill=5.0, range=12000.0, nugget=0.2)
    targets = np.column_stack([550000.0 + rng.uniform(0, 20000, 50), 4180000.0 + rng.uniform(0, 20000, 50)])

    pred, var, wsum = predict_points(field_samples, model, targets)

    np.testing.assert_allclose(wsum, 1.0, atol=1e-8)
    assert np.isfinite(pred).all()
    assert (var >= 0).all()


def test_weights_sum_to_one_local(field_samples, rng):
    model = VariogramModel("spherical", sill=5.0, range=12000.0, nugget=0.2)
    targets = np.column_stack([550000.0 + rng.uniform(0, 20000, 20), 4180000.0 + rng.uniform(0, 20000, 20)])

    _, _, wsum = predict_points(field_samples, model, targets, n_closest=8)

    np.testing.assert_allclose(wsum, 1.0, atol=1e-8)


def test_local_with_all_samples_matches_global(field_samples, rng):
    model = VariogramModel("gaussian", sill=5.0, range=10000.0, nugget=0.3)
    targets = np.column_stack([550000.0 + rng.uniform(0, 20000, 10), 4180000.0 + rng.uniform(0, 20000, 10)])

    g_pred, g_var, _ = predict_points(field_samples, model, targets)
    l_pred, l_var, _ = predict_points(field_samples, model, targets, n_closest=len(field_samples))

    np.testing.assert_allclose(l_pred, g_pred, rtol=1e-6)
    np.testing.assert_allclose(l_var, g_var, rtol=1e-6, atol=1e-9)


def test_prediction_between_samples_is_a_weighted_mean(three_samples):
    pred, var, _ = predict_points(three_samples, SPHERICAL, [(300.0, 300.0)])
    assert 10.0 < pred[0] < 14.0
    assert var[0] > 0.0


def test_kriging_matrix_layout(three_samples):
    xy, _ = sample_arrays(three_samples)
    a = kriging_matrix(xy, SPHERICAL)

    assert a.shape == (4, 4)
    np.testing.assert_array_equal(np.diag(a)[:3], 0.0)
    np.testing.assert_array_equal(a[3, :3], 1.0)
    np.testing.assert_array_equal(a[:3, 3], 1.0)
    assert a[3, 3] == 0.0
    np.testing.assert_allclose(a, a.T)


def test_duplicate_locations_make_the_system_singular():
    dup = make_samples([(0, 0), (0, 0), (1000, 0), (0, 1000)], [10.0, 11.0, 12.0, 14.0])
    xy, _ = sample_arrays(dup)
    a = kriging_matrix(xy, SPHERICAL)
    b = np.ones(5)
    with pytest.raises(SingularSystemError):
        solve_weights(a, b)


def test_singular_cells_are_undefined(caplog):
    dup = make_samples([(0, 0), (0, 0), (1000, 0), (0, 1000)], [10.0, 11.0, 12.0, 14.0])

    with caplog.at_level(logging.WARNING, logger="dpm_krige.kriging"):
        # (0, 0) and (1000, 0) sit on samples: the singular solve still wins
        pred, var, _ = predict_points(dup, SPHERICAL, [(400.0, 400.0), (700.0, 100.0), (0.0, 0.0), (1000.0, 0.0)])

    assert np.isnan(pred).all()
    assert np.isnan(var).all()
    assert any("singular" in r.message for r in caplog.records)


def test_local_singular_cell_on_a_sample_is_undefined():
    dup = make_samples([(0, 0), (0, 0), (1000, 0), (0, 1000)], [10.0, 11.0, 12.0, 14.0])

    pred, var, _ = predict_points(dup, SPHERICAL, [(0.0, 0.0), (0.0, 1000.0)], n_closest=3)

    # both neighbourhoods hold the duplicated pair
    assert np.isnan(pred).all()
    assert np.isnan(var).all()


def test_predict_fills_the_grid(three_samples):
    grid = PredictionGrid(minx=0.0, maxy=1000.0, cell=250.0, ncols=4, nrows=4)

    surface = predict(three_samples, SPHERICAL, grid, block_rows=3)

    assert surface.name == "current"
    assert surface.values.shape == (4, 4)
    assert surface.variance.shape == (4, 4)
    assert np.isfinite(surface.values).all()
    assert surface.meta["variogram"]["family"] == "spherical"
    # row-major, top row first: first cell center is (125, 875)
    pred, _, _ = predict_points(three_samples, SPHERICAL, [(125.0, 875.0)])
    assert surface.values[0, 0] == pytest.approx(pred[0])


def test_surface_is_read_only(three_samples):
    grid = PredictionGrid(minx=0.0, maxy=1000.0, cell=500.0, ncols=2, nrows=2)
    surface = predict(three_samples, SPHERICAL, grid)
    with pytest.raises(ValueError):
        surface.values[0, 0] = 1.0


def test_grid_from_samples_covers_extent(field_samples):
    grid = grid_from_samples(field_samples, cell=500.0)
    minx, miny, maxx, maxy = field_samples.total_bounds

    assert grid.minx == pytest.approx(minx)
    assert grid.miny == pytest.approx(miny)
    assert grid.maxx >= maxx
    assert grid.maxy >= maxy
    assert grid.crs == "EPSG:32610"


def test_fit_returns_model(field_samples):
    model = fit(field_samples)
    assert isinstance(model, VariogramModel)


def test_empty_samples_rejected():
    empty = make_samples(np.empty((0, 2)), [])
    with pytest.raises(ValueError):
        predict_points(empty, SPHERICAL, [(0.0, 0.0)])


def test_solver_alone_reproduces_samples(three_samples):
    xy, values = sample_arrays(three_samples)
    factors = factor_matrix(kriging_matrix(xy, SPHERICAL))

    pred, var, wsum = _predict_global(xy, values, SPHERICAL, xy, factors)

    np.testing.assert_allclose(pred, values, rtol=1e-10)
    np.testing.assert_allclose(var, 0.0, atol=1e-9)
    np.testing.assert_allclose(wsum, 1.0, rtol=1e-10)


def test_local_solver_alone_reproduces_samples(field_samples):
    model = VariogramModel("exponential", sill=5.0, range=15000.0, nugget=0.5)
    xy, values = sample_arrays(field_samples)
    tree = cKDTree(xy)

    pred, var, wsum = _predict_local(xy, values, model, xy[:10], 8, tree)

    np.testing.assert_allclose(pred, values[:10], rtol=1e-8)
    np.testing.assert_allclose(var, 0.0, atol=1e-8)
    np.testing.assert_allclose(wsum, 1.0, rtol=1e-8)


def test_worked_example_without_snapping(three_samples):
    # a hair off the sample so no exact-hit snap applies
    pred, var, wsum = predict_points(three_samples, SPHERICAL, [(1e-6, 0.0)])
    assert pred[0] == pytest.approx(10.0, abs=1e-6)
    assert var[0] == pytest.approx(0.0, abs=1e-6)
    assert wsum[0] == pytest.approx(1.0)


def test_predict_factors_the_global_system_once(three_samples, monkeypatch):
    shapes = []
    real = kriging.factor_matrix

    def counting(a):
        shapes.append(a.shape)
        return real(a)

    monkeypatch.setattr(kriging, "factor_matrix", counting)
    grid = PredictionGrid(minx=0.0, maxy=1000.0, cell=250.0, ncols=4, nrows=4)

    surface = predict(three_samples, SPHERICAL, grid, block_rows=1)

    assert shapes == [(4, 4)]
    assert np.isfinite(surface.values).all()
