import json

import geopandas as gpd
import numpy as np
import pytest
from shapely.geometry import Point, box

from conftest import make_samples, smooth_field, write_moves_file
from dpm_krige import config, pipeline
from dpm_krige.surfaces import read_geotiff


def test_params_tag():
    assert pipeline.params_tag("spherical", 500.0, None) == "spherical_cs500m_global"
    assert pipeline.params_tag("gaussian", 250, 12) == "gaussian_cs250m_nc12"


@pytest.mark.parametrize("family,cell,n_closest", [
    ("cubic", 500.0, None),
    ("spherical", 0.0, None),
    ("spherical", 500.0, 0),
])
def test_check_params_rejects(family, cell, n_closest):
    with pytest.raises(ValueError):
        pipeline.check_params(family, cell, n_closest)


def test_surfaces_share_the_current_grid(field_xy):
    current = make_samples(field_xy, smooth_field(field_xy), "current")
    # tier4 receptors cover a smaller area; the grid must still come from current
    tier4 = make_samples(field_xy[:40], smooth_field(field_xy[:40], scale=0.5), "tier4")
    boundary = box(550000, 4180000, 560000, 4200000)

    results, ratio = pipeline.compute_surfaces(
        {"current": current, "tier4": tier4}, boundary=boundary, cell=2000.0
    )

    grid = results["current"].surface.grid
    assert results["tier4"].surface.grid == grid
    assert ratio.grid == grid

    xs = grid.xs()
    outside = xs > 560000
    assert np.isnan(ratio.values[:, outside]).all()
    assert np.isnan(results["current"].masked.values[:, outside]).all()
    assert np.isfinite(results["current"].surface.values[:, outside]).any()

    cur, t4 = results["current"].masked.values, results["tier4"].masked.values
    ok = np.isfinite(cur) & np.isfinite(t4) & (t4 != 0)
    assert ok.any()
    np.testing.assert_allclose(ratio.values[ok], cur[ok] / t4[ok])


def test_duplicates_are_counted(field_xy):
    xy = np.vstack([field_xy, field_xy[:2]])
    values = np.concatenate([smooth_field(field_xy), [99.0, 99.0]])
    samples = {
        "current": make_samples(xy, values, "current"),
        "tier4": make_samples(field_xy, smooth_field(field_xy, 0.5), "tier4"),
    }
    results, _ = pipeline.compute_surfaces(samples, cell=4000.0)
    assert results["current"].n_duplicates == 2
    assert results["current"].n_samples == len(field_xy)
    assert results["tier4"].n_duplicates == 0


def test_missing_scenario(field_samples):
    with pytest.raises(KeyError):
        pipeline.compute_surfaces({"current": field_samples})


@pytest.fixture
def workspace(tmp_path, monkeypatch, field_xy):
    moves = {
        "current": write_moves_file(tmp_path / "dpm_current.txt", field_xy, smooth_field(field_xy)),
        "tier4": write_moves_file(tmp_path / "dpm_tier4.txt", field_xy, smooth_field(field_xy, 0.5)),
    }
    schools = gpd.GeoDataFrame(
        {"name": ["A", "B", "Far away"]},
        geometry=[Point(555000, 4185000), Point(565000, 4195000), Point(700000, 4000000)],
        crs="EPSG:32610",
    ).to_crs(epsg=4326)
    schools_path = tmp_path / "schools.geojson"
    schools.to_file(schools_path, driver="GeoJSON")

    monkeypatch.setattr(config, "CACHE_DIR", tmp_path / "cache")
    monkeypatch.setattr(config, "MOVES_FILES", moves)
    monkeypatch.setattr(config, "BOUNDARY_FILE", tmp_path / "no_boundary.shp")
    monkeypatch.setattr(config, "POINT_LAYERS", {
        "schools": (schools_path, "Schools"),
        "hospitals": (tmp_path / "hospitals.shp", "Hospitals"),
    })
    return tmp_path


def test_run_all_caches_outputs(workspace):
    params = ("spherical", 2000.0, None)
    out = pipeline.run_all(*params)

    paths = out["surfaces"]
    assert set(paths) == {"current", "tier4", "ratio"}
    assert all(p.exists() for p in paths.values())
    current = read_geotiff(paths["current"], "current")
    assert read_geotiff(paths["ratio"], "ratio").grid == current.grid

    payload = json.loads(pipeline.variogram_json_path(*params).read_text(encoding="utf-8"))
    assert payload["current"]["model"]["family"] == "spherical"
    assert payload["current"]["n_samples"] == 60
    assert payload["grid"]["cell"] == 2000.0

    # missing hospitals layer is skipped, not fatal
    assert set(out["exposure"]) == {"schools"}
    summary = json.loads(pipeline.exposure_json_path(*params).read_text(encoding="utf-8"))
    assert summary["schools"]["features"] == 3
    assert summary["schools"]["columns"]["dpm_current"]["matched"] == 2
    assert summary["schools"]["columns"]["dpm_current"]["missing"] == 1

    assert out["map"].exists()
    assert "Schools" in out["map"].read_text(encoding="utf-8")

    # second run reuses the cached artifacts
    mtime = paths["current"].stat().st_mtime_ns
    again = pipeline.run_surfaces(*params)
    assert again["current"].stat().st_mtime_ns == mtime
