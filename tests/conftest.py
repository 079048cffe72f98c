import numpy as np
import geopandas as gpd
import pandas as pd
import pytest

from dpm_krige import config
from dpm_krige.surfaces import PredictionGrid, SurfaceRaster


def make_samples(xy, values, scenario="current"):
    xy = np.asarray(xy, dtype=float)
    df = pd.DataFrame({"x": xy[:, 0], "y": xy[:, 1], config.VALUE_FIELD: np.asarray(values, dtype=float)})
    df["scenario"] = scenario
    return gpd.GeoDataFrame(df, geometry=gpd.points_from_xy(df["x"], df["y"]), crs=f"EPSG:{config.ANALYSIS_EPSG}")


def smooth_field(xy, scale=1.0):
    x, y = xy[:, 0], xy[:, 1]
    return scale * (5.0 + 3.0 * np.sin(x / 8000.0) + 2.0 * np.cos(y / 6000.0))


def write_moves_file(path, xy_m, values):
    header = [
        "MOVES receptor output",
        "Pollutant: DPM",
        "Units: ug/m3",
        "Run: synthetic",
        "",
        "X_KM Y_KM CONC",
    ]
    rows = [f"{x / 1000.0:.6f} {y / 1000.0:.6f} {v:.8f}" for (x, y), v in zip(xy_m, values)]
    path.write_text("\n".join(header + rows) + "\n", encoding="utf-8")
    return path


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def field_xy(rng):
    # receptors in a 20 km box on the UTM 10N grid near the Bay Area
    return np.column_stack([
        550000.0 + rng.uniform(0, 20000, 60),
        4180000.0 + rng.uniform(0, 20000, 60),
    ])


@pytest.fixture
def field_samples(field_xy):
    return make_samples(field_xy, smooth_field(field_xy))


@pytest.fixture
def small_grid():
    return PredictionGrid(minx=0.0, maxy=4000.0, cell=1000.0, ncols=4, nrows=4)


@pytest.fixture
def make_surface(small_grid):
    def _make(values, name="s", variance=None):
        return SurfaceRaster(name=name, grid=small_grid, values=values, variance=variance)
    return _make
