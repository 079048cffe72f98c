"""
SURFACES
--------
Prediction grid and surface raster value objects plus the post-processing
applied to kriged surfaces:

- masking to the study-area boundary
- the current / tier4 ratio surface
- point lookup of surface values for PointLayer features
- GeoTIFF read/write

Missing cells are NaN in memory and NODATA (-9999) on disk.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from pathlib import Path

import geopandas as gpd
import numpy as np
import rasterio
from rasterio.features import geometry_mask
from rasterio.transform import from_origin, rowcol
from shapely.geometry import mapping

from dpm_krige import config
from dpm_krige.errors import GridMismatchError


@dataclass(frozen=True)
class PredictionGrid:
    """Regular lattice, top-left origin, square cells. Values sit at cell centers."""

    minx: float
    maxy: float
    cell: float
    ncols: int
    nrows: int
    crs: str = f"EPSG:{config.ANALYSIS_EPSG}"

    @property
    def maxx(self) -> float:
        return self.minx + self.ncols * self.cell

    @property
    def miny(self) -> float:
        return self.maxy - self.nrows * self.cell

    @property
    def bounds(self) -> tuple[float, float, float, float]:
        return self.minx, self.miny, self.maxx, self.maxy

    @property
    def shape(self) -> tuple[int, int]:
        return self.nrows, self.ncols

    @property
    def transform(self):
        return from_origin(self.minx, self.maxy, self.cell, self.cell)

    def xs(self) -> np.ndarray:
        return self.minx + (np.arange(self.ncols, dtype=np.float64) + 0.5) * self.cell

    def ys(self, row0: int = 0, row1: int | None = None) -> np.ndarray:
        row1 = self.nrows if row1 is None else row1
        return self.maxy - (np.arange(row0, row1, dtype=np.float64) + 0.5) * self.cell

    def centers(self, row0: int = 0, row1: int | None = None) -> np.ndarray:
        """(N,2) cell-center coordinates for rows [row0, row1), row-major."""
        X, Y = np.meshgrid(self.xs(), self.ys(row0, row1))
        return np.column_stack([X.ravel(), Y.ravel()])

    def to_dict(self) -> dict:
        return {
            "minx": self.minx, "maxy": self.maxy, "cell": self.cell,
            "ncols": self.ncols, "nrows": self.nrows, "crs": self.crs,
        }


def build_grid(bounds, cell: float, crs: str = f"EPSG:{config.ANALYSIS_EPSG}") -> PredictionGrid:
    """Grid aligned to (minx, miny), expanded so maxx/maxy fit whole cells."""
    if cell <= 0:
        raise ValueError("cell size must be > 0.")
    minx, miny, maxx, maxy = bounds
    ncols = max(1, int(math.ceil((maxx - minx) / cell)))
    nrows = max(1, int(math.ceil((maxy - miny) / cell)))
    maxy2 = miny + nrows * cell
    return PredictionGrid(float(minx), float(maxy2), float(cell), ncols, nrows, crs)


@dataclass(frozen=True, eq=False)
class SurfaceRaster:
    name: str
    grid: PredictionGrid
    values: np.ndarray
    variance: np.ndarray | None = None
    meta: dict = field(default_factory=dict, compare=False)

    def __post_init__(self):
        values = np.array(self.values, dtype=np.float64)
        if values.shape != self.grid.shape:
            raise ValueError(f"values shape {values.shape} does not match grid {self.grid.shape}")
        values.setflags(write=False)
        object.__setattr__(self, "values", values)
        if self.variance is not None:
            variance = np.array(self.variance, dtype=np.float64)
            if variance.shape != self.grid.shape:
                raise ValueError(f"variance shape {variance.shape} does not match grid {self.grid.shape}")
            variance.setflags(write=False)
            object.__setattr__(self, "variance", variance)

    @property
    def valid(self) -> np.ndarray:
        return np.isfinite(self.values)

    def replace(self, **kw) -> "SurfaceRaster":
        args = {"name": self.name, "grid": self.grid, "values": self.values,
                "variance": self.variance, "meta": dict(self.meta)}
        args.update(kw)
        return SurfaceRaster(**args)


def require_same_grid(a: SurfaceRaster, b: SurfaceRaster) -> None:
    if a.grid != b.grid:
        raise GridMismatchError(f"surfaces {a.name!r} and {b.name!r} are on different grids")


def mask_to_boundary(surface: SurfaceRaster, boundary) -> SurfaceRaster:
    """Set cells whose center falls outside `boundary` to NaN."""
    outside = geometry_mask(
        [mapping(boundary)],
        out_shape=surface.grid.shape,
        transform=surface.grid.transform,
        invert=False,
        all_touched=False,  # center-in-polygon only
    )
    values = np.where(outside, np.nan, surface.values)
    variance = None if surface.variance is None else np.where(outside, np.nan, surface.variance)
    return surface.replace(values=values, variance=variance, meta={**surface.meta, "masked": True})


def ratio_surface(numerator: SurfaceRaster, denominator: SurfaceRaster, name: str = "ratio") -> SurfaceRaster:
    """Cell-wise numerator / denominator. NaN where either is missing or the denominator is 0."""
    require_same_grid(numerator, denominator)
    num = numerator.values
    den = denominator.values
    ok = np.isfinite(num) & np.isfinite(den) & (den != 0.0)
    out = np.full(num.shape, np.nan, dtype=np.float64)
    out[ok] = num[ok] / den[ok]
    return SurfaceRaster(name=name, grid=numerator.grid, values=out,
                         meta={"numerator": numerator.name, "denominator": denominator.name})


def lookup_points(surface: SurfaceRaster, x: np.ndarray, y: np.ndarray) -> np.ndarray:
    """Value of the cell containing each (x, y); NaN outside the grid or on masked cells."""
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    out = np.full(x.shape, np.nan, dtype=np.float64)
    if x.size == 0:
        return out
    minx, miny, maxx, maxy = surface.grid.bounds
    # closed extent; points on the outer edges belong to the edge cells
    inside = (x >= minx) & (x <= maxx) & (y >= miny) & (y <= maxy)
    if inside.any():
        rows, cols = rowcol(surface.grid.transform, x[inside], y[inside])
        rows = np.clip(np.asarray(rows), 0, surface.grid.nrows - 1)
        cols = np.clip(np.asarray(cols), 0, surface.grid.ncols - 1)
        out[inside] = surface.values[rows, cols]
    return out


def sample_surface(surface: SurfaceRaster, layer: gpd.GeoDataFrame, column: str) -> gpd.GeoDataFrame:
    """
    Attach the surface value at each feature's location as `column`.

    Points are looked up directly, other geometries at their representative
    point. Features outside the valid extent get NaN.
    """
    if layer.crs is not None and layer.crs != surface.grid.crs:
        layer = layer.to_crs(surface.grid.crs)
    pts = layer.geometry.representative_point()
    out = layer.copy()
    out[column] = lookup_points(surface, pts.x.to_numpy(), pts.y.to_numpy())
    return out


def surface_stats(surface: SurfaceRaster) -> dict:
    v = surface.values[surface.valid]
    if v.size == 0:
        return {"name": surface.name, "valid_cells": 0, "min": None, "mean": None, "max": None}
    return {
        "name": surface.name,
        "valid_cells": int(v.size),
        "min": float(v.min()),
        "mean": float(v.mean()),
        "max": float(v.max()),
    }


def write_geotiff(surface: SurfaceRaster, path) -> Path:
    """Band 1 = values, band 2 = kriging variance when the surface has one."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    nodata = config.NODATA
    bands = [surface.values] if surface.variance is None else [surface.values, surface.variance]

    profile = {
        "driver": "GTiff",
        "height": surface.grid.nrows,
        "width": surface.grid.ncols,
        "count": len(bands),
        "dtype": "float32",
        "crs": surface.grid.crs,
        "transform": surface.grid.transform,
        "nodata": nodata,
        "compress": "DEFLATE",
        "predictor": 2,
        "zlevel": 6,
    }
    # tiling needs blocks that fit the raster
    if surface.grid.nrows >= 256 and surface.grid.ncols >= 256:
        profile.update({"tiled": True, "blockxsize": 256, "blockysize": 256})

    with rasterio.open(path, "w", **profile) as dst:
        for i, band in enumerate(bands, start=1):
            block = np.where(np.isfinite(band), band, nodata).astype(np.float32)
            dst.write(block, i)
        dst.update_tags(name=surface.name)
    return path


def read_geotiff(path, name: str | None = None) -> SurfaceRaster:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Raster not found: {path}")

    with rasterio.open(path) as src:
        t = src.transform
        if not math.isclose(t.a, -t.e):
            raise ValueError(f"{path}: only square cells are supported")
        grid = PredictionGrid(
            minx=float(t.c), maxy=float(t.f), cell=float(t.a),
            ncols=src.width, nrows=src.height,
            crs=src.crs.to_string() if src.crs else f"EPSG:{config.ANALYSIS_EPSG}",
        )
        nodata = src.nodata
        bands = [src.read(i).astype(np.float64) for i in range(1, src.count + 1)]
        tag_name = src.tags().get("name")

    for b in bands:
        if nodata is not None:
            b[b == nodata] = np.nan
    variance = bands[1] if len(bands) > 1 else None
    return SurfaceRaster(name=name or tag_name or path.stem, grid=grid, values=bands[0], variance=variance)
