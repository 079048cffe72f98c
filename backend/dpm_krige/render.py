"""
RASTER RENDERING
----------------
Turns a SurfaceRaster into a semi-transparent RGBA PNG for web overlays and
computes its footprint in EPSG:4326.
"""

from __future__ import annotations

import io
from functools import lru_cache

import branca.colormap as bcm
import numpy as np
from PIL import Image
from pyproj import Transformer

from dpm_krige import config
from dpm_krige.surfaces import PredictionGrid, SurfaceRaster

# ramp stops, blue -> cyan -> yellow -> red
RAMP_COLORS = ["#0000ff", "#00ffff", "#ffff00", "#ff0000"]
RAMP_INDEX = [0.0, 0.5, 0.75, 1.0]


def ramp(vmin: float = 0.0, vmax: float = 1.0) -> bcm.LinearColormap:
    """The overlay ramp stretched over [vmin, vmax]; also drawn as the map legend."""
    return bcm.LinearColormap(
        colors=RAMP_COLORS,
        index=[vmin + t * (vmax - vmin) for t in RAMP_INDEX],
        vmin=vmin,
        vmax=vmax,
    )


@lru_cache(maxsize=None)
def _ramp_lut(n: int = 256) -> np.ndarray:
    cmap = ramp()
    rgb = np.array([cmap.rgba_floats_tuple(i / (n - 1))[:3] for i in range(n)])
    return np.rint(rgb * 255).astype(np.uint8)


def value_range(values: np.ndarray, robust: bool = True) -> tuple[float, float]:
    """Color domain for a surface. Robust = 2nd..98th percentile."""
    v = values[np.isfinite(values)]
    if v.size == 0:
        return 0.0, 1.0
    if robust:
        vmin, vmax = (float(p) for p in np.percentile(v, [2, 98]))
    else:
        vmin, vmax = float(v.min()), float(v.max())
    if vmin == vmax:
        pad = 0.5 if vmin == 0.0 else 0.05 * abs(vmin)
        vmin, vmax = vmin - pad, vmax + pad
    return vmin, vmax


def colorize(data: np.ndarray, vmin: float, vmax: float, alpha: int = 160) -> np.ndarray:
    """(H,W) float -> (H,W,4) uint8 on the ramp. NaN cells are fully transparent."""
    lut = _ramp_lut()
    missing = ~np.isfinite(data)
    t = (np.clip(np.nan_to_num(data, nan=vmin), vmin, vmax) - vmin) / (vmax - vmin + 1e-9)
    rgb = lut[np.rint(t * (len(lut) - 1)).astype(np.intp)]
    a = np.where(missing, 0, alpha).astype(np.uint8)
    return np.dstack([rgb, a])


def _downsample(values: np.ndarray, max_dim: int) -> np.ndarray:
    h, w = values.shape
    if max_dim < 1:
        raise ValueError("max_dim must be >= 1.")
    step = max(1, int(np.ceil(max(h, w) / max_dim)))
    return values[::step, ::step]


def surface_png(surface: SurfaceRaster, out=None, vmin: float | None = None, vmax: float | None = None,
                max_dim: int = 1400, alpha: int = 160):
    """
    Write the colorized surface as PNG to `out` (path or file object).
    With out=None a rewound BytesIO is returned.
    """
    data = _downsample(surface.values, max_dim)
    lo, hi = value_range(surface.values)
    vmin = lo if vmin is None else vmin
    vmax = hi if vmax is None else vmax

    img = Image.fromarray(colorize(data, vmin, vmax, alpha=alpha))  # (H,W,4) uint8 -> RGBA
    buf = io.BytesIO() if out is None else out
    img.save(buf, format="PNG", optimize=True)
    if out is None:
        buf.seek(0)
    return buf


def wgs84_corners(grid: PredictionGrid) -> list[list[float]]:
    """[tl, tr, br, bl] as [lon, lat] pairs."""
    tfm = Transformer.from_crs(grid.crs, f"EPSG:{config.WEB_EPSG}", always_xy=True)
    minx, miny, maxx, maxy = grid.bounds
    tl = tfm.transform(minx, maxy)
    tr = tfm.transform(maxx, maxy)
    br = tfm.transform(maxx, miny)
    bl = tfm.transform(minx, miny)
    return [list(tl), list(tr), list(br), list(bl)]


def wgs84_bounds(grid: PredictionGrid) -> list[list[float]]:
    """[[south, west], [north, east]] as Leaflet wants it."""
    corners = np.asarray(wgs84_corners(grid))
    return [
        [float(corners[:, 1].min()), float(corners[:, 0].min())],
        [float(corners[:, 1].max()), float(corners[:, 0].max())],
    ]
