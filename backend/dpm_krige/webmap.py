"""
INTERACTIVE MAP
---------------
Builds the layered folium map:

- one toggleable image overlay per surface (current, tier4, ratio), each with
  a color legend bound to its own value domain
- one clustered marker layer per point-of-interest layer, popups showing the
  joined DPM values
- a grey mask over everything outside the study area
"""

from __future__ import annotations

import base64
import logging
from pathlib import Path

import branca.colormap as bcm
import folium
import numpy as np
from folium.plugins import MarkerCluster
from folium.raster_layers import ImageOverlay

from dpm_krige import config
from dpm_krige.boundary import outside_mask
from dpm_krige.render import ramp, surface_png, value_range, wgs84_bounds

logger = logging.getLogger(__name__)

SURFACE_LABELS = {
    "current": "DPM, current fleet (µg/m³)",
    "tier4": "DPM, Tier 4 fleet (µg/m³)",
    "ratio": "DPM ratio, current / Tier 4",
}


def surface_colormap(vmin: float, vmax: float, caption: str) -> bcm.LinearColormap:
    cmap = ramp(vmin, vmax)
    cmap.caption = caption
    return cmap


def png_data_url(surface, vmin: float, vmax: float, max_dim: int = 1400) -> str:
    buf = surface_png(surface, vmin=vmin, vmax=vmax, max_dim=max_dim)
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


def add_surface(m: folium.Map, surface, show: bool = True, opacity: float = 0.7) -> None:
    label = SURFACE_LABELS.get(surface.name, surface.name)
    vmin, vmax = value_range(surface.values)

    fg = folium.FeatureGroup(name=label, show=show)
    ImageOverlay(
        name=label,
        image=png_data_url(surface, vmin, vmax),
        bounds=wgs84_bounds(surface.grid),
        opacity=opacity,
        interactive=False,
        cross_origin=False,
        zindex=1,
        control=False,
    ).add_to(fg)
    fg.add_to(m)
    surface_colormap(vmin, vmax, label).add_to(m)


def _popup_html(row, label: str, value_cols: list[str], name_col: str | None) -> str:
    title = str(row[name_col]) if name_col and row.get(name_col) is not None else label
    lines = [f"<b>{title}</b>"]
    for col in value_cols:
        v = row.get(col)
        if v is not None and np.isfinite(v):
            lines.append(f"{col}: {float(v):.4g}")
    return "<br>".join(lines)


def add_point_layer(m: folium.Map, joined, label: str, value_col: str = "dpm_current",
                    show: bool = False) -> int:
    """Clustered markers for features that have a value. Returns markers added."""
    pts = joined.to_crs(epsg=config.WEB_EPSG)
    value_cols = [c for c in pts.columns if c.startswith("dpm_")]
    name_col = next((c for c in pts.columns if c.lower() in ("name", "site_name", "facility")), None)

    has_value = np.isfinite(pts[value_col].to_numpy(dtype=np.float64))
    skipped = int((~has_value).sum())
    if skipped:
        logger.info("%s: %d feature(s) without %s left off the map", label, skipped, value_col)

    fg = folium.FeatureGroup(name=f"{label} ({int(has_value.sum())})", show=show)
    cluster = MarkerCluster(name=label, control=False, options={"disableClusteringAtZoom": 15}).add_to(fg)
    n = 0
    for _, row in pts[has_value].iterrows():
        p = row.geometry.representative_point()
        folium.Marker(
            location=[p.y, p.x],
            popup=folium.Popup(_popup_html(row, label, value_cols, name_col), max_width=260),
            tooltip=f"{label}: {float(row[value_col]):.4g}",
        ).add_to(cluster)
        n += 1
    fg.add_to(m)
    return n


def add_outside_mask(m: folium.Map, boundary, crs) -> None:
    folium.GeoJson(
        data=outside_mask(boundary, crs).to_json(),
        name="Outside study area",
        style_function=lambda f: {"fillColor": "#555555", "color": "#333333", "weight": 1, "fillOpacity": 0.35},
        control=True,
    ).add_to(m)


def build_map(surfaces: dict, layers: dict | None = None, boundary=None,
              tiles: str = "CartoDB positron") -> folium.Map:
    """
    surfaces: name -> SurfaceRaster (drawn in insertion order, first one shown)
    layers:   name -> (joined GeoDataFrame, label)
    """
    if not surfaces:
        raise ValueError("build_map needs at least one surface")
    first = next(iter(surfaces.values()))
    (south, west), (north, east) = wgs84_bounds(first.grid)

    m = folium.Map(location=[(south + north) / 2.0, (west + east) / 2.0], zoom_start=10, tiles=tiles,
                   control_scale=True)

    for i, surface in enumerate(surfaces.values()):
        add_surface(m, surface, show=(i == 0))

    if boundary is not None:
        add_outside_mask(m, boundary, first.grid.crs)

    for joined, label in (layers or {}).values():
        add_point_layer(m, joined, label)

    folium.LayerControl(collapsed=False).add_to(m)
    m.fit_bounds([[south, west], [north, east]])
    return m


def save_map(m: folium.Map, path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    m.save(str(path))
    return path
