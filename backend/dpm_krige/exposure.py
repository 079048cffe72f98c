"""
EXPOSURE JOIN
-------------
Looks up kriged DPM values for every feature of the point-of-interest
layers (schools, hospitals, transit stops).

Each feature gets one column per surface (dpm_current, dpm_tier4,
dpm_ratio). Features outside the valid, masked extent keep NaN and are
counted as misses; consumers drop them explicitly.

Produces:
- a CSV per layer with the joined values
- a web GeoJSON (EPSG:4326) with only the columns the frontend uses
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

import geopandas as gpd
import numpy as np

from dpm_krige import config
from dpm_krige.load_data import read_point_layer
from dpm_krige.surfaces import read_geotiff, require_same_grid, sample_surface

logger = logging.getLogger(__name__)


def value_column(surface_name: str) -> str:
    return f"dpm_{surface_name}"


def join_layer(layer: gpd.GeoDataFrame, surfaces: dict, label: str = "layer") -> gpd.GeoDataFrame:
    """Sample every surface in `surfaces` (name -> SurfaceRaster) onto the layer."""
    surfaces = dict(surfaces)
    if not surfaces:
        raise ValueError("no surfaces to join")
    first = next(iter(surfaces.values()))
    for s in surfaces.values():
        require_same_grid(first, s)

    out = layer
    for name, surface in surfaces.items():
        out = sample_surface(surface, out, value_column(name))
        n_miss = int(out[value_column(name)].isna().sum())
        if n_miss:
            logger.warning("%s: %d of %d feature(s) outside the %s surface", label, n_miss, len(out), name)
    return out


def matched(joined: gpd.GeoDataFrame, column: str) -> gpd.GeoDataFrame:
    """Features with a value in `column`."""
    return joined[np.isfinite(joined[column].to_numpy(dtype=np.float64))]


def summarize_layer(joined: gpd.GeoDataFrame, columns: list[str] | None = None) -> dict:
    if columns is None:
        columns = [c for c in joined.columns if c.startswith("dpm_")]
    summary = {"features": int(len(joined)), "columns": {}}
    for col in columns:
        hit = matched(joined, col)[col]
        summary["columns"][col] = {
            "matched": int(len(hit)),
            "missing": int(len(joined) - len(hit)),
            "mean": float(hit.mean()) if len(hit) else None,
            "max": float(hit.max()) if len(hit) else None,
        }
    return summary


def to_web(gdf: gpd.GeoDataFrame, keep: list[str] | None = None) -> gpd.GeoDataFrame:
    """Reproject to EPSG:4326 and keep only what the frontend needs."""
    if gdf.crs is None:
        gdf = gdf.set_crs(epsg=config.ANALYSIS_EPSG)
    gdf = gdf.to_crs(epsg=config.WEB_EPSG)
    if keep is None:
        keep = ["feature_id"] + [c for c in gdf.columns if c.startswith("dpm_")]
    keep = [c for c in keep if c in gdf.columns and c != "geometry"]
    return gdf[keep + ["geometry"]]


def write_layer_outputs(joined: gpd.GeoDataFrame, name: str, out_dir) -> tuple[Path, Path]:
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    out_csv = out_dir / f"{name}_dpm.csv"
    out_geojson = out_dir / f"{name}_dpm_4326.geojson"
    joined.drop(columns="geometry").to_csv(out_csv, index=False)
    to_web(joined).to_file(out_geojson, driver="GeoJSON")
    return out_csv, out_geojson


def main() -> int:
    ap = argparse.ArgumentParser(description="Join kriged DPM surfaces to the point-of-interest layers.")
    ap.add_argument("--current", type=str, required=True, help="Masked current-fleet GeoTIFF")
    ap.add_argument("--tier4", type=str, required=True, help="Masked Tier 4 GeoTIFF")
    ap.add_argument("--ratio", type=str, default="", help="Ratio GeoTIFF (optional)")
    ap.add_argument("--out-dir", type=str, default=str(config.CACHE_DIR / "tables"))
    args = ap.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    surfaces = {
        "current": read_geotiff(args.current, "current"),
        "tier4": read_geotiff(args.tier4, "tier4"),
    }
    if args.ratio.strip():
        surfaces["ratio"] = read_geotiff(args.ratio, "ratio")

    for name, (path, label) in config.POINT_LAYERS.items():
        if not Path(path).exists():
            print(f"{label}: not found at {path} (skipped)")
            continue
        joined = join_layer(read_point_layer(path, name), surfaces, label=label)
        summary = summarize_layer(joined)
        out_csv, out_geojson = write_layer_outputs(joined, name, args.out_dir)

        print(f"\n--- {label.upper()} ---")
        print(f"Features: {summary['features']:,}")
        for col, s in summary["columns"].items():
            if s["matched"]:
                print(f"{col}: matched={s['matched']:,} missing={s['missing']:,} mean={s['mean']:.6g} max={s['max']:.6g}")
            else:
                print(f"{col}: matched=0 missing={s['missing']:,}")
        print(f"Wrote CSV: {out_csv}")
        print(f"Wrote GeoJSON: {out_geojson}")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
