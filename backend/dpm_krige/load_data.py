"""
DATA LOADING & VALIDATION
-------------------------
Reads MOVES dispersion-model receptor output and the vector layers the
surfaces are joined against.

MOVES output is a whitespace-delimited text file. The first six lines are
header/metadata; every following row is `x_km y_km concentration`.
Coordinates are rescaled to meters and tagged with the analysis CRS
(EPSG:32610, UTM zone 10N).

Run directly for a sanity check of the configured inputs.
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

import geopandas as gpd
import numpy as np
import pandas as pd

from dpm_krige import config
from dpm_krige.boundary import dissolve_boundary
from dpm_krige.errors import InputFormatError

logger = logging.getLogger(__name__)


def require_fields(gdf: gpd.GeoDataFrame, required: list[str], label: str) -> None:
    cols = set(gdf.columns)
    missing = [f for f in required if f not in cols]
    if missing:
        raise KeyError(
            f"{label}: missing required field(s): {missing}. "
            f"Available fields: {sorted(cols)}"
        )


def parse_moves_rows(lines, path="<moves>", header_lines: int = config.HEADER_LINES) -> np.ndarray:
    """Parse data rows into an (N, 3) float array. Line numbers in errors are 1-based."""
    rows = []
    for line_no, line in enumerate(lines, start=1):
        if line_no <= header_lines:
            continue
        fields = line.split()
        if not fields:
            continue
        if len(fields) != 3:
            raise InputFormatError(path, line_no, f"expected 3 fields, got {len(fields)}")
        try:
            rows.append([float(f) for f in fields])
        except ValueError:
            raise InputFormatError(path, line_no, f"non-numeric field in {fields!r}") from None

    if not rows:
        raise InputFormatError(path, header_lines, "no data rows after header")

    arr = np.asarray(rows, dtype=np.float64)
    if not np.isfinite(arr).all():
        bad = int(np.argmax(~np.isfinite(arr).all(axis=1)))
        raise InputFormatError(path, header_lines + bad + 1, "non-finite value")
    return arr


def read_moves_output(path, scenario: str) -> gpd.GeoDataFrame:
    """
    Load one scenario's receptor file as a SampleSet.

    Returns a GeoDataFrame with columns x, y (meters), dpm, scenario and point
    geometry in EPSG:32610.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"MOVES output not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        arr = parse_moves_rows(fh, path=path)

    df = pd.DataFrame({
        "x": arr[:, 0] * config.KM_TO_M,
        "y": arr[:, 1] * config.KM_TO_M,
        config.VALUE_FIELD: arr[:, 2],
    })
    df["scenario"] = scenario
    return gpd.GeoDataFrame(
        df,
        geometry=gpd.points_from_xy(df["x"], df["y"]),
        crs=f"EPSG:{config.ANALYSIS_EPSG}",
    )


def drop_duplicate_locations(samples: gpd.GeoDataFrame) -> tuple[gpd.GeoDataFrame, int]:
    """
    Remove samples that share a location with an earlier sample.

    The first occurrence in file order survives. Duplicates make the kriging
    matrix singular, so this has to run before fitting.
    """
    dup = samples.duplicated(subset=["x", "y"], keep="first")
    n_dup = int(dup.sum())
    if n_dup:
        clash = samples[samples.duplicated(subset=["x", "y"], keep=False)]
        for (x, y), grp in clash.groupby(["x", "y"]):
            logger.warning(
                "duplicate location (%.1f, %.1f): %d samples %s, keeping %s",
                x, y, len(grp), grp[config.VALUE_FIELD].tolist(), grp[config.VALUE_FIELD].iloc[0],
            )
        logger.warning("dropped %d duplicate-location sample(s) of %d", n_dup, len(samples))
    return samples.loc[~dup].reset_index(drop=True), n_dup


def load_samples(path, scenario: str) -> gpd.GeoDataFrame:
    """read_moves_output + drop_duplicate_locations."""
    samples = read_moves_output(path, scenario)
    samples, _ = drop_duplicate_locations(samples)
    return samples


def read_point_layer(path, name: str) -> gpd.GeoDataFrame:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"{name} layer not found: {path}")
    gdf = gpd.read_file(path)
    if gdf.crs is None:
        raise ValueError(f"{name} layer has no CRS: {path}")
    gdf = gdf.to_crs(epsg=config.ANALYSIS_EPSG)
    gdf = gdf[~gdf.geometry.is_empty & gdf.geometry.notna()].reset_index(drop=True)
    gdf["feature_id"] = np.arange(len(gdf), dtype=np.int64)
    return gdf


def read_boundary(path):
    """Read the study-area polygon(s) and dissolve them to one geometry."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Boundary not found: {path}")
    gdf = gpd.read_file(path)
    if gdf.crs is None:
        raise ValueError(f"Boundary has no CRS: {path}")
    return dissolve_boundary(gdf.to_crs(epsg=config.ANALYSIS_EPSG))


def print_summary(gdf: gpd.GeoDataFrame, label: str) -> None:
    bounds = gdf.total_bounds  # [minx, miny, maxx, maxy]
    print(f"\n--- {label} ---")
    print(f"Features: {len(gdf):,}")
    print(f"CRS: {gdf.crs}")
    print(f"Bounds: minx={bounds[0]:.3f}, miny={bounds[1]:.3f}, maxx={bounds[2]:.3f}, maxy={bounds[3]:.3f}")
    if config.VALUE_FIELD in gdf.columns:
        v = gdf[config.VALUE_FIELD]
        print(f"DPM: min={v.min():.6g}, mean={v.mean():.6g}, max={v.max():.6g}")


def main() -> int:
    ap = argparse.ArgumentParser(description="Validate MOVES receptor files and vector layers.")
    ap.add_argument("--current", type=str, default=str(config.MOVES_FILES["current"]))
    ap.add_argument("--tier4", type=str, default=str(config.MOVES_FILES["tier4"]))
    args = ap.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    for scenario, path in (("current", args.current), ("tier4", args.tier4)):
        samples = read_moves_output(path, scenario)
        print_summary(samples, f"{scenario.upper()} (raw)")
        samples, n_dup = drop_duplicate_locations(samples)
        print(f"Duplicate locations dropped: {n_dup}")

    for name, (path, label) in config.POINT_LAYERS.items():
        if Path(path).exists():
            print_summary(read_point_layer(path, name), label.upper())
        else:
            print(f"\n{label}: not found at {path} (skipped)")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
