"""
PIPELINE ORCHESTRATOR
---------------------
Coordinates the analysis pipeline with caching and file locking.

Responsible for:
- Determining cache paths per parameter combo (variogram family, cell size,
  kriging neighbourhood)
- Running ingestion -> variogram fit -> kriging -> masking -> ratio, then the
  exposure joins and the map, only when the artifacts are missing
- Ensuring concurrent API requests do not recompute the same artifacts

Each scenario is carried through as its own ScenarioSurface value. The
prediction grid is built from the current scenario's samples only and
reused for tier4 so both surfaces line up cell for cell.
"""

from __future__ import annotations

import argparse
import json
import logging
from dataclasses import dataclass
from pathlib import Path

import geopandas as gpd
from filelock import FileLock

from dpm_krige import config
from dpm_krige.database import SpatialDatabase
from dpm_krige.exposure import join_layer, summarize_layer, write_layer_outputs
from dpm_krige.kriging import grid_from_samples, predict
from dpm_krige.load_data import drop_duplicate_locations, read_boundary, read_moves_output, read_point_layer
from dpm_krige.surfaces import (
    PredictionGrid,
    SurfaceRaster,
    mask_to_boundary,
    ratio_surface,
    read_geotiff,
    surface_stats,
    write_geotiff,
)
from dpm_krige.variogram import FAMILIES, EmpiricalVariogram, VariogramModel, fit_variogram
from dpm_krige.webmap import build_map, save_map

logger = logging.getLogger(__name__)

SURFACE_NAMES = ("current", "tier4", "ratio")


@dataclass(frozen=True)
class ScenarioSurface:
    scenario: str
    model: VariogramModel
    empirical: EmpiricalVariogram
    surface: SurfaceRaster   # raw kriged surface
    masked: SurfaceRaster    # clipped to the study area
    n_samples: int
    n_duplicates: int


# path helpers
def params_tag(family: str, cell: float, n_closest: int | None) -> str:
    hood = "global" if not n_closest else f"nc{int(n_closest)}"
    return f"{family}_cs{int(cell)}m_{hood}"


def surface_path(name: str, family: str, cell: float, n_closest: int | None) -> Path:
    return config.CACHE_DIR / "surfaces" / f"dpm_{name}_{params_tag(family, cell, n_closest)}.tif"


def variogram_json_path(family: str, cell: float, n_closest: int | None) -> Path:
    return config.CACHE_DIR / "results" / f"variogram_{params_tag(family, cell, n_closest)}.json"


def tables_dir(family: str, cell: float, n_closest: int | None) -> Path:
    return config.CACHE_DIR / "tables" / params_tag(family, cell, n_closest)


def exposure_geojson_path(layer: str, family: str, cell: float, n_closest: int | None) -> Path:
    return tables_dir(family, cell, n_closest) / f"{layer}_dpm_4326.geojson"


def exposure_json_path(family: str, cell: float, n_closest: int | None) -> Path:
    return config.CACHE_DIR / "results" / f"exposure_{params_tag(family, cell, n_closest)}.json"


def map_html_path(family: str, cell: float, n_closest: int | None) -> Path:
    return config.CACHE_DIR / "web" / f"map_{params_tag(family, cell, n_closest)}.html"


def bundle_lock_path(family: str, cell: float, n_closest: int | None) -> Path:
    # one lock per parameter combo
    d = config.CACHE_DIR / "locks"
    d.mkdir(parents=True, exist_ok=True)
    return d / f"dpm_{params_tag(family, cell, n_closest)}.lock"


def check_params(family: str, cell: float, n_closest: int | None) -> None:
    if family not in FAMILIES:
        raise ValueError(f"unknown variogram family {family!r}; choose from {sorted(FAMILIES)}")
    if cell <= 0:
        raise ValueError("cell size must be > 0.")
    if n_closest is not None and n_closest < 1:
        raise ValueError("n_closest must be >= 1.")


# in-memory pipeline
def krige_scenario(scenario: str, samples, grid: PredictionGrid, boundary=None,
                   family: str = config.VARIOGRAM_FAMILY, n_closest: int | None = None,
                   seed: dict | None = None, nlags: int = config.NLAGS) -> ScenarioSurface:
    n_raw = len(samples)
    samples, n_dup = drop_duplicate_locations(samples)
    model, emp = fit_variogram(samples, family=family, seed=seed, nlags=nlags)
    logger.info("%s: %s variogram sill=%.6g range=%.6g nugget=%.6g",
                scenario, family, model.sill, model.range, model.nugget)

    surface = predict(samples, model, grid, n_closest=n_closest, name=scenario)
    masked = mask_to_boundary(surface, boundary) if boundary is not None else surface
    return ScenarioSurface(scenario, model, emp, surface, masked, n_raw - n_dup, n_dup)


def compute_surfaces(samples_by_scenario: dict, boundary=None, family: str = config.VARIOGRAM_FAMILY,
                     cell: float = config.CELL_SIZE, n_closest: int | None = None,
                     seed: dict | None = None) -> tuple[dict, SurfaceRaster]:
    """
    samples_by_scenario: {"current": SampleSet, "tier4": SampleSet}
    Returns ({scenario: ScenarioSurface}, masked ratio surface).
    """
    missing = [s for s in config.SCENARIOS if s not in samples_by_scenario]
    if missing:
        raise KeyError(f"missing scenario sample set(s): {missing}")

    # shared grid, built from the first scenario only
    grid = grid_from_samples(samples_by_scenario[config.SCENARIOS[0]], cell)

    results = {
        scenario: krige_scenario(scenario, samples_by_scenario[scenario], grid, boundary=boundary,
                                 family=family, n_closest=n_closest, seed=seed)
        for scenario in config.SCENARIOS
    }
    ratio = ratio_surface(results["current"].masked, results["tier4"].masked, name="ratio")
    return results, ratio


# cached steps
def _load_boundary():
    if config.BOUNDARY_FILE.exists():
        return read_boundary(config.BOUNDARY_FILE)
    logger.warning("no study-area boundary at %s; surfaces are left unmasked", config.BOUNDARY_FILE)
    return None


def run_surfaces(family: str = config.VARIOGRAM_FAMILY, cell: float = config.CELL_SIZE,
                 n_closest: int | None = None) -> dict:
    """Ensure masked current/tier4/ratio GeoTIFFs exist. Returns name -> path."""
    check_params(family, cell, n_closest)
    paths = {name: surface_path(name, family, cell, n_closest) for name in SURFACE_NAMES}
    vg_out = variogram_json_path(family, cell, n_closest)

    with FileLock(str(bundle_lock_path(family, cell, n_closest))):
        # fast path: everything already exists
        if all(p.exists() for p in paths.values()) and vg_out.exists():
            return paths

        samples = {s: read_moves_output(config.MOVES_FILES[s], s) for s in config.SCENARIOS}
        results, ratio = compute_surfaces(samples, boundary=_load_boundary(), family=family,
                                          cell=cell, n_closest=n_closest)

        for scenario, res in results.items():
            write_geotiff(res.masked, paths[scenario])
        write_geotiff(ratio, paths["ratio"])

        vg_out.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            scenario: {
                "model": res.model.to_dict(),
                "empirical": res.empirical.to_dict(),
                "n_samples": res.n_samples,
                "n_duplicates": res.n_duplicates,
                "stats": surface_stats(res.masked),
            }
            for scenario, res in results.items()
        }
        payload["ratio"] = {"stats": surface_stats(ratio)}
        payload["grid"] = results["current"].surface.grid.to_dict()
        vg_out.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    return paths


def load_surfaces(family: str = config.VARIOGRAM_FAMILY, cell: float = config.CELL_SIZE,
                  n_closest: int | None = None) -> dict:
    paths = run_surfaces(family, cell, n_closest)
    return {name: read_geotiff(p, name) for name, p in paths.items()}


def run_exposure(family: str = config.VARIOGRAM_FAMILY, cell: float = config.CELL_SIZE,
                 n_closest: int | None = None) -> dict:
    """Ensure joined point-layer outputs exist. Returns layer name -> web GeoJSON path."""
    surfaces = load_surfaces(family, cell, n_closest)
    out_dir = tables_dir(family, cell, n_closest)
    summary_out = exposure_json_path(family, cell, n_closest)

    outputs = {}
    with FileLock(str(bundle_lock_path(family, cell, n_closest))):
        summaries = {}
        for name, (path, label) in config.POINT_LAYERS.items():
            geojson = exposure_geojson_path(name, family, cell, n_closest)
            if geojson.exists():
                outputs[name] = geojson
                continue
            if not Path(path).exists():
                logger.warning("%s layer not found at %s (skipped)", label, path)
                continue
            joined = join_layer(read_point_layer(path, name), surfaces, label=label)
            write_layer_outputs(joined, name, out_dir)
            summaries[name] = summarize_layer(joined)
            outputs[name] = geojson

        if summaries:
            summary_out.parent.mkdir(parents=True, exist_ok=True)
            previous = json.loads(summary_out.read_text(encoding="utf-8")) if summary_out.exists() else {}
            previous.update(summaries)
            summary_out.write_text(json.dumps(previous, indent=2), encoding="utf-8")
    return outputs


def load_joined_layers(family: str = config.VARIOGRAM_FAMILY, cell: float = config.CELL_SIZE,
                       n_closest: int | None = None) -> dict:
    """name -> (joined GeoDataFrame, label) for every layer that has outputs."""
    outputs = run_exposure(family, cell, n_closest)
    return {
        name: (gpd.read_file(path), config.POINT_LAYERS[name][1])
        for name, path in outputs.items()
    }


def run_map(family: str = config.VARIOGRAM_FAMILY, cell: float = config.CELL_SIZE,
            n_closest: int | None = None) -> Path:
    out = map_html_path(family, cell, n_closest)
    if out.exists():
        return out
    surfaces = load_surfaces(family, cell, n_closest)
    layers = load_joined_layers(family, cell, n_closest)
    with FileLock(str(bundle_lock_path(family, cell, n_closest))):
        if not out.exists():
            m = build_map(surfaces, layers, boundary=_load_boundary())
            tmp = out.with_suffix(".tmp.html")
            save_map(m, tmp)
            tmp.replace(out)
    return out


def persist(family: str = config.VARIOGRAM_FAMILY, cell: float = config.CELL_SIZE,
            n_closest: int | None = None, dsn: str = "") -> dict:
    """Write point layers and surfaces to PostGIS. Returns table -> rows written."""
    surfaces = load_surfaces(family, cell, n_closest)
    layers = load_joined_layers(family, cell, n_closest)
    tag = params_tag(family, cell, n_closest)

    written = {}
    with SpatialDatabase(dsn) as db:
        for name, surface in surfaces.items():
            key = f"dpm_{name}_{tag}"
            written[key] = db.write_surface(surface.replace(name=key))
        for name, (joined, _label) in layers.items():
            written[name] = db.write_layer(name, joined.to_crs(epsg=config.ANALYSIS_EPSG))
    return written


def run_all(family: str = config.VARIOGRAM_FAMILY, cell: float = config.CELL_SIZE,
            n_closest: int | None = None, to_db: bool = False) -> dict:
    out = {
        "surfaces": run_surfaces(family, cell, n_closest),
        "exposure": run_exposure(family, cell, n_closest),
        "map": run_map(family, cell, n_closest),
    }
    if to_db:
        out["database"] = persist(family, cell, n_closest)
    return out


def main() -> int:
    ap = argparse.ArgumentParser(description="Run the DPM kriging pipeline end to end (cached).")
    ap.add_argument("--family", type=str, default=config.VARIOGRAM_FAMILY)
    ap.add_argument("--cell", type=float, default=config.CELL_SIZE)
    ap.add_argument("--n-closest", type=int, default=0, help="0 = global kriging")
    ap.add_argument("--persist", action="store_true", help="Also write layers and surfaces to PostGIS")
    args = ap.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    out = run_all(args.family, args.cell, args.n_closest or None, to_db=args.persist)
    for name, p in out["surfaces"].items():
        print(f"surface {name}: {p}")
    for name, p in out["exposure"].items():
        print(f"layer {name}: {p}")
    print(f"map: {out['map']}")
    if "database" in out:
        for table, n in out["database"].items():
            print(f"db {table}: {n:,} rows")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
