"""
CONFIG
------
Paths, CRS codes and default analysis parameters shared by the scripts.

Paths can be redirected with environment variables:
- DPM_DATA_DIR      raw inputs (MOVES output, boundary, point layers)
- DPM_CACHE_DIR     generated rasters, tables, PNGs, maps
- DPM_DATABASE_URL  libpq DSN for the PostGIS database (optional)
"""

from __future__ import annotations

import os
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]

DATA_DIR = Path(os.environ.get("DPM_DATA_DIR", ROOT / "backend" / "data"))
CACHE_DIR = Path(os.environ.get("DPM_CACHE_DIR", ROOT / "backend" / "cache"))
DATABASE_URL = os.environ.get("DPM_DATABASE_URL", "")

# MOVES receptor output, one file per emission scenario
SCENARIOS = ("current", "tier4")
MOVES_FILES = {
    "current": DATA_DIR / "moves" / "dpm_current.txt",
    "tier4": DATA_DIR / "moves" / "dpm_tier4.txt",
}
HEADER_LINES = 6
KM_TO_M = 1000.0
VALUE_FIELD = "dpm"

BOUNDARY_FILE = DATA_DIR / "boundary" / "study_area.shp"

# name -> (file, label shown on the map)
POINT_LAYERS = {
    "schools": (DATA_DIR / "layers" / "schools.shp", "Schools"),
    "hospitals": (DATA_DIR / "layers" / "hospitals.shp", "Hospitals"),
    "transit": (DATA_DIR / "layers" / "transit_stops.shp", "Transit stops"),
}

# Analysis CRS (meters)
ANALYSIS_EPSG = 32610  # WGS 84 / UTM zone 10N
WEB_EPSG = 4326

# Variogram seed, calibrated for the MOVES receptor grid
VARIOGRAM_FAMILY = "spherical"
VARIOGRAM_SEED = {"sill": 10.0, "range": 30000.0, "nugget": 10.0}
NLAGS = 6

CELL_SIZE = 500.0
BLOCK_ROWS = 128
NODATA = -9999.0
