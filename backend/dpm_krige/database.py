"""
SPATIAL DATABASE
----------------
PostGIS persistence for point layers and kriged surfaces.

- one table per vector layer (attributes + geom)
- surfaces go into a shared raster-table abstraction keyed by name:
    surface_grids(name, minx, maxy, cell, ncols, nrows, srid)
    surface_cells(name, row, col, value, variance, geom)
  one polygon per valid cell, so layers can be joined to surfaces with
  ST_Intersects in SQL

A single connection is reused for every call; the context manager commits
on success and rolls back on error.
"""

from __future__ import annotations

import logging
import math
import re

import geopandas as gpd
import numpy as np
import pandas as pd
import psycopg2
from psycopg2 import sql
from psycopg2.extras import execute_values
from pyproj import CRS
from shapely import wkb
from shapely.geometry import box

from dpm_krige import config
from dpm_krige.surfaces import PredictionGrid, SurfaceRaster

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")

SURFACE_DDL = """
CREATE TABLE IF NOT EXISTS surface_grids (
    name text PRIMARY KEY,
    minx double precision NOT NULL,
    maxy double precision NOT NULL,
    cell double precision NOT NULL,
    ncols integer NOT NULL,
    nrows integer NOT NULL,
    srid integer NOT NULL
);
CREATE TABLE IF NOT EXISTS surface_cells (
    name text NOT NULL REFERENCES surface_grids(name) ON DELETE CASCADE,
    "row" integer NOT NULL,
    col integer NOT NULL,
    value double precision,
    variance double precision,
    geom geometry(Polygon) NOT NULL,
    PRIMARY KEY (name, "row", col)
);
CREATE INDEX IF NOT EXISTS surface_cells_geom_idx ON surface_cells USING GIST (geom);
"""


def check_name(name: str) -> str:
    if not _NAME_RE.match(name or ""):
        raise ValueError(f"invalid table/surface name {name!r}: use lowercase letters, digits and _")
    return name


def safe_column(name) -> str:
    """Attribute name -> lowercase SQL column name."""
    col = re.sub(r"[^a-z0-9_]", "_", str(name).strip().lower())
    if not col or col[0].isdigit():
        col = f"f_{col}"
    return col[:63]


def column_type(dtype) -> str:
    if pd.api.types.is_bool_dtype(dtype):
        return "boolean"
    if pd.api.types.is_integer_dtype(dtype):
        return "bigint"
    if pd.api.types.is_float_dtype(dtype):
        return "double precision"
    return "text"


def to_py(v):
    """numpy scalars / NaN -> plain Python values psycopg2 can adapt."""
    if v is None:
        return None
    if isinstance(v, np.generic):
        v = v.item()
    if isinstance(v, float) and math.isnan(v):
        return None
    if isinstance(v, (str, int, float, bool)):
        return v
    return str(v)


def srid_of(crs) -> int:
    epsg = crs.to_epsg() if crs is not None else None
    return int(epsg) if epsg else config.ANALYSIS_EPSG


class SpatialDatabase:
    """Thin PostGIS wrapper over one psycopg2 connection."""

    def __init__(self, dsn: str = "", conn=None):
        self.dsn = dsn or config.DATABASE_URL
        self.conn = conn

    def __enter__(self):
        if self.conn is None:
            if not self.dsn:
                raise ValueError("no database DSN configured (set DPM_DATABASE_URL)")
            self.conn = psycopg2.connect(self.dsn)
        return self

    def __exit__(self, exc_type, exc, tb):
        try:
            if exc_type is None:
                self.conn.commit()
            else:
                self.conn.rollback()
        finally:
            self.conn.close()
            self.conn = None
        return False

    # ------------------------------------------------------------------
    # vector layers
    # ------------------------------------------------------------------
    def write_layer(self, name: str, gdf: gpd.GeoDataFrame) -> int:
        """Create or replace table `name` from the layer. Returns rows written."""
        check_name(name)
        srid = srid_of(gdf.crs)
        attrs = [c for c in gdf.columns if c != gdf.geometry.name]
        names = [safe_column(c) for c in attrs]

        table = sql.Identifier(name)
        cols_ddl = sql.SQL(", ").join(
            [sql.SQL("{} {}").format(sql.Identifier(n), sql.SQL(column_type(gdf[c].dtype))) for c, n in zip(attrs, names)]
            + [sql.SQL("geom geometry(Geometry, {})").format(sql.Literal(srid))]
        )
        insert_cols = sql.SQL(", ").join([sql.Identifier(n) for n in names] + [sql.Identifier("geom")])
        template = sql.SQL("({})").format(sql.SQL(", ").join(
            [sql.Placeholder()] * len(attrs)
            + [sql.SQL("ST_SetSRID(ST_GeomFromWKB({}), {})").format(sql.Placeholder(), sql.Literal(srid))]
        ))

        rows = [
            tuple(to_py(v) for v in vals) + (psycopg2.Binary(geom.wkb),)
            for vals, geom in zip(gdf[attrs].itertuples(index=False, name=None), gdf.geometry)
            if geom is not None
        ]

        with self.conn.cursor() as cur:
            cur.execute(sql.SQL("DROP TABLE IF EXISTS {}").format(table))
            cur.execute(sql.SQL("CREATE TABLE {} ({})").format(table, cols_ddl))
            if rows:
                execute_values(
                    cur,
                    sql.SQL("INSERT INTO {} ({}) VALUES %s").format(table, insert_cols).as_string(cur),
                    rows,
                    template=template.as_string(cur),
                )
            cur.execute(sql.SQL("CREATE INDEX ON {} USING GIST (geom)").format(table))
        logger.info("wrote %d feature(s) to %s", len(rows), name)
        return len(rows)

    def read_layer(self, name: str) -> gpd.GeoDataFrame:
        check_name(name)
        with self.conn.cursor() as cur:
            cur.execute(
                sql.SQL("SELECT *, ST_AsBinary(geom) AS geom_wkb, ST_SRID(geom) AS geom_srid FROM {}").format(
                    sql.Identifier(name))
            )
            cols = [d[0] for d in cur.description]
            records = cur.fetchall()

        df = pd.DataFrame.from_records(records, columns=cols)
        srid = int(df["geom_srid"].iloc[0]) if len(df) else config.ANALYSIS_EPSG
        geoms = [wkb.loads(bytes(b)) for b in df["geom_wkb"]]
        df = df.drop(columns=["geom", "geom_wkb", "geom_srid"])
        return gpd.GeoDataFrame(df, geometry=geoms, crs=f"EPSG:{srid}")

    # ------------------------------------------------------------------
    # surfaces
    # ------------------------------------------------------------------
    def ensure_surface_tables(self) -> None:
        with self.conn.cursor() as cur:
            cur.execute(SURFACE_DDL)

    def write_surface(self, surface: SurfaceRaster) -> int:
        """Replace surface `surface.name`. Only valid (non-NaN) cells are stored."""
        name = check_name(surface.name)
        grid = surface.grid
        srid = srid_of(CRS.from_user_input(grid.crs))

        rows, cols = np.nonzero(surface.valid)
        xs = grid.minx + cols * grid.cell
        ys = grid.maxy - rows * grid.cell
        var = surface.variance
        cells = [
            (
                name, int(r), int(c),
                to_py(surface.values[r, c]),
                None if var is None else to_py(var[r, c]),
                psycopg2.Binary(box(x, y - grid.cell, x + grid.cell, y).wkb),
            )
            for r, c, x, y in zip(rows, cols, xs, ys)
        ]

        self.ensure_surface_tables()
        with self.conn.cursor() as cur:
            cur.execute("DELETE FROM surface_grids WHERE name = %s", (name,))
            cur.execute(
                "INSERT INTO surface_grids (name, minx, maxy, cell, ncols, nrows, srid) "
                "VALUES (%s, %s, %s, %s, %s, %s, %s)",
                (name, grid.minx, grid.maxy, grid.cell, grid.ncols, grid.nrows, srid),
            )
            if cells:
                execute_values(
                    cur,
                    'INSERT INTO surface_cells (name, "row", col, value, variance, geom) VALUES %s',
                    cells,
                    template=f"(%s, %s, %s, %s, %s, ST_SetSRID(ST_GeomFromWKB(%s), {int(srid)}))",
                    page_size=1000,
                )
        logger.info("wrote surface %s: %d valid cell(s)", name, len(cells))
        return len(cells)

    def read_surface(self, name: str) -> SurfaceRaster:
        check_name(name)
        with self.conn.cursor() as cur:
            cur.execute(
                "SELECT minx, maxy, cell, ncols, nrows, srid FROM surface_grids WHERE name = %s", (name,)
            )
            head = cur.fetchone()
            if head is None:
                raise KeyError(f"surface not found in database: {name}")
            cur.execute('SELECT "row", col, value, variance FROM surface_cells WHERE name = %s', (name,))
            cells = cur.fetchall()

        minx, maxy, cell, ncols, nrows, srid = head
        grid = PredictionGrid(float(minx), float(maxy), float(cell), int(ncols), int(nrows), f"EPSG:{srid}")
        values = np.full(grid.shape, np.nan)
        variance = np.full(grid.shape, np.nan)
        has_var = False
        for r, c, v, s in cells:
            values[r, c] = np.nan if v is None else v
            if s is not None:
                variance[r, c] = s
                has_var = True
        return SurfaceRaster(name=name, grid=grid, values=values, variance=variance if has_var else None)

    def join_layer_to_surface(self, layer_name: str, surface_name: str, id_column: str = "feature_id") -> pd.DataFrame:
        """Surface value per feature via ST_Intersects; NULL -> NaN when no cell matches."""
        check_name(layer_name)
        check_name(surface_name)
        check_name(id_column)
        q = sql.SQL(
            "SELECT DISTINCT ON (f.{id}) f.{id}, c.value "
            "FROM {layer} f "
            "LEFT JOIN surface_cells c "
            "ON c.name = %s AND ST_Intersects(c.geom, ST_PointOnSurface(f.geom)) "
            "ORDER BY f.{id}, c.\"row\", c.col"
        ).format(id=sql.Identifier(id_column), layer=sql.Identifier(layer_name))
        with self.conn.cursor() as cur:
            cur.execute(q, (surface_name,))
            records = cur.fetchall()
        df = pd.DataFrame.from_records(records, columns=[id_column, f"dpm_{surface_name}"])
        df[f"dpm_{surface_name}"] = pd.to_numeric(df[f"dpm_{surface_name}"], errors="coerce")
        return df
