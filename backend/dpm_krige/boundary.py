"""
STUDY AREA BOUNDARY
-------------------
Dissolves the boundary layer to a single outline and builds the inverse
"outside" mask used to grey out everything beyond the study area on the map.
"""

from __future__ import annotations

import geopandas as gpd
from shapely.geometry import box


def dissolve_boundary(gdf: gpd.GeoDataFrame):
    polys = gdf[gdf.geometry.geom_type.isin(["Polygon", "MultiPolygon"])]
    if polys.empty:
        raise ValueError("Boundary layer has no polygon features")
    outline = polys.geometry.union_all()
    return outline.buffer(0)


def outside_mask(boundary, crs) -> gpd.GeoDataFrame:
    """World box minus the boundary, in EPSG:4326."""
    outline = gpd.GeoSeries([boundary], crs=crs).to_crs(4326).iloc[0]
    world = box(-180, -90, 180, 90)
    return gpd.GeoDataFrame(geometry=[world.difference(outline)], crs="EPSG:4326")
