"""
DPM KRIGING BACKEND
-------------------
Ordinary kriging of MOVES diesel particulate matter (DPM) receptor output,
surface post-processing, exposure joins and map rendering.
"""

import os

# deal with local conflicts
os.environ.pop("PROJ_LIB", None)
os.environ.pop("PROJ_DATA", None)
os.environ.pop("GDAL_DATA", None)

try:
    from pyproj.datadir import get_data_dir as _pyproj_data_dir
    _p = _pyproj_data_dir()
    os.environ["PROJ_LIB"] = _p
    os.environ["PROJ_DATA"] = _p
except Exception:
    pass

try:
    from rasterio.env import GDALDataFinder
    _g = GDALDataFinder().search()
    if _g:
        os.environ["GDAL_DATA"] = _g
except Exception:
    pass

__version__ = "0.1.0"
