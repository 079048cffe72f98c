"""
ORDINARY KRIGING
----------------
Predicts DPM concentration and kriging variance on a PredictionGrid from a
SampleSet and a fitted VariogramModel.

For every target g the (n+1)x(n+1) system

    | gamma(xi, xj)  1 | | lambda |   | gamma(xi, g) |
    |      1         0 | |   mu   | = |      1       |

is solved. Prediction = sum(lambda_i * z_i), variance = sum(lambda_i *
gamma(xi, g)) + mu.

Two solver backends sit behind `predict`:
- global (default): every sample for every cell; the matrix is LU-factored
  once per call and back-solved row block by row block
- local (`n_closest`): per-cell system over the nearest samples (KDTree)

Run directly to krige one scenario to a GeoTIFF.
"""

from __future__ import annotations

import argparse
import json
import logging
import time
import warnings
from pathlib import Path

import numpy as np
from scipy.linalg import LinAlgError, LinAlgWarning, lu_factor, lu_solve
from scipy.spatial import cKDTree
from scipy.spatial.distance import cdist

from dpm_krige import config
from dpm_krige.errors import SingularSystemError
from dpm_krige.load_data import load_samples
from dpm_krige.surfaces import PredictionGrid, SurfaceRaster, build_grid, write_geotiff
from dpm_krige.variogram import VariogramModel, fit_variogram, sample_arrays

logger = logging.getLogger(__name__)


def fit(samples, **kw) -> VariogramModel:
    """fit(SampleSet) -> VariogramModel. See variogram.fit_variogram for options."""
    model, _ = fit_variogram(samples, **kw)
    return model


def grid_from_samples(samples, cell: float = config.CELL_SIZE) -> PredictionGrid:
    minx, miny, maxx, maxy = samples.total_bounds
    crs = samples.crs.to_string() if samples.crs is not None else f"EPSG:{config.ANALYSIS_EPSG}"
    return build_grid((minx, miny, maxx, maxy), cell, crs=crs)


def kriging_matrix(xy: np.ndarray, model: VariogramModel) -> np.ndarray:
    n = len(xy)
    a = np.zeros((n + 1, n + 1), dtype=np.float64)
    a[:n, :n] = model(cdist(xy, xy))
    a[:n, n] = 1.0
    a[n, :n] = 1.0
    return a


def _is_singular(lu: np.ndarray, a: np.ndarray) -> bool:
    pivots = np.abs(np.diag(lu))
    tol = np.finfo(np.float64).eps * max(np.abs(a).max(), 1.0) * a.shape[0]
    return bool(pivots.min() <= tol)


def factor_matrix(a: np.ndarray):
    """LU factors (lu, piv) of a kriging matrix. Raises SingularSystemError."""
    try:
        with warnings.catch_warnings():
            # exact zero pivots are reported below as SingularSystemError
            warnings.simplefilter("ignore", LinAlgWarning)
            lu, piv = lu_factor(a, check_finite=False)
    except (LinAlgError, ValueError) as e:
        raise SingularSystemError(str(e)) from e
    if _is_singular(lu, a):
        raise SingularSystemError("kriging matrix is singular (duplicate sample locations?)")
    return lu, piv


def solve_weights(a: np.ndarray, b: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Solve a @ [lambda; mu] = b. b may be (n+1,) or (n+1, m)."""
    sol = lu_solve(factor_matrix(a), b, check_finite=False)
    return sol[:-1], sol[-1]


def _exact_hits(tree: cKDTree, targets: np.ndarray):
    """Index of the sample sitting exactly on each target, -1 if none."""
    d, idx = tree.query(targets, k=1)
    return np.where(d == 0.0, idx, -1)


class _System:
    """Sample arrays, KD-tree and (global mode) LU factors shared by every target block."""

    def __init__(self, samples, model: VariogramModel, n_closest: int | None = None):
        if n_closest is not None and n_closest < 1:
            raise ValueError("n_closest must be >= 1.")
        self.xy, self.values = sample_arrays(samples)
        if len(self.xy) == 0:
            raise ValueError("cannot krige from an empty SampleSet")
        self.model = model
        self.n_closest = n_closest
        self.tree = cKDTree(self.xy)
        self.factors = None
        if n_closest is None:
            try:
                self.factors = factor_matrix(kriging_matrix(self.xy, model))
            except SingularSystemError as e:
                logger.warning("global kriging system singular, every target left undefined: %s", e)

    def solve(self, targets: np.ndarray):
        if self.n_closest is None:
            pred, var, wsum = _predict_global(self.xy, self.values, self.model, targets, self.factors)
        else:
            pred, var, wsum = _predict_local(self.xy, self.values, self.model, targets, self.n_closest, self.tree)

        # round-off can push the variance slightly negative
        var = np.where(np.isfinite(var), np.maximum(var, 0.0), var)

        # snap solved targets that sit on a sample; singular ones stay NaN
        hit = _exact_hits(self.tree, targets)
        on_sample = (hit >= 0) & np.isfinite(pred)
        if on_sample.any():
            pred[on_sample] = self.values[hit[on_sample]]
            var[on_sample] = 0.0
        return pred, var, wsum


def _predict_global(xy, values, model, targets, factors):
    n = len(xy)
    m = len(targets)
    if factors is None:
        return np.full(m, np.nan), np.full(m, np.nan), np.full(m, np.nan)

    b = np.ones((n + 1, m), dtype=np.float64)
    b[:n] = model(cdist(xy, targets))
    sol = lu_solve(factors, b, check_finite=False)
    lam, mu = sol[:-1], sol[-1]

    pred = lam.T @ values
    var = np.sum(lam * b[:n], axis=0) + mu
    wsum = lam.sum(axis=0)
    return pred, var, wsum


def _predict_local(xy, values, model, targets, n_closest, tree):
    k = min(n_closest, len(xy))
    m = len(targets)
    pred = np.full(m, np.nan)
    var = np.full(m, np.nan)
    wsum = np.full(m, np.nan)

    _, idx = tree.query(targets, k=k)
    if k == 1:
        idx = idx[:, None]

    n_singular = 0
    for i in range(m):
        nb = idx[i]
        a = kriging_matrix(xy[nb], model)
        b = np.ones(k + 1, dtype=np.float64)
        b[:k] = model(cdist(xy[nb], targets[i:i + 1])[:, 0])
        try:
            lam, mu = solve_weights(a, b)
        except SingularSystemError:
            n_singular += 1
            continue
        pred[i] = lam @ values[nb]
        var[i] = lam @ b[:k] + mu
        wsum[i] = lam.sum()

    if n_singular:
        logger.warning("%d of %d local kriging system(s) singular, left undefined", n_singular, m)
    return pred, var, wsum


def predict_points(samples, model: VariogramModel, targets: np.ndarray, n_closest: int | None = None):
    """
    Krige arbitrary target points.

    Returns (values, variances, weight_sums), each shaped (len(targets),).
    Targets that coincide with a sample get that sample's value, variance 0.
    Targets whose system is singular come back NaN, on a sample or not.
    """
    system = _System(samples, model, n_closest)
    return system.solve(np.atleast_2d(np.asarray(targets, dtype=np.float64)))


def predict(samples, model: VariogramModel, grid: PredictionGrid, n_closest: int | None = None,
            block_rows: int = config.BLOCK_ROWS, name: str | None = None) -> SurfaceRaster:
    """predict(SampleSet, VariogramModel, PredictionGrid) -> SurfaceRaster."""
    if block_rows < 1:
        raise ValueError("block_rows must be >= 1.")
    system = _System(samples, model, n_closest)
    values = np.full(grid.shape, np.nan, dtype=np.float64)
    variance = np.full(grid.shape, np.nan, dtype=np.float64)

    for row0 in range(0, grid.nrows, block_rows):
        row1 = min(row0 + block_rows, grid.nrows)
        pred, var, _ = system.solve(grid.centers(row0, row1))
        values[row0:row1] = pred.reshape((row1 - row0, grid.ncols))
        variance[row0:row1] = var.reshape((row1 - row0, grid.ncols))
        logger.debug("kriged rows %d/%d", row1, grid.nrows)

    if name is None:
        scen = samples["scenario"].iloc[0] if "scenario" in samples.columns and len(samples) else "surface"
        name = str(scen)
    return SurfaceRaster(
        name=name, grid=grid, values=values, variance=variance,
        meta={"variogram": model.to_dict(), "n_samples": int(len(samples)), "n_closest": n_closest},
    )


def main() -> int:
    ap = argparse.ArgumentParser(description="Ordinary kriging of one MOVES scenario to a GeoTIFF (EPSG:32610).")
    ap.add_argument("--scenario", choices=config.SCENARIOS, default="current")
    ap.add_argument("--family", type=str, default=config.VARIOGRAM_FAMILY, help="spherical, exponential, gaussian, linear")
    ap.add_argument("--cell", type=float, default=config.CELL_SIZE, help="Grid cell size in meters.")
    ap.add_argument("--n-closest", type=int, default=0, help="Local kriging neighbours (0 = global kriging).")
    ap.add_argument("--nlags", type=int, default=config.NLAGS)
    ap.add_argument("--block-rows", type=int, default=config.BLOCK_ROWS)
    ap.add_argument("--out", type=str, default="", help="Output GeoTIFF path.")
    args = ap.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    if args.cell <= 0:
        raise ValueError("cell size must be > 0.")
    n_closest = args.n_closest or None

    t0 = time.time()
    # the grid always comes from the current scenario so both surfaces line up
    grid = grid_from_samples(load_samples(config.MOVES_FILES["current"], "current"), args.cell)
    samples = load_samples(config.MOVES_FILES[args.scenario], args.scenario)
    model, emp = fit_variogram(samples, family=args.family, nlags=args.nlags)

    print("\n--- KRIGING SETTINGS ---")
    print(f"scenario:           {args.scenario} ({len(samples):,} samples)")
    print(f"variogram:          {json.dumps(model.to_dict())}")
    print(f"cell size (m):      {args.cell}")
    print(f"neighbourhood:      {'global' if n_closest is None else n_closest}")
    print(f"grid cols x rows:   {grid.ncols} x {grid.nrows}  (~{grid.ncols * grid.nrows:,} cells)")

    t1 = time.time()
    surface = predict(samples, model, grid, n_closest=n_closest, block_rows=args.block_rows)

    if args.out.strip():
        out_path = Path(args.out).expanduser().resolve()
    else:
        out_path = config.CACHE_DIR / "surfaces" / f"dpm_{args.scenario}_{args.family}_cs{int(args.cell)}m.tif"
    write_geotiff(surface, out_path)

    t2 = time.time()
    v = surface.values[surface.valid]
    print("\n--- DONE ---")
    if v.size:
        print(f"Valid cell stats: min={v.min():.6g}, mean={v.mean():.6g}, max={v.max():.6g} (n={v.size:,})")
    print(f"Timing: load+fit={t1 - t0:.2f}s, krige+write={t2 - t1:.2f}s, total={t2 - t0:.2f}s")
    print(f"Wrote: {out_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
