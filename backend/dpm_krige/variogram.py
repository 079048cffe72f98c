"""
VARIOGRAM FITTING
-----------------
Builds the experimental (sample) variogram from scattered DPM samples and
fits a parametric model to it with nonlinear least squares.

Model parameters follow the usual geostatistics convention:
- sill:   partial sill, semivariance rises to sill + nugget
- range:  lag at which the sill is reached (spherical) or the practical range
- nugget: discontinuity at the origin (measurement noise)

gamma(0) is always 0, so kriging stays an exact interpolator at the samples.
"""

from __future__ import annotations

from dataclasses import dataclass, asdict

import numpy as np
from scipy.optimize import least_squares
from scipy.spatial.distance import pdist

from dpm_krige import config
from dpm_krige.errors import VariogramFitError


def spherical(h, sill, range_, nugget):
    h = np.asarray(h, dtype=np.float64)
    r = h / range_
    g = np.where(h < range_, sill * (1.5 * r - 0.5 * r ** 3) + nugget, sill + nugget)
    return np.where(h == 0.0, 0.0, g)


def exponential(h, sill, range_, nugget):
    h = np.asarray(h, dtype=np.float64)
    g = sill * (1.0 - np.exp(-3.0 * h / range_)) + nugget
    return np.where(h == 0.0, 0.0, g)


def gaussian(h, sill, range_, nugget):
    h = np.asarray(h, dtype=np.float64)
    g = sill * (1.0 - np.exp(-3.0 * (h / range_) ** 2)) + nugget
    return np.where(h == 0.0, 0.0, g)


def linear(h, slope, range_, nugget):
    # range_ unused, kept so every family has the same signature
    h = np.asarray(h, dtype=np.float64)
    g = slope * h + nugget
    return np.where(h == 0.0, 0.0, g)


FAMILIES = {
    "spherical": spherical,
    "exponential": exponential,
    "gaussian": gaussian,
    "linear": linear,
}


@dataclass(frozen=True)
class VariogramModel:
    family: str
    sill: float
    range: float
    nugget: float

    def __post_init__(self):
        if self.family not in FAMILIES:
            raise ValueError(f"Unknown variogram family {self.family!r}. Choose from {sorted(FAMILIES)}")
        if self.family != "linear" and not self.range > 0:
            raise ValueError("variogram range must be > 0")

    def __call__(self, h):
        return FAMILIES[self.family](h, self.sill, self.range, self.nugget)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class EmpiricalVariogram:
    lags: np.ndarray          # mean pair distance per bin
    semivariance: np.ndarray  # mean half squared difference per bin
    counts: np.ndarray        # pairs per bin

    def to_dict(self) -> dict:
        return {
            "lags": self.lags.tolist(),
            "semivariance": self.semivariance.tolist(),
            "counts": self.counts.tolist(),
        }


def sample_arrays(samples) -> tuple[np.ndarray, np.ndarray]:
    """(N,2) coordinates and (N,) values from a SampleSet frame."""
    xy = np.column_stack([samples["x"].to_numpy(), samples["y"].to_numpy()]).astype(np.float64)
    values = samples[config.VALUE_FIELD].to_numpy(dtype=np.float64)
    return xy, values


def experimental_variogram(xy: np.ndarray, values: np.ndarray, nlags: int = config.NLAGS,
                           max_lag: float | None = None) -> EmpiricalVariogram:
    if nlags < 1:
        raise ValueError("nlags must be >= 1")
    d = pdist(xy)
    g = 0.5 * pdist(values[:, None], metric="sqeuclidean")
    if d.size == 0:
        return EmpiricalVariogram(np.empty(0), np.empty(0), np.empty(0, dtype=np.int64))

    if max_lag is None:
        max_lag = d.max() / 2.0
    keep = (d > 0) & (d <= max_lag)
    d, g = d[keep], g[keep]

    edges = np.linspace(0.0, max_lag, nlags + 1)
    # right-closed bins, first bin starts just above 0
    idx = np.clip(np.searchsorted(edges, d, side="left") - 1, 0, nlags - 1)
    counts = np.bincount(idx, minlength=nlags)
    dsum = np.bincount(idx, weights=d, minlength=nlags)
    gsum = np.bincount(idx, weights=g, minlength=nlags)

    nonzero = counts > 0
    return EmpiricalVariogram(
        lags=dsum[nonzero] / counts[nonzero],
        semivariance=gsum[nonzero] / counts[nonzero],
        counts=counts[nonzero],
    )


def _check_geometry(xy: np.ndarray) -> None:
    if len(xy) < 3:
        raise VariogramFitError(f"need at least 3 samples to fit a variogram, got {len(xy)}")
    centered = xy - xy.mean(axis=0)
    if np.linalg.matrix_rank(centered) < 2:
        raise VariogramFitError("sample locations are colinear; variogram is not identifiable")


def fit_variogram(samples, family: str = config.VARIOGRAM_FAMILY, seed: dict | None = None,
                  nlags: int = config.NLAGS, max_lag: float | None = None,
                  loss: str = "linear") -> tuple[VariogramModel, EmpiricalVariogram]:
    """
    Fit `family` to the experimental variogram of `samples`.

    Seeded with the MOVES-calibrated guess (sill=10, range=30000, nugget=10)
    unless `seed` overrides it. Raises VariogramFitError instead of returning
    the seed when the fit cannot be made.
    """
    if family not in FAMILIES:
        raise ValueError(f"Unknown variogram family {family!r}. Choose from {sorted(FAMILIES)}")
    seed = {**config.VARIOGRAM_SEED, **(seed or {})}

    xy, values = sample_arrays(samples)
    _check_geometry(xy)

    emp = experimental_variogram(xy, values, nlags=nlags, max_lag=max_lag)
    if emp.lags.size < 2:
        raise VariogramFitError(f"only {emp.lags.size} non-empty lag bin(s); cannot fit a curve")

    func = FAMILIES[family]
    if family == "linear":
        x0 = np.array([seed["sill"], seed["nugget"]], dtype=np.float64)
        lower = [0.0, 0.0]

        def resid(p):
            return func(emp.lags, p[0], 1.0, p[1]) - emp.semivariance
    else:
        x0 = np.array([seed["sill"], seed["range"], seed["nugget"]], dtype=np.float64)
        lower = [0.0, 1e-6, 0.0]

        def resid(p):
            return func(emp.lags, p[0], p[1], p[2]) - emp.semivariance

    try:
        res = least_squares(resid, x0, bounds=(lower, np.inf), loss=loss, method="trf")
    except (ValueError, np.linalg.LinAlgError) as e:
        raise VariogramFitError(f"{family} variogram fit failed: {e}") from e

    if not res.success or not np.all(np.isfinite(res.x)):
        raise VariogramFitError(f"{family} variogram fit did not converge: {res.message}")

    if family == "linear":
        model = VariogramModel(family, float(res.x[0]), 0.0, float(res.x[1]))
    else:
        model = VariogramModel(family, float(res.x[0]), float(res.x[1]), float(res.x[2]))
    return model, emp
