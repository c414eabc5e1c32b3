"""
tvdi.edges
==========
Wet / dry edge estimation of the LST–NDVI scatter (the "triangle").

Procedure
---------
1. Per-pixel temporal **median composite** of LST and NDVI over the whole
   joined series (stabilises the scatter against transient noise).
2. A fixed-size, seeded **random pixel sample** of the composite inside
   the region of interest; samples where either band is null are dropped.
3. **Wet edge** = 5th percentile of sampled LST (cold / wet extreme).
4. **Dry edge** = OLS regression ``LST = slope * NDVI + intercept``.

Degenerate regressions
----------------------
The fit is rejected, and the fixed pair ``slope = -10, intercept = 45``
substituted, when any of these holds:

* fewer than ``min_regression_samples`` sampled points;
* NDVI standard deviation ≤ ``min_ndvi_std`` (no spread to regress on);
* the centred design matrix has rank < 1;
* a fitted coefficient is not finite.

The substitution is flagged on the model (``is_fallback``, ``reason``)
and announced with a :class:`DegenerateModelFallback` warning; the run
continues.

Public API
----------
median_composite(joined)                       → (lst_median, ndvi_median)
sample_pixels(lst, ndvi, region_mask, ...)     → pd.DataFrame
fit_edge_model(samples, edge_config)           → EdgeModel
compute_edge_model(joined, region_mask, ...)   → EdgeModel
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import pandas as pd
from sklearn.linear_model import LinearRegression
from sklearn.metrics import r2_score

from .config import EdgeConfig
from .raster import JoinedSeries, RasterFrame


class EdgeModelError(Exception):
    """Raised when no valid pixel is available to define the edges."""


class DegenerateModelFallback(UserWarning):
    """Emitted when the dry-edge regression is replaced by the fallback pair."""


@dataclass(frozen=True)
class EdgeModel:
    """Fitted wet / dry edges.  Slope and intercept are never mixed sources."""
    wet_edge: float
    dry_edge_slope: float
    dry_edge_intercept: float
    is_fallback: bool = False
    n_samples: int = 0
    r2: Optional[float] = None
    reason: Optional[str] = None

    def dry_edge(self, ndvi):
        """Dry-edge LST for the given NDVI value(s)."""
        return np.asarray(ndvi) * self.dry_edge_slope + self.dry_edge_intercept

    def to_dict(self) -> dict:
        return {
            "wet_edge": float(self.wet_edge),
            "dry_edge_slope": float(self.dry_edge_slope),
            "dry_edge_intercept": float(self.dry_edge_intercept),
            "is_fallback": bool(self.is_fallback),
            "n_samples": int(self.n_samples),
            "r2": None if self.r2 is None else float(self.r2),
            "reason": self.reason,
        }


# ======================================================================== #
#  1.  Median composite                                                     #
# ======================================================================== #

def _nanmedian(stack: np.ndarray) -> np.ndarray:
    with warnings.catch_warnings():
        # all-NaN pixels stay NaN; numpy warns about them
        warnings.simplefilter("ignore", category=RuntimeWarning)
        return np.nanmedian(stack, axis=0)


def median_composite(joined: JoinedSeries) -> Tuple[RasterFrame, RasterFrame]:
    """
    Per-pixel temporal median of LST and NDVI across all joined frames.

    Pixels with no valid observation in a band remain invalid in that
    band's composite.
    """
    if len(joined) == 0:
        raise ValueError("Cannot build a median composite from an empty joined series.")

    grid = joined.grid
    lst_med = _nanmedian(np.stack([f.lst.masked() for f in joined], axis=0))
    ndvi_med = _nanmedian(np.stack([f.ndvi.masked() for f in joined], axis=0))
    return (
        RasterFrame.from_masked(lst_med, grid, name="LST_Celsius_median"),
        RasterFrame.from_masked(ndvi_med, grid, name="NDVI_calculated_median"),
    )


# ======================================================================== #
#  2.  Pixel sampling                                                       #
# ======================================================================== #

def sample_pixels(
    lst: RasterFrame,
    ndvi: RasterFrame,
    region_mask: Optional[np.ndarray] = None,
    num_pixels: int = 10000,
    seed: int = 42,
) -> pd.DataFrame:
    """
    Draw a seeded random pixel sample from the composite pair.

    Up to *num_pixels* distinct pixel positions are drawn uniformly from
    the region (the whole grid if *region_mask* is None).  Positions where
    either band is invalid are then discarded, so the returned sample can
    be smaller than *num_pixels*.

    Returns
    -------
    pd.DataFrame
        Columns ``y_idx, x_idx, ndvi, lst``.
    """
    if lst.shape != ndvi.shape:
        raise ValueError(f"LST shape {lst.shape} != NDVI shape {ndvi.shape}")
    if region_mask is None:
        region_mask = np.ones(lst.shape, dtype=bool)
    elif region_mask.shape != lst.shape:
        raise ValueError(
            f"Region mask shape {region_mask.shape} != raster shape {lst.shape}"
        )

    candidates = np.flatnonzero(region_mask)
    n = min(int(num_pixels), candidates.size)
    rng = np.random.default_rng(seed)
    picked = np.sort(rng.choice(candidates, size=n, replace=False)) if n else candidates[:0]

    yy, xx = np.unravel_index(picked, lst.shape)
    df = pd.DataFrame({
        "y_idx": yy,
        "x_idx": xx,
        "ndvi": ndvi.masked()[yy, xx],
        "lst": lst.masked()[yy, xx],
    })
    return df.dropna(subset=["ndvi", "lst"]).reset_index(drop=True)


# ======================================================================== #
#  3.  Edge fitting                                                         #
# ======================================================================== #

def _fallback(wet: float, n: int, cfg: EdgeConfig, reason: str) -> EdgeModel:
    warnings.warn(
        f"Using fallback dry edge parameters (slope={cfg.fallback_slope}, "
        f"intercept={cfg.fallback_intercept}): {reason}",
        DegenerateModelFallback,
    )
    return EdgeModel(
        wet_edge=wet,
        dry_edge_slope=float(cfg.fallback_slope),
        dry_edge_intercept=float(cfg.fallback_intercept),
        is_fallback=True,
        n_samples=n,
        reason=reason,
    )


def fit_edge_model(
    samples: pd.DataFrame,
    edge_config: Optional[EdgeConfig] = None,
) -> EdgeModel:
    """
    Fit wet and dry edges to a pixel sample.

    Parameters
    ----------
    samples : pd.DataFrame
        Must contain ``ndvi`` and ``lst`` columns; rows with NaN are ignored.
    edge_config : EdgeConfig, optional

    Returns
    -------
    EdgeModel

    Raises
    ------
    EdgeModelError
        If the sample holds no valid row (the wet edge is undefined).
    """
    cfg = edge_config or EdgeConfig()
    clean = samples[["ndvi", "lst"]].dropna()
    n = len(clean)
    if n == 0:
        raise EdgeModelError("No valid sampled pixels; wet and dry edges are undefined.")

    x = clean["ndvi"].to_numpy(dtype=np.float64)
    y = clean["lst"].to_numpy(dtype=np.float64)
    wet = float(np.percentile(y, cfg.wet_percentile))

    if n < cfg.min_regression_samples:
        return _fallback(wet, n, cfg, f"only {n} sample(s), need {cfg.min_regression_samples}")
    if np.std(x) <= cfg.min_ndvi_std:
        return _fallback(wet, n, cfg, f"NDVI spread {np.std(x):.3g} <= {cfg.min_ndvi_std}")

    reg = LinearRegression().fit(x.reshape(-1, 1), y)
    slope = float(reg.coef_[0])
    intercept = float(reg.intercept_)
    if reg.rank_ < 1:
        return _fallback(wet, n, cfg, f"rank-deficient design (rank={reg.rank_})")
    if not (np.isfinite(slope) and np.isfinite(intercept)):
        return _fallback(wet, n, cfg, "non-finite regression coefficients")

    r2 = float(r2_score(y, reg.predict(x.reshape(-1, 1))))
    return EdgeModel(
        wet_edge=wet,
        dry_edge_slope=slope,
        dry_edge_intercept=intercept,
        is_fallback=False,
        n_samples=n,
        r2=r2,
    )


def compute_edge_model(
    joined: JoinedSeries,
    region_mask: Optional[np.ndarray] = None,
    edge_config: Optional[EdgeConfig] = None,
) -> EdgeModel:
    """Median composite → pixel sample → edge fit, for one full time range."""
    cfg = edge_config or EdgeConfig()
    lst_med, ndvi_med = median_composite(joined)
    samples = sample_pixels(
        lst_med, ndvi_med, region_mask, num_pixels=cfg.num_pixels, seed=cfg.seed
    )
    return fit_edge_model(samples, cfg)
