"""
tvdi.composites
===============
Temporal reductions of a raster series: overall mean and calendar-month
means (the monthly map slider).
"""

from __future__ import annotations

import warnings
from datetime import datetime
from typing import List, Optional

import numpy as np

from .raster import GridSpec, RasterFrame, RasterSeries


def _nanmean(stack: np.ndarray) -> np.ndarray:
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=RuntimeWarning)
        return np.nanmean(stack, axis=0)


def _empty_frame(grid: GridSpec, timestamp: Optional[datetime], name: str) -> RasterFrame:
    return RasterFrame(
        np.full(grid.shape, np.nan), np.zeros(grid.shape, dtype=bool), grid, timestamp, name
    )


def temporal_mean(series: RasterSeries, name: Optional[str] = None) -> RasterFrame:
    """
    Per-pixel mean over valid observations only.  Pixels never observed
    stay invalid.
    """
    if len(series) == 0:
        raise ValueError(f"Cannot average an empty series ({series.name!r}).")
    mean = _nanmean(series.stack())
    return RasterFrame.from_masked(mean, series.grid, name=name or f"mean_{series.name}")


def monthly_mean(
    series: RasterSeries,
    month: int,
    year: Optional[int] = None,
) -> RasterFrame:
    """
    Mean of the frames whose timestamp falls in *month* of *year*.

    *year* defaults to the year of the first frame (the analysis year).
    A month with no frames returns an all-invalid frame.
    """
    if not 1 <= int(month) <= 12:
        raise ValueError(f"month must be in 1..12, got {month}")
    if len(series) == 0:
        raise ValueError(f"Cannot average an empty series ({series.name!r}).")

    year = year if year is not None else series.timestamps[0].year
    start = datetime(year, month, 1)
    end = datetime(year + 1, 1, 1) if month == 12 else datetime(year, month + 1, 1)
    subset = series.filter_date(start, end)

    if len(subset) == 0:
        return _empty_frame(series.grid, start, series.name)
    mean = _nanmean(subset.stack())
    return RasterFrame.from_masked(mean, series.grid, timestamp=start, name=series.name)


def monthly_means(series: RasterSeries, year: Optional[int] = None) -> List[RasterFrame]:
    """Twelve monthly mean frames, January first."""
    return [monthly_mean(series, m, year) for m in range(1, 13)]
