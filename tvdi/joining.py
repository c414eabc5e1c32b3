"""
tvdi.joining
============
Pair each LST acquisition with the closest NDVI composite in time.

MOD11A1 is daily while MOD13A1 is a 16-day composite, so most LST days
have an NDVI frame a few days away and some have none within tolerance.
Those LST frames are dropped and reported in ``JoinedSeries.unmatched``;
that is an expected outcome, not an error.

Public API
----------
join_nearest(primary, secondary, tolerance) → JoinedSeries
"""

from __future__ import annotations

import warnings
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Union

import numpy as np

from .config import MS_PER_DAY
from .raster import JoinedFrame, JoinedSeries, RasterSeries

DEFAULT_TOLERANCE = timedelta(days=3)


def _as_timedelta(tolerance: Union[timedelta, int, float]) -> timedelta:
    """Accept a timedelta or a tolerance in milliseconds."""
    if isinstance(tolerance, timedelta):
        return tolerance
    return timedelta(milliseconds=float(tolerance))


def nearest_index(target: datetime, candidates: Sequence[datetime]) -> Optional[int]:
    """
    Index of the candidate closest to *target*.

    Ties resolve to the first candidate in sequence order.  Returns None
    for an empty candidate list.
    """
    if not candidates:
        return None
    diffs = np.array([abs((c - target).total_seconds()) for c in candidates])
    return int(np.argmin(diffs))  # argmin returns the first minimum


def join_nearest(
    primary: RasterSeries,
    secondary: RasterSeries,
    tolerance: Union[timedelta, int, float] = DEFAULT_TOLERANCE,
) -> JoinedSeries:
    """
    Join two series by nearest timestamp within *tolerance*.

    Parameters
    ----------
    primary : RasterSeries
        LST frames; their timestamps become the joined timestamps.
    secondary : RasterSeries
        NDVI frames.
    tolerance : timedelta or number
        Maximum ``|t_primary - t_secondary|`` (inclusive).  Numbers are
        read as milliseconds, e.g. ``3 * 24 * 60 * 60 * 1000``.

    Returns
    -------
    JoinedSeries
        One JoinedFrame per matched primary frame, in primary order.
    """
    tol = _as_timedelta(tolerance)
    if tol < timedelta(0):
        raise ValueError(f"Tolerance must be non-negative, got {tol}")

    sec_times = secondary.timestamps
    joined: List[JoinedFrame] = []
    unmatched: List[datetime] = []

    for frame in primary:
        idx = nearest_index(frame.timestamp, sec_times)
        if idx is None:
            unmatched.append(frame.timestamp)
            continue
        diff = abs(sec_times[idx] - frame.timestamp)
        if diff <= tol:
            joined.append(JoinedFrame(lst=frame, ndvi=secondary[idx], time_diff=diff))
        else:
            unmatched.append(frame.timestamp)

    if unmatched:
        warnings.warn(
            f"{len(unmatched)} of {len(primary)} {primary.name} frames had no "
            f"{secondary.name} match within {tol.total_seconds() * 1000 / MS_PER_DAY:g} days "
            "and were dropped."
        )

    return JoinedSeries(frames=tuple(joined), unmatched=tuple(unmatched))
