"""
tvdi.checks
===========
Alignment assertions and output-range guards for a monitor run.

Can be run standalone (``python -m tvdi.checks``) or imported.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np

from .edges import EdgeModel
from .raster import JoinedSeries, RasterFrame, RasterSeries


# ======================================================================== #
#  Series structure                                                         #
# ======================================================================== #

def assert_time_sorted(timestamps: Sequence) -> None:
    """Timestamps must be non-decreasing."""
    for a, b in zip(timestamps, timestamps[1:]):
        assert a <= b, f"Series not sorted by time: {a} > {b}"


def assert_joined_alignment(joined: JoinedSeries, tolerance) -> None:
    """Every pair shares one grid and lies within the join tolerance."""
    for f in joined:
        assert f.lst.grid == f.ndvi.grid, (
            f"Grid mismatch at {f.timestamp:%Y-%m-%d}"
        )
        assert f.time_diff <= tolerance, (
            f"Join tolerance exceeded at {f.timestamp:%Y-%m-%d}: {f.time_diff}"
        )


# ======================================================================== #
#  Model and outputs                                                        #
# ======================================================================== #

def assert_edge_model(model: EdgeModel, fallback_slope: float, fallback_intercept: float) -> None:
    """Finite parameters; the fallback pair appears together with the flag, never alone."""
    assert np.isfinite(model.wet_edge), f"Non-finite wet edge: {model.wet_edge}"
    assert np.isfinite(model.dry_edge_slope) and np.isfinite(model.dry_edge_intercept), (
        f"Non-finite dry edge: {model.dry_edge_slope}, {model.dry_edge_intercept}"
    )
    if model.is_fallback:
        assert (model.dry_edge_slope, model.dry_edge_intercept) == (
            fallback_slope, fallback_intercept
        ), "Fallback flag set but dry edge is not the fallback pair"


def assert_tvdi_range(series: RasterSeries, lo: float = 0.0, hi: float = 1.0) -> None:
    """Valid TVDI pixels must be finite and in [lo, hi]."""
    for frame in series:
        vals = frame.values[frame.mask]
        if vals.size == 0:
            continue
        assert np.isfinite(vals).all(), f"Non-finite TVDI at {frame.timestamp:%Y-%m-%d}"
        assert vals.min() >= lo, f"TVDI below {lo} at {frame.timestamp:%Y-%m-%d}: {vals.min()}"
        assert vals.max() <= hi, f"TVDI above {hi} at {frame.timestamp:%Y-%m-%d}: {vals.max()}"


def assert_class_values(classes: RasterFrame, n_classes: int = 5) -> None:
    """Valid pixels hold classes 1..n_classes."""
    vals = classes.values[classes.mask]
    if vals.size:
        assert vals.min() >= 1 and vals.max() <= n_classes, (
            f"Class values outside 1..{n_classes}: {np.unique(vals)}"
        )


# ======================================================================== #
#  Run all checks                                                           #
# ======================================================================== #

def run_all_checks(
    joined: JoinedSeries,
    model: EdgeModel,
    tvdi: RasterSeries,
    classes: RasterFrame,
    tolerance,
    fallback_slope: float = -10.0,
    fallback_intercept: float = 45.0,
) -> None:
    """Run the full battery of consistency checks."""
    print("Running consistency checks...")

    assert_time_sorted(joined.timestamps)
    assert_joined_alignment(joined, tolerance)
    assert_edge_model(model, fallback_slope, fallback_intercept)
    assert_time_sorted(tvdi.timestamps)
    assert_tvdi_range(tvdi)
    assert_class_values(classes)

    print("  ✓ All consistency checks passed.")


if __name__ == "__main__":
    print("tvdi.checks — import and call run_all_checks() from your pipeline.")
