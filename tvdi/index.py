"""
tvdi.index
==========
Temperature-Vegetation Dryness Index for each joined frame.

.. math::
    LST_{dry} = NDVI \\cdot slope + intercept

    TVDI = \\frac{LST - LST_{wet}}{LST_{dry} - LST_{wet}}, \\quad
    clamped to [0, 1]

Zero / negative denominators
----------------------------
Where ``LST_dry - LST_wet <= 0`` the edges leave no room for a ratio.
Those pixels are resolved before dividing: TVDI = 1 if ``LST > LST_wet``
(as dry as the edges allow), else 0.  This is the value the clamp would
produce for a vanishingly small positive denominator, and it keeps every
valid output finite.
"""

from __future__ import annotations

from typing import List

import numpy as np

from .edges import EdgeModel
from .raster import JoinedFrame, JoinedSeries, RasterFrame, RasterSeries


def tvdi_values(
    lst: np.ndarray,
    ndvi: np.ndarray,
    model: EdgeModel,
) -> np.ndarray:
    """
    Element-wise TVDI in [0, 1].  NaN inputs give NaN outputs; nothing else
    is non-finite.
    """
    lst = np.asarray(lst, dtype=np.float64)
    ndvi = np.asarray(ndvi, dtype=np.float64)

    num = lst - model.wet_edge
    den = model.dry_edge(ndvi) - model.wet_edge

    ok = den > 0
    safe_den = np.where(ok, den, 1.0)
    ratio = np.where(ok, num / safe_den, np.where(num > 0, 1.0, 0.0))
    out = np.clip(ratio, 0.0, 1.0)

    return np.where(np.isfinite(lst) & np.isfinite(ndvi), out, np.nan)


def compute_tvdi_frame(frame: JoinedFrame, model: EdgeModel) -> RasterFrame:
    """TVDI for one joined frame; keeps the joined (LST) timestamp."""
    values = tvdi_values(frame.lst.masked(), frame.ndvi.masked(), model)
    mask = frame.lst.mask & frame.ndvi.mask
    return RasterFrame(
        np.where(mask, values, np.nan), mask, frame.lst.grid, frame.timestamp, name="TVDI"
    )


def compute_tvdi_series(joined: JoinedSeries, model: EdgeModel) -> RasterSeries:
    """Apply one EdgeModel to every joined frame."""
    frames: List[RasterFrame] = [compute_tvdi_frame(f, model) for f in joined]
    return RasterSeries(frames, name="TVDI")
