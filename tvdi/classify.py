"""
tvdi.classify
=============
Five-class drought classification of the temporal-mean TVDI.

Classes use **closed upper bounds**: a mean of exactly 0.2 is class 1:

=====  ===================  ==========
Class  Label                Mean TVDI
=====  ===================  ==========
1      Very Wet (0-0.2)     ≤ 0.2
2      Wet (0.2-0.4)        ≤ 0.4
3      Normal (0.4-0.6)     ≤ 0.6
4      Dry (0.6-0.8)        ≤ 0.8
5      Very Dry (0.8-1)     > 0.8
=====  ===================  ==========

Pixels with no valid TVDI observation across the series are left
unclassified (value 0, mask False).
"""

from __future__ import annotations

from enum import IntEnum
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .composites import temporal_mean
from .config import ClassConfig
from .raster import RasterFrame, RasterSeries

UNCLASSIFIED: int = 0


class DroughtClass(IntEnum):
    VERY_WET = 1
    WET = 2
    NORMAL = 3
    DRY = 4
    VERY_DRY = 5

    @property
    def label(self) -> str:
        return CLASS_LABELS[self]

    @property
    def color(self) -> str:
        return CLASS_PALETTE[self]


CLASS_LABELS = {
    DroughtClass.VERY_WET: "Very Wet (0-0.2)",
    DroughtClass.WET: "Wet (0.2-0.4)",
    DroughtClass.NORMAL: "Normal (0.4-0.6)",
    DroughtClass.DRY: "Dry (0.6-0.8)",
    DroughtClass.VERY_DRY: "Very Dry (0.8-1)",
}

CLASS_PALETTE = {
    DroughtClass.VERY_WET: "0047AB",
    DroughtClass.WET: "6EC4E8",
    DroughtClass.NORMAL: "76BA1B",
    DroughtClass.DRY: "FFC000",
    DroughtClass.VERY_DRY: "E50000",
}


def legend() -> List[Tuple[int, str, str]]:
    """``(class, label, hex colour)`` rows for map legends."""
    return [(int(c), c.label, c.color) for c in DroughtClass]


def classify_values(
    values: np.ndarray,
    thresholds: Sequence[float] = ClassConfig().thresholds,
) -> np.ndarray:
    """
    Map TVDI values to classes 1..len(thresholds)+1.

    ``np.digitize(..., right=True)`` counts the thresholds strictly below
    each value, which is exactly the closed-upper-bound rule.  NaN maps to
    ``UNCLASSIFIED``.
    """
    values = np.asarray(values, dtype=np.float64)
    bounds = np.asarray(thresholds, dtype=np.float64)
    if np.any(np.diff(bounds) <= 0):
        raise ValueError(f"Class thresholds must be strictly increasing: {list(thresholds)}")
    classes = np.digitize(values, bounds, right=True) + 1
    return np.where(np.isnan(values), UNCLASSIFIED, classes).astype(np.uint8)


def classify_frame(
    mean_tvdi: RasterFrame,
    class_config: Optional[ClassConfig] = None,
) -> RasterFrame:
    """Classify an already-averaged TVDI frame."""
    cfg = class_config or ClassConfig()
    classes = classify_values(mean_tvdi.masked(), cfg.thresholds)
    return RasterFrame(
        classes, mean_tvdi.mask.copy(), mean_tvdi.grid, mean_tvdi.timestamp,
        name="Drought_Class",
    )


def classify(
    tvdi_series: RasterSeries,
    class_config: Optional[ClassConfig] = None,
) -> RasterFrame:
    """Temporal mean of the TVDI series, then classes 1..5 per pixel."""
    return classify_frame(temporal_mean(tvdi_series, name="mean_TVDI"), class_config)
