"""
tvdi.quality
============
Per-frame QA masking and rescaling of the raw MODIS products.

LST  (MOD11A1, ``LST_Day_1km`` + ``QC_Day``)
    Bits 0-1 of ``QC_Day`` hold the mandatory QA code:
    0 = good quality, 1 = other quality, 2 = cloud / not produced,
    3 = not produced (other).  Codes 0 and 1 are kept.
    ``LST [°C] = DN * 0.02 - 273.15``.

NDVI (MOD13A1, ``NDVI`` + ``SummaryQA``)
    ``SummaryQA`` is an ordinal reliability summary
    (0 good, 1 marginal, 2 snow / ice, 3 cloudy).  Values ≤ 1 are kept.
    ``NDVI = DN / 10000``.

Both transforms are pure: nothing here raises on bad pixels; missing
or undecodable quality values simply become invalid pixels.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

import numpy as np

from .config import QualityConfig
from .raster import GridSpec, RasterFrame


def decode_lst_quality(qc: np.ndarray, bits: int = 0b11) -> np.ndarray:
    """
    Extract the mandatory QA code from ``QC_Day``.

    Non-finite or negative QC values map to ``-1`` so that they never pass
    a ``<= threshold`` test.
    """
    qc = np.asarray(qc, dtype=np.float64)
    ok = np.isfinite(qc) & (qc >= 0)
    codes = np.full(qc.shape, -1, dtype=np.int64)
    codes[ok] = qc[ok].astype(np.int64) & bits
    return codes


def lst_quality_mask(qc: np.ndarray, cfg: Optional[QualityConfig] = None) -> np.ndarray:
    """True where the decoded LST confidence code is ≤ ``lst_qc_max``."""
    cfg = cfg or QualityConfig()
    codes = decode_lst_quality(qc, cfg.lst_qc_bits)
    return (codes >= 0) & (codes <= cfg.lst_qc_max)


def ndvi_quality_mask(summary_qa: np.ndarray, cfg: Optional[QualityConfig] = None) -> np.ndarray:
    """True where ``SummaryQA`` is a finite value in ``[0, ndvi_qa_max]``."""
    cfg = cfg or QualityConfig()
    qa = np.asarray(summary_qa, dtype=np.float64)
    with np.errstate(invalid="ignore"):
        return np.isfinite(qa) & (qa >= 0) & (qa <= cfg.ndvi_qa_max)


def preprocess_lst(
    lst_raw: np.ndarray,
    qc: np.ndarray,
    timestamp: datetime,
    grid: GridSpec,
    cfg: Optional[QualityConfig] = None,
) -> RasterFrame:
    """
    Convert one raw MOD11A1 frame into a cleaned LST frame in °C.

    Parameters
    ----------
    lst_raw : array (y, x)
        Integer-encoded ``LST_Day_1km`` digital numbers.
    qc : array (y, x)
        ``QC_Day`` bit field.
    timestamp : datetime
        Acquisition date.
    grid : GridSpec
    cfg : QualityConfig, optional

    Returns
    -------
    RasterFrame
        Named ``LST_Celsius``; pixels with QA code > 1, fill values or
        non-finite DNs are invalid.
    """
    cfg = cfg or QualityConfig()
    raw = np.asarray(lst_raw, dtype=np.float64)
    if raw.shape != np.shape(qc):
        raise ValueError(f"LST shape {raw.shape} != QC shape {np.shape(qc)}")

    mask = lst_quality_mask(qc, cfg) & np.isfinite(raw)
    if cfg.lst_fill_value is not None:
        mask &= raw != cfg.lst_fill_value

    celsius = raw * cfg.lst_scale - cfg.kelvin_offset
    return RasterFrame(
        np.where(mask, celsius, np.nan), mask, grid, timestamp, name="LST_Celsius"
    )


def preprocess_ndvi(
    ndvi_raw: np.ndarray,
    summary_qa: np.ndarray,
    timestamp: datetime,
    grid: GridSpec,
    cfg: Optional[QualityConfig] = None,
) -> RasterFrame:
    """Convert one raw MOD13A1 frame into a cleaned NDVI frame in [-1, 1]."""
    cfg = cfg or QualityConfig()
    raw = np.asarray(ndvi_raw, dtype=np.float64)
    if raw.shape != np.shape(summary_qa):
        raise ValueError(
            f"NDVI shape {raw.shape} != SummaryQA shape {np.shape(summary_qa)}"
        )

    mask = ndvi_quality_mask(summary_qa, cfg) & np.isfinite(raw)
    ndvi = raw / cfg.ndvi_divisor
    return RasterFrame(
        np.where(mask, ndvi, np.nan), mask, grid, timestamp, name="NDVI_calculated"
    )
