"""
tvdi.ingestion
==============
Load MODIS GeoTIFF exports and district boundaries into the in-memory
raster / vector structures used by the pipeline.

Each GeoTIFF holds one acquisition of one product with its value band and
quality band (e.g. ``LST_Day_1km`` + ``QC_Day``), as produced by an Earth
Engine image export.  Files are matched to bands by their band
descriptions, falling back to band order when descriptions are missing.

Public API
----------
parse_timestamp(filename)                 → datetime
list_sorted_tiffs(input_dir, date_range)  → List[(datetime, path)]
validate_alignment(files)                 → dict  (raises on mismatch)
read_product_bands(path, band_names)      → (dict, GridSpec)
load_lst_series(input_dir, ...)           → RasterSeries
load_ndvi_series(input_dir, ...)          → RasterSeries
load_regions(path, name_field)            → gpd.GeoDataFrame
dissolve_regions(gdf)                     → shapely geometry
"""

from __future__ import annotations

import glob
import os
import re
import warnings
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import geopandas as gpd
import numpy as np
import rasterio

from .config import DEFAULT_NAME_FIELD, DateRange, QualityConfig
from .quality import preprocess_lst, preprocess_ndvi
from .raster import AlignmentError, GridSpec, RasterSeries


# ======================================================================== #
#  1.  Timestamp parsing                                                    #
# ======================================================================== #

def parse_timestamp(filename: str) -> datetime:
    """
    Extract an acquisition date from a GeoTIFF filename.

    Supported patterns (tested in order):
      • Earth Engine index : ``MOD11A1_2023_01_17.tif``  (``YYYY_MM_DD``)
      • MODIS granule      : ``MOD13A1.A2023017.h20v11.tif``  (``AYYYYDDD``)
      • ISO-ish            : ``ndvi_20230117.tif``  (``YYYYMMDD``)

    Raises
    ------
    ValueError
        If no timestamp pattern is found.
    """
    base = os.path.basename(filename)

    m_ee = re.search(r"(\d{4})_(\d{2})_(\d{2})", base)
    if m_ee:
        yyyy, mm, dd = m_ee.groups()
        return datetime(int(yyyy), int(mm), int(dd))

    m_doy = re.search(r"A(\d{4})(\d{3})", base)
    if m_doy:
        yyyy, doy = m_doy.groups()
        return datetime(int(yyyy), 1, 1) + timedelta(days=int(doy) - 1)

    m_iso = re.search(r"(\d{8})", base)
    if m_iso:
        return datetime.strptime(m_iso.group(1), "%Y%m%d")

    raise ValueError(f"Cannot parse timestamp from filename: {filename}")


# ======================================================================== #
#  2.  File listing                                                         #
# ======================================================================== #

def list_sorted_tiffs(
    input_dir: str | Path,
    date_range: Optional[DateRange] = None,
) -> List[Tuple[datetime, str]]:
    """
    List all ``*.tif`` files in *input_dir*, parse timestamps, keep those
    inside *date_range* and sort chronologically.

    Returns
    -------
    list of (datetime, filepath) sorted ascending by time.
    """
    files = glob.glob(os.path.join(str(input_dir), "*.tif"))
    parsed: List[Tuple[datetime, str]] = []
    for f in files:
        try:
            ts = parse_timestamp(f)
        except ValueError:
            warnings.warn(f"Skipping file with unparseable timestamp: {f}")
            continue
        if date_range is None or date_range.contains(ts):
            parsed.append((ts, f))
    parsed.sort(key=lambda x: (x[0], x[1]))
    return parsed


# ======================================================================== #
#  3.  Alignment validation                                                 #
# ======================================================================== #

def validate_alignment(files: Sequence[str]) -> Dict:
    """
    Check that all GeoTIFF files share the same CRS, transform and shape.

    Returns
    -------
    dict
        Reference metadata extracted from the first file (crs, transform,
        width, height, nodata, dtype, count).

    Raises
    ------
    AlignmentError
        With a descriptive message listing every mismatch.
    """
    if not files:
        raise AlignmentError("No files to validate.")

    ref = _extract_meta(files[0])
    errors: List[str] = []

    for path in files[1:]:
        meta = _extract_meta(path)
        fname = os.path.basename(path)
        if meta["crs"] != ref["crs"]:
            errors.append(f"{fname}: CRS {meta['crs']} != reference {ref['crs']}")
        if meta["transform"] != ref["transform"]:
            errors.append(f"{fname}: transform {meta['transform']} != reference")
        if (meta["width"], meta["height"]) != (ref["width"], ref["height"]):
            errors.append(
                f"{fname}: shape ({meta['height']},{meta['width']}) "
                f"!= reference ({ref['height']},{ref['width']})"
            )

    if errors:
        msg = "Spatial alignment check failed:\n  • " + "\n  • ".join(errors)
        raise AlignmentError(msg)

    return ref


def _extract_meta(path: str) -> Dict:
    """Read lightweight rasterio metadata for one file."""
    with rasterio.open(path) as src:
        return {
            "crs": str(src.crs),
            "transform": src.transform,
            "width": src.width,
            "height": src.height,
            "nodata": src.nodata,
            "dtype": str(src.dtypes[0]),
            "count": src.count,
        }


# ======================================================================== #
#  4.  Band reading                                                         #
# ======================================================================== #

def read_product_bands(
    path: str,
    band_names: Sequence[str],
) -> Tuple[Dict[str, np.ndarray], GridSpec]:
    """
    Read the named bands of one product GeoTIFF.

    Bands are located by description; when the file carries no
    descriptions the requested names are mapped to bands 1..N in order.
    Nodata pixels are returned as NaN.
    """
    with rasterio.open(path) as src:
        descs = list(src.descriptions)
        if any(descs):
            index = {d: i + 1 for i, d in enumerate(descs) if d}
            missing = [b for b in band_names if b not in index]
            if missing:
                raise KeyError(
                    f"{os.path.basename(path)}: bands {missing} not found "
                    f"(available: {[d for d in descs if d]})"
                )
            indexes = [index[b] for b in band_names]
        else:
            if src.count < len(band_names):
                raise KeyError(
                    f"{os.path.basename(path)}: expected {len(band_names)} bands, "
                    f"found {src.count}"
                )
            indexes = list(range(1, len(band_names) + 1))

        bands: Dict[str, np.ndarray] = {}
        for name, idx in zip(band_names, indexes):
            arr = src.read(idx, masked=True)
            bands[name] = arr.astype(np.float64).filled(np.nan)

        grid = GridSpec(
            transform=src.transform,
            crs=str(src.crs),
            height=src.height,
            width=src.width,
        )
    return bands, grid


# ======================================================================== #
#  5.  Product series                                                       #
# ======================================================================== #

def load_lst_series(
    input_dir: str | Path,
    date_range: Optional[DateRange] = None,
    cfg: Optional[QualityConfig] = None,
) -> RasterSeries:
    """Load and QA-clean every MOD11A1 GeoTIFF in *input_dir*."""
    cfg = cfg or QualityConfig()
    sorted_files = list_sorted_tiffs(input_dir, date_range)
    if sorted_files:
        validate_alignment([p for _, p in sorted_files])

    frames = []
    for ts, path in sorted_files:
        bands, grid = read_product_bands(path, [cfg.lst_band, cfg.lst_qc_band])
        frames.append(
            preprocess_lst(bands[cfg.lst_band], bands[cfg.lst_qc_band], ts, grid, cfg)
        )
    return RasterSeries(frames, name="LST_Celsius")


def load_ndvi_series(
    input_dir: str | Path,
    date_range: Optional[DateRange] = None,
    cfg: Optional[QualityConfig] = None,
) -> RasterSeries:
    """Load and QA-clean every MOD13A1 GeoTIFF in *input_dir*."""
    cfg = cfg or QualityConfig()
    sorted_files = list_sorted_tiffs(input_dir, date_range)
    if sorted_files:
        validate_alignment([p for _, p in sorted_files])

    frames = []
    for ts, path in sorted_files:
        bands, grid = read_product_bands(path, [cfg.ndvi_band, cfg.ndvi_qa_band])
        frames.append(
            preprocess_ndvi(bands[cfg.ndvi_band], bands[cfg.ndvi_qa_band], ts, grid, cfg)
        )
    return RasterSeries(frames, name="NDVI_calculated")


# ======================================================================== #
#  6.  Boundaries                                                           #
# ======================================================================== #

def load_regions(
    path: str | Path,
    name_field: str = DEFAULT_NAME_FIELD,
) -> gpd.GeoDataFrame:
    """
    Load district polygons sorted by name.

    Raises
    ------
    ValueError
        If the layer has no CRS or lacks *name_field*.
    """
    gdf = gpd.read_file(path)
    if gdf.crs is None:
        raise ValueError(f"{path}: boundary layer has no CRS.")
    if name_field not in gdf.columns:
        raise ValueError(
            f"{path}: name field {name_field!r} not in columns {list(gdf.columns)}"
        )
    gdf = gdf[gdf.geometry.notna()].copy()
    return gdf.sort_values(name_field).reset_index(drop=True)


def dissolve_regions(gdf: gpd.GeoDataFrame):
    """Union of all region geometries (the national outline)."""
    return gdf.geometry.union_all()
