"""
tvdi.regions
============
Spatial reductions of rasters over region polygons.

The pipeline stages never branch on the selected region: callers resolve
a name ("All Districts" or a district) to a geometry with
:func:`resolve_region` and pass that geometry in.

Public API
----------
region_mask(geometry, grid)                       → bool array
aggregate(raster, geometry)                       → float | None
region_time_series(series, geometry)              → pd.DataFrame
district_stats(class_raster, districts, ...)      → List[RegionStat]
stats_table(stats)                                → pd.DataFrame
resolve_region(name, districts, ...)              → geometry
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Optional

import geopandas as gpd
import numpy as np
import pandas as pd
from rasterio.features import geometry_mask
from shapely.geometry import mapping

from .config import ALL_DISTRICTS, DEFAULT_AREA_CRS, DEFAULT_NAME_FIELD
from .ingestion import dissolve_regions
from .raster import GridSpec, RasterFrame, RasterSeries


@dataclass(frozen=True)
class RegionStat:
    """One row of the district statistics table."""
    region_id: str
    mean_value: Optional[float]
    area_km2: float

    @property
    def drought_class(self) -> Optional[int]:
        """Mean class rounded half-up to the nearest class integer."""
        if self.mean_value is None:
            return None
        return int(np.floor(self.mean_value + 0.5))


# ======================================================================== #
#  Masks and means                                                          #
# ======================================================================== #

def region_mask(geometry: Any, grid: GridSpec, all_touched: bool = False) -> np.ndarray:
    """
    True for pixels whose centre falls inside *geometry* (or that the
    geometry touches, with ``all_touched``).  Geometry must be in the grid CRS.
    """
    if geometry is None or geometry.is_empty:
        return np.zeros(grid.shape, dtype=bool)
    return geometry_mask(
        [mapping(geometry)],
        out_shape=grid.shape,
        transform=grid.transform,
        all_touched=all_touched,
        invert=True,
    )


def aggregate(raster: RasterFrame, geometry: Any, all_touched: bool = False) -> Optional[float]:
    """
    Mean of the valid pixels of *raster* inside *geometry*.

    A pixel belongs to the region when its centre lies inside *geometry*,
    or, with ``all_touched=True``, when the geometry touches it at all. A
    polygon smaller than a pixel that misses every centre therefore selects
    nothing unless ``all_touched`` is set.

    Returns None (never NaN or 0) when the region holds no valid pixel.
    """
    inside = region_mask(geometry, raster.grid, all_touched) & raster.mask
    if not inside.any():
        return None
    return float(raster.values[inside].astype(np.float64).mean())


def region_time_series(series: RasterSeries, geometry: Any) -> pd.DataFrame:
    """Region mean of every frame, as ``time, value`` rows (value may be None)."""
    if len(series) == 0:
        return pd.DataFrame({"time": pd.Series(dtype="datetime64[ns]"), "value": []})
    inside = region_mask(geometry, series.grid)
    rows = []
    for frame in series:
        sel = inside & frame.mask
        rows.append({
            "time": frame.timestamp,
            "value": float(frame.values[sel].mean()) if sel.any() else None,
        })
    return pd.DataFrame(rows)


# ======================================================================== #
#  District statistics                                                      #
# ======================================================================== #

def _compute_area_km2(gdf: gpd.GeoDataFrame, area_crs: str = DEFAULT_AREA_CRS) -> List[float]:
    """Polygon areas in km² from an equal-area CRS."""
    if gdf.crs is None:
        raise ValueError("Input geometries have no CRS; can't compute area safely.")
    tmp = gdf.to_crs(area_crs)
    return (tmp.geometry.area / 1_000_000.0).astype(float).tolist()


def district_stats(
    class_raster: RasterFrame,
    districts: gpd.GeoDataFrame,
    name_field: str = DEFAULT_NAME_FIELD,
    area_crs: str = DEFAULT_AREA_CRS,
) -> List[RegionStat]:
    """
    One RegionStat per district: mean class value over valid pixels and
    polygon area.

    Districts are reprojected to the raster CRS for masking and to
    *area_crs* for areas.
    """
    if districts.crs is None:
        raise ValueError("District layer has no CRS.")
    areas = _compute_area_km2(districts, area_crs)
    in_grid = districts.to_crs(class_raster.grid.crs)

    stats: List[RegionStat] = []
    for (_, row), area in zip(in_grid.iterrows(), areas):
        stats.append(
            RegionStat(
                region_id=str(row[name_field]),
                mean_value=aggregate(class_raster, row.geometry),
                area_km2=area,
            )
        )
    return stats


def stats_table(stats: List[RegionStat]) -> pd.DataFrame:
    """Export table: ``District, Mean_TVDI, Area_km2, Drought_Class``."""
    return pd.DataFrame(
        [
            {
                "District": s.region_id,
                "Mean_TVDI": s.mean_value,
                "Area_km2": s.area_km2,
                "Drought_Class": s.drought_class,
            }
            for s in stats
        ],
        columns=["District", "Mean_TVDI", "Area_km2", "Drought_Class"],
    )


# ======================================================================== #
#  Region selection                                                         #
# ======================================================================== #

def resolve_region(
    name: str,
    districts: gpd.GeoDataFrame,
    name_field: str = DEFAULT_NAME_FIELD,
    national: Any = None,
    crs: Optional[str] = None,
):
    """
    Geometry for a selector value.

    ``"All Districts"`` resolves to *national* (or the union of all
    districts).  When *crs* is given, district geometries are reprojected
    to it first; *national* must already be in that CRS.

    Raises
    ------
    KeyError
        For an unknown district name.
    """
    gdf = districts.to_crs(crs) if crs is not None else districts
    if name == ALL_DISTRICTS:
        if national is not None:
            return national
        return dissolve_regions(gdf)

    match = gdf[gdf[name_field] == name]
    if match.empty:
        raise KeyError(f"Unknown region {name!r}")
    return dissolve_regions(match)


def region_names(districts: gpd.GeoDataFrame, name_field: str = DEFAULT_NAME_FIELD) -> List[str]:
    """Selector items: "All Districts" followed by sorted district names."""
    return [ALL_DISTRICTS] + sorted(str(n) for n in districts[name_field].unique())


def format_mean(value: Optional[float]) -> str:
    """Panel label for a region mean."""
    return f"Mean TVDI: {value:.3f}" if value is not None else "Mean TVDI: N/A"
