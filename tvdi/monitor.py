"""
tvdi.monitor
============
Drought monitor: orchestrates one analysis period from raw GeoTIFFs to
classified maps and district statistics.

Stages are computed lazily and cached on the instance, so region and
month queries after :meth:`DroughtMonitor.run` reuse the same joined
series, edge model and TVDI stack.

.. code-block:: text

    validate date range
        → load LST / NDVI (QA-masked)   → join within tolerance
        → median composite → sample → edges   (once per monitor)
        → TVDI per frame → temporal mean → classes 1..5
        → region means, monthly means, district table

Public API
----------
MonitorResult                    – edge model + joined / TVDI / mean / classes
DroughtMonitor(config)           – instantiate once, call .run()
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import geopandas as gpd
import pandas as pd

from .checks import run_all_checks
from .classify import classify_frame
from .composites import monthly_mean, temporal_mean
from .config import ALL_DISTRICTS, InvalidInputRange, PipelineConfig
from .edges import EdgeModel, EdgeModelError, compute_edge_model
from .export import save_dataframe, save_raster, save_run_metadata
from .index import compute_tvdi_series
from .ingestion import (
    dissolve_regions,
    list_sorted_tiffs,
    load_lst_series,
    load_ndvi_series,
    load_regions,
)
from .joining import join_nearest
from .raster import GridSpec, JoinedSeries, RasterFrame, RasterSeries
from .regions import (
    RegionStat,
    aggregate,
    district_stats,
    region_mask,
    region_time_series,
    resolve_region,
    stats_table,
)


@dataclass(frozen=True, eq=False)
class MonitorResult:
    """Everything one run produces."""
    edge_model: EdgeModel
    joined: JoinedSeries
    tvdi: RasterSeries
    mean_tvdi: RasterFrame
    classes: RasterFrame


class DroughtMonitor:
    """
    End-to-end TVDI drought monitor for one period.

    Parameters
    ----------
    config : PipelineConfig
        Master configuration.
    skip_checks : bool
        If True, skip the consistency check battery in :meth:`run`.
    """

    def __init__(self, config: PipelineConfig, skip_checks: bool = False):
        self.cfg = config
        self.skip_checks = skip_checks
        self._joined: Optional[JoinedSeries] = None
        self._edge_model: Optional[EdgeModel] = None
        self._tvdi: Optional[RasterSeries] = None
        self._mean_tvdi: Optional[RasterFrame] = None
        self._classes: Optional[RasterFrame] = None
        self._districts: Optional[gpd.GeoDataFrame] = None
        self._national: Any = None
        self._grid: Optional[GridSpec] = None

    # ------------------------------------------------------------------ #
    #  Main entry point                                                    #
    # ------------------------------------------------------------------ #

    def run(self) -> MonitorResult:
        """Execute every stage and return the cached results."""
        t0 = time.time()
        self.cfg.date_range.validate()
        self.cfg.save(Path(self.cfg.output_dir) / "pipeline_config.json")

        joined = self.load_series()
        model = self.compute_edge_model()
        tvdi = self.compute_tvdi_series()
        classes = self.classify()

        if not self.skip_checks:
            run_all_checks(
                joined, model, tvdi, classes,
                tolerance=self.cfg.join_config.tolerance,
                fallback_slope=self.cfg.edge_config.fallback_slope,
                fallback_intercept=self.cfg.edge_config.fallback_intercept,
            )

        print(f"\n✓ Monitor run completed in {time.time() - t0:.1f}s")
        return MonitorResult(
            edge_model=model,
            joined=joined,
            tvdi=tvdi,
            mean_tvdi=self.mean_tvdi(),
            classes=classes,
        )

    # ------------------------------------------------------------------ #
    #  Inputs                                                              #
    # ------------------------------------------------------------------ #

    def load_series(self) -> JoinedSeries:
        """
        Load both products for the configured period and join them.

        Raises
        ------
        InvalidInputRange
            If end ≤ start, or either product has no frame in the period.
            The range is checked before any file is read.
        """
        if self._joined is not None:
            return self._joined

        date_range = self.cfg.date_range.validate()
        print(f"Loading MODIS series {date_range.start:%Y-%m-%d} .. "
              f"{date_range.end:%Y-%m-%d} (end exclusive)")

        qcfg = self.cfg.quality_config
        lst = load_lst_series(self.cfg.lst_dir, date_range, qcfg)
        if len(lst) == 0:
            raise InvalidInputRange(
                f"No LST frames in {self.cfg.lst_dir} for {self.cfg.start_date}..{self.cfg.end_date}"
            )
        ndvi = load_ndvi_series(self.cfg.ndvi_dir, date_range, qcfg)
        if len(ndvi) == 0:
            raise InvalidInputRange(
                f"No NDVI frames in {self.cfg.ndvi_dir} for {self.cfg.start_date}..{self.cfg.end_date}"
            )
        print(f"  ✓ LST: {len(lst)} frames, NDVI: {len(ndvi)} frames "
              f"(grid {lst.grid.height}×{lst.grid.width} at {lst.grid.resolution[0]:g}, CRS {lst.grid.crs})")

        self._grid = lst.grid
        joined = join_nearest(lst, ndvi, self.cfg.join_config.tolerance)
        print(f"  ✓ Joined {len(joined)} frames "
              f"({len(joined.unmatched)} LST frames without NDVI match)")
        self._joined = joined
        return joined

    def input_files(self) -> List[str]:
        """GeoTIFF paths read for the configured period."""
        date_range = self.cfg.date_range
        files = [p for _, p in list_sorted_tiffs(self.cfg.lst_dir, date_range)]
        files += [p for _, p in list_sorted_tiffs(self.cfg.ndvi_dir, date_range)]
        return files

    @property
    def districts(self) -> Optional[gpd.GeoDataFrame]:
        """District polygons in the raster CRS, or None without a boundary file."""
        if self._districts is None and self.cfg.districts_file:
            gdf = load_regions(self.cfg.districts_file, self.cfg.name_field)
            self._districts = gdf.to_crs(self._grid_crs())
        return self._districts

    @property
    def national(self):
        """National outline in the raster CRS (None means the whole grid)."""
        if self._national is None:
            if self.cfg.national_file:
                gdf = gpd.read_file(self.cfg.national_file)
                if gdf.crs is None:
                    raise ValueError(f"{self.cfg.national_file}: boundary layer has no CRS.")
                self._national = dissolve_regions(gdf.to_crs(self._grid_crs()))
            elif self.districts is not None:
                self._national = dissolve_regions(self.districts)
        return self._national

    def _grid_crs(self) -> str:
        self.load_series()
        return self._grid.crs

    # ------------------------------------------------------------------ #
    #  Model and indices                                                   #
    # ------------------------------------------------------------------ #

    def compute_edge_model(self) -> EdgeModel:
        """
        Fit the wet / dry edges once over the national region and cache them.

        Raises
        ------
        EdgeModelError
            If no frame was joined or no valid pixel survives sampling.
        """
        if self._edge_model is not None:
            return self._edge_model

        joined = self.load_series()
        if len(joined) == 0:
            raise EdgeModelError("No LST frame has an NDVI match; cannot fit edges.")

        mask = region_mask(self.national, joined.grid) if self.national is not None else None
        model = compute_edge_model(joined, mask, self.cfg.edge_config)

        tag = " (fallback)" if model.is_fallback else ""
        print(f"  ✓ Edge model{tag}: wet={model.wet_edge:.3f} °C, "
              f"dry = {model.dry_edge_slope:.3f}·NDVI + {model.dry_edge_intercept:.3f} "
              f"(n={model.n_samples})")
        self._edge_model = model
        return model

    def compute_tvdi_series(self) -> RasterSeries:
        if self._tvdi is None:
            self._tvdi = compute_tvdi_series(self.load_series(), self.compute_edge_model())
            print(f"  ✓ TVDI computed for {len(self._tvdi)} frames")
        return self._tvdi

    def mean_tvdi(self) -> RasterFrame:
        if self._mean_tvdi is None:
            self._mean_tvdi = temporal_mean(self.compute_tvdi_series(), name="mean_TVDI")
        return self._mean_tvdi

    def classify(self) -> RasterFrame:
        """Drought classes 1..5 of the temporal-mean TVDI."""
        if self._classes is None:
            self._classes = classify_frame(self.mean_tvdi(), self.cfg.class_config)
            print(f"  ✓ Classified {self._classes.valid_count:,} pixels")
        return self._classes

    # ------------------------------------------------------------------ #
    #  Region / month queries                                              #
    # ------------------------------------------------------------------ #

    def region_geometry(self, region_name: str = ALL_DISTRICTS):
        """Geometry for a selector value, in the raster CRS."""
        districts = self.districts
        if districts is None:
            if region_name == ALL_DISTRICTS:
                return self.national
            raise KeyError(f"Unknown region {region_name!r}: no district layer configured")
        return resolve_region(
            region_name, districts, self.cfg.name_field, national=self.national
        )

    def aggregate(self, raster: RasterFrame, region_name: str = ALL_DISTRICTS) -> Optional[float]:
        """Mean of *raster* over a named region; None when it holds no valid pixel."""
        geometry = self.region_geometry(region_name)
        if geometry is None:
            return float(raster.values[raster.mask].mean()) if raster.mask.any() else None
        return aggregate(raster, geometry)

    def monthly_mean(self, month: int) -> RasterFrame:
        """Mean TVDI of one calendar month of the analysis year."""
        return monthly_mean(self.compute_tvdi_series(), month, self.cfg.date_range.year)

    def district_stats(self) -> List[RegionStat]:
        """Per-district mean class and area; empty without a district layer."""
        if self.districts is None:
            return []
        return district_stats(
            self.classify(), self.districts, self.cfg.name_field, self.cfg.area_crs
        )

    def region_time_series(self, region_name: str = ALL_DISTRICTS) -> pd.DataFrame:
        """Region-mean TVDI per acquisition (``time, value``)."""
        tvdi = self.compute_tvdi_series()
        geometry = self.region_geometry(region_name)
        if geometry is None:
            rows = [
                {"time": f.timestamp,
                 "value": float(f.values[f.mask].mean()) if f.mask.any() else None}
                for f in tvdi
            ]
            return pd.DataFrame(rows, columns=["time", "value"])
        return region_time_series(tvdi, geometry)

    # ------------------------------------------------------------------ #
    #  Export                                                              #
    # ------------------------------------------------------------------ #

    def export(self, result: MonitorResult) -> Dict[str, str]:
        """Write rasters, tables and run metadata to ``output_dir``."""
        out = Path(self.cfg.output_dir)
        written: Dict[str, str] = {}

        written["mean_tvdi"] = save_raster(result.mean_tvdi, out / "mean_tvdi.tif")
        written["drought_class"] = save_raster(result.classes, out / "drought_class.tif")
        for m in range(1, 13):
            frame = self.monthly_mean(m)
            if frame.valid_count:
                written[f"monthly_{m:02d}"] = save_raster(frame, out / "monthly" / f"tvdi_{m:02d}.tif")

        stats = self.district_stats()
        if stats:
            written["district_stats"] = save_dataframe(stats_table(stats), out / "district_stats.csv")
        written["timeseries"] = save_dataframe(self.region_time_series(), out / "tvdi_timeseries.csv")

        counts = {
            "joined_frames": len(result.joined),
            "unmatched_lst_frames": len(result.joined.unmatched),
            "tvdi_frames": len(result.tvdi),
            "classified_pixels": result.classes.valid_count,
        }
        written["metadata"] = save_run_metadata(
            out,
            self.cfg,
            result.edge_model.to_dict(),
            counts,
            files_used=self.input_files(),
            extra={"national_mean_tvdi": self.aggregate(result.mean_tvdi)},
        )
        print(f"  ✓ Exported {len(written)} artefacts to {out}")
        return written
