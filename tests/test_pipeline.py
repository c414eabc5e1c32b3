"""
tests/test_pipeline.py
======================
Unit tests for the tvdi modules.
Run with:  python -m pytest tests/ -v
"""

from __future__ import annotations

import json
import sys
import warnings
from datetime import datetime, timedelta
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Ensure project root is importable
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

T0 = datetime(2023, 1, 1)
WEST, NORTH, RES = 30.0, 0.0, 0.01


# ======================================================================== #
#  Helpers                                                                  #
# ======================================================================== #

def _grid(height=10, width=10):
    from rasterio.transform import from_origin
    from tvdi.raster import GridSpec
    return GridSpec(from_origin(WEST, NORTH, RES, RES), "EPSG:4326", height, width)


def _frame(values, timestamp=None, name="value", grid=None):
    from tvdi.raster import RasterFrame
    values = np.asarray(values, dtype=np.float64)
    grid = grid or _grid(*values.shape)
    return RasterFrame.from_masked(values, grid, timestamp=timestamp, name=name)


def _series(arrays, timestamps, name="series"):
    from tvdi.raster import RasterSeries
    return RasterSeries(
        [_frame(a, t, name) for a, t in zip(arrays, timestamps)], name=name
    )


def _joined(lst_arrays, ndvi_arrays, timestamps):
    from tvdi.joining import join_nearest
    return join_nearest(
        _series(lst_arrays, timestamps, "LST_Celsius"),
        _series(ndvi_arrays, timestamps, "NDVI_calculated"),
    )


def _write_product(path, bands, grid):
    """Write a multi-band GeoTIFF with band descriptions, as exported from Earth Engine."""
    import rasterio
    names = list(bands)
    first = np.asarray(bands[names[0]])
    with rasterio.open(
        path, "w", driver="GTiff",
        height=grid.height, width=grid.width, count=len(names),
        dtype=first.dtype.name, crs=grid.crs, transform=grid.transform,
    ) as dst:
        for i, name in enumerate(names, start=1):
            dst.write(np.asarray(bands[name], dtype=first.dtype), i)
            dst.set_band_description(i, name)


def _lst_dn(celsius):
    return np.round((np.asarray(celsius) + 273.15) / 0.02).astype(np.uint16)


def _districts():
    import geopandas as gpd
    from shapely.geometry import box
    return gpd.GeoDataFrame(
        {"ADM1_NAME": ["West", "East"]},
        geometry=[
            box(WEST, NORTH - 0.2, WEST + 0.1, NORTH),
            box(WEST + 0.1, NORTH - 0.2, WEST + 0.2, NORTH),
        ],
        crs="EPSG:4326",
    )


@pytest.fixture
def monitor_data(tmp_path):
    """30 daily LST files and four 8-day NDVI files on a 20×20 grid."""
    grid = _grid(20, 20)
    yy, xx = np.mgrid[0:20, 0:20]
    ndvi = 0.2 + 0.6 * xx / 19.0
    lst = 45.0 - 20.0 * ndvi - 5.0 * yy / 19.0

    lst_dir = tmp_path / "mod11a1"
    ndvi_dir = tmp_path / "mod13a1"
    lst_dir.mkdir()
    ndvi_dir.mkdir()

    qc = np.zeros((20, 20), dtype=np.uint16)
    qc[0, 0] = 2  # cloud
    for d in range(30):
        ts = T0 + timedelta(days=d)
        _write_product(
            lst_dir / f"MOD11A1_{ts:%Y_%m_%d}.tif",
            {"LST_Day_1km": _lst_dn(lst), "QC_Day": qc},
            grid,
        )
    for d in (0, 8, 16, 24):
        ts = T0 + timedelta(days=d)
        _write_product(
            ndvi_dir / f"MOD13A1_{ts:%Y_%m_%d}.tif",
            {
                "NDVI": np.round(ndvi * 10000).astype(np.int16),
                "SummaryQA": np.zeros((20, 20), dtype=np.int16),
            },
            grid,
        )

    districts_file = tmp_path / "districts.geojson"
    _districts().to_file(districts_file, driver="GeoJSON")

    from tvdi.config import PipelineConfig
    return PipelineConfig(
        lst_dir=str(lst_dir),
        ndvi_dir=str(ndvi_dir),
        districts_file=str(districts_file),
        output_dir=str(tmp_path / "out"),
        start_date="2023-01-01",
        end_date="2023-02-01",
    )


# ======================================================================== #
#  Config tests                                                             #
# ======================================================================== #

class TestConfig:
    def test_pipeline_config_roundtrip(self, tmp_path):
        from tvdi.config import EdgeConfig, PipelineConfig
        cfg = PipelineConfig(start_date="2023-02-01", edge_config=EdgeConfig(num_pixels=500))
        path = tmp_path / "cfg.json"
        cfg.save(path)
        loaded = PipelineConfig.load(path)
        assert loaded.start_date == "2023-02-01"
        assert loaded.edge_config.num_pixels == 500
        assert loaded.class_config.thresholds == (0.2, 0.4, 0.6, 0.8)
        assert loaded.join_config.tolerance == timedelta(days=3)

    def test_edge_config_defaults(self):
        from tvdi.config import EdgeConfig
        cfg = EdgeConfig()
        assert cfg.num_pixels == 10000
        assert cfg.seed == 42
        assert (cfg.fallback_slope, cfg.fallback_intercept) == (-10.0, 45.0)

    def test_tolerance_in_ms(self):
        from tvdi.config import JoinConfig, MS_PER_DAY
        assert JoinConfig().tolerance_ms == 3 * MS_PER_DAY == 259_200_000

    def test_date_range_half_open(self):
        from tvdi.config import DateRange
        dr = DateRange.from_strings("2023-01-01", "2023-12-31")
        assert dr.contains(datetime(2023, 1, 1))
        assert dr.contains(datetime(2023, 12, 30))
        assert not dr.contains(datetime(2023, 12, 31))
        assert dr.year == 2023

    @pytest.mark.parametrize("start,end", [("2023-05-01", "2023-04-01"), ("2023-05-01", "2023-05-01")])
    def test_date_range_end_before_start_raises(self, start, end):
        from tvdi.config import DateRange, InvalidInputRange
        with pytest.raises(InvalidInputRange):
            DateRange.from_strings(start, end).validate()

    def test_unparseable_date_raises(self):
        from tvdi.config import DateRange, InvalidInputRange
        with pytest.raises(InvalidInputRange) as excinfo:
            DateRange.from_strings("2023-13-45", "2024-01-01")
        assert isinstance(excinfo.value.__cause__, ValueError)

    def test_file_hash(self, tmp_path):
        from tvdi.config import file_hash
        f = tmp_path / "dummy.txt"
        f.write_text("hello")
        h = file_hash(f)
        assert isinstance(h, str) and len(h) == 64  # sha256 hex digest


# ======================================================================== #
#  Ingestion tests                                                          #
# ======================================================================== #

class TestIngestion:
    def test_parse_timestamp_ee_index(self):
        from tvdi.ingestion import parse_timestamp
        assert parse_timestamp("MOD11A1_2023_01_17.tif") == datetime(2023, 1, 17)

    def test_parse_timestamp_modis_granule(self):
        from tvdi.ingestion import parse_timestamp
        assert parse_timestamp("MOD13A1.A2023017.h20v11.061.tif") == datetime(2023, 1, 17)

    def test_parse_timestamp_iso(self):
        from tvdi.ingestion import parse_timestamp
        assert parse_timestamp("ndvi_20230117.tif") == datetime(2023, 1, 17)

    def test_parse_timestamp_bad_raises(self):
        from tvdi.ingestion import parse_timestamp
        with pytest.raises(ValueError):
            parse_timestamp("random_file.tif")

    def test_load_lst_series_filters_and_rescales(self, tmp_path):
        from tvdi.config import DateRange
        from tvdi.ingestion import load_lst_series
        grid = _grid(4, 5)
        dn = _lst_dn(np.full((4, 5), 20.0))
        qc = np.zeros((4, 5), dtype=np.uint16)
        qc[1, 1] = 3
        for day in ("2023_01_05", "2023_01_02", "2024_01_01"):
            _write_product(tmp_path / f"MOD11A1_{day}.tif", {"LST_Day_1km": dn, "QC_Day": qc}, grid)

        series = load_lst_series(tmp_path, DateRange(datetime(2023, 1, 1), datetime(2024, 1, 1)))
        assert series.timestamps == [datetime(2023, 1, 2), datetime(2023, 1, 5)]
        assert series.grid == grid
        assert series.grid.resolution == (RES, RES)
        frame = series[0]
        assert frame.name == "LST_Celsius"
        assert not frame.mask[1, 1]
        assert frame.valid_count == 19
        np.testing.assert_allclose(frame.values[frame.mask], 20.0, atol=0.011)

    def test_read_bands_by_description(self, tmp_path):
        from tvdi.ingestion import read_product_bands
        grid = _grid(3, 3)
        path = tmp_path / "MOD13A1_2023_01_01.tif"
        _write_product(
            path,
            {"SummaryQA": np.ones((3, 3), dtype=np.int16),
             "NDVI": np.full((3, 3), 5000, dtype=np.int16)},
            grid,
        )
        bands, read_grid = read_product_bands(str(path), ["NDVI", "SummaryQA"])
        assert read_grid == grid
        assert np.all(bands["NDVI"] == 5000)
        assert np.all(bands["SummaryQA"] == 1)

    def test_misaligned_files_raise(self, tmp_path):
        from tvdi.ingestion import load_lst_series
        from tvdi.raster import AlignmentError
        a, b = _grid(4, 4), _grid(5, 4)
        zeros = np.zeros((4, 4), dtype=np.uint16)
        _write_product(tmp_path / "MOD11A1_2023_01_01.tif", {"LST_Day_1km": zeros, "QC_Day": zeros}, a)
        zeros = np.zeros((5, 4), dtype=np.uint16)
        _write_product(tmp_path / "MOD11A1_2023_01_02.tif", {"LST_Day_1km": zeros, "QC_Day": zeros}, b)
        with pytest.raises(AlignmentError):
            load_lst_series(tmp_path)

    def test_load_regions_sorted(self, tmp_path):
        from tvdi.ingestion import load_regions
        path = tmp_path / "districts.geojson"
        _districts().to_file(path, driver="GeoJSON")
        gdf = load_regions(path)
        assert list(gdf["ADM1_NAME"]) == ["East", "West"]

    def test_load_regions_missing_field_raises(self, tmp_path):
        from tvdi.ingestion import load_regions
        path = tmp_path / "districts.geojson"
        _districts().to_file(path, driver="GeoJSON")
        with pytest.raises(ValueError):
            load_regions(path, name_field="NAME_2")

    def test_dissolve_regions_is_national_outline(self):
        from shapely.geometry import box
        from tvdi.ingestion import dissolve_regions
        outline = dissolve_regions(_districts())
        assert outline.area == pytest.approx(0.2 * 0.2)
        assert outline.equals(box(WEST, NORTH - 0.2, WEST + 0.2, NORTH))


# ======================================================================== #
#  Quality tests                                                            #
# ======================================================================== #

class TestQuality:
    def test_decode_lst_quality_bits(self):
        from tvdi.quality import decode_lst_quality, lst_quality_mask
        qc = np.array([0, 1, 2, 3, 4, 5, 0b1110, np.nan])
        np.testing.assert_array_equal(decode_lst_quality(qc), [0, 1, 2, 3, 0, 1, 2, -1])
        np.testing.assert_array_equal(
            lst_quality_mask(qc), [True, True, False, False, True, True, False, False]
        )

    def test_preprocess_lst(self):
        from tvdi.quality import preprocess_lst
        raw = np.array([[14658.0, 0.0], [15000.0, np.nan]])
        qc = np.array([[0, 0], [2, 0]])
        frame = preprocess_lst(raw, qc, T0, _grid(2, 2))
        np.testing.assert_array_equal(frame.mask, [[True, False], [False, False]])
        assert frame.values[0, 0] == pytest.approx(14658 * 0.02 - 273.15)
        assert frame.timestamp == T0

    def test_preprocess_ndvi(self):
        from tvdi.quality import preprocess_ndvi
        raw = np.array([[5000.0, -2000.0, 8000.0, 3000.0]])
        qa = np.array([[0, 1, 2, 3]])
        frame = preprocess_ndvi(raw, qa, T0, _grid(1, 4))
        np.testing.assert_array_equal(frame.mask, [[True, True, False, False]])
        np.testing.assert_allclose(frame.values[0, :2], [0.5, -0.2])
        assert frame.name == "NDVI_calculated"


# ======================================================================== #
#  Raster container tests                                                   #
# ======================================================================== #

class TestRaster:
    def test_frames_are_read_only(self):
        frame = _frame(np.ones((2, 2)))
        with pytest.raises(ValueError):
            frame.values[0, 0] = 5.0

    def test_nan_is_invalid(self):
        from tvdi.raster import RasterFrame
        frame = RasterFrame(np.array([[1.0, np.nan]]), np.ones((1, 2), bool), _grid(1, 2))
        np.testing.assert_array_equal(frame.mask, [[True, False]])

    def test_series_sorted_by_time(self):
        ts = [T0 + timedelta(days=d) for d in (5, 1, 3)]
        series = _series([np.full((2, 2), d) for d in (5, 1, 3)], ts)
        assert series.timestamps == sorted(ts)
        assert series[0].values[0, 0] == 1

    def test_series_grid_mismatch_raises(self):
        from tvdi.raster import AlignmentError, RasterSeries
        with pytest.raises(AlignmentError):
            RasterSeries([_frame(np.ones((2, 2)), T0), _frame(np.ones((3, 2)), T0)])


# ======================================================================== #
#  Temporal join tests                                                      #
# ======================================================================== #

class TestJoining:
    def test_single_match_within_tolerance(self):
        from tvdi.joining import join_nearest
        lst = _series([np.ones((2, 2))], [T0], "LST_Celsius")
        ndvi = _series(
            [np.full((2, 2), 0.1), np.full((2, 2), 0.4)],
            [T0 + timedelta(days=1), T0 + timedelta(days=4)],
            "NDVI_calculated",
        )
        joined = join_nearest(lst, ndvi, timedelta(days=3))
        assert len(joined) == 1
        assert joined[0].timestamp == T0
        assert joined[0].ndvi.timestamp == T0 + timedelta(days=1)
        assert joined[0].time_diff == timedelta(days=1)

    def test_no_match_outside_tolerance(self):
        from tvdi.joining import join_nearest
        lst = _series([np.ones((2, 2))], [T0], "LST_Celsius")
        ndvi = _series([np.ones((2, 2))], [T0 + timedelta(days=4)], "NDVI_calculated")
        with pytest.warns(UserWarning, match="no NDVI_calculated match"):
            joined = join_nearest(lst, ndvi, timedelta(days=3))
        assert len(joined) == 0
        assert joined.unmatched == (T0,)

    def test_tolerance_is_inclusive_and_accepts_ms(self):
        from tvdi.config import MS_PER_DAY
        from tvdi.joining import join_nearest
        lst = _series([np.ones((2, 2))], [T0], "LST_Celsius")
        ndvi = _series([np.ones((2, 2))], [T0 + timedelta(days=3)], "NDVI_calculated")
        assert len(join_nearest(lst, ndvi, 3 * MS_PER_DAY)) == 1

    def test_tie_resolves_to_earlier_secondary(self):
        from tvdi.joining import join_nearest
        lst = _series([np.ones((2, 2))], [T0], "LST_Celsius")
        ndvi = _series(
            [np.full((2, 2), 0.1), np.full((2, 2), 0.9)],
            [T0 + timedelta(days=1), T0 - timedelta(days=1)],
            "NDVI_calculated",
        )
        joined = join_nearest(lst, ndvi)
        assert joined[0].ndvi.timestamp == T0 - timedelta(days=1)


# ======================================================================== #
#  Edge model tests                                                         #
# ======================================================================== #

class TestEdges:
    def test_single_point_uses_fallback(self):
        from tvdi.edges import DegenerateModelFallback, fit_edge_model
        samples = pd.DataFrame({"ndvi": [0.5], "lst": [30.0]})
        with pytest.warns(DegenerateModelFallback):
            model = fit_edge_model(samples)
        assert model.is_fallback
        assert model.dry_edge_slope == -10.0
        assert model.dry_edge_intercept == 45.0
        assert model.wet_edge == 30.0
        assert model.n_samples == 1

    def test_single_valid_pixel_series_uses_fallback(self):
        from tvdi.edges import DegenerateModelFallback, compute_edge_model
        lst = np.full((5, 5), np.nan)
        lst[2, 3] = 30.0
        ndvi = np.full((5, 5), 0.5)
        joined = _joined([lst], [ndvi], [T0])
        with pytest.warns(DegenerateModelFallback):
            model = compute_edge_model(joined)
        assert (model.dry_edge_slope, model.dry_edge_intercept) == (-10.0, 45.0)

    def test_constant_ndvi_uses_fallback(self):
        from tvdi.edges import DegenerateModelFallback, fit_edge_model
        samples = pd.DataFrame({"ndvi": [0.5] * 10, "lst": np.linspace(20, 30, 10)})
        with pytest.warns(DegenerateModelFallback, match="NDVI spread"):
            model = fit_edge_model(samples)
        assert model.is_fallback

    def test_linear_fit_recovers_edge(self):
        from tvdi.edges import fit_edge_model
        ndvi = np.linspace(0.1, 0.9, 50)
        samples = pd.DataFrame({"ndvi": ndvi, "lst": 50.0 - 20.0 * ndvi})
        model = fit_edge_model(samples)
        assert not model.is_fallback
        assert model.dry_edge_slope == pytest.approx(-20.0)
        assert model.dry_edge_intercept == pytest.approx(50.0)
        assert model.r2 == pytest.approx(1.0)
        assert model.wet_edge == pytest.approx(np.percentile(samples["lst"], 5))

    def test_empty_sample_raises(self):
        from tvdi.edges import EdgeModelError, fit_edge_model
        with pytest.raises(EdgeModelError):
            fit_edge_model(pd.DataFrame({"ndvi": [np.nan], "lst": [20.0]}))

    def test_sample_pixels_respects_region_and_drops_invalid(self):
        from tvdi.edges import sample_pixels
        lst = np.full((10, 10), 25.0)
        lst[0, :] = np.nan
        region = np.zeros((10, 10), dtype=bool)
        region[:5, :] = True
        df = sample_pixels(_frame(lst), _frame(np.full((10, 10), 0.3)), region, num_pixels=1000)
        assert len(df) == 40
        assert df["y_idx"].between(1, 4).all()

    def test_sample_pixels_is_seeded(self):
        from tvdi.edges import sample_pixels
        rng = np.random.default_rng(0)
        lst, ndvi = _frame(rng.normal(30, 5, (30, 30))), _frame(rng.uniform(0, 1, (30, 30)))
        a = sample_pixels(lst, ndvi, num_pixels=100, seed=7)
        b = sample_pixels(lst, ndvi, num_pixels=100, seed=7)
        c = sample_pixels(lst, ndvi, num_pixels=100, seed=8)
        assert len(a) == 100
        pd.testing.assert_frame_equal(a, b)
        assert not a.equals(c)

    def test_median_composite_ignores_invalid(self):
        from tvdi.edges import median_composite
        lst = [np.array([[10.0, np.nan]]), np.array([[20.0, np.nan]]), np.array([[40.0, 5.0]])]
        ndvi = [np.full((1, 2), 0.2), np.full((1, 2), 0.4), np.full((1, 2), 0.9)]
        joined = _joined(lst, ndvi, [T0 + timedelta(days=d) for d in range(3)])
        lst_med, ndvi_med = median_composite(joined)
        np.testing.assert_allclose(lst_med.values, [[20.0, 5.0]])
        np.testing.assert_allclose(ndvi_med.values, [[0.4, 0.4]])


# ======================================================================== #
#  TVDI tests                                                               #
# ======================================================================== #

class TestTVDI:
    def test_reference_value(self):
        from tvdi.edges import EdgeModel
        from tvdi.index import tvdi_values
        model = EdgeModel(wet_edge=10.0, dry_edge_slope=-10.0, dry_edge_intercept=45.0)
        assert tvdi_values(np.array([20.0]), np.array([0.5]), model)[0] == pytest.approx(1 / 3)

    def test_clamped_for_any_model(self):
        from tvdi.edges import EdgeModel
        from tvdi.index import tvdi_values
        rng = np.random.default_rng(1)
        lst = rng.uniform(-20, 70, 500)
        ndvi = rng.uniform(-0.2, 1.0, 500)
        models = [EdgeModel(30.0, 0.0, 30.0)]  # dry == wet everywhere
        models += [
            EdgeModel(rng.uniform(-10, 50), rng.uniform(-40, 40), rng.uniform(-10, 60))
            for _ in range(200)
        ]
        for model in models:
            out = tvdi_values(lst, ndvi, model)
            assert np.isfinite(out).all()
            assert (out >= 0).all() and (out <= 1).all()

    def test_degenerate_denominator(self):
        from tvdi.edges import EdgeModel
        from tvdi.index import tvdi_values
        model = EdgeModel(wet_edge=30.0, dry_edge_slope=0.0, dry_edge_intercept=30.0)
        np.testing.assert_array_equal(
            tvdi_values(np.array([35.0, 30.0, 25.0]), np.zeros(3), model), [1.0, 0.0, 0.0]
        )

    def test_nan_propagates(self):
        from tvdi.edges import EdgeModel
        from tvdi.index import tvdi_values
        model = EdgeModel(10.0, -10.0, 45.0)
        out = tvdi_values(np.array([np.nan, 20.0]), np.array([0.5, np.nan]), model)
        assert np.isnan(out).all()

    def test_frame_mask_is_intersection(self):
        from tvdi.edges import EdgeModel
        from tvdi.index import compute_tvdi_series
        joined = _joined([np.array([[20.0, np.nan]])], [np.array([[np.nan, 0.5]])], [T0])
        tvdi = compute_tvdi_series(joined, EdgeModel(10.0, -10.0, 45.0))
        assert tvdi[0].valid_count == 0
        assert tvdi[0].timestamp == T0
        assert tvdi.name == "TVDI"


# ======================================================================== #
#  Classification tests                                                     #
# ======================================================================== #

class TestClassify:
    def test_thresholds_closed_upper_bound(self):
        from tvdi.classify import classify_values
        values = [0.0, 0.1, 0.2, 0.2000001, 0.4, 0.5, 0.6, 0.7, 0.8, 0.81, 1.0, np.nan]
        np.testing.assert_array_equal(
            classify_values(values), [1, 1, 1, 2, 2, 3, 3, 4, 4, 5, 5, 0]
        )

    def test_every_value_gets_one_class(self):
        from tvdi.classify import classify_values
        values = np.linspace(0, 1, 10001)
        classes = classify_values(values)
        assert set(np.unique(classes)) == {1, 2, 3, 4, 5}
        assert (np.diff(classes.astype(int)) >= 0).all()

    def test_non_increasing_thresholds_raise(self):
        from tvdi.classify import classify_values
        with pytest.raises(ValueError):
            classify_values([0.5], thresholds=(0.2, 0.2, 0.6, 0.8))

    def test_classify_uses_temporal_mean(self):
        from tvdi.classify import classify
        ts = [T0, T0 + timedelta(days=1)]
        series = _series(
            [np.array([[0.1, 0.9, np.nan]]), np.array([[0.5, np.nan, np.nan]])], ts, "TVDI"
        )
        classes = classify(series)
        np.testing.assert_array_equal(classes.values, [[2, 5, 0]])
        np.testing.assert_array_equal(classes.mask, [[True, True, False]])
        assert classes.name == "Drought_Class"

    def test_legend(self):
        from tvdi.classify import DroughtClass, legend
        rows = legend()
        assert [r[0] for r in rows] == [1, 2, 3, 4, 5]
        assert rows[0] == (1, "Very Wet (0-0.2)", "0047AB")
        assert DroughtClass.VERY_DRY.color == "E50000"


# ======================================================================== #
#  Composite tests                                                          #
# ======================================================================== #

class TestComposites:
    def test_temporal_mean_over_valid_only(self):
        from tvdi.composites import temporal_mean
        series = _series(
            [np.array([[1.0, np.nan, np.nan]]), np.array([[3.0, 5.0, np.nan]])],
            [T0, T0 + timedelta(days=1)],
        )
        mean = temporal_mean(series)
        np.testing.assert_allclose(mean.values[0, :2], [2.0, 5.0])
        assert not mean.mask[0, 2]

    def test_monthly_mean(self):
        from tvdi.composites import monthly_mean, monthly_means
        ts = [datetime(2023, 1, 5), datetime(2023, 1, 20), datetime(2023, 2, 3)]
        series = _series([np.full((2, 2), v) for v in (0.2, 0.4, 0.9)], ts, "TVDI")
        jan = monthly_mean(series, 1)
        np.testing.assert_allclose(jan.values, 0.3)
        assert jan.timestamp == datetime(2023, 1, 1)
        np.testing.assert_allclose(monthly_mean(series, 2).values, 0.9)
        assert monthly_mean(series, 3).valid_count == 0
        assert len(monthly_means(series)) == 12

    def test_bad_month_raises(self):
        from tvdi.composites import monthly_mean
        series = _series([np.ones((2, 2))], [T0])
        with pytest.raises(ValueError):
            monthly_mean(series, 13)


# ======================================================================== #
#  Region tests                                                             #
# ======================================================================== #

class TestRegions:
    def test_aggregate_outside_region_is_none(self):
        from shapely.geometry import box
        from tvdi.regions import aggregate
        frame = _frame(np.ones((10, 10)))
        assert aggregate(frame, box(40.0, 10.0, 41.0, 11.0)) is None

    def test_aggregate_all_invalid_is_none(self):
        from shapely.geometry import box
        from tvdi.regions import aggregate
        frame = _frame(np.full((10, 10), np.nan))
        assert aggregate(frame, box(WEST, NORTH - 0.1, WEST + 0.1, NORTH)) is None

    def test_aggregate_mean_inside_region(self):
        from shapely.geometry import box
        from tvdi.regions import aggregate
        _, xx = np.mgrid[0:10, 0:10]
        frame = _frame(xx.astype(float))
        # centres of columns 0..4 fall inside
        assert aggregate(frame, box(WEST, NORTH - 0.1, WEST + 0.05, NORTH)) == pytest.approx(2.0)

    def test_aggregate_subpixel_polygon_needs_all_touched(self):
        from shapely.geometry import box
        from tvdi.regions import aggregate
        frame = _frame(np.full((10, 10), 0.5))
        # inside pixel (0, 0) but clear of its centre at (30.005, -0.005)
        tiny = box(WEST + 0.0001, NORTH - 0.0049, WEST + 0.0004, NORTH - 0.0001)
        assert aggregate(frame, tiny) is None
        assert aggregate(frame, tiny, all_touched=True) == pytest.approx(0.5)

    def test_district_stats(self):
        from tvdi.raster import RasterFrame
        from tvdi.regions import district_stats, stats_table
        values = np.ones((20, 20), dtype=np.uint8)
        values[:, 10:] = 3
        classes = RasterFrame(values, np.ones((20, 20), bool), _grid(20, 20), name="Drought_Class")

        stats = {s.region_id: s for s in district_stats(classes, _districts())}
        assert stats["West"].mean_value == pytest.approx(1.0)
        assert stats["East"].drought_class == 3
        # 0.1° × 0.2° at the equator
        assert stats["West"].area_km2 == pytest.approx(246.0, rel=0.03)

        table = stats_table(list(stats.values()))
        assert list(table.columns) == ["District", "Mean_TVDI", "Area_km2", "Drought_Class"]

    def test_rounding_half_up(self):
        from tvdi.regions import RegionStat
        assert RegionStat("a", 2.5, 1.0).drought_class == 3
        assert RegionStat("a", 2.49, 1.0).drought_class == 2
        assert RegionStat("a", None, 1.0).drought_class is None

    def test_resolve_region(self):
        from tvdi.regions import region_names, resolve_region
        districts = _districts()
        assert region_names(districts) == ["All Districts", "East", "West"]
        national = resolve_region("All Districts", districts)
        assert national.area == pytest.approx(districts.geometry.area.sum())
        with pytest.raises(KeyError):
            resolve_region("Atlantis", districts)

    def test_region_time_series(self):
        from shapely.geometry import box
        from tvdi.regions import region_time_series
        ts = [T0, T0 + timedelta(days=1)]
        series = _series([np.full((10, 10), 0.2), np.full((10, 10), np.nan)], ts, "TVDI")
        df = region_time_series(series, box(WEST, NORTH - 0.1, WEST + 0.1, NORTH))
        assert list(df["time"]) == ts
        assert df["value"].iloc[0] == pytest.approx(0.2)
        assert pd.isna(df["value"].iloc[1])

    def test_format_mean(self):
        from tvdi.regions import format_mean
        assert format_mean(None) == "Mean TVDI: N/A"
        assert format_mean(0.33333) == "Mean TVDI: 0.333"


# ======================================================================== #
#  Check tests                                                              #
# ======================================================================== #

class TestChecks:
    def test_tvdi_range_check_fails_out_of_range(self):
        from tvdi.checks import assert_tvdi_range
        with pytest.raises(AssertionError):
            assert_tvdi_range(_series([np.full((2, 2), 1.5)], [T0]))

    def test_edge_model_check_requires_fallback_pair(self):
        from tvdi.checks import assert_edge_model
        from tvdi.edges import EdgeModel
        assert_edge_model(EdgeModel(20.0, -10.0, 45.0, is_fallback=True), -10.0, 45.0)
        with pytest.raises(AssertionError):
            assert_edge_model(EdgeModel(20.0, -12.0, 45.0, is_fallback=True), -10.0, 45.0)


# ======================================================================== #
#  End-to-end tests                                                         #
# ======================================================================== #

class TestEndToEnd:
    def test_uniform_scene_is_wet_class(self):
        from tvdi.classify import classify
        from tvdi.edges import EdgeModel
        from tvdi.index import compute_tvdi_series
        ts = [T0 + timedelta(days=d) for d in range(30)]
        joined = _joined([np.full((8, 8), 20.0)] * 30, [np.full((8, 8), 0.5)] * 30, ts)
        assert len(joined) == 30

        tvdi = compute_tvdi_series(joined, EdgeModel(10.0, -10.0, 45.0))
        for frame in tvdi:
            np.testing.assert_allclose(frame.values, 1 / 3)
        classes = classify(tvdi)
        assert (classes.values == 2).all()

    def test_uniform_scene_fits_fallback_edges(self):
        from tvdi.edges import DegenerateModelFallback, compute_edge_model
        ts = [T0 + timedelta(days=d) for d in range(30)]
        joined = _joined([np.full((8, 8), 20.0)] * 30, [np.full((8, 8), 0.5)] * 30, ts)
        with pytest.warns(DegenerateModelFallback):
            model = compute_edge_model(joined)
        assert model.is_fallback
        assert model.wet_edge == pytest.approx(20.0)

    def test_idempotent_with_fixed_seed(self):
        from tvdi.classify import classify
        from tvdi.edges import compute_edge_model
        from tvdi.index import compute_tvdi_series
        rng = np.random.default_rng(3)
        ts = [T0 + timedelta(days=d) for d in range(5)]
        lst = [rng.normal(30, 5, (40, 40)) for _ in ts]
        ndvi = [rng.uniform(0.1, 0.9, (40, 40)) for _ in ts]
        joined = _joined(lst, ndvi, ts)

        a = compute_edge_model(joined)
        b = compute_edge_model(joined)
        assert a.to_dict() == b.to_dict()
        ta = compute_tvdi_series(joined, a)
        tb = compute_tvdi_series(joined, b)
        for fa, fb in zip(ta, tb):
            np.testing.assert_array_equal(fa.values, fb.values)
        assert classify(ta).values.tobytes() == classify(tb).values.tobytes()


# ======================================================================== #
#  Monitor / export tests                                                   #
# ======================================================================== #

class TestMonitor:
    def test_run_and_export(self, monitor_data):
        from tvdi.monitor import DroughtMonitor
        monitor = DroughtMonitor(monitor_data)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            result = monitor.run()

        assert len(result.joined) + len(result.joined.unmatched) == 30
        assert not result.edge_model.is_fallback
        assert result.edge_model.dry_edge_slope < 0
        assert monitor.compute_edge_model() is result.edge_model
        assert not result.classes.mask[0, 0]  # clouded in every LST frame

        valid = result.classes.values[result.classes.mask]
        assert valid.min() >= 1 and valid.max() <= 5

        national = monitor.aggregate(result.mean_tvdi)
        assert national is not None and 0.0 <= national <= 1.0
        assert monitor.aggregate(result.mean_tvdi, "West") is not None
        with pytest.raises(KeyError):
            monitor.aggregate(result.mean_tvdi, "Atlantis")

        assert len(monitor.region_time_series("East")) == len(result.tvdi)
        assert monitor.monthly_mean(1).valid_count > 0
        assert monitor.monthly_mean(6).valid_count == 0

        stats = monitor.district_stats()
        assert [s.region_id for s in stats] == ["East", "West"]

        written = monitor.export(result)
        out = Path(monitor_data.output_dir)
        for name in ("mean_tvdi.tif", "drought_class.tif", "district_stats.csv",
                     "tvdi_timeseries.csv", "run_metadata.json", "pipeline_config.json"):
            assert (out / name).exists(), name
        assert "monthly_01" in written and "monthly_06" not in written

        meta = json.loads((out / "run_metadata.json").read_text())
        assert meta["edge_model"]["is_fallback"] is False
        assert len(meta["files_used"]) == 34

    def test_invalid_range_raises_before_loading(self, tmp_path):
        from tvdi.config import InvalidInputRange, PipelineConfig
        from tvdi.monitor import DroughtMonitor
        cfg = PipelineConfig(
            lst_dir=str(tmp_path / "missing"), ndvi_dir=str(tmp_path / "missing"),
            districts_file=None, output_dir=str(tmp_path / "out"),
            start_date="2023-05-01", end_date="2023-04-01",
        )
        with pytest.raises(InvalidInputRange):
            DroughtMonitor(cfg).run()
        assert not (tmp_path / "out").exists()

    def test_range_without_frames_raises(self, monitor_data):
        from tvdi.config import InvalidInputRange
        from tvdi.monitor import DroughtMonitor
        monitor_data.start_date, monitor_data.end_date = "2022-01-01", "2022-12-31"
        with pytest.raises(InvalidInputRange):
            DroughtMonitor(monitor_data).load_series()

    def test_cli_main(self, monitor_data, tmp_path):
        import run_pipeline
        cfg_path = tmp_path / "cfg.json"
        monitor_data.save(cfg_path)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            assert run_pipeline.main(["--config", str(cfg_path), "--skip-checks"]) == 0
            assert run_pipeline.main(
                ["--config", str(cfg_path), "--start", "2023-03-01", "--end", "2023-02-01"]
            ) == 2


class TestExport:
    def test_save_raster_roundtrip(self, tmp_path):
        import rasterio
        from tvdi.export import save_raster
        values = np.array([[0.1, np.nan], [0.5, 0.9]])
        path = save_raster(_frame(values, name="mean_TVDI"), tmp_path / "mean_tvdi")
        assert path.endswith(".tif")
        with rasterio.open(path) as src:
            assert src.nodata == -9999.0
            assert src.crs.to_epsg() == 4326
            assert src.transform == _grid(2, 2).transform
            data = src.read(1)
        assert data[0, 1] == -9999.0
        np.testing.assert_allclose(data[1], [0.5, 0.9], rtol=1e-6)

    def test_saved_raster_aligns_with_input(self, tmp_path):
        from tvdi.export import save_raster
        from tvdi.ingestion import validate_alignment
        grid = _grid(37, 53)
        src = tmp_path / "MOD11A1_2023_01_02.tif"
        dn = np.zeros((37, 53), dtype=np.uint16)
        _write_product(src, {"LST_Day_1km": dn, "QC_Day": dn}, grid)
        out = save_raster(_frame(np.full((37, 53), 0.25), grid=grid), tmp_path / "mean_tvdi")
        meta = validate_alignment([str(src), out])
        assert meta["transform"] == grid.transform

    def test_save_class_raster_uint8(self, tmp_path):
        import rasterio
        from tvdi.export import save_raster
        from tvdi.raster import RasterFrame
        values = np.array([[1, 2], [0, 5]], dtype=np.uint8)
        mask = values > 0
        path = save_raster(RasterFrame(values, mask, _grid(2, 2)), tmp_path / "classes.tif")
        with rasterio.open(path) as src:
            assert src.dtypes[0] == "uint8"
            assert src.nodata == 0
            np.testing.assert_array_equal(src.read(1), values)

    def test_make_serialisable(self):
        from tvdi.export import _make_serialisable
        out = _make_serialisable({"a": np.int64(3), "b": [np.float32(0.5)], "c": np.bool_(True)})
        assert json.dumps(out) == '{"a": 3, "b": [0.5], "c": true}'
