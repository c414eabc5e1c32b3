"""
TVDI Drought Monitor — Temperature-Vegetation Dryness Index pipeline.

Flow:
  raw MODIS LST / NDVI TIFFs → quality masking → two raster series
  → temporal join → median composite → pixel sample → wet / dry edges
  → per-timestep TVDI → temporal mean → drought classes → region stats

Modules
-------
config      : Configuration dataclasses, constants, date range validation
raster      : GridSpec, RasterFrame, RasterSeries, JoinedFrame, JoinedSeries
ingestion   : parse_timestamp, list_sorted_tiffs, validate_alignment, loaders
quality     : QA decoding and rescaling of LST (MOD11A1) and NDVI (MOD13A1)
joining     : Nearest-timestamp join of LST and NDVI within a tolerance
edges       : Median composite, pixel sampling, wet / dry edge fitting
index       : Per-frame TVDI computation
composites  : Temporal mean and monthly mean rasters
classify    : Five-class drought classification
regions     : Region masks, spatial means, district statistics
monitor     : DroughtMonitor, end-to-end orchestration
export      : GeoTIFF / CSV export and run metadata
checks      : Consistency assertions on pipeline outputs
"""

__version__ = "0.1.0"
