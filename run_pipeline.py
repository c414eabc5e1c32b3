#!/usr/bin/env python3
"""
run_pipeline.py
===============
Main entry point for the TVDI drought monitor.

Usage
-----
  # Defaults (data/raster/mod11a1, data/raster/mod13a1, 2023)
  python run_pipeline.py

  # Explicit inputs and period
  python run_pipeline.py --lst-dir data/lst --ndvi-dir data/ndvi \\
      --districts data/vector/districts.gpkg --start 2023-01-01 --end 2023-12-31

  # Custom config from JSON
  python run_pipeline.py --config outputs/pipeline_config.json

Pipeline Flow
-------------
::

  MOD11A1 TIFFs            MOD13A1 TIFFs
       │                        │
  QC bits 0-1 ≤ 1          SummaryQA ≤ 1
  DN·0.02 − 273.15         DN / 10000
       │                        │
       └──── nearest join (±3 days) ────┘
                    │
                    ▼
  median composite → 10 000-pixel sample (seed 42)
                    │
                    ▼
  wet edge = LST p5,  dry edge = OLS(LST ~ NDVI)   [fallback −10 / 45]
                    │
                    ▼
  TVDI per frame  (clamped to [0, 1])
                    │
                    ▼
  temporal mean → classes 1..5  → district table, monthly maps
                    │
                    ▼
  mean_tvdi.tif + drought_class.tif + district_stats.csv + run_metadata.json
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Ensure the project root is on sys.path
PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from tvdi.config import (
    ClassConfig,
    EdgeConfig,
    InvalidInputRange,
    JoinConfig,
    PipelineConfig,
    QualityConfig,
)
from tvdi.monitor import DroughtMonitor
from tvdi.regions import format_mean, stats_table


# ======================================================================== #
#  Preset configuration                                                     #
# ======================================================================== #

def default_config() -> PipelineConfig:
    """Production configuration for one calendar year."""
    return PipelineConfig(
        lst_dir="data/raster/mod11a1",
        ndvi_dir="data/raster/mod13a1",
        districts_file="data/vector/districts.gpkg",
        national_file=None,
        output_dir="outputs",
        start_date="2023-01-01",
        end_date="2023-12-31",
        quality_config=QualityConfig(),
        join_config=JoinConfig(tolerance_days=3),
        edge_config=EdgeConfig(num_pixels=10000, seed=42),
        class_config=ClassConfig(),
    )


# ======================================================================== #
#  CLI                                                                      #
# ======================================================================== #

def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="TVDI Drought Monitor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a pipeline_config.json file.",
    )
    parser.add_argument("--lst-dir", type=str, default=None,
                        help="Directory of MOD11A1 GeoTIFFs.")
    parser.add_argument("--ndvi-dir", type=str, default=None,
                        help="Directory of MOD13A1 GeoTIFFs.")
    parser.add_argument("--districts", type=str, default=None,
                        help="District boundary file (any format geopandas reads).")
    parser.add_argument("--national", type=str, default=None,
                        help="National boundary file (default: union of districts).")
    parser.add_argument("--name-field", type=str, default=None,
                        help="District name attribute (default: ADM1_NAME).")
    parser.add_argument("--start", type=str, default=None,
                        help="Period start, inclusive (YYYY-MM-DD).")
    parser.add_argument("--end", type=str, default=None,
                        help="Period end, exclusive (YYYY-MM-DD).")
    parser.add_argument("--output-dir", type=str, default=None,
                        help="Directory for exported artefacts.")
    parser.add_argument(
        "--skip-checks",
        action="store_true",
        help="Skip consistency checks for faster iteration.",
    )
    return parser.parse_args(argv)


def build_config(args) -> PipelineConfig:
    if args.config:
        cfg = PipelineConfig.load(args.config)
        print(f"Loaded config from {args.config}")
    else:
        cfg = default_config()
        print("Using DEFAULT config")

    overrides = {
        "lst_dir": args.lst_dir,
        "ndvi_dir": args.ndvi_dir,
        "districts_file": args.districts,
        "national_file": args.national,
        "name_field": args.name_field,
        "start_date": args.start,
        "end_date": args.end,
        "output_dir": args.output_dir,
    }
    for key, value in overrides.items():
        if value is not None:
            setattr(cfg, key, value)
    return cfg


def main(argv=None) -> int:
    args = parse_args(argv)
    cfg = build_config(args)

    print(f"\nPipeline Configuration:")
    print(f"  LST dir        : {cfg.lst_dir}")
    print(f"  NDVI dir       : {cfg.ndvi_dir}")
    print(f"  Districts      : {cfg.districts_file or 'none'}")
    print(f"  National       : {cfg.national_file or 'union of districts'}")
    print(f"  Period         : {cfg.start_date} .. {cfg.end_date} (end exclusive)")
    print(f"  Join tolerance : ±{cfg.join_config.tolerance_days:g} days")
    print(f"  Sample         : {cfg.edge_config.num_pixels} px, seed {cfg.edge_config.seed}")
    print(f"  Class bounds   : {list(cfg.class_config.thresholds)}")
    print(f"  Output dir     : {cfg.output_dir}")
    print()

    monitor = DroughtMonitor(cfg, skip_checks=args.skip_checks)
    try:
        result = monitor.run()
    except InvalidInputRange as e:
        print(f"ERROR: invalid input range: {e}", file=sys.stderr)
        return 2

    model = result.edge_model
    print(f"\n{'='*60}")
    print("  EDGE MODEL")
    print(f"{'='*60}")
    print(f"  Wet edge       : {model.wet_edge:.3f} °C")
    print(f"  Dry edge       : LST = {model.dry_edge_slope:.3f} · NDVI + {model.dry_edge_intercept:.3f}")
    if model.is_fallback:
        print(f"  (fallback parameters: {model.reason})")
    elif model.r2 is not None:
        print(f"  R²             : {model.r2:.3f}  (n={model.n_samples})")

    print(f"\n  National {format_mean(monitor.aggregate(result.mean_tvdi))}")

    stats = monitor.district_stats()
    if stats:
        print(f"\n{'='*60}")
        print("  DISTRICTS")
        print(f"{'='*60}")
        print(stats_table(stats).to_string(index=False))

    monitor.export(result)
    print(f"\nResults saved to: {cfg.output_dir}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
