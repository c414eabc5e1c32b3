"""
tvdi.config
===========
Central configuration: constants, dataclasses, and sane defaults.

A full monitor run is described by a `PipelineConfig` dataclass that is
serialised alongside the exported rasters for reproducibility.
"""

from __future__ import annotations

import hashlib
import json
import platform
import subprocess
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, Tuple


# ---------------------------------------------------------------------------
# Band catalogue  (MODIS/061 naming as exported from Earth Engine)
# ---------------------------------------------------------------------------
LST_BAND: str = "LST_Day_1km"
LST_QC_BAND: str = "QC_Day"
NDVI_BAND: str = "NDVI"
NDVI_QA_BAND: str = "SummaryQA"

# District layer attribute (FAO GAUL level 1)
DEFAULT_NAME_FIELD: str = "ADM1_NAME"
ALL_DISTRICTS: str = "All Districts"

# World Cylindrical Equal Area, used for polygon areas
DEFAULT_AREA_CRS: str = "EPSG:6933"

MS_PER_DAY: int = 24 * 60 * 60 * 1000


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class InvalidInputRange(ValueError):
    """Raised when the requested analysis period cannot be processed."""


# ---------------------------------------------------------------------------
# Date range
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class DateRange:
    """Half-open analysis period ``[start, end)``."""
    start: datetime
    end: datetime

    @classmethod
    def from_strings(cls, start: str, end: str) -> "DateRange":
        try:
            return cls(datetime.fromisoformat(start), datetime.fromisoformat(end))
        except ValueError as e:
            raise InvalidInputRange(f"Cannot parse date range {start!r}..{end!r}: {e}") from e

    def validate(self) -> "DateRange":
        if self.end <= self.start:
            raise InvalidInputRange(
                f"Empty date range: end {self.end:%Y-%m-%d} <= start {self.start:%Y-%m-%d}"
            )
        return self

    def contains(self, ts: datetime) -> bool:
        return self.start <= ts < self.end

    @property
    def year(self) -> int:
        return self.start.year


# ---------------------------------------------------------------------------
# Configuration dataclasses
# ---------------------------------------------------------------------------
@dataclass
class QualityConfig:
    """
    Rescaling and QA thresholds for the two MODIS products.

    LST (MOD11A1): ``value * 0.02 - 273.15`` in °C, valid while the 2-bit
    mandatory QA code (bits 0-1 of ``QC_Day``) is ≤ 1.
    NDVI (MOD13A1): ``value / 10000``, valid while ``SummaryQA`` ≤ 1.
    """
    lst_band: str = LST_BAND
    lst_qc_band: str = LST_QC_BAND
    lst_scale: float = 0.02
    kelvin_offset: float = 273.15
    lst_qc_bits: int = 0b11
    lst_qc_max: int = 1
    lst_fill_value: Optional[float] = 0.0
    ndvi_band: str = NDVI_BAND
    ndvi_qa_band: str = NDVI_QA_BAND
    ndvi_divisor: float = 10000.0
    ndvi_qa_max: int = 1

    def to_dict(self) -> dict:
        return {
            "lst_band": self.lst_band,
            "lst_qc_band": self.lst_qc_band,
            "lst_scale": self.lst_scale,
            "kelvin_offset": self.kelvin_offset,
            "lst_qc_bits": self.lst_qc_bits,
            "lst_qc_max": self.lst_qc_max,
            "lst_fill_value": self.lst_fill_value,
            "ndvi_band": self.ndvi_band,
            "ndvi_qa_band": self.ndvi_qa_band,
            "ndvi_divisor": self.ndvi_divisor,
            "ndvi_qa_max": self.ndvi_qa_max,
        }


@dataclass
class JoinConfig:
    """Temporal join of LST (primary) with NDVI (secondary)."""
    tolerance_days: float = 3.0

    @property
    def tolerance(self) -> timedelta:
        return timedelta(days=self.tolerance_days)

    @property
    def tolerance_ms(self) -> int:
        return int(self.tolerance_days * MS_PER_DAY)

    def to_dict(self) -> dict:
        return {"tolerance_days": self.tolerance_days}


@dataclass
class EdgeConfig:
    """
    Sampling and fitting parameters for the wet / dry edges.

    The regression is treated as degenerate (fallback pair substituted) when
    fewer than ``min_regression_samples`` points survive sampling, when the
    NDVI standard deviation is ≤ ``min_ndvi_std``, or when the fit is rank
    deficient / non-finite.
    """
    num_pixels: int = 10000
    seed: int = 42
    wet_percentile: float = 5.0
    fallback_slope: float = -10.0
    fallback_intercept: float = 45.0
    min_regression_samples: int = 2
    min_ndvi_std: float = 1e-6

    def to_dict(self) -> dict:
        return {
            "num_pixels": self.num_pixels,
            "seed": self.seed,
            "wet_percentile": self.wet_percentile,
            "fallback_slope": self.fallback_slope,
            "fallback_intercept": self.fallback_intercept,
            "min_regression_samples": self.min_regression_samples,
            "min_ndvi_std": self.min_ndvi_std,
        }


@dataclass
class ClassConfig:
    """Closed upper bounds of drought classes 1..4; everything above is 5."""
    thresholds: Tuple[float, ...] = (0.2, 0.4, 0.6, 0.8)

    def to_dict(self) -> dict:
        return {"thresholds": list(self.thresholds)}


@dataclass
class PipelineConfig:
    """Master configuration for one monitor run."""

    # -- Paths --
    lst_dir: str = "data/raster/mod11a1"
    ndvi_dir: str = "data/raster/mod13a1"
    districts_file: Optional[str] = "data/vector/districts.gpkg"
    national_file: Optional[str] = None
    output_dir: str = "outputs"

    # -- Region --
    name_field: str = DEFAULT_NAME_FIELD
    area_crs: str = DEFAULT_AREA_CRS

    # -- Period --
    start_date: str = "2023-01-01"
    end_date: str = "2023-12-31"

    # -- Sub-configs --
    quality_config: QualityConfig = field(default_factory=QualityConfig)
    join_config: JoinConfig = field(default_factory=JoinConfig)
    edge_config: EdgeConfig = field(default_factory=EdgeConfig)
    class_config: ClassConfig = field(default_factory=ClassConfig)

    # -- Reproducibility --
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    @property
    def date_range(self) -> DateRange:
        return DateRange.from_strings(self.start_date, self.end_date)

    # ----- helpers -----
    def to_dict(self) -> dict:
        return {
            "lst_dir": self.lst_dir,
            "ndvi_dir": self.ndvi_dir,
            "districts_file": self.districts_file,
            "national_file": self.national_file,
            "output_dir": self.output_dir,
            "name_field": self.name_field,
            "area_crs": self.area_crs,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "quality_config": self.quality_config.to_dict(),
            "join_config": self.join_config.to_dict(),
            "edge_config": self.edge_config.to_dict(),
            "class_config": self.class_config.to_dict(),
            "created_at": self.created_at,
        }

    def save(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2))

    @classmethod
    def load(cls, path: str | Path) -> "PipelineConfig":
        raw = json.loads(Path(path).read_text())
        raw["quality_config"] = QualityConfig(**raw.get("quality_config", {}))
        raw["join_config"] = JoinConfig(**raw.get("join_config", {}))
        raw["edge_config"] = EdgeConfig(**raw.get("edge_config", {}))
        cc = raw.get("class_config", {})
        if "thresholds" in cc:
            cc["thresholds"] = tuple(cc["thresholds"])
        raw["class_config"] = ClassConfig(**cc)
        return cls(**raw)


# ---------------------------------------------------------------------------
# Environment / reproducibility snapshot
# ---------------------------------------------------------------------------
def get_environment_info() -> dict:
    """Capture runtime environment for metadata."""
    info = {
        "python": platform.python_version(),
        "platform": platform.platform(),
        "timestamp": datetime.now().isoformat(),
    }
    try:
        info["git_commit"] = (
            subprocess.check_output(
                ["git", "rev-parse", "HEAD"], stderr=subprocess.DEVNULL
            )
            .decode()
            .strip()
        )
    except (OSError, subprocess.CalledProcessError):
        info["git_commit"] = None
    return info


def file_hash(filepath: str | Path, algo: str = "sha256") -> str:
    """Compute hash of a file for provenance tracking."""
    h = hashlib.new(algo)
    with open(filepath, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            h.update(chunk)
    return h.hexdigest()
