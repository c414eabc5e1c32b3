"""
tvdi.export
===========
Raster / table export and run metadata.

Folder layout
-------------
::

    outputs/
        pipeline_config.json        ← config snapshot
        run_metadata.json           ← edge model, counts, environment, hashes
        mean_tvdi.tif               ← temporal-mean TVDI (float32, nodata -9999)
        drought_class.tif           ← classes 1..5 (uint8, nodata 0)
        monthly/tvdi_MM.tif         ← monthly mean TVDI
        district_stats.csv          ← District, Mean_TVDI, Area_km2, Drought_Class
        tvdi_timeseries.csv         ← national mean TVDI per acquisition
"""

from __future__ import annotations

import json
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from .config import PipelineConfig, file_hash, get_environment_info
from .raster import RasterFrame

FLOAT_NODATA: float = -9999.0
CLASS_NODATA: int = 0


# ======================================================================== #
#  Rasters                                                                  #
# ======================================================================== #

def save_raster(frame: RasterFrame, path: str | Path) -> str:
    """
    Write one frame as a single-band GeoTIFF.

    Integer frames (classes) keep their dtype with nodata 0; float frames
    are written as float32 with nodata -9999.
    """
    path = Path(path).with_suffix(".tif")
    path.parent.mkdir(parents=True, exist_ok=True)

    if np.issubdtype(frame.values.dtype, np.integer):
        da = frame.to_dataarray(nodata=CLASS_NODATA).astype(frame.values.dtype)
        da = da.rio.write_nodata(CLASS_NODATA)
    else:
        da = frame.to_dataarray(nodata=FLOAT_NODATA).astype(np.float32)
        da = da.rio.write_nodata(FLOAT_NODATA)

    if path.exists():
        path.unlink()
    # keep the grid transform exactly; recalculating from centre coords drifts
    da.rio.to_raster(str(path), recalc_transform=False)
    return str(path)


# ======================================================================== #
#  Tables                                                                   #
# ======================================================================== #

def save_dataframe(df: pd.DataFrame, path: str | Path) -> str:
    """
    Save a DataFrame as CSV.

    Parameters
    ----------
    df : pd.DataFrame
    path : str or Path
        Target file path (extension will be corrected).

    Returns
    -------
    str  – actual path written.
    """
    path = Path(path).with_suffix(".csv")
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)
    return str(path)


# ======================================================================== #
#  Run metadata                                                             #
# ======================================================================== #

def save_run_metadata(
    out_dir: str | Path,
    config: PipelineConfig,
    edge_model: Dict,
    counts: Dict[str, Any],
    files_used: Optional[List[str]] = None,
    extra: Optional[Dict] = None,
) -> str:
    """
    Write ``run_metadata.json`` for one monitor run.

    Returns the path of the written file.
    """
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    meta = {
        "timestamp": datetime.now().isoformat(),
        "pipeline_config": config.to_dict(),
        "edge_model": _make_serialisable(edge_model),
        "counts": _make_serialisable(counts),
        "environment": get_environment_info(),
    }

    if files_used:
        meta["files_used"] = {
            os.path.basename(f): file_hash(f)
            for f in files_used
            if os.path.exists(f)
        }

    if extra:
        meta.update(_make_serialisable(extra))

    out_path = out_dir / "run_metadata.json"
    out_path.write_text(json.dumps(meta, indent=2, default=str))
    return str(out_path)


# ======================================================================== #
#  Internal helpers                                                         #
# ======================================================================== #

def _make_serialisable(obj: Any) -> Any:
    """Recursively convert numpy types for JSON serialisation."""
    if isinstance(obj, dict):
        return {k: _make_serialisable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_make_serialisable(v) for v in obj]
    if isinstance(obj, (np.integer,)):
        return int(obj)
    if isinstance(obj, (np.floating,)):
        return float(obj)
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, (np.bool_,)):
        return bool(obj)
    return obj
