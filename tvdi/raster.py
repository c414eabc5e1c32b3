"""
tvdi.raster
===========
In-memory raster containers shared by every pipeline stage.

All containers are immutable: arrays are copied and flagged read-only at
construction, and each stage builds new frames instead of editing inputs.

Public API
----------
GridSpec        – affine transform + CRS + shape of the common grid
RasterFrame     – one band, one timestamp, one validity mask
RasterSeries    – time-sorted sequence of RasterFrame on one grid
JoinedFrame     – (LST, NDVI) pair sharing the LST timestamp
JoinedSeries    – ordered JoinedFrame sequence + unmatched LST timestamps
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import xarray as xr
import rioxarray  # noqa: F401  (registers .rio accessor)
from affine import Affine


class AlignmentError(Exception):
    """Raised when rasters do not share the same grid."""


# ======================================================================== #
#  Grid                                                                     #
# ======================================================================== #

@dataclass(frozen=True)
class GridSpec:
    """Fixed spatial grid: north-up affine transform, CRS string and shape."""
    transform: Affine
    crs: str
    height: int
    width: int

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.height, self.width)

    @property
    def resolution(self) -> Tuple[float, float]:
        return (abs(self.transform.a), abs(self.transform.e))

    def coords(self) -> Tuple[np.ndarray, np.ndarray]:
        """Pixel-centre coordinates ``(y, x)``."""
        t = self.transform
        x = t.c + (np.arange(self.width) + 0.5) * t.a
        y = t.f + (np.arange(self.height) + 0.5) * t.e
        return y, x


# ======================================================================== #
#  Frames                                                                   #
# ======================================================================== #

def _readonly(arr: np.ndarray, dtype=None) -> np.ndarray:
    out = np.array(arr, dtype=dtype, copy=True)
    out.setflags(write=False)
    return out


@dataclass(frozen=True, eq=False)
class RasterFrame:
    """
    A single-band raster with a per-pixel validity mask.

    ``mask`` is True where the pixel is valid.  Non-finite samples are
    always treated as invalid, whatever the supplied mask says.
    ``timestamp`` is None for composites (medians, means, classes).
    """
    values: np.ndarray
    mask: np.ndarray
    grid: GridSpec
    timestamp: Optional[datetime] = None
    name: str = "value"

    def __post_init__(self):
        values = np.asarray(self.values)
        mask = np.asarray(self.mask, dtype=bool)
        if values.ndim != 2:
            raise ValueError(f"RasterFrame values must be 2-D, got {values.ndim}-D")
        if values.shape != mask.shape:
            raise ValueError(
                f"Mask shape {mask.shape} != values shape {values.shape}"
            )
        if values.shape != self.grid.shape:
            raise AlignmentError(
                f"Values shape {values.shape} != grid shape {self.grid.shape}"
            )
        if np.issubdtype(values.dtype, np.floating):
            mask = mask & np.isfinite(values)
        object.__setattr__(self, "values", _readonly(values))
        object.__setattr__(self, "mask", _readonly(mask, dtype=bool))

    @classmethod
    def from_masked(
        cls,
        array: np.ndarray,
        grid: GridSpec,
        timestamp: Optional[datetime] = None,
        name: str = "value",
    ) -> "RasterFrame":
        """Build a frame from a float array where NaN marks invalid pixels."""
        array = np.asarray(array, dtype=np.float64)
        return cls(array, np.isfinite(array), grid, timestamp, name)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.values.shape

    @property
    def valid_count(self) -> int:
        return int(self.mask.sum())

    def masked(self) -> np.ndarray:
        """Float copy of the values with NaN at invalid pixels."""
        return np.where(self.mask, self.values.astype(np.float64), np.nan)

    def to_dataarray(self, nodata: float = np.nan) -> xr.DataArray:
        """Georeferenced DataArray (y, x) with invalid pixels set to *nodata*."""
        y, x = self.grid.coords()
        data = np.where(self.mask, self.values, nodata)
        da = xr.DataArray(data, dims=["y", "x"], coords={"y": y, "x": x}, name=self.name)
        if self.timestamp is not None:
            da.attrs["timestamp"] = self.timestamp.isoformat()
        da = da.rio.write_crs(self.grid.crs)
        da = da.rio.write_transform(self.grid.transform)
        return da


# ======================================================================== #
#  Series                                                                   #
# ======================================================================== #

class RasterSeries(Sequence[RasterFrame]):
    """
    Immutable, timestamp-sorted sequence of frames sharing one grid.

    Sorting is stable, so frames with equal timestamps keep their
    insertion order.
    """

    def __init__(self, frames: Iterable[RasterFrame], name: str = "series"):
        frames = list(frames)
        for f in frames:
            if f.timestamp is None:
                raise ValueError("Series frames must carry a timestamp.")
        if frames:
            ref = frames[0].grid
            for f in frames[1:]:
                if f.grid != ref:
                    raise AlignmentError(
                        f"Frame {f.timestamp:%Y-%m-%d} grid {f.grid} != reference {ref}"
                    )
        self._frames: Tuple[RasterFrame, ...] = tuple(
            sorted(frames, key=lambda f: f.timestamp)
        )
        self.name = name

    def __len__(self) -> int:
        return len(self._frames)

    def __getitem__(self, idx):
        if isinstance(idx, slice):
            return RasterSeries(self._frames[idx], name=self.name)
        return self._frames[idx]

    def __iter__(self) -> Iterator[RasterFrame]:
        return iter(self._frames)

    def __repr__(self) -> str:
        if not self._frames:
            return f"RasterSeries({self.name!r}, empty)"
        return (
            f"RasterSeries({self.name!r}, n={len(self)}, "
            f"{self._frames[0].timestamp:%Y-%m-%d}..{self._frames[-1].timestamp:%Y-%m-%d})"
        )

    @property
    def timestamps(self) -> List[datetime]:
        return [f.timestamp for f in self._frames]

    @property
    def grid(self) -> GridSpec:
        if not self._frames:
            raise ValueError(f"Series {self.name!r} is empty; it has no grid.")
        return self._frames[0].grid

    def stack(self) -> np.ndarray:
        """3-D float array ``(time, y, x)`` with NaN at invalid pixels."""
        if not self._frames:
            raise ValueError(f"Series {self.name!r} is empty.")
        return np.stack([f.masked() for f in self._frames], axis=0)

    def filter_date(self, start: datetime, end: datetime) -> "RasterSeries":
        """Frames with ``start <= timestamp < end``."""
        return RasterSeries(
            (f for f in self._frames if start <= f.timestamp < end), name=self.name
        )


# ======================================================================== #
#  Joined frames                                                            #
# ======================================================================== #

@dataclass(frozen=True, eq=False)
class JoinedFrame:
    """Co-registered LST / NDVI pair; the LST timestamp is the reference."""
    lst: RasterFrame
    ndvi: RasterFrame
    time_diff: timedelta = timedelta(0)

    def __post_init__(self):
        if self.lst.grid != self.ndvi.grid:
            raise AlignmentError(
                f"LST grid {self.lst.grid} != NDVI grid {self.ndvi.grid}"
            )

    @property
    def timestamp(self) -> datetime:
        return self.lst.timestamp


@dataclass(frozen=True, eq=False)
class JoinedSeries(Sequence[JoinedFrame]):
    """Joined frames in primary order, plus the primary timestamps left unmatched."""
    frames: Tuple[JoinedFrame, ...] = ()
    unmatched: Tuple[datetime, ...] = field(default_factory=tuple)

    def __len__(self) -> int:
        return len(self.frames)

    def __getitem__(self, idx):
        return self.frames[idx]

    def __iter__(self) -> Iterator[JoinedFrame]:
        return iter(self.frames)

    @property
    def timestamps(self) -> List[datetime]:
        return [f.timestamp for f in self.frames]

    @property
    def grid(self) -> GridSpec:
        if not self.frames:
            raise ValueError("Joined series is empty; it has no grid.")
        return self.frames[0].lst.grid
