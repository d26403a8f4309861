"""
Variable-rate irrigation (VRI) zones from an NDVI raster.

Cells are classified into vigor bands by fixed NDVI edges, then grouped into
zones by 4-connected contiguity within each band (``scipy.ndimage.label``).
Zones are numbered in raster order of their first cell, so identical input
always gives identical zones. Patches smaller than ``min_zone_cells`` are
pooled into one zone per band instead of being kept as slivers.
"""

import logging
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy import ndimage

from .config import VigorBandConfig
from .errors import ValidationError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class VRIZone:
    zone_name: str
    vigor_level: str
    ndvi_range: Tuple[float, float]
    irrigation_multiplier_pct: float
    area_acres: float
    mean_ndvi: float
    cell_count: int
    share_pct: float

    def with_multiplier(self, pct: float) -> "VRIZone":
        """Operator override of the zone's multiplier."""
        if pct < 0:
            raise ValidationError("irrigation_multiplier_pct", f"must be >= 0, got {pct:g}")
        return replace(self, irrigation_multiplier_pct=float(pct))

    def to_dict(self) -> dict:
        return {
            "zone_name": self.zone_name,
            "vigor_level": self.vigor_level,
            "ndvi_range": list(self.ndvi_range),
            "irrigation_multiplier_pct": self.irrigation_multiplier_pct,
            "area_acres": round(self.area_acres, 3),
            "mean_ndvi": round(self.mean_ndvi, 3),
            "cell_count": self.cell_count,
            "share_pct": round(self.share_pct, 1),
        }


def _as_raster(ndvi_raster) -> np.ndarray:
    try:
        arr = np.asarray(ndvi_raster, dtype=float)
    except (TypeError, ValueError) as e:
        raise ValidationError("ndvi_raster", f"not a numeric array ({e})") from None
    if arr.ndim == 1:
        arr = arr[np.newaxis, :]
    if arr.ndim != 2 or arr.size == 0:
        raise ValidationError("ndvi_raster", f"expected a non-empty 1-D or 2-D array, got shape {arr.shape}")
    finite = arr[np.isfinite(arr)]
    if finite.size == 0:
        raise ValidationError("ndvi_raster", "no valid cells")
    if finite.min() < -1.0 or finite.max() > 1.0:
        raise ValidationError("ndvi_raster", "NDVI values must lie in [-1, 1]")
    return arr


def band_range(config: VigorBandConfig, band: int) -> Tuple[float, float]:
    lower = config.edges[band - 1] if band > 0 else -1.0
    upper = config.edges[band] if band < len(config.edges) else 1.0
    return lower, upper


def classify(ndvi_raster, config: Optional[VigorBandConfig] = None) -> np.ndarray:
    """Band index per cell; -1 for masked (NaN) cells."""
    config = config or VigorBandConfig()
    arr = _as_raster(ndvi_raster)
    bands = np.digitize(arr, config.edges)  # half-open [lower, upper)
    return np.where(np.isfinite(arr), bands, -1)


def build_zones(ndvi_raster, config: Optional[VigorBandConfig] = None,
                field_area_acres: Optional[float] = None,
                cell_area_acres: Optional[float] = None) -> List[VRIZone]:
    """Group classified cells into named VRI zones.

    Area comes from ``cell_area_acres`` when given, otherwise the field area
    is spread evenly over the valid cells.
    """
    config = config or VigorBandConfig()
    arr = _as_raster(ndvi_raster)
    bands = classify(arr, config)
    valid = bands >= 0
    n_valid = int(valid.sum())

    if cell_area_acres is None:
        cell_area_acres = field_area_acres / n_valid if field_area_acres else 0.0

    # (first flat index, band, cell mask)
    patches: List[Tuple[int, int, np.ndarray]] = []
    pooled: Dict[int, np.ndarray] = {}
    for band in range(len(config.levels)):
        labels, count = ndimage.label(bands == band)
        for label in range(1, count + 1):
            mask = labels == label
            if int(mask.sum()) < config.min_zone_cells:
                pooled[band] = mask if band not in pooled else (pooled[band] | mask)
                continue
            patches.append((int(np.flatnonzero(mask)[0]), band, mask))
    for band, mask in pooled.items():
        patches.append((int(np.flatnonzero(mask)[0]), band, mask))
    patches.sort(key=lambda p: (p[0], p[1]))

    zones = []
    for number, (_, band, mask) in enumerate(patches, start=1):
        level = config.levels[band]
        cells = int(mask.sum())
        zones.append(VRIZone(
            zone_name=f"Zone {number}",
            vigor_level=level,
            ndvi_range=band_range(config, band),
            irrigation_multiplier_pct=float(config.multipliers_pct[level]),
            area_acres=cells * cell_area_acres,
            mean_ndvi=float(arr[mask].mean()),
            cell_count=cells,
            share_pct=100.0 * cells / n_valid,
        ))
    log.info(f"Built {len(zones)} VRI zones from {n_valid} cells")
    return zones


def summarize_zones(zones: List[VRIZone]) -> pd.DataFrame:
    """Per-band totals: zones, cells, acres and share of the field."""
    if not zones:
        return pd.DataFrame(columns=["vigor_level", "zones", "cells", "acres", "share_pct",
                                     "irrigation_multiplier_pct"])
    df = pd.DataFrame([z.to_dict() for z in zones])
    return (
        df.groupby("vigor_level", sort=False)
        .agg(zones=("zone_name", "count"),
             cells=("cell_count", "sum"),
             acres=("area_acres", "sum"),
             share_pct=("share_pct", "sum"),
             irrigation_multiplier_pct=("irrigation_multiplier_pct", "first"))
        .reset_index()
    )
