"""
core.py — Accessibility engine for the facility access map (numpy, no UI)

What this file does
-------------------
1) Normalizes per-region inputs at the ingestion boundary:
   - duration matrix {colnames, data} -> DurationMatrix (column names always a tuple)
   - mesh FeatureCollection -> population vector aligned with matrix rows
2) For a given active facility set:
   - resolves the matrix columns whose facility name is active
   - takes the per-row minimum over non-negative durations (seconds -> minutes)
3) Classifies minutes into 8 fixed travel-time bands.
4) Folds one or many regions into population-weighted summary rows.
5) Builds GeoJSON-ish payloads for the map front-end (mesh by band, markers, bounds).

Assumptions / Notes
-------------------
- Matrix rows are in the same order as the region's mesh features.
- A duration < 0 means "unreachable".
- Absent results are NaN in minute arrays and -1 in band arrays.
- Nothing here caches derived values; every call recomputes from the region data.

Dependencies
------------
numpy, pandas, shapely
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from shapely.geometry import shape

logger = logging.getLogger(__name__)


# ----------------------------
# Bands
# ----------------------------

TIME_BREAKS: Tuple[float, ...] = (0.0, 15.0, 30.0, 45.0, 60.0, 90.0, 120.0, 180.0, math.inf)
TIME_LABELS: Tuple[str, ...] = (
    "15分以内", "15-30分", "30-45分", "45-60分",
    "60-90分", "90-120分", "120-180分", "180分超",
)
TIME_COLORS: Tuple[str, ...] = (
    "#2166ac", "#4393c3", "#92c5de", "#fddbc7",
    "#f4a582", "#d6604d", "#b2182b", "#67001f",
)
N_BANDS = len(TIME_LABELS)

# Finite upper breakpoints of bands 0..6; band 7 is unbounded.
_UPPER_BREAKS = np.asarray(TIME_BREAKS[1:-1], dtype=np.float64)

ABSENT_BAND = -1


# ----------------------------
# Data containers
# ----------------------------

@dataclass(frozen=True)
class Region:
    code: str
    name: str
    dir_name: str


@dataclass(frozen=True)
class Facility:
    name: str
    region_code: str
    lat: float
    lon: float


@dataclass(frozen=True)
class DurationMatrix:
    """
    Travel durations from each mesh cell (row) to each facility (column).

    column_names: facility names, positionally aligned with columns.
    durations: shape (n_cells, n_columns), seconds; negative = unreachable.
    """
    column_names: Tuple[str, ...]
    durations: np.ndarray

    @property
    def n_rows(self) -> int:
        return int(self.durations.shape[0])


@dataclass(frozen=True)
class RegionData:
    """
    Everything loaded for one region. Geometry collections are passed through untouched.
    """
    mesh: Dict[str, Any]
    matrix: Optional[DurationMatrix]
    population: np.ndarray  # shape (n_cells,), int64
    muni: Optional[Dict[str, Any]] = None
    border: Optional[Dict[str, Any]] = None

    @property
    def n_cells(self) -> int:
        return int(self.population.shape[0])


@dataclass(frozen=True)
class RegionAccessibility:
    minutes: np.ndarray  # (n_cells,) float64, NaN = absent
    bands: np.ndarray    # (n_cells,) int8, -1 = absent

    @property
    def present(self) -> np.ndarray:
        return self.bands >= 0


@dataclass(frozen=True)
class SummaryRow:
    band_label: str
    cell_count: int
    population: int
    population_percent: float
    cumulative_population_percent: float


# ----------------------------
# Ingestion boundary
# ----------------------------

def normalize_column_names(colnames: Any) -> Tuple[str, ...]:
    """
    The upstream exporter unboxes one-element vectors, so a single-column matrix
    arrives with colnames as a bare scalar. Always return a tuple.
    """
    if colnames is None:
        return ()
    if isinstance(colnames, (str, int, float)):
        return (str(colnames),)
    return tuple(str(c) for c in colnames)


def parse_duration_matrix(raw: Any) -> Optional[DurationMatrix]:
    """
    Convert {"colnames": ..., "data": [[sec, ...], ...]} into a DurationMatrix.
    Returns None when the payload is missing, malformed or not rectangular.
    """
    if not raw:
        return None
    if not isinstance(raw, Mapping):
        logger.warning("Duration matrix payload is a %s, not an object; treating as no data", type(raw).__name__)
        return None

    rows = raw.get("data") or []
    if not isinstance(rows, (list, tuple)):
        logger.warning("Duration matrix data is a %s, not a list; treating as no data", type(rows).__name__)
        return None

    try:
        names = normalize_column_names(raw.get("colnames"))
    except TypeError:
        logger.warning("Duration matrix colnames are unreadable; treating as no data")
        return None

    if len(names) == 0:
        return DurationMatrix(column_names=(), durations=np.zeros((len(rows), 0), dtype=np.float64))

    # Single-column matrices may also come with unboxed rows ([900, -1, ...]).
    rows = [r if isinstance(r, (list, tuple)) else [r] for r in rows]

    try:
        durations = np.asarray(rows, dtype=np.float64).reshape(len(rows), len(names))
    except (TypeError, ValueError):
        logger.warning("Duration matrix is not %d columns wide; treating as no data", len(names))
        return None

    return DurationMatrix(column_names=names, durations=durations)


def mesh_population(mesh: Optional[Dict[str, Any]]) -> np.ndarray:
    feats = (mesh or {}).get("features", []) or []
    pop = np.zeros(len(feats), dtype=np.int64)
    for i, f in enumerate(feats):
        v = (f.get("properties") or {}).get("population")
        pop[i] = int(v) if v else 0
    return pop


def build_region_data(
    mesh: Dict[str, Any],
    dur_matrix: Optional[Dict[str, Any]],
    muni: Optional[Dict[str, Any]] = None,
    border: Optional[Dict[str, Any]] = None,
) -> RegionData:
    population = mesh_population(mesh)
    matrix = parse_duration_matrix(dur_matrix)

    if matrix is not None and matrix.n_rows != population.shape[0]:
        logger.warning(
            "Duration matrix has %d rows but mesh has %d cells; treating as no data",
            matrix.n_rows, population.shape[0],
        )
        matrix = None

    return RegionData(mesh=mesh, matrix=matrix, population=population, muni=muni, border=border)


# ----------------------------
# Classifier
# ----------------------------

def classify_minutes(minutes: float) -> int:
    """
    Band index 0..7. A value equal to a breakpoint falls into the lower band.
    """
    for i in range(1, len(TIME_BREAKS)):
        if minutes <= TIME_BREAKS[i]:
            return i - 1
    return N_BANDS - 1


def classify_minutes_array(minutes: np.ndarray) -> np.ndarray:
    """
    Vectorized classify_minutes. NaN (absent) -> -1.
    """
    minutes = np.asarray(minutes, dtype=np.float64)
    bands = np.searchsorted(_UPPER_BREAKS, minutes, side="left").astype(np.int8)
    bands[np.isnan(minutes)] = ABSENT_BAND
    return bands


# ----------------------------
# Accessibility engine
# ----------------------------

def active_column_indices(matrix: DurationMatrix, active: Iterable[str]) -> np.ndarray:
    active = set(active)
    return np.asarray(
        [i for i, name in enumerate(matrix.column_names) if name in active],
        dtype=np.intp,
    )


def compute_travel_minutes(data: RegionData, active: Iterable[str]) -> Optional[np.ndarray]:
    """
    Minimum travel minutes from each mesh cell to any active facility.

    Returns None when no active facility is a column of this region's matrix
    (or the region has no matrix). Otherwise a float array aligned with the
    mesh cells; cells where every active column is unreachable are NaN.
    Values are not rounded.
    """
    matrix = data.matrix
    if matrix is None:
        return None

    idx = active_column_indices(matrix, active)
    if idx.size == 0:
        return None

    sub = matrix.durations[:, idx]
    sub = np.where(sub >= 0, sub, np.inf)
    best = sub.min(axis=1)

    minutes = best / 60.0
    minutes[np.isinf(best)] = np.nan
    return minutes


def compute_region_accessibility(data: RegionData, active: Iterable[str]) -> Optional[RegionAccessibility]:
    minutes = compute_travel_minutes(data, active)
    if minutes is None:
        return None
    return RegionAccessibility(minutes=minutes, bands=classify_minutes_array(minutes))


# ----------------------------
# Aggregator
# ----------------------------

def compute_summary(regions: Iterable[RegionData], active: Iterable[str]) -> List[SummaryRow]:
    """
    Population-weighted band summary across the given (loaded) regions.

    Cells with an absent result are excluded from counts and from the total.
    Percentages are 0 when the total population is 0.
    """
    active = frozenset(active)
    counts = np.zeros(N_BANDS, dtype=np.int64)
    pops = np.zeros(N_BANDS, dtype=np.int64)

    for data in regions:
        acc = compute_region_accessibility(data, active)
        if acc is None:
            continue
        mask = acc.present
        bands = acc.bands[mask].astype(np.intp)
        counts += np.bincount(bands, minlength=N_BANDS)
        pops += np.bincount(bands, weights=data.population[mask], minlength=N_BANDS).astype(np.int64)

    total = int(pops.sum())
    rows: List[SummaryRow] = []
    cum_pop = 0
    for i in range(N_BANDS):
        cum_pop += int(pops[i])
        pct = float(pops[i]) / total * 100.0 if total > 0 else 0.0
        cum_pct = cum_pop / total * 100.0 if total > 0 else 0.0
        rows.append(
            SummaryRow(
                band_label=TIME_LABELS[i],
                cell_count=int(counts[i]),
                population=int(pops[i]),
                population_percent=pct,
                cumulative_population_percent=cum_pct,
            )
        )
    return rows


def summary_to_frame(rows: Sequence[SummaryRow]) -> pd.DataFrame:
    return pd.DataFrame(
        {
            "band": [r.band_label for r in rows],
            "cells": [r.cell_count for r in rows],
            "population": [r.population for r in rows],
            "percent": [r.population_percent for r in rows],
            "cumulative_percent": [r.cumulative_population_percent for r in rows],
        }
    )


# ----------------------------
# Visualization helpers
# ----------------------------

def format_number(n: Any) -> str:
    try:
        return f"{int(n):,}"
    except (TypeError, ValueError):
        return str(n)


def mesh_feature_collection(data: RegionData, acc: RegionAccessibility) -> Dict[int, Dict[str, Any]]:
    """
    Split the region's mesh into one FeatureCollection per band (present cells only),
    so each band can be drawn with a single fixed style.

    Returns {band_index: FeatureCollection}; bands with no cells are omitted.
    """
    feats = data.mesh.get("features", []) or []
    by_band: Dict[int, List[Dict[str, Any]]] = {}

    for i, f in enumerate(feats):
        band = int(acc.bands[i])
        if band < 0:
            continue
        minutes = round(float(acc.minutes[i]), 1)
        pop = int(data.population[i])
        by_band.setdefault(band, []).append({
            "type": "Feature",
            "geometry": f.get("geometry"),
            "properties": {
                "population": pop,
                "travel_min": minutes,
                "color": TIME_COLORS[band],
                "tooltip": f"{minutes}分 / 人口{format_number(pop)}",
            },
        })

    return {b: {"type": "FeatureCollection", "features": fs} for b, fs in sorted(by_band.items())}


@dataclass(frozen=True)
class MarkerSpec:
    name: str
    lat: float
    lon: float
    active: bool
    fill_color: str = field(init=False)
    fill_opacity: float = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "fill_color", "yellow" if self.active else "#999")
        object.__setattr__(self, "fill_opacity", 1.0 if self.active else 0.3)


def facility_markers(facilities: Iterable[Facility], active: Iterable[str]) -> List[MarkerSpec]:
    active = set(active)
    return [MarkerSpec(name=f.name, lat=f.lat, lon=f.lon, active=f.name in active) for f in facilities]


def boundary_bounds(geojsons: Iterable[Optional[Dict[str, Any]]]) -> Optional[Tuple[Tuple[float, float], Tuple[float, float]]]:
    """
    Leaflet-style [[south, west], [north, east]] covering every feature geometry given.
    Returns None when there is nothing to measure.
    """
    minx = miny = math.inf
    maxx = maxy = -math.inf
    for fc in geojsons:
        for f in (fc or {}).get("features", []) or []:
            geom = f.get("geometry")
            if not geom:
                continue
            x0, y0, x1, y1 = shape(geom).bounds
            minx, miny = min(minx, x0), min(miny, y0)
            maxx, maxy = max(maxx, x1), max(maxy, y1)

    if not math.isfinite(minx):
        return None
    return (miny, minx), (maxy, maxx)
