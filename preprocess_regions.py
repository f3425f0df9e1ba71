"""
preprocess_regions.py — one-shot preprocessing into the data layout app_dash.py reads

Inputs
------
1) regions CSV: code, name, dir_name
2) facilities CSV: name, pref_code, lat, lon
3) per region, under <raw_dir>/<dir_name>/:
     mesh.geojson     population mesh polygons (mesh id + population columns)
     durations.csv    long-format travel durations: mesh id, facility name, seconds
     muni.geojson     municipal boundaries (optional)

Outputs (written to --out_dir)
------------------------------
  prefectures.json
  facilities.json
  <dir_name>/mesh.geojson       geometry + population, one feature per mesh cell
  <dir_name>/dur_matrix.json    {colnames, data}; rows follow mesh.geojson order
  <dir_name>/muni.geojson
  <dir_name>/border.geojson     municipal polygons dissolved into one outline

Run
---
python preprocess_regions.py \
  --regions_csv raw/regions.csv \
  --facilities_csv raw/facilities.csv \
  --raw_dir raw \
  --out_dir data

Notes
-----
- Mesh/facility pairs missing from durations.csv become -1 (unreachable).
- The matrix has one column per facility of that region, in facilities CSV order.
- Single-column matrices are written with a bare string colnames, the same shape
  the upstream R/jsonlite export produces; the loader accepts both.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

import geopandas as gpd

from logging_config import setup_logging

logger = logging.getLogger(__name__)


# ----------------------------
# Small utilities
# ----------------------------

def ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


def choose_col(df: pd.DataFrame, candidates: List[str]) -> Optional[str]:
    cols = set(df.columns)
    for c in candidates:
        if c in cols:
            return c
    # try case-insensitive match
    lower_map = {c.lower(): c for c in df.columns}
    for c in candidates:
        if c.lower() in lower_map:
            return lower_map[c.lower()]
    return None


def require_col(df: pd.DataFrame, candidates: List[str], what: str) -> str:
    c = choose_col(df, candidates)
    if not c:
        raise ValueError(f"{what}: none of {candidates} found in columns {list(df.columns)}")
    return c


def read_geo(path: Path) -> gpd.GeoDataFrame:
    gdf = gpd.read_file(path)
    if gdf.crs is None:
        # assume GeoJSON is EPSG:4326
        return gdf.set_crs("EPSG:4326")
    return gdf.to_crs("EPSG:4326")


def write_json(path: Path, obj: Any) -> None:
    path.write_text(json.dumps(obj, ensure_ascii=False), encoding="utf-8")


# ----------------------------
# Catalog
# ----------------------------

def read_regions(path: Path) -> pd.DataFrame:
    df = pd.read_csv(path, dtype=str)
    code = require_col(df, ["code", "pref_code"], "regions CSV")
    name = require_col(df, ["name", "pref_name"], "regions CSV")
    dir_name = require_col(df, ["dir_name", "dir"], "regions CSV")
    out = df[[code, name, dir_name]].rename(columns={code: "code", name: "name", dir_name: "dir_name"})
    # prefecture codes are zero-padded ("01")
    out["code"] = out["code"].str.zfill(2)
    return out.reset_index(drop=True)


def read_facilities(path: Path) -> pd.DataFrame:
    df = pd.read_csv(path)
    name = require_col(df, ["name", "facility", "facility_name"], "facilities CSV")
    pref = require_col(df, ["pref_code", "region_code", "code"], "facilities CSV")
    lat = require_col(df, ["lat", "latitude"], "facilities CSV")
    lon = require_col(df, ["lon", "lng", "longitude"], "facilities CSV")

    out = pd.DataFrame({
        "name": df[name].astype(str),
        "pref_code": df[pref].astype(str).str.zfill(2),
        "lat": df[lat].astype(float),
        "lon": df[lon].astype(float),
    })

    dup = out["name"].duplicated(keep=False)
    if dup.any():
        # Matrix columns are joined by name, so duplicates are ambiguous downstream
        logger.warning("Duplicate facility names: %s", sorted(out.loc[dup, "name"].unique()))
    return out


# ----------------------------
# Duration matrix
# ----------------------------

def build_duration_matrix(
    durations: pd.DataFrame,
    mesh_ids: List[str],
    facility_names: List[str],
) -> Dict[str, Any]:
    """
    Pivot long-format durations (mesh_id, facility, seconds) into a row-per-mesh matrix.

    Rows follow mesh_ids, columns follow facility_names; missing pairs are -1.
    """
    mesh_col = require_col(durations, ["mesh_id", "mesh", "KEY_CODE", "from_id"], "durations CSV")
    fac_col = require_col(durations, ["facility", "facility_name", "name", "to_id"], "durations CSV")
    sec_col = require_col(durations, ["seconds", "duration", "duration_sec", "dur"], "durations CSV")

    long = pd.DataFrame({
        "mesh_id": durations[mesh_col].astype(str),
        "facility": durations[fac_col].astype(str),
        "seconds": pd.to_numeric(durations[sec_col], errors="coerce"),
    }).dropna(subset=["seconds"])

    wide = long.pivot_table(index="mesh_id", columns="facility", values="seconds", aggfunc="min")
    wide = wide.reindex(index=mesh_ids, columns=facility_names)
    data = wide.fillna(-1).round().astype(np.int64).to_numpy()

    colnames: Any = list(facility_names)
    if len(colnames) == 1:
        colnames = colnames[0]

    return {"colnames": colnames, "data": data.tolist()}


# ----------------------------
# Per-region build
# ----------------------------

def mesh_to_geojson(mesh: gpd.GeoDataFrame, pop_col: Optional[str]) -> Dict[str, Any]:
    pop = mesh[pop_col].fillna(0).astype(np.int64) if pop_col else pd.Series(0, index=mesh.index)
    out = gpd.GeoDataFrame({"population": pop.to_numpy()}, geometry=mesh.geometry.to_numpy(), crs=mesh.crs)
    return json.loads(out.to_json(drop_id=True))


def border_from_muni(muni: gpd.GeoDataFrame) -> Dict[str, Any]:
    outline = muni.geometry.union_all()
    return gpd.GeoSeries([outline], crs="EPSG:4326").__geo_interface__


def build_region(
    region: pd.Series,
    facilities: pd.DataFrame,
    raw_dir: Path,
    out_dir: Path,
) -> None:
    src = raw_dir / region["dir_name"]
    dst = out_dir / region["dir_name"]
    ensure_dir(dst)

    mesh = read_geo(src / "mesh.geojson")
    id_col = require_col(mesh, ["mesh_id", "KEY_CODE", "meshcode", "id"], f"{src}/mesh.geojson")
    pop_col = choose_col(mesh, ["population", "pop", "POP", "T001102001", "total_pop"])
    if not pop_col:
        logger.warning("%s: no population column, writing 0 for every cell", src / "mesh.geojson")

    mesh_ids = mesh[id_col].astype(str).tolist()
    names = facilities.loc[facilities["pref_code"] == region["code"], "name"].tolist()

    durations = pd.read_csv(src / "durations.csv")
    matrix = build_duration_matrix(durations, mesh_ids, names)

    write_json(dst / "mesh.geojson", mesh_to_geojson(mesh, pop_col))
    write_json(dst / "dur_matrix.json", matrix)

    muni_path = src / "muni.geojson"
    if muni_path.exists():
        muni = read_geo(muni_path)
        write_json(dst / "muni.geojson", json.loads(muni.to_json(drop_id=True)))
        write_json(dst / "border.geojson", border_from_muni(muni))
    else:
        logger.warning("%s missing; region will have no boundary layers", muni_path)
        empty = {"type": "FeatureCollection", "features": []}
        write_json(dst / "muni.geojson", empty)
        write_json(dst / "border.geojson", empty)

    logger.info("%s (%s): %d cells x %d facilities", region["code"], region["name"], len(mesh_ids), len(names))


# ----------------------------
# Main
# ----------------------------

def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--regions_csv", type=str, required=True, help="CSV with code, name, dir_name")
    ap.add_argument("--facilities_csv", type=str, required=True, help="CSV with name, pref_code, lat, lon")
    ap.add_argument("--raw_dir", type=str, required=True, help="Directory holding one raw folder per region")
    ap.add_argument("--out_dir", type=str, required=True, help="Output data directory")
    ap.add_argument("--log_level", type=str, default="INFO")
    args = ap.parse_args()

    setup_logging(logging.getLevelName(args.log_level.upper()))

    raw_dir = Path(os.path.expanduser(args.raw_dir))
    out_dir = Path(os.path.expanduser(args.out_dir))
    ensure_dir(out_dir)

    regions = read_regions(Path(os.path.expanduser(args.regions_csv)))
    facilities = read_facilities(Path(os.path.expanduser(args.facilities_csv)))

    write_json(out_dir / "prefectures.json", regions.to_dict(orient="records"))
    write_json(out_dir / "facilities.json", facilities.to_dict(orient="records"))

    failed = []
    for _, region in regions.iterrows():
        try:
            build_region(region, facilities, raw_dir, out_dir)
        except (OSError, ValueError) as e:
            logger.warning("Skipping %s: %s", region["code"], e)
            failed.append(region["code"])

    logger.info("Done. Point ACCESSMAP_DATA_DIR to: %s", out_dir)
    if failed:
        logger.warning("Regions without data: %s", ", ".join(failed))


if __name__ == "__main__":
    main()
