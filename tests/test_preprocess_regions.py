import json

import pandas as pd

from core import build_region_data, compute_travel_minutes
from preprocess_regions import build_duration_matrix, choose_col, read_facilities, read_regions


def test_choose_col_case_insensitive():
    df = pd.DataFrame(columns=["Mesh_ID", "Seconds"])
    assert choose_col(df, ["mesh_id"]) == "Mesh_ID"
    assert choose_col(df, ["missing"]) is None


def test_build_duration_matrix_alignment():
    durations = pd.DataFrame({
        "mesh_id": ["m2", "m1", "m1", "m2"],
        "facility": ["B", "A", "B", "A"],
        "seconds": [2700, 900, 1800, 3000],
    })
    out = build_duration_matrix(durations, ["m1", "m2", "m3"], ["A", "B"])
    assert out["colnames"] == ["A", "B"]
    assert out["data"] == [[900, 1800], [3000, 2700], [-1, -1]]


def test_single_column_matrix_is_unboxed_and_loadable():
    durations = pd.DataFrame({"mesh_id": ["m1"], "facility": ["A"], "seconds": [600]})
    out = build_duration_matrix(durations, ["m1", "m2"], ["A"])
    assert out["colnames"] == "A"

    mesh = {"type": "FeatureCollection", "features": [
        {"type": "Feature", "geometry": None, "properties": {"population": 1}},
        {"type": "Feature", "geometry": None, "properties": {"population": 2}},
    ]}
    data = build_region_data(mesh, json.loads(json.dumps(out)))
    minutes = compute_travel_minutes(data, {"A"})
    assert minutes[0] == 10.0


def test_read_catalog_csvs(tmp_path):
    regions = tmp_path / "regions.csv"
    regions.write_text("code,name,dir_name\n1,北海道,hokkaido\n2,青森県,aomori\n", encoding="utf-8")
    facilities = tmp_path / "facilities.csv"
    facilities.write_text("name,pref_code,lat,lon\nA,1,43.0,141.3\n", encoding="utf-8")

    r = read_regions(regions)
    assert r["code"].tolist() == ["01", "02"]
    f = read_facilities(facilities)
    assert f.iloc[0].to_dict() == {"name": "A", "pref_code": "01", "lat": 43.0, "lon": 141.3}
