"""In-memory stand-ins for the data provider and the map front-end."""
import asyncio
from typing import Any, Dict, List, Optional, Set

from regions import DataProviderError
from session import Renderer


def _cell(x, population):
    return {
        "type": "Feature",
        "geometry": {"type": "Point", "coordinates": [x, 43.0]},
        "properties": {"population": population},
    }


def _border(x0, x1):
    return {
        "type": "FeatureCollection",
        "features": [{
            "type": "Feature",
            "properties": {},
            "geometry": {"type": "Polygon", "coordinates": [[[x0, 41.0], [x1, 41.0], [x1, 45.0], [x0, 45.0], [x0, 41.0]]]},
        }],
    }


def make_dataset() -> Dict[str, Any]:
    """
    Two regions:
      01 北海道: cells pop 100/200, facilities A,B, rows [[900,1800],[-1,2700]]
      02 青森県: one cell pop 50, single facility C (colnames unboxed), 20 minutes
    """
    return {
        "prefectures.json": [
            {"code": "01", "name": "北海道", "dir_name": "hokkaido"},
            {"code": "02", "name": "青森県", "dir_name": "aomori"},
        ],
        "facilities.json": [
            {"name": "A", "pref_code": "01", "lat": 43.0, "lon": 141.0},
            {"name": "B", "pref_code": "01", "lat": 43.5, "lon": 142.0},
            {"name": "C", "pref_code": "02", "lat": 40.8, "lon": 140.7},
        ],
        "hokkaido/mesh.geojson": {"type": "FeatureCollection", "features": [_cell(141.0, 100), _cell(141.1, 200)]},
        "hokkaido/dur_matrix.json": {"colnames": ["A", "B"], "data": [[900, 1800], [-1, 2700]]},
        "hokkaido/muni.geojson": {"type": "FeatureCollection", "features": []},
        "hokkaido/border.geojson": _border(139.0, 146.0),
        "aomori/mesh.geojson": {"type": "FeatureCollection", "features": [_cell(140.7, 50)]},
        "aomori/dur_matrix.json": {"colnames": "C", "data": [[1200]]},
        "aomori/muni.geojson": {"type": "FeatureCollection", "features": []},
        "aomori/border.geojson": _border(139.5, 141.7),
    }


class FakeProvider:
    def __init__(self, dataset: Dict[str, Any], delay: float = 0.0, fail: Optional[Set[str]] = None):
        self.dataset = dataset
        self.delay = delay
        self.fail = set(fail or ())
        self.calls: List[str] = []

    async def fetch_json(self, relpath: str) -> Any:
        self.calls.append(relpath)
        if self.delay:
            await asyncio.sleep(self.delay)
        if relpath in self.fail or relpath not in self.dataset:
            raise DataProviderError(relpath, "boom")
        return self.dataset[relpath]


class RecordingRenderer(Renderer):
    def __init__(self, fail_regions: Optional[Set[str]] = None):
        self.fail_regions = set(fail_regions or ())
        self.events: List[tuple] = []
        self.region_results: Dict[str, Any] = {}
        self.summaries: List[tuple] = []
        self.progress: List[Any] = []
        self.active_counts: List[tuple] = []
        self.finished = False

    def render_static(self, region, entry):
        self.events.append(("static", region.code))

    def render_region(self, region, data, acc, facilities, active):
        self.events.append(("region", region.code))
        if region.code in self.fail_regions:
            raise RuntimeError("render exploded")
        self.region_results[region.code] = (acc, [f.name for f in facilities], active)

    def render_summary(self, scope, rows):
        self.events.append(("summary", scope))
        self.summaries.append((scope, rows))

    def render_active_count(self, active, total):
        self.active_counts.append((active, total))

    def report_load_progress(self, progress):
        self.events.append(("load", progress.completed))
        self.progress.append(progress)

    def report_render_progress(self, index, total, region):
        self.events.append(("render_progress", index, region.code))

    def finish_startup(self):
        self.events.append(("finish",))
        self.finished = True
