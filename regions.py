"""
regions.py — per-region data cache and asynchronous loader

What this file does
-------------------
- Data providers fetch the global catalog and the four per-region resources
  (mesh, duration matrix, municipal boundaries, regional border), either from a
  local data directory or from a static HTTP host.
- RegionCache holds one RegionEntry per region with an explicit load state:
      NOT_LOADED -> LOADING -> LOADED | FAILED
  Transitions happen once per session; FAILED regions are not retried.
- RegionLoader.load_region is single-flight per region (the state guard makes a
  second call a no-op) and isolates failures to the region that failed.
- After every attempt (success or failure) a LoadProgress is reported.

Everything runs on one asyncio loop; blocking file/HTTP reads are pushed to
worker threads with asyncio.to_thread.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import requests

from core import Facility, Region, RegionData, build_region_data

logger = logging.getLogger(__name__)


REGION_RESOURCES = ("mesh.geojson", "dur_matrix.json", "muni.geojson", "border.geojson")


class DataProviderError(Exception):
    def __init__(self, resource: str, reason: str):
        super().__init__(f"Failed to load {resource}: {reason}")
        self.resource = resource
        self.reason = reason


# ----------------------------
# Data providers
# ----------------------------

class DataProvider(Protocol):
    async def fetch_json(self, relpath: str) -> Any:
        ...


class FileDataProvider:
    """
    Reads JSON resources relative to a local data directory.
    """

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir).expanduser()

    def _read(self, relpath: str) -> Any:
        path = self.data_dir / relpath
        try:
            with open(path, "r", encoding="utf-8") as fh:
                return json.load(fh)
        except FileNotFoundError as e:
            raise DataProviderError(str(path), "file not found") from e
        except json.JSONDecodeError as e:
            raise DataProviderError(str(path), f"invalid JSON ({e})") from e

    async def fetch_json(self, relpath: str) -> Any:
        return await asyncio.to_thread(self._read, relpath)


class HttpDataProvider:
    """
    Fetches JSON resources relative to a base URL (the layout a static host serves).
    """

    def __init__(self, base_url: str, timeout: float = 30.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = float(timeout)
        self.session = session or requests.Session()

    def _get(self, relpath: str) -> Any:
        url = f"{self.base_url}/{relpath}"
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as e:
            raise DataProviderError(url, str(e)) from e

    async def fetch_json(self, relpath: str) -> Any:
        return await asyncio.to_thread(self._get, relpath)


async def load_catalog(provider: DataProvider) -> Tuple[List[Region], List[Facility]]:
    """
    Global catalog: regions and facilities, fetched together.
    """
    raw_regions, raw_facilities = await asyncio.gather(
        provider.fetch_json("prefectures.json"),
        provider.fetch_json("facilities.json"),
    )

    regions = [
        Region(code=str(p["code"]), name=str(p["name"]), dir_name=str(p["dir_name"]))
        for p in raw_regions
    ]
    facilities = [
        Facility(
            name=str(f["name"]),
            region_code=str(f["pref_code"]),
            lat=float(f["lat"]),
            lon=float(f["lon"]),
        )
        for f in raw_facilities
    ]
    logger.info("Catalog loaded: %d regions, %d facilities", len(regions), len(facilities))
    return regions, facilities


# ----------------------------
# Region cache
# ----------------------------

class LoadState(enum.Enum):
    NOT_LOADED = "not_loaded"
    LOADING = "loading"
    LOADED = "loaded"
    FAILED = "failed"


_TRANSITIONS = {
    LoadState.NOT_LOADED: {LoadState.LOADING},
    LoadState.LOADING: {LoadState.LOADED, LoadState.FAILED},
    LoadState.LOADED: set(),
    LoadState.FAILED: set(),
}


@dataclass
class RegionEntry:
    region: Region
    state: LoadState = LoadState.NOT_LOADED
    data: Optional[RegionData] = None
    failure_reason: Optional[str] = None

    def transition(self, new_state: LoadState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Region {self.region.code}: illegal transition {self.state.name} -> {new_state.name}")
        self.state = new_state

    @property
    def loaded(self) -> bool:
        return self.state is LoadState.LOADED


class RegionCache:
    """
    Ordered per-region entries, in catalog order.
    """

    def __init__(self, regions: List[Region]):
        self._entries: Dict[str, RegionEntry] = {r.code: RegionEntry(region=r) for r in regions}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, code: object) -> bool:
        return code in self._entries

    def entry(self, code: str) -> RegionEntry:
        return self._entries[code]

    def entries(self) -> List[RegionEntry]:
        return list(self._entries.values())

    def regions(self) -> List[Region]:
        return [e.region for e in self._entries.values()]

    def loaded_entries(self, codes: Optional[List[str]] = None) -> List[RegionEntry]:
        entries = self.entries() if codes is None else [self._entries[c] for c in codes]
        return [e for e in entries if e.loaded]


# ----------------------------
# Loader
# ----------------------------

@dataclass(frozen=True)
class LoadProgress:
    completed: int
    total: int
    last_region_name: str

    @property
    def percentage(self) -> int:
        if self.total <= 0:
            return 100
        # half-up, not banker's rounding
        return int(self.completed * 100 / self.total + 0.5)

    def message(self) -> str:
        return f"データ読み込み中... {self.completed}/{self.total} ({self.percentage}%) {self.last_region_name}"


ProgressCallback = Callable[[LoadProgress], None]
LoadedCallback = Callable[[RegionEntry], None]


class RegionLoader:
    def __init__(
        self,
        provider: DataProvider,
        cache: RegionCache,
        on_progress: Optional[ProgressCallback] = None,
        on_loaded: Optional[LoadedCallback] = None,
    ):
        self.provider = provider
        self.cache = cache
        self.on_progress = on_progress
        self.on_loaded = on_loaded
        self.completed = 0

    async def _fetch_region(self, region: Region) -> RegionData:
        mesh, dur_matrix, muni, border = await asyncio.gather(
            *(self.provider.fetch_json(f"{region.dir_name}/{name}") for name in REGION_RESOURCES)
        )
        return build_region_data(mesh, dur_matrix, muni=muni, border=border)

    async def load_region(self, code: str) -> None:
        """
        Fetch one region once. No-op if the region is already LOADING, LOADED or FAILED.
        """
        entry = self.cache.entry(code)
        if entry.state is not LoadState.NOT_LOADED:
            return
        entry.transition(LoadState.LOADING)

        try:
            entry.data = await self._fetch_region(entry.region)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            entry.failure_reason = str(e)
            entry.transition(LoadState.FAILED)
            logger.warning("Failed to load data for %s: %s", code, e)
        else:
            entry.transition(LoadState.LOADED)
            logger.info("Loaded region %s (%s): %d cells", code, entry.region.name, entry.data.n_cells)
            if self.on_loaded is not None:
                self.on_loaded(entry)

        self.completed += 1
        progress = LoadProgress(completed=self.completed, total=len(self.cache), last_region_name=entry.region.name)
        logger.debug(progress.message())
        if self.on_progress is not None:
            self.on_progress(progress)

    async def load_all(self) -> None:
        """
        Launch every region load concurrently and wait for all of them, failed ones included.
        """
        await asyncio.gather(*(self.load_region(r.code) for r in self.cache.regions()))
