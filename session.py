"""
session.py — one visualization session: facility selection, debounced recompute, startup

What this file does
-------------------
- FacilityRegistry: static facility catalog + the mutable active-facility set.
- DebouncedTask: holds at most one pending loop.call_later handle; every trigger
  cancels the previous one, so only the last trigger in a quiet burst runs.
- Renderer: the interface the map/UI front-end implements (all no-ops here).
- AccessSession: owns the registry, region cache, loader and scheduler and is the
  only object the front-end talks to. All state is touched from one asyncio loop.

Startup
-------
  catalog -> all region loads concurrently (wait for all, failures included)
          -> render regions one at a time, yielding to the loop between regions
          -> summary -> dismiss progress
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from core import (
    Facility,
    Region,
    RegionAccessibility,
    RegionData,
    SummaryRow,
    compute_region_accessibility,
    compute_summary,
)
from regions import (
    DataProvider,
    LoadProgress,
    RegionCache,
    RegionEntry,
    RegionLoader,
    load_catalog,
)

logger = logging.getLogger(__name__)


ALL_REGIONS = "all"
DEFAULT_DEBOUNCE_MS = 200


# ----------------------------
# Facility registry
# ----------------------------

class FacilityRegistry:
    def __init__(self, facilities: Iterable[Facility]):
        self.facilities: List[Facility] = list(facilities)
        self.active: Set[str] = {f.name for f in self.facilities}

    def names_in_region(self, code: str) -> List[str]:
        return [f.name for f in self.facilities if f.region_code == code]

    def in_region(self, code: str) -> List[Facility]:
        return [f for f in self.facilities if f.region_code == code]

    def toggle(self, name: str) -> bool:
        """Flip one facility; returns its new active flag."""
        if name in self.active:
            self.active.discard(name)
            return False
        self.active.add(name)
        return True

    def select_region(self, code: str) -> None:
        self.active.update(self.names_in_region(code))

    def deselect_region(self, code: str) -> None:
        self.active.difference_update(self.names_in_region(code))

    def select_all(self) -> None:
        self.active.update(f.name for f in self.facilities)

    def deselect_all(self) -> None:
        self.active.clear()

    def snapshot(self) -> frozenset:
        return frozenset(self.active)

    def counts(self) -> Tuple[int, int]:
        return len(self.active), len(self.facilities)


# ----------------------------
# Debounce
# ----------------------------

class DebouncedTask:
    """
    Cancel-and-reschedule wrapper around loop.call_later.

    The callback reads whatever state exists when it fires, not when it was scheduled.
    """

    def __init__(self, callback: Callable[[], None], delay_ms: int = DEFAULT_DEBOUNCE_MS):
        self._callback = callback
        self._delay = delay_ms / 1000.0
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def trigger(self) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self._delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self._callback()


# ----------------------------
# Rendering collaborator
# ----------------------------

class Renderer:
    """
    Front-end hooks. Subclass and override what you need.
    """

    def render_static(self, region: Region, entry: RegionEntry) -> None:
        """Boundaries; called once per region right after it loads."""

    def render_region(self, region: Region, data: RegionData, acc: Optional[RegionAccessibility], facilities: List[Facility], active: frozenset) -> None:
        """Mesh shading + facility markers for one loaded region (acc is None if nothing is selectable)."""

    def render_summary(self, scope: str, rows: List[SummaryRow]) -> None:
        pass

    def render_active_count(self, active: int, total: int) -> None:
        pass

    def report_load_progress(self, progress: LoadProgress) -> None:
        pass

    def report_render_progress(self, index: int, total: int, region: Region) -> None:
        pass

    def finish_startup(self) -> None:
        pass


# ----------------------------
# Session
# ----------------------------

class AccessSession:
    def __init__(
        self,
        provider: DataProvider,
        renderer: Optional[Renderer] = None,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
        default_scope: str = "01",
    ):
        self.provider = provider
        self.renderer = renderer or Renderer()
        self.registry = FacilityRegistry([])
        self.cache = RegionCache([])
        self.loader: Optional[RegionLoader] = None
        self._catalog_task: Optional[asyncio.Future] = None
        self.scope = default_scope
        self.recompute_count = 0
        self.scheduler = DebouncedTask(self.recompute, delay_ms=debounce_ms)

    # --- catalog / loading ---

    async def load_catalog(self) -> None:
        regions, facilities = await load_catalog(self.provider)
        self.registry = FacilityRegistry(facilities)
        self.cache = RegionCache(regions)
        self.loader = RegionLoader(
            self.provider,
            self.cache,
            on_progress=self.renderer.report_load_progress,
            on_loaded=self._on_region_loaded,
        )
        if self.scope != ALL_REGIONS and self.scope not in self.cache:
            self.scope = regions[0].code if regions else ALL_REGIONS

    async def ensure_catalog(self) -> None:
        """
        Load the catalog once. Concurrent and later callers await the same task,
        so a caller that gives up waiting never causes a second load.
        """
        if self._catalog_task is None:
            self._catalog_task = asyncio.ensure_future(self.load_catalog())
        await asyncio.shield(self._catalog_task)

    def _on_region_loaded(self, entry: RegionEntry) -> None:
        try:
            self.renderer.render_static(entry.region, entry)
        except Exception:
            logger.warning("Static layer render failed for %s", entry.region.code, exc_info=True)

    async def load_region(self, code: str) -> None:
        if self.loader is None:
            raise RuntimeError("Catalog not loaded")
        await self.loader.load_region(code)

    async def startup(self) -> None:
        """
        Full startup sequence. Always finishes by dismissing the progress indicator.
        """
        try:
            await self.ensure_catalog()
            self._push_active_count()

            await self.loader.load_all()

            regions = self.cache.regions()
            for i, region in enumerate(regions):
                if not self.cache.entry(region.code).loaded:
                    continue
                self.renderer.report_render_progress(i + 1, len(regions), region)
                await asyncio.sleep(0)
                self._render_region(region)

            self._push_summary()
        except Exception:
            logger.error("Startup error", exc_info=True)
        finally:
            self.renderer.finish_startup()

    # --- pulls ---

    def region_accessibility(self, code: str) -> Optional[RegionAccessibility]:
        entry = self.cache.entry(code)
        if not entry.loaded:
            return None
        return compute_region_accessibility(entry.data, self.registry.active)

    def summary(self, scope: Optional[str] = None) -> List[SummaryRow]:
        scope = self.scope if scope is None else scope
        codes = None if scope == ALL_REGIONS else [scope]
        loaded = self.cache.loaded_entries(codes)
        return compute_summary((e.data for e in loaded), self.registry.active)

    def active_count(self) -> Tuple[int, int]:
        return self.registry.counts()

    def is_active(self, name: str) -> bool:
        return name in self.registry.active

    # --- mutators ---
    # Each mutator resolves the running loop first, so a call from outside the
    # loop raises before the selection changes.

    def toggle_facility(self, name: str) -> bool:
        self._require_loop()
        state = self.registry.toggle(name)
        self._after_mutation()
        return state

    def select_region(self, code: str) -> None:
        self._require_loop()
        self._check_region(code)
        self.registry.select_region(code)
        self._after_mutation()

    def deselect_region(self, code: str) -> None:
        self._require_loop()
        self._check_region(code)
        self.registry.deselect_region(code)
        self._after_mutation()

    def select_all(self) -> None:
        self._require_loop()
        self.registry.select_all()
        self._after_mutation()

    def deselect_all(self) -> None:
        self._require_loop()
        self.registry.deselect_all()
        self._after_mutation()

    def set_summary_scope(self, scope: str) -> List[SummaryRow]:
        if scope != ALL_REGIONS:
            self._check_region(scope)
        self.scope = scope
        return self._push_summary()

    def _require_loop(self) -> asyncio.AbstractEventLoop:
        return asyncio.get_running_loop()

    def _check_region(self, code: str) -> None:
        if code not in self.cache:
            raise KeyError(code)

    def _after_mutation(self) -> None:
        self._push_active_count()
        self.scheduler.trigger()

    # --- recompute ---

    def recompute(self) -> None:
        """
        One pass over every loaded region, then the summary for the current scope.
        """
        self.recompute_count += 1
        logger.debug("Recompute pass %d (%d active facilities)", self.recompute_count, len(self.registry.active))
        for entry in self.cache.loaded_entries():
            self._render_region(entry.region)
        self._push_summary()

    def _render_region(self, region: Region) -> None:
        try:
            entry = self.cache.entry(region.code)
            acc = self.region_accessibility(region.code)
            self.renderer.render_region(region, entry.data, acc, self.registry.in_region(region.code), self.registry.snapshot())
        except Exception:
            logger.warning("Render error for %s", region.code, exc_info=True)

    def _push_summary(self) -> List[SummaryRow]:
        rows = self.summary()
        self.renderer.render_summary(self.scope, rows)
        return rows

    def _push_active_count(self) -> None:
        active, total = self.registry.counts()
        self.renderer.render_active_count(active, total)

    def region_names(self) -> Dict[str, str]:
        return {r.code: r.name for r in self.cache.regions()}
