import asyncio
import math

import pytest

from regions import LoadState
from session import ALL_REGIONS, AccessSession, DebouncedTask, FacilityRegistry
from core import Facility

from fakes import FakeProvider, RecordingRenderer, make_dataset

DEBOUNCE_MS = 20


def _session(renderer=None, fail=None, **kw):
    provider = FakeProvider(make_dataset(), fail=fail)
    return AccessSession(provider, renderer=renderer or RecordingRenderer(), debounce_ms=DEBOUNCE_MS, **kw)


async def _settle():
    await asyncio.sleep(DEBOUNCE_MS / 1000.0 * 4)


# ----------------------------
# Facility registry
# ----------------------------

def test_registry_mutations():
    reg = FacilityRegistry([
        Facility("A", "01", 0, 0), Facility("B", "01", 0, 0), Facility("C", "02", 0, 0),
    ])
    assert reg.active == {"A", "B", "C"}

    assert reg.toggle("A") is False
    assert reg.toggle("A") is True

    reg.deselect_region("01")
    assert reg.active == {"C"}
    reg.select_region("01")
    assert reg.active == {"A", "B", "C"}

    reg.deselect_all()
    assert reg.counts() == (0, 3)
    reg.select_all()
    assert reg.counts() == (3, 3)


# ----------------------------
# Debounce
# ----------------------------

def test_debounced_task_runs_once_per_burst():
    fired = []

    async def go():
        task = DebouncedTask(lambda: fired.append(1), delay_ms=DEBOUNCE_MS)
        for _ in range(5):
            task.trigger()
            await asyncio.sleep(0)
        assert task.pending
        await _settle()
        assert not task.pending

    asyncio.run(go())
    assert fired == [1]


def test_debounced_task_cancel():
    fired = []

    async def go():
        task = DebouncedTask(lambda: fired.append(1), delay_ms=DEBOUNCE_MS)
        task.trigger()
        task.cancel()
        await _settle()

    asyncio.run(go())
    assert fired == []


def test_burst_of_mutations_recomputes_once_with_final_state():
    renderer = RecordingRenderer()
    session = _session(renderer)

    async def go():
        await session.startup()
        base = session.recompute_count
        renderer.summaries.clear()

        session.toggle_facility("A")       # off
        session.toggle_facility("B")       # off
        session.deselect_region("02")      # C off
        session.select_region("01")        # A, B on
        session.toggle_facility("B")       # B off
        await _settle()
        return base

    base = asyncio.run(go())

    assert session.recompute_count == base + 1
    assert session.registry.active == {"A"}
    scope, rows = renderer.summaries[-1]
    assert scope == "01"
    assert sum(r.population for r in rows) == 100
    acc, _, active = renderer.region_results["01"]
    assert active == frozenset({"A"})
    assert math.isnan(acc.minutes[1])
    assert renderer.region_results["02"][0] is None


# ----------------------------
# Startup
# ----------------------------

def test_startup_sequence_order():
    renderer = RecordingRenderer()
    session = _session(renderer)
    asyncio.run(session.startup())

    kinds = [e[0] for e in renderer.events]
    # every load attempt is reported before the render pass starts
    last_load = max(i for i, k in enumerate(kinds) if k == "load")
    first_render = kinds.index("render_progress")
    assert last_load < first_render

    render_pass = [e for e in renderer.events[first_render:] if e[0] in ("render_progress", "region")]
    assert render_pass == [
        ("render_progress", 1, "01"), ("region", "01"),
        ("render_progress", 2, "02"), ("region", "02"),
    ]
    assert renderer.events[-2] == ("summary", "01")
    assert renderer.events[-1] == ("finish",)
    assert renderer.active_counts[0] == (3, 3)


def test_startup_yields_between_regions():
    renderer = RecordingRenderer()
    session = _session(renderer)
    ticks = []

    async def ticker():
        while not renderer.finished:
            ticks.append(len([e for e in renderer.events if e[0] == "region"]))
            await asyncio.sleep(0)

    async def go():
        t = asyncio.ensure_future(ticker())
        await session.startup()
        await t

    asyncio.run(go())
    # the ticker got to run between the first and second region render
    assert 1 in ticks


def test_startup_with_failed_region_completes():
    renderer = RecordingRenderer()
    session = _session(renderer, fail={"aomori/border.geojson"})
    asyncio.run(session.startup())

    assert session.cache.entry("01").state is LoadState.LOADED
    assert session.cache.entry("02").state is LoadState.FAILED
    assert ("region", "02") not in renderer.events
    assert [p.completed for p in renderer.progress] == [1, 2]
    assert renderer.finished


def test_startup_catalog_failure_still_finishes(caplog):
    renderer = RecordingRenderer()
    session = _session(renderer, fail={"facilities.json"})

    with caplog.at_level("ERROR", logger="session"):
        asyncio.run(session.startup())

    assert renderer.finished
    assert "Startup error" in caplog.text


def test_render_failure_does_not_stop_other_regions(caplog):
    renderer = RecordingRenderer(fail_regions={"01"})
    session = _session(renderer)

    with caplog.at_level("WARNING", logger="session"):
        asyncio.run(session.startup())

    assert "02" in renderer.region_results
    assert "Render error for 01" in caplog.text
    assert renderer.finished


# ----------------------------
# Pulls / scope
# ----------------------------

def test_summary_scopes():
    session = _session()
    asyncio.run(session.startup())

    r01 = session.summary("01")
    assert (r01[0].population, r01[2].population) == (100, 200)

    r02 = session.summary("02")
    assert r02[1].population == 50  # 20 minutes

    total = session.summary(ALL_REGIONS)
    assert sum(r.population for r in total) == 350
    assert total[-1].cumulative_population_percent == pytest.approx(100.0)


def test_set_summary_scope_pushes_rows():
    renderer = RecordingRenderer()
    session = _session(renderer)

    async def go():
        await session.startup()
        return session.set_summary_scope(ALL_REGIONS)

    rows = asyncio.run(go())
    assert session.scope == ALL_REGIONS
    assert renderer.summaries[-1] == (ALL_REGIONS, rows)

    with pytest.raises(KeyError):
        session.set_summary_scope("99")


def test_unknown_default_scope_falls_back_to_first_region():
    session = _session(default_scope="47")
    asyncio.run(session.startup())
    assert session.scope == "01"


def test_summary_skips_unloaded_regions():
    session = _session(fail={"hokkaido/mesh.geojson"})
    asyncio.run(session.startup())
    rows = session.summary(ALL_REGIONS)
    assert sum(r.population for r in rows) == 50
    assert session.region_accessibility("01") is None


def test_region_accessibility_pull():
    session = _session()

    async def go():
        await session.startup()
        session.deselect_all()
        empty = session.region_accessibility("01")
        session.toggle_facility("B")
        only_b = session.region_accessibility("01")
        return empty, only_b

    empty, only_b = asyncio.run(go())
    assert empty is None
    assert only_b.minutes.tolist() == [30.0, 45.0]
    assert only_b.bands.tolist() == [1, 2]


def test_mutators_reject_unknown_region():
    session = _session()

    async def go():
        await session.startup()
        with pytest.raises(KeyError):
            session.select_region("99")
        with pytest.raises(KeyError):
            session.deselect_region("99")

    asyncio.run(go())


def test_malformed_matrix_keeps_region_loaded():
    dataset = make_dataset()
    dataset["aomori/dur_matrix.json"] = {"colnames": "C", "data": 1200}
    renderer = RecordingRenderer()
    session = AccessSession(FakeProvider(dataset), renderer=renderer, debounce_ms=DEBOUNCE_MS)
    asyncio.run(session.startup())

    entry = session.cache.entry("02")
    assert entry.state is LoadState.LOADED
    assert entry.data.matrix is None
    assert ("static", "02") in renderer.events
    assert session.region_accessibility("02") is None
    assert sum(r.population for r in session.summary(ALL_REGIONS)) == 300


def test_mutator_outside_loop_leaves_selection_unchanged():
    renderer = RecordingRenderer()
    session = _session(renderer)
    asyncio.run(session.startup())
    counts_before = list(renderer.active_counts)

    with pytest.raises(RuntimeError):
        session.toggle_facility("A")
    with pytest.raises(RuntimeError):
        session.deselect_region("01")
    with pytest.raises(RuntimeError):
        session.deselect_all()

    assert session.registry.active == {"A", "B", "C"}
    assert renderer.active_counts == counts_before
    assert not session.scheduler.pending


def test_catalog_loaded_once_when_startup_follows_slow_load():
    provider = FakeProvider(make_dataset(), delay=0.02)
    session = AccessSession(provider, renderer=RecordingRenderer(), debounce_ms=DEBOUNCE_MS)

    async def go():
        # the first waiter gives up before the catalog arrives
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(session.ensure_catalog(), timeout=0.001)
        await session.startup()

    asyncio.run(go())

    assert provider.calls.count("prefectures.json") == 1
    assert provider.calls.count("facilities.json") == 1
    assert all(e.state is LoadState.LOADED for e in session.cache.entries())
