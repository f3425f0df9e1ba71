"""
app_dash.py — Dash + dash-leaflet front-end for the facility access map.

The AccessSession runs on its own asyncio loop in a daemon thread (the single
context that owns the selection and the region cache). Dash callbacks hand
mutations to that loop and poll a LayerStore, which the session renders into.

Run:
  python app_dash.py
Then open:
  http://127.0.0.1:8050

Environment: see config.py (ACCESSMAP_DATA_DIR, ACCESSMAP_DATA_URL, ...).
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

from dash import Dash, Input, Output, State, callback_context, dcc, html, no_update, ALL
import dash_leaflet as dl

from config import DEFAULT_BOUNDS, load_config
from core import (
    TIME_COLORS,
    TIME_LABELS,
    Facility,
    MarkerSpec,
    Region,
    RegionAccessibility,
    RegionData,
    SummaryRow,
    boundary_bounds,
    facility_markers,
    format_number,
    mesh_feature_collection,
)
from logging_config import setup_logging
from regions import FileDataProvider, HttpDataProvider, LoadProgress, RegionEntry
from session import ALL_REGIONS, AccessSession, Renderer

logger = logging.getLogger(__name__)

POLL_MS = 300
TILE_URL = "https://cyberjapandata.gsi.go.jp/xyz/pale/{z}/{x}/{y}.png"
TILE_ATTRIBUTION = '<a href="https://maps.gsi.go.jp/development/ichiran.html">国土地理院</a>'


# ----------------------------
# Render target (written from the session loop, read from Dash callbacks)
# ----------------------------

class LayerStore(Renderer):
    def __init__(self):
        self._lock = threading.Lock()
        self.version = 0
        self.static_layers: Dict[str, Dict[str, Any]] = {}
        self.mesh_layers: Dict[str, Dict[int, Dict[str, Any]]] = {}
        self.markers: Dict[str, List[MarkerSpec]] = {}
        self.summary_scope = ALL_REGIONS
        self.summary_rows: List[SummaryRow] = []
        self.active_count: Tuple[int, int] = (0, 0)
        self.progress_text = "データ読み込み中..."
        self.startup_done = False

    def _bump(self) -> None:
        self.version += 1

    def render_static(self, region: Region, entry: RegionEntry) -> None:
        with self._lock:
            self.static_layers[region.code] = {"muni": entry.data.muni, "border": entry.data.border}
            self._bump()

    def render_region(self, region: Region, data: RegionData, acc: Optional[RegionAccessibility], facilities: List[Facility], active: frozenset) -> None:
        mesh = {} if acc is None else mesh_feature_collection(data, acc)
        markers = facility_markers(facilities, active)
        with self._lock:
            self.mesh_layers[region.code] = mesh
            self.markers[region.code] = markers
            self._bump()

    def render_summary(self, scope: str, rows: List[SummaryRow]) -> None:
        with self._lock:
            self.summary_scope = scope
            self.summary_rows = list(rows)
            self._bump()

    def render_active_count(self, active: int, total: int) -> None:
        with self._lock:
            self.active_count = (active, total)
            self._bump()

    def report_load_progress(self, progress: LoadProgress) -> None:
        with self._lock:
            self.progress_text = progress.message()
            self._bump()

    def report_render_progress(self, index: int, total: int, region: Region) -> None:
        with self._lock:
            self.progress_text = f"描画中... {index}/{total} {region.name}"
            self._bump()

    def finish_startup(self) -> None:
        with self._lock:
            self.startup_done = True
            self._bump()

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "version": self.version,
                "static_layers": dict(self.static_layers),
                "mesh_layers": dict(self.mesh_layers),
                "markers": dict(self.markers),
                "summary_scope": self.summary_scope,
                "summary_rows": list(self.summary_rows),
                "active_count": self.active_count,
                "progress_text": self.progress_text,
                "startup_done": self.startup_done,
            }


# ----------------------------
# Session loop thread
# ----------------------------

class SessionRunner:
    """
    Owns the asyncio loop the session lives on. Everything that touches the session goes through call().
    """

    def __init__(self, session: AccessSession):
        self.session = session
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(target=self._run, daemon=True, name="access-session")

    def _run(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def start(self) -> None:
        self.thread.start()

    def run(self, coro, timeout: Optional[float] = None):
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(timeout)

    def submit(self, coro) -> None:
        asyncio.run_coroutine_threadsafe(coro, self.loop)

    def call(self, fn: Callable[..., Any], *args: Any, timeout: float = 10.0) -> Any:
        async def _invoke():
            return fn(*args)
        return self.run(_invoke(), timeout=timeout)


STORE = LayerStore()
RUNNER: Optional[SessionRunner] = None


# ----------------------------
# Small helpers
# ----------------------------

def _mesh_children(mesh_layers: Dict[str, Dict[int, Dict[str, Any]]]) -> List[Any]:
    out = []
    for code, by_band in mesh_layers.items():
        for band, fc in by_band.items():
            color = TIME_COLORS[band]
            out.append(
                dl.GeoJSON(
                    data=fc,
                    id=f"mesh_{code}_{band}",
                    options=dict(style=dict(fillColor=color, fillOpacity=0.75, color=color, weight=0.5, opacity=0.75)),
                )
            )
    return out


def _boundary_children(static_layers: Dict[str, Dict[str, Any]]) -> List[Any]:
    out = []
    for code, layers in static_layers.items():
        if layers.get("muni"):
            out.append(
                dl.GeoJSON(
                    data=layers["muni"],
                    id=f"muni_{code}",
                    options=dict(style=dict(fill=False, color="white", weight=0.3, opacity=0.5)),
                )
            )
        if layers.get("border"):
            out.append(
                dl.GeoJSON(
                    data=layers["border"],
                    id=f"border_{code}",
                    options=dict(style=dict(fill=False, color="#333", weight=1.2, opacity=0.8)),
                )
            )
    return out


def _marker_children(markers: Dict[str, List[MarkerSpec]]) -> List[Any]:
    out = []
    for specs in markers.values():
        for m in specs:
            out.append(
                dl.CircleMarker(
                    center=[m.lat, m.lon],
                    radius=6,
                    color="black",
                    weight=1,
                    fillColor=m.fill_color,
                    fillOpacity=m.fill_opacity,
                    children=dl.Tooltip(m.name),
                    id={"type": "facility_marker", "name": m.name},
                )
            )
    return out


def _summary_table(rows: List[SummaryRow]) -> html.Table:
    header = html.Thead(html.Tr([html.Th(h) for h in ("所要時間", "メッシュ数", "人口", "割合(%)", "累積(%)")]))
    body = []
    for i, r in enumerate(rows):
        body.append(
            html.Tr(
                [
                    html.Td(r.band_label, style={"color": TIME_COLORS[i], "fontWeight": "bold"}),
                    html.Td(format_number(r.cell_count)),
                    html.Td(format_number(r.population)),
                    html.Td(f"{r.population_percent:.1f}"),
                    html.Td(f"{r.cumulative_population_percent:.1f}"),
                ],
                className="pct-bar",
                style={"--bar-w": f"{r.population_percent}%"},
            )
        )
    return html.Table([header, html.Tbody(body)], id="summary_table_inner")


def _legend() -> html.Div:
    items = [html.B(["最寄り施設への", html.Br(), "所要時間"]), html.Br()]
    for label, color in zip(TIME_LABELS, TIME_COLORS):
        items += [
            html.I(style={
                "background": color, "width": "14px", "height": "14px", "display": "inline-block",
                "marginRight": "4px", "verticalAlign": "middle", "border": "1px solid #ccc",
            }),
            label,
            html.Br(),
        ]
    return html.Div(items, className="info legend", style=_card_style())


def _card_style() -> Dict[str, str]:
    return {
        "background": "#fff",
        "padding": "8px 12px",
        "borderRadius": "4px",
        "boxShadow": "0 1px 4px rgba(0,0,0,0.3)",
        "fontSize": "12px",
        "lineHeight": "1.6",
    }


def _active_count_text(active: int, total: int) -> str:
    return f"有効施設: {active} / {total}"


def _region_section(region: Region, facilities: List[Facility], active: frozenset) -> html.Details:
    names = [f.name for f in facilities]
    body: List[Any] = []
    if names:
        body.append(
            dcc.Checklist(
                id={"type": "fac_checklist", "region": region.code},
                options=[{"label": n, "value": n} for n in names],
                value=[n for n in names if n in active],
                labelStyle={"display": "block"},
            )
        )
    else:
        body.append(html.Div("施設データなし", style={"color": "#999", "fontSize": "12px", "padding": "4px 0"}))

    return html.Details(
        [
            html.Summary(
                [
                    html.Span(f"{region.name} ({len(names)})"),
                    html.Span(
                        [
                            html.A("全", id={"type": "region_select", "region": region.code}, n_clicks=0),
                            html.A("解", id={"type": "region_deselect", "region": region.code}, n_clicks=0, style={"marginLeft": "6px"}),
                        ],
                        className="pref-links",
                        style={"float": "right"},
                    ),
                ],
                className="pref-header",
            ),
            html.Div(body, className="fac-list"),
        ],
        className="pref-section",
    )


def _credit_box() -> html.Div:
    return html.Div(
        [
            html.H4(["出典 ", html.A("（詳細はこちら）", id="show_disclaimer", n_clicks=0,
                                    style={"fontWeight": "normal", "fontSize": "11px", "color": "#2166ac", "cursor": "pointer"})]),
            html.Ul(
                [
                    html.Li("人口: 令和2年国勢調査 (e-Stat)"),
                    html.Li("道路: © OpenStreetMap contributors"),
                    html.Li("経路計算: OSRM"),
                    html.Li("行政境界: GADM v4.1"),
                    html.Li("地図: 国土地理院"),
                ]
            ),
        ],
        className="credit-box",
    )


def _disclaimer_modal() -> html.Div:
    return html.Div(
        id="disclaimer_modal",
        className="modal",
        children=html.Div(
            [
                html.H3("ご利用にあたって"),
                html.P(
                    "本地図の所要時間は道路網から機械的に推計した参考値であり、"
                    "実際の移動時間や受診可否を保証するものではありません。"
                ),
                html.Div(
                    id="agree_section",
                    children=[
                        dcc.Checklist(id="agree_check", options=[{"label": "上記に同意します", "value": "yes"}], value=[]),
                        html.Button("同意して利用する", id="agree_btn", className="btn btn-primary", disabled=True),
                    ],
                ),
                html.Div(
                    id="close_section",
                    style={"display": "none"},
                    children=[html.Button("閉じる", id="close_btn", className="btn")],
                ),
            ],
            className="modal-content",
        ),
    )


# ----------------------------
# Dash app
# ----------------------------

app = Dash(__name__)
server = app.server

SIDEBAR_W = "300px"


def serve_layout() -> html.Div:
    if RUNNER is None:
        return html.Div("Session not started. Run `python app_dash.py`.")

    session = RUNNER.session
    regions, by_region, active, default_scope = RUNNER.call(
        lambda: (
            session.cache.regions(),
            {r.code: session.registry.in_region(r.code) for r in session.cache.regions()},
            session.registry.snapshot(),
            session.scope,
        )
    )

    scope_options = [{"label": "全道県", "value": ALL_REGIONS}] + [{"label": r.name, "value": r.code} for r in regions]

    return html.Div(
        [
            dcc.Interval(id="poll", interval=POLL_MS),
            dcc.Store(id="rendered_version", data=-1),
            dcc.Store(id="bounds_fitted", data=False),
            _disclaimer_modal(),

            html.Div(
                className="app-shell",
                children=[
                    # Sidebar
                    html.Div(
                        id="sidebar",
                        className="sidebar",
                        style={"width": SIDEBAR_W},
                        children=[
                            html.H3("施設選択"),
                            html.Div(_active_count_text(len(active), sum(len(v) for v in by_region.values())),
                                     id="active_count", className="active-count"),
                            html.Div(
                                [
                                    html.A("全選択", id="select_all", n_clicks=0),
                                    " / ",
                                    html.A("全解除", id="deselect_all", n_clicks=0),
                                ],
                                className="toggle-links",
                            ),
                            html.Hr(),
                            *[_region_section(r, by_region[r.code], active) for r in regions],
                            html.Hr(),
                            _credit_box(),
                        ],
                    ),

                    # Main
                    html.Div(
                        className="main",
                        children=[
                            html.Div(id="loading_overlay", className="loading-overlay", children="データ読み込み中..."),
                            dl.Map(
                                id="map",
                                bounds=[list(DEFAULT_BOUNDS[0]), list(DEFAULT_BOUNDS[1])],
                                preferCanvas=True,
                                children=[
                                    dl.TileLayer(url=TILE_URL, attribution=TILE_ATTRIBUTION, maxZoom=18),
                                    dl.LayerGroup(id="mesh_layers"),
                                    dl.LayerGroup(id="boundary_layers"),
                                    dl.LayerGroup(id="marker_layers"),
                                ],
                                style={"width": "100%", "height": "650px"},
                            ),
                            html.Div(_legend(), style={"marginTop": "8px"}),
                            html.Div(
                                [
                                    html.Div("集計", className="subheader"),
                                    dcc.Dropdown(id="summary_scope", options=scope_options, value=default_scope, clearable=False),
                                    html.Div(id="summary_table", style={"marginTop": "8px"}),
                                ],
                                style={"marginTop": "12px"},
                            ),
                        ],
                    ),
                ],
            ),
        ]
    )


app.layout = serve_layout


# ----------------------------
# Poll the store and redraw what changed
# ----------------------------

@app.callback(
    Output("mesh_layers", "children"),
    Output("boundary_layers", "children"),
    Output("marker_layers", "children"),
    Output("summary_table", "children"),
    Output("active_count", "children"),
    Output("loading_overlay", "children"),
    Output("loading_overlay", "style"),
    Output("rendered_version", "data"),
    Input("poll", "n_intervals"),
    State("rendered_version", "data"),
)
def refresh_layers(_n, rendered_version):
    snap = STORE.snapshot()
    if snap["version"] == rendered_version:
        return (no_update,) * 8

    overlay_style = {"display": "none"} if snap["startup_done"] else {}
    return (
        _mesh_children(snap["mesh_layers"]),
        _boundary_children(snap["static_layers"]),
        _marker_children(snap["markers"]),
        _summary_table(snap["summary_rows"]),
        _active_count_text(*snap["active_count"]),
        snap["progress_text"],
        overlay_style,
        snap["version"],
    )


@app.callback(
    Output("map", "bounds"),
    Output("bounds_fitted", "data"),
    Input("poll", "n_intervals"),
    State("bounds_fitted", "data"),
    prevent_initial_call=True,
)
def fit_bounds(_n, fitted):
    if fitted:
        return no_update, no_update
    snap = STORE.snapshot()
    if not snap["startup_done"]:
        return no_update, no_update
    bounds = boundary_bounds(layers.get("border") for layers in snap["static_layers"].values())
    if bounds is None:
        return no_update, True
    return [list(bounds[0]), list(bounds[1])], True


# ----------------------------
# Selection mutators
# ----------------------------

def _triggered_id() -> Optional[Any]:
    ctx = callback_context
    if not ctx.triggered:
        return None
    prop_id = ctx.triggered[0]["prop_id"].rsplit(".", 1)[0]
    if prop_id.startswith("{"):
        return json.loads(prop_id)
    return prop_id


def _checklist_values() -> List[List[str]]:
    """Active names per rendered checklist, in output order."""
    session = RUNNER.session
    codes = [o["id"]["region"] for o in callback_context.outputs_list]
    return RUNNER.call(lambda: [[n for n in session.registry.names_in_region(c) if session.is_active(n)] for c in codes])


@app.callback(
    Output({"type": "fac_checklist", "region": ALL}, "value"),
    Input({"type": "fac_checklist", "region": ALL}, "value"),
    Input({"type": "region_select", "region": ALL}, "n_clicks"),
    Input({"type": "region_deselect", "region": ALL}, "n_clicks"),
    Input("select_all", "n_clicks"),
    Input("deselect_all", "n_clicks"),
    prevent_initial_call=True,
)
def on_selection_change(values, _sel, _desel, _all, _none):
    trig = _triggered_id()
    if trig is None or RUNNER is None:
        return [no_update] * len(values)
    session = RUNNER.session

    if trig == "select_all":
        RUNNER.call(session.select_all)
    elif trig == "deselect_all":
        RUNNER.call(session.deselect_all)
    elif isinstance(trig, dict) and trig.get("type") == "region_select":
        RUNNER.call(session.select_region, trig["region"])
    elif isinstance(trig, dict) and trig.get("type") == "region_deselect":
        RUNNER.call(session.deselect_region, trig["region"])
    elif isinstance(trig, dict) and trig.get("type") == "fac_checklist":
        code = trig["region"]
        codes = [i["id"]["region"] for i in callback_context.inputs_list[0]]
        checked = set(values[codes.index(code)] or [])

        def _apply():
            current = {n for n in session.registry.names_in_region(code) if session.is_active(n)}
            for name in sorted(checked ^ current):
                session.toggle_facility(name)

        RUNNER.call(_apply)

    return _checklist_values()


@app.callback(
    Output({"type": "fac_checklist", "region": ALL}, "value", allow_duplicate=True),
    Input({"type": "facility_marker", "name": ALL}, "n_clicks"),
    prevent_initial_call=True,
)
def on_marker_click(clicks):
    trig = _triggered_id()
    if not isinstance(trig, dict) or RUNNER is None:
        return [no_update] * len(callback_context.outputs_list)
    if not callback_context.triggered[0].get("value"):
        return [no_update] * len(callback_context.outputs_list)
    RUNNER.call(RUNNER.session.toggle_facility, trig["name"])
    return _checklist_values()


@app.callback(
    Output("summary_table", "children", allow_duplicate=True),
    Input("summary_scope", "value"),
    prevent_initial_call=True,
)
def on_scope_change(scope):
    if not scope or RUNNER is None:
        return no_update
    rows = RUNNER.call(RUNNER.session.set_summary_scope, scope)
    return _summary_table(rows)


# ----------------------------
# Disclaimer
# ----------------------------

@app.callback(
    Output("agree_btn", "disabled"),
    Input("agree_check", "value"),
)
def enable_agree(value):
    return not (value and "yes" in value)


@app.callback(
    Output("disclaimer_modal", "style"),
    Output("agree_section", "style"),
    Output("close_section", "style"),
    Input("agree_btn", "n_clicks"),
    Input("close_btn", "n_clicks"),
    Input("show_disclaimer", "n_clicks"),
    State("agree_check", "value"),
    prevent_initial_call=True,
)
def toggle_disclaimer(_agree, _close, _show, agree_value):
    trig = _triggered_id()
    if trig == "show_disclaimer":
        return {}, {"display": "none"}, {}
    if trig == "agree_btn" and not (agree_value and "yes" in agree_value):
        return no_update, no_update, no_update
    return {"display": "none"}, no_update, no_update


# ----------------------------
# Entry point
# ----------------------------

def main() -> None:
    global RUNNER

    config = load_config()
    setup_logging(config.log_level, config.log_file)

    if config.data_url:
        provider = HttpDataProvider(config.data_url, timeout=config.http_timeout)
    else:
        provider = FileDataProvider(config.data_dir)

    session = AccessSession(
        provider,
        renderer=STORE,
        debounce_ms=config.debounce_ms,
        default_scope=config.default_scope,
    )
    RUNNER = SessionRunner(session)
    RUNNER.start()

    # The sidebar is built from the catalog, so wait for it before serving pages
    try:
        RUNNER.run(session.ensure_catalog(), timeout=config.http_timeout)
    except Exception:
        logger.error("Catalog load failed; the map will start empty", exc_info=True)
    RUNNER.submit(session.startup())

    # Dash default is http://127.0.0.1:8050
    app.run(debug=False, host="127.0.0.1", port=8050)


if __name__ == "__main__":
    main()
