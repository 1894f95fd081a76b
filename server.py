"""
Sales KPI Dashboard — API Server
=================================
Flask JSON backend for the commercial KPI dashboard.
Handles export uploads (detail, visits, activities, pivot), KPI queries
over the parsed models, and the per-year salesperson goals.

Usage:
    python server.py
    Then query http://localhost:5000/api/...
"""

import base64
import logging
import os
import uuid

from flask import Flask, jsonify, request, session
from flask_cors import CORS

import kpi
from classifiers import utc_today
from coercion import coerce_date, coerce_number
from goals import GoalRecord, GoalStore, GoalStoreError
from roster import Roster
from settings import load_config
from sheet_parser import SHEET_KINDS, parse_file

logger = logging.getLogger(__name__)

# ─────────────────────────────────────────────────────────────
# APP SETUP
# ─────────────────────────────────────────────────────────────

app = Flask(__name__)
app.secret_key = os.environ.get("FLASK_SECRET_KEY", "sales-kpi-" + uuid.uuid4().hex[:8])
app.config["MAX_CONTENT_LENGTH"] = 50 * 1024 * 1024  # 50MB max upload

CORS(app)

CONFIG = load_config()
ROSTER = Roster.from_config(CONFIG)
GOALS = GoalStore()

# In-memory store for parsed models (keyed by session ID, then sheet kind)
_parsed_store = {}

_MISSING_FILE = {
    "detail": "Upload the opportunity detail export first.",
    "visits": "Upload the visits export first.",
    "activities": "Upload the activities export first.",
    "pivot": "Upload the summary (pivot) export first.",
}


def _get_session_id():
    """Get or create a session ID."""
    if "sid" not in session:
        session["sid"] = uuid.uuid4().hex
    return session["sid"]


def _model(kind):
    return _parsed_store.get(_get_session_id(), {}).get(kind, {}).get("model")


def _year_arg(default=None):
    try:
        return int(request.args.get("year"))
    except (TypeError, ValueError):
        return default or utc_today().year


def _collect_uploads():
    """Multipart ``files`` or JSON ``{"files": [{"name", "data"}]}`` with base64 data."""
    uploads, errors = [], []
    if request.is_json:
        data = request.get_json(silent=True) or {}
        for f in data.get("files", []):
            fname = f.get("name")
            fdata = f.get("data")  # data:application/vnd...;base64,....
            if not fname or not fdata:
                continue
            b64data = fdata.split(",", 1)[1] if "," in fdata else fdata
            try:
                uploads.append({"filename": fname, "bytes": base64.b64decode(b64data)})
            except (ValueError, TypeError) as e:
                errors.append({"file": fname, "error": f"Invalid base64 payload: {e}"})

    if not uploads and "files" in request.files:
        for f in request.files.getlist("files"):
            if f.filename:
                uploads.append({"filename": f.filename, "bytes": f.read()})
    return uploads, errors


# ─────────────────────────────────────────────────────────────
# UPLOAD
# ─────────────────────────────────────────────────────────────

@app.route("/api/upload/<kind>", methods=["POST"])
def upload_files(kind):
    """Parse one export of the given kind; the last file that parses becomes the session's model."""
    if kind not in SHEET_KINDS:
        return jsonify({"error": f"Unknown file kind '{kind}'", "kinds": list(SHEET_KINDS)}), 404

    uploads, errors = _collect_uploads()
    if not uploads:
        return jsonify({"error": "No files provided", "details": errors or None}), 400

    today = coerce_date(request.args.get("today")) if request.args.get("today") else None
    sid = _get_session_id()
    results = {}

    for f in uploads:
        fname = f["filename"]
        parsed = parse_file(f["bytes"], kind, filename=fname, roster=ROSTER, config=CONFIG, today=today)
        if parsed["errors"]:
            logger.warning("Upload %s (%s) failed: %s", fname, kind, parsed["errors"])
            errors.append({"file": fname, "error": " | ".join(parsed["errors"])})
            continue
        _parsed_store.setdefault(sid, {})[kind] = {"filename": fname, "model": parsed["model"]}
        results[fname] = {"file_type": parsed["file_type"], "metadata": parsed["metadata"]}

    if not results:
        return jsonify({"error": "All files failed to process", "details": errors}), 400

    return jsonify({
        "files": results,
        "errors": errors if errors else None,
    })


# ─────────────────────────────────────────────────────────────
# KPI ROUTES
# ─────────────────────────────────────────────────────────────

def _kpi_offers():
    detail = _model("detail")
    period = request.args.get("period")
    sel = kpi.select_period(detail.get("periods", []), period)
    year = int(sel[:4]) if sel else utc_today().year
    GOALS.ensure(year)
    return kpi.offers_kpi(detail, period, lambda n: GOALS.offer_target(year, n), ROSTER.unresolved)


def _kpi_visits():
    visits = _model("visits")
    period = request.args.get("period")
    sel = kpi.select_period(visits.get("periods", []), period)
    year = int(sel[:4]) if sel else utc_today().year
    GOALS.ensure(year)
    return kpi.visits_kpi(visits, period, request.args.get("category"),
                          lambda n: GOALS.visit_target(year, n), ROSTER.unresolved)


def _kpi_activities():
    return kpi.activities_kpi(_model("activities"), request.args.get("status"), ROSTER.unresolved)


def _kpi_pipeline():
    return kpi.pipeline_from_pivot(_model("pivot"), unresolved=ROSTER.unresolved)


def _kpi_win_rate():
    by = request.args.get("by", "count")
    target = coerce_number(request.args.get("target")) or CONFIG["targets"]["win_rate"]
    source = request.args.get("source") or ("pivot" if _model("pivot") else "detail")
    if source not in ("pivot", "detail"):
        raise ValueError(f"Unknown win rate source '{source}'")
    model = _model(source)
    if model is None:
        raise ValueError(_MISSING_FILE[source])
    if source == "detail":
        return kpi.win_rate_from_detail(model, by, ROSTER.unresolved, target)
    return kpi.win_rate_from_pivot(model, by, ROSTER.unresolved, target)


def _kpi_attainment():
    year = _year_arg()
    GOALS.ensure(year)
    view = kpi.attainment_from_pivot(_model("pivot"), lambda n: GOALS.annual_target(year, n), ROSTER.unresolved)
    view["year"] = year
    return view


def _kpi_cycle():
    mode = request.args.get("mode", "all")
    target = coerce_number(request.args.get("target")) or CONFIG["targets"]["cycle_days"]
    view = kpi.sales_cycle(_model("detail"), mode, unresolved=ROSTER.unresolved)
    for row in view["by_salesperson"]:
        row["compliance"] = kpi.cycle_compliance(row["avg_days"], target)
        row["status"] = kpi.cycle_status(row["avg_days"], target)
    view["total"]["compliance"] = kpi.cycle_compliance(view["total"]["avg_days"], target)
    view["total"]["status"] = kpi.cycle_status(view["total"]["avg_days"], target)
    view["target"] = target
    return view


def _kpi_forecast():
    year = _year_arg()
    win_rate = request.args.get("win_rate")
    assumed = coerce_number(win_rate) if win_rate else CONFIG["targets"]["assumed_win_rate"]
    detail = _model("detail")
    GOALS.ensure(year)
    view = kpi.forecast_needed(
        _model("pivot"),
        lambda n: GOALS.annual_target(year, n),
        assumed,
        kpi.open_amounts(detail) if detail else None,
        ROSTER.unresolved,
        kpi.all_amounts(detail) if detail else None,
    )
    view["year"] = year
    return view


# name → (required model kind, builder)
_KPIS = {
    "offers": ("detail", _kpi_offers),
    "visits": ("visits", _kpi_visits),
    "activities": ("activities", _kpi_activities),
    "pipeline": ("pivot", _kpi_pipeline),
    "win-rate": (None, _kpi_win_rate),
    "attainment": ("pivot", _kpi_attainment),
    "cycle": ("detail", _kpi_cycle),
    "forecast": ("pivot", _kpi_forecast),
}


@app.route("/api/kpi/<name>", methods=["GET"])
def get_kpi(name):
    """Compute one KPI view; ``salesperson`` narrows ``by_salesperson`` (default ALL)."""
    if name not in _KPIS:
        return jsonify({"error": f"Unknown KPI '{name}'", "kpis": list(_KPIS)}), 404
    needs, builder = _KPIS[name]
    if needs and not _model(needs):
        return jsonify({"error": _MISSING_FILE[needs]}), 409
    if needs is None and not (_model("pivot") or _model("detail")):
        return jsonify({"error": _MISSING_FILE["pivot"]}), 409

    try:
        view = builder()
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    selected = request.args.get("salesperson", kpi.ALL)
    view["by_salesperson"] = kpi.only_selected(view["by_salesperson"], selected)
    view["salesperson"] = selected
    return jsonify(view)


# ─────────────────────────────────────────────────────────────
# GOALS & SETTINGS
# ─────────────────────────────────────────────────────────────

@app.route("/api/goals/<int:year>", methods=["GET"])
def get_goals(year):
    """Goals for a year; ``?refresh=1`` forces a re-fetch."""
    if request.args.get("refresh"):
        records = GOALS.refresh(year)
    else:
        records = GOALS.ensure(year)
    return jsonify({"year": year, "metas": [r.to_wire() for r in records]})


@app.route("/api/goals/<int:year>", methods=["POST"])
def save_goals(year):
    data = request.get_json(silent=True) or {}
    metas = data.get("metas")
    if not isinstance(metas, list):
        return jsonify({"error": "Body must contain a 'metas' list"}), 400
    records = [GoalRecord.from_wire(m) for m in metas if isinstance(m, dict)]
    try:
        GOALS.save(year, records)
    except GoalStoreError as e:
        logger.error("Saving goals for %s failed: %s", year, e)
        return jsonify({"ok": False, "error": str(e)}), 502
    return jsonify({"ok": True, "year": year, "count": len(records)})


@app.route("/api/salespeople", methods=["GET"])
def list_salespeople():
    """Selector options: ALL plus the canonical roster."""
    return jsonify({"salespeople": [kpi.ALL] + ROSTER.names, "unresolved": ROSTER.unresolved})


@app.route("/api/reset", methods=["POST"])
def reset_session():
    """Forget every uploaded model for this session."""
    _parsed_store.pop(_get_session_id(), None)
    return jsonify({"message": "Session cleared"})


# ─────────────────────────────────────────────────────────────
# RUN
# ─────────────────────────────────────────────────────────────

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    port = int(os.environ.get("PORT", 5000))
    print(f"\n  Sales KPI Dashboard API")
    print(f"  http://localhost:{port}/api/salespeople\n")

    app.run(host="0.0.0.0", port=port, debug=True, use_reloader=False)
