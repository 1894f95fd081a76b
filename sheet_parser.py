"""
sheet_parser.py — Sales Export Workbook Parser
===============================================
Handles the four CRM export shapes the dashboard consumes:
  • detail      — flat opportunity export (owner / stage / dates / amount)
  • visits      — event log classified by subject (calls / visits / meetings)
  • activities  — task log classified by status and due date
  • pivot       — "summary" pivot: salesperson rows × stage/metric columns

Design principles
-----------------
  1. No fixed schema: the header row and column positions are found by
     scoring rows against keyword lists (see settings.DEFAULT_LAYOUTS).
  2. Grouped exports print the salesperson once per block; every following
     row inherits it (carry-forward). Subtotal rows, repeated headers and
     block-title rows never become data.
  3. One bad sheet never sinks a workbook: each sheet is tried in turn and
     only when all fail is an aggregated error raised.
  4. Cells are never trusted: dates and numbers go through coercion.py.

Usage
-----
    from sheet_parser import parse_file

    result = parse_file("/path/to/detalle.xlsx", kind="detail")
    model = result["model"]            # None when every sheet failed
"""

import base64
import io
import logging
import re
from collections import OrderedDict
from datetime import date, datetime
from typing import Any, Dict, Iterator, List, NamedTuple, Optional, Tuple, Union

import pandas as pd

from classifiers import (
    classify_activity_status,
    classify_subject,
    is_closed_stage,
    utc_today,
)
from coercion import coerce_date, coerce_number
from normalize import normalize
from roster import Roster
from settings import load_config

logger = logging.getLogger(__name__)

Grid = List[List[Any]]

SHEET_KINDS = ("detail", "visits", "activities", "pivot")

# ══════════════════════════════════════════════════════════════════════════════
# Row types
# ══════════════════════════════════════════════════════════════════════════════


class OpportunityRow(NamedTuple):
    salesperson: str
    stage: str
    created_at: Optional[date]
    closed_at: Optional[date]
    amount: float

    @property
    def is_closed(self) -> bool:
        # Some exports leave the close date blank on terminal stages
        return self.closed_at is not None or is_closed_stage(self.stage)


class VisitRow(NamedTuple):
    salesperson: str
    period: str
    client: str
    subject: str
    category: str


class ActivityRow(NamedTuple):
    salesperson: str
    status: str


class PivotAggregate(NamedTuple):
    salesperson: str
    values: Dict[str, Dict[str, float]]


# ══════════════════════════════════════════════════════════════════════════════
# Errors
# ══════════════════════════════════════════════════════════════════════════════


class SheetParseError(Exception):
    """A single sheet did not fit the expected layout."""

    def __init__(self, sheet: str, reason: str):
        super().__init__(f"{sheet}: {reason}")
        self.sheet = sheet
        self.reason = reason


class WorkbookParseError(Exception):
    """Every sheet of a workbook failed; carries each sheet's reason."""

    def __init__(self, kind: str, failures: List[str]):
        detail = " | ".join(failures) if failures else "no sheets"
        super().__init__(f"{kind.upper()}: no sheet could be parsed. {detail}")
        self.kind = kind
        self.failures = failures


# ══════════════════════════════════════════════════════════════════════════════
# Primitive helpers
# ══════════════════════════════════════════════════════════════════════════════


def _clean(v: Any) -> str:
    """Return stripped string; '' when None/NaN."""
    if v is None:
        return ""
    if isinstance(v, float) and (v != v):
        return ""
    return str(v).strip()


def _is_blank(v: Any) -> bool:
    return _clean(v) == ""


def _cell(row: List[Any], idx: Optional[int]) -> Any:
    if idx is None or idx < 0 or idx >= len(row):
        return ""
    return row[idx]


def period_of(d: Optional[date]) -> str:
    """'YYYY-MM' for a date, '' when there is none."""
    return f"{d.year:04d}-{d.month:02d}" if d else ""


# ══════════════════════════════════════════════════════════════════════════════
# Workbook loader — accepts path, bytes, BytesIO, or base64 string
# ══════════════════════════════════════════════════════════════════════════════

_EXCEL_EXTS = (".xlsx", ".xls", ".xlsb", ".xlsm")
_TEXT_EXTS = (".csv", ".txt", ".tsv")


def _looks_zip(raw: bytes) -> bool:
    return raw[:2] == b"PK"


def _looks_ole(raw: bytes) -> bool:
    return raw[:4] == b"\xd0\xcf\x11\xe0"


def _frame_to_grid(df: pd.DataFrame) -> Grid:
    return df.astype(object).where(df.notna(), "").values.tolist()


def load_workbook_grids(
    source: Union[str, bytes, io.BytesIO],
    filename: str = "",
) -> Optional[Dict[str, Grid]]:
    """
    Load every sheet into ``{name: rows}`` with raw cell values, blanks as "".
    Spreadsheet containers go through pandas/openpyxl; anything else is read
    as delimited text. Returns None on failure (error logged).
    """
    try:
        if isinstance(source, str):
            if source.lower().endswith(_EXCEL_EXTS + _TEXT_EXTS):
                with open(source, "rb") as fh:
                    raw = fh.read()
                filename = filename or source
            else:
                raw = base64.b64decode(source)
        elif isinstance(source, (bytes, bytearray)):
            raw = bytes(source)
        else:
            raw = source.getvalue()
    except Exception as e:
        logger.error("Failed to read upload '%s': %s", filename, e)
        return None

    if not raw:
        logger.error("Upload '%s' is empty", filename)
        return None

    if _looks_zip(raw) or _looks_ole(raw):
        try:
            xl = pd.ExcelFile(io.BytesIO(raw))
        except Exception as e:
            logger.error("Failed to open workbook '%s': %s", filename, e)
            return None
        sheets: Dict[str, Grid] = OrderedDict()
        for name in xl.sheet_names:
            try:
                df = xl.parse(name, header=None, dtype=object)
                sheets[name] = _frame_to_grid(df)
            except Exception as e:
                logger.warning("Skipped sheet '%s': %s", name, e)
        return sheets or None

    for encoding in ("utf-8-sig", "latin-1"):
        try:
            df = pd.read_csv(io.BytesIO(raw), header=None, dtype=object,
                             sep=None, engine="python", encoding=encoding)
            return OrderedDict([(filename or "Sheet1", _frame_to_grid(df))])
        except UnicodeDecodeError:
            continue
        except Exception as e:
            logger.error("Failed to read '%s' as delimited text: %s", filename, e)
            return None
    return None


# ══════════════════════════════════════════════════════════════════════════════
# Header / column locator
# ══════════════════════════════════════════════════════════════════════════════


def _matches_role(text: str, layout: Dict[str, Any], role: str) -> bool:
    if not text:
        return False
    if any(x in text for x in layout.get("exclude", {}).get(role, [])):
        return False
    return any(kw in text for kw in layout["roles"][role])


def map_columns(header_row: List[Any], layout: Dict[str, Any]) -> Dict[str, int]:
    """
    First-claim-per-column mapping: roles are processed in declaration order
    and once a column is owned by a role no later role can take it.
    """
    texts = [normalize(v) for v in header_row]
    claimed: Dict[int, str] = {}
    mapping: Dict[str, int] = {}
    for role in layout["roles"]:
        for i, text in enumerate(texts):
            if i in claimed:
                continue
            if _matches_role(text, layout, role):
                mapping[role] = i
                claimed[i] = role
                break
    return mapping


def score_row(row: List[Any], layout: Dict[str, Any]) -> Tuple[int, Dict[str, int]]:
    mapping = map_columns(row, layout)
    weights = layout.get("weights", {})
    return sum(weights.get(role, 1) for role in mapping), mapping


def locate_header(grid: Grid, layout: Dict[str, Any], sheet: str = "") -> Tuple[int, Dict[str, int]]:
    """
    Return (header_row_index, {role: column}) for the best-scoring row among
    the first ``max_scan`` rows. Ties keep the earliest row. Fixed columns
    from the layout fill roles the heuristic missed ("fallback") or replace
    them ("override"). Raises SheetParseError when a mandatory role is absent.
    """
    best_idx, best_score, best_map = 0, -1, {}
    for i in range(min(layout.get("max_scan", 40), len(grid))):
        score, mapping = score_row(grid[i], layout)
        if score > best_score:
            best_idx, best_score, best_map = i, score, mapping

    col_map = dict(best_map)
    fixed = layout.get("fixed_columns", {})
    header = grid[best_idx] if grid else []
    for role, idx in fixed.items():
        if layout.get("fixed_mode") == "override" or role not in col_map:
            if _is_blank(_cell(header, idx)):
                logger.warning("%s: no header in column %d, using it as '%s' anyway", sheet, idx, role)
            col_map[role] = idx

    missing = [r for r in layout.get("mandatory", []) if r not in col_map]
    if missing:
        raise SheetParseError(sheet, f"missing column for {', '.join(missing)}")
    logger.debug("%s: header row %d, columns %s", sheet, best_idx, col_map)
    return best_idx, col_map


# ══════════════════════════════════════════════════════════════════════════════
# Row extractor with carry-forward
# ══════════════════════════════════════════════════════════════════════════════

_AGGREGATE_RX = re.compile(r"^(subtotal|total)|recuento|suma de|\bcount\b")


def is_aggregate_row(row: List[Any]) -> bool:
    """Pivot subtotal / total / 'count of' lines."""
    line = normalize(" ".join(_clean(v) for v in row))
    return bool(_AGGREGATE_RX.search(line))


def _header_echo_score(row: List[Any], col_map: Dict[str, int], layout: Dict[str, Any]) -> int:
    """How many located columns carry their own header keyword in this row."""
    return sum(
        1 for role, idx in col_map.items()
        if role in layout["roles"] and _matches_role(normalize(_cell(row, idx)), layout, role)
    )


def iter_attributed_rows(
    grid: Grid,
    header_idx: int,
    col_map: Dict[str, int],
    layout: Dict[str, Any],
    roster: Roster,
) -> Iterator[Tuple[str, List[Any]]]:
    """
    Yield (salesperson, row) for every data row below the header.

    The owner cell is resolved when present; when blank the last resolved
    owner is reused. Rows before any owner has been seen are dropped.
    """
    owner_col = col_map["owner"]
    current = ""
    for r in range(header_idx + 1, len(grid)):
        row = grid[r]
        if all(_is_blank(v) for v in row):
            continue
        if is_aggregate_row(row):
            continue
        if _header_echo_score(row, col_map, layout) >= 2:
            continue

        raw_owner = _cell(row, owner_col)
        if not _is_blank(raw_owner):
            resolved = roster.resolve(raw_owner)
            if resolved:
                current = resolved
            # Block title: nothing in the other located columns
            title_only = all(_is_blank(_cell(row, idx)) for idx in col_map.values() if idx != owner_col)
            if title_only:
                continue

        if not current:
            continue
        yield current, row


# ══════════════════════════════════════════════════════════════════════════════
# Per-kind sheet parsers
# ══════════════════════════════════════════════════════════════════════════════


def parse_detail_sheet(grid: Grid, sheet: str, roster: Roster, layout: Dict[str, Any], today=None) -> Dict:
    if not grid:
        raise SheetParseError(sheet, "empty sheet")
    header_idx, col_map = locate_header(grid, layout, sheet)

    rows: List[OpportunityRow] = []
    for salesperson, row in iter_attributed_rows(grid, header_idx, col_map, layout, roster):
        rows.append(OpportunityRow(
            salesperson=salesperson,
            stage=_clean(_cell(row, col_map.get("stage"))),
            created_at=coerce_date(_cell(row, col_map.get("created"))),
            closed_at=coerce_date(_cell(row, col_map.get("closed"))),
            amount=coerce_number(_cell(row, col_map.get("amount"))),
        ))

    if not rows:
        raise SheetParseError(sheet, "no valid rows")

    offers = [(r.salesperson, period_of(r.created_at)) for r in rows if r.created_at]
    return {
        "sheet": sheet,
        "rows": rows,
        "closed_rows": [r for r in rows if r.is_closed and r.created_at and r.closed_at],
        "offers": offers,
        "periods": sorted({p for _, p in offers}),
    }


def parse_visits_sheet(grid: Grid, sheet: str, roster: Roster, layout: Dict[str, Any], today=None) -> Dict:
    if not grid:
        raise SheetParseError(sheet, "empty sheet")
    header_idx, col_map = locate_header(grid, layout, sheet)

    rows: List[VisitRow] = []
    for salesperson, row in iter_attributed_rows(grid, header_idx, col_map, layout, roster):
        # Undated events still count, under the empty period
        when = coerce_date(_cell(row, col_map.get("date"))) if "date" in col_map else None
        subject = _clean(_cell(row, col_map.get("subject")))
        rows.append(VisitRow(
            salesperson=salesperson,
            period=period_of(when),
            client=_clean(_cell(row, col_map.get("client"))),
            subject=subject,
            category=classify_subject(subject),
        ))

    if not rows:
        raise SheetParseError(sheet, "no valid rows")
    return {
        "sheet": sheet,
        "rows": rows,
        "periods": sorted({r.period for r in rows}),
    }


def parse_activities_sheet(grid: Grid, sheet: str, roster: Roster, layout: Dict[str, Any], today=None) -> Dict:
    if not grid:
        raise SheetParseError(sheet, "empty sheet")
    header_idx, col_map = locate_header(grid, layout, sheet)
    today = today or utc_today()

    rows: List[ActivityRow] = []
    for salesperson, row in iter_attributed_rows(grid, header_idx, col_map, layout, roster):
        if salesperson == roster.unresolved:
            continue
        status = classify_activity_status(
            _cell(row, col_map.get("status")),
            coerce_date(_cell(row, col_map.get("due"))) if "due" in col_map else None,
            today,
        )
        rows.append(ActivityRow(salesperson=salesperson, status=status))

    if not rows:
        raise SheetParseError(sheet, "no valid rows")
    return {"sheet": sheet, "rows": rows}


def _find_stage_row(grid: Grid, header_idx: int, start_col: int, keywords: List[str]) -> int:
    """Stage labels often sit 1-3 rows above the metric header."""
    for r in range(header_idx - 1, max(0, header_idx - 3) - 1, -1):
        hits = sum(
            1 for v in grid[r][start_col:]
            if normalize(v) and any(k in normalize(v) for k in keywords)
        )
        if hits >= 2:
            return r
    return header_idx


def parse_pivot_sheet(grid: Grid, sheet: str, roster: Roster, layout: Dict[str, Any], today=None) -> Dict:
    if not grid:
        raise SheetParseError(sheet, "empty sheet")
    header_idx, col_map = locate_header(grid, layout, sheet)
    owner_col = col_map["owner"]
    stage_idx = _find_stage_row(grid, header_idx, owner_col + 1, layout.get("stage_keywords", []))

    header, stage_row = grid[header_idx], grid[stage_idx]
    columns: List[Tuple[int, str, str]] = []
    last_stage = ""
    for c in range(owner_col + 1, max(len(header), len(stage_row))):
        stage = _clean(_cell(stage_row, c)) or last_stage       # merged cells
        if stage:
            last_stage = stage
        metric = normalize(_cell(header, c))
        if not stage and not metric:
            continue
        columns.append((c, stage, metric))

    merged: "OrderedDict[str, Dict[str, Dict[str, float]]]" = OrderedDict()
    for r in range(header_idx + 1, len(grid)):
        row = grid[r]
        if all(_is_blank(v) for v in row):
            continue
        label = normalize(_cell(row, owner_col))
        if not label:
            continue
        if label.startswith("total"):
            break
        if label.startswith("subtotal"):
            continue

        values: Dict[str, Dict[str, float]] = {}
        for c, stage, metric in columns:
            if not stage:
                continue
            agg = values.setdefault(stage, {"sum": 0.0, "count": 0.0})
            if ("recuento" in metric or "count" in metric) and "suma" not in metric:
                agg["count"] += coerce_number(_cell(row, c))
            else:
                agg["sum"] += coerce_number(_cell(row, c))
        if not any(v["sum"] or v["count"] for v in values.values()):
            continue

        salesperson = roster.resolve(_cell(row, owner_col))
        target = merged.setdefault(salesperson, {})
        for stage, agg in values.items():
            acc = target.setdefault(stage, {"sum": 0.0, "count": 0.0})
            acc["sum"] += agg["sum"]
            acc["count"] += agg["count"]

    if not merged:
        raise SheetParseError(sheet, "no salesperson rows with values")
    return {
        "sheet": sheet,
        "rows": [PivotAggregate(name, values) for name, values in merged.items()],
        "stages": list(OrderedDict((stage, None) for _, stage, _ in columns if stage)),
    }


_SHEET_PARSERS = {
    "detail": parse_detail_sheet,
    "visits": parse_visits_sheet,
    "activities": parse_activities_sheet,
    "pivot": parse_pivot_sheet,
}


# ══════════════════════════════════════════════════════════════════════════════
# Public API
# ══════════════════════════════════════════════════════════════════════════════


def parse_workbook(
    sheets: Dict[str, Grid],
    kind: str,
    roster: Roster,
    layouts: Dict[str, Dict[str, Any]],
    today: Optional[date] = None,
) -> Dict:
    """
    Try each sheet in workbook order and return the first model that parses.
    Raises WorkbookParseError listing every sheet's reason when none does.
    """
    if kind not in _SHEET_PARSERS:
        raise ValueError(f"Unknown sheet kind: {kind}")
    parser = _SHEET_PARSERS[kind]
    failures: List[str] = []
    for name, grid in sheets.items():
        try:
            model = parser(grid, name, roster, layouts[kind], today)
        except SheetParseError as e:
            logger.warning("%s parser skipped sheet: %s", kind, e)
            failures.append(str(e))
            continue
        logger.info("%s: parsed sheet '%s' (%d rows)", kind, name, len(model["rows"]))
        return model
    raise WorkbookParseError(kind, failures)


def _serialize_value(val: Any) -> Any:
    if isinstance(val, (date, datetime)):
        return val.isoformat()
    if isinstance(val, dict):
        return {k: _serialize_value(v) for k, v in val.items()}
    return val


def serialize_rows(rows: List[NamedTuple]) -> List[Dict]:
    return [{k: _serialize_value(v) for k, v in r._asdict().items()} for r in rows]


def summarize_model(kind: str, model: Dict) -> Dict:
    """JSON-safe summary of a parsed model."""
    rows = model.get("rows", [])
    return {
        "kind": kind,
        "source_sheet": model.get("sheet"),
        "row_count": len(rows),
        "periods": model.get("periods", []),
        "salespeople": sorted({r.salesperson for r in rows}),
    }


def parse_file(
    source: Union[str, bytes, io.BytesIO],
    kind: str,
    filename: str = "",
    roster: Optional[Roster] = None,
    config: Optional[Dict] = None,
    is_base64: bool = False,
    today: Optional[date] = None,
) -> Dict:
    """
    Parse an uploaded export of the given ``kind``.

    Returns
    -------
    dict with keys: file_type, metadata, rows, model, errors.
    ``model`` is the in-memory model (None on failure); every other key is
    JSON-serialisable. Never raises for bad input.
    """
    config = config or load_config()
    roster = roster or Roster.from_config(config)

    if is_base64 and isinstance(source, str):
        try:
            source = base64.b64decode(source)
        except (ValueError, TypeError) as e:
            return {"file_type": "ERROR", "metadata": {"source_file": filename},
                    "rows": [], "model": None, "errors": [f"base64 decode failed: {e}"]}

    sheets = load_workbook_grids(source, filename)
    if not sheets:
        return {
            "file_type": "ERROR",
            "metadata": {"source_file": filename},
            "rows": [],
            "model": None,
            "errors": ["Could not load workbook — file may be corrupt or unsupported."],
        }

    try:
        model = parse_workbook(sheets, kind, roster, config["layouts"], today)
    except WorkbookParseError as e:
        return {
            "file_type": "ERROR",
            "metadata": {"source_file": filename, "all_sheets": list(sheets.keys())},
            "rows": [],
            "model": None,
            "errors": [str(e)],
        }

    metadata = summarize_model(kind, model)
    metadata.update({"source_file": filename, "all_sheets": list(sheets.keys())})
    return {
        "file_type": kind.upper(),
        "metadata": metadata,
        "rows": serialize_rows(model["rows"]),
        "model": model,
        "errors": [],
    }
