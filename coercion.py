"""
Raw cell → typed value.

Cells arrive as whatever the workbook reader produced: ``datetime`` /
``pd.Timestamp``, Excel date serials, ints/floats, or free text in either
Latin-American (``1.234,56``) or US (``1,234.56``) number formatting.
Neither function ever raises.
"""

import re
from datetime import date, datetime, timedelta
from typing import Any, Optional

import numpy as np
import pandas as pd

_DMY_RX = re.compile(r"^\s*(\d{1,2})[/\-](\d{1,2})[/\-](\d{2,4})\b")
_ISO_FMTS = ["%Y-%m-%d", "%Y/%m/%d", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S"]
_NUMBER_JUNK_RX = re.compile(r"[^\d,.\-]")

# Excel's day zero; serials below 61 sit before the fictitious 1900-02-29
_EXCEL_EPOCH = date(1899, 12, 30)
_EXCEL_EPOCH_PRE_LEAP = date(1899, 12, 31)


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float, np.integer, np.floating)) and not isinstance(v, (bool, np.bool_))


def _from_serial(serial: float) -> Optional[date]:
    if not np.isfinite(serial) or serial < 1:
        return None
    days = int(serial)                               # drop time-of-day
    base = _EXCEL_EPOCH if days >= 61 else _EXCEL_EPOCH_PRE_LEAP
    try:
        return base + timedelta(days=days)
    except OverflowError:
        return None


def coerce_date(v: Any) -> Optional[date]:
    """Return the calendar date of a cell (UTC, no time), or None."""
    if v is None or v is pd.NaT:
        return None
    if isinstance(v, datetime):
        return v.date()
    if isinstance(v, date):
        return v
    if _is_number(v):
        return _from_serial(float(v))

    s = str(v).strip()
    if not s or s.lower() in ("nat", "none", "nan"):
        return None

    m = _DMY_RX.match(s)
    if m:
        dd, mm, yy = int(m.group(1)), int(m.group(2)), m.group(3)
        year = 2000 + int(yy) if len(yy) == 2 else int(yy)
        try:
            return date(year, mm, dd)
        except ValueError:
            return None

    for fmt in _ISO_FMTS:
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue
    try:
        ts = pd.to_datetime(s, errors="coerce")
    except (ValueError, TypeError, OverflowError):
        return None
    if ts is pd.NaT or pd.isna(ts):
        return None
    return ts.date()


def coerce_number(v: Any) -> float:
    """
    Parse a locale-ambiguous number; 0.0 when nothing usable is present.

    When both separators appear the right-most one is the decimal mark.
    A lone comma is a decimal mark; repeated periods are thousands marks.
    """
    if v is None:
        return 0.0
    if _is_number(v):
        f = float(v)
        return f if np.isfinite(f) else 0.0

    s = _NUMBER_JUNK_RX.sub("", str(v).strip())
    if not s:
        return 0.0
    if "," in s and "." in s:
        if s.rfind(",") > s.rfind("."):
            s = s.replace(".", "").replace(",", ".")
        else:
            s = s.replace(",", "")
    elif "," in s:
        s = s.replace(",", ".")
    if s.count(".") > 1:
        s = s.replace(".", "")
    try:
        f = float(s)
    except ValueError:
        return 0.0
    return f if np.isfinite(f) else 0.0
