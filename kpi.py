"""
kpi.py — KPI view models
========================
Turns parsed sheet models (see sheet_parser.py) into the plain dicts the
dashboard renders. Every KPI has the same outer shape:

    {
      "by_salesperson": [ {"salesperson": ..., <metric fields>}, ... ],
      "total":          { <metric fields> },
      ...KPI-specific extras (period, periods, mode, ...)
    }

Rules shared by every aggregator
--------------------------------
  • Accumulate (sum, count) per salesperson; derive averages and rates only
    at the end. Company totals are built from the grand sums, never from an
    average of per-salesperson rates.
  • The unresolved sentinel never gets its own entry in ``by_salesperson``
    but its rows still count towards ``total``.
  • Percentages are on a 0-100 scale; money, days and percentages are
    rounded half-up to whole units on the way out.
"""

import math
from collections import OrderedDict
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from classifiers import (
    CALL,
    COMPLETED,
    MEETING,
    OTHER,
    OVERDUE,
    PENDING,
    STAGE_LOST,
    STAGE_WON,
    VISIT,
    classify_stage,
    utc_today,
)
from normalize import is_total_like, normalize
from settings import DEFAULT_TARGETS, PIPELINE_STAGE_KEYWORDS, UNRESOLVED

ALL = "ALL"

GREEN = "green"
YELLOW = "yellow"
RED = "red"

MAX_CYCLE_DAYS = 3650
MAX_CYCLE_COMPLIANCE = 200

SUBJECT_CATEGORIES = [CALL, VISIT, MEETING, OTHER]
ACTIVITY_STATUSES = [COMPLETED, OVERDUE, PENDING]

TargetLookup = Callable[[str], float]


# ══════════════════════════════════════════════════════════════════════════════
# Helpers
# ══════════════════════════════════════════════════════════════════════════════


def round_half_up(x: float) -> int:
    """0.5 always rounds away from zero (Python's round() is banker's)."""
    if x is None or (isinstance(x, float) and not math.isfinite(x)):
        return 0
    return int(Decimal(repr(float(x))).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def rate(num: float, den: float) -> float:
    return (num / den) * 100 if den > 0 else 0.0


def target_attainment(actual: float, target: float) -> float:
    """Percent of target reached; a zero target counts as fully met."""
    if target <= 0:
        return 100.0
    return actual * 100 / target


def only_selected(items: List[Dict], selected: Optional[str]) -> List[Dict]:
    """Keep ``by_salesperson`` entries for one salesperson, or all for "ALL"."""
    if not selected or selected == ALL:
        return items
    return [r for r in items if r["salesperson"] == selected]


def select_period(periods: List[str], period: Optional[str]) -> str:
    """Requested period when known, else the most recent one."""
    if period is not None and period in periods:
        return period
    return periods[-1] if periods else ""


def _count_by(names: Iterable[str]) -> "OrderedDict[str, int]":
    counts: "OrderedDict[str, int]" = OrderedDict()
    for name in names:
        counts[name] = counts.get(name, 0) + 1
    return counts


def _no_target(_name: str) -> float:
    return 0.0


def offer_status(count: float, target: float) -> Dict:
    """Traffic light for a count against its target."""
    ratio = count / target if target > 0 else 1.0
    if ratio >= 1:
        status = GREEN
    elif ratio >= 0.8:
        status = YELLOW
    else:
        status = RED
    return {"ratio": ratio, "status": status}


def win_rate_status(win_rate: float, target: float) -> str:
    """Higher is better: green at target, yellow from 80 % of it."""
    return offer_status(win_rate, target)["status"]


def cycle_status(avg_days: float, target_days: float) -> str:
    """Lower is better: green within target, yellow up to 20 % over."""
    if avg_days <= target_days:
        return GREEN
    if avg_days <= target_days * 1.2:
        return YELLOW
    return RED


def stage_totals(values: Dict[str, Dict[str, float]]) -> Dict[str, float]:
    """Sum every stage of one pivot row, skipping the pivot's own total columns."""
    out = {"sum": 0.0, "count": 0.0}
    for stage, agg in values.items():
        if is_total_like(stage):
            continue
        out["sum"] += agg.get("sum", 0.0)
        out["count"] += agg.get("count", 0.0)
    return out


WIN_RATE_BASES = ("count", "amount")


def _check_basis(by: str) -> None:
    if by not in WIN_RATE_BASES:
        raise ValueError(f"Unknown win rate basis: {by}")


def _won_from_values(values: Dict[str, Dict[str, float]]) -> Tuple[float, float]:
    won_sum = won_count = 0.0
    for stage, agg in values.items():
        if is_total_like(stage):
            continue
        if classify_stage(stage) == STAGE_WON:
            won_sum += agg.get("sum", 0.0)
            won_count += agg.get("count", 0.0)
    return won_sum, won_count


# ══════════════════════════════════════════════════════════════════════════════
# Count KPIs — offers, visits, activities
# ══════════════════════════════════════════════════════════════════════════════


def offers_kpi(
    detail: Dict,
    period: Optional[str] = None,
    target_for: Optional[TargetLookup] = None,
    unresolved: str = UNRESOLVED,
) -> Dict:
    """Offers created per salesperson in one ``YYYY-MM`` period."""
    target_for = target_for or _no_target
    periods = detail.get("periods", [])
    sel = select_period(periods, period)
    counts = _count_by(name for name, p in detail.get("offers", []) if p == sel)

    by: List[Dict] = []
    total_target = 0.0
    for name, count in sorted(counts.items(), key=lambda kv: -kv[1]):
        if name == unresolved:
            continue
        target = target_for(name)
        total_target += target
        light = offer_status(count, target)
        by.append({
            "salesperson": name,
            "count": count,
            "target": round_half_up(target),
            "attainment": round_half_up(target_attainment(count, target)),
            "status": light["status"],
        })

    total = sum(counts.values())
    return {
        "period": sel,
        "periods": periods,
        "max": max(counts.values()) if counts else 0,
        "by_salesperson": by,
        "total": {
            "count": total,
            "target": round_half_up(total_target),
            "attainment": round_half_up(target_attainment(total, total_target)),
            "status": offer_status(total, total_target)["status"],
        },
    }


def visits_kpi(
    visits: Dict,
    period: Optional[str] = None,
    category: Optional[str] = None,
    target_for: Optional[TargetLookup] = None,
    unresolved: str = UNRESOLVED,
) -> Dict:
    """
    Events per salesperson in one period, split by subject category.
    ``count`` is the requested category (every category when None) and is
    the figure compared with the visit target.
    """
    target_for = target_for or _no_target
    periods = visits.get("periods", [])
    sel = select_period(periods, period)

    per: "OrderedDict[str, Dict[str, int]]" = OrderedDict()
    for r in visits.get("rows", []):
        if r.period != sel:
            continue
        cats = per.setdefault(r.salesperson, {c: 0 for c in SUBJECT_CATEGORIES})
        cats[r.category] = cats.get(r.category, 0) + 1

    def _pick(cats: Dict[str, int]) -> int:
        return cats.get(category, 0) if category else sum(cats.values())

    by: List[Dict] = []
    total_cats = {c: 0 for c in SUBJECT_CATEGORIES}
    total_target = 0.0
    for name, cats in per.items():
        for c, n in cats.items():
            total_cats[c] += n
        if name == unresolved:
            continue
        count = _pick(cats)
        if category and not count:
            continue
        target = target_for(name)
        total_target += target
        by.append({
            "salesperson": name,
            "count": count,
            "categories": dict(cats),
            "target": round_half_up(target),
            "attainment": round_half_up(target_attainment(count, target)),
        })
    by.sort(key=lambda x: -x["count"])

    total = _pick(total_cats)
    return {
        "period": sel,
        "periods": periods,
        "category": category,
        "by_salesperson": by,
        "total": {
            "count": total,
            "categories": total_cats,
            "target": round_half_up(total_target),
            "attainment": round_half_up(target_attainment(total, total_target)),
        },
    }


def activities_kpi(activities: Dict, status: Optional[str] = None, unresolved: str = UNRESOLVED) -> Dict:
    """
    Task counts per status. ``share`` is the selected status as a percentage
    of that salesperson's own task total.
    """
    per: "OrderedDict[str, Dict[str, int]]" = OrderedDict()
    for r in activities.get("rows", []):
        stats = per.setdefault(r.salesperson, {s: 0 for s in ACTIVITY_STATUSES})
        stats[r.status] = stats.get(r.status, 0) + 1

    def _pick(stats: Dict[str, int]) -> int:
        return stats.get(status, 0) if status else sum(stats.values())

    by: List[Dict] = []
    total_stats = {s: 0 for s in ACTIVITY_STATUSES}
    for name, stats in per.items():
        for s, n in stats.items():
            total_stats[s] += n
        if name == unresolved:
            continue
        count = _pick(stats)
        if status and not count:
            continue
        by.append({
            "salesperson": name,
            "count": count,
            "statuses": dict(stats),
            "share": round_half_up(rate(count, sum(stats.values()))),
        })
    by.sort(key=lambda x: -x["count"])

    total = _pick(total_stats)
    return {
        "status": status,
        "by_salesperson": by,
        "total": {
            "count": total,
            "statuses": total_stats,
            "share": round_half_up(rate(total, sum(total_stats.values()))),
        },
    }


# ══════════════════════════════════════════════════════════════════════════════
# Pivot KPIs — pipeline, win rate, attainment, forecast
# ══════════════════════════════════════════════════════════════════════════════


def pipeline_from_pivot(
    pivot: Dict,
    stage_keywords: Optional[List[str]] = None,
    unresolved: str = UNRESOLVED,
) -> Dict:
    """Open pipeline amount: sums of the pre-close funnel stages."""
    keywords = stage_keywords or PIPELINE_STAGE_KEYWORDS
    by: List[Dict] = []
    total = 0.0
    for row in pivot.get("rows", []):
        amount = 0.0
        for stage, agg in row.values.items():
            key = normalize(stage)
            if is_total_like(key):
                continue
            if any(k in key for k in keywords):
                amount += agg.get("sum", 0.0)
        total += amount
        if row.salesperson != unresolved:
            by.append({"salesperson": row.salesperson, "pipeline": round_half_up(amount)})
    return {"by_salesperson": by, "total": {"pipeline": round_half_up(total)}}


def _win_rate_fields(won: float, den: float, target: float) -> Dict:
    pct = rate(won, den)
    return {
        "won": round_half_up(won),
        "total": round_half_up(den),
        "win_rate": round_half_up(pct),
        "status": win_rate_status(pct, target),
    }


def win_rate_from_pivot(
    pivot: Dict,
    by: str = "count",
    unresolved: str = UNRESOLVED,
    target: float = DEFAULT_TARGETS["win_rate"],
) -> Dict:
    """
    Won share of all stages, by opportunity ``count`` or by ``amount``.
    Total-like pivot columns are excluded from both numerator and denominator.
    ``status`` compares each rate with the ``target`` percentage.
    """
    _check_basis(by)
    field = "count" if by == "count" else "sum"
    out: List[Dict] = []
    won_total = all_total = 0.0
    for row in pivot.get("rows", []):
        totals = stage_totals(row.values)
        won_sum, won_count = _won_from_values(row.values)
        won = won_count if field == "count" else won_sum
        den = totals[field]
        won_total += won
        all_total += den
        if row.salesperson != unresolved:
            out.append(dict(salesperson=row.salesperson, **_win_rate_fields(won, den, target)))
    return {
        "by": by,
        "source": "pivot",
        "target": target,
        "by_salesperson": out,
        "total": _win_rate_fields(won_total, all_total, target),
    }


def win_rate_from_detail(
    detail: Dict,
    by: str = "count",
    unresolved: str = UNRESOLVED,
    target: float = DEFAULT_TARGETS["win_rate"],
) -> Dict:
    """Won / closed (won + lost) from opportunity rows, by count or amount."""
    _check_basis(by)
    acc: "OrderedDict[str, List[float]]" = OrderedDict()
    for r in detail.get("rows", []):
        label = classify_stage(r.stage)
        if label not in (STAGE_WON, STAGE_LOST):
            continue
        weight = 1.0 if by == "count" else r.amount
        pair = acc.setdefault(r.salesperson, [0.0, 0.0])
        pair[1] += weight
        if label == STAGE_WON:
            pair[0] += weight

    out: List[Dict] = []
    won_total = closed_total = 0.0
    for name, (won, closed) in acc.items():
        won_total += won
        closed_total += closed
        if name == unresolved:
            continue
        out.append(dict(salesperson=name, **_win_rate_fields(won, closed, target)))
    return {
        "by": by,
        "source": "detail",
        "target": target,
        "by_salesperson": out,
        "total": _win_rate_fields(won_total, closed_total, target),
    }


def _annual_attainment(won: float, goal: float) -> float:
    if goal > 0:
        return won * 100 / goal
    return 100.0 if won > 0 else 0.0


def attainment_from_pivot(pivot: Dict, goal_for: Optional[TargetLookup] = None, unresolved: str = UNRESOLVED) -> Dict:
    """Won amount against the annual goal of each salesperson."""
    goal_for = goal_for or _no_target
    out: List[Dict] = []
    won_total = goal_total = 0.0
    for row in pivot.get("rows", []):
        won, _ = _won_from_values(row.values)
        goal = 0.0 if row.salesperson == unresolved else max(0.0, goal_for(row.salesperson))
        won_total += won
        goal_total += goal
        if row.salesperson != unresolved:
            out.append({
                "salesperson": row.salesperson,
                "won": round_half_up(won),
                "goal": round_half_up(goal),
                "attainment": round_half_up(_annual_attainment(won, goal)),
            })
    return {
        "by_salesperson": out,
        "total": {
            "won": round_half_up(won_total),
            "goal": round_half_up(goal_total),
            "attainment": round_half_up(_annual_attainment(won_total, goal_total)),
        },
    }


def open_amounts(detail: Dict) -> Dict[str, float]:
    """Amount of not-yet-closed opportunities per salesperson."""
    out: Dict[str, float] = {}
    for r in detail.get("rows", []):
        if classify_stage(r.stage) in (STAGE_WON, STAGE_LOST) or not r.amount:
            continue
        out[r.salesperson] = out.get(r.salesperson, 0.0) + r.amount
    return out


def all_amounts(detail: Dict) -> Dict[str, float]:
    """Amount of every opportunity per salesperson, any stage."""
    out: Dict[str, float] = {}
    for r in detail.get("rows", []):
        if r.amount:
            out[r.salesperson] = out.get(r.salesperson, 0.0) + r.amount
    return out


def forecast_needed(
    pivot: Dict,
    goal_for: Optional[TargetLookup] = None,
    assumed_win_rate: float = DEFAULT_TARGETS["assumed_win_rate"],
    open_by_salesperson: Optional[Dict[str, float]] = None,
    unresolved: str = UNRESOLVED,
    quoted_by_salesperson: Optional[Dict[str, float]] = None,
) -> Dict:
    """
    Amount still to quote to reach the annual goal at ``assumed_win_rate``
    percent. ``coverage`` compares the open pipeline (from detail rows) with
    that need; ``quoted`` is everything quoted so far, any stage. Sorted by
    need, largest first.
    """
    goal_for = goal_for or _no_target
    wr = max(0.0, min(100.0, float(assumed_win_rate))) / 100
    open_by = open_by_salesperson or {}
    quoted_by = quoted_by_salesperson or {}

    out: List[Dict] = []
    agg = {"won": 0.0, "goal": 0.0, "remaining": 0.0, "need": 0.0, "open": 0.0, "quoted": 0.0}
    for row in pivot.get("rows", []):
        if row.salesperson == unresolved:
            continue
        won, _ = _won_from_values(row.values)
        goal = max(0.0, goal_for(row.salesperson))
        remaining = max(0.0, goal - won)
        need = math.ceil(remaining / wr) if wr > 0 else 0
        opened = open_by.get(row.salesperson, 0.0)
        quoted = quoted_by.get(row.salesperson, 0.0)
        for k, v in (("won", won), ("goal", goal), ("remaining", remaining), ("need", need),
                     ("open", opened), ("quoted", quoted)):
            agg[k] += v
        out.append({
            "salesperson": row.salesperson,
            "won": round_half_up(won),
            "goal": round_half_up(goal),
            "remaining": round_half_up(remaining),
            "need": need,
            "open": round_half_up(opened),
            "quoted": round_half_up(quoted),
            "coverage": round_half_up(min(100.0, target_attainment(opened, need))),
        })
    out.sort(key=lambda x: -x["need"])

    total = {k: round_half_up(v) for k, v in agg.items()}
    total["coverage"] = round_half_up(min(100.0, target_attainment(agg["open"], agg["need"])))
    return {"assumed_win_rate": wr * 100, "by_salesperson": out, "total": total}


# ══════════════════════════════════════════════════════════════════════════════
# Sales cycle
# ══════════════════════════════════════════════════════════════════════════════

CYCLE_MODES = ("all", "won", "offers")


def _cycle_spans(detail: Dict, mode: str, today: date) -> Iterable[Tuple[str, int]]:
    if mode == "offers":
        for r in detail.get("rows", []):
            if r.created_at:
                yield r.salesperson, ((r.closed_at or today) - r.created_at).days
        return
    for r in detail.get("closed_rows", []):
        if mode == "won" and classify_stage(r.stage) != STAGE_WON:
            continue
        yield r.salesperson, (r.closed_at - r.created_at).days


def sales_cycle(detail: Dict, mode: str = "all", today: Optional[date] = None, unresolved: str = UNRESOLVED) -> Dict:
    """
    Average days from creation to close.

    ``all``    closed opportunities with both dates
    ``won``    closed-won only
    ``offers`` every dated opportunity; open ones are measured to ``today``
    """
    if mode not in CYCLE_MODES:
        raise ValueError(f"Unknown cycle mode: {mode}")
    today = today or utc_today()

    acc: "OrderedDict[str, List[int]]" = OrderedDict()
    for name, days in _cycle_spans(detail, mode, today):
        if days < 0 or days > MAX_CYCLE_DAYS:
            continue
        pair = acc.setdefault(name, [0, 0])
        pair[0] += days
        pair[1] += 1

    out = [
        {"salesperson": name, "avg_days": round_half_up(s / n), "count": n}
        for name, (s, n) in acc.items() if name != unresolved
    ]
    out.sort(key=lambda x: x["avg_days"])
    total_days = sum(s for s, _ in acc.values())
    total_n = sum(n for _, n in acc.values())
    return {
        "mode": mode,
        "by_salesperson": out,
        "total": {"avg_days": round_half_up(total_days / total_n) if total_n else 0, "count": total_n},
    }


def cycle_compliance(avg_days: float, target_days: float = DEFAULT_TARGETS["cycle_days"]) -> int:
    """Target over actual, as a percentage capped at 200; no data counts as met."""
    if avg_days <= 0:
        return 100
    return round_half_up(min(MAX_CYCLE_COMPLIANCE, target_days * 100 / avg_days))
