"""
Free text → closed label sets.

Each classifier is an ordered table of (pattern, label) rules evaluated
top to bottom against normalised text; the first match wins and the table's
default applies when nothing matches.
"""

import re
from datetime import date, datetime, timezone
from typing import List, Optional, Tuple

from normalize import normalize

Rule = Tuple[re.Pattern, str]

STAGE_OPEN = "open"
STAGE_WON = "won"
STAGE_LOST = "lost"

CALL = "call"
VISIT = "visit"
MEETING = "meeting"
OTHER = "other"

COMPLETED = "completed"
OVERDUE = "overdue"
PENDING = "pending"

WON_RX = re.compile(r"closed\s*won|ganad|cerrad[oa].*ganad")
LOST_RX = re.compile(r"closed\s*lost|perdid|cerrad[oa].*perdid")
CLOSED_RX = re.compile(r"closed\s*won|closed\s*lost|ganad|perdid|cerrad[oa]")

STAGE_RULES: List[Rule] = [
    (WON_RX, STAGE_WON),
    (LOST_RX, STAGE_LOST),
]

# Calls first: "llamada de seguimiento a visita" is a call, not a visit
SUBJECT_RULES: List[Rule] = [
    (re.compile(r"\bcall\b|llamad|telefon"), CALL),
    (re.compile(r"\breunion|\bmeeting"), MEETING),
    (re.compile(r"\bvisit"), VISIT),
]

COMPLETED_RX = re.compile(r"(^|[^a-z])(complet|done|finaliz|realizad)")


def _first_match(rules: List[Rule], text: str, default: str) -> str:
    for pattern, label in rules:
        if pattern.search(text):
            return label
    return default


def classify_stage(stage) -> str:
    return _first_match(STAGE_RULES, normalize(stage), STAGE_OPEN)


def is_closed_stage(stage) -> bool:
    return bool(CLOSED_RX.search(normalize(stage)))


def classify_subject(subject) -> str:
    return _first_match(SUBJECT_RULES, normalize(subject), OTHER)


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def classify_activity_status(status, due: Optional[date], today: Optional[date] = None) -> str:
    """
    Completed status text wins outright. Otherwise overdue only when
    ``today`` is strictly after the due date; due today is still pending.
    """
    if COMPLETED_RX.search(normalize(status)):
        return COMPLETED
    today = today or utc_today()
    if due is not None and today > due:
        return OVERDUE
    return PENDING
