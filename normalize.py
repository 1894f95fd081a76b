"""
Text canonicalisation shared by every matching step.

Header detection, name resolution, stage/subject classification and the pivot
"total" guard all compare ``normalize()``-ed text, never raw cell values.
"""

import re
import unicodedata
from typing import Any

_NOISE_RX = re.compile(r"[()\[\]{}↑↓%*#:]")
_SPACE_RX = re.compile(r"\s+")

# Pivot keys that hold the pivot's own row total or record counts
_TOTAL_LIKE_RX = re.compile(r"total|recuento|registro|\bcount\b")


def _strip_marks(s: str) -> str:
    return "".join(c for c in unicodedata.normalize("NFKD", s) if not unicodedata.combining(c))


def normalize(value: Any) -> str:
    """
    Lower-case, strip diacritics, drop bracket/symbol noise, collapse spaces.

    ``None`` and NaN become ``""``. Idempotent.
    """
    if value is None:
        return ""
    if isinstance(value, float) and value != value:
        return ""
    s = _strip_marks(str(value)).lower()
    s = _strip_marks(s)
    s = _NOISE_RX.sub(" ", s)
    return _SPACE_RX.sub(" ", s).strip()


def is_total_like(key: Any) -> bool:
    """True for pivot column keys that must not be summed with the stages."""
    return bool(_TOTAL_LIKE_RX.search(normalize(key)))
