"""
Salesperson identity resolution.

Every export spells people differently: e-mail addresses, "Last, First",
second names, missing accents. ``Roster.resolve`` maps any of those onto one
entry of a fixed canonical list, or onto the unresolved sentinel.
"""

import logging
from typing import Dict, Iterable, List, Optional

from normalize import normalize

logger = logging.getLogger(__name__)

FUZZY_THRESHOLD = 0.5


class Roster:
    """Ordered canonical names plus an alias table, both injected."""

    def __init__(
        self,
        names: Iterable[str],
        aliases: Optional[Dict[str, str]] = None,
        unresolved: str = "(Sin comercial)",
    ):
        self.names: List[str] = [n for n in names if str(n).strip()]
        self.unresolved = unresolved
        self._by_key: Dict[str, str] = {}
        for name in self.names:
            self._by_key.setdefault(normalize(name), name)
        self._aliases: Dict[str, str] = {}
        for raw, canonical in (aliases or {}).items():
            if canonical not in self.names:
                logger.warning("Alias '%s' points outside the roster: '%s'", raw, canonical)
                continue
            self._aliases[normalize(raw)] = canonical
        self._tokens = [(name, set(normalize(name).split())) for name in self.names]

    @classmethod
    def from_config(cls, config: Dict) -> "Roster":
        return cls(config.get("roster", []), config.get("aliases", {}),
                   config.get("unresolved", "(Sin comercial)"))

    def __contains__(self, name: str) -> bool:
        return name in self.names

    def resolve(self, raw) -> str:
        """
        Canonical roster name for ``raw``.

        Returns ``""`` for blank input (no information, so a caller can keep
        carrying the previous owner) and ``self.unresolved`` when nothing
        matches.
        """
        s = "" if raw is None else str(raw).strip()
        if not s or s.lower() == "nan":
            return ""

        if "@" in s:
            s = s.split("@")[0].replace(".", " ").replace("_", " ")
        if "," in s:
            parts = [p.strip() for p in s.split(",")]
            if len(parts) >= 2 and parts[0] and parts[1]:
                s = f"{parts[1]} {parts[0]}"

        key = normalize(s)
        if not key:
            return ""
        if key in self._aliases:
            return self._aliases[key]
        if key in self._by_key:
            return self._by_key[key]

        # Jaccard over whitespace tokens; strict ">" keeps the first best entry
        tokens = set(key.split())
        best, best_score = "", 0.0
        for name, cand in self._tokens:
            union = len(tokens | cand) or 1
            score = len(tokens & cand) / union
            if score > best_score:
                best, best_score = name, score
        if best_score >= FUZZY_THRESHOLD:
            return best

        for name in self.names:
            surname = normalize(name).split()[-1:]
            if surname and surname[0] in key:
                return name

        logger.debug("Unresolved salesperson: %r", raw)
        return self.unresolved
