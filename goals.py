"""
Sales KPI Dashboard — Goal Store Client
========================================
Per-salesperson yearly targets live in an external JSON endpoint:

    GET  <GOALS_GET_URL>?year=2025
         → {"year": 2025, "metas": [{"comercial": ..., "metaAnual": ...,
                                      "metaOfertas": ..., "metaVisitas": ...}]}
    POST <GOALS_POST_URL>
         {"apiKey": ..., "year": 2025, "metas": [...]} → {"ok": true}

Reads degrade to an empty goal set (KPIs then run against zero targets);
writes raise GoalStoreError so the caller can report the failure.
"""

import logging
from typing import Dict, List, NamedTuple, Optional

import requests

import settings
from coercion import coerce_number
from normalize import normalize

logger = logging.getLogger(__name__)


class GoalStoreError(Exception):
    """A goal save was rejected or could not be delivered."""


class GoalRecord(NamedTuple):
    salesperson: str
    annual: float = 0.0
    offers: float = 0.0
    visits: float = 0.0

    @classmethod
    def from_wire(cls, item: Dict) -> "GoalRecord":
        # Missing and null targets are zero
        return cls(
            salesperson=" ".join(str(item.get("comercial") or "").split()).upper(),
            annual=coerce_number(item.get("metaAnual")),
            offers=coerce_number(item.get("metaOfertas")),
            visits=coerce_number(item.get("metaVisitas")),
        )

    def to_wire(self) -> Dict:
        return {
            "comercial": self.salesperson,
            "metaAnual": self.annual,
            "metaOfertas": self.offers,
            "metaVisitas": self.visits,
        }


def _with_year(url: str, year: int) -> str:
    return f"{url}{'&' if '?' in url else '?'}year={year}"


def fetch_goals(year: int, url: Optional[str] = None, timeout: Optional[float] = None) -> List[GoalRecord]:
    """
    Fetch the goal records for ``year``. Never raises: any transport, status
    or payload problem is logged and an empty list is returned.
    """
    url = url if url is not None else settings.GOALS_GET_URL
    if not url:
        logger.warning("GOALS_GET_URL not configured; no goals for %s", year)
        return []
    timeout = timeout if timeout is not None else settings.GOALS_TIMEOUT
    try:
        response = requests.get(_with_year(url, year), timeout=timeout)
        if response.status_code != 200:
            logger.warning("Goal fetch for %s failed (%s): %s", year, response.status_code, response.text[:200])
            return []
        data = response.json()
    except requests.exceptions.RequestException as e:
        logger.warning("Goal fetch for %s failed: %s", year, e)
        return []
    except ValueError as e:
        logger.warning("Goal fetch for %s returned invalid JSON: %s", year, e)
        return []

    metas = data.get("metas") if isinstance(data, dict) else None
    if not isinstance(metas, list):
        return []
    return [GoalRecord.from_wire(m) for m in metas if isinstance(m, dict)]


def save_goals(
    year: int,
    records: List[GoalRecord],
    url: Optional[str] = None,
    api_key: Optional[str] = None,
    timeout: Optional[float] = None,
) -> None:
    """POST the full goal set for ``year``. Raises GoalStoreError on any failure."""
    url = url if url is not None else settings.GOALS_POST_URL
    if not url:
        raise GoalStoreError("GOALS_POST_URL not configured")
    payload = {
        "apiKey": api_key if api_key is not None else settings.GOALS_API_KEY,
        "year": year,
        "metas": [r.to_wire() for r in records],
    }
    timeout = timeout if timeout is not None else settings.GOALS_TIMEOUT
    try:
        response = requests.post(url, json=payload, timeout=timeout)
    except requests.exceptions.RequestException as e:
        raise GoalStoreError(f"Could not reach goal store: {e}") from e

    try:
        out = response.json()
    except ValueError:
        out = {}
    if not 200 <= response.status_code < 300:
        raise GoalStoreError(out.get("error") or f"POST goals {response.status_code}: {response.text[:200]}")
    if not out.get("ok"):
        raise GoalStoreError(out.get("error") or "goal store did not confirm the save")
    logger.info("Saved %d goal records for %s", len(records), year)


class GoalStore:
    """Per-year cache in front of fetch_goals / save_goals."""

    def __init__(self, get_url: Optional[str] = None, post_url: Optional[str] = None,
                 api_key: Optional[str] = None, timeout: Optional[float] = None):
        self.get_url = get_url
        self.post_url = post_url
        self.api_key = api_key
        self.timeout = timeout
        self._by_year: Dict[int, Dict[str, GoalRecord]] = {}

    def ensure(self, year: int) -> List[GoalRecord]:
        """Fetch once per year; later calls reuse the cached set."""
        if year not in self._by_year:
            return self.refresh(year)
        return self.records(year)

    def refresh(self, year: int) -> List[GoalRecord]:
        self._store(year, fetch_goals(year, self.get_url, self.timeout))
        return self.records(year)

    def save(self, year: int, records: List[GoalRecord]) -> None:
        save_goals(year, records, self.post_url, self.api_key, self.timeout)
        self._store(year, records)

    def _store(self, year: int, records: List[GoalRecord]) -> None:
        self._by_year[year] = {normalize(r.salesperson): r for r in records}

    def records(self, year: int) -> List[GoalRecord]:
        return sorted(self._by_year.get(year, {}).values(), key=lambda r: r.salesperson)

    def lookup(self, year: int, salesperson: str) -> GoalRecord:
        return self._by_year.get(year, {}).get(normalize(salesperson), GoalRecord(salesperson))

    def annual_target(self, year: int, salesperson: str) -> float:
        return self.lookup(year, salesperson).annual

    def offer_target(self, year: int, salesperson: str) -> float:
        return self.lookup(year, salesperson).offers

    def visit_target(self, year: int, salesperson: str) -> float:
        return self.lookup(year, salesperson).visits

    def clear(self) -> None:
        self._by_year.clear()
