"""
Sales KPI Dashboard — Configuration
===================================
Environment variables (loaded from .env) plus an optional JSON override file
for everything the ingestion layer treats as data: the salesperson roster,
the alias table, and the keyword lists / weights used to locate columns.

JSON override file (``KPI_CONFIG_FILE``) — every key is optional:

    {
      "roster":     ["ANA PEREZ", "LUIS GOMEZ"],
      "aliases":    {"ana maria perez": "ANA PEREZ"},
      "unresolved": "(Sin comercial)",
      "layouts":    {"visits": {"fixed_mode": "override"}},
      "targets":    {"win_rate": 30, "cycle_days": 45, "assumed_win_rate": 20}
    }
"""

import copy
import json
import logging
import os
from typing import Any, Dict, Optional

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────
# ENVIRONMENT
# ─────────────────────────────────────────────────────────────

GOALS_GET_URL = os.getenv("GOALS_GET_URL", "")
GOALS_POST_URL = os.getenv("GOALS_POST_URL", "")
GOALS_API_KEY = os.getenv("GOALS_API_KEY", "INGETES")
GOALS_TIMEOUT = float(os.getenv("GOALS_TIMEOUT")) if os.getenv("GOALS_TIMEOUT") else None

KPI_CONFIG_FILE = os.getenv("KPI_CONFIG_FILE")


# ─────────────────────────────────────────────────────────────
# ROSTER DEFAULTS
# ─────────────────────────────────────────────────────────────

UNRESOLVED = "(Sin comercial)"

DEFAULT_ROSTER = [
    "CLAUDIA RODRIGUEZ RODRIGUEZ",
    "HERNAN ROLDAN",
    "JHOAN ORTIZ",
    "JUAN GARZÓN LINARES",
    "KAREN CARRILLO",
    "LIZETH MARTINEZ",
    "PABLO RODRIGUEZ RODRIGUEZ",
]

# Known spellings / middle-name forms → roster entry
DEFAULT_ALIASES = {
    "claudia rodriguez": "CLAUDIA RODRIGUEZ RODRIGUEZ",
    "claudia rodriguez rodriguez": "CLAUDIA RODRIGUEZ RODRIGUEZ",
    "claudia patricia rodriguez": "CLAUDIA RODRIGUEZ RODRIGUEZ",
    "hernan roldan": "HERNAN ROLDAN",
    "hernan benancio roldan": "HERNAN ROLDAN",
    "hernan b roldan": "HERNAN ROLDAN",
    "jhoan ortiz": "JHOAN ORTIZ",
    "jhoan sebastian ortiz": "JHOAN ORTIZ",
    "juan garzon": "JUAN GARZÓN LINARES",
    "juan garzon linares": "JUAN GARZÓN LINARES",
    "juan sebastian garzon": "JUAN GARZÓN LINARES",
    "juan sebastian garzon linares": "JUAN GARZÓN LINARES",
    "karen carrillo": "KAREN CARRILLO",
    "karen ariana carrillo": "KAREN CARRILLO",
    "lizeth martinez": "LIZETH MARTINEZ",
    "lizeth natalia martinez": "LIZETH MARTINEZ",
    "pablo rodriguez rodriguez": "PABLO RODRIGUEZ RODRIGUEZ",
    "pablo cesar rodriguez": "PABLO RODRIGUEZ RODRIGUEZ",
}


# ─────────────────────────────────────────────────────────────
# SHEET LAYOUTS
# ─────────────────────────────────────────────────────────────
# Each layout lists its roles in priority order: when a header cell matches
# two roles, the role declared first claims the column.

_OWNER_KWS = ["propietario", "owner", "comercial", "vendedor", "ejecutivo"]

DEFAULT_LAYOUTS: Dict[str, Dict[str, Any]] = {
    "detail": {
        "roles": {
            "owner":   ["propietario", "owner", "comercial", "vendedor", "ejecutivo"],
            "created": ["fecha de creacion", "fecha creacion", "created date", "created"],
            "closed":  ["fecha de cierre", "fecha cierre", "close date", "closed date"],
            "stage":   ["etapa", "stage", "estado"],
            "amount":  ["importe", "monto", "valor", "precio total", "amount", "total"],
        },
        "exclude": {"amount": ["recuento", "count"]},
        "weights": {"owner": 3, "created": 2, "closed": 2, "stage": 1, "amount": 1},
        "mandatory": ["owner"],
        "fixed_columns": {},
        "fixed_mode": "fallback",
        "max_scan": 50,
    },
    "visits": {
        "roles": {
            "owner":   list(_OWNER_KWS),
            "subject": ["asunto", "subject"],
            "date":    ["fecha de visita", "fecha visita", "fecha", "date", "created", "evento"],
            "client":  ["cliente", "account", "empresa", "compania", "company"],
        },
        "exclude": {},
        "weights": {"owner": 1, "date": 1, "subject": 1, "client": 1},
        "mandatory": ["owner"],
        # Known export: owner in column B, subject in column J
        "fixed_columns": {"owner": 1, "subject": 9},
        "fixed_mode": "fallback",
        "max_scan": 40,
    },
    "activities": {
        "roles": {
            "owner":  ["creado por", "creado", "owner"] + _OWNER_KWS[2:],
            "status": ["estado", "status"],
            "due":    ["fecha de vencimiento", "vencimiento", "due date", "fecha"],
        },
        "exclude": {},
        "weights": {"owner": 1, "status": 1, "due": 1},
        "mandatory": ["owner"],
        # Known export: B = created by, D = date, M = status
        "fixed_columns": {"owner": 1, "due": 3, "status": 12},
        "fixed_mode": "fallback",
        "max_scan": 40,
    },
    "pivot": {
        "roles": {
            "owner": ["propietario", "owner", "comercial", "vendedor", "etiquetas de fila", "row labels"],
            "stage": ["etapa", "stage"],
        },
        "exclude": {},
        "weights": {"owner": 2, "stage": 1},
        "mandatory": ["owner"],
        "fixed_columns": {},
        "fixed_mode": "fallback",
        "max_scan": 40,
        "stage_keywords": [
            "qualification", "needs", "needs analysis", "proposal",
            "negotiation", "closed", "ganad", "perdid",
        ],
    },
}

# Pivot stages whose amounts make up the open pipeline
PIPELINE_STAGE_KEYWORDS = ["qualification", "needs", "needs analysis", "proposal", "negotiation"]

DEFAULT_TARGETS = {
    "win_rate": 30,
    "cycle_days": 45,
    "assumed_win_rate": 20,
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursive dict merge; lists and scalars in ``override`` replace ``base``."""
    out = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = copy.deepcopy(value)
    return out


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Build the effective configuration: defaults merged with the JSON file at
    ``path`` (or ``KPI_CONFIG_FILE``). A missing or unreadable file is logged
    and the defaults are used.
    """
    config: Dict[str, Any] = {
        "roster": list(DEFAULT_ROSTER),
        "aliases": dict(DEFAULT_ALIASES),
        "unresolved": UNRESOLVED,
        "layouts": copy.deepcopy(DEFAULT_LAYOUTS),
        "targets": dict(DEFAULT_TARGETS),
    }
    path = path or KPI_CONFIG_FILE
    if not path:
        return config
    try:
        with open(path, "r", encoding="utf-8") as fh:
            override = json.load(fh)
    except (OSError, ValueError) as e:
        logger.warning("Could not read KPI config '%s': %s", path, e)
        return config
    if not isinstance(override, dict):
        logger.warning("KPI config '%s' is not a JSON object; ignored", path)
        return config
    return _merge(config, override)
