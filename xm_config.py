"""
X Match Forecaster — Configuration
Model constants, data paths and environment overrides shared across xm_* modules.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict

log = logging.getLogger(__name__)

# ── Paths ────────────────────────────────────────────────────────────────────
DATA_DIR        = Path(os.getenv("XM_DATA_DIR", "data"))
RECORDS_CSV     = DATA_DIR / "match_records.csv"
PARAMS_PATH     = Path(os.getenv("XM_PARAMS_PATH", str(DATA_DIR / "prediction_params.json")))

# ── Population blend ─────────────────────────────────────────────────────────
TARGET_WEIGHT   = 0.6     # records owned by the user being predicted
OTHER_WEIGHT    = 0.4     # everyone else, unowned records included

# ── Rate estimation ──────────────────────────────────────────────────────────
DEFAULT_PRIOR_STRENGTH = 10.0
ENGINE_PRIOR_STRENGTH  = 12.0
WEAPON_BLEND    = 0.5
MAP_BLEND       = 0.3
NEUTRAL_RATE    = 0.5

# ── Mental / rating penalty ──────────────────────────────────────────────────
FATIGUE_PENALTY       = 0.03
IRRITABILITY_PENALTY  = 0.03
CONCENTRATION_PENALTY = 0.03
XP_PRESSURE_PENALTY   = 0.02
XP_CEILING            = 5000.0
RATING_MIN            = 1
RATING_MAX            = 5

# ── XP delta blend ───────────────────────────────────────────────────────────
XP_MODE_WEIGHT    = 0.4
XP_WEAPON_WEIGHT  = 0.3
XP_MAP_WEIGHT     = 0.2
XP_GLOBAL_WEIGHT  = 0.1
WIN_RATE_TO_XP    = 140.0   # XP per unit of win rate above/below a coin flip

XP_STD_MODE_WEIGHT   = 0.5
XP_STD_WEAPON_WEIGHT = 0.25
XP_STD_MAP_WEIGHT    = 0.15
XP_STD_GLOBAL_WEIGHT = 0.1

# ── Intervals ────────────────────────────────────────────────────────────────
Z_95              = 1.96
MIN_N_EFF         = 6.0
MIN_XP_STD        = 20.0
MIN_WIN_VARIANCE  = 0.0001
FALLBACK_WIN_INTERVAL = (0.35, 0.65)
FALLBACK_XP_INTERVAL  = (-120.0, 120.0)

# ── Backtest bounds ──────────────────────────────────────────────────────────
WARMUP_DEFAULT  = 6
WARMUP_MIN      = 3
WARMUP_MAX      = 30
LIMIT_DEFAULT   = 120
LIMIT_MIN       = 20
LIMIT_MAX       = 500
CALIBRATION_BINS       = 10
BACKTEST_SCALE_WARNING = 10_000   # rescan cost is quadratic past this

# ── Record store API ─────────────────────────────────────────────────────────
API_BASE_URL        = os.getenv("XM_API_BASE_URL", "http://localhost:10000")
API_TOKEN           = os.getenv("XM_API_TOKEN", "")
REQUEST_TIMEOUT     = int(os.getenv("XM_TIMEOUT",          "15"))
MAX_RETRIES         = int(os.getenv("XM_MAX_RETRIES",      "3"))
RETRY_INITIAL_DELAY = float(os.getenv("XM_RETRY_DELAY",    "1.0"))
RETRY_BACKOFF       = float(os.getenv("XM_RETRY_BACKOFF",  "2.0"))

DEFAULT_HEADERS = {
    "User-Agent": "xmatch-forecast/1.0",
    "Accept":     "application/json",
}


def load_param_overrides(path: Path = None) -> Dict[str, Any]:
    """
    Read tuned coefficients from a JSON file shaped like {"params": {...}}.
    Missing, tiny or malformed files yield no overrides.
    """
    path = Path(path) if path is not None else PARAMS_PATH
    if not path.exists() or path.stat().st_size <= 10:
        return {}
    try:
        payload = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as exc:
        log.warning(f"Ignoring unreadable params file {path}: {exc}")
        return {}
    params = payload.get("params") if isinstance(payload, dict) else None
    if not isinstance(params, dict):
        return {}
    return dict(params)
