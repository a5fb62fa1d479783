"""
X Match Forecaster — Match Records
Record and condition types, mode/map/weapon catalogs, and conversion between
records and the two shapes the record store hands us (CSV exports, API rows).

A MatchRecord is one recorded session: a batch of games played under a single
configuration (mode, two rotating maps, weapon), with the player's
self-reported state and XP before/after. Records are immutable once created.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd

from xm_config import RATING_MAX, RATING_MIN
from xm_output_schemas import OUTPUT_FILE_SCHEMAS, validate_output

log = logging.getLogger(__name__)

# ── Catalogs ──────────────────────────────────────────────────────────────────
MODES = ["Splat Zones", "Tower Control", "Rainmaker", "Clam Blitz"]

MAPS = [
    "Scorch Gorge",
    "Eeltail Alley",
    "Hagglefish Market",
    "Undertow Spillway",
    "Mincemeat Metalworks",
    "Hammerhead Bridge",
    "Museum d'Alfonsino",
    "Mahi-Mahi Resort",
    "Inkblot Art Academy",
    "Sturgeon Shipyard",
    "MakoMart",
    "Wahoo World",
    "Brinewater Springs",
    "Flounder Heights",
    "Um'ami Ruins",
    "Manta Maria",
    "Barnacle & Dime",
    "Humpback Pump Track",
    "Crableg Capital",
    "Shipshape Cargo Co.",
    "Robo ROM-en",
    "Bluefin Depot",
    "Marlin Airport",
    "Lemuria Hub",
]

WEAPON_CATEGORIES: Dict[str, List[str]] = {
    "shooter": [
        "Sploosh-o-matic", "Splattershot Jr.", "Splash-o-matic", "Aerospray MG",
        "Splattershot", "Tentatek Splattershot", ".52 Gal", ".96 Gal",
        "N-ZAP '85", "Splattershot Pro", "Jet Squelcher", "L-3 Nozzlenose",
        "H-3 Nozzlenose", "Squeezer", "Splattershot Nova",
    ],
    "roller": [
        "Splat Roller", "Carbon Roller", "Carbon Roller Deco", "Dynamo Roller",
        "Flingza Roller", "Big Swig Roller",
    ],
    "charger": [
        "Splat Charger", "E-liter 4K", "Squiffer", "Goo Tuber",
        "Bamboozler 14 Mk I", "Snipewriter 5H",
    ],
    "blaster": [
        "Blaster", "Luna Blaster", "Range Blaster", "Clash Blaster",
        "Rapid Blaster", "Rapid Blaster Pro", "S-BLAST '92",
    ],
    "slosher": [
        "Slosher", "Tri-Slosher", "Sloshing Machine", "Bloblobber",
        "Explosher", "Dread Wringer",
    ],
    "splatling": [
        "Mini Splatling", "Heavy Splatling", "Hydra Splatling",
        "Ballpoint Splatling", "Nautilus 47", "Heavy Edit Splatling",
    ],
    "dualies": [
        "Splat Dualies", "Dapple Dualies", "Dark Tetra Dualies",
        "Dualie Squelchers", "Glooga Dualies", "Douser Dualies FF",
    ],
    "brella": [
        "Splat Brella", "Tenta Brella", "Undercover Brella",
        "Recycled Brella 24 Mk I",
    ],
    "brush": ["Inkbrush", "Octobrush", "Painbrush"],
    "stringer": ["Tri-Stringer", "REEF-LUX 450", "Wellstring V"],
    "splatana": ["Splatana Stamper", "Splatana Wiper", "Decavitator"],
}

ALL_WEAPONS = [w for weapons in WEAPON_CATEGORIES.values() for w in weapons]
_WEAPON_TO_CATEGORY = {
    w: cat for cat, weapons in WEAPON_CATEGORIES.items() for w in weapons
}


def weapon_category(weapon: str) -> Optional[str]:
    """Catalog category for a weapon label, None when it is not in the catalog."""
    return _WEAPON_TO_CATEGORY.get(weapon)


def is_known_weapon(weapon: str) -> bool:
    return weapon in _WEAPON_TO_CATEGORY


def _check_rating(name: str, value: int) -> None:
    if not RATING_MIN <= value <= RATING_MAX:
        raise ValueError(f"{name} must be {RATING_MIN}-{RATING_MAX}, got {value}")


# Column names of MatchRecord.config_key, in order.
CONFIG_KEY_FIELDS = ("mode", "map_1", "map_2", "weapon")


# ═══════════════════════════════════════════════════════════════════════════════
# DATA STRUCTURES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PredictionCondition:
    """The upcoming-match configuration a caller wants evaluated."""
    mode:          str
    map_1:         str
    map_2:         str
    weapon:        str
    fatigue:       int = 3
    irritability:  int = 3
    concentration: int = 3
    start_xp:      int = 0

    def __post_init__(self):
        _check_rating("fatigue", self.fatigue)
        _check_rating("irritability", self.irritability)
        _check_rating("concentration", self.concentration)
        if self.start_xp < 0:
            raise ValueError(f"start_xp must be >= 0, got {self.start_xp}")

    @property
    def maps(self) -> Tuple[str, str]:
        return (self.map_1, self.map_2)


@dataclass(frozen=True)
class MatchRecord:
    """
    One recorded session. wins/losses count a batch of games, not one match.

    map_1/map_2 are stored positionally. Rate estimation treats them as an
    unordered pair (see map_pair); display grouping keeps the order
    (see config_key).
    """
    id:            int
    user_id:       Optional[int]
    played_at:     datetime
    mode:          str
    map_1:         str
    map_2:         str
    weapon:        str
    wins:          int
    losses:        int
    fatigue:       int = 3
    irritability:  int = 3
    concentration: int = 3
    start_xp:      int = 0
    end_xp:        int = 0
    note:          Optional[str] = None

    def __post_init__(self):
        if self.wins < 0 or self.losses < 0:
            raise ValueError(
                f"record {self.id}: wins/losses must be non-negative "
                f"(wins={self.wins}, losses={self.losses})"
            )
        _check_rating("fatigue", self.fatigue)
        _check_rating("irritability", self.irritability)
        _check_rating("concentration", self.concentration)

    @property
    def games(self) -> int:
        return self.wins + self.losses

    @property
    def win_rate(self) -> float:
        """Raw win rate of the batch; 0.0 when no games were played."""
        return self.wins / self.games if self.games > 0 else 0.0

    @property
    def xp_delta(self) -> int:
        return self.end_xp - self.start_xp

    @property
    def map_pair(self) -> FrozenSet[str]:
        return frozenset((self.map_1, self.map_2))

    @property
    def config_key(self) -> Tuple[str, str, str, str]:
        """Positional (mode, map_1, map_2, weapon); see CONFIG_KEY_FIELDS."""
        return (self.mode, self.map_1, self.map_2, self.weapon)

    @property
    def sort_key(self) -> Tuple[datetime, int]:
        """Chronological order, ties broken by id."""
        return (self.played_at, self.id)

    def to_condition(self) -> PredictionCondition:
        """The configuration this record was played under."""
        return PredictionCondition(
            mode=self.mode,
            map_1=self.map_1,
            map_2=self.map_2,
            weapon=self.weapon,
            fatigue=self.fatigue,
            irritability=self.irritability,
            concentration=self.concentration,
            start_xp=self.start_xp,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id":            self.id,
            "user_id":       self.user_id,
            "played_at":     self.played_at.isoformat(),
            "mode":          self.mode,
            "map_1":         self.map_1,
            "map_2":         self.map_2,
            "weapon":        self.weapon,
            "wins":          self.wins,
            "losses":        self.losses,
            "fatigue":       self.fatigue,
            "irritability":  self.irritability,
            "concentration": self.concentration,
            "start_xp":      self.start_xp,
            "end_xp":        self.end_xp,
            "note":          self.note,
        }


# ═══════════════════════════════════════════════════════════════════════════════
# CONVERSION
# ═══════════════════════════════════════════════════════════════════════════════

REQUIRED_FIELDS = ["id", "played_at", "mode", "map_1", "map_2", "weapon"]
INT_FIELDS = [
    "wins", "losses", "fatigue", "irritability", "concentration",
    "start_xp", "end_xp",
]
INT_DEFAULTS = {
    "wins": 0, "losses": 0,
    "fatigue": 3, "irritability": 3, "concentration": 3,
    "start_xp": 0, "end_xp": 0,
}

# Field names used by the record store's JSON API.
API_FIELD_MAP = {
    "id":            "id",
    "userId":        "user_id",
    "playedAt":      "played_at",
    "rule":          "mode",
    "stage1":        "map_1",
    "stage2":        "map_2",
    "weapon":        "weapon",
    "wins":          "wins",
    "losses":        "losses",
    "fatigue":       "fatigue",
    "irritability":  "irritability",
    "concentration": "concentration",
    "startXp":       "start_xp",
    "endXp":         "end_xp",
    "memo":          "note",
}


def _opt_int(v) -> Optional[int]:
    if v is None:
        return None
    try:
        if pd.isna(v):
            return None
    except (TypeError, ValueError):
        pass
    return int(v)


def _to_datetime(v) -> datetime:
    ts = pd.Timestamp(v)
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    return ts.tz_convert("UTC").to_pydatetime()


def record_from_dict(row: Dict[str, Any]) -> MatchRecord:
    """Build a MatchRecord from a snake_case mapping (CSV row, JSON, etc)."""
    ints = {}
    for name in INT_FIELDS:
        v = _opt_int(row.get(name))
        ints[name] = INT_DEFAULTS[name] if v is None else v

    note = row.get("note")
    if note is not None and not isinstance(note, str):
        note = None if pd.isna(note) else str(note)

    weapon = str(row["weapon"])
    if not is_known_weapon(weapon):
        log.debug(f"record {row['id']}: weapon {weapon!r} not in catalog")

    return MatchRecord(
        id=int(row["id"]),
        user_id=_opt_int(row.get("user_id")),
        played_at=_to_datetime(row["played_at"]),
        mode=str(row["mode"]),
        map_1=str(row["map_1"]),
        map_2=str(row["map_2"]),
        weapon=weapon,
        note=note or None,
        **ints,
    )


def record_from_api_row(row: Dict[str, Any]) -> MatchRecord:
    """Convert one camelCase row returned by the record store API."""
    mapped = {API_FIELD_MAP[k]: v for k, v in row.items() if k in API_FIELD_MAP}
    return record_from_dict(mapped)


def records_to_frame(records: Iterable[MatchRecord]) -> pd.DataFrame:
    rows = [r.to_dict() for r in records]
    if not rows:
        return pd.DataFrame(columns=OUTPUT_FILE_SCHEMAS["match_records"])
    return pd.DataFrame(rows)


def records_from_frame(df: pd.DataFrame) -> List[MatchRecord]:
    """
    Convert a DataFrame to MatchRecords. Rows missing a required field or
    failing record validation are dropped with a warning.
    """
    missing = validate_output(df, "match_records")
    if missing:
        raise ValueError(f"match records frame missing required columns: {missing}")

    records: List[MatchRecord] = []
    dropped = 0
    for row in df.to_dict("records"):
        if any(pd.isna(row.get(f)) for f in REQUIRED_FIELDS):
            dropped += 1
            continue
        try:
            records.append(record_from_dict(row))
        except (TypeError, ValueError) as exc:
            log.warning(f"Dropping record {row.get('id')}: {exc}")
            dropped += 1

    if dropped:
        log.warning(f"Dropped {dropped} of {len(df)} rows while loading match records")
    return records


def load_match_records(path: Path) -> List[MatchRecord]:
    """Load match records from a CSV export of the record store."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"No match records found at {path}")

    df = pd.read_csv(path, dtype=str, keep_default_na=True)
    for col in ["id", "user_id"] + INT_FIELDS:
        if col in df.columns:
            df[col] = pd.to_numeric(df[col], errors="coerce")

    records = records_from_frame(df)
    users = len({r.user_id for r in records})
    log.info(f"Loaded {len(records):,} match records ({users} users) from {path.name}")
    return records


def save_match_records(records: Iterable[MatchRecord], path: Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df = records_to_frame(records)
    validate_output(df, "match_records", strict=True)
    df.to_csv(path, index=False)
    log.info(f"Wrote {len(df):,} match records → {path}")
    return path


def records_for_user(records: Iterable[MatchRecord], user_id: int) -> List[MatchRecord]:
    """A user's own records in chronological order."""
    return sorted((r for r in records if r.user_id == user_id), key=lambda r: r.sort_key)


# ═══════════════════════════════════════════════════════════════════════════════
# HISTORY SUMMARY
# ═══════════════════════════════════════════════════════════════════════════════

def summarize_history(records: Iterable[MatchRecord]) -> pd.DataFrame:
    """
    Per-configuration totals for display. Groups on each record's positional
    config_key, so swapped map pairs stay separate rows.
    """
    cols = list(CONFIG_KEY_FIELDS) + ["sessions", "wins", "losses",
                                      "win_rate", "xp_delta_total", "xp_delta_mean"]
    df = pd.DataFrame(
        [(*r.config_key, r.id, r.wins, r.losses, r.xp_delta) for r in records],
        columns=list(CONFIG_KEY_FIELDS) + ["id", "wins", "losses", "xp_delta"],
    )
    if df.empty:
        return pd.DataFrame(columns=cols)

    grouped = (
        df.groupby(list(CONFIG_KEY_FIELDS), sort=False)
          .agg(sessions=("id", "count"),
               wins=("wins", "sum"),
               losses=("losses", "sum"),
               xp_delta_total=("xp_delta", "sum"),
               xp_delta_mean=("xp_delta", "mean"))
          .reset_index()
    )
    games = grouped["wins"] + grouped["losses"]
    grouped["win_rate"] = np.where(games > 0, grouped["wins"] / games.where(games > 0, 1), 0.0)
    grouped["xp_delta_mean"] = grouped["xp_delta_mean"].round(2)
    grouped = grouped.sort_values(["sessions", "wins"], ascending=False, kind="mergesort")
    return grouped[cols].reset_index(drop=True)
