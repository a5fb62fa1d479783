"""
X Match Forecaster — Synthetic Match History

Generates plausible session histories for demos and tests. The generator plants
structure the engine should be able to find:

  * popular weapons are played more often (usage-share weights)
  * each user has 3 preferred weapons (+4% win rate) and 3 weak ones (−4%)
  * a few maps run hot (+2%) and a few cold (−2%), plus per-map noise
  * evenings and weekends play better; weekday mornings and late nights worse
  * high XP makes wins harder (xp_pressure) and pays less per win
  * fatigue drifts up with long sessions and late play; irritability follows
    fatigue; concentration moves against it

Everything draws from one numpy Generator, so a seed reproduces the history.

    python xm_synthetic.py --rows 300 --users 5 --output data/match_records.csv
"""

import argparse
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from xm_config import RECORDS_CSV
from xm_records import MAPS, MatchRecord, save_match_records

log = logging.getLogger(__name__)

DEFAULT_ROWS  = 300
DEFAULT_DAYS  = 90
DEFAULT_MODES = ("Splat Zones",)
DEFAULT_END   = datetime(2025, 6, 1, tzinfo=timezone.utc)

XP_START_RANGE = (2950, 3250)
XP_FLOOR       = 2000
XP_CEILING     = 4400

# Ranked usage share (%), most popular first.
WEAPON_USAGE: List[Tuple[str, float]] = [
    ("Splattershot",          5.57),
    (".52 Gal",               4.46),
    ("Splattershot Jr.",      3.09),
    ("Splat Roller",          2.76),
    ("Tentatek Splattershot", 2.74),
    ("Sploosh-o-matic",       2.17),
    ("N-ZAP '85",             1.98),
    ("Dualie Squelchers",     1.97),
    ("Carbon Roller Deco",    1.92),
    ("Dapple Dualies",        1.82),
    ("Dark Tetra Dualies",    1.78),
    ("Hydra Splatling",       1.76),
    ("E-liter 4K",            1.75),
    ("Splat Dualies",         1.71),
    ("Splattershot Pro",      1.68),
    ("Blaster",               1.64),
    ("Inkbrush",              1.54),
    ("Range Blaster",         1.45),
    ("Explosher",             1.44),
    ("Splatana Wiper",        1.36),
    ("Nautilus 47",           1.24),
    ("Heavy Edit Splatling",  1.23),
    ("Tri-Slosher",           1.18),
    ("Dynamo Roller",         1.14),
    ("Tri-Stringer",          1.12),
    ("Splash-o-matic",        1.11),
]


# ── Outcome model ─────────────────────────────────────────────────────────────

def xp_gain_loss(start_xp: int) -> Tuple[int, int]:
    """(XP per win, XP per loss) at a given starting XP."""
    if start_xp >= 3500:
        return 8, 18
    if start_xp >= 3300:
        return 9, 17
    if start_xp >= 3100:
        return 10, 16
    if start_xp >= 3000:
        return 11, 15
    if start_xp >= 2800:
        return 12, 14
    if start_xp >= 2600:
        return 13, 13
    if start_xp >= 2400:
        return 14, 12
    return 15, 11


def xp_pressure(start_xp: int) -> float:
    if start_xp >= 3600:
        return 0.05
    if start_xp >= 3400:
        return 0.04
    if start_xp >= 3200:
        return 0.025
    if start_xp >= 3000:
        return 0.015
    if start_xp < 2600:
        return -0.01
    return 0.0


def time_bias(t: datetime) -> float:
    h, wd = t.hour, t.weekday()   # Monday = 0
    b = 0.0
    if h >= 20:
        b += 0.03
    elif h <= 2:
        b -= 0.02
    elif 8 <= h <= 11:
        b -= 0.01
    if wd >= 5:
        b += 0.02
    if wd <= 3:
        b -= 0.005
    if wd == 4 and h >= 20:
        b += 0.015
    return float(np.clip(b, -0.05, 0.07))


def slot_weight(t: datetime) -> float:
    """Relative chance that a player queues in this two-hour slot."""
    h = t.hour
    w = 1.0
    if h >= 20:
        w *= 2.0
    elif h >= 18:
        w *= 1.6
    elif h <= 2:
        w *= 0.8
    if t.weekday() >= 5:
        w *= 1.2
    return w


def _rating(rng: np.random.Generator, mean: float, sd: float) -> int:
    return int(np.clip(round(rng.normal(mean, sd)), 1, 5))


def map_biases(rng: np.random.Generator, maps: Sequence[str] = MAPS) -> Dict[str, float]:
    bias = {m: float(rng.normal(0.0, 0.015)) for m in maps}
    for m in maps[:3]:
        bias[m] += 0.02
    for m in maps[-3:]:
        bias[m] -= 0.02
    return bias


# ── Generation ────────────────────────────────────────────────────────────────

def _time_slots(days: int, end: datetime) -> List[datetime]:
    end = end.replace(minute=0, second=0, microsecond=0)
    start = (end - timedelta(days=days - 1)).replace(hour=0)
    slots = []
    t = start
    while t <= end:
        slots.append(t)
        t += timedelta(hours=2)
    return slots


def _user_sessions(
    rng: np.random.Generator,
    user_id: int,
    n_rows: int,
    slots: List[datetime],
    biases: Dict[str, float],
    modes: Sequence[str],
) -> List[dict]:
    if len(slots) < n_rows:
        raise ValueError(f"Not enough time slots ({len(slots)}) for {n_rows} sessions")

    names = [w for w, _ in WEAPON_USAGE]
    usage = np.array([u for _, u in WEAPON_USAGE])
    usage = usage / usage.sum()

    top = list(rng.permutation(names[:12]))
    preferred, weak = set(top[:3]), set(top[8:11])

    sw = np.array([slot_weight(t) for t in slots])
    picked = rng.choice(len(slots), size=n_rows, replace=False, p=sw / sw.sum())
    played = sorted(slots[i] for i in picked)

    maps = list(biases)
    current_xp = int(rng.integers(XP_START_RANGE[0], XP_START_RANGE[1] + 1))
    rows = []
    for t in played:
        weapon = names[rng.choice(len(names), p=usage)]
        map_1, map_2 = (maps[i] for i in rng.choice(len(maps), size=2, replace=False))

        matches = int(rng.integers(10, 31))
        fatigue = _rating(rng, 3 + (matches - 20) / 30 + (0.3 if t.hour >= 20 else 0.0), 1.0)
        irritability = _rating(rng, 2.8 + (fatigue - 3) * 0.45, 1.05)
        concentration = _rating(rng, 3.2 - (fatigue - 3) * 0.4, 1.0)

        weapon_skill = (
            (0.04 if weapon in preferred else 0.0) +
            (-0.04 if weapon in weak else 0.0) +
            rng.normal(0.0, 0.01)
        )
        map_skill = (biases[map_1] + biases[map_2]) / 2
        p = float(np.clip(
            0.52
            + weapon_skill
            + map_skill * 0.55
            + time_bias(t)
            + (concentration - 3) * 0.015
            - (fatigue - 3) * 0.02
            - (irritability - 3) * 0.018
            - xp_pressure(current_xp)
            + rng.normal(0.0, 0.03),
            0.3, 0.8,
        ))

        wins = int(rng.binomial(matches, p))
        losses = matches - wins

        gain, loss = xp_gain_loss(current_xp)
        xp_delta = wins * gain - losses * loss + int(round(rng.normal(0.0, 16)))
        # Occasional disconnects / streaks the outcome model does not explain
        if current_xp >= 3000 and rng.random() < 0.12:
            xp_delta += -int(rng.integers(80, 201)) if rng.random() < 0.65 else int(rng.integers(60, 131))
            xp_delta = int(np.clip(xp_delta, -200, 130))
        elif current_xp < 3000 and rng.random() < 0.08:
            xp_delta += -int(rng.integers(70, 181)) if rng.random() < 0.6 else int(rng.integers(50, 151))

        start_xp = current_xp
        end_xp = int(np.clip(start_xp + xp_delta, XP_FLOOR, XP_CEILING))
        current_xp = end_xp

        rows.append({
            "user_id": user_id, "played_at": t,
            "mode": modes[int(rng.integers(len(modes)))],
            "map_1": map_1, "map_2": map_2, "weapon": weapon,
            "wins": wins, "losses": losses,
            "fatigue": fatigue, "irritability": irritability, "concentration": concentration,
            "start_xp": start_xp, "end_xp": end_xp,
        })
    return rows


def generate_match_history(
    n_rows: int = DEFAULT_ROWS,
    n_users: int = 1,
    days: int = DEFAULT_DAYS,
    seed: Optional[int] = None,
    modes: Sequence[str] = DEFAULT_MODES,
    end: datetime = DEFAULT_END,
) -> List[MatchRecord]:
    """
    n_rows sessions split across users 1..n_users (remainder to the first
    users), ids assigned in chronological order.
    """
    if n_rows < 0 or n_users < 1:
        raise ValueError(f"need n_rows >= 0 and n_users >= 1, got {n_rows}, {n_users}")
    if not modes:
        raise ValueError("modes must not be empty")

    rng = np.random.default_rng(seed)
    slots = _time_slots(days, end)
    biases = map_biases(rng)

    per_user = [n_rows // n_users + (1 if u < n_rows % n_users else 0) for u in range(n_users)]
    rows = []
    for u, n in enumerate(per_user, start=1):
        rows.extend(_user_sessions(rng, u, n, slots, biases, list(modes)))

    rows.sort(key=lambda r: (r["played_at"], r["user_id"]))
    records = [MatchRecord(id=i, **row) for i, row in enumerate(rows, start=1)]
    log.info(f"Generated {len(records):,} synthetic sessions for {n_users} user(s)")
    return records


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s  %(levelname)-8s  %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    parser = argparse.ArgumentParser(description="Generate a synthetic X Match history CSV")
    parser.add_argument("--rows",   type=int, default=DEFAULT_ROWS)
    parser.add_argument("--users",  type=int, default=5)
    parser.add_argument("--days",   type=int, default=DEFAULT_DAYS)
    parser.add_argument("--seed",   type=int, default=None)
    parser.add_argument("--modes",  type=str, nargs="+", default=list(DEFAULT_MODES))
    parser.add_argument("--end",    type=str, default=None, help="YYYYMMDD (default 20250601)")
    parser.add_argument("--output", type=Path, default=RECORDS_CSV)
    args = parser.parse_args()

    end = DEFAULT_END
    if args.end:
        end = datetime.strptime(args.end, "%Y%m%d").replace(hour=23, tzinfo=timezone.utc)

    records = generate_match_history(args.rows, args.users, args.days, args.seed, args.modes, end)
    save_match_records(records, args.output)


if __name__ == "__main__":
    main()
