#!/usr/bin/env python3
"""
X Match Forecaster — Personalized Prediction Engine
xm_prediction_model.py

Given every user's recorded sessions and one hypothetical upcoming session
(mode, two rotating maps, weapon, how the player feels, current XP), estimate
the player's win rate and XP change, with intervals, and say whether to play.

DESIGN NOTES
─────────────────────────────────────────────────────────────────────────────
Why blend the population in at all?

A player with five sessions has no usable weapon or map history. Their own
records get weight 0.6 and everyone else's 0.4, so the estimate starts from
the population and drifts toward the player's own tendencies as their history
grows. No per-user tuning, no learned parameters: the whole estimate is
recomputed from scratch on every request.

RATE ASSEMBLY
─────────────────────────────────────────────────────────────────────────────
  base    weighted win rate over the mode pool (all records if mode is unseen)
  weapon  smoothed rate over the weapon subset, prior = base, 12 pseudo-games
  map     smoothed rate over the map-overlap subset, same prior and strength
  penalty fatigue, irritability, low concentration and high XP, each scaled
          to [0, 1], coefficients 0.03 / 0.03 / 0.03 / 0.02

  p = clamp01(base + 0.5·(weapon − base) + 0.3·(map − base) − penalty)

Weapon choice is assumed to matter more than map choice (0.5 vs 0.3).

XP DELTA
─────────────────────────────────────────────────────────────────────────────
Weighted mean XP change per record over four pools, blended 0.4 mode /
0.3 weapon / 0.2 map / 0.1 base pool, plus (p − 0.5) × 140: XP moves with
wins and losses, so the XP estimate is tied to the win-rate estimate.

INTERVALS
─────────────────────────────────────────────────────────────────────────────
Win rate: normal approximation with n_eff = max(6, mode + ½·weapon + ½·map)
Kish effective sizes. XP: ±1.96 × blended pool std, floored at 20 XP.

Every coefficient lives on PredictionParams and can be overridden from
data/prediction_params.json without touching code.

Usage:
    from xm_prediction_model import predict
    from xm_records import PredictionCondition
    pred = predict(PredictionCondition("Splat Zones", "Scorch Gorge", "MakoMart",
                                       "Splattershot"), records, target_user_id=1)

    python xm_prediction_model.py --records data/match_records.csv --user-id 1 \\
        --mode "Splat Zones" --map-1 "Scorch Gorge" --map-2 MakoMart \\
        --weapon Splattershot --fatigue 2 --start-xp 2400
"""

import argparse
import json
import logging
import math
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd

import xm_config as cfg
from xm_output_schemas import validate_output
from xm_pools import (
    build_weighted_records,
    filter_pool,
    map_matches,
    mode_pool,
    weapon_matches,
    xp_values,
)
from xm_records import MatchRecord, PredictionCondition, load_match_records
from xm_stats import clamp01, smoothed_rate, weighted_mean_std, weighted_win_loss

log = logging.getLogger(__name__)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


# ═══════════════════════════════════════════════════════════════════════════════
# PARAMETERS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PredictionParams:
    """
    Every hand-tuned coefficient of the engine. Defaults come from xm_config.

    None of these are fitted; they encode design assumptions (weapon matters
    more than map, own history outweighs the population 6:4, ...). Override
    them via PredictionParams.load() to A/B a different blend.
    """
    # ── Personal / population weighting ───────────────────────────────────────
    target_weight:   float = cfg.TARGET_WEIGHT
    other_weight:    float = cfg.OTHER_WEIGHT

    # ── Rates ─────────────────────────────────────────────────────────────────
    prior_strength:  float = cfg.ENGINE_PRIOR_STRENGTH
    weapon_blend:    float = cfg.WEAPON_BLEND
    map_blend:       float = cfg.MAP_BLEND
    neutral_rate:    float = cfg.NEUTRAL_RATE

    # ── Mental / XP penalty ───────────────────────────────────────────────────
    fatigue_penalty:       float = cfg.FATIGUE_PENALTY
    irritability_penalty:  float = cfg.IRRITABILITY_PENALTY
    concentration_penalty: float = cfg.CONCENTRATION_PENALTY
    xp_pressure_penalty:   float = cfg.XP_PRESSURE_PENALTY
    xp_ceiling:            float = cfg.XP_CEILING

    # ── XP delta ──────────────────────────────────────────────────────────────
    xp_mode_weight:    float = cfg.XP_MODE_WEIGHT
    xp_weapon_weight:  float = cfg.XP_WEAPON_WEIGHT
    xp_map_weight:     float = cfg.XP_MAP_WEIGHT
    xp_global_weight:  float = cfg.XP_GLOBAL_WEIGHT
    win_rate_to_xp:    float = cfg.WIN_RATE_TO_XP

    xp_std_mode_weight:    float = cfg.XP_STD_MODE_WEIGHT
    xp_std_weapon_weight:  float = cfg.XP_STD_WEAPON_WEIGHT
    xp_std_map_weight:     float = cfg.XP_STD_MAP_WEIGHT
    xp_std_global_weight:  float = cfg.XP_STD_GLOBAL_WEIGHT

    # ── Intervals ─────────────────────────────────────────────────────────────
    z:                 float = cfg.Z_95
    n_eff_side_weight: float = 0.5    # weapon / map pools count half toward n_eff
    min_n_eff:         float = cfg.MIN_N_EFF
    min_xp_std:        float = cfg.MIN_XP_STD
    min_win_variance:  float = cfg.MIN_WIN_VARIANCE
    fallback_win_interval: Tuple[float, float] = cfg.FALLBACK_WIN_INTERVAL
    fallback_xp_interval:  Tuple[float, float] = cfg.FALLBACK_XP_INTERVAL

    def validate(self) -> None:
        """Raise ValueError for coefficient sets the engine cannot use."""
        for name in ("target_weight", "other_weight"):
            w = getattr(self, name)
            if not 0.0 < w <= 1.0:
                raise ValueError(f"{name} must be in (0, 1], got {w}")
        if self.prior_strength <= 0:
            raise ValueError(f"prior_strength must be positive, got {self.prior_strength}")
        if self.xp_ceiling <= 0:
            raise ValueError(f"xp_ceiling must be positive, got {self.xp_ceiling}")
        for name in ("min_n_eff", "min_xp_std", "min_win_variance", "z"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative, got {getattr(self, name)}")
        if self.min_n_eff <= 0:
            raise ValueError("min_n_eff must be positive (used as a divisor)")

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "PredictionParams":
        """Defaults overlaid with the JSON overrides file, if any."""
        overrides = cfg.load_param_overrides(path)
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            log.warning(f"Ignoring unknown prediction params: {unknown}")
        kwargs = {k: v for k, v in overrides.items() if k in known}
        for k in ("fallback_win_interval", "fallback_xp_interval"):
            if k in kwargs:
                kwargs[k] = tuple(kwargs[k])
        params = replace(cls(), **kwargs)
        params.validate()
        if kwargs:
            log.info(f"Loaded {len(kwargs)} prediction param override(s)")
        return params


# Coefficients of the quick, single-user estimator (no population blend).
QUICK_PARAMS = PredictionParams(
    weapon_blend=0.45,
    map_blend=0.35,
    fatigue_penalty=0.05,
    irritability_penalty=0.06,
    concentration_penalty=0.05,
    xp_pressure_penalty=0.04,
)


# ═══════════════════════════════════════════════════════════════════════════════
# OUTPUT STRUCTURES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Interval:
    low:  float
    high: float

    def contains(self, x: float) -> bool:
        return self.low <= x <= self.high

    @property
    def width(self) -> float:
        return self.high - self.low


@dataclass
class PersonalizedPrediction:
    """Engine output. Rates are 0–1 floats; formatting is the caller's job."""
    predicted_win_rate: float
    base_win_rate:      float
    weapon_win_rate:    float
    map_win_rate:       float
    mental_penalty:     float
    predicted_xp_delta: float
    expected_end_xp:    float
    win_rate_interval:  Interval
    xp_delta_interval:  Interval
    recommend_play:     bool
    advice:             str = ""
    note:               str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Nested JSON-ready mapping, numbers exactly as computed."""
        return asdict(self)

    def to_flat_dict(self, condition: PredictionCondition) -> Dict[str, Any]:
        """Flatten to one CSV row alongside the condition it answers."""
        return {
            "mode":               condition.mode,
            "map_1":              condition.map_1,
            "map_2":              condition.map_2,
            "weapon":             condition.weapon,
            "fatigue":            condition.fatigue,
            "irritability":       condition.irritability,
            "concentration":      condition.concentration,
            "start_xp":           condition.start_xp,
            "predicted_win_rate": self.predicted_win_rate,
            "base_win_rate":      self.base_win_rate,
            "weapon_win_rate":    self.weapon_win_rate,
            "map_win_rate":       self.map_win_rate,
            "mental_penalty":     self.mental_penalty,
            "predicted_xp_delta": self.predicted_xp_delta,
            "expected_end_xp":    self.expected_end_xp,
            "win_rate_low":       self.win_rate_interval.low,
            "win_rate_high":      self.win_rate_interval.high,
            "xp_delta_low":       self.xp_delta_interval.low,
            "xp_delta_high":      self.xp_delta_interval.high,
            "recommend_play":     int(self.recommend_play),
            "advice":             self.advice,
        }


@dataclass
class WinRateEstimate:
    """Output of the quick estimators: win rate only, no XP or intervals."""
    predicted_win_rate: float
    base_win_rate:      float
    weapon_win_rate:    float
    map_win_rate:       float
    mental_penalty:     float
    note:               str = ""


# ═══════════════════════════════════════════════════════════════════════════════
# ENGINE
# ═══════════════════════════════════════════════════════════════════════════════

NEUTRAL_ADVICE = "Not enough history yet, so this is a deliberately cautious estimate."
QUICK_NOTE = "Overall record + weapon/map adjustment − mental/XP correction"
QUICK_EMPTY_NOTE = "Not enough history; showing 50% as the baseline"


def _blend_note(params: PredictionParams) -> str:
    return (
        f"Personal {params.target_weight:.0%} / population {params.other_weight:.0%} blend"
        " + mode/weapon/map adjustment + mental-state correction"
    )


def mental_penalty(condition: PredictionCondition, params: PredictionParams = None) -> float:
    """
    Penalty subtracted from the blended win rate. Monotone in each input and
    bounded by the sum of the four coefficients.
    """
    p = params or PredictionParams()
    fatigue_norm = clamp01((condition.fatigue - 1) / 4.0)
    irritability_norm = clamp01((condition.irritability - 1) / 4.0)
    concentration_norm = clamp01((5 - condition.concentration) / 4.0)
    xp_norm = clamp01(condition.start_xp / p.xp_ceiling)
    return (
        p.fatigue_penalty * fatigue_norm +
        p.irritability_penalty * irritability_norm +
        p.concentration_penalty * concentration_norm +
        p.xp_pressure_penalty * xp_norm
    )


def build_advice(
    recommend_play: bool,
    win_rate: float,
    xp_delta: float,
    condition: PredictionCondition,
) -> str:
    pct = round(win_rate * 1000) / 10
    xp = int(round(xp_delta))
    head = f"Predicted win rate {pct}% · expected XP {xp:+d}."
    if recommend_play:
        return f"{head} This loadout looks worth queueing for {condition.mode}."
    return f"{head} Sitting this rotation out is the safer call."


def neutral_prediction(
    condition: PredictionCondition,
    params: PredictionParams = None,
) -> PersonalizedPrediction:
    """Cold-start answer: coin flip, no XP change, wide intervals, don't play."""
    p = params or PredictionParams()
    return PersonalizedPrediction(
        predicted_win_rate=p.neutral_rate,
        base_win_rate=p.neutral_rate,
        weapon_win_rate=p.neutral_rate,
        map_win_rate=p.neutral_rate,
        mental_penalty=0.0,
        predicted_xp_delta=0.0,
        expected_end_xp=float(condition.start_xp),
        win_rate_interval=Interval(*p.fallback_win_interval),
        xp_delta_interval=Interval(*p.fallback_xp_interval),
        recommend_play=False,
        advice=NEUTRAL_ADVICE,
        note=_blend_note(p),
    )


def predict(
    condition: PredictionCondition,
    training_records: Iterable[MatchRecord],
    target_user_id: Optional[int] = None,
    params: PredictionParams = None,
) -> PersonalizedPrediction:
    """
    Personalized win-rate / XP prediction for one condition.

    Never raises for well-formed inputs: empty or sparse data degrades to the
    population, then to neutral defaults, with correspondingly wide intervals.
    Deterministic for identical inputs.
    """
    p = params or PredictionParams()
    records = list(training_records)
    if not records:
        log.debug("No training records — returning neutral prediction")
        return neutral_prediction(condition, p)

    # ── Weight and partition ──────────────────────────────────────────────────
    weighted = build_weighted_records(records, target_user_id, p.target_weight, p.other_weight)
    by_mode, base_pool = mode_pool(weighted, condition)
    weapon_pool = filter_pool(base_pool, weapon_matches, condition)
    map_pool = filter_pool(base_pool, map_matches, condition)

    # ── Rates ─────────────────────────────────────────────────────────────────
    base = weighted_win_loss(base_pool).rate(default=p.neutral_rate)

    weapon_wl = weighted_win_loss(weapon_pool)
    weapon_rate = smoothed_rate(weapon_wl.wins, weapon_wl.losses, base, p.prior_strength)

    map_wl = weighted_win_loss(map_pool)
    map_rate = smoothed_rate(map_wl.wins, map_wl.losses, base, p.prior_strength)

    penalty = mental_penalty(condition, p)
    win_rate = clamp01(
        base
        + p.weapon_blend * (weapon_rate - base)
        + p.map_blend * (map_rate - base)
        - penalty
    )

    # ── XP delta ──────────────────────────────────────────────────────────────
    xp_mode = weighted_mean_std(xp_values(by_mode))
    xp_weapon = weighted_mean_std(xp_values(weapon_pool))
    xp_map = weighted_mean_std(xp_values(map_pool))
    xp_global = weighted_mean_std(xp_values(base_pool))

    xp_delta = (
        p.xp_mode_weight * xp_mode.mean +
        p.xp_weapon_weight * xp_weapon.mean +
        p.xp_map_weight * xp_map.mean +
        p.xp_global_weight * xp_global.mean +
        (win_rate - 0.5) * p.win_rate_to_xp
    )

    # ── Intervals ─────────────────────────────────────────────────────────────
    n_eff = max(
        p.min_n_eff,
        xp_mode.n_eff + p.n_eff_side_weight * (xp_weapon.n_eff + xp_map.n_eff),
    )
    win_std = math.sqrt(max(win_rate * (1.0 - win_rate), p.min_win_variance) / n_eff)
    win_interval = Interval(
        low=clamp01(win_rate - p.z * win_std),
        high=clamp01(win_rate + p.z * win_std),
    )

    xp_std = max(
        p.min_xp_std,
        p.xp_std_mode_weight * xp_mode.std +
        p.xp_std_weapon_weight * xp_weapon.std +
        p.xp_std_map_weight * xp_map.std +
        p.xp_std_global_weight * xp_global.std,
    )
    xp_interval = Interval(low=xp_delta - p.z * xp_std, high=xp_delta + p.z * xp_std)

    recommend = xp_delta > 0

    log.debug(
        f"pools: mode={len(by_mode)} base={len(base_pool)} weapon={len(weapon_pool)} "
        f"map={len(map_pool)} | base={base:.3f} weapon={weapon_rate:.3f} "
        f"map={map_rate:.3f} penalty={penalty:.3f} n_eff={n_eff:.1f}"
    )

    return PersonalizedPrediction(
        predicted_win_rate=win_rate,
        base_win_rate=base,
        weapon_win_rate=weapon_rate,
        map_win_rate=map_rate,
        mental_penalty=penalty,
        predicted_xp_delta=xp_delta,
        expected_end_xp=condition.start_xp + xp_delta,
        win_rate_interval=win_interval,
        xp_delta_interval=xp_interval,
        recommend_play=recommend,
        advice=build_advice(recommend, win_rate, xp_delta, condition),
        note=_blend_note(p),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# QUICK ESTIMATORS (single user, unweighted)
# ═══════════════════════════════════════════════════════════════════════════════

def predict_win_rate_by_condition(
    records: Sequence[MatchRecord],
    condition: PredictionCondition,
    params: PredictionParams = QUICK_PARAMS,
) -> WinRateEstimate:
    """
    Win rate from the caller's records alone, every record weighted equally.
    Weapon and map subsets are restricted to the condition's mode.
    """
    p = params
    if not records:
        return WinRateEstimate(
            predicted_win_rate=p.neutral_rate,
            base_win_rate=p.neutral_rate,
            weapon_win_rate=p.neutral_rate,
            map_win_rate=p.neutral_rate,
            mental_penalty=0.0,
            note=QUICK_EMPTY_NOTE,
        )

    total_wins = sum(r.wins for r in records)
    total_losses = sum(r.losses for r in records)
    total = total_wins + total_losses
    base = total_wins / total if total > 0 else p.neutral_rate

    in_mode = [r for r in records if r.mode == condition.mode]
    weapon_records = [r for r in in_mode if weapon_matches(r, condition)]
    map_records = [r for r in in_mode if map_matches(r, condition)]

    weapon_rate = smoothed_rate(
        sum(r.wins for r in weapon_records),
        sum(r.losses for r in weapon_records),
        base, p.prior_strength,
    )
    map_rate = smoothed_rate(
        sum(r.wins for r in map_records),
        sum(r.losses for r in map_records),
        base, p.prior_strength,
    )

    penalty = mental_penalty(condition, p)
    pred = clamp01(
        base
        + p.weapon_blend * (weapon_rate - base)
        + p.map_blend * (map_rate - base)
        - penalty
    )
    return WinRateEstimate(
        predicted_win_rate=pred,
        base_win_rate=base,
        weapon_win_rate=weapon_rate,
        map_win_rate=map_rate,
        mental_penalty=penalty,
        note=QUICK_NOTE,
    )


def predict_next_win_rate(
    records: Sequence[MatchRecord],
    params: PredictionParams = QUICK_PARAMS,
) -> WinRateEstimate:
    """Quick estimate for repeating the most recent session's configuration."""
    if not records:
        return predict_win_rate_by_condition([], None, params)
    latest = max(records, key=lambda r: r.sort_key)
    return predict_win_rate_by_condition(records, latest.to_condition(), params)


# ═══════════════════════════════════════════════════════════════════════════════
# OUTPUT FORMATTING
# ═══════════════════════════════════════════════════════════════════════════════

def print_prediction(condition: PredictionCondition, pred: PersonalizedPrediction) -> None:
    """Pretty-print a single prediction."""
    print()
    print("=" * 72)
    print(f"  {condition.mode}  |  {condition.map_1} / {condition.map_2}")
    print(f"  WEAPON: {condition.weapon}  |  START XP: {condition.start_xp}")
    print(f"  STATE:  fatigue {condition.fatigue}  irritability {condition.irritability}"
          f"  concentration {condition.concentration}")
    print("=" * 72)
    wi, xi = pred.win_rate_interval, pred.xp_delta_interval
    print(f"  WIN RATE:   {pred.predicted_win_rate:.1%}  ({wi.low:.1%} – {wi.high:.1%})")
    print(f"  XP DELTA:   {pred.predicted_xp_delta:+.1f}  ({xi.low:+.1f} – {xi.high:+.1f})")
    print(f"  END XP:     {pred.expected_end_xp:.1f}")
    print(f"  RECOMMEND:  {'PLAY' if pred.recommend_play else 'SKIP'}")
    print()
    print(f"  {'COMPONENT':<18} {'RATE':>8}")
    print(f"  {'-'*28}")
    print(f"  {'Base (mode)':<18} {pred.base_win_rate:>8.1%}")
    print(f"  {'Weapon':<18} {pred.weapon_win_rate:>8.1%}")
    print(f"  {'Map':<18} {pred.map_win_rate:>8.1%}")
    print(f"  {'Mental penalty':<18} {-pred.mental_penalty:>+8.1%}")
    print()
    print(f"  {pred.advice}")
    print(f"  ({pred.note})")
    print("=" * 72)
    print()


def predictions_to_csv(
    results: List[Tuple[PredictionCondition, PersonalizedPrediction]],
    path: Path,
) -> None:
    """Write predictions to CSV."""
    if not results:
        return
    df = pd.DataFrame([pred.to_flat_dict(cond) for cond, pred in results])
    validate_output(df, "predictions", strict=True)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)
    log.info(f"Wrote {len(df)} predictions → {path}")


# ═══════════════════════════════════════════════════════════════════════════════
# CLI ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════════════

def main():
    parser = argparse.ArgumentParser(description="X Match personalized win-rate / XP forecast")
    parser.add_argument("--records",  type=Path, default=cfg.RECORDS_CSV)
    parser.add_argument("--user-id",  type=int, default=None)
    parser.add_argument("--mode",     type=str, default="Splat Zones")
    parser.add_argument("--map-1",    type=str, default="Scorch Gorge")
    parser.add_argument("--map-2",    type=str, default="MakoMart")
    parser.add_argument("--weapon",   type=str, default="Splattershot")
    parser.add_argument("--fatigue",       type=int, default=3)
    parser.add_argument("--irritability",  type=int, default=3)
    parser.add_argument("--concentration", type=int, default=3)
    parser.add_argument("--start-xp", type=int, default=2000)
    parser.add_argument("--params",   type=Path, default=None,
                        help="JSON file of coefficient overrides")
    parser.add_argument("--json",     action="store_true", help="Print JSON instead of a table")
    parser.add_argument("--output",   type=Path, default=None)
    args = parser.parse_args()

    try:
        condition = PredictionCondition(
            mode=args.mode, map_1=args.map_1, map_2=args.map_2, weapon=args.weapon,
            fatigue=args.fatigue, irritability=args.irritability,
            concentration=args.concentration, start_xp=args.start_xp,
        )
    except ValueError as exc:
        parser.error(str(exc))

    params = PredictionParams.load(args.params)

    if args.records.exists():
        records = load_match_records(args.records)
        user_id = args.user_id
    else:
        from xm_synthetic import generate_match_history
        log.info(f"{args.records} not found — running demo with synthetic history")
        records = generate_match_history(n_rows=300, n_users=4, seed=7)
        user_id = args.user_id if args.user_id is not None else 1

    pred = predict(condition, records, user_id, params)

    if args.json:
        print(json.dumps(pred.to_dict(), indent=2, ensure_ascii=False))
    else:
        print_prediction(condition, pred)

    if args.output:
        predictions_to_csv([(condition, pred)], args.output)


if __name__ == "__main__":
    main()
