#!/usr/bin/env python3
"""
xm_backtester.py — Walk-Forward Prediction Backtester

Replays one player's recorded sessions in chronological order as if each were
predicted right before it was played, using ONLY records that existed at that
moment (every user's, not just the player's). Produces per-session prediction
vs actual rows, error/coverage metrics, and a calibration curve.

THE LEAKAGE PROBLEM
─────────────────────────────────────────────────────────────────────────────
Predicting session S with a training set that contains S (or anything played
after it) flatters every metric. For each evaluated session we train on the
records strictly before it in (played_at, id) order: same-timestamp records
only count when their id is smaller, so the ordering is total and repeatable.

All records are sorted once; each training set is a prefix of that list.
The engine itself is still re-run per evaluated session, so the cost grows
with (evaluated sessions × history size). A warning is logged past
BACKTEST_SCALE_WARNING records.

OUTPUTS
─────────────────────────────────────────────────────────────────────────────
data/backtest_rows_u{USER}_YYYYMMDD.csv         — per-session prediction vs actual
data/backtest_calibration_u{USER}_YYYYMMDD.csv  — predicted win-rate bins vs actual
data/backtest_summary_u{USER}_YYYYMMDD.json     — summary metrics

METRICS COMPUTED
─────────────────────────────────────────────────────────────────────────────
MAE / RMSE      : win rate (0–1) and XP delta
Coverage        : share of actuals inside the predicted interval
Precision       : share of "play" recommendations that actually gained XP
r²              : squared Pearson correlation, predicted vs actual

Usage:
    python xm_backtester.py --user-id 1
    python xm_backtester.py --records data/match_records.csv --user-id 1 --warmup 8 --limit 200
"""

import argparse
import bisect
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import numpy as np
import pandas as pd
from scipy import stats as scipy_stats

import xm_config as cfg
from xm_output_schemas import OUTPUT_FILE_SCHEMAS, completeness_report, validate_output
from xm_prediction_model import PredictionParams, predict
from xm_records import MatchRecord, load_match_records

log = logging.getLogger(__name__)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


class BacktestError(ValueError):
    """The backtest could not produce any evaluation rows."""


class InsufficientHistoryError(BacktestError):
    """The player has too few sessions to evaluate past the warmup."""

    def __init__(self, required: int, actual: int):
        self.required = required
        self.actual = actual
        super().__init__(
            f"Not enough history to evaluate (required > {required}, actual {actual})"
        )


def clamp_warmup(warmup: Optional[int]) -> int:
    if warmup is None:
        return cfg.WARMUP_DEFAULT
    return max(cfg.WARMUP_MIN, min(cfg.WARMUP_MAX, int(warmup)))


def clamp_limit(limit: Optional[int]) -> int:
    if limit is None:
        return cfg.LIMIT_DEFAULT
    return max(cfg.LIMIT_MIN, min(cfg.LIMIT_MAX, int(limit)))


# ═══════════════════════════════════════════════════════════════════════════════
# CONFIG & DATA STRUCTURES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class BacktestConfig:
    """Controls backtest behavior. warmup/limit are clamped on use."""
    warmup:            int = cfg.WARMUP_DEFAULT   # own sessions skipped before evaluating
    limit:             int = cfg.LIMIT_DEFAULT    # most recent rows kept
    calibration_bins:  int = cfg.CALIBRATION_BINS
    top_n_display:     int = 15
    records_path:      Path = cfg.RECORDS_CSV
    params_path:       Optional[Path] = None      # coefficient overrides JSON
    write_outputs:     bool = True


@dataclass
class BacktestRow:
    """One evaluated session: prediction made before it vs what happened."""
    record_id:           int
    played_at:           str
    mode:                str
    map_1:               str
    map_2:               str
    weapon:              str
    predicted_win_rate:  float
    actual_win_rate:     float
    win_rate_abs_error:  float
    win_rate_low:        float
    win_rate_high:       float
    win_rate_covered:    bool
    predicted_xp_delta:  float
    actual_xp_delta:     float
    xp_delta_error:      float    # predicted − actual
    xp_delta_low:        float
    xp_delta_high:       float
    xp_delta_covered:    bool
    recommend_play:      bool
    actual_recommend_success: bool
    training_size:       int = 0
    advice:              str = ""
    note:                str = ""


@dataclass
class BacktestSummary:
    n_rows:                   int = 0
    win_rate_mae:             float = 0.0
    win_rate_rmse:            float = 0.0
    xp_delta_mae:             float = 0.0
    xp_delta_rmse:            float = 0.0
    win_rate_coverage:        float = 0.0
    xp_delta_coverage:        float = 0.0
    recommendation_precision: float = 0.0
    n_recommended:            int = 0
    avg_predicted_xp_delta:   float = 0.0
    avg_actual_xp_delta:      float = 0.0
    win_rate_r2:              float = 0.0
    xp_delta_r2:              float = 0.0
    n_skipped:                int = 0     # evaluated sessions with a too-small training set

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class BacktestReport:
    target_user_id: int
    warmup:         int
    limit:          int
    total_sessions: int                     # the player's sessions, before warmup
    rows:           List[BacktestRow] = field(default_factory=list)
    summary:        BacktestSummary = field(default_factory=BacktestSummary)

    @property
    def evaluated_count(self) -> int:
        return len(self.rows)

    def rows_frame(self) -> pd.DataFrame:
        if not self.rows:
            return pd.DataFrame(columns=OUTPUT_FILE_SCHEMAS["backtest_rows"])
        return pd.DataFrame([asdict(r) for r in self.rows])

    def to_dict(self) -> Dict:
        return {
            "target_user_id":  self.target_user_id,
            "warmup":          self.warmup,
            "limit":           self.limit,
            "total_sessions":  self.total_sessions,
            "evaluated_count": self.evaluated_count,
            "summary":         self.summary.to_dict(),
        }


# ═══════════════════════════════════════════════════════════════════════════════
# METRICS COMPUTATION
# ═══════════════════════════════════════════════════════════════════════════════

def _r2(predicted: np.ndarray, actual: np.ndarray) -> float:
    """Squared Pearson r; 0.0 when undefined (fewer than 3 rows, constant input)."""
    if len(predicted) < 3 or np.ptp(predicted) == 0 or np.ptp(actual) == 0:
        return 0.0
    corr, _ = scipy_stats.pearsonr(predicted, actual)
    return float(corr ** 2) if not np.isnan(corr) else 0.0


def compute_summary(rows: List[BacktestRow], n_skipped: int = 0) -> BacktestSummary:
    """Aggregate error, coverage and recommendation metrics over evaluation rows."""
    s = BacktestSummary(n_rows=len(rows), n_skipped=n_skipped)
    if not rows:
        return s

    pred_wr   = np.array([r.predicted_win_rate for r in rows], dtype=float)
    act_wr    = np.array([r.actual_win_rate for r in rows], dtype=float)
    pred_xp   = np.array([r.predicted_xp_delta for r in rows], dtype=float)
    act_xp    = np.array([r.actual_xp_delta for r in rows], dtype=float)
    xp_err    = pred_xp - act_xp
    recommend = np.array([r.recommend_play for r in rows], dtype=bool)
    success   = np.array([r.actual_recommend_success for r in rows], dtype=bool)

    # ── Error ─────────────────────────────────────────────────────────────────
    s.win_rate_mae  = float(np.mean(np.abs(pred_wr - act_wr)))
    s.win_rate_rmse = float(np.sqrt(np.mean((pred_wr - act_wr) ** 2)))
    s.xp_delta_mae  = float(np.mean(np.abs(xp_err)))
    s.xp_delta_rmse = float(np.sqrt(np.mean(xp_err ** 2)))

    # ── Coverage ──────────────────────────────────────────────────────────────
    s.win_rate_coverage = float(np.mean([r.win_rate_covered for r in rows]))
    s.xp_delta_coverage = float(np.mean([r.xp_delta_covered for r in rows]))

    # ── Recommendations ───────────────────────────────────────────────────────
    s.n_recommended = int(recommend.sum())
    s.recommendation_precision = float((recommend & success).sum() / max(1, s.n_recommended))

    s.avg_predicted_xp_delta = float(np.mean(pred_xp))
    s.avg_actual_xp_delta    = float(np.mean(act_xp))

    # ── Correlation ───────────────────────────────────────────────────────────
    s.win_rate_r2 = _r2(pred_wr, act_wr)
    s.xp_delta_r2 = _r2(pred_xp, act_xp)
    return s


def build_calibration_curve(rows: pd.DataFrame, n_bins: int = cfg.CALIBRATION_BINS) -> pd.DataFrame:
    """
    Bin evaluation rows by predicted win rate and compare each bin's mean
    prediction with its mean actual win rate. Bins with fewer than 3 rows are
    dropped. A calibrated model tracks the diagonal.
    """
    cols = OUTPUT_FILE_SCHEMAS["backtest_calibration"]
    df = rows.dropna(subset=["predicted_win_rate", "actual_win_rate"]).copy()
    if len(df) < 3:
        return pd.DataFrame(columns=cols)

    df["wr_bin"] = pd.cut(df["predicted_win_rate"].astype(float), bins=n_bins, labels=False)

    out = []
    for bin_id in range(n_bins):
        bin_df = df[df["wr_bin"] == bin_id]
        if len(bin_df) < 3:
            continue
        out.append({
            "bin_lo":      round(float(bin_df["predicted_win_rate"].min()), 3),
            "bin_hi":      round(float(bin_df["predicted_win_rate"].max()), 3),
            "pred_mean":   round(float(bin_df["predicted_win_rate"].mean()), 4),
            "n_rows":      int(len(bin_df)),
            "actual_mean": round(float(bin_df["actual_win_rate"].mean()), 4),
        })

    if not out:
        return pd.DataFrame(columns=cols)
    return pd.DataFrame(out, columns=cols)


# ═══════════════════════════════════════════════════════════════════════════════
# MAIN BACKTEST LOOP
# ═══════════════════════════════════════════════════════════════════════════════

def _evaluate(current: MatchRecord, train: List[MatchRecord], target_user_id: int,
              params: PredictionParams) -> BacktestRow:
    pred = predict(current.to_condition(), train, target_user_id, params)
    actual_wr = current.win_rate
    actual_xp = float(current.xp_delta)
    return BacktestRow(
        record_id=current.id,
        played_at=current.played_at.isoformat(),
        mode=current.mode,
        map_1=current.map_1,
        map_2=current.map_2,
        weapon=current.weapon,
        predicted_win_rate=pred.predicted_win_rate,
        actual_win_rate=actual_wr,
        win_rate_abs_error=abs(pred.predicted_win_rate - actual_wr),
        win_rate_low=pred.win_rate_interval.low,
        win_rate_high=pred.win_rate_interval.high,
        win_rate_covered=pred.win_rate_interval.contains(actual_wr),
        predicted_xp_delta=pred.predicted_xp_delta,
        actual_xp_delta=actual_xp,
        xp_delta_error=pred.predicted_xp_delta - actual_xp,
        xp_delta_low=pred.xp_delta_interval.low,
        xp_delta_high=pred.xp_delta_interval.high,
        xp_delta_covered=pred.xp_delta_interval.contains(actual_xp),
        recommend_play=pred.recommend_play,
        actual_recommend_success=actual_xp > 0,
        training_size=len(train),
        advice=pred.advice,
        note=pred.note,
    )


def run_backtest(
    records: Iterable[MatchRecord],
    target_user_id: int,
    warmup: int = cfg.WARMUP_DEFAULT,
    limit: int = cfg.LIMIT_DEFAULT,
    params: PredictionParams = None,
) -> BacktestReport:
    """
    Walk-forward evaluation of the engine on one player's sessions.

    Raises InsufficientHistoryError when the player has ≤ warmup sessions and
    BacktestError when no session could be evaluated.
    """
    params = params or PredictionParams()
    warmup = clamp_warmup(warmup)
    limit = clamp_limit(limit)

    ordered = sorted(records, key=lambda r: r.sort_key)
    keys = [r.sort_key for r in ordered]
    target = [r for r in ordered if r.user_id == target_user_id]

    if len(target) <= warmup:
        raise InsufficientHistoryError(required=warmup, actual=len(target))

    if len(ordered) > cfg.BACKTEST_SCALE_WARNING:
        log.warning(
            f"Backtesting over {len(ordered):,} records re-runs the engine on every "
            f"prefix; expect this to be slow"
        )

    n_eval = len(target) - warmup
    log.info(f"Backtesting user {target_user_id}: {n_eval:,} sessions "
             f"(warmup={warmup}, history={len(ordered):,} records)")

    rows: List[BacktestRow] = []
    skipped = 0
    for i, current in enumerate(target[warmup:], start=1):
        if i % 200 == 0:
            log.info(f"  Progress: {i:,}/{n_eval:,}  ({i/n_eval*100:.0f}%)")

        # Everything strictly before (played_at, id) of the current session
        cut = bisect.bisect_left(keys, current.sort_key)
        train = ordered[:cut]
        if len(train) < warmup:
            skipped += 1
            continue
        rows.append(_evaluate(current, train, target_user_id, params))

    recent = rows[-limit:]
    if not recent:
        raise BacktestError("Backtest produced no evaluation rows")

    summary = compute_summary(recent, n_skipped=skipped)
    log.info(f"Backtest complete: {len(recent):,} rows kept | "
             f"skipped (short training set): {skipped}")

    return BacktestReport(
        target_user_id=target_user_id,
        warmup=warmup,
        limit=limit,
        total_sessions=len(target),
        rows=recent,
        summary=summary,
    )


# ═══════════════════════════════════════════════════════════════════════════════
# REPORT GENERATION
# ═══════════════════════════════════════════════════════════════════════════════

def print_report(report: BacktestReport, top_n: int = 15) -> None:
    """Print backtest summary and the most recent rows to stdout."""
    s = report.summary
    print()
    print("=" * 96)
    print(f"  BACKTEST RESULTS — user {report.target_user_id}")
    print(f"  {report.evaluated_count:,} sessions evaluated  |  "
          f"{report.total_sessions:,} recorded  |  warmup {report.warmup}  |  limit {report.limit}")
    print("=" * 96)
    print(f"  {'METRIC':<28} {'WIN RATE':>12} {'XP DELTA':>12}")
    print("  " + "-" * 54)
    print(f"  {'MAE':<28} {s.win_rate_mae:>12.4f} {s.xp_delta_mae:>12.2f}")
    print(f"  {'RMSE':<28} {s.win_rate_rmse:>12.4f} {s.xp_delta_rmse:>12.2f}")
    print(f"  {'Interval coverage':<28} {s.win_rate_coverage:>11.1%} {s.xp_delta_coverage:>11.1%}")
    print(f"  {'r²':<28} {s.win_rate_r2:>12.4f} {s.xp_delta_r2:>12.4f}")
    print()
    print(f"  Recommended {s.n_recommended} / {s.n_rows}  |  "
          f"precision {s.recommendation_precision:.1%}  |  "
          f"avg XP predicted {s.avg_predicted_xp_delta:+.1f} vs actual {s.avg_actual_xp_delta:+.1f}")
    print()

    if top_n > 0 and report.rows:
        print(f"  {'ID':>6} {'PLAYED':<17} {'MODE':<14} {'WEAPON':<20} "
              f"{'P(WIN)':>7} {'ACT':>6} {'P(XP)':>8} {'ACT XP':>7} {'REC':>4}")
        print("  " + "-" * 92)
        for r in report.rows[-top_n:]:
            flag = "✓" if r.recommend_play and r.actual_recommend_success else (
                "✗" if r.recommend_play else "")
            print(
                f"  {r.record_id:>6} {r.played_at[:16]:<17} {r.mode[:14]:<14} "
                f"{r.weapon[:20]:<20} {r.predicted_win_rate:>7.3f} {r.actual_win_rate:>6.3f} "
                f"{r.predicted_xp_delta:>+8.1f} {r.actual_xp_delta:>+7.0f} {flag:>4}"
            )
    print("=" * 96)
    print()


def write_report(
    report: BacktestReport,
    output_dir: Path = cfg.DATA_DIR,
    n_bins: int = cfg.CALIBRATION_BINS,
) -> Dict[str, Path]:
    """Write rows, calibration curve and summary. Returns paths by output name."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    today = datetime.now().strftime("%Y%m%d")
    tag = f"u{report.target_user_id}_{today}"
    outputs: Dict[str, Path] = {}

    rows_df = report.rows_frame()
    validate_output(rows_df, "backtest_rows", strict=True)
    rows_path = output_dir / f"backtest_rows_{tag}.csv"
    rows_df.to_csv(rows_path, index=False)
    outputs["rows"] = rows_path
    log.info(f"Rows → {rows_path}  ({len(rows_df):,} rows)")

    calib_df = build_calibration_curve(rows_df, n_bins)
    if not calib_df.empty:
        calib_path = output_dir / f"backtest_calibration_{tag}.csv"
        calib_df.to_csv(calib_path, index=False)
        outputs["calibration"] = calib_path
        log.info(f"Calibration → {calib_path}")

    completeness = completeness_report({
        "backtest_rows":        rows_df,
        "backtest_calibration": calib_df,
    })
    for entry in completeness.to_dict("records"):
        log.info(f"  {entry['output']:<22} rows={entry['rows']:<5} "
                 f"missing={entry['missing_cols']}  null={entry['null_pct']:.1f}%")

    summary = report.to_dict()
    summary["completeness"] = completeness.to_dict("records")
    summary["generated_at"] = datetime.now().isoformat()
    summary_path = output_dir / f"backtest_summary_{tag}.json"
    with open(summary_path, "w") as f:
        json.dump(summary, f, indent=2)
    outputs["summary"] = summary_path
    log.info(f"Summary → {summary_path}")

    return outputs


# ═══════════════════════════════════════════════════════════════════════════════
# ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════════════

def run(
    target_user_id: int,
    config: BacktestConfig = None,
    records: Optional[Iterable[MatchRecord]] = None,
    output_dir: Path = cfg.DATA_DIR,
) -> Dict[str, Path]:
    """Full backtest pipeline. Returns paths to output files (empty when not writing)."""
    config = config or BacktestConfig()
    if records is None:
        records = load_match_records(config.records_path)
    params = PredictionParams.load(config.params_path)

    report = run_backtest(records, target_user_id, config.warmup, config.limit, params)
    print_report(report, config.top_n_display)

    if not config.write_outputs:
        return {}
    return write_report(report, output_dir, config.calibration_bins)


def main():
    parser = argparse.ArgumentParser(description="X Match walk-forward backtester")
    parser.add_argument("--records",    type=Path, default=cfg.RECORDS_CSV)
    parser.add_argument("--user-id",    type=int, required=True)
    parser.add_argument("--warmup",     type=int, default=cfg.WARMUP_DEFAULT)
    parser.add_argument("--limit",      type=int, default=cfg.LIMIT_DEFAULT)
    parser.add_argument("--bins",       type=int, default=cfg.CALIBRATION_BINS)
    parser.add_argument("--params",     type=Path, default=None,
                        help="JSON file of coefficient overrides")
    parser.add_argument("--output-dir", type=Path, default=cfg.DATA_DIR)
    parser.add_argument("--top-n",      type=int, default=15)
    parser.add_argument("--no-write",   action="store_true",
                        help="Print the report without writing files")
    args = parser.parse_args()

    config = BacktestConfig(
        warmup           = args.warmup,
        limit            = args.limit,
        calibration_bins = args.bins,
        top_n_display    = args.top_n,
        records_path     = args.records,
        params_path      = args.params,
        write_outputs    = not args.no_write,
    )

    try:
        run(args.user_id, config, output_dir=args.output_dir)
    except BacktestError as exc:
        log.error(str(exc))
        raise SystemExit(1)


if __name__ == "__main__":
    main()
