"""
tests/test_backtester.py — Tests for xm_backtester.py

Validates:
  - warmup boundary (warmup sessions → error, warmup + 1 → exactly one row)
  - warmup / limit clamping and most-recent-row retention
  - zero lookahead: training sets only contain earlier (played_at, id) records
  - metric ranges over a synthetic history
  - calibration curve shape, report files
"""

import json
from datetime import datetime, timedelta, timezone

import numpy as np
import pandas as pd
import pytest

from xm_backtester import (
    BacktestConfig,
    BacktestError,
    BacktestRow,
    InsufficientHistoryError,
    build_calibration_curve,
    clamp_limit,
    clamp_warmup,
    compute_summary,
    run,
    run_backtest,
    write_report,
)
from xm_output_schemas import OUTPUT_FILE_SCHEMAS, validate_output
from xm_records import MatchRecord, save_match_records
from xm_synthetic import generate_match_history

T0 = datetime(2025, 5, 1, 12, tzinfo=timezone.utc)


def _rec(rid, user_id=1, hours=None, wins=6, losses=4, start_xp=2000, end_xp=2020, **kw):
    return MatchRecord(
        id=rid, user_id=user_id,
        played_at=T0 + timedelta(hours=rid if hours is None else hours),
        mode="Splat Zones", map_1="Scorch Gorge", map_2="MakoMart", weapon="Splattershot",
        wins=wins, losses=losses, start_xp=start_xp, end_xp=end_xp, **kw,
    )


def _row(pred_wr=0.5, act_wr=0.5, pred_xp=0.0, act_xp=0.0, recommend=False, **kw):
    defaults = dict(
        record_id=1, played_at="2025-05-01T12:00:00+00:00", mode="Splat Zones",
        map_1="Scorch Gorge", map_2="MakoMart", weapon="Splattershot",
        predicted_win_rate=pred_wr, actual_win_rate=act_wr,
        win_rate_abs_error=abs(pred_wr - act_wr), win_rate_low=pred_wr - 0.1,
        win_rate_high=pred_wr + 0.1, win_rate_covered=abs(pred_wr - act_wr) <= 0.1,
        predicted_xp_delta=pred_xp, actual_xp_delta=act_xp, xp_delta_error=pred_xp - act_xp,
        xp_delta_low=pred_xp - 40, xp_delta_high=pred_xp + 40,
        xp_delta_covered=abs(pred_xp - act_xp) <= 40,
        recommend_play=recommend, actual_recommend_success=act_xp > 0,
    )
    defaults.update(kw)
    return BacktestRow(**defaults)


@pytest.fixture(scope="module")
def history():
    return generate_match_history(n_rows=120, n_users=2, seed=3)


# ── Bounds ────────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("raw, expected", [(None, 6), (1, 3), (3, 3), (12, 12), (99, 30)])
def test_clamp_warmup(raw, expected):
    assert clamp_warmup(raw) == expected


@pytest.mark.parametrize("raw, expected", [(None, 120), (5, 20), (200, 200), (10_000, 500)])
def test_clamp_limit(raw, expected):
    assert clamp_limit(raw) == expected


# ── Warmup boundary ───────────────────────────────────────────────────────────

class TestWarmupBoundary:
    def test_exactly_warmup_sessions_raises(self):
        recs = [_rec(i) for i in range(1, 7)]
        with pytest.raises(InsufficientHistoryError) as exc_info:
            run_backtest(recs, target_user_id=1, warmup=6)
        assert exc_info.value.required == 6
        assert exc_info.value.actual == 6
        assert isinstance(exc_info.value, BacktestError)
        assert isinstance(exc_info.value, ValueError)

    def test_warmup_plus_one_gives_one_row(self):
        recs = [_rec(i) for i in range(1, 8)]
        report = run_backtest(recs, target_user_id=1, warmup=6)
        assert report.evaluated_count == 1
        assert report.rows[0].record_id == 7
        assert report.rows[0].training_size == 6

    def test_unknown_user_raises(self):
        with pytest.raises(InsufficientHistoryError):
            run_backtest([_rec(i) for i in range(1, 20)], target_user_id=42)

    def test_warmup_is_clamped(self):
        recs = [_rec(i) for i in range(1, 5)]
        report = run_backtest(recs, target_user_id=1, warmup=1)
        assert report.warmup == 3
        assert report.evaluated_count == 1


# ── Leakage ───────────────────────────────────────────────────────────────────

class TestZeroLookahead:
    def test_training_size_grows_with_position(self):
        recs = [_rec(i) for i in range(1, 13)]
        report = run_backtest(recs, target_user_id=1, warmup=3)
        assert [r.training_size for r in report.rows] == list(range(3, 12))

    def test_input_order_does_not_matter(self):
        recs = [_rec(i) for i in range(1, 13)]
        a = run_backtest(recs, 1, warmup=3)
        b = run_backtest(list(reversed(recs)), 1, warmup=3)
        assert [r.record_id for r in a.rows] == [r.record_id for r in b.rows]
        assert a.summary == b.summary

    def test_same_timestamp_ties_broken_by_id(self):
        recs = [_rec(i) for i in range(1, 5)] + [_rec(6, hours=10), _rec(5, hours=10)]
        report = run_backtest(recs, 1, warmup=3)
        by_id = {r.record_id: r.training_size for r in report.rows}
        assert by_id[5] == 4
        assert by_id[6] == 5

    def test_other_users_history_counts_toward_training(self):
        own = [_rec(i, hours=i * 2) for i in range(1, 6)]
        others = [_rec(100 + i, user_id=2, hours=i * 2 - 1) for i in range(1, 6)]
        report = run_backtest(own + others, 1, warmup=3)
        # own #4 at hour 8: own 1..3 plus others at hours 1, 3, 5, 7
        assert report.rows[0].record_id == 4
        assert report.rows[0].training_size == 7

    def test_future_records_do_not_leak(self):
        base = [_rec(i) for i in range(1, 8)]
        future = [_rec(200, user_id=2, hours=500, wins=0, losses=10)]
        a = run_backtest(base, 1, warmup=6)
        b = run_backtest(base + future, 1, warmup=6)
        assert a.rows[0].predicted_win_rate == b.rows[0].predicted_win_rate


# ── Limit ─────────────────────────────────────────────────────────────────────

def test_limit_keeps_most_recent_rows():
    recs = [_rec(i) for i in range(1, 31)]
    report = run_backtest(recs, 1, warmup=3, limit=5)
    assert report.limit == 20
    assert report.evaluated_count == 20
    assert report.rows[-1].record_id == 30
    assert report.rows[0].record_id == 11
    assert report.total_sessions == 30


# ── Metrics ───────────────────────────────────────────────────────────────────

class TestMetrics:
    def test_ranges_on_synthetic_history(self, history):
        report = run_backtest(history, target_user_id=1, warmup=6, limit=40)
        s = report.summary
        assert s.n_rows == report.evaluated_count == 40
        for v in (s.win_rate_coverage, s.xp_delta_coverage, s.recommendation_precision,
                  s.win_rate_r2, s.xp_delta_r2, s.win_rate_mae):
            assert 0.0 <= v <= 1.0
        assert s.win_rate_rmse >= s.win_rate_mae
        assert s.xp_delta_rmse >= s.xp_delta_mae >= 0.0
        assert 0 <= s.n_recommended <= s.n_rows
        for r in report.rows:
            assert r.win_rate_low <= r.predicted_win_rate <= r.win_rate_high
            assert r.win_rate_abs_error == pytest.approx(abs(r.predicted_win_rate - r.actual_win_rate))
            assert r.xp_delta_error == pytest.approx(r.predicted_xp_delta - r.actual_xp_delta)

    def test_summary_values(self):
        rows = [
            _row(0.6, 0.5, 10.0, 20.0, recommend=True),
            _row(0.4, 0.6, 5.0, -15.0, recommend=True),
            _row(0.5, 0.5, -8.0, -8.0, recommend=False),
        ]
        s = compute_summary(rows)
        assert s.win_rate_mae == pytest.approx((0.1 + 0.2 + 0.0) / 3)
        assert s.win_rate_rmse == pytest.approx(np.sqrt((0.01 + 0.04) / 3))
        assert s.xp_delta_mae == pytest.approx((10 + 20 + 0) / 3)
        assert s.n_recommended == 2
        assert s.recommendation_precision == pytest.approx(0.5)
        assert s.win_rate_coverage == pytest.approx(2 / 3)
        assert s.avg_predicted_xp_delta == pytest.approx(7 / 3)
        assert s.avg_actual_xp_delta == pytest.approx(-1.0)

    def test_precision_zero_when_nothing_recommended(self):
        s = compute_summary([_row(act_xp=30.0), _row(act_xp=-5.0)])
        assert s.n_recommended == 0
        assert s.recommendation_precision == 0.0

    def test_r2_zero_for_constant_predictions(self):
        s = compute_summary([_row(0.5, a) for a in (0.1, 0.6, 0.9, 0.3)])
        assert s.win_rate_r2 == 0.0

    def test_r2_perfect_linear(self):
        s = compute_summary([_row(p, p * 0.5 + 0.1) for p in (0.2, 0.4, 0.6, 0.8)])
        assert s.win_rate_r2 == pytest.approx(1.0)

    def test_empty_summary(self):
        assert compute_summary([]).n_rows == 0


# ── Reporting ─────────────────────────────────────────────────────────────────

class TestReporting:
    def test_rows_frame_matches_schema(self, history):
        report = run_backtest(history, 2, warmup=10)
        df = report.rows_frame()
        assert validate_output(df, "backtest_rows") == []
        assert len(df) == report.evaluated_count

    def test_calibration_curve(self):
        df = pd.DataFrame({
            "predicted_win_rate": np.linspace(0.3, 0.7, 40),
            "actual_win_rate": np.linspace(0.2, 0.8, 40),
        })
        curve = build_calibration_curve(df, n_bins=4)
        assert list(curve.columns) == OUTPUT_FILE_SCHEMAS["backtest_calibration"]
        assert len(curve) == 4
        assert curve["n_rows"].sum() == 40
        assert curve["pred_mean"].is_monotonic_increasing

    def test_calibration_drops_sparse_bins(self):
        df = pd.DataFrame({
            "predicted_win_rate": [0.1, 0.1, 0.1, 0.1, 0.9],
            "actual_win_rate":    [0.0, 0.2, 0.1, 0.3, 1.0],
        })
        curve = build_calibration_curve(df, n_bins=2)
        assert len(curve) == 1
        assert curve.iloc[0]["n_rows"] == 4

    def test_calibration_too_few_rows(self):
        df = pd.DataFrame({"predicted_win_rate": [0.5], "actual_win_rate": [1.0]})
        assert build_calibration_curve(df).empty

    def test_write_report(self, history, tmp_path):
        report = run_backtest(history, 1, warmup=6)
        outputs = write_report(report, tmp_path, n_bins=5)
        assert outputs["rows"].exists()
        assert outputs["summary"].exists()
        rows = pd.read_csv(outputs["rows"])
        assert len(rows) == report.evaluated_count
        summary = json.loads(outputs["summary"].read_text())
        assert summary["target_user_id"] == 1
        assert summary["evaluated_count"] == report.evaluated_count
        assert summary["summary"]["n_rows"] == report.evaluated_count

    def test_write_report_records_completeness(self, history, tmp_path):
        report = run_backtest(history, 1, warmup=6)
        outputs = write_report(report, tmp_path, n_bins=5)
        summary = json.loads(outputs["summary"].read_text())
        by_output = {c["output"]: c for c in summary["completeness"]}
        assert set(by_output) == {"backtest_rows", "backtest_calibration"}
        rows = by_output["backtest_rows"]
        assert rows["rows"] == report.evaluated_count
        assert rows["missing_cols"] == 0
        assert rows["present_cols"] == len(OUTPUT_FILE_SCHEMAS["backtest_rows"])


# ── Pipeline ──────────────────────────────────────────────────────────────────

class TestRun:
    def test_config_drives_backtest_and_outputs(self, history, tmp_path):
        config = BacktestConfig(warmup=8, limit=20, calibration_bins=4, top_n_display=0)
        outputs = run(1, config, records=history, output_dir=tmp_path)
        assert {"rows", "summary"} <= set(outputs)
        summary = json.loads(outputs["summary"].read_text())
        assert summary["warmup"] == 8
        assert summary["limit"] == 20
        assert summary["evaluated_count"] <= 20
        rows = pd.read_csv(outputs["rows"])
        assert len(rows) == summary["evaluated_count"]

    def test_out_of_range_config_is_clamped(self, history, tmp_path):
        config = BacktestConfig(warmup=1, limit=5, top_n_display=0)
        outputs = run(1, config, records=history, output_dir=tmp_path)
        summary = json.loads(outputs["summary"].read_text())
        assert summary["warmup"] == 3
        assert summary["limit"] == 20

    def test_no_write_leaves_directory_empty(self, history, tmp_path):
        config = BacktestConfig(write_outputs=False, top_n_display=0)
        assert run(1, config, records=history, output_dir=tmp_path) == {}
        assert list(tmp_path.iterdir()) == []

    def test_records_loaded_from_config_path(self, history, tmp_path):
        path = save_match_records(history, tmp_path / "records.csv")
        out_dir = tmp_path / "out"
        config = BacktestConfig(records_path=path, top_n_display=0)
        outputs = run(2, config, output_dir=out_dir)
        summary = json.loads(outputs["summary"].read_text())
        assert summary["target_user_id"] == 2
        assert summary["warmup"] == 6

    def test_insufficient_history_propagates(self, tmp_path):
        config = BacktestConfig(warmup=6, top_n_display=0)
        records = [_rec(i) for i in range(1, 7)]
        with pytest.raises(InsufficientHistoryError):
            run(1, config, records=records, output_dir=tmp_path)
        assert list(tmp_path.iterdir()) == []
