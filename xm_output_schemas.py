"""
X Match Output File Schemas — Centralized schema contract.

Single source of truth for required columns across every CSV the forecaster
reads (match record exports) or writes (predictions, backtest rows,
calibration curves).

Usage:
    from xm_output_schemas import validate_output, OUTPUT_FILE_SCHEMAS

    validate_output(df, "backtest_rows")  # logs a warning on missing cols
"""

import logging
from typing import Dict, List

import pandas as pd

log = logging.getLogger(__name__)

# ── Required column sets per output file ─────────────────────────────────────
# Each key is a logical file name; value is the list of columns that MUST
# exist in the DataFrame before it is written (or after it is read).

OUTPUT_FILE_SCHEMAS: Dict[str, List[str]] = {
    "match_records": [
        "id", "user_id", "played_at", "mode", "map_1", "map_2", "weapon",
        "wins", "losses", "fatigue", "irritability", "concentration",
        "start_xp", "end_xp",
    ],
    "predictions": [
        "mode", "map_1", "map_2", "weapon",
        "predicted_win_rate", "base_win_rate", "weapon_win_rate", "map_win_rate",
        "mental_penalty", "predicted_xp_delta", "expected_end_xp",
        "win_rate_low", "win_rate_high", "xp_delta_low", "xp_delta_high",
        "recommend_play",
    ],
    "backtest_rows": [
        "record_id", "played_at", "mode", "map_1", "map_2", "weapon",
        "predicted_win_rate", "actual_win_rate", "win_rate_abs_error",
        "win_rate_low", "win_rate_high", "win_rate_covered",
        "predicted_xp_delta", "actual_xp_delta", "xp_delta_error",
        "xp_delta_low", "xp_delta_high", "xp_delta_covered",
        "recommend_play", "actual_recommend_success",
    ],
    "backtest_calibration": [
        "bin_lo", "bin_hi", "pred_mean", "n_rows", "actual_mean",
    ],
}


def validate_output(
    df: pd.DataFrame,
    schema_name: str,
    *,
    strict: bool = False,
) -> List[str]:
    """Validate a DataFrame against a named schema.

    Parameters
    ----------
    df : pd.DataFrame
        The DataFrame to validate.
    schema_name : str
        Key into ``OUTPUT_FILE_SCHEMAS``.
    strict : bool
        If *True*, raise ``ValueError`` on any missing columns.
        If *False* (default), log warnings and return the list of missing columns.

    Returns
    -------
    list[str]
        Sorted list of missing required columns (empty if all present).

    Raises
    ------
    KeyError
        If *schema_name* is not defined in ``OUTPUT_FILE_SCHEMAS``.
    ValueError
        If *strict* is True and required columns are missing.
    """
    required = OUTPUT_FILE_SCHEMAS.get(schema_name)
    if required is None:
        raise KeyError(f"Unknown output schema: {schema_name!r}")

    missing = sorted(set(required) - set(df.columns))

    if missing:
        msg = f"Output '{schema_name}' missing required columns: {missing}"
        if strict:
            raise ValueError(msg)
        log.warning(msg)

    return missing


def completeness_report(
    dataframes: Dict[str, pd.DataFrame],
) -> pd.DataFrame:
    """Summarize how well each frame about to be written meets its schema.

    Written into the backtest summary JSON. Names without a schema are
    skipped. ``null_pct`` averages over the required columns that exist; a
    non-empty frame with none of them counts as 100% null.
    """
    report = []
    for name, df in dataframes.items():
        if name not in OUTPUT_FILE_SCHEMAS:
            continue
        required = OUTPUT_FILE_SCHEMAS[name]
        missing = validate_output(df, name)
        present = [c for c in required if c in df.columns]

        if df.empty:
            null_pct = 0.0
        elif not present:
            null_pct = 100.0
        else:
            null_pct = round(float(df[present].isna().to_numpy().mean()) * 100, 2)

        report.append({
            "output":        name,
            "rows":          int(len(df)),
            "required_cols": len(required),
            "present_cols":  len(present),
            "missing_cols":  len(missing),
            "missing_list":  ", ".join(missing),
            "null_pct":      null_pct,
        })

    return pd.DataFrame(report)
