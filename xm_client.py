"""
X Match Forecaster — Record Store HTTP Client
Thin fetch layer with retry/backoff over the record store's JSON API.
No prediction logic here.

    python xm_client.py --output data/match_records.csv
    python xm_client.py --user-id 3 --output data/user3.csv
"""

import argparse
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

from xm_config import (
    API_BASE_URL,
    API_TOKEN,
    DEFAULT_HEADERS,
    MAX_RETRIES,
    RECORDS_CSV,
    REQUEST_TIMEOUT,
    RETRY_BACKOFF,
    RETRY_INITIAL_DELAY,
)
from xm_records import MatchRecord, record_from_api_row, save_match_records

log = logging.getLogger(__name__)

ALL_SESSIONS_PATH  = "/api/admin/sessions"
USER_SESSIONS_PATH = "/api/sessions"


def _headers(token: Optional[str]) -> Dict[str, str]:
    headers = dict(DEFAULT_HEADERS)
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def fetch_with_retry(
    url: str,
    params: Optional[Dict[str, Any]] = None,
    token: Optional[str] = None,
    timeout: int = REQUEST_TIMEOUT,
) -> Any:
    """
    GET a URL with exponential backoff retry.
    Raises RuntimeError if all attempts fail.
    """
    delay = RETRY_INITIAL_DELAY
    last_exc: Exception = RuntimeError("No attempts made")

    for attempt in range(1, MAX_RETRIES + 1):
        try:
            resp = requests.get(url, params=params, headers=_headers(token), timeout=timeout)
            resp.raise_for_status()
            return resp.json()
        except (requests.RequestException, ValueError) as exc:
            last_exc = exc
            if attempt < MAX_RETRIES:
                log.warning(f"Attempt {attempt}/{MAX_RETRIES} failed for {url}: {exc} — retrying in {delay}s")
                time.sleep(delay)
                delay *= RETRY_BACKOFF
            else:
                log.error(f"All {MAX_RETRIES} attempts failed for {url}: {exc}")

    raise RuntimeError(f"fetch_with_retry failed after {MAX_RETRIES} attempts: {last_exc}") from last_exc


def _rows_to_records(rows: Any, source: str) -> List[MatchRecord]:
    if not isinstance(rows, list):
        raise RuntimeError(f"Unexpected payload from {source}: expected a list of sessions")
    records = []
    for row in rows:
        try:
            records.append(record_from_api_row(row))
        except (KeyError, TypeError, ValueError) as exc:
            log.warning(f"Skipping malformed session {row.get('id') if isinstance(row, dict) else row!r}: {exc}")
    log.info(f"Fetched {len(records):,} sessions from {source}")
    return records


def fetch_all_records(base_url: str = API_BASE_URL, token: Optional[str] = API_TOKEN) -> List[MatchRecord]:
    """Every user's sessions (admin endpoint)."""
    url = base_url.rstrip("/") + ALL_SESSIONS_PATH
    log.debug(f"Fetching all sessions: {url}")
    return _rows_to_records(fetch_with_retry(url, token=token), url)


def fetch_user_records(
    base_url: str = API_BASE_URL,
    token: Optional[str] = API_TOKEN,
    user_id: Optional[int] = None,
) -> List[MatchRecord]:
    """One user's sessions. Without user_id the store answers for the token's owner."""
    url = base_url.rstrip("/") + USER_SESSIONS_PATH
    params = {"userId": user_id} if user_id is not None else None
    log.debug(f"Fetching sessions for user {user_id}: {url}")
    return _rows_to_records(fetch_with_retry(url, params=params, token=token), url)


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s  %(levelname)-8s  %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    parser = argparse.ArgumentParser(description="Export sessions from the record store to CSV")
    parser.add_argument("--base-url", type=str, default=API_BASE_URL)
    parser.add_argument("--user-id",  type=int, default=None,
                        help="Only this user's sessions (default: every user, admin token required)")
    parser.add_argument("--output",   type=Path, default=RECORDS_CSV)
    args = parser.parse_args()

    if args.user_id is None:
        records = fetch_all_records(args.base_url, API_TOKEN)
    else:
        records = fetch_user_records(args.base_url, API_TOKEN, args.user_id)
    save_match_records(records, args.output)


if __name__ == "__main__":
    main()
