"""
tests/test_client.py — Tests for xm_client.py (no real HTTP)
"""

import pytest
import requests

import xm_client
from xm_client import fetch_all_records, fetch_user_records, fetch_with_retry


class FakeResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self.payload


def _api_row(rid, user_id=1, **kw):
    row = {
        "id": rid, "userId": user_id, "playedAt": "2025-03-03T20:00:00Z",
        "rule": "Splat Zones", "stage1": "Scorch Gorge", "stage2": "MakoMart",
        "weapon": "Splattershot", "wins": 6, "losses": 4,
        "fatigue": 3, "irritability": 2, "concentration": 4,
        "startXp": 2100, "endXp": 2130, "memo": None,
    }
    row.update(kw)
    return row


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr(xm_client.time, "sleep", lambda s: None)


@pytest.fixture
def calls(monkeypatch):
    """Record every requests.get call; responses are queued per test."""
    log = {"calls": [], "responses": []}

    def fake_get(url, params=None, headers=None, timeout=None):
        log["calls"].append({"url": url, "params": params, "headers": headers})
        resp = log["responses"].pop(0) if len(log["responses"]) > 1 else log["responses"][0]
        if isinstance(resp, Exception):
            raise resp
        return resp

    monkeypatch.setattr(xm_client.requests, "get", fake_get)
    return log


class TestFetchWithRetry:
    def test_success(self, calls):
        calls["responses"].append(FakeResponse([1, 2]))
        assert fetch_with_retry("http://store/api/x") == [1, 2]
        assert len(calls["calls"]) == 1

    def test_bearer_token(self, calls):
        calls["responses"].append(FakeResponse([]))
        fetch_with_retry("http://store/api/x", token="abc")
        assert calls["calls"][0]["headers"]["Authorization"] == "Bearer abc"

    def test_no_token_no_auth_header(self, calls):
        calls["responses"].append(FakeResponse([]))
        fetch_with_retry("http://store/api/x", token="")
        assert "Authorization" not in calls["calls"][0]["headers"]

    def test_retries_then_succeeds(self, calls):
        calls["responses"].extend([
            requests.ConnectionError("down"),
            FakeResponse({"error": "busy"}, status=503),
            FakeResponse(["ok"]),
        ])
        assert fetch_with_retry("http://store/api/x") == ["ok"]
        assert len(calls["calls"]) == 3

    def test_exhausted_retries_raise_runtime_error(self, calls):
        calls["responses"].append(FakeResponse({"error": "nope"}, status=500))
        with pytest.raises(RuntimeError, match="failed after") as exc_info:
            fetch_with_retry("http://store/api/x")
        assert isinstance(exc_info.value.__cause__, requests.HTTPError)
        assert len(calls["calls"]) == xm_client.MAX_RETRIES


class TestFetchRecords:
    def test_all_records(self, calls):
        calls["responses"].append(FakeResponse([_api_row(1), _api_row(2, user_id=None)]))
        records = fetch_all_records("http://store/", token="t")
        assert calls["calls"][0]["url"] == "http://store/api/admin/sessions"
        assert [r.id for r in records] == [1, 2]
        assert records[1].user_id is None
        assert records[0].xp_delta == 30

    def test_user_records_query(self, calls):
        calls["responses"].append(FakeResponse([_api_row(5, user_id=9)]))
        records = fetch_user_records("http://store", token="t", user_id=9)
        call = calls["calls"][0]
        assert call["url"] == "http://store/api/sessions"
        assert call["params"] == {"userId": 9}
        assert records[0].user_id == 9

    def test_malformed_rows_skipped(self, calls):
        calls["responses"].append(FakeResponse([_api_row(1), _api_row(2, wins=-1), {"id": 3}]))
        records = fetch_all_records("http://store", token="t")
        assert [r.id for r in records] == [1]

    def test_unexpected_payload(self, calls):
        calls["responses"].append(FakeResponse({"error": "forbidden"}))
        with pytest.raises(RuntimeError, match="expected a list"):
            fetch_all_records("http://store", token="t")
