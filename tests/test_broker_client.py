from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from agent.data.broker_client import (
    BrokerAPIError,
    BrokerAuthError,
    BrokerClient,
    TokenBucketLimiter,
    TokenCache,
    _parse_retry_after,
    parse_balance,
)


class FakeResponse:
    def __init__(self, status_code: int, payload: Any = None, headers: dict[str, str] | None = None):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}
        self.headers = headers or {}
        self.text = str(self._payload)

    def json(self) -> Any:
        return self._payload


class FakeSession:
    def __init__(self, responses: list[FakeResponse], token_responses: list[FakeResponse] | None = None):
        self.headers: dict[str, str] = {}
        self.responses = list(responses)
        self.token_responses = list(token_responses or [])
        self.requests: list[dict[str, Any]] = []
        self.token_requests = 0

    def post(self, url: str, json: dict[str, Any], timeout: int) -> FakeResponse:
        self.token_requests += 1
        if self.token_responses:
            return self.token_responses.pop(0)
        return FakeResponse(200, {"access_token": f"token-{self.token_requests}", "expires_in": 86400})

    def request(self, **kwargs: Any) -> FakeResponse:
        self.requests.append(kwargs)
        return self.responses.pop(0)


def _client(session: FakeSession, tmp_path, *, mode: str = "PAPER") -> BrokerClient:
    return BrokerClient(
        base_url="https://broker.test/",
        app_key="key",
        app_secret="secret",
        account_no="12345678",
        trading_mode=mode,
        token_cache=TokenCache(tmp_path / "token.json"),
        rate_limit_rps=1000.0,
        rate_limit_burst=100,
        session=session,
    )


BALANCE_PAYLOAD = {
    "rt_cd": "0",
    "msg1": "OK",
    "output1": [
        {
            "ovrs_pdno": "aapl",
            "ovrs_cblc_qty": "10",
            "pchs_avg_pric": "180.50",
            "now_pric2": "190.00",
            "evlu_pfls_rt": "5.26",
            "ovrs_excg_cd": "NASD",
        },
        {"ovrs_pdno": "EMPTY", "ovrs_cblc_qty": "0"},
    ],
    "output2": {"frcr_dncl_amt_2": "", "ord_psbl_frcr_amt": "2500.75"},
}


def test_token_bucket_limiter_applies_wait() -> None:
    limiter = TokenBucketLimiter(rate_per_second=5.0, burst=1)
    limiter.acquire()
    start = time.perf_counter()
    limiter.acquire()
    elapsed = time.perf_counter() - start
    assert elapsed >= 0.15


def test_parse_retry_after() -> None:
    assert _parse_retry_after({"Retry-After": "3"}) == 3.0
    assert _parse_retry_after({"Retry-After": "soon"}) is None
    assert _parse_retry_after({}) is None


def test_parse_balance() -> None:
    balance = parse_balance(BALANCE_PAYLOAD)

    assert balance.buying_power == pytest.approx(2500.75)
    assert len(balance.holdings) == 1
    holding = balance.holdings[0]
    assert holding.symbol == "AAPL"
    assert holding.quantity == 10
    assert holding.avg_price == pytest.approx(180.5)
    assert holding.current_value == pytest.approx(1900.0)
    assert balance.total_capital == pytest.approx(4400.75)


def test_token_is_cached_on_disk_and_reused(tmp_path) -> None:
    first_session = FakeSession([FakeResponse(200, BALANCE_PAYLOAD)])
    _client(first_session, tmp_path).get_balance()
    assert first_session.token_requests == 1

    second_session = FakeSession([FakeResponse(200, BALANCE_PAYLOAD)])
    balance = _client(second_session, tmp_path).get_balance()

    assert second_session.token_requests == 0
    assert balance.buying_power == pytest.approx(2500.75)
    assert second_session.requests[0]["headers"]["authorization"] == "Bearer token-1"


def test_expired_cached_token_is_refreshed(tmp_path) -> None:
    TokenCache(tmp_path / "token.json").save("old", datetime.now(timezone.utc) - timedelta(minutes=1))
    session = FakeSession([FakeResponse(200, BALANCE_PAYLOAD)])

    _client(session, tmp_path).get_balance()

    assert session.token_requests == 1
    assert session.requests[0]["headers"]["authorization"] == "Bearer token-1"


def test_token_expiry_keeps_safety_buffer(tmp_path) -> None:
    session = FakeSession([])
    client = _client(session, tmp_path)
    before = datetime.now(timezone.utc)

    client.get_access_token()

    assert client.token_expires_at is not None
    assert client.token_expires_at <= before + timedelta(seconds=86400 - 60) + timedelta(seconds=5)
    cached = TokenCache(tmp_path / "token.json").load()
    assert cached is not None and cached[0] == "token-1"


def test_retries_server_errors(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    sleeps: list[float] = []
    monkeypatch.setattr("agent.data.broker_client.time.sleep", sleeps.append)
    session = FakeSession(
        [
            FakeResponse(503),
            FakeResponse(429, headers={"Retry-After": "2"}),
            FakeResponse(200, BALANCE_PAYLOAD),
        ]
    )
    client = _client(session, tmp_path)

    balance = client.get_balance()

    assert balance.buying_power == pytest.approx(2500.75)
    assert len(session.requests) == 3
    assert sleeps[-1] == 2.0
    metrics = client.metrics_snapshot()
    assert metrics["total_retries"] == 2
    assert metrics["http_429_count"] == 1


def test_unauthorized_refreshes_token_once(tmp_path) -> None:
    session = FakeSession([FakeResponse(401), FakeResponse(200, BALANCE_PAYLOAD)])
    client = _client(session, tmp_path)

    client.get_balance()

    assert session.token_requests == 2
    assert session.requests[-1]["headers"]["authorization"] == "Bearer token-2"


def test_repeated_unauthorized_raises(tmp_path) -> None:
    session = FakeSession([FakeResponse(403), FakeResponse(403)])

    with pytest.raises(BrokerAuthError):
        _client(session, tmp_path).get_balance()


def test_token_rejection_raises_auth_error(tmp_path) -> None:
    session = FakeSession([], token_responses=[FakeResponse(403, {"error": "bad key"})])

    with pytest.raises(BrokerAuthError):
        _client(session, tmp_path).get_access_token()


def test_balance_rejected_by_broker(tmp_path) -> None:
    session = FakeSession([FakeResponse(200, {"rt_cd": "1", "msg1": "account locked"})])

    with pytest.raises(BrokerAPIError, match="account locked"):
        _client(session, tmp_path).get_balance()


def test_place_order_uses_mode_transaction_ids(tmp_path) -> None:
    session = FakeSession(
        [
            FakeResponse(200, {"rt_cd": "0", "msg1": "accepted", "output": {"ODNO": "0001234"}}),
            FakeResponse(200, {"rt_cd": "7", "msg1": "insufficient funds"}),
        ]
    )
    client = _client(session, tmp_path, mode="real")

    accepted = client.place_order("aapl", "buy", 2, 190.123, "NASD")
    rejected = client.place_order("AAPL", "SELL", 2, 190.0, "NYSE")

    assert accepted.success is True
    assert accepted.order_id == "0001234"
    assert session.requests[0]["headers"]["tr_id"] == "TTTT1002U"
    assert session.requests[0]["json"]["OVRS_ORD_UNPR"] == "190.12"
    assert session.requests[0]["json"]["ORD_QTY"] == "2"
    assert rejected.success is False
    assert rejected.message == "insufficient funds"
    assert session.requests[1]["headers"]["tr_id"] == "TTTT1006U"


def test_paper_mode_transaction_ids(tmp_path) -> None:
    client = _client(FakeSession([]), tmp_path)

    assert client.tr_id("BALANCE") == "VTTS3012R"
    assert client.tr_id("BUY") == "VTTT1002U"
    assert client.tr_id("SELL") == "VTTT1001U"


def test_invalid_trading_mode() -> None:
    with pytest.raises(ValueError):
        BrokerClient("https://broker.test", "k", "s", "1", trading_mode="SIM", session=FakeSession([]))
