from __future__ import annotations

import json
import logging
import random
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

import requests

LOGGER = logging.getLogger(__name__)

BALANCE_PATH = "/uapi/overseas-stock/v1/trading/inquire-balance"
ORDER_PATH = "/uapi/overseas-stock/v1/trading/order"
TOKEN_PATH = "/oauth2/tokenP"

TR_IDS = {
    "REAL": {"BALANCE": "TTTS3012R", "BUY": "TTTT1002U", "SELL": "TTTT1006U"},
    "PAPER": {"BALANCE": "VTTS3012R", "BUY": "VTTT1002U", "SELL": "VTTT1001U"},
}


class BrokerAPIError(RuntimeError):
    """Non-retryable brokerage API error."""


class RetryableBrokerAPIError(BrokerAPIError):
    """Retryable API/network error."""


class BrokerAuthError(BrokerAPIError):
    """Token issuance or authorization error."""


@dataclass(slots=True)
class BrokerClientMetrics:
    total_requests: int = 0
    total_retries: int = 0
    http_429_count: int = 0
    token_refreshes: int = 0
    auth_failures: int = 0


@dataclass(slots=True)
class Holding:
    symbol: str
    quantity: int
    avg_price: float
    current_price: float
    profit_rate: float = 0.0
    exchange: str | None = None

    @property
    def current_value(self) -> float:
        return self.quantity * self.current_price


@dataclass(slots=True)
class AccountBalance:
    buying_power: float
    holdings: list[Holding] = field(default_factory=list)

    @property
    def holdings_value(self) -> float:
        return sum(holding.current_value for holding in self.holdings)

    @property
    def total_capital(self) -> float:
        return self.buying_power + self.holdings_value


@dataclass(slots=True)
class OrderResult:
    success: bool
    message: str
    order_id: str | None = None


RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


class TokenBucketLimiter:
    """Blocking token bucket; up to ``burst`` requests may go out back to back."""

    def __init__(self, rate_per_second: float, burst: int):
        self.rate = max(0.1, float(rate_per_second))
        self.burst = max(1, int(burst))
        self._available = float(self.burst)
        self._stamp = time.monotonic()
        self._lock = threading.Lock()

    def _take(self) -> float:
        now = time.monotonic()
        self._available = min(float(self.burst), self._available + (now - self._stamp) * self.rate)
        self._stamp = now
        if self._available >= 1.0:
            self._available -= 1.0
            return 0.0
        return (1.0 - self._available) / self.rate

    def acquire(self) -> None:
        while True:
            with self._lock:
                delay = self._take()
            if delay <= 0:
                return
            time.sleep(delay)


def _parse_retry_after(headers: Any) -> float | None:
    raw = str(headers.get("Retry-After") or "").strip()
    try:
        seconds = float(raw)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def _first_float(item: dict[str, Any], *keys: str, default: float = 0.0) -> float:
    for key in keys:
        value = item.get(key)
        if value in (None, ""):
            continue
        try:
            return float(value)
        except (TypeError, ValueError):
            continue
    return default


class TokenCache:
    """Bearer token persisted as JSON ``{"access_token", "expires_at"}``."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self) -> tuple[str, datetime] | None:
        if not self.path.exists():
            return None
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
            token = str(payload["access_token"])
            expires_at = datetime.fromisoformat(str(payload["expires_at"]))
        except (OSError, KeyError, ValueError, TypeError) as exc:
            LOGGER.warning("Ignoring unreadable token cache %s: %s", self.path, exc)
            return None
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return token, expires_at

    def save(self, token: str, expires_at: datetime) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        staging = self.path.with_name(self.path.name + ".tmp")
        try:
            staging.write_text(json.dumps({"access_token": token, "expires_at": expires_at.isoformat()}), encoding="utf-8")
            staging.replace(self.path)
        except OSError as exc:
            LOGGER.warning("Could not persist token cache %s: %s", self.path, exc)


class BrokerClient:
    """
    Overseas-stock brokerage REST client (KIS Open API).

    Auth flow:
    - POST /oauth2/tokenP with appkey/appsecret (client credentials).
    - Token kept in memory and in the token cache file, reused until
      expiry minus ``token_expiry_buffer_seconds``.
    - A 401/403 on a trading call forces one token refresh and a resend.

    Every HTTP call passes the shared rate limiter; network errors, 429 and
    5xx are retried with exponential backoff (``Retry-After`` wins when sent).
    """

    def __init__(
        self,
        base_url: str,
        app_key: str,
        app_secret: str,
        account_no: str,
        account_code: str = "01",
        trading_mode: str = "PAPER",
        timeout_seconds: int = 10,
        *,
        token_cache: TokenCache | None = None,
        token_expiry_buffer_seconds: int = 60,
        rate_limit_rps: float = 2.0,
        rate_limit_burst: int = 5,
        request_max_attempts: int = 4,
        backoff_base_seconds: float = 0.5,
        backoff_max_seconds: float = 10.0,
        session: requests.Session | None = None,
    ):
        mode = trading_mode.strip().upper()
        if mode not in TR_IDS:
            raise ValueError(f"Unsupported trading mode {trading_mode}")
        self.base_url = base_url.strip().rstrip("/")
        self.app_key = app_key
        self.app_secret = app_secret
        self.account_no = account_no
        self.account_code = account_code
        self.trading_mode = mode
        self.timeout_seconds = timeout_seconds
        self.token_cache = token_cache
        self.token_expiry_buffer_seconds = max(0, int(token_expiry_buffer_seconds))
        self.request_max_attempts = max(1, int(request_max_attempts))
        self.backoff_base_seconds = max(0.1, float(backoff_base_seconds))
        self.backoff_max_seconds = max(self.backoff_base_seconds, float(backoff_max_seconds))

        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json; charset=utf-8"})
        self.access_token: str | None = None
        self.token_expires_at: datetime | None = None
        self._limiter = TokenBucketLimiter(rate_limit_rps, rate_limit_burst)
        self._token_lock = threading.Lock()
        self._metrics = BrokerClientMetrics()
        self._metrics_lock = threading.Lock()

    def tr_id(self, action: str) -> str:
        return TR_IDS[self.trading_mode][action]

    def _count(self, **increments: int) -> None:
        with self._metrics_lock:
            for name, amount in increments.items():
                setattr(self._metrics, name, getattr(self._metrics, name) + amount)

    def metrics_snapshot(self) -> dict[str, int]:
        with self._metrics_lock:
            return asdict(self._metrics)

    def backoff_delay(self, attempt: int, retry_after: float | None = None) -> float:
        if retry_after is not None:
            return retry_after
        delay = min(self.backoff_max_seconds, self.backoff_base_seconds * 2 ** (attempt - 1))
        return min(self.backoff_max_seconds, delay * (1 + random.uniform(0.0, 0.2)))

    def _send(self, endpoint: str, send: Callable[[], requests.Response]) -> requests.Response:
        """Return the first non-retryable response; raise once attempts run out."""
        for attempt in range(1, self.request_max_attempts + 1):
            self._limiter.acquire()
            self._count(total_requests=1)
            retry_after = None
            try:
                response = send()
            except requests.RequestException as exc:
                if attempt == self.request_max_attempts:
                    raise RetryableBrokerAPIError(f"Network error on {endpoint}: {exc}") from exc
                reason = f"network:{type(exc).__name__}"
            else:
                if response.status_code not in RETRYABLE_STATUS:
                    return response
                if response.status_code == 429:
                    self._count(http_429_count=1)
                if attempt == self.request_max_attempts:
                    raise RetryableBrokerAPIError(
                        f"Retryable error on {endpoint}: HTTP {response.status_code} {response.text}"
                    )
                reason = f"http_{response.status_code}"
                retry_after = _parse_retry_after(response.headers)

            delay = self.backoff_delay(attempt, retry_after)
            self._count(total_retries=1)
            LOGGER.warning(
                "Retrying broker call %s attempt=%d/%d in %.2fs (%s)",
                endpoint,
                attempt,
                self.request_max_attempts,
                delay,
                reason,
            )
            time.sleep(delay)
        raise RetryableBrokerAPIError(f"No attempts left on {endpoint}")

    def _token_valid(self, now: datetime) -> bool:
        return self.access_token is not None and self.token_expires_at is not None and now < self.token_expires_at

    def get_access_token(self, *, force_refresh: bool = False) -> str:
        with self._token_lock:
            now = datetime.now(timezone.utc)
            if not force_refresh and self._token_valid(now):
                return str(self.access_token)
            if not force_refresh and self.token_cache is not None:
                cached = self.token_cache.load()
                if cached is not None and now < cached[1]:
                    self.access_token, self.token_expires_at = cached
                    LOGGER.debug("Reusing cached broker token (expires %s)", cached[1].isoformat())
                    return cached[0]
            return self._issue_token(now)

    def _issue_token(self, now: datetime) -> str:
        response = self._send(
            TOKEN_PATH,
            lambda: self.session.post(
                f"{self.base_url}{TOKEN_PATH}",
                json={
                    "grant_type": "client_credentials",
                    "appkey": self.app_key,
                    "appsecret": self.app_secret,
                },
                timeout=self.timeout_seconds,
            ),
        )
        if response.status_code >= 400:
            self._count(auth_failures=1)
            raise BrokerAuthError(f"Token request failed: HTTP {response.status_code} {response.text}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise BrokerAuthError("Token response is not JSON") from exc
        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not token:
            raise BrokerAuthError("Token missing in response")

        lifetime = int(payload.get("expires_in") or 0) - self.token_expiry_buffer_seconds
        self.access_token = str(token)
        self.token_expires_at = now + timedelta(seconds=max(0, lifetime))
        if self.token_cache is not None:
            self.token_cache.save(self.access_token, self.token_expires_at)
        self._count(token_refreshes=1)
        LOGGER.info("Broker token refreshed (valid until %s)", self.token_expires_at.isoformat())
        return self.access_token

    def _headers(self, tr_id: str) -> dict[str, str]:
        return {
            "authorization": f"Bearer {self.get_access_token()}",
            "appkey": self.app_key,
            "appsecret": self.app_secret,
            "tr_id": tr_id,
            "custtype": "P",
        }

    def _request(
        self,
        method: str,
        path: str,
        *,
        tr_id: str,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        for refreshed in (False, True):
            headers = self._headers(tr_id)
            response = self._send(
                path,
                lambda: self.session.request(
                    method=method,
                    url=f"{self.base_url}{path}",
                    params=params,
                    json=body,
                    headers=headers,
                    timeout=self.timeout_seconds,
                ),
            )
            if response.status_code not in (401, 403):
                break
            self._count(auth_failures=1)
            if refreshed:
                raise BrokerAuthError(f"Authorization failed on {path}: HTTP {response.status_code} {response.text}")
            LOGGER.info("Broker token rejected on %s, refreshing", path)
            self.get_access_token(force_refresh=True)

        if response.status_code >= 400:
            raise BrokerAPIError(f"API error on {path}: HTTP {response.status_code} {response.text}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise BrokerAPIError(f"Non-JSON response on {path}") from exc
        return payload if isinstance(payload, dict) else {}

    def get_balance(self) -> AccountBalance:
        payload = self._request(
            "GET",
            BALANCE_PATH,
            tr_id=self.tr_id("BALANCE"),
            params={
                "CANO": self.account_no,
                "ACNT_PRDT_CD": self.account_code,
                "OVRS_EXCG_CD": "NASD",
                "TR_CRCY_CD": "USD",
                "CTX_AREA_FK200": "",
                "CTX_AREA_NK200": "",
            },
        )
        if str(payload.get("rt_cd", "0")) != "0":
            raise BrokerAPIError(f"Balance inquiry rejected: {payload.get('msg1', '')}".strip())
        return parse_balance(payload)

    def place_order(
        self,
        symbol: str,
        side: str,
        quantity: int,
        price: float,
        exchange: str = "NASD",
    ) -> OrderResult:
        side_normalized = side.strip().upper()
        if side_normalized not in {"BUY", "SELL"}:
            raise ValueError(f"Unsupported order side {side}")
        payload = self._request(
            "POST",
            ORDER_PATH,
            tr_id=self.tr_id(side_normalized),
            body={
                "CANO": self.account_no,
                "ACNT_PRDT_CD": self.account_code,
                "OVRS_EXCG_CD": exchange,
                "PDNO": symbol,
                "ORD_QTY": str(int(quantity)),
                "OVRS_ORD_UNPR": f"{price:.2f}",
                "ORD_SVR_DVSN_CD": "0",
                "ORD_DVSN": "00",
            },
        )
        message = str(payload.get("msg1") or "").strip()
        if str(payload.get("rt_cd", "")) != "0":
            return OrderResult(success=False, message=message or "order rejected")
        output = payload.get("output")
        order_id = None
        if isinstance(output, dict):
            order_id = output.get("ODNO") or output.get("odno")
        return OrderResult(success=True, message=message, order_id=str(order_id) if order_id else None)


def parse_balance(payload: dict[str, Any]) -> AccountBalance:
    """Build an AccountBalance from an inquire-balance response."""
    holdings: list[Holding] = []
    for item in payload.get("output1") or []:
        if not isinstance(item, dict):
            continue
        symbol = str(item.get("ovrs_pdno") or item.get("pdno") or "").strip().upper()
        quantity = int(_first_float(item, "ovrs_cblc_qty", "ord_psbl_qty", "hldg_qty"))
        if not symbol or quantity <= 0:
            continue
        holdings.append(
            Holding(
                symbol=symbol,
                quantity=quantity,
                avg_price=_first_float(item, "pchs_avg_pric", "avg_pric"),
                current_price=_first_float(item, "now_pric2", "ovrs_now_pric1", "now_pric"),
                profit_rate=_first_float(item, "evlu_pfls_rt"),
                exchange=str(item.get("ovrs_excg_cd") or "").strip() or None,
            )
        )
    summary = payload.get("output2") or {}
    if isinstance(summary, list):
        summary = summary[0] if summary else {}
    buying_power = _first_float(
        summary,
        "ord_psbl_frcr_amt",
        "frcr_ord_psbl_amt1",
        "ovrs_ord_psbl_amt",
        "frcr_dncl_amt_2",
    )
    return AccountBalance(buying_power=buying_power, holdings=holdings)
