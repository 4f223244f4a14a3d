from __future__ import annotations

import logging
import math
import random
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any

import requests

from tradewatch.data.instruments import instrument_class, normalize_symbol, yahoo_symbol
from tradewatch.data.ticks import PriceTick

LOGGER = logging.getLogger(__name__)

_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"


class MarketDataError(RuntimeError):
    """Non-retryable market-data error (bad symbol, empty or stale quote)."""


class RetryableMarketDataError(MarketDataError):
    """Retryable API/network error."""


@dataclass(slots=True)
class MarketDataClientMetrics:
    total_requests: int = 0
    total_retries: int = 0
    http_429_count: int = 0
    network_errors: int = 0
    rejected_quotes: int = 0


class TokenBucketLimiter:
    def __init__(self, rate_per_second: float, burst: int):
        self.rate_per_second = max(0.1, float(rate_per_second))
        self.capacity = max(1, int(burst))
        self.tokens = float(self.capacity)
        self.last_refill = time.monotonic()
        self.lock = threading.Lock()

    def acquire(self) -> None:
        while True:
            with self.lock:
                now = time.monotonic()
                elapsed = max(0.0, now - self.last_refill)
                self.tokens = min(float(self.capacity), self.tokens + elapsed * self.rate_per_second)
                self.last_refill = now
                if self.tokens >= 1.0:
                    self.tokens -= 1.0
                    return
                wait_seconds = (1.0 - self.tokens) / self.rate_per_second
            time.sleep(wait_seconds)


def _parse_retry_after(headers: Any) -> float | None:
    value = headers.get("Retry-After")
    if not value:
        return None
    try:
        parsed = float(value.strip())
    except ValueError:
        return None
    if parsed < 0:
        return None
    return parsed


def _finite(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        converted = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(converted) or math.isinf(converted):
        return None
    return converted


def _finite_series(values: Any) -> list[float]:
    if not isinstance(values, list):
        return []
    return [item for item in (_finite(value) for value in values) if item is not None]


def parse_chart_payload(
    symbol: str,
    payload: dict[str, Any],
    *,
    now: datetime,
    max_age_seconds: float,
    realtime_max_age_seconds: float,
) -> PriceTick:
    chart = payload.get("chart") if isinstance(payload, dict) else None
    if not isinstance(chart, dict):
        raise MarketDataError(f"Malformed chart payload for {symbol}")
    if chart.get("error"):
        raise MarketDataError(f"Chart error for {symbol}: {chart['error']}")
    results = chart.get("result") or []
    if not isinstance(results, list) or not results or not isinstance(results[0], dict):
        raise MarketDataError(f"No chart data for {symbol}")
    result = results[0]
    meta = result.get("meta") or {}
    indicators = result.get("indicators") or {}
    if not isinstance(meta, dict) or not isinstance(indicators, dict):
        raise MarketDataError(f"Malformed chart result for {symbol}")
    quotes = indicators.get("quote") or [{}]
    if not isinstance(quotes, list):
        raise MarketDataError(f"Malformed quote block for {symbol}")
    quote = quotes[0] if quotes and isinstance(quotes[0], dict) else {}

    closes = _finite_series(quote.get("close"))
    price = _finite(meta.get("regularMarketPrice"))
    if price is None:
        price = closes[-1] if closes else None
    if price is None:
        raise MarketDataError(f"No price in chart data for {symbol}")

    previous_close = _finite(meta.get("previousClose"))
    if previous_close is None:
        previous_close = _finite(meta.get("chartPreviousClose"))
    if previous_close is None:
        previous_close = price
    change = price - previous_close
    change_percent = (change / previous_close * 100.0) if previous_close else 0.0

    highs = _finite_series(quote.get("high"))
    lows = _finite_series(quote.get("low"))
    high = _finite(meta.get("regularMarketDayHigh"))
    if high is None:
        high = max(highs) if highs else price
    low = _finite(meta.get("regularMarketDayLow"))
    if low is None:
        low = min(lows) if lows else price

    ts_seconds = _finite(meta.get("regularMarketTime"))
    if ts_seconds is None:
        stamps = _finite_series(result.get("timestamp"))
        ts_seconds = stamps[-1] if stamps else None
    if ts_seconds is None:
        raise MarketDataError(f"No quote timestamp for {symbol}")
    timestamp = datetime.fromtimestamp(ts_seconds, tz=timezone.utc)
    age_seconds = (now - timestamp).total_seconds()
    if age_seconds > max_age_seconds:
        raise MarketDataError(f"Too-old quote for {symbol} @ {timestamp.isoformat()}")

    return PriceTick(
        symbol=symbol,
        price=price,
        high=high,
        low=low,
        change=round(change, 5),
        change_percent=round(change_percent, 2),
        timestamp=timestamp,
        is_delayed=age_seconds > realtime_max_age_seconds,
    )


class YahooChartClient:
    """
    Yahoo Finance chart API client.

    Quotes come from GET /v8/finance/chart/{ticker}?interval=1m&range=1d.
    Trading symbols are mapped to Yahoo tickers (EURUSD -> EURUSD=X,
    XAUUSD -> GC=F, BTCUSD -> BTC-USD).
    """

    def __init__(
        self,
        base_url: str = "https://query1.finance.yahoo.com",
        timeout_seconds: int = 10,
        *,
        rate_limit_rps: float = 4.0,
        rate_limit_burst: int = 8,
        request_max_attempts: int = 3,
        backoff_base_seconds: float = 0.5,
        backoff_max_seconds: float = 10.0,
        symbol_map: dict[str, str] | None = None,
        max_quote_age_minutes: int = 7 * 24 * 60,
        max_quote_age_minutes_crypto: int = 10,
        realtime_max_age_seconds: int = 120,
    ):
        self.base_url = base_url.strip().rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.request_max_attempts = max(1, int(request_max_attempts))
        self.backoff_base_seconds = max(0.1, float(backoff_base_seconds))
        self.backoff_max_seconds = max(self.backoff_base_seconds, float(backoff_max_seconds))
        self.symbol_map = dict(symbol_map or {})
        self.max_quote_age_minutes = max_quote_age_minutes
        self.max_quote_age_minutes_crypto = max_quote_age_minutes_crypto
        self.realtime_max_age_seconds = realtime_max_age_seconds

        self.session = requests.Session()
        self.session.headers.update({"Accept": "application/json", "User-Agent": _USER_AGENT})
        self._limiter = TokenBucketLimiter(rate_per_second=rate_limit_rps, burst=rate_limit_burst)
        self._metrics = MarketDataClientMetrics()
        self._metrics_lock = threading.Lock()

    def _metric_add(self, field_name: str, value: int = 1) -> None:
        with self._metrics_lock:
            setattr(self._metrics, field_name, getattr(self._metrics, field_name) + value)

    def metrics_snapshot(self) -> dict[str, int]:
        with self._metrics_lock:
            return asdict(self._metrics)

    def _max_age_seconds(self, symbol: str) -> float:
        if instrument_class(symbol) == "crypto":
            return self.max_quote_age_minutes_crypto * 60.0
        return self.max_quote_age_minutes * 60.0

    def _sleep_retry(self, *, endpoint: str, attempt: int, reason: str, retry_after: float | None = None) -> None:
        if retry_after is not None:
            sleep_seconds = max(0.0, retry_after)
        else:
            exponential = min(
                self.backoff_max_seconds,
                self.backoff_base_seconds * (2 ** max(0, attempt - 1)),
            )
            jitter = random.uniform(0.0, max(0.01, exponential * 0.2))
            sleep_seconds = min(self.backoff_max_seconds, exponential + jitter)
        self._metric_add("total_retries", 1)
        LOGGER.warning(
            "Retrying market data call endpoint=%s attempt=%d/%d sleep=%.2fs reason=%s",
            endpoint,
            attempt,
            self.request_max_attempts,
            sleep_seconds,
            reason,
        )
        time.sleep(sleep_seconds)

    def _send_http(self, path: str, params: dict[str, Any] | None = None) -> requests.Response:
        self._limiter.acquire()
        self._metric_add("total_requests", 1)
        return self.session.get(f"{self.base_url}{path}", params=params, timeout=self.timeout_seconds)

    def _request(self, path: str, *, params: dict[str, Any] | None = None) -> dict[str, Any]:
        for attempt in range(1, self.request_max_attempts + 1):
            try:
                response = self._send_http(path, params)
            except requests.RequestException as exc:
                self._metric_add("network_errors", 1)
                if attempt >= self.request_max_attempts:
                    raise RetryableMarketDataError(f"Network error GET {path}: {exc}") from exc
                self._sleep_retry(endpoint=path, attempt=attempt, reason=f"network:{type(exc).__name__}")
                continue

            if response.status_code == 429:
                self._metric_add("http_429_count", 1)
                if attempt >= self.request_max_attempts:
                    raise RetryableMarketDataError(f"Retryable API error: HTTP 429 {response.text}")
                self._sleep_retry(
                    endpoint=path,
                    attempt=attempt,
                    reason="http_429",
                    retry_after=_parse_retry_after(response.headers),
                )
                continue

            if response.status_code in (500, 502, 503, 504):
                if attempt >= self.request_max_attempts:
                    raise RetryableMarketDataError(
                        f"Retryable API error: HTTP {response.status_code} {response.text}"
                    )
                self._sleep_retry(endpoint=path, attempt=attempt, reason=f"http_{response.status_code}")
                continue

            if response.status_code >= 400:
                raise MarketDataError(f"API error GET {path}: HTTP {response.status_code} {response.text}")

            try:
                return response.json()
            except ValueError as exc:
                raise MarketDataError(f"Invalid JSON from GET {path}") from exc

        raise RetryableMarketDataError(f"Could not complete request GET {path}")

    def get_quote(self, symbol: str, *, now: datetime | None = None) -> PriceTick:
        key = normalize_symbol(symbol)
        ticker = yahoo_symbol(key, self.symbol_map)
        payload = self._request(
            f"/v8/finance/chart/{requests.utils.quote(ticker, safe='')}",
            params={"interval": "1m", "range": "1d"},
        )
        try:
            return parse_chart_payload(
                key,
                payload,
                now=now or datetime.now(timezone.utc),
                max_age_seconds=self._max_age_seconds(key),
                realtime_max_age_seconds=self.realtime_max_age_seconds,
            )
        except MarketDataError:
            self._metric_add("rejected_quotes", 1)
            raise
