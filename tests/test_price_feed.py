from __future__ import annotations

import json
import time
from datetime import datetime, timedelta, timezone

import pytest
import requests

from tradewatch.data.instruments import pip_size, yahoo_symbol
from tradewatch.data.price_feed import PriceFeed, PricePoller, StaticQuoteProvider
from tradewatch.data.ticks import PriceTick
from tradewatch.data.yahoo_client import (
    MarketDataError,
    RetryableMarketDataError,
    TokenBucketLimiter,
    YahooChartClient,
    _parse_retry_after,
    parse_chart_payload,
)

NOW = datetime(2026, 3, 4, 10, 0, tzinfo=timezone.utc)


def _chart(price: float | None, *, ts: datetime, previous_close: float = 1.0800) -> dict:
    meta = {"regularMarketTime": int(ts.timestamp()), "previousClose": previous_close}
    if price is not None:
        meta["regularMarketPrice"] = price
    return {
        "chart": {
            "result": [
                {
                    "meta": meta,
                    "timestamp": [int((ts - timedelta(minutes=1)).timestamp()), int(ts.timestamp())],
                    "indicators": {
                        "quote": [
                            {
                                "close": [1.0840, 1.0846],
                                "high": [1.0850, 1.0861],
                                "low": [1.0831, None],
                            }
                        ]
                    },
                }
            ],
            "error": None,
        }
    }


class _FakeResponse:
    def __init__(self, status_code: int, payload: dict | None = None, headers: dict | None = None):
        self.status_code = status_code
        self._payload = payload or {}
        self.headers = headers or {}
        self.text = json.dumps(self._payload)

    def json(self) -> dict:
        return self._payload


class _ScriptedProvider:
    def __init__(self, prices: dict[str, float]):
        self.prices = prices
        self.calls: list[str] = []

    def get_quote(self, symbol: str) -> PriceTick:
        self.calls.append(symbol)
        if symbol not in self.prices:
            raise MarketDataError(f"no quote for {symbol}")
        price = self.prices[symbol]
        return PriceTick(symbol, price, price, price, 0.0, 0.0, NOW)


def test_parse_chart_payload_prefers_meta_price() -> None:
    tick = parse_chart_payload(
        "EURUSD",
        _chart(1.0849, ts=NOW - timedelta(seconds=30)),
        now=NOW,
        max_age_seconds=600,
        realtime_max_age_seconds=120,
    )

    assert tick.price == pytest.approx(1.0849)
    assert tick.change == pytest.approx(0.0049)
    assert tick.change_percent == pytest.approx(0.45)
    assert tick.high == pytest.approx(1.0861)
    assert tick.low == pytest.approx(1.0831)
    assert tick.is_delayed is False


def test_parse_chart_payload_falls_back_to_last_close_and_flags_delay() -> None:
    tick = parse_chart_payload(
        "EURUSD",
        _chart(None, ts=NOW - timedelta(minutes=5)),
        now=NOW,
        max_age_seconds=600,
        realtime_max_age_seconds=120,
    )

    assert tick.price == pytest.approx(1.0846)
    assert tick.is_delayed is True


def test_parse_chart_payload_rejects_old_or_broken_quotes() -> None:
    with pytest.raises(MarketDataError, match="Too-old"):
        parse_chart_payload("BTCUSD", _chart(67000.0, ts=NOW - timedelta(hours=1)), now=NOW, max_age_seconds=600, realtime_max_age_seconds=120)
    with pytest.raises(MarketDataError):
        parse_chart_payload("EURUSD", {"chart": {"result": [], "error": None}}, now=NOW, max_age_seconds=600, realtime_max_age_seconds=120)
    with pytest.raises(MarketDataError, match="Chart error"):
        parse_chart_payload("EURUSD", {"chart": {"result": None, "error": {"code": "Not Found"}}}, now=NOW, max_age_seconds=600, realtime_max_age_seconds=120)


def test_feed_keeps_last_price_when_provider_fails() -> None:
    provider = _ScriptedProvider({"EURUSD": 1.0850, "GBPUSD": 1.2700})
    feed = PriceFeed(provider)

    fetched = feed.refresh(["eurusd", "GBPUSD", "XAUUSD", "EURUSD"])
    assert set(fetched) == {"EURUSD", "GBPUSD"}
    assert provider.calls == ["EURUSD", "GBPUSD", "XAUUSD"]

    provider.prices = {"GBPUSD": 1.2710}
    fetched = feed.refresh(["EURUSD", "GBPUSD"])
    assert set(fetched) == {"GBPUSD"}
    snapshot = feed.snapshot()
    assert snapshot["EURUSD"].price == pytest.approx(1.0850)
    assert snapshot["GBPUSD"].price == pytest.approx(1.2710)
    assert feed.latest("xauusd") is None


def test_static_provider_reads_both_layouts(tmp_path) -> None:
    quotes = tmp_path / "quotes.json"
    quotes.write_text(json.dumps({"EURUSD": {"price": 1.0852, "high": 1.09}, "BTCUSD": 67000}), encoding="utf-8")
    provider = StaticQuoteProvider(quotes)

    assert provider.get_quote("EUR/USD").high == pytest.approx(1.09)
    assert provider.get_quote("BTCUSD").price == pytest.approx(67000.0)
    with pytest.raises(MarketDataError):
        provider.get_quote("GBPUSD")


def test_poller_refreshes_in_background() -> None:
    feed = PriceFeed(_ScriptedProvider({"EURUSD": 1.0850}))
    poller = PricePoller(feed, lambda: ["EURUSD"], interval_seconds=0.05)

    poller.start()
    deadline = time.monotonic() + 2.0
    while feed.latest("EURUSD") is None and time.monotonic() < deadline:
        time.sleep(0.01)
    poller.stop()

    assert feed.latest("EURUSD") is not None
    assert poller.running is False


def test_yahoo_client_retries_429_then_succeeds(monkeypatch) -> None:
    client = YahooChartClient(request_max_attempts=3)
    responses = [
        _FakeResponse(429, headers={"Retry-After": "0"}),
        _FakeResponse(200, _chart(1.0849, ts=NOW - timedelta(seconds=10))),
    ]
    calls: list[tuple[str, dict]] = []

    def _fake_get(url: str, params: dict | None = None, timeout: int | None = None) -> _FakeResponse:
        calls.append((url, params or {}))
        return responses.pop(0)

    monkeypatch.setattr(client.session, "get", _fake_get)
    monkeypatch.setattr("tradewatch.data.yahoo_client.time.sleep", lambda _seconds: None)

    tick = client.get_quote("EURUSD", now=NOW)

    assert tick.price == pytest.approx(1.0849)
    assert calls[0][0].endswith("/v8/finance/chart/EURUSD%3DX")
    metrics = client.metrics_snapshot()
    assert metrics["http_429_count"] == 1
    assert metrics["total_retries"] == 1
    assert metrics["total_requests"] == 2


def test_yahoo_client_gives_up_after_network_errors(monkeypatch) -> None:
    client = YahooChartClient(request_max_attempts=2)

    def _fail(*_args, **_kwargs):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(client.session, "get", _fail)
    monkeypatch.setattr("tradewatch.data.yahoo_client.time.sleep", lambda _seconds: None)

    with pytest.raises(RetryableMarketDataError):
        client.get_quote("GBPUSD", now=NOW)
    assert client.metrics_snapshot()["network_errors"] == 2


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


def test_symbol_mapping_and_pip_sizes() -> None:
    assert yahoo_symbol("EURUSD") == "EURUSD=X"
    assert yahoo_symbol("USDJPY") == "JPY=X"
    assert yahoo_symbol("XAUUSD") == "GC=F"
    assert yahoo_symbol("BTCUSD") == "BTC-USD"
    assert yahoo_symbol("NQ") == "NQ=F"
    assert yahoo_symbol("EURUSD", {"EURUSD": "EUR=X"}) == "EUR=X"
    assert pip_size("EURUSD") == 0.0001
    assert pip_size("GBPJPY") == 0.01
    assert pip_size("XAUUSD") == 0.1


def test_malformed_chart_result_only_drops_that_symbol(monkeypatch) -> None:
    client = YahooChartClient(request_max_attempts=1)
    broken = _chart(1.2700, ts=NOW - timedelta(seconds=10))
    broken["chart"]["result"][0]["meta"] = ["not", "a", "mapping"]

    def _fake_get(url: str, params: dict | None = None, timeout: int | None = None) -> _FakeResponse:
        if "GBPUSD" in url:
            return _FakeResponse(200, broken)
        return _FakeResponse(200, _chart(1.0849, ts=datetime.now(timezone.utc) - timedelta(seconds=10)))

    monkeypatch.setattr(client.session, "get", _fake_get)
    feed = PriceFeed(client)

    fetched = feed.refresh(["EURUSD", "GBPUSD"])

    assert set(fetched) == {"EURUSD"}
    assert fetched["EURUSD"].price == pytest.approx(1.0849)
    assert client.metrics_snapshot()["rejected_quotes"] == 1
    with pytest.raises(MarketDataError, match="Malformed"):
        parse_chart_payload(
            "GBPUSD",
            {"chart": {"result": [{"meta": {}, "indicators": "quote"}], "error": None}},
            now=NOW,
            max_age_seconds=600,
            realtime_max_age_seconds=120,
        )
