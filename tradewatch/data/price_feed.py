from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from tradewatch.config import PriceFeedConfig
from tradewatch.data.instruments import normalize_symbol
from tradewatch.data.ticks import PriceTick
from tradewatch.data.yahoo_client import MarketDataError, YahooChartClient

LOGGER = logging.getLogger(__name__)


class QuoteProvider(Protocol):
    def get_quote(self, symbol: str) -> PriceTick:
        ...


def _parse_dt(value: Any) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    normalized = str(value).replace(" ", "T")
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    dt = datetime.fromisoformat(normalized)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class StaticQuoteProvider:
    """
    Quotes from a JSON file, re-read on every call.

    Expected content: {"EURUSD": {"price": 1.0851, "high": ..., "low": ...}}
    or {"EURUSD": 1.0851}.
    """

    def __init__(self, json_path: str | Path):
        self.json_path = Path(json_path)

    def get_quote(self, symbol: str) -> PriceTick:
        key = normalize_symbol(symbol)
        if not self.json_path.exists():
            raise MarketDataError(f"Quote file {self.json_path} does not exist")
        try:
            payload = json.loads(self.json_path.read_text(encoding="utf-8"))
        except ValueError as exc:
            raise MarketDataError(f"Quote file {self.json_path} is not valid JSON") from exc
        item = payload.get(key) if isinstance(payload, dict) else None
        if item is None:
            raise MarketDataError(f"No static quote for {key}")
        if not isinstance(item, dict):
            item = {"price": item}
        try:
            price = float(item["price"])
            return PriceTick(
                symbol=key,
                price=price,
                high=float(item.get("high", price)),
                low=float(item.get("low", price)),
                change=float(item.get("change", 0.0)),
                change_percent=float(item.get("change_percent", 0.0)),
                timestamp=_parse_dt(item.get("timestamp")),
                is_delayed=bool(item.get("is_delayed", False)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise MarketDataError(f"Malformed static quote for {key}: {item}") from exc


class PriceFeed:
    """Best-effort symbol -> PriceTick cache; failed symbols keep their last price."""

    def __init__(self, provider: QuoteProvider):
        self.provider = provider
        self._cache: dict[str, PriceTick] = {}
        self._lock = threading.Lock()
        self.last_refresh_at: datetime | None = None

    def refresh(self, symbols: Iterable[str]) -> dict[str, PriceTick]:
        fetched: dict[str, PriceTick] = {}
        seen: set[str] = set()
        for symbol in symbols:
            key = normalize_symbol(symbol)
            if not key or key in seen:
                continue
            seen.add(key)
            try:
                fetched[key] = self.provider.get_quote(key)
            except MarketDataError as exc:
                LOGGER.warning("Could not fetch quote for %s: %s", key, exc)
        with self._lock:
            self._cache.update(fetched)
            self.last_refresh_at = datetime.now(timezone.utc)
        if seen and not fetched:
            LOGGER.warning("Price refresh returned no quotes for %d symbols", len(seen))
        return fetched

    def snapshot(self) -> dict[str, PriceTick]:
        with self._lock:
            return dict(self._cache)

    def latest(self, symbol: str) -> PriceTick | None:
        with self._lock:
            return self._cache.get(normalize_symbol(symbol))

    def seed(self, ticks: Iterable[PriceTick]) -> None:
        with self._lock:
            for tick in ticks:
                self._cache[normalize_symbol(tick.symbol)] = tick


class PricePoller:
    """Background thread refreshing a PriceFeed on a fixed cadence with its own stop event."""

    def __init__(
        self,
        feed: PriceFeed,
        symbols: Callable[[], Iterable[str]],
        *,
        interval_seconds: float = 30.0,
    ):
        self.feed = feed
        self.symbols = symbols
        self.interval_seconds = max(0.01, float(interval_seconds))
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="price-poller", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def poll_once(self) -> dict[str, PriceTick]:
        return self.feed.refresh(self.symbols())

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("Price poll failed: %s", exc)
            self._stop_event.wait(self.interval_seconds)


def build_quote_provider(config: PriceFeedConfig, root: Path) -> QuoteProvider:
    if config.provider == "static":
        static_file = Path(config.static_file)
        if not static_file.is_absolute():
            static_file = root / static_file
        LOGGER.info("Using static quote provider: %s", static_file)
        return StaticQuoteProvider(static_file)
    LOGGER.info("Using Yahoo chart quote provider: %s", config.base_url)
    return YahooChartClient(
        base_url=config.base_url,
        timeout_seconds=config.timeout_seconds,
        rate_limit_rps=config.rate_limit_rps,
        rate_limit_burst=config.rate_limit_burst,
        request_max_attempts=config.request_max_attempts,
        backoff_base_seconds=config.backoff_base_seconds,
        backoff_max_seconds=config.backoff_max_seconds,
        symbol_map=config.symbol_map,
        max_quote_age_minutes=config.max_quote_age_minutes,
        max_quote_age_minutes_crypto=config.max_quote_age_minutes_crypto,
        realtime_max_age_seconds=config.realtime_max_age_seconds,
    )
