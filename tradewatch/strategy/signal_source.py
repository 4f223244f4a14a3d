from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

import requests

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class SignalDraft:
    symbol: str
    direction: str
    entry_price: float
    stop_loss: float
    take_profit_1: float
    take_profit_2: float | None = None
    take_profit_3: float | None = None
    confluence_score: int | None = None
    signal_id: str | None = None
    created_at: datetime | None = None
    source: str = "unknown"
    metadata: dict[str, Any] = field(default_factory=dict)


class SignalSource(Protocol):
    def fetch_new_signals(self) -> list[SignalDraft]:
        ...


def _parse_dt(value: str) -> datetime:
    normalized = value.replace(" ", "T")
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    dt = datetime.fromisoformat(normalized)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _optional_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return float(value)


def draft_from_item(item: dict[str, Any], *, source: str) -> SignalDraft:
    """
    Build a draft from one JSON object.

    Fields used (fallback keys supported):
    - symbol: "symbol" | "pair"
    - direction: "direction" | "side" (LONG/SHORT or BUY/SELL)
    - entry_price: "entry_price" | "entry"
    - stop_loss: "stop_loss" | "sl"
    - take_profit_1..3: "take_profit_N" | "tpN"
    """
    symbol = item.get("symbol") or item.get("pair")
    direction = item.get("direction") or item.get("side")
    if not symbol or not direction:
        raise ValueError("symbol and direction are required")
    score = item.get("confluence_score", item.get("confluence"))
    created_raw = item.get("created_at")
    known = {
        "id", "symbol", "pair", "direction", "side", "entry_price", "entry", "stop_loss", "sl",
        "take_profit_1", "tp1", "take_profit_2", "tp2", "take_profit_3", "tp3",
        "confluence_score", "confluence", "created_at",
    }
    return SignalDraft(
        symbol=str(symbol),
        direction=str(direction),
        entry_price=float(item.get("entry_price", item.get("entry"))),
        stop_loss=float(item.get("stop_loss", item.get("sl"))),
        take_profit_1=float(item.get("take_profit_1", item.get("tp1"))),
        take_profit_2=_optional_float(item.get("take_profit_2", item.get("tp2"))),
        take_profit_3=_optional_float(item.get("take_profit_3", item.get("tp3"))),
        confluence_score=int(score) if score is not None else None,
        signal_id=str(item["id"]) if item.get("id") else None,
        created_at=_parse_dt(str(created_raw)) if created_raw else None,
        source=source,
        metadata={key: value for key, value in item.items() if key not in known},
    )


def _drafts_from_payload(payload: Any, *, source: str) -> list[SignalDraft]:
    raw_items = payload.get("signals", payload) if isinstance(payload, dict) else payload
    if not isinstance(raw_items, list):
        return []
    drafts: list[SignalDraft] = []
    for index, item in enumerate(raw_items):
        if not isinstance(item, dict):
            continue
        try:
            drafts.append(draft_from_item(item, source=source))
        except (TypeError, ValueError) as exc:
            LOGGER.warning("Skipping malformed signal #%d from %s: %s", index, source, exc)
    return drafts


class JsonFileSignalSource:
    """Inbox file of already-analysed signals; consumed (renamed) after a successful read."""

    def __init__(self, json_path: str | Path, *, consume: bool = True):
        self.json_path = Path(json_path)
        self.consume = consume

    def fetch_new_signals(self) -> list[SignalDraft]:
        if not self.json_path.exists():
            return []
        try:
            payload = json.loads(self.json_path.read_text(encoding="utf-8"))
        except ValueError as exc:
            LOGGER.warning("Signal inbox %s is not valid JSON: %s", self.json_path, exc)
            return []
        drafts = _drafts_from_payload(payload, source="file")
        if self.consume:
            processed = self.json_path.with_name(f"{self.json_path.stem}.processed{self.json_path.suffix}")
            self.json_path.replace(processed)
        return drafts


class HttpSignalSource:
    """
    Generic HTTP signal feed.

    Expected response: list[dict] or {"signals": list[dict]}.
    """

    def __init__(self, *, url: str, token: str | None = None, timeout_seconds: int = 10):
        self.url = url
        self.token = token
        self.timeout_seconds = timeout_seconds

    def fetch_new_signals(self) -> list[SignalDraft]:
        headers: dict[str, str] = {}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        response = requests.get(self.url, headers=headers, timeout=self.timeout_seconds)
        response.raise_for_status()
        return _drafts_from_payload(response.json(), source="http")


class NullSignalSource:
    def fetch_new_signals(self) -> list[SignalDraft]:
        return []


def build_signal_source(
    *,
    provider_name: str,
    inbox_file: str | Path,
    http_url: str | None,
    http_token: str | None,
    timeout_seconds: int,
) -> SignalSource:
    name = provider_name.lower()
    if name == "http" and http_url:
        LOGGER.info("Using HTTP signal source: %s", http_url)
        return HttpSignalSource(url=http_url, token=http_token, timeout_seconds=timeout_seconds)
    if name == "none":
        LOGGER.info("Signal generation disabled; monitoring existing signals only")
        return NullSignalSource()
    LOGGER.info("Using signal inbox file: %s", inbox_file)
    return JsonFileSignalSource(inbox_file)
