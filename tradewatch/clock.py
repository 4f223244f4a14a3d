from __future__ import annotations

from datetime import datetime, time, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

# Session windows in exchange-local time.
KILL_ZONES: dict[str, tuple[str, time, time]] = {
    "asian": ("Asia/Tokyo", time(9, 0), time(12, 0)),
    "london_open": ("Europe/London", time(7, 0), time(10, 0)),
    "ny_open": ("America/New_York", time(8, 0), time(11, 0)),
    "london_close": ("Europe/London", time(15, 0), time(17, 0)),
}


def _get_zone(timezone_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(timezone_name)
    except ZoneInfoNotFoundError as exc:
        raise RuntimeError(
            f"Timezone '{timezone_name}' is not available. "
            "Install tzdata in your environment: pip install tzdata"
        ) from exc


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_timezone(dt: datetime, timezone_name: str) -> datetime:
    return ensure_utc(dt).astimezone(_get_zone(timezone_name))


def hours_between(start: datetime, end: datetime) -> float:
    return (ensure_utc(end) - ensure_utc(start)).total_seconds() / 3600.0


def is_weekend(dt: datetime, timezone_name: str = "UTC") -> bool:
    return to_timezone(dt, timezone_name).weekday() >= 5


def active_kill_zone(dt: datetime, zones: list[str]) -> str | None:
    for name in zones:
        window = KILL_ZONES.get(name.strip().lower())
        if window is None:
            continue
        zone_name, start, end = window
        local = to_timezone(dt, zone_name)
        if local.weekday() >= 5:
            continue
        if start <= local.time() < end:
            return name
    return None


def in_kill_zone(dt: datetime, zones: list[str]) -> bool:
    return active_kill_zone(dt, zones) is not None
