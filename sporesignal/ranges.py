"""Named relative time ranges used by historical reads and the range cache."""

from __future__ import annotations

RANGE_ORDER: tuple[str, ...] = ("rt", "4h", "12h", "1d", "3d", "1w", "all")

RANGE_ALIASES: dict[str, str] = {
    "live": "rt",
    "realtime": "rt",
    "24h": "1d",
    "day": "1d",
    "72h": "3d",
    "7d": "1w",
    "week": "1w",
}

RANGE_HOURS: dict[str, int | None] = {
    "rt": None,
    "4h": 4,
    "12h": 12,
    "1d": 24,
    "3d": 72,
    "1w": 168,
    "all": None,
}

TARGET_POINTS: dict[str, int] = {
    "rt": 360,
    "4h": 720,
    "12h": 720,
    "1d": 600,
    "3d": 480,
    "1w": 420,
    "all": 360,
}

LIVE_RANGE = "rt"
DEFAULT_RANGE = "4h"

MS_PER_HOUR = 3_600_000


def normalize_range_token(token: str | None, default: str = DEFAULT_RANGE) -> str:
    """Resolve *token* (case-insensitive, aliases allowed) to a canonical range.

    Raises ``ValueError`` for anything unknown; ``None`` or blank yields *default*.
    """
    if token is None or not str(token).strip():
        return default
    text = str(token).strip().lower()
    text = RANGE_ALIASES.get(text, text)
    if text not in RANGE_HOURS:
        raise ValueError(f"Unknown range token: {token!r}")
    return text


def fetch_range_for(token: str) -> str:
    """Range whose history window backs *token*; live mode seeds from ``4h``."""
    token = normalize_range_token(token)
    return "4h" if token == LIVE_RANGE else token


def range_hours(token: str) -> int | None:
    return RANGE_HOURS[fetch_range_for(token)]


def range_window_ms(token: str) -> int | None:
    hours = range_hours(token)
    return None if hours is None else hours * MS_PER_HOUR


def target_points(token: str) -> int:
    return TARGET_POINTS[normalize_range_token(token)]
