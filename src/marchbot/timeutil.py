from __future__ import annotations

import re

HHMMSS_RE = re.compile(r"(\d{1,2}):(\d{2}):(\d{2})")
MMSS_RE = re.compile(r"(\d{1,2}):(\d{2})")
DIGITS_RE = re.compile(r"\d{4,6}")

DEFAULT_TOTAL_TIME = "02:30:00"


def parse_time_to_seconds(text: str | None) -> int:
    """`HH:MM:SS` or `MM:SS` to seconds; anything unparseable is 0."""
    if not text or not text.strip():
        return 0
    parts = text.strip().split(":")
    try:
        values = [int(p) for p in parts]
    except ValueError:
        return 0
    if any(v < 0 for v in values):
        return 0
    if len(values) == 3:
        return values[0] * 3600 + values[1] * 60 + values[2]
    if len(values) == 2:
        return values[0] * 60 + values[1]
    return 0


def format_time(seconds: float) -> str:
    total = max(0, int(seconds))
    hours = total // 3600
    minutes = (total % 3600) // 60
    secs = total % 60
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def _normalize_hms(hours: int, minutes: int, seconds: int, raw: str) -> str:
    if 0 <= hours < 24 and 0 <= minutes < 60 and 0 <= seconds < 60:
        return f"{hours:02d}:{minutes:02d}:{seconds:02d}"
    return raw


def parse_time_from_text(text: str | None) -> str | None:
    """Pull a countdown out of noisy OCR text, normalized to `HH:MM:SS`."""
    if not text or not text.strip():
        return None
    cleaned = re.sub(r"[^0-9:]", "", text)

    m = HHMMSS_RE.search(cleaned)
    if m:
        h, mi, s = (int(g) for g in m.groups())
        return _normalize_hms(h, mi, s, m.group(0))

    m = MMSS_RE.search(cleaned)
    if m:
        mi, s = (int(g) for g in m.groups())
        return _normalize_hms(0, mi, s, f"00:{m.group(0)}")

    m = DIGITS_RE.search(cleaned)
    if m:
        digits = m.group(0)
        if len(digits) == 6:
            return f"{digits[0:2]}:{digits[2:4]}:{digits[4:6]}"
        if len(digits) == 4:
            return f"00:{digits[0:2]}:{digits[2:4]}"
    return None


def is_valid_march_time(text: str | None) -> bool:
    if not text:
        return False
    parts = text.split(":")
    if len(parts) != 3:
        return False
    try:
        hours, minutes, seconds = (int(p) for p in parts)
    except ValueError:
        return False
    if hours == 0 and minutes == 0 and seconds == 0:
        return False
    if hours > 12 or hours < 0:
        return False
    return 0 <= minutes < 60 and 0 <= seconds < 60


def calculate_total_time(gather_time: str | None, march_time: str | None) -> str:
    # Out and back again, plus the time spent on the node.
    if gather_time is None or march_time is None:
        return DEFAULT_TOTAL_TIME
    total = parse_time_to_seconds(gather_time) + 2 * parse_time_to_seconds(march_time)
    return format_time(total)
