from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Sequence

import numpy as np

from .ocr import QUEUE_PROFILE, TextExtractor

QUEUE_COUNT = 6
# Status text column of the march-queue panel; excludes the slot icons.
QUEUE_PANEL_RECT = (100, 200, 120, 280)
STATUS_LOOKAHEAD = 4

QUEUE_LABEL_RE = re.compile(r"(?:march\s+)?queue\s*(\d+)", re.IGNORECASE)
BARE_NUMBER_RE = re.compile(r"\b([1-6])\b")


class SlotStatus(str, Enum):
    IDLE = "Idle"
    GATHERING = "Gathering"
    RETURNING = "Returning"
    LOCKED = "Locked"
    UNAVAILABLE = "Unavailable"


GATHERING_WORDS = ("gathering", "athering", "gather", "gath", "ering")
GATHERING_FUZZY = (
    re.compile(r"g.*a.*t.*h.*e.*r"),
    re.compile(r"lvl?.*\d+.*mill"),
    re.compile(r"mill"),
    re.compile(r"\d{2}:\d{2}:\d{2}"),
)
LOCKED_FUZZY = (
    re.compile(r"unl"),
    re.compile(r"wu\s*s\b"),
    re.compile(r"ock\b"),
)
IDLE_FUZZY = re.compile(r"i.*d.*l.*e")
RETURNING_FUZZY = re.compile(r"r.*e.*t.*u.*r.*n")


def default_status(slot: int) -> SlotStatus:
    return SlotStatus.IDLE if slot <= 3 else SlotStatus.UNAVAILABLE


def detect_status(line: str) -> SlotStatus | None:
    lower = line.strip().lower()
    if not lower:
        return None

    if any(word in lower for word in GATHERING_WORDS):
        return SlotStatus.GATHERING
    if lower == "idle":
        return SlotStatus.IDLE
    if "returning" in lower:
        return SlotStatus.RETURNING
    if "cannot" in lower or "can not" in lower:
        return SlotStatus.UNAVAILABLE
    if "unlock" in lower:
        return SlotStatus.LOCKED

    # OCR of the small panel font garbles words; fall back to loose shapes.
    if any(p.search(lower) for p in GATHERING_FUZZY):
        return SlotStatus.GATHERING
    if any(p.search(lower) for p in LOCKED_FUZZY):
        return SlotStatus.LOCKED
    if IDLE_FUZZY.search(lower):
        return SlotStatus.IDLE
    if RETURNING_FUZZY.search(lower):
        return SlotStatus.RETURNING
    return None


def _near_queue_words(lines: Sequence[str], index: int) -> bool:
    lo = max(0, index - 1)
    hi = min(len(lines), index + 2)
    return any("queue" in lines[i].lower() or "march" in lines[i].lower() for i in range(lo, hi))


def extract_queue_number(lines: Sequence[str], index: int) -> int:
    line = lines[index]
    m = QUEUE_LABEL_RE.search(line)
    if m:
        return int(m.group(1))
    # A bare digit is a label only on a line that is not itself a status ("Lv.5 Mill").
    m = BARE_NUMBER_RE.search(line)
    if m and detect_status(line) is None and _near_queue_words(lines, index):
        return int(m.group(1))
    return 0


def _status_after_label(lines: Sequence[str], start: int) -> SlotStatus | None:
    # The label line itself may carry the status ("Queue 2 Gathering").
    label_rest = QUEUE_LABEL_RE.sub("", lines[start])
    status = detect_status(label_rest)
    if status is not None:
        return status
    for i in range(start + 1, min(len(lines), start + STATUS_LOOKAHEAD)):
        if extract_queue_number(lines, i) > 0:
            break
        status = detect_status(lines[i])
        if status is not None:
            return status
    return None


def classify(ocr_lines: Iterable[str]) -> list[SlotStatus]:
    """Slot statuses 1..6 from the OCR lines of the march-queue panel.

    A status is tied to the nearest "Queue N" label above it. Slots that
    cannot be read fall back to position defaults: 1-3 Idle, 4-6 Unavailable.
    """
    lines = [line.strip() for line in ocr_lines]
    detected: dict[int, SlotStatus] = {}
    for i in range(len(lines)):
        slot = extract_queue_number(lines, i)
        if not 1 <= slot <= QUEUE_COUNT or slot in detected:
            continue
        status = _status_after_label(lines, i)
        if status is not None:
            detected[slot] = status
    return [detected.get(slot, default_status(slot)) for slot in range(1, QUEUE_COUNT + 1)]


def idle_slots(statuses: Sequence[SlotStatus]) -> list[int]:
    return [i + 1 for i, s in enumerate(statuses) if s == SlotStatus.IDLE]


def active_count(statuses: Sequence[SlotStatus]) -> int:
    return sum(1 for s in statuses if s == SlotStatus.GATHERING)


def crop_rect(frame: np.ndarray, rect: tuple[int, int, int, int]) -> np.ndarray:
    height, width = frame.shape[:2]
    x, y, w, h = rect
    x = max(0, min(x, width - 1))
    y = max(0, min(y, height - 1))
    w = max(1, min(w, width - x))
    h = max(1, min(h, height - y))
    return frame[y : y + h, x : x + w]


@dataclass
class QueuePanelReader:
    extractor: TextExtractor
    panel_rect: tuple[int, int, int, int] = QUEUE_PANEL_RECT

    def read_lines(self, frame: np.ndarray) -> list[str]:
        text = self.extractor.extract(crop_rect(frame, self.panel_rect), QUEUE_PROFILE)
        return [line for line in text.splitlines() if line.strip()]

    def read(self, frame: np.ndarray) -> tuple[list[SlotStatus], list[str]]:
        lines = self.read_lines(frame)
        return classify(lines), lines
