from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import Callable

import cv2
import numpy as np
import pytesseract

ALNUM_WHITELIST = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789:"

Scorer = Callable[[str], float]
Engine = Callable[[np.ndarray, str], str]


def score_time_text(text: str | None) -> float:
    """Plausibility of `text` as a countdown, 0..10."""
    if not text or not text.strip():
        return 0.0
    cleaned = re.sub(r"[^0-9:]", "", text)
    if re.fullmatch(r"\d{2}:\d{2}:\d{2}", cleaned):
        return 10.0
    if re.fullmatch(r"\d:\d{2}:\d{2}", cleaned):
        return 9.0
    if re.fullmatch(r"\d{2}:\d{2}", cleaned):
        return 8.0
    if re.fullmatch(r"\d:\d{2}", cleaned):
        return 7.0
    if re.fullmatch(r"\d{6}", cleaned):
        return 6.0
    if re.fullmatch(r"\d{4}", cleaned):
        return 5.0
    if ":" in cleaned and re.search(r"\d", cleaned):
        return 3.0
    if re.fullmatch(r"\d{2,8}", cleaned):
        return 2.0
    return 0.0


def _short_noise_words(words: list[str]) -> int:
    return sum(1 for w in words if len(w) < 2 and not w.isdigit())


def score_general_text(text: str | None) -> float:
    """Readable-text score, 0..100: long words add, stray glyphs subtract."""
    if not text or not text.strip():
        return 0.0
    words = text.split()
    score = 50 + 5 * sum(1 for w in words if len(w) >= 3) - 3 * _short_noise_words(words)
    return float(max(0, min(100, score)))


def score_queue_text(text: str | None) -> float:
    if not text or not text.strip():
        return 0.0
    lower = text.lower()
    score = 0
    if "march queue" in lower:
        score += 20
    for keyword in ("idle", "cannot use", "unlock", "gathering"):
        if keyword in lower:
            score += 15
    if "returning" in lower:
        score += 10
    for n in range(1, 7):
        if f"queue {n}" in lower:
            score += 5
    score -= 2 * _short_noise_words(text.split())
    return float(max(0, min(100, score)))


@dataclass(frozen=True)
class OcrProfile:
    name: str
    configs: tuple[str, ...]
    scorer: Scorer
    good_enough: float
    # Preprocessing: upscale factor and fixed binarization cut (None = grayscale only).
    scale: float = 1.0
    binarize_at: int | None = None


TIME_PROFILE = OcrProfile(
    name="time",
    configs=(
        "--psm 8 --oem 1 -c tessedit_char_whitelist=0123456789:",
        "--psm 7 --oem 1 -c tessedit_char_whitelist=0123456789:",
        "--psm 8 --oem 1 -c tessedit_char_whitelist=0123456789",
        "--psm 7 --oem 0 -c tessedit_char_whitelist=0123456789:",
        "--psm 6 --oem 1",
    ),
    scorer=score_time_text,
    good_enough=10.0,
    scale=3.0,
    binarize_at=100,
)

GENERAL_PROFILE = OcrProfile(
    name="general",
    configs=(
        f"--psm 6 --oem 1 -c tessedit_char_whitelist={ALNUM_WHITELIST}",
        f"--psm 7 --oem 1 -c tessedit_char_whitelist={ALNUM_WHITELIST}",
        f"--psm 8 --oem 1 -c tessedit_char_whitelist={ALNUM_WHITELIST}",
        "--psm 6 --oem 3",
        "--psm 7 --oem 3",
    ),
    scorer=score_general_text,
    good_enough=95.0,
)

QUEUE_PROFILE = OcrProfile(
    name="queue",
    configs=(
        f"--psm 6 --oem 1 -c tessedit_char_whitelist={ALNUM_WHITELIST}",
        f"--psm 7 --oem 1 -c tessedit_char_whitelist={ALNUM_WHITELIST}",
        "--psm 6 --oem 3",
        "--psm 7 --oem 3",
    ),
    scorer=score_queue_text,
    good_enough=95.0,
    scale=1.0,
    binarize_at=128,
)


@dataclass
class OcrConfig:
    tesseract_cmd: str = ""
    time_good_enough: float = 10.0
    general_good_enough: float = 95.0
    queue_good_enough: float = 95.0

    def tuned(self, profile: OcrProfile) -> OcrProfile:
        ceilings = {
            TIME_PROFILE.name: self.time_good_enough,
            GENERAL_PROFILE.name: self.general_good_enough,
            QUEUE_PROFILE.name: self.queue_good_enough,
        }
        if profile.name not in ceilings:
            return profile
        return replace(profile, good_enough=ceilings[profile.name])


def _tesseract_engine(image: np.ndarray, config: str) -> str:
    return pytesseract.image_to_string(image, config=config)


@dataclass
class OcrAttempt:
    config: str
    text: str
    score: float


@dataclass
class TextExtractor:
    config: OcrConfig = field(default_factory=OcrConfig)
    engine: Engine | None = None
    debug: bool = False

    def __post_init__(self) -> None:
        if self.config.tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = self.config.tesseract_cmd
        if self.engine is None:
            self.engine = _tesseract_engine
        self.engine_missing = False

    def preprocess(self, region: np.ndarray, profile: OcrProfile) -> np.ndarray:
        img = region
        if img.ndim == 3:
            img = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
        if profile.scale and profile.scale != 1.0:
            img = cv2.resize(img, None, fx=profile.scale, fy=profile.scale, interpolation=cv2.INTER_CUBIC)
        if profile.binarize_at is not None:
            img = cv2.threshold(img, profile.binarize_at, 255, cv2.THRESH_BINARY)[1]
        return img

    def attempts(self, region: np.ndarray, profile: OcrProfile) -> list[OcrAttempt]:
        """Every recognizer pass that ran, stopping after the first good-enough one."""
        profile = self.config.tuned(profile)
        if region is None or getattr(region, "size", 0) == 0 or self.engine_missing:
            return []
        image = self.preprocess(region, profile)
        out: list[OcrAttempt] = []
        for cfg in profile.configs:
            try:
                raw = self.engine(image, cfg)
            except pytesseract.TesseractNotFoundError:
                print("[WARN] Tesseract OCR is not installed or not on PATH; OCR disabled.")
                self.engine_missing = True
                break
            except (pytesseract.TesseractError, RuntimeError, cv2.error) as exc:
                print(f"[OCR] {profile.name} config failed ({cfg}): {exc}")
                continue
            text = (raw or "").strip()
            if not text:
                continue
            attempt = OcrAttempt(config=cfg, text=text, score=profile.scorer(text))
            out.append(attempt)
            if self.debug:
                shown = text.replace("\n", " | ")
                print(f"[OCR] {profile.name} score={attempt.score:.0f} text='{shown}'")
            if attempt.score >= profile.good_enough:
                break
        return out

    def extract(self, region: np.ndarray, profile: OcrProfile) -> str:
        """Best-scoring text for `region`, or "" when nothing usable came back."""
        best: OcrAttempt | None = None
        for attempt in self.attempts(region, profile):
            if best is None or attempt.score > best.score:
                best = attempt
        if best is None:
            return ""
        return best.text
