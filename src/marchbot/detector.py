from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Union

import cv2
import numpy as np


@dataclass(frozen=True)
class Found:
    name: str
    confidence: float
    # Centre of the matched box in screen pixels.
    x: int
    y: int
    w: int = 0
    h: int = 0

    @property
    def left(self) -> int:
        return self.x - self.w // 2

    @property
    def top(self) -> int:
        return self.y - self.h // 2

    def __bool__(self) -> bool:
        return True


@dataclass(frozen=True)
class NotFound:
    name: str
    best_confidence: float = 0.0
    reason: str = ""

    def __bool__(self) -> bool:
        return False


PerceptionResult = Union[Found, NotFound]


@dataclass
class Template:
    name: str
    image: np.ndarray


def load_template(path: str, name: str) -> Template:
    p = Path(path)
    image = cv2.imread(str(p), cv2.IMREAD_COLOR)
    if image is None:
        raise FileNotFoundError(f"Template image not found or unreadable: {p}")
    return Template(name=name, image=image)


def match_template(frame: np.ndarray, template: Template, threshold: float) -> PerceptionResult:
    fh, fw = frame.shape[:2]
    th, tw = template.image.shape[:2]
    if th > fh or tw > fw:
        return NotFound(template.name, reason="template larger than frame")
    result = cv2.matchTemplate(frame, template.image, cv2.TM_CCOEFF_NORMED)
    _, max_val, _, max_loc = cv2.minMaxLoc(result)
    # Flat images give NaN scores.
    confidence = 0.0 if np.isnan(max_val) else min(1.0, max(0.0, float(max_val)))
    if confidence < threshold:
        return NotFound(template.name, best_confidence=confidence)
    x, y = max_loc
    return Found(
        name=template.name,
        confidence=confidence,
        x=int(x) + tw // 2,
        y=int(y) + th // 2,
        w=int(tw),
        h=int(th),
    )


class TemplateMatcher:
    """Finds named UI templates on a screenshot.

    Lookups never raise: a missing or corrupt template, an empty frame or an
    OpenCV error all come back as `NotFound`, so macro steps can fall back to
    fixed coordinates.
    """

    def __init__(self, templates_dir: str | Path) -> None:
        self.templates_dir = Path(templates_dir)
        self._cache: dict[str, Optional[Template]] = {}
        self._lock = threading.Lock()
        self._missing_warned: set[str] = set()

    def _template_path(self, name: str) -> Path:
        file_name = name if name.endswith(".png") else f"{name}.png"
        return self.templates_dir / file_name

    def get(self, name: str) -> Optional[Template]:
        with self._lock:
            if name in self._cache:
                return self._cache[name]
        try:
            tmpl: Optional[Template] = load_template(str(self._template_path(name)), name)
        except FileNotFoundError as exc:
            if name not in self._missing_warned:
                self._missing_warned.add(name)
                print(f"[WARN] {exc}")
            tmpl = None
        with self._lock:
            self._cache[name] = tmpl
        return tmpl

    def find(self, frame: np.ndarray | None, name: str, min_confidence: float) -> PerceptionResult:
        if frame is None or getattr(frame, "size", 0) == 0:
            return NotFound(name, reason="empty frame")
        tmpl = self.get(name)
        if tmpl is None:
            return NotFound(name, reason="template unavailable")
        try:
            return match_template(frame, tmpl, min_confidence)
        except cv2.error as exc:
            return NotFound(name, reason=f"opencv: {exc}")

    def find_first(
        self,
        frame: np.ndarray | None,
        names: Iterable[str],
        thresholds: Iterable[float],
    ) -> PerceptionResult:
        """Try each threshold from tight to loose, each over all `names`."""
        names = list(names)
        best = NotFound(names[0] if names else "", reason="no candidates")
        for threshold in thresholds:
            for name in names:
                res = self.find(frame, name, threshold)
                if isinstance(res, Found):
                    return res
                if res.best_confidence > best.best_confidence:
                    best = res
        return best
