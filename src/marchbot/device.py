from __future__ import annotations

import re
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

import cv2
import numpy as np

from .adb_client import IEND_CHUNK, AdbClient
from .detector import Found
from .errors import CaptureError, StopRequested
from .log import TaggedLog
from .timing import RetryPolicy, Timings, jittered


def decode_frame(png_bytes: bytes) -> np.ndarray:
    if not png_bytes:
        raise ValueError(
            "Screenshot bytes are empty or not a valid PNG stream. "
            "Check `adb devices` and run: adb exec-out screencap -p > /tmp/screen.png"
        )
    if not png_bytes.endswith(IEND_CHUNK):
        raise ValueError(f"Truncated screenshot (len={len(png_bytes)}, no IEND chunk)")
    arr = np.frombuffer(png_bytes, dtype=np.uint8)
    frame = cv2.imdecode(arr, cv2.IMREAD_COLOR)
    if frame is None:
        raise ValueError(f"Failed to decode screenshot bytes (len={len(png_bytes)}).")
    return frame


@dataclass
class GameScreen:
    """One instance's screen: capture, taps and swipes with bounded retries.

    All waits go through `sleep`, which wakes early and raises
    `StopRequested` once `stop_event` is set.
    """

    adb: AdbClient
    timings: Timings
    log: TaggedLog
    screenshot_dir: str = "screenshots"
    save_debug_screenshots: bool = False
    stop_event: threading.Event = field(default_factory=threading.Event)

    def __post_init__(self) -> None:
        self.capture_policy = RetryPolicy(self.timings.capture_attempts, self.timings.capture_retry_sec)
        self.tap_policy = RetryPolicy(self.timings.tap_attempts, self.timings.tap_retry_sec)
        self.last_frame: np.ndarray | None = None
        Path(self.screenshot_dir).mkdir(parents=True, exist_ok=True)

    def checkpoint(self) -> None:
        if self.stop_event.is_set():
            raise StopRequested("stop requested")

    def sleep(self, seconds: float, jitter: bool = True) -> None:
        self.checkpoint()
        delay = jittered(seconds, self.timings.jitter_sec if jitter else 0.0)
        if delay > 0 and self.stop_event.wait(delay):
            raise StopRequested("stop requested")

    def capture(self) -> np.ndarray:
        self.checkpoint()

        def _once() -> np.ndarray:
            return decode_frame(self.adb.screenshot_png_bytes())

        def _retry(attempt: int, exc: Exception) -> None:
            self.log.debug(f"capture attempt {attempt} failed: {exc}")

        try:
            frame = self.capture_policy.run(_once, sleep=self.sleep, on_retry=_retry)
        except StopRequested:
            raise
        except (subprocess.SubprocessError, OSError, ValueError) as exc:
            raise CaptureError(f"screenshot failed: {exc}") from exc
        self.last_frame = frame
        return frame

    def tap(self, x: int, y: int, label: str = "tap", frame: np.ndarray | None = None) -> bool:
        self.checkpoint()
        if frame is not None:
            height, width = frame.shape[:2]
            x = max(0, min(x, width - 1))
            y = max(0, min(y, height - 1))
        try:
            self.tap_policy.run(lambda: self.adb.tap(x, y), sleep=self.sleep)
        except (subprocess.SubprocessError, OSError) as exc:
            self.log.warn(f"tap {label} at ({x}, {y}) failed: {exc}")
            return False
        self.log.debug(f"tap {label} at ({x}, {y})")
        if frame is not None:
            self.save_action_debug(frame, label, tap_xy=(x, y))
        return True

    def tap_found(
        self,
        frame: np.ndarray,
        found: Found,
        offset_x: int = 0,
        offset_y: int = 0,
        label: str | None = None,
    ) -> bool:
        self.checkpoint()
        height, width = frame.shape[:2]
        x = max(0, min(found.x + offset_x, width - 1))
        y = max(0, min(found.y + offset_y, height - 1))
        ok = self.tap(x, y, label=label or f"tap_{found.name}")
        if ok:
            self.save_action_debug(frame, label or f"tap_{found.name}", tap_xy=(x, y), found=found)
        return ok

    def swipe(self, x1: int, y1: int, x2: int, y2: int, duration_ms: int = 300) -> bool:
        self.checkpoint()
        try:
            self.tap_policy.run(lambda: self.adb.swipe(x1, y1, x2, y2, duration_ms), sleep=self.sleep)
        except (subprocess.SubprocessError, OSError) as exc:
            self.log.warn(f"swipe ({x1},{y1})->({x2},{y2}) failed: {exc}")
            return False
        return True

    def save_debug(self, frame: np.ndarray, label: str, force: bool = False) -> str | None:
        if not force and not self.save_debug_screenshots:
            return None
        ts = int(time.time() * 1000)
        safe_label = re.sub(r"[^a-zA-Z0-9_.-]+", "_", label).strip("_") or "debug"
        out = Path(self.screenshot_dir) / f"{safe_label}_{ts}.png"
        cv2.imwrite(str(out), frame)
        return str(out)

    def save_action_debug(
        self,
        frame: np.ndarray,
        label: str,
        tap_xy: tuple[int, int] | None = None,
        found: Found | None = None,
    ) -> str | None:
        if not self.save_debug_screenshots:
            return None
        debug = frame.copy()
        if found is not None:
            cv2.rectangle(
                debug,
                (found.left, found.top),
                (found.left + found.w, found.top + found.h),
                (0, 255, 255),
                2,
            )
        if tap_xy is not None:
            cv2.circle(debug, tap_xy, 8, (0, 0, 255), -1)
        path = self.save_debug(debug, f"action_{label}")
        if path:
            self.log.debug(f"action_screenshot={path}")
        return path

    def failure_snapshot(self, label: str) -> None:
        if not self.save_debug_screenshots or self.last_frame is None:
            return
        path = self.save_debug(self.last_frame, f"{label}_snapshot", force=True)
        if path:
            print(f"[DEBUG] failure_screenshot={path}")
