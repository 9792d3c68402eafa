from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

import numpy as np

from .detector import Found, TemplateMatcher
from .device import GameScreen
from .errors import CaptureError
from .log import TaggedLog
from .timing import Timings

RUNNING_MARKERS = ("world_icon", "game_icon", "town_icon")
POPUP_CLOSE_BUTTONS = ("close_x", "close_x2")
LAUNCHER_THRESHOLDS = (0.8, 0.7, 0.6, 0.5)
# Close buttons outside this box are usually false hits on screen chrome.
POPUP_X_RANGE = (20, 460)
POPUP_Y_RANGE = (50, 750)


class GameState(str, Enum):
    RUNNING = "running"
    POPUP = "popup"
    LAUNCHER = "launcher"
    UNKNOWN = "unknown"


@dataclass
class ScreenCheck:
    state: GameState
    target: Found | None = None


def valid_popup_location(found: Found) -> bool:
    return (
        POPUP_X_RANGE[0] <= found.x <= POPUP_X_RANGE[1]
        and POPUP_Y_RANGE[0] <= found.y <= POPUP_Y_RANGE[1]
    )


@dataclass
class AutoStartGame:
    screen: GameScreen
    matcher: TemplateMatcher
    timings: Timings
    log: TaggedLog
    attempts: int = 10

    def check(self, frame: np.ndarray) -> ScreenCheck:
        for name in RUNNING_MARKERS:
            if self.matcher.find(frame, name, 0.7):
                return ScreenCheck(GameState.RUNNING)
        for name in POPUP_CLOSE_BUTTONS:
            popup = self.matcher.find(frame, name, 0.8)
            if isinstance(popup, Found) and valid_popup_location(popup):
                return ScreenCheck(GameState.POPUP, popup)
        launcher = self.matcher.find_first(frame, ["game_launcher"], LAUNCHER_THRESHOLDS)
        if isinstance(launcher, Found):
            return ScreenCheck(GameState.LAUNCHER, launcher)
        return ScreenCheck(GameState.UNKNOWN)

    def run(self) -> bool:
        for attempt in range(1, self.attempts + 1):
            try:
                frame = self.screen.capture()
            except CaptureError as exc:
                self.log.warn(f"game start attempt {attempt}: {exc}")
                self.screen.sleep(self.timings.game_verify_interval_sec)
                continue

            result = self.check(frame)
            if result.state == GameState.RUNNING:
                self.log.info("game already running")
                return True
            if result.state == GameState.POPUP and result.target is not None:
                self.screen.tap_found(frame, result.target, label="close_popup")
                self.screen.sleep(self.timings.popup_close_settle_sec)
                frame = self.screen.capture()
                result = self.check(frame)
                if result.state == GameState.RUNNING:
                    return True
            if result.state == GameState.LAUNCHER and result.target is not None:
                self.log.info("tapping game launcher")
                if self.screen.tap_found(frame, result.target, label="game_launcher") and self._wait_for_game():
                    self.log.info("game started")
                    return True
            else:
                self.log.debug(f"attempt {attempt}: nothing actionable on screen")
            if attempt < self.attempts:
                self.screen.sleep(self.timings.game_verify_interval_sec)
        self.log.fail("game did not start")
        return False

    def _wait_for_game(self) -> bool:
        self.screen.sleep(self.timings.game_launch_wait_sec)
        for attempt in range(1, self.timings.game_verify_attempts + 1):
            frame = self.screen.capture()
            result = self.check(frame)
            if result.state == GameState.RUNNING:
                return True
            if result.state == GameState.POPUP and result.target is not None:
                self.screen.tap_found(frame, result.target, label="close_popup_loading")
                self.screen.sleep(self.timings.popup_close_settle_sec)
                if self.check(self.screen.capture()).state == GameState.RUNNING:
                    return True
            if attempt < self.timings.game_verify_attempts:
                self.screen.sleep(self.timings.game_verify_interval_sec)
        return False
