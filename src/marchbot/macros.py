from __future__ import annotations

import re
from dataclasses import dataclass

import numpy as np

from .detector import Found, TemplateMatcher
from .device import GameScreen
from .errors import StepFailed
from .log import TaggedLog
from .ocr import GENERAL_PROFILE, TIME_PROFILE, TextExtractor
from .queue_status import crop_rect
from .timeutil import is_valid_march_time, parse_time_from_text, parse_time_to_seconds
from .timing import Timings
from .tracker import ResourceType

# Fixed screen points used when the matching template is not on screen.
SEARCH_BUTTON_POINT = (31, 535)
POPUP_DISMISS_POINT = (50, 750)
SEARCH_RESOURCE_POINT = (237, 789)
CLOSE_DETAILS_POINT = (415, 59)
DETAILS_BUTTON_POINTS = ((271, 661), (275, 665), (267, 657))

RESOURCE_LIST_SWIPE = (400, 570, 80, 570, 300)
RESOURCE_ICON_TAP_OFFSET = (40, 35)
RESOURCE_ICON_THRESHOLDS = (0.8, 0.7, 0.6, 0.5, 0.4)
RESOURCE_ICONS = {
    ResourceType.FOOD: "bread_icon",
    ResourceType.WOOD: "wood_icon",
    ResourceType.STONE: "stone_icon",
    ResourceType.IRON: "iron_icon",
}

MAX_RESOURCE_LEVEL = 8
PLUS_TAPS = 8
DEPLOY_TIME_RECT = (335, 713, 70, 16)
DEFAULT_MARCH_TIME = "02:30:00"

QUEUE_ROW_X = 240
QUEUE_ROW_FIRST_Y = 230
QUEUE_ROW_STEP = 55
DETAILS_THRESHOLDS = (0.6, 0.5, 0.4)
GATHER_TIME_SCAN_LIMIT = 50
GATHER_TIME_RETRIES = 3


def gather_time_regions(limit: int = GATHER_TIME_SCAN_LIMIT) -> list[tuple[int, int, int, int]]:
    """Candidate boxes for the gathering countdown on the march details page."""
    regions: list[tuple[int, int, int, int]] = []
    for x in (300, 320, 340, 360, 380, 400, 420):
        for y in (120, 140, 160, 180, 200, 220):
            for w in (60, 80, 100, 120):
                for h in (15, 20, 25, 30):
                    regions.append((x, y, w, h))
                    if len(regions) >= limit:
                        return regions
    return regions


def time_confidence(raw_text: str, parsed: str) -> float:
    raw = raw_text.strip()
    confidence = 0.0
    if re.fullmatch(r"\d{2}:\d{2}:\d{2}", raw):
        confidence += 10
    elif re.fullmatch(r"\d:\d{2}:\d{2}", raw):
        confidence += 8
    hours = int(parsed.split(":")[0])
    if 1 <= hours <= 6:
        confidence += 5
    return confidence


def queue_row_point(slot: int) -> tuple[int, int]:
    return QUEUE_ROW_X, QUEUE_ROW_FIRST_Y + (slot - 1) * QUEUE_ROW_STEP


@dataclass
class MarchViewNavigator:
    screen: GameScreen
    matcher: TemplateMatcher
    timings: Timings
    log: TaggedLog

    def is_world_view(self, frame: np.ndarray | None = None) -> bool:
        # The town shortcut is only shown while the world map is open.
        frame = frame if frame is not None else self.screen.capture()
        return bool(self.matcher.find(frame, "town_icon", 0.6))

    def ensure_world_view(self) -> bool:
        for attempt in range(1, self.timings.world_view_retries + 1):
            frame = self.screen.capture()
            if self.is_world_view(frame):
                return True
            world = self.matcher.find(frame, "world_icon", 0.6)
            if isinstance(world, Found):
                self.screen.tap_found(frame, world, label="world_icon")
            else:
                self.log.debug(f"world_icon not visible (attempt {attempt})")
            self.screen.sleep(self.timings.world_view_settle_sec)
            if self.is_world_view():
                self.log.info("world view confirmed")
                return True
        self.log.warn("could not reach world view")
        return False

    def setup_march_view(self) -> bool:
        frame = self.screen.capture()
        open_left = self.matcher.find(frame, "open_left", 0.6)
        if not isinstance(open_left, Found):
            self.log.warn("open_left button not found")
            return False
        self.screen.tap_found(frame, open_left, label="open_left")
        self.screen.sleep(self.timings.open_left_settle_sec)

        frame = self.screen.capture()
        wilderness = self.matcher.find(frame, "wilderness_button", 0.6)
        if not isinstance(wilderness, Found):
            self.log.warn("wilderness_button not found")
            return False
        self.screen.tap_found(frame, wilderness, label="wilderness_button")
        self.screen.sleep(self.timings.wilderness_settle_sec)
        return True


@dataclass
class DeployResult:
    resource: ResourceType
    slot: int
    march_sec: int
    march_text: str
    from_ocr: bool


@dataclass
class DeployMacro:
    """Drives one gathering march from the world map to the deploy tap.

    Every step either completes or raises `StepFailed`; the caller decides
    whether the batch goes on.
    """

    screen: GameScreen
    matcher: TemplateMatcher
    extractor: TextExtractor
    navigator: MarchViewNavigator
    timings: Timings
    log: TaggedLog
    default_march_time: str = DEFAULT_MARCH_TIME

    def deploy(self, resource: ResourceType, slot: int, first_in_batch: bool) -> DeployResult:
        self.log.tag("DEPLOY", f"{resource.value} on queue {slot} (first={first_in_batch})")
        self._ensure_world_view(first_in_batch)
        self._open_search()
        self._scroll_resources()
        self._select_resource(resource)
        self._set_max_amount()
        self._search_available_level()
        march_text, from_ocr = self._read_march_time()
        self._tap_deploy()
        return DeployResult(
            resource=resource,
            slot=slot,
            march_sec=parse_time_to_seconds(march_text),
            march_text=march_text,
            from_ocr=from_ocr,
        )

    def _ensure_world_view(self, first_in_batch: bool) -> None:
        if not first_in_batch:
            # A finished deploy leaves the map open; confirm that with one cheap check.
            self.screen.sleep(self.timings.subsequent_march_settle_sec)
            if self.navigator.is_world_view():
                return
            self.log.warn("not on world map after previous deploy; navigating again")
        if not self.navigator.ensure_world_view():
            raise StepFailed("world view not reachable")

    def _open_search(self) -> None:
        frame = self.screen.capture()
        search = self.matcher.find(frame, "search_button", 0.6)
        if isinstance(search, Found):
            tapped = self.screen.tap_found(frame, search, label="search_button")
        else:
            tapped = self.screen.tap(*SEARCH_BUTTON_POINT, label="search_button_fallback", frame=frame)
        if not tapped:
            raise StepFailed("could not tap search")
        self.screen.sleep(self.timings.search_open_settle_sec)

        if not self.screen.tap(*POPUP_DISMISS_POINT, label="dismiss_popup"):
            raise StepFailed("could not dismiss search popup")
        self.screen.sleep(self.timings.popup_dismiss_settle_sec)

        frame = self.screen.capture()
        on_panel = (
            self.matcher.find(frame, "plus_button", 0.5)
            or self.matcher.find(frame, "bread_icon", 0.4)
            or self.matcher.find(frame, "wood_icon", 0.4)
        )
        if not on_panel:
            raise StepFailed("resource search panel did not open")

    def _scroll_resources(self) -> None:
        x1, y1, x2, y2, duration_ms = RESOURCE_LIST_SWIPE
        if not self.screen.swipe(x1, y1, x2, y2, duration_ms):
            raise StepFailed("could not scroll resource list")
        self.screen.sleep(self.timings.scroll_settle_sec)

    def _select_resource(self, resource: ResourceType) -> None:
        icon = RESOURCE_ICONS[resource]
        for attempt in (1, 2):
            frame = self.screen.capture()
            found = self.matcher.find_first(frame, [icon], RESOURCE_ICON_THRESHOLDS)
            if isinstance(found, Found):
                dx, dy = RESOURCE_ICON_TAP_OFFSET
                if not self.screen.tap_found(frame, found, dx, dy, label=f"select_{icon}"):
                    raise StepFailed(f"could not tap {icon}")
                self.screen.sleep(self.timings.resource_select_settle_sec)
                return
            if attempt == 1:
                self.log.debug(f"{icon} not visible (best={found.best_confidence:.2f}); scrolling again")
                self._scroll_resources()
        raise StepFailed(f"{resource.value} icon not found")

    def _set_max_amount(self) -> None:
        frame = self.screen.capture()
        plus = self.matcher.find(frame, "plus_button", 0.7)
        if not isinstance(plus, Found):
            raise StepFailed("plus_button not found")
        for _ in range(PLUS_TAPS):
            if not self.screen.tap(plus.x, plus.y, label="plus_button"):
                raise StepFailed("could not tap plus_button")
            self.screen.sleep(self.timings.plus_tap_interval_sec, jitter=False)

    def _search_available_level(self) -> int:
        for level in range(MAX_RESOURCE_LEVEL, 0, -1):
            frame = self.screen.capture()
            search = self.matcher.find(frame, "searchrss_button", 0.7)
            if isinstance(search, Found):
                tapped = self.screen.tap_found(frame, search, label=f"search_level_{level}")
            else:
                tapped = self.screen.tap(*SEARCH_RESOURCE_POINT, label=f"search_level_{level}_fallback")
            if not tapped:
                raise StepFailed("could not tap resource search")
            self.screen.sleep(self.timings.search_result_settle_sec)

            frame = self.screen.capture()
            gather = self.matcher.find(frame, "gather_button", 0.6)
            if isinstance(gather, Found):
                self.log.info(f"resource node available at level {level}")
                if not self.screen.tap_found(frame, gather, label="gather_button"):
                    raise StepFailed("could not tap gather_button")
                self.screen.sleep(self.timings.gather_tap_settle_sec)
                return level

            if level == 1:
                break
            minus = self.matcher.find(frame, "minus_button", 0.7)
            if not isinstance(minus, Found):
                raise StepFailed(f"minus_button not found at level {level}")
            self.screen.tap_found(frame, minus, label="minus_button")
            self.screen.sleep(self.timings.minus_tap_settle_sec)
        raise StepFailed("no resource node available at any level")

    def _read_march_time(self) -> tuple[str, bool]:
        frame = self.screen.capture()
        text = self.extractor.extract(crop_rect(frame, DEPLOY_TIME_RECT), TIME_PROFILE)
        parsed = parse_time_from_text(text)
        if parsed and is_valid_march_time(parsed):
            self.log.tag("OCR", f"march time {parsed} (raw '{text}')")
            return parsed, True
        self.log.warn(f"march time unreadable (raw '{text}'); using {self.default_march_time}")
        return self.default_march_time, False

    def _tap_deploy(self) -> None:
        frame = self.screen.capture()
        deploy = self.matcher.find_first(frame, ["deploy_button", "deploy"], (0.6,))
        if not isinstance(deploy, Found):
            raise StepFailed("deploy button not found")
        if not self.screen.tap_found(frame, deploy, label="deploy"):
            raise StepFailed("could not tap deploy")
        self.screen.sleep(self.timings.deploy_settle_sec)

        frame = self.screen.capture()
        confirm = self.matcher.find(frame, "confirm_button", 0.7)
        if isinstance(confirm, Found):
            self.screen.tap_found(frame, confirm, label="confirm_deploy")
            self.screen.sleep(self.timings.deploy_settle_sec)


@dataclass
class MarchDetailsCollector:
    """Reads the real gathering countdown from a queue's details page."""

    screen: GameScreen
    matcher: TemplateMatcher
    extractor: TextExtractor
    timings: Timings
    log: TaggedLog

    def collect_gather_seconds(self, slot: int) -> int | None:
        x, y = queue_row_point(slot)
        if not self.screen.tap(x, y, label=f"queue_row_{slot}"):
            return None
        self.screen.sleep(self.timings.queue_row_settle_sec)
        if not self._open_details():
            self.log.warn(f"details page for queue {slot} did not open")
            return None
        try:
            gather_text = self._read_gather_time()
        finally:
            self._close_details()
        if gather_text is None:
            return None
        self.log.tag("OCR", f"queue {slot} gathering time {gather_text}")
        return parse_time_to_seconds(gather_text)

    def _open_details(self) -> bool:
        for attempt in (1, 2):
            frame = self.screen.capture()
            found = self.matcher.find_first(frame, ["details_button", "details"], DETAILS_THRESHOLDS)
            if isinstance(found, Found):
                if self.screen.tap_found(frame, found, label="details_button"):
                    self.screen.sleep(self.timings.details_open_settle_sec)
                    return True
            elif attempt == 1:
                self.screen.sleep(self.timings.details_button_retry_sec)
        for point in DETAILS_BUTTON_POINTS:
            if self.screen.tap(*point, label="details_button_fallback"):
                self.screen.sleep(self.timings.details_open_settle_sec)
                return True
        return False

    def _read_gather_time(self) -> str | None:
        frame: np.ndarray | None = None
        for retry in range(GATHER_TIME_RETRIES):
            if retry:
                self.screen.sleep(self.timings.details_retry_sec)
            frame = self.screen.capture()
            best = self._scan_regions(frame)
            if best is not None:
                return best
        if frame is None:
            return None
        # Last resort: read the whole page and take the first plausible countdown.
        page = self.extractor.extract(frame, GENERAL_PROFILE)
        for line in page.splitlines():
            parsed = parse_time_from_text(line)
            if parsed and is_valid_march_time(parsed):
                return parsed
        self.log.warn("gathering time not found on details page")
        return None

    def _scan_regions(self, frame: np.ndarray) -> str | None:
        best: str | None = None
        best_conf = -1.0
        for rect in gather_time_regions():
            text = self.extractor.extract(crop_rect(frame, rect), TIME_PROFILE)
            parsed = parse_time_from_text(text)
            if not parsed or not is_valid_march_time(parsed):
                continue
            conf = time_confidence(text, parsed)
            if conf > best_conf:
                best, best_conf = parsed, conf
                self.log.debug(f"gather time candidate {parsed} at {rect} conf={conf:.0f}")
        return best

    def _close_details(self) -> None:
        frame = self.screen.capture()
        close = self.matcher.find(frame, "close_gather", 0.7) or self.matcher.find(frame, "close_x", 0.6)
        if isinstance(close, Found):
            self.screen.tap_found(frame, close, label="close_details")
        else:
            self.screen.tap(*CLOSE_DETAILS_POINT, label="close_details_fallback")
        self.screen.sleep(self.timings.close_details_settle_sec)
