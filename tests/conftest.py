"""
Pytest configuration and shared fixtures for marchbot tests.
"""
from __future__ import annotations

import threading
from dataclasses import fields, replace
from typing import Any
from unittest.mock import MagicMock

import numpy as np
import pytest

from marchbot.log import TaggedLog
from marchbot.timing import Timings


# =============================================================================
# Frame Fixtures
# =============================================================================

@pytest.fixture
def sample_frame() -> np.ndarray:
    """Portrait MEmu frame (540x960 BGR), all black."""
    return np.zeros((960, 540, 3), dtype=np.uint8)


# =============================================================================
# Clock / Timing Fixtures
# =============================================================================

class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fast_timings() -> Timings:
    """Default timings with every delay zeroed."""
    zeroed = {f.name: 0.0 for f in fields(Timings) if f.name.endswith("_sec")}
    return replace(Timings(), **zeroed)


@pytest.fixture
def quiet_log() -> TaggedLog:
    return TaggedLog(prefix="test")


# =============================================================================
# ADB / Screen Mock Fixtures
# =============================================================================

@pytest.fixture
def mock_adb() -> MagicMock:
    """Mock AdbClient that tracks all calls."""
    adb = MagicMock()
    adb.tap = MagicMock(return_value=None)
    adb.swipe = MagicMock(return_value=None)
    adb.connect = MagicMock(return_value=True)
    adb.serial = "127.0.0.1:21503"
    adb.adb_path = "adb"
    return adb


@pytest.fixture
def mock_screen(sample_frame: np.ndarray, mock_adb: MagicMock) -> MagicMock:
    """Mock GameScreen with a real stop event; sleeps return immediately."""
    screen = MagicMock()
    screen.adb = mock_adb
    screen.stop_event = threading.Event()
    screen.capture = MagicMock(return_value=sample_frame)
    screen.tap = MagicMock(return_value=True)
    screen.tap_found = MagicMock(return_value=True)
    screen.swipe = MagicMock(return_value=True)
    screen.sleep = MagicMock(return_value=None)
    screen.checkpoint = MagicMock(return_value=None)
    return screen


@pytest.fixture
def mock_matcher() -> MagicMock:
    """TemplateMatcher mock; configure `find.side_effect` per test."""
    from marchbot.detector import NotFound

    matcher = MagicMock()
    matcher.find = MagicMock(side_effect=lambda frame, name, min_confidence=0.8: NotFound(name))
    matcher.find_first = MagicMock(side_effect=lambda frame, names, thresholds: NotFound(names[0]))
    return matcher


@pytest.fixture
def engine_factory() -> Any:
    """Factory for fake OCR engines mapping config substrings to outputs."""
    def _create(outputs: dict[str, str], default: str = "") -> MagicMock:
        def _engine(image: np.ndarray, config: str) -> str:
            for key, text in outputs.items():
                if key in config:
                    return text
            return default
        return MagicMock(side_effect=_engine)
    return _create
