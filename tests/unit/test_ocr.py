"""
Unit tests for marchbot/ocr.py - multi-pass OCR scoring and early exit.
"""
from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock

import numpy as np
import pytesseract
import pytest

from marchbot.ocr import (
    GENERAL_PROFILE,
    QUEUE_PROFILE,
    TIME_PROFILE,
    OcrConfig,
    TextExtractor,
    score_general_text,
    score_queue_text,
    score_time_text,
)


@pytest.fixture
def region() -> np.ndarray:
    return np.full((16, 70, 3), 200, dtype=np.uint8)


class TestScoreTimeText:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("02:30:00", 10.0),
            ("2:30:00", 9.0),
            ("30:00", 8.0),
            ("3:00", 7.0),
            ("023000", 6.0),
            ("3000", 5.0),
            ("2:300:0", 3.0),
            ("123", 2.0),
            ("", 0.0),
            ("abc", 0.0),
        ],
    )
    def test_tiers(self, text: str, expected: float) -> None:
        assert score_time_text(text) == expected

    def test_letter_noise_is_dropped_before_scoring(self) -> None:
        # "o" is stripped, leaving a single-digit hour.
        assert score_time_text("9o:02:32") == 9.0
        assert score_time_text("00:02:32") > score_time_text("9o:02:32")


class TestScoreGeneralText:
    def test_empty(self) -> None:
        assert score_general_text("") == 0.0

    def test_long_words_raise_score(self) -> None:
        assert score_general_text("Gathering Time remaining") == 65.0

    def test_noise_lowers_score(self) -> None:
        assert score_general_text("a b c") == 41.0

    def test_clamped(self) -> None:
        assert score_general_text(" ".join(["word"] * 40)) == 100.0


class TestScoreQueueText:
    def test_keywords_and_labels(self) -> None:
        text = "March Queue\nQueue 1\nIdle\nQueue 2\nGathering"
        # 20 header + 15 idle + 15 gathering + 5 + 5 labels
        assert score_queue_text(text) == 60.0

    def test_empty(self) -> None:
        assert score_queue_text(None) == 0.0


class TestTextExtractor:
    def test_stops_at_first_good_enough(self, region: np.ndarray, engine_factory: Any) -> None:
        engine = engine_factory({"--psm 8 --oem 1 -c tessedit_char_whitelist=0123456789:": "01:02:03"})
        extractor = TextExtractor(engine=engine)

        assert extractor.extract(region, TIME_PROFILE) == "01:02:03"
        assert engine.call_count == 1

    def test_picks_best_scoring_pass(self, region: np.ndarray) -> None:
        outputs = iter(["9o:02:32", "00:02:32"])
        engine = MagicMock(side_effect=lambda image, config: next(outputs, ""))
        extractor = TextExtractor(engine=engine)

        assert extractor.extract(region, TIME_PROFILE) == "00:02:32"
        assert engine.call_count == 2

    def test_all_passes_when_nothing_is_good_enough(self, region: np.ndarray) -> None:
        engine = MagicMock(return_value="2:30")
        extractor = TextExtractor(engine=engine)

        attempts = extractor.attempts(region, TIME_PROFILE)
        assert len(attempts) == len(TIME_PROFILE.configs)
        assert extractor.extract(region, TIME_PROFILE) == "2:30"

    def test_empty_text_is_skipped(self, region: np.ndarray) -> None:
        engine = MagicMock(return_value="   ")
        extractor = TextExtractor(engine=engine)

        assert extractor.attempts(region, GENERAL_PROFILE) == []
        assert extractor.extract(region, GENERAL_PROFILE) == ""

    def test_failing_config_is_skipped(self, region: np.ndarray) -> None:
        engine = MagicMock(side_effect=[RuntimeError("boom"), "Queue 1 Idle"] + [""] * 10)
        extractor = TextExtractor(engine=engine)

        assert extractor.extract(region, QUEUE_PROFILE) == "Queue 1 Idle"

    def test_missing_tesseract_disables_ocr(self, region: np.ndarray) -> None:
        engine = MagicMock(side_effect=pytesseract.TesseractNotFoundError())
        extractor = TextExtractor(engine=engine)

        assert extractor.extract(region, TIME_PROFILE) == ""
        assert extractor.engine_missing
        extractor.extract(region, TIME_PROFILE)
        assert engine.call_count == 1

    def test_empty_region(self) -> None:
        engine = MagicMock(return_value="01:00:00")
        extractor = TextExtractor(engine=engine)

        assert extractor.extract(np.zeros((0, 0, 3), dtype=np.uint8), TIME_PROFILE) == ""
        engine.assert_not_called()

    def test_configured_threshold_lowers_early_exit(self, region: np.ndarray) -> None:
        engine = MagicMock(return_value="2:30")
        extractor = TextExtractor(config=OcrConfig(time_good_enough=7.0), engine=engine)

        extractor.attempts(region, TIME_PROFILE)
        assert engine.call_count == 1

    def test_preprocess_scales_and_binarizes(self, region: np.ndarray) -> None:
        extractor = TextExtractor(engine=MagicMock(return_value=""))
        out = extractor.preprocess(region, TIME_PROFILE)

        assert out.shape == (48, 210)
        assert set(np.unique(out)) <= {0, 255}
