"""
Unit tests for marchbot/app.py - instance manager wiring workers to the scheduler.
"""
from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from marchbot.app import AutomationManager
from marchbot.config import (
    BotConfig,
    GatherSettings,
    InstanceConfig,
    SystemConfig,
    load_gather_state,
)
from marchbot.ocr import OcrConfig
from marchbot.queue_status import SlotStatus
from marchbot.scheduler import InstanceStatus, Priority
from marchbot.timing import Timings


@pytest.fixture
def cfg(tmp_path: Path) -> BotConfig:
    return BotConfig(
        adb_path="adb",
        memuc_path="memuc",
        templates_dir=str(tmp_path / "templates"),
        screenshot_dir=str(tmp_path / "shots"),
        save_debug_screenshots=False,
        debug_logging=False,
        state_path=str(tmp_path / "state.yaml"),
        system=SystemConfig(max_concurrent_instances=1),
        timings=Timings(),
        ocr=OcrConfig(),
        instances=[
            InstanceConfig(0, "MEmu", "127.0.0.1:21503", priority=Priority.NORMAL),
            InstanceConfig(1, "MEmu_1", "127.0.0.1:21513", priority=Priority.HIGH),
        ],
    )


@pytest.fixture
def workers() -> dict[int, MagicMock]:
    return {}


@pytest.fixture
def manager(cfg: BotConfig, workers: dict[int, MagicMock], quiet_log) -> AutomationManager:
    def factory(inst: InstanceConfig) -> MagicMock:
        worker = MagicMock()
        worker.instance = inst
        worker.is_alive.return_value = False
        worker.status_text.return_value = "Deploying marches"
        worker.slot_statuses.return_value = [SlotStatus.GATHERING] * 6
        workers[inst.index] = worker
        return worker

    return AutomationManager(cfg, log=quiet_log, memuc=MagicMock(), worker_factory=factory)


class TestStartStop:
    def test_first_start_launches_worker(self, manager: AutomationManager, workers) -> None:
        assert manager.start_gathering(0)
        workers[0].start.assert_called_once()
        assert manager.status_string(0) == "Deploying marches"

    def test_second_instance_queued(self, manager: AutomationManager, workers) -> None:
        manager.start_gathering(0)

        assert not manager.start_gathering(1)
        assert 1 not in workers
        assert manager.status_string(1) == "Queued (#1)"

    def test_queued_instance_starts_when_slot_frees(self, manager: AutomationManager, workers) -> None:
        manager.start_gathering(0)
        manager.start_gathering(1)

        manager.scheduler.update_status(0, InstanceStatus.STOPPED)

        workers[1].start.assert_called_once()

    def test_promotion_wakes_live_worker(self, manager: AutomationManager, workers) -> None:
        manager.start_gathering(0)
        workers[0].is_alive.return_value = True
        manager.scheduler.update_status(0, InstanceStatus.HIBERNATING)

        manager.start_gathering(0)

        workers[0].grant_slot.assert_called_once()
        workers[0].start.assert_called_once()

    def test_stop_cancels_queue_entry(self, manager: AutomationManager) -> None:
        manager.start_gathering(0)
        manager.start_gathering(1)

        manager.stop_gathering(1)

        assert manager.scheduler.queue_snapshot() == []
        assert manager.status_string(1) == "Stopped"

    def test_stop_signals_worker(self, manager: AutomationManager, workers) -> None:
        manager.start_gathering(0)
        manager.stop_gathering(0)
        workers[0].stop.assert_called_once_with(wait=False)

    def test_restart_while_worker_winding_down(self, manager: AutomationManager, workers) -> None:
        manager.start_gathering(0)
        old = workers[0]
        old.is_alive.return_value = True
        manager.stop_gathering(0)

        assert manager.start_gathering(0)
        old.start.assert_called_once()

        # The old worker reports STOPPED from its own thread while still alive.
        manager.scheduler.update_status(0, InstanceStatus.STOPPED)

        assert workers[0] is not old
        workers[0].start.assert_called_once()
        old.grant_slot.assert_not_called()
        assert manager.scheduler.status_of(0) == InstanceStatus.RUNNING
        assert manager.status_string(0) == "Deploying marches"

    def test_stop_without_restart_stays_stopped(self, manager: AutomationManager, workers) -> None:
        manager.start_gathering(0)
        old = workers[0]
        old.is_alive.return_value = True
        manager.stop_gathering(0)

        manager.scheduler.update_status(0, InstanceStatus.STOPPED)

        assert workers[0] is old
        assert manager.scheduler.status_of(0) == InstanceStatus.STOPPED

    def test_stop_cancels_pending_restart(self, manager: AutomationManager, workers) -> None:
        manager.start_gathering(0)
        old = workers[0]
        old.is_alive.return_value = True
        manager.stop_gathering(0)
        manager.start_gathering(0)
        manager.stop_gathering(0)

        manager.scheduler.update_status(0, InstanceStatus.STOPPED)

        assert workers[0] is old
        assert manager.scheduler.status_of(0) == InstanceStatus.STOPPED

    def test_unknown_instance(self, manager: AutomationManager) -> None:
        with pytest.raises(KeyError):
            manager.start_gathering(7)

    def test_stop_all(self, manager: AutomationManager, workers) -> None:
        manager.start_gathering(0)
        manager.start_gathering(1)

        manager.stop_all()

        assert manager.scheduler.queue_snapshot() == []
        workers[0].stop.assert_called_with(wait=True, timeout=15.0)


class TestQueries:
    def test_slot_statuses_default_before_start(self, manager: AutomationManager) -> None:
        assert manager.get_slot_statuses(0)[:3] == [SlotStatus.IDLE] * 3

    def test_slot_statuses_from_worker(self, manager: AutomationManager) -> None:
        manager.start_gathering(0)
        assert manager.get_slot_statuses(0) == [SlotStatus.GATHERING] * 6

    def test_set_max_concurrent_promotes(self, manager: AutomationManager, workers) -> None:
        manager.start_gathering(0)
        manager.start_gathering(1)

        manager.set_max_concurrent(2)

        workers[1].start.assert_called_once()
        assert manager.cfg.system.max_concurrent_instances == 2

    def test_cursor_persisted(self, manager: AutomationManager, cfg: BotConfig) -> None:
        settings = cfg.instance(1).gather
        settings.next_resource()

        manager._persist_cursor(1, settings)

        saved = load_gather_state(cfg.state_path)
        assert saved[1].cursor_index == 1
        assert saved[0] == GatherSettings()
