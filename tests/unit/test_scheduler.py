"""
Unit tests for marchbot/scheduler.py - instance run-slot scheduling.
"""
from __future__ import annotations

import threading
from unittest.mock import MagicMock

import pytest

from marchbot.scheduler import InstanceSlotScheduler, InstanceStatus, Priority


def make_scheduler(max_concurrent: int = 1) -> tuple[InstanceSlotScheduler, MagicMock]:
    on_start = MagicMock()
    sched = InstanceSlotScheduler(max_concurrent, on_start=on_start)
    return sched, on_start


class TestPriority:
    def test_parse(self) -> None:
        assert Priority.parse("high") == Priority.HIGH
        assert Priority.parse(Priority.LOW) == Priority.LOW

    def test_parse_unknown(self) -> None:
        with pytest.raises(ValueError):
            Priority.parse("urgent")

    def test_order(self) -> None:
        assert Priority.HIGH < Priority.NORMAL < Priority.LOW


class TestRequestStart:
    def test_starts_when_slot_free(self) -> None:
        sched, on_start = make_scheduler(2)

        assert sched.request_start(0) is True
        assert sched.status_of(0) == InstanceStatus.RUNNING
        on_start.assert_called_once_with(0)

    def test_queues_when_full(self) -> None:
        sched, on_start = make_scheduler(1)
        sched.request_start(0)

        assert sched.request_start(1) is False
        assert sched.status_of(1) == InstanceStatus.QUEUED
        assert sched.queue_position(1) == 1
        on_start.assert_called_once_with(0)

    def test_repeat_request_for_running_is_noop(self) -> None:
        sched, on_start = make_scheduler(1)
        sched.request_start(0)

        assert sched.request_start(0) is True
        assert on_start.call_count == 1

    def test_invalid_limit(self) -> None:
        with pytest.raises(ValueError):
            InstanceSlotScheduler(0)


class TestQueueOrder:
    def test_priority_then_arrival(self) -> None:
        sched, _ = make_scheduler(1)
        sched.register(1, Priority.NORMAL)  # A
        sched.register(2, Priority.HIGH)  # B
        sched.register(3, Priority.NORMAL)  # C
        sched.register(4, Priority.LOW)
        sched.request_start(0)

        for instance_id in (4, 1, 2, 3):
            sched.request_start(instance_id)

        assert sched.queue_snapshot() == [2, 1, 3, 4]

    def test_high_priority_keeps_arrival_order_within_tier(self) -> None:
        sched, _ = make_scheduler(1)
        sched.register(1, Priority.HIGH)
        sched.register(2, Priority.HIGH)
        sched.request_start(0)
        sched.request_start(1)
        sched.request_start(2)

        assert sched.queue_snapshot() == [1, 2]

    def test_cancel(self) -> None:
        sched, _ = make_scheduler(1)
        sched.request_start(0)
        sched.request_start(1)

        assert sched.cancel(1)
        assert not sched.cancel(1)
        assert sched.status_of(1) == InstanceStatus.STOPPED
        assert sched.queue_snapshot() == []


class TestUpdateStatus:
    def test_stopping_promotes_head_of_queue(self) -> None:
        sched, on_start = make_scheduler(1)
        sched.request_start(0)
        sched.request_start(1)
        on_start.reset_mock()

        sched.update_status(0, InstanceStatus.STOPPED)

        on_start.assert_called_once_with(1)
        assert sched.status_of(1) == InstanceStatus.RUNNING
        assert sched.queue_snapshot() == []

    def test_stopped_report_notifies_after_promotion(self) -> None:
        events: list[tuple[str, int]] = []
        sched = InstanceSlotScheduler(
            1,
            on_start=lambda i: events.append(("start", i)),
            on_stopped=lambda i: events.append(("stopped", i)),
        )
        sched.request_start(0)
        sched.request_start(1)

        sched.update_status(0, InstanceStatus.HIBERNATING)
        sched.update_status(1, InstanceStatus.STOPPED)

        assert events == [("start", 0), ("start", 1), ("stopped", 1)]

    def test_hibernating_frees_slot(self) -> None:
        sched, on_start = make_scheduler(1)
        sched.request_start(0)
        sched.request_start(1)

        sched.update_status(0, InstanceStatus.HIBERNATING)

        assert sched.status_of(0) == InstanceStatus.HIBERNATING
        assert sched.running_count() == 1
        assert sched.get_queue_status().hibernating == 1

    def test_running_report_without_slot_enqueues(self) -> None:
        sched, _ = make_scheduler(1)
        sched.request_start(0)

        sched.update_status(1, InstanceStatus.RUNNING)

        assert sched.status_of(1) == InstanceStatus.QUEUED
        assert sched.running_count() == 1

    def test_running_report_claims_free_slot(self) -> None:
        sched, on_start = make_scheduler(2)

        sched.update_status(5, InstanceStatus.RUNNING)

        assert sched.status_of(5) == InstanceStatus.RUNNING
        on_start.assert_not_called()


class TestSetMaxConcurrent:
    def test_cut_requeues_lowest_priority(self) -> None:
        sched, on_start = make_scheduler(3)
        sched.register(0, Priority.HIGH)
        sched.register(1, Priority.NORMAL)
        sched.register(2, Priority.LOW)
        for i in range(3):
            sched.request_start(i)
        on_start.reset_mock()

        requeued = sched.set_max_concurrent(1)

        assert requeued == [2, 1]
        assert sched.running_count() == 1
        assert sched.status_of(0) == InstanceStatus.RUNNING
        assert sched.queue_snapshot() == [1, 2]
        assert sched.get_queue_status().yielding == 2
        on_start.assert_not_called()

    def test_cut_among_equals_requeues_most_recent(self) -> None:
        sched, _ = make_scheduler(2)
        sched.request_start(0)
        sched.request_start(1)

        assert sched.set_max_concurrent(1) == [1]

    def test_yielding_instance_not_restarted_on_promotion(self) -> None:
        sched, on_start = make_scheduler(2)
        sched.request_start(0)
        sched.request_start(1)
        sched.set_max_concurrent(1)
        on_start.reset_mock()

        sched.set_max_concurrent(2)

        assert sched.status_of(1) == InstanceStatus.RUNNING
        on_start.assert_not_called()

    def test_yielding_instance_ignores_running_reports(self) -> None:
        sched, _ = make_scheduler(2)
        sched.request_start(0)
        sched.request_start(1)
        sched.set_max_concurrent(1)

        sched.update_status(1, InstanceStatus.RUNNING)

        assert sched.running_count() == 1
        assert sched.status_of(1) == InstanceStatus.QUEUED

    def test_yielding_instance_keeps_queue_place_after_hibernating(self) -> None:
        sched, on_start = make_scheduler(2)
        sched.request_start(0)
        sched.request_start(1)
        sched.set_max_concurrent(1)

        sched.update_status(1, InstanceStatus.HIBERNATING)
        assert sched.queue_snapshot() == [1]
        on_start.reset_mock()

        sched.update_status(0, InstanceStatus.STOPPED)
        on_start.assert_called_once_with(1)

    def test_raise_limit_promotes(self) -> None:
        sched, on_start = make_scheduler(1)
        sched.request_start(0)
        sched.request_start(1)
        sched.request_start(2)
        on_start.reset_mock()

        sched.set_max_concurrent(3)

        assert sched.running_count() == 3
        assert [c.args[0] for c in on_start.call_args_list] == [1, 2]


class TestQueueStatus:
    def test_eta_strings(self) -> None:
        sched, _ = make_scheduler(1)
        assert sched.get_queue_status().next_slot_eta == ""
        sched.request_start(0)
        sched.request_start(1)

        status = sched.get_queue_status()
        assert status.running == 1
        assert status.queued == 1
        assert status.next_slot_eta == "Waiting for slot"


class TestConcurrency:
    def test_running_never_exceeds_limit(self) -> None:
        started: list[int] = []
        over_limit: list[int] = []
        lock = threading.Lock()

        def on_start(instance_id: int) -> None:
            with lock:
                started.append(instance_id)
            if sched.running_count() > sched.max_concurrent:
                over_limit.append(instance_id)

        sched = InstanceSlotScheduler(2, on_start=on_start)

        def worker(instance_id: int) -> None:
            for _ in range(20):
                sched.request_start(instance_id)
                if sched.running_count() > 2:
                    over_limit.append(instance_id)
                sched.update_status(instance_id, InstanceStatus.STOPPED)
                sched.cancel(instance_id)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert over_limit == []
        assert sched.running_count() <= 2
        assert started
