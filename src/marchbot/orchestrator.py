from __future__ import annotations

import subprocess
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from .adb_client import MemucClient
from .auto_start import AutoStartGame
from .config import GatherSettings, InstanceConfig
from .detector import TemplateMatcher
from .device import GameScreen
from .errors import CaptureError, CycleFailed, StepFailed, StopRequested
from .hibernation import plan_hibernation
from .log import TaggedLog
from .macros import DeployMacro, MarchDetailsCollector, MarchViewNavigator
from .ocr import TextExtractor
from .queue_status import QueuePanelReader, SlotStatus, active_count, classify, idle_slots
from .scheduler import InstanceSlotScheduler, InstanceStatus
from .timeutil import format_time
from .timing import Timings
from .tracker import MarchLifecycleTracker, MarchRecord

AUTO_START_MODULE = "Auto Start Game"
AUTO_GATHER_MODULE = "Auto Gather Resources"


class OrchestratorPhase(str, Enum):
    IDLE = "Idle"
    STARTING = "Starting"
    SETTING_UP_VIEW = "Opening march queues"
    POLLING = "Reading march queues"
    DECIDING = "Planning deployments"
    DEPLOYING = "Deploying marches"
    COLLECTING = "Collecting march details"
    COOLING_DOWN = "Cooling down"
    HIBERNATING = "Hibernating"
    WAITING_FOR_SLOT = "Waiting for run slot"
    RETRYING = "Retrying"
    STOPPED = "Stopped"


@dataclass
class InstanceAutomationState:
    running: bool = False
    activity: str = "Stopped"
    auto_gather_enabled: bool = True
    auto_start_enabled: bool = False
    phase: OrchestratorPhase = OrchestratorPhase.IDLE
    # Epoch seconds when the current wait ends (cooldown or hibernation).
    wait_until: float | None = None


def marches_to_deploy(idle: list[int], active: int, max_queues: int) -> list[int]:
    """Idle slots to fill this cycle, never past `max_queues` active marches."""
    free = max(0, max_queues - active)
    return idle[: min(len(idle), free)]


@dataclass
class GatheringOrchestrator:
    instance: InstanceConfig
    screen: GameScreen
    matcher: TemplateMatcher
    extractor: TextExtractor
    tracker: MarchLifecycleTracker
    timings: Timings
    log: TaggedLog
    memuc: MemucClient | None = None
    scheduler: InstanceSlotScheduler | None = None
    hibernation_enabled: bool = True
    module_order: list[str] = field(default_factory=lambda: [AUTO_START_MODULE, AUTO_GATHER_MODULE])
    on_cursor_advance: Callable[[int, GatherSettings], None] | None = None
    clock: Callable[[], float] = time.time
    navigator: MarchViewNavigator | None = None
    macro: DeployMacro | None = None
    collector: MarchDetailsCollector | None = None
    reader: QueuePanelReader | None = None
    auto_start: AutoStartGame | None = None

    def __post_init__(self) -> None:
        if self.navigator is None:
            self.navigator = MarchViewNavigator(self.screen, self.matcher, self.timings, self.log)
        if self.macro is None:
            self.macro = DeployMacro(
                self.screen, self.matcher, self.extractor, self.navigator, self.timings, self.log
            )
        if self.collector is None:
            self.collector = MarchDetailsCollector(
                self.screen, self.matcher, self.extractor, self.timings, self.log
            )
        if self.reader is None:
            self.reader = QueuePanelReader(self.extractor)
        if self.auto_start is None:
            self.auto_start = AutoStartGame(self.screen, self.matcher, self.timings, self.log)

        self.state = InstanceAutomationState(
            auto_gather_enabled=self.instance.auto_gather,
            auto_start_enabled=self.instance.auto_start,
        )
        self._state_lock = threading.Lock()
        self._slot_statuses: list[SlotStatus] = classify([])
        self._slot_granted = threading.Event()
        self._thread: threading.Thread | None = None
        self._emulator_stopped = False

    # -- presentation side ---------------------------------------------------

    @property
    def instance_id(self) -> int:
        return self.instance.index

    @property
    def gather(self) -> GatherSettings:
        return self.instance.gather

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def slot_statuses(self) -> list[SlotStatus]:
        with self._state_lock:
            return list(self._slot_statuses)

    def snapshot(self) -> InstanceAutomationState:
        with self._state_lock:
            return InstanceAutomationState(**vars(self.state))

    def status_text(self, now: float | None = None) -> str:
        now = self.clock() if now is None else now
        state = self.snapshot()
        if state.phase == OrchestratorPhase.HIBERNATING and state.wait_until is not None:
            return f"Hibernating - Wake in {format_time(state.wait_until - now)}"
        if state.wait_until is not None:
            return f"{state.activity} - next check in {format_time(state.wait_until - now)}"
        return state.activity

    def start(self) -> None:
        if self.is_alive():
            return
        self.screen.stop_event.clear()
        self._thread = threading.Thread(
            target=self.run, name=f"gather-{self.instance.name}", daemon=True
        )
        self._thread.start()

    def stop(self, wait: bool = False, timeout: float | None = None) -> None:
        self.log.info("stop requested")
        self.screen.stop_event.set()
        self._slot_granted.set()
        if wait and self._thread is not None:
            self._thread.join(timeout)

    def grant_slot(self) -> None:
        self._slot_granted.set()

    # -- worker side ---------------------------------------------------------

    def _set_phase(
        self,
        phase: OrchestratorPhase,
        activity: str | None = None,
        wait_sec: float | None = None,
    ) -> None:
        with self._state_lock:
            self.state.phase = phase
            self.state.activity = activity or phase.value
            self.state.wait_until = self.clock() + wait_sec if wait_sec is not None else None
        self.log.tag("STATUS", self.state.activity)

    def _wait(self, phase: OrchestratorPhase, seconds: float, activity: str | None = None) -> None:
        self._set_phase(phase, activity, wait_sec=seconds)
        self.screen.sleep(seconds, jitter=False)

    def run(self) -> None:
        with self._state_lock:
            self.state.running = True
        self._set_phase(OrchestratorPhase.STARTING)
        try:
            self._ensure_emulator_running()
            for module in self.module_order:
                if module == AUTO_START_MODULE and self.instance.auto_start:
                    self._run_auto_start()
                elif module == AUTO_GATHER_MODULE and self.instance.auto_gather:
                    self._gather_loop()
        except StopRequested:
            pass
        except Exception as exc:
            self.log.error(f"instance worker crashed: {exc}")
        finally:
            self._finish()

    def _gather_loop(self) -> None:
        while True:
            self.screen.checkpoint()
            try:
                self.run_cycle()
            except StopRequested:
                raise
            except CycleFailed as exc:
                self.log.warn(f"cycle failed: {exc}")
                self.screen.failure_snapshot("cycle")
                self._wait(OrchestratorPhase.RETRYING, self.timings.cycle_retry_sec, f"Retrying: {exc}")
            except Exception as exc:
                self.log.error(str(exc))
                self.screen.failure_snapshot("error")
                self._wait(OrchestratorPhase.RETRYING, self.timings.error_backoff_sec, f"Error: {exc}")

    def run_cycle(self) -> list[MarchRecord]:
        if self._emulator_stopped:
            # A wake-up that failed last cycle.
            self._start_emulator()
        self._set_phase(OrchestratorPhase.SETTING_UP_VIEW)
        if not self.navigator.setup_march_view():
            raise CycleFailed("march queue panel not reachable")

        self._set_phase(OrchestratorPhase.POLLING)
        frame = self.screen.capture()
        statuses, lines = self.reader.read(frame)
        with self._state_lock:
            self._slot_statuses = list(statuses)
        self.log.debug(f"queue panel lines: {lines}")

        self._set_phase(OrchestratorPhase.DECIDING)
        idle = idle_slots(statuses)
        active = active_count(statuses)
        targets = marches_to_deploy(idle, active, self.gather.max_queues)
        self.log.info(
            f"queues: {', '.join(s.value for s in statuses)} | "
            f"active {active}/{self.gather.max_queues}, idle {idle}"
        )
        if not targets:
            self._wait(OrchestratorPhase.COOLING_DOWN, self.timings.idle_poll_sec, "No free queue")
            return []

        self._set_phase(OrchestratorPhase.DEPLOYING, f"Deploying {len(targets)} march(es)")
        deployed = self.deploy_batch(targets)
        if not deployed:
            raise CycleFailed(f"no march deployed out of {len(targets)}")

        self._collect_details(deployed)
        self._rest_after_deploy()
        return deployed

    def deploy_batch(self, slots: list[int]) -> list[MarchRecord]:
        deployed: list[MarchRecord] = []
        first_in_batch = True
        for n, slot in enumerate(slots, start=1):
            self.screen.checkpoint()
            resource = self.gather.next_resource()
            if self.on_cursor_advance is not None:
                self.on_cursor_advance(self.instance_id, self.gather)
            self._set_phase(
                OrchestratorPhase.DEPLOYING,
                f"Deploying {n}/{len(slots)} ({resource.value} Q{slot})",
            )
            try:
                result = self.macro.deploy(resource, slot, first_in_batch=first_in_batch)
            except (StepFailed, CaptureError) as exc:
                self.log.fail(f"{resource.value} on queue {slot}: {exc}")
                self.screen.failure_snapshot(f"deploy_q{slot}")
                # Unknown screen now; the next attempt navigates from scratch.
                first_in_batch = True
                continue
            first_in_batch = False
            record = MarchRecord.create(
                instance_id=self.instance_id,
                slot=slot,
                resource=resource,
                march_sec=result.march_sec,
                gather_sec=2 * result.march_sec,
                deployed_at=self.clock(),
            )
            deployed.append(record)
            self.log.tag("DEPLOY", f"{resource.value} on queue {slot}, march {result.march_text}")
        self.log.info(f"deployment summary: {len(deployed)}/{len(slots)} successful")
        return deployed

    def _collect_details(self, deployed: list[MarchRecord]) -> None:
        # Marches enter the tracker only once their gather time is settled; an
        # estimate that ran out during the wait would retire a gathering march.
        pending = list(deployed)
        try:
            # The details page only shows the gather countdown once the march has arrived.
            arrive_in = max(r.march_sec for r in deployed)
            if arrive_in > 0:
                self._wait(OrchestratorPhase.COLLECTING, arrive_in, "Waiting for marches to arrive")
            for n, record in enumerate(deployed, start=1):
                self._set_phase(
                    OrchestratorPhase.COLLECTING,
                    f"Collecting details for Queue {record.slot} ({n}/{len(deployed)})",
                )
                gather_sec = self._read_gather_seconds(record.slot)
                if gather_sec:
                    record = record.with_gather_time(gather_sec)
                self.tracker.register(record)
                pending.pop(0)
        finally:
            for record in pending:
                self.tracker.register(record)

    def _read_gather_seconds(self, slot: int) -> int | None:
        try:
            if not self.navigator.setup_march_view():
                self.log.warn(f"queue {slot}: march view not reachable, keeping estimate")
                return None
            gather_sec = self.collector.collect_gather_seconds(slot)
        except (StepFailed, CaptureError) as exc:
            self.log.warn(f"queue {slot}: details failed ({exc}), keeping estimate")
            return None
        if not gather_sec:
            self.log.warn(f"queue {slot}: gathering time unknown, keeping estimate")
        return gather_sec

    def _rest_after_deploy(self) -> None:
        now = self.clock()
        remaining = [r.time_remaining(now) for r in self.tracker.active_for(self.instance_id)]
        plan = plan_hibernation(remaining)
        if self.hibernation_enabled and self.memuc is not None and plan.worthwhile:
            self.log.tag("HIBERNATE", f"{format_time(plan.sleep_sec)} ({plan.strategy})")
            self.hibernate(plan.sleep_sec)
            return
        self._wait(OrchestratorPhase.COOLING_DOWN, self.timings.post_deploy_cooldown_sec, "Marches out")

    def hibernate(self, seconds: float) -> None:
        assert self.memuc is not None
        wake_at = self.clock() + seconds
        self._set_phase(OrchestratorPhase.HIBERNATING, wait_sec=seconds)
        self.memuc.stop_instance(self.instance_id)
        self._emulator_stopped = True
        if self.scheduler is not None:
            self.scheduler.update_status(self.instance_id, InstanceStatus.HIBERNATING)
        step = self.timings.hibernation_check_sec
        while True:
            remaining = wake_at - self.clock()
            if remaining <= 0:
                break
            self.screen.sleep(min(step, remaining) if step > 0 else remaining, jitter=False)
        self._wake_up()

    def _wake_up(self) -> None:
        if self.scheduler is not None:
            self._slot_granted.clear()
            if not self.scheduler.request_start(self.instance_id):
                pos = self.scheduler.queue_position(self.instance_id)
                self._set_phase(OrchestratorPhase.WAITING_FOR_SLOT, f"Queued (#{pos}) for a run slot")
                while not self._slot_granted.wait(1.0):
                    self.screen.checkpoint()
                self.screen.checkpoint()
        self._set_phase(OrchestratorPhase.STARTING, "Waking up")
        self._start_emulator()
        if self.instance.auto_start:
            if not self._run_auto_start():
                self.log.warn("auto start failed after wake-up, continuing anyway")
            self.screen.sleep(self.timings.post_auto_start_sec)

    def _ensure_emulator_running(self) -> None:
        if self.memuc is None:
            return
        try:
            if not self.memuc.is_running(self.instance_id):
                self._start_emulator()
            self.screen.adb.connect()
        except (subprocess.SubprocessError, OSError, CycleFailed) as exc:
            self.log.warn(f"emulator check failed, continuing: {exc}")

    def _start_emulator(self) -> None:
        if self.memuc is None:
            return
        self.log.info("starting emulator")
        self.memuc.start_instance(self.instance_id)
        for _ in range(self.timings.instance_boot_checks):
            if self.memuc.is_running(self.instance_id):
                self._emulator_stopped = False
                self.screen.sleep(self.timings.instance_boot_sec)
                self.screen.adb.connect()
                return
            self.screen.sleep(self.timings.instance_boot_poll_sec)
        raise CycleFailed(f"emulator {self.instance_id} did not start")

    def _run_auto_start(self) -> bool:
        self._set_phase(OrchestratorPhase.STARTING, "Starting game")
        try:
            return self.auto_start.run()
        except (CaptureError, StepFailed) as exc:
            self.log.warn(f"auto start aborted: {exc}")
            return False

    def _finish(self) -> None:
        if self._emulator_stopped and self.memuc is not None:
            # Never leave an instance powered off behind a stopped worker.
            try:
                self.memuc.start_instance(self.instance_id)
            except (subprocess.SubprocessError, OSError) as exc:
                self.log.warn(f"could not restart emulator on stop: {exc}")
        with self._state_lock:
            self.state.running = False
            self.state.phase = OrchestratorPhase.STOPPED
            self.state.activity = "Stopped"
            self.state.wait_until = None
        if self.scheduler is not None:
            self.scheduler.update_status(self.instance_id, InstanceStatus.STOPPED)
        self.log.info("worker stopped")
