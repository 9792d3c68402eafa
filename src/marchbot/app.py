from __future__ import annotations

import threading
from typing import Callable

from .adb_client import AdbClient, EmulatorInstance, MemucClient
from .config import BotConfig, GatherSettings, InstanceConfig, apply_gather_state, save_gather_state
from .detector import TemplateMatcher
from .device import GameScreen
from .log import TaggedLog
from .ocr import TextExtractor
from .orchestrator import GatheringOrchestrator
from .queue_status import SlotStatus, classify
from .scheduler import InstanceSlotScheduler, InstanceStatus, QueueStatus
from .tracker import MarchLifecycleTracker, MarchRecord


class AutomationManager:
    """Owns the shared tracker and scheduler plus one worker per started instance.

    Workers are only launched from the scheduler's start callback, so the
    concurrency limit holds for manual starts and wake-ups alike.
    """

    def __init__(
        self,
        cfg: BotConfig,
        log: TaggedLog | None = None,
        memuc: MemucClient | None = None,
        worker_factory: Callable[[InstanceConfig], GatheringOrchestrator] | None = None,
    ) -> None:
        self.cfg = cfg
        self.log = log or TaggedLog(debug_enabled=cfg.debug_logging)
        apply_gather_state(cfg)
        self.tracker = MarchLifecycleTracker()
        self.matcher = TemplateMatcher(cfg.templates_dir)
        self.extractor = TextExtractor(cfg.ocr, debug=cfg.debug_logging)
        self.memuc = memuc or MemucClient(cfg.memuc_path)
        self.scheduler = InstanceSlotScheduler(
            cfg.system.max_concurrent_instances,
            on_start=self._on_slot_granted,
            on_stopped=self._on_instance_stopped,
        )
        for inst in cfg.instances:
            self.scheduler.register(inst.index, inst.priority)
        self._worker_factory = worker_factory or self._build_worker
        self._workers: dict[int, GatheringOrchestrator] = {}
        # Signalled to stop but not yet reported STOPPED.
        self._stopping: set[int] = set()
        self._restart_pending: set[int] = set()
        self._lock = threading.Lock()
        self._state_lock = threading.Lock()

    def _build_worker(self, inst: InstanceConfig) -> GatheringOrchestrator:
        log = self.log.child(inst.name)
        adb = AdbClient(adb_path=self.cfg.adb_path, serial=inst.serial)
        screen = GameScreen(
            adb=adb,
            timings=self.cfg.timings,
            log=log,
            screenshot_dir=self.cfg.screenshot_dir,
            save_debug_screenshots=self.cfg.save_debug_screenshots,
        )
        log.on_problem = screen.failure_snapshot
        return GatheringOrchestrator(
            instance=inst,
            screen=screen,
            matcher=self.matcher,
            extractor=self.extractor,
            tracker=self.tracker,
            timings=self.cfg.timings,
            log=log,
            memuc=self.memuc,
            scheduler=self.scheduler,
            hibernation_enabled=self.cfg.system.hibernation_enabled,
            module_order=list(self.cfg.system.module_order),
            on_cursor_advance=self._persist_cursor,
        )

    def _on_slot_granted(self, instance_id: int) -> None:
        with self._lock:
            worker = self._workers.get(instance_id)
            if worker is not None and worker.is_alive() and instance_id not in self._stopping:
                # A hibernating worker waiting to wake up.
                worker.grant_slot()
                return
            worker = self._worker_factory(self.cfg.instance(instance_id))
            self._workers[instance_id] = worker
        self.log.info(f"starting automation for instance {instance_id}")
        worker.start()

    def _on_instance_stopped(self, instance_id: int) -> None:
        with self._lock:
            restart = instance_id in self._restart_pending
            self._restart_pending.discard(instance_id)
        if restart:
            self.log.info(f"instance {instance_id} stopped, starting it again")
            self.scheduler.request_start(instance_id)
        with self._lock:
            self._stopping.discard(instance_id)

    def _persist_cursor(self, instance_id: int, settings: GatherSettings) -> None:
        with self._state_lock:
            states = {inst.index: inst.gather for inst in self.cfg.instances}
            states[instance_id] = settings
            try:
                save_gather_state(self.cfg.state_path, states)
            except OSError as exc:
                self.log.warn(f"could not save gather state: {exc}")

    def start_gathering(self, instance_id: int) -> bool:
        """True when the instance started right away, False when it was queued."""
        self.cfg.instance(instance_id)
        with self._lock:
            if instance_id in self._stopping:
                # The old worker still holds the slot; start again once it reports STOPPED.
                self._restart_pending.add(instance_id)
                return True
        started = self.scheduler.request_start(instance_id)
        if not started:
            pos = self.scheduler.queue_position(instance_id)
            self.log.info(f"instance {instance_id} queued for a run slot (#{pos})")
        return started

    def stop_gathering(self, instance_id: int, wait: bool = False) -> None:
        self.scheduler.cancel(instance_id)
        with self._lock:
            self._restart_pending.discard(instance_id)
            worker = self._workers.get(instance_id)
            if worker is not None and worker.is_alive():
                self._stopping.add(instance_id)
        if worker is not None:
            worker.stop(wait=wait)
        elif self.scheduler.status_of(instance_id) == InstanceStatus.RUNNING:
            self.scheduler.update_status(instance_id, InstanceStatus.STOPPED)

    def start_all(self) -> None:
        for inst in self.cfg.instances:
            if inst.auto_gather or inst.auto_start:
                self.start_gathering(inst.index)

    def stop_all(self, timeout: float | None = 15.0) -> None:
        for inst in self.cfg.instances:
            self.scheduler.cancel(inst.index)
        with self._lock:
            self._restart_pending.clear()
            workers = list(self._workers.values())
        for worker in workers:
            worker.stop()
        for worker in workers:
            worker.stop(wait=True, timeout=timeout)

    def set_max_concurrent(self, max_concurrent: int) -> list[int]:
        requeued = self.scheduler.set_max_concurrent(max_concurrent)
        self.cfg.system.max_concurrent_instances = max_concurrent
        if requeued:
            self.log.info(f"limit now {max_concurrent}; requeued instances {requeued}")
        return requeued

    def worker(self, instance_id: int) -> GatheringOrchestrator | None:
        with self._lock:
            return self._workers.get(instance_id)

    def get_slot_statuses(self, instance_id: int) -> list[SlotStatus]:
        worker = self.worker(instance_id)
        return worker.slot_statuses() if worker is not None else classify([])

    def get_active_marches(self) -> list[MarchRecord]:
        return self.tracker.all_active()

    def get_completed_marches(self) -> list[MarchRecord]:
        return self.tracker.all_completed()

    def get_queue_status(self) -> QueueStatus:
        return self.scheduler.get_queue_status()

    def status_string(self, instance_id: int) -> str:
        sched = self.scheduler.status_of(instance_id)
        if sched == InstanceStatus.QUEUED and instance_id in self.scheduler.queue_snapshot():
            worker = self.worker(instance_id)
            if worker is None or not worker.is_alive():
                return f"Queued (#{self.scheduler.queue_position(instance_id)})"
        worker = self.worker(instance_id)
        if worker is None:
            return "Stopped"
        return worker.status_text()

    def list_instances(self) -> list[EmulatorInstance]:
        return self.memuc.list_instances()
