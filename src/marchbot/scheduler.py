from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable


class InstanceStatus(str, Enum):
    STOPPED = "Stopped"
    RUNNING = "Running"
    HIBERNATING = "Hibernating"
    QUEUED = "Queued"


class Priority(int, Enum):
    HIGH = 0
    NORMAL = 1
    LOW = 2

    @classmethod
    def parse(cls, value: "str | Priority") -> "Priority":
        if isinstance(value, Priority):
            return value
        try:
            return cls[str(value).strip().upper()]
        except KeyError as exc:
            raise ValueError(f"Unknown priority: {value!r}") from exc


@dataclass(frozen=True)
class QueueStatus:
    running: int
    hibernating: int
    queued: int
    next_slot_eta: str = ""
    # Requeued after a limit cut but still finishing their current work.
    yielding: int = 0


class InstanceSlotScheduler:
    """Caps how many emulator instances run at once; the rest wait by priority.

    `on_start` is the start side effect, called once per promotion and
    always outside the internal lock. `on_stopped` follows every STOPPED
    report, also outside the lock.
    """

    def __init__(
        self,
        max_concurrent: int = 2,
        on_start: Callable[[int], None] | None = None,
        on_stopped: Callable[[int], None] | None = None,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self._max = max_concurrent
        self._on_start = on_start
        self._on_stopped = on_stopped
        self._lock = threading.RLock()
        self._statuses: dict[int, InstanceStatus] = {}
        self._priorities: dict[int, Priority] = {}
        self._queue: list[int] = []
        self._running: dict[int, int] = {}
        self._yielding: set[int] = set()
        self._order = itertools.count()

    @property
    def max_concurrent(self) -> int:
        return self._max

    def register(self, instance_id: int, priority: Priority = Priority.NORMAL) -> None:
        with self._lock:
            self._priorities[instance_id] = priority
            self._statuses.setdefault(instance_id, InstanceStatus.STOPPED)

    def priority_of(self, instance_id: int) -> Priority:
        with self._lock:
            return self._priorities.get(instance_id, Priority.NORMAL)

    def status_of(self, instance_id: int) -> InstanceStatus:
        with self._lock:
            return self._statuses.get(instance_id, InstanceStatus.STOPPED)

    def running_count(self) -> int:
        with self._lock:
            return len(self._running)

    def queue_snapshot(self) -> list[int]:
        with self._lock:
            return list(self._queue)

    def queue_position(self, instance_id: int) -> int:
        with self._lock:
            return self._queue.index(instance_id) + 1 if instance_id in self._queue else 0

    def request_start(self, instance_id: int) -> bool:
        """True when the instance got a run slot now, False when it was queued."""
        started = False
        with self._lock:
            self._priorities.setdefault(instance_id, Priority.NORMAL)
            if instance_id in self._running:
                return True
            if len(self._running) < self._max:
                self._claim_slot(instance_id)
                started = True
            else:
                self._enqueue(instance_id)
        if started:
            self._fire_start([instance_id])
        return started

    def cancel(self, instance_id: int) -> bool:
        with self._lock:
            if instance_id not in self._queue:
                return False
            self._queue.remove(instance_id)
            if instance_id not in self._yielding:
                self._statuses[instance_id] = InstanceStatus.STOPPED
            return True

    def update_status(self, instance_id: int, status: InstanceStatus) -> None:
        promoted: list[int] = []
        with self._lock:
            old = self._statuses.get(instance_id, InstanceStatus.STOPPED)

            if instance_id in self._yielding:
                if status == InstanceStatus.RUNNING:
                    return
                # It finally let go; it keeps its place in the queue.
                self._yielding.discard(instance_id)
                if instance_id not in self._queue:
                    self._statuses[instance_id] = status
            elif status == InstanceStatus.RUNNING:
                if instance_id in self._running:
                    self._statuses[instance_id] = status
                elif len(self._running) < self._max:
                    if instance_id in self._queue:
                        self._queue.remove(instance_id)
                    self._running[instance_id] = next(self._order)
                    self._statuses[instance_id] = status
                else:
                    self._enqueue(instance_id)
                return
            else:
                self._statuses[instance_id] = status
                if old == InstanceStatus.RUNNING or instance_id in self._running:
                    self._running.pop(instance_id, None)
                    promoted = self._promote_locked()
        self._fire_start(promoted)
        if status == InstanceStatus.STOPPED and self._on_stopped is not None:
            self._on_stopped(instance_id)

    def set_max_concurrent(self, max_concurrent: int) -> list[int]:
        """Change the limit; returns instances requeued (not stopped) by a cut."""
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        requeued: list[int] = []
        promoted: list[int] = []
        with self._lock:
            self._max = max_concurrent
            while len(self._running) > self._max:
                victim = self._lowest_priority_running()
                del self._running[victim]
                self._yielding.add(victim)
                self._enqueue(victim)
                requeued.append(victim)
            promoted = self._promote_locked()
        self._fire_start(promoted)
        return requeued

    def get_queue_status(self) -> QueueStatus:
        with self._lock:
            running = len(self._running)
            queued = len(self._queue)
            hibernating = sum(1 for s in self._statuses.values() if s == InstanceStatus.HIBERNATING)
            eta = ""
            if queued and running >= self._max:
                eta = "Waiting for slot"
            elif queued:
                eta = "Available"
            return QueueStatus(running, hibernating, queued, eta, len(self._yielding))

    def _claim_slot(self, instance_id: int) -> None:
        if instance_id in self._queue:
            self._queue.remove(instance_id)
        self._running[instance_id] = next(self._order)
        self._statuses[instance_id] = InstanceStatus.RUNNING

    def _enqueue(self, instance_id: int) -> None:
        self._statuses[instance_id] = InstanceStatus.QUEUED
        if instance_id in self._queue:
            return
        prio = self._priorities.get(instance_id, Priority.NORMAL)
        # Behind everything of equal or higher priority, ahead of anything lower.
        insert_at = len(self._queue)
        for i, queued in enumerate(self._queue):
            if self._priorities.get(queued, Priority.NORMAL) > prio:
                insert_at = i
                break
        self._queue.insert(insert_at, instance_id)
        print(f"[SCHED] instance {instance_id} queued (position #{insert_at + 1})")

    def _promote_locked(self) -> list[int]:
        promoted: list[int] = []
        while self._queue and len(self._running) < self._max:
            nxt = self._queue.pop(0)
            still_active = nxt in self._yielding
            self._yielding.discard(nxt)
            self._running[nxt] = next(self._order)
            self._statuses[nxt] = InstanceStatus.RUNNING
            print(f"[SCHED] promoting instance {nxt} from queue")
            if not still_active:
                promoted.append(nxt)
        return promoted

    def _lowest_priority_running(self) -> int:
        # Lowest priority first; among equals, the most recently started.
        return max(
            self._running,
            key=lambda i: (self._priorities.get(i, Priority.NORMAL), self._running[i]),
        )

    def _fire_start(self, instance_ids: list[int]) -> None:
        if self._on_start is None:
            return
        for instance_id in instance_ids:
            self._on_start(instance_id)
