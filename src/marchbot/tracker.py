from __future__ import annotations

import math
import threading
import time
from collections import deque
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable

from .timeutil import format_time

COMPLETED_HISTORY_LIMIT = 200


class ResourceType(str, Enum):
    FOOD = "Food"
    WOOD = "Wood"
    STONE = "Stone"
    IRON = "Iron"

    @classmethod
    def parse(cls, value: "str | ResourceType") -> "ResourceType":
        if isinstance(value, ResourceType):
            return value
        key = str(value).strip().lower()
        for member in cls:
            if member.value.lower() == key:
                return member
        raise ValueError(f"Unknown resource type: {value!r}")


class MarchPhase(str, Enum):
    MARCHING = "Marching"
    GATHERING = "Gathering"
    RETURNING = "Returning"
    COMPLETED = "Completed"


PHASE_ORDER = list(MarchPhase)


def total_duration(march_sec: float, gather_sec: float) -> float:
    return gather_sec + 2 * march_sec


@dataclass
class MarchRecord:
    instance_id: int
    slot: int
    resource: ResourceType
    deployed_at: float
    march_sec: float
    gather_sec: float
    total_sec: float
    details_collected: bool = False
    completed_at: float | None = None
    # Raised by late gather-time updates so a march never moves backwards.
    phase_floor: MarchPhase = MarchPhase.MARCHING
    progress_floor: float = 0.0

    def __post_init__(self) -> None:
        if self.march_sec < 0 or self.gather_sec < 0:
            raise ValueError("march and gather durations must be >= 0")
        if self.total_sec < self.march_sec:
            raise ValueError(
                f"total duration {self.total_sec} shorter than one-way march {self.march_sec}"
            )

    @classmethod
    def create(
        cls,
        instance_id: int,
        slot: int,
        resource: ResourceType,
        march_sec: float,
        gather_sec: float,
        deployed_at: float | None = None,
        details_collected: bool = False,
    ) -> "MarchRecord":
        return cls(
            instance_id=instance_id,
            slot=slot,
            resource=resource,
            deployed_at=time.time() if deployed_at is None else deployed_at,
            march_sec=march_sec,
            gather_sec=gather_sec,
            total_sec=total_duration(march_sec, gather_sec),
            details_collected=details_collected,
        )

    @property
    def key(self) -> tuple[int, int]:
        return (self.instance_id, self.slot)

    def elapsed(self, now: float | None = None) -> float:
        now = time.time() if now is None else now
        return max(0.0, now - self.deployed_at)

    def phase(self, now: float | None = None) -> MarchPhase:
        if self.completed_at is not None:
            return MarchPhase.COMPLETED
        phase = self._timed_phase(self.elapsed(now))
        if PHASE_ORDER.index(phase) < PHASE_ORDER.index(self.phase_floor):
            return self.phase_floor
        return phase

    def _timed_phase(self, elapsed: float) -> MarchPhase:
        if elapsed < self.march_sec:
            return MarchPhase.MARCHING
        if elapsed < self.march_sec + self.gather_sec:
            return MarchPhase.GATHERING
        if elapsed < self.total_sec:
            return MarchPhase.RETURNING
        return MarchPhase.COMPLETED

    def time_remaining(self, now: float | None = None) -> float:
        if self.completed_at is not None:
            return 0.0
        return max(0.0, self.total_sec - self.elapsed(now))

    def progress_percent(self, now: float | None = None) -> float:
        if self.total_sec <= 0 or self.time_remaining(now) == 0:
            return 100.0
        pct = min(100.0, max(self.progress_floor, self.elapsed(now) / self.total_sec * 100.0))
        # Rounding must not report 100 while time is still left.
        return min(pct, math.nextafter(100.0, 0.0))

    def with_gather_time(self, gather_sec: float) -> "MarchRecord":
        """Copy with the gather duration read from the details page."""
        return replace(
            self,
            gather_sec=gather_sec,
            total_sec=total_duration(self.march_sec, gather_sec),
            details_collected=True,
        )

    def eta(self) -> float:
        return self.deployed_at + self.total_sec

    def time_in_phase(self, now: float | None = None) -> float:
        elapsed = self.elapsed(now)
        phase = self.phase(now)
        if phase == MarchPhase.MARCHING:
            return elapsed
        if phase == MarchPhase.GATHERING:
            return max(0.0, elapsed - self.march_sec)
        if phase == MarchPhase.RETURNING:
            return max(0.0, elapsed - self.march_sec - self.gather_sec)
        return max(0.0, elapsed - self.total_sec)

    def summary(self, now: float | None = None) -> str:
        source = "real" if self.details_collected else "est"
        return (
            f"#{self.instance_id} Q{self.slot} {self.resource.value} "
            f"{self.phase(now).value} {self.progress_percent(now):.0f}% "
            f"left {format_time(self.time_remaining(now))} ({source})"
        )


Key = tuple[int, int]


class MarchLifecycleTracker:
    """Registry of in-flight marches keyed by (instance, slot).

    Shared between instance workers and status readers; every accessor
    returns copies so callers never hold a live record.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._active: dict[Key, MarchRecord] = {}
        self._completed: deque[MarchRecord] = deque(maxlen=COMPLETED_HISTORY_LIMIT)

    def now(self) -> float:
        return self._clock()

    def register(self, record: MarchRecord) -> None:
        with self._lock:
            self._active[record.key] = replace(record)

    def update_precise_gather_time(
        self, instance_id: int, slot: int, gather_sec: float
    ) -> MarchRecord | None:
        if gather_sec < 0:
            raise ValueError("gather duration must be >= 0")
        with self._lock:
            self._sweep_locked()
            record = self._active.get((instance_id, slot))
            if record is None:
                return None
            now = self._clock()
            phase_before = record.phase(now)
            progress_before = record.progress_percent(now)
            record.gather_sec = gather_sec
            record.total_sec = total_duration(record.march_sec, gather_sec)
            record.details_collected = True
            if record.phase(now) != MarchPhase.COMPLETED:
                record.phase_floor = phase_before
                record.progress_floor = progress_before
            return replace(record)

    def mark_completed(self, instance_id: int, slot: int) -> MarchRecord | None:
        with self._lock:
            record = self._active.pop((instance_id, slot), None)
            if record is None:
                return None
            record.completed_at = self._clock()
            self._completed.append(record)
            return replace(record)

    def remove(self, instance_id: int, slot: int) -> bool:
        with self._lock:
            return self._active.pop((instance_id, slot), None) is not None

    def get(self, instance_id: int, slot: int) -> MarchRecord | None:
        with self._lock:
            record = self._active.get((instance_id, slot))
            return replace(record) if record is not None else None

    def sweep(self) -> list[MarchRecord]:
        """Move marches whose time is up into the completed history."""
        with self._lock:
            return [replace(r) for r in self._sweep_locked()]

    def all_active(self) -> list[MarchRecord]:
        with self._lock:
            self._sweep_locked()
            return [replace(r) for r in self._active.values()]

    def active_for(self, instance_id: int) -> list[MarchRecord]:
        return sorted(
            (r for r in self.all_active() if r.instance_id == instance_id),
            key=lambda r: r.slot,
        )

    def all_completed(self) -> list[MarchRecord]:
        with self._lock:
            self._sweep_locked()
            return [replace(r) for r in self._completed]

    def _sweep_locked(self) -> list[MarchRecord]:
        now = self._clock()
        done = [r for r in self._active.values() if r.phase(now) == MarchPhase.COMPLETED]
        for record in done:
            del self._active[record.key]
            record.completed_at = record.eta()
            self._completed.append(record)
        return done
