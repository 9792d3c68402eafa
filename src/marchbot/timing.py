from __future__ import annotations

import random
from dataclasses import dataclass, fields
from typing import Any, Callable, TypeVar

from .errors import StopRequested

T = TypeVar("T")


@dataclass
class Timings:
    # Navigation
    world_view_settle_sec: float = 3.0
    world_view_retries: int = 3
    subsequent_march_settle_sec: float = 3.0
    open_left_settle_sec: float = 2.0
    wilderness_settle_sec: float = 3.0
    # Deploy macro
    search_open_settle_sec: float = 3.0
    popup_dismiss_settle_sec: float = 2.0
    scroll_settle_sec: float = 2.0
    resource_select_settle_sec: float = 2.0
    plus_tap_interval_sec: float = 0.2
    search_result_settle_sec: float = 4.0
    gather_tap_settle_sec: float = 3.0
    minus_tap_settle_sec: float = 0.5
    deploy_settle_sec: float = 3.0
    # Details page
    queue_row_settle_sec: float = 2.0
    details_open_settle_sec: float = 2.0
    details_button_retry_sec: float = 1.0
    details_retry_sec: float = 2.0
    close_details_settle_sec: float = 1.0
    # Orchestrator loop
    idle_poll_sec: float = 60.0
    post_deploy_cooldown_sec: float = 300.0
    cycle_retry_sec: float = 30.0
    error_backoff_sec: float = 10.0
    hibernation_check_sec: float = 10.0
    instance_boot_sec: float = 10.0
    instance_boot_checks: int = 10
    instance_boot_poll_sec: float = 2.0
    post_auto_start_sec: float = 8.0
    # Auto start game
    game_launch_wait_sec: float = 10.0
    game_verify_attempts: int = 3
    game_verify_interval_sec: float = 5.0
    popup_close_settle_sec: float = 3.0
    # Transient I/O
    capture_attempts: int = 3
    capture_retry_sec: float = 1.0
    tap_attempts: int = 2
    tap_retry_sec: float = 0.5
    jitter_sec: float = 0.1

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> "Timings":
        raw = raw or {}
        known = {f.name: f for f in fields(cls)}
        unknown = [k for k in raw if k not in known]
        if unknown:
            raise ValueError(f"Unknown timings keys: {', '.join(sorted(unknown))}")
        values: dict[str, Any] = {}
        for key, value in raw.items():
            caster = int if known[key].type in ("int", int) else float
            values[key] = caster(value)
            if values[key] < 0:
                raise ValueError(f"timings.{key} must be >= 0, got {value}")
        return cls(**values)


def jittered(seconds: float, jitter: float) -> float:
    if jitter <= 0:
        return max(0.0, seconds)
    return max(0.01, seconds + random.uniform(-jitter, jitter))


@dataclass
class RetryPolicy:
    attempts: int
    delay_sec: float

    def run(
        self,
        fn: Callable[[], T],
        sleep: Callable[[float], None],
        on_retry: Callable[[int, Exception], None] | None = None,
    ) -> T:
        last_exc: Exception | None = None
        for attempt in range(1, max(1, self.attempts) + 1):
            try:
                return fn()
            except StopRequested:
                raise
            except Exception as exc:
                last_exc = exc
                if attempt >= self.attempts:
                    break
                if on_retry is not None:
                    on_retry(attempt, exc)
                sleep(self.delay_sec)
        assert last_exc is not None
        raise last_exc
