#!/usr/bin/env python3
from __future__ import annotations

import argparse
import os
import platform
import shutil
import subprocess
import time

from src.marchbot.app import AutomationManager
from src.marchbot.config import load_config
from src.marchbot.timeutil import format_time


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Multi-instance march gathering bot for MEmu")
    parser.add_argument("--config", default="config.yaml", help="Path to YAML config")
    parser.add_argument(
        "--list-instances",
        action="store_true",
        help="Print the emulator instances memuc knows about and exit",
    )
    parser.add_argument(
        "--instances",
        type=int,
        nargs="+",
        help="Only start these instance indexes (default: every configured instance)",
    )
    parser.add_argument(
        "--status-interval",
        type=float,
        default=1.0,
        help="Seconds between status lines",
    )
    return parser.parse_args()


def restart_adb_server(adb_path: str) -> None:
    try:
        devices = subprocess.run(
            [adb_path, "devices"], check=False, capture_output=True, text=True
        )
        if devices.returncode == 0:
            lines = [line.strip() for line in devices.stdout.splitlines() if line.strip()]
            device_rows = [line for line in lines[1:] if "\t" in line]
            if device_rows:
                print(f"[INFO] {len(device_rows)} ADB device(s) attached. Skipping adb server restart.")
                return
    except FileNotFoundError:
        print(f"[WARN] adb not found at '{adb_path}'. Skipping adb restart.")
        return
    except (subprocess.SubprocessError, OSError) as exc:
        print(f"[WARN] Failed to run 'adb devices': {exc}")

    print("[INFO] Restarting ADB server...")
    try:
        subprocess.run([adb_path, "kill-server"], check=False, capture_output=True, text=True)
    except (subprocess.SubprocessError, OSError) as exc:
        print(f"[WARN] Failed to run 'adb kill-server': {exc}")

    try:
        start = subprocess.run(
            [adb_path, "start-server"], check=False, capture_output=True, text=True
        )
        if start.returncode == 0:
            print("[INFO] ADB server started.")
        else:
            err = (start.stderr or start.stdout or "").strip()
            print(
                f"[WARN] 'adb start-server' returned non-zero exit code ({start.returncode}). {err}"
            )
    except (subprocess.SubprocessError, OSError) as exc:
        print(f"[WARN] Failed to run 'adb start-server': {exc}")


def print_instances(manager: AutomationManager) -> None:
    found = manager.list_instances()
    if not found:
        print("[WARN] memuc reported no instances")
        return
    for inst in found:
        state = "running" if inst.running else "stopped"
        print(f"[INFO] #{inst.index:<2} {inst.name:<20} {state}")


def print_status(manager: AutomationManager, indexes: list[int]) -> None:
    now = manager.tracker.now()
    for idx in indexes:
        slots = " ".join(s.value[:4] for s in manager.get_slot_statuses(idx))
        print(f"[STATUS] #{idx} {manager.status_string(idx)} | {slots}")
    for rec in manager.get_active_marches():
        print(
            f"[MARCH] #{rec.instance_id} Q{rec.slot} {rec.resource.value:<5} "
            f"{rec.phase(now).value:<9} {rec.progress_percent(now):5.1f}% "
            f"left {format_time(rec.time_remaining(now))}"
        )
    q = manager.get_queue_status()
    if q.queued or q.hibernating:
        print(
            f"[SCHED] running {q.running}, hibernating {q.hibernating}, "
            f"queued {q.queued} {q.next_slot_eta}".rstrip()
        )


def main() -> None:
    args = parse_args()
    cfg = load_config(args.config)
    manager = AutomationManager(cfg)
    if args.list_instances:
        print_instances(manager)
        return

    restart_adb_server(cfg.adb_path)
    indexes = args.instances or [inst.index for inst in cfg.instances]
    for idx in indexes:
        cfg.instance(idx)

    caffeinate_proc: subprocess.Popen[bytes] | None = None
    try:
        if platform.system() == "Darwin" and shutil.which("caffeinate"):
            # Keep macOS awake while this process is alive.
            caffeinate_proc = subprocess.Popen(
                ["caffeinate", "-dimsu", "-w", str(os.getpid())]
            )
            print("[INFO] macOS sleep prevention enabled via caffeinate.")
        for idx in indexes:
            manager.start_gathering(idx)
        while True:
            time.sleep(args.status_interval)
            print_status(manager, indexes)
    except KeyboardInterrupt:
        print("[INFO] Stopping all instances...")
    finally:
        manager.stop_all()
        if caffeinate_proc is not None and caffeinate_proc.poll() is None:
            caffeinate_proc.terminate()


if __name__ == "__main__":
    main()
