from __future__ import annotations

import subprocess
from dataclasses import dataclass
from typing import Optional

PNG_MAGIC = b"\x89PNG\r\n\x1a\n"
IEND_CHUNK = b"IEND\xaeB`\x82"

MEMU_BASE_ADB_PORT = 21503
MEMU_PORT_STEP = 10


def default_memu_serial(index: int) -> str:
    return f"127.0.0.1:{MEMU_BASE_ADB_PORT + index * MEMU_PORT_STEP}"


def extract_png(raw: bytes) -> bytes:
    start = raw.find(PNG_MAGIC)
    if start != -1:
        end = raw.find(IEND_CHUNK, start)
        if end == -1:
            return raw[start:]
        return raw[start : end + len(IEND_CHUNK)]

    # Some hosts translate LF to CRLF on the adb pipe.
    data = raw.replace(b"\r\n", b"\n")
    alt_magic = b"\x89PNG\n\x1a\n"
    start = data.find(alt_magic)
    if start == -1:
        return b""
    end = data.find(IEND_CHUNK, start)
    if end == -1:
        return data[start:]
    return data[start : end + len(IEND_CHUNK)]


@dataclass
class AdbClient:
    adb_path: str = "adb"
    serial: str = ""

    def _base_cmd(self) -> list[str]:
        cmd = [self.adb_path]
        if self.serial:
            cmd.extend(["-s", self.serial])
        return cmd

    def run(self, *args: str, timeout: Optional[float] = 10) -> subprocess.CompletedProcess:
        cmd = self._base_cmd() + list(args)
        return subprocess.run(cmd, capture_output=True, check=True, timeout=timeout)

    def connect(self) -> bool:
        if not self.serial or ":" not in self.serial:
            return True
        proc = subprocess.run(
            [self.adb_path, "connect", self.serial],
            capture_output=True,
            text=True,
            check=False,
            timeout=10,
        )
        out = (proc.stdout or "").lower()
        return proc.returncode == 0 and ("connected" in out)

    def screenshot_png_bytes(self) -> bytes:
        proc = self.run("exec-out", "screencap", "-p", timeout=15)
        return extract_png(proc.stdout)

    def tap(self, x: int, y: int) -> None:
        self.run("shell", "input", "tap", str(x), str(y))

    def swipe(self, x1: int, y1: int, x2: int, y2: int, duration_ms: int = 200) -> None:
        self.run(
            "shell",
            "input",
            "swipe",
            str(x1),
            str(y1),
            str(x2),
            str(y2),
            str(duration_ms),
        )


@dataclass
class EmulatorInstance:
    index: int
    name: str
    running: bool = False


@dataclass
class MemucClient:
    memuc_path: str = "memuc"
    timeout_sec: float = 60

    def run(self, *args: str, timeout: Optional[float] = None) -> subprocess.CompletedProcess:
        cmd = [self.memuc_path] + list(args)
        return subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=True,
            timeout=timeout if timeout is not None else self.timeout_sec,
        )

    def list_instances(self) -> list[EmulatorInstance]:
        proc = self.run("listvms")
        instances = parse_listvms(proc.stdout or "")
        for inst in instances:
            try:
                inst.running = self.is_running(inst.index)
            except (subprocess.SubprocessError, OSError) as exc:
                print(f"[WARN] memuc isvmrunning -i {inst.index} failed: {exc}")
        return instances

    def is_running(self, index: int) -> bool:
        proc = self.run("isvmrunning", "-i", str(index), timeout=15)
        out = (proc.stdout or "").strip().lower()
        if "not running" in out:
            return False
        return "running" in out or out == "1"

    def start_instance(self, index: int) -> None:
        self.run("start", "-i", str(index))

    def stop_instance(self, index: int) -> None:
        self.run("stop", "-i", str(index))


def parse_listvms(output: str) -> list[EmulatorInstance]:
    instances: list[EmulatorInstance] = []
    for line in output.splitlines():
        parts = [p.strip() for p in line.strip().split(",")]
        if len(parts) < 2 or not parts[0].isdigit():
            continue
        instances.append(EmulatorInstance(index=int(parts[0]), name=parts[1]))
    return instances
