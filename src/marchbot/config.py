from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .adb_client import default_memu_serial
from .ocr import OcrConfig
from .scheduler import Priority
from .timing import Timings
from .tracker import ResourceType

DEFAULT_RESOURCE_LOOP = [ResourceType.FOOD, ResourceType.WOOD, ResourceType.STONE, ResourceType.IRON]
DEFAULT_MODULE_ORDER = ["Auto Start Game", "Auto Gather Resources"]
MAX_QUEUES = 6


@dataclass
class GatherSettings:
    resource_loop: list[ResourceType] = field(default_factory=lambda: list(DEFAULT_RESOURCE_LOOP))
    cursor_index: int = 0
    max_queues: int = MAX_QUEUES

    def __post_init__(self) -> None:
        if not self.resource_loop:
            raise ValueError("resource_loop must not be empty")
        if not 1 <= self.max_queues <= MAX_QUEUES:
            raise ValueError(f"max_queues must be between 1 and {MAX_QUEUES}, got {self.max_queues}")
        if self.cursor_index < 0:
            raise ValueError("cursor_index must be >= 0")

    def next_resource(self) -> ResourceType:
        resource = self.resource_loop[self.cursor_index % len(self.resource_loop)]
        self.cursor_index += 1
        return resource

    def peek_resource(self) -> ResourceType:
        return self.resource_loop[self.cursor_index % len(self.resource_loop)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "resourceLoop": [r.value for r in self.resource_loop],
            "cursorIndex": self.cursor_index,
            "maxQueues": self.max_queues,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> "GatherSettings":
        raw = raw or {}
        loop = raw.get("resourceLoop", raw.get("resource_loop"))
        return cls(
            resource_loop=[ResourceType.parse(r) for r in loop] if loop else list(DEFAULT_RESOURCE_LOOP),
            cursor_index=int(raw.get("cursorIndex", raw.get("cursor_index", 0))),
            max_queues=int(raw.get("maxQueues", raw.get("max_queues", MAX_QUEUES))),
        )

    def to_string(self) -> str:
        loop = ",".join(r.value for r in self.resource_loop)
        return f"Loop:{loop};Index:{self.cursor_index};MaxQueues:{self.max_queues}"

    @classmethod
    def from_string(cls, text: str) -> "GatherSettings":
        settings = cls()
        for part in (text or "").split(";"):
            key, sep, value = part.partition(":")
            if not sep:
                continue
            key = key.strip()
            value = value.strip()
            if key == "Loop" and value:
                settings.resource_loop = [ResourceType.parse(r) for r in value.split(",") if r.strip()]
            elif key == "Index":
                settings.cursor_index = int(value)
            elif key == "MaxQueues":
                settings.max_queues = int(value)
        settings.__post_init__()
        return settings


@dataclass
class SystemConfig:
    max_concurrent_instances: int = 2
    hibernation_enabled: bool = True
    module_order: list[str] = field(default_factory=lambda: list(DEFAULT_MODULE_ORDER))


@dataclass
class InstanceConfig:
    index: int
    name: str
    serial: str
    priority: Priority = Priority.NORMAL
    auto_gather: bool = True
    auto_start: bool = False
    gather: GatherSettings = field(default_factory=GatherSettings)


@dataclass
class BotConfig:
    adb_path: str
    memuc_path: str
    templates_dir: str
    screenshot_dir: str
    save_debug_screenshots: bool
    debug_logging: bool
    state_path: str
    system: SystemConfig
    timings: Timings
    ocr: OcrConfig
    instances: list[InstanceConfig]

    def instance(self, index: int) -> InstanceConfig:
        for inst in self.instances:
            if inst.index == index:
                return inst
        raise KeyError(f"Instance {index} is not configured")


def _validate(cfg: dict[str, Any]) -> dict[str, Any]:
    required = [
        "adb_path",
        "memuc_path",
        "templates_dir",
        "screenshot_dir",
        "instances",
    ]
    missing = [k for k in required if k not in cfg]
    if missing:
        raise ValueError(f"Missing config keys: {', '.join(missing)}")
    if not isinstance(cfg["instances"], list) or not cfg["instances"]:
        raise ValueError("instances must be a non-empty list")
    return cfg


def _parse_system(item: dict[str, Any] | None) -> SystemConfig:
    item = item or {}
    system = SystemConfig(
        max_concurrent_instances=int(item.get("max_concurrent_instances", 2)),
        hibernation_enabled=bool(item.get("hibernation_enabled", True)),
        module_order=list(item.get("module_order", DEFAULT_MODULE_ORDER)),
    )
    if system.max_concurrent_instances < 1:
        raise ValueError("system.max_concurrent_instances must be >= 1")
    unknown = [m for m in system.module_order if m not in DEFAULT_MODULE_ORDER]
    if unknown:
        raise ValueError(f"Unknown modules in system.module_order: {', '.join(unknown)}")
    return system


def _parse_ocr(item: dict[str, Any] | None) -> OcrConfig:
    item = item or {}
    return OcrConfig(
        tesseract_cmd=str(item.get("tesseract_cmd", "")),
        time_good_enough=float(item.get("time_good_enough", 10.0)),
        general_good_enough=float(item.get("general_good_enough", 95.0)),
        queue_good_enough=float(item.get("queue_good_enough", 95.0)),
    )


def _parse_instance(item: dict[str, Any]) -> InstanceConfig:
    if "index" not in item:
        raise ValueError("Each instance requires `index`")
    index = int(item["index"])
    return InstanceConfig(
        index=index,
        name=str(item.get("name", f"MEmu_{index}" if index > 0 else "MEmu")),
        serial=str(item.get("serial") or default_memu_serial(index)),
        priority=Priority.parse(item.get("priority", "NORMAL")),
        auto_gather=bool(item.get("auto_gather", True)),
        auto_start=bool(item.get("auto_start", False)),
        gather=GatherSettings.from_dict(item.get("gather")),
    )


def load_config(path: str) -> BotConfig:
    p = Path(path)
    raw = yaml.safe_load(p.read_text())
    if not isinstance(raw, dict):
        raise ValueError(f"Config root must be a mapping: {p}")
    cfg = _validate(raw)

    instances = [_parse_instance(item) for item in cfg["instances"]]
    seen: set[int] = set()
    for inst in instances:
        if inst.index in seen:
            raise ValueError(f"Duplicate instance index: {inst.index}")
        seen.add(inst.index)

    return BotConfig(
        adb_path=cfg["adb_path"],
        memuc_path=cfg["memuc_path"],
        templates_dir=cfg["templates_dir"],
        screenshot_dir=cfg["screenshot_dir"],
        save_debug_screenshots=bool(cfg.get("save_debug_screenshots", False)),
        debug_logging=bool(cfg.get("debug_logging", False)),
        state_path=str(cfg.get("state_path", "gather_state.yaml")),
        system=_parse_system(cfg.get("system")),
        timings=Timings.from_dict(cfg.get("timings")),
        ocr=_parse_ocr(cfg.get("ocr")),
        instances=instances,
    )


def load_gather_state(path: str) -> dict[int, GatherSettings]:
    p = Path(path)
    if not p.exists():
        return {}
    raw = yaml.safe_load(p.read_text()) or {}
    return {int(k): GatherSettings.from_dict(v) for k, v in (raw.get("instances") or {}).items()}


def save_gather_state(path: str, states: dict[int, GatherSettings]) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    payload = {"instances": {idx: s.to_dict() for idx, s in sorted(states.items())}}
    tmp = p.with_suffix(p.suffix + ".tmp")
    tmp.write_text(yaml.safe_dump(payload, sort_keys=False))
    tmp.replace(p)


def apply_gather_state(cfg: BotConfig) -> None:
    """Carry persisted rotation cursors over into the loaded instance settings."""
    for idx, saved in load_gather_state(cfg.state_path).items():
        try:
            inst = cfg.instance(idx)
        except KeyError:
            continue
        inst.gather.cursor_index = saved.cursor_index
