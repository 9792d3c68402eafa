from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

ANSI_RED = "\033[31m"
ANSI_GREEN = "\033[32m"
ANSI_RESET = "\033[0m"

RED_TAGS = {"WARN", "ERROR", "FAIL"}


@dataclass
class TaggedLog:
    prefix: str = ""
    debug_enabled: bool = False
    # Called with the tag after WARN/ERROR/FAIL lines, e.g. to save a snapshot.
    on_problem: Callable[[str], None] | None = None

    def _emit(self, tag: str, msg: str) -> None:
        head = f"[{tag}]"
        if tag in RED_TAGS:
            head = f"{ANSI_RED}{head}{ANSI_RESET} !!"
        elif tag == "OK":
            head = f"{ANSI_GREEN}{head}{ANSI_RESET}"
        where = f" [{self.prefix}]" if self.prefix else ""
        print(f"{head}{where} {msg}")

    def info(self, msg: str) -> None:
        self._emit("INFO", msg)

    def ok(self, msg: str) -> None:
        self._emit("OK", msg)

    def tag(self, tag: str, msg: str) -> None:
        self._emit(tag, msg)

    def debug(self, msg: str) -> None:
        if self.debug_enabled:
            self._emit("DEBUG", msg)

    def warn(self, msg: str) -> None:
        self._emit("WARN", msg)
        self._problem("warn")

    def error(self, msg: str) -> None:
        self._emit("ERROR", msg)
        self._problem("error")

    def fail(self, msg: str) -> None:
        self._emit("FAIL", msg)
        self._problem("fail")

    def child(self, prefix: str) -> "TaggedLog":
        return TaggedLog(prefix=prefix, debug_enabled=self.debug_enabled, on_problem=self.on_problem)

    def _problem(self, label: str) -> None:
        if self.on_problem is None:
            return
        try:
            self.on_problem(label)
        except Exception as exc:
            print(f"[DEBUG] failure snapshot skipped: {exc}")
