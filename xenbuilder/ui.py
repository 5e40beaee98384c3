"""Build output sink for xenbuilder steps."""

from __future__ import annotations

from xenbuilder.utils import log


class BuildUi:
    """Prefix step output with the build name and route it through log()."""

    def __init__(self, build_name: str) -> None:
        self.build_name = build_name

    def say(self, msg: str) -> None:
        log("INFO", f"{self.build_name}: {msg}")

    def success(self, msg: str) -> None:
        log("SUCCESS", f"{self.build_name}: {msg}")

    def warn(self, msg: str) -> None:
        log("WARN", f"{self.build_name}: {msg}")

    def error(self, msg: str) -> None:
        log("ERROR", f"{self.build_name}: {msg}")

    def debug(self, msg: str) -> None:
        log("DEBUG", f"{self.build_name}: {msg}")
