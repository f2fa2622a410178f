"""Levelled console output shared by the dispatcher and the build workers."""
from __future__ import annotations

from typing import TextIO
import sys
import threading


class Console:
    """Simple console output handler with configurable log level.

    Levels: none < error < info < debug. Warnings print at the error level.
    Writes are serialised so lines from concurrent workers never interleave.
    """

    LEVELS = {
        "none": 0,
        "error": 1,
        "info": 2,
        "debug": 3,
    }

    def __init__(
        self,
        level: str = "info",
        dry_run: bool = False,
        *,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
    ) -> None:
        if level not in self.LEVELS:
            raise ValueError(f"Unknown log level '{level}'. Expected one of: {', '.join(self.LEVELS)}")
        self.level_name = level
        self.level = self.LEVELS[level]
        self.dry_run = dry_run
        self._stdout = stdout
        self._stderr = stderr
        self._lock = threading.Lock()

    def _emit(self, line: str, *, error: bool = False) -> None:
        # Resolved per call so redirect_stdout in tests is honoured.
        if error:
            stream = self._stderr or sys.stderr
        else:
            stream = self._stdout or sys.stdout
        with self._lock:
            print(line, file=stream, flush=True)

    def info(self, message: str) -> None:
        if self.level >= self.LEVELS["info"]:
            self._emit(f"[INFO] {message}")

    def warn(self, message: str) -> None:
        if self.level >= self.LEVELS["error"]:
            self._emit(f"[WARN] {message}", error=True)

    def error(self, message: str) -> None:
        if self.level >= self.LEVELS["error"]:
            self._emit(f"[ERROR] {message}", error=True)

    def dry(self, message: str) -> None:
        if self.dry_run:
            self._emit(f"[DRY] {message}")

    def debug(self, message: str) -> None:
        if self.level >= self.LEVELS["debug"]:
            self._emit(f"[DEBUG] {message}")

    def plain(self, message: str) -> None:
        """Print ``message`` unprefixed; used for reports and dry-run listings."""
        if self.level >= self.LEVELS["error"]:
            self._emit(message)
