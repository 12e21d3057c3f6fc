# backend/dbrest/logging_setup.py
from __future__ import annotations

import logging
import os
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

REPO_ROOT = Path(__file__).resolve().parents[2]

LOG_FORMAT = "%(asctime)s %(levelname)s [%(process)d] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


class TimestampRotatingFileHandler(RotatingFileHandler):
    """
    Size-based rotation that opens a fresh file named after the rollover time
    (app-20260918-101500-123.log) instead of shuffling .1, .2, ... suffixes.
    """

    def __init__(self, directory: Path, prefix: str = "dbrest", max_bytes: int = 1_000_000):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.prefix = prefix
        super().__init__(
            self._next_filename(),
            maxBytes=max_bytes,
            backupCount=0,
            encoding="utf-8",
            errors="replace",
        )

    def _next_filename(self) -> str:
        # milliseconds keep two rollovers inside one second apart
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S-%f")[:-3]
        return str(self.directory / f"{self.prefix}-{stamp}.log")

    def doRollover(self) -> None:
        if self.stream:
            self.stream.close()
            self.stream = None
        self.baseFilename = os.fspath(self._next_filename())
        self.mode = "a"
        self.stream = self._open()


def coerce_level(level: Optional[str | int]) -> int:
    """Accept ints, level names, or fall back to LOG_LEVEL from the environment."""
    if isinstance(level, int):
        return level
    if isinstance(level, str) and level.strip():
        return getattr(logging, level.strip().upper(), logging.INFO)
    env_level = os.getenv("LOG_LEVEL", "INFO")
    return getattr(logging, env_level.upper(), logging.INFO)


def start_log(
    *,
    app_name: str = "dbrest",
    log_dir: Optional[str | Path] = None,
    level: Optional[str | int] = None,
    to_console: bool = True,
    to_file: bool = True,
    max_bytes: int = 1_000_000,
) -> logging.Logger:
    """
    Configure the root logger for the whole service.

    Every module logs through ``logging.getLogger(__name__)``; once this has run
    those records land in the console and in ``<repo>/var/logs`` (or LOG_DIR).
    Calling it again replaces the handlers instead of stacking duplicates, which
    matters under the Flask reloader and in tests.
    """
    root = logging.getLogger()
    root.setLevel(coerce_level(level))

    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)

    resolved_dir: Optional[Path] = None
    if to_file:
        if log_dir is None:
            log_dir = os.getenv("LOG_DIR") or (REPO_ROOT / "var" / "logs")
        resolved_dir = Path(log_dir)
        file_handler = TimestampRotatingFileHandler(resolved_dir, prefix=app_name, max_bytes=max_bytes)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    if to_console:
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        console.setLevel(root.level)
        root.addHandler(console)

    root.info(
        "Logging started app=%s dir=%s level=%s",
        app_name,
        str(resolved_dir) if resolved_dir else "-",
        logging.getLevelName(root.level),
    )
    return root
