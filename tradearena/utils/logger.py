"""Logging for the trading core.

One ``tradearena`` logger for every component; messages carry a
``[Component]`` prefix instead of per-module loggers. Each process start opens
a timestamped file in ``logs/`` and rewrites ``tradearena.log`` with the same
content. Only the ``LOG_KEEP_FILES`` newest run files are kept.

APScheduler logs every executed job at INFO; with a 2 s matching interval that
drowns the console, so it is capped at WARNING.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path

from tradearena.config import settings

_FORMAT = logging.Formatter(
    "[%(asctime)s] %(levelname)-8s %(name)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
_RUN_PREFIX = "tradearena_"
_CHATTY_LIBRARIES = ("apscheduler", "uvicorn.access")


def _prune_old_logs(logs_dir: Path, keep: int) -> None:
    runs = sorted(logs_dir.glob(f"{_RUN_PREFIX}*.log"), key=lambda p: p.stat().st_mtime)
    for old in runs[: max(0, len(runs) - keep)]:
        try:
            old.unlink()
        except OSError:
            pass


def _file_handler(path: Path, mode: str = "a") -> logging.FileHandler:
    handler = logging.FileHandler(path, mode=mode, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(_FORMAT)
    return handler


def _setup_logger(name: str = "tradearena") -> logging.Logger:
    """Console at LOG_LEVEL, files at DEBUG."""
    log = logging.getLogger(name)
    log.setLevel(logging.DEBUG)
    if log.handlers:
        return log

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(getattr(logging, settings.LOG_LEVEL, logging.INFO))
    console.setFormatter(_FORMAT)
    log.addHandler(console)

    logs_dir = settings.LOGS_DIR
    logs_dir.mkdir(parents=True, exist_ok=True)
    run_log = logs_dir / f"{_RUN_PREFIX}{datetime.now():%Y-%m-%d_%H-%M-%S}.log"
    log.addHandler(_file_handler(run_log))
    try:
        log.addHandler(_file_handler(logs_dir / "tradearena.log", mode="w"))
    except OSError:
        pass  # Another process may hold it on Windows

    for noisy in _CHATTY_LIBRARIES:
        logging.getLogger(noisy).setLevel(logging.WARNING)

    _prune_old_logs(logs_dir, settings.LOG_KEEP_FILES)
    log.info("Log started: %s", run_log.name)
    return log


logger = _setup_logger()
