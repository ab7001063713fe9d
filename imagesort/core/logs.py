# imagesort/core/logs.py
# Console/file logging for sync passes. Every record carries device, batch_id
# and file_token so a batch can be grepped out of the rotating log.

from __future__ import annotations

import json
import logging
import logging.handlers
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

LOGGER = logging.getLogger("imagesort")


class BatchAdapter(logging.LoggerAdapter):
    """Batch context plus whatever extra= the call passes (file_token)."""

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs


def batch_logger(batch_id: str, device: str) -> logging.LoggerAdapter:
    """Attach batch_id + device to every log record in this batch."""
    return BatchAdapter(LOGGER, {"batch_id": batch_id, "device": device})


class EnsureContext(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "device"):
            record.device = "-"
        if not hasattr(record, "batch_id"):
            record.batch_id = "-"
        # Default file_token to the batch id unless the log call overrides it
        if not hasattr(record, "file_token"):
            record.file_token = record.batch_id[:8]
        return True


class MaxLevelFilter(logging.Filter):
    """Allow records up to and including `levelno` (drop anything higher)."""

    def __init__(self, levelno: int) -> None:
        super().__init__()
        self.levelno = levelno

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno <= self.levelno


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "msg": record.getMessage(),
            "name": record.name,
            "device": getattr(record, "device", None),
            "batch_id": getattr(record, "batch_id", None),
            "file_token": getattr(record, "file_token", None),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def setup_logging(logs_dir: Optional[Path], verbose: int = 0, quiet: bool = False,
                  log_level: Optional[str] = None, json_logs: bool = False) -> logging.Logger:
    """
    Console/File matrix:
      - -q:   console = silent;        file = INFO only (drop WARNING+)
      - none: console = INFO only;     file = INFO+ (INFO & WARNING)
      - -v:   console = INFO+;         file = INFO+
      - -vv:  console = DEBUG;         file = DEBUG
      - --log-level=X: both console & file use X (no special filters)
    logs_dir=None disables the file handler.
    """
    logger = LOGGER
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()

    if log_level:
        console_level = getattr(logging, log_level.upper())
        file_level = console_level
        console_max = None
        file_max = None
    elif quiet:
        console_level = logging.CRITICAL   # prints nothing (we don't emit CRITICAL)
        file_level = logging.INFO          # keep audit trail at INFO
        console_max = None
        file_max = MaxLevelFilter(logging.INFO)
    elif verbose >= 2:
        console_level = file_level = logging.DEBUG
        console_max = file_max = None
    elif verbose >= 1:
        console_level = file_level = logging.INFO
        console_max = file_max = None
    else:
        # default: console shows ONLY INFO (hide WARNING); file keeps INFO & WARNING
        console_level = file_level = logging.INFO
        console_max = MaxLevelFilter(logging.INFO)
        file_max = None

    ch = logging.StreamHandler()
    ch.setLevel(console_level)
    ch.addFilter(EnsureContext())
    if console_max:
        ch.addFilter(console_max)
    ch.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(ch)

    if logs_dir is None:
        return logger

    logs_dir.mkdir(parents=True, exist_ok=True)
    ts = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    log_path = logs_dir / f"imagesort-{ts}.log"

    fh = logging.handlers.TimedRotatingFileHandler(
        log_path, when="midnight", backupCount=14, encoding="utf-8"
    )
    fh.setLevel(file_level)
    fh.addFilter(EnsureContext())
    if file_max:
        fh.addFilter(file_max)
    if json_logs:
        fh.setFormatter(JsonFormatter())
    else:
        fmt = logging.Formatter(
            "%(asctime)sZ [%(levelname)s] [%(device)s:%(file_token)s] %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
        fmt.converter = time.gmtime
        fh.setFormatter(fmt)
    logger.addHandler(fh)

    logger.debug("Log file: %s", log_path)
    return logger
