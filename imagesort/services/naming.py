# imagesort/services/naming.py
# Destination naming: <YYYY-MM>/<YYYY-MM-DD HH.mm.ss>[.<n>].<stem><ext>
from __future__ import annotations

from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Callable

from imagesort.core.errors import NamingExhausted

MAX_COUNTER = 9999


def month_dir(captured: datetime) -> str:
    return captured.strftime("%Y-%m")


def archive_name(captured: datetime, basename: str, n: int = 0) -> str:
    """'2024-03-01 10.00.00.IMG_1.jpg', or with n=1 '2024-03-01 10.00.00.1.IMG_1.jpg'."""
    stamp = captured.strftime("%Y-%m-%d %H.%M.%S")
    p = PurePosixPath(basename)
    counter = f".{n}" if n else ""
    return f"{stamp}{counter}.{p.stem}{p.suffix}"


def plan_destination(device_root: Path, captured: datetime, basename: str,
                     exists: Callable[[Path], bool] = Path.exists,
                     max_counter: int = MAX_COUNTER) -> Path:
    """
    Lowest-numbered candidate under device_root that `exists` says is free.
    Deterministic for a given predicate; never returns an existing path.
    """
    folder = device_root / month_dir(captured)
    for n in range(max_counter + 1):
        candidate = folder / archive_name(captured, basename, n)
        if not exists(candidate):
            return candidate
    raise NamingExhausted(f"more than {max_counter} collisions for {basename} at {captured}")
