#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
ImageSort sync pass over connected devices.

Highlights:
- Every file not yet in the catalog is staged, hashed, dated and placed under
  <archive>/<device>/<YYYY-MM>/<YYYY-MM-DD HH.mm.ss>[.<n>].<name>
- EXIF/QuickTime capture date first; device file time as fallback (reported)
- Catalog (SQLite) auto-initializes on first run
- Ctrl-C stops at the next file boundary; the current file always completes

Requirements:
- exiftool on PATH (Pillow EXIF fallback for still images otherwise)
"""

from __future__ import annotations

import argparse
import signal
import sys
import threading
import time
from pathlib import Path
from typing import List, Optional

from imagesort.core.config import load_settings
from imagesort.core.logs import LOGGER, setup_logging
from imagesort.repositories.db import CatalogStore
from imagesort.schemas.catalog import BatchReport
from imagesort.services.devices import VolumeDeviceAccess
from imagesort.services.metadata import exiftool_path
from imagesort.services.pipeline import human_bytes
from imagesort.services.sync import SyncRunner


def parse_volume(token: str) -> dict:
    """'NAME=PATH' (or just PATH) -> a [[devices.volumes]] entry."""
    name, sep, path = token.partition("=")
    if not sep:
        name, path = "", token
    return {"name": name or Path(path).name, "path": path}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="ImageSort: copy new files from connected devices into the archive.")
    parser.add_argument("--config", help="Path to imagesort.toml (default: $IMAGESORT_CONFIG or search from CWD)")
    parser.add_argument("--data-dir", help="Root data directory")
    parser.add_argument("--archive", help="Archive root (default: <data_dir>/archive)")
    parser.add_argument("--scratch", help="Scratch directory for staging (default: <data_dir>/scratch)")
    parser.add_argument("--db", help="Catalog database path (default: <data_dir>/db/catalog.sqlite3)")
    parser.add_argument("--volume", action="append", default=[], metavar="NAME=PATH",
                        help="Treat a mounted volume as a device (repeatable)")
    parser.add_argument("-n", "--note", help="Optional note to attach to each batch")
    parser.add_argument("--workers", type=int, help="Devices processed concurrently")
    parser.add_argument("--heartbeat", type=int, help="Emit a throughput line every N copied files")
    parser.add_argument("--logs-dir", default=None, help="Where to write log files (default: <data_dir>/logs)")
    parser.add_argument("--log-level", default=None, choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
                        help="Force console log level (overrides -v/-q)")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Increase console verbosity (repeatable)")
    parser.add_argument("-q", "--quiet", action="store_true", help="Minimal console output")
    parser.add_argument("--json-logs", action="store_true", help="Write JSON-formatted logs to file handler")
    return parser


def overrides_from_args(args: argparse.Namespace) -> dict:
    paths = {}
    if args.data_dir:
        paths["data_dir"] = args.data_dir
    if args.archive:
        paths["archive_dir"] = str(Path(args.archive).expanduser().resolve())
    if args.scratch:
        paths["scratch_dir"] = str(Path(args.scratch).expanduser().resolve())
    if args.db:
        paths["db_path"] = str(Path(args.db).expanduser().resolve())
    if args.logs_dir:
        paths["logs_dir"] = str(Path(args.logs_dir).expanduser().resolve())

    transfer = {}
    if args.workers:
        transfer["workers"] = args.workers
    if args.heartbeat is not None:
        transfer["heartbeat"] = args.heartbeat

    out: dict = {"paths": paths, "transfer": transfer}
    if args.volume:
        out["devices"] = {"volumes": [parse_volume(v) for v in args.volume]}
    return out


def print_summary(reports: List[BatchReport], elapsed: float) -> None:
    LOGGER.info("\n=== Run summary ===")
    for r in reports:
        status = "aborted" if r.aborted else ("cancelled" if r.cancelled else "ok")
        LOGGER.info(
            "Summary %s: copied=%d bytes=%s metadata_fallback=%d failed=%d inconsistent=%d [%s]",
            r.device, r.copied, human_bytes(r.bytes_copied), len(r.metadata_failed),
            len(r.failed), len(r.inconsistent), status,
        )
        for f in r.failed + r.inconsistent:
            LOGGER.info("  ! %s: %s (%s)", f.path_camera, f.reason, f.detail)

    LOGGER.info(
        "TOTALS: devices=%d, copied=%d, bytes=%s, metadata_fallback=%d, failed=%d",
        len(reports),
        sum(r.copied for r in reports),
        human_bytes(sum(r.bytes_copied for r in reports)),
        sum(len(r.metadata_failed) for r in reports),
        sum(len(r.failed) + len(r.inconsistent) for r in reports),
    )
    LOGGER.info(f"\n=== Sync complete. Total time: {elapsed:.1f} seconds ===")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings(Path(args.config) if args.config else None, overrides_from_args(args))

    setup_logging(settings.logs_dir, verbose=args.verbose, quiet=args.quiet,
                  log_level=args.log_level, json_logs=args.json_logs)
    settings.ensure_dirs()

    LOGGER.info(f"ARCHIVE = {settings.archive_root}")
    LOGGER.info(f"CATALOG = {settings.db_path}")
    if not exiftool_path():
        LOGGER.warning("exiftool not found on PATH; videos will fall back to device file times")
    if not settings.volumes:
        LOGGER.info("No devices configured ([[devices.volumes]] or --volume NAME=PATH)")

    cancel = threading.Event()

    def _request_stop(signum, frame):
        LOGGER.info("Stop requested; finishing the current file…")
        cancel.set()

    previous = None
    if threading.current_thread() is threading.main_thread():
        previous = signal.signal(signal.SIGINT, _request_stop)

    t0 = time.perf_counter()
    try:
        with CatalogStore(settings.db_path) as store:
            access = VolumeDeviceAccess(settings.volumes, exclude_dirs=settings.exclude_dirs)
            reports = SyncRunner(settings, store, access).run(cancel=cancel, note=args.note)
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)

    print_summary(reports, time.perf_counter() - t0)
    return 0 if all(r.ok for r in reports) else 1


if __name__ == "__main__":
    sys.exit(main())
