# imagesort/services/pipeline.py
"""
Transfer pipeline for one device.

Each new device file goes, strictly one at a time:

    Listed -> Staged -> Hashed -> DateResolved -> Named -> Placed | Failed

- Staged:       streamed into this batch's scratch directory (whole-file retries)
- Hashed:       SHA-256 of the staged copy, re-read from disk
- DateResolved: capture date from metadata; on MetadataUnavailable the
                device-reported creation time is used and the file is listed in
                BatchReport.metadata_failed (the transfer continues)
- Named:        <archive>/<device>/<YYYY-MM>/<YYYY-MM-DD HH.mm.ss>[.<n>].<stem><ext>
- Placed:       linked into the archive without replacing anything, mtime/atime
                set to the capture date

The catalog row is written only after the file is in place. If that write
fails the placed file stays and the file is reported as inconsistent.
"""

from __future__ import annotations

import errno
import logging
import os
import shutil
import sqlite3
import tempfile
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
)

from imagesort.core.config import Settings
from imagesort.core.errors import (
    CatalogError,
    DeviceUnreachable,
    DuplicateEntry,
    MetadataUnavailable,
    NamingExhausted,
    PlacementFailed,
    StagingFailed,
)
from imagesort.core.logs import LOGGER, batch_logger
from imagesort.repositories.db import CatalogStore
from imagesort.schemas.catalog import (
    BatchReport,
    CatalogEntry,
    DeviceHandle,
    DeviceRecord,
    FileFailure,
    RemoteStat,
)
from imagesort.services.capture_date import CaptureDateResolver
from imagesort.services.devices import DeviceAccess, remote_basename
from imagesort.services.hashing import file_token, sha256_file
from imagesort.services.naming import plan_destination

# re-plans allowed when a planned name is taken before the file lands
PLACE_ATTEMPTS = 5


def human_bytes(n: Optional[float]) -> str:
    if n is None:
        return ""
    step = 1024.0
    units = ["B", "KiB", "MiB", "GiB", "TiB"]
    s = float(n)
    for u in units:
        if s < step or u == units[-1]:
            return f"{s:.0f}{u}" if u == "B" else f"{s:.1f}{u}"
        s /= step
    return f"{n}B"


class ProgressMeter:
    """Running count/bytes and instantaneous rates since the batch began."""

    def __init__(self) -> None:
        self.started = time.monotonic()
        self.count = 0
        self.bytes = 0

    def add(self, size: int) -> None:
        self.count += 1
        self.bytes += size

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started

    def rates(self) -> tuple[float, float]:
        """(files/sec, bytes/sec)"""
        elapsed = self.elapsed
        if elapsed <= 0:
            return 0.0, 0.0
        return self.count / elapsed, self.bytes / elapsed

    def line(self) -> str:
        fps, bps = self.rates()
        return f"… copied={self.count} ({human_bytes(self.bytes)}) {fps:.2f} files/s {human_bytes(bps)}/s"


def _transient(exc: BaseException) -> bool:
    return isinstance(exc, OSError)


# hard links refused by the destination filesystem (FAT/exFAT cards, some NAS mounts)
_NO_HARDLINKS = frozenset({errno.EPERM, errno.ENOTSUP, errno.EOPNOTSUPP, errno.EMLINK})


def _link_into(src: Path, dest: Path) -> None:
    """
    Give `src` the name `dest` and drop the old name. os.link fails with
    FileExistsError instead of replacing an existing `dest`.
    """
    try:
        os.link(src, dest)
    except OSError as e:
        if e.errno not in _NO_HARDLINKS:
            raise
        if dest.exists():
            raise FileExistsError(errno.EEXIST, "destination exists", str(dest)) from e
        os.rename(src, dest)
        return
    os.unlink(src)


def place_file(staged: Path, dest: Path, captured: datetime) -> None:
    """
    Move `staged` to `dest` without ever overwriting. Same filesystem: hard
    link, then unlink. Across filesystems: copy to a hidden sibling, then link
    that in. On failure the staged file is left alone.

    Raises FileExistsError when `dest` is taken by the time the file lands,
    so the caller can pick another name.
    """
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise PlacementFailed(f"cannot create {dest.parent}: {e}", staged) from e

    try:
        try:
            _link_into(staged, dest)
        except OSError as e:
            if e.errno != errno.EXDEV:
                raise
            part = dest.with_name(f".{dest.name}.part")
            try:
                shutil.copyfile(staged, part)
                _link_into(part, dest)
            finally:
                part.unlink(missing_ok=True)
            staged.unlink()
    except FileExistsError:
        raise
    except OSError as e:
        raise PlacementFailed(f"move {staged} -> {dest} failed: {e}", staged) from e

    ts = captured.timestamp()
    try:
        os.utime(dest, (ts, ts))
    except OSError as e:
        LOGGER.warning("Placed %s but could not set its timestamps: %s", dest, e)


class TransferPipeline:
    """Copies every not-yet-catalogued file of one device into the archive."""

    def __init__(self, settings: Settings, store: CatalogStore, access: DeviceAccess,
                 resolver: CaptureDateResolver) -> None:
        self.settings = settings
        self.store = store
        self.access = access
        self.resolver = resolver

    # ---------- Listed ----------

    def new_files(self, handle: DeviceHandle) -> Iterator[str]:
        """Device paths with no catalog entry yet, in listing order."""
        for path in self.access.list_files(handle):
            if not self.store.has_entry(handle.device_id, handle.serial, path):
                yield path

    # ---------- Staged ----------

    def _retrying(self) -> Retrying:
        stop = stop_after_attempt(self.settings.retry_attempts)
        if self.settings.retry_deadline > 0:
            stop = stop | stop_after_delay(self.settings.retry_deadline)
        return Retrying(
            stop=stop,
            wait=wait_exponential(multiplier=self.settings.retry_wait, max=30),
            retry=retry_if_exception(_transient),
            before_sleep=before_sleep_log(LOGGER, logging.WARNING),
            reraise=True,
        )

    def stage(self, handle: DeviceHandle, path: str, scratch: Path, token: str) -> Path:
        """
        Stream one device file to `scratch/<stem>.<token><ext>`. The whole file
        is retried on OSError; DeviceUnreachable is never retried.
        """
        base = Path(remote_basename(path))
        staged = scratch / f"{base.stem}.{token}{base.suffix}"
        try:
            for attempt in self._retrying():
                with attempt:
                    with self.access.open_read_stream(handle, path) as src, staged.open("wb") as dst:
                        shutil.copyfileobj(src, dst, 1024 * 1024)
                        dst.flush()
                        os.fsync(dst.fileno())
        except OSError as e:
            staged.unlink(missing_ok=True)
            raise StagingFailed(f"download of {path} failed: {e}") from e
        except DeviceUnreachable:
            staged.unlink(missing_ok=True)
            raise
        return staged

    # ---------- DateResolved ----------

    def fallback_date(self, stat: Optional[RemoteStat], staged: Path) -> datetime:
        if stat is not None and stat.created is not None:
            return stat.created
        return datetime.fromtimestamp(staged.stat().st_mtime)

    # ---------- batch ----------

    def run(self, handle: DeviceHandle, device: DeviceRecord,
            cancel: Optional[threading.Event] = None, note: Optional[str] = None) -> BatchReport:
        """
        Process every new file of one device. Per-file failures are collected in
        the report; DeviceUnreachable stops the batch and is recorded as aborted.
        """
        batch_id = self.store.begin_batch(device.rowid, note)
        report = BatchReport(batch_id=batch_id, device=device.name, local_path=device.local_path)
        ctx = batch_logger(batch_id, device.name)
        meter = ProgressMeter()

        self.settings.scratch_root.mkdir(parents=True, exist_ok=True)
        scratch = Path(tempfile.mkdtemp(prefix=f"{batch_id[:8]}-", dir=self.settings.scratch_root))
        ctx.info("Started batch %s for %s -> %s", batch_id, device.name,
                 self.settings.archive_root / device.local_path)

        try:
            for path in self.new_files(handle):
                if cancel is not None and cancel.is_set():
                    report.cancelled = True
                    ctx.warning("Cancelled; %s and later files left for the next run", path)
                    break
                try:
                    self.transfer_one(handle, device, path, scratch, report, meter, ctx)
                except DeviceUnreachable:
                    raise
                except Exception as e:
                    # one bad file must not kill the batch
                    report.failed.append(FileFailure(path_camera=path, reason="unexpected", detail=repr(e)))
                    ctx.exception("Unhandled error while processing %s", path)
        except DeviceUnreachable as e:
            report.aborted = str(e)
            ctx.error("Device unreachable, batch aborted: %s", e)
        finally:
            report.elapsed = meter.elapsed
            self.store.finish_batch(report)
            try:
                scratch.rmdir()   # only succeeds when no staged copy was kept
            except OSError:
                ctx.warning("Staged files kept for recovery in %s", scratch)

        self.log_summary(report, ctx)
        return report

    def transfer_one(self, handle: DeviceHandle, device: DeviceRecord, path: str, scratch: Path,
                     report: BatchReport, meter: ProgressMeter, ctx: logging.LoggerAdapter) -> bool:
        """One file from Listed to Placed (True) or Failed (False)."""
        token = file_token(device.device_id, device.serial, path)
        extra = {"file_token": token}

        def fail(reason: str, detail: str) -> bool:
            report.failed.append(FileFailure(path_camera=path, reason=reason, detail=detail))
            ctx.error("FAILED %s (%s): %s", path, reason, detail, extra=extra)
            return False

        staged: Optional[Path] = None
        try:
            stat = self.access.stat_file(handle, path)
            staged = self.stage(handle, path, scratch, token)

            digest = sha256_file(staged)
            size = staged.stat().st_size

            try:
                captured = self.resolver.resolve(staged)
            except MetadataUnavailable as e:
                captured = self.fallback_date(stat, staged)
                report.metadata_failed.append(path)
                ctx.warning("No capture date for %s (%s); using %s", path, e, captured, extra=extra)

            device_root = self.settings.archive_root / device.local_path
            for _ in range(PLACE_ATTEMPTS):
                dest = plan_destination(device_root, captured, remote_basename(path),
                                        max_counter=self.settings.max_collisions)
                try:
                    place_file(staged, dest, captured)
                    break
                except FileExistsError:
                    ctx.warning("%s appeared while placing %s; picking another name", dest, path, extra=extra)
            else:
                raise PlacementFailed(f"destination names for {path} kept being taken", staged)
            staged = None
        except DeviceUnreachable:
            if staged is not None:
                staged.unlink(missing_ok=True)
            raise
        except StagingFailed as e:
            return fail("staging_failed", str(e))
        except NamingExhausted as e:
            staged.unlink(missing_ok=True)
            return fail("naming_exhausted", str(e))
        except PlacementFailed as e:
            return fail("placement_failed", f"{e} (staged copy: {e.staged_path})")
        except OSError as e:
            if staged is not None:
                staged.unlink(missing_ok=True)
            return fail("io_error", str(e))

        entry = CatalogEntry(
            device_rowid=device.rowid,
            path_camera=path,
            path_local=dest.relative_to(self.settings.archive_root).as_posix(),
            sha256sum=digest,
            size=size,
            created=captured,
        )
        try:
            self.store.record_entry(entry)
        except (DuplicateEntry, CatalogError, sqlite3.Error) as e:
            report.inconsistent.append(
                FileFailure(path_camera=path, reason="catalog_write_failed", detail=f"{dest}: {e}")
            )
            ctx.error("INCONSISTENT %s placed at %s but not catalogued: %s", path, dest, e, extra=extra)
            return False

        report.copied += 1
        report.bytes_copied += size
        meter.add(size)
        ctx.debug("PLACED %s -> %s (%s)", path, dest, digest[:8], extra=extra)

        hb = self.settings.heartbeat
        if hb > 0 and meter.count % hb == 0:
            ctx.info(meter.line())
        return True

    def log_summary(self, report: BatchReport, ctx: logging.LoggerAdapter) -> None:
        ctx.info(
            "Summary %s: copied=%d (%s) metadata_fallback=%d failed=%d inconsistent=%d%s%s",
            report.device, report.copied, human_bytes(report.bytes_copied),
            len(report.metadata_failed), len(report.failed), len(report.inconsistent),
            " CANCELLED" if report.cancelled else "",
            f" ABORTED: {report.aborted}" if report.aborted else "",
        )
        for p in report.metadata_failed:
            ctx.info("  - fell back to file time: %s", p)
