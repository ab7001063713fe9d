# imagesort/repositories/db.py
# SQLite-backed catalog of devices and archived files.
#
# One connection per store, shared between threads; every statement runs under
# the store lock so there is exactly one writer at a time. Mutations go through
# transaction(), which issues BEGIN IMMEDIATE and either commits everything or
# rolls everything back.

from __future__ import annotations

import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional, Union

from imagesort.core.errors import CatalogError, DuplicateEntry
from imagesort.schemas.catalog import BatchReport, CatalogEntry, DeviceRecord
from imagesort.services.hashing import DIGEST_ALGORITHM

SCHEMA_PATH = Path(__file__).with_name("schema.sql")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _device_from_row(row: sqlite3.Row) -> DeviceRecord:
    return DeviceRecord(
        rowid=row["id"],
        device_id=row["device_id"],
        serial=row["serial"],
        name=row["name"] or "",
        local_path=row["local_path"],
        added=row["added"],
        ignore=bool(row["ignore"]),
    )


def _entry_from_row(row: sqlite3.Row) -> CatalogEntry:
    return CatalogEntry(
        device_rowid=row["device_rowid"],
        path_camera=row["path_camera"],
        path_local=row["path_local"],
        sha256sum=row["sha256sum"],
        size=row["size"],
        created=row["created"],
    )


class CatalogStore:
    """
    Persistent record of devices and archived files.

    Use as a context manager so the connection is released deterministically:

        with CatalogStore(settings.db_path) as store:
            ...
    """

    def __init__(self, db_path: Union[str, Path]) -> None:
        self.db_path = db_path
        if str(db_path) != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._depth = 0
        self._conn: Optional[sqlite3.Connection] = sqlite3.connect(
            str(db_path), isolation_level=None, check_same_thread=False
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=FULL;")
        self._conn.execute("PRAGMA foreign_keys=ON;")
        self._conn.execute("PRAGMA busy_timeout=5000;")
        self._ensure_schema()

    # ---------- lifecycle ----------

    def __enter__(self) -> "CatalogStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise CatalogError(f"catalog {self.db_path} is closed")
        return self._conn

    def _ensure_schema(self) -> None:
        with self._lock:
            self.conn.executescript(SCHEMA_PATH.read_text(encoding="utf-8"))
            with self.transaction():
                self.conn.execute(
                    "INSERT OR IGNORE INTO catalog_meta (key, value) VALUES ('digest_algorithm', ?)",
                    (DIGEST_ALGORITHM,),
                )
                algo = self.conn.execute(
                    "SELECT value FROM catalog_meta WHERE key='digest_algorithm'"
                ).fetchone()[0]
        if algo != DIGEST_ALGORITHM:
            raise CatalogError(
                f"catalog {self.db_path} records {algo} digests, this build computes {DIGEST_ALGORITHM}"
            )

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Single durable transaction; nested calls join the outer one."""
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self.conn
                finally:
                    self._depth -= 1
                return

            self.conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield self.conn
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            else:
                self.conn.execute("COMMIT")
            finally:
                self._depth = 0

    def _fetchone(self, sql: str, params=()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params=()) -> List[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    # ---------- devices ----------

    def get_device(self, device_id: str, serial: str) -> Optional[DeviceRecord]:
        row = self._fetchone(
            "SELECT * FROM device WHERE device_id = ? AND serial = ?", (device_id, serial)
        )
        return _device_from_row(row) if row else None

    def get_device_by_rowid(self, rowid: int) -> Optional[DeviceRecord]:
        row = self._fetchone("SELECT * FROM device WHERE id = ?", (rowid,))
        return _device_from_row(row) if row else None

    def is_known_device(self, device_id: str, serial: str) -> bool:
        return self._fetchone(
            "SELECT 1 FROM device WHERE device_id = ? AND serial = ? LIMIT 1", (device_id, serial)
        ) is not None

    def local_path_assigned(self, local_path: str) -> bool:
        return self._fetchone(
            "SELECT 1 FROM device WHERE local_path = ? LIMIT 1", (local_path,)
        ) is not None

    def list_devices(self) -> List[DeviceRecord]:
        return [_device_from_row(r) for r in self._fetchall("SELECT * FROM device ORDER BY id")]

    def register_device(self, device_id: str, serial: str, name: str, local_path: str) -> DeviceRecord:
        """
        Idempotent: an already catalogued (device_id, serial) comes back unchanged,
        including the local path it was given on first sight. Otherwise a new row
        is inserted with `local_path` and ignore=False.
        """
        with self.transaction() as conn:
            existing = self.get_device(device_id, serial)
            if existing:
                return existing
            try:
                conn.execute(
                    """
                    INSERT INTO device (device_id, serial, name, local_path, added, ignore)
                    VALUES (?, ?, ?, ?, ?, 0)
                    """,
                    (device_id, serial, name, local_path, _now()),
                )
            except sqlite3.IntegrityError as e:
                raise CatalogError(f"local path {local_path!r} is already assigned: {e}") from e
            return self.get_device(device_id, serial)

    def set_ignore(self, rowid: int, ignore: bool = True) -> DeviceRecord:
        with self.transaction() as conn:
            cur = conn.execute("UPDATE device SET ignore = ? WHERE id = ?", (int(ignore), rowid))
            if cur.rowcount == 0:
                raise LookupError(f"no device with rowid {rowid}")
            return self.get_device_by_rowid(rowid)

    # ---------- files ----------

    def has_entry(self, device_id: str, serial: str, path_camera: str) -> bool:
        """True iff this device file was already archived."""
        return self._fetchone(
            """
            SELECT 1
            FROM file f
            JOIN device d ON d.id = f.device_rowid
            WHERE d.device_id = ? AND d.serial = ? AND f.path_camera = ?
            LIMIT 1
            """,
            (device_id, serial, path_camera),
        ) is not None

    def record_entry(self, entry: CatalogEntry) -> None:
        """Insert one archived file. Raises DuplicateEntry on either unique key."""
        with self.transaction() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO file (device_rowid, path_camera, path_local, sha256sum, size, created, added)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry.device_rowid, entry.path_camera, entry.path_local,
                        entry.sha256sum, entry.size, entry.created.isoformat(), _now(),
                    ),
                )
            except sqlite3.IntegrityError as e:
                if "FOREIGN KEY" in str(e):
                    raise CatalogError(f"device rowid {entry.device_rowid} does not exist") from e
                raise DuplicateEntry(
                    f"{entry.path_camera} -> {entry.path_local} already catalogued ({e})"
                ) from e

    def get_entry(self, device_rowid: int, path_camera: str) -> Optional[CatalogEntry]:
        row = self._fetchone(
            "SELECT * FROM file WHERE device_rowid = ? AND path_camera = ?",
            (device_rowid, path_camera),
        )
        return _entry_from_row(row) if row else None

    def list_entries(self, device_rowid: Optional[int] = None, limit: int = -1,
                     offset: int = 0) -> List[CatalogEntry]:
        sql = "SELECT * FROM file"
        params: list = []
        if device_rowid is not None:
            sql += " WHERE device_rowid = ?"
            params.append(device_rowid)
        sql += " ORDER BY created, path_local LIMIT ? OFFSET ?"
        params += [limit, offset]
        return [_entry_from_row(r) for r in self._fetchall(sql, params)]

    def count_entries(self, device_rowid: Optional[int] = None) -> int:
        if device_rowid is None:
            return self._fetchone("SELECT COUNT(*) FROM file")[0]
        return self._fetchone(
            "SELECT COUNT(*) FROM file WHERE device_rowid = ?", (device_rowid,)
        )[0]

    # ---------- batches ----------

    def begin_batch(self, device_rowid: int, note: Optional[str] = None) -> str:
        """Create a batch row and return its UUID."""
        batch_id = str(uuid.uuid4())
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO batches (id, device_rowid, started_at, notes) VALUES (?, ?, ?, ?)",
                (batch_id, device_rowid, _now(), note),
            )
        return batch_id

    def finish_batch(self, report: BatchReport) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                UPDATE batches
                SET finished_at = ?, copied = ?, bytes = ?, metadata_failed = ?,
                    failed = ?, aborted = ?
                WHERE id = ?
                """,
                (
                    _now(), report.copied, report.bytes_copied, len(report.metadata_failed),
                    len(report.failed) + len(report.inconsistent), report.aborted, report.batch_id,
                ),
            )

    def recent_batches(self, limit: int = 20) -> List[sqlite3.Row]:
        return self._fetchall(
            """
            SELECT b.id, d.name AS device, b.started_at, b.finished_at, b.copied,
                   b.bytes, b.metadata_failed, b.failed, b.aborted, b.notes
            FROM batches b
            LEFT JOIN device d ON d.id = b.device_rowid
            ORDER BY b.started_at DESC
            LIMIT ?
            """,
            (limit,),
        )
