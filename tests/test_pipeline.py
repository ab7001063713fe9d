import errno
import hashlib
import os
import threading
from datetime import datetime
from pathlib import Path

import pytest

from imagesort.core.errors import DuplicateEntry
from imagesort.services.hashing import sha256_file
from imagesort.services.pipeline import TransferPipeline, human_bytes
from imagesort.services.registry import DeviceRegistry

from conftest import phone

IMG_1 = b"EXIF 2024:03:01 10:00:00\nfirst"
IMG_2 = b"EXIF 2024:03:01 10:00:01\nsecond"


@pytest.fixture
def pipeline(settings, store, access, resolver):
    return TransferPipeline(settings, store, access, resolver)


def _register(settings, store, handle):
    record = DeviceRegistry(store, settings.archive_root).register(handle)
    (settings.archive_root / record.local_path).mkdir(parents=True, exist_ok=True)
    return record


def _run(settings, store, access, pipeline, handle, cancel=None):
    record = _register(settings, store, handle)
    return record, pipeline.run(handle, record, cancel=cancel)


def _scratch_files(settings):
    return [p for p in settings.scratch_root.rglob("*") if p.is_file()]


def test_two_files_placed_by_capture_date(settings, store, access, pipeline):
    h = access.add(phone(), {"/DCIM/IMG_1.jpg": IMG_1, "/DCIM/IMG_2.jpg": IMG_2})
    record, report = _run(settings, store, access, pipeline, h)

    assert report.ok
    assert report.copied == 2
    assert report.bytes_copied == len(IMG_1) + len(IMG_2)
    assert report.metadata_failed == []

    month = settings.archive_root / "Pixel 7" / "2024-03"
    first = month / "2024-03-01 10.00.00.IMG_1.jpg"
    second = month / "2024-03-01 10.00.01.IMG_2.jpg"
    assert first.read_bytes() == IMG_1
    assert second.read_bytes() == IMG_2

    entry = store.get_entry(record.rowid, "/DCIM/IMG_1.jpg")
    assert entry.path_local == "Pixel 7/2024-03/2024-03-01 10.00.00.IMG_1.jpg"
    assert entry.created == datetime(2024, 3, 1, 10, 0, 0)
    assert entry.size == len(IMG_1)
    assert store.count_entries(record.rowid) == 2


def test_image_and_video_from_empty_catalog(settings, store, access, pipeline):
    h = access.add(phone(name="A", device_id="X", serial="1"), {
        "/a.jpg": b"EXIF 2024:03:01 10:00:00\n",
        "/b.mp4": b"QT 2024:04:02 18:30:00\n",
    })
    record, report = _run(settings, store, access, pipeline, h)
    assert report.copied == 2
    assert (settings.archive_root / "A" / "2024-03" / "2024-03-01 10.00.00.a.jpg").exists()
    assert (settings.archive_root / "A" / "2024-04" / "2024-04-02 18.30.00.b.mp4").exists()
    assert store.count_entries(record.rowid) == 2

    _, again = _run(settings, store, access, pipeline, h)
    assert again.copied == 0
    assert store.count_entries(record.rowid) == 2


def test_placed_file_digest_and_times(settings, store, access, pipeline):
    h = access.add(phone(), {"/DCIM/IMG_1.jpg": IMG_1})
    record, _ = _run(settings, store, access, pipeline, h)

    entry = store.get_entry(record.rowid, "/DCIM/IMG_1.jpg")
    placed = settings.archive_root / entry.path_local
    assert entry.sha256sum == hashlib.sha256(IMG_1).hexdigest()
    assert sha256_file(placed) == entry.sha256sum
    assert os.stat(placed).st_mtime == datetime(2024, 3, 1, 10, 0, 0).timestamp()


def test_rerun_copies_nothing(settings, store, access, pipeline):
    h = access.add(phone(), {"/DCIM/IMG_1.jpg": IMG_1, "/DCIM/IMG_2.jpg": IMG_2})
    _run(settings, store, access, pipeline, h)
    access.opened.clear()

    _, report = _run(settings, store, access, pipeline, h)
    assert report.copied == 0
    assert report.ok
    assert access.opened == []
    assert store.count_entries() == 2


def test_new_files_only_on_second_run(settings, store, access, pipeline):
    h = access.add(phone(), {"/DCIM/IMG_1.jpg": IMG_1})
    _run(settings, store, access, pipeline, h)

    access.add(h, {"/DCIM/IMG_2.jpg": IMG_2})
    access.handles = [h]
    access.opened.clear()
    _, report = _run(settings, store, access, pipeline, h)
    assert report.copied == 1
    assert access.opened == ["/DCIM/IMG_2.jpg"]


def test_missing_metadata_falls_back_to_device_time(settings, store, access, pipeline):
    created = datetime(2023, 5, 6, 7, 8, 9)
    h = access.add(phone(), {"/DCIM/IMG_3.jpg": b"no dates here"},
                   created={"/DCIM/IMG_3.jpg": created})
    record, report = _run(settings, store, access, pipeline, h)

    assert report.copied == 1
    assert report.metadata_failed == ["/DCIM/IMG_3.jpg"]
    assert report.ok
    placed = settings.archive_root / "Pixel 7" / "2023-05" / "2023-05-06 07.08.09.IMG_3.jpg"
    assert placed.exists()
    assert store.get_entry(record.rowid, "/DCIM/IMG_3.jpg").created == created


def test_unknown_extension_uses_device_time(settings, store, access, pipeline):
    created = datetime(2022, 1, 2, 3, 4, 5)
    h = access.add(phone(), {"/notes.txt": b"EXIF 2024:03:01 10:00:00"},
                   created={"/notes.txt": created})
    _, report = _run(settings, store, access, pipeline, h)
    assert report.metadata_failed == ["/notes.txt"]
    assert (settings.archive_root / "Pixel 7" / "2022-01" / "2022-01-02 03.04.05.notes.txt").exists()


def test_same_second_same_name_gets_counter(settings, store, access, pipeline):
    h = access.add(phone(), {
        "/DCIM/A/IMG_1.jpg": IMG_1 + b"a",
        "/DCIM/B/IMG_1.jpg": IMG_1 + b"b",
        "/DCIM/C/IMG_1.jpg": IMG_1 + b"c",
    })
    record, report = _run(settings, store, access, pipeline, h)
    assert report.copied == 3

    month = settings.archive_root / "Pixel 7" / "2024-03"
    assert (month / "2024-03-01 10.00.00.IMG_1.jpg").read_bytes().endswith(b"a")
    assert (month / "2024-03-01 10.00.00.1.IMG_1.jpg").read_bytes().endswith(b"b")
    assert (month / "2024-03-01 10.00.00.2.IMG_1.jpg").read_bytes().endswith(b"c")
    assert store.get_entry(record.rowid, "/DCIM/C/IMG_1.jpg").path_local.endswith("10.00.00.2.IMG_1.jpg")


def test_existing_archive_file_never_overwritten(settings, store, access, pipeline):
    h = access.add(phone(), {"/DCIM/IMG_1.jpg": IMG_1})
    record = _register(settings, store, h)
    month = settings.archive_root / record.local_path / "2024-03"
    month.mkdir()
    (month / "2024-03-01 10.00.00.IMG_1.jpg").write_bytes(b"already here")

    _, report = _run(settings, store, access, pipeline, h)
    assert report.copied == 1
    assert (month / "2024-03-01 10.00.00.IMG_1.jpg").read_bytes() == b"already here"
    assert (month / "2024-03-01 10.00.00.1.IMG_1.jpg").read_bytes() == IMG_1


def test_scratch_is_cleaned_after_batch(settings, store, access, pipeline):
    h = access.add(phone(), {"/DCIM/IMG_1.jpg": IMG_1})
    _run(settings, store, access, pipeline, h)
    assert _scratch_files(settings) == []
    assert list(settings.scratch_root.iterdir()) == []


def test_transient_read_errors_are_retried(settings, store, access, pipeline):
    h = access.add(phone(), {"/DCIM/IMG_1.jpg": IMG_1})
    access.fail_reads["/DCIM/IMG_1.jpg"] = 2
    _, report = _run(settings, store, access, pipeline, h)
    assert report.copied == 1
    assert report.ok


def test_staging_gives_up_after_retries(settings, store, access, pipeline):
    h = access.add(phone(), {"/DCIM/IMG_1.jpg": IMG_1, "/DCIM/IMG_2.jpg": IMG_2})
    access.fail_reads["/DCIM/IMG_1.jpg"] = 10
    record, report = _run(settings, store, access, pipeline, h)

    assert report.copied == 1
    assert [f.reason for f in report.failed] == ["staging_failed"]
    assert report.failed[0].path_camera == "/DCIM/IMG_1.jpg"
    assert not store.has_entry(h.device_id, h.serial, "/DCIM/IMG_1.jpg")
    assert _scratch_files(settings) == []


def test_device_unplugged_aborts_batch(settings, store, access, pipeline):
    h = access.add(phone(), {"/DCIM/IMG_1.jpg": IMG_1, "/DCIM/IMG_2.jpg": IMG_2})
    access.unplug_on.add("/DCIM/IMG_2.jpg")
    record, report = _run(settings, store, access, pipeline, h)

    assert report.aborted
    assert not report.ok
    assert report.copied == 1
    assert store.has_entry(h.device_id, h.serial, "/DCIM/IMG_1.jpg")
    assert not store.has_entry(h.device_id, h.serial, "/DCIM/IMG_2.jpg")

    # plugged back in: the next run picks up where this one stopped
    access.unplugged.clear()
    access.unplug_on.clear()
    _, again = _run(settings, store, access, pipeline, h)
    assert again.copied == 1
    assert store.count_entries(record.rowid) == 2


def test_placement_failure_keeps_staged_copy(settings, store, access, pipeline):
    h = access.add(phone(), {"/DCIM/IMG_1.jpg": IMG_1})
    record = _register(settings, store, h)
    device_root = settings.archive_root / record.local_path
    (device_root / "2024-03").write_bytes(b"a file where the month folder should be")

    _, report = _run(settings, store, access, pipeline, h)
    assert report.copied == 0
    assert [f.reason for f in report.failed] == ["placement_failed"]
    assert not store.has_entry(h.device_id, h.serial, "/DCIM/IMG_1.jpg")

    kept = _scratch_files(settings)
    assert len(kept) == 1
    assert kept[0].read_bytes() == IMG_1


def test_catalog_write_failure_reported_as_inconsistent(settings, store, access, pipeline, monkeypatch):
    h = access.add(phone(), {"/DCIM/IMG_1.jpg": IMG_1})

    def refuse(entry):
        raise DuplicateEntry(f"{entry.path_camera} already catalogued")

    monkeypatch.setattr(store, "record_entry", refuse)
    _, report = _run(settings, store, access, pipeline, h)

    assert report.copied == 0
    assert not report.ok
    assert [f.reason for f in report.inconsistent] == ["catalog_write_failed"]
    # the placed file stays where it is
    assert (settings.archive_root / "Pixel 7" / "2024-03" / "2024-03-01 10.00.00.IMG_1.jpg").exists()


def test_cancel_stops_before_next_file(settings, store, access, pipeline):
    h = access.add(phone(), {"/DCIM/IMG_1.jpg": IMG_1, "/DCIM/IMG_2.jpg": IMG_2})
    cancel = threading.Event()
    cancel.set()
    _, report = _run(settings, store, access, pipeline, h, cancel=cancel)

    assert report.cancelled
    assert report.copied == 0
    assert store.count_entries() == 0
    assert len(store.recent_batches()) == 1


def test_excluded_dirs_are_not_listed(settings, store, access, pipeline):
    h = access.add(phone(), {
        "/DCIM/IMG_1.jpg": IMG_1,
        "/System Volume Information/IndexerVolumeGuid": b"x",
    })
    _, report = _run(settings, store, access, pipeline, h)
    assert report.copied == 1
    assert access.opened == ["/DCIM/IMG_1.jpg"]


def test_batch_row_is_finished(settings, store, access, pipeline):
    h = access.add(phone(), {"/DCIM/IMG_1.jpg": IMG_1})
    _, report = _run(settings, store, access, pipeline, h)
    row = store.recent_batches()[0]
    assert row["id"] == report.batch_id
    assert row["copied"] == 1
    assert row["bytes"] == len(IMG_1)
    assert row["finished_at"] is not None


def test_human_bytes():
    assert human_bytes(None) == ""
    assert human_bytes(512) == "512B"
    assert human_bytes(2048) == "2.0KiB"
    assert human_bytes(3 * 1024 ** 3) == "3.0GiB"


def test_cross_filesystem_placement_copies_then_links(settings, store, access, pipeline, monkeypatch):
    h = access.add(phone(), {"/DCIM/IMG_1.jpg": IMG_1})
    real_link = os.link
    refused = []

    def cross_device(src, dst, *args, **kwargs):
        if not refused:
            refused.append(Path(src))
            raise OSError(errno.EXDEV, "Invalid cross-device link")
        return real_link(src, dst, *args, **kwargs)

    monkeypatch.setattr(os, "link", cross_device)
    record, report = _run(settings, store, access, pipeline, h)

    assert report.ok
    assert report.copied == 1
    assert refused[0].parent.parent == settings.scratch_root
    month = settings.archive_root / record.local_path / "2024-03"
    assert (month / "2024-03-01 10.00.00.IMG_1.jpg").read_bytes() == IMG_1
    assert [p.name for p in month.iterdir() if p.name.endswith(".part")] == []
    assert _scratch_files(settings) == []


def test_name_taken_during_placement_is_replanned(settings, store, access, pipeline, monkeypatch):
    h = access.add(phone(), {"/DCIM/IMG_1.jpg": IMG_1})
    real_link = os.link
    raced = []

    def someone_else_first(src, dst, *args, **kwargs):
        if not raced:
            raced.append(dst)
            Path(dst).write_bytes(b"written by another process")
        return real_link(src, dst, *args, **kwargs)

    monkeypatch.setattr(os, "link", someone_else_first)
    record, report = _run(settings, store, access, pipeline, h)

    assert report.ok
    month = settings.archive_root / record.local_path / "2024-03"
    assert (month / "2024-03-01 10.00.00.IMG_1.jpg").read_bytes() == b"written by another process"
    assert (month / "2024-03-01 10.00.00.1.IMG_1.jpg").read_bytes() == IMG_1
    entry = store.get_entry(record.rowid, "/DCIM/IMG_1.jpg")
    assert entry.path_local.endswith("10.00.00.1.IMG_1.jpg")
    assert _scratch_files(settings) == []


def test_archive_without_hard_links_still_places(settings, store, access, pipeline, monkeypatch):
    h = access.add(phone(), {"/DCIM/IMG_1.jpg": IMG_1})

    def no_links(src, dst, *args, **kwargs):
        raise OSError(errno.EPERM, "Operation not permitted")

    monkeypatch.setattr(os, "link", no_links)
    record, report = _run(settings, store, access, pipeline, h)

    assert report.copied == 1
    month = settings.archive_root / record.local_path / "2024-03"
    assert (month / "2024-03-01 10.00.00.IMG_1.jpg").read_bytes() == IMG_1
    assert _scratch_files(settings) == []
