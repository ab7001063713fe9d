import io
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

from imagesort.core.config import Settings
from imagesort.core.errors import DeviceUnreachable
from imagesort.repositories.db import CatalogStore
from imagesort.schemas.catalog import DeviceHandle, MetadataTag, RemoteStat
from imagesort.services.capture_date import CaptureDateResolver
from imagesort.services.devices import DeviceAccess


class StaticDeviceAccess(DeviceAccess):
    """In-memory devices: {path: bytes} per handle, plus knobs to make them misbehave."""

    def __init__(self, exclude_dirs=("System Volume Information",)):
        super().__init__(exclude_dirs)
        self.handles: List[DeviceHandle] = []
        self.files: Dict[Tuple[str, str], Dict[str, bytes]] = {}
        self.created: Dict[str, datetime] = {}
        self.unplugged = set()       # device_ids that are gone
        self.unplug_on = set()       # device paths whose stat/open unplugs the device
        self.fail_reads: Dict[str, int] = {}   # path -> remaining OSErrors on open
        self.opened: List[str] = []

    def add(self, handle: DeviceHandle, files: Dict[str, bytes],
            created: Optional[Dict[str, datetime]] = None) -> DeviceHandle:
        self.handles.append(handle)
        self.files.setdefault((handle.device_id, handle.serial), {}).update(files)
        self.created.update(created or {})
        return handle

    def _files(self, handle: DeviceHandle) -> Dict[str, bytes]:
        if handle.device_id in self.unplugged:
            raise DeviceUnreachable(f"{handle.name} unplugged")
        return self.files[(handle.device_id, handle.serial)]

    def _check(self, handle: DeviceHandle, path: str) -> bytes:
        files = self._files(handle)
        if path in self.unplug_on:
            self.unplugged.add(handle.device_id)
            raise DeviceUnreachable(f"{handle.name} unplugged while reading {path}")
        return files[path]

    def list_connected_devices(self):
        return list(self.handles)

    def connect(self, handle):
        self._files(handle)

    def root(self, handle):
        return "/"

    def list_directory(self, handle, path):
        prefix = path.rstrip("/") + "/"
        dirs, files = set(), []
        for p in self._files(handle):
            if not p.startswith(prefix):
                continue
            rest = p[len(prefix):]
            if "/" in rest:
                dirs.add(prefix + rest.split("/", 1)[0])
            else:
                files.append(p)
        return sorted(dirs), sorted(files)

    def open_read_stream(self, handle, path):
        data = self._check(handle, path)
        if self.fail_reads.get(path, 0) > 0:
            self.fail_reads[path] -= 1
            raise OSError(f"flaky read of {path}")
        self.opened.append(path)
        return io.BytesIO(data)

    def stat_file(self, handle, path):
        data = self._check(handle, path)
        return RemoteStat(size=len(data), created=self.created.get(path))


def fake_tags(p: Path) -> List[MetadataTag]:
    """Test files carry their dates as text: 'EXIF 2024:03:01 10:00:00' or 'QT ...'."""
    for line in p.read_bytes().decode("utf-8", "replace").splitlines():
        if line.startswith("EXIF "):
            return [MetadataTag(directory="ExifIFD", name="DateTimeOriginal", value=line[5:])]
        if line.startswith("QT "):
            return [MetadataTag(directory="QuickTime", name="CreateDate", value=line[3:])]
    return []


def phone(name="Pixel 7", device_id="usb:18d1", serial="A1B2", model="Pixel 7") -> DeviceHandle:
    return DeviceHandle(device_id=device_id, serial=serial, name=name, model=model)


@pytest.fixture
def settings(tmp_path):
    return Settings({
        "paths": {"data_dir": str(tmp_path / "data")},
        "transfer": {"retry_attempts": 3, "retry_wait": 0, "heartbeat": 1},
    })


@pytest.fixture
def store(settings):
    with CatalogStore(settings.db_path) as s:
        yield s


@pytest.fixture
def resolver(settings):
    return CaptureDateResolver(settings.image_ext, settings.video_ext,
                               reader=fake_tags, quicktime_utc=False)


@pytest.fixture
def access():
    return StaticDeviceAccess()
