# imagesort/services/devices.py
# Device-access collaborator.
#
# DeviceAccess is the boundary the pipeline talks to. Implementations provide
# the primitive operations; list_files() is shared and walks a device with an
# explicit stack so the listing is finite and can be restarted by calling it
# again.
#
# VolumeDeviceAccess treats mounted card / camera volumes declared in
# [[devices.volumes]] as devices.

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, Iterator, List, Optional, Tuple

from imagesort.core.errors import DeviceUnreachable
from imagesort.core.logs import LOGGER
from imagesort.schemas.catalog import DeviceHandle, RemoteStat

DEFAULT_EXCLUDES = frozenset({"System Volume Information"})


def remote_basename(path: str) -> str:
    """Last component of a device path; devices use either separator."""
    return path.replace("\\", "/").rstrip("/").rsplit("/", 1)[-1]


class DeviceAccess(ABC):
    """What the transfer pipeline needs from a device transport."""

    def __init__(self, exclude_dirs: Iterable[str] = DEFAULT_EXCLUDES) -> None:
        self.exclude_dirs = set(exclude_dirs)

    @abstractmethod
    def list_connected_devices(self) -> List[DeviceHandle]:
        """Snapshot of the devices attached right now."""

    def connect(self, handle: DeviceHandle) -> None:
        pass

    def disconnect(self, handle: DeviceHandle) -> None:
        pass

    @abstractmethod
    def root(self, handle: DeviceHandle) -> str:
        """Path of the device's top directory."""

    @abstractmethod
    def list_directory(self, handle: DeviceHandle, path: str) -> Tuple[List[str], List[str]]:
        """(sub-directories, files) directly under `path`, as full device paths."""

    @abstractmethod
    def open_read_stream(self, handle: DeviceHandle, path: str) -> BinaryIO:
        """Binary stream over one device file. Caller closes it."""

    @abstractmethod
    def stat_file(self, handle: DeviceHandle, path: str) -> RemoteStat:
        """Size and device-reported creation time of one file."""

    def list_files(self, handle: DeviceHandle, path: Optional[str] = None) -> Iterator[str]:
        """
        Every file under `path` (default: device root), files of a directory
        before its sub-directories. Excluded directory names are pruned at
        every level.
        """
        stack = [path if path is not None else self.root(handle)]
        while stack:
            current = stack.pop()
            dirs, files = self.list_directory(handle, current)
            yield from files
            keep = []
            for d in dirs:
                if remote_basename(d) in self.exclude_dirs:
                    LOGGER.debug("  Excluding dir: %s", d)
                    continue
                keep.append(d)
            # reversed so the first sub-directory is walked first
            stack.extend(reversed(keep))


class VolumeDeviceAccess(DeviceAccess):
    """
    Mounted volumes as devices. Device paths are posix paths relative to the
    volume root ("/DCIM/100CANON/IMG_0001.JPG").
    """

    def __init__(self, volumes, exclude_dirs: Iterable[str] = DEFAULT_EXCLUDES) -> None:
        super().__init__(exclude_dirs)
        self.volumes = list(volumes)
        # location -> (st_dev, was a mount point) seen at connect()
        self._connected: Dict[str, Tuple[int, bool]] = {}

    def list_connected_devices(self) -> List[DeviceHandle]:
        out: List[DeviceHandle] = []
        for v in self.volumes:
            if not v.path.is_dir():
                LOGGER.debug("Volume %s not mounted at %s", v.name, v.path)
                continue
            out.append(DeviceHandle(
                device_id=v.device_id,
                serial=v.serial,
                name=v.name,
                model=v.model,
                location=str(v.path),
            ))
        return out

    def _mount(self, handle: DeviceHandle) -> Path:
        """
        The volume root, or DeviceUnreachable when the volume is gone. A card
        pulled from a fixed mount point leaves the directory behind, so the
        filesystem seen at connect() must still be the one mounted there.
        """
        mount = Path(handle.location or "")
        if not handle.location or not mount.is_dir():
            raise DeviceUnreachable(f"{handle.name} is no longer mounted at {handle.location}")
        seen = self._connected.get(handle.location)
        if seen is not None:
            dev, was_mount = seen
            try:
                same_dev = mount.stat().st_dev == dev
            except OSError as e:
                raise DeviceUnreachable(f"{handle.name} at {mount} is unreadable: {e}") from e
            if not same_dev or (was_mount and not os.path.ismount(mount)):
                raise DeviceUnreachable(f"{handle.name} was unmounted from {mount}")
        return mount

    def _local(self, handle: DeviceHandle, path: str) -> Path:
        return self._mount(handle) / path.lstrip("/")

    def connect(self, handle: DeviceHandle) -> None:
        self._connected.pop(handle.location or "", None)
        mount = self._mount(handle)
        self._connected[handle.location] = (mount.stat().st_dev, os.path.ismount(mount))

    def disconnect(self, handle: DeviceHandle) -> None:
        self._connected.pop(handle.location or "", None)

    def root(self, handle: DeviceHandle) -> str:
        return "/"

    def list_directory(self, handle: DeviceHandle, path: str) -> Tuple[List[str], List[str]]:
        base = self._local(handle, path)
        prefix = path.rstrip("/")
        dirs: List[str] = []
        files: List[str] = []
        try:
            entries = sorted(os.scandir(base), key=lambda e: e.name)
        except OSError as e:
            self._mount(handle)   # raises DeviceUnreachable if the volume went away
            raise DeviceUnreachable(f"cannot list {path} on {handle.name}: {e}") from e
        for entry in entries:
            full = f"{prefix}/{entry.name}"
            if entry.is_dir(follow_symlinks=False):
                dirs.append(full)
            elif entry.is_file(follow_symlinks=False):
                files.append(full)
        return dirs, files

    def open_read_stream(self, handle: DeviceHandle, path: str) -> BinaryIO:
        local = self._local(handle, path)
        try:
            return local.open("rb")
        except FileNotFoundError:
            self._mount(handle)
            raise

    def stat_file(self, handle: DeviceHandle, path: str) -> RemoteStat:
        try:
            st = self._local(handle, path).stat()
        except FileNotFoundError:
            self._mount(handle)
            raise
        # st_birthtime where the platform has it; cards usually keep mtime = capture time
        created = getattr(st, "st_birthtime", None) or st.st_mtime
        return RemoteStat(size=st.st_size, created=datetime.fromtimestamp(created))
