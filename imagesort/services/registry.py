# imagesort/services/registry.py
from __future__ import annotations

import re
from pathlib import Path

from imagesort.core.errors import NamingExhausted
from imagesort.repositories.db import CatalogStore
from imagesort.schemas.catalog import DeviceHandle, DeviceRecord

# Characters that are not safe in a directory name on any of the usual filesystems
_UNSAFE = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
MAX_SUFFIX = 9999


def folder_name(display_name: str) -> str:
    """Directory-safe version of a device display name."""
    name = _UNSAFE.sub("_", display_name or "").strip().rstrip(".")
    return name or "Device"


class DeviceRegistry:
    """
    Maps a physical device to its archive sub-directory.

    The sub-directory is negotiated once, on first sight, and never changes:
    everything already archived under it stays valid.
    """

    def __init__(self, store: CatalogStore, archive_root: Path) -> None:
        self.store = store
        self.archive_root = archive_root

    def _taken(self, name: str) -> bool:
        return (self.archive_root / name).exists() or self.store.local_path_assigned(name)

    def local_path_for(self, handle: DeviceHandle) -> str:
        """
        Stored path for a catalogued device, otherwise the first free of
        'Name', 'Name (2)', 'Name (3)', ... Does not create anything.
        """
        known = self.store.get_device(handle.device_id, handle.serial)
        if known:
            return known.local_path

        base = folder_name(handle.name)
        if not self._taken(base):
            return base
        for n in range(2, MAX_SUFFIX + 1):
            candidate = f"{base} ({n})"
            if not self._taken(candidate):
                return candidate
        raise NamingExhausted(f"no free archive folder for device {handle.name!r}")

    def register(self, handle: DeviceHandle) -> DeviceRecord:
        """Negotiate and persist in one transaction (idempotent)."""
        with self.store.transaction():
            local_path = self.local_path_for(handle)
            return self.store.register_device(handle.device_id, handle.serial, handle.name, local_path)
