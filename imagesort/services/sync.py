# imagesort/services/sync.py
# One sync pass: snapshot the connected devices, register each one, run its
# transfer batch. A failing device never stops the others.

from __future__ import annotations

import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

from imagesort.core.config import Settings
from imagesort.core.errors import DeviceUnreachable
from imagesort.core.logs import LOGGER
from imagesort.repositories.db import CatalogStore
from imagesort.schemas.catalog import BatchReport, DeviceHandle
from imagesort.services.capture_date import CaptureDateResolver
from imagesort.services.devices import DeviceAccess
from imagesort.services.pipeline import TransferPipeline
from imagesort.services.registry import DeviceRegistry


class SyncRunner:
    def __init__(self, settings: Settings, store: CatalogStore, access: DeviceAccess,
                 resolver: Optional[CaptureDateResolver] = None) -> None:
        self.settings = settings
        self.store = store
        self.access = access
        self.resolver = resolver or CaptureDateResolver(
            settings.image_ext, settings.video_ext, quicktime_utc=settings.quicktime_utc
        )
        self.registry = DeviceRegistry(store, settings.archive_root)
        self.pipeline = TransferPipeline(settings, store, access, self.resolver)

    def run(self, cancel: Optional[threading.Event] = None, note: Optional[str] = None) -> List[BatchReport]:
        """Sync every connected device; returns one report per device that was processed."""
        handles = self.access.list_connected_devices()
        LOGGER.info("Devices connected: %d", len(handles))

        if self.settings.workers > 1 and len(handles) > 1:
            with ThreadPoolExecutor(max_workers=self.settings.workers,
                                    thread_name_prefix="imagesort") as pool:
                results = list(pool.map(lambda h: self._guarded(h, cancel, note), handles))
        else:
            results = [self._guarded(h, cancel, note) for h in handles]
        return [r for r in results if r is not None]

    def _guarded(self, handle: DeviceHandle, cancel, note) -> Optional[BatchReport]:
        try:
            return self.sync_device(handle, cancel, note)
        except Exception as e:
            LOGGER.exception("Device %s failed: %s", handle.name, e)
            return BatchReport(batch_id=str(uuid.uuid4()), device=handle.name, aborted=repr(e))

    def sync_device(self, handle: DeviceHandle, cancel: Optional[threading.Event] = None,
                    note: Optional[str] = None) -> Optional[BatchReport]:
        """None when the device is skipped (card reader model or ignore flag)."""
        if handle.model.strip() in self.settings.skip_models:
            LOGGER.info("Skipping %s (model %s)", handle.name, handle.model.strip())
            return None
        if cancel is not None and cancel.is_set():
            return None

        LOGGER.info("Working: (%s - %s)", handle.name, handle.serial)
        try:
            self.access.connect(handle)
        except DeviceUnreachable as e:
            LOGGER.error("Cannot connect to %s: %s", handle.name, e)
            return BatchReport(batch_id=str(uuid.uuid4()), device=handle.name, aborted=str(e))

        try:
            record = self.registry.register(handle)
            if record.ignore:
                LOGGER.info("Device is being ignored: %s", record.name)
                return None
            (self.settings.archive_root / record.local_path).mkdir(parents=True, exist_ok=True)
            return self.pipeline.run(handle, record, cancel=cancel, note=note)
        finally:
            try:
                self.access.disconnect(handle)
            except DeviceUnreachable as e:
                LOGGER.warning("Disconnect from %s failed: %s", handle.name, e)
