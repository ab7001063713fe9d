# imagesort/schemas/catalog.py
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class DeviceHandle(BaseModel):
    """A connected device as reported by the device-access collaborator."""
    device_id: str
    serial: str
    name: str
    model: str = ""
    location: Optional[str] = None   # collaborator-specific (mount point, bus address)


class RemoteStat(BaseModel):
    size: int
    created: Optional[datetime] = None


class MetadataTag(BaseModel):
    directory: str
    name: str
    value: str


class DeviceRecord(BaseModel):
    rowid: int
    device_id: str
    serial: str
    name: str
    local_path: str
    added: datetime
    ignore: bool = False


class CatalogEntry(BaseModel):
    device_rowid: int
    path_camera: str
    path_local: str      # relative to the archive root, posix separators
    sha256sum: str
    size: int
    created: datetime    # resolved capture timestamp


class FileFailure(BaseModel):
    path_camera: str
    reason: str
    detail: str = ""


class BatchReport(BaseModel):
    """End-of-batch summary for one device."""
    batch_id: str
    device: str
    local_path: str = ""
    copied: int = 0
    bytes_copied: int = 0
    elapsed: float = 0.0
    metadata_failed: List[str] = Field(default_factory=list)
    failed: List[FileFailure] = Field(default_factory=list)
    inconsistent: List[FileFailure] = Field(default_factory=list)
    aborted: Optional[str] = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not (self.failed or self.inconsistent or self.aborted)


# ---- API views ----

class DeviceOut(BaseModel):
    rowid: int
    device_id: str
    serial: str
    name: str
    local_path: str
    added: datetime
    ignore: bool
    files: int


class EntryOut(BaseModel):
    path_camera: str
    path_local: str
    sha256sum: str
    size: int
    created: datetime
    media_url: str
    thumb_url: Optional[str] = None


class IgnoreIn(BaseModel):
    ignore: bool = True
