# imagesort/core/errors.py
# Error taxonomy for the catalog-and-transfer pipeline.
# Per-file errors never abort a batch; DeviceUnreachable aborts one device only.

from __future__ import annotations

from pathlib import Path
from typing import Optional


class ImageSortError(Exception):
    """Base class for everything raised on purpose by imagesort."""


class CatalogError(ImageSortError):
    """The catalog cannot be used (schema/digest mismatch, dangling device ref)."""


class DeviceUnreachable(ImageSortError):
    """Device vanished mid-listing or mid-download."""


class MetadataUnavailable(ImageSortError):
    """No usable capture date: unsupported format, missing tag or bad value."""


class DuplicateEntry(ImageSortError):
    """(device, remote path) or local path is already in the catalog."""


class NamingExhausted(ImageSortError):
    """Collision counter passed its cap."""


class StagingFailed(ImageSortError):
    """Download into the scratch area failed after all retries."""


class PlacementFailed(ImageSortError):
    """
    Moving the staged file into the archive failed.
    The staged copy is left where it is for manual recovery.
    """

    def __init__(self, message: str, staged_path: Optional[Path] = None) -> None:
        super().__init__(message)
        self.staged_path = staged_path
