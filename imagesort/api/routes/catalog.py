# imagesort/api/routes/catalog.py
# Endpoints over the catalog:
# - GET  /api/devices
# - GET  /api/devices/{rowid}/files
# - POST /api/devices/{rowid}/ignore
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request

from imagesort.api.deps import get_store
from imagesort.repositories.db import CatalogStore
from imagesort.schemas.catalog import CatalogEntry, DeviceOut, DeviceRecord, EntryOut, IgnoreIn
from imagesort.utils.http import archive_urls

api_router = APIRouter(tags=["catalog"])     # mounted under /api in main


def _device_out(store: CatalogStore, d: DeviceRecord) -> DeviceOut:
    return DeviceOut(**d.model_dump(), files=store.count_entries(d.rowid))


def _entry_out(request: Request, e: CatalogEntry) -> EntryOut:
    media_url, thumb_url = archive_urls(request, e.path_local)
    return EntryOut(**e.model_dump(exclude={"device_rowid"}), media_url=media_url, thumb_url=thumb_url)


@api_router.get("/devices", response_model=List[DeviceOut])
def list_devices(store: CatalogStore = Depends(get_store)):
    return [_device_out(store, d) for d in store.list_devices()]


@api_router.get("/devices/{rowid}/files", response_model=List[EntryOut])
def list_device_files(request: Request, rowid: int, limit: int = 200, offset: int = 0,
                      store: CatalogStore = Depends(get_store)):
    # validate paging params
    if not (1 <= limit <= 1000):
        raise HTTPException(400, "limit must be 1..1000")
    if offset < 0:
        raise HTTPException(400, "offset must be >= 0")
    if store.get_device_by_rowid(rowid) is None:
        raise HTTPException(404, f"no device {rowid}")
    return [_entry_out(request, e) for e in store.list_entries(rowid, limit=limit, offset=offset)]


@api_router.post("/devices/{rowid}/ignore", response_model=DeviceOut)
def set_device_ignore(rowid: int, body: IgnoreIn, store: CatalogStore = Depends(get_store)):
    try:
        device = store.set_ignore(rowid, body.ignore)
    except LookupError:
        raise HTTPException(404, f"no device {rowid}")
    return _device_out(store, device)
