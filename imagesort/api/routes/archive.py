# imagesort/api/routes/archive.py
# Archived originals and their thumbnails:
# - GET /archive/{path}
# - GET /thumb/archive/{path}?h=220
from pathlib import Path

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse

from imagesort.api.deps import get_settings
from imagesort.core.config import Settings
from imagesort.utils.http import resolve_under
from imagesort.utils.thumbs import serve_or_build_thumb

public_router = APIRouter()                 # mounted without prefix in main


def _archived(settings: Settings, path: str) -> Path:
    abs_path = resolve_under(settings.archive_root, path)
    if abs_path is None:
        raise HTTPException(403, "forbidden path")
    if not abs_path.is_file():
        raise HTTPException(404, "file not found")
    return abs_path


@public_router.get("/archive/{path:path}")
def get_archived_media(path: str, settings: Settings = Depends(get_settings)):
    return FileResponse(_archived(settings, path))


@public_router.get("/thumb/archive/{path:path}")
def get_archived_thumb(path: str, h: int = 220, settings: Settings = Depends(get_settings)):
    if not (16 <= h <= 2048):
        raise HTTPException(400, "h must be 16..2048")
    return serve_or_build_thumb(settings.thumb_dir, _archived(settings, path), h)
