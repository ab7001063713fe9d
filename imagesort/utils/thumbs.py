# imagesort/utils/thumbs.py
# JPEG thumbnails of archived files, cached under [paths].thumb_dir.
import hashlib
import io
from pathlib import Path

from fastapi.responses import FileResponse, Response
from PIL import Image, ImageOps, UnidentifiedImageError


def thumb_key(thumb_dir: Path, abs_path: Path, h: int) -> Path:
    """Keyed on path, size and mtime so a replaced file never serves a stale thumbnail."""
    st = abs_path.stat()
    key = hashlib.sha1(f"{abs_path}|{st.st_size}|{st.st_mtime_ns}|h={h}".encode()).hexdigest()
    return thumb_dir / key[:2] / f"{key}.jpg"


def make_thumb_bytes(abs_path: Path, h: int) -> bytes:
    """Upright JPEG at most `h` pixels high; small images are not upscaled."""
    with Image.open(abs_path) as im:
        im = ImageOps.exif_transpose(im).convert("RGB")
        w, hh = im.size
        if hh > h:
            im = im.resize((max(round(w * h / hh), 1), h), Image.Resampling.LANCZOS)
        buf = io.BytesIO()
        im.save(buf, format="JPEG", quality=82)
        return buf.getvalue()


def serve_or_build_thumb(thumb_dir: Path, abs_path: Path, h: int):
    """
    Cached thumbnail, built on first request. Anything Pillow cannot decode
    (most videos and RAW files) is served as the original.
    """
    cache_path = thumb_key(thumb_dir, abs_path, h)
    if cache_path.exists():
        return FileResponse(cache_path, media_type="image/jpeg")
    try:
        img_bytes = make_thumb_bytes(abs_path, h)
    except (UnidentifiedImageError, OSError):
        return FileResponse(abs_path)
    cache_path.parent.mkdir(parents=True, exist_ok=True)
    cache_path.write_bytes(img_bytes)
    return Response(img_bytes, media_type="image/jpeg")
