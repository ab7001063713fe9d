# imagesort/utils/http.py
# Path and URL helpers shared by the routers.
import urllib.parse
from pathlib import Path
from typing import Optional, Tuple

from fastapi import Request


def resolve_under(root: Path, rel: str) -> Optional[Path]:
    """
    Absolute path of `rel` inside `root`, or None when it escapes root
    (.., absolute paths, symlinks pointing outside).
    """
    target = (root / rel).resolve()
    try:
        target.relative_to(root.resolve())
    except ValueError:
        return None
    return target


def archive_urls(request: Request, path_local: str) -> Tuple[str, str]:
    """(media_url, thumb_url) for an archive-relative path."""
    base = str(request.base_url).rstrip("/")
    quoted = urllib.parse.quote(path_local)
    return f"{base}/archive/{quoted}", f"{base}/thumb/archive/{quoted}"
