# imagesort/services/capture_date.py
from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, NamedTuple, Optional, Sequence

from imagesort.core.errors import MetadataUnavailable
from imagesort.schemas.catalog import MetadataTag
from imagesort.services.metadata import read_tags

TagReader = Callable[[Path], Sequence[MetadataTag]]

IMAGE = "image"
VIDEO = "video"


class DateTag(NamedTuple):
    directory: str
    name: str


# One fixed tag per extension class.
CLASS_TAGS: Dict[str, DateTag] = {
    IMAGE: DateTag("ExifIFD", "DateTimeOriginal"),
    VIDEO: DateTag("QuickTime", "CreateDate"),
}

# "YYYY:MM:DD HH:MM:SS" with optional sub-seconds and zone suffix
_dt_re = re.compile(
    r"^(?P<y>\d{4}):(?P<m>\d{2}):(?P<d>\d{2})[ T]"
    r"(?P<H>\d{2}):(?P<M>\d{2}):(?P<S>\d{2})"
    r"(?:\.(?P<sub>\d+))?(?P<tz>Z|[+\-]\d{2}:?\d{2})?$"
)


def parse_exif_datetime(s: str) -> datetime:
    """
    Parse an EXIF/QuickTime date string. Zero/sentinel values and anything that
    does not match the pattern raise MetadataUnavailable.
    """
    s = (s or "").strip()
    m = _dt_re.match(s)
    if not m:
        raise MetadataUnavailable(f"unrecognized date value {s!r}")
    try:
        dt = datetime.strptime(s[:19].replace("T", " "), "%Y:%m:%d %H:%M:%S")
    except ValueError as e:
        # "0000:00:00 00:00:00" and friends
        raise MetadataUnavailable(f"invalid date value {s!r}") from e

    tz = m.group("tz")
    if tz == "Z":
        return dt.replace(tzinfo=timezone.utc)
    if tz:
        tz = tz if ":" in tz else (tz[:3] + ":" + tz[3:])
        return datetime.fromisoformat(dt.strftime("%Y-%m-%dT%H:%M:%S") + tz)
    return dt


def find_tag(tags: Iterable[MetadataTag], wanted: DateTag) -> Optional[str]:
    for t in tags:
        if t.directory == wanted.directory and t.name == wanted.name:
            return t.value
    return None


class CaptureDateResolver:
    """
    Authoritative capture timestamp of a staged file.

    Never falls back to filesystem times; the transfer pipeline owns that policy.
    """

    def __init__(self, image_ext: set[str], video_ext: set[str],
                 reader: TagReader = read_tags, quicktime_utc: bool = True) -> None:
        self.image_ext = image_ext
        self.video_ext = video_ext
        self.reader = reader
        self.quicktime_utc = quicktime_utc

    def classify(self, p: Path) -> Optional[str]:
        ext = p.suffix.lower()
        if ext in self.image_ext:
            return IMAGE
        if ext in self.video_ext:
            return VIDEO
        return None

    def resolve(self, p: Path) -> datetime:
        kind = self.classify(p)
        if kind is None:
            raise MetadataUnavailable(f"unrecognized extension {p.suffix or '(none)'}")

        wanted = CLASS_TAGS[kind]
        value = find_tag(self.reader(p), wanted)
        if value is None:
            raise MetadataUnavailable(f"no {wanted.directory}:{wanted.name} in {p.name}")

        dt = parse_exif_datetime(value)
        if kind == VIDEO and self.quicktime_utc and dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc).astimezone().replace(tzinfo=None)
        return dt
