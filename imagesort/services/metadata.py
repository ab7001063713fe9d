# imagesort/services/metadata.py
# Metadata-decoding collaborator: read_tags(path) -> [MetadataTag(directory, name, value)].
# exiftool (-G1, so directories look like "ExifIFD", "QuickTime") when it is on
# PATH, otherwise Pillow's EXIF reader for still images.
from __future__ import annotations

import json
import shutil
import subprocess
from pathlib import Path
from typing import List

import pillow_heif
from PIL import ExifTags, Image, UnidentifiedImageError

from imagesort.core.errors import MetadataUnavailable
from imagesort.schemas.catalog import MetadataTag

pillow_heif.register_heif_opener()

EXIFTOOL_TIMEOUT = 20

# Pillow has no group names; use the ones exiftool -G1 reports for the same IFDs.
_PILLOW_IFDS = {
    ExifTags.IFD.Exif: "ExifIFD",
    ExifTags.IFD.GPSInfo: "GPS",
}


def exiftool_path():
    return shutil.which("exiftool")


def _via_exiftool(exe: str, p: Path) -> List[MetadataTag]:
    cmd = [
        exe,
        "-j", "-G1",
        "-api", "largefilesupport=1",
        "--MakerNotes", "--PreviewImage", "--ThumbnailImage",
        str(p),
    ]
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, check=False,
                              timeout=EXIFTOOL_TIMEOUT)
    except subprocess.TimeoutExpired as e:
        raise MetadataUnavailable(f"exiftool timed out on {p.name}") from e
    if proc.returncode != 0:
        raise MetadataUnavailable(proc.stderr.strip() or f"exiftool rc={proc.returncode}")
    try:
        data = json.loads(proc.stdout) or [{}]
    except json.JSONDecodeError as e:
        raise MetadataUnavailable(f"exiftool returned unreadable output for {p.name}") from e

    row = dict(data[0])
    row.pop("SourceFile", None)
    if "ExifTool:Error" in row:
        raise MetadataUnavailable(str(row["ExifTool:Error"]))

    out: List[MetadataTag] = []
    for key, value in row.items():
        directory, _, name = str(key).rpartition(":")
        out.append(MetadataTag(directory=directory, name=name, value=str(value)))
    return out


def _via_pillow(p: Path) -> List[MetadataTag]:
    """Still images only; anything Pillow cannot open is unsupported."""
    try:
        with Image.open(p) as im:
            exif = im.getexif()
            out = [
                MetadataTag(directory="IFD0", name=ExifTags.TAGS.get(tag_id, str(tag_id)), value=str(v))
                for tag_id, v in exif.items()
            ]
            for ifd, directory in _PILLOW_IFDS.items():
                tagmap = ExifTags.GPSTAGS if ifd == ExifTags.IFD.GPSInfo else ExifTags.TAGS
                for tag_id, v in exif.get_ifd(ifd).items():
                    out.append(MetadataTag(directory=directory,
                                           name=tagmap.get(tag_id, str(tag_id)), value=str(v)))
            return out
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise MetadataUnavailable(f"cannot decode {p.name}: {e}") from e


def read_tags(p: Path) -> List[MetadataTag]:
    """
    Return every tag the decoder finds, in decoder order.
    Raises MetadataUnavailable when the file format is unsupported or unreadable.
    """
    exe = exiftool_path()
    if exe:
        return _via_exiftool(exe, p)
    return _via_pillow(p)
