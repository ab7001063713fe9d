# imagesort/core/config.py
# Loads ImageSort settings from a TOML file (defaults + overrides).
# - Reads IMAGESORT_CONFIG or walks up from CWD looking for imagesort.toml
# - Normalizes extension lists (lowercase, ensure leading dot)
# - Relative paths are resolved under [paths].data_dir
# - Mounted card/camera volumes are declared as [[devices.volumes]]

from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import tomli as tomllib  # py3.11+: tomllib in stdlib; using tomli for compatibility

CONFIG_ENV = "IMAGESORT_CONFIG"
CONFIG_NAME = "imagesort.toml"


# -------------------- Defaults (used if TOML omits keys) --------------------
_DEFAULTS: Dict[str, Dict[str, Any]] = {
    "paths": {
        "data_dir": "~/ImageSort",
        "archive_dir": "archive",
        "scratch_dir": "scratch",
        "db_path": "db/catalog.sqlite3",
        "logs_dir": "logs",
        "thumb_dir": "thumb-cache",
    },
    "formats": {
        "images": ["jpg", "jpeg", "tif", "tiff", "heic", "heif", "dng", "cr2", "cr3", "nef", "arw"],
        "videos": ["mp4", "mov", "m4v", "3gp"],
    },
    "devices": {
        # never descended into while listing a device
        "exclude_dirs": [
            "System Volume Information", "$RECYCLE.BIN",
            ".Spotlight-V100", ".fseventsd", ".Trashes", ".TemporaryItems",
        ],
        # card readers report themselves with this model; skipped for now
        "skip_models": ["SD"],
        "volumes": [],
    },
    "transfer": {
        "heartbeat": 100,        # emit a throughput line every N files (0 = off)
        "retry_attempts": 3,     # whole-file staging attempts
        "retry_wait": 1.0,       # seconds, exponential backoff base
        "retry_deadline": 0,     # seconds across all attempts (0 = no deadline)
        "max_collisions": 9999,  # naming counter cap
        "workers": 1,            # devices processed concurrently
    },
    "metadata": {
        # QuickTime CreateDate is stored as UTC; convert to local wall time
        "quicktime_utc": True,
    },
    "api": {
        # browser origins allowed to call the API cross-site (empty = same-origin only)
        "cors_origins": [],
    },
}


# -------------------- Read + merge TOML --------------------

def find_config_path() -> Optional[Path]:
    """Find imagesort.toml without user input.
    Priority:
      1) IMAGESORT_CONFIG
      2) ./imagesort.toml (CWD)
      3) ascend parents from CWD looking for imagesort.toml
    """
    cfg_env = os.getenv(CONFIG_ENV)
    if cfg_env:
        p = Path(cfg_env).expanduser()
        if p.exists():
            return p

    cur = Path.cwd()
    while True:
        candidate = cur / CONFIG_NAME
        if candidate.exists():
            return candidate
        if cur.parent == cur:
            break  # reached filesystem root
        cur = cur.parent
    return None


def load_config_toml(path: Optional[Path] = None) -> dict:
    """Load TOML from the given path (or best match); {} if none is found."""
    path = path or find_config_path()
    if path and path.exists():
        with path.open("rb") as f:
            return tomllib.load(f)
    return {}


def norm_ext_list(exts) -> set[str]:
    """
    Normalize extension strings: ensure leading dot and lowercase.
    Accepts 'jpg' or '.jpg' and returns '.jpg'.
    """
    out: set[str] = set()
    for e in exts or []:
        e = (str(e) if e is not None else "").strip().lower()
        if not e:
            continue
        if not e.startswith("."):
            e = "." + e
        out.add(e)
    return out


def _merge(cfg: dict) -> dict:
    merged = copy.deepcopy(_DEFAULTS)
    for section, values in (cfg or {}).items():
        if isinstance(values, dict) and isinstance(merged.get(section), dict):
            merged[section].update(values)
        else:
            merged[section] = values
    return merged


def _under(base: Path, value: str) -> Path:
    p = Path(value).expanduser()
    return (p if p.is_absolute() else base / p).resolve()


# -------------------- Settings --------------------

class VolumeConfig:
    """One mounted volume that should be treated as a device."""

    def __init__(self, entry: dict) -> None:
        if "path" not in entry:
            raise ValueError(f"[[devices.volumes]] entry without a path: {entry!r}")
        self.path: Path = Path(entry["path"]).expanduser()
        self.name: str = str(entry.get("name") or self.path.name or "Volume").strip()
        self.device_id: str = str(entry.get("device_id") or f"volume:{self.name}")
        self.serial: str = str(entry.get("serial", ""))
        self.model: str = str(entry.get("model", ""))

    def __repr__(self) -> str:
        return (
            f"VolumeConfig(name={self.name!r}, path={str(self.path)!r}, "
            f"device_id={self.device_id!r}, serial={self.serial!r})"
        )


class Settings:
    """
    Effective configuration. Build with load_settings() or Settings(dict).
    Paths are resolved relative to DATA_DIR when given as relative strings.
    """

    def __init__(self, cfg: Optional[dict] = None) -> None:
        c = _merge(cfg or {})
        self.raw = c

        paths = c["paths"]
        self.data_dir: Path = Path(paths["data_dir"]).expanduser().resolve()
        self.archive_root: Path = _under(self.data_dir, paths["archive_dir"])
        self.scratch_root: Path = _under(self.data_dir, paths["scratch_dir"])
        self.db_path: Path = _under(self.data_dir, paths["db_path"])
        self.logs_dir: Path = _under(self.data_dir, paths["logs_dir"])
        self.thumb_dir: Path = _under(self.data_dir, paths["thumb_dir"])

        fmts = c["formats"]
        self.image_ext: set[str] = norm_ext_list(fmts.get("images"))
        self.video_ext: set[str] = norm_ext_list(fmts.get("videos"))

        devs = c["devices"]
        self.exclude_dirs: set[str] = {str(d) for d in devs.get("exclude_dirs", [])}
        self.skip_models: set[str] = {str(m).strip() for m in devs.get("skip_models", [])}
        self.volumes: List[VolumeConfig] = [VolumeConfig(v) for v in devs.get("volumes", [])]

        tr = c["transfer"]
        self.heartbeat: int = int(tr.get("heartbeat", 100))
        self.retry_attempts: int = max(1, int(tr.get("retry_attempts", 3)))
        self.retry_wait: float = float(tr.get("retry_wait", 1.0))
        self.retry_deadline: float = float(tr.get("retry_deadline", 0))
        self.max_collisions: int = int(tr.get("max_collisions", 9999))
        self.workers: int = max(1, int(tr.get("workers", 1)))

        self.quicktime_utc: bool = bool(c["metadata"].get("quicktime_utc", True))

        self.cors_origins: List[str] = [str(o) for o in c["api"].get("cors_origins", [])]

    def ensure_dirs(self) -> None:
        """Create the archive, scratch, db and log directories."""
        for d in (self.archive_root, self.scratch_root, self.db_path.parent, self.logs_dir):
            d.mkdir(parents=True, exist_ok=True)

    def __repr__(self) -> str:
        return (
            f"Settings(data_dir={self.data_dir}, archive_root={self.archive_root}, "
            f"scratch_root={self.scratch_root}, db_path={self.db_path}, "
            f"volumes={len(self.volumes)}, workers={self.workers})"
        )


def load_settings(path: Optional[Path] = None, overrides: Optional[dict] = None) -> Settings:
    """Read the TOML file (if any), then apply per-section overrides (CLI flags)."""
    cfg = load_config_toml(path)
    for section, values in (overrides or {}).items():
        cfg.setdefault(section, {})
        if isinstance(values, dict):
            cfg[section].update(values)
        else:
            cfg[section] = values
    return Settings(cfg)
