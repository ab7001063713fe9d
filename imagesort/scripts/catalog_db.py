#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
ImageSort catalog tools: lightweight CLI over catalog.sqlite3

Examples:
  # devices and how many files each has in the archive
  imagesort-db devices

  # archived files of one device (rowid from `devices`)
  imagesort-db files 1 --limit 25

  # recent sync batches
  imagesort-db batches --limit 10

  # stop (or resume) syncing a device
  imagesort-db ignore 2
  imagesort-db ignore 2 --off

  # re-hash archived files and compare against the catalog
  imagesort-db check
  imagesort-db check --device 1

  # browse the catalog over HTTP
  imagesort-db serve --port 8000
"""

import argparse
import sys
from pathlib import Path
from typing import List, Optional, Sequence

import uvicorn

from imagesort.core.config import Settings, load_settings
from imagesort.main import create_app
from imagesort.repositories.db import CatalogStore
from imagesort.services.hashing import sha256_file
from imagesort.services.pipeline import human_bytes

# ------- tiny table printer -------

def _stringify(x):
    if x is None:
        return ""
    return str(x)

def print_table(headers: Sequence[str], rows: Sequence[Sequence[object]]) -> None:
    cols = len(headers)
    widths = [len(h) for h in headers]
    srows = []
    for row in rows:
        srow = [_stringify(v) for v in row]
        srows.append(srow)
        for i in range(cols):
            widths[i] = max(widths[i], len(srow[i]) if i < len(srow) else 0)

    def fmt_row(vals):
        return "  " + " | ".join(v.ljust(widths[i]) for i, v in enumerate(vals))

    if headers:
        print(fmt_row(headers))
        print("  " + "-+-".join("-" * w for w in widths))
    for r in srows:
        print(fmt_row(r))

# ------- commands -------

def cmd_devices(store: CatalogStore, settings: Settings, args) -> int:
    rows = [
        (d.rowid, d.name, d.serial, d.local_path, store.count_entries(d.rowid),
         "yes" if d.ignore else "", d.added.isoformat(timespec="seconds"))
        for d in store.list_devices()
    ]
    if not rows:
        print("No devices catalogued yet.")
        return 0
    print_table(["rowid", "name", "serial", "local_path", "files", "ignored", "added"], rows)
    return 0

def cmd_files(store: CatalogStore, settings: Settings, args) -> int:
    if store.get_device_by_rowid(args.rowid) is None:
        print(f"No device with rowid {args.rowid}")
        return 1
    rows = [
        (e.created.isoformat(sep=" "), e.path_camera, e.path_local, human_bytes(e.size), e.sha256sum[:12])
        for e in store.list_entries(args.rowid, limit=args.limit, offset=args.offset)
    ]
    print_table(["created", "path_camera", "path_local", "size", "sha256"], rows)
    return 0

def cmd_batches(store: CatalogStore, settings: Settings, args) -> int:
    rows = store.recent_batches(args.limit)
    if not rows:
        print("No batches found.")
        return 0
    headers = list(rows[0].keys())
    print_table(headers, [tuple(r) for r in rows])
    return 0

def cmd_ignore(store: CatalogStore, settings: Settings, args) -> int:
    try:
        d = store.set_ignore(args.rowid, not args.off)
    except LookupError as e:
        print(e)
        return 1
    print(f"{d.name} ({d.local_path}): ignore={'on' if d.ignore else 'off'}")
    return 0

def cmd_check(store: CatalogStore, settings: Settings, args) -> int:
    """Recompute the digest of every archived file; report missing and mismatched ones."""
    missing: List[str] = []
    mismatched: List[str] = []
    checked = 0
    for e in store.list_entries(args.device):
        p = settings.archive_root / e.path_local
        checked += 1
        if not p.is_file():
            missing.append(e.path_local)
            continue
        if sha256_file(p) != e.sha256sum:
            mismatched.append(e.path_local)

    for rel in missing:
        print(f"MISSING   {rel}")
    for rel in mismatched:
        print(f"MISMATCH  {rel}")
    print(f"checked={checked} missing={len(missing)} mismatched={len(mismatched)}")
    return 1 if (missing or mismatched) else 0

def cmd_serve(settings: Settings, args) -> int:
    uvicorn.run(create_app(settings), host=args.host, port=args.port)
    return 0

# ------- main -------

def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="ImageSort catalog tools")
    ap.add_argument("--config", help="Path to imagesort.toml")
    ap.add_argument("--db", help="Path to catalog.sqlite3 (overrides config)")
    ap.add_argument("--archive", help="Archive root (overrides config)")
    sub = ap.add_subparsers(dest="cmd", required=True)

    sub.add_parser("devices", help="Catalogued devices")

    sp = sub.add_parser("files", help="Archived files of one device")
    sp.add_argument("rowid", type=int)
    sp.add_argument("--limit", type=int, default=50)
    sp.add_argument("--offset", type=int, default=0)

    sp = sub.add_parser("batches", help="Recent sync batches")
    sp.add_argument("--limit", type=int, default=10)

    sp = sub.add_parser("ignore", help="Set (or clear with --off) a device's ignore flag")
    sp.add_argument("rowid", type=int)
    sp.add_argument("--off", action="store_true", help="Resume syncing this device")

    sp = sub.add_parser("check", help="Verify archived files against their catalogued digests")
    sp.add_argument("--device", type=int, default=None, help="Only this device rowid")

    sp = sub.add_parser("serve", help="Run the HTTP API")
    sp.add_argument("--host", default="127.0.0.1")
    sp.add_argument("--port", type=int, default=8000)
    return ap

COMMANDS = {
    "devices": cmd_devices,
    "files": cmd_files,
    "batches": cmd_batches,
    "ignore": cmd_ignore,
    "check": cmd_check,
}

def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    paths = {}
    if args.db:
        paths["db_path"] = str(Path(args.db).expanduser().resolve())
    if args.archive:
        paths["archive_dir"] = str(Path(args.archive).expanduser().resolve())
    settings = load_settings(Path(args.config) if args.config else None, {"paths": paths})

    if args.cmd == "serve":
        return cmd_serve(settings, args)

    if not settings.db_path.exists():
        print(f"DB not found: {settings.db_path}")
        print("Tip: run imagesort-sync, or point --config/--db at the correct location.")
        return 1
    with CatalogStore(settings.db_path) as store:
        return COMMANDS[args.cmd](store, settings, args)

if __name__ == "__main__":
    sys.exit(main())
