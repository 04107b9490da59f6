"""Helpers for a content-addressed model store.

Layout (as written by the inference server and shipped in the bundle):

    <store>/blobs/sha256-<hex>
    <store>/manifests/<registry>/<namespace>/<model>/<tag>

Manifests are JSON documents whose `config` and `layers` entries reference blobs
by digest ("sha256:<hex>"). Content is copied verbatim, never transformed.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
from pathlib import Path
from typing import Iterable, List, Sequence

logger = logging.getLogger(__name__)

DIR_MODE = 0o755
FILE_MODE = 0o644


def eligible_files(src: Path, *, exclude: Iterable[str] = ()) -> List[Path]:
    """Relative paths of every regular file under src, minus excluded names."""

    excluded = set(exclude)
    out: List[Path] = []
    for item in sorted(src.rglob("*")):
        if item.is_file() and item.name not in excluded:
            out.append(item.relative_to(src))
    return out


def _needs_copy(s: Path, d: Path) -> bool:
    if not d.is_file():
        return True
    ss, ds = s.stat(), d.stat()
    # rsync-style quick check: size and whole-second mtime.
    return ss.st_size != ds.st_size or int(ss.st_mtime) != int(ds.st_mtime)


def plan_sync(src: Path, dst: Path, *, exclude: Iterable[str] = ()) -> List[Path]:
    """Files that are new or changed relative to dst."""

    return [rel for rel in eligible_files(src, exclude=exclude) if _needs_copy(src / rel, dst / rel)]


def sync_files(src: Path, dst: Path, plan: Sequence[Path], *, dry_run: bool = False) -> int:
    if dry_run:
        for rel in plan:
            logger.info("Would copy %s -> %s", str(src / rel), str(dst / rel))
        return len(plan)

    dst.mkdir(parents=True, exist_ok=True)
    for rel in plan:
        out = dst / rel
        out.parent.mkdir(parents=True, exist_ok=True)
        tmp = out.with_name(f".{out.name}.partial")
        shutil.copy2(src / rel, tmp)
        os.replace(tmp, out)
        logger.debug("Copied %s", str(rel))
    return len(plan)


def normalize_permissions(root: Path, *, dry_run: bool = False) -> int:
    """Directories 0755, files 0644. Returns the number of entries changed."""

    changed = 0
    entries = [root, *root.rglob("*")] if root.exists() else []
    for p in entries:
        want = DIR_MODE if p.is_dir() else FILE_MODE
        if (p.stat().st_mode & 0o777) == want:
            continue
        changed += 1
        if not dry_run:
            os.chmod(p, want)
    return changed


def _digest_to_blob(digest: str) -> str:
    return digest.replace(":", "-", 1)


def referenced_digests(manifest: Path) -> List[str]:
    data = json.loads(manifest.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        return []
    refs = []
    cfg = data.get("config") or {}
    if isinstance(cfg, dict) and cfg.get("digest"):
        refs.append(str(cfg["digest"]))
    for layer in data.get("layers") or []:
        if isinstance(layer, dict) and layer.get("digest"):
            refs.append(str(layer["digest"]))
    return refs


def missing_blobs(store: Path, *, also_in: Sequence[Path] = ()) -> List[str]:
    """Digests referenced by store's manifests that resolve to no blob.

    Blobs may live in `store` itself or in any of `also_in` (e.g. the live store a
    bundle is being merged into).
    """

    manifests_dir = store / "manifests"
    if not manifests_dir.is_dir():
        return []

    blob_dirs = [store / "blobs", *[p / "blobs" for p in also_in]]
    missing: List[str] = []
    for manifest in sorted(p for p in manifests_dir.rglob("*") if p.is_file()):
        try:
            refs = referenced_digests(manifest)
        except (ValueError, UnicodeDecodeError):
            logger.warning("Skipping unreadable manifest %s", str(manifest))
            continue
        for digest in refs:
            blob = _digest_to_blob(digest)
            if not any((d / blob).is_file() for d in blob_dirs) and digest not in missing:
                missing.append(digest)
    return missing


def list_models(store: Path) -> List[str]:
    """Model references ("name:tag") for every manifest in a store."""

    manifests_dir = store / "manifests"
    if not manifests_dir.is_dir():
        return []
    out = []
    for p in sorted(manifests_dir.rglob("*")):
        if not p.is_file():
            continue
        parts = p.relative_to(manifests_dir).parts
        if len(parts) < 4:
            continue
        namespace, model, tag = parts[-3], parts[-2], parts[-1]
        name = model if namespace == "library" else f"{namespace}/{model}"
        out.append(f"{name}:{tag}")
    return out


def parse_inventory(listing: str) -> List[str]:
    """Model names from a `<binary> list` table (first column, header skipped)."""

    names = []
    for line in listing.splitlines():
        cols = line.split()
        if not cols or cols[0].upper() == "NAME":
            continue
        names.append(cols[0])
    return names


def disk_usage(root: Path) -> int:
    if not root.exists():
        return 0
    return sum(p.stat().st_size for p in root.rglob("*") if p.is_file())


def human_size(num: float) -> str:
    for unit in ("B", "K", "M", "G", "T"):
        if num < 1024 or unit == "T":
            return f"{num:.0f}{unit}" if unit == "B" else f"{num:.1f}{unit}"
        num /= 1024
    return f"{num:.1f}T"
