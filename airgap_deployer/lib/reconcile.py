from __future__ import annotations

import enum
import hashlib
from pathlib import Path
from typing import Optional, TypeVar

T = TypeVar("T")


class Action(str, enum.Enum):
    NOOP = "noop"
    CREATE = "create"
    UPDATE = "update"


def reconcile(current: Optional[T], desired: T) -> Action:
    """Decide what it takes to move a resource from `current` to `desired`.

    `current` is None when the resource does not exist yet.
    """

    if current is None:
        return Action.CREATE
    if current == desired:
        return Action.NOOP
    return Action.UPDATE


def file_digest(path: Path, *, chunk_size: int = 1 << 20) -> Optional[str]:
    if not path.is_file():
        return None
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            h.update(chunk)
    return h.hexdigest()


def file_text(path: Path) -> Optional[str]:
    if not path.is_file():
        return None
    return path.read_text(encoding="utf-8")


def file_mode(path: Path) -> Optional[int]:
    if not path.exists():
        return None
    return path.stat().st_mode & 0o777
