from __future__ import annotations

import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping, Optional, Sequence

from ..errors import PrivilegeError
from .command import CmdResult, run_cmd

logger = logging.getLogger(__name__)


Runner = Callable[..., CmdResult]


@dataclass(frozen=True)
class Host:
    """The machine being deployed to.

    All filesystem paths go through `path()` so a staging root can stand in for
    "/"; all commands go through `run()` so tests can script the system.
    """

    root: str = "/"
    dry_run: bool = False
    runner: Runner = field(default=run_cmd, repr=False)
    which: Callable[[str], Optional[str]] = field(default=shutil.which, repr=False)
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def path(self, p: str | Path) -> Path:
        return Path(self.root) / str(p).lstrip("/")

    def run(
        self,
        argv: Sequence[str],
        *,
        check: bool = True,
        input_text: str | None = None,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CmdResult:
        return self.runner(
            argv, check=check, env=env, input_text=input_text, timeout=timeout, dry_run=self.dry_run
        )

    def query(
        self,
        argv: Sequence[str],
        *,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CmdResult:
        """Run a read-only command; executed even in dry-run."""

        return self.runner(argv, check=False, env=env, timeout=timeout, dry_run=False)

    def has_command(self, name: str) -> bool:
        return self.which(name) is not None

    def owner_of(self, p: str | Path) -> str:
        """Return "user:group" for a host path, or "" if it cannot be determined."""

        r = self.query(["stat", "-c", "%U:%G", str(self.path(p))])
        return r.stdout.strip() if r.returncode == 0 else ""

    def chown(self, p: str | Path, owner: str, *, recursive: bool = False) -> None:
        argv = ["chown"]
        if recursive:
            argv.append("-R")
        self.run([*argv, owner, str(self.path(p))])

    def write_text(self, p: str | Path, contents: str) -> None:
        target = self.path(p)
        if self.dry_run:
            logger.info("Would write %s", str(target))
            return
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(contents, encoding="utf-8")


def require_root(host: Host) -> None:
    # Staging roots and dry runs never touch the live system.
    if host.dry_run or Path(host.root).resolve() != Path("/"):
        return
    if hasattr(os, "geteuid") and os.geteuid() != 0:
        raise PrivilegeError("This command must be run as root (use sudo)")
