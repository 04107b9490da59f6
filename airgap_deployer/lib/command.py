from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from typing import Mapping, Sequence

from ..errors import CommandFailed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CmdResult:
    argv: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def fmt_argv(argv: Sequence[str]) -> str:
    return " ".join(shlex.quote(a) for a in argv)


def run_cmd(
    argv: Sequence[str],
    *,
    check: bool = True,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    input_text: str | None = None,
    timeout: float | None = None,
    dry_run: bool = False,
) -> CmdResult:
    """Run argv, logging it first; output is captured for diagnostics.

    Under dry_run nothing executes and a zero result is returned. A missing
    executable reports 127 and a timeout 124, as a shell would.
    """

    cmd = list(argv)
    logger.info("CMD %s", fmt_argv(cmd))

    if dry_run:
        return CmdResult(argv=cmd, returncode=0, stdout="", stderr="")

    try:
        p = subprocess.run(
            cmd,
            input=input_text,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=cwd,
            env=dict(os.environ, **(env or {})),
            timeout=timeout,
        )
    except FileNotFoundError as e:
        result = CmdResult(argv=cmd, returncode=127, stdout="", stderr=str(e))
    except subprocess.TimeoutExpired:
        result = CmdResult(argv=cmd, returncode=124, stdout="", stderr=f"timed out after {timeout}s")
    else:
        result = CmdResult(argv=cmd, returncode=p.returncode, stdout=p.stdout, stderr=p.stderr)

    if result.stdout:
        logger.debug("STDOUT %s", result.stdout.strip())
    if result.stderr:
        logger.debug("STDERR %s", result.stderr.strip())

    if check and result.returncode != 0:
        raise CommandFailed(cmd, result.returncode, result.stderr)

    return result
