from __future__ import annotations

import logging

from .command import CmdResult
from .host import Host

logger = logging.getLogger(__name__)


def unit_name(service: str) -> str:
    return service if "." in service else f"{service}.service"


def is_active(host: Host, service: str) -> bool:
    return host.query(["systemctl", "is-active", "--quiet", unit_name(service)]).returncode == 0


def is_enabled(host: Host, service: str) -> bool:
    return host.query(["systemctl", "is-enabled", "--quiet", unit_name(service)]).returncode == 0


def is_installed(host: Host, service: str) -> bool:
    unit = unit_name(service)
    r = host.query(["systemctl", "list-unit-files", "--no-legend", unit])
    return r.returncode == 0 and any(line.split()[:1] == [unit] for line in r.stdout.splitlines())


def daemon_reload(host: Host) -> None:
    host.run(["systemctl", "daemon-reload"])


def enable(host: Host, service: str) -> None:
    host.run(["systemctl", "enable", unit_name(service)])


def disable(host: Host, service: str, *, check: bool = True) -> CmdResult:
    return host.run(["systemctl", "disable", unit_name(service)], check=check)


def start(host: Host, service: str) -> None:
    host.run(["systemctl", "start", unit_name(service)])


def restart(host: Host, service: str) -> None:
    host.run(["systemctl", "restart", unit_name(service)])


def stop(host: Host, service: str, *, check: bool = True) -> CmdResult:
    return host.run(["systemctl", "stop", unit_name(service)], check=check)


def reload_or_restart(host: Host, service: str) -> None:
    r = host.run(["systemctl", "reload", unit_name(service)], check=False)
    if r.returncode != 0:
        logger.info("Reload of %s failed; restarting instead", unit_name(service))
        host.run(["systemctl", "restart", unit_name(service)])


def diagnostics(host: Host, service: str, *, journal_lines: int = 20) -> str:
    """Status plus journal tail for a unit, for error reports."""

    unit = unit_name(service)
    status = host.query(["systemctl", "status", unit, "--no-pager", "-l"])
    journal = host.query(["journalctl", "-u", unit, "-n", str(journal_lines), "--no-pager"])
    parts = [status.stdout.strip(), journal.stdout.strip()]
    return "\n".join(p for p in parts if p)
