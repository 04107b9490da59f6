from __future__ import annotations

import logging
import os
import shutil
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from ..errors import InstallationFailed, MissingComponent, ServiceStartTimeout
from ..lib import systemd
from ..lib.reconcile import Action, file_digest, file_mode, file_text, reconcile
from ..lib.retry import poll
from ..pipeline import DeployCtx, DeployPhase
from ..state_store import record_decision

logger = logging.getLogger(__name__)

ARTIFACT_MODE = 0o755
ARTIFACT_OWNER = "root:root"


@dataclass(frozen=True)
class InstallReport:
    version: str
    account_action: Action
    artifact_action: Action
    unit_action: Action
    started: bool
    restarted: bool = False


def default_unit(ctx: DeployCtx) -> str:
    cfg = ctx.cfg
    return "\n".join(
        [
            "[Unit]",
            f"Description={cfg.service_name.capitalize()} Service",
            "After=network-online.target",
            "",
            "[Service]",
            f"ExecStart={cfg.binary_path} serve",
            f"User={cfg.account}",
            f"Group={cfg.account}",
            "Restart=always",
            "RestartSec=3",
            f'Environment="{cfg.host_env_var}={cfg.listen}"',
            f'Environment="{cfg.models_env_var}={cfg.models_dir}"',
            "NoNewPrivileges=true",
            "PrivateTmp=true",
            "ProtectSystem=strict",
            "ProtectHome=true",
            f"ReadWritePaths={cfg.data_dir}",
            "ProtectKernelTunables=true",
            "ProtectKernelModules=true",
            "ProtectControlGroups=true",
            "RestrictSUIDSGID=true",
            "LockPersonality=true",
            "",
            "[Install]",
            "WantedBy=default.target",
            "",
        ]
    )


def account_exists(ctx: DeployCtx, name: str) -> bool:
    return ctx.host.query(["id", "-u", name]).returncode == 0


def ensure_service_account(ctx: DeployCtx) -> Action:
    cfg = ctx.cfg
    action = reconcile(True if account_exists(ctx, cfg.account) else None, True)
    if action is Action.NOOP:
        logger.info("User '%s' already exists", cfg.account)
        return action

    logger.info("Creating %s user", cfg.account)
    ctx.host.run(["useradd", "-r", "-s", "/bin/false", "-U", "-m", "-d", cfg.data_dir, cfg.account])
    return action


def read_version(ctx: DeployCtx, binary: str) -> Optional[str]:
    r = ctx.host.query([binary, "--version"])
    if r.returncode != 0:
        return None
    lines = [ln.strip() for ln in (r.stdout or r.stderr).splitlines() if ln.strip()]
    return lines[0] if lines else None


def install_artifact(ctx: DeployCtx, source: Path, dest: str) -> tuple[Action, str]:
    """Install the service binary; returns (action, reported version).

    Copies only when content or mode differ, then always self-checks that the
    installed binary can report its version.
    """

    host = ctx.host
    if not source.is_file():
        raise MissingComponent(str(source), "binary not found")

    if not os.access(source, os.X_OK) and not host.dry_run:
        try:
            source.chmod(source.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        except OSError as e:
            # Read-only media; the installed copy gets its own mode below.
            logger.warning("Could not mark %s executable: %s", str(source), e)

    target = host.path(dest)
    current = (file_digest(target), file_mode(target)) if target.exists() else None
    action = reconcile(current, (file_digest(source), ARTIFACT_MODE))

    if action is Action.NOOP:
        logger.info("%s already up to date", dest)
    elif host.dry_run:
        logger.info("Would install %s -> %s", str(source), str(target))
    else:
        logger.info("Installing %s to %s", source.name, dest)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(f".{target.name}.new")
        shutil.copyfile(source, tmp)
        os.chmod(tmp, ARTIFACT_MODE)
        os.replace(tmp, target)

    if host.owner_of(dest) != ARTIFACT_OWNER:
        host.chown(dest, ARTIFACT_OWNER)

    version = read_version(ctx, str(target))
    if version is None:
        if host.dry_run:
            return action, "unknown (dry run)"
        raise InstallationFailed(f"{dest} installed but cannot report its version")

    logger.info("Installed: %s", version)
    return action, version


def ensure_data_dirs(ctx: DeployCtx) -> None:
    cfg, host = ctx.cfg, ctx.host
    models = host.path(cfg.models_dir)
    owner = f"{cfg.account}:{cfg.account}"
    if models.is_dir() and host.owner_of(cfg.data_dir) == owner:
        return
    logger.info("Creating data directories under %s", cfg.data_dir)
    if not host.dry_run:
        models.mkdir(parents=True, exist_ok=True)
    host.chown(cfg.data_dir, owner, recursive=True)


def install_service_unit(ctx: DeployCtx, unit_source: Optional[Path], unit_dest: str) -> Action:
    cfg, host = ctx.cfg, ctx.host

    if unit_source is not None and unit_source.is_file():
        logger.info("Using service unit from bundle: %s", str(unit_source))
        desired = unit_source.read_text(encoding="utf-8")
    else:
        logger.info("Creating default systemd service file")
        desired = default_unit(ctx)

    action = reconcile(file_text(host.path(unit_dest)), desired)
    if action is not Action.NOOP:
        host.write_text(unit_dest, desired)
        systemd.daemon_reload(host)
    else:
        logger.info("%s already up to date", unit_dest)

    if not systemd.is_enabled(host, cfg.unit):
        logger.info("Enabling %s", cfg.unit)
        systemd.enable(host, cfg.unit)

    if not systemd.is_active(host, cfg.unit):
        logger.info("Starting %s", cfg.unit)
        systemd.start(host, cfg.unit)

    return action


def await_ready(ctx: DeployCtx, *, attempts: Optional[int] = None, interval: Optional[float] = None) -> None:
    cfg, host = ctx.cfg, ctx.host
    attempts = cfg.ready_attempts if attempts is None else attempts
    interval = cfg.ready_interval if interval is None else interval

    if host.dry_run:
        return

    result = poll(
        lambda: systemd.is_active(host, cfg.unit),
        attempts=attempts,
        interval=interval,
        sleep=host.sleep,
        label=f"{cfg.unit} to start",
    )
    if not result.ok:
        diag = systemd.diagnostics(host, cfg.unit)
        logger.error("%s failed to start\n%s", cfg.unit, diag)
        raise ServiceStartTimeout(cfg.unit, attempts, diag)
    logger.info("%s is running", cfg.unit)


def install_service(ctx: DeployCtx) -> InstallReport:
    cfg = ctx.cfg
    if ctx.installers_dir is None:
        raise MissingComponent("installers", "no installer directory given")

    logger.info("=== Offline %s installation ===", cfg.service_name)
    account_action = ensure_service_account(ctx)
    artifact_action, version = install_artifact(ctx, ctx.installers_dir / cfg.binary_name, cfg.binary_path)
    ensure_data_dirs(ctx)

    config_dir = ctx.config_dir or ctx.installers_dir.parent / "config"
    was_active = systemd.is_active(ctx.host, cfg.unit)
    unit_action = install_service_unit(ctx, config_dir / cfg.unit, cfg.unit_path)
    restarted = was_active and (artifact_action is not Action.NOOP or unit_action is not Action.NOOP)
    if restarted:
        logger.info("Restarting %s to pick up the new installation", cfg.unit)
        systemd.restart(ctx.host, cfg.unit)
    await_ready(ctx)

    logger.info("%s installation completed", cfg.service_name)
    return InstallReport(
        version=version,
        account_action=account_action,
        artifact_action=artifact_action,
        unit_action=unit_action,
        started=not was_active,
        restarted=restarted,
    )


class InstallServiceStep:
    step_id = "20_install_service"
    phase = DeployPhase.INSTALLING

    def run(self, ctx: DeployCtx, state: Dict[str, Any]) -> Dict[str, Any]:
        report = install_service(ctx)
        record_decision(state, self.step_id, "version", report.version)
        record_decision(state, self.step_id, "account", report.account_action.value)
        record_decision(state, self.step_id, "artifact", report.artifact_action.value)
        record_decision(state, self.step_id, "unit", report.unit_action.value)
        record_decision(state, self.step_id, "restarted", report.restarted)
        return state
