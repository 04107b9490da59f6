from __future__ import annotations

import logging
import shutil
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..deploy_config import DeployConfig
from ..errors import CommandFailed, ConfigValidationFailed
from ..lib import sshd, systemd
from ..lib.reconcile import Action, file_mode, reconcile
from ..pipeline import DeployCtx, DeployPhase
from ..state_store import record_decision

logger = logging.getLogger(__name__)

PASS = "pass"
WARN = "warn"
SKIP = "skip"


@dataclass
class HardenReport:
    results: Dict[str, str] = field(default_factory=dict)
    selinux_mode: Optional[str] = None
    firewall_zone: Optional[str] = None
    disabled_services: List[str] = field(default_factory=list)
    audit_rules_added: int = 0


def harden_sshd(ctx: DeployCtx) -> str:
    """Rewrite sshd_config with key-only access.

    The one step allowed to abort: if `sshd -t` rejects the result, the backup is
    restored byte-for-byte before raising.
    """

    cfg, host = ctx.cfg, ctx.host
    conf = host.path(cfg.sshd_config)
    if not conf.is_file():
        logger.warning("SSH config not found at %s", cfg.sshd_config)
        return WARN

    original = conf.read_bytes()
    # Comments in other encodings must survive the round trip untouched.
    text = original.decode("utf-8", errors="surrogateescape")
    desired = sshd.rewrite_config(text)
    if reconcile(text, desired) is Action.NOOP:
        logger.info("SSH configuration already hardened")
        return PASS

    if host.dry_run:
        logger.info("Would rewrite %s", str(conf))
        return PASS

    backup = conf.with_name(f"{conf.name}.backup.{time.strftime('%Y%m%d-%H%M%S')}")
    shutil.copy2(conf, backup)
    logger.info("Backed up %s to %s", cfg.sshd_config, backup.name)

    conf.write_bytes(desired.encode("utf-8", errors="surrogateescape"))
    check = host.run(["sshd", "-t", "-f", str(conf)], check=False)
    if check.returncode != 0:
        logger.error("SSH configuration invalid, reverting")
        conf.write_bytes(backup.read_bytes())
        shutil.copystat(backup, conf)
        raise ConfigValidationFailed(f"sshd -t rejected the hardened config: {check.stderr.strip()}")

    logger.info("SSH configuration valid")
    systemd.reload_or_restart(host, cfg.ssh_service)
    return PASS


def configure_firewall(ctx: DeployCtx, report: HardenReport) -> str:
    cfg, host = ctx.cfg, ctx.host
    if not host.has_command("firewall-cmd"):
        logger.warning("firewalld not available, skipping firewall configuration")
        return WARN

    if not systemd.is_active(host, "firewalld"):
        systemd.enable(host, "firewalld")
        systemd.start(host, "firewalld")

    zone = cfg.firewall_zone
    changed = False
    current = host.query(["firewall-cmd", "--get-default-zone"]).stdout.strip() or None
    if reconcile(current, zone) is not Action.NOOP:
        host.run(["firewall-cmd", f"--set-default-zone={zone}"])
        changed = True

    for svc in cfg.firewall_allow:
        q = host.query(["firewall-cmd", "--permanent", f"--zone={zone}", f"--query-service={svc}"])
        if q.returncode != 0:
            host.run(["firewall-cmd", "--permanent", f"--zone={zone}", f"--add-service={svc}"])
            changed = True

    # The service binds to loopback only, so it needs no rule of its own.
    if changed:
        host.run(["firewall-cmd", "--reload"])
    report.firewall_zone = zone
    logger.info("Firewall configured (default zone %s, allowed: %s)", zone, ", ".join(cfg.firewall_allow))
    return PASS


def disable_services(ctx: DeployCtx, report: HardenReport) -> str:
    host = ctx.host
    for svc in ctx.cfg.disable_services:
        if not systemd.is_installed(host, svc):
            continue
        changed = False
        if systemd.is_enabled(host, svc):
            systemd.disable(host, svc, check=False)
            changed = True
        if systemd.is_active(host, svc):
            systemd.stop(host, svc, check=False)
            changed = True
        if changed:
            report.disabled_services.append(svc)
            logger.info("  Disabled: %s", svc)
        else:
            logger.info("  Already disabled: %s", svc)
    return PASS


def secure_data_dir(ctx: DeployCtx) -> str:
    cfg, host = ctx.cfg, ctx.host
    data = host.path(cfg.data_dir)
    if not data.is_dir():
        logger.warning("%s does not exist; skipping", cfg.data_dir)
        return WARN

    owner = f"{cfg.account}:{cfg.account}"
    if host.owner_of(cfg.data_dir) != owner:
        host.chown(cfg.data_dir, owner, recursive=True)
    if reconcile(file_mode(data), cfg.data_dir_mode) is not Action.NOOP and not host.dry_run:
        data.chmod(cfg.data_dir_mode)
    logger.info("%s directories secured", cfg.service_name)
    return PASS


def check_selinux(ctx: DeployCtx, report: HardenReport) -> str:
    cfg, host = ctx.cfg, ctx.host
    if not host.has_command("getenforce"):
        logger.info("SELinux not available on this system")
        return SKIP

    mode = host.query(["getenforce"]).stdout.strip()
    report.selinux_mode = mode
    logger.info("SELinux status: %s", mode)

    if mode != "Disabled" and host.has_command("restorecon"):
        binary = str(host.path(cfg.binary_path))
        # -n reports what would be relabeled without touching anything.
        if host.query(["restorecon", "-n", "-v", binary]).stdout.strip():
            host.run(["restorecon", "-v", binary], check=False)

    if mode == "Enforcing":
        logger.info("SELinux is enforcing")
        return PASS
    logger.warning("SELinux is not enforcing - consider enabling it")
    return WARN


def audit_rules(cfg: DeployConfig) -> List[List[str]]:
    return [
        ["-w", cfg.binary_path, "-p", "x", "-k", f"{cfg.service_name}_exec"],
        ["-w", cfg.models_dir, "-p", "wa", "-k", f"{cfg.service_name}_models"],
    ]


def _rule_listed(rule: List[str], listing: str) -> bool:
    path, key = rule[1], rule[-1]
    return any(path in ln.split() and key in ln.split() for ln in listing.splitlines())


def install_audit_rules(ctx: DeployCtx, report: HardenReport) -> str:
    host = ctx.host
    if not host.has_command("auditctl"):
        logger.warning("auditd not available, skipping audit configuration")
        return WARN

    listed = host.query(["auditctl", "-l"]).stdout
    for rule in audit_rules(ctx.cfg):
        if _rule_listed(rule, listed):
            continue
        host.run(["auditctl", *rule], check=False)
        report.audit_rules_added += 1
    logger.info("Audit rules in place for %s", ctx.cfg.service_name)
    return PASS


def _best_effort(name: str, fn: Callable[[], str]) -> str:
    try:
        return fn()
    except (CommandFailed, OSError) as e:
        logger.warning("%s step failed (non-fatal): %s", name, e)
        return WARN


def harden_node(ctx: DeployCtx) -> HardenReport:
    report = HardenReport()
    logger.info("=== Security hardening ===")

    logger.info("Step 1/6: Hardening SSH configuration")
    report.results["ssh"] = harden_sshd(ctx)

    steps = [
        ("firewall", "Step 2/6: Configuring firewall", lambda: configure_firewall(ctx, report)),
        ("services", "Step 3/6: Disabling unnecessary services", lambda: disable_services(ctx, report)),
        ("permissions", "Step 4/6: Securing data directories", lambda: secure_data_dir(ctx)),
        ("selinux", "Step 5/6: Verifying SELinux status", lambda: check_selinux(ctx, report)),
        ("audit", "Step 6/6: Enabling audit logging", lambda: install_audit_rules(ctx, report)),
    ]
    for name, banner, fn in steps:
        logger.info(banner)
        report.results[name] = _best_effort(name, fn)

    logger.info("=== Security hardening summary ===")
    for name, result in report.results.items():
        logger.info("  %-12s %s", name, result)
    logger.warning("IMPORTANT: Verify you can still SSH to this node before closing the current session")
    return report


class HardenNodeStep:
    step_id = "40_harden_node"
    phase = DeployPhase.HARDENING

    def run(self, ctx: DeployCtx, state: Dict[str, Any]) -> Dict[str, Any]:
        report = harden_node(ctx)
        record_decision(state, self.step_id, "results", dict(report.results))
        record_decision(state, self.step_id, "selinux", report.selinux_mode)
        record_decision(state, self.step_id, "firewall_zone", report.firewall_zone)
        record_decision(state, self.step_id, "disabled_services", list(report.disabled_services))
        return state
