from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

from ..errors import ModelIndexTimeout, ModelStoreIncomplete, NoModelsFound
from ..lib import model_store, systemd
from ..lib.retry import poll
from ..pipeline import DeployCtx, DeployPhase
from ..state_store import record_decision

logger = logging.getLogger(__name__)


@dataclass
class LoadReport:
    source_files: int
    copied: int = 0
    restart_owed: bool = False
    inventory: List[str] = field(default_factory=list)
    indexed: bool = False


def validate_source(ctx: DeployCtx, src: Path) -> int:
    """Count deployable model files, excluding the inventory file."""

    if not src.is_dir():
        raise NoModelsFound(f"Models directory not found: {src}")

    count = len(model_store.eligible_files(src, exclude=[ctx.cfg.inventory_file]))
    if count == 0:
        raise NoModelsFound(f"No model files found in {src}")

    logger.info("Found %d model files to deploy", count)
    inventory = src / ctx.cfg.inventory_file
    if inventory.is_file():
        logger.info("Model manifest:\n%s", inventory.read_text(encoding="utf-8").rstrip())
    return count


def check_store_integrity(ctx: DeployCtx, src: Path) -> None:
    dst = ctx.host.path(ctx.cfg.models_dir)
    missing = model_store.missing_blobs(src, also_in=[dst])
    if missing:
        raise ModelStoreIncomplete(missing)


def quiesce_service(ctx: DeployCtx) -> bool:
    """Stop the service if it is running. Returns True when a restart is owed."""

    unit = ctx.cfg.unit
    if systemd.is_active(ctx.host, unit):
        logger.info("Stopping %s temporarily", unit)
        systemd.stop(ctx.host, unit)
        return True
    return False


def sync_models(ctx: DeployCtx, src: Path, plan: List[Path]) -> int:
    dst = ctx.host.path(ctx.cfg.models_dir)
    logger.info("Copying %d files to %s", len(plan), ctx.cfg.models_dir)
    return model_store.sync_files(src, dst, plan, dry_run=ctx.host.dry_run)


def fix_ownership(ctx: DeployCtx, *, only_if_drifted: bool = False) -> None:
    """chown the store to the service account and normalize modes.

    With only_if_drifted, the chown is skipped while the store root already has
    the right owner; an up-to-date store is repaired without a service stop.
    """

    cfg, host = ctx.cfg, ctx.host
    owner = f"{cfg.account}:{cfg.account}"
    if not only_if_drifted or host.owner_of(cfg.models_dir) != owner:
        logger.info("Setting ownership to %s", owner)
        host.chown(cfg.models_dir, owner, recursive=True)
    changed = model_store.normalize_permissions(host.path(cfg.models_dir), dry_run=host.dry_run)
    if changed:
        logger.info("Normalized permissions on %d entries", changed)


def list_inventory(ctx: DeployCtx) -> List[str]:
    r = ctx.host.query([str(ctx.host.path(ctx.cfg.binary_path)), "list"], env=ctx.cfg.client_env)
    if r.returncode != 0:
        return []
    return model_store.parse_inventory(r.stdout)


def resume_if_owed(ctx: DeployCtx, report: LoadReport) -> None:
    cfg, host = ctx.cfg, ctx.host

    if report.restart_owed:
        logger.info("Restarting %s", cfg.unit)
        systemd.start(host, cfg.unit)
        logger.info("Waiting for %s to initialize...", cfg.service_name)
        host.sleep(cfg.settle_seconds)

    if host.dry_run or not systemd.is_active(host, cfg.unit):
        logger.info("%s is not running; skipping inventory check", cfg.unit)
        return

    inventory: List[str] = []

    def _indexed() -> bool:
        inventory[:] = list_inventory(ctx)
        return bool(inventory)

    result = poll(
        _indexed,
        attempts=cfg.index_attempts,
        interval=cfg.index_interval,
        sleep=host.sleep,
        label=f"{cfg.service_name} to index models",
    )
    report.inventory = list(inventory)
    report.indexed = result.ok
    if result.ok:
        logger.info("Available models: %s", ", ".join(inventory))
        return

    msg = f"{cfg.service_name} reported no models after {result.attempts} attempts"
    if cfg.index_timeout_fatal:
        raise ModelIndexTimeout(msg)
    logger.warning("%s; indexing may still be in progress", msg)


def load_models(ctx: DeployCtx) -> LoadReport:
    cfg, host = ctx.cfg, ctx.host
    if ctx.models_src is None:
        raise NoModelsFound("no models directory given")
    src = ctx.models_src

    logger.info("=== Loading %s models (offline) ===", cfg.service_name)
    report = LoadReport(source_files=validate_source(ctx, src))
    check_store_integrity(ctx, src)

    models = model_store.list_models(src)
    if models:
        logger.info("Models in bundle: %s", ", ".join(models))

    dst = host.path(cfg.models_dir)
    plan = model_store.plan_sync(src, dst, exclude=[cfg.inventory_file])
    if not plan:
        logger.info("Model store already up to date (%d files)", report.source_files)
        fix_ownership(ctx, only_if_drifted=True)
        return report

    if not host.dry_run:
        dst.mkdir(parents=True, exist_ok=True)

    report.restart_owed = quiesce_service(ctx)
    try:
        report.copied = sync_models(ctx, src, plan)
        fix_ownership(ctx)
    except Exception:
        # Never leave the service down because of us, even if the copy failed.
        if report.restart_owed:
            logger.error("Model copy failed; restarting %s before aborting", cfg.unit)
            systemd.start(host, cfg.unit)
        raise
    resume_if_owed(ctx, report)

    logger.info("Model loading completed")
    logger.info("Disk usage for models: %s", model_store.human_size(model_store.disk_usage(dst)))
    return report


class LoadModelsStep:
    step_id = "30_load_models"
    phase = DeployPhase.LOADING

    def run(self, ctx: DeployCtx, state: Dict[str, Any]) -> Dict[str, Any]:
        report = load_models(ctx)
        record_decision(state, self.step_id, "source_files", report.source_files)
        record_decision(state, self.step_id, "copied", report.copied)
        record_decision(state, self.step_id, "restarted", report.restart_owed)
        record_decision(state, self.step_id, "inventory", report.inventory)
        return state
