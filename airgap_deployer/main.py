from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Callable, Optional

from .deploy_config import DeployConfig, load_deploy_config
from .errors import DeployError
from .lib import systemd
from .lib.bundle import verify_bundle
from .lib.host import Host, require_root
from .logging_utils import DEFAULT_LOG_PATH, configure_logging
from .pipeline import DeployCtx, DeployPhase, PipelineResult, run_pipeline
from .state_store import DEFAULT_STATE_PATH, ensure_defaults, load_state, save_state, start_run
from .steps import HardenNodeStep, InstallServiceStep, LoadModelsStep, VerifyBundleStep
from .steps.step_20_install_service import install_service, read_version
from .steps.step_30_load_models import load_models
from .steps.step_40_harden_node import harden_node
from .verify import verify_deployment

logger = logging.getLogger(__name__)


DEFAULT_BUNDLE_DIR = "/tmp/deployment-bundle"


def build_steps():
    return [
        VerifyBundleStep(),
        InstallServiceStep(),
        LoadModelsStep(),
        HardenNodeStep(),
    ]


def log_summary(ctx: DeployCtx) -> None:
    cfg = ctx.cfg
    logger.info("=== Deployment summary ===")
    version = read_version(ctx, str(ctx.host.path(cfg.binary_path)))
    logger.info("%s version: %s", cfg.service_name, version or "not installed")
    if systemd.is_active(ctx.host, cfg.unit):
        logger.info("Service status: %s active", cfg.unit)
    else:
        logger.warning("Service status: %s not running", cfg.unit)
    logger.info("Next steps:")
    logger.info("  1. Verify models: %s list", cfg.binary_name)
    logger.info("  2. Check health: airgap-deploy verify")
    logger.info("  3. Check logs: journalctl -u %s -f", cfg.service_name)


def bootstrap(
    ctx: DeployCtx,
    *,
    state_path: str = DEFAULT_STATE_PATH,
    start_at: Optional[str] = None,
    stop_after: Optional[str] = None,
    resume: bool = False,
) -> PipelineResult:
    """Run every phase against a bundle, persisting the run record."""

    logger.info("=== Air-gapped node bootstrap ===")
    logger.info("Bundle directory: %s", str(ctx.bundle_dir))

    state = ensure_defaults(load_state(state_path))
    start_run(state, resume=resume)

    try:
        result = run_pipeline(
            ctx=ctx,
            state=state,
            steps=build_steps(),
            start_at=start_at,
            stop_after=stop_after,
            resume=resume,
        )
    finally:
        if ctx.host.dry_run:
            logger.info("Dry run: not saving state to %s", state_path)
        else:
            save_state(state_path, state)

    if not result.ok:
        logger.error("Deployment failed in phase %s: %s", result.phase.value, result.error)
    elif result.phase is DeployPhase.RUNNING:
        log_summary(ctx)
        logger.info("Deployment succeeded")
    else:
        logger.info("Deployment stopped after %s (next phase: %s)", stop_after, result.phase.value)
    return result


def _host_from_args(args: argparse.Namespace) -> Host:
    return Host(root=args.root, dry_run=bool(args.dry_run))


def _phase(fn: Callable[[], Any], name: str) -> int:
    try:
        fn()
    except DeployError as e:
        logger.error("%s failed: %s", name, e)
        return 1
    logger.info("%s completed successfully", name)
    return 0


def cmd_bootstrap(cfg: DeployConfig, args: argparse.Namespace) -> int:
    host = _host_from_args(args)
    require_root(host)
    ctx = DeployCtx.for_bundle(cfg, host, args.bundle_dir)
    result = bootstrap(
        ctx,
        state_path=args.state,
        start_at=args.start_at,
        stop_after=args.stop_after,
        resume=bool(args.resume),
    )
    return 0 if result.ok else 1


def cmd_verify_bundle(cfg: DeployConfig, args: argparse.Namespace) -> int:
    return _phase(lambda: verify_bundle(args.bundle_dir, cfg), "Bundle verification")


def cmd_install(cfg: DeployConfig, args: argparse.Namespace) -> int:
    host = _host_from_args(args)
    require_root(host)
    installers = Path(args.installer_dir)
    ctx = DeployCtx(cfg=cfg, host=host, installers_dir=installers, config_dir=installers.parent / "config")
    return _phase(lambda: install_service(ctx), "Installation")


def cmd_load_models(cfg: DeployConfig, args: argparse.Namespace) -> int:
    host = _host_from_args(args)
    require_root(host)
    ctx = DeployCtx(cfg=cfg, host=host, models_src=Path(args.models_dir))
    return _phase(lambda: load_models(ctx), "Model loading")


def cmd_harden(cfg: DeployConfig, args: argparse.Namespace) -> int:
    host = _host_from_args(args)
    require_root(host)
    ctx = DeployCtx(cfg=cfg, host=host)
    return _phase(lambda: harden_node(ctx), "Hardening")


def cmd_verify(cfg: DeployConfig, args: argparse.Namespace) -> int:
    report = verify_deployment(cfg, _host_from_args(args))
    if args.json:
        sys.stdout.write(json.dumps(report.to_dict(), indent=2) + "\n")
    return 0 if report.ok else 1


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="airgap-deploy")
    p.add_argument("--config", default=None, help="Deploy config (YAML); defaults apply when omitted")
    p.add_argument("--state", default=DEFAULT_STATE_PATH, help="Path to run state (json|yaml)")
    p.add_argument("--log", default=DEFAULT_LOG_PATH, help="Path to deployment log")
    p.add_argument("--root", default="/", help="Filesystem root to deploy into (for staging)")
    p.add_argument("--dry-run", action="store_true", help="Log mutating actions without performing them")
    p.add_argument("-v", "--verbose", action="store_true", help="Log command output")

    sub = p.add_subparsers(dest="subcmd", required=True)

    sp = sub.add_parser("bootstrap", help="Verify the bundle, install, load models and harden")
    sp.add_argument("bundle_dir", nargs="?", default=DEFAULT_BUNDLE_DIR)
    sp.add_argument("--start-at", default=None, help="Start at step_id (e.g. 30_load_models)")
    sp.add_argument("--stop-after", default=None, help="Stop after step_id")
    sp.add_argument("--resume", action="store_true", help="Skip steps completed by the previous run")
    sp.set_defaults(func=cmd_bootstrap)

    sp = sub.add_parser("verify-bundle", help="Check a bundle is complete (read-only)")
    sp.add_argument("bundle_dir", nargs="?", default=DEFAULT_BUNDLE_DIR)
    sp.set_defaults(func=cmd_verify_bundle)

    sp = sub.add_parser("install", help="Install the service binary and unit")
    sp.add_argument("installer_dir", nargs="?", default=f"{DEFAULT_BUNDLE_DIR}/installers")
    sp.set_defaults(func=cmd_install)

    sp = sub.add_parser("load-models", help="Copy bundled models into the service's store")
    sp.add_argument("models_dir", nargs="?", default=f"{DEFAULT_BUNDLE_DIR}/models")
    sp.set_defaults(func=cmd_load_models)

    sp = sub.add_parser("harden", help="Apply OS hardening")
    sp.set_defaults(func=cmd_harden)

    sp = sub.add_parser("verify", help="Post-deploy health check (read-only)")
    sp.add_argument("--json", action="store_true", help="Also print the report as JSON")
    sp.set_defaults(func=cmd_verify)

    return p


def main(argv: Optional[list[str]] = None) -> int:
    p = build_parser()
    args = p.parse_args(argv)

    configure_logging(log_path=args.log, level=logging.DEBUG if args.verbose else logging.INFO)

    try:
        cfg = load_deploy_config(args.config)
        return int(args.func(cfg, args))
    except DeployError as e:
        logger.error("%s", e)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
