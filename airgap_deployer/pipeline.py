from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence

from .deploy_config import DeployConfig
from .errors import DeployError
from .lib.host import Host
from .state_store import is_step_completed, mark_step_completed

logger = logging.getLogger(__name__)


class DeployPhase(str, enum.Enum):
    VERIFYING = "verifying"
    INSTALLING = "installing"
    LOADING = "loading"
    HARDENING = "hardening"
    RUNNING = "running"
    FAILED_VERIFICATION = "failed_verification"
    FAILED_INSTALLATION = "failed_installation"
    FAILED_LOADING = "failed_loading"
    FAILED_HARDENING = "failed_hardening"

    @property
    def is_failure(self) -> bool:
        return self in _FAILURE.values()

    @property
    def is_terminal(self) -> bool:
        return self is DeployPhase.RUNNING or self.is_failure


_SEQUENCE = [
    DeployPhase.VERIFYING,
    DeployPhase.INSTALLING,
    DeployPhase.LOADING,
    DeployPhase.HARDENING,
    DeployPhase.RUNNING,
]

_FAILURE = {
    DeployPhase.VERIFYING: DeployPhase.FAILED_VERIFICATION,
    DeployPhase.INSTALLING: DeployPhase.FAILED_INSTALLATION,
    DeployPhase.LOADING: DeployPhase.FAILED_LOADING,
    DeployPhase.HARDENING: DeployPhase.FAILED_HARDENING,
}


def next_phase(phase: DeployPhase, ok: bool) -> DeployPhase:
    """Advance on success; fall into the phase's failure state otherwise."""

    if phase.is_terminal:
        raise ValueError(f"{phase.value} is terminal")
    if not ok:
        return _FAILURE[phase]
    return _SEQUENCE[_SEQUENCE.index(phase) + 1]


@dataclass(frozen=True)
class DeployCtx:
    cfg: DeployConfig
    host: Host
    bundle_dir: Optional[Path] = None
    installers_dir: Optional[Path] = None
    models_src: Optional[Path] = None
    config_dir: Optional[Path] = None

    @classmethod
    def for_bundle(cls, cfg: DeployConfig, host: Host, bundle_dir: str | Path) -> "DeployCtx":
        b = Path(bundle_dir)
        return cls(
            cfg=cfg,
            host=host,
            bundle_dir=b,
            installers_dir=b / "installers",
            models_src=b / "models",
            config_dir=b / "config",
        )


class Step(Protocol):
    """A single idempotent deployment step."""

    step_id: str
    phase: DeployPhase

    def run(self, ctx: DeployCtx, state: Dict[str, Any]) -> Dict[str, Any]:
        ...


@dataclass(frozen=True)
class PipelineResult:
    state: Dict[str, Any]
    phase: DeployPhase
    ran_steps: List[str] = field(default_factory=list)
    skipped_steps: List[str] = field(default_factory=list)
    failed_step: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def run_pipeline(
    *,
    ctx: DeployCtx,
    state: Dict[str, Any],
    steps: Sequence[Step],
    start_at: Optional[str] = None,
    stop_after: Optional[str] = None,
    resume: bool = False,
) -> PipelineResult:
    """Run steps in strict order, halting on the first failure.

    There is no rollback: a failed run leaves the host wherever the failing step
    stopped, and the next run converges from there.
    """

    ran: List[str] = []
    skipped: List[str] = []
    exe = state.setdefault("execution", {})

    if start_at is not None and start_at not in [s.step_id for s in steps]:
        raise ValueError(f"Unknown step: {start_at}")

    started = start_at is None
    phase = steps[0].phase if steps else DeployPhase.RUNNING

    for step in steps:
        if not started:
            if step.step_id == start_at:
                started = True
            else:
                continue

        phase = step.phase
        exe["current_step"] = step.step_id
        exe["phase"] = phase.value

        if resume and is_step_completed(state, step.step_id):
            logger.info("Skipping step %s (completed in a previous run)", step.step_id)
            skipped.append(step.step_id)
        else:
            logger.info("Running step %s (%s)", step.step_id, phase.value)
            try:
                state = step.run(ctx, state)
            except Exception as e:
                failed = next_phase(phase, False)
                if isinstance(e, DeployError):
                    logger.error("Step %s failed: %s", step.step_id, e)
                else:
                    logger.exception("Step %s failed unexpectedly", step.step_id)
                exe = state.setdefault("execution", {})
                exe.setdefault("errors", []).append({"step": step.step_id, "error": str(e), "type": type(e).__name__})
                exe["phase"] = failed.value
                exe["current_step"] = None
                return PipelineResult(
                    state=state,
                    phase=failed,
                    ran_steps=ran,
                    skipped_steps=skipped,
                    failed_step=step.step_id,
                    error=str(e),
                )
            exe = state.setdefault("execution", {})
            mark_step_completed(state, step.step_id)
            ran.append(step.step_id)

        if stop_after is not None and step.step_id == stop_after:
            logger.info("Stopping after %s", stop_after)
            break

    final = next_phase(phase, True) if not phase.is_terminal else phase
    exe["phase"] = final.value
    exe["current_step"] = None
    return PipelineResult(state=state, phase=final, ran_steps=ran, skipped_steps=skipped)
