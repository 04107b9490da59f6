"""Run record persisted between deployments.

The record lives at /var/lib/airgap-deployer/state.json by default and is read
back by `--resume`. Layout:

    bundle:     what step 10 found in the bundle
    execution:  phase, current_step, completed_steps, decisions, errors, started_at
"""

from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Tuple

logger = logging.getLogger(__name__)

DEFAULT_STATE_PATH = "/var/lib/airgap-deployer/state.json"

_EXECUTION_DEFAULTS: Dict[str, Callable[[], Any]] = {
    "phase": lambda: None,
    "current_step": lambda: None,
    "completed_steps": list,
    "decisions": dict,
    "errors": list,
}


def _yaml():
    try:
        import yaml  # type: ignore
    except Exception as e:  # pragma: no cover
        raise RuntimeError("PyYAML is required for a .yaml state file; use .json instead") from e
    return yaml


def _codec(p: Path) -> Tuple[Callable[[str], Any], Callable[[Dict[str, Any]], str]]:
    if p.suffix.lower() in (".yaml", ".yml"):
        yaml = _yaml()
        return (lambda s: yaml.safe_load(s) or {}), (lambda d: yaml.safe_dump(d, sort_keys=False))
    # Anything that is not YAML is JSON.
    return json.loads, (lambda d: json.dumps(d, indent=2, sort_keys=True, default=str) + "\n")


def load_state(path: str) -> Dict[str, Any]:
    p = Path(path)
    if not p.is_file():
        logger.debug("No previous run record at %s", path)
        return {}

    loads, _ = _codec(p)
    data = loads(p.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"{path}: run record must be a mapping, got {type(data).__name__}")
    return data


def save_state(path: str, state: Dict[str, Any]) -> None:
    p = Path(path)
    _, dumps = _codec(p)
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_name(f".{p.name}.tmp")
    tmp.write_text(dumps(state), encoding="utf-8")
    os.replace(tmp, p)
    logger.debug("Run record saved to %s", path)


def _execution(state: Dict[str, Any]) -> Dict[str, Any]:
    return state.setdefault("execution", {})


def ensure_defaults(state: Dict[str, Any]) -> Dict[str, Any]:
    """Add missing keys; recorded values are left alone."""

    state.setdefault("bundle", {})
    exe = _execution(state)
    for key, factory in _EXECUTION_DEFAULTS.items():
        exe.setdefault(key, factory())
    return state


def start_run(state: Dict[str, Any], *, resume: bool) -> None:
    """Begin a new run record. Completed steps carry over only when resuming."""

    exe = _execution(ensure_defaults(state))
    if not resume:
        exe["completed_steps"] = []
        exe["decisions"] = {}
    exe["errors"] = []
    exe["started_at"] = time.strftime("%Y-%m-%dT%H:%M:%S%z")


def record_decision(state: Dict[str, Any], step_id: str, key: str, value: Any) -> None:
    _execution(state).setdefault("decisions", {}).setdefault(step_id, {})[key] = value


def _completed(state: Dict[str, Any]) -> List[str]:
    return _execution(state).setdefault("completed_steps", [])


def mark_step_completed(state: Dict[str, Any], step_id: str) -> None:
    done = _completed(state)
    if step_id not in done:
        done.append(step_id)


def is_step_completed(state: Dict[str, Any], step_id: str) -> bool:
    return step_id in (state.get("execution") or {}).get("completed_steps", ())
