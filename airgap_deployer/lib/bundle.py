from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..deploy_config import DeployConfig
from ..errors import MissingComponent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BundleMetadata:
    version: Optional[str] = None
    models: List[str] = field(default_factory=list)
    timestamp: Optional[str] = None
    commit: Optional[str] = None
    triggered_by: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BundleMetadata":
        models = data.get("models") or []
        if isinstance(models, str):
            models = [m.strip() for m in models.replace(",", " ").split() if m.strip()]
        return cls(
            version=data.get("version"),
            models=[str(m) for m in models],
            timestamp=data.get("timestamp"),
            commit=data.get("commit") or data.get("git_sha"),
            triggered_by=data.get("triggered_by") or data.get("actor"),
            raw=dict(data),
        )


@dataclass(frozen=True)
class Bundle:
    root: Path
    binary: Path
    models_dir: Path
    scripts_dir: Path
    config_dir: Path
    metadata: Optional[BundleMetadata]

    def unit_source(self, unit: str) -> Path:
        return self.config_dir / unit


def _non_empty_dir(p: Path) -> bool:
    return p.is_dir() and any(p.iterdir())


def load_metadata(path: Path) -> Optional[BundleMetadata]:
    if not path.is_file():
        return None
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"{path.name} must contain an object")
    return BundleMetadata.from_dict(data)


def verify_bundle(root: str | Path, cfg: DeployConfig) -> Bundle:
    """Confirm a bundle is complete before anything on the host is touched.

    Read-only. Raises MissingComponent naming the first absent member.
    """

    base = Path(root)
    if not base.is_dir():
        raise MissingComponent(str(base), "bundle root is not a directory")

    for rel in cfg.required_dirs:
        p = base / rel
        if not _non_empty_dir(p):
            raise MissingComponent(rel, f"{p} missing or empty")

    binary = base / "installers" / cfg.binary_name
    if not binary.is_file():
        raise MissingComponent(f"installers/{cfg.binary_name}", "binary not found in bundle")
    extras = sorted(p.name for p in binary.parent.iterdir() if p.is_file() and p != binary)
    if extras:
        logger.warning(
            "Ignoring unexpected files in installers/: %s (only %s is installed)",
            ", ".join(extras),
            cfg.binary_name,
        )

    models_dir = base / "models"
    if not any(f.is_file() and f.name != cfg.inventory_file for f in models_dir.rglob("*")):
        raise MissingComponent("models", "no model files in bundle")

    metadata = load_metadata(base / cfg.metadata_file)
    if metadata is None:
        logger.warning("No deployment metadata found (%s)", cfg.metadata_file)
    else:
        logger.info(
            "Deployment metadata: version=%s models=%s timestamp=%s commit=%s",
            metadata.version,
            ",".join(metadata.models) or "-",
            metadata.timestamp,
            metadata.commit,
        )

    logger.info("Bundle verification passed: %s", str(base))
    return Bundle(
        root=base,
        binary=binary,
        models_dir=models_dir,
        scripts_dir=base / "scripts",
        config_dir=base / "config",
        metadata=metadata,
    )
